"""Core framework components for sniguard."""

from sniguard.core.exceptions import (
    SniguardError,
    ConfigurationError,
    ValidationError,
    InvalidAddressError,
    SafetyError,
    ExecutionError,
    PrerequisiteError,
    ServiceError,
    ContainerError,
    FirewallError,
    RuleEngineUnavailableError,
    NotActiveError,
    AlreadyRunningError,
    NotRunningError,
)

from sniguard.core.context import ExecutionContext, create_context
from sniguard.core.output import console, Console
from sniguard.core.config import AppConfig, ProxyOptions, RuntimeSettings
from sniguard.core.safety import require_root, run_preflight_checks
from sniguard.core.audit import AuditLog, AuditRecord, AuditEventType, AuditResult
from sniguard.core.executor import CommandExecutor, CommandResult
from sniguard.core.validation import AddressFamily, AllowEntry, classify, parse_allow_entry

__all__ = [
    # Exceptions
    "SniguardError",
    "ConfigurationError",
    "ValidationError",
    "InvalidAddressError",
    "SafetyError",
    "ExecutionError",
    "PrerequisiteError",
    "ServiceError",
    "ContainerError",
    "FirewallError",
    "RuleEngineUnavailableError",
    "NotActiveError",
    "AlreadyRunningError",
    "NotRunningError",
    # Context
    "ExecutionContext",
    "create_context",
    # Output
    "console",
    "Console",
    # Config
    "AppConfig",
    "ProxyOptions",
    "RuntimeSettings",
    # Safety
    "require_root",
    "run_preflight_checks",
    # Audit
    "AuditLog",
    "AuditRecord",
    "AuditEventType",
    "AuditResult",
    # Executor
    "CommandExecutor",
    "CommandResult",
    # Addresses
    "AddressFamily",
    "AllowEntry",
    "classify",
    "parse_allow_entry",
]
