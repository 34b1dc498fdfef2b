"""Custom exceptions for sniguard.

All exceptions provide:
- Clear error messages
- Optional hints for resolution
- Optional details for debugging
- Exit codes for proper shell integration
"""

from typing import Optional


class SniguardError(Exception):
    """Base exception for all sniguard errors.

    Attributes:
        message: Human-readable error description
        hint: Suggested action to resolve the error
        details: Additional context for debugging
        exit_code: Shell exit code (1-127)
    """

    exit_code: int = 1

    def __init__(
        self,
        message: str,
        *,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.details = details or []

    def __str__(self) -> str:
        return self.message


class ConfigurationError(SniguardError):
    """Configuration file or settings errors.

    Raised when:
    - Options file unreadable or unwritable
    - Unknown option key
    - Invalid option value
    """
    exit_code = 2


class ValidationError(SniguardError):
    """Input validation errors."""
    exit_code = 3


class InvalidAddressError(ValidationError):
    """Address failed classification as IPv4 or IPv6.

    Never reaches the rule engine.
    """

    def __init__(
        self,
        address: str,
        *,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(
            f"Invalid IP address: {address}",
            hint=hint or "Use an IPv4/IPv6 address, optionally with a prefix (203.0.113.5, 2001:db8::/64)",
            details=details,
        )
        self.address = address


class SafetyError(SniguardError):
    """Safety check failures.

    Raised when:
    - Operation attempted without required privileges
    - Pre-flight checks fail
    """
    exit_code = 4


class ExecutionError(SniguardError):
    """Command execution failures.

    Raised when:
    - Shell command returns non-zero exit code
    - Command binary not found
    - Command times out
    """
    exit_code = 5

    def __init__(
        self,
        message: str,
        *,
        command: Optional[str] = None,
        return_code: Optional[int] = None,
        stderr: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        if not details:
            details = []
        if return_code is not None:
            details.append(f"Exit code: {return_code}")
        if stderr:
            details.append(f"Error output: {stderr.strip()}")
        super().__init__(message, hint=hint, details=details)
        self.command = command
        self.return_code = return_code
        self.stderr = stderr


class PrerequisiteError(SniguardError):
    """Missing prerequisites.

    Raised when:
    - Required command not found (iptables, ip6tables, docker)
    - Insufficient permissions
    """
    exit_code = 6


class ServiceError(SniguardError):
    """Service lifecycle errors.

    Raised when:
    - Unit not found
    - Start/stop/restart fails
    """
    exit_code = 13

    def __init__(
        self,
        message: str,
        *,
        service: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message, hint=hint, details=details)
        self.service = service


class ContainerError(ServiceError):
    """Container supervisor failures (docker run/stop/rm/network)."""
    exit_code = 16


class FirewallError(SniguardError):
    """Firewall/iptables errors.

    Raised when:
    - A rule mutation fails
    - A delete loop does not converge
    """
    exit_code = 15

    def __init__(
        self,
        message: str,
        *,
        rule: Optional[str] = None,
        chain: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message, hint=hint, details=details)
        self.rule = rule
        self.chain = chain


# Domain-specific exceptions

class RuleEngineUnavailableError(FirewallError):
    """The packet-filter subsystem could not be queried or mutated.

    Almost always a privilege or missing-kernel-module problem, so it is
    surfaced immediately and never retried.
    """
    exit_code = 18


class NotActiveError(FirewallError):
    """Allow-list mutation requested while no chain group exists for the family."""
    exit_code = 19


class AlreadyRunningError(ServiceError):
    """Start requested while the backing service is already running."""
    exit_code = 20


class NotRunningError(ServiceError):
    """Stop requested while the backing service is not running."""
    exit_code = 21
