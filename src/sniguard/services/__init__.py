"""Service abstractions for the rule engines, container and boot unit."""

from sniguard.services.iptables import ChainNames, IptablesService, Rule, RuleSet, RuleSetInspector
from sniguard.services.chains import ChainLifecycleManager
from sniguard.services.allowlist import AllowListController, AllowListSnapshot
from sniguard.services.nat import TransientNatHandler
from sniguard.services.docker import DockerService
from sniguard.services.systemd import SystemdService
from sniguard.services.orchestrator import (
    ControllerStatus,
    Firewall,
    ServiceOrchestrator,
    ServiceState,
    build_firewall,
)

__all__ = [
    "ChainNames",
    "IptablesService",
    "Rule",
    "RuleSet",
    "RuleSetInspector",
    "ChainLifecycleManager",
    "AllowListController",
    "AllowListSnapshot",
    "TransientNatHandler",
    "DockerService",
    "SystemdService",
    "ControllerStatus",
    "Firewall",
    "ServiceOrchestrator",
    "ServiceState",
    "build_firewall",
]
