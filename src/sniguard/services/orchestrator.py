"""Service lifecycle orchestration.

Sequences chain activation, the transient NAT rule and the proxy container
around the container's running state. Every step is idempotent, so a
failed ``start`` is recovered by running ``start`` again rather than by a
rollback.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from sniguard.core.context import ExecutionContext
from sniguard.core.exceptions import AlreadyRunningError, NotRunningError
from sniguard.core.executor import CommandExecutor
from sniguard.core.validation import AddressFamily, AllowEntry
from sniguard.services.allowlist import AllowListController, AllowListSnapshot
from sniguard.services.chains import ChainLifecycleManager
from sniguard.services.docker import PROXY_PORTS, DockerService
from sniguard.services.iptables import ChainNames, IptablesService
from sniguard.services.nat import TransientNatHandler


class ServiceState(str, Enum):
    """Lifecycle states of the controller."""
    STOPPED = "stopped"
    ACTIVATING = "activating"
    RUNNING = "running"
    DEACTIVATING = "deactivating"


@dataclass
class Firewall:
    """Wired-up firewall components for both families."""
    managers: dict[AddressFamily, ChainLifecycleManager]
    controller: AllowListController
    snapshot: AllowListSnapshot
    nat: TransientNatHandler


def build_firewall(ctx: ExecutionContext, executor: CommandExecutor) -> Firewall:
    """Build the rule engines, chain managers, allow-list and NAT handler."""
    settings = ctx.config.settings
    names = ChainNames(settings.chain_prefix)
    engines = {family: IptablesService(ctx, executor, family) for family in AddressFamily}

    managers = {
        family: ChainLifecycleManager(ctx, engine, names, settings.bridge_interface)
        for family, engine in engines.items()
    }
    controller = AllowListController(
        ctx, {family: manager.inspector for family, manager in managers.items()}
    )
    snapshot = AllowListSnapshot(ctx, settings.allowlist_file, controller)
    for manager in managers.values():
        manager.snapshot = snapshot

    nat = TransientNatHandler(
        ctx,
        executor,
        engines[AddressFamily.IPV6],
        settings.ipv6_subnet,
        settings.bridge_interface,
    )
    return Firewall(managers=managers, controller=controller, snapshot=snapshot, nat=nat)


@dataclass
class ControllerStatus:
    """Point-in-time view of the controller."""
    container_running: bool
    chains_active: dict[AddressFamily, bool] = field(default_factory=dict)
    allowed: list[AllowEntry] = field(default_factory=list)
    persisted: list[AllowEntry] = field(default_factory=list)
    nat_rules: int = 0
    manage_iptables: bool = True
    unit_active: Optional[bool] = None
    unit_enabled: Optional[bool] = None

    @property
    def state(self) -> ServiceState:
        return ServiceState.RUNNING if self.container_running else ServiceState.STOPPED


class ServiceOrchestrator:
    """The only component that talks to the container supervisor."""

    def __init__(
        self,
        ctx: ExecutionContext,
        firewall: Firewall,
        docker: DockerService,
    ) -> None:
        self.ctx = ctx
        self.firewall = firewall
        self.docker = docker
        self.state = ServiceState.STOPPED

    @property
    def settings(self):
        return self.ctx.config.settings

    def is_running(self) -> bool:
        return self.docker.is_running(self.settings.container_name)

    def start(self) -> None:
        """Activate the firewall and start the proxy container.

        Raises:
            AlreadyRunningError: If the container is already running
        """
        name = self.settings.container_name
        if self.is_running():
            self.state = ServiceState.RUNNING
            raise AlreadyRunningError(
                f"{name} is already running",
                service=name,
                hint="Use 'sniguard restart' to apply changes",
            )

        self.state = ServiceState.ACTIVATING
        try:
            # The bridge exists before the FORWARD splice goes in, so docker's
            # own FORWARD rules for it cannot land ahead of the splice
            self.docker.ensure_network(
                self.settings.network_name,
                self.settings.bridge_interface,
                self.settings.ipv4_subnet,
                self.settings.ipv6_subnet,
            )

            if self.ctx.config.manage_iptables:
                for family in (AddressFamily.IPV4, AddressFamily.IPV6):
                    self.firewall.managers[family].activate()
            else:
                self.ctx.console.verbose("iptables management disabled, leaving rules alone")

            self.firewall.nat.install()

            self.docker.start(
                name,
                self.settings.image,
                env={"DNS_SERVERS": " ".join(self.ctx.config.dns_servers)},
                port_bindings=PROXY_PORTS,
                network=self.settings.network_name,
            )
        except Exception:
            self.state = ServiceState.STOPPED
            raise

        self.state = ServiceState.RUNNING

    def stop(self, force: bool = False) -> None:
        """Stop the proxy container and tear the firewall down.

        Args:
            force: Tear down even if the container is not running

        Raises:
            NotRunningError: If the container is not running and force is False
        """
        name = self.settings.container_name
        if not force and not self.is_running():
            raise NotRunningError(
                f"{name} is not running",
                service=name,
                hint="Use --force to clean up rules anyway",
            )

        self.state = ServiceState.DEACTIVATING
        self.docker.stop(name)
        self.docker.remove(name)
        self.firewall.nat.remove()

        if self.ctx.config.manage_iptables:
            for family in (AddressFamily.IPV4, AddressFamily.IPV6):
                self.firewall.managers[family].deactivate()

        self.state = ServiceState.STOPPED

    def status(self) -> ControllerStatus:
        """Collect container, chain, allow-list and NAT state."""
        chains_active = {
            family: manager.is_active()
            for family, manager in self.firewall.managers.items()
        }
        active = [family for family, up in chains_active.items() if up]
        return ControllerStatus(
            container_running=self.is_running(),
            chains_active=chains_active,
            allowed=self.firewall.controller.list(active),
            persisted=self.firewall.snapshot.read(),
            nat_rules=self.firewall.nat.count(),
            manage_iptables=self.ctx.config.manage_iptables,
        )
