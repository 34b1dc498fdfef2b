"""Container supervisor backed by the docker CLI.

The proxy itself is opaque: this module only knows how to run, stop and
inspect one named container and the bridge network it is attached to.
"""

from dataclasses import dataclass
from typing import Optional

from sniguard.core.context import ExecutionContext
from sniguard.core.executor import CommandExecutor, CommandResult
from sniguard.core.exceptions import ContainerError, ExecutionError


@dataclass(frozen=True)
class PortBinding:
    """Host port published to the same container port."""
    port: int
    protocol: str = "tcp"

    def to_arg(self) -> str:
        return f"{self.port}:{self.port}/{self.protocol}"


# Ports the proxy answers on: DNS, HTTP, HTTPS
PROXY_PORTS: tuple[PortBinding, ...] = (
    PortBinding(53, "udp"),
    PortBinding(53, "tcp"),
    PortBinding(80, "tcp"),
    PortBinding(443, "tcp"),
)


class DockerService:
    """Safe interface to the docker CLI for one container.

    Inspection runs in dry-run mode too; changes are only printed.
    """

    def __init__(self, ctx: ExecutionContext, executor: CommandExecutor) -> None:
        """Initialize docker service.

        Args:
            ctx: Execution context
            executor: Command executor
        """
        self.ctx = ctx
        self.executor = executor

    def _docker(self, args: list[str], **kwargs) -> CommandResult:
        try:
            return self.executor.run(["docker"] + args, **kwargs)
        except ExecutionError as e:
            raise ContainerError(
                e.message,
                service="docker",
                hint=e.hint or "Check that the docker daemon is running: systemctl status docker",
                details=e.details,
            ) from e

    def exists(self, name: str) -> bool:
        """Check if a container exists (running or not)."""
        result = self._docker(
            ["inspect", "--type", "container", "-f", "{{.Id}}", name],
            check=False,
            read_only=True,
        )
        return result.success

    def is_running(self, name: str) -> bool:
        """Check if a container is running."""
        result = self._docker(
            ["inspect", "--type", "container", "-f", "{{.State.Running}}", name],
            check=False,
            read_only=True,
        )
        return result.success and result.stdout.strip() == "true"

    def network_exists(self, name: str) -> bool:
        result = self._docker(["network", "inspect", name], check=False, read_only=True)
        return result.success

    def ensure_network(
        self,
        name: str,
        bridge_interface: str,
        ipv4_subnet: str,
        ipv6_subnet: Optional[str] = None,
    ) -> bool:
        """Create the bridge network if it does not exist.

        The bridge device is given a fixed name so the FORWARD splice and the
        NAT rule can refer to it.

        Returns:
            True if the network was created
        """
        if self.network_exists(name):
            self.ctx.console.debug(f"Docker network {name} exists")
            return False

        cmd = [
            "network", "create",
            "--driver", "bridge",
            "--opt", f"com.docker.network.bridge.name={bridge_interface}",
            "--subnet", ipv4_subnet,
        ]
        if ipv6_subnet:
            cmd.extend(["--ipv6", "--subnet", ipv6_subnet])
        cmd.append(name)

        self._docker(cmd, description=f"Creating docker network {name}")
        return True

    def start(
        self,
        name: str,
        image: str,
        *,
        env: Optional[dict[str, str]] = None,
        port_bindings: tuple[PortBinding, ...] = PROXY_PORTS,
        network: Optional[str] = None,
    ) -> None:
        """Run a container detached, replacing a stopped one of the same name.

        Raises:
            ContainerError: If docker fails to start the container
        """
        if self.exists(name):
            self.remove(name)

        cmd = ["run", "-d", "--name", name, "--restart", "no"]
        if network:
            cmd.extend(["--network", network])
        for binding in port_bindings:
            cmd.extend(["-p", binding.to_arg()])
        for key, value in (env or {}).items():
            cmd.extend(["-e", f"{key}={value}"])
        cmd.append(image)

        self._docker(cmd, description=f"Starting container {name}")

    def stop(self, name: str) -> bool:
        """Stop a running container.

        Returns:
            False if the container was not running
        """
        if not self.is_running(name):
            return False
        self._docker(["stop", name], description=f"Stopping container {name}")
        return True

    def remove(self, name: str) -> bool:
        """Remove a container. An absent container is not an error.

        Returns:
            True if a container was removed
        """
        result = self._docker(["rm", "-f", name], check=False)
        if result.success:
            return True
        if "no such container" in result.stderr.lower():
            return False
        raise ContainerError(
            f"Failed to remove container {name}",
            service="docker",
            details=[result.stderr.strip()],
        )
