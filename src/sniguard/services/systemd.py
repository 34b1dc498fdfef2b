"""Systemd service abstraction.

Provides a safe interface for managing the boot-time unit that runs
``sniguard start-container`` / ``stop-container``.
"""

from pathlib import Path
from typing import Optional

from jinja2 import Environment, PackageLoader, select_autoescape

from sniguard.core.context import ExecutionContext
from sniguard.core.executor import CommandExecutor
from sniguard.core.exceptions import ExecutionError, ServiceError
from sniguard.core.fileio import write_text_atomic


# Standard systemd paths
SYSTEMD_SYSTEM_DIR = Path("/etc/systemd/system")

UNIT_TEMPLATE = "systemd/sniguard.service.j2"


def unit_filename(name: str) -> str:
    return name if name.endswith(".service") else f"{name}.service"


def render_unit(
    executable: str,
    container_name: str,
    description: str = "sniguard allow-listed DNS/HTTP/HTTPS proxy",
) -> str:
    """Render the unit file content from its template."""
    env = Environment(
        loader=PackageLoader("sniguard", "templates"),
        autoescape=select_autoescape(),
        trim_blocks=True,
        lstrip_blocks=True,
    )
    template = env.get_template(UNIT_TEMPLATE)
    return template.render(
        executable=executable,
        container_name=container_name,
        description=description,
    )


class SystemdService:
    """Safe interface for managing systemd services.

    All operations respect dry-run mode and log appropriately.
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: CommandExecutor,
        unit_dir: Path = SYSTEMD_SYSTEM_DIR,
    ) -> None:
        """Initialize systemd service manager.

        Args:
            ctx: Execution context
            executor: Command executor
            unit_dir: Directory unit files are installed into
        """
        self.ctx = ctx
        self.executor = executor
        self.unit_dir = unit_dir

    def is_active(self, service: str) -> bool:
        """Check if a service is active (running).

        Args:
            service: Service name

        Returns:
            True if service is active
        """
        result = self.executor.run(
            ["systemctl", "is-active", "--quiet", service],
            check=False,
            read_only=True,
        )
        return result.success

    def is_enabled(self, service: str) -> bool:
        """Check if a service is enabled.

        Args:
            service: Service name

        Returns:
            True if service is enabled
        """
        result = self.executor.run(
            ["systemctl", "is-enabled", "--quiet", service],
            check=False,
            read_only=True,
        )
        return result.success

    def _systemctl(self, action: str, service: str, *, hint: Optional[str] = None, extra: Optional[list[str]] = None) -> None:
        args = ["systemctl", action] + (extra or []) + [service]
        if self.ctx.dry_run:
            self.ctx.console.dry_run_msg(" ".join(args))
            return

        try:
            self.executor.run(args)
        except ExecutionError as e:
            raise ServiceError(
                f"Failed to {action} {service}",
                service=service,
                hint=hint or f"Check logs: journalctl -xeu {service}",
                details=e.details,
            ) from e

    def start(self, service: str, *, description: Optional[str] = None) -> None:
        """Start a service.

        Raises:
            ServiceError: If service fails to start
        """
        self.ctx.console.step(description or f"Starting {service}")
        self._systemctl("start", service)

    def stop(self, service: str, *, description: Optional[str] = None) -> None:
        """Stop a service.

        Raises:
            ServiceError: If service fails to stop
        """
        self.ctx.console.step(description or f"Stopping {service}")
        self._systemctl("stop", service)

    def restart(self, service: str, *, description: Optional[str] = None) -> None:
        """Restart a service.

        Raises:
            ServiceError: If service fails to restart
        """
        self.ctx.console.step(description or f"Restarting {service}")
        self._systemctl("restart", service)

    def enable(
        self,
        service: str,
        *,
        start: bool = False,
        description: Optional[str] = None,
    ) -> None:
        """Enable a service to start on boot.

        Args:
            service: Service name
            start: Also start the service now
            description: Optional description for logging
        """
        self.ctx.console.step(description or f"Enabling {service}")
        self._systemctl("enable", service, extra=["--now"] if start else None)

    def disable(
        self,
        service: str,
        *,
        stop: bool = False,
        description: Optional[str] = None,
    ) -> None:
        """Disable a service from starting on boot.

        Args:
            service: Service name
            stop: Also stop the service now
            description: Optional description for logging
        """
        self.ctx.console.step(description or f"Disabling {service}")
        self._systemctl("disable", service, extra=["--now"] if stop else None)

    def daemon_reload(self) -> None:
        """Reload systemd daemon configuration."""
        self.ctx.console.step("Reloading systemd daemon")

        if self.ctx.dry_run:
            self.ctx.console.dry_run_msg("systemctl daemon-reload")
            return

        self.executor.run(["systemctl", "daemon-reload"])

    def unit_path(self, name: str) -> Path:
        return self.unit_dir / unit_filename(name)

    def install_unit(self, name: str, content: str) -> bool:
        """Write a unit file if its content changed, then reload the daemon.

        Args:
            name: Unit name (e.g., "sniguard" or "sniguard.service")
            content: Content of the unit file

        Returns:
            True if the file was (re)written
        """
        path = self.unit_path(name)

        if path.exists() and path.read_text() == content:
            self.ctx.console.debug(f"Unit unchanged: {path}")
            return False

        if self.ctx.dry_run:
            self.ctx.console.dry_run_msg(f"Write {path}")
            self.ctx.console.dry_run_msg("systemctl daemon-reload")
            return True

        write_text_atomic(path, content, permissions=0o644)
        self.ctx.console.debug(f"Wrote unit: {path}")
        self.daemon_reload()
        return True

    def remove_unit(self, name: str) -> bool:
        """Stop, disable and delete a unit file.

        Returns:
            True if the unit was removed, False if it didn't exist
        """
        name = unit_filename(name)
        path = self.unit_path(name)

        if not path.exists():
            return False

        if self.is_active(name):
            self.stop(name)
        if self.is_enabled(name):
            self.disable(name)

        if self.ctx.dry_run:
            self.ctx.console.dry_run_msg(f"Remove {path}")
            return True

        path.unlink()
        self.daemon_reload()
        return True
