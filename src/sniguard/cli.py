"""Main CLI entry point using Typer.

Every command except ``--version`` and ``--help`` requires root. Mutating
commands hold the invocation lock and write one audit record each.
"""

from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console

from sniguard import __version__
from sniguard.core.audit import AuditEventType, AuditLog
from sniguard.core.config import DEFAULT_OPTIONS_PATH, OPTION_DESCRIPTIONS
from sniguard.core.context import ExecutionContext, create_context
from sniguard.core.exceptions import SniguardError
from sniguard.core.executor import CommandExecutor
from sniguard.core.fileio import invocation_lock
from sniguard.core.output import console as app_console
from sniguard.core.safety import require_root, run_preflight_checks
from sniguard.core.validation import AllowEntry, parse_allow_entry
from sniguard.services.docker import DockerService
from sniguard.services.allowlist import accept_rule
from sniguard.services.orchestrator import Firewall, ServiceOrchestrator, build_firewall
from sniguard.services.systemd import SystemdService, render_unit


app = typer.Typer(
    name="sniguard",
    help="Allow-listed DNS/HTTP/HTTPS proxy with an iptables front end.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_enable=True,
    pretty_exceptions_show_locals=False,
)


# Type aliases for common options
DryRunOption = Annotated[
    bool,
    typer.Option(
        "--dry-run",
        help="Preview changes without executing. Shows what would happen.",
        is_flag=True,
    ),
]

VerboseOption = Annotated[
    int,
    typer.Option(
        "--verbose",
        "-v",
        count=True,
        help="Increase output verbosity. Can be repeated (-v, -vv).",
    ),
]

QuietOption = Annotated[
    bool,
    typer.Option(
        "--quiet",
        "-q",
        help="Suppress non-essential output. Only show errors.",
        is_flag=True,
    ),
]

NoColorOption = Annotated[
    bool,
    typer.Option(
        "--no-color",
        help="Disable colored output.",
        is_flag=True,
    ),
]

ConfigOption = Annotated[
    Optional[Path],
    typer.Option(
        "--config",
        "-c",
        help=f"Path to the options file. Default: {DEFAULT_OPTIONS_PATH}",
        exists=False,
        file_okay=True,
        dir_okay=False,
    ),
]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console = Console()
        console.print(f"sniguard version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """Allow-listed DNS/HTTP/HTTPS proxy with an iptables front end.

    The proxy's ports are rejected for everyone except the addresses on the
    allow-list, over both IPv4 and IPv6.

    [bold]Examples:[/bold]
        sudo sniguard start
        sudo sniguard add-ip 203.0.113.5
        sudo sniguard add-ip 2001:db8::/64
        sudo sniguard list-ips
        sudo sniguard set-config dns_servers "9.9.9.9 149.112.112.112"
    """
    pass


def get_context(
    dry_run: bool = False,
    force: bool = False,
    verbose: int = 0,
    quiet: bool = False,
    no_color: bool = False,
    config: Optional[Path] = None,
) -> ExecutionContext:
    """Create execution context from CLI options."""
    return create_context(
        dry_run=dry_run,
        force=force,
        verbose=verbose,
        quiet=quiet,
        no_color=no_color,
        options_path=config,
    )


def handle_error(error: SniguardError) -> None:
    """Handle a SniguardError by printing formatted error and exiting."""
    app_console.error(error.message)

    if error.details:
        for detail in error.details:
            app_console.print(f"  [dim]{detail}[/dim]")

    if error.hint:
        app_console.hint(error.hint)

    raise typer.Exit(error.exit_code)


def _firewall(ctx: ExecutionContext) -> tuple[CommandExecutor, Firewall]:
    executor = CommandExecutor(ctx)
    return executor, build_firewall(ctx, executor)


def _rule_text(firewall: Firewall, entry: AllowEntry) -> str:
    return str(accept_rule(firewall.controller.inspectors[entry.family], entry))


def _orchestrator(ctx: ExecutionContext) -> ServiceOrchestrator:
    executor, firewall = _firewall(ctx)
    return ServiceOrchestrator(ctx, firewall, DockerService(ctx, executor))


def _install_unit(ctx: ExecutionContext, systemd: SystemdService) -> str:
    """Write (or refresh) the boot unit. Returns the unit name."""
    settings = ctx.config.settings
    content = render_unit(settings.executable, settings.container_name)
    if systemd.install_unit(settings.unit_name, content):
        ctx.console.verbose(f"Installed unit {settings.unit_name}")
    return settings.unit_name


# ============================================================================
# Service commands (boot unit)
# ============================================================================

def _unit_command(
    action: str,
    event_type: AuditEventType,
    *,
    now: bool = False,
    purge: bool = False,
    dry_run: bool,
    verbose: int,
    quiet: bool,
    no_color: bool,
    config: Optional[Path],
) -> None:
    ctx = get_context(dry_run=dry_run, verbose=verbose, quiet=quiet, no_color=no_color, config=config)
    audit = AuditLog(ctx.config.settings.audit_log)
    unit = "sniguard"

    try:
        systemd = SystemdService(ctx, CommandExecutor(ctx), unit_dir=ctx.config.settings.unit_dir)
        unit = ctx.config.settings.unit_name

        if action == "disable":
            systemd.disable(unit, stop=now)
            if purge and systemd.remove_unit(unit):
                ctx.console.verbose(f"Removed unit {unit}")
        else:
            _install_unit(ctx, systemd)
            if action == "start":
                systemd.start(unit)
            elif action == "stop":
                systemd.stop(unit)
            elif action == "restart":
                systemd.restart(unit)
            elif action == "enable":
                systemd.enable(unit, start=now)

        audit.outcome(event_type, unit, dry_run=ctx.dry_run)
        ctx.console.success(f"{unit}: {action} done")

    except SniguardError as e:
        audit.error(event_type, unit, e)
        handle_error(e)


@app.command("start")
@require_root
def start(
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Start the proxy through its systemd unit.

    The unit is installed or refreshed first.
    """
    _unit_command("start", AuditEventType.SERVICE_START, dry_run=dry_run,
                  verbose=verbose, quiet=quiet, no_color=no_color, config=config)


@app.command("stop")
@require_root
def stop(
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Stop the proxy through its systemd unit."""
    _unit_command("stop", AuditEventType.SERVICE_STOP, dry_run=dry_run,
                  verbose=verbose, quiet=quiet, no_color=no_color, config=config)


@app.command("restart")
@require_root
def restart(
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Restart the proxy, rebuilding the firewall chains."""
    _unit_command("restart", AuditEventType.SERVICE_RESTART, dry_run=dry_run,
                  verbose=verbose, quiet=quiet, no_color=no_color, config=config)


@app.command("enable")
@require_root
def enable(
    now: Annotated[bool, typer.Option("--now", help="Also start the proxy now.")] = False,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Start the proxy at boot."""
    _unit_command("enable", AuditEventType.SERVICE_ENABLE, now=now, dry_run=dry_run,
                  verbose=verbose, quiet=quiet, no_color=no_color, config=config)


@app.command("disable")
@require_root
def disable(
    now: Annotated[bool, typer.Option("--now", help="Also stop the proxy now.")] = False,
    purge: Annotated[
        bool,
        typer.Option("--purge", help="Also delete the unit file (stops the proxy if it runs)."),
    ] = False,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Do not start the proxy at boot."""
    _unit_command("disable", AuditEventType.SERVICE_DISABLE, now=now, purge=purge, dry_run=dry_run,
                  verbose=verbose, quiet=quiet, no_color=no_color, config=config)


@app.command("status")
@require_root
def status(
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Show container, firewall and allow-list state."""
    ctx = get_context(verbose=verbose, no_color=no_color, config=config)

    try:
        orchestrator = _orchestrator(ctx)
        state = orchestrator.status()

        systemd = SystemdService(ctx, CommandExecutor(ctx), unit_dir=ctx.config.settings.unit_dir)
        unit = ctx.config.settings.unit_name
        state.unit_active = systemd.is_active(unit)
        state.unit_enabled = systemd.is_enabled(unit)

        ctx.console.status_panel("sniguard", {
            "Service": [
                ("State", state.state.value),
                ("Container running", state.container_running),
                ("Unit active", state.unit_active),
                ("Unit enabled", state.unit_enabled),
            ],
            "Firewall": [
                ("iptables managed", state.manage_iptables),
                *[(f"{family.label} chains active", up) for family, up in state.chains_active.items()],
                ("Allowed addresses", len(state.allowed)),
                ("Persisted entries", len(state.persisted)),
                ("IPv6 NAT rules", state.nat_rules),
            ],
        })

        if state.allowed and ctx.is_verbose:
            ctx.console.table(
                "Allowed addresses",
                ["Address", "Family"],
                [[entry.address, entry.family.label] for entry in state.allowed],
            )

    except SniguardError as e:
        handle_error(e)


# ============================================================================
# Allow-list commands
# ============================================================================

@app.command("add-ip")
@require_root
def add_ip(
    address: Annotated[str, typer.Argument(help="IPv4/IPv6 address, optionally with /prefix")],
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Allow a client address (or network) through the firewall.

    [bold]Examples:[/bold]

        sudo sniguard add-ip 203.0.113.5
        sudo sniguard add-ip 198.51.100.0/24
        sudo sniguard add-ip 2001:db8::1
    """
    ctx = get_context(dry_run=dry_run, verbose=verbose, quiet=quiet, no_color=no_color, config=config)
    audit = AuditLog(ctx.config.settings.audit_log)

    try:
        entry = parse_allow_entry(address)

        with invocation_lock(ctx.config.settings.lock_file, timeout=ctx.config.settings.lock_timeout):
            _, firewall = _firewall(ctx)
            firewall.controller.allow(entry)

        audit.outcome(
            AuditEventType.ALLOWLIST_ADD,
            entry.address,
            dry_run=ctx.dry_run,
            family=entry.family.label,
            rule=_rule_text(firewall, entry),
        )

    except SniguardError as e:
        audit.error(AuditEventType.ALLOWLIST_ADD, address, e)
        handle_error(e)


@app.command("remove-ip")
@require_root
def remove_ip(
    address: Annotated[str, typer.Argument(help="IPv4/IPv6 address, optionally with /prefix")],
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Remove a client address (or network) from the allow-list.

    Removing an address that is not allowed is not an error.
    """
    ctx = get_context(dry_run=dry_run, verbose=verbose, quiet=quiet, no_color=no_color, config=config)
    audit = AuditLog(ctx.config.settings.audit_log)

    try:
        entry = parse_allow_entry(address)

        with invocation_lock(ctx.config.settings.lock_file, timeout=ctx.config.settings.lock_timeout):
            _, firewall = _firewall(ctx)
            firewall.controller.disallow(entry)

        audit.outcome(
            AuditEventType.ALLOWLIST_REMOVE,
            entry.address,
            dry_run=ctx.dry_run,
            family=entry.family.label,
            rule=_rule_text(firewall, entry),
        )

    except SniguardError as e:
        audit.error(AuditEventType.ALLOWLIST_REMOVE, address, e)
        handle_error(e)


@app.command("list-ips")
@require_root
def list_ips(
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """List allowed addresses, one per line (IPv4 first)."""
    ctx = get_context(verbose=verbose, quiet=quiet, no_color=no_color, config=config)

    try:
        _, firewall = _firewall(ctx)
        if not firewall.controller.active_families():
            ctx.console.warn("Firewall chains are not active")
            ctx.console.hint("Start the service first: sniguard start")
            return

        ctx.console.addresses(entry.address for entry in firewall.controller.list())

    except SniguardError as e:
        handle_error(e)


# ============================================================================
# Configuration commands
# ============================================================================

@app.command("get-config")
@require_root
def get_config(
    key: Annotated[Optional[str], typer.Argument(help="Option to show (all options if omitted)")] = None,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Show configuration options.

    [bold]Known options:[/bold]

        dns_servers      Upstream DNS servers for the proxy
        manage_iptables  Create and remove the firewall chains (yes/no)
        ipv6_nat         Masquerade the container's IPv6 subnet (yes/no)
    """
    ctx = get_context(no_color=no_color, config=config)

    try:
        if key:
            ctx.console.print(ctx.config.get(key), markup=False)
            return

        ctx.console.yaml(ctx.config.to_yaml(), title=str(ctx.config.options_file.path))

    except SniguardError as e:
        handle_error(e)


@app.command("set-config")
@require_root
def set_config(
    key: Annotated[str, typer.Argument(help=f"Option name ({', '.join(OPTION_DESCRIPTIONS)})")],
    value: Annotated[Optional[str], typer.Argument(help="New value")] = None,
    unset: Annotated[bool, typer.Option("--unset", help="Remove the option so its default applies.")] = False,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Set (or --unset) a configuration option.

    Changes take effect on the next restart.
    """
    ctx = get_context(dry_run=dry_run, verbose=verbose, no_color=no_color, config=config)
    audit = AuditLog(ctx.config.settings.audit_log)

    if not unset and value is None:
        ctx.console.error("Missing VALUE")
        ctx.console.hint("Usage: sniguard set-config KEY VALUE, or --unset KEY")
        raise typer.Exit(2)

    try:
        if ctx.dry_run:
            ctx.console.dry_run_msg(f"Unset {key}" if unset else f"Set {key}={value}")
            audit.outcome(AuditEventType.CONFIG_MODIFY, key, dry_run=ctx.dry_run)
            return

        with invocation_lock(ctx.config.settings.lock_file, timeout=ctx.config.settings.lock_timeout):
            if unset:
                if ctx.config.unset(key):
                    ctx.console.success(f"Unset {key}; default applies")
                else:
                    ctx.console.info(f"{key} was not set")
                message = "unset"
            else:
                normalized = ctx.config.set(key, value)
                ctx.console.success(f"{key}={normalized}")
                message = normalized

        audit.outcome(AuditEventType.CONFIG_MODIFY, key, dry_run=ctx.dry_run, message=message)
        ctx.console.hint("Run 'sniguard restart' to apply")

    except SniguardError as e:
        audit.error(AuditEventType.CONFIG_MODIFY, key, e)
        handle_error(e)


# ============================================================================
# Container entry points (invoked by the systemd unit)
# ============================================================================

@app.command("start-container")
@require_root
def start_container(
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Activate the firewall and start the proxy container."""
    ctx = get_context(dry_run=dry_run, verbose=verbose, quiet=quiet, no_color=no_color, config=config)
    audit = AuditLog(ctx.config.settings.audit_log)
    name = "sniguard"

    try:
        name = ctx.config.settings.container_name
        run_preflight_checks(
            manage_iptables=ctx.config.manage_iptables,
            dry_run=ctx.dry_run,
            verbose=ctx.is_verbose,
        )

        with invocation_lock(ctx.config.settings.lock_file, timeout=ctx.config.settings.lock_timeout):
            _orchestrator(ctx).start()

        audit.outcome(AuditEventType.CONTAINER_START, name, dry_run=ctx.dry_run)
        ctx.console.success(f"{name} running")

    except SniguardError as e:
        audit.error(AuditEventType.CONTAINER_START, name, e)
        handle_error(e)


@app.command("stop-container")
@require_root
def stop_container(
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Tear down rules even if the container is not running."),
    ] = False,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Stop the proxy container and remove the firewall chains."""
    ctx = get_context(dry_run=dry_run, force=force, verbose=verbose, quiet=quiet, no_color=no_color, config=config)
    audit = AuditLog(ctx.config.settings.audit_log)
    name = "sniguard"

    try:
        name = ctx.config.settings.container_name

        with invocation_lock(ctx.config.settings.lock_file, timeout=ctx.config.settings.lock_timeout):
            _orchestrator(ctx).stop(force=ctx.force)

        audit.outcome(AuditEventType.CONTAINER_STOP, name, dry_run=ctx.dry_run)
        ctx.console.success(f"{name} stopped")

    except SniguardError as e:
        audit.error(AuditEventType.CONTAINER_STOP, name, e)
        handle_error(e)


if __name__ == "__main__":
    app()
