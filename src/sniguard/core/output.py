"""Console output for sniguard, built on Rich.

Regular output goes to stdout and diagnostics (warnings, errors, hints) to
stderr, so ``sniguard list-ips`` stays safe to pipe into other tools.
"""

from enum import IntEnum
from typing import Any, Iterable, Optional

from rich import box
from rich.console import Console as RichConsole, Group
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table


class Verbosity(IntEnum):
    """Output verbosity levels."""
    QUIET = 0    # Errors only
    NORMAL = 1
    VERBOSE = 2  # -v
    DEBUG = 3    # -vv: every host command


# Message prefixes: (minimum verbosity or None for always, style, tag, to stderr)
_LEVELS: dict[str, tuple[Optional[Verbosity], str, str, bool]] = {
    "info": (Verbosity.NORMAL, "green", "[INFO]", False),
    "success": (Verbosity.NORMAL, "green", "[OK]", False),
    "step": (Verbosity.NORMAL, "blue", "->", False),
    "debug": (Verbosity.DEBUG, "cyan", "[DEBUG]", False),
    "warn": (None, "yellow", "[WARN]", True),
    "error": (None, "red", "[ERROR]", True),
    "hint": (None, "cyan", "Hint:", True),
}

# Colours for controller and service states in the status panel
STATE_STYLES = {
    "running": "green",
    "activating": "yellow",
    "deactivating": "yellow",
    "stopped": "red",
}


def _cell(value: Any) -> str:
    if value is None:
        return "[dim]unknown[/dim]"
    if isinstance(value, bool):
        return "[green]yes[/green]" if value else "[red]no[/red]"
    text = str(value)
    style = STATE_STYLES.get(text)
    return f"[{style}]{text}[/{style}]" if style else text


class Console:
    """Shared console with verbosity, colour and dry-run awareness."""

    def __init__(self) -> None:
        self.verbosity = Verbosity.NORMAL
        self.dry_run = False
        self._reset(no_color=False)

    def _reset(self, no_color: bool) -> None:
        self._out = RichConsole(highlight=False, no_color=no_color)
        self._err = RichConsole(stderr=True, highlight=False, no_color=no_color)

    def configure(
        self,
        verbosity: int = Verbosity.NORMAL,
        dry_run: bool = False,
        no_color: bool = False,
    ) -> None:
        """Apply the CLI flags; ``create_context`` has already bounded verbosity."""
        self.verbosity = Verbosity(verbosity)
        self.dry_run = dry_run
        self._reset(no_color)

    def _emit(self, level: str, message: str) -> None:
        minimum, style, tag, to_stderr = _LEVELS[level]
        if minimum is not None and self.verbosity < minimum:
            return
        (self._err if to_stderr else self._out).print(f"[{style}]{tag}[/{style}] {message}")

    def info(self, message: str) -> None:
        self._emit("info", message)

    def success(self, message: str) -> None:
        self._emit("success", message)

    def step(self, message: str) -> None:
        self._emit("step", message)

    def debug(self, message: str) -> None:
        """Only shown with -vv; every host command is echoed here."""
        self._emit("debug", message)

    def warn(self, message: str) -> None:
        self._emit("warn", message)

    def error(self, message: str) -> None:
        self._emit("error", message)

    def hint(self, message: str) -> None:
        self._emit("hint", message)

    def verbose(self, message: str) -> None:
        if self.verbosity >= Verbosity.VERBOSE:
            self._out.print(f"[dim]{message}[/dim]")

    def dry_run_msg(self, message: str) -> None:
        """Describe a change that dry-run mode is skipping."""
        if self.dry_run:
            self._out.print(f"[blue][DRY-RUN][/blue] Would: {message}")

    def print(self, message: Any = "", **kwargs: Any) -> None:
        self._out.print(message, **kwargs)

    def rule(self, title: str = "") -> None:
        self._out.rule(title)

    def addresses(self, addresses: Iterable[str]) -> None:
        """Print addresses one per line with no markup, for scripting."""
        for address in addresses:
            self._out.print(address, markup=False, highlight=False)

    def table(self, title: str, columns: list[str], rows: list[list[str]]) -> None:
        table = Table(title=title, box=box.ROUNDED)
        for column in columns:
            table.add_column(column)
        for row in rows:
            table.add_row(*row)
        self._out.print(table)

    def yaml(self, yaml_text: str, title: str) -> None:
        """Show effective configuration as highlighted YAML."""
        syntax = Syntax(yaml_text, "yaml", theme="monokai", line_numbers=False)
        self._out.print(Panel(syntax, title=title, border_style="cyan"))

    def status_panel(self, title: str, sections: dict[str, list[tuple[str, Any]]]) -> None:
        """Render grouped ``label: value`` rows in one panel.

        Booleans render as yes/no, None as unknown, and known state names
        (running, stopped, ...) in their state colour.
        """
        parts = []
        for heading, rows in sections.items():
            grid = Table.grid(padding=(0, 2))
            grid.add_column(style="bold", min_width=22)
            grid.add_column()
            for label, value in rows:
                grid.add_row(label, _cell(value))
            parts.append(f"[underline]{heading}[/underline]")
            parts.append(grid)
        self._out.print(Panel(Group(*parts), title=title, border_style="blue"))


# Global console instance
console = Console()
