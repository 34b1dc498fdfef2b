"""Execution context for commands.

The ExecutionContext holds the current state and flags that affect
how commands are executed. It is passed to all services and used by
the executor and output systems.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from sniguard.core.config import AppConfig
from sniguard.core.output import Console, console, Verbosity


@dataclass
class ExecutionContext:
    """Execution context passed to all services.

    Attributes:
        dry_run: If True, show what would happen without executing
        force: If True, skip precondition checks where a command allows it
        verbosity: Output verbosity level (0-3)
        no_color: If True, disable colored output
        options_path: Options file override
    """

    # Runtime flags
    dry_run: bool = False
    force: bool = False
    verbosity: int = 1
    no_color: bool = False

    # Configuration
    options_path: Optional[Path] = None

    # Internal state (initialized lazily)
    _config: Optional[AppConfig] = field(default=None, repr=False)
    _console: Console = field(default_factory=lambda: console, repr=False)

    def __post_init__(self) -> None:
        """Configure console after initialization."""
        self._console.configure(
            verbosity=self.verbosity,
            dry_run=self.dry_run,
            no_color=self.no_color,
        )

    @property
    def config(self) -> AppConfig:
        """Get application configuration (lazy loaded)."""
        if self._config is None:
            self._config = AppConfig(options_path=self.options_path)
        return self._config

    @property
    def console(self) -> Console:
        """Get console for output."""
        return self._console

    @property
    def is_verbose(self) -> bool:
        """Check if verbose output is enabled."""
        return self.verbosity >= Verbosity.VERBOSE


def create_context(
    dry_run: bool = False,
    force: bool = False,
    verbose: int = 0,
    quiet: bool = False,
    no_color: bool = False,
    options_path: Optional[Path] = None,
) -> ExecutionContext:
    """Create an execution context from CLI options.

    Args:
        dry_run: Preview changes without executing
        force: Skip precondition checks
        verbose: Increase verbosity (can be repeated)
        quiet: Suppress non-essential output
        no_color: Disable colored output
        options_path: Options file override

    Returns:
        Configured execution context
    """
    if quiet:
        verbosity = Verbosity.QUIET
    else:
        verbosity = min(Verbosity.NORMAL + verbose, Verbosity.DEBUG)

    return ExecutionContext(
        dry_run=dry_run,
        force=force,
        verbosity=verbosity,
        no_color=no_color,
        options_path=options_path,
    )
