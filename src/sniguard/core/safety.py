"""Safety framework for privileged operations.

Provides:
- Root privilege guard
- Pre-flight checks before the service is started
"""

import os
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from functools import wraps
from typing import Any, Callable, Optional

import typer

from sniguard.core.exceptions import PrerequisiteError
from sniguard.core.output import console


# Exit code for missing privileges, shared with PrerequisiteError
ROOT_REQUIRED_EXIT_CODE = 6


class CheckResult(Enum):
    """Result of a pre-flight check."""
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


@dataclass(frozen=True)
class PreflightResult:
    """Immutable result of a pre-flight check."""
    check_name: str
    result: CheckResult
    message: str
    remediation: Optional[str] = None


class PreflightCheck(ABC):
    """Base class for all pre-flight checks."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable name of the check."""
        ...

    @property
    @abstractmethod
    def critical(self) -> bool:
        """If True, failure blocks the operation."""
        ...

    @abstractmethod
    def run(self) -> PreflightResult:
        """Execute the check and return result."""
        ...


class RootCheck(PreflightCheck):
    """Verify we are running as root."""

    name = "Root Privileges"
    critical = True

    def run(self) -> PreflightResult:
        if os.geteuid() != 0:
            return PreflightResult(
                check_name=self.name,
                result=CheckResult.FAIL,
                message="Must be run as root",
                remediation="Run with: sudo sniguard <command>",
            )
        return PreflightResult(
            check_name=self.name,
            result=CheckResult.PASS,
            message="Running with root privileges",
        )


class ToolCheck(PreflightCheck):
    """Verify a required binary is on PATH."""

    critical = True

    def __init__(self, tool: str, package: Optional[str] = None) -> None:
        self.tool = tool
        self.package = package or tool

    @property
    def name(self) -> str:
        return f"{self.tool} available"

    def run(self) -> PreflightResult:
        if shutil.which(self.tool) is None:
            return PreflightResult(
                check_name=self.name,
                result=CheckResult.FAIL,
                message=f"{self.tool} not found on PATH",
                remediation=f"Install the {self.package} package",
            )
        return PreflightResult(
            check_name=self.name,
            result=CheckResult.PASS,
            message=f"{self.tool} found",
        )


class PreflightRunner:
    """Orchestrates pre-flight checks."""

    def __init__(self, checks: list[PreflightCheck]) -> None:
        self.checks = checks

    def run_all(self, fail_fast: bool = True) -> list[PreflightResult]:
        """Run all pre-flight checks.

        Args:
            fail_fast: If True, stop on first critical failure

        Returns:
            List of all check results
        """
        results = []

        for check in self.checks:
            result = check.run()
            results.append(result)

            if fail_fast and check.critical and result.result == CheckResult.FAIL:
                break

        return results

    def all_passed(self, results: list[PreflightResult]) -> bool:
        """Check if no check failed."""
        return not any(r.result == CheckResult.FAIL for r in results)

    def display_results(self, results: list[PreflightResult]) -> None:
        """Display pre-flight check results."""
        console.print()
        console.rule("Pre-flight Checks")

        for result in results:
            if result.result == CheckResult.PASS:
                status = "[green]PASS[/green]"
            elif result.result == CheckResult.WARN:
                status = "[yellow]WARN[/yellow]"
            else:
                status = "[red]FAIL[/red]"

            console.print(f"  {status} {result.check_name}: {result.message}")

            if result.remediation and result.result != CheckResult.PASS:
                console.print(f"        [dim]Fix: {result.remediation}[/dim]")

        console.print()


def default_checks(manage_iptables: bool) -> list[PreflightCheck]:
    """Checks needed before the controller can start the service."""
    checks: list[PreflightCheck] = [
        RootCheck(),
        ToolCheck("docker", "docker.io"),
        ToolCheck("ip", "iproute2"),
    ]
    if manage_iptables:
        checks.append(ToolCheck("iptables"))
        checks.append(ToolCheck("ip6tables", "iptables"))
    return checks


def run_preflight_checks(
    manage_iptables: bool = True,
    dry_run: bool = False,
    verbose: bool = False,
) -> bool:
    """Run pre-flight checks and return success status.

    Args:
        manage_iptables: Also require iptables/ip6tables
        dry_run: Skip checks in dry-run mode
        verbose: Show detailed check results

    Returns:
        True if all checks passed

    Raises:
        PrerequisiteError: If critical checks fail
    """
    if dry_run:
        console.verbose("Skipping pre-flight checks in dry-run mode")
        return True

    runner = PreflightRunner(default_checks(manage_iptables))
    results = runner.run_all()

    if verbose:
        runner.display_results(results)

    if not runner.all_passed(results):
        failures = [r for r in results if r.result == CheckResult.FAIL]
        raise PrerequisiteError(
            "Pre-flight checks failed",
            details=[f"{r.check_name}: {r.message}" for r in failures],
            hint=failures[0].remediation or "Fix the issues above and try again",
        )

    return True


def require_root(func: Callable[..., Any]) -> Callable[..., Any]:
    """Decorator that requires root privileges.

    Runs before any core operation so an unprivileged invocation never
    touches the ruleset, the container or the allow-list file.
    """
    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        if os.geteuid() != 0:
            console.error("This operation requires root privileges")
            console.hint("Run with: sudo sniguard <command>")
            raise typer.Exit(ROOT_REQUIRED_EXIT_CODE)
        return func(*args, **kwargs)
    return wrapper
