"""Audit trail for commands that change the host.

Every mutating command appends one JSON line. Allow-list records also carry
the address family and the accept rule that was inserted or deleted, so the
log alone answers "who let this address through, and with which rule".
"""

import fcntl
import json
import os
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from sniguard.core.exceptions import NotActiveError, SniguardError
from sniguard.core.output import console


MAX_LOG_BYTES = 20 * 1024 * 1024
KEPT_ROTATIONS = 5


class AuditEventType(Enum):
    """Auditable actions."""
    SERVICE_START = "service.start"
    SERVICE_STOP = "service.stop"
    SERVICE_RESTART = "service.restart"
    SERVICE_ENABLE = "service.enable"
    SERVICE_DISABLE = "service.disable"
    CONTAINER_START = "container.start"
    CONTAINER_STOP = "container.stop"
    ALLOWLIST_ADD = "allowlist.add"
    ALLOWLIST_REMOVE = "allowlist.remove"
    CONFIG_MODIFY = "config.modify"


class AuditResult(Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    BLOCKED = "blocked"  # refused because the controller was not active
    DRY_RUN = "dry_run"


@dataclass
class AuditRecord:
    """One line of the audit log."""
    event_type: str
    result: str
    target: str
    message: Optional[str] = None
    family: Optional[str] = None
    rule: Optional[str] = None
    uid: int = field(default_factory=os.getuid)
    sudo_user: Optional[str] = field(default_factory=lambda: os.environ.get("SUDO_USER"))
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    session: str = ""

    def to_json(self) -> str:
        """Serialize, leaving out fields that do not apply to the event."""
        return json.dumps({k: v for k, v in asdict(self).items() if v is not None})


class AuditLog:
    """Append-only JSON-lines file, rotated by size into ``<name>.1`` ... ``<name>.N``.

    A log that cannot be written never fails the command being recorded.
    """

    def __init__(
        self,
        path: Path,
        max_bytes: int = MAX_LOG_BYTES,
        rotations: int = KEPT_ROTATIONS,
    ) -> None:
        self.path = path
        self.max_bytes = max_bytes
        self.rotations = rotations
        self.session = uuid.uuid4().hex[:12]

    def record(
        self,
        event_type: AuditEventType,
        result: AuditResult,
        target: str,
        *,
        message: Optional[str] = None,
        family: Optional[str] = None,
        rule: Optional[str] = None,
    ) -> AuditRecord:
        entry = AuditRecord(
            event_type=event_type.value,
            result=result.value,
            target=target,
            message=message,
            family=family,
            rule=rule,
            session=self.session,
        )
        try:
            self._append(entry.to_json() + "\n")
            if self.path.stat().st_size > self.max_bytes:
                self._rotate()
        except OSError as e:
            console.debug(f"Audit log not written ({self.path}): {e}")
        return entry

    def outcome(
        self,
        event_type: AuditEventType,
        target: str,
        *,
        dry_run: bool,
        **details: Optional[str],
    ) -> AuditRecord:
        """Record a completed command; dry runs are marked as such."""
        result = AuditResult.DRY_RUN if dry_run else AuditResult.SUCCESS
        return self.record(event_type, result, target, **details)

    def error(
        self,
        event_type: AuditEventType,
        target: str,
        error: SniguardError,
        **details: Optional[str],
    ) -> AuditRecord:
        """Record a failed command; an inactive controller counts as blocked."""
        result = AuditResult.BLOCKED if isinstance(error, NotActiveError) else AuditResult.FAILURE
        return self.record(event_type, result, target, message=error.message, **details)

    def _append(self, line: str) -> None:
        self.path.parent.mkdir(mode=0o750, parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o640)
        with os.fdopen(fd, "a") as f:
            fcntl.flock(f, fcntl.LOCK_EX)
            f.write(line)
            f.flush()
            os.fsync(f.fileno())

    def _rotated(self, n: int) -> Path:
        return self.path.with_name(f"{self.path.name}.{n}")

    def _rotate(self) -> None:
        self._rotated(self.rotations).unlink(missing_ok=True)
        for n in range(self.rotations - 1, 0, -1):
            if self._rotated(n).exists():
                self._rotated(n).rename(self._rotated(n + 1))
        self.path.rename(self._rotated(1))
