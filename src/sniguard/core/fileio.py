"""Filesystem helpers shared by the config, snapshot and lock code.

Provides:
- Atomic file replacement (temp file + fsync + rename)
- Advisory invocation lock (flock) to serialize concurrent commands
"""

import contextlib
import fcntl
import os
import secrets
import time
from pathlib import Path
from typing import Generator, Optional

from sniguard.core.exceptions import SafetyError


DEFAULT_FILE_PERMS = 0o644
DEFAULT_LOCK_TIMEOUT = 60.0
LOCK_POLL_INTERVAL = 0.2


class AtomicFileWriter:
    """Atomic file writer using temp file and rename.

    Ensures file is either completely written or not modified at all.
    """

    def __init__(
        self,
        target_path: Path,
        permissions: int = DEFAULT_FILE_PERMS,
    ) -> None:
        """Initialize atomic writer.

        Args:
            target_path: Final destination path
            permissions: File permissions to set
        """
        self.target_path = Path(target_path)
        self.permissions = permissions

    @contextlib.contextmanager
    def open(self, mode: str = "w") -> Generator:
        """Open for atomic writing.

        Usage:
            with AtomicFileWriter(path).open() as f:
                f.write("content")
            # File is atomically replaced here
        """
        self.target_path.parent.mkdir(mode=0o755, parents=True, exist_ok=True)

        # Temp file in the same directory so the rename stays on one filesystem
        random_suffix = secrets.token_hex(8)
        tmp_path = self.target_path.with_name(f".{self.target_path.name}.tmp_{random_suffix}")

        success = False
        fd: Optional[int] = None

        try:
            fd = os.open(
                tmp_path,
                os.O_WRONLY | os.O_CREAT | os.O_EXCL,
                self.permissions,
            )

            with os.fdopen(fd, mode) as f:
                fd = None  # fdopen takes ownership
                yield f
                f.flush()
                os.fsync(f.fileno())

            os.replace(tmp_path, self.target_path)
            success = True
        finally:
            if fd is not None:
                os.close(fd)
            if not success and tmp_path.exists():
                tmp_path.unlink()


def write_text_atomic(path: Path, content: str, permissions: int = DEFAULT_FILE_PERMS) -> None:
    """Replace ``path`` with ``content`` atomically."""
    with AtomicFileWriter(path, permissions=permissions).open() as f:
        f.write(content)


@contextlib.contextmanager
def invocation_lock(path: Path, *, timeout: float = DEFAULT_LOCK_TIMEOUT) -> Generator[None, None, None]:
    """Hold an exclusive advisory lock for the duration of a command.

    Two invocations racing on the live ruleset (e.g. two ``add-ip`` calls)
    are serialized here. The rule engine itself is not atomic across
    multiple rule mutations.

    Args:
        path: Lock file path
        timeout: Seconds to wait for a running command to finish

    Raises:
        SafetyError: If the lock is still held after ``timeout`` seconds
    """
    path.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
    fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o600)
    try:
        deadline = time.monotonic() + timeout
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError as e:
                if time.monotonic() >= deadline:
                    raise SafetyError(
                        "Another sniguard command is running",
                        hint=f"Wait for it to finish (lock: {path})",
                    ) from e
                time.sleep(LOCK_POLL_INTERVAL)
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)
