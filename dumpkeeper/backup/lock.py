"""
At-most-one-concurrent guard for backup cycles.

A lock file ``.{prefix}.lock`` is created exclusively inside the output
directory and removed when the cycle ends. It holds ``{hostname} {pid}``
so a lock left behind by a killed process can be recognised as stale.

A marker file ``.{prefix}.cancel`` next to the lock asks the running cycle
to stop; it is cleared whenever the lock is taken or released.
"""

import logging
import os
import socket
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Optional, Tuple

from .errors import CycleInProgress

logger = logging.getLogger(__name__)


def lock_path_for(directory, prefix: str) -> Path:
    """Get the lock file path for an output directory and prefix."""
    return Path(directory) / f".{prefix}.lock"


@contextmanager
def cycle_lock(directory, prefix: str, stale_after: Optional[float] = None):
    """
    Hold the cycle lock for the duration of the block.

    Args:
        directory: Output directory (created if missing)
        prefix: Artifact prefix the lock guards
        stale_after: Seconds after which a lock is considered abandoned

    Raises:
        CycleInProgress: If another live cycle holds the lock
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    path = lock_path_for(directory, prefix)

    _acquire(path, stale_after)
    marker = cancel_marker_path(directory, prefix)
    try:
        # A request addressed to an earlier cycle does not apply to this one
        _unlink_missing_ok(marker)
        yield path
    finally:
        _unlink_missing_ok(marker)
        try:
            path.unlink()
        except FileNotFoundError:
            logger.warning(f"Lock file disappeared before release: {path}")


def cancel_marker_path(directory, prefix: str) -> Path:
    """Get the cancellation marker path for an output directory and prefix."""
    return Path(directory) / f".{prefix}.cancel"


def request_cancel(directory, prefix: str, stale_after: Optional[float] = None) -> bool:
    """
    Ask the cycle holding the lock to stop.

    Works across processes: the running cycle polls for the marker file.

    Returns:
        True if a live cycle holds the lock and the marker was written
    """
    if not is_locked(directory, prefix, stale_after):
        return False
    cancel_marker_path(directory, prefix).touch()
    return True


def cancel_requested(directory, prefix: str) -> bool:
    """Check whether cancellation of the running cycle was requested."""
    return cancel_marker_path(directory, prefix).exists()


def is_locked(directory, prefix: str, stale_after: Optional[float] = None) -> bool:
    """Check whether a live cycle currently holds the lock."""
    path = lock_path_for(directory, prefix)
    if not path.exists():
        return False
    return not _is_stale(path, stale_after)


def _acquire(path: Path, stale_after: Optional[float]):
    # Second attempt only happens after a stale lock was removed
    for _ in range(2):
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            if _is_stale(path, stale_after):
                logger.warning(f"Removing stale backup lock: {path}")
                _unlink_missing_ok(path)
                continue
            holder = _read_holder(path)
            owner = f" (held by {holder[0]} pid {holder[1]})" if holder else ""
            raise CycleInProgress(f"Another backup cycle is in progress{owner}")

        with os.fdopen(fd, 'w') as f:
            f.write(f"{socket.gethostname()} {os.getpid()}\n")
        return

    raise CycleInProgress(f"Could not acquire backup lock: {path}")


def _read_holder(path: Path) -> Optional[Tuple[str, int]]:
    try:
        host, pid = path.read_text().split()
        return host, int(pid)
    except (OSError, ValueError):
        return None


def _is_stale(path: Path, stale_after: Optional[float]) -> bool:
    try:
        age = time.time() - path.stat().st_mtime
    except FileNotFoundError:
        return True

    if stale_after is not None and age > stale_after:
        return True

    holder = _read_holder(path)
    if holder is None:
        # Half-written lock from a process that died between open and write
        return age > 60

    host, pid = holder
    if host != socket.gethostname():
        return False
    return not _pid_alive(pid)


def _unlink_missing_ok(path: Path):
    try:
        path.unlink()
    except FileNotFoundError:
        pass


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
