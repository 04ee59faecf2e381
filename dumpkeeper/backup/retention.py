"""
Retention policy enforcement for backups.

Deletes artifacts, sidecars and leftover raw dumps whose file name timestamp
is more than ``retention_days`` days in the past.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .errors import BackupError, CycleCancelled, PruneFailed
from .record import parse_artifact_name

logger = logging.getLogger(__name__)


@dataclass
class PruneSummary:
    """Outcome of one pruning pass."""

    deleted: List[str] = field(default_factory=list)
    removed_files: List[str] = field(default_factory=list)
    errors: List[PruneFailed] = field(default_factory=list)
    cancelled: bool = False

    def to_dict(self) -> Dict:
        return {
            'deleted': self.deleted,
            'removed_files': self.removed_files,
            'errors': [str(e) for e in self.errors],
            'cancelled': self.cancelled,
        }


class RetentionManager:
    """
    Enforces the retention window on one output directory.

    Files are grouped by the timestamp embedded in their name; a group is
    expired when ``now - timestamp`` is strictly greater than
    ``retention_days``. File modification times are not consulted.
    """

    def __init__(
        self,
        directory,
        prefix: str,
        retention_days: int,
        cancellation_check: Optional[Callable[[], None]] = None
    ):
        """
        Initialize retention manager.

        Args:
            directory: Output directory holding the artifacts
            prefix: Only files named {prefix}-{timestamp}... are considered
            retention_days: Retention window in days
            cancellation_check: Optional function called before each deletion; raises to stop
        """
        self.directory = Path(directory)
        self.prefix = prefix
        self.retention_days = retention_days
        self.cancellation_check = cancellation_check
        self.logs = []

    def find_expired(self, now: Optional[datetime] = None) -> Dict[str, List[Path]]:
        """
        Find expired file groups.

        Args:
            now: Reference instant (defaults to the current UTC time)

        Returns:
            Dict mapping stem to the files sharing it, oldest stem first
        """
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        max_age = timedelta(days=self.retention_days)

        if not self.directory.is_dir():
            return {}

        expired: Dict[str, List[Path]] = {}
        stamps: Dict[str, datetime] = {}

        for path in self.directory.iterdir():
            parsed = parse_artifact_name(self.prefix, path.name)
            if parsed is None or not path.is_file():
                continue

            stem, moment = parsed
            if now - moment > max_age:
                expired.setdefault(stem, []).append(path)
                stamps[stem] = moment

        return {
            stem: sorted(expired[stem])
            for stem in sorted(expired, key=lambda s: stamps[s])
        }

    def prune(self, now: Optional[datetime] = None) -> PruneSummary:
        """
        Delete every expired file group.

        A file that cannot be deleted is recorded as a PruneFailed error and
        the pass continues. Cancellation stops further deletions without
        raising. Running prune twice in a row deletes nothing the second time.

        Returns:
            PruneSummary
        """
        summary = PruneSummary()
        expired = self.find_expired(now)

        self._log(
            f"Retention: {self.retention_days} days, "
            f"{len(expired)} expired backup(s) in {self.directory}"
        )

        for stem, paths in expired.items():
            stem_complete = True

            for path in paths:
                if self._cancelled():
                    summary.cancelled = True
                    self._log("Pruning cancelled, remaining files kept")
                    return summary

                try:
                    path.unlink()
                except FileNotFoundError:
                    # Already gone, nothing to do
                    continue
                except OSError as e:
                    error = PruneFailed(path.name, e.strerror or e)
                    summary.errors.append(error)
                    stem_complete = False
                    self._log(f"Warning: {error}")
                    continue

                summary.removed_files.append(path.name)
                self._log(f"Deleted expired file: {path.name}")

            if stem_complete:
                summary.deleted.append(stem)

        self._log(
            f"Retention enforcement complete. "
            f"Deleted: {len(summary.deleted)}, Errors: {len(summary.errors)}"
        )
        return summary

    def _cancelled(self) -> bool:
        if self.cancellation_check is None:
            return False
        try:
            self.cancellation_check()
        except CycleCancelled:
            return True
        except BackupError as e:
            # Any other backup error from the check also means stop
            logger.warning(f"Cancellation check failed during pruning: {e}")
            return True
        return False

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)


def prune_directory(
    directory,
    prefix: str,
    retention_days: int,
    now: Optional[datetime] = None
) -> PruneSummary:
    """
    Prune one output directory.

    Returns:
        PruneSummary from RetentionManager.prune()
    """
    manager = RetentionManager(directory, prefix, retention_days)
    return manager.prune(now)
