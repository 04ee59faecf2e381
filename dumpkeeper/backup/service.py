"""
Application-level backup operations.

Builds the cycle collaborators from the Flask config, runs the executor and
keeps the BackupHistory table in step with the artifacts on disk. Every
function here needs an application context.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from flask import current_app

from dumpkeeper import db
from dumpkeeper.models import BackupHistory
from .config import BackupConfig
from .credentials import create_credential_provider
from .errors import BackupError, CycleCancelled, CycleInProgress
from .executor import BackupExecutor
from .lock import cancel_requested, cycle_lock, is_locked, request_cancel
from .producers import create_dump_producer, create_probe
from .record import STATUS_FAILED, BackupRecord, list_artifacts
from .retention import PruneSummary, RetentionManager

logger = logging.getLogger(__name__)

TRIGGERS = ('scheduled', 'manual', 'cli')


def get_backup_config() -> BackupConfig:
    """Build the BackupConfig from the current app's config."""
    return BackupConfig.from_app_config(current_app.config)


def perform_backup(
    trigger: str = 'manual',
    cancellation_check: Optional[Callable[[], None]] = None
) -> Optional[BackupHistory]:
    """
    Run one backup cycle and record it in the history table.

    Args:
        trigger: What started the cycle ('scheduled', 'manual', 'cli')
        cancellation_check: Extra cancellation check (e.g. the CLI signal flag)

    Returns:
        The BackupHistory row, or None if the cycle was skipped because
        another cycle is running

    Raises:
        ValueError: If the trigger or the configuration is invalid
    """
    if trigger not in TRIGGERS:
        raise ValueError(f"Invalid trigger: {trigger}")

    app_config = current_app.config
    config = BackupConfig.from_app_config(app_config)

    def check():
        if cancel_requested(config.output_directory, config.prefix):
            raise CycleCancelled("Backup cancelled by request")
        if cancellation_check:
            cancellation_check()

    executor = BackupExecutor(
        config,
        create_credential_provider(app_config),
        create_dump_producer(app_config),
        create_probe(app_config),
        cancellation_check=check
    )

    started_at = _utcnow()

    try:
        record = executor.execute()
    except CycleInProgress as e:
        logger.warning(f"Backup skipped ({trigger}): {e}")
        return None
    except BackupError as e:
        logger.error(f"Backup failed ({trigger}): {e.kind}: {e}")
        return _save_history(trigger, config, executor, started_at, error=e)
    except Exception as e:
        logger.exception(f"Backup failed with unexpected error ({trigger})")
        return _save_history(trigger, config, executor, started_at, error=e)

    logger.info(f"Backup succeeded ({trigger}): {record.artifact_name}")
    return _save_history(trigger, config, executor, started_at, record=record)


def prune_backups() -> PruneSummary:
    """
    Run retention pruning on its own.

    Raises:
        CycleInProgress: If a backup cycle is running
    """
    config = get_backup_config()
    manager = RetentionManager(config.output_directory, config.prefix, config.retention_days)

    with cycle_lock(config.output_directory, config.prefix, config.lock_stale_after):
        summary = manager.prune()

    _remove_expired_history(summary, config.retention_days)
    db.session.commit()
    return summary


def request_cancellation() -> bool:
    """
    Ask the running cycle to stop at its next checkpoint.

    Returns:
        True if a cycle was running and will be cancelled
    """
    config = get_backup_config()
    return request_cancel(config.output_directory, config.prefix, config.lock_stale_after)


def is_cycle_running() -> bool:
    """Check whether any process currently holds the cycle lock."""
    config = get_backup_config()
    return is_locked(config.output_directory, config.prefix, config.lock_stale_after)


def list_backup_artifacts() -> List[dict]:
    """List artifacts on disk for the configured target, newest first."""
    config = get_backup_config()
    artifacts = list_artifacts(config.output_directory, config.prefix)
    for artifact in artifacts:
        artifact['timestamp'] = artifact['timestamp'].strftime('%Y-%m-%dT%H:%M:%SZ')
    return artifacts


def _save_history(
    trigger: str,
    config: BackupConfig,
    executor: BackupExecutor,
    started_at: datetime,
    record: Optional[BackupRecord] = None,
    error: Optional[Exception] = None
) -> BackupHistory:
    completed_at = _utcnow()

    history = BackupHistory(
        trigger=trigger,
        engine=config.engine,
        started_at=started_at,
        completed_at=completed_at,
        retention_days=config.retention_days,
        warnings='\n'.join(str(w) for w in executor.warnings) or None,
        logs='\n'.join(executor.logs)
    )

    if record is not None:
        history.status = record.status
        history.artifact_name = record.artifact_name
        history.size_bytes = record.size_bytes
        history.duration_seconds = record.duration_seconds
        history.sha256 = record.sha256
    else:
        history.status = STATUS_FAILED
        history.duration_seconds = round((completed_at - started_at).total_seconds(), 2)
        history.error_kind = getattr(error, 'kind', type(error).__name__)
        history.error_message = str(error)

    db.session.add(history)

    if executor.prune_summary is not None:
        _remove_expired_history(executor.prune_summary, config.retention_days)

    db.session.commit()
    return history


def _remove_expired_history(summary: PruneSummary, retention_days: int):
    """Delete rows whose artifact was pruned and failed rows past retention."""
    if summary.removed_files:
        BackupHistory.query.filter(
            BackupHistory.artifact_name.in_(summary.removed_files)
        ).delete(synchronize_session=False)

    cutoff = _utcnow() - timedelta(days=retention_days)
    BackupHistory.query.filter(
        BackupHistory.status == STATUS_FAILED,
        BackupHistory.started_at < cutoff
    ).delete(synchronize_session=False)


def _utcnow() -> datetime:
    # History columns hold naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)
