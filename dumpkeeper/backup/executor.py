"""
Backup executor - orchestrates one backup cycle.

Workflow:
1. Acquire the dump credential
2. Probe the target
3. Stream a full dump to {prefix}-{timestamp}.{ext}
4. Compress the dump in place
5. Write the metadata sidecar (non-fatal)
6. Prune expired backups (non-fatal)

Steps 1-4 are fatal: the first failure aborts the cycle, every file the
cycle created is removed and the error propagates to the caller.
"""

import logging
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional

from .compression import compress_file, get_file_size
from .config import BackupConfig
from .credentials import CredentialProvider
from .errors import (
    BackupError, CompressionFailed, CredentialUnavailable, DumpFailed,
    MetadataWriteFailed, redact
)
from .lock import cycle_lock
from .producers import ConnectivityProbe, DumpProducer
from .record import STATUS_SUCCESS, BackupRecord, artifact_stem, file_sha256, write_sidecar
from .retention import PruneSummary, RetentionManager

logger = logging.getLogger(__name__)


class BackupExecutor:
    """
    Runs the backup workflow for one BackupConfig.

    An executor instance runs a single cycle. After ``execute`` returns or
    raises, ``logs``, ``warnings`` and ``prune_summary`` describe what
    happened.
    """

    def __init__(
        self,
        config: BackupConfig,
        credentials: CredentialProvider,
        producer: DumpProducer,
        probe: ConnectivityProbe,
        cancellation_check: Optional[Callable[[], None]] = None
    ):
        """
        Initialize backup executor.

        Args:
            config: Cycle configuration
            credentials: Credential provider queried once per cycle
            producer: Dump producer
            probe: Connectivity probe
            cancellation_check: Optional function that raises CycleCancelled to stop the cycle
        """
        self.config = config
        self.credentials = credentials
        self.producer = producer
        self.probe = probe
        self.cancellation_check = cancellation_check
        self.logs: List[str] = []
        self.warnings: List[BackupError] = []
        self.prune_summary: Optional[PruneSummary] = None
        self.started_at: Optional[datetime] = None
        self._created: List[Path] = []
        self._credential: Optional[str] = None

    def execute(self) -> BackupRecord:
        """
        Execute one backup cycle.

        Returns:
            Success BackupRecord

        Raises:
            CycleInProgress: If another cycle holds the lock (nothing is created)
            BackupError: The first fatal step error
        """
        config = self.config
        self._prepare_directory()

        with cycle_lock(config.output_directory, config.prefix, config.lock_stale_after):
            self.started_at = datetime.now(timezone.utc).replace(microsecond=0)
            self._log(
                f"Starting {config.engine} backup of "
                f"{config.target_host}:{config.target_port}"
            )

            try:
                record = self._run_steps()
            except BaseException as e:
                self._cleanup()
                if isinstance(e, BackupError):
                    self._log(f"Backup failed ({e.kind}): {e}")
                else:
                    self._log(f"Backup aborted: {type(e).__name__}")
                raise
            finally:
                self._credential = None

            # The artifact is complete from here on and is never rolled back
            self._created = []
            self._prune()

            self._log(
                f"Backup completed successfully: {record.artifact_name} "
                f"({record.size_mb} MB in {record.duration_seconds}s)"
            )
            return record

    def _run_steps(self) -> BackupRecord:
        config = self.config

        # Step 1: Credential
        self._log(f"Fetching credential: {config.credential_name}")
        self._credential = self._acquire_credential()

        # Step 2: Connectivity
        self._check_cancelled()
        self._log(f"Checking connectivity to {config.target_host}:{config.target_port}")
        self.probe.check(config, self._credential)

        # Step 3: Dump
        self._check_cancelled()
        dump_started = time.monotonic()
        raw_path = self._dump()
        dump_duration = round(time.monotonic() - dump_started, 2)

        # Step 4: Compress
        self._check_cancelled()
        self._log(f"Compressing backup ({config.compression_format})")
        artifact_path = compress_file(raw_path, config.compression_format, self.cancellation_check)
        self._created.append(artifact_path)

        size_bytes = get_file_size(artifact_path)
        try:
            checksum = file_sha256(artifact_path)
        except OSError as e:
            raise CompressionFailed(f"Cannot read {artifact_path.name}: {e}") from e

        record = BackupRecord(
            timestamp=self.started_at,
            artifact_path=artifact_path,
            size_bytes=size_bytes,
            duration_seconds=dump_duration,
            status=STATUS_SUCCESS,
            retention_days=config.retention_days,
            database_host=config.target_host,
            database_port=config.target_port,
            engine=config.engine,
            sha256=checksum,
        )
        self._log(f"Backup file: {artifact_path.name} ({record.size_mb} MB)")

        # Step 5: Metadata
        self._check_cancelled()
        self._write_metadata(record)

        return record

    def _prepare_directory(self):
        directory = self.config.output_directory
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DumpFailed(f"Cannot create output directory {directory}: {e}") from e
        if not os.access(directory, os.W_OK):
            raise DumpFailed(f"Output directory is not writable: {directory}")

    def _acquire_credential(self) -> str:
        name = self.config.credential_name

        try:
            credential = self.credentials.lookup(name)
        except BackupError:
            raise
        except Exception as e:
            raise CredentialUnavailable(f"Credential lookup for {name} failed: {e}") from e

        if not credential:
            raise CredentialUnavailable(
                f"Credential {name} not found in {self.credentials.description}"
            )
        return credential

    def _dump(self) -> Path:
        config = self.config
        stem = artifact_stem(config.prefix, self.started_at)
        raw_path = config.output_directory / f"{stem}.{config.dump_extension}"

        existing = sorted(p.name for p in config.output_directory.glob(f"{stem}.*"))
        if existing:
            raise DumpFailed(f"Backup files for {stem} already exist: {', '.join(existing)}")

        self._log(f"Dumping to {raw_path.name}")

        try:
            stream = open(raw_path, 'xb')
        except FileExistsError:
            raise DumpFailed(f"Backup file already exists: {raw_path.name}")
        except OSError as e:
            raise DumpFailed(f"Cannot create {raw_path.name}: {e}") from e

        self._created.append(raw_path)

        with stream:
            try:
                self.producer.dump(config, self._credential, stream, self.cancellation_check)
            except BackupError:
                raise
            except Exception as e:
                raise DumpFailed(f"Dump failed: {redact(e, self._credential)}") from e

        if raw_path.stat().st_size == 0:
            raise DumpFailed("Dump produced an empty file")

        return raw_path

    def _write_metadata(self, record: BackupRecord):
        try:
            path = write_sidecar(record)
        except MetadataWriteFailed as e:
            self._warn(e)
            return
        self._created.append(path)
        self._log(f"Metadata written: {path.name}")

    def _prune(self):
        manager = RetentionManager(
            self.config.output_directory,
            self.config.prefix,
            self.config.retention_days,
            cancellation_check=self.cancellation_check
        )

        try:
            self.prune_summary = manager.prune()
        finally:
            self.logs.extend(manager.logs)

        for error in self.prune_summary.errors:
            self.warnings.append(error)

    def _check_cancelled(self):
        if self.cancellation_check:
            self.cancellation_check()

    def _cleanup(self):
        """Remove every file this cycle created."""
        for path in reversed(self._created):
            try:
                path.unlink()
                self._log(f"Removed partial file: {path.name}")
            except FileNotFoundError:
                continue
            except OSError as e:
                self._log(f"Warning: Failed to remove {path.name}: {e}")
        self._created = []

    def _warn(self, error: BackupError):
        self.warnings.append(error)
        self._log(f"Warning: {error}")

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        The credential of the running cycle is redacted from every line.

        Args:
            message: Log message
        """
        message = redact(message, self._credential)
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)


def run_backup_cycle(
    config: BackupConfig,
    credentials: CredentialProvider,
    producer: DumpProducer,
    probe: ConnectivityProbe,
    cancellation_check: Optional[Callable[[], None]] = None
) -> BackupRecord:
    """
    Run one backup cycle.

    Returns:
        Success BackupRecord

    Raises:
        BackupError: If a fatal step fails or the cycle is skipped
    """
    executor = BackupExecutor(config, credentials, producer, probe, cancellation_check)
    return executor.execute()
