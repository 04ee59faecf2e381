"""
Backup module for dumpkeeper.

This module handles the core backup functionality including:
- Credential lookup (Kubernetes secret, mounted file, AWS Secrets Manager)
- Connectivity probes and dump producers (local command or SSH)
- Compression
- Metadata sidecars
- Execution orchestration
- Retention policy enforcement
"""

from .config import BackupConfig, ENGINE_PRESETS
from .errors import (
    BackupError, CredentialUnavailable, TargetUnreachable, DumpFailed,
    CompressionFailed, MetadataWriteFailed, PruneFailed, CycleInProgress,
    CycleCancelled
)
from .executor import BackupExecutor, run_backup_cycle
from .record import BackupRecord
from .retention import RetentionManager, PruneSummary

__all__ = [
    'BackupConfig',
    'ENGINE_PRESETS',
    'BackupError',
    'CredentialUnavailable',
    'TargetUnreachable',
    'DumpFailed',
    'CompressionFailed',
    'MetadataWriteFailed',
    'PruneFailed',
    'CycleInProgress',
    'CycleCancelled',
    'BackupExecutor',
    'run_backup_cycle',
    'BackupRecord',
    'RetentionManager',
    'PruneSummary'
]
