"""
Backup records, artifact naming and metadata sidecars.

Naming convention inside the output directory:
    {prefix}-{YYYY-MM-DD-HHMMSS}.{ext}[.{compression}]   data
    {prefix}-{YYYY-MM-DD-HHMMSS}.meta.json                metadata sidecar

Both files share the same stem, so an artifact and its sidecar are always
pairable by stripping everything after the timestamp.
"""

import hashlib
import json
import os
import re
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .errors import MetadataWriteFailed


STATUS_SUCCESS = 'success'
STATUS_FAILED = 'failed'

TIMESTAMP_FORMAT = '%Y-%m-%d-%H%M%S'
METADATA_SUFFIX = '.meta.json'


def format_timestamp(moment: datetime) -> str:
    """Format a UTC instant for use in a file name (second granularity)."""
    return _as_utc(moment).strftime(TIMESTAMP_FORMAT)


def artifact_stem(prefix: str, moment: datetime) -> str:
    """
    Build the shared stem of an artifact and its sidecar.

    Format: {prefix}-{YYYY-MM-DD-HHMMSS}
    """
    return f"{prefix}-{format_timestamp(moment)}"


def parse_artifact_name(prefix: str, filename: str) -> Optional[Tuple[str, datetime]]:
    """
    Parse a file name produced by this package.

    Args:
        prefix: Artifact prefix the file must start with
        filename: Base name of the file

    Returns:
        Tuple of (stem, UTC timestamp), or None if the name does not match
    """
    match = _name_pattern(prefix).match(filename)
    if not match:
        return None

    try:
        moment = datetime.strptime(match.group('stamp'), TIMESTAMP_FORMAT)
    except ValueError:
        return None

    return f"{prefix}-{match.group('stamp')}", moment.replace(tzinfo=timezone.utc)


def metadata_path_for(artifact_path) -> Path:
    """
    Get the sidecar path paired with an artifact.

    Strips every extension after the timestamp (.sql.gz, .rdb.xz, ...) and
    appends the metadata suffix.
    """
    artifact_path = Path(artifact_path)
    stem = artifact_path.name.split('.', 1)[0]
    return artifact_path.with_name(f"{stem}{METADATA_SUFFIX}")


def file_sha256(path, chunk_size: int = 1024 * 1024) -> str:
    """Compute the SHA-256 hex digest of a file."""
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(chunk_size), b''):
            digest.update(chunk)
    return digest.hexdigest()


@dataclass(frozen=True)
class BackupRecord:
    """
    Outcome of one executed backup cycle.

    Records are immutable once written. A success record is persisted as a
    JSON sidecar next to its artifact.
    """

    timestamp: datetime
    artifact_path: Optional[Path]
    size_bytes: int
    duration_seconds: float
    status: str
    retention_days: int
    database_host: Optional[str] = None
    database_port: Optional[int] = None
    engine: Optional[str] = None
    sha256: Optional[str] = None

    @property
    def artifact_name(self) -> Optional[str]:
        return self.artifact_path.name if self.artifact_path else None

    @property
    def metadata_path(self) -> Optional[Path]:
        return metadata_path_for(self.artifact_path) if self.artifact_path else None

    @property
    def size_mb(self) -> float:
        return round(self.size_bytes / 1024 / 1024, 2)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the sidecar document."""
        return {
            'timestamp': _as_utc(self.timestamp).strftime('%Y-%m-%dT%H:%M:%SZ'),
            'backup_file': self.artifact_name,
            'database_host': self.database_host,
            'database_port': self.database_port,
            'engine': self.engine,
            'size_bytes': self.size_bytes,
            'size_mb': self.size_mb,
            'duration_seconds': self.duration_seconds,
            'status': self.status,
            'retention_days': self.retention_days,
            'sha256': self.sha256,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], directory) -> 'BackupRecord':
        """
        Deserialize a sidecar document.

        Args:
            data: Parsed sidecar JSON
            directory: Directory the artifact lives in

        Raises:
            ValueError: If required keys are missing or malformed
        """
        try:
            timestamp = datetime.strptime(data['timestamp'], '%Y-%m-%dT%H:%M:%SZ')
            backup_file = data.get('backup_file')
            return cls(
                timestamp=timestamp.replace(tzinfo=timezone.utc),
                artifact_path=Path(directory) / backup_file if backup_file else None,
                size_bytes=int(data['size_bytes']),
                duration_seconds=float(data['duration_seconds']),
                status=data['status'],
                retention_days=int(data['retention_days']),
                database_host=data.get('database_host'),
                database_port=data.get('database_port'),
                engine=data.get('engine'),
                sha256=data.get('sha256'),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Malformed metadata record: {e}") from e


def write_sidecar(record: BackupRecord) -> Path:
    """
    Persist a record next to its artifact.

    The document is written to a temporary file in the same directory and
    renamed into place, so a sidecar is either complete or absent.

    Returns:
        Path of the sidecar

    Raises:
        MetadataWriteFailed: If the sidecar cannot be written
    """
    if record.artifact_path is None:
        raise MetadataWriteFailed("Record has no artifact to describe")

    sidecar_path = record.metadata_path
    tmp_path = None

    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=sidecar_path.parent,
            prefix=f".{sidecar_path.name}.",
            suffix='.tmp'
        )
        with os.fdopen(fd, 'w') as f:
            json.dump(record.to_dict(), f, indent=2)
            f.write('\n')
        if sidecar_path.exists():
            raise FileExistsError(f"Sidecar already exists: {sidecar_path.name}")
        os.replace(tmp_path, sidecar_path)
        tmp_path = None
        return sidecar_path
    except OSError as e:
        raise MetadataWriteFailed(f"Failed to write {sidecar_path.name}: {e}") from e
    finally:
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass


def read_sidecar(path) -> BackupRecord:
    """
    Load a record from its sidecar file.

    Raises:
        ValueError: If the file is not a valid sidecar
        OSError: If the file cannot be read
    """
    path = Path(path)
    with open(path, 'r') as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in {path.name}: {e}") from e
    return BackupRecord.from_dict(data, path.parent)


def list_artifacts(directory, prefix: str) -> List[Dict[str, Any]]:
    """
    List backups on disk, newest first.

    Args:
        directory: Output directory
        prefix: Artifact prefix

    Returns:
        List of dicts with 'stem', 'timestamp', 'artifact', 'size_bytes',
        'metadata' (dict or None) and 'files' keys
    """
    directory = Path(directory)
    if not directory.is_dir():
        return []

    groups: Dict[str, Dict[str, Any]] = {}
    for path in directory.iterdir():
        if not path.is_file():
            continue
        parsed = parse_artifact_name(prefix, path.name)
        if parsed is None:
            continue

        stem, moment = parsed
        group = groups.setdefault(stem, {
            'stem': stem,
            'timestamp': moment,
            'artifact': None,
            'size_bytes': None,
            'metadata': None,
            'files': [],
        })
        group['files'].append(path.name)

        if path.name.endswith(METADATA_SUFFIX):
            try:
                group['metadata'] = read_sidecar(path).to_dict()
            except (OSError, ValueError):
                group['metadata'] = None
        else:
            group['artifact'] = path.name
            group['size_bytes'] = path.stat().st_size

    return sorted(groups.values(), key=lambda g: g['timestamp'], reverse=True)


def _name_pattern(prefix: str):
    return re.compile(
        rf"^{re.escape(prefix)}-(?P<stamp>\d{{4}}-\d{{2}}-\d{{2}}-\d{{6}})(?:\..+)?$"
    )


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)
