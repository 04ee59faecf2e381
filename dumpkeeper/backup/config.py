"""
Explicit configuration for one backup cycle.

A BackupConfig is built once per cycle (from Flask config, CLI options or
directly in tests) and passed into the executor. Nothing in the backup
package reads process-wide environment variables.
"""

import shlex
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .compression import COMPRESSION_FORMATS


# Probe and dump commands per data store. Templates are split with shlex and
# each token is formatted with the target parameters. The credential is never
# part of a command line; it is passed through ``credential_env``.
ENGINE_PRESETS: Dict[str, Dict[str, Any]] = {
    'postgresql': {
        'port': 5432,
        'user': 'postgres',
        'database': 'postgres',
        'extension': 'sql',
        'credential_env': 'PGPASSWORD',
        'probe_command': 'psql -h {host} -p {port} -U {user} -d {database} -c "SELECT 1"',
        'dump_command': 'pg_dumpall -h {host} -p {port} -U {user}',
    },
    'redis': {
        'port': 6379,
        'user': 'default',
        'database': '0',
        'extension': 'rdb',
        'credential_env': 'REDISCLI_AUTH',
        'probe_command': 'redis-cli -h {host} -p {port} --no-auth-warning PING',
        'dump_command': 'redis-cli -h {host} -p {port} --no-auth-warning --rdb -',
    },
}


@dataclass(frozen=True)
class BackupConfig:
    """
    Configuration of a backup cycle.

    Attributes:
        target_host: Host of the data store to dump
        target_port: Port of the data store
        target_user: User the dump runs as
        output_directory: Directory holding artifacts and sidecars
        retention_days: Artifacts older than this many days are pruned
        engine: Key into ENGINE_PRESETS
        prefix: Artifact file name prefix
        credential_name: Logical secret name passed to the credential provider
    """

    target_host: str
    target_port: int
    target_user: str
    output_directory: Path
    retention_days: int = 7
    engine: str = 'postgresql'
    target_database: str = 'postgres'
    prefix: str = 'postgresql-backup'
    credential_name: str = 'postgres-password'
    compression_format: str = 'gzip'
    dump_extension: str = 'sql'
    credential_env: str = 'PGPASSWORD'
    dump_command: str = ENGINE_PRESETS['postgresql']['dump_command']
    probe_command: str = ENGINE_PRESETS['postgresql']['probe_command']
    dump_timeout: Optional[float] = 6 * 3600
    probe_timeout: float = 10
    lock_stale_after: float = 24 * 3600

    def __post_init__(self):
        object.__setattr__(self, 'output_directory', Path(self.output_directory))
        object.__setattr__(self, 'target_port', int(self.target_port))
        object.__setattr__(self, 'retention_days', int(self.retention_days))

        if self.retention_days < 0:
            raise ValueError(f"retention_days must be >= 0, got {self.retention_days}")

        if self.compression_format not in COMPRESSION_FORMATS:
            raise ValueError(
                f"Invalid compression format: {self.compression_format}. "
                f"Valid options: {list(COMPRESSION_FORMATS.keys())}"
            )

        if not self.prefix or '/' in self.prefix or '.' in self.prefix:
            raise ValueError(f"Invalid artifact prefix: {self.prefix!r}")

    @classmethod
    def for_engine(cls, engine: str, **overrides) -> 'BackupConfig':
        """
        Build a config using the defaults of an engine preset.

        Args:
            engine: 'postgresql' or 'redis'
            **overrides: Field values taking precedence over the preset

        Raises:
            ValueError: If the engine is unknown
        """
        if engine not in ENGINE_PRESETS:
            raise ValueError(
                f"Unknown engine: {engine}. Valid options: {list(ENGINE_PRESETS.keys())}"
            )

        preset = ENGINE_PRESETS[engine]
        values = {
            'engine': engine,
            'target_port': preset['port'],
            'target_user': preset['user'],
            'target_database': preset['database'],
            'dump_extension': preset['extension'],
            'credential_env': preset['credential_env'],
            'dump_command': preset['dump_command'],
            'probe_command': preset['probe_command'],
            'prefix': f'{engine}-backup',
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    @classmethod
    def from_app_config(cls, app_config: Mapping[str, Any]) -> 'BackupConfig':
        """
        Build a config from a Flask config mapping.

        Args:
            app_config: Mapping with the keys defined in dumpkeeper.config.Config

        Returns:
            BackupConfig instance
        """
        return cls.for_engine(
            app_config.get('TARGET_ENGINE', 'postgresql'),
            target_host=app_config['TARGET_HOST'],
            target_port=app_config.get('TARGET_PORT'),
            target_user=app_config.get('TARGET_USER'),
            target_database=app_config.get('TARGET_DATABASE'),
            output_directory=app_config['BACKUP_DIR'],
            retention_days=app_config.get('RETENTION_DAYS', 7),
            prefix=app_config.get('BACKUP_PREFIX'),
            credential_name=app_config.get('CREDENTIAL_NAME'),
            compression_format=app_config.get('COMPRESSION_FORMAT', 'gzip'),
            dump_command=app_config.get('DUMP_COMMAND'),
            probe_command=app_config.get('PROBE_COMMAND'),
            dump_timeout=app_config.get('DUMP_TIMEOUT'),
            probe_timeout=app_config.get('PROBE_TIMEOUT'),
            lock_stale_after=app_config.get('LOCK_STALE_AFTER'),
        )

    def with_overrides(self, **changes) -> 'BackupConfig':
        """Return a copy with some fields replaced."""
        return replace(self, **changes)

    def render_command(self, template: str) -> List[str]:
        """
        Split a command template and fill in the target parameters.

        Args:
            template: Command template such as ENGINE_PRESETS[...]['dump_command']

        Returns:
            Argument list suitable for subprocess
        """
        params = {
            'host': self.target_host,
            'port': self.target_port,
            'user': self.target_user,
            'database': self.target_database,
        }
        return [token.format(**params) for token in shlex.split(template)]
