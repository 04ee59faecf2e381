"""
Shared pytest fixtures for dumpkeeper tests.

This module provides fixtures for:
- Flask app, test client and CLI runner
- Database setup with in-memory SQLite
- API token authentication headers
- BackupConfig pointing at a temporary output directory
- Fake credential provider, probe and dump producer
- Helpers to lay out existing backups on disk
"""

from datetime import datetime, timezone
from unittest.mock import patch

import pytest
import boto3
from moto import mock_aws
from werkzeug.security import generate_password_hash

from dumpkeeper import create_app, db as _db
from dumpkeeper.backup.config import BackupConfig
from dumpkeeper.backup.credentials import CredentialProvider
from dumpkeeper.backup.errors import DumpFailed, TargetUnreachable
from dumpkeeper.backup.producers import ConnectivityProbe, DumpProducer
from dumpkeeper.backup.record import artifact_stem


TEST_TOKEN = 'test-api-token-0123456789abcdef'
TEST_CREDENTIAL = 'Sup3r-s3cret-pw'
DUMP_BYTES = b'-- PostgreSQL database cluster dump\nCREATE ROLE app;\n' * 50


class FakeCredentialProvider(CredentialProvider):
    """Credential provider backed by a dict; records every lookup."""

    description = 'fake credentials'

    def __init__(self, values=None):
        self.values = values if values is not None else {'postgres-password': TEST_CREDENTIAL}
        self.lookups = []

    def lookup(self, name):
        self.lookups.append(name)
        return self.values.get(name)


class FakeProbe(ConnectivityProbe):
    """Probe that succeeds unless ``reachable`` is False."""

    def __init__(self, reachable=True):
        self.reachable = reachable
        self.calls = []

    def check(self, config, credential):
        self.calls.append((config.target_host, config.target_port, credential))
        if not self.reachable:
            raise TargetUnreachable(f"Cannot connect to {config.target_host}:{config.target_port}")


class FakeDumpProducer(DumpProducer):
    """
    Dump producer writing fixed bytes.

    ``fail_after`` writes the data and then fails like a non-zero exit;
    ``raise_exc`` writes the data and raises the given exception.
    """

    def __init__(self, data=DUMP_BYTES, fail_after=False, raise_exc=None):
        self.data = data
        self.fail_after = fail_after
        self.raise_exc = raise_exc
        self.credentials_seen = []

    def dump(self, config, credential, stream, cancellation_check=None):
        self.credentials_seen.append(credential)
        stream.write(self.data)
        stream.flush()
        if self.raise_exc is not None:
            raise self.raise_exc
        if self.fail_after:
            raise DumpFailed("Dump command exited with status 1: connection reset")


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite and a temporary backup directory.
    """
    secrets_dir = tmp_path / 'secrets'
    secrets_dir.mkdir()
    (secrets_dir / 'postgres-password').write_text(TEST_CREDENTIAL + '\n')

    app = create_app('testing')

    app.config.update({
        'SECRET_KEY': 'test-secret-key',
        'BACKUP_DIR': str(tmp_path / 'backups'),
        'SECRET_MOUNT_DIR': str(secrets_dir),
        'CREDENTIAL_SOURCES': 'file',
        'TARGET_HOST': 'postgresql.test.svc',
        # Low iteration count keeps token checks fast
        'API_TOKEN_HASH': generate_password_hash(TEST_TOKEN, method='pbkdf2:sha256:1000'),
    })

    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def auth_headers():
    """Authorization header carrying the test API token."""
    return {'Authorization': f'Bearer {TEST_TOKEN}'}


@pytest.fixture
def backup_dir(tmp_path):
    """Empty backup output directory."""
    path = tmp_path / 'backups'
    path.mkdir(exist_ok=True)
    return path


@pytest.fixture
def backup_config(backup_dir):
    """BackupConfig for a PostgreSQL target writing into backup_dir."""
    return BackupConfig(
        target_host='postgresql.test.svc',
        target_port=5432,
        target_user='postgres',
        output_directory=backup_dir,
        retention_days=7
    )


@pytest.fixture
def fake_credentials():
    return FakeCredentialProvider()


@pytest.fixture
def fake_probe():
    return FakeProbe()


@pytest.fixture
def fake_producer():
    return FakeDumpProducer()


@pytest.fixture
def fake_collaborators(fake_credentials, fake_producer, fake_probe):
    """
    Patch the service factories to return the fakes.

    Yields:
        Tuple of (credentials, producer, probe)
    """
    with patch('dumpkeeper.backup.service.create_credential_provider', return_value=fake_credentials), \
            patch('dumpkeeper.backup.service.create_dump_producer', return_value=fake_producer), \
            patch('dumpkeeper.backup.service.create_probe', return_value=fake_probe):
        yield fake_credentials, fake_producer, fake_probe


@pytest.fixture
def make_backup():
    """
    Factory creating an artifact and its sidecar for a given time.

    Usage:
        make_backup(directory, datetime(...), prefix='postgresql-backup', meta=True)

    Returns:
        List of created paths
    """
    def _make(directory, moment, prefix='postgresql-backup', meta=True, extension='sql.gz'):
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        stem = artifact_stem(prefix, moment)
        paths = [directory / f"{stem}.{extension}"]
        paths[0].write_bytes(b'\x1f\x8b old backup')
        if meta:
            meta_path = directory / f"{stem}.meta.json"
            meta_path.write_text(
                '{"timestamp": "%s", "backup_file": "%s", "size_bytes": 14, '
                '"duration_seconds": 1, "status": "success", "retention_days": 7}'
                % (moment.strftime('%Y-%m-%dT%H:%M:%SZ'), paths[0].name)
            )
            paths.append(meta_path)
        return paths

    return _make


@pytest.fixture
def mock_secretsmanager():
    """
    Mock AWS Secrets Manager using moto.

    Creates 'prod/postgres-password' (plain) and 'prod/redis-password' (JSON).
    """
    with mock_aws():
        client = boto3.client('secretsmanager', region_name='us-east-1')
        client.create_secret(Name='prod/postgres-password', SecretString='from-aws')
        client.create_secret(Name='prod/redis-password', SecretString='{"password": "redis-aws"}')
        yield client


@pytest.fixture
def utc_now():
    """Current UTC time truncated to seconds."""
    return datetime.now(timezone.utc).replace(microsecond=0)
