"""
Unit tests for database models (dumpkeeper/models.py).
"""

from datetime import datetime

from dumpkeeper.models import BackupHistory


class TestBackupHistoryModel:
    """Test BackupHistory model."""

    def test_create_backup_history(self, db):
        """Test creating a success row."""
        history = BackupHistory(
            trigger='scheduled',
            status='success',
            engine='postgresql',
            started_at=datetime(2024, 3, 10, 2, 0, 0),
            completed_at=datetime(2024, 3, 10, 2, 0, 12),
            artifact_name='postgresql-backup-2024-03-10-020000.sql.gz',
            size_bytes=3145728,
            duration_seconds=12.0,
            retention_days=7
        )
        db.session.add(history)
        db.session.commit()

        assert history.id is not None
        assert history.error_kind is None

    def test_started_at_default(self, db):
        """Test started_at defaults to now."""
        history = BackupHistory(trigger='cli', status='failed', engine='redis', retention_days=3)
        db.session.add(history)
        db.session.commit()

        assert isinstance(history.started_at, datetime)

    def test_to_dict(self, db):
        """Test serialization for the API."""
        history = BackupHistory(
            trigger='manual',
            status='failed',
            engine='postgresql',
            started_at=datetime(2024, 3, 10, 2, 0, 0),
            retention_days=7,
            error_kind='DumpFailed',
            error_message='Dump command exited with status 1',
            warnings='first\nsecond',
            logs='[2024-03-10 02:00:00 UTC] Starting'
        )
        db.session.add(history)
        db.session.commit()

        data = history.to_dict()

        assert data['started_at'] == '2024-03-10T02:00:00Z'
        assert data['completed_at'] is None
        assert data['warnings'] == ['first', 'second']
        assert data['error_kind'] == 'DumpFailed'
        assert 'logs' not in data
        assert history.to_dict(include_logs=True)['logs'].endswith('Starting')

    def test_backup_history_repr(self, db):
        """Test string representation."""
        history = BackupHistory(trigger='cli', status='success', engine='postgresql', retention_days=7)
        db.session.add(history)
        db.session.commit()

        assert repr(history) == f'<BackupHistory {history.id} trigger=cli status=success>'
