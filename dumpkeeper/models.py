from datetime import datetime
from dumpkeeper import db


class BackupHistory(db.Model):
    """Backup execution history and logs"""
    __tablename__ = 'backup_history'

    id = db.Column(db.Integer, primary_key=True)
    trigger = db.Column(db.String(20), nullable=False)  # scheduled, manual, cli
    status = db.Column(db.String(20), nullable=False)  # success, failed
    engine = db.Column(db.String(20), nullable=False)
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    artifact_name = db.Column(db.String(255), index=True)
    size_bytes = db.Column(db.BigInteger)
    duration_seconds = db.Column(db.Float)
    retention_days = db.Column(db.Integer, nullable=False)
    sha256 = db.Column(db.String(64))
    error_kind = db.Column(db.String(50))
    error_message = db.Column(db.Text)
    warnings = db.Column(db.Text)  # One warning per line
    logs = db.Column(db.Text)  # Detailed execution logs

    def to_dict(self, include_logs=False):
        data = {
            'id': self.id,
            'trigger': self.trigger,
            'status': self.status,
            'engine': self.engine,
            'started_at': _isoformat(self.started_at),
            'completed_at': _isoformat(self.completed_at),
            'artifact_name': self.artifact_name,
            'size_bytes': self.size_bytes,
            'duration_seconds': self.duration_seconds,
            'retention_days': self.retention_days,
            'sha256': self.sha256,
            'error_kind': self.error_kind,
            'error_message': self.error_message,
            'warnings': self.warnings.splitlines() if self.warnings else [],
        }
        if include_logs:
            data['logs'] = self.logs
        return data

    def __repr__(self):
        return f'<BackupHistory {self.id} trigger={self.trigger} status={self.status}>'


def _isoformat(value):
    return value.isoformat() + 'Z' if value else None
