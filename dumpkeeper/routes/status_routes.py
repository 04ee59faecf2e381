"""
Status routes - Overview and scheduler diagnostics endpoints.
"""

from flask import Blueprint, jsonify, request
from flask_login import login_required
from datetime import datetime, timedelta

from dumpkeeper.models import BackupHistory
from dumpkeeper.backup.service import get_backup_config, is_cycle_running
from dumpkeeper.scheduler import (
    get_next_backup_time, get_scheduler_diagnostics, is_scheduler_running
)


bp = Blueprint('status', __name__, url_prefix='/api/status')


@bp.route('/overview', methods=['GET'])
@login_required
def get_overview():
    """
    Get overview statistics.

    Query params:
        - days: Calculate counts for last N days (default: 30, max: 365)

    Returns:
        JSON with target, last backups, counts and scheduler status
    """
    days = request.args.get('days', 30, type=int)
    if days < 1:
        days = 30
    if days > 365:
        days = 365

    config = get_backup_config()
    cutoff_date = datetime.utcnow() - timedelta(days=days)
    query = BackupHistory.query.filter(BackupHistory.started_at >= cutoff_date)

    success = query.filter(BackupHistory.status == 'success').count()
    failed = query.filter(BackupHistory.status == 'failed').count()
    completed = success + failed
    success_rate = round((success / completed * 100) if completed > 0 else 0, 1)

    last_backup = BackupHistory.query.order_by(BackupHistory.started_at.desc()).first()
    last_success = BackupHistory.query.filter_by(status='success').order_by(
        BackupHistory.started_at.desc()
    ).first()

    return jsonify({
        'target': {
            'engine': config.engine,
            'host': config.target_host,
            'port': config.target_port,
            'output_directory': str(config.output_directory),
            'retention_days': config.retention_days,
        },
        'days': days,
        'successful': success,
        'failed': failed,
        'success_rate': success_rate,
        'last_backup': last_backup.to_dict() if last_backup else None,
        'last_success': last_success.to_dict() if last_success else None,
        'cycle_running': is_cycle_running(),
        'next_backup': get_next_backup_time(),
        'scheduler_status': 'running' if is_scheduler_running() else 'stopped'
    })


@bp.route('/scheduler', methods=['GET'])
@login_required
def get_scheduler_status():
    """Get detailed scheduler diagnostics."""
    return jsonify(get_scheduler_diagnostics())
