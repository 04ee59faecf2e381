"""
Backup routes - Run, cancel and prune backups, view history and artifacts.
"""

from flask import Blueprint, current_app, jsonify, request
from flask_login import login_required
from datetime import datetime, timedelta

from dumpkeeper.models import BackupHistory
from dumpkeeper.backup.errors import CycleInProgress
from dumpkeeper.backup.service import (
    is_cycle_running, list_backup_artifacts, prune_backups, request_cancellation
)
from dumpkeeper.scheduler import trigger_backup_now


bp = Blueprint('backups', __name__, url_prefix='/api/backups')

VALID_STATUSES = ['success', 'failed']
VALID_TRIGGERS = ['scheduled', 'manual', 'cli']


@bp.route('/', methods=['GET'])
@login_required
def list_history():
    """
    Get backup history with filtering and pagination.

    Query params:
        - status: Filter by status (success/failed)
        - trigger: Filter by trigger (scheduled/manual/cli)
        - days: Only show backups from last N days
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with history records and metadata
    """
    status_filter = request.args.get('status')
    trigger_filter = request.args.get('trigger')
    days_filter = request.args.get('days', type=int)
    limit = request.args.get('limit', 50, type=int)
    offset = request.args.get('offset', 0, type=int)

    # Enforce limits
    limit = max(1, min(limit, 200))
    if offset < 0:
        offset = 0

    query = BackupHistory.query

    if status_filter:
        if status_filter not in VALID_STATUSES:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(BackupHistory.status == status_filter)

    if trigger_filter:
        if trigger_filter not in VALID_TRIGGERS:
            return jsonify({'error': 'Invalid trigger filter'}), 400
        query = query.filter(BackupHistory.trigger == trigger_filter)

    if days_filter and days_filter > 0:
        cutoff_date = datetime.utcnow() - timedelta(days=days_filter)
        query = query.filter(BackupHistory.started_at >= cutoff_date)

    # Get total count before pagination
    total_count = query.count()

    records = query.order_by(
        BackupHistory.started_at.desc()
    ).limit(limit).offset(offset).all()

    history_data = []
    for record in records:
        data = record.to_dict()
        data['has_logs'] = bool(record.logs)
        history_data.append(data)

    return jsonify({
        'records': history_data,
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/<int:history_id>', methods=['GET'])
@login_required
def get_history_detail(history_id):
    """
    Get one backup history record including its logs.

    Args:
        history_id: Backup history record ID
    """
    record = BackupHistory.query.get_or_404(history_id)
    return jsonify(record.to_dict(include_logs=True))


@bp.route('/run', methods=['POST'])
@login_required
def run_backup():
    """
    Queue a backup cycle for immediate execution.

    Returns:
        202 with the trigger id, or 409 if a cycle is already running
    """
    if is_cycle_running():
        return jsonify({'error': 'A backup cycle is already running'}), 409

    job_id = trigger_backup_now(current_app._get_current_object())
    return jsonify({
        'message': 'Backup has been queued for immediate execution',
        'job_id': job_id
    }), 202


@bp.route('/cancel', methods=['POST'])
@login_required
def cancel_backup():
    """
    Request cancellation of the running backup.

    The cycle stops at its next checkpoint and removes its partial files.
    """
    if not request_cancellation():
        return jsonify({'error': 'No backup cycle is running'}), 409

    return jsonify({
        'message': 'Cancellation requested. The backup will stop at the next safe checkpoint.',
        'status': 'cancelling'
    }), 202


@bp.route('/prune', methods=['POST'])
@login_required
def prune():
    """
    Delete expired backups now.

    Returns:
        JSON prune summary, or 409 if a cycle is running
    """
    try:
        summary = prune_backups()
    except CycleInProgress as e:
        return jsonify({'error': str(e)}), 409

    return jsonify(summary.to_dict())


@bp.route('/artifacts', methods=['GET'])
@login_required
def list_artifacts():
    """
    List backup artifacts present in the output directory, newest first.
    """
    artifacts = list_backup_artifacts()
    return jsonify({
        'artifacts': artifacts,
        'total': len(artifacts)
    })
