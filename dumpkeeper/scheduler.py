"""
APScheduler configuration and job scheduling for dumpkeeper.

Manages:
- The scheduled backup cycle (BACKUP_SCHEDULE cron expression, UTC)
- Manual triggers from the API
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.executors.pool import ThreadPoolExecutor
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from dumpkeeper import db
from dumpkeeper.backup.service import perform_backup

logger = logging.getLogger(__name__)

SCHEDULED_JOB_ID = 'scheduled_backup'
MANUAL_JOB_PREFIX = 'manual_'

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


def _count_jobs_in_database() -> int:
    """
    Count jobs in APScheduler's persistent job store.

    Used as a fallback to detect scheduler health from a process that
    does not own the scheduler (other gunicorn workers, reloader parent).

    Returns:
        Number of jobs in database, or 0 if the table does not exist
    """
    try:
        result = db.session.execute(
            text("SELECT COUNT(*) FROM apscheduler_jobs")
        ).scalar()
        return result or 0
    except SQLAlchemyError:
        db.session.rollback()
        return 0


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app

    jobstores = {
        'default': SQLAlchemyJobStore(url=app.config['SQLALCHEMY_DATABASE_URI'])
    }

    # A single cycle runs at a time, one spare thread keeps triggers responsive
    executors = {
        'default': ThreadPoolExecutor(max_workers=2)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone='UTC'
    )

    schedule = app.config.get('BACKUP_SCHEDULE')
    if schedule:
        scheduler.add_job(
            func=_execute_backup_wrapper,
            args=['scheduled'],
            trigger=CronTrigger.from_crontab(schedule, timezone='UTC'),
            id=SCHEDULED_JOB_ID,
            name='Scheduled Backup',
            replace_existing=True
        )
        logger.info(f"Scheduled backup: {schedule} (UTC)")
    else:
        logger.info("BACKUP_SCHEDULE is empty, only manual backups will run")

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started (state={scheduler.state})")

        # Old one-time jobs from previous manual triggers have missed their window
        for job in scheduler.get_jobs():
            if job.id.startswith(MANUAL_JOB_PREFIX):
                scheduler.remove_job(job.id)
                logger.info(f"Cleaned up old manual job: {job.id}")

        for job in scheduler.get_jobs():
            next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
            logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """Stop the APScheduler."""
    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def _execute_backup_wrapper(trigger: str, app=None):
    """
    Run a backup cycle from a scheduler or background thread.

    Args:
        trigger: 'scheduled' or 'manual'
        app: Flask app (defaults to the one the scheduler was started with)
    """
    with (app or flask_app).app_context():
        try:
            logger.info(f"Scheduler executing backup (trigger={trigger})")
            history = perform_backup(trigger)
            if history is None:
                logger.info("Backup skipped, another cycle is running")
            else:
                logger.info(f"Backup {history.id} completed with status: {history.status}")
        except Exception:
            # Keep the scheduler thread alive; the next occurrence retries
            logger.exception(f"Scheduler backup ({trigger}) failed")


def trigger_backup_now(app=None) -> str:
    """
    Manually trigger a backup cycle.

    Uses a one-time scheduler job when this process owns the scheduler,
    otherwise a background thread. The cycle lock keeps either from
    overlapping a running cycle.

    Args:
        app: Flask app for the background thread (required without a scheduler)

    Returns:
        ID of the one-time job or thread
    """
    now = datetime.now(timezone.utc)

    if scheduler is None or not scheduler.running:
        if app is None:
            raise RuntimeError("Scheduler not initialized and no app given")
        thread_name = f"{MANUAL_JOB_PREFIX}thread_{int(now.timestamp() * 1000)}"
        thread = threading.Thread(
            target=_execute_backup_wrapper,
            args=['manual', app],
            name=thread_name,
            daemon=True
        )
        thread.start()
        logger.info(f"Manually triggered backup in background thread: {thread_name}")
        return thread_name

    job_id = f"{MANUAL_JOB_PREFIX}{int(now.timestamp() * 1000)}"

    # 1 second delay avoids racing the job store commit
    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=['manual'],
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=job_id,
        name='Manual Backup',
        replace_existing=False
    )

    logger.info(f"Manually triggered backup: {job_id}")
    return job_id


def _describe_job(job) -> dict:
    return {
        'id': job.id,
        'name': job.name,
        'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
        'trigger': str(job.trigger),
        'pending': job.pending
    }


def get_next_backup_time():
    """Get the next scheduled backup time, or None."""
    if scheduler is None:
        return None
    job = scheduler.get_job(SCHEDULED_JOB_ID)
    if job is None or job.next_run_time is None:
        return None
    return job.next_run_time.isoformat()


def is_scheduler_running() -> bool:
    """
    Check whether a scheduler is running in this or another process.

    Other processes are detected through the shared job store.
    """
    if scheduler is not None and scheduler.running:
        return True
    return _count_jobs_in_database() > 0


def get_scheduler_diagnostics() -> dict:
    """
    Describe the scheduler for the status API.

    Returns:
        Dict with ownership, state, the cron schedule and queued jobs
    """
    jobs_in_db = _count_jobs_in_database()

    if scheduler is None:
        # This process does not own the scheduler; the job store is the only view
        return {
            'initialized': False,
            'running': jobs_in_db > 0,
            'state': 'NOT_INITIALIZED',
            'jobs_in_database': jobs_in_db,
            'note': 'Scheduler is owned by another process or disabled'
        }

    jobs = [_describe_job(job) for job in scheduler.get_jobs()]
    return {
        'initialized': True,
        'running': scheduler.running,
        'state': str(scheduler.state),
        'schedule': flask_app.config.get('BACKUP_SCHEDULE') if flask_app else None,
        'next_backup': get_next_backup_time(),
        'manual_pending': sum(1 for job in jobs if job['id'].startswith(MANUAL_JOB_PREFIX)),
        'job_count': len(jobs),
        'jobs_in_database': jobs_in_db,
        'jobs': jobs
    }
