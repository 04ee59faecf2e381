# Gunicorn configuration for dumpkeeper
# Handles scheduler initialization across multiple workers

import os
import logging

logger = logging.getLogger('gunicorn.error')

bind = os.environ.get('BIND', '0.0.0.0:5000')
workers = int(os.environ.get('WEB_CONCURRENCY', 2))
# A manual backup runs in the scheduler thread pool, not in the request
timeout = 60


def pre_fork(server, worker):
    """
    Called in the master before a worker is forked.

    Designates exactly one live worker as the scheduler owner. When the owner
    exits, the next forked worker takes over.

    Args:
        server: Gunicorn arbiter
        worker: Gunicorn worker instance about to be forked
    """
    owner = getattr(server, 'scheduler_owner', None)
    if owner is None or owner not in server.WORKERS.values():
        server.scheduler_owner = worker
        worker.scheduler_owner = True
    else:
        worker.scheduler_owner = False


def post_fork(server, worker):
    """
    Called in the worker right after fork, before the app is loaded.

    create_app() reads SCHEDULER_WORKER, so it must be set here.
    """
    if worker.scheduler_owner:
        os.environ['SCHEDULER_WORKER'] = 'true'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Designated as SCHEDULER OWNER")
    else:
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Standard HTTP worker (scheduler disabled)")
