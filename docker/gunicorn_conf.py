# Gunicorn configuration for yback
# Run with: gunicorn -c docker/gunicorn_conf.py "yback:create_app()"
#
# Only one worker may own the BackupScheduler, otherwise every cron timer
# fires once per worker. The arbiter picks the owner before forking and hands
# ownership to the next spawned worker when the owner exits.

import os
import logging

logger = logging.getLogger('gunicorn.error')

bind = os.environ.get('GUNICORN_BIND', '0.0.0.0:5000')
workers = int(os.environ.get('GUNICORN_WORKERS', 2))
threads = int(os.environ.get('GUNICORN_THREADS', 4))
# Manual backups block the request while the device answers
timeout = int(os.environ.get('GUNICORN_TIMEOUT', 120))
preload_app = False


def pre_fork(server, worker):
    """Runs in the arbiter: claim ownership for this worker if nobody holds it."""
    owner = getattr(server, 'scheduler_owner', None)
    worker.scheduler_owner = owner is None
    if worker.scheduler_owner:
        server.scheduler_owner = worker


def post_fork(server, worker):
    """
    Runs in the new worker before the app is loaded; create_app() reads
    SCHEDULER_WORKER.
    """
    is_owner = getattr(worker, 'scheduler_owner', False)
    os.environ['SCHEDULER_WORKER'] = 'true' if is_owner else 'false'

    role = 'scheduler owner' if is_owner else 'HTTP only'
    logger.info(f"Worker PID {worker.pid} (age={worker.age}): {role}")


def child_exit(server, worker):
    """Runs in the arbiter: release ownership so the replacement worker takes it."""
    if getattr(server, 'scheduler_owner', None) is worker:
        server.scheduler_owner = None
        logger.warning(f"Scheduler owner PID {worker.pid} exited; next worker takes over")
