# Gunicorn configuration for finvault
# Makes exactly one live worker own the backup scheduler

import os
import logging

logger = logging.getLogger('gunicorn.error')

bind = os.environ.get('GUNICORN_BIND', '0.0.0.0:5000')
workers = int(os.environ.get('GUNICORN_WORKERS', 2))
# Restores and full backups run inside the request
timeout = int(os.environ.get('GUNICORN_TIMEOUT', 900))


def pre_fork(server, worker):
    """
    Called in the arbiter before a worker is forked.

    Hands scheduler ownership to the new worker when the current owner is
    gone (crash, max_requests restart) or is about to be retired. During a
    graceful reload the arbiter spawns a full set of new workers and then
    retires the oldest ones, so the first new worker takes over there too.

    Args:
        server: Gunicorn arbiter (WORKERS maps pid -> live worker)
        worker: Gunicorn worker about to be forked (uses 'age': 1, 2, 3, ...)
    """
    owner_age = getattr(server, 'scheduler_owner_age', None)
    live_ages = sorted(w.age for w in server.WORKERS.values())
    retiring_ages = live_ages[:max(len(live_ages) + 1 - server.num_workers, 0)]

    if owner_age is None or owner_age not in live_ages or owner_age in retiring_ages:
        if owner_age is not None:
            logger.warning(f"Handing the scheduler from age={owner_age} to age={worker.age}")
        server.scheduler_owner_age = worker.age

    worker.scheduler_owner = server.scheduler_owner_age == worker.age


def post_fork(server, worker):
    """
    Called in the worker process before it loads the application.

    create_app() starts APScheduler only where SCHEDULER_WORKER is 'true',
    so no cadence fires twice.
    """
    if getattr(worker, 'scheduler_owner', False):
        os.environ['SCHEDULER_WORKER'] = 'true'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Designated as SCHEDULER OWNER")
    else:
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Standard HTTP worker (scheduler disabled)")


def child_exit(server, worker):
    """Called in the arbiter after a worker has exited."""
    if getattr(server, 'scheduler_owner_age', None) == worker.age:
        logger.warning(f"Scheduler owner PID {worker.pid} (age={worker.age}) exited, the next worker spawned takes over")
        server.scheduler_owner_age = None
