# Gunicorn configuration for Dumpkeeper
# Only one worker may own the backup scheduler

import os
import logging

logger = logging.getLogger('gunicorn.error')

wsgi_app = 'dumpkeeper:create_app()'


def post_worker_init(worker):
    """
    Called after a worker is initialized.

    Designates the first worker (worker.age == 0) as the scheduler owner so
    that cron-triggered backups are started exactly once. The run lock
    still rejects a second concurrent run for the same database.

    Args:
        worker: Gunicorn worker instance (uses 'age' attribute: 0, 1, 2, ...)
    """
    if worker.age == 0:
        os.environ['SCHEDULER_WORKER'] = 'true'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): designated as scheduler owner")
    else:
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): HTTP only, scheduler disabled")
