"""
Safari Pipeline - Redis Queue Worker
Main entry point for background job processing

Usage:
    python -m safari_workers.worker

Queues (priority order):
    high     - job control kickoffs (orchestrator restarts)
    default  - media batches
    low      - anything that can wait
"""

import logging
from datetime import datetime
from rq import Worker, Queue

from .config import settings
from .utils.execution import get_redis_connection

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

QUEUE_NAMES = ['high', 'default', 'low']
DEFAULT_TIMEOUT = 7200


def warmup_database():
    """
    Warm up database connection on startup.
    A cold PostgreSQL instance can take a while; make sure it's ready before jobs run.
    """
    try:
        from .utils.db import get_db
        db = get_db()
        with db.get_cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
        print("[Worker] Database connection warm-up successful")
        return True
    except Exception as e:
        print(f"[Worker] Database warm-up failed (will retry on first job): {e}")
        return False


def run_worker():
    """Run the RQ worker"""
    conn = get_redis_connection()

    queues = [Queue(name, connection=conn, default_timeout=DEFAULT_TIMEOUT) for name in QUEUE_NAMES]

    print(f"[Worker] Starting worker at {datetime.utcnow().isoformat()}")
    print(f"[Worker] Listening on queues: {', '.join(QUEUE_NAMES)}")
    print(f"[Worker] Batch size {settings.BATCH_SIZE}, concurrency {settings.CONCURRENT}")

    warmup_database()

    worker = Worker(queues, connection=conn)
    worker.work(with_scheduler=True)


if __name__ == '__main__':
    run_worker()
