"""
Background worker using RQ (Redis Queue).

    python -m quoteflow.workers.worker             # queue worker
    python -m quoteflow.workers.worker scheduler   # periodic jobs (run one)
"""
import sys

from redis import Redis
from rq import Worker, Queue

from quoteflow.core.config import settings
from quoteflow.core.logging import setup_logging, get_logger
from quoteflow.workers.jobs import get_scheduler, setup_scheduled_jobs

setup_logging()
logger = get_logger(__name__)


def run_worker():
    """Start the RQ worker."""
    redis_conn = Redis.from_url(settings.REDIS_URL)

    worker = Worker(
        queues=[
            Queue("high", connection=redis_conn),
            Queue("default", connection=redis_conn),
            Queue("low", connection=redis_conn),
        ],
        connection=redis_conn,
        name="quoteflow-worker",
    )
    logger.info("Starting QuoteFlow worker...")
    worker.work()


def run_scheduler():
    """Register periodic jobs and run the rq-scheduler loop that enqueues them."""
    setup_scheduled_jobs()
    logger.info("Starting QuoteFlow scheduler...")
    get_scheduler().run()


if __name__ == "__main__":
    if sys.argv[1:] == ["scheduler"]:
        run_scheduler()
    else:
        run_worker()
