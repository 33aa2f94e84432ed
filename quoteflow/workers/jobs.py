"""
Background job definitions.
"""
import smtplib
from datetime import datetime, timedelta
from email.mime.text import MIMEText
from typing import List

from redis import Redis
from rq import Queue
from rq_scheduler import Scheduler

from quoteflow.core.config import settings
from quoteflow.core.logging import get_logger

logger = get_logger(__name__)


def get_queue(name: str = "default") -> Queue:
    """Get RQ queue."""
    redis_conn = Redis.from_url(settings.REDIS_URL)
    return Queue(name, connection=redis_conn)


def get_scheduler() -> Scheduler:
    """Get RQ scheduler."""
    redis_conn = Redis.from_url(settings.REDIS_URL)
    return Scheduler(connection=redis_conn)


# ============= JOB FUNCTIONS =============

def send_email_job(recipients: List[str], subject: str, body: str):
    """Deliver one templated e-mail over SMTP."""
    msg = MIMEText(body, "plain", "utf-8")
    msg["From"] = settings.EMAIL_FROM
    msg["To"] = ", ".join(recipients)
    msg["Subject"] = subject

    logger.info(f"Sending e-mail '{subject}' to {len(recipients)} recipient(s)")
    with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=30) as server:
        if settings.SMTP_USE_TLS:
            server.starttls()
        if settings.SMTP_USER and settings.SMTP_PASSWORD:
            server.login(settings.SMTP_USER, settings.SMTP_PASSWORD)
        server.sendmail(settings.EMAIL_FROM, recipients, msg.as_string())


def check_deadlines_job():
    """Publish reminders for deadlines entering their warning/escalation/overdue stage."""
    from quoteflow.db.session import SessionLocal
    from quoteflow.services.deadlines import check_deadlines
    from quoteflow.services.workflow import WorkflowEngine

    logger.info("Running deadline check")
    db = SessionLocal()
    try:
        published = check_deadlines(WorkflowEngine(db))
        logger.info(f"Deadline check done: {published} reminder(s)")
    finally:
        db.close()


DEADLINE_JOB_NAME = f"{__name__}.check_deadlines_job"


# ============= QUEUE HELPERS =============

def enqueue_email(recipients: List[str], subject: str, body: str):
    """Queue e-mail delivery."""
    queue = get_queue("high")
    return queue.enqueue(send_email_job, recipients, subject, body)


def setup_scheduled_jobs():
    """Register the periodic deadline sweep, replacing any earlier registration."""
    scheduler = get_scheduler()

    for job in scheduler.get_jobs():
        if job.func_name == DEADLINE_JOB_NAME:
            scheduler.cancel(job)

    scheduler.schedule(
        scheduled_time=datetime.utcnow() + timedelta(minutes=1),
        func=check_deadlines_job,
        interval=settings.DEADLINE_CHECK_INTERVAL_SECONDS,
        repeat=None,
    )

    logger.info(f"Deadline check scheduled every {settings.DEADLINE_CHECK_INTERVAL_SECONDS}s")
