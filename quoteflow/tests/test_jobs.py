"""
Background job and notifier delivery tests.
"""
from unittest.mock import MagicMock, patch

from quoteflow.core.config import settings
from quoteflow.db.models import Notification
from quoteflow.db.repository import EntityRepository
from quoteflow.services.notifier import Notifier, render
from quoteflow.workers import jobs, worker


class TestEmailJob:

    def test_send_email_job_uses_smtp(self):
        server = MagicMock()
        with patch("quoteflow.workers.jobs.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.return_value = server
            jobs.send_email_job(["a@x.test", "b@x.test"], "Hello", "Body text")

        server.sendmail.assert_called_once()
        sender, recipients, raw = server.sendmail.call_args[0]
        assert recipients == ["a@x.test", "b@x.test"]
        assert "Subject: Hello" in raw

    def test_enqueue_email_goes_to_high_queue(self):
        with patch("quoteflow.workers.jobs.get_queue") as get_queue:
            jobs.enqueue_email(["a@x.test"], "Hi", "Body")

        get_queue.assert_called_once_with("high")
        get_queue.return_value.enqueue.assert_called_once_with(jobs.send_email_job, ["a@x.test"], "Hi", "Body")


class TestScheduling:

    def test_deadline_check_is_registered_once(self):
        stale = MagicMock(func_name=jobs.DEADLINE_JOB_NAME)
        unrelated = MagicMock(func_name="other.module.job")
        with patch("quoteflow.workers.jobs.get_scheduler") as get_scheduler:
            scheduler = get_scheduler.return_value
            scheduler.get_jobs.return_value = [stale, unrelated]
            jobs.setup_scheduled_jobs()

        scheduler.cancel.assert_called_once_with(stale)
        scheduler.schedule.assert_called_once()
        kwargs = scheduler.schedule.call_args.kwargs
        assert kwargs["func"] is jobs.check_deadlines_job
        assert kwargs["interval"] == settings.DEADLINE_CHECK_INTERVAL_SECONDS
        assert kwargs["repeat"] is None

    def test_job_name_matches_scheduled_function(self):
        func = jobs.check_deadlines_job
        assert jobs.DEADLINE_JOB_NAME == f"{func.__module__}.{func.__name__}"

    def test_scheduler_entry_point_registers_jobs(self):
        with patch("quoteflow.workers.worker.setup_scheduled_jobs") as setup, \
                patch("quoteflow.workers.worker.get_scheduler") as get_scheduler:
            worker.run_scheduler()

        setup.assert_called_once_with()
        get_scheduler.return_value.run.assert_called_once_with()


class TestNotifier:

    def test_render_keeps_unknown_placeholders(self):
        assert render("Quote {quote_number} for {who}", {"quote_number": "QT-1"}) == "Quote QT-1 for {who}"

    def test_email_failure_is_swallowed(self, db_session):
        sender = MagicMock(side_effect=ConnectionError("smtp down"))
        notifier = Notifier(EntityRepository(db_session), email_sender=sender)

        delivered = notifier.send_email("production_status", ["c@x.test"], {
            "order_number": "PO-1", "customer_name": "Acme", "status": "shipped",
        })
        assert delivered is False
        sender.assert_called_once()

    def test_email_disabled_without_sender(self, db_session):
        notifier = Notifier(EntityRepository(db_session), use_default_sender=False)
        assert notifier.send_email("production_status", ["c@x.test"], {}) is False

    def test_notify_many_deduplicates(self, db_session, sales):
        notifier = Notifier(EntityRepository(db_session), use_default_sender=False)
        sent = notifier.notify_many([sales.id, sales.id], "INFO", "Hello", "Once only")
        assert sent == 1
        assert db_session.query(Notification).count() == 1
