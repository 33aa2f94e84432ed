"""
Notifier: in-app notifications and templated e-mail.

Both calls are fire-and-forget from the workflow's point of view. They run
after the triggering transaction has committed; failures are logged as
dependency failures and never propagate.
"""
from typing import Any, Callable, Dict, Iterable, List, Optional

from quoteflow.core.config import settings
from quoteflow.core.errors import DependencyFailure
from quoteflow.core.logging import get_logger
from quoteflow.db.models import Notification
from quoteflow.db.repository import EntityRepository
from quoteflow.services.audit import to_json

logger = get_logger(__name__)

EmailSender = Callable[[List[str], str, str], Any]


class _SafeDict(dict):
    def __missing__(self, key):
        return "{" + key + "}"


def render(template: str, variables: Dict[str, Any]) -> str:
    """Format ``template`` leaving unknown placeholders untouched."""
    return template.format_map(_SafeDict(variables))


EMAIL_TEMPLATES: Dict[str, Dict[str, str]] = {
    "assignment": {
        "subject": "New items assigned: {inquiry_title}",
        "body": (
            "Hello {user_name},\n\n"
            "{item_count} item(s) from \"{inquiry_title}\" ({customer_name}) "
            "have been assigned to you for cost calculation.\n"
        ),
    },
    "approval_required": {
        "subject": "Cost calculation needs approval: {item_name}",
        "body": (
            "The cost calculation for \"{item_name}\" in \"{inquiry_title}\" "
            "totals {total_cost:.2f}, above the approval threshold of {threshold:.2f}.\n"
        ),
    },
    "approval_status": {
        "subject": "Cost calculation {status}: {item_name}",
        "body": (
            "Hello {user_name},\n\n"
            "Your cost calculation for \"{item_name}\" has been {status} by {manager_name}.\n"
            "{comments}\n"
        ),
    },
    "quote_sent": {
        "subject": "Quote {quote_number} - {inquiry_title}",
        "body": (
            "Dear {customer_name},\n\n"
            "Please find your quote for: {inquiry_title}\n\n"
            "Total Amount: {total:.2f}\n"
            "This quote is valid until: {valid_until}\n"
        ),
    },
    "production_status": {
        "subject": "Production order {order_number}: {status}",
        "body": "Order {order_number} for {customer_name} is now {status}.\n",
    },
}


def _default_email_sender() -> Optional[EmailSender]:
    if not settings.EMAIL_DELIVERY_ENABLED:
        return None
    from quoteflow.workers.jobs import enqueue_email
    return enqueue_email


class Notifier:
    """Creates Notification rows and hands e-mails to the delivery queue."""

    def __init__(
        self,
        repo: EntityRepository,
        email_sender: Optional[EmailSender] = None,
        use_default_sender: bool = True,
    ):
        self.repo = repo
        if email_sender is None and use_default_sender:
            email_sender = _default_email_sender()
        self.email_sender = email_sender

    def notify(
        self,
        user_id: int,
        type: str,
        title: str,
        message: str,
        payload: Optional[dict] = None,
    ) -> Optional[Notification]:
        try:
            with self.repo.transaction():
                return self.repo.create(
                    Notification,
                    user_id=user_id,
                    type=type,
                    title=title,
                    message=message,
                    data=to_json(payload or {}),
                )
        except Exception as e:
            failure = DependencyFailure("Notification delivery failed", {"user_id": user_id, "type": type})
            logger.warning(f"{failure.message} for user {user_id}: {e}")
            return None

    def notify_many(self, user_ids: Iterable[int], type: str, title: str, message: str,
                    payload: Optional[dict] = None) -> int:
        sent = 0
        for user_id in dict.fromkeys(user_ids):
            if self.notify(user_id, type, title, message, payload) is not None:
                sent += 1
        return sent

    def send_email(self, template: str, recipients: Iterable[str], variables: Dict[str, Any]) -> bool:
        recipients = [r for r in recipients if r]
        if not recipients:
            return False
        if self.email_sender is None:
            logger.info(f"E-mail delivery disabled; skipping '{template}' to {len(recipients)} recipient(s)")
            return False

        entry = EMAIL_TEMPLATES.get(template)
        if entry is None:
            logger.warning(f"Unknown e-mail template '{template}'")
            return False

        try:
            subject = render(entry["subject"], variables)
            body = render(entry["body"], variables)
            self.email_sender(recipients, subject, body)
            return True
        except Exception as e:
            failure = DependencyFailure("E-mail delivery failed", {"template": template})
            logger.warning(f"{failure.message} for template '{template}': {e}")
            return False
