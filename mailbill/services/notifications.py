import logging

import requests
from sqlalchemy import event
from sqlalchemy.orm import Session

from mailbill.core.config import settings

logger = logging.getLogger(__name__)


def notify(message: str, level: str = "INFO") -> None:
    """Send an operational message to Slack.

    Fire-and-forget: delivery failures are logged and never raised.
    """
    if not settings.slack_webhook_url:
        logger.debug("Slack webhook not configured; dropping %s message: %s", level, message)
        return
    payload = {
        "appName": settings.slack_app_name,
        "type": level,
        "isTest": settings.slack_is_test,
        "message": message,
    }
    try:
        resp = requests.post(settings.slack_webhook_url, json=payload, timeout=5)
        resp.raise_for_status()
    except Exception as e:
        logger.warning("Failed to deliver Slack notification: %s", e)


_PENDING_KEY = "pending_notifications"


def notify_on_commit(db: Session, message: str, level: str = "INFO") -> None:
    """Queue a Slack message that is sent once ``db`` commits; a rollback drops it."""
    db.info.setdefault(_PENDING_KEY, []).append((message, level))


@event.listens_for(Session, "after_commit")
def _send_pending(session: Session) -> None:
    for message, level in session.info.pop(_PENDING_KEY, []):
        notify(message, level)


@event.listens_for(Session, "after_soft_rollback")
def _drop_pending(session: Session, previous_transaction) -> None:
    if previous_transaction.parent is None:
        dropped = session.info.pop(_PENDING_KEY, [])
        if dropped:
            logger.debug("Dropped %d notification(s) after rollback", len(dropped))
