"""Background tasks for the workflow service."""
from __future__ import annotations

import logging
from typing import Any, Dict

from celery import shared_task

from .notifications import get_notification_handler

logger = logging.getLogger(__name__)


@shared_task(bind=True, max_retries=3, default_retry_delay=5)
def dispatch_transition_notifications(self, event: Dict[str, Any]) -> None:
    """Hand a committed transition to the notification subsystem."""

    transition_id = event["transition"]["id"]
    try:
        handler = get_notification_handler()
        handler(event)
        logger.info("Notifications dispatched for transition %s", transition_id)
    except Exception as exc:
        if self.request.retries >= self.max_retries:
            logger.exception("Giving up on notifications for transition %s", transition_id)
            return
        logger.warning("Notification dispatch for transition %s failed: %s", transition_id, exc)
        raise self.retry(exc=exc, countdown=min(60, 2 ** self.request.retries))
