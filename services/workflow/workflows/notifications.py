"""Transition events handed to the notification subsystem after commit."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict

import requests
from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder
from django.db import transaction
from django.utils.module_loading import import_string

from .engine import TransitionResult

logger = logging.getLogger(__name__)


def build_transition_event(result: TransitionResult, actor_name: str) -> Dict[str, Any]:
    """JSON-safe payload describing one accepted transition."""

    submission = result.submission
    record = result.transition
    event = {
        "submission": {
            "id": submission.pk,
            "form_code": submission.form_code,
            "form_id": submission.form_id,
            "business_vertical_id": submission.business_vertical_id,
            "site_id": submission.site_id,
            "current_state": submission.current_state,
            "submitted_by": submission.submitted_by,
            "version": submission.version,
        },
        "transition": {
            "id": record.pk,
            "from_state": record.from_state,
            "to_state": record.to_state,
            "action": record.action,
            "actor_id": record.actor_id,
            "actor_name": record.actor_name,
            "actor_role": record.actor_role,
            "comment": record.comment,
            "metadata": record.metadata,
            "transitioned_at": record.transitioned_at,
        },
        "workflow": {
            "id": result.definition.pk,
            "code": result.definition.code,
            "version": result.definition.version,
        },
        "notifications": list(result.rule.notifications),
        "actor_name": actor_name,
    }
    # Celery's json serializer rejects UUID and datetime values.
    return json.loads(json.dumps(event, cls=DjangoJSONEncoder))


def deliver_transition_event(event: Dict[str, Any]) -> None:
    """Default handler: POST the event to the notification service, if one is configured."""

    url = settings.WORKFLOW_NOTIFICATION_URL
    if not url:
        logger.info(
            "Transition %s of submission %s has no notification endpoint configured",
            event["transition"]["id"],
            event["submission"]["id"],
        )
        return
    response = requests.post(url, json=event, timeout=settings.WORKFLOW_NOTIFICATION_TIMEOUT)
    response.raise_for_status()


def get_notification_handler():
    return import_string(settings.WORKFLOW_NOTIFICATION_HANDLER)


def schedule_transition_notifications(result: TransitionResult, actor_name: str) -> None:
    """Queue notification dispatch once the surrounding transaction commits.

    Broker failures are logged and never reach the caller.
    """

    from .tasks import dispatch_transition_notifications

    event = build_transition_event(result, actor_name)

    def _enqueue() -> None:
        try:
            dispatch_transition_notifications.delay(event)
        except Exception:  # pragma: no cover - broker outages
            logger.exception("Could not queue notifications for transition %s", event["transition"]["id"])

    transaction.on_commit(_enqueue)
