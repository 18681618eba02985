"""Typed errors raised by the workflow engine and their HTTP rendering."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from rest_framework.response import Response
from rest_framework.views import exception_handler

logger = logging.getLogger(__name__)


class WorkflowError(Exception):
    """Base class for every engine failure.

    ``code`` is a stable machine-readable identifier and ``status_code`` the
    HTTP status the API layer answers with. Keyword arguments are kept on
    ``data`` so callers never have to parse the message.
    """

    code = "workflow_error"
    status_code = 500

    def __init__(self, message: str, **data: Any) -> None:
        super().__init__(message)
        self.message = message
        self.data: Dict[str, Any] = data

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"detail": self.message, "code": self.code}
        payload.update({key: str(value) for key, value in self.data.items()})
        return payload


class NotFoundError(WorkflowError):
    code = "not_found"
    status_code = 404


class SubmissionNotFoundError(NotFoundError):
    code = "submission_not_found"

    def __init__(self, submission_id: Any) -> None:
        super().__init__(f"submission not found: {submission_id}", submission_id=submission_id)


class FormNotFoundError(NotFoundError):
    code = "form_not_found"

    def __init__(self, form_code: str) -> None:
        super().__init__(f"form not found: {form_code}", form_code=form_code)


class WorkflowNotFoundError(NotFoundError):
    code = "workflow_not_found"

    def __init__(self, workflow_id: Any) -> None:
        super().__init__(f"workflow not found: {workflow_id}", workflow_id=workflow_id)


class NoWorkflowError(WorkflowError):
    code = "no_workflow"
    status_code = 400

    def __init__(self, submission_id: Any) -> None:
        super().__init__("no workflow defined for this form", submission_id=submission_id)


class InvalidTransitionError(WorkflowError):
    code = "invalid_transition"
    status_code = 400

    def __init__(self, action: str, state: str, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"invalid transition: action '{action}' not allowed from state '{state}'",
            action=action,
            state=state,
        )
        self.action = action
        self.state = state


class ConcurrentTransitionError(InvalidTransitionError):
    """Another writer moved the submission after it was read."""

    code = "concurrent_transition"
    status_code = 409

    def __init__(self, action: str, state: str) -> None:
        super().__init__(
            action,
            state,
            f"invalid transition: submission left state '{state}' before action '{action}' was applied",
        )


class MissingCommentError(WorkflowError):
    code = "missing_comment"
    status_code = 400

    def __init__(self, action: str) -> None:
        super().__init__("comment is required for this action", action=action)


class InsufficientPermissionError(WorkflowError):
    code = "insufficient_permission"
    status_code = 403

    def __init__(self, permission: str) -> None:
        super().__init__(f"insufficient permissions: requires '{permission}'", permission=permission)
        self.permission = permission


class NotEditableError(WorkflowError):
    code = "not_editable"
    status_code = 400

    def __init__(self, state: str, message: Optional[str] = None) -> None:
        super().__init__(
            message
            or f"cannot update submission in state '{state}' - only draft submissions can be edited",
            state=state,
        )


class ConcurrentModificationError(NotEditableError):
    code = "concurrent_modification"
    status_code = 409

    def __init__(self, state: str) -> None:
        super().__init__(state, "submission was modified by another request, reload and retry")


class WorkflowConfigurationError(WorkflowError):
    code = "invalid_workflow_configuration"


class UnsupportedOperationError(WorkflowError):
    code = "unsupported_operation"
    status_code = 405


class ImmutableRecordError(WorkflowError):
    code = "immutable_record"


class AuditTrailError(WorkflowError):
    code = "audit_trail_broken"


class StorageError(WorkflowError):
    code = "storage_error"


def workflow_exception_handler(exc: Exception, context: Dict[str, Any]) -> Optional[Response]:
    """Render engine errors with their status; defer everything else to DRF."""

    if isinstance(exc, WorkflowError):
        view = context.get("view")
        if exc.status_code >= 500:
            logger.error("Workflow request failed in %s: %s", view.__class__.__name__, exc, exc_info=exc)
        else:
            logger.warning("Workflow request rejected in %s: %s", view.__class__.__name__, exc)
        return Response(exc.as_dict(), status=exc.status_code)
    return exception_handler(exc, context)
