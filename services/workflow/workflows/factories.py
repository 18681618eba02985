"""Builders for workflow and form rows used by the test suites."""
from __future__ import annotations

import uuid
from typing import Any, Dict, Iterable, List, Optional

from appforms.models import AppForm, FormField

from .models import WorkflowDefinition

TENANT = uuid.UUID("6f1c2a9e-0d7b-4c55-9a51-3f1f0c2b7a10")
OTHER_TENANT = uuid.UUID("0b8e7d44-52a1-4f0e-8f3c-1d2e3f4a5b6c")

SUBMIT = {"from": "draft", "to": "submitted", "action": "submit", "requires_comment": False}
APPROVE = {
    "from": "submitted",
    "to": "approved",
    "action": "approve",
    "requires_comment": True,
    "permission": "task:approve",
}
REJECT = {
    "from": "submitted",
    "to": "rejected",
    "action": "reject",
    "label": "Send back",
    "requires_comment": True,
    "permission": "task:approve",
    "notifications": [{"type": "email", "recipients": ["submitter"]}],
}
REVISE = {"from": "rejected", "to": "draft", "action": "revise"}

REVIEW_RULES: List[Dict[str, Any]] = [SUBMIT, APPROVE, REJECT, REVISE]


def make_workflow(
    code: str = "task_review",
    transitions: Optional[List[Dict[str, Any]]] = None,
    **extra: Any,
) -> WorkflowDefinition:
    values: Dict[str, Any] = {
        "code": code,
        "name": code.replace("_", " ").title(),
        "initial_state": "draft",
        "transitions": list(REVIEW_RULES if transitions is None else transitions),
    }
    values.update(extra)
    return WorkflowDefinition.objects.create(**values)


def make_form(
    code: str = "task_form",
    workflow: Optional[WorkflowDefinition] = None,
    fields: Iterable[Dict[str, Any]] = (),
    **extra: Any,
) -> AppForm:
    values: Dict[str, Any] = {"code": code, "title": code.replace("_", " ").title(), "workflow": workflow}
    values.update(extra)
    form = AppForm.objects.create(**values)
    for index, field in enumerate(fields):
        attrs = dict(field)
        attrs.setdefault("label", attrs["name"])
        FormField.objects.create(form=form, order=index, **attrs)
    return form
