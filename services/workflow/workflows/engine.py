"""The workflow state machine shared by every submission store."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from django.db import DatabaseError, transaction
from django.utils import timezone

from appforms.models import AppForm

from .exceptions import (
    AuditTrailError,
    ConcurrentModificationError,
    ConcurrentTransitionError,
    InsufficientPermissionError,
    InvalidTransitionError,
    MissingCommentError,
    NoWorkflowError,
    NotEditableError,
    StorageError,
    UnsupportedOperationError,
)
from .models import DRAFT_STATE, SubmissionBase, WorkflowDefinition, WorkflowTransition
from .rules import TransitionRule
from .stores import SubmissionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    """Who is acting on a submission."""

    id: str
    name: str = ""
    role: str = ""


@dataclass(frozen=True)
class TransitionResult:
    submission: SubmissionBase
    transition: WorkflowTransition
    rule: TransitionRule
    definition: WorkflowDefinition


def replay_states(initial_state: str, transitions: Sequence[WorkflowTransition]) -> str:
    """Fold an ordered transition log into the state it leads to."""

    state = initial_state
    for record in transitions:
        if record.from_state != state:
            raise AuditTrailError(
                f"transition {record.pk} starts from '{record.from_state}' but the log was in '{state}'",
                transition_id=record.pk,
            )
        state = record.to_state
    return state


class WorkflowEngine:
    """Runs workflow operations against one :class:`SubmissionStore`.

    Permission checks live in :meth:`validate_transition`; callers acting for
    a human run it before :meth:`transition_state`, system callers may skip it.
    """

    def __init__(self, store: SubmissionStore) -> None:
        self.store = store

    @contextmanager
    def _storage_unit(self, operation: str) -> Iterator[None]:
        try:
            with transaction.atomic():
                yield
        except DatabaseError as exc:
            logger.exception("Storage failure while trying to %s", operation)
            raise StorageError(f"failed to {operation}: {exc}", operation=operation) from exc

    def _definition_for(self, submission: SubmissionBase) -> WorkflowDefinition:
        if submission.workflow_id is None:
            raise NoWorkflowError(submission.pk)
        definition = WorkflowDefinition.objects.filter(pk=submission.workflow_id).first()
        if definition is None:
            raise NoWorkflowError(submission.pk)
        return definition

    @staticmethod
    def _match(definition: WorkflowDefinition, submission: SubmissionBase, action: str) -> TransitionRule:
        rule = definition.rule_index().match(submission.current_state, action)
        if rule is None:
            raise InvalidTransitionError(action, submission.current_state)
        return rule

    @staticmethod
    def _active_definition(form: AppForm) -> Optional[WorkflowDefinition]:
        if form.workflow_id is None:
            return None
        definition = WorkflowDefinition.objects.filter(pk=form.workflow_id, is_active=True).first()
        if definition is None:
            logger.warning("Workflow %s of form %s is missing or inactive", form.workflow_id, form.code)
        return definition

    def create_submission(
        self,
        form_code: str,
        business_vertical_id: Any,
        site_id: Any,
        form_data: Any,
        actor_id: str,
    ) -> SubmissionBase:
        with self._storage_unit("create submission"):
            form = self.store.resolve_form(form_code)
            definition = self._active_definition(form)
            initial_state = form.initial_state or DRAFT_STATE
            if definition is not None and definition.initial_state:
                initial_state = definition.initial_state
            now = timezone.now()
            submission = self.store.insert(
                form_id=form.id,
                form_code=form.code,
                workflow_id=form.workflow_id,
                business_vertical_id=business_vertical_id,
                site_id=site_id,
                current_state=initial_state,
                form_data=form_data if form_data is not None else {},
                version=1,
                submitted_by=actor_id,
                submitted_at=now,
                last_modified_by=actor_id,
                last_modified_at=now,
            )
        logger.info(
            "Created %s submission %s for form %s (state: %s)",
            self.store.name,
            submission.pk,
            form_code,
            initial_state,
        )
        return submission

    def get_submission(self, submission_id: Any) -> SubmissionBase:
        with self._storage_unit("fetch submission"):
            return self.store.get(submission_id)

    def get_submissions_by_form(
        self,
        form_code: str,
        business_vertical_id: Any,
        state: Optional[str] = None,
        site_id: Any = None,
        submitted_by: Optional[str] = None,
    ) -> List[SubmissionBase]:
        with self._storage_unit("fetch submissions"):
            return self.store.list(
                form_code,
                business_vertical_id,
                state=state,
                site_id=site_id,
                submitted_by=submitted_by,
            )

    def update_submission_data(self, submission_id: Any, form_data: Any, actor_id: str) -> SubmissionBase:
        """Replace the payload of a draft submission."""

        with self._storage_unit("update submission"):
            submission = self.store.get(submission_id, for_update=True)
            if not submission.is_editable:
                raise NotEditableError(submission.current_state)
            applied = self.store.compare_and_set(
                submission,
                submission.version,
                DRAFT_STATE,
                form_data=form_data if form_data is not None else {},
                last_modified_by=actor_id,
                last_modified_at=timezone.now(),
            )
            if not applied:
                raise ConcurrentModificationError(submission.current_state)
        logger.info("Updated submission data: %s (version %s)", submission.pk, submission.version)
        return submission

    def validate_transition(self, submission_id: Any, action: str, permissions: Iterable[str]) -> TransitionRule:
        """Check that ``action`` is legal right now for an actor holding ``permissions``."""

        with self._storage_unit("validate transition"):
            submission = self.store.get(submission_id)
            rule = self._match(self._definition_for(submission), submission, action)
        if not rule.allows(permissions):
            raise InsufficientPermissionError(rule.permission)
        return rule

    def perform_transition(
        self,
        submission_id: Any,
        action: str,
        actor: Actor,
        comment: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TransitionResult:
        comment = comment or ""
        with self._storage_unit("transition submission"):
            submission = self.store.get(submission_id, for_update=True)
            definition = self._definition_for(submission)
            rule = self._match(definition, submission, action)
            if rule.requires_comment and comment == "":
                raise MissingCommentError(action)

            previous_state = submission.current_state
            now = timezone.now()
            applied = self.store.compare_and_set(
                submission,
                submission.version,
                previous_state,
                current_state=rule.to_state,
                last_modified_by=actor.id,
                last_modified_at=now,
            )
            if not applied:
                raise ConcurrentTransitionError(action, previous_state)

            record = WorkflowTransition.objects.create(
                submission_id=submission.pk,
                form_code=submission.form_code,
                from_state=previous_state,
                to_state=rule.to_state,
                action=action,
                actor_id=actor.id,
                actor_name=actor.name,
                actor_role=actor.role,
                comment=comment,
                metadata=metadata if metadata is not None else {},
                submission_version=submission.version,
                transitioned_at=now,
            )
        logger.info(
            "Transitioned submission %s: %s -> %s (action: %s, actor: %s)",
            submission.pk,
            previous_state,
            rule.to_state,
            action,
            actor.name or actor.id,
        )
        return TransitionResult(submission=submission, transition=record, rule=rule, definition=definition)

    def transition_state(
        self,
        submission_id: Any,
        action: str,
        actor: Actor,
        comment: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SubmissionBase:
        return self.perform_transition(submission_id, action, actor, comment, metadata).submission

    def get_workflow_history(self, submission_id: Any) -> List[WorkflowTransition]:
        with self._storage_unit("fetch workflow history"):
            submission = self.store.get(submission_id)
            return list(
                WorkflowTransition.objects.filter(submission_id=submission.pk).order_by(
                    "submission_version", "transitioned_at"
                )
            )

    def get_workflow_stats(self, form_code: str, business_vertical_id: Any) -> Dict[str, int]:
        with self._storage_unit("fetch workflow stats"):
            return self.store.stats(form_code, business_vertical_id)

    def get_available_actions(self, submission: SubmissionBase) -> List[Dict[str, Any]]:
        if submission.workflow_id is None:
            return []
        definition = WorkflowDefinition.objects.filter(pk=submission.workflow_id).first()
        if definition is None:
            return []
        return [rule.as_action() for rule in definition.rule_index().leaving(submission.current_state)]

    def reconstruct_state(self, submission_id: Any) -> str:
        """Replay the audit log from the workflow's initial state."""

        history = self.get_workflow_history(submission_id)
        submission = self.get_submission(submission_id)
        if submission.workflow_id is None and not history:
            return submission.current_state
        definition = self._definition_for(submission)
        return replay_states(definition.initial_state, history)

    def delete_submission(self, submission_id: Any, actor_id: str) -> None:
        if not self.store.supports_soft_delete:
            raise UnsupportedOperationError(f"{self.store.name} submissions cannot be deleted")
        with self._storage_unit("delete submission"):
            submission = self.store.get(submission_id, for_update=True)
            self.store.soft_delete(submission, actor_id)
