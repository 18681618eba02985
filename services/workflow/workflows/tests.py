"""Engine tests against the shared submissions table."""
from __future__ import annotations

import threading
import uuid
from datetime import timedelta
from typing import List
from unittest import mock, skipUnless

from django.db import DatabaseError, connection
from django.test import TestCase, TransactionTestCase
from django.utils import timezone

from .engine import Actor, WorkflowEngine, replay_states
from .exceptions import (
    AuditTrailError,
    ConcurrentModificationError,
    ConcurrentTransitionError,
    FormNotFoundError,
    ImmutableRecordError,
    InsufficientPermissionError,
    InvalidTransitionError,
    MissingCommentError,
    NoWorkflowError,
    NotEditableError,
    StorageError,
    SubmissionNotFoundError,
    UnsupportedOperationError,
    WorkflowConfigurationError,
)
from .factories import APPROVE, OTHER_TENANT, SUBMIT, TENANT, make_form, make_workflow
from .models import FormSubmission, WorkflowTransition
from .rules import RuleIndex
from .stores import SharedTableStore


class StaleReadStore(SharedTableStore):
    """Hands the engine a snapshot read before a rival writer committed."""

    def __init__(self, snapshot) -> None:
        self.snapshot = snapshot

    def get(self, submission_id, *, for_update=False):  # type: ignore[override]
        if for_update:
            return self.snapshot
        return super().get(submission_id, for_update=for_update)


class RuleIndexTests(TestCase):
    def test_first_rule_wins_for_duplicate_pairs(self) -> None:
        index = RuleIndex.parse(
            [
                {"from": "draft", "to": "submitted", "action": "submit"},
                {"from": "draft", "to": "cancelled", "action": "submit"},
            ]
        )
        self.assertEqual(index.match("draft", "submit").to_state, "submitted")
        self.assertEqual(len(index.leaving("draft")), 2)

    def test_empty_document_has_no_rules(self) -> None:
        self.assertEqual(len(RuleIndex.parse(None)), 0)
        self.assertIsNone(RuleIndex.parse([]).match("draft", "submit"))

    def test_malformed_rules_are_rejected(self) -> None:
        with self.assertRaises(WorkflowConfigurationError):
            RuleIndex.parse({"from": "draft"})
        with self.assertRaises(WorkflowConfigurationError):
            RuleIndex.parse([{"from": "draft", "action": "submit"}])

    def test_label_defaults_to_action(self) -> None:
        rule = RuleIndex.parse([SUBMIT]).match("draft", "submit")
        self.assertEqual(rule.as_action()["label"], "submit")

    def test_admin_permission_satisfies_any_rule(self) -> None:
        rule = RuleIndex.parse([APPROVE]).match("submitted", "approve")
        self.assertFalse(rule.allows([]))
        self.assertFalse(rule.allows(["task:view"]))
        self.assertTrue(rule.allows(["task:approve"]))
        self.assertTrue(rule.allows(["admin_all"]))


class WorkflowEngineTests(TestCase):
    def setUp(self) -> None:
        self.workflow = make_workflow(transitions=[SUBMIT, APPROVE])
        self.form = make_form(workflow=self.workflow)
        self.engine = WorkflowEngine(SharedTableStore())
        self.actor = Actor(id="user-1", name="Ada Lovelace", role="requester")

    def _create(self, form_data=None, tenant=TENANT, actor_id="user-1", site_id=None):
        return self.engine.create_submission(
            self.form.code,
            tenant,
            site_id,
            {"title": "New laptop"} if form_data is None else form_data,
            actor_id,
        )

    def _submitted(self):
        submission = self._create()
        return self.engine.transition_state(submission.pk, "submit", self.actor)

    def test_create_starts_in_initial_state(self) -> None:
        submission = self._create()

        self.assertEqual(submission.current_state, "draft")
        self.assertEqual(submission.version, 1)
        self.assertEqual(submission.workflow_id, self.workflow.pk)
        self.assertEqual(submission.submitted_by, "user-1")
        self.assertEqual(submission.last_modified_by, "user-1")

    def test_submit_records_transition(self) -> None:
        submission = self._create()

        submission = self.engine.transition_state(submission.pk, "submit", self.actor)

        self.assertEqual(submission.current_state, "submitted")
        self.assertEqual(submission.version, 2)
        history = self.engine.get_workflow_history(submission.pk)
        self.assertEqual(len(history), 1)
        record = history[0]
        self.assertEqual((record.from_state, record.to_state, record.action), ("draft", "submitted", "submit"))
        self.assertEqual(record.actor_id, "user-1")
        self.assertEqual(record.actor_name, "Ada Lovelace")
        self.assertEqual(record.actor_role, "requester")
        self.assertEqual(record.submission_version, 2)
        self.assertEqual(record.form_code, self.form.code)

    def test_missing_comment_leaves_submission_untouched(self) -> None:
        submission = self._submitted()

        with self.assertRaises(MissingCommentError):
            self.engine.transition_state(submission.pk, "approve", self.actor, comment="")

        reloaded = self.engine.get_submission(submission.pk)
        self.assertEqual(reloaded.current_state, "submitted")
        self.assertEqual(reloaded.version, 2)
        self.assertEqual(len(self.engine.get_workflow_history(submission.pk)), 1)

    def test_comment_unlocks_approval(self) -> None:
        submission = self._submitted()

        submission = self.engine.transition_state(submission.pk, "approve", self.actor, comment="looks good")

        self.assertEqual(submission.current_state, "approved")
        self.assertEqual(submission.version, 3)
        self.assertEqual(self.engine.get_workflow_history(submission.pk)[-1].comment, "looks good")

    def test_unknown_action_is_rejected(self) -> None:
        submission = self._submitted()
        self.engine.transition_state(submission.pk, "approve", self.actor, comment="looks good")

        with self.assertRaises(InvalidTransitionError) as ctx:
            self.engine.transition_state(submission.pk, "bogus_action", self.actor)

        self.assertEqual(
            str(ctx.exception), "invalid transition: action 'bogus_action' not allowed from state 'approved'"
        )
        reloaded = self.engine.get_submission(submission.pk)
        self.assertEqual(reloaded.current_state, "approved")
        self.assertEqual(reloaded.version, 3)

    def test_update_outside_draft_is_rejected(self) -> None:
        submission = self._submitted()
        self.engine.transition_state(submission.pk, "approve", self.actor, comment="looks good")

        with self.assertRaises(NotEditableError):
            self.engine.update_submission_data(submission.pk, {"title": "Changed"}, "user-1")

        reloaded = self.engine.get_submission(submission.pk)
        self.assertEqual(reloaded.form_data, {"title": "New laptop"})
        self.assertEqual(reloaded.version, 3)

    def test_validate_checks_permissions(self) -> None:
        submission = self._submitted()

        with self.assertRaises(InsufficientPermissionError) as ctx:
            self.engine.validate_transition(submission.pk, "approve", [])
        self.assertEqual(str(ctx.exception), "insufficient permissions: requires 'task:approve'")

        rule = self.engine.validate_transition(submission.pk, "approve", ["admin_all"])
        self.assertEqual(rule.to_state, "approved")

    def test_validate_has_no_side_effects(self) -> None:
        submission = self._submitted()

        self.engine.validate_transition(submission.pk, "approve", ["task:approve"])
        with self.assertRaises(InvalidTransitionError):
            self.engine.validate_transition(submission.pk, "submit", [])

        reloaded = self.engine.get_submission(submission.pk)
        self.assertEqual(reloaded.current_state, "submitted")
        self.assertEqual(reloaded.version, 2)
        self.assertEqual(WorkflowTransition.objects.count(), 1)

    def test_duplicate_rules_resolve_to_first_match(self) -> None:
        self.workflow.transitions = [SUBMIT, {"from": "draft", "to": "cancelled", "action": "submit"}]
        self.workflow.save()

        states = {
            self.engine.transition_state(self._create().pk, "submit", self.actor).current_state for _ in range(3)
        }

        self.assertEqual(states, {"submitted"})

    def test_version_counts_accepted_mutations(self) -> None:
        submission = self._create()
        self.engine.update_submission_data(submission.pk, {"title": "Laptop"}, "user-1")
        self.engine.update_submission_data(submission.pk, {"title": "Laptop and dock"}, "user-1")
        self.engine.transition_state(submission.pk, "submit", self.actor)
        with self.assertRaises(MissingCommentError):
            self.engine.transition_state(submission.pk, "approve", self.actor)
        self.engine.transition_state(submission.pk, "approve", self.actor, comment="ok")

        self.assertEqual(self.engine.get_submission(submission.pk).version, 5)

    def test_update_replaces_payload_in_draft(self) -> None:
        submission = self._create({"title": "Laptop", "quantity": 2})

        updated = self.engine.update_submission_data(submission.pk, {"title": "Monitor"}, "user-2")

        self.assertEqual(updated.form_data, {"title": "Monitor"})
        self.assertEqual(updated.version, 2)
        self.assertEqual(updated.last_modified_by, "user-2")
        self.assertEqual(updated.submitted_by, "user-1")

    def test_history_replays_to_current_state(self) -> None:
        self.workflow.transitions = [
            SUBMIT,
            APPROVE,
            {"from": "submitted", "to": "rejected", "action": "reject", "requires_comment": True},
            {"from": "rejected", "to": "draft", "action": "revise"},
        ]
        self.workflow.save()
        submission = self._create()
        self.engine.transition_state(submission.pk, "submit", self.actor)
        self.engine.transition_state(submission.pk, "reject", self.actor, comment="missing receipt")
        self.engine.transition_state(submission.pk, "revise", self.actor)
        self.engine.transition_state(submission.pk, "submit", self.actor)
        submission = self.engine.transition_state(submission.pk, "approve", self.actor, comment="ok")

        history = self.engine.get_workflow_history(submission.pk)
        self.assertEqual([record.submission_version for record in history], [2, 3, 4, 5, 6])
        self.assertEqual([record.action for record in history], ["submit", "reject", "revise", "submit", "approve"])
        self.assertEqual(self.engine.reconstruct_state(submission.pk), submission.current_state)
        self.assertEqual(replay_states(self.workflow.initial_state, history), "approved")

    def test_replay_detects_gaps(self) -> None:
        records = [
            WorkflowTransition(from_state="draft", to_state="submitted", action="submit"),
            WorkflowTransition(from_state="approved", to_state="closed", action="close"),
        ]

        with self.assertRaises(AuditTrailError):
            replay_states("draft", records)

    def test_payloads_are_preserved(self) -> None:
        payload = {
            "title": "Café supplies ☕",
            "items": [{"sku": "A-1", "qty": 3, "price": 12.5}, {"sku": "B-2", "qty": 1, "price": None}],
            "approved": False,
            "notes": {"nested": {"deep": ["x", 1, 2.25]}},
        }
        metadata = {"source": "mobile", "geo": {"lat": 12.97, "lng": 77.59}, "tags": []}
        submission = self._create(payload)

        self.engine.transition_state(submission.pk, "submit", self.actor, metadata=metadata)

        self.assertEqual(self.engine.get_submission(submission.pk).form_data, payload)
        self.assertEqual(self.engine.get_workflow_history(submission.pk)[0].metadata, metadata)

    def test_transition_records_are_append_only(self) -> None:
        submission = self._submitted()
        record = self.engine.get_workflow_history(submission.pk)[0]

        record.comment = "rewritten"
        with self.assertRaises(ImmutableRecordError):
            record.save()
        with self.assertRaises(ImmutableRecordError):
            record.delete()
        self.assertEqual(WorkflowTransition.objects.get(pk=record.pk).comment, "")

    def test_available_actions_follow_current_state(self) -> None:
        self.workflow.transitions = [
            SUBMIT,
            APPROVE,
            {"from": "submitted", "to": "rejected", "action": "reject", "label": "Send back"},
        ]
        self.workflow.save()
        submission = self._submitted()

        actions = self.engine.get_available_actions(submission)

        self.assertEqual([action["action"] for action in actions], ["approve", "reject"])
        self.assertEqual(actions[0]["label"], "approve")
        self.assertTrue(actions[0]["requires_comment"])
        self.assertEqual(actions[0]["permission"], "task:approve")
        self.assertEqual(actions[1]["label"], "Send back")

    def test_form_without_workflow(self) -> None:
        form = make_form(code="plain_form")
        submission = self.engine.create_submission(form.code, TENANT, None, {}, "user-1")

        self.assertEqual(submission.current_state, "draft")
        self.assertIsNone(submission.workflow_id)
        self.assertEqual(self.engine.get_available_actions(submission), [])
        with self.assertRaises(NoWorkflowError) as ctx:
            self.engine.transition_state(submission.pk, "submit", self.actor)
        self.assertEqual(str(ctx.exception), "no workflow defined for this form")
        with self.assertRaises(NoWorkflowError):
            self.engine.validate_transition(submission.pk, "submit", ["admin_all"])

    def test_initial_state_precedence(self) -> None:
        form = make_form(code="intake_form", initial_state="intake")
        self.assertEqual(self.engine.create_submission(form.code, TENANT, None, {}, "u").current_state, "intake")

        workflow = make_workflow(code="triage", initial_state="triage", transitions=[])
        form.workflow = workflow
        form.save()
        self.assertEqual(self.engine.create_submission(form.code, TENANT, None, {}, "u").current_state, "triage")

        workflow.is_active = False
        workflow.save()
        self.assertEqual(self.engine.create_submission(form.code, TENANT, None, {}, "u").current_state, "intake")

    def test_unknown_form_and_submission(self) -> None:
        with self.assertRaises(FormNotFoundError):
            self.engine.create_submission("missing_form", TENANT, None, {}, "user-1")

        self.form.is_active = False
        self.form.save()
        with self.assertRaises(FormNotFoundError):
            self._create()

        with self.assertRaises(SubmissionNotFoundError):
            self.engine.get_submission(uuid.uuid4())
        with self.assertRaises(SubmissionNotFoundError):
            self.engine.get_submission("not-a-uuid")
        with self.assertRaises(SubmissionNotFoundError):
            self.engine.get_workflow_history(uuid.uuid4())

    def test_definition_edits_apply_to_open_submissions(self) -> None:
        submission = self._create()

        self.workflow.transitions = [{"from": "draft", "to": "queued", "action": "submit"}]
        self.workflow.save()

        self.assertEqual(self.engine.transition_state(submission.pk, "submit", self.actor).current_state, "queued")

    def test_list_filters_and_ordering(self) -> None:
        site = uuid.uuid4()
        oldest = self._create(site_id=site)
        middle = self._create(actor_id="user-2")
        newest = self._create(site_id=site)
        self._create(tenant=OTHER_TENANT)
        self.engine.transition_state(middle.pk, "submit", self.actor)
        base = timezone.now()
        for offset, submission in enumerate([oldest, middle, newest]):
            FormSubmission.objects.filter(pk=submission.pk).update(submitted_at=base + timedelta(minutes=offset))

        def ids(**filters) -> List[uuid.UUID]:
            return [s.pk for s in self.engine.get_submissions_by_form(self.form.code, TENANT, **filters)]

        self.assertEqual(ids(), [newest.pk, middle.pk, oldest.pk])
        self.assertEqual(ids(state="draft"), [newest.pk, oldest.pk])
        self.assertEqual(ids(site_id=site), [newest.pk, oldest.pk])
        self.assertEqual(ids(submitted_by="user-2"), [middle.pk])
        self.assertEqual(ids(state="approved"), [])

    def test_stats_are_scoped_to_tenant(self) -> None:
        first = self._create()
        self._create()
        self._create(tenant=OTHER_TENANT)
        self.engine.transition_state(first.pk, "submit", self.actor)

        self.assertEqual(self.engine.get_workflow_stats(self.form.code, TENANT), {"draft": 1, "submitted": 1})
        self.assertEqual(self.engine.get_workflow_stats(self.form.code, OTHER_TENANT), {"draft": 1})
        self.assertEqual(self.engine.get_workflow_stats("missing_form", TENANT), {})

    def test_shared_submissions_cannot_be_deleted(self) -> None:
        submission = self._create()

        with self.assertRaises(UnsupportedOperationError):
            self.engine.delete_submission(submission.pk, "user-1")
        self.assertTrue(FormSubmission.objects.filter(pk=submission.pk).exists())

    def test_storage_failures_are_wrapped(self) -> None:
        with mock.patch.object(SharedTableStore, "insert", side_effect=DatabaseError("disk full")):
            with self.assertRaises(StorageError) as ctx:
                self._create()
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertFalse(FormSubmission.objects.exists())

    def test_concurrent_transition_loses_race(self) -> None:
        submission = self._create()
        stale = WorkflowEngine(StaleReadStore(self.engine.get_submission(submission.pk)))
        self.engine.transition_state(submission.pk, "submit", Actor(id="user-2", name="Grace"))

        with self.assertRaises(ConcurrentTransitionError) as ctx:
            stale.transition_state(submission.pk, "submit", self.actor)

        self.assertIsInstance(ctx.exception, InvalidTransitionError)
        reloaded = self.engine.get_submission(submission.pk)
        self.assertEqual(reloaded.current_state, "submitted")
        self.assertEqual(reloaded.version, 2)
        history = self.engine.get_workflow_history(submission.pk)
        self.assertEqual([record.actor_id for record in history], ["user-2"])

    def test_concurrent_update_loses_race(self) -> None:
        submission = self._create()
        stale = WorkflowEngine(StaleReadStore(self.engine.get_submission(submission.pk)))
        self.engine.update_submission_data(submission.pk, {"title": "First"}, "user-2")

        with self.assertRaises(ConcurrentModificationError):
            stale.update_submission_data(submission.pk, {"title": "Second"}, "user-1")

        reloaded = self.engine.get_submission(submission.pk)
        self.assertEqual(reloaded.form_data, {"title": "First"})
        self.assertEqual(reloaded.version, 2)


@skipUnless(connection.vendor == "postgresql", "row locks need PostgreSQL")
class ConcurrentTransitionTests(TransactionTestCase):
    def test_only_one_of_two_parallel_transitions_commits(self) -> None:
        workflow = make_workflow(transitions=[SUBMIT])
        form = make_form(workflow=workflow)
        submission = WorkflowEngine(SharedTableStore()).create_submission(form.code, TENANT, None, {}, "user-1")
        barrier = threading.Barrier(2)
        outcomes: List[str] = []

        def worker(actor_id: str) -> None:
            engine = WorkflowEngine(SharedTableStore())
            try:
                barrier.wait()
                engine.transition_state(submission.pk, "submit", Actor(id=actor_id))
                outcomes.append("committed")
            except InvalidTransitionError:
                outcomes.append("rejected")
            finally:
                connection.close()

        threads = [threading.Thread(target=worker, args=(f"user-{n}",)) for n in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(sorted(outcomes), ["committed", "rejected"])
        self.assertEqual(WorkflowTransition.objects.filter(submission_id=submission.pk).count(), 1)
        self.assertEqual(FormSubmission.objects.get(pk=submission.pk).version, 2)
