"""Engine and API tests against a form's dedicated table."""
from __future__ import annotations

import datetime
from decimal import Decimal
from unittest import mock

from django.db import connection
from django.test import TransactionTestCase
from django.urls import reverse
from rest_framework.test import APIClient

from appforms.models import AppForm, FormField
from appforms.tables import FormTableManager

from .engine import Actor, WorkflowEngine
from .exceptions import (
    ConcurrentTransitionError,
    FormNotFoundError,
    InsufficientPermissionError,
    InvalidTransitionError,
    MissingCommentError,
    NotEditableError,
    SubmissionNotFoundError,
    UnsupportedOperationError,
)
from .factories import APPROVE, OTHER_TENANT, SUBMIT, TENANT, make_form, make_workflow
from .models import FormSubmission, WorkflowTransition
from .stores import DedicatedTableStore
from .tasks import dispatch_transition_notifications

TASK_FIELDS = [
    {"name": "title", "field_type": FormField.TEXT},
    {"name": "amount", "field_type": FormField.DECIMAL},
    {"name": "due_date", "field_type": FormField.DATE},
    {"name": "urgent", "field_type": FormField.BOOLEAN},
    {"name": "hours", "field_type": FormField.NUMBER},
    {"name": "tags", "field_type": FormField.MULTISELECT},
    {"name": "category", "field_type": FormField.SELECT},
]


class StaleDedicatedStore(DedicatedTableStore):
    def __init__(self, form: AppForm, snapshot) -> None:
        super().__init__(form)
        self.snapshot = snapshot

    def get(self, submission_id, *, for_update=False):  # type: ignore[override]
        if for_update:
            return self.snapshot
        return super().get(submission_id, for_update=for_update)


class DedicatedTableTestCase(TransactionTestCase):
    def setUp(self) -> None:
        self.workflow = make_workflow(transitions=[SUBMIT, APPROVE])
        self.form = make_form(workflow=self.workflow, fields=TASK_FIELDS, db_table_name="task_form_records")
        self.store = DedicatedTableStore.for_form(self.form.code)
        self.engine = WorkflowEngine(self.store)
        self.actor = Actor(id="user-1", name="Ada Lovelace", role="requester")

    def tearDown(self) -> None:
        FormTableManager(self.form).drop_table()

    def _create(self, form_data=None, tenant=TENANT):
        return self.engine.create_submission(
            self.form.code, tenant, None, {"title": "New laptop"} if form_data is None else form_data, "user-1"
        )


class DedicatedEngineTests(DedicatedTableTestCase):
    def test_for_form_provisions_table(self) -> None:
        self.assertIn("task_form_records", connection.introspection.table_names())
        self.assertEqual(self.store.model._meta.db_table, "task_form_records")

    def test_review_flow(self) -> None:
        submission = self._create()
        self.assertEqual((submission.current_state, submission.version), ("draft", 1))

        submission = self.engine.transition_state(submission.pk, "submit", self.actor)
        self.assertEqual((submission.current_state, submission.version), ("submitted", 2))

        with self.assertRaises(MissingCommentError):
            self.engine.transition_state(submission.pk, "approve", self.actor)
        reloaded = self.engine.get_submission(submission.pk)
        self.assertEqual((reloaded.current_state, reloaded.version), ("submitted", 2))

        with self.assertRaises(InsufficientPermissionError):
            self.engine.validate_transition(submission.pk, "approve", [])
        self.engine.validate_transition(submission.pk, "approve", ["admin_all"])

        submission = self.engine.transition_state(submission.pk, "approve", self.actor, comment="looks good")
        self.assertEqual((submission.current_state, submission.version), ("approved", 3))

        with self.assertRaises(InvalidTransitionError):
            self.engine.transition_state(submission.pk, "bogus_action", self.actor)
        with self.assertRaises(NotEditableError):
            self.engine.update_submission_data(submission.pk, {"title": "Changed"}, "user-1")

        reloaded = self.engine.get_submission(submission.pk)
        self.assertEqual((reloaded.current_state, reloaded.version), ("approved", 3))
        self.assertEqual(self.engine.reconstruct_state(submission.pk), "approved")

    def test_transitions_share_the_audit_table(self) -> None:
        submission = self._create()
        self.engine.transition_state(submission.pk, "submit", self.actor, metadata={"channel": "kiosk"})

        record = WorkflowTransition.objects.get(submission_id=submission.pk)
        self.assertEqual(record.form_code, self.form.code)
        self.assertEqual(record.metadata, {"channel": "kiosk"})
        self.assertFalse(FormSubmission.objects.exists())

    def test_payload_is_projected_into_typed_columns(self) -> None:
        payload = {
            "title": "New laptop",
            "amount": "1299.99",
            "due_date": "2026-11-01",
            "urgent": True,
            "hours": "not a number",
            "tags": ["it", "hardware"],
            "unmapped": {"kept": True},
        }
        submission = self._create(payload)

        row = self.store.model.objects.get(pk=submission.pk)
        self.assertEqual(row.form_data, payload)
        self.assertEqual(row.title, "New laptop")
        self.assertEqual(row.amount, Decimal("1299.99"))
        self.assertEqual(row.due_date, datetime.date(2026, 11, 1))
        self.assertIs(row.urgent, True)
        self.assertIsNone(row.hours)
        self.assertEqual(row.tags, ["it", "hardware"])

    def test_values_exceeding_column_limits_project_to_null(self) -> None:
        payload = {"title": "Server rack", "amount": "12345678901234567.89", "category": "x" * 300}

        submission = self._create(payload)

        row = self.store.model.objects.get(pk=submission.pk)
        self.assertEqual(row.form_data, payload)
        self.assertEqual(row.title, "Server rack")
        self.assertIsNone(row.amount)
        self.assertIsNone(row.category)

        self.engine.update_submission_data(submission.pk, {"amount": "0.125", "category": "hardware"}, "user-1")

        row = self.store.model.objects.get(pk=submission.pk)
        self.assertIsNone(row.amount)
        self.assertEqual(row.category, "hardware")
        self.assertEqual(row.form_data["amount"], "0.125")

    def test_update_recomputes_columns(self) -> None:
        submission = self._create({"title": "Laptop", "amount": "10.00", "due_date": "2026-11-01"})

        self.engine.update_submission_data(submission.pk, {"title": "Dock", "amount": "45.50"}, "user-2")

        row = self.store.model.objects.get(pk=submission.pk)
        self.assertEqual(row.title, "Dock")
        self.assertEqual(row.amount, Decimal("45.50"))
        self.assertIsNone(row.due_date)
        self.assertEqual(row.version, 2)
        self.assertEqual(row.last_modified_by, "user-2")

    def test_soft_delete_hides_submission(self) -> None:
        kept = self._create()
        deleted = self._create()

        self.engine.delete_submission(deleted.pk, "user-9")

        with self.assertRaises(SubmissionNotFoundError):
            self.engine.get_submission(deleted.pk)
        with self.assertRaises(SubmissionNotFoundError):
            self.engine.transition_state(deleted.pk, "submit", self.actor)
        self.assertEqual([s.pk for s in self.engine.get_submissions_by_form(self.form.code, TENANT)], [kept.pk])
        self.assertEqual(self.engine.get_workflow_stats(self.form.code, TENANT), {"draft": 1})
        self.assertTrue(self.store.model.objects.filter(pk=deleted.pk, deleted_by="user-9").exists())

    def test_store_is_bound_to_its_form(self) -> None:
        other = make_form(code="other_form", workflow=self.workflow)

        with self.assertRaises(FormNotFoundError):
            self.engine.create_submission(other.code, TENANT, None, {}, "user-1")
        with self.assertRaises(UnsupportedOperationError):
            DedicatedTableStore(other)

    def test_stats_are_scoped_to_tenant(self) -> None:
        first = self._create()
        self._create()
        self._create(tenant=OTHER_TENANT)
        self.engine.transition_state(first.pk, "submit", self.actor)

        self.assertEqual(self.engine.get_workflow_stats(self.form.code, TENANT), {"draft": 1, "submitted": 1})

    def test_stale_transition_is_rejected(self) -> None:
        submission = self._create()
        stale = WorkflowEngine(StaleDedicatedStore(self.form, self.engine.get_submission(submission.pk)))
        self.engine.transition_state(submission.pk, "submit", Actor(id="user-2"))

        with self.assertRaises(ConcurrentTransitionError):
            stale.transition_state(submission.pk, "submit", self.actor)

        self.assertEqual(self.engine.get_submission(submission.pk).version, 2)
        self.assertEqual(WorkflowTransition.objects.filter(submission_id=submission.pk).count(), 1)

    def test_new_fields_become_columns(self) -> None:
        FormField.objects.create(form=self.form, name="priority", label="Priority", field_type=FormField.SELECT)

        FormTableManager(AppForm.objects.get(pk=self.form.pk)).ensure_table()

        with connection.cursor() as cursor:
            columns = {
                column.name for column in connection.introspection.get_table_description(cursor, "task_form_records")
            }
        self.assertIn("priority", columns)
        self.assertIn("amount", columns)


class DedicatedSubmissionApiTests(DedicatedTableTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.client = APIClient()
        self.headers = {
            "HTTP_X_BUSINESS_VERTICAL_ID": str(TENANT),
            "HTTP_X_ACTOR_ID": "user-1",
            "HTTP_X_ACTOR_NAME": "Ada",
            "HTTP_X_ACTOR_PERMISSIONS": "task:approve",
        }

    def _url(self, name: str, submission_id=None, form_code: str = "") -> str:
        kwargs = {"form_code": form_code or self.form.code}
        if submission_id is not None:
            kwargs["pk"] = str(submission_id)
        return reverse(name, kwargs=kwargs)

    def test_create_transition_and_delete(self) -> None:
        response = self.client.post(
            self._url("dedicated-submission-list"),
            {"form_data": {"title": "Chair", "amount": "89.90"}},
            format="json",
            **self.headers,
        )
        self.assertEqual(response.status_code, 201)
        submission_id = response.data["submission"]["id"]
        self.assertEqual(self.store.model.objects.get(pk=submission_id).amount, Decimal("89.90"))

        with mock.patch.object(dispatch_transition_notifications, "delay") as delay:
            response = self.client.post(
                self._url("dedicated-submission-transition", submission_id),
                {"action": "submit"},
                format="json",
                **self.headers,
            )
        self.assertEqual(response.status_code, 200)
        delay.assert_called_once()
        self.assertEqual(response.data["current_state"], "submitted")

        response = self.client.get(self._url("dedicated-submission-detail", submission_id), **self.headers)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.data["history"]), 1)

        response = self.client.delete(self._url("dedicated-submission-detail", submission_id), **self.headers)
        self.assertEqual(response.status_code, 204)

        response = self.client.get(self._url("dedicated-submission-detail", submission_id), **self.headers)
        self.assertEqual(response.status_code, 404)

    def test_form_without_dedicated_table(self) -> None:
        make_form(code="plain_form", workflow=self.workflow)

        response = self.client.get(self._url("dedicated-submission-list", form_code="plain_form"), **self.headers)

        self.assertEqual(response.status_code, 405)
        self.assertEqual(response.data["code"], "unsupported_operation")
