"""Tests for the form registry and dedicated table management."""
from __future__ import annotations

import datetime

from django.db import connection
from django.test import TestCase, TransactionTestCase
from django.urls import reverse
from rest_framework.test import APIClient

from workflows.factories import make_form, make_workflow

from .models import AppForm, FormField
from .tables import FormTableManager, column_name, is_valid_identifier


class FormApiTests(TestCase):
    def setUp(self) -> None:
        self.client = APIClient()
        self.workflow = make_workflow()

    def _payload(self, **overrides):
        payload = {
            "code": "expense_claim",
            "title": "Expense claim",
            "description": "Collects reimbursable expenses.",
            "workflow": self.workflow.code,
            "db_table_name": "expense_claims",
            "fields": [
                {"name": "amount", "label": "Amount", "field_type": "decimal", "required": True},
                {"name": "spent_on", "label": "Spent on", "field_type": "date"},
            ],
        }
        payload.update(overrides)
        return payload

    def test_create_and_list_forms(self) -> None:
        response = self.client.post(reverse("form-list"), self._payload(), format="json")
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data["workflow"], self.workflow.code)
        self.assertEqual([field["order"] for field in response.data["fields"]], [0, 1])

        response = self.client.get(reverse("form-list"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.data), 1)
        form = AppForm.objects.get()
        self.assertEqual(form.workflow, self.workflow)
        self.assertEqual(form.fields.count(), 2)
        self.assertTrue(form.has_dedicated_table)

    def test_forms_are_addressed_by_code(self) -> None:
        make_form(code="leave_request")

        response = self.client.get(reverse("form-detail", args=["leave_request"]))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["code"], "leave_request")
        self.assertIsNone(response.data["workflow"])

    def test_update_replaces_fields(self) -> None:
        self.client.post(reverse("form-list"), self._payload(), format="json")

        response = self.client.put(
            reverse("form-detail", args=["expense_claim"]),
            self._payload(fields=[{"name": "merchant", "label": "Merchant", "field_type": "text"}]),
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(list(FormField.objects.values_list("name", flat=True)), ["merchant"])

    def test_invalid_table_names_are_rejected(self) -> None:
        for table_name in ("Expense-Claims", "1claims", "form_submissions", "workflow_transitions"):
            response = self.client.post(reverse("form-list"), self._payload(db_table_name=table_name), format="json")
            self.assertEqual(response.status_code, 400, table_name)
            self.assertIn("db_table_name", response.data)

        make_form(code="taken", db_table_name="expense_claims")
        response = self.client.post(reverse("form-list"), self._payload(), format="json")
        self.assertEqual(response.status_code, 400)

    def test_reserved_and_duplicate_field_names_are_rejected(self) -> None:
        reserved = self._payload(fields=[{"name": "current_state", "label": "State", "field_type": "text"}])
        response = self.client.post(reverse("form-list"), reserved, format="json")
        self.assertEqual(response.status_code, 400)

        duplicated = self._payload(
            fields=[
                {"name": "amount", "label": "Amount", "field_type": "decimal"},
                {"name": "Amount", "label": "Amount again", "field_type": "number"},
            ]
        )
        response = self.client.post(reverse("form-list"), duplicated, format="json")
        self.assertEqual(response.status_code, 400)
        self.assertFalse(AppForm.objects.exists())

    def test_initial_state_must_fit_submission_state(self) -> None:
        response = self.client.post(reverse("form-list"), self._payload(initial_state="s" * 51), format="json")
        self.assertEqual(response.status_code, 400)
        self.assertIn("initial_state", response.data)

        response = self.client.post(reverse("form-list"), self._payload(initial_state="s" * 50), format="json")
        self.assertEqual(response.status_code, 201)

    def test_unknown_workflow_is_rejected(self) -> None:
        response = self.client.post(reverse("form-list"), self._payload(workflow="missing"), format="json")
        self.assertEqual(response.status_code, 400)
        self.assertIn("workflow", response.data)

    def test_provision_requires_table_name(self) -> None:
        make_form(code="plain_form")

        response = self.client.post(reverse("form-provision", args=["plain_form"]), format="json")

        self.assertEqual(response.status_code, 405)
        self.assertEqual(response.data["code"], "unsupported_operation")


class FormTableManagerTests(TestCase):
    def test_identifiers(self) -> None:
        self.assertEqual(column_name(" Due Date "), "due_date")
        self.assertEqual(column_name("cost-centre"), "cost_centre")
        self.assertTrue(is_valid_identifier("expense_claims"))
        self.assertFalse(is_valid_identifier("Expense"))
        self.assertFalse(is_valid_identifier("drop table;"))
        self.assertFalse(is_valid_identifier("x" * 64))

    def test_rejects_forms_without_valid_table(self) -> None:
        with self.assertRaises(ValueError):
            FormTableManager(make_form(code="plain_form"))
        with self.assertRaises(ValueError):
            FormTableManager(make_form(code="bad_form", db_table_name="Bad Name"))

    def test_reserved_fields_are_not_projected(self) -> None:
        form = make_form(
            code="expense_claim",
            db_table_name="expense_claims",
            fields=[
                {"name": "Due Date", "field_type": FormField.DATE},
                {"name": "version", "field_type": FormField.NUMBER},
            ],
        )

        manager = FormTableManager(form)

        self.assertEqual([column.column for column in manager.columns], ["due_date"])
        projected = manager.project({"Due Date": "2026-02-01", "version": 7})
        self.assertEqual(projected, {"due_date": datetime.date(2026, 2, 1)})
        self.assertEqual(manager.project(["not", "a", "mapping"]), {"due_date": None})


class ProvisionApiTests(TransactionTestCase):
    def setUp(self) -> None:
        self.client = APIClient()
        self.form = make_form(
            code="expense_claim",
            db_table_name="expense_claims",
            fields=[{"name": "amount", "field_type": FormField.DECIMAL}],
        )

    def tearDown(self) -> None:
        FormTableManager(self.form).drop_table()

    def test_provision_creates_table(self) -> None:
        response = self.client.post(reverse("form-provision", args=[self.form.code]), format="json")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["table"], "expense_claims")
        self.assertEqual(response.data["columns"], ["amount"])
        self.assertIn("expense_claims", connection.introspection.table_names())

        response = self.client.post(reverse("form-provision", args=[self.form.code]), format="json")
        self.assertEqual(response.status_code, 200)

    def test_drop_table(self) -> None:
        manager = FormTableManager(self.form)
        manager.ensure_table()
        self.assertTrue(manager.table_exists())

        manager.drop_table()

        self.assertFalse(manager.table_exists())
