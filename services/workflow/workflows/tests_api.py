"""HTTP tests for workflow definitions, submissions and notification dispatch."""
from __future__ import annotations

import uuid
from typing import Any, Dict, List
from unittest import mock

from django.conf import settings
from django.test import TestCase, override_settings
from django.urls import reverse
from rest_framework.test import APIClient

from .factories import APPROVE, OTHER_TENANT, SUBMIT, TENANT, make_form, make_workflow
from .models import FormSubmission, WorkflowDefinition, WorkflowTransition
from .notifications import deliver_transition_event
from .tasks import dispatch_transition_notifications

RECEIVED: List[Dict[str, Any]] = []


def remember_event(event: Dict[str, Any]) -> None:
    RECEIVED.append(event)


class WorkflowDefinitionApiTests(TestCase):
    def setUp(self) -> None:
        self.client = APIClient()

    def test_create_and_list_workflows(self) -> None:
        payload = {
            "code": "leave_approval",
            "name": "Leave approval",
            "initial_state": "draft",
            "states": [{"code": "draft", "name": "Draft"}, {"code": "approved", "is_final": True}],
            "transitions": [SUBMIT, APPROVE],
        }
        response = self.client.post(reverse("workflow-list"), payload, format="json")
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data["transitions"][0]["from"], "draft")
        self.assertTrue(response.data["transitions"][1]["requires_comment"])

        stored = WorkflowDefinition.objects.get()
        self.assertEqual(stored.transitions[1]["permission"], "task:approve")
        self.assertEqual(stored.rule_index().match("draft", "submit").to_state, "submitted")

        response = self.client.get(reverse("workflow-list"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.data), 1)

    def test_rules_without_target_are_rejected(self) -> None:
        payload = {"code": "broken", "name": "Broken", "transitions": [{"from": "draft", "action": "submit"}]}
        response = self.client.post(reverse("workflow-list"), payload, format="json")
        self.assertEqual(response.status_code, 400)
        self.assertIn("transitions", response.data)

    def test_unreachable_initial_state_is_rejected(self) -> None:
        payload = {"code": "intake", "name": "Intake", "initial_state": "intake", "transitions": [SUBMIT]}
        response = self.client.post(reverse("workflow-list"), payload, format="json")
        self.assertEqual(response.status_code, 400)
        self.assertIn("initial_state", response.data)

    def test_publish_workflow(self) -> None:
        workflow = make_workflow(is_active=False)

        response = self.client.post(reverse("workflow-publish", args=[workflow.pk]), format="json")

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data["is_active"])
        workflow.refresh_from_db()
        self.assertTrue(workflow.is_active)

    def test_health(self) -> None:
        response = self.client.get(reverse("workflow-health"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data, {"status": "ok"})


class SubmissionApiTests(TestCase):
    def setUp(self) -> None:
        self.client = APIClient()
        self.workflow = make_workflow()
        self.form = make_form(workflow=self.workflow)

    def _headers(self, tenant=TENANT, permissions: str = "", **overrides: str) -> Dict[str, str]:
        headers = {
            "HTTP_X_BUSINESS_VERTICAL_ID": str(tenant),
            "HTTP_X_ACTOR_ID": "user-1",
            "HTTP_X_ACTOR_NAME": "Ada",
            "HTTP_X_ACTOR_ROLE": "requester",
            "HTTP_X_ACTOR_PERMISSIONS": permissions,
        }
        headers.update(overrides)
        return headers

    def _url(self, name: str, submission_id: Any = None, form_code: str = "") -> str:
        kwargs = {"form_code": form_code or self.form.code}
        if submission_id is not None:
            kwargs["pk"] = str(submission_id)
        return reverse(name, kwargs=kwargs)

    def _create(self, form_data=None, **headers: Any) -> Dict[str, Any]:
        response = self.client.post(
            self._url("submission-list"),
            {"form_data": form_data or {"title": "New laptop"}},
            format="json",
            **self._headers(**headers),
        )
        self.assertEqual(response.status_code, 201)
        return response.data["submission"]

    def _transition(self, submission_id: Any, action: str, permissions: str = "", **body: Any):
        return self.client.post(
            self._url("submission-transition", submission_id),
            {"action": action, **body},
            format="json",
            **self._headers(permissions=permissions),
        )

    def test_create_submission(self) -> None:
        submission = self._create()

        self.assertEqual(submission["current_state"], "draft")
        self.assertEqual(submission["version"], 1)
        self.assertEqual(submission["form_code"], self.form.code)
        self.assertEqual(submission["business_vertical_id"], str(TENANT))
        self.assertEqual(submission["submitted_by"], "user-1")
        self.assertEqual([action["action"] for action in submission["available_actions"]], ["submit"])

    def test_create_requires_caller_context(self) -> None:
        url = self._url("submission-list")

        response = self.client.post(url, {"form_data": {}}, format="json", HTTP_X_ACTOR_ID="user-1")
        self.assertEqual(response.status_code, 400)

        response = self.client.post(url, {"form_data": {}}, format="json", HTTP_X_BUSINESS_VERTICAL_ID=str(TENANT))
        self.assertEqual(response.status_code, 403)
        self.assertFalse(FormSubmission.objects.exists())

    def test_unknown_form(self) -> None:
        response = self.client.post(
            self._url("submission-list", form_code="missing_form"),
            {"form_data": {}},
            format="json",
            **self._headers(),
        )
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.data["code"], "form_not_found")

    def test_full_review_flow(self) -> None:
        submission = self._create()

        response = self._transition(submission["id"], "submit")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["current_state"], "submitted")
        self.assertEqual(response.data["transition"]["action"], "submit")

        response = self._transition(submission["id"], "approve", comment="looks good")
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.data["code"], "insufficient_permission")
        self.assertEqual(response.data["permission"], "task:approve")

        response = self._transition(submission["id"], "approve", permissions="task:view, task:approve")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "missing_comment")
        self.assertEqual(response.data["detail"], "comment is required for this action")

        response = self._transition(submission["id"], "approve", permissions="task:approve", comment="looks good")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["submission"]["current_state"], "approved")
        self.assertEqual(response.data["submission"]["version"], 3)
        self.assertEqual(response.data["submission"]["available_actions"], [])

        response = self._transition(submission["id"], "bogus_action", permissions="admin_all")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "invalid_transition")

    def test_update_only_in_draft(self) -> None:
        submission = self._create()
        url = self._url("submission-detail", submission["id"])

        response = self.client.put(url, {"form_data": {"title": "Monitor"}}, format="json", **self._headers())
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["submission"]["form_data"], {"title": "Monitor"})
        self.assertEqual(response.data["submission"]["version"], 2)

        self._transition(submission["id"], "submit")
        response = self.client.put(url, {"form_data": {"title": "Desk"}}, format="json", **self._headers())
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "not_editable")
        self.assertEqual(FormSubmission.objects.get(pk=submission["id"]).form_data, {"title": "Monitor"})

    def test_retrieve_includes_history(self) -> None:
        submission = self._create()
        self._transition(submission["id"], "submit", metadata={"channel": "web"})

        response = self.client.get(self._url("submission-detail", submission["id"]), **self._headers())

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["submission"]["current_state"], "submitted")
        self.assertEqual(len(response.data["history"]), 1)
        self.assertEqual(response.data["history"][0]["metadata"], {"channel": "web"})
        self.assertEqual(response.data["history"][0]["actor_name"], "Ada")

    def test_retrieve_is_tenant_scoped(self) -> None:
        submission = self._create()

        response = self.client.get(
            self._url("submission-detail", submission["id"]), **self._headers(tenant=OTHER_TENANT)
        )
        self.assertEqual(response.status_code, 403)

        other_form = make_form(code="other_form", workflow=self.workflow)
        response = self.client.get(
            self._url("submission-detail", submission["id"], form_code=other_form.code), **self._headers()
        )
        self.assertEqual(response.status_code, 404)

        response = self.client.get(self._url("submission-detail", uuid.uuid4()), **self._headers())
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.data["code"], "submission_not_found")

    def test_validate_endpoint(self) -> None:
        submission = self._create()
        self._transition(submission["id"], "submit")
        url = self._url("submission-validate", submission["id"])

        response = self.client.post(url, {"action": "approve"}, format="json", **self._headers())
        self.assertEqual(response.status_code, 403)

        response = self.client.post(
            url, {"action": "approve"}, format="json", **self._headers(permissions="admin_all")
        )
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data["valid"])
        self.assertEqual(response.data["action"]["to_state"], "approved")
        self.assertEqual(WorkflowTransition.objects.count(), 1)

    def test_history_endpoint(self) -> None:
        submission = self._create()
        self._transition(submission["id"], "submit")
        self._transition(submission["id"], "reject", permissions="task:approve", comment="missing receipt")

        response = self.client.get(self._url("submission-history", submission["id"]), **self._headers())

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["count"], 2)
        self.assertEqual([entry["to_state"] for entry in response.data["history"]], ["submitted", "rejected"])
        self.assertEqual([entry["submission_version"] for entry in response.data["history"]], [2, 3])

    def test_list_and_stats(self) -> None:
        first = self._create()
        self._create(HTTP_X_ACTOR_ID="user-2")
        self._create(tenant=OTHER_TENANT)
        self._transition(first["id"], "submit")
        url = self._url("submission-list")

        response = self.client.get(url, **self._headers())
        self.assertEqual(response.data["count"], 2)

        response = self.client.get(url, {"state": "submitted"}, **self._headers())
        self.assertEqual([entry["id"] for entry in response.data["submissions"]], [first["id"]])

        response = self.client.get(url, {"my_submissions": "true"}, **self._headers(HTTP_X_ACTOR_ID="user-2"))
        self.assertEqual(response.data["count"], 1)
        self.assertEqual(response.data["submissions"][0]["submitted_by"], "user-2")

        response = self.client.get(self._url("submission-stats"), **self._headers())
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["stats"], {"draft": 1, "submitted": 1})

    def test_list_rejects_malformed_site_filter(self) -> None:
        self._create()

        response = self.client.get(self._url("submission-list"), {"site_id": "not-a-uuid"}, **self._headers())

        self.assertEqual(response.status_code, 400)
        self.assertIn("site_id", response.data)

        response = self.client.get(self._url("submission-list"), {"site_id": str(uuid.uuid4())}, **self._headers())
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["count"], 0)

    def test_action_is_matched_verbatim(self) -> None:
        submission = self._create()
        self._transition(submission["id"], "submit")

        response = self._transition(submission["id"], "  approve ", permissions="task:approve", comment="fine")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "invalid_transition")

        response = self.client.post(
            self._url("submission-validate", submission["id"]),
            {"action": " approve"},
            format="json",
            **self._headers(permissions="admin_all"),
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "invalid_transition")
        self.assertEqual(WorkflowTransition.objects.count(), 1)

    def test_comment_is_stored_verbatim(self) -> None:
        submission = self._create()
        self._transition(submission["id"], "submit")

        response = self._transition(submission["id"], "approve", permissions="task:approve", comment="  ok  ")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["transition"]["comment"], "  ok  ")
        self.assertEqual(WorkflowTransition.objects.get(to_state="approved").comment, "  ok  ")

    def test_whitespace_comment_satisfies_comment_rule(self) -> None:
        submission = self._create()
        self._transition(submission["id"], "submit")

        response = self._transition(submission["id"], "approve", permissions="task:approve", comment="   ")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["submission"]["current_state"], "approved")
        self.assertEqual(WorkflowTransition.objects.get(to_state="approved").comment, "   ")

    def test_shared_submissions_cannot_be_deleted(self) -> None:
        submission = self._create()

        response = self.client.delete(self._url("submission-detail", submission["id"]), **self._headers())

        self.assertEqual(response.status_code, 405)
        self.assertEqual(response.data["code"], "unsupported_operation")

    def test_transition_without_workflow(self) -> None:
        self.form.workflow = None
        self.form.save()
        submission = self._create()

        response = self._transition(submission["id"], "submit")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "no_workflow")

    def test_transition_schedules_notifications_after_commit(self) -> None:
        submission = self._create()
        self._transition(submission["id"], "submit")

        with mock.patch.object(dispatch_transition_notifications, "delay") as delay:
            with self.captureOnCommitCallbacks(execute=True):
                response = self._transition(
                    submission["id"],
                    "reject",
                    permissions="task:approve",
                    comment="missing receipt",
                    metadata={"reason_code": "R-12"},
                )

        self.assertEqual(response.status_code, 200)
        delay.assert_called_once()
        event = delay.call_args.args[0]
        self.assertEqual(event["submission"]["id"], submission["id"])
        self.assertEqual(event["submission"]["current_state"], "rejected")
        self.assertEqual(event["transition"]["metadata"], {"reason_code": "R-12"})
        self.assertEqual(event["transition"]["comment"], "missing receipt")
        self.assertEqual(event["workflow"]["code"], self.workflow.code)
        self.assertEqual(event["notifications"], [{"type": "email", "recipients": ["submitter"]}])
        self.assertEqual(event["actor_name"], "Ada")

    def test_broker_failure_does_not_fail_transition(self) -> None:
        submission = self._create()

        with mock.patch.object(dispatch_transition_notifications, "delay", side_effect=OSError("broker down")):
            with self.captureOnCommitCallbacks(execute=True):
                response = self._transition(submission["id"], "submit")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(FormSubmission.objects.get(pk=submission["id"]).current_state, "submitted")

    def test_rejected_transition_schedules_nothing(self) -> None:
        submission = self._create()

        with mock.patch.object(dispatch_transition_notifications, "delay") as delay:
            with self.captureOnCommitCallbacks(execute=True) as callbacks:
                response = self._transition(submission["id"], "approve", permissions="admin_all")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(callbacks, [])
        delay.assert_not_called()


class NotificationDispatchTests(TestCase):
    event = {
        "submission": {"id": "6b0c7c1e-8f43-4b8e-9d55-2f4b1f1e0a01", "current_state": "submitted"},
        "transition": {"id": "a3f6b0e2-1c1d-4f5e-8a9b-0c1d2e3f4a5b", "metadata": {"channel": "web"}},
        "workflow": {"code": "task_review", "version": "1.0.0"},
        "notifications": [],
        "actor_name": "Ada",
    }

    def setUp(self) -> None:
        RECEIVED.clear()

    @override_settings(WORKFLOW_NOTIFICATION_HANDLER="workflows.tests_api.remember_event")
    def test_task_calls_configured_handler(self) -> None:
        result = dispatch_transition_notifications.apply(args=(self.event,))

        self.assertTrue(result.successful())
        self.assertEqual(RECEIVED, [self.event])

    @override_settings(WORKFLOW_NOTIFICATION_URL="http://notifications.local/events")
    def test_default_handler_posts_event(self) -> None:
        with mock.patch("workflows.notifications.requests.post") as post:
            deliver_transition_event(self.event)

        post.assert_called_once_with(
            "http://notifications.local/events",
            json=self.event,
            timeout=settings.WORKFLOW_NOTIFICATION_TIMEOUT,
        )
        post.return_value.raise_for_status.assert_called_once_with()

    @override_settings(WORKFLOW_NOTIFICATION_URL="")
    def test_default_handler_without_endpoint(self) -> None:
        with mock.patch("workflows.notifications.requests.post") as post:
            deliver_transition_event(self.event)

        post.assert_not_called()

    def test_failing_handler_is_retried_then_abandoned(self) -> None:
        handler = mock.Mock(side_effect=RuntimeError("mail relay down"))

        with mock.patch("workflows.tasks.get_notification_handler", return_value=handler):
            with self.assertLogs("workflows.tasks", level="WARNING") as logs:
                result = dispatch_transition_notifications.apply(args=(self.event,))

        self.assertTrue(result.successful())
        self.assertEqual(handler.call_count, dispatch_transition_notifications.max_retries + 1)
        self.assertTrue(any("Giving up" in line for line in logs.output))

    def test_handler_recovers_on_retry(self) -> None:
        handler = mock.Mock(side_effect=[RuntimeError("timeout"), None])

        with mock.patch("workflows.tasks.get_notification_handler", return_value=handler):
            result = dispatch_transition_notifications.apply(args=(self.event,))

        self.assertTrue(result.successful())
        self.assertEqual(handler.call_count, 2)
        handler.assert_called_with(self.event)

    def test_final_attempt_does_not_raise(self) -> None:
        handler = mock.Mock(side_effect=RuntimeError("mail relay down"))

        with mock.patch("workflows.tasks.get_notification_handler", return_value=handler):
            result = dispatch_transition_notifications.apply(
                args=(self.event,), retries=dispatch_transition_notifications.max_retries
            )

        self.assertTrue(result.successful())
        handler.assert_called_once_with(self.event)
