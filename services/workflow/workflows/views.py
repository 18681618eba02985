"""API views for workflow definitions and form submissions."""
from __future__ import annotations

import logging
import uuid
from typing import List, Optional

from rest_framework import status, viewsets
from rest_framework.decorators import action, api_view
from rest_framework.exceptions import NotAuthenticated, PermissionDenied, ValidationError
from rest_framework.filters import OrderingFilter, SearchFilter
from rest_framework.request import Request
from rest_framework.response import Response

from .engine import Actor, WorkflowEngine
from .exceptions import SubmissionNotFoundError
from .models import SubmissionBase, WorkflowDefinition
from .notifications import schedule_transition_notifications
from .serializers import (
    SubmissionRequestSerializer,
    SubmissionSerializer,
    TransitionRequestSerializer,
    ValidateRequestSerializer,
    WorkflowDefinitionSerializer,
    WorkflowTransitionSerializer,
)
from .stores import DedicatedTableStore, SharedTableStore

logger = logging.getLogger(__name__)


def _parse_uuid(value: Optional[str]) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        return None


def business_vertical_id(request: Request) -> uuid.UUID:
    """Tenant the caller acts in, as forwarded by the gateway."""

    raw = request.headers.get("X-Business-Vertical-Id")
    parsed = _parse_uuid(raw)
    if parsed is None:
        raise ValidationError({"detail": "business context not found"})
    return parsed


def actor_from_request(request: Request) -> Actor:
    actor_id = request.headers.get("X-Actor-Id", "").strip()
    if not actor_id:
        raise NotAuthenticated("unauthorized")
    return Actor(
        id=actor_id,
        name=request.headers.get("X-Actor-Name", "").strip(),
        role=request.headers.get("X-Actor-Role", "").strip(),
    )


def actor_permissions(request: Request) -> List[str]:
    raw = request.headers.get("X-Actor-Permissions", "")
    return [permission.strip() for permission in raw.split(",") if permission.strip()]


class WorkflowDefinitionViewSet(viewsets.ModelViewSet):
    queryset = WorkflowDefinition.objects.all()
    serializer_class = WorkflowDefinitionSerializer
    filter_backends = [SearchFilter, OrderingFilter]
    search_fields = ["code", "name", "description"]
    ordering_fields = ["code", "updated_at"]
    ordering = ["code"]

    @action(detail=True, methods=["post"], url_path="publish")
    def publish(self, request, *args, **kwargs):  # type: ignore[override]
        """Activate a workflow definition."""

        workflow = self.get_object()
        workflow.is_active = True
        workflow.save(update_fields=["is_active", "updated_at"])
        logger.info("Published workflow %s", workflow.code)
        serializer = self.get_serializer(workflow)
        return Response(serializer.data)


class SubmissionViewSet(viewsets.ViewSet):
    """Submissions of one form kept in the shared submissions table."""

    lookup_value_regex = "[0-9a-f-]+"

    def get_engine(self, form_code: str) -> WorkflowEngine:
        return WorkflowEngine(SharedTableStore())

    def _serialize(self, engine: WorkflowEngine, submission: SubmissionBase) -> dict:
        return SubmissionSerializer(submission, context={"engine": engine}).data

    def _owned_submission(
        self, engine: WorkflowEngine, request: Request, form_code: str, pk: str
    ) -> SubmissionBase:
        submission = engine.get_submission(pk)
        if submission.form_code != form_code:
            raise SubmissionNotFoundError(pk)
        if submission.business_vertical_id != business_vertical_id(request):
            raise PermissionDenied("forbidden")
        return submission

    def list(self, request: Request, form_code: str = "") -> Response:
        tenant = business_vertical_id(request)
        submitted_by = None
        if request.query_params.get("my_submissions") == "true":
            submitted_by = actor_from_request(request).id
        raw_site_id = request.query_params.get("site_id")
        site_id = _parse_uuid(raw_site_id)
        if raw_site_id and site_id is None:
            raise ValidationError({"site_id": "must be a valid UUID"})
        engine = self.get_engine(form_code)
        submissions = engine.get_submissions_by_form(
            form_code,
            tenant,
            state=request.query_params.get("state") or None,
            site_id=site_id,
            submitted_by=submitted_by,
        )
        data = [self._serialize(engine, submission) for submission in submissions]
        return Response({"submissions": data, "count": len(data)})

    def create(self, request: Request, form_code: str = "") -> Response:
        actor = actor_from_request(request)
        tenant = business_vertical_id(request)
        payload = SubmissionRequestSerializer(data=request.data)
        payload.is_valid(raise_exception=True)
        engine = self.get_engine(form_code)
        submission = engine.create_submission(
            form_code,
            tenant,
            payload.validated_data["site_id"],
            payload.validated_data["form_data"],
            actor.id,
        )
        return Response(
            {"message": "form submission created successfully", "submission": self._serialize(engine, submission)},
            status=status.HTTP_201_CREATED,
        )

    def retrieve(self, request: Request, form_code: str = "", pk: str = "") -> Response:
        engine = self.get_engine(form_code)
        submission = self._owned_submission(engine, request, form_code, pk)
        history = engine.get_workflow_history(submission.pk)
        return Response(
            {
                "submission": self._serialize(engine, submission),
                "history": WorkflowTransitionSerializer(history, many=True).data,
            }
        )

    def update(self, request: Request, form_code: str = "", pk: str = "") -> Response:
        actor = actor_from_request(request)
        payload = SubmissionRequestSerializer(data=request.data)
        payload.is_valid(raise_exception=True)
        engine = self.get_engine(form_code)
        self._owned_submission(engine, request, form_code, pk)
        submission = engine.update_submission_data(pk, payload.validated_data["form_data"], actor.id)
        return Response(
            {"message": "submission updated successfully", "submission": self._serialize(engine, submission)}
        )

    def destroy(self, request: Request, form_code: str = "", pk: str = "") -> Response:
        actor = actor_from_request(request)
        engine = self.get_engine(form_code)
        self._owned_submission(engine, request, form_code, pk)
        engine.delete_submission(pk, actor.id)
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=True, methods=["post"], url_path="transition")
    def transition(self, request: Request, form_code: str = "", pk: str = "") -> Response:
        """Validate the caller's permissions, then move the submission."""

        actor = actor_from_request(request)
        payload = TransitionRequestSerializer(data=request.data)
        payload.is_valid(raise_exception=True)
        data = payload.validated_data

        engine = self.get_engine(form_code)
        self._owned_submission(engine, request, form_code, pk)
        engine.validate_transition(pk, data["action"], actor_permissions(request))
        result = engine.perform_transition(pk, data["action"], actor, data["comment"], data["metadata"])
        schedule_transition_notifications(result, actor.name)

        return Response(
            {
                "message": "transition successful",
                "submission": self._serialize(engine, result.submission),
                "current_state": result.submission.current_state,
                "transition": WorkflowTransitionSerializer(result.transition).data,
            }
        )

    @action(detail=True, methods=["post"], url_path="validate")
    def validate(self, request: Request, form_code: str = "", pk: str = "") -> Response:
        """Dry run: would ``action`` be accepted for this caller right now?"""

        payload = ValidateRequestSerializer(data=request.data)
        payload.is_valid(raise_exception=True)
        engine = self.get_engine(form_code)
        self._owned_submission(engine, request, form_code, pk)
        rule = engine.validate_transition(pk, payload.validated_data["action"], actor_permissions(request))
        return Response({"valid": True, "action": rule.as_action()})

    @action(detail=True, methods=["get"], url_path="history")
    def history(self, request: Request, form_code: str = "", pk: str = "") -> Response:
        engine = self.get_engine(form_code)
        self._owned_submission(engine, request, form_code, pk)
        history = engine.get_workflow_history(pk)
        return Response({"history": WorkflowTransitionSerializer(history, many=True).data, "count": len(history)})

    @action(detail=False, methods=["get"], url_path="stats")
    def stats(self, request: Request, form_code: str = "") -> Response:
        engine = self.get_engine(form_code)
        stats = engine.get_workflow_stats(form_code, business_vertical_id(request))
        return Response({"form_code": form_code, "stats": stats})


class DedicatedSubmissionViewSet(SubmissionViewSet):
    """Submissions of one form kept in that form's own table."""

    def get_engine(self, form_code: str) -> WorkflowEngine:
        return WorkflowEngine(DedicatedTableStore.for_form(form_code))


@api_view(["GET"])
def health(request):  # type: ignore[override]
    """Readiness endpoint for orchestration tooling."""

    return Response({"status": "ok"})
