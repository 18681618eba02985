"""Route registration for workflow endpoints."""
from __future__ import annotations

from django.urls import include, path
from rest_framework.routers import DefaultRouter

from .views import DedicatedSubmissionViewSet, SubmissionViewSet, WorkflowDefinitionViewSet, health

router = DefaultRouter()
router.register("workflows", WorkflowDefinitionViewSet, basename="workflow")
router.register(r"forms/(?P<form_code>[^/.]+)/submissions", SubmissionViewSet, basename="submission")
router.register(
    r"forms/(?P<form_code>[^/.]+)/dedicated-submissions",
    DedicatedSubmissionViewSet,
    basename="dedicated-submission",
)

urlpatterns = [
    path("healthz/", health, name="workflow-health"),
    path("", include(router.urls)),
]
