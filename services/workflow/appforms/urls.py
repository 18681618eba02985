"""Route registration for the form registry."""
from __future__ import annotations

from django.urls import include, path
from rest_framework.routers import SimpleRouter

from .views import AppFormViewSet

router = SimpleRouter()
router.register("forms", AppFormViewSet, basename="form")

urlpatterns = [
    path("", include(router.urls)),
]
