"""API views for the form registry."""
from __future__ import annotations

import logging

from rest_framework import viewsets
from rest_framework.decorators import action
from rest_framework.filters import OrderingFilter, SearchFilter
from rest_framework.response import Response

from workflows.exceptions import UnsupportedOperationError

from .models import AppForm
from .serializers import AppFormSerializer
from .tables import FormTableManager

logger = logging.getLogger(__name__)


class AppFormViewSet(viewsets.ModelViewSet):
    queryset = AppForm.objects.select_related("workflow").prefetch_related("fields").all()
    serializer_class = AppFormSerializer
    lookup_field = "code"
    filter_backends = [SearchFilter, OrderingFilter]
    search_fields = ["code", "title", "description"]
    ordering_fields = ["code", "title", "updated_at"]
    ordering = ["code"]

    @action(detail=True, methods=["post"], url_path="provision")
    def provision(self, request, *args, **kwargs):  # type: ignore[override]
        """Create the form's dedicated table or add columns for new fields."""

        form = self.get_object()
        if not form.has_dedicated_table:
            raise UnsupportedOperationError(
                f"form {form.code} does not have a dedicated table configured", form_code=form.code
            )
        manager = FormTableManager(form)
        manager.ensure_table()
        logger.info("Provisioned dedicated table %s for form %s", manager.table_name, form.code)
        return Response(
            {
                "form_code": form.code,
                "table": manager.table_name,
                "columns": [column.column for column in manager.columns],
            }
        )
