"""Database models for the form registry."""
from __future__ import annotations

import uuid

from django.db import models

from workflows.models import DRAFT_STATE, WorkflowDefinition


class AppForm(models.Model):
    """A business form whose submissions are driven by a workflow."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    code = models.CharField(max_length=50, unique=True)
    title = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    version = models.CharField(max_length=50, default="1.0.0")
    workflow = models.ForeignKey(
        WorkflowDefinition,
        related_name="forms",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
    )
    initial_state = models.CharField(max_length=50, default=DRAFT_STATE, blank=True)
    db_table_name = models.CharField(max_length=63, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "app_forms"
        ordering = ["code"]

    def __str__(self) -> str:
        return f"{self.title} ({self.code})"

    @property
    def has_dedicated_table(self) -> bool:
        return bool(self.db_table_name)


class FormField(models.Model):
    """A field of a form; becomes a column of the form's dedicated table."""

    TEXT = "text"
    TEXTAREA = "textarea"
    NUMBER = "number"
    DECIMAL = "decimal"
    DATE = "date"
    DATETIME = "datetime"
    BOOLEAN = "boolean"
    SELECT = "select"
    MULTISELECT = "multiselect"
    JSON = "json"

    FIELD_TYPES = [
        (TEXT, "Text"),
        (TEXTAREA, "Text Area"),
        (NUMBER, "Number"),
        (DECIMAL, "Decimal"),
        (DATE, "Date"),
        (DATETIME, "Date & Time"),
        (BOOLEAN, "Boolean"),
        (SELECT, "Select"),
        (MULTISELECT, "Multi Select"),
        (JSON, "JSON"),
    ]

    form = models.ForeignKey(AppForm, related_name="fields", on_delete=models.CASCADE)
    name = models.CharField(max_length=63)
    label = models.CharField(max_length=255)
    field_type = models.CharField(max_length=32, choices=FIELD_TYPES, default=TEXT)
    required = models.BooleanField(default=False)
    order = models.PositiveIntegerField(default=0)
    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        db_table = "app_form_fields"
        ordering = ["order", "id"]
        unique_together = ("form", "name")

    def __str__(self) -> str:
        return f"{self.label} ({self.field_type})"
