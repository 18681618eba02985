"""Database models for the workflow service."""
from __future__ import annotations

import uuid

from django.db import models
from django.utils import timezone

from .exceptions import ImmutableRecordError
from .rules import RuleIndex

DRAFT_STATE = "draft"


class WorkflowDefinition(models.Model):
    """A named state machine that form submissions move through."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    code = models.CharField(max_length=50, unique=True)
    name = models.CharField(max_length=100)
    description = models.TextField(blank=True)
    version = models.CharField(max_length=50, default="1.0.0")
    initial_state = models.CharField(max_length=50, default=DRAFT_STATE)
    states = models.JSONField(default=list, blank=True)
    transitions = models.JSONField(default=list, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "workflow_definitions"
        ordering = ["code"]

    def __str__(self) -> str:
        return f"{self.code} v{self.version}"

    def rule_index(self) -> RuleIndex:
        return RuleIndex.parse(self.transitions)


class SubmissionBase(models.Model):
    """Columns shared by the generic submissions table and dedicated form tables."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    form_id = models.UUIDField(db_index=True)
    form_code = models.CharField(max_length=50, db_index=True)
    workflow_id = models.UUIDField(null=True, blank=True, db_index=True)
    business_vertical_id = models.UUIDField(db_index=True)
    site_id = models.UUIDField(null=True, blank=True, db_index=True)
    current_state = models.CharField(max_length=50, default=DRAFT_STATE, db_index=True)
    form_data = models.JSONField(default=dict, blank=True)
    version = models.PositiveIntegerField(default=1)
    submitted_by = models.CharField(max_length=255)
    submitted_at = models.DateTimeField(default=timezone.now)
    last_modified_by = models.CharField(max_length=255, blank=True)
    last_modified_at = models.DateTimeField(default=timezone.now)
    deleted_by = models.CharField(max_length=255, blank=True)
    deleted_at = models.DateTimeField(null=True, blank=True, db_index=True)

    class Meta:
        abstract = True

    def __str__(self) -> str:
        return f"{self.form_code}:{self.id} ({self.current_state})"

    @property
    def is_editable(self) -> bool:
        return self.current_state == DRAFT_STATE


class FormSubmission(SubmissionBase):
    """A submission stored in the shared JSON table."""

    class Meta:
        db_table = "form_submissions"
        ordering = ["-submitted_at"]
        indexes = [
            models.Index(fields=["form_code", "business_vertical_id"], name="form_subm_code_bv_idx"),
            models.Index(fields=["form_code", "current_state"], name="form_subm_code_state_idx"),
        ]


class WorkflowTransition(models.Model):
    """Append-only audit record of one accepted state change."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    # Plain UUID: dedicated submissions live outside form_submissions.
    submission_id = models.UUIDField(db_index=True)
    form_code = models.CharField(max_length=50, blank=True)
    from_state = models.CharField(max_length=50)
    to_state = models.CharField(max_length=50)
    action = models.CharField(max_length=50, db_index=True)
    actor_id = models.CharField(max_length=255, db_index=True)
    actor_name = models.CharField(max_length=255, blank=True)
    actor_role = models.CharField(max_length=100, blank=True)
    comment = models.TextField(blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    submission_version = models.PositiveIntegerField()
    transitioned_at = models.DateTimeField(default=timezone.now, db_index=True)

    class Meta:
        db_table = "workflow_transitions"
        ordering = ["submission_version", "transitioned_at"]
        indexes = [
            models.Index(fields=["submission_id", "submission_version"], name="wf_trans_sub_version_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.submission_id}: {self.from_state} -> {self.to_state} ({self.action})"

    def save(self, *args, **kwargs):  # type: ignore[override]
        if not self._state.adding:
            raise ImmutableRecordError("workflow transitions are append-only", transition_id=self.pk)
        return super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):  # type: ignore[override]
        raise ImmutableRecordError("workflow transitions are append-only", transition_id=self.pk)
