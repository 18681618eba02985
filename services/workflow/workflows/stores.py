"""Storage strategies for submissions: the shared table and per-form tables."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Type

from django.core.exceptions import ValidationError
from django.db.models import Count, QuerySet
from django.utils import timezone

from appforms.models import AppForm
from appforms.tables import FormTableManager

from .exceptions import FormNotFoundError, SubmissionNotFoundError, UnsupportedOperationError
from .models import FormSubmission, SubmissionBase

logger = logging.getLogger(__name__)


def load_active_form(form_code: str) -> AppForm:
    try:
        return (
            AppForm.objects.select_related("workflow")
            .prefetch_related("fields")
            .get(code=form_code, is_active=True)
        )
    except AppForm.DoesNotExist:
        raise FormNotFoundError(form_code) from None


class SubmissionStore:
    """Reads and writes submissions of one physical table shape.

    Subclasses only pick the model class and may add columns derived from the
    payload; every state-machine decision stays in the engine.
    """

    name = "base"
    model: Type[SubmissionBase]
    supports_soft_delete = False

    def resolve_form(self, form_code: str) -> AppForm:
        return load_active_form(form_code)

    def queryset(self) -> QuerySet:
        return self.model.objects.filter(deleted_at__isnull=True)

    def get(self, submission_id: Any, *, for_update: bool = False) -> SubmissionBase:
        queryset = self.queryset()
        if for_update:
            queryset = queryset.select_for_update()
        try:
            return queryset.get(pk=submission_id)
        except (self.model.DoesNotExist, ValidationError, ValueError):
            raise SubmissionNotFoundError(submission_id) from None

    def derived_columns(self, form_data: Any) -> Dict[str, Any]:
        return {}

    def insert(self, **values: Any) -> SubmissionBase:
        values.update(self.derived_columns(values.get("form_data")))
        submission = self.model(**values)
        submission.save(force_insert=True)
        return submission

    def compare_and_set(
        self,
        submission: SubmissionBase,
        expected_version: int,
        expected_state: str,
        **changes: Any,
    ) -> bool:
        """Apply ``changes`` only if nobody moved the row since it was read."""

        if "form_data" in changes:
            changes.update(self.derived_columns(changes["form_data"]))
        changes["version"] = expected_version + 1
        updated = (
            self.queryset()
            .filter(pk=submission.pk, version=expected_version, current_state=expected_state)
            .update(**changes)
        )
        if not updated:
            return False
        for attr, value in changes.items():
            setattr(submission, attr, value)
        return True

    def list(
        self,
        form_code: str,
        business_vertical_id: Any,
        state: Optional[str] = None,
        site_id: Any = None,
        submitted_by: Optional[str] = None,
    ) -> List[SubmissionBase]:
        queryset = self.queryset().filter(form_code=form_code, business_vertical_id=business_vertical_id)
        if state:
            queryset = queryset.filter(current_state=state)
        if site_id:
            queryset = queryset.filter(site_id=site_id)
        if submitted_by:
            queryset = queryset.filter(submitted_by=submitted_by)
        return list(queryset.order_by("-submitted_at"))

    def stats(self, form_code: str, business_vertical_id: Any) -> Dict[str, int]:
        totals: Dict[str, int] = {}
        for entry in (
            self.queryset()
            .filter(form_code=form_code, business_vertical_id=business_vertical_id)
            .values("current_state")
            .order_by()
            .annotate(total=Count("id"))
        ):
            totals[entry["current_state"]] = int(entry["total"])
        return totals

    def soft_delete(self, submission: SubmissionBase, actor_id: str) -> None:
        raise UnsupportedOperationError(f"{self.name} submissions cannot be deleted")


class SharedTableStore(SubmissionStore):
    """Submissions of every form in ``form_submissions`` with a JSON payload."""

    name = "shared"
    model = FormSubmission


class DedicatedTableStore(SubmissionStore):
    """Submissions of one form in that form's own table."""

    name = "dedicated"
    supports_soft_delete = True

    def __init__(self, form: AppForm, tables: Optional[FormTableManager] = None) -> None:
        if not form.has_dedicated_table:
            raise UnsupportedOperationError(
                f"form {form.code} does not have a dedicated table configured", form_code=form.code
            )
        self.form = form
        self.tables = tables or FormTableManager(form)
        self.model = self.tables.model

    @classmethod
    def for_form(cls, form_code: str) -> "DedicatedTableStore":
        store = cls(load_active_form(form_code))
        store.tables.ensure_table()
        return store

    def resolve_form(self, form_code: str) -> AppForm:
        if form_code != self.form.code:
            raise FormNotFoundError(form_code)
        return self.form

    def derived_columns(self, form_data: Any) -> Dict[str, Any]:
        return self.tables.project(form_data)

    def soft_delete(self, submission: SubmissionBase, actor_id: str) -> None:
        now = timezone.now()
        deleted = self.queryset().filter(pk=submission.pk).update(deleted_at=now, deleted_by=actor_id)
        if not deleted:
            raise SubmissionNotFoundError(submission.pk)
        submission.deleted_at = now
        submission.deleted_by = actor_id
        logger.info("Deleted submission %s in %s", submission.pk, self.tables.table_name)
