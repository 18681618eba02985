"""Dedicated per-form tables built from a form's field descriptors."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Type

from django.apps.registry import Apps
from django.core.exceptions import ValidationError
from django.db import connection, models

from workflows.models import SubmissionBase

from .models import AppForm, FormField

logger = logging.getLogger(__name__)

IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")

RESERVED_COLUMNS = frozenset(field.name for field in SubmissionBase._meta.local_fields)

_COLUMN_FACTORIES: Dict[str, Callable[[], models.Field]] = {
    FormField.TEXT: lambda: models.TextField(null=True, blank=True),
    FormField.TEXTAREA: lambda: models.TextField(null=True, blank=True),
    FormField.NUMBER: lambda: models.FloatField(null=True, blank=True),
    FormField.DECIMAL: lambda: models.DecimalField(max_digits=15, decimal_places=2, null=True, blank=True),
    FormField.DATE: lambda: models.DateField(null=True, blank=True),
    FormField.DATETIME: lambda: models.DateTimeField(null=True, blank=True),
    FormField.BOOLEAN: lambda: models.BooleanField(null=True, blank=True),
    FormField.SELECT: lambda: models.CharField(max_length=255, null=True, blank=True),
    FormField.MULTISELECT: lambda: models.JSONField(null=True, blank=True),
    FormField.JSON: lambda: models.JSONField(null=True, blank=True),
}


def column_name(name: str) -> str:
    return name.strip().lower().replace(" ", "_").replace("-", "_")


def is_valid_identifier(name: str) -> bool:
    return bool(IDENTIFIER.match(name))


@dataclass(frozen=True)
class ProjectedColumn:
    """A form_data key copied into its own typed column."""

    key: str
    column: str
    field_type: str

    def build_field(self) -> models.Field:
        return _COLUMN_FACTORIES.get(self.field_type, _COLUMN_FACTORIES[FormField.TEXT])()


class FormTableManager:
    """Builds, provisions and drops the dedicated table of one form."""

    def __init__(self, form: AppForm) -> None:
        if not is_valid_identifier(form.db_table_name):
            raise ValueError(f"form {form.code} has no valid dedicated table name")
        self.form = form
        self.table_name = form.db_table_name
        self.columns = self._collect_columns(form)
        self._model: Type[SubmissionBase] | None = None

    @staticmethod
    def _collect_columns(form: AppForm) -> List[ProjectedColumn]:
        columns: List[ProjectedColumn] = []
        for field in form.fields.all():
            name = column_name(field.name)
            if not is_valid_identifier(name) or name in RESERVED_COLUMNS:
                logger.warning("Skipping field %s of form %s: unusable column name", field.name, form.code)
                continue
            columns.append(ProjectedColumn(key=field.name, column=name, field_type=field.field_type))
        return columns

    @property
    def model(self) -> Type[SubmissionBase]:
        if self._model is None:
            self._model = self._build_model()
        return self._model

    def _build_model(self) -> Type[SubmissionBase]:
        meta = type(
            "Meta",
            (),
            {
                "app_label": "appforms",
                "db_table": self.table_name,
                "apps": Apps(),
                "ordering": ["-submitted_at"],
            },
        )
        attrs: Dict[str, Any] = {"__module__": __name__, "Meta": meta}
        for column in self.columns:
            attrs[column.column] = column.build_field()
        model_name = "".join(part.capitalize() for part in self.table_name.split("_")) + "Record"
        return type(model_name, (SubmissionBase,), attrs)

    def project(self, form_data: Any) -> Dict[str, Any]:
        """Typed column values for ``form_data``; unparseable values become NULL."""

        values: Dict[str, Any] = {column.column: None for column in self.columns}
        if not isinstance(form_data, Mapping):
            return values
        for column in self.columns:
            raw = form_data.get(column.key)
            if raw is None:
                continue
            field = self.model._meta.get_field(column.column)
            try:
                value = field.to_python(raw)
                field.run_validators(value)
                values[column.column] = value
            except ValidationError:
                logger.warning(
                    "Value for %s in %s does not fit a %s column; storing NULL",
                    column.key,
                    self.table_name,
                    column.field_type,
                )
        return values

    def table_exists(self) -> bool:
        return self.table_name in connection.introspection.table_names()

    def create_table(self) -> None:
        logger.info("Creating dedicated table %s for form %s", self.table_name, self.form.code)
        with connection.schema_editor() as editor:
            editor.create_model(self.model)

    def ensure_table(self) -> None:
        """Create the table, or add columns for fields declared since it was created."""

        if not self.table_exists():
            self.create_table()
            return
        with connection.cursor() as cursor:
            existing = {
                column.name for column in connection.introspection.get_table_description(cursor, self.table_name)
            }
        missing = [column for column in self.columns if column.column not in existing]
        if not missing:
            return
        with connection.schema_editor() as editor:
            for column in missing:
                logger.info("Adding column %s to dedicated table %s", column.column, self.table_name)
                editor.add_field(self.model, self.model._meta.get_field(column.column))

    def drop_table(self) -> None:
        if not self.table_exists():
            return
        logger.warning("Dropping dedicated table %s for form %s", self.table_name, self.form.code)
        with connection.schema_editor() as editor:
            editor.delete_model(self.model)
