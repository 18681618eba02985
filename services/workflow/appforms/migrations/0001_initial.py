# Generated manually for initial schema.
from __future__ import annotations

import uuid

from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("workflows", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="AppForm",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("code", models.CharField(max_length=50, unique=True)),
                ("title", models.CharField(max_length=255)),
                ("description", models.TextField(blank=True)),
                ("version", models.CharField(default="1.0.0", max_length=50)),
                ("initial_state", models.CharField(blank=True, default="draft", max_length=50)),
                ("db_table_name", models.CharField(blank=True, max_length=63)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "workflow",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="forms",
                        to="workflows.workflowdefinition",
                    ),
                ),
            ],
            options={"db_table": "app_forms", "ordering": ["code"]},
        ),
        migrations.CreateModel(
            name="FormField",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=63)),
                ("label", models.CharField(max_length=255)),
                (
                    "field_type",
                    models.CharField(
                        choices=[
                            ("text", "Text"),
                            ("textarea", "Text Area"),
                            ("number", "Number"),
                            ("decimal", "Decimal"),
                            ("date", "Date"),
                            ("datetime", "Date & Time"),
                            ("boolean", "Boolean"),
                            ("select", "Select"),
                            ("multiselect", "Multi Select"),
                            ("json", "JSON"),
                        ],
                        default="text",
                        max_length=32,
                    ),
                ),
                ("required", models.BooleanField(default=False)),
                ("order", models.PositiveIntegerField(default=0)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                (
                    "form",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE, related_name="fields", to="appforms.appform"
                    ),
                ),
            ],
            options={
                "db_table": "app_form_fields",
                "ordering": ["order", "id"],
                "unique_together": {("form", "name")},
            },
        ),
    ]
