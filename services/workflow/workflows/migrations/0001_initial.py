# Generated manually for initial schema.
from __future__ import annotations

import uuid

from django.db import migrations, models
import django.utils.timezone


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="WorkflowDefinition",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("code", models.CharField(max_length=50, unique=True)),
                ("name", models.CharField(max_length=100)),
                ("description", models.TextField(blank=True)),
                ("version", models.CharField(default="1.0.0", max_length=50)),
                ("initial_state", models.CharField(default="draft", max_length=50)),
                ("states", models.JSONField(blank=True, default=list)),
                ("transitions", models.JSONField(blank=True, default=list)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={"db_table": "workflow_definitions", "ordering": ["code"]},
        ),
        migrations.CreateModel(
            name="FormSubmission",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("form_id", models.UUIDField(db_index=True)),
                ("form_code", models.CharField(db_index=True, max_length=50)),
                ("workflow_id", models.UUIDField(blank=True, db_index=True, null=True)),
                ("business_vertical_id", models.UUIDField(db_index=True)),
                ("site_id", models.UUIDField(blank=True, db_index=True, null=True)),
                ("current_state", models.CharField(db_index=True, default="draft", max_length=50)),
                ("form_data", models.JSONField(blank=True, default=dict)),
                ("version", models.PositiveIntegerField(default=1)),
                ("submitted_by", models.CharField(max_length=255)),
                ("submitted_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("last_modified_by", models.CharField(blank=True, max_length=255)),
                ("last_modified_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("deleted_by", models.CharField(blank=True, max_length=255)),
                ("deleted_at", models.DateTimeField(blank=True, db_index=True, null=True)),
            ],
            options={
                "db_table": "form_submissions",
                "ordering": ["-submitted_at"],
                "indexes": [
                    models.Index(fields=["form_code", "business_vertical_id"], name="form_subm_code_bv_idx"),
                    models.Index(fields=["form_code", "current_state"], name="form_subm_code_state_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="WorkflowTransition",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("submission_id", models.UUIDField(db_index=True)),
                ("form_code", models.CharField(blank=True, max_length=50)),
                ("from_state", models.CharField(max_length=50)),
                ("to_state", models.CharField(max_length=50)),
                ("action", models.CharField(db_index=True, max_length=50)),
                ("actor_id", models.CharField(db_index=True, max_length=255)),
                ("actor_name", models.CharField(blank=True, max_length=255)),
                ("actor_role", models.CharField(blank=True, max_length=100)),
                ("comment", models.TextField(blank=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("submission_version", models.PositiveIntegerField()),
                ("transitioned_at", models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
            ],
            options={
                "db_table": "workflow_transitions",
                "ordering": ["submission_version", "transitioned_at"],
                "indexes": [
                    models.Index(fields=["submission_id", "submission_version"], name="wf_trans_sub_version_idx"),
                ],
            },
        ),
    ]
