"""Serializers for the form registry."""
from __future__ import annotations

from django.apps import apps
from rest_framework import serializers

from workflows.models import WorkflowDefinition

from .models import AppForm, FormField
from .tables import RESERVED_COLUMNS, column_name, is_valid_identifier


class FormFieldSerializer(serializers.ModelSerializer):
    class Meta:
        model = FormField
        fields = [
            "id",
            "name",
            "label",
            "field_type",
            "required",
            "order",
            "metadata",
        ]
        read_only_fields = ["order"]

    def validate_name(self, value: str) -> str:
        name = column_name(value)
        if not is_valid_identifier(name):
            raise serializers.ValidationError("Field names must be lowercase SQL identifiers.")
        if name in RESERVED_COLUMNS:
            raise serializers.ValidationError(f"'{name}' is reserved for submission bookkeeping.")
        return value


class AppFormSerializer(serializers.ModelSerializer):
    fields = FormFieldSerializer(many=True, required=False)
    workflow = serializers.SlugRelatedField(
        slug_field="code",
        queryset=WorkflowDefinition.objects.all(),
        allow_null=True,
        required=False,
    )

    class Meta:
        model = AppForm
        fields = [
            "id",
            "code",
            "title",
            "description",
            "version",
            "workflow",
            "initial_state",
            "db_table_name",
            "is_active",
            "created_at",
            "updated_at",
            "fields",
        ]

    def validate_db_table_name(self, value: str) -> str:
        if not value:
            return value
        if not is_valid_identifier(value):
            raise serializers.ValidationError("Table names must be lowercase SQL identifiers.")
        if value in {model._meta.db_table for model in apps.get_models()}:
            raise serializers.ValidationError(f"'{value}' is already used by the service.")
        duplicates = AppForm.objects.filter(db_table_name=value)
        if self.instance is not None:
            duplicates = duplicates.exclude(pk=self.instance.pk)
        if duplicates.exists():
            raise serializers.ValidationError(f"'{value}' is already used by another form.")
        return value

    def validate_fields(self, value):  # type: ignore[no-untyped-def]
        names = [column_name(field["name"]) for field in value]
        if len(names) != len(set(names)):
            raise serializers.ValidationError("Field names must be unique within a form.")
        return value

    def create(self, validated_data):  # type: ignore[override]
        fields = validated_data.pop("fields", [])
        form = AppForm.objects.create(**validated_data)
        for index, field in enumerate(fields):
            FormField.objects.create(form=form, order=index, **field)
        return form

    def update(self, instance, validated_data):  # type: ignore[override]
        fields = validated_data.pop("fields", None)
        for attr, value in validated_data.items():
            setattr(instance, attr, value)
        instance.save()

        if fields is not None:
            instance.fields.all().delete()
            for index, field in enumerate(fields):
                FormField.objects.create(form=instance, order=index, **field)
        return instance
