"""Serializers for workflow entities."""
from __future__ import annotations

from typing import Any, Dict

from rest_framework import serializers

from .exceptions import WorkflowConfigurationError
from .models import WorkflowDefinition, WorkflowTransition
from .rules import RuleIndex


class WorkflowStateSerializer(serializers.Serializer):
    code = serializers.CharField(max_length=50)
    name = serializers.CharField(max_length=100, required=False, allow_blank=True)
    description = serializers.CharField(required=False, allow_blank=True)
    color = serializers.CharField(max_length=32, required=False, allow_blank=True)
    icon = serializers.CharField(max_length=50, required=False, allow_blank=True)
    is_final = serializers.BooleanField(default=False)


class TransitionRuleSerializer(serializers.Serializer):
    # "from" is a keyword, so the field is declared under a placeholder name.
    from_ = serializers.CharField(max_length=50)
    to = serializers.CharField(max_length=50)
    action = serializers.CharField(max_length=50)
    label = serializers.CharField(max_length=100, required=False, allow_blank=True)
    permission = serializers.CharField(max_length=100, required=False, allow_blank=True)
    requires_comment = serializers.BooleanField(default=False)
    notifications = serializers.ListField(child=serializers.DictField(), required=False)

    def get_fields(self):  # type: ignore[override]
        fields = super().get_fields()
        fields["from"] = fields.pop("from_")
        return fields


class WorkflowDefinitionSerializer(serializers.ModelSerializer):
    states = WorkflowStateSerializer(many=True, required=False)
    transitions = TransitionRuleSerializer(many=True, required=False)

    class Meta:
        model = WorkflowDefinition
        fields = [
            "id",
            "code",
            "name",
            "description",
            "version",
            "initial_state",
            "states",
            "transitions",
            "is_active",
            "created_at",
            "updated_at",
        ]

    def validate(self, attrs: Dict[str, Any]) -> Dict[str, Any]:
        instance = self.instance
        transitions = attrs.get("transitions", instance.transitions if instance else [])
        states = attrs.get("states", instance.states if instance else [])
        initial_state = attrs.get("initial_state", instance.initial_state if instance else "draft")
        try:
            index = RuleIndex.parse(list(transitions))
        except WorkflowConfigurationError as exc:
            raise serializers.ValidationError({"transitions": exc.message}) from exc
        if len(index):
            known = {rule.from_state for rule in index} | {state["code"] for state in states}
            if initial_state not in known:
                raise serializers.ValidationError(
                    {"initial_state": f"'{initial_state}' is not a declared state or the source of any transition."}
                )
        return attrs

    @staticmethod
    def _as_documents(validated_data: Dict[str, Any]) -> Dict[str, Any]:
        for key in ("states", "transitions"):
            if key in validated_data:
                validated_data[key] = [dict(item) for item in validated_data[key]]
        return validated_data

    def create(self, validated_data):  # type: ignore[override]
        return WorkflowDefinition.objects.create(**self._as_documents(validated_data))

    def update(self, instance, validated_data):  # type: ignore[override]
        for attr, value in self._as_documents(validated_data).items():
            setattr(instance, attr, value)
        instance.save()
        return instance


class WorkflowTransitionSerializer(serializers.ModelSerializer):
    class Meta:
        model = WorkflowTransition
        fields = [
            "id",
            "submission_id",
            "form_code",
            "from_state",
            "to_state",
            "action",
            "actor_id",
            "actor_name",
            "actor_role",
            "comment",
            "metadata",
            "submission_version",
            "transitioned_at",
        ]
        read_only_fields = fields


class SubmissionSerializer(serializers.Serializer):
    """Read-only view of a submission from either storage shape."""

    id = serializers.UUIDField(read_only=True)
    form_id = serializers.UUIDField(read_only=True)
    form_code = serializers.CharField(read_only=True)
    workflow_id = serializers.UUIDField(read_only=True, allow_null=True)
    business_vertical_id = serializers.UUIDField(read_only=True)
    site_id = serializers.UUIDField(read_only=True, allow_null=True)
    current_state = serializers.CharField(read_only=True)
    form_data = serializers.JSONField(read_only=True)
    version = serializers.IntegerField(read_only=True)
    submitted_by = serializers.CharField(read_only=True)
    submitted_at = serializers.DateTimeField(read_only=True)
    last_modified_by = serializers.CharField(read_only=True)
    last_modified_at = serializers.DateTimeField(read_only=True)
    available_actions = serializers.SerializerMethodField()

    def get_available_actions(self, submission):  # type: ignore[no-untyped-def]
        engine = self.context.get("engine")
        if engine is None:
            return []
        return engine.get_available_actions(submission)


class SubmissionRequestSerializer(serializers.Serializer):
    form_data = serializers.JSONField(required=False, default=dict)
    site_id = serializers.UUIDField(required=False, allow_null=True, default=None)


class TransitionRequestSerializer(serializers.Serializer):
    action = serializers.CharField(max_length=50, trim_whitespace=False)
    comment = serializers.CharField(required=False, allow_blank=True, default="", trim_whitespace=False)
    metadata = serializers.JSONField(required=False, default=dict)

    def validate_metadata(self, value: Any) -> Any:
        if not isinstance(value, dict):
            raise serializers.ValidationError("Must be a JSON object.")
        return value


class ValidateRequestSerializer(serializers.Serializer):
    action = serializers.CharField(max_length=50, trim_whitespace=False)
