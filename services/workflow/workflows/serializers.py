"""Serializers for workflow entities."""
from __future__ import annotations

from typing import Any, Dict

from rest_framework import serializers

from .graph import normalize_rules
from .models import (
    ProjectWorkflowScheme,
    Status,
    Workflow,
    WorkflowScheme,
    WorkflowSchemeMapping,
    WorkflowStep,
    WorkflowTransition,
)
from .rules import RuleFormatError


def _validated_rules(kind: str, value: Any):
    try:
        return normalize_rules(kind, value)
    except RuleFormatError as exc:
        raise serializers.ValidationError(exc.detail) from exc


class RuleListsMixin:
    """Parse rule payloads into their canonical form at the API boundary."""

    def validate_conditions(self, value):
        return _validated_rules("conditions", value)

    def validate_validators(self, value):
        return _validated_rules("validators", value)

    def validate_post_functions(self, value):
        return _validated_rules("post_functions", value)


class StatusSerializer(serializers.ModelSerializer):
    class Meta:
        model = Status
        fields = [
            "id",
            "name",
            "description",
            "category",
            "color",
            "position",
            "created_at",
        ]


class WorkflowStepSerializer(serializers.ModelSerializer):
    status_name = serializers.CharField(source="status.name", read_only=True)
    status_category = serializers.CharField(source="status.category", read_only=True)

    class Meta:
        model = WorkflowStep
        fields = [
            "id",
            "workflow",
            "status",
            "status_name",
            "status_category",
            "is_initial",
            "position_x",
            "position_y",
        ]
        read_only_fields = ["workflow", "status", "is_initial"]


class WorkflowTransitionSerializer(RuleListsMixin, serializers.ModelSerializer):
    from_status = serializers.SerializerMethodField()
    to_status = serializers.SerializerMethodField()

    class Meta:
        model = WorkflowTransition
        fields = [
            "id",
            "workflow",
            "from_step",
            "to_step",
            "from_status",
            "to_status",
            "name",
            "description",
            "conditions",
            "validators",
            "post_functions",
        ]
        read_only_fields = ["workflow", "from_step", "to_step"]

    def get_from_status(self, obj: WorkflowTransition):
        return obj.from_step.status_id if obj.from_step_id is not None else None

    def get_to_status(self, obj: WorkflowTransition):
        return obj.to_step.status_id


class WorkflowSerializer(serializers.ModelSerializer):
    steps = WorkflowStepSerializer(many=True, read_only=True)
    transitions = WorkflowTransitionSerializer(many=True, read_only=True)

    class Meta:
        model = Workflow
        fields = [
            "id",
            "name",
            "description",
            "version",
            "is_default",
            "is_active",
            "is_draft",
            "draft_of",
            "published_at",
            "steps",
            "transitions",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["version", "is_draft", "draft_of", "published_at"]

    def _promote_default(self, workflow: Workflow) -> None:
        if workflow.is_default:
            Workflow.objects.exclude(pk=workflow.pk).filter(is_default=True).update(is_default=False)

    def create(self, validated_data):  # type: ignore[override]
        workflow = super().create(validated_data)
        self._promote_default(workflow)
        return workflow

    def update(self, instance, validated_data):  # type: ignore[override]
        workflow = super().update(instance, validated_data)
        self._promote_default(workflow)
        return workflow


class StepCreateSerializer(serializers.Serializer):
    status = serializers.IntegerField()
    is_initial = serializers.BooleanField(required=False, default=False)
    position_x = serializers.IntegerField(required=False, default=0)
    position_y = serializers.IntegerField(required=False, default=0)


class StepMoveSerializer(serializers.Serializer):
    position_x = serializers.IntegerField()
    position_y = serializers.IntegerField()


class TransitionCreateSerializer(RuleListsMixin, serializers.Serializer):
    from_step = serializers.IntegerField(required=False, allow_null=True, default=None)
    to_step = serializers.IntegerField()
    name = serializers.CharField(max_length=255)
    description = serializers.CharField(required=False, allow_blank=True, default="")
    conditions = serializers.JSONField(required=False, default=list)
    validators = serializers.JSONField(required=False, default=list)
    post_functions = serializers.JSONField(required=False, default=list)


class TransitionUpdateSerializer(RuleListsMixin, serializers.Serializer):
    name = serializers.CharField(max_length=255, required=False)
    description = serializers.CharField(required=False, allow_blank=True)
    conditions = serializers.JSONField(required=False)
    validators = serializers.JSONField(required=False)
    post_functions = serializers.JSONField(required=False)


class CloneRequestSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=255, required=False)


class WorkflowImportSerializer(serializers.Serializer):
    document = serializers.JSONField()
    name = serializers.CharField(max_length=255, required=False, allow_blank=True)


class WorkflowSchemeMappingSerializer(serializers.ModelSerializer):
    issue_type_name = serializers.SerializerMethodField()
    workflow_name = serializers.CharField(source="workflow.name", read_only=True)

    class Meta:
        model = WorkflowSchemeMapping
        fields = [
            "id",
            "scheme",
            "issue_type",
            "issue_type_name",
            "workflow",
            "workflow_name",
            "created_at",
        ]

    def get_issue_type_name(self, obj: WorkflowSchemeMapping) -> str:
        return obj.issue_type.name if obj.issue_type_id is not None else "*"


class MappingRequestSerializer(serializers.Serializer):
    issue_type = serializers.IntegerField(required=False, allow_null=True, default=None)
    workflow = serializers.IntegerField()


class WorkflowSchemeSerializer(serializers.ModelSerializer):
    mappings = WorkflowSchemeMappingSerializer(many=True, read_only=True)

    class Meta:
        model = WorkflowScheme
        fields = [
            "id",
            "name",
            "description",
            "is_default",
            "mappings",
            "created_at",
            "updated_at",
        ]


class ProjectWorkflowSchemeSerializer(serializers.ModelSerializer):
    project_key = serializers.CharField(source="project.key", read_only=True)
    scheme_name = serializers.CharField(source="scheme.name", read_only=True)

    class Meta:
        model = ProjectWorkflowScheme
        fields = [
            "id",
            "project",
            "project_key",
            "scheme",
            "scheme_name",
            "created_at",
            "updated_at",
        ]


class ProjectSchemeRequestSerializer(serializers.Serializer):
    project = serializers.IntegerField()
    scheme = serializers.IntegerField()


def diff_payload(left_id: int, right_id: int, diff) -> Dict[str, Any]:
    """Render a ``WorkflowDiff`` as the comparison response body."""

    def entries(items):
        return [
            {
                "change": entry.change,
                "key": list(entry.key) if isinstance(entry.key, tuple) else entry.key,
                "label": entry.label,
                "details": entry.details,
            }
            for entry in items
        ]

    return {
        "left": left_id,
        "right": right_id,
        "identical": diff.is_identical,
        "summary": {
            change: diff.count(change) for change in ("added", "removed", "modified", "unchanged")
        },
        "steps": entries(diff.steps),
        "transitions": entries(diff.transitions),
    }
