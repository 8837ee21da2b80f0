"""Serializers for issue entities."""
from __future__ import annotations

from typing import Any, Dict

from rest_framework import serializers

from .models import Issue, IssueComment, IssueHistory


class IssueSerializer(serializers.ModelSerializer):
    project_key = serializers.CharField(source="project.key", read_only=True)
    issue_type_name = serializers.CharField(source="issue_type.name", read_only=True)
    status_name = serializers.CharField(source="status.name", read_only=True)
    status_category = serializers.CharField(source="status.category", read_only=True)

    class Meta:
        model = Issue
        fields = [
            "id",
            "project",
            "project_key",
            "issue_type",
            "issue_type_name",
            "status",
            "status_name",
            "status_category",
            "parent",
            "summary",
            "description",
            "reporter_id",
            "assignee_id",
            "resolution",
            "fields",
            "created_at",
            "updated_at",
        ]


class IssueHistorySerializer(serializers.ModelSerializer):
    class Meta:
        model = IssueHistory
        fields = [
            "id",
            "field_name",
            "old_value",
            "new_value",
            "author_id",
            "created_at",
        ]


class IssueCommentSerializer(serializers.ModelSerializer):
    class Meta:
        model = IssueComment
        fields = ["id", "author_id", "body", "created_at"]


class TransitionRequestSerializer(serializers.Serializer):
    to_status = serializers.IntegerField()
    fields = serializers.JSONField(required=False, default=dict)

    def to_internal_value(self, data: Dict[str, Any]) -> Dict[str, Any]:  # type: ignore[override]
        """Ensure the proposed field values arrive as a JSON object."""

        internal = super().to_internal_value(data)
        proposed = internal.get("fields") or {}
        if not isinstance(proposed, dict):
            raise serializers.ValidationError({"fields": "Must be a JSON object."})
        internal["fields"] = proposed
        return internal
