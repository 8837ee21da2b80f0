"""API views for issues and their workflow transitions."""
from __future__ import annotations

from typing import FrozenSet, Optional

from rest_framework import viewsets
from rest_framework.decorators import action
from rest_framework.filters import OrderingFilter, SearchFilter
from rest_framework.request import Request
from rest_framework.response import Response

from workflows.conditions import ExecutionContext
from workflows.pipeline import TransitionExecutionPipeline

from .models import Issue
from .serializers import (
    IssueCommentSerializer,
    IssueHistorySerializer,
    IssueSerializer,
    TransitionRequestSerializer,
)


def _header_set(request: Request, name: str) -> FrozenSet[str]:
    raw = request.headers.get(name, "")
    return frozenset(item.strip() for item in raw.split(",") if item.strip())


def _header_id(request: Request, name: str) -> Optional[int]:
    raw = request.headers.get(name, "").strip()
    return int(raw) if raw.isdigit() else None


def actor_context(request: Request) -> ExecutionContext:
    """Build the acting user's context from headers forwarded by the gateway."""

    return ExecutionContext(
        actor_id=_header_id(request, "X-Actor-Id"),
        actor_groups=_header_set(request, "X-Actor-Groups"),
        actor_roles=_header_set(request, "X-Actor-Roles"),
        actor_permissions=_header_set(request, "X-Actor-Permissions"),
    )


class IssueViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Issue.objects.select_related("project", "issue_type", "status")
    serializer_class = IssueSerializer
    filter_backends = [SearchFilter, OrderingFilter]
    search_fields = ["summary", "description", "project__key"]
    ordering_fields = ["created_at", "updated_at"]
    ordering = ["-created_at"]

    @action(detail=True, methods=["get"], url_path="transitions")
    def transitions(self, request, *args, **kwargs):  # type: ignore[override]
        """Transitions the acting user may perform from the current status."""

        issue = self.get_object()
        available = TransitionExecutionPipeline().available_transitions(issue, actor_context(request))
        return Response(
            [
                {
                    "id": item.transition_id,
                    "name": item.transition_name,
                    "to_status": {
                        "id": item.to_status_id,
                        "name": item.to_status_name,
                        "color": item.to_status_color,
                        "category": item.to_status_category,
                    },
                }
                for item in available
            ]
        )

    @action(detail=True, methods=["post"], url_path="transition")
    def transition(self, request, *args, **kwargs):  # type: ignore[override]
        """Move the issue to ``to_status`` through the governing workflow."""

        issue = self.get_object()
        payload = TransitionRequestSerializer(data=request.data)
        payload.is_valid(raise_exception=True)
        result = TransitionExecutionPipeline().execute(
            issue.pk,
            payload.validated_data["to_status"],
            actor_context(request),
            fields=payload.validated_data["fields"],
        )
        issue = self.get_queryset().get(pk=issue.pk)
        return Response(
            {
                "issue": self.get_serializer(issue).data,
                "transition": {
                    "id": result.transition_id,
                    "name": result.transition_name,
                    "from_status": result.from_status_id,
                    "to_status": result.to_status_id,
                },
                "warnings": [
                    {"postFunctionType": warning.post_function_type, "message": warning.message}
                    for warning in result.warnings
                ],
            }
        )

    @action(detail=True, methods=["get"], url_path="history")
    def history(self, request, *args, **kwargs):  # type: ignore[override]
        issue = self.get_object()
        return Response(IssueHistorySerializer(issue.history.all(), many=True).data)

    @action(detail=True, methods=["get"], url_path="comments")
    def comments(self, request, *args, **kwargs):  # type: ignore[override]
        issue = self.get_object()
        return Response(IssueCommentSerializer(issue.comments.all(), many=True).data)
