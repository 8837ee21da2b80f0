"""API views for statuses, workflows and workflow schemes."""
from __future__ import annotations

import logging

from django.db import transaction
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action, api_view
from rest_framework.filters import OrderingFilter, SearchFilter
from rest_framework.request import Request
from rest_framework.response import Response

from .comparator import WorkflowComparator
from .drafts import DraftManager
from .exceptions import NotFound
from .graph import WorkflowGraph
from .models import (
    ProjectWorkflowScheme,
    Status,
    Workflow,
    WorkflowScheme,
    WorkflowSchemeMapping,
    WorkflowStep,
    WorkflowTransition,
)
from .portability import export_workflow, import_workflow
from .schemes import (
    SchemeResolver,
    assign_scheme,
    projects_using_workflow,
    remove_mapping,
    set_default_scheme,
    upsert_mapping,
)
from .serializers import (
    CloneRequestSerializer,
    MappingRequestSerializer,
    ProjectSchemeRequestSerializer,
    ProjectWorkflowSchemeSerializer,
    StatusSerializer,
    StepCreateSerializer,
    StepMoveSerializer,
    TransitionCreateSerializer,
    TransitionUpdateSerializer,
    WorkflowImportSerializer,
    WorkflowSchemeMappingSerializer,
    WorkflowSchemeSerializer,
    WorkflowSerializer,
    WorkflowStepSerializer,
    WorkflowTransitionSerializer,
    diff_payload,
)

logger = logging.getLogger(__name__)


def _flag(request: Request, name: str) -> bool:
    return request.query_params.get(name, "").lower() in {"1", "true", "yes"}


class StatusViewSet(viewsets.ModelViewSet):
    queryset = Status.objects.all()
    serializer_class = StatusSerializer
    filter_backends = [SearchFilter, OrderingFilter]
    search_fields = ["name", "description", "category"]
    ordering_fields = ["position", "name", "created_at"]
    ordering = ["position", "id"]


class WorkflowViewSet(viewsets.ModelViewSet):
    queryset = Workflow.objects.prefetch_related("steps__status", "transitions__from_step", "transitions__to_step")
    serializer_class = WorkflowSerializer
    filter_backends = [SearchFilter, OrderingFilter]
    search_fields = ["name", "description"]
    ordering_fields = ["name", "updated_at", "version"]
    ordering = ["name"]

    def get_queryset(self):  # type: ignore[override]
        queryset = super().get_queryset()
        if self.action == "list" and not _flag(self.request, "include_drafts"):
            queryset = queryset.filter(is_draft=False)
        return queryset

    @action(detail=True, methods=["post"], url_path="steps")
    def add_step(self, request, *args, **kwargs):  # type: ignore[override]
        workflow = self.get_object()
        payload = StepCreateSerializer(data=request.data)
        payload.is_valid(raise_exception=True)
        data = payload.validated_data
        step = WorkflowGraph(workflow).add_step(
            data["status"],
            initial=data["is_initial"],
            position_x=data["position_x"],
            position_y=data["position_y"],
        )
        return Response(WorkflowStepSerializer(step).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["post"], url_path="transitions")
    def add_transition(self, request, *args, **kwargs):  # type: ignore[override]
        workflow = self.get_object()
        payload = TransitionCreateSerializer(data=request.data)
        payload.is_valid(raise_exception=True)
        data = payload.validated_data
        transition = WorkflowGraph(workflow).add_transition(
            data["from_step"],
            data["to_step"],
            name=data["name"],
            description=data["description"],
            conditions=data["conditions"],
            validators=data["validators"],
            post_functions=data["post_functions"],
        )
        return Response(WorkflowTransitionSerializer(transition).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["get", "post"], url_path="draft")
    def draft(self, request, *args, **kwargs):  # type: ignore[override]
        """Fetch the open draft of a workflow, or open one."""

        workflow = self.get_object()
        manager = DraftManager()
        if request.method == "POST":
            draft = manager.create_draft(workflow.pk)
            return Response(self.get_serializer(draft).data, status=status.HTTP_201_CREATED)
        draft = manager.get_draft(workflow.pk)
        if draft is None:
            raise NotFound("Draft of workflow", workflow.pk)
        return Response(self.get_serializer(draft).data)

    @action(detail=True, methods=["post"], url_path="publish")
    def publish(self, request, *args, **kwargs):  # type: ignore[override]
        """Publish a draft over the workflow it was opened from."""

        draft = self.get_object()
        live = DraftManager().publish_draft(draft.pk)
        live = self.get_queryset().get(pk=live.pk)
        return Response(self.get_serializer(live).data)

    @action(detail=True, methods=["post"], url_path="discard")
    def discard(self, request, *args, **kwargs):  # type: ignore[override]
        draft = self.get_object()
        DraftManager().discard_draft(draft.pk)
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=True, methods=["post"], url_path="clone")
    def clone(self, request, *args, **kwargs):  # type: ignore[override]
        source = self.get_object()
        payload = CloneRequestSerializer(data=request.data)
        payload.is_valid(raise_exception=True)
        with transaction.atomic():
            copy = Workflow.objects.create(
                name=payload.validated_data.get("name") or f"{source.name} (Copy)",
                description=source.description,
                is_active=source.is_active,
            )
            WorkflowGraph(source).clone_into(copy)
        logger.info("Cloned workflow %s into %s", source.pk, copy.pk)
        copy = self.get_queryset().get(pk=copy.pk)
        return Response(self.get_serializer(copy).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["get"], url_path="export")
    def export(self, request, *args, **kwargs):  # type: ignore[override]
        workflow = self.get_object()
        return Response(export_workflow(workflow.pk))

    @action(detail=False, methods=["post"], url_path="import", url_name="import")
    def import_document(self, request, *args, **kwargs):  # type: ignore[override]
        payload = WorkflowImportSerializer(data=request.data)
        payload.is_valid(raise_exception=True)
        result = import_workflow(
            payload.validated_data["document"],
            name=payload.validated_data.get("name") or None,
        )
        workflow = self.get_queryset().get(pk=result.workflow.pk)
        return Response(
            {"workflow": self.get_serializer(workflow).data, "warnings": result.warnings},
            status=status.HTTP_201_CREATED,
        )

    @action(detail=True, methods=["get"], url_path="compare")
    def compare(self, request, *args, **kwargs):  # type: ignore[override]
        """Diff this workflow against ``?other=<id>`` (defaults to its live parent for drafts)."""

        workflow = self.get_object()
        other_id = request.query_params.get("other") or workflow.draft_of_id
        if other_id is None:
            return Response(
                {"code": "invalid_request", "detail": "Query parameter 'other' is required."},
                status=status.HTTP_400_BAD_REQUEST,
            )
        if not str(other_id).isdigit():
            raise NotFound("Workflow", other_id)
        left = WorkflowGraph.load(int(other_id)).snapshot()
        right = WorkflowGraph(workflow).snapshot()
        diff = WorkflowComparator().compare(left, right)
        return Response(diff_payload(left.workflow_id, right.workflow_id, diff))

    @action(detail=True, methods=["get"], url_path="projects")
    def projects(self, request, *args, **kwargs):  # type: ignore[override]
        workflow = self.get_object()
        return Response({"workflow": workflow.pk, "projects": projects_using_workflow(workflow.pk)})


class WorkflowStepViewSet(mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    queryset = WorkflowStep.objects.select_related("workflow", "status")
    serializer_class = WorkflowStepSerializer

    def partial_update(self, request, *args, **kwargs):  # type: ignore[override]
        step = self.get_object()
        payload = StepMoveSerializer(data=request.data)
        payload.is_valid(raise_exception=True)
        step = WorkflowGraph(step.workflow).move_step(
            step.pk,
            payload.validated_data["position_x"],
            payload.validated_data["position_y"],
        )
        return Response(self.get_serializer(step).data)

    def destroy(self, request, *args, **kwargs):  # type: ignore[override]
        step = self.get_object()
        WorkflowGraph(step.workflow).remove_step(step.pk)
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=True, methods=["post"], url_path="set-initial", url_name="set-initial")
    def set_initial(self, request, *args, **kwargs):  # type: ignore[override]
        step = self.get_object()
        step = WorkflowGraph(step.workflow).set_initial(step.pk)
        return Response(self.get_serializer(step).data)


class WorkflowTransitionViewSet(mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    queryset = WorkflowTransition.objects.select_related("workflow", "from_step", "to_step")
    serializer_class = WorkflowTransitionSerializer

    def partial_update(self, request, *args, **kwargs):  # type: ignore[override]
        transition = self.get_object()
        payload = TransitionUpdateSerializer(data=request.data, partial=True)
        payload.is_valid(raise_exception=True)
        transition = WorkflowGraph(transition.workflow).update_transition(
            transition.pk, **payload.validated_data
        )
        return Response(self.get_serializer(transition).data)

    def destroy(self, request, *args, **kwargs):  # type: ignore[override]
        transition = self.get_object()
        WorkflowGraph(transition.workflow).remove_transition(transition.pk)
        return Response(status=status.HTTP_204_NO_CONTENT)


class WorkflowSchemeViewSet(viewsets.ModelViewSet):
    queryset = WorkflowScheme.objects.prefetch_related("mappings__issue_type", "mappings__workflow")
    serializer_class = WorkflowSchemeSerializer
    filter_backends = [SearchFilter, OrderingFilter]
    search_fields = ["name", "description"]
    ordering_fields = ["name", "updated_at"]
    ordering = ["name"]

    def perform_create(self, serializer):  # type: ignore[override]
        scheme = serializer.save()
        if scheme.is_default:
            set_default_scheme(scheme.pk)

    def perform_update(self, serializer):  # type: ignore[override]
        scheme = serializer.save()
        if scheme.is_default:
            set_default_scheme(scheme.pk)

    @action(detail=True, methods=["post"], url_path="mappings")
    def mappings(self, request, *args, **kwargs):  # type: ignore[override]
        """Point an issue type (or the wildcard, when omitted) at a workflow."""

        scheme = self.get_object()
        payload = MappingRequestSerializer(data=request.data)
        payload.is_valid(raise_exception=True)
        mapping = upsert_mapping(
            scheme.pk,
            payload.validated_data["issue_type"],
            payload.validated_data["workflow"],
        )
        return Response(WorkflowSchemeMappingSerializer(mapping).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["get"], url_path="resolve")
    def resolve(self, request, *args, **kwargs):  # type: ignore[override]
        scheme = self.get_object()
        raw = request.query_params.get("issue_type")
        if raw not in (None, "") and not raw.isdigit():
            return Response(
                {"code": "invalid_request", "detail": "Query parameter 'issue_type' must be an id."},
                status=status.HTTP_400_BAD_REQUEST,
            )
        issue_type_id = int(raw) if raw else None
        workflow_id = SchemeResolver().resolve(scheme.pk, issue_type_id)
        return Response({"scheme": scheme.pk, "issue_type": issue_type_id, "workflow": workflow_id})

    @action(detail=True, methods=["post"], url_path="make-default", url_name="make-default")
    def make_default(self, request, *args, **kwargs):  # type: ignore[override]
        scheme = set_default_scheme(self.get_object().pk)
        return Response(self.get_serializer(scheme).data)


class WorkflowSchemeMappingViewSet(mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    queryset = WorkflowSchemeMapping.objects.select_related("issue_type", "workflow")
    serializer_class = WorkflowSchemeMappingSerializer

    def destroy(self, request, *args, **kwargs):  # type: ignore[override]
        remove_mapping(self.get_object().pk)
        return Response(status=status.HTTP_204_NO_CONTENT)


class ProjectWorkflowSchemeViewSet(
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    viewsets.GenericViewSet,
):
    queryset = ProjectWorkflowScheme.objects.select_related("project", "scheme")
    serializer_class = ProjectWorkflowSchemeSerializer
    lookup_field = "project"

    def create(self, request: Request, *args, **kwargs):  # type: ignore[override]
        payload = ProjectSchemeRequestSerializer(data=request.data)
        payload.is_valid(raise_exception=True)
        assignment = assign_scheme(payload.validated_data["project"], payload.validated_data["scheme"])
        return Response(self.get_serializer(assignment).data)


@api_view(["GET"])
def health(request):  # type: ignore[override]
    """Readiness endpoint for orchestration tooling."""

    return Response({"status": "ok"})
