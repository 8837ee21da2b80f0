"""Route registration for workflow endpoints."""
from __future__ import annotations

from django.urls import include, path
from rest_framework.routers import DefaultRouter

from .views import (
    ProjectWorkflowSchemeViewSet,
    StatusViewSet,
    WorkflowSchemeMappingViewSet,
    WorkflowSchemeViewSet,
    WorkflowStepViewSet,
    WorkflowTransitionViewSet,
    WorkflowViewSet,
    health,
)

router = DefaultRouter()
router.register("statuses", StatusViewSet, basename="status")
router.register("workflows", WorkflowViewSet, basename="workflow")
router.register("steps", WorkflowStepViewSet, basename="workflow-step")
router.register("transitions", WorkflowTransitionViewSet, basename="workflow-transition")
router.register("schemes", WorkflowSchemeViewSet, basename="scheme")
router.register("scheme-mappings", WorkflowSchemeMappingViewSet, basename="scheme-mapping")
router.register("project-schemes", ProjectWorkflowSchemeViewSet, basename="project-scheme")

urlpatterns = [
    path("healthz/", health, name="workflow-health"),
    path("", include(router.urls)),
]
