"""Resolution of the workflow that governs a (project, issue type) pair."""
from __future__ import annotations

import logging
from typing import List, Optional

from django.db import transaction

from issues.models import IssueType, Project

from .exceptions import InvalidDraftState, NoWorkflowConfigured, NotFound
from .models import ProjectWorkflowScheme, Workflow, WorkflowScheme, WorkflowSchemeMapping

logger = logging.getLogger(__name__)


class SchemeResolver:
    """Look up exact issue-type mappings first, then the scheme's wildcard."""

    def resolve(self, scheme_id: int, issue_type_id: Optional[int]) -> int:
        mappings = WorkflowSchemeMapping.objects.filter(scheme_id=scheme_id)
        if issue_type_id is not None:
            exact = mappings.filter(issue_type_id=issue_type_id).values_list("workflow_id", flat=True).first()
            if exact is not None:
                return exact
        wildcard = mappings.filter(issue_type__isnull=True).values_list("workflow_id", flat=True).first()
        if wildcard is not None:
            return wildcard
        raise NoWorkflowConfigured(
            f"Scheme {scheme_id} maps no workflow for issue type {issue_type_id} and has no default mapping."
        )

    def scheme_for_project(self, project_id: int) -> int:
        assigned = (
            ProjectWorkflowScheme.objects.filter(project_id=project_id)
            .values_list("scheme_id", flat=True)
            .first()
        )
        if assigned is not None:
            return assigned
        default = WorkflowScheme.objects.filter(is_default=True).values_list("id", flat=True).first()
        if default is None:
            raise NoWorkflowConfigured(
                f"Project {project_id} has no workflow scheme and no default scheme exists."
            )
        return default

    def resolve_for_issue(self, project_id: int, issue_type_id: Optional[int]) -> int:
        return self.resolve(self.scheme_for_project(project_id), issue_type_id)


def _live_workflow(workflow_id: int) -> Workflow:
    workflow = Workflow.objects.filter(pk=workflow_id).first()
    if workflow is None:
        raise NotFound("Workflow", workflow_id)
    if workflow.is_draft:
        raise InvalidDraftState(f"Workflow {workflow_id} is a draft and cannot be mapped.")
    return workflow


def _scheme(scheme_id: int) -> WorkflowScheme:
    scheme = WorkflowScheme.objects.filter(pk=scheme_id).first()
    if scheme is None:
        raise NotFound("Scheme", scheme_id)
    return scheme


def upsert_mapping(scheme_id: int, issue_type_id: Optional[int], workflow_id: int) -> WorkflowSchemeMapping:
    """Point ``(scheme, issue type)`` at a workflow, replacing any existing row."""

    scheme = _scheme(scheme_id)
    workflow = _live_workflow(workflow_id)
    if issue_type_id is not None and not IssueType.objects.filter(pk=issue_type_id).exists():
        raise NotFound("Issue type", issue_type_id)
    with transaction.atomic():
        mapping = (
            WorkflowSchemeMapping.objects.select_for_update()
            .filter(scheme=scheme, issue_type_id=issue_type_id)
            .first()
        )
        if mapping is None:
            mapping = WorkflowSchemeMapping.objects.create(
                scheme=scheme,
                issue_type_id=issue_type_id,
                workflow=workflow,
            )
        elif mapping.workflow_id != workflow.pk:
            mapping.workflow = workflow
            mapping.save(update_fields=["workflow"])
    return mapping


def remove_mapping(mapping_id: int) -> None:
    deleted, _ = WorkflowSchemeMapping.objects.filter(pk=mapping_id).delete()
    if not deleted:
        raise NotFound("Mapping", mapping_id)


def assign_scheme(project_id: int, scheme_id: int) -> ProjectWorkflowScheme:
    """Assign a scheme to a project; assigning again replaces the previous one."""

    scheme = _scheme(scheme_id)
    if not Project.objects.filter(pk=project_id).exists():
        raise NotFound("Project", project_id)
    assignment, created = ProjectWorkflowScheme.objects.update_or_create(
        project_id=project_id,
        defaults={"scheme": scheme},
    )
    logger.info(
        "%s scheme %s for project %s",
        "Assigned" if created else "Reassigned",
        scheme.pk,
        project_id,
    )
    return assignment


def set_default_scheme(scheme_id: int) -> WorkflowScheme:
    with transaction.atomic():
        scheme = _scheme(scheme_id)
        WorkflowScheme.objects.exclude(pk=scheme.pk).filter(is_default=True).update(is_default=False)
        if not scheme.is_default:
            scheme.is_default = True
            scheme.save(update_fields=["is_default", "updated_at"])
    return scheme


def projects_using_workflow(workflow_id: int) -> List[int]:
    """Projects whose assigned scheme maps to ``workflow_id``."""

    scheme_ids = set(
        WorkflowSchemeMapping.objects.filter(workflow_id=workflow_id).values_list("scheme_id", flat=True)
    )
    return sorted(
        ProjectWorkflowScheme.objects.filter(scheme_id__in=scheme_ids).values_list("project_id", flat=True)
    )
