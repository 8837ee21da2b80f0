"""Database models for the workflow engine."""
from __future__ import annotations

from django.db import models
from django.db.models import Q


class Status(models.Model):
    """A global issue status shared by every workflow."""

    TODO = "todo"
    IN_PROGRESS = "in_progress"
    DONE = "done"

    CATEGORY_CHOICES = [
        (TODO, "To Do"),
        (IN_PROGRESS, "In Progress"),
        (DONE, "Done"),
    ]

    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    category = models.CharField(max_length=32, choices=CATEGORY_CHOICES, default=TODO)
    color = models.CharField(max_length=16, default="#42526E")
    position = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["position", "id"]
        verbose_name_plural = "statuses"

    def __str__(self) -> str:
        return self.name


class Workflow(models.Model):
    """A named graph of steps and transitions; live unless ``is_draft``."""

    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    version = models.PositiveIntegerField(default=1)
    is_default = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True)
    is_draft = models.BooleanField(default=False)
    draft_of = models.ForeignKey(
        "self",
        related_name="drafts",
        on_delete=models.CASCADE,
        null=True,
        blank=True,
    )
    published_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name", "id"]
        constraints = [
            models.UniqueConstraint(
                fields=["draft_of"],
                condition=Q(is_draft=True),
                name="workflow_single_open_draft",
            ),
        ]

    def __str__(self) -> str:
        suffix = " (draft)" if self.is_draft else ""
        return f"{self.name} v{self.version}{suffix}"


class WorkflowStep(models.Model):
    """The placement of a status inside one workflow."""

    workflow = models.ForeignKey(Workflow, related_name="steps", on_delete=models.CASCADE)
    status = models.ForeignKey(Status, related_name="steps", on_delete=models.CASCADE)
    is_initial = models.BooleanField(default=False)
    position_x = models.IntegerField(default=0)
    position_y = models.IntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["id"]
        constraints = [
            models.UniqueConstraint(
                fields=["workflow", "status"],
                name="workflow_step_unique_status",
            ),
            models.UniqueConstraint(
                fields=["workflow"],
                condition=Q(is_initial=True),
                name="workflow_step_single_initial",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.workflow_id}:{self.status_id}"


class WorkflowTransition(models.Model):
    """A guarded edge between two steps; ``from_step`` empty means any status."""

    workflow = models.ForeignKey(Workflow, related_name="transitions", on_delete=models.CASCADE)
    from_step = models.ForeignKey(
        WorkflowStep,
        related_name="outgoing_transitions",
        on_delete=models.CASCADE,
        null=True,
        blank=True,
    )
    to_step = models.ForeignKey(
        WorkflowStep,
        related_name="incoming_transitions",
        on_delete=models.CASCADE,
    )
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    conditions = models.JSONField(default=list, blank=True)
    validators = models.JSONField(default=list, blank=True)
    post_functions = models.JSONField(default=list, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["id"]

    def __str__(self) -> str:
        return self.name


class WorkflowScheme(models.Model):
    """Maps issue types to the workflows that govern them."""

    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    is_default = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name", "id"]

    def __str__(self) -> str:
        return self.name


class WorkflowSchemeMapping(models.Model):
    """One scheme row; an empty ``issue_type`` is the scheme's wildcard."""

    scheme = models.ForeignKey(WorkflowScheme, related_name="mappings", on_delete=models.CASCADE)
    issue_type = models.ForeignKey(
        "issues.IssueType",
        related_name="workflow_mappings",
        on_delete=models.CASCADE,
        null=True,
        blank=True,
    )
    workflow = models.ForeignKey(Workflow, related_name="scheme_mappings", on_delete=models.PROTECT)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["scheme", "id"]
        constraints = [
            models.UniqueConstraint(
                fields=["scheme", "issue_type"],
                name="scheme_mapping_unique_issue_type",
            ),
            models.UniqueConstraint(
                fields=["scheme"],
                condition=Q(issue_type__isnull=True),
                name="scheme_mapping_single_wildcard",
            ),
        ]

    def __str__(self) -> str:
        issue_type = self.issue_type_id if self.issue_type_id is not None else "*"
        return f"{self.scheme_id}:{issue_type} -> {self.workflow_id}"


class ProjectWorkflowScheme(models.Model):
    """The scheme assigned to a project; at most one per project."""

    project = models.OneToOneField(
        "issues.Project",
        related_name="workflow_scheme_assignment",
        on_delete=models.CASCADE,
    )
    scheme = models.ForeignKey(WorkflowScheme, related_name="project_assignments", on_delete=models.PROTECT)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["project", "id"]

    def __str__(self) -> str:
        return f"{self.project_id} -> {self.scheme_id}"
