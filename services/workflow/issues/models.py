"""Database models for the issues governed by workflows."""
from __future__ import annotations

from django.db import models


class Project(models.Model):
    """A project whose issues are routed through a workflow scheme."""

    key = models.CharField(max_length=16, unique=True)
    name = models.CharField(max_length=255)
    lead_id = models.IntegerField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["key"]

    def __str__(self) -> str:
        return f"{self.key} {self.name}"


class IssueType(models.Model):
    """A kind of issue (bug, story, task) used to pick a workflow."""

    name = models.CharField(max_length=255, unique=True)
    description = models.TextField(blank=True)
    is_subtask = models.BooleanField(default=False)

    class Meta:
        ordering = ["name"]

    def __str__(self) -> str:
        return self.name


class Issue(models.Model):
    """A work item that moves between statuses through workflow transitions."""

    # Columns a post-function may write directly; anything else lands in ``fields``.
    SYSTEM_FIELDS = ("summary", "description", "assignee_id", "reporter_id", "resolution")
    TEXT_FIELDS = ("summary", "description", "resolution")

    project = models.ForeignKey(Project, related_name="issues", on_delete=models.CASCADE)
    issue_type = models.ForeignKey(IssueType, related_name="issues", on_delete=models.PROTECT)
    status = models.ForeignKey("workflows.Status", related_name="issues", on_delete=models.PROTECT)
    parent = models.ForeignKey(
        "self",
        related_name="subtasks",
        on_delete=models.CASCADE,
        null=True,
        blank=True,
    )
    summary = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    reporter_id = models.IntegerField(null=True, blank=True)
    assignee_id = models.IntegerField(null=True, blank=True)
    resolution = models.CharField(max_length=64, blank=True)
    fields = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at", "id"]

    def __str__(self) -> str:
        return f"{self.project.key}-{self.pk} {self.summary}"

    def field_values(self) -> dict:
        """Flatten system columns and custom fields into one mapping."""

        values = dict(self.fields or {})
        for name in self.SYSTEM_FIELDS:
            values[name] = getattr(self, name)
        values["status_id"] = self.status_id
        return values

    def get_field(self, name: str):
        if name in self.SYSTEM_FIELDS:
            return getattr(self, name)
        return (self.fields or {}).get(name)

    @classmethod
    def clean_field(cls, name: str, value):
        """Coerce ``value`` to the column type of system field ``name``.

        Raises ``django.core.exceptions.ValidationError`` when the value does
        not fit the column. Custom field values are returned unchanged.
        """

        if name not in cls.SYSTEM_FIELDS:
            return value
        if value is None and name in cls.TEXT_FIELDS:
            value = ""
        return cls._meta.get_field(name).clean(value, None)

    def set_field(self, name: str, value) -> None:
        if name in self.SYSTEM_FIELDS:
            if value is None and name in self.TEXT_FIELDS:
                value = ""
            setattr(self, name, value)
            return
        fields = dict(self.fields or {})
        if value is None:
            fields.pop(name, None)
        else:
            fields[name] = value
        self.fields = fields


class IssueHistory(models.Model):
    """One changed field of an issue, appended on every transition."""

    issue = models.ForeignKey(Issue, related_name="history", on_delete=models.CASCADE)
    author_id = models.IntegerField(null=True, blank=True)
    field_name = models.CharField(max_length=128)
    old_value = models.TextField(blank=True, null=True)
    new_value = models.TextField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["created_at", "id"]
        verbose_name_plural = "issue history"
        indexes = [
            models.Index(fields=["issue", "created_at"], name="issue_history_issue_created"),
        ]

    def __str__(self) -> str:
        return f"{self.issue_id} {self.field_name}: {self.old_value} -> {self.new_value}"

    @classmethod
    def record(cls, issue: Issue, field_name: str, old_value, new_value, author_id=None) -> "IssueHistory":
        return cls.objects.create(
            issue=issue,
            author_id=author_id,
            field_name=field_name,
            old_value=None if old_value is None else str(old_value),
            new_value=None if new_value is None else str(new_value),
        )


class IssueComment(models.Model):
    """A comment on an issue, including ones added by post-functions."""

    issue = models.ForeignKey(Issue, related_name="comments", on_delete=models.CASCADE)
    author_id = models.IntegerField(null=True, blank=True)
    body = models.TextField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["created_at", "id"]

    def __str__(self) -> str:
        return f"Comment {self.pk} on {self.issue_id}"
