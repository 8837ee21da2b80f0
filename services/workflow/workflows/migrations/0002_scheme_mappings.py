# Generated manually: scheme tables reference the issues app, which depends on 0001.
from __future__ import annotations

from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):
    dependencies = [
        ("workflows", "0001_initial"),
        ("issues", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="WorkflowSchemeMapping",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "issue_type",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="workflow_mappings",
                        to="issues.issuetype",
                    ),
                ),
                (
                    "scheme",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="mappings",
                        to="workflows.workflowscheme",
                    ),
                ),
                (
                    "workflow",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="scheme_mappings",
                        to="workflows.workflow",
                    ),
                ),
            ],
            options={
                "ordering": ["scheme", "id"],
            },
        ),
        migrations.CreateModel(
            name="ProjectWorkflowScheme",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "project",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="workflow_scheme_assignment",
                        to="issues.project",
                    ),
                ),
                (
                    "scheme",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="project_assignments",
                        to="workflows.workflowscheme",
                    ),
                ),
            ],
            options={
                "ordering": ["project", "id"],
            },
        ),
        migrations.AddConstraint(
            model_name="workflowschememapping",
            constraint=models.UniqueConstraint(
                fields=("scheme", "issue_type"),
                name="scheme_mapping_unique_issue_type",
            ),
        ),
        migrations.AddConstraint(
            model_name="workflowschememapping",
            constraint=models.UniqueConstraint(
                condition=models.Q(("issue_type__isnull", True)),
                fields=("scheme",),
                name="scheme_mapping_single_wildcard",
            ),
        ),
    ]
