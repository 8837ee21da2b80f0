"""Tests for executing issue transitions and the issue API."""
from __future__ import annotations

from unittest import mock

from django.db import IntegrityError
from django.test import TestCase
from django.urls import reverse
from rest_framework.test import APIClient

from workflows.conditions import ExecutionContext
from workflows.drafts import DraftManager
from workflows.exceptions import (
    NoWorkflowConfigured,
    PermissionDenied,
    TransitionNotAllowed,
    ValidationFailed,
)
from workflows.graph import WorkflowGraph
from workflows.models import Status, Workflow, WorkflowScheme
from workflows.pipeline import TransitionExecutionPipeline
from workflows.schemes import assign_scheme, upsert_mapping

from .models import Issue, IssueHistory, IssueType, Project
from .tasks import notify_transition

NOTIFY = "workflows.post_functions.notify_transition.delay"


class WorkflowFixtureMixin:
    """Project ``ENG`` whose scheme maps every issue type to ``Software``.

    Steps: To Do (initial), In Progress, Done; edges To Do -> In Progress and
    In Progress -> Done.
    """

    def setUp(self) -> None:
        self.todo = Status.objects.create(name="To Do", category=Status.TODO)
        self.in_progress = Status.objects.create(name="In Progress", category=Status.IN_PROGRESS)
        self.done = Status.objects.create(name="Done", category=Status.DONE)

        self.workflow = Workflow.objects.create(name="Software")
        self.graph = WorkflowGraph(self.workflow)
        self.steps = {
            status.pk: self.graph.add_step(status.pk, initial=status is self.todo).pk
            for status in (self.todo, self.in_progress, self.done)
        }
        self.start = self.graph.add_transition(
            self.steps[self.todo.pk], self.steps[self.in_progress.pk], name="Start"
        )
        self.finish = self.graph.add_transition(
            self.steps[self.in_progress.pk], self.steps[self.done.pk], name="Finish"
        )

        self.project = Project.objects.create(key="ENG", name="Engineering", lead_id=1)
        self.task = IssueType.objects.create(name="Task")
        scheme = WorkflowScheme.objects.create(name="Engineering")
        upsert_mapping(scheme.pk, None, self.workflow.pk)
        assign_scheme(self.project.pk, scheme.pk)

        self.issue = self.make_issue()
        self.pipeline = TransitionExecutionPipeline()

    def make_issue(self, **overrides) -> Issue:
        values = {
            "project": self.project,
            "issue_type": self.task,
            "status": self.todo,
            "summary": "Ship the release",
            "reporter_id": 2,
            "assignee_id": 3,
        }
        values.update(overrides)
        return Issue.objects.create(**values)

    def actor(self, actor_id: int = 3, **sets) -> ExecutionContext:
        return ExecutionContext(
            actor_id=actor_id,
            actor_groups=frozenset(sets.get("groups", ())),
            actor_roles=frozenset(sets.get("roles", ())),
            actor_permissions=frozenset(sets.get("permissions", ())),
        )


class TransitionPipelineTests(WorkflowFixtureMixin, TestCase):
    def test_transition_moves_the_issue(self) -> None:
        result = self.pipeline.execute(self.issue.pk, self.in_progress.pk, self.actor())

        self.issue.refresh_from_db()
        self.assertEqual(self.issue.status, self.in_progress)
        self.assertEqual(result.transition_name, "Start")
        self.assertEqual(result.from_status_id, self.todo.pk)
        self.assertEqual(result.to_status_id, self.in_progress.pk)
        self.assertEqual(result.warnings, ())
        entry = self.issue.history.get()
        self.assertEqual(entry.field_name, "status")
        self.assertEqual(entry.old_value, str(self.todo.pk))
        self.assertEqual(entry.new_value, str(self.in_progress.pk))
        self.assertEqual(entry.author_id, 3)

    def test_missing_edge_is_not_allowed(self) -> None:
        with self.assertRaises(TransitionNotAllowed):
            self.pipeline.execute(self.issue.pk, self.done.pk, self.actor())
        self.issue.refresh_from_db()
        self.assertEqual(self.issue.status, self.todo)
        self.assertFalse(self.issue.history.exists())

    def test_status_outside_the_workflow_is_not_allowed(self) -> None:
        archived = Status.objects.create(name="Archived", category=Status.DONE)
        with self.assertRaises(TransitionNotAllowed):
            self.pipeline.execute(self.issue.pk, archived.pk, self.actor())

    def test_global_transition_reaches_target_from_any_status(self) -> None:
        self.graph.add_transition(None, self.steps[self.done.pk], name="Close")
        result = self.pipeline.execute(self.issue.pk, self.done.pk, self.actor())
        self.assertEqual(result.transition_name, "Close")

    def test_exact_edge_is_preferred_over_global(self) -> None:
        self.graph.add_transition(
            None, self.steps[self.in_progress.pk], name="Restart", conditions=[{"type": "only_reporter"}]
        )
        result = self.pipeline.execute(self.issue.pk, self.in_progress.pk, self.actor())
        self.assertEqual(result.transition_name, "Start")

    def test_failed_condition_denies_and_keeps_status(self) -> None:
        self.graph.update_transition(
            self.start.pk, conditions=[{"type": "user_in_group", "group": "developers"}]
        )
        with self.assertRaises(PermissionDenied) as caught:
            self.pipeline.execute(self.issue.pk, self.in_progress.pk, self.actor())
        self.assertEqual(caught.exception.condition, "user_in_group(developers)")
        self.issue.refresh_from_db()
        self.assertEqual(self.issue.status, self.todo)

        self.pipeline.execute(self.issue.pk, self.in_progress.pk, self.actor(groups=["developers"]))
        self.issue.refresh_from_db()
        self.assertEqual(self.issue.status, self.in_progress)

    def test_validators_aggregate_and_accept_proposed_fields(self) -> None:
        self.issue.status = self.in_progress
        self.issue.save()
        self.graph.update_transition(
            self.finish.pk,
            validators=[
                {"type": "resolution_set"},
                {"type": "field_required", "field": "fix_version", "message": "Pick a release."},
            ],
        )

        with self.assertRaises(ValidationFailed) as caught:
            self.pipeline.execute(self.issue.pk, self.done.pk, self.actor())
        messages = caught.exception.messages
        self.assertEqual([message.validator_type for message in messages], ["resolution_set", "field_required"])
        self.assertEqual(messages[1].message, "Pick a release.")

        self.pipeline.execute(
            self.issue.pk,
            self.done.pk,
            self.actor(),
            fields={"resolution": "Fixed", "fix_version": "1.2"},
        )
        self.issue.refresh_from_db()
        self.assertEqual(self.issue.status, self.done)
        self.assertEqual(self.issue.resolution, "Fixed")
        self.assertEqual(self.issue.fields, {"fix_version": "1.2"})
        self.assertEqual(
            sorted(self.issue.history.values_list("field_name", flat=True)),
            ["fix_version", "resolution", "status"],
        )

    def test_open_subtasks_block_closing(self) -> None:
        self.issue.status = self.in_progress
        self.issue.save()
        self.graph.update_transition(self.finish.pk, validators=[{"type": "subtasks_closed"}])
        subtask = self.make_issue(parent=self.issue, summary="Write notes")

        with self.assertRaises(ValidationFailed):
            self.pipeline.execute(self.issue.pk, self.done.pk, self.actor())

        subtask.status = self.done
        subtask.save()
        self.pipeline.execute(self.issue.pk, self.done.pk, self.actor())

    def test_status_cannot_be_proposed_as_a_field(self) -> None:
        with self.assertRaises(ValidationFailed):
            self.pipeline.execute(
                self.issue.pk, self.in_progress.pk, self.actor(), fields={"status": self.done.pk}
            )

    def test_field_values_must_fit_their_columns(self) -> None:
        with self.assertRaises(ValidationFailed) as caught:
            self.pipeline.execute(
                self.issue.pk,
                self.in_progress.pk,
                self.actor(),
                fields={"assignee_id": "bob", "summary": "x" * 300},
            )
        messages = caught.exception.messages
        self.assertEqual([message.validator_type for message in messages], ["fields", "fields"])
        self.assertIn("'assignee_id'", messages[0].message)
        self.assertIn("'summary'", messages[1].message)
        self.issue.refresh_from_db()
        self.assertEqual(self.issue.status, self.todo)
        self.assertFalse(self.issue.history.exists())

    def test_field_values_are_coerced_to_column_types(self) -> None:
        self.pipeline.execute(
            self.issue.pk, self.in_progress.pk, self.actor(), fields={"assignee_id": "5"}
        )
        self.issue.refresh_from_db()
        self.assertEqual(self.issue.assignee_id, 5)
        entry = self.issue.history.get(field_name="assignee_id")
        self.assertEqual((entry.old_value, entry.new_value), ("3", "5"))

    def test_store_rejection_is_not_allowed(self) -> None:
        with mock.patch.object(IssueHistory, "record", side_effect=IntegrityError("duplicate row")):
            with self.assertRaises(TransitionNotAllowed):
                self.pipeline.execute(self.issue.pk, self.in_progress.pk, self.actor())
        self.issue.refresh_from_db()
        self.assertEqual(self.issue.status, self.todo)
        self.assertFalse(IssueHistory.objects.exists())

    def test_issue_in_a_dropped_status_can_move_to_any_step(self) -> None:
        self.pipeline.execute(self.issue.pk, self.in_progress.pk, self.actor())
        manager = DraftManager()
        draft = manager.create_draft(self.workflow.pk)
        draft_graph = WorkflowGraph(draft)
        draft_steps = {step.status_id: step.pk for step in draft.steps.all()}
        draft_graph.remove_step(draft_steps[self.in_progress.pk])
        draft_graph.add_transition(
            draft_steps[self.todo.pk],
            draft_steps[self.done.pk],
            name="Finish early",
            conditions=[{"type": "only_reporter"}],
        )
        manager.publish_draft(draft.pk)

        self.issue.refresh_from_db()
        available = self.pipeline.available_transitions(self.issue, self.actor())
        self.assertEqual(
            sorted(item.to_status_id for item in available), sorted([self.todo.pk, self.done.pk])
        )
        self.assertTrue(all(item.transition_id is None for item in available))

        result = self.pipeline.execute(self.issue.pk, self.done.pk, self.actor())
        self.assertIsNone(result.transition_id)
        self.assertEqual(result.transition_name, "Move to Done")
        self.issue.refresh_from_db()
        self.assertEqual(self.issue.status, self.done)

        # Back inside the workflow, only its own edges apply.
        self.assertEqual(self.pipeline.available_transitions(self.issue, self.actor()), [])

    def test_unmapped_issue_type_has_no_workflow(self) -> None:
        other_project = Project.objects.create(key="OPS", name="Operations")
        issue = self.make_issue(project=other_project)
        with self.assertRaises(NoWorkflowConfigured):
            self.pipeline.execute(issue.pk, self.in_progress.pk, self.actor())

    def test_post_functions_run_in_order_after_commit(self) -> None:
        self.graph.update_transition(
            self.start.pk,
            post_functions=[
                {"type": "assign_to_lead"},
                {"type": "set_field", "field": "team", "value": "core"},
                {"type": "add_comment", "text": "Work started."},
                {"type": "send_notification"},
            ],
        )
        with mock.patch(NOTIFY) as delay:
            result = self.pipeline.execute(self.issue.pk, self.in_progress.pk, self.actor())

        self.assertEqual(result.warnings, ())
        self.issue.refresh_from_db()
        self.assertEqual(self.issue.assignee_id, 1)
        self.assertEqual(self.issue.fields, {"team": "core"})
        self.assertEqual(self.issue.comments.get().body, "Work started.")
        delay.assert_called_once_with(self.issue.pk, "issue_transitioned", "Start", 3)

    def test_failing_post_function_becomes_a_warning(self) -> None:
        self.project.lead_id = None
        self.project.save()
        self.graph.update_transition(
            self.start.pk,
            post_functions=[
                {"type": "assign_to_lead"},
                {"type": "clear_field", "field": "assignee_id"},
            ],
        )
        result = self.pipeline.execute(self.issue.pk, self.in_progress.pk, self.actor())

        self.assertEqual(len(result.warnings), 1)
        self.assertEqual(result.warnings[0].post_function_type, "assign_to_lead")
        self.issue.refresh_from_db()
        self.assertEqual(self.issue.status, self.in_progress)
        self.assertIsNone(self.issue.assignee_id)

    def test_notification_failure_does_not_roll_back(self) -> None:
        self.graph.update_transition(self.start.pk, post_functions=[{"type": "send_notification"}])
        with mock.patch(NOTIFY, side_effect=ConnectionError("broker down")):
            result = self.pipeline.execute(self.issue.pk, self.in_progress.pk, self.actor())
        self.assertEqual(result.warnings[0].message, "broker down")
        self.issue.refresh_from_db()
        self.assertEqual(self.issue.status, self.in_progress)

    def test_available_transitions_respect_conditions(self) -> None:
        self.graph.add_transition(
            None,
            self.steps[self.done.pk],
            name="Close",
            conditions=[{"type": "permission_check", "permission": "close_issue"}],
        )
        names = [item.transition_name for item in self.pipeline.available_transitions(self.issue, self.actor())]
        self.assertEqual(names, ["Start"])

        available = self.pipeline.available_transitions(
            self.issue, self.actor(permissions=["close_issue"])
        )
        self.assertEqual([item.transition_name for item in available], ["Start", "Close"])
        self.assertEqual(available[1].to_status_category, Status.DONE)

    def test_available_transitions_skip_the_current_status(self) -> None:
        self.graph.add_transition(None, self.steps[self.todo.pk], name="Reopen")
        names = [item.transition_name for item in self.pipeline.available_transitions(self.issue, self.actor())]
        self.assertEqual(names, ["Start"])

        self.issue.status = self.in_progress
        self.issue.save()
        names = [item.transition_name for item in self.pipeline.available_transitions(self.issue, self.actor())]
        self.assertEqual(names, ["Finish", "Reopen"])


class NotifyTransitionTaskTests(WorkflowFixtureMixin, TestCase):
    def test_recipients_exclude_the_actor(self) -> None:
        payload = notify_transition(self.issue.pk, "issue_transitioned", "Start", actor_id=3)
        self.assertEqual(payload["recipients"], [2, 1])

    def test_missing_issue_is_dropped(self) -> None:
        payload = notify_transition(999999, "issue_transitioned")
        self.assertEqual(payload["recipients"], [])


class IssueApiTests(WorkflowFixtureMixin, TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.client = APIClient()
        self.graph.update_transition(
            self.finish.pk,
            conditions=[{"type": "user_in_role", "role": "qa"}],
            validators=[{"type": "resolution_set"}],
        )

    def test_list_and_retrieve(self) -> None:
        response = self.client.get(reverse("issue-list"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.data), 1)
        response = self.client.get(reverse("issue-detail", args=[self.issue.pk]))
        self.assertEqual(response.data["status_name"], "To Do")

    def test_available_transitions(self) -> None:
        response = self.client.get(reverse("issue-transitions", args=[self.issue.pk]), HTTP_X_ACTOR_ID="3")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.data), 1)
        self.assertEqual(response.data[0]["name"], "Start")
        self.assertEqual(response.data[0]["to_status"]["id"], self.in_progress.pk)

    def test_execute_transition(self) -> None:
        response = self.client.post(
            reverse("issue-transition", args=[self.issue.pk]),
            {"to_status": self.in_progress.pk},
            format="json",
            HTTP_X_ACTOR_ID="3",
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["issue"]["status"], self.in_progress.pk)
        self.assertEqual(response.data["transition"]["name"], "Start")
        self.assertEqual(response.data["warnings"], [])

        response = self.client.get(reverse("issue-history", args=[self.issue.pk]))
        self.assertEqual(len(response.data), 1)
        self.assertEqual(response.data[0]["author_id"], 3)

    def test_transition_errors_are_actionable(self) -> None:
        response = self.client.post(
            reverse("issue-transition", args=[self.issue.pk]),
            {"to_status": self.done.pk},
            format="json",
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["code"], "transition_not_allowed")

        self.issue.status = self.in_progress
        self.issue.save()
        response = self.client.post(
            reverse("issue-transition", args=[self.issue.pk]),
            {"to_status": self.done.pk},
            format="json",
            HTTP_X_ACTOR_ROLES="developer",
        )
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.data["condition"], "user_in_role(qa)")

        response = self.client.post(
            reverse("issue-transition", args=[self.issue.pk]),
            {"to_status": self.done.pk},
            format="json",
            HTTP_X_ACTOR_ROLES="developer, qa",
        )
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.data["errors"][0]["validatorType"], "resolution_set")

        response = self.client.post(
            reverse("issue-transition", args=[self.issue.pk]),
            {"to_status": self.done.pk, "fields": {"resolution": "Done"}},
            format="json",
            HTTP_X_ACTOR_ROLES="qa",
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["issue"]["resolution"], "Done")

    def test_fields_must_be_an_object(self) -> None:
        response = self.client.post(
            reverse("issue-transition", args=[self.issue.pk]),
            {"to_status": self.in_progress.pk, "fields": ["resolution"]},
            format="json",
        )
        self.assertEqual(response.status_code, 400)

    def test_mistyped_field_values_are_unprocessable(self) -> None:
        response = self.client.post(
            reverse("issue-transition", args=[self.issue.pk]),
            {"to_status": self.in_progress.pk, "fields": {"assignee_id": "bob"}},
            format="json",
        )
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.data["code"], "validation_failed")
        self.assertEqual(response.data["errors"][0]["validatorType"], "fields")
        self.issue.refresh_from_db()
        self.assertEqual(self.issue.status, self.todo)

    def test_post_function_warnings_are_reported(self) -> None:
        self.graph.update_transition(self.start.pk, post_functions=[{"type": "send_notification"}])
        with mock.patch(NOTIFY, side_effect=ConnectionError("broker down")):
            response = self.client.post(
                reverse("issue-transition", args=[self.issue.pk]),
                {"to_status": self.in_progress.pk},
                format="json",
            )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.data["warnings"],
            [{"postFunctionType": "send_notification", "message": "broker down"}],
        )
