"""Tests for the workflow graph, drafts, schemes, comparison and their APIs."""
from __future__ import annotations

from types import SimpleNamespace
from typing import Dict, Iterable, Tuple

from django.test import SimpleTestCase, TestCase
from django.urls import reverse
from rest_framework.test import APIClient

from issues.models import IssueType, Project

from .comparator import ADDED, MODIFIED, REMOVED, UNCHANGED, WorkflowComparator
from .conditions import ConditionEvaluator, ExecutionContext
from .drafts import DraftManager
from .exceptions import (
    CrossWorkflowReference,
    DraftAlreadyOpen,
    DuplicateStatus,
    DuplicateTransition,
    ImportFormatError,
    InvalidDraftState,
    NoWorkflowConfigured,
    PermissionDenied,
    ValidationFailed,
)
from .graph import WorkflowGraph
from .models import Status, Workflow, WorkflowScheme, WorkflowSchemeMapping
from .portability import export_workflow, import_workflow
from .rules import (
    FieldRequired,
    ResolutionSet,
    RuleFormatError,
    UserInGroup,
    dump_rules,
    parse_conditions,
    parse_validators,
)
from .schemes import SchemeResolver, assign_scheme, set_default_scheme, upsert_mapping
from .validators import ValidatorChain

GROUP_RULE = {"type": "user_in_group", "group": "developers"}


def make_statuses(*names: str) -> Dict[str, Status]:
    return {
        name: Status.objects.create(name=name, position=index)
        for index, name in enumerate(names)
    }


def build_workflow(
    name: str,
    statuses: Dict[str, Status],
    edges: Iterable[Tuple[str, str]] = (),
    initial: str = "",
) -> Tuple[Workflow, WorkflowGraph, Dict[str, int]]:
    """Create a workflow placing every status, with ``edges`` between them by name."""

    workflow = Workflow.objects.create(name=name)
    graph = WorkflowGraph(workflow)
    steps = {
        status_name: graph.add_step(status.pk, initial=status_name == initial).pk
        for status_name, status in statuses.items()
    }
    for source, target in edges:
        graph.add_transition(steps[source], steps[target], name=f"{source} to {target}")
    return workflow, graph, steps


class RuleParsingTests(SimpleTestCase):
    def test_payloads_parse_into_variants_and_dump_canonically(self) -> None:
        conditions = parse_conditions([GROUP_RULE])
        self.assertEqual(conditions, (UserInGroup(group="developers"),))
        self.assertEqual(dump_rules(conditions), [GROUP_RULE])

        validators = parse_validators([{"type": "field_required", "field": "resolution"}])
        self.assertEqual(validators, (FieldRequired(field="resolution"),))
        self.assertEqual(
            dump_rules(validators),
            [{"type": "field_required", "field": "resolution", "message": ""}],
        )

    def test_unknown_type_is_rejected(self) -> None:
        with self.assertRaises(RuleFormatError):
            parse_conditions([{"type": "only_admins"}])

    def test_missing_required_field_is_rejected(self) -> None:
        with self.assertRaises(RuleFormatError):
            parse_conditions([{"type": "user_in_group"}])

    def test_argument_errors_name_the_field(self) -> None:
        for payload in (
            {"type": "user_in_group", "group": "   "},
            {"type": "user_in_group", "group": ["developers"]},
        ):
            with self.assertRaises(RuleFormatError) as caught:
                parse_conditions([payload])
            self.assertIn("'group'", caught.exception.detail)

    def test_null_optional_argument_uses_the_default(self) -> None:
        validators = parse_validators([{"type": "resolution_set", "message": None}])
        self.assertEqual(validators, (ResolutionSet(message=""),))

    def test_free_form_value_keeps_its_json_type(self) -> None:
        validators = parse_validators(
            [{"type": "custom_field_value", "field": "points", "value": [3, 5]}]
        )
        self.assertEqual(validators[0].value, [3, 5])
        with self.assertRaises(RuleFormatError):
            parse_validators([{"type": "custom_field_value", "field": "points"}])

    def test_rules_must_be_a_list(self) -> None:
        with self.assertRaises(RuleFormatError):
            parse_validators({"type": "resolution_set"})


class ConditionEvaluatorTests(SimpleTestCase):
    def context(self, **overrides) -> ExecutionContext:
        issue = SimpleNamespace(assignee_id=7, reporter_id=8)
        values = {"actor_id": 7, "actor_groups": frozenset({"developers"}), "issue": issue}
        values.update(overrides)
        return ExecutionContext(**values)

    def test_all_conditions_must_pass(self) -> None:
        evaluator = ConditionEvaluator([{"type": "only_assignee"}, GROUP_RULE])
        self.assertTrue(evaluator.permits(self.context()))
        self.assertFalse(evaluator.permits(self.context(actor_groups=frozenset())))

    def test_failure_names_the_first_failing_condition(self) -> None:
        evaluator = ConditionEvaluator(
            [GROUP_RULE, {"type": "only_reporter"}, {"type": "permission_check", "permission": "close"}]
        )
        with self.assertRaises(PermissionDenied) as caught:
            evaluator.evaluate(self.context())
        self.assertEqual(caught.exception.condition, "only_reporter")

    def test_anonymous_actor_is_never_the_assignee(self) -> None:
        evaluator = ConditionEvaluator([{"type": "only_assignee"}])
        issue = SimpleNamespace(assignee_id=None, reporter_id=None)
        self.assertFalse(evaluator.permits(ExecutionContext(actor_id=None, issue=issue)))

    def test_empty_condition_list_permits_everyone(self) -> None:
        self.assertTrue(ConditionEvaluator([]).permits(ExecutionContext(actor_id=None)))


class ValidatorChainTests(SimpleTestCase):
    def test_failures_are_aggregated(self) -> None:
        chain = ValidatorChain(
            [
                {"type": "field_required", "field": "resolution"},
                {"type": "field_not_empty", "field": "labels"},
                {"type": "subtasks_closed"},
            ]
        )
        messages = chain.run({"resolution": "", "labels": []}, open_subtasks=2)
        self.assertEqual(
            [message.validator_type for message in messages],
            ["field_required", "field_not_empty", "subtasks_closed"],
        )
        with self.assertRaises(ValidationFailed) as caught:
            chain.validate({"resolution": ""})
        self.assertEqual(len(caught.exception.messages), 2)

    def test_custom_message_overrides_default(self) -> None:
        chain = ValidatorChain(
            [{"type": "custom_field_value", "field": "approved", "value": True, "message": "Needs approval."}]
        )
        self.assertEqual(chain.run({"approved": False})[0].message, "Needs approval.")
        self.assertEqual(chain.run({"approved": True}), [])

    def test_resolution_set_passes_with_resolution(self) -> None:
        chain = ValidatorChain([{"type": "resolution_set"}])
        self.assertEqual(chain.run({"resolution": "Fixed"}), [])
        self.assertEqual(len(chain.run({"resolution": "  "})), 1)


class WorkflowGraphTests(TestCase):
    def setUp(self) -> None:
        self.statuses = make_statuses("Open", "In Progress", "Done")
        self.workflow, self.graph, self.steps = build_workflow(
            "Software",
            self.statuses,
            edges=[("Open", "In Progress"), ("In Progress", "Done")],
            initial="Open",
        )

    def test_unplaced_status_falls_back_to_every_step(self) -> None:
        self.graph.add_transition(None, self.steps["Done"], name="Close")
        stray = Status.objects.create(name="Stray")
        snapshot = self.graph.snapshot()

        outgoing = snapshot.outgoing(stray.pk)
        self.assertEqual(outgoing[0].name, "Close")
        self.assertEqual(
            sorted(transition.to_step_id for transition in outgoing if transition.is_fallback),
            sorted([self.steps["Open"], self.steps["In Progress"]]),
        )
        self.assertEqual(snapshot.find_transition(stray.pk, self.statuses["Done"].pk).name, "Close")
        self.assertTrue(snapshot.find_transition(stray.pk, self.statuses["Open"].pk).is_fallback)

        placed = snapshot.outgoing(self.statuses["Open"].pk)
        self.assertFalse(any(transition.is_fallback for transition in placed))

    def test_status_is_placed_once_per_workflow(self) -> None:
        with self.assertRaises(DuplicateStatus):
            self.graph.add_step(self.statuses["Open"].pk)
        self.assertEqual(self.workflow.steps.count(), 3)

    def test_exactly_one_initial_step_after_set_initial_calls(self) -> None:
        for name in ("Done", "In Progress", "In Progress", "Open", "Done"):
            self.graph.set_initial(self.steps[name])
            self.assertEqual(self.workflow.steps.filter(is_initial=True).count(), 1)
        self.assertTrue(self.workflow.steps.get(pk=self.steps["Done"]).is_initial)

    def test_adding_an_initial_step_clears_the_previous_one(self) -> None:
        blocked = Status.objects.create(name="Blocked")
        step = self.graph.add_step(blocked.pk, initial=True)
        self.assertEqual(list(self.workflow.steps.filter(is_initial=True)), [step])

    def test_duplicate_transition_is_rejected_and_original_kept(self) -> None:
        original = self.workflow.transitions.get(from_step_id=self.steps["Open"])
        with self.assertRaises(DuplicateTransition):
            self.graph.add_transition(self.steps["Open"], self.steps["In Progress"], name="Again")
        original.refresh_from_db()
        self.assertEqual(original.name, "Open to In Progress")
        self.assertEqual(self.workflow.transitions.count(), 2)

    def test_global_transition_is_unique_per_target(self) -> None:
        self.graph.add_transition(None, self.steps["Done"], name="Close")
        with self.assertRaises(DuplicateTransition):
            self.graph.add_transition(None, self.steps["Done"], name="Close again")

    def test_transition_endpoints_must_share_the_workflow(self) -> None:
        other, _, other_steps = build_workflow("Other", make_statuses("Triage"))
        with self.assertRaises(CrossWorkflowReference):
            self.graph.add_transition(self.steps["Open"], other_steps["Triage"], name="Leak")

    def test_removing_a_step_removes_its_transitions(self) -> None:
        self.graph.remove_step(self.steps["In Progress"])
        self.assertEqual(self.workflow.steps.count(), 2)
        self.assertEqual(self.workflow.transitions.count(), 0)

    def test_update_transition_normalizes_rules(self) -> None:
        transition = self.workflow.transitions.first()
        updated = self.graph.update_transition(transition.pk, name="Start", conditions=[GROUP_RULE])
        self.assertEqual(updated.name, "Start")
        self.assertEqual(updated.conditions, [GROUP_RULE])
        with self.assertRaises(RuleFormatError):
            self.graph.update_transition(transition.pk, validators=[{"type": "nope"}])

    def test_clone_preserves_shape_and_status_endpoints(self) -> None:
        self.graph.add_transition(None, self.steps["Open"], name="Reopen", conditions=[GROUP_RULE])
        target = Workflow.objects.create(name="Copy")
        step_map = WorkflowGraph(self.workflow).clone_into(target)

        self.assertEqual(len(step_map), 3)
        self.assertEqual(target.steps.count(), 3)
        self.assertEqual(target.transitions.count(), 3)
        self.assertTrue(set(step_map.values()).isdisjoint(step_map.keys()))

        source = self.graph.snapshot()
        clone = WorkflowGraph(target).snapshot()

        def edges(graph):
            return sorted(
                (
                    str(graph.status_of(transition.from_step_id)),
                    str(graph.status_of(transition.to_step_id)),
                    transition.name,
                    transition.conditions,
                )
                for transition in graph.transitions
            )

        self.assertEqual(edges(source), edges(clone))
        self.assertEqual(clone.initial_step.status_id, self.statuses["Open"].pk)

    def test_clone_into_itself_is_rejected(self) -> None:
        with self.assertRaises(CrossWorkflowReference):
            self.graph.clone_into(self.workflow)

    def test_snapshot_prefers_exact_edges(self) -> None:
        self.graph.add_transition(None, self.steps["In Progress"], name="Any to In Progress")
        snapshot = self.graph.snapshot()
        found = snapshot.find_transition(self.statuses["Open"].pk, self.statuses["In Progress"].pk)
        self.assertEqual(found.name, "Open to In Progress")
        found = snapshot.find_transition(self.statuses["Done"].pk, self.statuses["In Progress"].pk)
        self.assertEqual(found.name, "Any to In Progress")
        self.assertIsNone(snapshot.find_transition(self.statuses["Open"].pk, self.statuses["Done"].pk))


class DraftManagerTests(TestCase):
    def setUp(self) -> None:
        self.statuses = make_statuses("Open", "Done")
        self.live, self.graph, self.steps = build_workflow(
            "Support", self.statuses, edges=[("Open", "Done")], initial="Open"
        )
        self.manager = DraftManager()

    def test_create_then_discard_leaves_live_unchanged(self) -> None:
        before = self.graph.snapshot()
        draft = self.manager.create_draft(self.live.pk)
        WorkflowGraph(draft).add_step(Status.objects.create(name="Waiting").pk)
        self.manager.discard_draft(draft.pk)

        self.assertEqual(WorkflowGraph.load(self.live.pk).snapshot(), before)
        self.assertFalse(Workflow.objects.filter(pk=draft.pk).exists())

    def test_only_one_open_draft(self) -> None:
        draft = self.manager.create_draft(self.live.pk)
        with self.assertRaises(DraftAlreadyOpen) as caught:
            self.manager.create_draft(self.live.pk)
        self.assertEqual(caught.exception.draft_id, draft.pk)
        self.assertEqual(self.manager.get_draft(self.live.pk), draft)

    def test_publish_swaps_content_into_the_live_id(self) -> None:
        draft = self.manager.create_draft(self.live.pk)
        self.assertTrue(draft.is_draft)
        self.assertEqual(draft.steps.count(), 2)
        waiting = Status.objects.create(name="Waiting")
        WorkflowGraph(draft).add_step(waiting.pk)

        published = self.manager.publish_draft(draft.pk)

        self.assertEqual(published.pk, self.live.pk)
        self.assertEqual(published.version, 2)
        self.assertIsNotNone(published.published_at)
        self.assertTrue(published.steps.filter(status=waiting).exists())
        self.assertEqual(published.steps.count(), 3)
        self.assertEqual(published.transitions.count(), 1)
        self.assertFalse(Workflow.objects.filter(pk=draft.pk).exists())
        self.assertIsNone(self.manager.get_draft(self.live.pk))

    def test_publish_keeps_scheme_mappings_valid(self) -> None:
        scheme = WorkflowScheme.objects.create(name="Default")
        mapping = upsert_mapping(scheme.pk, None, self.live.pk)
        draft = self.manager.create_draft(self.live.pk)
        self.manager.publish_draft(draft.pk)
        self.assertEqual(SchemeResolver().resolve(scheme.pk, None), mapping.workflow_id)

    def test_draft_state_is_checked(self) -> None:
        draft = self.manager.create_draft(self.live.pk)
        with self.assertRaises(InvalidDraftState):
            self.manager.create_draft(draft.pk)
        with self.assertRaises(InvalidDraftState):
            self.manager.publish_draft(self.live.pk)
        with self.assertRaises(InvalidDraftState):
            self.manager.discard_draft(self.live.pk)

    def test_drafts_cannot_be_mapped(self) -> None:
        draft = self.manager.create_draft(self.live.pk)
        scheme = WorkflowScheme.objects.create(name="Default")
        with self.assertRaises(InvalidDraftState):
            upsert_mapping(scheme.pk, None, draft.pk)


class WorkflowComparatorTests(TestCase):
    def setUp(self) -> None:
        self.statuses = make_statuses("Open", "In Progress", "Done")
        self.workflow, self.graph, self.steps = build_workflow(
            "Software",
            self.statuses,
            edges=[("Open", "In Progress"), ("In Progress", "Done")],
            initial="Open",
        )

    def test_comparing_a_workflow_with_itself_is_all_unchanged(self) -> None:
        snapshot = self.graph.snapshot()
        diff = WorkflowComparator().compare(snapshot, snapshot)
        self.assertTrue(diff.is_identical)
        self.assertEqual(len(diff.steps), 3)
        self.assertEqual(len(diff.transitions), 2)
        self.assertEqual({entry.change for entry in diff.steps + diff.transitions}, {UNCHANGED})

    def test_draft_changes_are_classified(self) -> None:
        draft = DraftManager().create_draft(self.workflow.pk)
        draft_graph = WorkflowGraph(draft)
        draft_steps = {step.status_id: step.pk for step in draft.steps.all()}
        blocked = Status.objects.create(name="Blocked")
        blocked_step = draft_graph.add_step(blocked.pk)
        draft_graph.add_transition(draft_steps[self.statuses["Open"].pk], blocked_step.pk, name="Block")
        first = draft.transitions.get(from_step_id=draft_steps[self.statuses["Open"].pk], to_step_id=draft_steps[self.statuses["In Progress"].pk])
        draft_graph.update_transition(first.pk, conditions=[GROUP_RULE])
        second = draft.transitions.get(from_step_id=draft_steps[self.statuses["In Progress"].pk])
        draft_graph.remove_transition(second.pk)

        diff = WorkflowComparator().compare(self.graph.snapshot(), draft_graph.snapshot())

        self.assertEqual(diff.count(ADDED), 2)
        self.assertEqual(diff.count(MODIFIED), 1)
        self.assertEqual(diff.count(REMOVED), 1)
        self.assertEqual([entry.change for entry in diff.transitions], [REMOVED, MODIFIED, ADDED])
        modified = diff.transitions[1]
        self.assertEqual(modified.label, "Open -> In Progress")
        self.assertEqual(modified.details, "Changed: conditions")


class SchemeResolverTests(TestCase):
    def setUp(self) -> None:
        statuses = make_statuses("Open", "Done")
        self.x, _, _ = build_workflow("X", statuses, initial="Open")
        self.y, _, _ = build_workflow("Y", statuses, initial="Open")
        self.bug = IssueType.objects.create(name="Bug")
        self.story = IssueType.objects.create(name="Story")
        self.scheme = WorkflowScheme.objects.create(name="Engineering")
        upsert_mapping(self.scheme.pk, None, self.x.pk)
        upsert_mapping(self.scheme.pk, self.bug.pk, self.y.pk)
        self.resolver = SchemeResolver()

    def test_exact_mapping_wins_over_wildcard(self) -> None:
        self.assertEqual(self.resolver.resolve(self.scheme.pk, self.bug.pk), self.y.pk)
        self.assertEqual(self.resolver.resolve(self.scheme.pk, self.story.pk), self.x.pk)
        self.assertEqual(self.resolver.resolve(self.scheme.pk, None), self.x.pk)

    def test_no_mapping_raises(self) -> None:
        empty = WorkflowScheme.objects.create(name="Empty")
        with self.assertRaises(NoWorkflowConfigured):
            self.resolver.resolve(empty.pk, self.bug.pk)

    def test_upsert_replaces_existing_mapping(self) -> None:
        upsert_mapping(self.scheme.pk, self.bug.pk, self.x.pk)
        self.assertEqual(WorkflowSchemeMapping.objects.filter(scheme=self.scheme).count(), 2)
        self.assertEqual(self.resolver.resolve(self.scheme.pk, self.bug.pk), self.x.pk)

    def test_project_falls_back_to_default_scheme(self) -> None:
        project = Project.objects.create(key="ENG", name="Engineering")
        with self.assertRaises(NoWorkflowConfigured):
            self.resolver.resolve_for_issue(project.pk, self.bug.pk)

        set_default_scheme(self.scheme.pk)
        self.assertEqual(self.resolver.resolve_for_issue(project.pk, self.bug.pk), self.y.pk)

        other = WorkflowScheme.objects.create(name="Other")
        upsert_mapping(other.pk, None, self.x.pk)
        assign_scheme(project.pk, other.pk)
        self.assertEqual(self.resolver.resolve_for_issue(project.pk, self.bug.pk), self.x.pk)

    def test_single_default_scheme(self) -> None:
        other = WorkflowScheme.objects.create(name="Other", is_default=True)
        set_default_scheme(self.scheme.pk)
        other.refresh_from_db()
        self.assertFalse(other.is_default)
        self.assertEqual(WorkflowScheme.objects.filter(is_default=True).count(), 1)


class PortabilityTests(TestCase):
    def setUp(self) -> None:
        self.statuses = make_statuses("Open", "In Progress", "Done")
        self.workflow, self.graph, self.steps = build_workflow(
            "Software", self.statuses, initial="Open"
        )
        self.graph.add_transition(
            self.steps["Open"],
            self.steps["In Progress"],
            name="Start",
            conditions=[{"type": "only_assignee"}],
            validators=[{"type": "field_required", "field": "assignee_id"}],
        )
        self.graph.add_transition(
            None,
            self.steps["Done"],
            name="Close",
            post_functions=[{"type": "set_field", "field": "resolution", "value": "Done"}],
        )

    def test_export_format(self) -> None:
        document = export_workflow(self.workflow.pk)
        self.assertEqual(document["version"], "1.0")
        self.assertIn("exportedAt", document)
        body = document["workflow"]
        self.assertEqual(body["name"], "Software")
        self.assertEqual(len(body["steps"]), 3)
        close = next(item for item in body["transitions"] if item["name"] == "Close")
        self.assertIsNone(close["fromStatusId"])
        self.assertEqual(close["toStatusId"], self.statuses["Done"].pk)
        self.assertEqual(close["postFunctions"][0]["type"], "set_field")

    def test_round_trip_is_isomorphic(self) -> None:
        result = import_workflow(export_workflow(self.workflow.pk))
        self.assertEqual(result.warnings, [])
        self.assertEqual(result.workflow.name, "Software (Imported)")
        self.assertEqual(result.workflow.steps.count(), 3)
        self.assertEqual(result.workflow.transitions.count(), 2)

        diff = WorkflowComparator().compare(
            self.graph.snapshot(), WorkflowGraph(result.workflow).snapshot()
        )
        self.assertTrue(diff.is_identical)

    def test_statuses_resolve_by_name_when_ids_differ(self) -> None:
        document = export_workflow(self.workflow.pk)
        offset = 100000
        for step in document["workflow"]["steps"]:
            step["statusId"] += offset
        for transition in document["workflow"]["transitions"]:
            if transition["fromStatusId"] is not None:
                transition["fromStatusId"] += offset
            transition["toStatusId"] += offset

        result = import_workflow(document, name="Moved")
        self.assertEqual(result.workflow.name, "Moved")
        self.assertEqual(result.warnings, [])
        self.assertTrue(WorkflowComparator().compare(
            self.graph.snapshot(), WorkflowGraph(result.workflow).snapshot()
        ).is_identical)

    def test_names_win_over_colliding_status_ids(self) -> None:
        # Another environment numbered Open and Done the other way round.
        open_id, done_id = self.statuses["Open"].pk, self.statuses["Done"].pk
        swapped = {open_id: done_id, done_id: open_id}
        document = export_workflow(self.workflow.pk)
        for step in document["workflow"]["steps"]:
            step["statusId"] = swapped.get(step["statusId"], step["statusId"])
        for transition in document["workflow"]["transitions"]:
            transition["fromStatusId"] = swapped.get(transition["fromStatusId"], transition["fromStatusId"])
            transition["toStatusId"] = swapped.get(transition["toStatusId"], transition["toStatusId"])

        result = import_workflow(document)
        self.assertEqual(result.warnings, [])
        imported = WorkflowGraph(result.workflow).snapshot()
        self.assertEqual(imported.initial_step.status_id, open_id)
        self.assertTrue(WorkflowComparator().compare(self.graph.snapshot(), imported).is_identical)

    def test_id_is_used_when_the_name_is_absent(self) -> None:
        document = export_workflow(self.workflow.pk)
        for step in document["workflow"]["steps"]:
            del step["statusName"]

        result = import_workflow(document)
        self.assertEqual(result.warnings, [])
        self.assertEqual(result.workflow.steps.count(), 3)

    def test_unresolved_statuses_are_skipped_with_warnings(self) -> None:
        document = export_workflow(self.workflow.pk)
        for step in document["workflow"]["steps"]:
            if step["statusName"] == "Done":
                step["statusId"] = 999999
                step["statusName"] = "Archived"

        result = import_workflow(document)
        self.assertEqual(result.workflow.steps.count(), 2)
        self.assertEqual(result.workflow.transitions.count(), 1)
        self.assertEqual(len(result.warnings), 2)

    def test_snake_case_keys_are_accepted(self) -> None:
        document = {
            "version": "1.0",
            "workflow": {
                "name": "Legacy",
                "steps": [
                    {"status_id": self.statuses["Open"].pk, "is_initial": True},
                    {"status_name": "Done", "position_x": 10},
                ],
                "transitions": [
                    {
                        "from_status_id": self.statuses["Open"].pk,
                        "to_status_id": None,
                        "name": "Broken",
                    },
                ],
            },
        }
        result = import_workflow(document)
        self.assertEqual(result.workflow.steps.count(), 2)
        self.assertTrue(result.workflow.steps.get(status=self.statuses["Open"]).is_initial)
        self.assertEqual(result.workflow.steps.get(status=self.statuses["Done"]).position_x, 10)
        self.assertEqual(len(result.warnings), 1)

    def test_malformed_documents_create_nothing(self) -> None:
        count = Workflow.objects.count()
        for document in (
            [],
            {"version": "2.0", "workflow": {"name": "X", "steps": []}},
            {"version": "1.0"},
            {"version": "1.0", "workflow": {"name": "X", "steps": "none"}},
        ):
            with self.assertRaises(ImportFormatError):
                import_workflow(document)
        self.assertEqual(Workflow.objects.count(), count)

    def test_invalid_rules_abort_the_import(self) -> None:
        document = export_workflow(self.workflow.pk)
        document["workflow"]["transitions"][0]["conditions"] = [{"type": "nope"}]
        count = Workflow.objects.count()
        with self.assertRaises(ImportFormatError):
            import_workflow(document)
        self.assertEqual(Workflow.objects.count(), count)


class WorkflowApiTests(TestCase):
    def setUp(self) -> None:
        self.client = APIClient()
        self.statuses = make_statuses("Open", "In Progress", "Done")

    def create_workflow(self, name: str = "Software") -> int:
        response = self.client.post(
            reverse("workflow-list"),
            {"name": name, "description": "Engineering flow"},
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        return response.data["id"]

    def add_step(self, workflow_id: int, status_name: str, initial: bool = False) -> int:
        response = self.client.post(
            reverse("workflow-add-step", args=[workflow_id]),
            {"status": self.statuses[status_name].pk, "is_initial": initial},
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        return response.data["id"]

    def test_health(self) -> None:
        response = self.client.get(reverse("workflow-health"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data, {"status": "ok"})

    def test_status_crud(self) -> None:
        response = self.client.post(
            reverse("status-list"),
            {"name": "Review", "category": "in_progress", "color": "#0052CC"},
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        response = self.client.get(reverse("status-list"))
        self.assertEqual(len(response.data), 4)

    def test_build_a_workflow_graph(self) -> None:
        workflow_id = self.create_workflow()
        open_step = self.add_step(workflow_id, "Open", initial=True)
        done_step = self.add_step(workflow_id, "Done")

        response = self.client.post(
            reverse("workflow-add-transition", args=[workflow_id]),
            {
                "from_step": open_step,
                "to_step": done_step,
                "name": "Resolve",
                "validators": [{"type": "resolution_set"}],
            },
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data["from_status"], self.statuses["Open"].pk)
        self.assertEqual(response.data["validators"], [{"type": "resolution_set", "message": ""}])

        response = self.client.post(
            reverse("workflow-add-transition", args=[workflow_id]),
            {"from_step": open_step, "to_step": done_step, "name": "Again"},
            format="json",
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["code"], "duplicate_transition")

        response = self.client.get(reverse("workflow-detail", args=[workflow_id]))
        self.assertEqual(len(response.data["steps"]), 2)
        self.assertEqual(len(response.data["transitions"]), 1)

    def test_duplicate_status_is_a_conflict(self) -> None:
        workflow_id = self.create_workflow()
        self.add_step(workflow_id, "Open")
        response = self.client.post(
            reverse("workflow-add-step", args=[workflow_id]),
            {"status": self.statuses["Open"].pk},
            format="json",
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["code"], "duplicate_status")

    def test_invalid_rules_are_rejected(self) -> None:
        workflow_id = self.create_workflow()
        open_step = self.add_step(workflow_id, "Open")
        done_step = self.add_step(workflow_id, "Done")
        response = self.client.post(
            reverse("workflow-add-transition", args=[workflow_id]),
            {
                "from_step": open_step,
                "to_step": done_step,
                "name": "Resolve",
                "conditions": [{"type": "only_admins"}],
            },
            format="json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("conditions", response.data)

    def test_step_and_transition_editing(self) -> None:
        workflow_id = self.create_workflow()
        open_step = self.add_step(workflow_id, "Open", initial=True)
        done_step = self.add_step(workflow_id, "Done")

        response = self.client.patch(
            reverse("workflow-step-detail", args=[done_step]),
            {"position_x": 120, "position_y": 40},
            format="json",
        )
        self.assertEqual(response.data["position_x"], 120)

        response = self.client.post(reverse("workflow-step-set-initial", args=[done_step]), format="json")
        self.assertTrue(response.data["is_initial"])
        response = self.client.get(reverse("workflow-step-detail", args=[open_step]))
        self.assertFalse(response.data["is_initial"])

        response = self.client.post(
            reverse("workflow-add-transition", args=[workflow_id]),
            {"from_step": None, "to_step": done_step, "name": "Close"},
            format="json",
        )
        transition_id = response.data["id"]
        self.assertIsNone(response.data["from_status"])
        response = self.client.patch(
            reverse("workflow-transition-detail", args=[transition_id]),
            {"name": "Close issue", "conditions": [GROUP_RULE]},
            format="json",
        )
        self.assertEqual(response.data["name"], "Close issue")
        self.assertEqual(response.data["conditions"], [GROUP_RULE])

        response = self.client.delete(reverse("workflow-step-detail", args=[done_step]))
        self.assertEqual(response.status_code, 204)
        response = self.client.get(reverse("workflow-transition-detail", args=[transition_id]))
        self.assertEqual(response.status_code, 404)

    def test_draft_lifecycle(self) -> None:
        workflow_id = self.create_workflow()
        self.add_step(workflow_id, "Open", initial=True)

        response = self.client.get(reverse("workflow-draft", args=[workflow_id]))
        self.assertEqual(response.status_code, 404)

        response = self.client.post(reverse("workflow-draft", args=[workflow_id]), format="json")
        self.assertEqual(response.status_code, 201)
        draft_id = response.data["id"]
        self.assertTrue(response.data["is_draft"])
        self.assertEqual(response.data["draft_of"], workflow_id)

        response = self.client.post(reverse("workflow-draft", args=[workflow_id]), format="json")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["draftId"], draft_id)

        response = self.client.get(reverse("workflow-list"))
        self.assertEqual([item["id"] for item in response.data], [workflow_id])
        response = self.client.get(reverse("workflow-list"), {"include_drafts": "true"})
        self.assertEqual(len(response.data), 2)

        self.add_step(draft_id, "Done")
        response = self.client.get(reverse("workflow-compare", args=[draft_id]))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["summary"]["added"], 1)

        response = self.client.post(reverse("workflow-publish", args=[draft_id]), format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["id"], workflow_id)
        self.assertEqual(response.data["version"], 2)
        self.assertEqual(len(response.data["steps"]), 2)

        response = self.client.get(reverse("workflow-detail", args=[draft_id]))
        self.assertEqual(response.status_code, 404)

    def test_publishing_a_live_workflow_is_rejected(self) -> None:
        workflow_id = self.create_workflow()
        response = self.client.post(reverse("workflow-publish", args=[workflow_id]), format="json")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["code"], "invalid_draft_state")

    def test_discard_draft(self) -> None:
        workflow_id = self.create_workflow()
        draft_id = self.client.post(reverse("workflow-draft", args=[workflow_id]), format="json").data["id"]
        response = self.client.post(reverse("workflow-discard", args=[draft_id]), format="json")
        self.assertEqual(response.status_code, 204)
        self.assertFalse(Workflow.objects.filter(pk=draft_id).exists())

    def test_clone_export_import_and_compare(self) -> None:
        workflow_id = self.create_workflow()
        open_step = self.add_step(workflow_id, "Open", initial=True)
        done_step = self.add_step(workflow_id, "Done")
        self.client.post(
            reverse("workflow-add-transition", args=[workflow_id]),
            {"from_step": open_step, "to_step": done_step, "name": "Resolve"},
            format="json",
        )

        response = self.client.post(reverse("workflow-clone", args=[workflow_id]), {}, format="json")
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data["name"], "Software (Copy)")
        self.assertEqual(len(response.data["transitions"]), 1)
        clone_id = response.data["id"]

        response = self.client.get(reverse("workflow-compare", args=[workflow_id]), {"other": clone_id})
        self.assertTrue(response.data["identical"])
        self.assertEqual(response.data["summary"]["unchanged"], 3)

        document = self.client.get(reverse("workflow-export", args=[workflow_id])).data
        response = self.client.post(
            reverse("workflow-import"),
            {"document": document, "name": "Imported flow"},
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data["workflow"]["name"], "Imported flow")
        self.assertEqual(response.data["warnings"], [])

        response = self.client.post(
            reverse("workflow-import"),
            {"document": {"version": "9.0"}},
            format="json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "import_format_error")

    def test_compare_requires_other_for_live_workflows(self) -> None:
        workflow_id = self.create_workflow()
        response = self.client.get(reverse("workflow-compare", args=[workflow_id]))
        self.assertEqual(response.status_code, 400)

    def test_schemes_and_project_assignment(self) -> None:
        workflow_id = self.create_workflow()
        bug = IssueType.objects.create(name="Bug")
        project = Project.objects.create(key="ENG", name="Engineering")

        response = self.client.post(reverse("scheme-list"), {"name": "Engineering"}, format="json")
        self.assertEqual(response.status_code, 201)
        scheme_id = response.data["id"]

        response = self.client.get(reverse("scheme-resolve", args=[scheme_id]), {"issue_type": bug.pk})
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["code"], "no_workflow_configured")

        response = self.client.post(
            reverse("scheme-mappings", args=[scheme_id]),
            {"workflow": workflow_id},
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data["issue_type_name"], "*")
        mapping_id = response.data["id"]

        response = self.client.get(reverse("scheme-resolve", args=[scheme_id]), {"issue_type": bug.pk})
        self.assertEqual(response.data["workflow"], workflow_id)

        response = self.client.post(
            reverse("project-scheme-list"),
            {"project": project.pk, "scheme": scheme_id},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        response = self.client.get(reverse("project-scheme-detail", args=[project.pk]))
        self.assertEqual(response.data["scheme"], scheme_id)
        response = self.client.get(reverse("workflow-projects", args=[workflow_id]))
        self.assertEqual(response.data["projects"], [project.pk])

        response = self.client.delete(reverse("workflow-detail", args=[workflow_id]))
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["code"], "in_use")

        response = self.client.delete(reverse("scheme-mapping-detail", args=[mapping_id]))
        self.assertEqual(response.status_code, 204)
        response = self.client.delete(reverse("workflow-detail", args=[workflow_id]))
        self.assertEqual(response.status_code, 204)

    def test_make_default_scheme(self) -> None:
        first = self.client.post(reverse("scheme-list"), {"name": "A", "is_default": True}, format="json").data
        second = self.client.post(reverse("scheme-list"), {"name": "B"}, format="json").data
        response = self.client.post(reverse("scheme-make-default", args=[second["id"]]), format="json")
        self.assertTrue(response.data["is_default"])
        self.assertFalse(WorkflowScheme.objects.get(pk=first["id"]).is_default)
