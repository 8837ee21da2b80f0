"""Execution of a single issue transition request.

Stages, each a possible exit point:

1. resolve the governing workflow through the issue's scheme,
2. locate the edge from the current status to the requested one,
3. authorize with the edge's conditions,
4. validate the proposed field set with the edge's validators,
5. commit the status change and its history rows,
6. run the post-functions and report their warnings.

Stages 1 to 5 run in one transaction holding a row lock on the issue, so two
requests against the same issue are serialized and the second one sees the
status written by the first.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import IntegrityError, transaction

from issues.models import Issue, IssueHistory

from .conditions import ConditionEvaluator, ExecutionContext
from .exceptions import NotFound, TransitionNotAllowed, ValidationFailed
from .graph import GraphSnapshot, TransitionSnapshot, WorkflowGraph
from .models import Status
from .post_functions import PostFunctionExecutor, PostFunctionWarning
from .schemes import SchemeResolver
from .validators import ValidationMessage, ValidatorChain

logger = logging.getLogger(__name__)

RESERVED_FIELDS = frozenset({"status", "status_id"})


@dataclass(frozen=True)
class TransitionResult:
    issue_id: int
    transition_id: Optional[int]
    transition_name: str
    from_status_id: int
    to_status_id: int
    warnings: Tuple[PostFunctionWarning, ...] = ()


@dataclass(frozen=True)
class AvailableTransition:
    transition_id: Optional[int]
    transition_name: str
    to_status_id: int
    to_status_name: str
    to_status_color: str
    to_status_category: str


class TransitionExecutionPipeline:
    def __init__(self, resolver: Optional[SchemeResolver] = None) -> None:
        self.resolver = resolver or SchemeResolver()

    def resolve_graph(self, issue: Issue) -> GraphSnapshot:
        workflow_id = self.resolver.resolve_for_issue(issue.project_id, issue.issue_type_id)
        return WorkflowGraph.load(workflow_id).snapshot()

    def locate(self, graph: GraphSnapshot, issue: Issue, target_status_id: int) -> TransitionSnapshot:
        transition = graph.find_transition(issue.status_id, target_status_id)
        if transition is None:
            raise TransitionNotAllowed(
                f"Workflow '{graph.name}' has no transition from status {issue.status_id} "
                f"to status {target_status_id}."
            )
        return transition

    def _clean_fields(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        """Reject reserved names and coerce system field values to their column types."""

        reserved = sorted(RESERVED_FIELDS.intersection(fields))
        if reserved:
            raise ValidationFailed(
                [ValidationMessage("fields", f"Field '{name}' cannot be set directly.") for name in reserved]
            )

        cleaned: Dict[str, Any] = {}
        problems: List[ValidationMessage] = []
        for name, value in fields.items():
            try:
                cleaned[name] = Issue.clean_field(name, value)
            except DjangoValidationError as exc:
                problems.extend(
                    ValidationMessage("fields", f"Field '{name}': {message}") for message in exc.messages
                )
        if problems:
            raise ValidationFailed(problems)
        return cleaned

    def _commit(
        self,
        issue: Issue,
        target_status_id: int,
        fields: Mapping[str, Any],
        actor_id: Optional[int],
    ) -> None:
        old_status_id = issue.status_id
        changes: List[Tuple[str, Any, Any]] = []
        update_fields = {"status", "updated_at"}
        for name, value in fields.items():
            old_value = issue.get_field(name)
            if old_value == value:
                continue
            issue.set_field(name, value)
            changes.append((name, old_value, issue.get_field(name)))
            update_fields.add(name if name in Issue.SYSTEM_FIELDS else "fields")

        issue.status_id = target_status_id
        issue.save(update_fields=sorted(update_fields))
        IssueHistory.record(issue, "status", old_status_id, target_status_id, author_id=actor_id)
        for name, old_value, new_value in changes:
            IssueHistory.record(issue, name, old_value, new_value, author_id=actor_id)

    def execute(
        self,
        issue_id: int,
        target_status_id: int,
        context: ExecutionContext,
        fields: Optional[Mapping[str, Any]] = None,
    ) -> TransitionResult:
        proposed = self._clean_fields(fields or {})

        try:
            with transaction.atomic():
                issue = Issue.objects.select_for_update().filter(pk=issue_id).first()
                if issue is None:
                    raise NotFound("Issue", issue_id)
                from_status_id = issue.status_id

                graph = self.resolve_graph(issue)
                transition = self.locate(graph, issue, target_status_id)
                if transition.is_fallback:
                    logger.warning(
                        "Issue %s is in status %s, which workflow %s no longer places; moving it freely",
                        issue_id,
                        from_status_id,
                        graph.workflow_id,
                    )

                context = context.for_issue(issue)
                ConditionEvaluator(transition.conditions).evaluate(context)

                candidate = issue.field_values()
                candidate.update(proposed)
                candidate["status_id"] = target_status_id
                open_subtasks = issue.subtasks.exclude(status__category=Status.DONE).count()
                ValidatorChain(transition.validators).validate(candidate, open_subtasks)

                self._commit(issue, target_status_id, proposed, context.actor_id)
        except IntegrityError as exc:
            logger.warning("Store rejected transition of issue %s: %s", issue_id, exc)
            raise TransitionNotAllowed(
                f"The store rejected moving issue {issue_id} to status {target_status_id}."
            ) from exc

        warnings = PostFunctionExecutor(transition.post_functions, transition.name).run(issue, context)
        logger.info(
            "Issue %s moved %s -> %s via '%s' (%s warning(s))",
            issue_id,
            from_status_id,
            target_status_id,
            transition.name,
            len(warnings),
        )
        return TransitionResult(
            issue_id=issue_id,
            transition_id=transition.id,
            transition_name=transition.name,
            from_status_id=from_status_id,
            to_status_id=target_status_id,
            warnings=tuple(warnings),
        )

    def available_transitions(self, issue: Issue, context: ExecutionContext) -> List[AvailableTransition]:
        """Transitions out of the issue's current status that the actor may perform."""

        graph = self.resolve_graph(issue)
        context = context.for_issue(issue)
        candidates = graph.outgoing(issue.status_id)
        statuses = Status.objects.in_bulk(
            [graph.status_of(transition.to_step_id) for transition in candidates]
        )

        seen = set()
        available: List[AvailableTransition] = []
        for transition in candidates:
            target_id = graph.status_of(transition.to_step_id)
            if target_id == issue.status_id or target_id in seen:
                continue
            seen.add(target_id)
            if not ConditionEvaluator(transition.conditions).permits(context):
                continue
            target = statuses[target_id]
            available.append(
                AvailableTransition(
                    transition_id=transition.id,
                    transition_name=transition.name,
                    to_status_id=target.pk,
                    to_status_name=target.name,
                    to_status_color=target.color,
                    to_status_category=target.category,
                )
            )
        return available
