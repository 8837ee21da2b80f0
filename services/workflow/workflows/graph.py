"""Structural operations on a workflow's steps and transitions."""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from django.db import IntegrityError, transaction

from .exceptions import CrossWorkflowReference, DuplicateStatus, DuplicateTransition, NotFound
from .models import Status, Workflow, WorkflowStep, WorkflowTransition
from .rules import dump_rules, parse_conditions, parse_post_functions, parse_validators

logger = logging.getLogger(__name__)

_RULE_PARSERS = {
    "conditions": parse_conditions,
    "validators": parse_validators,
    "post_functions": parse_post_functions,
}


def normalize_rules(kind: str, payloads: Any) -> List[Dict[str, Any]]:
    """Parse raw rule payloads of ``kind`` and dump them in canonical form."""

    return dump_rules(_RULE_PARSERS[kind](payloads))


@dataclass(frozen=True)
class StepSnapshot:
    id: int
    status_id: int
    status_name: str
    is_initial: bool
    position_x: int
    position_y: int


@dataclass(frozen=True)
class TransitionSnapshot:
    id: Optional[int]
    name: str
    description: str
    from_step_id: Optional[int]
    to_step_id: int
    conditions: Tuple[Dict[str, Any], ...]
    validators: Tuple[Dict[str, Any], ...]
    post_functions: Tuple[Dict[str, Any], ...]
    is_fallback: bool = False

    @property
    def is_global(self) -> bool:
        return self.from_step_id is None and not self.is_fallback


@dataclass(frozen=True)
class GraphSnapshot:
    """Immutable, detached view of one workflow's graph."""

    workflow_id: int
    name: str
    description: str
    steps: Tuple[StepSnapshot, ...]
    transitions: Tuple[TransitionSnapshot, ...]

    def step(self, step_id: Optional[int]) -> Optional[StepSnapshot]:
        if step_id is None:
            return None
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def step_for_status(self, status_id: Optional[int]) -> Optional[StepSnapshot]:
        for step in self.steps:
            if step.status_id == status_id:
                return step
        return None

    def status_of(self, step_id: Optional[int]) -> Optional[int]:
        step = self.step(step_id)
        return step.status_id if step is not None else None

    @property
    def initial_step(self) -> Optional[StepSnapshot]:
        for step in self.steps:
            if step.is_initial:
                return step
        return None

    def outgoing(self, current_status_id: Optional[int]) -> List[TransitionSnapshot]:
        """Transitions leaving ``current_status_id``, exact edges before any-status ones.

        A status with no step in this workflow (for example one dropped by a
        published draft) may move to any step: rule-free fallback edges are
        appended for every step no any-status edge already reaches.
        """

        current = self.step_for_status(current_status_id)
        exact = [
            transition
            for transition in self.transitions
            if current is not None and transition.from_step_id == current.id
        ]
        global_ = [transition for transition in self.transitions if transition.is_global]
        if current is not None or current_status_id is None:
            return exact + global_

        reached = {transition.to_step_id for transition in global_}
        fallback = [
            TransitionSnapshot(
                id=None,
                name=f"Move to {step.status_name}",
                description="",
                from_step_id=None,
                to_step_id=step.id,
                conditions=(),
                validators=(),
                post_functions=(),
                is_fallback=True,
            )
            for step in self.steps
            if step.id not in reached
        ]
        return global_ + fallback

    def find_transition(
        self, current_status_id: Optional[int], target_status_id: int
    ) -> Optional[TransitionSnapshot]:
        """Pick the edge reaching ``target_status_id``, preferring an exact ``from_step``."""

        target = self.step_for_status(target_status_id)
        if target is None:
            return None
        for transition in self.outgoing(current_status_id):
            if transition.to_step_id == target.id:
                return transition
        return None


class WorkflowGraph:
    """Mutating API over one persisted workflow graph."""

    def __init__(self, workflow: Workflow) -> None:
        self.workflow = workflow

    @classmethod
    def load(cls, workflow_id: int) -> "WorkflowGraph":
        workflow = Workflow.objects.filter(pk=workflow_id).first()
        if workflow is None:
            raise NotFound("Workflow", workflow_id)
        return cls(workflow)

    # Steps ------------------------------------------------------------------

    def _step(self, step_id: int) -> WorkflowStep:
        step = self.workflow.steps.filter(pk=step_id).first()
        if step is None:
            raise NotFound("Step", step_id)
        return step

    def add_step(
        self,
        status_id: int,
        initial: bool = False,
        position_x: int = 0,
        position_y: int = 0,
    ) -> WorkflowStep:
        if not Status.objects.filter(pk=status_id).exists():
            raise NotFound("Status", status_id)
        if self.workflow.steps.filter(status_id=status_id).exists():
            raise DuplicateStatus(f"Status {status_id} is already placed in workflow {self.workflow.pk}.")

        try:
            with transaction.atomic():
                if initial:
                    self.workflow.steps.filter(is_initial=True).update(is_initial=False)
                step = WorkflowStep.objects.create(
                    workflow=self.workflow,
                    status_id=status_id,
                    is_initial=initial,
                    position_x=position_x,
                    position_y=position_y,
                )
        except IntegrityError as exc:
            raise DuplicateStatus(
                f"Status {status_id} is already placed in workflow {self.workflow.pk}."
            ) from exc
        return step

    def remove_step(self, step_id: int) -> None:
        """Delete a step; transitions touching it go with it."""

        step = self._step(step_id)
        with transaction.atomic():
            self.workflow.transitions.filter(from_step=step).delete()
            self.workflow.transitions.filter(to_step=step).delete()
            step.delete()

    def set_initial(self, step_id: int) -> WorkflowStep:
        with transaction.atomic():
            step = self._step(step_id)
            self.workflow.steps.exclude(pk=step.pk).filter(is_initial=True).update(is_initial=False)
            if not step.is_initial:
                step.is_initial = True
                step.save(update_fields=["is_initial"])
        return step

    def move_step(self, step_id: int, position_x: int, position_y: int) -> WorkflowStep:
        step = self._step(step_id)
        step.position_x = position_x
        step.position_y = position_y
        step.save(update_fields=["position_x", "position_y"])
        return step

    # Transitions ------------------------------------------------------------

    def _endpoint(self, step_id: int) -> WorkflowStep:
        step = WorkflowStep.objects.filter(pk=step_id).first()
        if step is None:
            raise NotFound("Step", step_id)
        if step.workflow_id != self.workflow.pk:
            raise CrossWorkflowReference(
                f"Step {step_id} belongs to workflow {step.workflow_id}, not {self.workflow.pk}."
            )
        return step

    def add_transition(
        self,
        from_step_id: Optional[int],
        to_step_id: int,
        name: str,
        description: str = "",
        conditions: Iterable[Dict[str, Any]] = (),
        validators: Iterable[Dict[str, Any]] = (),
        post_functions: Iterable[Dict[str, Any]] = (),
    ) -> WorkflowTransition:
        from_step = self._endpoint(from_step_id) if from_step_id is not None else None
        to_step = self._endpoint(to_step_id)

        if self.workflow.transitions.filter(from_step=from_step, to_step=to_step).exists():
            source = from_step_id if from_step_id is not None else "any"
            raise DuplicateTransition(
                f"A transition from step {source} to step {to_step_id} already exists."
            )

        return WorkflowTransition.objects.create(
            workflow=self.workflow,
            from_step=from_step,
            to_step=to_step,
            name=name,
            description=description or "",
            conditions=normalize_rules("conditions", list(conditions)),
            validators=normalize_rules("validators", list(validators)),
            post_functions=normalize_rules("post_functions", list(post_functions)),
        )

    def _transition(self, transition_id: int) -> WorkflowTransition:
        found = self.workflow.transitions.filter(pk=transition_id).first()
        if found is None:
            raise NotFound("Transition", transition_id)
        return found

    def update_transition(self, transition_id: int, **changes: Any) -> WorkflowTransition:
        """Rename a transition or replace its rule lists."""

        found = self._transition(transition_id)
        update_fields = []
        for attr in ("name", "description"):
            if attr in changes:
                setattr(found, attr, changes[attr] or "")
                update_fields.append(attr)
        for kind in _RULE_PARSERS:
            if kind in changes:
                setattr(found, kind, normalize_rules(kind, changes[kind]))
                update_fields.append(kind)
        if update_fields:
            found.save(update_fields=update_fields)
        return found

    def remove_transition(self, transition_id: int) -> None:
        self._transition(transition_id).delete()

    # Whole graph ------------------------------------------------------------

    def clone_into(self, target: Workflow) -> Dict[int, int]:
        """Deep-copy every step and transition into ``target``.

        Returns the old-step-id to new-step-id table used to remap transition
        endpoints. The target must not already place any of the source's
        statuses.
        """

        if target.pk == self.workflow.pk:
            raise CrossWorkflowReference("A workflow cannot be cloned into itself.")

        steps = list(self.workflow.steps.order_by("id"))
        overlap = set(target.steps.values_list("status_id", flat=True)) & {step.status_id for step in steps}
        if overlap:
            raise DuplicateStatus(
                f"Workflow {target.pk} already places statuses {sorted(overlap)}."
            )
        keep_initial = not target.steps.filter(is_initial=True).exists()

        step_map: Dict[int, int] = {}
        with transaction.atomic():
            for step in steps:
                clone = WorkflowStep.objects.create(
                    workflow=target,
                    status_id=step.status_id,
                    is_initial=step.is_initial and keep_initial,
                    position_x=step.position_x,
                    position_y=step.position_y,
                )
                step_map[step.pk] = clone.pk

            for source in self.workflow.transitions.order_by("id"):
                WorkflowTransition.objects.create(
                    workflow=target,
                    from_step_id=step_map[source.from_step_id] if source.from_step_id is not None else None,
                    to_step_id=step_map[source.to_step_id],
                    name=source.name,
                    description=source.description,
                    conditions=copy.deepcopy(source.conditions),
                    validators=copy.deepcopy(source.validators),
                    post_functions=copy.deepcopy(source.post_functions),
                )

        logger.debug(
            "Cloned %s steps of workflow %s into workflow %s",
            len(step_map),
            self.workflow.pk,
            target.pk,
        )
        return step_map

    def snapshot(self) -> GraphSnapshot:
        steps = tuple(
            StepSnapshot(
                id=step.pk,
                status_id=step.status_id,
                status_name=step.status.name,
                is_initial=step.is_initial,
                position_x=step.position_x,
                position_y=step.position_y,
            )
            for step in self.workflow.steps.select_related("status").order_by("id")
        )
        transitions = tuple(
            TransitionSnapshot(
                id=item.pk,
                name=item.name,
                description=item.description,
                from_step_id=item.from_step_id,
                to_step_id=item.to_step_id,
                conditions=tuple(item.conditions or ()),
                validators=tuple(item.validators or ()),
                post_functions=tuple(item.post_functions or ()),
            )
            for item in self.workflow.transitions.order_by("id")
        )
        return GraphSnapshot(
            workflow_id=self.workflow.pk,
            name=self.workflow.name,
            description=self.workflow.description,
            steps=steps,
            transitions=transitions,
        )
