"""Structural diff between two workflow graphs."""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .graph import GraphSnapshot, TransitionSnapshot

ADDED = "added"
REMOVED = "removed"
MODIFIED = "modified"
UNCHANGED = "unchanged"

_ORDER = {REMOVED: 0, MODIFIED: 1, ADDED: 2, UNCHANGED: 3}

TransitionKey = Tuple[Optional[int], Optional[int]]


@dataclass(frozen=True)
class DiffEntry:
    change: str
    key: Any
    label: str
    details: str = ""


@dataclass(frozen=True)
class WorkflowDiff:
    steps: Tuple[DiffEntry, ...]
    transitions: Tuple[DiffEntry, ...]

    def count(self, change: str) -> int:
        return sum(1 for entry in self.steps + self.transitions if entry.change == change)

    @property
    def is_identical(self) -> bool:
        return all(entry.change == UNCHANGED for entry in self.steps + self.transitions)


def _canonical(payload: Any) -> str:
    return json.dumps(list(payload), sort_keys=True, default=str)


def _transition_key(graph: GraphSnapshot, transition: TransitionSnapshot) -> TransitionKey:
    return graph.status_of(transition.from_step_id), graph.status_of(transition.to_step_id)


def _status_label(graph: GraphSnapshot, status_id: Optional[int]) -> str:
    if status_id is None:
        return "Any"
    step = graph.step_for_status(status_id)
    return step.status_name if step is not None else "Unknown"


def _sorted(entries: List[DiffEntry]) -> Tuple[DiffEntry, ...]:
    return tuple(sorted(entries, key=lambda entry: _ORDER[entry.change]))


class WorkflowComparator:
    """Compare steps by status and transitions by (from status, to status).

    Keys go through each graph's own steps rather than step ids so that a
    draft or clone lines up with its source.
    """

    def compare_steps(self, left: GraphSnapshot, right: GraphSnapshot) -> Tuple[DiffEntry, ...]:
        left_steps = {step.status_id: step for step in left.steps}
        right_steps = {step.status_id: step for step in right.steps}
        entries: List[DiffEntry] = []

        for status_id, step in right_steps.items():
            previous = left_steps.get(status_id)
            if previous is None:
                details = "Initial status" if step.is_initial else ""
                entries.append(DiffEntry(ADDED, status_id, step.status_name, details))
            elif previous.is_initial != step.is_initial:
                entries.append(
                    DiffEntry(
                        MODIFIED,
                        status_id,
                        step.status_name,
                        f"Initial: {previous.is_initial} -> {step.is_initial}",
                    )
                )
            else:
                entries.append(DiffEntry(UNCHANGED, status_id, step.status_name))

        for status_id, step in left_steps.items():
            if status_id not in right_steps:
                entries.append(DiffEntry(REMOVED, status_id, step.status_name))
        return _sorted(entries)

    def compare_transitions(self, left: GraphSnapshot, right: GraphSnapshot) -> Tuple[DiffEntry, ...]:
        left_edges: Dict[TransitionKey, TransitionSnapshot] = {
            _transition_key(left, transition): transition for transition in left.transitions
        }
        right_edges: Dict[TransitionKey, TransitionSnapshot] = {
            _transition_key(right, transition): transition for transition in right.transitions
        }
        entries: List[DiffEntry] = []

        for key, transition in right_edges.items():
            label = f"{_status_label(right, key[0])} -> {_status_label(right, key[1])}"
            previous = left_edges.get(key)
            if previous is None:
                entries.append(DiffEntry(ADDED, key, label))
                continue
            changed = [
                name
                for name, attr in (
                    ("conditions", "conditions"),
                    ("validators", "validators"),
                    ("post-functions", "post_functions"),
                )
                if _canonical(getattr(previous, attr)) != _canonical(getattr(transition, attr))
            ]
            if changed:
                entries.append(DiffEntry(MODIFIED, key, label, f"Changed: {', '.join(changed)}"))
            else:
                entries.append(DiffEntry(UNCHANGED, key, label))

        for key in left_edges:
            if key not in right_edges:
                label = f"{_status_label(left, key[0])} -> {_status_label(left, key[1])}"
                entries.append(DiffEntry(REMOVED, key, label))
        return _sorted(entries)

    def compare(self, left: GraphSnapshot, right: GraphSnapshot) -> WorkflowDiff:
        return WorkflowDiff(
            steps=self.compare_steps(left, right),
            transitions=self.compare_transitions(left, right),
        )
