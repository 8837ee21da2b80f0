"""Authorization gate evaluated before a transition is allowed."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, FrozenSet, Iterable, Optional, Sequence

from .exceptions import PermissionDenied
from .rules import (
    Condition,
    OnlyAssignee,
    OnlyReporter,
    PermissionCheck,
    UserInGroup,
    UserInRole,
    parse_conditions,
)


@dataclass(frozen=True)
class ExecutionContext:
    """Who is asking for the transition, and on which issue."""

    actor_id: Optional[int]
    actor_groups: FrozenSet[str] = field(default_factory=frozenset)
    actor_roles: FrozenSet[str] = field(default_factory=frozenset)
    actor_permissions: FrozenSet[str] = field(default_factory=frozenset)
    issue: Any = None

    def for_issue(self, issue: Any) -> "ExecutionContext":
        return ExecutionContext(
            actor_id=self.actor_id,
            actor_groups=self.actor_groups,
            actor_roles=self.actor_roles,
            actor_permissions=self.actor_permissions,
            issue=issue,
        )


def _passes(condition: Condition, context: ExecutionContext) -> bool:
    issue = context.issue
    if isinstance(condition, OnlyAssignee):
        return context.actor_id is not None and getattr(issue, "assignee_id", None) == context.actor_id
    if isinstance(condition, OnlyReporter):
        return context.actor_id is not None and getattr(issue, "reporter_id", None) == context.actor_id
    if isinstance(condition, UserInGroup):
        return condition.group in context.actor_groups
    if isinstance(condition, UserInRole):
        return condition.role in context.actor_roles
    if isinstance(condition, PermissionCheck):
        return condition.permission in context.actor_permissions
    raise TypeError(f"Unsupported condition {condition!r}")


class ConditionEvaluator:
    """All conditions must pass; evaluation stops at the first failure."""

    def __init__(self, conditions: Iterable[Any]) -> None:
        self.conditions: Sequence[Condition] = tuple(
            item if isinstance(item, Condition) else parse_conditions([item])[0]
            for item in conditions
        )

    def first_failure(self, context: ExecutionContext) -> Optional[Condition]:
        for condition in self.conditions:
            if not _passes(condition, context):
                return condition
        return None

    def permits(self, context: ExecutionContext) -> bool:
        return self.first_failure(context) is None

    def evaluate(self, context: ExecutionContext) -> None:
        failed = self.first_failure(context)
        if failed is not None:
            raise PermissionDenied(failed.describe())
