"""Side effects executed after a transition has been committed."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, List, Sequence

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction

from issues.models import Issue, IssueComment, IssueHistory
from issues.tasks import notify_transition

from .conditions import ExecutionContext
from .rules import (
    AddComment,
    AssignToLead,
    AssignToReporter,
    ClearField,
    PostFunction,
    SendNotification,
    SetField,
    parse_post_functions,
)

logger = logging.getLogger(__name__)


class PostFunctionError(Exception):
    """An expected, reportable post-function failure."""


@dataclass(frozen=True)
class PostFunctionWarning:
    post_function_type: str
    message: str


def _write_field(issue: Issue, name: str, value: Any, author_id) -> None:
    try:
        value = Issue.clean_field(name, value)
    except DjangoValidationError as exc:
        raise PostFunctionError(f"Field '{name}': {'; '.join(exc.messages)}") from exc
    old_value = issue.get_field(name)
    if old_value == value:
        return
    issue.set_field(name, value)
    column = name if name in Issue.SYSTEM_FIELDS else "fields"
    issue.save(update_fields=[column, "updated_at"])
    IssueHistory.record(issue, name, old_value, issue.get_field(name), author_id=author_id)


class PostFunctionExecutor:
    """Run post-functions in declaration order, collecting failures as warnings.

    A failing post-function never rolls back the status change that already
    committed; its own writes are undone through a savepoint and the
    remaining post-functions still run.
    """

    def __init__(self, post_functions: Iterable[Any], transition_name: str = "") -> None:
        self.post_functions: Sequence[PostFunction] = tuple(
            item if isinstance(item, PostFunction) else parse_post_functions([item])[0]
            for item in post_functions
        )
        self.transition_name = transition_name

    def _apply(self, post_function: PostFunction, issue: Issue, context: ExecutionContext) -> None:
        actor_id = context.actor_id
        if isinstance(post_function, SetField):
            _write_field(issue, post_function.field, post_function.value, actor_id)
        elif isinstance(post_function, ClearField):
            _write_field(issue, post_function.field, None, actor_id)
        elif isinstance(post_function, AssignToLead):
            lead_id = issue.project.lead_id
            if lead_id is None:
                raise PostFunctionError(f"Project {issue.project.key} has no lead.")
            _write_field(issue, "assignee_id", lead_id, actor_id)
        elif isinstance(post_function, AssignToReporter):
            if issue.reporter_id is None:
                raise PostFunctionError(f"Issue {issue.pk} has no reporter.")
            _write_field(issue, "assignee_id", issue.reporter_id, actor_id)
        elif isinstance(post_function, AddComment):
            IssueComment.objects.create(issue=issue, author_id=actor_id, body=post_function.text)
        elif isinstance(post_function, SendNotification):
            notify_transition.delay(issue.pk, post_function.event, self.transition_name, actor_id)
        else:
            raise PostFunctionError(f"Unsupported post-function {post_function.type}.")

    def run(self, issue: Issue, context: ExecutionContext) -> List[PostFunctionWarning]:
        warnings: List[PostFunctionWarning] = []
        for post_function in self.post_functions:
            try:
                with transaction.atomic():
                    self._apply(post_function, issue, context)
            except Exception as exc:  # recorded as a warning, see class docstring
                logger.warning(
                    "Post-function %s failed on issue %s: %s",
                    post_function.describe(),
                    issue.pk,
                    exc,
                )
                warnings.append(PostFunctionWarning(post_function.type, str(exc)))
                issue.refresh_from_db()
        return warnings
