"""Background tasks for issue side effects."""
from __future__ import annotations

import logging
from typing import Dict, List, Optional

from celery import shared_task

from .models import Issue

logger = logging.getLogger(__name__)


def _recipients(issue: Issue, actor_id: Optional[int]) -> List[int]:
    """Everyone watching the issue except the actor who moved it."""

    candidates = [issue.assignee_id, issue.reporter_id, issue.project.lead_id]
    recipients: List[int] = []
    for user_id in candidates:
        if user_id is None or user_id == actor_id or user_id in recipients:
            continue
        recipients.append(user_id)
    return recipients


@shared_task
def notify_transition(
    issue_id: int,
    event: str,
    transition_name: str = "",
    actor_id: Optional[int] = None,
) -> Dict[str, object]:
    """Resolve who should hear about a transition and hand it to delivery."""

    issue = Issue.objects.select_related("project", "status").filter(pk=issue_id).first()
    if issue is None:
        logger.warning("Issue %s does not exist; dropping %s notification", issue_id, event)
        return {"issue": issue_id, "event": event, "recipients": []}

    recipients = _recipients(issue, actor_id)
    logger.info(
        "Notification %s for issue %s (%s -> %s) to %s",
        event,
        issue_id,
        transition_name or "transition",
        issue.status.name,
        recipients,
    )
    return {"issue": issue_id, "event": event, "recipients": recipients}
