"""Copy-on-write versioning of workflows: draft, publish, discard.

A draft is a full copy of a live workflow's graph. Editing it never touches
the live graph; publishing swaps the draft's steps and transitions into the
live workflow in one transaction, keeping the live workflow's id so scheme
mappings pointing at it stay valid.
"""
from __future__ import annotations

import logging
from typing import Optional

from django.db import IntegrityError, transaction
from django.utils import timezone

from .exceptions import DraftAlreadyOpen, InvalidDraftState, NotFound
from .graph import WorkflowGraph
from .models import Workflow

logger = logging.getLogger(__name__)


class DraftManager:
    def _locked(self, workflow_id: int) -> Workflow:
        workflow = Workflow.objects.select_for_update().filter(pk=workflow_id).first()
        if workflow is None:
            raise NotFound("Workflow", workflow_id)
        return workflow

    def _locked_draft(self, draft_id: int) -> Workflow:
        draft = self._locked(draft_id)
        if not draft.is_draft or draft.draft_of_id is None:
            raise InvalidDraftState(f"Workflow {draft_id} is not a draft.")
        return draft

    def get_draft(self, workflow_id: int) -> Optional[Workflow]:
        return Workflow.objects.filter(draft_of_id=workflow_id, is_draft=True).first()

    def create_draft(self, workflow_id: int) -> Workflow:
        try:
            with transaction.atomic():
                live = self._locked(workflow_id)
                if live.is_draft:
                    raise InvalidDraftState(f"Workflow {workflow_id} is itself a draft.")
                existing = self.get_draft(live.pk)
                if existing is not None:
                    raise DraftAlreadyOpen(live.pk, existing.pk)

                draft = Workflow.objects.create(
                    name=f"{live.name} (Draft)",
                    description=live.description,
                    version=live.version,
                    is_default=False,
                    is_active=False,
                    is_draft=True,
                    draft_of=live,
                )
                WorkflowGraph(live).clone_into(draft)
        except IntegrityError as exc:
            existing = self.get_draft(workflow_id)
            if existing is None:
                raise
            raise DraftAlreadyOpen(workflow_id, existing.pk) from exc

        logger.info("Opened draft %s of workflow %s", draft.pk, live.pk)
        return draft

    def publish_draft(self, draft_id: int) -> Workflow:
        """Replace the live workflow's content with the draft's, keeping the live id."""

        with transaction.atomic():
            draft = self._locked_draft(draft_id)
            live = self._locked(draft.draft_of_id)

            live.transitions.all().delete()
            live.steps.all().delete()
            draft.steps.update(workflow=live)
            draft.transitions.update(workflow=live)

            live.description = draft.description
            live.version += 1
            live.published_at = timezone.now()
            live.save(update_fields=["description", "version", "published_at", "updated_at"])
            draft.delete()

        logger.info("Published draft %s into workflow %s (v%s)", draft_id, live.pk, live.version)
        return live

    def discard_draft(self, draft_id: int) -> None:
        with transaction.atomic():
            draft = self._locked_draft(draft_id)
            live_id = draft.draft_of_id
            draft.delete()
        logger.info("Discarded draft %s of workflow %s", draft_id, live_id)
