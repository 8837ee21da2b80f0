"""Typed errors raised by the workflow engine and their API rendering."""
from __future__ import annotations

from typing import Any, Dict, Optional

from django.db.models import ProtectedError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler


class WorkflowError(Exception):
    """Base class for every engine failure a caller can act on."""

    code = "workflow_error"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail

    def extra(self) -> Dict[str, Any]:
        return {}

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "detail": self.detail}
        payload.update(self.extra())
        return payload


class NotFound(WorkflowError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, kind: str, identifier: Any) -> None:
        super().__init__(f"{kind} {identifier} does not exist.")
        self.kind = kind
        self.identifier = identifier


class DuplicateStatus(WorkflowError):
    code = "duplicate_status"
    status_code = status.HTTP_409_CONFLICT


class DuplicateTransition(WorkflowError):
    code = "duplicate_transition"
    status_code = status.HTTP_409_CONFLICT


class CrossWorkflowReference(WorkflowError):
    code = "cross_workflow_reference"


class PermissionDenied(WorkflowError):
    code = "permission_denied"
    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, condition: str, detail: Optional[str] = None) -> None:
        super().__init__(detail or f"Condition '{condition}' is not satisfied.")
        self.condition = condition

    def extra(self) -> Dict[str, Any]:
        return {"condition": self.condition}


class ValidationFailed(WorkflowError):
    code = "validation_failed"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, messages) -> None:
        self.messages = list(messages)
        super().__init__("; ".join(message.message for message in self.messages))

    def extra(self) -> Dict[str, Any]:
        return {
            "errors": [
                {"validatorType": message.validator_type, "message": message.message}
                for message in self.messages
            ]
        }


class TransitionNotAllowed(WorkflowError):
    code = "transition_not_allowed"
    status_code = status.HTTP_409_CONFLICT


class NoWorkflowConfigured(WorkflowError):
    code = "no_workflow_configured"
    status_code = status.HTTP_409_CONFLICT


class DraftAlreadyOpen(WorkflowError):
    code = "draft_already_open"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, workflow_id: int, draft_id: int) -> None:
        super().__init__(f"Workflow {workflow_id} already has an open draft ({draft_id}).")
        self.workflow_id = workflow_id
        self.draft_id = draft_id

    def extra(self) -> Dict[str, Any]:
        return {"draftId": self.draft_id}


class InvalidDraftState(WorkflowError):
    code = "invalid_draft_state"
    status_code = status.HTTP_409_CONFLICT


class ImportFormatError(WorkflowError):
    code = "import_format_error"


def api_exception_handler(exc: Exception, context: Dict[str, Any]) -> Optional[Response]:
    """Render engine errors as ``{"code", "detail", ...}`` payloads."""

    if isinstance(exc, WorkflowError):
        return Response(exc.as_dict(), status=exc.status_code)
    if isinstance(exc, ProtectedError):
        return Response(
            {
                "code": "in_use",
                "detail": "The object is still referenced and cannot be deleted.",
            },
            status=status.HTTP_409_CONFLICT,
        )
    return exception_handler(exc, context)
