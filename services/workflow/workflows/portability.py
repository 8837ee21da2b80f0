"""Versioned JSON export and import of workflows.

Exported documents reference statuses by id and by name. An import accepts an
id match only when the exported name is absent or agrees with it and otherwise
resolves by name, so a workflow can move between environments whose status
ids differ or collide.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from django.db import transaction
from django.utils import timezone

from .exceptions import ImportFormatError
from .graph import WorkflowGraph, normalize_rules
from .models import Status, Workflow
from .rules import RuleFormatError

logger = logging.getLogger(__name__)

EXPORT_VERSION = "1.0"
SUPPORTED_MAJOR_VERSIONS = {"1"}


@dataclass
class ImportResult:
    workflow: Workflow
    warnings: List[str] = field(default_factory=list)
    steps_created: int = 0
    transitions_created: int = 0


def export_workflow(workflow_id: int) -> Dict[str, Any]:
    graph = WorkflowGraph.load(workflow_id).snapshot()
    steps = [
        {
            "statusId": step.status_id,
            "statusName": step.status_name,
            "positionX": step.position_x,
            "positionY": step.position_y,
            "isInitial": step.is_initial,
        }
        for step in graph.steps
    ]
    transitions = [
        {
            "fromStatusId": graph.status_of(transition.from_step_id),
            "toStatusId": graph.status_of(transition.to_step_id),
            "name": transition.name,
            "description": transition.description,
            "conditions": list(transition.conditions),
            "validators": list(transition.validators),
            "postFunctions": list(transition.post_functions),
        }
        for transition in graph.transitions
    ]
    return {
        "version": EXPORT_VERSION,
        "exportedAt": timezone.now().isoformat(),
        "workflow": {
            "name": graph.name,
            "description": graph.description,
            "steps": steps,
            "transitions": transitions,
        },
    }


def _pick(entry: Mapping[str, Any], key: str, legacy_key: str, default: Any = None) -> Any:
    """Read ``key``, accepting the snake_case spelling of older exports."""

    if key in entry:
        return entry[key]
    return entry.get(legacy_key, default)


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _parse_document(document: Any) -> Mapping[str, Any]:
    if not isinstance(document, Mapping):
        raise ImportFormatError("Export document must be a JSON object.")
    version = str(document.get("version", ""))
    if version.split(".")[0] not in SUPPORTED_MAJOR_VERSIONS:
        raise ImportFormatError(f"Unsupported export version {version!r}.")
    body = document.get("workflow")
    if not isinstance(body, Mapping):
        raise ImportFormatError("Export document has no 'workflow' object.")
    if not isinstance(body.get("name"), str) or not body["name"].strip():
        raise ImportFormatError("Exported workflow has no name.")
    if not isinstance(body.get("steps"), list):
        raise ImportFormatError("Exported workflow has no 'steps' list.")
    transitions = body.get("transitions", [])
    if not isinstance(transitions, list):
        raise ImportFormatError("Exported workflow 'transitions' must be a list.")
    for entry in body["steps"] + transitions:
        if not isinstance(entry, Mapping):
            raise ImportFormatError("Every step and transition must be a JSON object.")
    return body


class _StatusLookup:
    def __init__(self) -> None:
        self.by_id = {status.pk: status for status in Status.objects.all()}
        self.by_name: Dict[str, Status] = {}
        for status in self.by_id.values():
            self.by_name.setdefault(status.name, status)

    def resolve(self, status_id: Any, status_name: Any) -> Optional[Status]:
        name = status_name if isinstance(status_name, str) and status_name else None
        found = self.by_id.get(_as_int(status_id, default=-1))
        if found is not None and (name is None or found.name == name):
            return found
        if name is not None:
            return self.by_name.get(name)
        return None


def import_workflow(document: Any, name: Optional[str] = None) -> ImportResult:
    """Create a new workflow from an export document.

    Steps whose status cannot be resolved, and transitions whose endpoints
    then fail to resolve, are skipped and reported as warnings. A malformed
    document raises ``ImportFormatError`` and creates nothing.
    """

    body = _parse_document(document)
    lookup = _StatusLookup()

    with transaction.atomic():
        workflow = Workflow.objects.create(
            name=(name or f"{body['name']} (Imported)").strip(),
            description=body.get("description") or "",
            is_active=True,
        )
        result = ImportResult(workflow=workflow)
        graph = WorkflowGraph(workflow)

        # exported status id -> new step id
        step_ids: Dict[Any, int] = {}
        for entry in body["steps"]:
            exported_id = _pick(entry, "statusId", "status_id")
            status_name = _pick(entry, "statusName", "status_name")
            status = lookup.resolve(exported_id, status_name)
            if status is None:
                result.warnings.append(f"Status not found: {status_name or exported_id}; step skipped.")
                continue
            if workflow.steps.filter(status=status).exists():
                result.warnings.append(f"Status '{status.name}' appears twice; duplicate step skipped.")
                continue
            step = graph.add_step(
                status.pk,
                initial=bool(_pick(entry, "isInitial", "is_initial", False)),
                position_x=_as_int(_pick(entry, "positionX", "position_x", 0)),
                position_y=_as_int(_pick(entry, "positionY", "position_y", 0)),
            )
            if exported_id is not None:
                step_ids[exported_id] = step.pk
            result.steps_created += 1

        for entry in body.get("transitions", []):
            transition_name = entry.get("name") or "Transition"
            from_status = _pick(entry, "fromStatusId", "from_status_id")
            to_status = _pick(entry, "toStatusId", "to_status_id")
            from_step_id = step_ids.get(from_status) if from_status not in (None, "") else None
            to_step_id = step_ids.get(to_status)
            if to_step_id is None or (from_status not in (None, "") and from_step_id is None):
                result.warnings.append(f"Could not create transition '{transition_name}'; endpoint skipped.")
                continue
            if workflow.transitions.filter(from_step_id=from_step_id, to_step_id=to_step_id).exists():
                result.warnings.append(f"Transition '{transition_name}' duplicates an earlier edge; skipped.")
                continue
            try:
                graph.add_transition(
                    from_step_id,
                    to_step_id,
                    name=transition_name,
                    description=entry.get("description") or "",
                    conditions=normalize_rules("conditions", entry.get("conditions") or []),
                    validators=normalize_rules("validators", entry.get("validators") or []),
                    post_functions=normalize_rules(
                        "post_functions", _pick(entry, "postFunctions", "post_functions") or []
                    ),
                )
            except RuleFormatError as exc:
                raise ImportFormatError(f"Transition '{transition_name}': {exc.detail}") from exc
            result.transitions_created += 1

    for warning in result.warnings:
        logger.warning("Import of '%s': %s", body["name"], warning)
    logger.info(
        "Imported workflow %s with %s step(s) and %s transition(s)",
        workflow.pk,
        result.steps_created,
        result.transitions_created,
    )
    return result
