"""Business-rule gate evaluated before a transition commits."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Sequence

from .exceptions import ValidationFailed
from .rules import (
    CustomFieldValue,
    FieldNotEmpty,
    FieldRequired,
    ResolutionSet,
    SubtasksClosed,
    Validator,
    parse_validators,
)


@dataclass(frozen=True)
class ValidationMessage:
    validator_type: str
    message: str


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict, set)):
        return not value
    return False


class ValidatorChain:
    """Run every validator and aggregate the failures instead of stopping early.

    ``fields`` is the proposed field set of the issue once the transition is
    applied (current values overlaid with any values submitted alongside the
    transition). ``open_subtasks`` counts subtasks not yet in a done status.
    """

    def __init__(self, validators: Iterable[Any]) -> None:
        self.validators: Sequence[Validator] = tuple(
            item if isinstance(item, Validator) else parse_validators([item])[0]
            for item in validators
        )

    def _check(self, validator: Validator, fields: Mapping[str, Any], open_subtasks: int) -> str:
        """Return an error message, or an empty string when the validator passes."""

        if isinstance(validator, FieldRequired):
            if fields.get(validator.field) in (None, ""):
                return f"Field '{validator.field}' is required."
        elif isinstance(validator, FieldNotEmpty):
            if _is_empty(fields.get(validator.field)):
                return f"Field '{validator.field}' must not be empty."
        elif isinstance(validator, SubtasksClosed):
            if open_subtasks:
                return f"{open_subtasks} subtask(s) are not closed."
        elif isinstance(validator, ResolutionSet):
            if _is_empty(fields.get("resolution")):
                return "A resolution must be set."
        elif isinstance(validator, CustomFieldValue):
            if fields.get(validator.field) != validator.value:
                return f"Field '{validator.field}' must equal {validator.value!r}."
        else:
            raise TypeError(f"Unsupported validator {validator!r}")
        return ""

    def run(self, fields: Mapping[str, Any], open_subtasks: int = 0) -> List[ValidationMessage]:
        failures: List[ValidationMessage] = []
        for validator in self.validators:
            problem = self._check(validator, fields, open_subtasks)
            if problem:
                failures.append(ValidationMessage(validator.type, validator.message or problem))
        return failures

    def validate(self, fields: Mapping[str, Any], open_subtasks: int = 0) -> None:
        failures = self.run(fields, open_subtasks)
        if failures:
            raise ValidationFailed(failures)
