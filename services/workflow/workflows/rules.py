"""Tagged rule types attached to transitions.

Conditions, validators and post-functions are stored on a transition as JSON
lists of objects carrying a ``type`` discriminator plus type-specific fields.
Each variant is a frozen dataclass registered under its discriminator and
paired with a DRF serializer for its arguments, so that payloads are validated
into a closed set of types before the engine acts on them and dumped back into
a canonical JSON shape.
"""
from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, ClassVar, Dict, Iterable, List, Mapping, Tuple, Type, TypeVar

from rest_framework import serializers

from .exceptions import WorkflowError


class RuleFormatError(WorkflowError, ValueError):
    """Raised when a rule payload does not describe a known variant."""

    code = "invalid_rule"


# Payload serializers ---------------------------------------------------------


class RulePayloadSerializer(serializers.Serializer):
    """Arguments of a rule variant; the base class takes none."""


class MessagePayloadSerializer(RulePayloadSerializer):
    message = serializers.CharField(required=False, allow_blank=True, allow_null=True)


class FieldMessagePayloadSerializer(MessagePayloadSerializer):
    field = serializers.CharField(max_length=128)


class CustomFieldValuePayloadSerializer(FieldMessagePayloadSerializer):
    value = serializers.JSONField(allow_null=True)


class GroupPayloadSerializer(RulePayloadSerializer):
    group = serializers.CharField(max_length=255)


class RolePayloadSerializer(RulePayloadSerializer):
    role = serializers.CharField(max_length=255)


class PermissionPayloadSerializer(RulePayloadSerializer):
    permission = serializers.CharField(max_length=255)


class FieldPayloadSerializer(RulePayloadSerializer):
    field = serializers.CharField(max_length=128)


class SetFieldPayloadSerializer(FieldPayloadSerializer):
    value = serializers.JSONField(allow_null=True)


class CommentPayloadSerializer(RulePayloadSerializer):
    text = serializers.CharField()


class NotificationPayloadSerializer(RulePayloadSerializer):
    event = serializers.CharField(required=False, allow_null=True, max_length=128)


@dataclass(frozen=True)
class Rule:
    type: ClassVar[str] = ""
    payload_serializer: ClassVar[Type[RulePayloadSerializer]] = RulePayloadSerializer

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type}
        for field in fields(self):
            payload[field.name] = getattr(self, field.name)
        return payload

    def describe(self) -> str:
        """Human readable name, e.g. ``user_in_group(developers)``."""

        arguments = [
            str(getattr(self, field.name))
            for field in fields(self)
            if field.name != "message" and getattr(self, field.name) not in (None, "")
        ]
        if not arguments:
            return self.type
        return f"{self.type}({', '.join(arguments)})"


# Conditions -----------------------------------------------------------------


@dataclass(frozen=True)
class Condition(Rule):
    pass


@dataclass(frozen=True)
class OnlyAssignee(Condition):
    type: ClassVar[str] = "only_assignee"


@dataclass(frozen=True)
class OnlyReporter(Condition):
    type: ClassVar[str] = "only_reporter"


@dataclass(frozen=True)
class UserInGroup(Condition):
    type: ClassVar[str] = "user_in_group"
    payload_serializer: ClassVar[Type[RulePayloadSerializer]] = GroupPayloadSerializer
    group: str


@dataclass(frozen=True)
class UserInRole(Condition):
    type: ClassVar[str] = "user_in_role"
    payload_serializer: ClassVar[Type[RulePayloadSerializer]] = RolePayloadSerializer
    role: str


@dataclass(frozen=True)
class PermissionCheck(Condition):
    type: ClassVar[str] = "permission_check"
    payload_serializer: ClassVar[Type[RulePayloadSerializer]] = PermissionPayloadSerializer
    permission: str


# Validators -----------------------------------------------------------------


@dataclass(frozen=True)
class Validator(Rule):
    pass


@dataclass(frozen=True)
class FieldRequired(Validator):
    type: ClassVar[str] = "field_required"
    payload_serializer: ClassVar[Type[RulePayloadSerializer]] = FieldMessagePayloadSerializer
    field: str
    message: str = ""


@dataclass(frozen=True)
class FieldNotEmpty(Validator):
    type: ClassVar[str] = "field_not_empty"
    payload_serializer: ClassVar[Type[RulePayloadSerializer]] = FieldMessagePayloadSerializer
    field: str
    message: str = ""


@dataclass(frozen=True)
class SubtasksClosed(Validator):
    type: ClassVar[str] = "subtasks_closed"
    payload_serializer: ClassVar[Type[RulePayloadSerializer]] = MessagePayloadSerializer
    message: str = ""


@dataclass(frozen=True)
class ResolutionSet(Validator):
    type: ClassVar[str] = "resolution_set"
    payload_serializer: ClassVar[Type[RulePayloadSerializer]] = MessagePayloadSerializer
    message: str = ""


@dataclass(frozen=True)
class CustomFieldValue(Validator):
    type: ClassVar[str] = "custom_field_value"
    payload_serializer: ClassVar[Type[RulePayloadSerializer]] = CustomFieldValuePayloadSerializer
    field: str
    value: Any
    message: str = ""


# Post-functions -------------------------------------------------------------


@dataclass(frozen=True)
class PostFunction(Rule):
    pass


@dataclass(frozen=True)
class SetField(PostFunction):
    type: ClassVar[str] = "set_field"
    payload_serializer: ClassVar[Type[RulePayloadSerializer]] = SetFieldPayloadSerializer
    field: str
    value: Any


@dataclass(frozen=True)
class ClearField(PostFunction):
    type: ClassVar[str] = "clear_field"
    payload_serializer: ClassVar[Type[RulePayloadSerializer]] = FieldPayloadSerializer
    field: str


@dataclass(frozen=True)
class AssignToLead(PostFunction):
    type: ClassVar[str] = "assign_to_lead"


@dataclass(frozen=True)
class AssignToReporter(PostFunction):
    type: ClassVar[str] = "assign_to_reporter"


@dataclass(frozen=True)
class AddComment(PostFunction):
    type: ClassVar[str] = "add_comment"
    payload_serializer: ClassVar[Type[RulePayloadSerializer]] = CommentPayloadSerializer
    text: str


@dataclass(frozen=True)
class SendNotification(PostFunction):
    type: ClassVar[str] = "send_notification"
    payload_serializer: ClassVar[Type[RulePayloadSerializer]] = NotificationPayloadSerializer
    event: str = "issue_transitioned"


RuleT = TypeVar("RuleT", bound=Rule)


def _registry(*variants: Type[RuleT]) -> Dict[str, Type[RuleT]]:
    return {variant.type: variant for variant in variants}


CONDITION_TYPES = _registry(OnlyAssignee, OnlyReporter, UserInGroup, UserInRole, PermissionCheck)
VALIDATOR_TYPES = _registry(FieldRequired, FieldNotEmpty, SubtasksClosed, ResolutionSet, CustomFieldValue)
POST_FUNCTION_TYPES = _registry(
    SetField,
    ClearField,
    AssignToLead,
    AssignToReporter,
    AddComment,
    SendNotification,
)


def _describe_errors(errors: Mapping[str, Any]) -> str:
    return "; ".join(
        f"'{name}': {' '.join(str(message) for message in messages)}" for name, messages in errors.items()
    )


def _parse_one(payload: Any, registry: Mapping[str, Type[RuleT]], kind: str) -> RuleT:
    if not isinstance(payload, Mapping):
        raise RuleFormatError(f"Each {kind} must be an object with a 'type'.")
    rule_type = payload.get("type")
    variant = registry.get(rule_type)  # type: ignore[arg-type]
    if variant is None:
        raise RuleFormatError(f"Unknown {kind} type: {rule_type!r}.")

    serializer = variant.payload_serializer(data=payload)
    if not serializer.is_valid():
        raise RuleFormatError(f"Invalid {kind} '{rule_type}': {_describe_errors(serializer.errors)}")
    # An explicit null on an optional argument falls back to the variant default.
    kwargs = {
        name: value
        for name, value in serializer.validated_data.items()
        if value is not None or serializer.fields[name].required
    }
    return variant(**kwargs)


def _parse_many(payloads: Any, registry: Mapping[str, Type[RuleT]], kind: str) -> Tuple[RuleT, ...]:
    if payloads is None:
        return ()
    if not isinstance(payloads, (list, tuple)):
        raise RuleFormatError(f"{kind}s must be a list.")
    return tuple(_parse_one(payload, registry, kind) for payload in payloads)


def parse_conditions(payloads: Any) -> Tuple[Condition, ...]:
    return _parse_many(payloads, CONDITION_TYPES, "condition")


def parse_validators(payloads: Any) -> Tuple[Validator, ...]:
    return _parse_many(payloads, VALIDATOR_TYPES, "validator")


def parse_post_functions(payloads: Any) -> Tuple[PostFunction, ...]:
    return _parse_many(payloads, POST_FUNCTION_TYPES, "post-function")


def dump_rules(rules: Iterable[Rule]) -> List[Dict[str, Any]]:
    return [rule.to_dict() for rule in rules]
