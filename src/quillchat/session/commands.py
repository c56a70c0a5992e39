"""Builders and schema validation for outbound commands sent to the assistant host."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Dict, Literal

from jsonschema import Draft7Validator, ValidationError

from .errors import InvalidCommandError

PermissionDecision = Literal["allow", "allow_always", "allow_session", "deny"]
PERMISSION_DECISIONS: tuple[str, ...] = ("allow", "allow_always", "allow_session", "deny")

_STRING = {"type": "string"}
_NON_EMPTY_STRING = {"type": "string", "minLength": 1}

COMMAND_SCHEMAS: Dict[str, Dict[str, Any]] = {
    "sendMessage": {
        "type": "object",
        "properties": {
            "type": {"const": "sendMessage"},
            "text": _STRING,
            "model": _STRING,
            "planMode": {"type": "boolean"},
            "thinkingMode": {"type": "boolean"},
            "images": {"type": "array", "items": _STRING},
        },
        "required": ["type", "text"],
    },
    "clearConversation": {
        "type": "object",
        "properties": {"type": {"const": "clearConversation"}},
        "required": ["type"],
    },
    "stopRequest": {
        "type": "object",
        "properties": {"type": {"const": "stopRequest"}},
        "required": ["type"],
    },
    "permissionResponse": {
        "type": "object",
        "properties": {
            "type": {"const": "permissionResponse"},
            "requestId": _NON_EMPTY_STRING,
            "decision": {"enum": list(PERMISSION_DECISIONS)},
            "toolName": _NON_EMPTY_STRING,
            "input": {"type": "object"},
        },
        "required": ["type", "requestId", "decision", "toolName", "input"],
    },
    "deleteConversation": {
        "type": "object",
        "properties": {
            "type": {"const": "deleteConversation"},
            "filename": _NON_EMPTY_STRING,
        },
        "required": ["type", "filename"],
    },
}

_VALIDATORS = {name: Draft7Validator(schema) for name, schema in COMMAND_SCHEMAS.items()}


def validate_command(command: Mapping[str, Any]) -> Dict[str, Any]:
    """Validate ``command`` against the schema for its ``type`` and return a copy.

    Raises:
        InvalidCommandError: when the type is unknown or a required field is malformed.
    """

    if not isinstance(command, Mapping):
        raise InvalidCommandError("Command payload must be a mapping")
    candidate = dict(command)
    kind = candidate.get("type")
    validator = _VALIDATORS.get(kind) if isinstance(kind, str) else None
    if validator is None:
        raise InvalidCommandError(f"Unknown command type {kind!r}")
    try:
        validator.validate(candidate)
    except ValidationError as error:
        raise InvalidCommandError(f"{kind}: {_format_validation_error(error)}") from error
    return candidate


def send_message(
    text: str,
    *,
    model: str | None = None,
    plan_mode: bool | None = None,
    thinking_mode: bool | None = None,
    images: Sequence[str] | None = None,
) -> Dict[str, Any]:
    command: Dict[str, Any] = {"type": "sendMessage", "text": text}
    if model is not None:
        command["model"] = model
    if plan_mode is not None:
        command["planMode"] = plan_mode
    if thinking_mode is not None:
        command["thinkingMode"] = thinking_mode
    if images:
        command["images"] = list(images)
    return validate_command(command)


def clear_conversation() -> Dict[str, Any]:
    return validate_command({"type": "clearConversation"})


def stop_request() -> Dict[str, Any]:
    return validate_command({"type": "stopRequest"})


def permission_response(
    request_id: str,
    decision: str,
    tool_name: str,
    tool_input: Mapping[str, Any] | None,
) -> Dict[str, Any]:
    """Build the decision command the assistant process waits on for a permission request."""

    return validate_command(
        {
            "type": "permissionResponse",
            "requestId": request_id,
            "decision": decision,
            "toolName": tool_name,
            "input": dict(tool_input or {}),
        }
    )


def delete_conversation(filename: str) -> Dict[str, Any]:
    return validate_command({"type": "deleteConversation", "filename": filename})


def _format_validation_error(error: ValidationError) -> str:
    path = ".".join(str(part) for part in error.path)
    if path:
        return f"{path}: {error.message}"
    return error.message


__all__ = [
    "COMMAND_SCHEMAS",
    "PERMISSION_DECISIONS",
    "PermissionDecision",
    "clear_conversation",
    "delete_conversation",
    "permission_response",
    "send_message",
    "stop_request",
    "validate_command",
]
