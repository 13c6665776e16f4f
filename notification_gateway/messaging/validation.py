"""
Schema validation for inbound event envelopes.

The envelope schema is a JSON Schema (draft 2020-12) document; errors are
collected rather than raised so the consumer can dead-letter the message
with the complete list.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from jsonschema import Draft202012Validator
from pydantic import ValidationError as PydanticValidationError

from ..dispatch.models import NotificationChannel, NotificationPriority, NotificationType
from .models import EventEnvelope

EVENT_TYPE_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_-]*\.[A-Za-z][A-Za-z0-9_]*$"

CHANNEL_ALIASES = {
    "push": NotificationChannel.PUSH.value,
    "in-app": NotificationChannel.IN_APP.value,
    "inapp": NotificationChannel.IN_APP.value,
    "in_app": NotificationChannel.IN_APP.value,
}

# (location, deprecated field, replacement)
DEPRECATED_FIELDS = (
    ("notification", "targetUsers", "notification.target.users"),
    ("notification", "targetRoles", "notification.target.roles"),
    ("payload", "data", "notification.data"),
)

_string_list = {"type": "array", "items": {"type": "string"}}

EVENT_ENVELOPE_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["eventType", "payload"],
    "properties": {
        "eventId": {"type": "string"},
        "eventType": {"type": "string", "pattern": EVENT_TYPE_PATTERN},
        "aggregateId": {"type": "string"},
        "aggregateType": {"type": "string"},
        "timestamp": {"type": "string"},
        "correlationId": {"type": "string"},
        "metadata": {"type": "object"},
        "payload": {
            "type": "object",
            "required": ["notification", "sourceService", "contentId"],
            "properties": {
                "sourceService": {"type": "string", "minLength": 1},
                "contentId": {"type": "string", "minLength": 1},
                "redirectUrl": {"type": "string", "minLength": 1},
                "contentType": {"type": "string", "minLength": 1},
                "sentBy": {"type": "string", "minLength": 1},
                "notification": {
                    "type": "object",
                    "required": ["title", "body", "type", "priority", "channels"],
                    "properties": {
                        "title": {"type": "string", "minLength": 1, "maxLength": 200},
                        "body": {"type": "string", "minLength": 1, "maxLength": 1000},
                        "type": {"enum": [t.value for t in NotificationType]},
                        "priority": {"enum": [p.value for p in NotificationPriority]},
                        "channels": {
                            "type": "array",
                            "minItems": 1,
                            "uniqueItems": True,
                            "items": {"enum": [c.value for c in NotificationChannel]},
                        },
                        "target": {
                            "type": "object",
                            "properties": {
                                "users": _string_list,
                                "roles": _string_list,
                                "segments": _string_list,
                            },
                            "additionalProperties": False,
                        },
                        "scheduledAt": {"type": "string"},
                        "expiresAt": {"type": "string"},
                        "actionButtons": {
                            "type": "array",
                            "items": {
                                "type": "object",
                                "required": ["label", "action"],
                                "properties": {
                                    "label": {"type": "string"},
                                    "action": {"type": "string"},
                                    "style": {"enum": ["primary", "secondary"]},
                                },
                            },
                        },
                        "data": {"type": "object"},
                    },
                },
            },
        },
    },
}


@dataclass
class ValidationResult:
    valid: bool
    event: Optional[EventEnvelope] = None
    errors: List[str] = field(default_factory=list)


def _dotted(path) -> str:
    return ".".join(str(p) for p in path)


def _canonical_channels(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of raw with channel aliases (inapp, in_app) mapped to canonical names."""
    payload = raw.get("payload")
    notification = payload.get("notification") if isinstance(payload, dict) else None
    if not isinstance(notification, dict) or not isinstance(notification.get("channels"), list):
        return raw
    out = copy.deepcopy(raw)
    channels = out["payload"]["notification"]["channels"]
    out["payload"]["notification"]["channels"] = [
        CHANNEL_ALIASES.get(c.strip().lower(), c) if isinstance(c, str) else c
        for c in channels
    ]
    return out


class EventValidator:
    """Pure validator over raw (decoded JSON) events."""

    def __init__(self, schema: Optional[Dict[str, Any]] = None):
        self._validator = Draft202012Validator(schema or EVENT_ENVELOPE_SCHEMA)

    def validate(self, raw: Any) -> ValidationResult:
        if not isinstance(raw, dict):
            return ValidationResult(valid=False, errors=["event must be a JSON object"])

        candidate = _canonical_channels(raw)
        errors: Dict[str, None] = {}
        for message in self._deprecation_errors(candidate):
            errors[message] = None
        for message in self._schema_errors(candidate):
            errors[message] = None
        if errors:
            return ValidationResult(valid=False, errors=list(errors))

        try:
            event = EventEnvelope.model_validate(candidate)
        except PydanticValidationError as e:
            return ValidationResult(
                valid=False,
                errors=[f"{_dotted(err['loc'])}: {err['msg']}" for err in e.errors()],
            )
        return ValidationResult(valid=True, event=event)

    def _schema_errors(self, raw: Dict[str, Any]) -> List[str]:
        out: List[str] = []
        for err in sorted(self._validator.iter_errors(raw), key=lambda e: [str(p) for p in e.path]):
            prefix = _dotted(err.path)
            if err.validator == "required" and isinstance(err.instance, dict):
                for name in err.validator_value:
                    if name not in err.instance:
                        full = f"{prefix}.{name}" if prefix else name
                        out.append(f"{full} is required")
                continue
            if prefix == "eventType" and err.validator == "pattern":
                out.append("eventType must match '{service}.{Name}'")
                continue
            out.append(f"{prefix or '<root>'}: {err.message}")
        return out

    def _deprecation_errors(self, raw: Dict[str, Any]) -> List[str]:
        payload = raw.get("payload")
        if not isinstance(payload, dict):
            return []
        scopes = {"payload": payload, "notification": payload.get("notification")}
        out: List[str] = []
        for scope, name, replacement in DEPRECATED_FIELDS:
            container = scopes.get(scope)
            if isinstance(container, dict) and name in container:
                location = "payload.notification" if scope == "notification" else "payload"
                out.append(
                    f"{location}.{name} is deprecated and no longer accepted; "
                    f"use {replacement} instead"
                )
        return out
