"""Request payloads for the HTTP service."""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from dnarouter.core.exceptions import InvalidInput
from dnarouter.core.types import StageEvent

# Pub/Sub notification event types that mean "object created".
CREATION_EVENT_TYPES = {"OBJECT_FINALIZE"}


class InvokeRequest(BaseModel):
    """Worker invocation: ``{"sourceKey": ..., "userId": ...}``."""

    model_config = ConfigDict(populate_by_name=True)

    source_key: str = Field(..., alias="sourceKey", min_length=1)
    user_id: str = Field(..., alias="userId", min_length=1)


class TriggerRequest(BaseModel):
    """Manual trigger for an existing object."""

    key: str = Field(..., min_length=1)
    force: bool = Field(default=False, description="Bypass the auto-processing size cap")


def event_from_body(body: Any) -> StageEvent | None:
    """Parse an event body.

    Accepts a plain ``{key, size, eventTime}`` event, a GCS notification
    resource (``name``, ``size``, ``timeCreated``) or a Pub/Sub push envelope
    wrapping one. Returns None for notifications that are not creations.

    Raises:
        InvalidInput: the body is not a recognizable event.
    """
    if not isinstance(body, dict):
        raise InvalidInput("event body must be a JSON object")

    message = body.get("message")
    if isinstance(message, dict):
        attributes = message.get("attributes") or {}
        event_type = attributes.get("eventType")
        if event_type and event_type not in CREATION_EVENT_TYPES:
            return None
        try:
            decoded = base64.b64decode(message.get("data") or "", validate=True)
            body = json.loads(decoded) if decoded else {}
        except (binascii.Error, ValueError) as e:
            raise InvalidInput(f"undecodable Pub/Sub message: {e}") from e
        if not isinstance(body, dict):
            raise InvalidInput("Pub/Sub message data must be a JSON object")
        if not (body.get("name") or body.get("key")) and attributes.get("objectId"):
            body = {**body, "name": attributes["objectId"]}

    try:
        return StageEvent.from_payload(body)
    except ValueError as e:
        raise InvalidInput(str(e)) from e


__all__ = ["InvokeRequest", "TriggerRequest", "event_from_body"]
