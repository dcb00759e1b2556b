"""Event body parsing."""

from __future__ import annotations

import base64
import json
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from dnarouter.core.exceptions import InvalidInput
from dnarouter.service.payloads import InvokeRequest, event_from_body


def _envelope(data: bytes | str, **attributes) -> dict:
    raw = data if isinstance(data, str) else base64.b64encode(data).decode()
    return {"message": {"data": raw, "attributes": attributes}}


def test_plain_event():
    event = event_from_body({"key": "alice/raw/a.csv", "size": 12, "eventTime": "2024-01-02T03:04:05Z"})

    assert event.object_key == "alice/raw/a.csv"
    assert event.size == 12
    assert event.created_at == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


def test_gcs_resource():
    event = event_from_body({"name": "alice/raw/a.csv", "size": "7", "timeCreated": "2024-01-02T03:04:05.123Z"})

    assert (event.object_key, event.size) == ("alice/raw/a.csv", 7)
    assert event.created_at.tzinfo is not None


def test_pubsub_with_object_id_only():
    event = event_from_body(_envelope(b"", eventType="OBJECT_FINALIZE", objectId="alice/raw/a.csv"))

    assert event.object_key == "alice/raw/a.csv"
    assert event.size == 0


def test_pubsub_data_wins_over_attributes():
    body = json.dumps({"name": "alice/raw/b.csv", "size": "3"}).encode()

    event = event_from_body(_envelope(body, eventType="OBJECT_FINALIZE", objectId="alice/raw/a.csv"))

    assert event.object_key == "alice/raw/b.csv"


@pytest.mark.parametrize("event_type", ["OBJECT_DELETE", "OBJECT_ARCHIVE", "OBJECT_METADATA_UPDATE"])
def test_non_creation_notifications(event_type):
    assert event_from_body(_envelope(b"{}", eventType=event_type, objectId="alice/raw/a.csv")) is None


@pytest.mark.parametrize(
    "body",
    [
        "alice/raw/a.csv",
        {},
        _envelope("***not base64***"),
        _envelope(b"[1, 2]"),
    ],
)
def test_unrecognizable_bodies(body):
    with pytest.raises(InvalidInput):
        event_from_body(body)


def test_invoke_request_aliases():
    req = InvokeRequest.model_validate({"sourceKey": "alice/raw/a.csv", "userId": "alice"})
    assert (req.source_key, req.user_id) == ("alice/raw/a.csv", "alice")
    assert InvokeRequest(source_key="k", user_id="u").source_key == "k"

    with pytest.raises(ValidationError):
        InvokeRequest.model_validate({"sourceKey": "", "userId": "alice"})
