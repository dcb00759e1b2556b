"""Core pipeline types: stages, object keys, events, tickets."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class Stage(str, Enum):
    """Second path segment of every pipeline object key."""

    RAW = "raw"
    PREPROCESSED = "preprocessed"
    CATEGORIZED = "categorized"
    PROFILE = "profile"
    INSIGHTS = "insights"

    @classmethod
    def parse(cls, value: str) -> Stage | None:
        try:
            return cls(value)
        except ValueError:
            return None


class TransformName(str, Enum):
    PREPROCESSOR = "preprocessor"
    CATEGORIZER = "categorizer"
    PROFILE_BUILDER = "profile_builder"
    PERSONA_BUILDER = "persona_builder"


@dataclass(frozen=True)
class ObjectKey:
    """`{user_id}/{stage}/{relative_path}`."""

    user_id: str
    stage: Stage
    relative_path: str

    def __str__(self) -> str:
        return f"{self.user_id}/{self.stage.value}/{self.relative_path}"

    @property
    def name(self) -> str:
        """Last path segment."""
        return self.relative_path.rsplit("/", 1)[-1]

    @property
    def stem(self) -> str:
        """Name without its final extension."""
        name = self.name
        return name.rsplit(".", 1)[0] if "." in name[1:] else name

    @classmethod
    def build(cls, user_id: str, stage: Stage, relative_path: str) -> ObjectKey:
        return cls(user_id=user_id, stage=stage, relative_path=relative_path.lstrip("/"))

    @classmethod
    def parse(cls, key: str) -> ObjectKey | None:
        """Parse a raw key; returns None when it is outside the stage namespace."""
        parts = key.split("/", 2)
        if len(parts) < 3:
            return None
        user_id, stage_raw, rel = parts
        stage = Stage.parse(stage_raw)
        if not user_id or stage is None or not rel or rel.endswith("/"):
            return None
        return cls(user_id=user_id, stage=stage, relative_path=rel)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class StageEvent:
    """A creation notification for one object."""

    object_key: str
    size: int = 0
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> StageEvent:
        """Accept `{key, size, eventTime}` and GCS notification bodies (`name`, `timeCreated`)."""
        key = payload.get("key") or payload.get("name") or payload.get("objectKey") or ""
        if not key:
            raise ValueError("event payload has no object key")
        size = int(payload.get("size") or 0)
        raw_time = payload.get("eventTime") or payload.get("timeCreated") or payload.get("createdAt")
        created_at = _parse_time(raw_time) if raw_time else utcnow()
        return cls(object_key=str(key), size=size, created_at=created_at)


def _parse_time(value: str | datetime) -> datetime:
    if isinstance(value, datetime):
        return value
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class Invocation:
    """One compute invocation of a stage transform."""

    transform: TransformName
    source_key: str
    user_id: str

    def to_payload(self) -> dict[str, str]:
        return {"sourceKey": self.source_key, "userId": self.user_id}


@dataclass
class AdmissionTicket:
    """Permission to make one call to the rate-limited inference API."""

    ticket_id: str
    user_id: str
    requested_at: float
    granted_at: float | None = None
    released: bool = False
    # Global in-flight count right after this grant.
    active_global: int = 0
    active_user: int = 0


@dataclass(frozen=True)
class Blocked:
    """Admission refused; retry after a backoff."""

    user_id: str
    active_global: int
    active_user: int


@dataclass(frozen=True)
class LoadSample:
    active_global: int
    active_user: int
    timestamp: float


@dataclass(frozen=True)
class Ready(Generic[T]):
    value: T


@dataclass(frozen=True)
class NotYetAvailable:
    reason: str = ""


@dataclass
class ItemFailure:
    source_key: str
    code: str
    message: str
    retryable: bool
    attempts: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "sourceKey": self.source_key,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "attempts": self.attempts,
        }


@dataclass
class StageResult:
    """Outcome of one transform invocation."""

    transform: TransformName
    outputs: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failures: list[ItemFailure] = field(default_factory=list)

    @property
    def has_retryable_failures(self) -> bool:
        return any(f.retryable for f in self.failures)

    def to_dict(self) -> dict[str, Any]:
        return {
            "transform": self.transform.value,
            "outputs": list(self.outputs),
            "skipped": list(self.skipped),
            "failures": [f.to_dict() for f in self.failures],
        }


__all__ = [
    "AdmissionTicket",
    "Blocked",
    "Invocation",
    "ItemFailure",
    "LoadSample",
    "NotYetAvailable",
    "ObjectKey",
    "Ready",
    "Stage",
    "StageEvent",
    "StageResult",
    "TransformName",
    "utcnow",
]
