"""Exception hierarchy for dnarouter.

Every error carries a stable ``code`` so workers, the HTTP service and the
failure records written to the object store agree on what happened.

Errors fall into two families:

- transient (``TransientError``): retried locally with backoff up to a ceiling,
  then surfaced to the platform's own redelivery mechanism;
- permanent (``UpstreamRejected`` and friends): recorded against the input
  object, never retried.

Usage:
    from dnarouter.core.exceptions import UpstreamThrottled, error_registry
"""

from __future__ import annotations

from typing import Any


class ErrorRegistry:
    """Registry of error codes to exception classes."""

    def __init__(self) -> None:
        self._codes: dict[str, type[DnaRouterError]] = {}

    def register(self, cls: type[DnaRouterError]) -> type[DnaRouterError]:
        code = getattr(cls, "code", "")
        if code:
            self._codes.setdefault(code, cls)
        return cls

    def get(self, code: str) -> type[DnaRouterError] | None:
        return self._codes.get(code)

    def all(self) -> dict[str, type[DnaRouterError]]:
        return dict(self._codes)


error_registry = ErrorRegistry()


class DnaRouterError(Exception):
    """Base exception for dnarouter."""

    code: str = "INTERNAL_ERROR"
    retryable: bool = False

    def __init__(self, message: str = "", *, code: str | None = None, **details: Any) -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code:
            self.code = code
        self.details = details

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        error_registry.register(cls)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "retryable": self.retryable}


error_registry.register(DnaRouterError)


class ConfigurationError(DnaRouterError):
    code = "CONFIGURATION_ERROR"


# ---- Storage ----------------------------------------------------------------


class StorageError(DnaRouterError):
    code = "STORAGE_ERROR"


class ObjectNotFound(StorageError):
    code = "OBJECT_NOT_FOUND"

    def __init__(self, key: str) -> None:
        super().__init__(f"Object not found: {key}")
        self.key = key


class PreconditionFailed(StorageError):
    """A generation-conditioned write lost a race with another writer."""

    code = "PRECONDITION_FAILED"

    def __init__(self, key: str, expected_generation: int | None) -> None:
        super().__init__(f"Generation mismatch for {key} (expected {expected_generation})")
        self.key = key
        self.expected_generation = expected_generation


# ---- Routing ----------------------------------------------------------------


class ClassificationMiss(DnaRouterError):
    """Key outside the pipeline namespace. Logged and ignored, never fatal."""

    code = "CLASSIFICATION_MISS"

    def __init__(self, key: str, reason: str = "") -> None:
        super().__init__(f"Key {key!r} matches no pipeline stage" + (f": {reason}" if reason else ""))
        self.key = key
        self.reason = reason


class InvocationError(DnaRouterError):
    """A stage transform could not be reached or refused the invocation."""

    code = "INVOCATION_ERROR"


class PartialFanoutFailure(InvocationError):
    """Some branches of a fan-out failed. Succeeded branches are not rolled back."""

    code = "PARTIAL_FANOUT_FAILURE"

    def __init__(self, key: str, *, succeeded: list[str], failed: dict[str, str]) -> None:
        super().__init__(
            f"Fan-out for {key} failed on {sorted(failed)} (succeeded: {sorted(succeeded)})"
        )
        self.key = key
        self.succeeded = succeeded
        self.failed = failed


# ---- Transient --------------------------------------------------------------


class TransientError(DnaRouterError):
    """Retryable with backoff."""

    code = "TRANSIENT_ERROR"
    retryable = True


class AdmissionBlocked(TransientError):
    code = "ADMISSION_BLOCKED"

    def __init__(
        self, user_id: str, *, active_global: int = 0, active_user: int = 0, waited: float = 0.0
    ) -> None:
        super().__init__(
            f"Admission blocked for {user_id} after {waited:.1f}s "
            f"(global={active_global}, user={active_user})"
        )
        self.user_id = user_id
        self.active_global = active_global
        self.active_user = active_user


class UpstreamThrottled(TransientError):
    """The inference API reported it is over capacity."""

    code = "UPSTREAM_THROTTLED"


class UpstreamUnavailable(TransientError):
    """Timeouts, connection failures and 5xx from the inference API."""

    code = "UPSTREAM_UNAVAILABLE"


class ProfileNotReady(TransientError):
    code = "PROFILE_NOT_READY"

    def __init__(self, user_id: str) -> None:
        super().__init__(f"Master profile for {user_id} is not available yet")
        self.user_id = user_id


class InvocationTimeout(TransientError):
    code = "INVOCATION_TIMEOUT"


# ---- Permanent --------------------------------------------------------------


class UpstreamRejected(DnaRouterError):
    """The inference API refused this input (malformed content, bad request)."""

    code = "UPSTREAM_REJECTED"


class InvalidInput(DnaRouterError):
    """The input object cannot be processed by the stage."""

    code = "INVALID_INPUT"


class TicketLeak(DnaRouterError):
    """An admission ticket outlived its lease."""

    code = "TICKET_LEAK"

    def __init__(self, ticket_id: str, user_id: str = "") -> None:
        super().__init__(f"Admission ticket {ticket_id} (user={user_id or '?'}) outlived its lease")
        self.ticket_id = ticket_id
        self.user_id = user_id


__all__ = [
    "AdmissionBlocked",
    "ClassificationMiss",
    "ConfigurationError",
    "DnaRouterError",
    "ErrorRegistry",
    "InvalidInput",
    "InvocationError",
    "InvocationTimeout",
    "ObjectNotFound",
    "PartialFanoutFailure",
    "PreconditionFailed",
    "ProfileNotReady",
    "StorageError",
    "TicketLeak",
    "TransientError",
    "UpstreamRejected",
    "UpstreamThrottled",
    "UpstreamUnavailable",
    "error_registry",
]
