"""Contract tests for the dnarouter exception hierarchy.

Verifies that:
1. Every error class has a stable, unique error code
2. Transient errors are retryable, permanent ones are not
3. ErrorRegistry contains the codes workers and failure records rely on
"""

from __future__ import annotations

import pytest

from dnarouter.core import exceptions as exc
from dnarouter.core.exceptions import (
    AdmissionBlocked,
    DnaRouterError,
    PartialFanoutFailure,
    TransientError,
    UpstreamRejected,
    error_registry,
)


def _error_classes() -> list[type[DnaRouterError]]:
    return [
        obj
        for name in exc.__all__
        if isinstance(obj := getattr(exc, name), type) and issubclass(obj, DnaRouterError)
    ]


def test_every_error_has_a_code() -> None:
    for cls in _error_classes():
        code = getattr(cls, "code", None)
        assert isinstance(code, str) and code.strip(), cls.__name__


def test_codes_are_unique() -> None:
    codes = [cls.code for cls in _error_classes()]
    assert len(codes) == len(set(codes))


def test_error_registry_contains_base_codes() -> None:
    reg = error_registry.all()
    for code in [
        "INTERNAL_ERROR",
        "CONFIGURATION_ERROR",
        "STORAGE_ERROR",
        "OBJECT_NOT_FOUND",
        "PRECONDITION_FAILED",
        "CLASSIFICATION_MISS",
        "INVOCATION_ERROR",
        "PARTIAL_FANOUT_FAILURE",
        "ADMISSION_BLOCKED",
        "UPSTREAM_THROTTLED",
        "UPSTREAM_UNAVAILABLE",
        "UPSTREAM_REJECTED",
        "PROFILE_NOT_READY",
        "INVOCATION_TIMEOUT",
        "INVALID_INPUT",
        "TICKET_LEAK",
    ]:
        assert code in reg, f"missing {code} in error_registry"


@pytest.mark.parametrize(
    "cls",
    [
        exc.AdmissionBlocked,
        exc.UpstreamThrottled,
        exc.UpstreamUnavailable,
        exc.ProfileNotReady,
        exc.InvocationTimeout,
    ],
)
def test_transient_errors_are_retryable(cls) -> None:
    assert issubclass(cls, TransientError)
    assert cls.retryable is True


@pytest.mark.parametrize("cls", [exc.UpstreamRejected, exc.InvalidInput, exc.ConfigurationError])
def test_permanent_errors_are_not_retryable(cls) -> None:
    assert cls.retryable is False


def test_code_override_is_per_instance() -> None:
    err = UpstreamRejected("no", code="UPSTREAM_AUTH")
    assert err.code == "UPSTREAM_AUTH"
    assert UpstreamRejected.code == "UPSTREAM_REJECTED"
    assert err.to_dict() == {"code": "UPSTREAM_AUTH", "message": "no", "retryable": False}


def test_structured_errors_keep_context() -> None:
    blocked = AdmissionBlocked("alice", active_global=8, active_user=2, waited=61.0)
    assert blocked.user_id == "alice"
    assert "global=8" in blocked.message

    partial = PartialFanoutFailure(
        "alice/preprocessed/a.json", succeeded=["categorizer"], failed={"profile_builder": "boom"}
    )
    assert partial.succeeded == ["categorizer"]
    assert "profile_builder" in partial.message
