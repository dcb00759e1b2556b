"""HTTP service: event intake, worker invocations, manual triggers, admission ops, user metrics.

Run with ``dnarouter serve`` or ``uvicorn --factory dnarouter.service.app:create_app``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse

from dnarouter.core.config import Config, get_core_config
from dnarouter.core.exceptions import (
    ConfigurationError,
    DnaRouterError,
    InvalidInput,
    InvocationError,
    InvocationTimeout,
    ObjectNotFound,
    PartialFanoutFailure,
    TransientError,
)
from dnarouter.core.types import Invocation, Stage, TransformName
from dnarouter.orchestrator import execute

from .metrics import collect_user_metrics
from .payloads import InvokeRequest, TriggerRequest, event_from_body
from .runtime import Runtime, build_runtime

logger = logging.getLogger(__name__)

# First match wins; order from most to least specific.
ERROR_STATUS: list[tuple[type[DnaRouterError], int]] = [
    (InvocationTimeout, 504),
    (PartialFanoutFailure, 502),
    (InvocationError, 502),
    (TransientError, 503),
    (ObjectNotFound, 404),
    (InvalidInput, 400),
    (ConfigurationError, 500),
    (DnaRouterError, 500),
]


def status_for(exc: DnaRouterError) -> int:
    for cls, status in ERROR_STATUS:
        if isinstance(exc, cls):
            return status
    return 500


def _error_body(exc: DnaRouterError) -> dict[str, Any]:
    body: dict[str, Any] = {"error": exc.to_dict()}
    if isinstance(exc, PartialFanoutFailure):
        body["succeeded"] = exc.succeeded
        body["failed"] = exc.failed
    return body


def create_app(runtime: Runtime | None = None, config: Config | None = None) -> FastAPI:
    """Build the app. A runtime passed in is used as-is and not closed on shutdown."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = runtime is None
        app.state.runtime = runtime or build_runtime(config or get_core_config())
        try:
            yield
        finally:
            if owned:
                await app.state.runtime.aclose()

    app = FastAPI(title="dnarouter", lifespan=lifespan)

    @app.exception_handler(DnaRouterError)
    async def handle_error(request: Request, exc: DnaRouterError) -> JSONResponse:
        status = status_for(exc)
        if status >= 500:
            logger.error("%s %s -> %d: %s", request.method, request.url.path, status, exc.message)
        else:
            logger.info("%s %s -> %d: %s", request.method, request.url.path, status, exc.message)
        return JSONResponse(status_code=status, content=_error_body(exc))

    def rt(request: Request) -> Runtime:
        return request.app.state.runtime

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/events", status_code=202)
    async def events(request: Request) -> dict[str, Any]:
        try:
            body = await request.json()
        except ValueError as e:
            raise InvalidInput(f"event body is not JSON: {e}") from e
        event = event_from_body(body)
        if event is None:
            return {"ignored": True, "invocations": []}
        report = await rt(request).orchestrator.dispatch(event)
        return report.to_dict()

    @app.post("/invoke/{transform}")
    async def invoke(transform: TransformName, payload: InvokeRequest, request: Request) -> JSONResponse:
        runtime_ = rt(request)
        invocation = Invocation(
            transform=transform, source_key=payload.source_key, user_id=payload.user_id
        )
        result = await execute(
            runtime_.transforms[transform],
            invocation,
            timeout=runtime_.config.stages.invocation_timeout_seconds,
        )
        # 503 asks the platform to redeliver; permanent failures are already recorded.
        status = 503 if result.has_retryable_failures else 200
        return JSONResponse(status_code=status, content=result.to_dict())

    @app.post("/trigger", status_code=202)
    async def trigger(payload: TriggerRequest, request: Request) -> dict[str, Any]:
        report = await rt(request).orchestrator.trigger(payload.key, force=payload.force)
        return report.to_dict()

    @app.get("/admission/load")
    async def admission_load(request: Request) -> dict[str, Any]:
        return await rt(request).admission.load()

    @app.post("/admission/audit")
    async def admission_audit(request: Request) -> dict[str, Any]:
        reclaimed = await rt(request).admission.audit_leaks()
        return {"reclaimed": reclaimed}

    @app.get("/users/{user_id}/metrics")
    async def user_metrics(
        user_id: str,
        request: Request,
        stage_filter: Stage | None = Query(default=None, alias="stageFilter"),
        summary_only: bool = Query(default=False, alias="summaryOnly"),
        skip_file_tree: bool = Query(default=False, alias="skipFileTree"),
    ) -> dict[str, Any]:
        return await collect_user_metrics(
            rt(request).store,
            user_id,
            stage_filter=stage_filter,
            summary_only=summary_only,
            skip_file_tree=skip_file_tree,
        )

    return app


__all__ = ["ERROR_STATUS", "create_app", "status_for"]
