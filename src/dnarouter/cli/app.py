"""Main Click application root."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import click

from dnarouter.core.config import get_core_config, set_core_config
from dnarouter.core.config.main import Config
from dnarouter.core.exceptions import DnaRouterError
from dnarouter.core.logs import configure_logging
from dnarouter.core.types import Stage, StageEvent
from dnarouter.orchestrator import route

logger = logging.getLogger(__name__)


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True, default=str))


def _run(coro: Any) -> Any:
    try:
        return asyncio.run(coro)
    except DnaRouterError as e:
        raise click.ClickException(f"[{e.code}] {e.message}") from e


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    help="Path to settings.toml",
)
@click.pass_context
def cli(ctx, verbose, config_path):
    """dnarouter - event-driven personal data pipeline."""
    ctx.ensure_object(dict)
    # Defaults < TOML < env; `.env` is optional and auto-detected in the working directory.
    config = Config.load(config_path)
    set_core_config(config)
    configure_logging(logging.DEBUG if verbose or config.debug else config.log_level)


@cli.command("route")
@click.argument("key")
@click.option("--size", type=int, default=0, help="Object size in bytes")
def route_cmd(key, size):
    """Show which transforms an object key would trigger (no side effects)."""
    cfg = get_core_config()
    invocations = route(
        StageEvent(object_key=key, size=size),
        max_auto_process_bytes=cfg.orchestrator.max_auto_process_bytes,
    )
    _echo_json([{"transform": i.transform.value, **i.to_payload()} for i in invocations])


@cli.command()
@click.argument("key")
@click.option("--force", is_flag=True, help="Bypass the auto-processing size cap")
def trigger(key, force):
    """Dispatch an existing object as if it had just been created."""
    from dnarouter.service import build_runtime

    async def _trigger() -> dict[str, Any]:
        runtime = build_runtime(get_core_config())
        try:
            report = await runtime.orchestrator.trigger(key, force=force)
            return report.to_dict()
        finally:
            await runtime.aclose()

    _echo_json(_run(_trigger()))


@cli.command()
def load():
    """Print the current admission counters."""
    from dnarouter.service import build_runtime

    async def _load() -> dict[str, Any]:
        runtime = build_runtime(get_core_config())
        try:
            return await runtime.admission.load()
        finally:
            await runtime.aclose()

    _echo_json(_run(_load()))


@cli.command()
def audit():
    """Reclaim admission tickets whose lease expired."""
    from dnarouter.service import build_runtime

    async def _audit() -> list[str]:
        runtime = build_runtime(get_core_config())
        try:
            return await runtime.admission.audit_leaks()
        finally:
            await runtime.aclose()

    reclaimed = _run(_audit())
    click.echo(f"Reclaimed {len(reclaimed)} leaked ticket(s)")
    for ticket_id in reclaimed:
        click.echo(f"  {ticket_id}")


@cli.command()
@click.argument("user_id")
@click.option(
    "--stage",
    type=click.Choice([s.value for s in Stage]),
    default=None,
    help="Only list files from this stage",
)
@click.option("--summary-only", is_flag=True, help="Counts and sizes only")
@click.option("--no-tree", is_flag=True, help="Leave out the folder tree")
def metrics(user_id, stage, summary_only, no_tree):
    """Show what is stored for a user, per stage."""
    from dnarouter.service import build_runtime
    from dnarouter.service.metrics import collect_user_metrics

    async def _metrics() -> dict[str, Any]:
        runtime = build_runtime(get_core_config())
        try:
            return await collect_user_metrics(
                runtime.store,
                user_id,
                stage_filter=Stage(stage) if stage else None,
                summary_only=summary_only,
                skip_file_tree=no_tree,
            )
        finally:
            await runtime.aclose()

    _echo_json(_run(_metrics()))


@cli.command()
@click.option("--host", default=None, help="Bind address (default from config)")
@click.option("--port", type=int, default=None, help="Port (default from config)")
def serve(host, port):
    """Run the HTTP service."""
    import uvicorn

    from dnarouter.service import create_app

    cfg = get_core_config()
    uvicorn.run(
        create_app(config=cfg),
        host=host or cfg.service.host,
        port=port or cfg.service.port,
        log_config=None,
    )


@cli.command("run-local")
@click.argument("files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option("--user", "user_id", required=True, help="User id to upload the files under")
def run_local(files, user_id):
    """Run the whole pipeline in-process over local files (in-memory store, real Redis/OpenAI)."""
    from dnarouter.modules.providers.storage import InMemoryObjectStore
    from dnarouter.service import build_local_pipeline, build_runtime

    async def _run_local() -> dict[str, Any]:
        store = InMemoryObjectStore()
        runtime = build_runtime(get_core_config(), store=store, invoker="local")
        pipeline = build_local_pipeline(runtime)
        try:
            for path in files:
                p = Path(path)
                await pipeline.upload(f"{user_id}/{Stage.RAW.value}/{p.name}", p.read_bytes())
            reports = await pipeline.drain()
            keys = await store.list(f"{user_id}/")
            return {
                "dispatched": len(reports),
                "errors": [e.to_dict() for e in pipeline.errors],
                "objects": keys,
            }
        finally:
            await runtime.aclose()

    _echo_json(_run(_run_local()))
