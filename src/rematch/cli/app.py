from __future__ import annotations

import asyncio
import json
import signal

import typer
import uvicorn

from rematch.api.app import create_app
from rematch.config import get_settings
from rematch.core.service import MatchingService
from rematch.db.base import as_utc
from rematch.db.init import init_database
from rematch.db.repositories import Repository, isoformat
from rematch.db.session import SessionLocal
from rematch.errors import RematchError
from rematch.logging_config import configure_logging
from rematch.queue.backend import INDEXING_QUEUE, WORKFLOW_QUEUE
from rematch.queue.workers import build_backend, build_pools

app = typer.Typer(help="Rematch CLI")

_INITIALIZED = False


def ensure_initialized() -> None:
    global _INITIALIZED
    if _INITIALIZED:
        return
    init_database()
    _INITIALIZED = True


def _service() -> MatchingService:
    return MatchingService(backend=build_backend())


def _fail(exc: RematchError) -> None:
    typer.echo(json.dumps({"ok": False, "code": exc.code, "error": exc.message}, indent=2), err=True)
    raise typer.Exit(code=1)


@app.command("init")
def init_cmd() -> None:
    """Initialize database and data directories."""
    configure_logging()
    result = init_database()
    typer.echo(json.dumps({"ok": True, **result}, indent=2))


@app.command("reject")
def reject_cmd(
    candidate_id: str = typer.Option(..., "--candidate-id"),
    application_id: str = typer.Option(..., "--application-id"),
    reason: str | None = typer.Option(None, "--reason"),
) -> None:
    """Reject an application and queue the re-matching workflow."""
    configure_logging()
    ensure_initialized()
    try:
        result = asyncio.run(_service().reject_candidate(candidate_id, application_id, reason))
    except RematchError as exc:
        _fail(exc)
    typer.echo(json.dumps(result, indent=2))


@app.command("status")
def status_cmd(
    execution_id: str = typer.Option(..., "--execution-id"),
    detail: bool = typer.Option(False, "--detail", help="Include analysis and ranked matches"),
) -> None:
    configure_logging()
    ensure_initialized()
    service = _service()
    try:
        if detail:
            data = asyncio.run(service.get_execution_detail(execution_id))
        else:
            data = asyncio.run(service.get_status(execution_id)).model_dump()
    except RematchError as exc:
        _fail(exc)
    typer.echo(json.dumps(data, indent=2))


@app.command("executions")
def executions_cmd(limit: int = typer.Option(20, "--limit")) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        rows = Repository(db).list_executions(limit=limit)
        typer.echo(
            json.dumps(
                [
                    {
                        "id": row.id,
                        "candidate_id": row.candidate_id,
                        "status": row.status,
                        "matches": len(row.matched_job_ids or []),
                        "error": row.error,
                        "created_at": isoformat(as_utc(row.created_at)),
                    }
                    for row in rows
                ],
                indent=2,
            )
        )


@app.command("index-jobs")
def index_jobs_cmd(
    company_id: str = typer.Option(..., "--company-id"),
    job_id: list[str] = typer.Option([], "--job-id", help="Repeat to index specific jobs"),
) -> None:
    """Queue embedding of jobs (all active jobs of the company by default)."""
    configure_logging()
    ensure_initialized()
    try:
        result = asyncio.run(_service().index_jobs(company_id, job_id or None))
    except RematchError as exc:
        _fail(exc)
    typer.echo(json.dumps(result, indent=2))


@app.command("drain")
def drain_cmd() -> None:
    """Process queued indexing and workflow jobs until both queues are idle."""
    configure_logging()
    ensure_initialized()

    async def run() -> dict[str, int]:
        processed: dict[str, int] = {}
        # Indexing first so freshly queued jobs are searchable by the workflows.
        for pool in sorted(build_pools(), key=lambda item: item.queue != INDEXING_QUEUE):
            processed[pool.queue] = await pool.run_until_idle()
        return processed

    processed = asyncio.run(run())
    backend = build_backend()
    typer.echo(
        json.dumps(
            {
                "processed": processed,
                "counts": {queue: backend.counts(queue) for queue in (WORKFLOW_QUEUE, INDEXING_QUEUE)},
            },
            indent=2,
        )
    )


@app.command("worker")
def worker_cmd() -> None:
    """Run the workflow and indexing worker pools until interrupted."""
    configure_logging()
    ensure_initialized()

    async def run() -> None:
        pools = build_pools()
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                pass
        for pool in pools:
            await pool.start()
        typer.echo(json.dumps({"ok": True, "queues": [pool.queue for pool in pools]}))
        try:
            await stop.wait()
        finally:
            for pool in pools:
                await pool.stop()

    asyncio.run(run())


@app.command("serve")
def serve(
    host: str | None = typer.Option(None, "--host"),
    port: int | None = typer.Option(None, "--port"),
) -> None:
    configure_logging()
    ensure_initialized()
    settings = get_settings()
    app_instance = create_app()
    uvicorn.run(app_instance, host=host or settings.app_host, port=port or settings.app_port)
