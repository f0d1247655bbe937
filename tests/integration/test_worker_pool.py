from __future__ import annotations

import asyncio

from rematch.core.collaborators import Collaborators, build_collaborators
from rematch.core.orchestrator import WorkflowOrchestrator
from rematch.core.service import MatchingService
from rematch.db.models import JobEmbedding
from rematch.db.repositories import Repository
from rematch.db.session import SessionLocal
from rematch.db.store import ExecutionStore
from rematch.errors import CollaboratorError
from rematch.llm.embeddings import EmbeddingClient
from rematch.queue.backend import INDEXING_QUEUE, WORKFLOW_QUEUE, QueueBackend
from rematch.queue.workers import (
    WorkerPool,
    build_pools,
    indexing_handler,
    workflow_exhausted_hook,
    workflow_handler,
)
from rematch.vector.index import VectorIndex


def _fake_orchestrator(fakes, sample_profile, test_settings, *, parser=None, narrator=None) -> WorkflowOrchestrator:
    return WorkflowOrchestrator(
        ExecutionStore(),
        Collaborators(
            parser=parser or fakes["parser"](sample_profile),
            embedder=fakes["embedder"](),
            index=fakes["index"](),
            narrator=narrator or fakes["narrator"](),
        ),
        settings=test_settings,
    )


def test_workflow_pool_retries_collaborator_failures(seed, fakes, sample_profile, test_settings) -> None:
    backend = QueueBackend(backoff_ms=1)
    service = MatchingService(backend=backend, settings=test_settings)
    parser = fakes["parser"](sample_profile, errors=[CollaboratorError("cv_parser", "timeout")])
    orchestrator = _fake_orchestrator(fakes, sample_profile, test_settings, parser=parser)
    pool = WorkerPool(backend, WORKFLOW_QUEUE, workflow_handler(orchestrator), poll_interval_sec=0.01)

    execution_id = asyncio.run(service.reject_candidate(seed.candidate_id, seed.application_id))[
        "workflow_execution_id"
    ]
    processed = asyncio.run(pool.run_until_idle())

    assert processed == 2
    queue_job = backend.get(execution_id)
    assert queue_job.status == "completed"
    assert queue_job.attempts == 2
    assert queue_job.result_json["status"] == "completed"
    assert asyncio.run(service.get_status(execution_id)).status == "completed"


def test_parse_failure_on_every_attempt_ends_failed(seed, fakes, sample_profile, test_settings) -> None:
    backend = QueueBackend(backoff_ms=1)
    service = MatchingService(backend=backend, settings=test_settings)
    errors = [CollaboratorError("cv_parser", f"attempt {n}") for n in range(1, 4)]
    orchestrator = _fake_orchestrator(fakes, sample_profile, test_settings, parser=fakes["parser"](errors=errors))
    pool = WorkerPool(backend, WORKFLOW_QUEUE, workflow_handler(orchestrator), poll_interval_sec=0.01)

    execution_id = asyncio.run(service.reject_candidate(seed.candidate_id, seed.application_id))[
        "workflow_execution_id"
    ]
    asyncio.run(pool.run_until_idle())

    status = asyncio.run(service.get_status(execution_id))
    assert status.status == "failed"
    assert status.error == "cv_parser failed: attempt 3"
    assert backend.get(execution_id).attempts == 3


def test_exhausted_retries_mark_execution_failed(seed, fakes, sample_profile, test_settings) -> None:
    backend = QueueBackend(backoff_ms=1)
    service = MatchingService(backend=backend, settings=test_settings)
    orchestrator = _fake_orchestrator(fakes, sample_profile, test_settings)

    async def crashing_handler(job):
        raise RuntimeError("database connection reset")

    pool = WorkerPool(
        backend,
        WORKFLOW_QUEUE,
        crashing_handler,
        poll_interval_sec=0.01,
        on_exhausted=workflow_exhausted_hook(orchestrator),
    )
    execution_id = asyncio.run(service.reject_candidate(seed.candidate_id, seed.application_id))[
        "workflow_execution_id"
    ]

    asyncio.run(pool.run_until_idle())

    assert backend.get(execution_id).status == "failed"
    status = asyncio.run(service.get_status(execution_id))
    assert status.status == "failed"
    assert status.error == "database connection reset"
    assert status.completed_at is not None


def test_started_pool_picks_up_new_jobs(seed, fakes, sample_profile, test_settings) -> None:
    backend = QueueBackend()
    service = MatchingService(backend=backend, settings=test_settings)
    pool = WorkerPool(
        backend,
        WORKFLOW_QUEUE,
        workflow_handler(_fake_orchestrator(fakes, sample_profile, test_settings)),
        concurrency=2,
        poll_interval_sec=5.0,
    )

    async def scenario() -> str:
        await pool.start()
        try:
            result = await service.reject_candidate(seed.candidate_id, seed.application_id)
            for _ in range(200):
                status = await service.get_status(result["workflow_execution_id"])
                if status.status in {"completed", "failed"}:
                    return status.status
                await asyncio.sleep(0.02)
            return status.status
        finally:
            await pool.stop()

    assert asyncio.run(scenario()) == "completed"


def test_indexing_handler_embeds_every_job(seed, test_settings) -> None:
    backend = QueueBackend()
    service = MatchingService(backend=backend, settings=test_settings)
    pool = WorkerPool(
        backend,
        INDEXING_QUEUE,
        indexing_handler(EmbeddingClient(test_settings), VectorIndex()),
    )

    queued = asyncio.run(service.index_jobs(seed.company_id, [*seed.job_ids, "missing-job"]))
    asyncio.run(pool.run_until_idle())

    queue_job = backend.get(queued["queue_job_id"])
    assert queue_job.result_json == {"indexed": 3, "total": 4}
    with SessionLocal() as session:
        rows = session.query(JobEmbedding).all()
    assert len(rows) == 9
    assert {row.embedding_type for row in rows} == {"full", "skills", "experience"}
    assert all(len(row.embedding) == test_settings.embedding_dimensions for row in rows)


def test_drain_runs_the_whole_pipeline_offline(seed, test_settings) -> None:
    backend = QueueBackend(backoff_ms=1)
    service = MatchingService(backend=backend, settings=test_settings)
    pools = build_pools(test_settings, backend=backend, collaborators=build_collaborators(test_settings))

    async def scenario() -> str:
        await service.index_jobs(seed.company_id)
        for pool in sorted(pools, key=lambda item: item.queue != INDEXING_QUEUE):
            await pool.run_until_idle()
        result = await service.reject_candidate(seed.candidate_id, seed.application_id)
        for pool in pools:
            await pool.run_until_idle()
        return result["workflow_execution_id"]

    execution_id = asyncio.run(scenario())
    detail = asyncio.run(service.get_execution_detail(execution_id))

    assert detail["status"] == "completed"
    assert detail["final_analysis"]
    assert detail["parsed_profile"]["validation_status"] == "valid"
    assert seed.rejected_job_id not in detail["matched_job_ids"]
    with SessionLocal() as session:
        assert Repository(session).get_execution(execution_id).duration_ms is not None


def test_job_abandoned_by_a_dead_worker_is_recovered(seed, fakes, sample_profile, test_settings) -> None:
    backend = QueueBackend(backoff_ms=1, stalled_after_sec=0.05)
    service = MatchingService(backend=backend, settings=test_settings)
    orchestrator = _fake_orchestrator(fakes, sample_profile, test_settings)
    pool = WorkerPool(
        backend,
        WORKFLOW_QUEUE,
        workflow_handler(orchestrator),
        poll_interval_sec=0.01,
        on_exhausted=workflow_exhausted_hook(orchestrator),
    )
    execution_id = asyncio.run(service.reject_candidate(seed.candidate_id, seed.application_id))[
        "workflow_execution_id"
    ]
    # Claimed by a worker that never reports back.
    backend.claim(WORKFLOW_QUEUE)

    async def scenario() -> int:
        await asyncio.sleep(0.1)
        return await pool.run_until_idle()

    assert asyncio.run(scenario()) == 1
    queue_job = backend.get(execution_id)
    assert queue_job.status == "completed"
    assert queue_job.attempts == 2
    assert asyncio.run(service.get_status(execution_id)).status == "completed"


def test_stalled_job_without_attempts_left_fails_the_execution(seed, fakes, sample_profile, test_settings) -> None:
    backend = QueueBackend(backoff_ms=1, stalled_after_sec=0.05)
    orchestrator = _fake_orchestrator(fakes, sample_profile, test_settings)
    service = MatchingService(backend=backend, settings=test_settings.model_copy(update={"queue_max_attempts": 1}))
    pool = WorkerPool(
        backend,
        WORKFLOW_QUEUE,
        workflow_handler(orchestrator),
        poll_interval_sec=0.01,
        on_exhausted=workflow_exhausted_hook(orchestrator),
    )
    execution_id = asyncio.run(service.reject_candidate(seed.candidate_id, seed.application_id))[
        "workflow_execution_id"
    ]
    backend.claim(WORKFLOW_QUEUE)

    async def scenario() -> int:
        await asyncio.sleep(0.1)
        return await pool.run_until_idle()

    assert asyncio.run(scenario()) == 0
    assert backend.get(execution_id).status == "failed"
    status = asyncio.run(service.get_status(execution_id))
    assert status.status == "failed"
    assert status.error.startswith("stalled: no result within")

    again = asyncio.run(service.reject_candidate(seed.candidate_id, seed.application_id))
    assert again["workflow_execution_id"] != execution_id
    assert again["queued"] is True


def test_indexing_skips_inactive_and_foreign_jobs(seed, test_settings) -> None:
    with SessionLocal() as session:
        repo = Repository(session)
        closed = repo.create_job(title="Closed Role", company_id=seed.company_id, status="closed")
        other_company = repo.create_company("Other Co")
        foreign = repo.create_job(title="Foreign Role", company_id=other_company.id)
    backend = QueueBackend()
    service = MatchingService(backend=backend, settings=test_settings)
    pool = WorkerPool(backend, INDEXING_QUEUE, indexing_handler(EmbeddingClient(test_settings), VectorIndex()))

    queued = asyncio.run(service.index_jobs(seed.company_id, [seed.job_ids[0], closed.id, foreign.id]))
    asyncio.run(pool.run_until_idle())

    assert backend.get(queued["queue_job_id"]).result_json == {"indexed": 1, "total": 3}
    with SessionLocal() as session:
        indexed_ids = {row.job_id for row in session.query(JobEmbedding).all()}
    assert indexed_ids == {seed.job_ids[0]}
