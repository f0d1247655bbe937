from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from sqlalchemy.orm import Session

from rematch.config import Settings, get_settings
from rematch.core.collaborators import Collaborators, build_collaborators
from rematch.core.orchestrator import WorkflowOrchestrator
from rematch.db.repositories import Repository
from rematch.db.session import SessionLocal
from rematch.db.store import ExecutionStore
from rematch.llm.embeddings import EmbeddingClient
from rematch.queue.backend import INDEXING_QUEUE, WORKFLOW_QUEUE, QueueBackend
from rematch.queue.limiter import RateLimiter
from rematch.types import IndexingJobData, JobDetails, WorkflowJobData
from rematch.vector.index import VectorIndex

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[dict[str, Any] | None]]
ExhaustedHook = Callable[[Any, str], Awaitable[None]]


class WorkerPool:
    """A fixed number of asyncio worker loops pulling from one named queue."""

    def __init__(
        self,
        backend: QueueBackend,
        queue: str,
        handler: Handler,
        *,
        concurrency: int = 1,
        limiter: RateLimiter | None = None,
        poll_interval_sec: float = 1.0,
        on_exhausted: ExhaustedHook | None = None,
    ):
        self.backend = backend
        self.queue = queue
        self.handler = handler
        self.concurrency = max(1, concurrency)
        self.limiter = limiter
        self.poll_interval_sec = poll_interval_sec
        self.on_exhausted = on_exhausted
        self._tasks: list[asyncio.Task] = []
        self._stopping = False
        self._wakeup: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    async def process_one(self) -> bool:
        """Claim and run a single due job. Returns False when nothing was claimable."""
        await self._recover_stalled()
        job = await asyncio.to_thread(self.backend.claim, self.queue)
        if job is None:
            return False

        if self.limiter is not None:
            await self.limiter.acquire()

        logger.info("Processing job queue=%s id=%s attempt=%s/%s", self.queue, job.id, job.attempts, job.max_attempts)
        try:
            result = await self.handler(job)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            updated = await asyncio.to_thread(self.backend.fail, job.id, message)
            if updated.status == "failed":
                await self._exhausted(updated, message)
            return True

        await asyncio.to_thread(self.backend.complete, job.id, result or {})
        logger.info("Job completed queue=%s id=%s result=%s", self.queue, job.id, result)
        return True

    async def _recover_stalled(self) -> None:
        for job in await asyncio.to_thread(self.backend.recover_stalled, self.queue):
            await self._exhausted(job, job.last_error or "stalled")

    async def _exhausted(self, job: Any, message: str) -> None:
        if self.on_exhausted is None:
            return
        try:
            await self.on_exhausted(job, message)
        except Exception:
            logger.exception("Exhausted-retries hook failed queue=%s id=%s", self.queue, job.id)

    async def run_until_idle(self) -> int:
        """Process until no waiting or delayed job remains, sleeping through backoff delays."""

        async def drain() -> int:
            processed = 0
            while True:
                if await self.process_one():
                    processed += 1
                    continue
                due = await asyncio.to_thread(self.backend.next_due_in, self.queue)
                if due is None:
                    return processed
                await asyncio.sleep(min(due, self.poll_interval_sec))

        results = await asyncio.gather(*(drain() for _ in range(self.concurrency)))
        return sum(results)

    async def start(self) -> None:
        if self._tasks:
            return
        self._stopping = False
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self.backend.add_listener(self._on_enqueue)
        self._tasks = [
            asyncio.create_task(self._worker_loop(index), name=f"{self.queue}-worker-{index}")
            for index in range(self.concurrency)
        ]
        logger.info("Worker pool started queue=%s concurrency=%s", self.queue, self.concurrency)

    async def stop(self) -> None:
        self._stopping = True
        self.backend.remove_listener(self._on_enqueue)
        if self._wakeup is not None:
            self._wakeup.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Worker pool stopped queue=%s", self.queue)

    async def _worker_loop(self, index: int) -> None:
        while not self._stopping:
            try:
                processed = await self.process_one()
            except Exception:
                # Queue bookkeeping failed; back off one poll interval and keep serving.
                logger.exception("Worker loop error queue=%s worker=%s", self.queue, index)
                processed = False
            if processed:
                continue
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval_sec)
            except TimeoutError:
                pass
            if not self._stopping:
                self._wakeup.clear()

    def _on_enqueue(self, queue: str) -> None:
        if queue != self.queue or self._loop is None or self._wakeup is None:
            return
        self._loop.call_soon_threadsafe(self._wakeup.set)


def workflow_handler(orchestrator: WorkflowOrchestrator) -> Handler:
    async def handle(job: Any) -> dict[str, Any]:
        data = WorkflowJobData.model_validate(job.payload_json)
        state = await orchestrator.run(data, attempt=job.attempts, max_attempts=job.max_attempts)
        if state is None:
            return {"status": "skipped"}
        return {"status": state.status, "matches": len(state.consolidated_matches)}

    return handle


def workflow_exhausted_hook(orchestrator: WorkflowOrchestrator) -> ExhaustedHook:
    async def on_exhausted(job: Any, message: str) -> None:
        execution_id = job.payload_json.get("workflow_execution_id", job.id)
        if await orchestrator.fail_execution(execution_id, message):
            logger.error("Execution marked failed after retries id=%s error=%s", execution_id, message)

    return on_exhausted


def indexing_handler(
    embedder: EmbeddingClient,
    index: VectorIndex,
    *,
    session_factory: Callable[[], Session] = SessionLocal,
) -> Handler:
    async def handle(job: Any) -> dict[str, Any]:
        data = IndexingJobData.model_validate(job.payload_json)

        def load() -> list[JobDetails]:
            with session_factory() as session:
                active = {job.id: job for job in Repository(session).list_active_jobs(data.company_id)}
                return [JobDetails.model_validate(active[job_id]) for job_id in data.job_ids if job_id in active]

        jobs = await asyncio.to_thread(load)
        if len(jobs) < len(data.job_ids):
            logger.info(
                "Skipping jobs that are inactive or outside the company company_id=%s skipped=%s",
                data.company_id,
                len(data.job_ids) - len(jobs),
            )
        indexed = 0
        for details in jobs:
            try:
                vectors = await asyncio.to_thread(embedder.embed_job, details)
                await asyncio.to_thread(
                    index.store_job_embeddings, details.id, vectors, model_version=embedder.model_version
                )
            except Exception:
                logger.exception("Indexing failed job_id=%s", details.id)
                continue
            indexed += 1

        logger.info(
            "Indexing finished company_id=%s indexed=%s total=%s", data.company_id, indexed, len(data.job_ids)
        )
        return {"indexed": indexed, "total": len(data.job_ids)}

    return handle


def build_backend(settings: Settings | None = None) -> QueueBackend:
    settings = settings or get_settings()
    return QueueBackend(
        backoff_ms=settings.queue_backoff_ms,
        keep_completed=settings.queue_keep_completed,
        keep_completed_age_sec=settings.queue_keep_completed_age_sec,
        keep_failed=settings.queue_keep_failed,
        stalled_after_sec=settings.queue_stalled_after_sec,
    )


def build_pools(
    settings: Settings | None = None,
    *,
    backend: QueueBackend | None = None,
    collaborators: Collaborators | None = None,
    store: ExecutionStore | None = None,
) -> list[WorkerPool]:
    settings = settings or get_settings()
    backend = backend or build_backend(settings)
    orchestrator = WorkflowOrchestrator(
        store or ExecutionStore(),
        collaborators or build_collaborators(settings),
        settings=settings,
    )
    workflow_pool = WorkerPool(
        backend,
        WORKFLOW_QUEUE,
        workflow_handler(orchestrator),
        concurrency=settings.workflow_concurrency,
        limiter=RateLimiter(settings.queue_rate_limit_max, settings.queue_rate_limit_window_sec),
        poll_interval_sec=settings.queue_poll_interval_sec,
        on_exhausted=workflow_exhausted_hook(orchestrator),
    )
    indexing_pool = WorkerPool(
        backend,
        INDEXING_QUEUE,
        indexing_handler(EmbeddingClient(settings), VectorIndex()),
        concurrency=settings.indexing_concurrency,
        poll_interval_sec=settings.queue_poll_interval_sec,
    )
    return [workflow_pool, indexing_pool]
