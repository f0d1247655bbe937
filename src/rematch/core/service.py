from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any

from rematch.config import Settings, get_settings
from rematch.core.state import TERMINAL, create_initial_state
from rematch.db.base import as_utc
from rematch.db.models import new_id
from rematch.db.repositories import Repository, isoformat
from rematch.db.store import ExecutionStore
from rematch.errors import NotFoundError, ValidationError
from rematch.queue.backend import INDEXING_QUEUE, WORKFLOW_QUEUE, QueueBackend
from rematch.types import ExecutionStatusView, IndexingJobData, WorkflowJobData

logger = logging.getLogger(__name__)

WORKFLOW_PRIORITY = 1
INDEXING_PRIORITY = 2


def _status_event(view: ExecutionStatusView) -> dict[str, Any]:
    return {"type": "status", "execution_id": view.id, "status": view.status, "error": view.error}


def _require_id(value: str, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required")
    return value.strip()


class MatchingService:
    """Entry points used by the API and CLI: trigger, inspect and index."""

    def __init__(
        self,
        *,
        store: ExecutionStore | None = None,
        backend: QueueBackend | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or ExecutionStore()
        self.backend = backend or QueueBackend(
            backoff_ms=self.settings.queue_backoff_ms,
            keep_completed=self.settings.queue_keep_completed,
            keep_completed_age_sec=self.settings.queue_keep_completed_age_sec,
            keep_failed=self.settings.queue_keep_failed,
            stalled_after_sec=self.settings.queue_stalled_after_sec,
        )

    async def reject_candidate(
        self,
        candidate_id: str,
        application_id: str,
        reason: str | None = None,
    ) -> dict[str, Any]:
        candidate_id = _require_id(candidate_id, "candidate_id")
        application_id = _require_id(application_id, "application_id")

        def prepare(repo: Repository) -> dict[str, Any]:
            candidate = repo.get_candidate(candidate_id)
            if candidate is None:
                raise NotFoundError(f"candidate {candidate_id} not found")
            application = repo.get_application(application_id)
            if application is None:
                raise NotFoundError(f"application {application_id} not found")
            if application.candidate_id != candidate_id:
                raise ValidationError(f"application {application_id} does not belong to candidate {candidate_id}")
            if not candidate.cv_text.strip():
                raise ValidationError(f"candidate {candidate_id} has no CV text")

            repo.mark_application_rejected(application_id, reason)
            execution = repo.find_open_execution(candidate_id, application_id)
            reused = execution is not None
            if execution is None:
                state = create_initial_state(
                    candidate_id=candidate_id,
                    rejected_application_id=application_id,
                    rejected_job_id=application.job_id,
                )
                execution = repo.create_execution(
                    candidate_id=candidate_id,
                    rejected_application_id=application_id,
                    rejected_job_id=application.job_id,
                    state_json=state.snapshot(),
                )
            return {
                "execution_id": execution.id,
                "job_id": application.job_id,
                "cv_text": candidate.cv_text,
                "reused": reused,
            }

        prepared = await self.store.call("reject_candidate", prepare)
        queued = await self.enqueue(
            prepared["execution_id"],
            candidate_id,
            application_id,
            prepared["job_id"],
            prepared["cv_text"],
        )
        logger.info(
            "Candidate rejected candidate_id=%s application_id=%s execution_id=%s reused=%s queued=%s",
            candidate_id,
            application_id,
            prepared["execution_id"],
            prepared["reused"],
            queued,
        )
        return {
            "workflow_execution_id": prepared["execution_id"],
            "status": "queued",
            "queued": queued,
            "reused": prepared["reused"],
        }

    async def enqueue(
        self,
        execution_id: str,
        candidate_id: str,
        application_id: str,
        job_id: str,
        cv_text: str,
        priority: int = WORKFLOW_PRIORITY,
    ) -> bool:
        """Queue a workflow run keyed by the execution id. Returns False when it already exists."""
        payload = WorkflowJobData(
            workflow_execution_id=_require_id(execution_id, "execution_id"),
            candidate_id=_require_id(candidate_id, "candidate_id"),
            rejected_application_id=_require_id(application_id, "application_id"),
            rejected_job_id=_require_id(job_id, "job_id"),
            cv_text=cv_text,
        )
        if not cv_text.strip():
            raise ValidationError("cv_text is required")

        view = await self.store.get_status(execution_id)
        if view is not None and view.status in TERMINAL:
            logger.info("Execution already finished, not queueing id=%s status=%s", execution_id, view.status)
            return False

        _, created = await asyncio.to_thread(
            lambda: self.backend.enqueue(
                WORKFLOW_QUEUE,
                execution_id,
                payload.model_dump(),
                name="process-rejection",
                priority=priority,
                max_attempts=self.settings.queue_max_attempts,
            )
        )
        return created

    async def get_status(self, execution_id: str) -> ExecutionStatusView:
        view = await self.store.get_status(_require_id(execution_id, "execution_id"))
        if view is None:
            raise NotFoundError(f"workflow execution {execution_id} not found")
        return view

    async def watch_status(self, execution_id: str) -> AsyncIterator[dict[str, Any]]:
        """Current status first, then each change until the execution finishes.

        Events published in this process arrive as they happen. Changes written by workers
        in other processes are found by re-reading the row every poll interval.
        """
        view = await self.get_status(execution_id)
        last = view.status
        yield _status_event(view)
        if last in TERMINAL:
            return

        events = self.store.event_bus.subscribe(execution_id, idle_timeout=self.settings.queue_poll_interval_sec)
        async with aclosing(events):
            async for event in events:
                if event.get("type") == "idle":
                    view = await self.get_status(execution_id)
                    if view.status == last:
                        continue
                    event = _status_event(view)
                last = event.get("status", last)
                yield event
                if last in TERMINAL:
                    return

    async def get_execution_detail(self, execution_id: str) -> dict[str, Any]:
        view = await self.get_status(execution_id)

        def load(repo: Repository) -> dict[str, Any]:
            execution = repo.get_execution(execution_id)
            results = repo.list_match_results(execution_id)
            jobs = {job.id: job for job in repo.get_jobs([row.job_id for row in results])}
            state = execution.state_json or {}
            return {
                "candidate_id": execution.candidate_id,
                "rejected_application_id": execution.rejected_application_id,
                "rejected_job_id": execution.rejected_job_id,
                "final_analysis": execution.final_analysis,
                "analysis_summary": state.get("analysis_summary") or "",
                "recommendations": state.get("recommendations") or [],
                "matched_job_ids": list(execution.matched_job_ids or []),
                "parsed_profile": state.get("parsed_profile"),
                "validation_issues": state.get("validation_issues") or [],
                "retrieval_errors": state.get("retrieval_errors") or {},
                "matches": [
                    {
                        "rank": row.rank,
                        "job_id": row.job_id,
                        "job_title": jobs[row.job_id].title if row.job_id in jobs else "",
                        "composite_score": row.composite_score,
                        "similarity_score": row.similarity_score,
                        "match_source": row.match_source,
                        "hit_count": row.hit_count,
                        "source_scores": row.match_reasons,
                        "created_at": isoformat(as_utc(row.created_at)),
                    }
                    for row in results
                ],
            }

        detail = await self.store.call("get_execution_detail", load)
        return {**view.model_dump(), **detail}

    async def index_jobs(self, company_id: str, job_ids: list[str] | None = None) -> dict[str, Any]:
        company_id = _require_id(company_id, "company_id")

        if job_ids is None:
            job_ids = await self.store.call(
                "list_active_jobs", lambda repo: [job.id for job in repo.list_active_jobs(company_id)]
            )
        if not job_ids:
            logger.info("No jobs to index company_id=%s", company_id)
            return {"queued": False, "job_count": 0, "queue_job_id": None}

        payload = IndexingJobData(job_ids=list(job_ids), company_id=company_id)
        queue_job_id = f"index-{new_id()}"
        await asyncio.to_thread(
            lambda: self.backend.enqueue(
                INDEXING_QUEUE,
                queue_job_id,
                payload.model_dump(),
                name="index-jobs",
                priority=INDEXING_PRIORITY,
                max_attempts=self.settings.queue_max_attempts,
            )
        )
        logger.info("Queued job indexing company_id=%s jobs=%s", company_id, len(job_ids))
        return {"queued": True, "job_count": len(job_ids), "queue_job_id": queue_job_id}
