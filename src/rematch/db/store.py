from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rematch.core.events import EventBus, get_event_bus
from rematch.db.base import as_utc
from rematch.db.repositories import Repository, isoformat
from rematch.db.session import SessionLocal
from rematch.errors import PersistenceError
from rematch.types import ConsolidatedMatch, ExecutionStatusView

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ExecutionStore:
    """Durable record of workflow executions.

    Every call opens its own short-lived session on a worker thread, so the event loop
    never blocks on the database. SQLAlchemy failures surface as ``PersistenceError``;
    the caller treats them as fatal for the current attempt.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        *,
        event_bus: EventBus | None = None,
    ):
        self.session_factory = session_factory
        self.event_bus = event_bus or get_event_bus()

    async def create(
        self,
        *,
        candidate_id: str,
        rejected_application_id: str,
        rejected_job_id: str,
        state_json: dict[str, Any] | None = None,
        execution_id: str | None = None,
    ) -> str:
        def op(repo: Repository) -> str:
            execution = repo.create_execution(
                candidate_id=candidate_id,
                rejected_application_id=rejected_application_id,
                rejected_job_id=rejected_job_id,
                state_json=state_json or {},
                execution_id=execution_id,
            )
            return execution.id

        created_id = await self._run("create", op)
        logger.info("Created workflow execution id=%s candidate_id=%s", created_id, candidate_id)
        return created_id

    async def update(self, execution_id: str, **fields: Any) -> None:
        def op(repo: Repository) -> None:
            repo.update_execution(execution_id, **fields)

        await self._run("update", op)
        if "status" in fields:
            await self.event_bus.publish(
                execution_id,
                {
                    "type": "status",
                    "execution_id": execution_id,
                    "status": fields["status"],
                    "error": fields.get("error"),
                },
            )

    async def save_match_results(self, execution_id: str, matches: list[ConsolidatedMatch]) -> int:
        def op(repo: Repository) -> int:
            return len(repo.replace_match_results(execution_id, matches))

        saved = await self._run("save_match_results", op)
        logger.info("Saved match results execution_id=%s rows=%s", execution_id, saved)
        return saved

    async def get_status(self, execution_id: str) -> ExecutionStatusView | None:
        def op(repo: Repository) -> ExecutionStatusView | None:
            execution = repo.get_execution(execution_id)
            if execution is None:
                return None
            state = execution.state_json or {}
            return ExecutionStatusView(
                id=execution.id,
                status=execution.status,
                match_count=len(execution.matched_job_ids or []),
                has_analysis=bool(execution.final_analysis),
                duration_ms=execution.duration_ms,
                error=execution.error,
                created_at=isoformat(as_utc(execution.created_at)),
                started_at=isoformat(as_utc(execution.started_at)),
                completed_at=isoformat(as_utc(execution.completed_at)),
                stage_timestamps=dict(state.get("stage_timestamps") or {}),
            )

        return await self._run("get_status", op)

    async def call(self, name: str, fn: Callable[[Repository], T]) -> T:
        """Run an arbitrary repository read or write with the store's error policy."""
        return await self._run(name, fn)

    async def _run(self, name: str, fn: Callable[[Repository], T]) -> T:
        def work() -> T:
            with self.session_factory() as session:
                try:
                    return fn(Repository(session))
                except SQLAlchemyError:
                    session.rollback()
                    raise

        try:
            return await asyncio.to_thread(work)
        except SQLAlchemyError as exc:
            logger.error("Execution store %s failed: %s", name, exc)
            raise PersistenceError(f"execution store {name} failed: {exc}") from exc
