from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from rematch.config import Settings, get_settings
from rematch.core.collaborators import Collaborators
from rematch.core.consolidation import consolidate
from rematch.core.cv_parser import validate_parsed_profile
from rematch.core.retrieval import RetrievalStage
from rematch.core.state import (
    NO_MATCHES_ANALYSIS,
    TERMINAL,
    StageOutput,
    WorkflowState,
    apply_stage,
    create_initial_state,
)
from rematch.db.base import as_utc
from rematch.db.repositories import Repository
from rematch.db.store import ExecutionStore
from rematch.errors import CollaboratorError, NotFoundError, PersistenceError, WorkflowError
from rematch.types import ConsolidatedMatch, JobDetails, Narrative, ParsedProfile, WorkflowJobData

logger = logging.getLogger(__name__)


class WorkflowOrchestrator:
    """Drives one attempt of one workflow execution through its stages.

    Each transition is computed with ``apply_stage`` and then persisted with exactly one
    ``ExecutionStore.update`` call. Collaborator failures in parsing or analysis are
    re-raised so the queue can retry the job; on the final attempt they become a
    terminal ``failed`` row instead.
    """

    def __init__(
        self,
        store: ExecutionStore,
        collaborators: Collaborators,
        *,
        settings: Settings | None = None,
    ):
        self.store = store
        self.collaborators = collaborators
        self.settings = settings or get_settings()
        self.retrieval = RetrievalStage(
            collaborators.embedder,
            collaborators.index,
            threshold=self.settings.match_threshold,
            limit=self.settings.match_count,
        )

    async def run(self, job: WorkflowJobData, *, attempt: int = 1, max_attempts: int = 1) -> WorkflowState | None:
        execution_id = job.workflow_execution_id
        execution = await self.store.call("load", lambda repo: repo.get_execution(execution_id))
        if execution is None:
            raise NotFoundError(f"workflow execution {execution_id} not found")
        if execution.status in TERMINAL:
            logger.info("Execution already finished id=%s status=%s", execution_id, execution.status)
            return None

        started_at = as_utc(execution.started_at) or datetime.now(UTC)
        state = create_initial_state(
            candidate_id=job.candidate_id,
            rejected_application_id=job.rejected_application_id,
            rejected_job_id=job.rejected_job_id,
            raw_cv=job.cv_text,
            status=execution.status,
        )
        if execution.status != "queued":
            logger.warning(
                "Restarting execution id=%s from status=%s attempt=%s", execution_id, execution.status, attempt
            )

        state = apply_stage(state, StageOutput(stage="parsing", status="parsing", attempt_count=attempt))
        await self._persist(execution_id, state, started_at=started_at, error=None)
        logger.info("Workflow started id=%s attempt=%s/%s", execution_id, attempt, max_attempts)

        try:
            profile = await self.collaborators.parser.parse_cv(job.cv_text)
            if profile is None:
                raise CollaboratorError("cv_parser", "parser returned no profile")
        except Exception as exc:
            return await self._stage_failed(execution_id, state, exc, started_at, attempt, max_attempts)

        return await self._after_parse(execution_id, state, profile, started_at, attempt, max_attempts)

    async def _after_parse(
        self,
        execution_id: str,
        state: WorkflowState,
        profile: ParsedProfile,
        started_at: datetime,
        attempt: int,
        max_attempts: int,
    ) -> WorkflowState:
        report = validate_parsed_profile(profile)
        parser_version = getattr(self.collaborators.parser, "parser_version", "unknown")
        await self.store.call(
            "save_parsed_cv",
            lambda repo: repo.save_parsed_cv(
                candidate_id=state.candidate_id, profile=profile, parser_version=parser_version
            ),
        )

        state = apply_stage(
            state,
            StageOutput(
                stage="retrieving",
                status="retrieving",
                parsed_profile=profile,
                validation_issues=report.issues,
            ),
        )
        await self._persist(execution_id, state)
        logger.info(
            "CV parsed id=%s validation_status=%s issues=%s", execution_id, profile.validation_status, len(report.issues)
        )

        outcome = await self.retrieval.run(profile, exclude_job_ids=[state.rejected_job_id])
        if outcome.all_failed:
            # Not fatal: a parsed profile exists, so the run completes with no matches.
            logger.warning("All retrieval branches failed id=%s errors=%s", execution_id, outcome.errors)

        state = apply_stage(
            state,
            StageOutput(
                stage="consolidating",
                status="consolidating",
                skills_matches=outcome.matches.get("skills", []),
                experience_matches=outcome.matches.get("experience", []),
                profile_matches=outcome.matches.get("profile", []),
                retrieval_errors=dict(outcome.errors),
            ),
        )
        await self._persist(execution_id, state)

        try:
            matches = consolidate(
                state.skills_matches,
                state.experience_matches,
                state.profile_matches,
                limit=self.settings.consolidated_limit,
            )
        except Exception as exc:
            logger.exception("Consolidation failed id=%s", execution_id)
            return await self._fail(execution_id, state, f"consolidation failed: {exc}", started_at)

        # Written before the next transition so matches survive a later narrative failure.
        await self.store.save_match_results(execution_id, matches)

        if not matches:
            state = apply_stage(
                state,
                StageOutput(
                    stage="completed",
                    status="completed",
                    consolidated_matches=[],
                    final_analysis=NO_MATCHES_ANALYSIS,
                    analysis_summary=NO_MATCHES_ANALYSIS,
                ),
            )
            await self._persist_terminal(execution_id, state, started_at, final_analysis=NO_MATCHES_ANALYSIS)
            logger.info("Workflow completed without matches id=%s", execution_id)
            return state

        state = apply_stage(state, StageOutput(stage="analyzing", status="analyzing", consolidated_matches=matches))
        await self._persist(execution_id, state, matched_job_ids=[match.job_id for match in matches])

        try:
            narrative = await self._generate_narrative(state, matches[: self.settings.analysis_top_n])
        except Exception as exc:
            return await self._stage_failed(execution_id, state, exc, started_at, attempt, max_attempts)

        state = apply_stage(
            state,
            StageOutput(
                stage="completed",
                status="completed",
                final_analysis=narrative.markdown,
                analysis_summary=narrative.summary,
                recommendations=narrative.recommendations,
            ),
        )
        await self._persist_terminal(execution_id, state, started_at, final_analysis=narrative.markdown)
        logger.info("Workflow completed id=%s matches=%s", execution_id, len(matches))
        return state

    async def fail_execution(self, execution_id: str, message: str) -> bool:
        """Mark an execution failed once its queue job has run out of attempts."""
        execution = await self.store.call("load", lambda repo: repo.get_execution(execution_id))
        if execution is None or execution.status in TERMINAL:
            return False

        state = _state_from_row(execution)
        started_at = as_utc(execution.started_at) or as_utc(execution.created_at) or datetime.now(UTC)
        await self._fail(execution_id, state, message, started_at)
        return True

    async def _generate_narrative(self, state: WorkflowState, top: list[ConsolidatedMatch]) -> Narrative:
        job_ids = [match.job_id for match in top]

        def load(repo: Repository) -> tuple[str, JobDetails | None, list[JobDetails]]:
            candidate = repo.get_candidate(state.candidate_id)
            rejected = repo.get_job(state.rejected_job_id)
            jobs = repo.get_jobs(job_ids)
            return (
                candidate.name if candidate else "The candidate",
                JobDetails.model_validate(rejected) if rejected else None,
                [JobDetails.model_validate(job) for job in jobs],
            )

        candidate_name, rejected_job, jobs = await self.store.call("load_narrative_context", load)
        narrative = await self.collaborators.narrator.generate_narrative(
            candidate_name=candidate_name,
            profile=state.parsed_profile,
            rejected_job=rejected_job,
            top_matches=top,
            jobs=jobs,
        )
        if not narrative.markdown.strip():
            raise CollaboratorError("narrative_generator", "empty report")
        return narrative

    async def _stage_failed(
        self,
        execution_id: str,
        state: WorkflowState,
        exc: Exception,
        started_at: datetime,
        attempt: int,
        max_attempts: int,
    ) -> WorkflowState:
        if isinstance(exc, PersistenceError):
            raise exc
        if isinstance(exc, CollaboratorError) and attempt < max_attempts:
            logger.warning(
                "Stage %s failed id=%s attempt=%s/%s, will retry: %s",
                state.status,
                execution_id,
                attempt,
                max_attempts,
                exc,
            )
            raise exc
        return await self._fail(execution_id, state, str(exc) or exc.__class__.__name__, started_at)

    async def _fail(self, execution_id: str, state: WorkflowState, message: str, started_at: datetime) -> WorkflowState:
        failed_stage = state.status
        state = apply_stage(state, StageOutput(stage="failed", status="failed", error=message))
        await self._persist_terminal(execution_id, state, started_at, error=message)
        logger.error("Workflow failed id=%s stage=%s error=%s", execution_id, failed_stage, message)
        return state

    async def _persist(self, execution_id: str, state: WorkflowState, **fields: Any) -> None:
        await self.store.update(execution_id, status=state.status, state_json=state.snapshot(), **fields)

    async def _persist_terminal(
        self, execution_id: str, state: WorkflowState, started_at: datetime, **fields: Any
    ) -> None:
        if state.status not in TERMINAL:
            raise WorkflowError(f"{state.status} is not a terminal status")
        completed_at = datetime.now(UTC)
        duration_ms = max(0, int((completed_at - started_at).total_seconds() * 1000))
        await self._persist(
            execution_id,
            state,
            matched_job_ids=[match.job_id for match in state.consolidated_matches],
            duration_ms=duration_ms,
            completed_at=completed_at,
            **fields,
        )


def _state_from_row(execution: Any) -> WorkflowState:
    snapshot = dict(execution.state_json or {})
    snapshot.update(
        candidate_id=execution.candidate_id,
        rejected_application_id=execution.rejected_application_id,
        rejected_job_id=execution.rejected_job_id,
        status=execution.status,
    )
    return WorkflowState.model_validate(snapshot)
