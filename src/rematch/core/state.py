"""Workflow state snapshot and the transition function that derives new states.

A stage never mutates a ``WorkflowState``. It returns a ``StageOutput`` holding only
the fields it owns, and ``apply_stage`` composes that output with the current state
after checking that the status move is legal.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from rematch.errors import InvalidTransitionError
from rematch.types import ConsolidatedMatch, ParsedProfile, RetrievalMatch, WorkflowStatus

STATUS_SEQUENCE: tuple[WorkflowStatus, ...] = (
    "queued",
    "parsing",
    "retrieving",
    "consolidating",
    "analyzing",
    "completed",
)
TERMINAL: frozenset[str] = frozenset({"completed", "failed"})

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "queued": frozenset({"parsing", "failed"}),
    # parsing -> parsing is a queue-level restart of an earlier attempt.
    "parsing": frozenset({"parsing", "retrieving", "failed"}),
    "retrieving": frozenset({"parsing", "consolidating", "failed"}),
    "consolidating": frozenset({"parsing", "analyzing", "completed", "failed"}),
    "analyzing": frozenset({"parsing", "completed", "failed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}

NO_MATCHES_ANALYSIS = "No suitable alternative positions were found for this candidate."


class WorkflowState(BaseModel):
    model_config = ConfigDict(frozen=True)

    candidate_id: str
    rejected_application_id: str
    rejected_job_id: str
    raw_cv: str = ""

    parsed_profile: ParsedProfile | None = None
    validation_issues: list[str] = Field(default_factory=list)

    skills_matches: list[RetrievalMatch] = Field(default_factory=list)
    experience_matches: list[RetrievalMatch] = Field(default_factory=list)
    profile_matches: list[RetrievalMatch] = Field(default_factory=list)
    retrieval_errors: dict[str, str] = Field(default_factory=dict)

    consolidated_matches: list[ConsolidatedMatch] = Field(default_factory=list)

    final_analysis: str = ""
    analysis_summary: str = ""
    recommendations: list[dict[str, Any]] = Field(default_factory=list)

    status: WorkflowStatus = "queued"
    error: str | None = None
    current_stage: str | None = None
    attempt_count: int = 0
    stage_timestamps: dict[str, str] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    def snapshot(self) -> dict[str, Any]:
        """JSON-safe dict for the execution row; the raw CV stays out of it."""
        return self.model_dump(mode="json", exclude={"raw_cv"})


class StageOutput(BaseModel):
    """Fields produced by one stage. ``None`` means "not touched"."""

    model_config = ConfigDict(frozen=True)

    stage: str
    status: WorkflowStatus
    parsed_profile: ParsedProfile | None = None
    validation_issues: list[str] | None = None
    skills_matches: list[RetrievalMatch] | None = None
    experience_matches: list[RetrievalMatch] | None = None
    profile_matches: list[RetrievalMatch] | None = None
    retrieval_errors: dict[str, str] | None = None
    consolidated_matches: list[ConsolidatedMatch] | None = None
    final_analysis: str | None = None
    analysis_summary: str | None = None
    recommendations: list[dict[str, Any]] | None = None
    error: str | None = None
    attempt_count: int | None = None


def create_initial_state(
    *,
    candidate_id: str,
    rejected_application_id: str,
    rejected_job_id: str,
    raw_cv: str = "",
    status: WorkflowStatus = "queued",
    attempt_count: int = 0,
) -> WorkflowState:
    return WorkflowState(
        candidate_id=candidate_id,
        rejected_application_id=rejected_application_id,
        rejected_job_id=rejected_job_id,
        raw_cv=raw_cv,
        status=status,
        attempt_count=attempt_count,
    )


def check_transition(current: str, target: str) -> None:
    if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current, target)


def apply_stage(state: WorkflowState, output: StageOutput, *, now: datetime | None = None) -> WorkflowState:
    check_transition(state.status, output.status)

    update = output.model_dump(exclude={"stage", "status"}, exclude_none=True)
    # model_dump turns nested models into dicts; take the originals back.
    for key in ("parsed_profile", "skills_matches", "experience_matches", "profile_matches", "consolidated_matches"):
        if key in update:
            update[key] = getattr(output, key)

    timestamps = dict(state.stage_timestamps)
    timestamps[output.stage] = (now or datetime.now(UTC)).isoformat()

    update["status"] = output.status
    update["current_stage"] = output.stage
    update["stage_timestamps"] = timestamps
    return state.model_copy(update=update)

