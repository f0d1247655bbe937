from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from rematch.types import WorkflowStatus


class RejectCandidateRequest(BaseModel):
    candidate_id: str
    application_id: str
    reason: str | None = None


class RejectCandidateResponse(BaseModel):
    workflow_execution_id: str
    status: str
    queued: bool
    reused: bool = False


class WorkflowStatusResponse(BaseModel):
    id: str
    status: WorkflowStatus
    match_count: int
    has_analysis: bool
    duration_ms: int | None = None
    error: str | None = None
    created_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    stage_timestamps: dict[str, str] = Field(default_factory=dict)


class MatchResultResponse(BaseModel):
    rank: int
    job_id: str
    job_title: str = ""
    composite_score: float
    similarity_score: float
    match_source: str
    hit_count: int
    source_scores: dict[str, float] = Field(default_factory=dict)
    created_at: str | None = None


class WorkflowDetailResponse(WorkflowStatusResponse):
    candidate_id: str
    rejected_application_id: str
    rejected_job_id: str
    final_analysis: str | None = None
    analysis_summary: str = ""
    recommendations: list[dict[str, Any]] = Field(default_factory=list)
    matched_job_ids: list[str] = Field(default_factory=list)
    parsed_profile: dict[str, Any] | None = None
    validation_issues: list[str] = Field(default_factory=list)
    retrieval_errors: dict[str, str] = Field(default_factory=dict)
    matches: list[MatchResultResponse] = Field(default_factory=list)


class IndexJobsRequest(BaseModel):
    company_id: str
    job_ids: list[str] | None = None


class IndexJobsResponse(BaseModel):
    queued: bool
    job_count: int
    queue_job_id: str | None = None
