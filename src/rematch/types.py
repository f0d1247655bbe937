from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

WorkflowStatus = Literal[
    "queued",
    "parsing",
    "retrieving",
    "consolidating",
    "analyzing",
    "completed",
    "failed",
]
MatchSource = Literal["skills", "experience", "profile"]
EmbeddingKind = Literal["full", "skills", "experience"]
ValidationStatus = Literal["valid", "needs_review", "invalid"]

MATCH_SOURCES: tuple[MatchSource, ...] = ("skills", "experience", "profile")
EMBEDDING_KINDS: tuple[EmbeddingKind, ...] = ("full", "skills", "experience")
SOURCE_EMBEDDING_KIND: dict[MatchSource, EmbeddingKind] = {
    "skills": "skills",
    "experience": "experience",
    "profile": "full",
}


class ParsedProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    summary: str
    skills: str
    work_experience: str
    education: str
    languages: list[str] = Field(default_factory=list)
    certifications: list[str] = Field(default_factory=list)
    validation_status: ValidationStatus = "valid"

    @field_validator("summary")
    @classmethod
    def validate_summary(cls, value: str) -> str:
        if len(value.strip()) < 10:
            raise ValueError("summary must be at least 10 characters")
        return value

    @field_validator("skills")
    @classmethod
    def validate_skills(cls, value: str) -> str:
        if len(value.strip()) < 5:
            raise ValueError("skills must be provided")
        return value

    @field_validator("work_experience")
    @classmethod
    def validate_experience(cls, value: str) -> str:
        if len(value.strip()) < 10:
            raise ValueError("work experience must be provided")
        return value

    @field_validator("education")
    @classmethod
    def validate_education(cls, value: str) -> str:
        if len(value.strip()) < 5:
            raise ValueError("education must be provided")
        return value

    def full_profile_text(self) -> str:
        return f"{self.summary}\n\nSkills: {self.skills}\n\nExperience: {self.work_experience}"


class ProfileQualityReport(BaseModel):
    is_valid: bool
    issues: list[str] = Field(default_factory=list)
    status: ValidationStatus


class RetrievalMatch(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_id: str
    job_title: str = ""
    job_description: str = ""
    similarity_score: float
    source: MatchSource

    @field_validator("similarity_score")
    @classmethod
    def validate_similarity(cls, value: float) -> float:
        if value < 0 or value > 1:
            raise ValueError("similarity_score must be between 0 and 1")
        return value


class ConsolidatedMatch(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_id: str
    job_title: str = ""
    job_description: str = ""
    composite_score: float
    hit_count: int
    source_scores: dict[MatchSource, float] = Field(default_factory=dict)
    rank: int

    @property
    def best_source(self) -> MatchSource:
        # Highest similarity wins; ties resolve in fixed source order.
        return max(
            self.source_scores,
            key=lambda source: (self.source_scores[source], -MATCH_SOURCES.index(source)),
        )


class JobDetails(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    description: str = ""
    required_skills: list[str] = Field(default_factory=list)
    experience_level: str = ""
    department: str | None = None
    location: str | None = None
    job_type: str = ""
    status: str = "active"


class Narrative(BaseModel):
    markdown: str
    summary: str = ""
    recommendations: list[dict[str, Any]] = Field(default_factory=list)


class WorkflowJobData(BaseModel):
    workflow_execution_id: str
    candidate_id: str
    rejected_application_id: str
    rejected_job_id: str
    cv_text: str


class IndexingJobData(BaseModel):
    job_ids: list[str]
    company_id: str


class ExecutionStatusView(BaseModel):
    id: str
    status: WorkflowStatus
    match_count: int = 0
    has_analysis: bool = False
    duration_ms: int | None = None
    error: str | None = None
    created_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    stage_timestamps: dict[str, str] = Field(default_factory=dict)


class ModelResponse(BaseModel):
    content: str
    raw: dict[str, Any] = Field(default_factory=dict)
