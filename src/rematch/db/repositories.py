from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import and_, delete, select
from sqlalchemy.orm import Session

from rematch.db.base import utcnow
from rematch.db.models import (
    Application,
    Candidate,
    Company,
    Job,
    JobEmbedding,
    MatchResult,
    ParsedCVRecord,
    WorkflowExecution,
)
from rematch.errors import NotFoundError
from rematch.types import ConsolidatedMatch, ParsedProfile

TERMINAL_STATUSES = {"completed", "failed"}

_EXECUTION_FIELDS = {
    "status",
    "state_json",
    "final_analysis",
    "matched_job_ids",
    "error",
    "duration_ms",
    "started_at",
    "completed_at",
}


class Repository:
    def __init__(self, session: Session):
        self.session = session

    def create_company(self, name: str, domain: str | None = None) -> Company:
        company = Company(name=name, domain=domain)
        self.session.add(company)
        self.session.commit()
        self.session.refresh(company)
        return company

    def create_candidate(
        self,
        *,
        name: str,
        email: str = "",
        cv_text: str = "",
        company_id: str | None = None,
    ) -> Candidate:
        candidate = Candidate(name=name, email=email, cv_text=cv_text, company_id=company_id)
        self.session.add(candidate)
        self.session.commit()
        self.session.refresh(candidate)
        return candidate

    def get_candidate(self, candidate_id: str) -> Candidate | None:
        return self.session.get(Candidate, candidate_id)

    def create_job(
        self,
        *,
        title: str,
        description: str = "",
        required_skills: list[str] | None = None,
        experience_level: str = "mid",
        company_id: str | None = None,
        department: str | None = None,
        location: str | None = None,
        job_type: str = "full-time",
        status: str = "active",
    ) -> Job:
        job = Job(
            title=title,
            description=description,
            required_skills=required_skills or [],
            experience_level=experience_level,
            company_id=company_id,
            department=department,
            location=location,
            job_type=job_type,
            status=status,
        )
        self.session.add(job)
        self.session.commit()
        self.session.refresh(job)
        return job

    def get_job(self, job_id: str) -> Job | None:
        return self.session.get(Job, job_id)

    def get_jobs(self, job_ids: list[str]) -> list[Job]:
        if not job_ids:
            return []
        rows = self.session.scalars(select(Job).where(Job.id.in_(job_ids))).all()
        by_id = {row.id: row for row in rows}
        return [by_id[job_id] for job_id in job_ids if job_id in by_id]

    def list_active_jobs(self, company_id: str | None = None) -> list[Job]:
        statement = select(Job).where(Job.status == "active")
        if company_id is not None:
            statement = statement.where(Job.company_id == company_id)
        return list(self.session.scalars(statement.order_by(Job.created_at.asc(), Job.id.asc())).all())

    def create_application(self, *, candidate_id: str, job_id: str, status: str = "pending") -> Application:
        application = Application(candidate_id=candidate_id, job_id=job_id, status=status)
        self.session.add(application)
        self.session.commit()
        self.session.refresh(application)
        return application

    def get_application(self, application_id: str) -> Application | None:
        return self.session.get(Application, application_id)

    def mark_application_rejected(self, application_id: str, reason: str | None = None) -> Application:
        application = self.session.get(Application, application_id)
        if not application:
            raise NotFoundError(f"application {application_id} not found")
        application.status = "rejected"
        application.rejected_at = utcnow()
        application.rejection_reason = reason
        self.session.commit()
        self.session.refresh(application)
        return application

    def save_parsed_cv(self, *, candidate_id: str, profile: ParsedProfile, parser_version: str) -> ParsedCVRecord:
        record = ParsedCVRecord(
            candidate_id=candidate_id,
            summary=profile.summary,
            skills=profile.skills,
            work_experience=profile.work_experience,
            education=profile.education,
            languages=list(profile.languages),
            certifications=list(profile.certifications),
            parser_version=parser_version,
            validation_status=profile.validation_status,
        )
        self.session.add(record)
        self.session.commit()
        self.session.refresh(record)
        return record

    def upsert_job_embedding(
        self,
        *,
        job_id: str,
        embedding_type: str,
        embedding: list[float],
        model_version: str,
    ) -> JobEmbedding:
        existing = self.session.scalar(
            select(JobEmbedding).where(
                and_(JobEmbedding.job_id == job_id, JobEmbedding.embedding_type == embedding_type)
            )
        )
        if existing:
            existing.embedding = embedding
            existing.model_version = model_version
            row = existing
        else:
            row = JobEmbedding(
                job_id=job_id,
                embedding_type=embedding_type,
                embedding=embedding,
                model_version=model_version,
            )
            self.session.add(row)

        self.session.commit()
        self.session.refresh(row)
        return row

    def list_embeddings_for_search(self, embedding_type: str) -> list[tuple[JobEmbedding, Job]]:
        statement = (
            select(JobEmbedding, Job)
            .join(Job, Job.id == JobEmbedding.job_id)
            .where(and_(JobEmbedding.embedding_type == embedding_type, Job.status == "active"))
            .order_by(JobEmbedding.job_id.asc())
        )
        return [(row[0], row[1]) for row in self.session.execute(statement).all()]

    def delete_job_embeddings(self, job_id: str) -> int:
        result = self.session.execute(delete(JobEmbedding).where(JobEmbedding.job_id == job_id))
        self.session.commit()
        return result.rowcount or 0

    def create_execution(
        self,
        *,
        candidate_id: str,
        rejected_application_id: str,
        rejected_job_id: str,
        state_json: dict[str, Any],
        execution_id: str | None = None,
    ) -> WorkflowExecution:
        execution = WorkflowExecution(
            candidate_id=candidate_id,
            rejected_application_id=rejected_application_id,
            rejected_job_id=rejected_job_id,
            status="queued",
            state_json=state_json,
            matched_job_ids=[],
        )
        if execution_id:
            execution.id = execution_id
        self.session.add(execution)
        self.session.commit()
        self.session.refresh(execution)
        return execution

    def find_open_execution(self, candidate_id: str, rejected_application_id: str) -> WorkflowExecution | None:
        statement = (
            select(WorkflowExecution)
            .where(
                and_(
                    WorkflowExecution.candidate_id == candidate_id,
                    WorkflowExecution.rejected_application_id == rejected_application_id,
                    WorkflowExecution.status.not_in(TERMINAL_STATUSES),
                )
            )
            .order_by(WorkflowExecution.created_at.desc())
        )
        return self.session.scalar(statement)

    def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        return self.session.get(WorkflowExecution, execution_id)

    def list_executions(self, limit: int = 50) -> list[WorkflowExecution]:
        statement = select(WorkflowExecution).order_by(WorkflowExecution.created_at.desc()).limit(limit)
        return list(self.session.scalars(statement).all())

    def update_execution(self, execution_id: str, **fields: Any) -> WorkflowExecution:
        unknown = set(fields) - _EXECUTION_FIELDS
        if unknown:
            raise ValueError(f"unsupported execution fields {sorted(unknown)}")

        execution = self.session.get(WorkflowExecution, execution_id)
        if not execution:
            raise NotFoundError(f"workflow execution {execution_id} not found")

        for key, value in fields.items():
            setattr(execution, key, value)

        self.session.commit()
        self.session.refresh(execution)
        return execution

    def replace_match_results(self, execution_id: str, matches: list[ConsolidatedMatch]) -> list[MatchResult]:
        self.session.execute(delete(MatchResult).where(MatchResult.workflow_execution_id == execution_id))
        rows = []
        for match in matches:
            best = match.best_source
            row = MatchResult(
                workflow_execution_id=execution_id,
                job_id=match.job_id,
                similarity_score=match.source_scores[best],
                composite_score=match.composite_score,
                match_source=best,
                hit_count=match.hit_count,
                match_reasons=dict(match.source_scores),
                rank=match.rank,
            )
            self.session.add(row)
            rows.append(row)

        self.session.commit()
        return rows

    def list_match_results(self, execution_id: str) -> list[MatchResult]:
        statement = (
            select(MatchResult)
            .where(MatchResult.workflow_execution_id == execution_id)
            .order_by(MatchResult.rank.asc())
        )
        return list(self.session.scalars(statement).all())


def isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
