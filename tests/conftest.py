from __future__ import annotations

import os
import tempfile

_TEST_DIR = tempfile.mkdtemp(prefix="rematch-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_DIR}/rematch-test.db"
os.environ["DATA_DIR"] = _TEST_DIR
os.environ["OPENAI_API_KEY"] = ""
os.environ["LOCAL_LLM_ENABLED"] = "false"
os.environ["APP_ENV"] = "test"

from dataclasses import dataclass  # noqa: E402

import pytest  # noqa: E402

from rematch.config import Settings  # noqa: E402
from rematch.db.base import Base  # noqa: E402
from rematch.db.repositories import Repository  # noqa: E402
from rematch.db.session import SessionLocal, engine  # noqa: E402
from rematch.errors import CollaboratorError  # noqa: E402
from rematch.types import Narrative, ParsedProfile, RetrievalMatch  # noqa: E402

SAMPLE_CV = """Jane Doe
Summary
Backend engineer with eight years of experience building data platforms and APIs in Python.
Skills
Python, SQL, FastAPI, PostgreSQL, Docker
Experience
- Senior Engineer at Acme (2019-2024) built event-driven services and data pipelines.
- Engineer at Beta (2016-2019) maintained REST APIs for the billing team.
Education
BSc Computer Science, University of Lagos
Languages
English, French
"""


@pytest.fixture(autouse=True)
def reset_db() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def sample_cv() -> str:
    return SAMPLE_CV


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        openai_api_key="",
        local_llm_enabled=False,
        match_threshold=0.1,
        queue_backoff_ms=1,
        queue_poll_interval_sec=0.01,
        queue_rate_limit_max=100,
        queue_rate_limit_window_sec=1.0,
        embedding_dimensions=64,
    )


@pytest.fixture
def sample_profile() -> ParsedProfile:
    return ParsedProfile(
        summary="Backend engineer with eight years of experience building data platforms.",
        skills="Python, SQL, FastAPI, PostgreSQL",
        work_experience="Senior Engineer at Acme building event-driven services and pipelines.",
        education="BSc Computer Science",
    )


@dataclass
class Seed:
    company_id: str
    candidate_id: str
    application_id: str
    rejected_job_id: str
    job_ids: list[str]


@pytest.fixture
def seed() -> Seed:
    with SessionLocal() as session:
        repo = Repository(session)
        company = repo.create_company("Acme Talent")
        candidate = repo.create_candidate(
            name="Jane Doe", email="jane@example.com", cv_text=SAMPLE_CV, company_id=company.id
        )
        rejected = repo.create_job(
            title="Staff Data Engineer",
            description="Own the data platform.",
            required_skills=["Python", "Spark"],
            experience_level="senior",
            company_id=company.id,
        )
        jobs = [
            repo.create_job(
                title="Backend Engineer",
                description="Build APIs with FastAPI and PostgreSQL.",
                required_skills=["Python", "FastAPI", "PostgreSQL"],
                experience_level="senior",
                company_id=company.id,
                department="Platform",
            ),
            repo.create_job(
                title="Data Engineer",
                description="Design SQL pipelines and event-driven services.",
                required_skills=["Python", "SQL", "Airflow"],
                experience_level="mid",
                company_id=company.id,
            ),
            repo.create_job(
                title="Frontend Engineer",
                description="React and TypeScript user interfaces.",
                required_skills=["React", "TypeScript"],
                experience_level="mid",
                company_id=company.id,
            ),
        ]
        application = repo.create_application(candidate_id=candidate.id, job_id=rejected.id)
        return Seed(
            company_id=company.id,
            candidate_id=candidate.id,
            application_id=application.id,
            rejected_job_id=rejected.id,
            job_ids=[job.id for job in jobs],
        )


class FakeParser:
    parser_version = "fake-parser"

    def __init__(self, profile: ParsedProfile | None = None, errors: list[Exception] | None = None):
        self.profile = profile
        self.errors = list(errors or [])
        self.calls = 0

    async def parse_cv(self, cv_text: str) -> ParsedProfile:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.profile


class FakeEmbedder:
    def __init__(self, fail_on: set[str] | None = None):
        self.fail_on = fail_on or set()
        self.texts: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.texts.append(text)
        if text in self.fail_on:
            raise CollaboratorError("embedding_provider", "embedding backend unavailable")
        return [1.0, 0.0, 0.0]


class FakeIndex:
    def __init__(self, results: dict[str, list[tuple[str, float]]] | None = None, fail_kinds: set[str] | None = None):
        self.results = results or {}
        self.fail_kinds = fail_kinds or set()
        self.calls: list[dict] = []

    async def search_similar(self, vector, kind, *, threshold, limit, exclude_ids):
        self.calls.append({"kind": kind, "threshold": threshold, "limit": limit, "exclude_ids": list(exclude_ids)})
        if kind in self.fail_kinds:
            raise CollaboratorError("vector_index", f"{kind} index offline")
        source = "profile" if kind == "full" else kind
        return [
            RetrievalMatch(job_id=job_id, job_title=f"Job {job_id[:4]}", similarity_score=score, source=source)
            for job_id, score in self.results.get(kind, [])
            if job_id not in exclude_ids
        ][:limit]


class FakeNarrator:
    def __init__(self, errors: list[Exception] | None = None, markdown: str = "# Report\nStrong fit.\nRecommend."):
        self.errors = list(errors or [])
        self.markdown = markdown
        self.calls: list[dict] = []

    async def generate_narrative(self, **kwargs) -> Narrative:
        self.calls.append(kwargs)
        if self.errors:
            raise self.errors.pop(0)
        recommendations = [{"job_id": match.job_id, "fit_score": match.composite_score} for match in kwargs["top_matches"]]
        return Narrative(markdown=self.markdown, summary="Strong fit...", recommendations=recommendations)


@pytest.fixture
def fakes():
    return {
        "parser": FakeParser,
        "embedder": FakeEmbedder,
        "index": FakeIndex,
        "narrator": FakeNarrator,
    }
