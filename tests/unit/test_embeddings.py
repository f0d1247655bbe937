from __future__ import annotations

import numpy as np
import pytest

from rematch.config import Settings
from rematch.errors import CollaboratorError
from rematch.llm.embeddings import (
    HASHING_MODEL_VERSION,
    EmbeddingClient,
    hashing_embedding,
    job_facet_texts,
    profile_facet_text,
)
from rematch.types import JobDetails


def test_hashing_embedding_is_deterministic_and_normalized() -> None:
    first = hashing_embedding("Python, SQL, FastAPI", 32)
    second = hashing_embedding("python sql fastapi", 32)

    assert first == second
    assert len(first) == 32
    assert np.linalg.norm(first) == pytest.approx(1.0)
    assert hashing_embedding("...", 8) == [0.0] * 8


def test_client_without_providers_uses_hashing() -> None:
    client = EmbeddingClient(Settings(openai_api_key="", local_llm_enabled=False, embedding_dimensions=16))

    vectors = client.embed_batch(["Python developer", "React developer"])

    assert client.model_version == HASHING_MODEL_VERSION
    assert len(vectors) == 2
    assert all(len(vector) == 16 for vector in vectors)


def test_embed_rejects_blank_text() -> None:
    client = EmbeddingClient(Settings(openai_api_key="", local_llm_enabled=False))
    with pytest.raises(CollaboratorError, match="embedding_provider failed"):
        client.embed("   ")


def test_job_and_profile_facets(sample_profile) -> None:
    job = JobDetails(
        id="job-1",
        title="Backend Engineer",
        description="Build APIs.",
        required_skills=["Python", "SQL"],
        experience_level="senior",
    )
    facets = job_facet_texts(job)

    assert set(facets) == {"full", "skills", "experience"}
    assert facets["skills"] == "Backend Engineer\n\nSkills: Python, SQL"
    assert "Experience Level: senior" in facets["experience"]
    assert profile_facet_text(sample_profile).startswith(sample_profile.summary)
    assert "Skills: Python, SQL" in profile_facet_text(sample_profile)


def test_embed_job_batches_all_three_facets() -> None:
    client = EmbeddingClient(Settings(openai_api_key="", local_llm_enabled=False, embedding_dimensions=8))
    job = JobDetails(id="job-1", title="Backend Engineer", required_skills=["Python"])

    vectors = client.embed_job(job)

    assert list(vectors) == ["full", "skills", "experience"]
    assert all(len(vector) == 8 for vector in vectors.values())
