from __future__ import annotations

import hashlib
import logging
import re

import numpy as np

from rematch.config import Settings, get_settings
from rematch.errors import CollaboratorError
from rematch.llm.providers import ProviderPool
from rematch.types import EmbeddingKind, JobDetails, ParsedProfile

logger = logging.getLogger(__name__)

HASHING_MODEL_VERSION = "feature-hashing-v1"
_TOKEN_PATTERN = re.compile(r"[a-z0-9+#.]+")


def hashing_embedding(text: str, dimensions: int) -> list[float]:
    """Deterministic bag-of-words embedding via signed feature hashing."""
    vector = np.zeros(dimensions, dtype=np.float64)
    for token in _TOKEN_PATTERN.findall(text.lower()):
        token = token.strip(".")
        if not token:
            continue
        digest = hashlib.sha256(token.encode("utf-8")).digest()
        index = int.from_bytes(digest[:8], "big") % dimensions
        sign = 1.0 if digest[8] % 2 == 0 else -1.0
        vector[index] += sign

    norm = np.linalg.norm(vector)
    if norm == 0:
        return vector.tolist()
    return (vector / norm).tolist()


def job_facet_texts(job: JobDetails) -> dict[EmbeddingKind, str]:
    skills = ", ".join(job.required_skills)
    return {
        "full": f"{job.title}\n\n{job.description}\n\nRequired Skills: {skills}",
        "skills": f"{job.title}\n\nSkills: {skills}",
        "experience": f"{job.title}\n\nExperience Level: {job.experience_level}\n\n{job.description}",
    }


def profile_facet_text(profile: ParsedProfile) -> str:
    return profile.full_profile_text()


class EmbeddingClient:
    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.pool = ProviderPool(self.settings)

    @property
    def model_version(self) -> str:
        providers = self.pool.available()
        if not providers:
            return HASHING_MODEL_VERSION
        return providers[0].config.embedding_model

    def embed(self, text: str) -> list[float]:
        if not text.strip():
            raise CollaboratorError("embedding_provider", "cannot embed empty text")
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        providers = self.pool.available()
        if not providers:
            return [hashing_embedding(text, self.settings.embedding_dimensions) for text in texts]

        provider = providers[0]
        dimensions = self.settings.embedding_dimensions if provider.config.name == "openai" else None
        size = max(1, self.settings.embedding_batch_size)
        vectors: list[list[float]] = []
        for start in range(0, len(texts), size):
            batch = texts[start : start + size]
            try:
                vectors.extend(provider.embed(batch, dimensions=dimensions))
            except Exception as exc:
                logger.error("Embedding batch failed provider=%s size=%s error=%s", provider.config.name, len(batch), exc)
                raise CollaboratorError("embedding_provider", str(exc)) from exc
            logger.debug("Embedded batch %s (%s texts)", start // size + 1, len(batch))
        return vectors

    def embed_job(self, job: JobDetails) -> dict[EmbeddingKind, list[float]]:
        facets = job_facet_texts(job)
        kinds = list(facets)
        vectors = self.embed_batch([facets[kind] for kind in kinds])
        return dict(zip(kinds, vectors))
