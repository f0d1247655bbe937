from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

import numpy as np
from sqlalchemy.orm import Session

from rematch.db.repositories import Repository
from rematch.db.session import SessionLocal
from rematch.errors import CollaboratorError
from rematch.types import SOURCE_EMBEDDING_KIND, EmbeddingKind, MatchSource, RetrievalMatch

logger = logging.getLogger(__name__)

_KIND_SOURCE: dict[str, MatchSource] = {kind: source for source, kind in SOURCE_EMBEDDING_KIND.items()}


class VectorIndex:
    """Nearest-neighbour search over the ``job_embeddings`` table using cosine similarity."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    def store_job_embeddings(
        self,
        job_id: str,
        embeddings: dict[EmbeddingKind, list[float]],
        *,
        model_version: str,
    ) -> None:
        with self.session_factory() as session:
            repo = Repository(session)
            for kind, vector in embeddings.items():
                repo.upsert_job_embedding(
                    job_id=job_id,
                    embedding_type=kind,
                    embedding=[float(value) for value in vector],
                    model_version=model_version,
                )
        logger.info("Stored job embeddings job_id=%s kinds=%s", job_id, sorted(embeddings))

    def delete_job_embeddings(self, job_id: str) -> int:
        with self.session_factory() as session:
            removed = Repository(session).delete_job_embeddings(job_id)
        logger.info("Deleted job embeddings job_id=%s rows=%s", job_id, removed)
        return removed

    def search_similar(
        self,
        vector: list[float],
        kind: EmbeddingKind,
        *,
        threshold: float = 0.72,
        limit: int = 10,
        exclude_ids: Iterable[str] = (),
    ) -> list[RetrievalMatch]:
        query = np.asarray(vector, dtype=np.float64)
        query_norm = np.linalg.norm(query)
        if query.ndim != 1 or query_norm == 0:
            raise CollaboratorError("vector_index", "query vector is empty or zero")

        excluded = set(exclude_ids)
        try:
            with self.session_factory() as session:
                rows = Repository(session).list_embeddings_for_search(kind)
        except Exception as exc:
            raise CollaboratorError("vector_index", str(exc)) from exc

        candidates = []
        for embedding, job in rows:
            if job.id in excluded:
                continue
            stored = np.asarray(embedding.embedding, dtype=np.float64)
            if stored.shape != query.shape:
                logger.warning(
                    "Skipping embedding with mismatched dimensions job_id=%s kind=%s", job.id, kind
                )
                continue
            stored_norm = np.linalg.norm(stored)
            if stored_norm == 0:
                continue
            similarity = float(np.dot(query, stored) / (query_norm * stored_norm))
            similarity = min(max(similarity, 0.0), 1.0)
            if similarity >= threshold:
                candidates.append((similarity, job))

        candidates.sort(key=lambda item: (-item[0], item[1].id))
        matches = [
            RetrievalMatch(
                job_id=job.id,
                job_title=job.title,
                job_description=job.description,
                similarity_score=similarity,
                source=_KIND_SOURCE[kind],
            )
            for similarity, job in candidates[:limit]
        ]

        logger.info(
            "Similar jobs search kind=%s found=%s threshold=%s", kind, len(matches), threshold
        )
        return matches
