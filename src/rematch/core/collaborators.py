from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Protocol

from rematch.config import Settings, get_settings
from rematch.llm.embeddings import EmbeddingClient
from rematch.llm.router import LLMRouter
from rematch.types import ConsolidatedMatch, EmbeddingKind, JobDetails, Narrative, ParsedProfile, RetrievalMatch
from rematch.vector.index import VectorIndex


class CVParser(Protocol):
    parser_version: str

    async def parse_cv(self, cv_text: str) -> ParsedProfile: ...


class EmbeddingProvider(Protocol):
    async def embed(self, text: str) -> list[float]: ...


class SimilaritySearch(Protocol):
    async def search_similar(
        self,
        vector: list[float],
        kind: EmbeddingKind,
        *,
        threshold: float,
        limit: int,
        exclude_ids: list[str],
    ) -> list[RetrievalMatch]: ...


class NarrativeGenerator(Protocol):
    async def generate_narrative(
        self,
        *,
        candidate_name: str,
        profile: ParsedProfile,
        rejected_job: JobDetails | None,
        top_matches: list[ConsolidatedMatch],
        jobs: list[JobDetails],
    ) -> Narrative: ...


@dataclass(slots=True)
class Collaborators:
    parser: CVParser
    embedder: EmbeddingProvider
    index: SimilaritySearch
    narrator: NarrativeGenerator


class ThreadedRouter:
    """Runs the blocking LLM router calls off the event loop."""

    def __init__(self, router: LLMRouter):
        self.router = router

    @property
    def parser_version(self) -> str:
        return self.router.parser_version

    async def parse_cv(self, cv_text: str) -> ParsedProfile:
        return await asyncio.to_thread(self.router.parse_cv, cv_text)

    async def generate_narrative(self, **kwargs) -> Narrative:
        return await asyncio.to_thread(lambda: self.router.generate_narrative(**kwargs))


class ThreadedEmbedder:
    def __init__(self, client: EmbeddingClient):
        self.client = client

    async def embed(self, text: str) -> list[float]:
        return await asyncio.to_thread(self.client.embed, text)


class ThreadedIndex:
    def __init__(self, index: VectorIndex):
        self.index = index

    async def search_similar(
        self,
        vector: list[float],
        kind: EmbeddingKind,
        *,
        threshold: float,
        limit: int,
        exclude_ids: list[str],
    ) -> list[RetrievalMatch]:
        return await asyncio.to_thread(
            lambda: self.index.search_similar(
                vector, kind, threshold=threshold, limit=limit, exclude_ids=exclude_ids
            )
        )


def build_collaborators(settings: Settings | None = None) -> Collaborators:
    settings = settings or get_settings()
    router = ThreadedRouter(LLMRouter(settings))
    return Collaborators(
        parser=router,
        embedder=ThreadedEmbedder(EmbeddingClient(settings)),
        index=ThreadedIndex(VectorIndex()),
        narrator=router,
    )
