from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from rematch.core.collaborators import EmbeddingProvider, SimilaritySearch
from rematch.llm.embeddings import profile_facet_text
from rematch.types import MATCH_SOURCES, SOURCE_EMBEDDING_KIND, MatchSource, ParsedProfile, RetrievalMatch

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RetrievalOutcome:
    matches: dict[MatchSource, list[RetrievalMatch]] = field(default_factory=dict)
    errors: dict[MatchSource, str] = field(default_factory=dict)

    @property
    def all_failed(self) -> bool:
        return len(self.errors) == len(MATCH_SOURCES)


def facet_text(profile: ParsedProfile, source: MatchSource) -> str:
    if source == "skills":
        return profile.skills
    if source == "experience":
        return profile.work_experience
    return profile_facet_text(profile)


class RetrievalStage:
    """Embeds the three CV facets and searches the matching index for each, concurrently."""

    def __init__(
        self,
        embedder: EmbeddingProvider,
        index: SimilaritySearch,
        *,
        threshold: float = 0.72,
        limit: int = 10,
    ):
        self.embedder = embedder
        self.index = index
        self.threshold = threshold
        self.limit = limit

    async def run(self, profile: ParsedProfile, *, exclude_job_ids: list[str]) -> RetrievalOutcome:
        results = await asyncio.gather(
            *(self._branch(profile, source, exclude_job_ids) for source in MATCH_SOURCES),
            return_exceptions=True,
        )

        outcome = RetrievalOutcome()
        for source, result in zip(MATCH_SOURCES, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning("Retrieval branch degraded source=%s error=%s", source, result)
                outcome.matches[source] = []
                outcome.errors[source] = str(result) or result.__class__.__name__
            else:
                outcome.matches[source] = result
        return outcome

    async def _branch(
        self, profile: ParsedProfile, source: MatchSource, exclude_job_ids: list[str]
    ) -> list[RetrievalMatch]:
        vector = await self.embedder.embed(facet_text(profile, source))
        matches = await self.index.search_similar(
            vector,
            SOURCE_EMBEDDING_KIND[source],
            threshold=self.threshold,
            limit=self.limit,
            exclude_ids=exclude_job_ids,
        )
        # Results are labelled by the branch that asked, whatever the index reports.
        matches = [m if m.source == source else m.model_copy(update={"source": source}) for m in matches]
        logger.info("Retrieval branch source=%s matches=%s", source, len(matches))
        return matches
