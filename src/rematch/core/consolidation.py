"""Merge the per-source retrieval lists into one ranked list.

Each job's composite score is the weighted mean of its similarities over the sources
that actually found it, boosted by 5% for every extra source and capped at 1.0.
Ordering is by boosted score, then hit count, then job id, so identical inputs always
yield identical output.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from rematch.types import MATCH_SOURCES, ConsolidatedMatch, MatchSource, RetrievalMatch

logger = logging.getLogger(__name__)

SOURCE_WEIGHTS: dict[MatchSource, float] = {
    "skills": 0.40,
    "experience": 0.35,
    "profile": 0.25,
}
MULTI_SOURCE_BOOST = 0.05
DEFAULT_LIMIT = 10
SCORE_PRECISION = 10


class _JobGroup:
    __slots__ = ("job_id", "job_title", "job_description", "scores")

    def __init__(self, match: RetrievalMatch):
        self.job_id = match.job_id
        self.job_title = match.job_title
        self.job_description = match.job_description
        self.scores: dict[MatchSource, float] = {}


def composite_score(source_scores: dict[MatchSource, float]) -> float:
    """Weighted mean renormalized over present sources, with the multi-source boost."""
    if not source_scores:
        return 0.0

    weighted_sum = 0.0
    total_weight = 0.0
    for source in MATCH_SOURCES:
        if source not in source_scores:
            continue
        weight = SOURCE_WEIGHTS[source]
        weighted_sum += source_scores[source] * weight
        total_weight += weight

    base = weighted_sum / total_weight if total_weight > 0 else 0.0
    boost = 1 + MULTI_SOURCE_BOOST * (len(source_scores) - 1)
    # Renormalization leaves float noise; equal scores must compare equal.
    return round(min(base * boost, 1.0), SCORE_PRECISION)


def consolidate(
    *match_lists: Iterable[RetrievalMatch],
    limit: int = DEFAULT_LIMIT,
) -> list[ConsolidatedMatch]:
    groups: dict[str, _JobGroup] = {}
    for matches in match_lists:
        for match in matches:
            group = groups.get(match.job_id)
            if group is None:
                group = groups[match.job_id] = _JobGroup(match)
            if match.source in group.scores:
                # Duplicate from the same source; keep the stronger signal.
                group.scores[match.source] = max(group.scores[match.source], match.similarity_score)
            else:
                group.scores[match.source] = match.similarity_score

    scored = [(composite_score(group.scores), len(group.scores), group) for group in groups.values()]
    scored.sort(key=lambda item: (-item[0], -item[1], item[2].job_id))

    consolidated = [
        ConsolidatedMatch(
            job_id=group.job_id,
            job_title=group.job_title,
            job_description=group.job_description,
            composite_score=score,
            hit_count=hit_count,
            source_scores={source: group.scores[source] for source in MATCH_SOURCES if source in group.scores},
            rank=index,
        )
        for index, (score, hit_count, group) in enumerate(scored[:limit], start=1)
    ]

    logger.info(
        "Consolidated matches unique_jobs=%s kept=%s top_score=%s",
        len(groups),
        len(consolidated),
        consolidated[0].composite_score if consolidated else None,
    )
    return consolidated
