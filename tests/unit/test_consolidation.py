from __future__ import annotations

import pytest

from rematch.core.consolidation import composite_score, consolidate
from rematch.types import RetrievalMatch


def _match(job_id: str, source: str, score: float) -> RetrievalMatch:
    return RetrievalMatch(job_id=job_id, job_title=job_id.title(), similarity_score=score, source=source)


def test_three_source_job_gets_weighted_and_boosted_score() -> None:
    result = consolidate(
        [_match("job-1", "skills", 0.9)],
        [_match("job-1", "experience", 0.8)],
        [_match("job-1", "profile", 0.7)],
    )

    assert len(result) == 1
    assert result[0].hit_count == 3
    assert result[0].composite_score == pytest.approx(0.8965)
    assert result[0].source_scores == {"skills": 0.9, "experience": 0.8, "profile": 0.7}


def test_single_source_job_is_renormalized_over_its_own_weight() -> None:
    result = consolidate([_match("job-1", "skills", 0.75)], [], [])

    assert result[0].composite_score == pytest.approx(0.75)
    assert result[0].hit_count == 1
    assert result[0].rank == 1


def test_equal_scores_rank_higher_hit_count_first() -> None:
    # Both reach the 1.0 cap; the single-source job has the smaller id.
    result = consolidate(
        [_match("job-b", "skills", 0.95), _match("job-a", "skills", 1.0)],
        [_match("job-b", "experience", 0.95)],
        [_match("job-b", "profile", 0.95)],
    )

    assert [m.composite_score for m in result] == [1.0, 1.0]
    assert [m.job_id for m in result] == ["job-b", "job-a"]
    assert [m.hit_count for m in result] == [3, 1]


def test_consolidation_is_deterministic_with_dense_ranks() -> None:
    skills = [_match(f"job-{i:02d}", "skills", 0.72 + i * 0.01) for i in range(12)]
    experience = [_match(f"job-{i:02d}", "experience", 0.80) for i in range(0, 12, 3)]
    profile = [_match("job-05", "profile", 0.9), _match("job-99", "profile", 0.74)]

    first = consolidate(skills, experience, profile)
    second = consolidate(list(reversed(skills)), experience, list(reversed(profile)))

    assert [m.model_dump() for m in first] == [m.model_dump() for m in second]
    assert len(first) == 10
    assert [m.rank for m in first] == list(range(1, 11))
    assert all(0.0 <= m.composite_score <= 1.0 for m in first)
    scores = [m.composite_score for m in first]
    assert scores == sorted(scores, reverse=True)


def test_duplicate_entries_from_one_source_keep_the_stronger_signal() -> None:
    result = consolidate([_match("job-1", "skills", 0.73), _match("job-1", "skills", 0.81)])

    assert result[0].hit_count == 1
    assert result[0].source_scores == {"skills": 0.81}


def test_empty_inputs_produce_empty_list() -> None:
    assert consolidate([], [], []) == []
    assert composite_score({}) == 0.0


def test_best_source_prefers_highest_similarity_then_source_order() -> None:
    result = consolidate(
        [_match("job-1", "skills", 0.8)],
        [_match("job-1", "experience", 0.8)],
        [_match("job-1", "profile", 0.75)],
    )

    assert result[0].best_source == "skills"


def test_renormalized_single_source_ties_with_boosted_multi_source_job() -> None:
    boosted_to_080 = 0.8 / 1.1
    result = consolidate(
        [_match("job-a", "skills", 0.8), _match("job-z", "skills", boosted_to_080)],
        [_match("job-z", "experience", boosted_to_080)],
        [_match("job-z", "profile", boosted_to_080)],
    )

    assert [m.composite_score for m in result] == [0.8, 0.8]
    assert [m.job_id for m in result] == ["job-z", "job-a"]
    assert [m.hit_count for m in result] == [3, 1]
