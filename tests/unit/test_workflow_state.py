from __future__ import annotations

from datetime import UTC, datetime

import pytest

from rematch.core.state import (
    NO_MATCHES_ANALYSIS,
    StageOutput,
    apply_stage,
    check_transition,
    create_initial_state,
)
from rematch.errors import InvalidTransitionError


def _state(**overrides):
    return create_initial_state(
        candidate_id="cand-1",
        rejected_application_id="app-1",
        rejected_job_id="job-1",
        raw_cv="Raw CV text",
        **overrides,
    )


def test_forward_transitions_are_allowed() -> None:
    for current, target in [
        ("queued", "parsing"),
        ("parsing", "retrieving"),
        ("retrieving", "consolidating"),
        ("consolidating", "analyzing"),
        ("consolidating", "completed"),
        ("analyzing", "completed"),
    ]:
        check_transition(current, target)


@pytest.mark.parametrize("current", ["queued", "parsing", "retrieving", "consolidating", "analyzing"])
def test_any_non_terminal_state_can_fail(current: str) -> None:
    check_transition(current, "failed")


@pytest.mark.parametrize(
    ("current", "target"),
    [
        ("queued", "retrieving"),
        ("parsing", "analyzing"),
        ("analyzing", "consolidating"),
        ("completed", "failed"),
        ("failed", "parsing"),
        ("completed", "parsing"),
    ],
)
def test_illegal_transitions_raise(current: str, target: str) -> None:
    with pytest.raises(InvalidTransitionError):
        check_transition(current, target)


def test_apply_stage_returns_new_state_and_leaves_original_untouched(sample_profile) -> None:
    state = _state()
    parsing = apply_stage(state, StageOutput(stage="parsing", status="parsing", attempt_count=1))
    now = datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)
    retrieving = apply_stage(
        parsing,
        StageOutput(stage="retrieving", status="retrieving", parsed_profile=sample_profile),
        now=now,
    )

    assert state.status == "queued"
    assert state.parsed_profile is None
    assert parsing.attempt_count == 1
    assert retrieving.status == "retrieving"
    assert retrieving.current_stage == "retrieving"
    assert retrieving.parsed_profile == sample_profile
    assert retrieving.stage_timestamps["retrieving"] == now.isoformat()
    assert set(retrieving.stage_timestamps) == {"parsing", "retrieving"}


def test_apply_stage_rejects_skipping_a_stage() -> None:
    with pytest.raises(InvalidTransitionError, match="queued -> completed"):
        apply_stage(_state(), StageOutput(stage="completed", status="completed", final_analysis=NO_MATCHES_ANALYSIS))


def test_restart_from_intermediate_status_goes_back_to_parsing() -> None:
    state = _state(status="consolidating", attempt_count=1)
    restarted = apply_stage(state, StageOutput(stage="parsing", status="parsing", attempt_count=2))

    assert restarted.status == "parsing"
    assert restarted.attempt_count == 2


def test_snapshot_is_json_safe_and_omits_raw_cv(sample_profile) -> None:
    state = apply_stage(
        apply_stage(_state(), StageOutput(stage="parsing", status="parsing")),
        StageOutput(stage="retrieving", status="retrieving", parsed_profile=sample_profile),
    )
    snapshot = state.snapshot()

    assert "raw_cv" not in snapshot
    assert snapshot["parsed_profile"]["skills"] == sample_profile.skills
    assert snapshot["status"] == "retrieving"
    assert state.is_terminal is False
