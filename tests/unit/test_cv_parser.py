from __future__ import annotations

import pytest

from rematch.core.cv_parser import (
    canonical_section_name,
    heuristic_parse_profile,
    split_sections,
    validate_parsed_profile,
)
from rematch.types import ParsedProfile


def test_canonical_section_names_cover_common_headings() -> None:
    assert canonical_section_name("Professional Experience") == "work_experience"
    assert canonical_section_name("TECHNICAL SKILLS") == "skills"
    assert canonical_section_name("About me") == "summary"
    assert canonical_section_name("Hobbies") is None


def test_split_sections_handles_inline_headings_and_bullets() -> None:
    sections = split_sections("Jane Doe\nSkills: Python, SQL\nEducation\n- BSc Physics, 2015\n")

    assert sections.preamble == ["Jane Doe"]
    assert sections.text("skills") == "Python, SQL"
    assert sections.text("education") == "BSc Physics, 2015"


def test_heuristic_parse_extracts_profile(sample_cv: str) -> None:
    profile = heuristic_parse_profile(sample_cv)

    assert profile.summary.startswith("Backend engineer")
    assert profile.skills == "Python, SQL, FastAPI, PostgreSQL, Docker"
    assert "Senior Engineer at Acme" in profile.work_experience
    assert profile.education == "BSc Computer Science, University of Lagos"
    assert profile.languages == ["English", "French"]
    assert profile.validation_status == "valid"


def test_heuristic_parse_rejects_cv_without_experience() -> None:
    with pytest.raises(ValueError):
        heuristic_parse_profile("Summary\nA short note about me and my career.\nSkills\nPython, SQL\n")


def _profile(summary: str, skills: str, experience: str, education: str) -> ParsedProfile:
    return ParsedProfile(summary=summary, skills=skills, work_experience=experience, education=education)


def test_quality_report_is_valid_when_every_section_is_rich() -> None:
    report = validate_parsed_profile(
        _profile(
            "Backend engineer with eight years of experience building data platforms.",
            "Python, SQL, Docker",
            "Senior Engineer at Acme building event-driven services and data pipelines.",
            "BSc Computer Science",
        )
    )

    assert report.status == "valid"
    assert report.is_valid is True
    assert report.issues == []


def test_quality_report_needs_review_for_one_or_two_issues() -> None:
    report = validate_parsed_profile(
        _profile(
            "Short summary here.",
            "Python, SQL",
            "Senior Engineer at Acme building event-driven services and data pipelines.",
            "BSc Computer Science",
        )
    )

    assert report.status == "needs_review"
    assert report.issues == ["Summary is too short", "Too few skills extracted"]


def test_quality_report_is_invalid_for_three_or_more_issues() -> None:
    report = validate_parsed_profile(_profile("Short summary here.", "Python", "Engineer at Acme", "BSc CS"))

    assert report.status == "invalid"
    assert len(report.issues) == 4


def test_parsed_profile_requires_minimum_field_lengths() -> None:
    with pytest.raises(ValueError):
        _profile("too short", "Python", "Engineer at Acme", "BSc CS")
