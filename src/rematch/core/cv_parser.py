from __future__ import annotations

import re
from dataclasses import dataclass, field

from rematch.types import ParsedProfile, ProfileQualityReport

_HEADING_PATTERN = re.compile(r"^\s*#*\s*([A-Za-z][A-Za-z &/]{2,40}?)\s*:?\s*$")
_INLINE_HEADING_PATTERN = re.compile(r"^\s*([A-Za-z][A-Za-z &/]{2,40}?)\s*:\s+(.+)$")
_BULLET_PATTERN = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+")

_SECTION_ALIASES = {
    "summary": "summary",
    "profile": "summary",
    "professional_summary": "summary",
    "about": "summary",
    "about_me": "summary",
    "objective": "summary",
    "skills": "skills",
    "technical_skills": "skills",
    "core_competencies": "skills",
    "competencies": "skills",
    "experience": "work_experience",
    "work_experience": "work_experience",
    "professional_experience": "work_experience",
    "employment_history": "work_experience",
    "work_history": "work_experience",
    "education": "education",
    "academic_background": "education",
    "languages": "languages",
    "certifications": "certifications",
    "certificates": "certifications",
    "licenses_certifications": "certifications",
}


@dataclass(slots=True)
class CVSections:
    sections: dict[str, list[str]] = field(default_factory=dict)
    preamble: list[str] = field(default_factory=list)

    def text(self, name: str, sep: str = "\n") -> str:
        return sep.join(self.sections.get(name, [])).strip()


def canonical_section_name(name: str) -> str | None:
    value = re.sub(r"[^a-z0-9]+", "_", name.strip().lower()).strip("_")
    return _SECTION_ALIASES.get(value)


def split_sections(raw_text: str) -> CVSections:
    result = CVSections()
    current: str | None = None

    for raw_line in raw_text.splitlines():
        line = raw_line.strip()
        if not line:
            continue

        heading = _HEADING_PATTERN.match(line)
        if heading and canonical_section_name(heading.group(1)):
            current = canonical_section_name(heading.group(1))
            result.sections.setdefault(current, [])
            continue

        inline = _INLINE_HEADING_PATTERN.match(line)
        if inline and canonical_section_name(inline.group(1)):
            current = canonical_section_name(inline.group(1))
            result.sections.setdefault(current, []).append(inline.group(2).strip())
            continue

        cleaned = _BULLET_PATTERN.sub("", line)
        if current is None:
            result.preamble.append(cleaned)
        else:
            result.sections[current].append(cleaned)

    return result


def _split_list(lines: list[str]) -> list[str]:
    items: list[str] = []
    for line in lines:
        for part in re.split(r"[,;|]", line):
            part = part.strip()
            if part and part not in items:
                items.append(part)
    return items


def heuristic_parse_profile(raw_text: str) -> ParsedProfile:
    """Section-based extraction used when no language model is configured.

    Raises ``ValueError`` (pydantic) when the CV lacks the mandatory sections.
    """
    parsed = split_sections(raw_text)

    summary = parsed.text("summary", sep=" ")
    if not summary:
        summary = " ".join(parsed.preamble[:3])

    skills = ", ".join(_split_list(parsed.sections.get("skills", [])))
    profile = ParsedProfile(
        summary=summary,
        skills=skills,
        work_experience=parsed.text("work_experience"),
        education=parsed.text("education"),
        languages=_split_list(parsed.sections.get("languages", [])),
        certifications=[line for line in parsed.sections.get("certifications", []) if line],
    )
    report = validate_parsed_profile(profile)
    return profile.model_copy(update={"validation_status": report.status})


def validate_parsed_profile(profile: ParsedProfile) -> ProfileQualityReport:
    issues: list[str] = []

    if len(profile.summary) < 50:
        issues.append("Summary is too short")

    skills = [item.strip() for item in profile.skills.split(",") if item.strip()]
    if len(skills) < 3:
        issues.append("Too few skills extracted")

    if len(profile.work_experience) < 50:
        issues.append("Work experience is too brief")

    if len(profile.education) < 10:
        issues.append("Education information is incomplete")

    if not issues:
        status = "valid"
    elif len(issues) <= 2:
        status = "needs_review"
    else:
        status = "invalid"

    return ProfileQualityReport(is_valid=not issues, issues=issues, status=status)
