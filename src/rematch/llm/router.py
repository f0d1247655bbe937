from __future__ import annotations

import logging
from typing import Any

from tenacity import Retrying, stop_after_attempt, wait_exponential

from rematch.config import Settings, get_settings
from rematch.core.cv_parser import heuristic_parse_profile, validate_parsed_profile
from rematch.errors import CollaboratorError
from rematch.llm.prompts import CV_PARSE_PROMPT, JOB_DETAIL_BLOCK, NARRATIVE_PROMPT
from rematch.llm.providers import ProviderPool
from rematch.types import ConsolidatedMatch, JobDetails, Narrative, ParsedProfile

logger = logging.getLogger(__name__)

PARSER_VERSION_HEURISTIC = "heuristic-sections"


class LLMRouter:
    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.pool = ProviderPool(self.settings)

    @property
    def parser_version(self) -> str:
        providers = self.pool.available()
        if not providers:
            return PARSER_VERSION_HEURISTIC
        return providers[0].config.model_for("parse")

    def parse_cv(self, cv_text: str) -> ParsedProfile:
        if not cv_text.strip():
            raise CollaboratorError("cv_parser", "CV text is empty")

        if not self.pool.available():
            try:
                return heuristic_parse_profile(cv_text)
            except ValueError as exc:
                raise CollaboratorError("cv_parser", f"heuristic parse rejected CV: {exc}") from exc

        prompt = CV_PARSE_PROMPT.format(cv_text=cv_text[:30000])
        retrying = Retrying(
            stop=stop_after_attempt(max(1, self.settings.cv_parse_max_attempts)),
            wait=wait_exponential(multiplier=self.settings.cv_parse_retry_wait_sec, max=10),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    logger.info(
                        "Parsing CV attempt=%s/%s length=%s",
                        attempt.retry_state.attempt_number,
                        self.settings.cv_parse_max_attempts,
                        len(cv_text),
                    )
                    data = self._call_json(task="parse", prompt=prompt)
                    profile = ParsedProfile.model_validate(data)
        except Exception as exc:
            logger.error("CV parsing failed after retries: %s", exc)
            raise CollaboratorError("cv_parser", str(exc)) from exc

        report = validate_parsed_profile(profile)
        logger.info("CV parsed validation_status=%s issues=%s", report.status, report.issues)
        return profile.model_copy(update={"validation_status": report.status})

    def generate_narrative(
        self,
        *,
        candidate_name: str,
        profile: ParsedProfile,
        rejected_job: JobDetails | None,
        top_matches: list[ConsolidatedMatch],
        jobs: list[JobDetails],
    ) -> Narrative:
        recommendations = [
            {
                "job_id": match.job_id,
                "reasoning": f"Based on {' and '.join(match.source_scores)} matching",
                "fit_score": match.composite_score,
            }
            for match in top_matches
        ]

        if not self.pool.available():
            markdown = heuristic_narrative(
                candidate_name=candidate_name,
                profile=profile,
                rejected_job=rejected_job,
                top_matches=top_matches,
                jobs=jobs,
            )
            return Narrative(markdown=markdown, summary=extract_summary(markdown), recommendations=recommendations)

        prompt = NARRATIVE_PROMPT.format(
            rejected_job_title=rejected_job.title if rejected_job else "an open position",
            candidate_name=candidate_name,
            summary=profile.summary,
            skills=profile.skills,
            work_experience=profile.work_experience,
            education=profile.education,
            match_count=len(top_matches),
            job_details=render_job_details(top_matches, jobs),
        )
        try:
            markdown = self._call_text(task="analyze", prompt=prompt)
        except Exception as exc:
            raise CollaboratorError("narrative_generator", str(exc)) from exc

        if not markdown.strip():
            raise CollaboratorError("narrative_generator", "model returned an empty report")

        logger.info("Narrative generated matches=%s length=%s", len(top_matches), len(markdown))
        return Narrative(markdown=markdown, summary=extract_summary(markdown), recommendations=recommendations)

    def _call_json(self, *, task: str, prompt: str) -> dict[str, Any]:
        last_error: Exception | None = None
        for provider in self.pool.available():
            try:
                data = provider.complete_json(model=provider.config.model_for(task), prompt=prompt)
            except Exception as exc:
                logger.warning("LLM JSON call failed provider=%s error=%s", provider.config.name, exc)
                last_error = exc
                continue
            if data:
                return data
            last_error = ValueError(f"provider {provider.config.name} returned no JSON object")
        raise last_error or RuntimeError("no language model provider is configured")

    def _call_text(self, *, task: str, prompt: str) -> str:
        last_error: Exception | None = None
        for provider in self.pool.available():
            try:
                return provider.complete_text(model=provider.config.model_for(task), prompt=prompt).content
            except Exception as exc:
                logger.warning("LLM text call failed provider=%s error=%s", provider.config.name, exc)
                last_error = exc
        raise last_error or RuntimeError("no language model provider is configured")


def extract_summary(markdown: str) -> str:
    lines = [line.strip() for line in markdown.splitlines() if line.strip()]
    return " ".join(lines[:3])[:250] + "..."


def render_job_details(top_matches: list[ConsolidatedMatch], jobs: list[JobDetails]) -> str:
    jobs_by_id = {job.id: job for job in jobs}
    blocks = []
    for index, match in enumerate(top_matches, start=1):
        job = jobs_by_id.get(match.job_id)
        blocks.append(
            JOB_DETAIL_BLOCK.format(
                index=index,
                title=job.title if job else match.job_title,
                department=(job.department if job else None) or "Not specified",
                experience_level=job.experience_level if job else "Not specified",
                score=match.composite_score * 100,
                sources=", ".join(match.source_scores),
                description=job.description if job else match.job_description,
                required_skills=", ".join(job.required_skills) if job else "",
            )
        )
    return "\n\n---\n\n".join(blocks)


def heuristic_narrative(
    *,
    candidate_name: str,
    profile: ParsedProfile,
    rejected_job: JobDetails | None,
    top_matches: list[ConsolidatedMatch],
    jobs: list[JobDetails],
) -> str:
    jobs_by_id = {job.id: job for job in jobs}
    candidate_skills = {item.strip().lower() for item in profile.skills.split(",") if item.strip()}

    lines = [
        f"# Alternative positions for {candidate_name}",
        "",
        (
            f"{candidate_name} was not selected for {rejected_job.title if rejected_job else 'the original role'}. "
            f"The matching engine found {len(top_matches)} alternative position(s) worth reviewing."
        ),
        "",
    ]
    for match in top_matches:
        job = jobs_by_id.get(match.job_id)
        title = job.title if job else match.job_title
        required = job.required_skills if job else []
        overlap = [skill for skill in required if skill.strip().lower() in candidate_skills]
        missing = [skill for skill in required if skill.strip().lower() not in candidate_skills]
        if match.composite_score >= 0.85:
            rating = "Excellent"
        elif match.composite_score >= 0.78:
            rating = "Good"
        else:
            rating = "Fair"

        lines.extend(
            [
                f"## {match.rank}. {title}",
                f"- Match score: {match.composite_score * 100:.1f}% ({match.hit_count} signal(s): "
                f"{', '.join(match.source_scores)})",
                f"- Skill alignment: {', '.join(overlap) if overlap else 'no direct overlap listed'}",
                f"- Potential gaps: {', '.join(missing) if missing else 'none identified'}",
                f"- Recommendation: {rating}",
                "",
            ]
        )
    return "\n".join(lines).strip()
