from __future__ import annotations

CV_PARSE_PROMPT = """
You are an HR assistant extracting structured information from a CV.
Return strict JSON with keys:
- summary: string, a 2-3 sentence professional summary highlighting key strengths
- skills: string, ALL technical and soft skills as one comma-separated string
- work_experience: string, chronological work history with companies, roles, durations
  and key responsibilities
- education: string, degrees, institutions and graduation years
- languages: string[]
- certifications: string[]

CV text:
{cv_text}
""".strip()

NARRATIVE_PROMPT = """
You are a senior recruitment consultant writing an internal memo about alternative
positions for a candidate who was rejected for "{rejected_job_title}".

Candidate: {candidate_name}

Professional summary:
{summary}

Skills:
{skills}

Work experience:
{work_experience}

Education:
{education}

Alternative positions found by the matching engine ({match_count}):

{job_details}

For each position cover: why it could be a good fit, skill alignment, experience
relevance, potential concerns, and a recommendation (Excellent/Good/Fair) with next
steps. Reference concrete details from the CV and the job descriptions.
Answer in Markdown only.
""".strip()

JOB_DETAIL_BLOCK = """
### Match {index}: {title}
**Department:** {department}
**Experience Level:** {experience_level}
**Match Score:** {score:.1f}%
**Match Sources:** {sources}

**Job Description:**
{description}

**Required Skills:**
{required_skills}
""".strip()
