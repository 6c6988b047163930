"""Prompt Registry for LLM calls.

Central management of all prompt templates used by job analysis and bullet
scoring. PROMPT_VERSION is part of the job analysis cache key, so bump it
whenever a template changes in a way that affects model output.
"""
from __future__ import annotations

from dataclasses import dataclass

PROMPT_VERSION = "2"


@dataclass
class PromptTemplate:
    """A prompt template with metadata."""

    key: str
    category: str
    name: str
    description: str
    template: str
    variables: list[str]
    temperature: float
    max_tokens: int

    def render(self, **values: str) -> str:
        missing = [v for v in self.variables if v not in values]
        if missing:
            raise KeyError(f"Prompt '{self.key}' missing variables: {missing}")
        return self.template.format(**values)


DEFAULT_PROMPTS: dict[str, dict] = {
    "job_analysis_system": {
        "category": "analysis",
        "name": "Job analysis (system)",
        "description": "System message for the structured job analysis call.",
        "template": """You must return JSON matching this shape. No extra text.
{{
  "extractedSkills": ["8-12 key skills mentioned or implied in the job posting"],
  "keyRequirements": ["5-8 essential requirements for the role"],
  "roleLevel": "entry | mid | senior | executive",
  "functionType": "Primary function area (e.g. Product Management, Strategy, Engineering)",
  "companyContext": "Brief description of company/industry context if mentioned"
}}""",
        "variables": [],
        "temperature": 0.0,
        "max_tokens": 800,
    },
    "job_analysis": {
        "category": "analysis",
        "name": "Job analysis",
        "description": "Extracts skills, requirements, role level and function type from a job posting. "
        "Called once per distinct job posting, results are cached.",
        "template": """Analyze this job posting and extract structured information:

JOB TITLE: {title}

JOB DESCRIPTION:
{description}

Extract key skills, requirements, role level, function type, and company context. Focus on:
- Technical and soft skills that would be valuable
- Experience requirements and qualifications
- Responsibilities that indicate required capabilities
- Leadership, analytical, communication, and domain-specific skills
- Consider the role title context when interpreting requirements""",
        "variables": ["title", "description"],
        "temperature": 0.0,
        "max_tokens": 800,
    },
    "batch_scoring_system": {
        "category": "scoring",
        "name": "Bullet scoring (system)",
        "description": "System message for batch relevance scoring.",
        "template": """You are a resume scoring assistant. For each bullet point, return a score from 1.0 to 10.0 based on relevance to the job.

STRICT JSON FORMAT REQUIRED - no markdown, no extra text:
{{
  "bullets": [
    {{"id": "bullet_id", "score": 7.5, "reasoning": "brief reason", "skill_matches": ["skill1"], "quality_flags": ["quantified"]}}
  ]
}}""",
        "variables": [],
        "temperature": 0.1,
        "max_tokens": 400,
    },
    "batch_scoring": {
        "category": "scoring",
        "name": "Bullet scoring",
        "description": "Scores one batch of bullets against the analyzed job. "
        "Bullets are listed with their ids so the response can be matched back.",
        "template": """JOB: {title}
SKILLS: {skills}

DESCRIPTION: {description}

RATE THESE BULLETS (return exact JSON format):
{bullets}

Return JSON with {count} items using exact IDs provided.""",
        "variables": ["title", "skills", "description", "bullets", "count"],
        "temperature": 0.1,
        "max_tokens": 400,
    },
}


def get_prompt(key: str) -> PromptTemplate | None:
    """Get a prompt template by key, or None if the key doesn't exist."""
    if key not in DEFAULT_PROMPTS:
        return None

    data = DEFAULT_PROMPTS[key]
    return PromptTemplate(
        key=key,
        category=data["category"],
        name=data["name"],
        description=data["description"],
        template=data["template"],
        variables=data["variables"],
        temperature=data["temperature"],
        max_tokens=data["max_tokens"],
    )


def render_prompt(key: str, **values: str) -> str:
    prompt = get_prompt(key)
    if prompt is None:
        raise KeyError(f"Unknown prompt: {key}")
    return prompt.render(**values)


def list_prompts() -> list[PromptTemplate]:
    return [p for p in (get_prompt(key) for key in DEFAULT_PROMPTS) if p is not None]
