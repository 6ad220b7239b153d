from functools import lru_cache
from typing import List, Optional

import openai
import structlog
from openai import AsyncOpenAI

from errors import ConfigurationError, UpstreamUnavailable
from schemas import AISettings, BasicInfo, JobRecord, ProposalTemplate
from settings import get_settings

logger = structlog.get_logger(__name__)

# --- Application Info for OpenRouter ---
APP_NAME = "Upwork Proposal Assistant"
APP_URL = "http://localhost:3000"
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

SYSTEM_PROMPT = """You are a top-rated Upwork freelancer with a 100% job success score.
You write winning proposals that get interviews.
You NEVER use generic templates.
You always personalize based on the exact job description.
Write plain text only: no Markdown, no headings and no placeholder brackets."""

# Human-readable hints for the tags produced by ``logic.analyze_edit``
PATTERN_HINTS = {
    "user_adds_more_details": "The user usually expands drafts with more specifics; be detailed.",
    "user_prefers_conciseness": "The user usually trims drafts; keep it short and direct.",
    "user_adds_portfolio_links": "The user likes to reference portfolio, GitHub or LinkedIn work.",
    "user_adds_call_to_action": "The user always ends with a clear invitation to talk or meet.",
    "user_discusses_budget": "The user likes to address budget or rate explicitly.",
    "user_emphasizes_experience": "The user highlights years of experience and past results.",
    "user_prefers_enthusiastic_tone": "The user prefers an enthusiastic, energetic tone.",
    "user_emphasizes_professionalism": "The user prefers a formal, expertise-focused tone.",
}


@lru_cache()
def get_client() -> AsyncOpenAI:
    """OpenAI client, pointed at OpenRouter when only an OpenRouter key is configured."""
    settings = get_settings()
    if settings.openai_api_key:
        return AsyncOpenAI(
            api_key=settings.openai_api_key,
            base_url=settings.llm_base_url,
            timeout=settings.llm_timeout_seconds,
        )
    if settings.openrouter_api_key:
        return AsyncOpenAI(
            base_url=settings.llm_base_url or OPENROUTER_BASE_URL,
            api_key=settings.openrouter_api_key,
            timeout=settings.llm_timeout_seconds,
            default_headers={
                "HTTP-Referer": APP_URL,
                "X-Title": APP_NAME,
            },
        )
    raise ConfigurationError("No LLM API key configured")


def model_config_for(ai_settings: AISettings) -> dict:
    model = ai_settings.model
    settings = get_settings()
    # OpenRouter wants provider-qualified model names
    if not settings.openai_api_key and settings.openrouter_api_key and "/" not in model:
        model = f"openai/{model}"
    return {
        "model": model,
        "temperature": ai_settings.temperature,
        "max_tokens": ai_settings.max_tokens,
    }


async def call_llm(system_prompt: str, user_prompt: str, model_config: dict) -> str:
    """Call the chat completion API and return the stripped text (possibly empty)."""

    messages = [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt},
    ]
    try:
        response = await get_client().chat.completions.create(messages=messages, **model_config)
    except openai.APITimeoutError as exc:
        logger.warning("LLM call timed out", model=model_config.get("model"))
        raise UpstreamUnavailable("Text generation timed out") from exc
    except openai.APIError as exc:
        logger.warning("LLM call failed", model=model_config.get("model"), error=str(exc))
        raise UpstreamUnavailable(f"Text generation failed: {exc}") from exc

    if not response.choices:
        return ""
    return (response.choices[0].message.content or "").strip()


def format_pattern_hints(patterns: List[str]) -> str:
    hints = [PATTERN_HINTS.get(tag, tag.replace("_", " ")) for tag in patterns]
    return "\n".join(f"- {hint}" for hint in hints)


def build_proposal_prompt(
    job: JobRecord,
    basic_info: BasicInfo,
    template: ProposalTemplate,
    patterns: Optional[List[str]] = None,
    name: Optional[str] = None,
    company: Optional[str] = None,
) -> str:
    skills = ", ".join(job.skills) if job.skills else "Various"
    sections = [
        template.content,
        "",
        "--- JOB DETAILS ---",
        f"Title: {job.title}",
        f"Category: {job.category or 'Not specified'}",
        f"Budget: {job.budget}",
        f"Posted: {job.posted_date}",
        f"Skills Required: {skills}",
        "",
        "Job Description:",
        job.description,
        "",
        "--- MY PROFILE ---",
        f"Name: {name or basic_info.name or 'Professional Freelancer'}",
        f"Specialty: {basic_info.specialty}",
        f"Services: {basic_info.provisions}",
        f"Rate: {basic_info.hourly_rate}",
        f"Experience: {basic_info.experience}",
        f"Portfolio: {basic_info.portfolio}",
    ]
    company = company or basic_info.company
    if company:
        sections.append(f"Company: {company}")
    if patterns:
        sections += [
            "",
            "--- STYLE NOTES FROM MY PAST EDITS (advisory) ---",
            format_pattern_hints(patterns),
        ]
    sections += ["", "Write the proposal now."]
    return "\n".join(sections)


async def call_llm_for_proposal(
    job: JobRecord,
    basic_info: BasicInfo,
    template: ProposalTemplate,
    ai_settings: AISettings,
    patterns: Optional[List[str]] = None,
    name: Optional[str] = None,
    company: Optional[str] = None,
) -> str:
    """Draft a proposal for ``job`` with the user's AI settings."""
    user_prompt = build_proposal_prompt(job, basic_info, template, patterns, name, company)
    text = await call_llm(
        system_prompt=SYSTEM_PROMPT,
        user_prompt=user_prompt,
        model_config=model_config_for(ai_settings),
    )
    logger.info("Proposal drafted by LLM", job_id=job.id, length=len(text))
    return text
