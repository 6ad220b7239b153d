import re
from collections import Counter
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

import structlog
from sqlalchemy.orm import Session

import crud
import llm_interaction
import models
import schemas
from errors import AppError, InvalidTransition, PersistenceError, ValidationError
from observability import METRICS_NAMESPACE, metric_scope
from prompt_settings import load_prompt_settings
from proposal_lifecycle import SAVEABLE_STATUSES, ProposalStatus, coerce_status
from upwork_client import UpworkClient
from upwork_oauth import RefreshCoordinator, UpworkOAuth

# Set up logging
logger = structlog.get_logger(__name__)

DEFAULT_TEMPLATE = schemas.ProposalTemplate(
    id="default",
    title="Default Proposal",
    content="""Write a highly personalized, professional Upwork proposal that:
- Directly addresses the client's specific needs
- Highlights 2-3 most relevant experiences
- Shows deep understanding of the project
- Ends with a clear call-to-action
- Uses friendly but professional tone
Keep it under 300 words.""",
)
DEFAULT_NAME = "Professional Freelancer"
PATTERN_SAMPLE_SIZE = 50
TOP_PATTERNS = 5


# --- Template selection and text clean-up ---
def select_template(templates: Optional[List[schemas.ProposalTemplate]]) -> schemas.ProposalTemplate:
    """First template titled "main"/"default", else the first one, else the built-in."""
    if not templates:
        return DEFAULT_TEMPLATE
    for template in templates:
        title = (template.title or "").lower()
        if "main" in title or "default" in title:
            return template
    return templates[0]


_PLACEHOLDER_NAME = re.compile(r"\[(?:your|my)?\s*(?:full\s+)?name\]", re.IGNORECASE)
_MARKDOWN_LINK = re.compile(r"\[([^\]\n]+)\]\((https?://[^)\s]+)\)")
_BRACKETED = re.compile(r"\[[^\]\n]{0,80}\]")
_FENCE = re.compile(r"```[A-Za-z0-9_-]*\n?")
_HEADING = re.compile(r"^\s{0,3}#{1,6}\s*", re.MULTILINE)
_BOLD = re.compile(r"(\*\*|__)(.+?)\1", re.DOTALL)


def _signed_off(text: str, name: str) -> bool:
    tail = "\n".join(text.splitlines()[-3:])
    return name.lower() in tail.lower()


def clean_proposal_text(text: str, name: str) -> str:
    """Strip Markdown artefacts and placeholders, and make sure ``name`` signs off."""
    cleaned = _FENCE.sub("", text or "")
    cleaned = _HEADING.sub("", cleaned)
    cleaned = _BOLD.sub(r"\2", cleaned)
    cleaned = _PLACEHOLDER_NAME.sub(name, cleaned)
    cleaned = _MARKDOWN_LINK.sub(r"\1 (\2)", cleaned)
    cleaned = _BRACKETED.sub("", cleaned)
    cleaned = "\n".join(line.rstrip() for line in cleaned.splitlines())
    cleaned = re.sub(r"[ \t]{2,}", " ", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned).strip()
    if not cleaned:
        return ""
    if not _signed_off(cleaned, name):
        cleaned = f"{cleaned}\n\nBest regards,\n{name}"
    return cleaned


def fallback_proposal(job: schemas.JobRecord, basic_info: schemas.BasicInfo, name: str) -> str:
    """Deterministic local draft used when text generation is unavailable."""
    name = name or DEFAULT_NAME
    skills = [skill for skill in job.skills if skill and skill != "General"]
    skills_line = ", ".join(skills[:3]) if skills else basic_info.specialty
    paragraphs = [
        "Hello,",
        f'I read your job post "{job.title}" with interest and I am confident I can deliver '
        f"exactly what you need. My focus is {basic_info.specialty}, with hands-on work in {skills_line}.",
        f"I bring {basic_info.experience} and have delivered {basic_info.portfolio.lower()}. "
        "I start every project by confirming scope and milestones, then keep you updated with "
        "regular progress reports until the work is done.",
        "Could you share a bit more about your timeline and what success looks like for this project? "
        "I am available to discuss the details at your convenience.",
        f"Best regards,\n{name}",
    ]
    return "\n\n".join(paragraphs)


# --- Edit learning ---
_PORTFOLIO_WORDS = ("portfolio", "github", "linkedin", "behance", "dribbble")
_CTA_WORDS = ("contact", "call", "meeting", "schedule", "discuss", "available")
_BUDGET_WORDS = ("budget", "rate", "price", "cost", "quote")
_EXPERIENCE_WORDS = ("experience", "years")
_ENTHUSIASTIC_WORDS = ("excited", "enthusiastic", "passionate", "thrilled")
_PROFESSIONAL_WORDS = ("professional", "expertise", "qualified", "certified")


def _added(words: Iterable[str], original: str, edited: str) -> bool:
    return any(word in edited and word not in original for word in words)


def analyze_edit(original: str, edited: str) -> List[str]:
    """Coarse keyword tags describing how the user changed a draft."""
    original_lower = (original or "").lower()
    edited_lower = (edited or "").lower()
    tags = []
    if original_lower:
        ratio = len(edited_lower) / len(original_lower)
        if ratio >= 1.2:
            tags.append("user_adds_more_details")
        elif ratio <= 0.8:
            tags.append("user_prefers_conciseness")
    if _added(_PORTFOLIO_WORDS, original_lower, edited_lower):
        tags.append("user_adds_portfolio_links")
    if _added(_CTA_WORDS, original_lower, edited_lower):
        tags.append("user_adds_call_to_action")
    if _added(_BUDGET_WORDS, original_lower, edited_lower):
        tags.append("user_discusses_budget")
    if _added(_EXPERIENCE_WORDS, original_lower, edited_lower):
        tags.append("user_emphasizes_experience")
    if _added(_ENTHUSIASTIC_WORDS, original_lower, edited_lower):
        tags.append("user_prefers_enthusiastic_tone")
    if _added(_PROFESSIONAL_WORDS, original_lower, edited_lower):
        tags.append("user_emphasizes_professionalism")
    return tags


def summarize_patterns(edits: Iterable[models.ProposalEdit], top: int = TOP_PATTERNS) -> List[dict]:
    counts = Counter()
    for edit in edits:
        counts.update(edit.learned_patterns or [])
    return [{"pattern": tag, "count": count} for tag, count in counts.most_common(top)]


def learned_pattern_tags(db: Session, user_id: int) -> List[str]:
    edits = crud.get_recent_edits(db, user_id, limit=PATTERN_SAMPLE_SIZE)
    return [entry["pattern"] for entry in summarize_patterns(edits)]


def record_edit(
    db: Session,
    user_id: int,
    job_id: str,
    original: Optional[str],
    edited: str,
    edit_reason: Optional[str] = None,
) -> Optional[List[str]]:
    """Append an edit record when the text changed. Failures are logged, not raised."""
    if not original or original.strip() == edited.strip():
        return None
    patterns = analyze_edit(original, edited)
    try:
        crud.add_proposal_edit(db, user_id, job_id, original, edited, edit_reason, patterns)
    except PersistenceError as exc:
        logger.warning("Could not record proposal edit", user_id=user_id, job_id=job_id, error=exc.message)
        return None
    logger.info("Proposal edit recorded", user_id=user_id, job_id=job_id, patterns=patterns)
    return patterns


# --- Generation ---
@dataclass
class GenerationResult:
    proposal: str
    status: ProposalStatus
    model: str
    proposal_id: Optional[int] = None
    fallback_reason: Optional[str] = None

    @property
    def used_fallback(self) -> bool:
        return self.status == ProposalStatus.GENERATED_FALLBACK


@metric_scope
async def generate_proposal(
    db: Session,
    user: models.User,
    request: schemas.GenerateProposalRequest,
    metrics=None,
) -> GenerationResult:
    """Draft a proposal with the LLM, degrading to the local template on any failure."""
    metrics.set_namespace(METRICS_NAMESPACE)
    metrics.set_property("user_id", user.id)
    metrics.set_property("job_id", request.job_id)
    log = logger.bind(user_id=user.id, job_id=request.job_id)

    settings = load_prompt_settings(db, user.id)
    basic_info = settings.basic_info
    name = basic_info.name or user.name or DEFAULT_NAME
    company = basic_info.company or user.company_name
    template = select_template(settings.proposal_templates)
    job = request.as_job()
    patterns = learned_pattern_tags(db, user.id)

    status = ProposalStatus.GENERATED
    model = settings.ai_settings.model
    fallback_reason = None
    text = ""
    try:
        raw = await llm_interaction.call_llm_for_proposal(
            job, basic_info, template, settings.ai_settings, patterns, name=name, company=company
        )
        text = clean_proposal_text(raw, name)
        if not text:
            fallback_reason = "Text generation returned an empty response"
    except AppError as exc:
        fallback_reason = exc.message
    except Exception as exc:
        log.exception("Unexpected text generation failure")
        fallback_reason = f"Text generation failed: {exc}"

    if fallback_reason:
        log.warning("Using fallback proposal", reason=fallback_reason)
        text = fallback_proposal(job, basic_info, name)
        status = ProposalStatus.GENERATED_FALLBACK
        model = "fallback"
        metrics.put_metric("proposals_fallback", 1, "Count")
    else:
        metrics.put_metric("proposals_generated", 1, "Count")

    result = GenerationResult(proposal=text, status=status, model=model, fallback_reason=fallback_reason)
    row_status = status
    existing = crud.get_proposal_for_job(db, user.id, request.job_id)
    if existing is not None and existing.status == ProposalStatus.SAVED:
        # Saved rows keep their status and edited text; only the draft is refreshed
        row_status = ProposalStatus.SAVED
    try:
        proposal, _ = crud.upsert_proposal(
            db,
            user.id,
            request.job_id,
            row_status,
            job_title=request.job_title,
            job_description=request.job_description,
            client_info=request.client_info,
            budget=request.budget,
            skills=request.skills,
            generated_proposal=text,
            ai_model=model,
            temperature=settings.ai_settings.temperature,
        )
        result.proposal_id = proposal.id
    except InvalidTransition as exc:
        # Already sent: keep the sent record as it is
        log.info("Not recording generation for proposal", reason=exc.message)
    except PersistenceError as exc:
        log.warning("Could not record generated proposal", error=exc.message)

    log.info("Proposal generated", status=status.value, length=len(text))
    return result


# --- Save / send ---
def save_proposal(
    db: Session, user: models.User, request: schemas.SaveProposalRequest
) -> Tuple[models.Proposal, bool]:
    status = coerce_status(request.status)
    if status not in SAVEABLE_STATUSES:
        raise ValidationError("Status must be 'draft' or 'saved'; use send to mark a proposal sent")

    existing = crud.get_proposal_for_job(db, user.id, request.job_id)
    generated = request.generated_proposal
    if existing is None and not generated:
        generated = request.proposal_text

    proposal, is_new = crud.upsert_proposal(
        db,
        user.id,
        request.job_id,
        status,
        edited_proposal=request.proposal_text,
        job_title=request.job_title or ("Untitled Job" if existing is None else None),
        job_description=request.job_description,
        client_info=request.client_info,
        budget=request.budget,
        skills=request.skills,
        generated_proposal=generated,
    )
    record_edit(db, user.id, request.job_id, proposal.generated_proposal, request.proposal_text)
    logger.info("Proposal saved", user_id=user.id, job_id=request.job_id, is_new=is_new, status=status.value)
    return proposal, is_new


@dataclass
class SendOutcome:
    proposal: models.Proposal
    is_new: bool
    upwork_submitted: bool
    message: str
    upwork_proposal_id: Optional[str] = None


async def send_proposal(
    db: Session,
    user: models.User,
    request: schemas.SendProposalRequest,
    client: UpworkClient,
    oauth: Optional[UpworkOAuth] = None,
    coordinator: Optional[RefreshCoordinator] = None,
) -> SendOutcome:
    """Mark the proposal sent locally, then try to submit it to Upwork.

    The local record stays ``sent`` whatever the submission outcome.
    """
    existing = crud.get_proposal_for_job(db, user.id, request.job_id)
    original = request.original_proposal or (existing.generated_proposal if existing else None)

    proposal, is_new = crud.upsert_proposal(
        db,
        user.id,
        request.job_id,
        ProposalStatus.SENT,
        edited_proposal=request.proposal_text,
        job_title=request.job_title or ("Untitled Job" if existing is None else None),
        generated_proposal=original or (request.proposal_text if existing is None else None),
    )
    record_edit(db, user.id, request.job_id, original, request.proposal_text, request.edit_reason)
    log = logger.bind(user_id=user.id, job_id=request.job_id, proposal_id=proposal.id)

    account = crud.get_upwork_account(db, user.id)
    if account is None:
        log.info("Proposal marked sent locally; Upwork not connected")
        return SendOutcome(
            proposal=proposal,
            is_new=is_new,
            upwork_submitted=False,
            message="Proposal saved as sent. Connect Upwork to submit it directly.",
        )

    access_token = account.access_token
    expired = account.expires_at is not None and account.expires_at <= models.utcnow()
    if expired and oauth is not None and coordinator is not None:
        log.info("Stored Upwork token expired, refreshing before submission")
        result = await coordinator.refresh(db, user.id, oauth, account.refresh_token)
        if not result.ok:
            return SendOutcome(
                proposal=proposal,
                is_new=is_new,
                upwork_submitted=False,
                message=f"Proposal saved as sent, but Upwork submission failed: {result.reason}",
            )
        access_token = result.tokens.access_token

    submission = await client.submit_proposal(
        access_token, request.job_id, request.proposal_text, request.bid_amount
    )
    if not submission.ok:
        log.warning("Upwork submission failed; local record kept", reason=submission.message)
        return SendOutcome(
            proposal=proposal,
            is_new=is_new,
            upwork_submitted=False,
            message=f"Proposal saved as sent, but Upwork submission failed: {submission.message}",
        )

    if submission.proposal_id:
        try:
            proposal, _ = crud.upsert_proposal(
                db,
                user.id,
                request.job_id,
                ProposalStatus.SENT,
                upwork_proposal_id=submission.proposal_id,
            )
        except PersistenceError as exc:
            log.warning("Could not store Upwork proposal id", error=exc.message)
    log.info("Proposal sent to Upwork", upwork_proposal_id=submission.proposal_id)
    return SendOutcome(
        proposal=proposal,
        is_new=is_new,
        upwork_submitted=True,
        message=submission.message,
        upwork_proposal_id=submission.proposal_id,
    )
