"""Per-user prompt settings merged over the built-in defaults."""
from __future__ import annotations

from typing import Optional

import structlog
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

import crud
from schemas import (
    AISettings,
    BasicInfo,
    JobPreferences,
    PromptSettingsData,
    PromptSettingsPayload,
    ProposalTemplate,
    ValidationRules,
)

logger = structlog.get_logger(__name__)

_SECTION_MODELS = {
    "basic_info": BasicInfo,
    "validation_rules": ValidationRules,
    "ai_settings": AISettings,
    "job_preferences": JobPreferences,
}


def _load_section(name: str, raw, user_id: int):
    if raw in (None, {}, []):
        return None
    try:
        if name == "proposal_templates":
            templates = [ProposalTemplate.model_validate(item) for item in raw]
            return templates or None
        return _SECTION_MODELS[name].model_validate(raw)
    except (PydanticValidationError, TypeError) as exc:
        # A malformed stored blob falls back to defaults rather than breaking the page
        logger.warning("Ignoring malformed prompt settings section", user_id=user_id, section=name, error=str(exc))
        return None


def load_prompt_settings(db: Session, user_id: int) -> PromptSettingsData:
    """Stored sections where present, defaults everywhere else."""
    settings = PromptSettingsData()
    row = crud.get_prompt_settings(db, user_id)
    if row is None:
        return settings
    for name in crud.PROMPT_SECTIONS:
        section = _load_section(name, getattr(row, name), user_id)
        if section is not None:
            setattr(settings, name, section)
    return settings


def save_prompt_settings(db: Session, user_id: int, payload: PromptSettingsPayload) -> PromptSettingsData:
    """Upsert the user's settings; sections missing from ``payload`` revert to defaults."""
    merged = PromptSettingsData()
    for name in crud.PROMPT_SECTIONS:
        value = getattr(payload, name)
        if value is not None:
            setattr(merged, name, value)
    dumped = merged.model_dump(mode="json")
    crud.upsert_prompt_settings(db, user_id, dumped)
    logger.info("Prompt settings saved", user_id=user_id)
    return merged


def load_job_preferences(db: Session, user_id: int) -> Optional[JobPreferences]:
    return load_prompt_settings(db, user_id).job_preferences
