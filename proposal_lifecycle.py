"""Proposal status state machine."""
from __future__ import annotations

import enum
from typing import Optional, Union

from errors import InvalidTransition, ValidationError


class ProposalStatus(str, enum.Enum):
    DRAFT = "draft"
    GENERATED = "generated"
    GENERATED_FALLBACK = "generated_fallback"
    SAVED = "saved"
    SENT = "sent"


_GENERATED_STATES = {ProposalStatus.GENERATED, ProposalStatus.GENERATED_FALLBACK}

TRANSITIONS: dict[ProposalStatus, frozenset[ProposalStatus]] = {
    ProposalStatus.DRAFT: frozenset(
        {ProposalStatus.DRAFT, ProposalStatus.SAVED, ProposalStatus.SENT} | _GENERATED_STATES
    ),
    ProposalStatus.GENERATED: frozenset(
        {ProposalStatus.SAVED, ProposalStatus.SENT} | _GENERATED_STATES
    ),
    ProposalStatus.GENERATED_FALLBACK: frozenset(
        {ProposalStatus.SAVED, ProposalStatus.SENT} | _GENERATED_STATES
    ),
    ProposalStatus.SAVED: frozenset({ProposalStatus.SAVED, ProposalStatus.SENT}),
    ProposalStatus.SENT: frozenset({ProposalStatus.SENT}),
}

# Statuses a client may request through the save endpoint
SAVEABLE_STATUSES = frozenset({ProposalStatus.DRAFT, ProposalStatus.SAVED})


def coerce_status(value: Union[str, ProposalStatus]) -> ProposalStatus:
    if isinstance(value, ProposalStatus):
        return value
    try:
        return ProposalStatus(str(value).strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown proposal status '{value}'") from None


def can_transition(current: Optional[ProposalStatus], requested: ProposalStatus) -> bool:
    # A new row may start in any state
    if current is None:
        return True
    return requested in TRANSITIONS[current]


def ensure_transition(
    current: Optional[Union[str, ProposalStatus]], requested: Union[str, ProposalStatus]
) -> ProposalStatus:
    """Return the requested status, raising ``InvalidTransition`` if the move is not allowed."""
    requested_status = coerce_status(requested)
    current_status = coerce_status(current) if current is not None else None
    if not can_transition(current_status, requested_status):
        raise InvalidTransition(current_status, requested_status)
    return requested_status
