"""
Form Safety Status - Finite gate derived from safety monitor flags.

Purpose:
    Single boundary between the safety monitor (which accumulates
    counters and fires triggers) and the orchestrator (which decides
    which pipeline steps may run).

    It collapses the monitor's independent flags into one status that
    controls whether AI steps and progressive disclosure are allowed.

Design Constraints:
    - Pure, total, deterministic function
    - Never raises exceptions
    - No side effects, no logging
"""

from enum import Enum


class FormSafetyStatus(str, Enum):
    """
    Values:
        NORMAL: All features enabled.

        PROGRESSIVE_DISABLED: AI steps run, but every field is shown.

        AI_DISABLED: Updates are merged without validation, conflict
                     detection or confidence scoring.

        EMERGENCY: Session frozen until an explicit reset.
    """
    NORMAL = "normal"
    PROGRESSIVE_DISABLED = "progressive_disabled"
    AI_DISABLED = "ai_disabled"
    EMERGENCY = "emergency"


def assess_form_safety(
    ai_disabled: bool,
    progressive_disabled: bool,
    emergency_mode: bool,
) -> FormSafetyStatus:
    """
    Collapse monitor flags into one status.

    Precedence rules (applied in order):
        1. Emergency mode → EMERGENCY
        2. AI disabled → AI_DISABLED
        3. Progressive disclosure disabled → PROGRESSIVE_DISABLED
        4. Otherwise → NORMAL

    Note:
        AI_DISABLED outranks PROGRESSIVE_DISABLED because without AI
        steps there are no fresh disclosure decisions to suppress.
    """
    if emergency_mode:
        return FormSafetyStatus.EMERGENCY

    if ai_disabled:
        return FormSafetyStatus.AI_DISABLED

    if progressive_disabled:
        return FormSafetyStatus.PROGRESSIVE_DISABLED

    return FormSafetyStatus.NORMAL


def ai_allowed(status: FormSafetyStatus) -> bool:
    return status in (FormSafetyStatus.NORMAL, FormSafetyStatus.PROGRESSIVE_DISABLED)


def progressive_allowed(status: FormSafetyStatus) -> bool:
    return status == FormSafetyStatus.NORMAL
