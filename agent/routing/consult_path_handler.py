"""
Consult-Path handler - message consult vs. video consult with a translator.

Owns the reply and field updates when the lead's only intent is choosing how
to consult. In apply_only mode (scheduling asked in the same message) it
applies the side effects and leaves the reply to the scheduling handler.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from agent.fsm.models import ConsultationType
from agent.services.pipeline_service import PipelineManager, PipelineStage
from agent.state import field_keys as fk
from agent.state.canonical_state import CanonicalState, apply_field_updates

logger = logging.getLogger(__name__)

MESSAGE_CHOICE = "message"
TRANSLATOR_CHOICE = "translator"
TRANSLATOR_QUESTION = "translator_question"

MESSAGE_REPLY = (
    "Sounds good, we'll keep your consult right here in messages so you can share "
    "photos and notes at your own pace. I'll make sure the artist sees this thread."
)
TRANSLATOR_REPLY = (
    "Our artist's native language is Spanish, so for video consults we include a "
    "translator on the call to keep every detail clear. Does that work for you?"
)
TRANSLATOR_QUESTION_REPLY = (
    "Our artist's native language is Spanish, so we add a translator to keep all the "
    "design details clear. We can do that on a quick video call or keep things in "
    "messages, both work great. Which do you prefer?"
)

SWITCH_WORDS = re.compile(r"\b(actually|rather|instead|prefer)\b")

CHOICE_STAGES = {
    MESSAGE_CHOICE: PipelineStage.CONSULT_MESSAGE,
    TRANSLATOR_CHOICE: PipelineStage.CONSULT_APPOINTMENT,
}


def detect_path_choice(text: str | None) -> str | None:
    """
    Classify a consult-path reply.

    Returns:
        "message", "translator", "translator_question" or None
    """
    if not text:
        return None
    lowered = text.lower()

    picks_message = (
        (
            re.search(r"\b(messages?|chat|dm|mensajes)\b", lowered) is not None
            and not re.search(r"instead of\s+messag", lowered)
            and not re.search(r"\bnot\b.*message", lowered)
        )
        or re.search(r"consult.*(here|messages|chat)", lowered) is not None
        or re.search(r"pref(er)?\s+(messages?|chat)", lowered) is not None
    )

    picks_translator = (
        re.search(r"\b(translator|translate|video|live|call)\b", lowered) is not None
        or re.search(r"consult.*(video|zoom|translator)", lowered) is not None
    )

    if re.search(r"\bwhy\b.*translator", lowered) or re.search(r"translator.*\bwhy\b", lowered):
        return TRANSLATOR_QUESTION
    if picks_message and not picks_translator:
        return MESSAGE_CHOICE
    if picks_translator:
        return TRANSLATOR_CHOICE
    return None


def choice_field_updates(choice: str) -> dict[str, Any]:
    if choice == MESSAGE_CHOICE:
        return {
            fk.CONSULTATION_TYPE: ConsultationType.MESSAGE.value,
            fk.CONSULTATION_TYPE_LOCKED: True,
            fk.TRANSLATOR_NEEDED: False,
        }
    if choice == TRANSLATOR_CHOICE:
        return {
            fk.CONSULTATION_TYPE: ConsultationType.APPOINTMENT.value,
            fk.CONSULTATION_TYPE_LOCKED: True,
            fk.TRANSLATOR_NEEDED: True,
            fk.LANGUAGE_BARRIER_EXPLAINED: True,
            fk.TRANSLATOR_EXPLAINED: True,
        }
    return {fk.LANGUAGE_BARRIER_EXPLAINED: True}


@dataclass
class PathChoiceResult:
    choice: str
    field_updates: dict[str, Any] = field(default_factory=dict)
    reply: str | None = None


class ConsultPathHandler:
    """Applies a consult-path choice and (unless apply_only) writes the reply."""

    def __init__(self, pipeline: PipelineManager | None = None):
        self.pipeline = pipeline or PipelineManager()

    async def handle_path_choice(
        self,
        contact: dict[str, Any],
        state: CanonicalState,
        text: str,
        apply_only: bool = False,
    ) -> PathChoiceResult | None:
        """
        Args:
            contact: CRM contact (for the pipeline sync)
            state: Canonical state before this turn
            text: Inbound message
            apply_only: Apply field effects without producing a reply

        Returns:
            PathChoiceResult, or None when no choice was made or a locked
            choice is repeated without an explicit switch word
        """
        choice = detect_path_choice(text)
        if choice is None:
            return None

        if (
            choice != TRANSLATOR_QUESTION
            and state.consultation_type_locked
            and not SWITCH_WORDS.search(text.lower())
        ):
            logger.debug(f"Consult type locked, choice ignored | contact_id={contact.get('id')}")
            return None

        updates = choice_field_updates(choice)

        if choice == TRANSLATOR_QUESTION:
            return PathChoiceResult(
                choice=choice,
                field_updates=updates,
                reply=None if apply_only else TRANSLATOR_QUESTION_REPLY,
            )

        try:
            await self.pipeline.transition_to_stage(
                apply_field_updates(contact, updates), CHOICE_STAGES[choice]
            )
        except Exception as e:
            logger.warning(
                f"Pipeline sync after consult choice failed | contact_id={contact.get('id')} | error={e}"
            )

        logger.info(
            f"Consult path chosen | contact_id={contact.get('id')} | choice={choice} | "
            f"apply_only={apply_only}"
        )

        reply = None
        if not apply_only:
            reply = MESSAGE_REPLY if choice == MESSAGE_CHOICE else TRANSLATOR_REPLY
        return PathChoiceResult(choice=choice, field_updates=updates, reply=reply)
