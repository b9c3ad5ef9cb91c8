"""
Hard-skip predicate: turns that must never be answered generatively.

Rules are evaluated in order; the first match wins and its reason travels
into ``routing.reason``. The deterministic handler dispatches on the same
reasons in the same order.
"""

from agent.fsm.models import HardSkipDecision, IntentFlags
from agent.state.canonical_state import CanonicalState

RESCHEDULE_OR_CANCEL = "reschedule_or_cancel"
DEPOSIT_ALREADY_PAID = "deposit_already_paid"
SLOT_SELECTION = "slot_selection"
DEPOSIT_WITH_CONSULT_QUESTION = "deposit_with_consult_question"
DEPOSIT_INTENT = "deposit_intent"
TRANSLATOR_CONFIRMATION = "translator_confirmation"
SCHEDULING_INTENT = "scheduling_intent"
PROCESS_AFTER_EXPLAINED = "process_after_explained"


def should_hard_skip(intents: IntentFlags, state: CanonicalState) -> HardSkipDecision:
    """
    Decide whether this turn bypasses the generative handler.

    Args:
        intents: Flags detected for the current message
        state: Canonical state for the contact

    Returns:
        HardSkipDecision(skip=True, reason=...) on the first matching rule
    """
    if intents.reschedule or intents.cancel:
        return HardSkipDecision(skip=True, reason=RESCHEDULE_OR_CANCEL)

    if intents.deposit and state.deposit_paid:
        return HardSkipDecision(skip=True, reason=DEPOSIT_ALREADY_PAID)

    if intents.slot_selection:
        return HardSkipDecision(skip=True, reason=SLOT_SELECTION)

    if intents.deposit and intents.consult_path_choice:
        return HardSkipDecision(skip=True, reason=DEPOSIT_WITH_CONSULT_QUESTION)

    if intents.deposit:
        return HardSkipDecision(skip=True, reason=DEPOSIT_INTENT)

    if intents.translator_affirmation:
        return HardSkipDecision(skip=True, reason=TRANSLATOR_CONFIRMATION)

    if intents.scheduling:
        return HardSkipDecision(skip=True, reason=SCHEDULING_INTENT)

    if intents.process_or_price_question and state.consult_explained:
        return HardSkipDecision(skip=True, reason=PROCESS_AFTER_EXPLAINED)

    return HardSkipDecision(skip=False)
