"""
Intent Detector - independent pattern matchers over one inbound message.

Each matcher answers one yes/no question about the text. Flags are not
mutually exclusive; "video call this week, what times?" is both a
scheduling request and a consult-path choice, and the router composes them.

Pure: no I/O, no state mutation.
"""

import re

from agent.fsm.models import IntentFlags
from agent.state.canonical_state import CanonicalState
from agent.utils.time_parsing import parse_time_selection
from shared.calendar_client import Slot

RESCHEDULE_PATTERNS = [
    r"\bresched",
    r"\banother day\b",
    r"\bdifferent (day|time|date)\b",
    r"\bmove (it|the|my)\s*(time|date|appointment)?\b",
    r"\bchange (the )?(time|date)\b",
]

CANCEL_PATTERNS = [
    r"\bcancel\b",
    r"\bcan[’']?t make it\b",
]

SCHEDULING_PATTERNS = [
    r"\bwhat (times|time|days)\b",
    r"\bavailability\b",
    r"\bavailable\b",
    r"\bopenings?\b",
    r"\bslots?\b",
    r"\bschedul(e|ing)\b",
    r"\bwhen can i (come|book|schedule)\b",
    r"\bwhat day works\b",
    r"\bwhich day\b",
    r"\bthis week\b",
    r"\bnext week\b",
    r"\btoday\b",
    r"\btomorrow\b",
]

DEPOSIT_PATTERNS = [
    r"\bdeposit\b",
    r"\bpay(ment)? link\b",
    r"\bpay now\b",
    r"\bready to pay\b",
    r"\bsend (me )?the link\b",
]

CONSULT_PATH_PATTERNS = [
    r"\bvideo( call)?\b",
    r"\bzoom\b",
    r"\btranslator\b",
    r"\bcall\b",
    r"\bphone\b",
    r"\bin[-\s]?person\b",
    r"\bstudio\b",
    r"\bcome in\b",
    r"\bmessages?\b",
    r"\bchat\b",
    r"\bdm\b",
]

PROCESS_OR_PRICE_PATTERNS = [
    r"\bhow much\b",
    r"\bprice\b",
    r"\bcost\b",
    r"\brate\b",
    r"\bhow does (it|this) work\b",
    r"\bwhat('s| is) the process\b",
    r"\bprocess\b",
]

# Explicit picks; without offered slots these are the only selection signals
SLOT_SELECTION_PATTERNS = [
    r"\boption\s*#?\s*\d\b",
    r"#\s?\d\b",
    r"\b(first|second|third|fourth|1st|2nd|3rd|4th) (one|option|slot|time)\b",
    r"\b(mon|tues?|wed(nes)?|thu(rs)?|fri|sat(ur)?|sun)(day)?\b.*\b\d{1,2}(:\d{2})?\s*(am|pm)\b",
]

ARTIST_GUIDED_PHRASES = [
    "not sure",
    "i don't know",
    "i dont know",
    "idk",
    "help me decide",
    "help me figure",
    "second opinion",
    "whatever you think",
    "you tell me",
    "artist decide",
    "artist can decide",
]

AFFIRMATION_PATTERN = re.compile(
    r"^\s*(yes|yeah|yep|yup|sure|ok(ay)?|that works|works( for me)?|sounds good|"
    r"perfect|great|fine|of course|absolutely)\b",
    re.IGNORECASE,
)


def _matches_any(text: str, patterns: list[str]) -> bool:
    return any(re.search(pattern, text) for pattern in patterns)


def detect_artist_guided_size(text: str | None) -> bool:
    """True when the lead defers tattoo sizing to the artist."""
    lowered = (text or "").lower()
    return any(phrase in lowered for phrase in ARTIST_GUIDED_PHRASES)


def is_affirmation(text: str | None) -> bool:
    return bool(text and AFFIRMATION_PATTERN.search(text))


def offered_slots(state: CanonicalState) -> list[Slot]:
    """Slots last offered to the lead, in the order they were shown."""
    slots = [Slot.from_dict(raw) for raw in state.last_sent_slots]
    return [slot for slot in slots if slot is not None]


def detect_slot_selection(text: str, state: CanonicalState) -> bool:
    if _matches_any(text, SLOT_SELECTION_PATTERNS):
        return True
    slots = offered_slots(state)
    return bool(slots) and parse_time_selection(text, slots) is not None


def detect_intents(text: str | None, state: CanonicalState) -> IntentFlags:
    """
    Run every matcher against the message.

    Args:
        text: Latest (possibly debounced, multi-part) message body
        state: Canonical state; needed for selection against offered slots
            and for translator affirmations

    Returns:
        IntentFlags with each flag evaluated independently
    """
    lowered = (text or "").lower().strip()
    if not lowered:
        return IntentFlags()

    return IntentFlags(
        reschedule=_matches_any(lowered, RESCHEDULE_PATTERNS),
        cancel=_matches_any(lowered, CANCEL_PATTERNS),
        scheduling=_matches_any(lowered, SCHEDULING_PATTERNS),
        slot_selection=detect_slot_selection(lowered, state),
        deposit=_matches_any(lowered, DEPOSIT_PATTERNS),
        consult_path_choice=_matches_any(lowered, CONSULT_PATH_PATTERNS),
        translator_affirmation=(
            state.translator_explained
            and not state.translator_confirmed
            and is_affirmation(lowered)
        ),
        artist_guided_size=detect_artist_guided_size(lowered),
        process_or_price_question=_matches_any(lowered, PROCESS_OR_PRICE_PATTERNS),
    )
