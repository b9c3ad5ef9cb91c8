"""
Unit tests for intent_detector.py.

Tests coverage:
- Independent flags (multi-intent messages set several at once)
- Slot selection: explicit patterns and parsing against offered slots
- Translator affirmation depends on state
- Artist-guided size phrases
"""

import json

from agent.fsm.intent_detector import (
    detect_artist_guided_size,
    detect_intents,
    is_affirmation,
    offered_slots,
)
from agent.state import field_keys as fk
from agent.state.canonical_state import build_canonical_state

EMPTY = build_canonical_state({})


class TestDetectIntents:
    def test_empty_text_sets_nothing(self):
        assert detect_intents("", EMPTY).active() == []
        assert detect_intents(None, EMPTY).active() == []

    def test_video_call_this_week_is_two_intents(self):
        flags = detect_intents("Video call this week - what times are you available?", EMPTY)

        assert flags.scheduling is True
        assert flags.consult_path_choice is True
        assert flags.cancel is False
        assert flags.slot_selection is False

    def test_cancel(self):
        assert detect_intents("I need to cancel", EMPTY).cancel is True
        assert detect_intents("I can't make it anymore", EMPTY).cancel is True

    def test_reschedule(self):
        flags = detect_intents("Can we reschedule to another day?", EMPTY)
        assert flags.reschedule is True

    def test_deposit(self):
        assert detect_intents("Send me the link, ready to pay", EMPTY).deposit is True

    def test_price_question(self):
        flags = detect_intents("How much does a forearm piece cost?", EMPTY)
        assert flags.process_or_price_question is True
        assert flags.scheduling is False

    def test_explicit_option_is_selection_without_offers(self):
        assert detect_intents("option 2 please", EMPTY).slot_selection is True

    def test_time_against_offered_slots(self, make_slot):
        state = build_canonical_state({
            fk.LAST_SENT_SLOTS: json.dumps([make_slot(hour=17).to_dict()]),
        })
        assert detect_intents("5pm works for me", state).slot_selection is True
        assert detect_intents("5pm works for me", EMPTY).slot_selection is False

    def test_translator_affirmation_requires_explanation(self):
        explained = build_canonical_state({fk.TRANSLATOR_EXPLAINED: "Yes"})
        confirmed = build_canonical_state({
            fk.TRANSLATOR_EXPLAINED: "Yes",
            fk.TRANSLATOR_CONFIRMED: "Yes",
        })

        assert detect_intents("yes please", explained).translator_affirmation is True
        assert detect_intents("yes please", EMPTY).translator_affirmation is False
        assert detect_intents("yes please", confirmed).translator_affirmation is False


class TestHelpers:
    def test_artist_guided_size(self):
        assert detect_artist_guided_size("Honestly not sure, you tell me") is True
        assert detect_artist_guided_size("about 4 inches") is False
        assert detect_artist_guided_size(None) is False

    def test_is_affirmation(self):
        assert is_affirmation("Sounds good!") is True
        assert is_affirmation("ok") is True
        assert is_affirmation("not yet") is False

    def test_offered_slots_skips_bad_records(self, make_slot):
        state = build_canonical_state({
            fk.LAST_SENT_SLOTS: json.dumps([make_slot().to_dict(), {"provider": "Joan"}]),
        })
        slots = offered_slots(state)
        assert len(slots) == 1
        assert slots[0].calendar_id == "cal-joan"
