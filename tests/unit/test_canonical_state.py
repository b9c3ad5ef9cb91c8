"""
Unit tests for canonical_state.py - field normalization and state projection.

Tests coverage:
- normalize_custom_fields() - every supported field encoding
- build_effective_contact() / apply_field_updates()
- build_canonical_state() - booleans, JSON fields, bad timestamps, aliases
- compute_last_seen_diff()
"""

import json

from agent.state import field_keys as fk
from agent.state.canonical_state import (
    apply_field_updates,
    build_canonical_state,
    build_effective_contact,
    compute_last_seen_diff,
    normalize_custom_fields,
    normalize_display_name,
)


# ============================================================================
# Normalization
# ============================================================================


class TestNormalizeCustomFields:
    def test_plain_mapping_drops_empty_values(self):
        raw = {"tattoo_placement": "forearm", "tattoo_style": "", "size_of_tattoo": None}
        assert normalize_custom_fields(raw) == {"tattoo_placement": "forearm"}

    def test_display_name_mapping(self):
        raw = {"Tattoo Placement": "forearm", "How Soon Is Client Deciding?": "this month"}
        assert normalize_custom_fields(raw) == {
            "tattoo_placement": "forearm",
            "how_soon_is_client_deciding": "this month",
        }

    def test_list_of_entries(self):
        raw = [
            {"key": "tattoo_placement", "value": "forearm"},
            {"fieldKey": "deposit_paid", "field_value": "Yes"},
            {"value": "orphan"},
            "junk",
        ]
        assert normalize_custom_fields(raw) == {
            "tattoo_placement": "forearm",
            "deposit_paid": "Yes",
        }

    def test_array_like_mapping(self):
        raw = {
            "0": {"key": "tattoo_summary", "value": "rose"},
            "1": {"key": "tattoo_placement", "value": "ankle"},
        }
        assert normalize_custom_fields(raw) == {
            "tattoo_summary": "rose",
            "tattoo_placement": "ankle",
        }

    def test_id_only_entries_use_id_map(self):
        raw = [{"id": "f-123", "value": "forearm"}]
        assert normalize_custom_fields(raw, {"f-123": "tattoo_placement"}) == {
            "tattoo_placement": "forearm"
        }

    def test_unrecognized_input(self):
        assert normalize_custom_fields(None) == {}
        assert normalize_custom_fields("nope") == {}

    def test_display_name_punctuation(self):
        assert normalize_display_name("Size Of Tattoo?") == "size_of_tattoo"
        assert normalize_display_name(None) is None


class TestEffectiveContact:
    def test_payload_fields_win(self, make_contact):
        contact = make_contact({"tattoo_placement": "forearm", "tattoo_style": "fineline"})
        effective = build_effective_contact(contact, {"tattoo_placement": "calf"})

        assert effective["id"] == "contact-1"
        assert effective["customFields"] == {
            "tattoo_placement": "calf",
            "tattoo_style": "fineline",
        }

    def test_apply_field_updates_is_a_copy(self, make_contact):
        contact = make_contact({"times_sent": "false"})
        updated = apply_field_updates(contact, {"times_sent": True, "snap": {"a": 1}})

        assert contact["customFields"]["times_sent"] == "false"
        assert updated["customFields"]["times_sent"] is True
        assert json.loads(updated["customFields"]["snap"]) == {"a": 1}


# ============================================================================
# State projection
# ============================================================================


class TestBuildCanonicalState:
    def test_empty_state(self):
        state = build_canonical_state({})
        assert state.tattoo_summary is None
        assert state.deposit_paid is False
        assert state.last_sent_slots == []
        assert state.appointment_booked is False
        assert state.has_active_hold is False

    def test_boolean_like_strings(self):
        state = build_canonical_state({
            fk.DEPOSIT_PAID: "Yes",
            fk.DEPOSIT_LINK_SENT: "true",
            fk.TIMES_SENT: "1",
            fk.TRANSLATOR_NEEDED: "no",
        })
        assert state.deposit_paid is True
        assert state.deposit_link_sent is True
        assert state.times_sent is True
        assert state.translator_needed is False

    def test_json_fields(self):
        slots = [{"start_time": "2025-12-02T17:00:00-06:00"}, "bad"]
        state = build_canonical_state({
            fk.LAST_SENT_SLOTS: json.dumps(slots),
            fk.LAST_SEEN_SNAPSHOT: "{not json",
        })
        assert state.last_sent_slots == [slots[0]]
        assert state.last_seen_snapshot == {}

    def test_invalid_hold_timestamp_is_ignored(self):
        state = build_canonical_state({
            fk.HOLD_APPOINTMENT_ID: "appt-1",
            fk.HOLD_LAST_ACTIVITY_AT: "yesterday-ish",
        })
        assert state.hold_appointment_id == "appt-1"
        assert state.hold_last_activity_at is None

    def test_legacy_appointment_id_alias(self):
        state = build_canonical_state({fk.APPOINTMENT_ID: "appt-9"})
        assert state.consult_appointment_id == "appt-9"
        assert state.appointment_booked is True
        assert state.upcoming_appointment_id == "appt-9"

    def test_upcoming_prefers_confirmed_over_hold(self):
        state = build_canonical_state({
            fk.CONSULT_APPOINTMENT_ID: "appt-confirmed",
            fk.HOLD_APPOINTMENT_ID: "appt-hold",
        })
        assert state.upcoming_appointment_id == "appt-confirmed"

    def test_language_barrier_counts_as_explained(self):
        state = build_canonical_state({fk.LANGUAGE_BARRIER_EXPLAINED: "Yes"})
        assert state.translator_explained is True

    def test_consultation_type_is_lowercased(self):
        state = build_canonical_state({fk.CONSULTATION_TYPE: " Appointment "})
        assert state.consultation_type == "appointment"


class TestLastSeenDiff:
    def test_first_turn_reports_known_fields(self):
        state = build_canonical_state({fk.TATTOO_PLACEMENT: "forearm"})
        snapshot, changed = compute_last_seen_diff(state, {})

        assert changed == {fk.TATTOO_PLACEMENT: "forearm"}
        assert snapshot[fk.TATTOO_PLACEMENT] == "forearm"

    def test_unchanged_fields_are_not_reported(self):
        state = build_canonical_state({fk.TATTOO_PLACEMENT: "forearm"})
        _, changed = compute_last_seen_diff(state, {fk.TATTOO_PLACEMENT: "forearm"})
        assert changed == {}

    def test_cleared_field_is_reported(self):
        state = build_canonical_state({})
        _, changed = compute_last_seen_diff(state, {fk.TATTOO_STYLE: "fineline"})
        assert changed == {fk.TATTOO_STYLE: None}
