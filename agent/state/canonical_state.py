"""
Canonical State Builder.

Projects a contact's flexible field map into a typed, validated snapshot that
every decision in the engine reads. The raw map never travels past this
module.

The CRM delivers custom fields in several shapes:
- plain mapping:        {"tattoo_placement": "forearm"}
- display-name mapping: {"Tattoo Placement": "forearm"}
- list of entries:      [{"key": "tattoo_placement", "value": "forearm"}]
- array-like mapping:   {"0": {"key": "tattoo_placement", "value": "forearm"}}

All of them normalize to one flat {snake_key: value} map. Unknown or empty
values resolve to None/False; nothing here raises on bad input.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from agent.state import field_keys as fk
from shared.calendar_client import parse_datetime

logger = logging.getLogger(__name__)

TRUE_STRINGS = {"yes", "true", "1"}
ENTRY_KEY_NAMES = ("key", "fieldKey", "customFieldKey")

# Keys compared between turns to report what the lead changed
LAST_SEEN_TRACKED = (
    fk.TATTOO_SUMMARY,
    fk.TATTOO_PLACEMENT,
    fk.TATTOO_STYLE,
    fk.TIMELINE,
    fk.CONSULTATION_TYPE,
)


def bool_val(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if raw is None:
        return False
    return str(raw).strip().lower() in TRUE_STRINGS


def parse_json_field(raw: Any, fallback: Any) -> Any:
    """Decode a JSON-encoded field; return fallback on empty or invalid input."""
    if not raw:
        return fallback
    if isinstance(raw, (list, dict)):
        return raw
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return fallback


def normalize_display_name(display_name: Any) -> str | None:
    """
    Normalize a display name to a snake_case key.

    "Tattoo Placement" -> "tattoo_placement"
    "How Soon Is Client Deciding?" -> "how_soon_is_client_deciding"
    """
    if not display_name or not isinstance(display_name, str):
        return None
    cleaned = re.sub(r"[?!.,]", "", display_name.strip().lower())
    return re.sub(r"\s+", "_", cleaned) or None


def _entry_key(entry: dict[str, Any], id_to_key: dict[str, str] | None) -> str | None:
    for name in ENTRY_KEY_NAMES:
        if entry.get(name):
            return str(entry[name])
    entry_id = entry.get("id") or entry.get("customFieldId")
    if entry_id and id_to_key:
        return id_to_key.get(str(entry_id))
    return None


def _entry_value(entry: dict[str, Any]) -> Any:
    if "value" in entry:
        return entry["value"]
    return entry.get("field_value")


def _normalize_entries(
    entries: list[Any], id_to_key: dict[str, str] | None
) -> dict[str, Any]:
    normalized: dict[str, Any] = {}
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        key = _entry_key(entry, id_to_key)
        value = _entry_value(entry)
        if key and value is not None:
            normalized[key] = value
    return normalized


def normalize_custom_fields(
    raw: Any, id_to_key: dict[str, str] | None = None
) -> dict[str, Any]:
    """
    Normalize any known custom-field encoding into a flat {key: value} map.

    Args:
        raw: Field payload in one of the supported shapes
        id_to_key: Optional CRM field-id -> key map for entries carrying only an id

    Returns:
        Flat mapping; empty dict for unrecognized input
    """
    if not raw:
        return {}

    if isinstance(raw, list):
        return _normalize_entries(raw, id_to_key)

    if not isinstance(raw, dict):
        return {}

    keys = list(raw.keys())
    if keys and all(str(k).isdigit() for k in keys):
        return _normalize_entries([raw[k] for k in keys], id_to_key)

    normalized: dict[str, Any] = {}
    for key, value in raw.items():
        if value is None or value == "":
            continue
        if isinstance(value, dict):
            continue
        if " " in key or key[:1].isupper():
            snake_key = normalize_display_name(key)
            if snake_key:
                normalized[snake_key] = value
        else:
            normalized[key] = value
    return normalized


def contact_fields(contact: dict[str, Any] | None) -> dict[str, Any]:
    """Normalized field map of a CRM contact record."""
    if not contact:
        return {}
    raw = contact.get("customFields") or contact.get("customField") or {}
    return normalize_custom_fields(raw)


def build_effective_contact(
    contact: dict[str, Any] | None, payload_fields: Any = None
) -> dict[str, Any]:
    """
    Merge webhook-delivered fields over the stored contact's fields.

    Webhook payloads often carry fresher values than the contact lookup, so
    they win on conflict.
    """
    effective = dict(contact or {})
    merged = contact_fields(contact)
    merged.update(normalize_custom_fields(payload_fields))
    effective["customFields"] = merged
    return effective


def apply_field_updates(contact: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of contact with field updates applied in memory."""
    updated = dict(contact)
    fields = contact_fields(contact)
    for key, value in (updates or {}).items():
        # nested mappings are dropped by normalization, store them encoded
        fields[key] = json.dumps(value) if isinstance(value, dict) else value
    updated["customFields"] = fields
    return updated


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass
class CanonicalState:
    """Typed snapshot of a contact's fields; rebuilt every turn, never stored."""

    # Profile
    tattoo_summary: str | None = None
    tattoo_placement: str | None = None
    tattoo_size: str | None = None
    tattoo_style: str | None = None
    timeline: str | None = None
    language_preference: str | None = None
    inquired_technician: str | None = None
    returning_client: bool = False

    # Consult path
    consultation_type: str | None = None
    consultation_type_locked: bool = False
    consult_explained: bool = False

    # Interpreter
    translator_needed: bool = False
    translator_confirmed: bool = False
    translator_explained: bool = False

    # Money
    deposit_link_sent: bool = False
    deposit_paid: bool = False
    deposit_link_url: str | None = None
    deposit_payment_id: str | None = None

    # Hold
    hold_appointment_id: str | None = None
    hold_interpreter_appointment_id: str | None = None
    hold_calendar_id: str | None = None
    hold_slot_display: str | None = None
    hold_last_activity_at: datetime | None = None
    hold_warning_sent: bool = False
    released_slot_display: str | None = None
    released_slot_calendar_id: str | None = None

    # Confirmed booking / outcomes
    consult_appointment_id: str | None = None
    tattoo_booked: bool = False
    tattoo_completed: bool = False
    lead_lost: bool = False

    # Scheduling
    times_sent: bool = False
    last_sent_slots: list[dict[str, Any]] = field(default_factory=list)
    last_seen_snapshot: dict[str, Any] = field(default_factory=dict)

    # Pipeline
    opportunity_id: str | None = None
    opportunity_stage: str | None = None

    @property
    def appointment_booked(self) -> bool:
        """True iff a confirmed appointment id exists."""
        return self.consult_appointment_id is not None

    @property
    def upcoming_appointment_id(self) -> str | None:
        return self.consult_appointment_id or self.hold_appointment_id

    @property
    def has_active_hold(self) -> bool:
        return self.hold_appointment_id is not None

    def tracked_values(self) -> dict[str, str | None]:
        return {
            fk.TATTOO_SUMMARY: self.tattoo_summary,
            fk.TATTOO_PLACEMENT: self.tattoo_placement,
            fk.TATTOO_STYLE: self.tattoo_style,
            fk.TIMELINE: self.timeline,
            fk.CONSULTATION_TYPE: self.consultation_type,
        }


def build_canonical_state(field_map: Any) -> CanonicalState:
    """
    Project a field map (any supported shape) into a CanonicalState.

    Args:
        field_map: Raw or already-normalized custom fields

    Returns:
        CanonicalState with every field resolved, never raising
    """
    cf = normalize_custom_fields(field_map)

    last_sent_slots = parse_json_field(cf.get(fk.LAST_SENT_SLOTS), [])
    if not isinstance(last_sent_slots, list):
        last_sent_slots = []
    last_seen = parse_json_field(cf.get(fk.LAST_SEEN_SNAPSHOT), {})
    if not isinstance(last_seen, dict):
        last_seen = {}

    hold_last_activity_at = parse_datetime(cf.get(fk.HOLD_LAST_ACTIVITY_AT))
    if cf.get(fk.HOLD_LAST_ACTIVITY_AT) and hold_last_activity_at is None:
        logger.warning(
            f"Invalid hold timestamp ignored | value={cf.get(fk.HOLD_LAST_ACTIVITY_AT)!r}"
        )

    consultation_type = _text(cf.get(fk.CONSULTATION_TYPE))
    if consultation_type:
        consultation_type = consultation_type.lower()

    return CanonicalState(
        tattoo_summary=_text(cf.get(fk.TATTOO_SUMMARY)),
        tattoo_placement=_text(cf.get(fk.TATTOO_PLACEMENT)),
        tattoo_size=_text(cf.get(fk.TATTOO_SIZE)),
        tattoo_style=_text(cf.get(fk.TATTOO_STYLE)),
        timeline=_text(cf.get(fk.TIMELINE)),
        language_preference=_text(cf.get(fk.LANGUAGE_PREFERENCE)),
        inquired_technician=_text(cf.get(fk.INQUIRED_TECHNICIAN)),
        returning_client=bool_val(cf.get(fk.RETURNING_CLIENT)),
        consultation_type=consultation_type,
        consultation_type_locked=bool_val(cf.get(fk.CONSULTATION_TYPE_LOCKED)),
        consult_explained=bool_val(cf.get(fk.CONSULT_EXPLAINED)),
        translator_needed=bool_val(cf.get(fk.TRANSLATOR_NEEDED)),
        translator_confirmed=bool_val(cf.get(fk.TRANSLATOR_CONFIRMED)),
        translator_explained=(
            bool_val(cf.get(fk.TRANSLATOR_EXPLAINED))
            or bool_val(cf.get(fk.LANGUAGE_BARRIER_EXPLAINED))
        ),
        deposit_link_sent=bool_val(cf.get(fk.DEPOSIT_LINK_SENT)),
        deposit_paid=bool_val(cf.get(fk.DEPOSIT_PAID)),
        deposit_link_url=_text(cf.get(fk.DEPOSIT_LINK_URL)),
        deposit_payment_id=_text(cf.get(fk.DEPOSIT_PAYMENT_ID)),
        hold_appointment_id=_text(cf.get(fk.HOLD_APPOINTMENT_ID)),
        hold_interpreter_appointment_id=_text(cf.get(fk.HOLD_INTERPRETER_APPOINTMENT_ID)),
        hold_calendar_id=_text(cf.get(fk.HOLD_CALENDAR_ID)),
        hold_slot_display=_text(cf.get(fk.HOLD_SLOT_DISPLAY)),
        hold_last_activity_at=hold_last_activity_at,
        hold_warning_sent=bool_val(cf.get(fk.HOLD_WARNING_SENT)),
        released_slot_display=_text(cf.get(fk.RELEASED_SLOT_DISPLAY)),
        released_slot_calendar_id=_text(cf.get(fk.RELEASED_SLOT_CALENDAR_ID)),
        consult_appointment_id=_text(
            cf.get(fk.CONSULT_APPOINTMENT_ID) or cf.get(fk.APPOINTMENT_ID)
        ),
        tattoo_booked=bool_val(cf.get(fk.TATTOO_BOOKED)),
        tattoo_completed=bool_val(cf.get(fk.TATTOO_COMPLETED)),
        lead_lost=bool_val(cf.get(fk.LEAD_LOST)),
        times_sent=bool_val(cf.get(fk.TIMES_SENT)),
        last_sent_slots=[s for s in last_sent_slots if isinstance(s, dict)],
        last_seen_snapshot=last_seen,
        opportunity_id=_text(cf.get(fk.OPPORTUNITY_ID)),
        opportunity_stage=_text(cf.get(fk.OPPORTUNITY_STAGE)),
    )


def canonical_state_for_contact(contact: dict[str, Any] | None) -> CanonicalState:
    return build_canonical_state(contact_fields(contact))


def compute_last_seen_diff(
    state: CanonicalState, previous_snapshot: dict[str, Any] | None = None
) -> tuple[dict[str, Any], dict[str, Any]]:
    """
    Diff the tracked profile fields against the last persisted snapshot.

    Returns:
        (updated_snapshot, changed_fields)
    """
    previous = previous_snapshot or {}
    updated = dict(previous)
    changed: dict[str, Any] = {}

    for key, current in state.tracked_values().items():
        if current != (previous.get(key) or None):
            changed[key] = current
            updated[key] = current

    return updated, changed
