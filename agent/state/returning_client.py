"""
Returning-client detection from data the CRM already holds.

Strong evidence (any one is enough): the returning_client flag, a
past-client tag, completed tattoos on file, or a past confirmed appointment.
Lifetime value alone is only moderate evidence and needs the contact notes
to back it up ("another piece", "touch up", ...).
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from agent.state import field_keys as fk
from agent.state.canonical_state import bool_val, contact_fields
from shared.calendar_client import parse_datetime

RETURNING_TAGS = {"past-client", "past client", "tattoo client"}
ATTENDED_STATUSES = {"confirmed", "showed", "completed"}
RETURNING_NOTE_PHRASES = (
    "another piece",
    "another tattoo",
    "second tattoo",
    "second piece",
    "back for",
    "came back",
    "touch up",
    "touch-up",
    "cover up old",
    "cover-up old",
)


@dataclass
class AppointmentHistory:
    past_count: int = 0
    last_at: datetime | None = None
    staff_seen: list[str] = field(default_factory=list)


@dataclass
class ReturningClient:
    is_returning: bool = False
    signals: dict[str, Any] = field(default_factory=dict)
    history: AppointmentHistory = field(default_factory=AppointmentHistory)


def _number(raw: Any) -> float:
    try:
        return float(raw)
    except (TypeError, ValueError):
        return 0.0


def summarize_appointments(
    appointments: list[dict[str, Any]] | None, now: datetime | None = None
) -> AppointmentHistory:
    """Count attended appointments that already started."""
    now = now or datetime.now(timezone.utc)
    history = AppointmentHistory()
    for apt in appointments or []:
        if not apt:
            continue
        status = str(apt.get("appointmentStatus") or "").lower()
        start = parse_datetime(apt.get("startTime"))
        if start is None:
            continue
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        if start > now:
            continue
        if status not in ATTENDED_STATUSES:
            continue

        history.past_count += 1
        if history.last_at is None or start > history.last_at:
            history.last_at = start
        staff = apt.get("assignedUserId") or apt.get("userId")
        if staff and str(staff) not in history.staff_seen:
            history.staff_seen.append(str(staff))
    return history


def notes_suggest_returning(notes: str | None) -> bool:
    lowered = (notes or "").lower()
    return any(phrase in lowered for phrase in RETURNING_NOTE_PHRASES)


def detect_returning_client(
    contact: dict[str, Any] | None,
    appointments: list[dict[str, Any]] | None = None,
    now: datetime | None = None,
) -> ReturningClient:
    """
    Decide whether a contact has been tattooed here before.

    Args:
        contact: CRM contact record
        appointments: The contact's calendar appointments, when already fetched
        now: Reference time for "past" appointments (UTC now if omitted)

    Returns:
        ReturningClient with the verdict and the signals behind it
    """
    if not contact:
        return ReturningClient()

    cf = contact_fields(contact)
    tags = {str(t).strip().lower() for t in contact.get("tags") or [] if t}
    history = summarize_appointments(appointments, now)

    signals = {
        "returning_field": bool_val(cf.get(fk.RETURNING_CLIENT)),
        "returning_tag": bool(tags & RETURNING_TAGS),
        "tattoos_completed": _number(cf.get(fk.TOTAL_TATTOOS_COMPLETED)),
        "lifetime_value": _number(cf.get(fk.CLIENT_LIFETIME_VALUE)),
        "notes": notes_suggest_returning(
            contact.get("notes") or contact.get("note") or contact.get("description")
        ),
    }
    strong = (
        signals["returning_field"]
        or signals["returning_tag"]
        or signals["tattoos_completed"] > 0
        or history.past_count > 0
    )
    moderate = signals["lifetime_value"] > 0 and signals["notes"]

    return ReturningClient(is_returning=bool(strong or moderate), signals=signals, history=history)
