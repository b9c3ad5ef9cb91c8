"""
Cross-Calendar Sync - mirrors cancel/reschedule between paired appointments.

A consult with an interpreter lives as two appointments on two calendars
(provider + interpreter), created together and tagged with the same
"PairingKey:XXXXXXXX" in their notes. When a calendar webhook reports that
one of them changed, this service finds its sibling(s) and applies the same
change.

Sibling lookup:
    1. Pairing key match in notes (preferred, unambiguous)
    2. Exact start-time match on a sibling calendar (timezone suffix ignored)
Already-cancelled siblings are skipped when propagating a cancel.

Best effort: each sibling is processed independently; per-appointment
outcomes are collected and logged, never raised to the webhook. Siblings are
cancelled, never deleted.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from agent.utils.time_parsing import ensure_timezone, strip_timezone
from shared.calendar_client import CANCELLED_STATUSES, AppointmentStatus, CalendarClient
from shared.config import Settings, get_settings
from shared.resilient_api import StrategyResult, try_strategies

logger = logging.getLogger(__name__)

PAIRING_KEY_PATTERN = re.compile(r"PairingKey:([A-F0-9]{8})", re.IGNORECASE)

PROVIDER_ROLE = "provider"
INTERPRETER_ROLE = "interpreter"


def extract_pairing_key(notes: str | None) -> str | None:
    """Return the full "PairingKey:XXXXXXXX" token from appointment notes."""
    if not notes:
        return None
    match = PAIRING_KEY_PATTERN.search(notes)
    return f"PairingKey:{match.group(1).upper()}" if match else None


def appointment_status(appointment: dict[str, Any]) -> str:
    """Status, tolerating the CRM's misspelled "appoinmentStatus" key."""
    raw = (
        appointment.get("appoinmentStatus")
        or appointment.get("appointmentStatus")
        or appointment.get("status")
        or ""
    )
    return str(raw).lower()


def is_cancelled_status(status: str | None) -> bool:
    return (status or "").lower() in CANCELLED_STATUSES


@dataclass
class AppointmentChange:
    """Calendar change event, already extracted from the webhook payload."""

    contact_id: str
    appointment_id: str
    calendar_id: str
    start_time: str | None = None
    end_time: str | None = None
    status: str | None = None
    notes: str | None = None

    @property
    def is_cancellation(self) -> bool:
        return is_cancelled_status(self.status)


@dataclass
class SiblingResult:
    appointment_id: str
    action: str  # "cancel" | "reschedule" | "unchanged"
    ok: bool
    strategy: str | None = None
    error: str | None = None


@dataclass
class SyncResult:
    role: str
    action: str
    siblings: list[SiblingResult] = field(default_factory=list)

    @property
    def failed(self) -> list[SiblingResult]:
        return [s for s in self.siblings if not s.ok]


async def cancel_appointment_with_fallback(
    calendar: CalendarClient, appointment_id: str, calendar_id: str | None = None
) -> StrategyResult:
    """Cancel via the primary endpoint, then the legacy one."""
    return await try_strategies([
        (
            "primary",
            lambda: calendar.update_appointment_status(
                appointment_id, AppointmentStatus.CANCELLED, calendar_id
            ),
        ),
        (
            "legacy",
            lambda: calendar.update_appointment_status_legacy(
                appointment_id, AppointmentStatus.CANCELLED, calendar_id
            ),
        ),
    ])


async def reschedule_appointment_with_fallback(
    calendar: CalendarClient,
    appointment_id: str,
    start: str,
    end: str,
    calendar_id: str | None = None,
    assigned_user_id: str | None = None,
) -> StrategyResult:
    return await try_strategies([
        (
            "primary",
            lambda: calendar.reschedule_appointment(
                appointment_id, start, end, calendar_id, assigned_user_id
            ),
        ),
        (
            "legacy",
            lambda: calendar.reschedule_appointment_legacy(
                appointment_id, start, end, calendar_id, assigned_user_id
            ),
        ),
    ])


class CalendarSyncService:
    """Propagates appointment changes from one calendar to its paired sibling."""

    def __init__(self, calendar: CalendarClient | None = None, settings: Settings | None = None):
        self.calendar = calendar or CalendarClient()
        self.settings = settings or get_settings()

    def role_for_calendar(self, calendar_id: str) -> str | None:
        if calendar_id in self.settings.provider_calendar_ids():
            return PROVIDER_ROLE
        if calendar_id in self.settings.interpreter_calendar_ids():
            return INTERPRETER_ROLE
        return None

    def sibling_calendar_ids(self, role: str) -> set[str]:
        if role == PROVIDER_ROLE:
            return self.settings.interpreter_calendar_ids()
        return self.settings.provider_calendar_ids()

    def assigned_user_for_calendar(self, calendar_id: str) -> str | None:
        for member in [*self.settings.PROVIDERS, *self.settings.INTERPRETERS]:
            if calendar_id in member.calendar_ids():
                return member.user_id
        return None

    def find_siblings(
        self,
        change: AppointmentChange,
        appointments: list[dict[str, Any]],
        sibling_calendars: set[str],
    ) -> list[dict[str, Any]]:
        """Sibling appointments by pairing key, else by exact start time."""
        trigger = next((a for a in appointments if a.get("id") == change.appointment_id), {})
        pairing_key = extract_pairing_key(change.notes) or extract_pairing_key(trigger.get("notes"))

        candidates = [
            apt
            for apt in appointments
            if apt.get("id")
            and apt.get("calendarId") in sibling_calendars
            and apt.get("id") != change.appointment_id
            and not (change.is_cancellation and is_cancelled_status(appointment_status(apt)))
        ]

        if pairing_key:
            matched = [a for a in candidates if extract_pairing_key(a.get("notes")) == pairing_key]
            if matched:
                logger.info(
                    f"Siblings matched by pairing key | appointment_id={change.appointment_id} | "
                    f"pairing_key={pairing_key} | count={len(matched)}"
                )
                return matched

        trigger_start = strip_timezone(change.start_time)
        if not trigger_start:
            return []
        matched = [a for a in candidates if strip_timezone(a.get("startTime")) == trigger_start]
        if matched:
            logger.info(
                f"Siblings matched by start time | appointment_id={change.appointment_id} | "
                f"count={len(matched)}"
            )
        return matched

    async def _cancel_sibling(self, sibling: dict[str, Any]) -> SiblingResult:
        sibling_id = sibling["id"]
        result = await cancel_appointment_with_fallback(
            self.calendar, sibling_id, sibling.get("calendarId")
        )
        return SiblingResult(
            appointment_id=sibling_id,
            action="cancel",
            ok=result.succeeded,
            strategy=result.strategy,
            error=None if result.succeeded else result.attempts[-1].error,
        )

    async def _reschedule_sibling(
        self, sibling: dict[str, Any], start: str, end: str
    ) -> SiblingResult:
        sibling_id = sibling["id"]
        if strip_timezone(sibling.get("startTime")) == strip_timezone(start) and strip_timezone(
            sibling.get("endTime")
        ) == strip_timezone(end):
            return SiblingResult(appointment_id=sibling_id, action="unchanged", ok=True)

        calendar_id = sibling.get("calendarId")
        assigned_user_id = sibling.get("assignedUserId") or (
            self.assigned_user_for_calendar(calendar_id) if calendar_id else None
        )
        result = await reschedule_appointment_with_fallback(
            self.calendar, sibling_id, start, end, calendar_id, assigned_user_id
        )
        return SiblingResult(
            appointment_id=sibling_id,
            action="reschedule",
            ok=result.succeeded,
            strategy=result.strategy,
            error=None if result.succeeded else result.attempts[-1].error,
        )

    async def sync_appointment_change(self, change: AppointmentChange) -> SyncResult | None:
        """
        Mirror a cancel or reschedule onto the changed appointment's siblings.

        The triggering appointment itself is never modified.

        Returns:
            SyncResult with one entry per sibling, or None when nothing applies
            (unknown calendar, lookup failure, no siblings, no new times)
        """
        if not (change.contact_id and change.appointment_id and change.calendar_id):
            logger.warning(f"Appointment change missing identifiers | change={change}")
            return None

        role = self.role_for_calendar(change.calendar_id)
        if role is None:
            logger.info(f"Calendar not paired, ignoring change | calendar_id={change.calendar_id}")
            return None

        try:
            appointments = await self.calendar.list_contact_appointments(change.contact_id)
        except Exception as e:
            logger.error(
                f"Sibling lookup failed | contact_id={change.contact_id} | "
                f"appointment_id={change.appointment_id} | error={e}"
            )
            return None

        siblings = self.find_siblings(change, appointments, self.sibling_calendar_ids(role))
        if not siblings:
            logger.info(
                f"No sibling appointment found | appointment_id={change.appointment_id} | role={role}"
            )
            return None

        if change.is_cancellation:
            action = "cancel"
            results = await asyncio.gather(*(self._cancel_sibling(s) for s in siblings))
        else:
            start = ensure_timezone(change.start_time)
            end = ensure_timezone(change.end_time)
            if not (start and end):
                logger.info(f"Change carries no new times | appointment_id={change.appointment_id}")
                return None
            action = "reschedule"
            results = await asyncio.gather(
                *(self._reschedule_sibling(s, start, end) for s in siblings)
            )

        sync_result = SyncResult(role=role, action=action, siblings=list(results))
        for failure in sync_result.failed:
            logger.error(
                f"Sibling sync failed | appointment_id={failure.appointment_id} | "
                f"action={failure.action} | error={failure.error}"
            )
        logger.info(
            f"Appointment change synced | contact_id={change.contact_id} | "
            f"appointment_id={change.appointment_id} | role={role} | action={action} | "
            f"siblings={len(results)} | failed={len(sync_result.failed)}"
        )
        return sync_result
