"""
Calendar/Appointment API client.

Wraps the CRM calendar endpoints used by the booking engine:
- free-slot lookup (chunked: the API caps a single request's range)
- appointment create / status update / reschedule, each with a legacy variant
- appointment listings for a contact (sibling lookup) and a calendar (workload)
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, cast

import httpx
from dateutil import parser as date_parser

from shared.config import get_settings
from shared.crm_client import http_retry

logger = logging.getLogger(__name__)


class AppointmentStatus:
    NEW = "new"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


CANCELLED_STATUSES = {"cancelled", "canceled"}


def parse_datetime(value: Any) -> datetime | None:
    """Parse ISO strings (or pass through datetimes); None on anything unparseable."""
    if isinstance(value, datetime):
        return value
    if not value or not isinstance(value, str):
        return None
    try:
        return date_parser.isoparse(value)
    except (ValueError, OverflowError):
        return None


@dataclass
class Slot:
    """A bookable time on one calendar, optionally paired with an interpreter."""

    start_time: datetime
    end_time: datetime
    calendar_id: str | None = None
    provider: str | None = None
    interpreter: str | None = None
    interpreter_calendar_id: str | None = None
    consult_mode: str = "online"
    display_text: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "calendar_id": self.calendar_id,
            "provider": self.provider,
            "interpreter": self.interpreter,
            "interpreter_calendar_id": self.interpreter_calendar_id,
            "consult_mode": self.consult_mode,
            "display_text": self.display_text,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Slot | None":
        """Accepts snake_case and the camelCase keys older records used."""
        if not isinstance(data, dict):
            return None
        start = parse_datetime(data.get("start_time") or data.get("startTime"))
        end = parse_datetime(data.get("end_time") or data.get("endTime"))
        if start is None:
            return None
        if end is None:
            end = start + timedelta(minutes=get_settings().SLOT_DURATION_MINUTES)
        return cls(
            start_time=start,
            end_time=end,
            calendar_id=data.get("calendar_id") or data.get("calendarId"),
            provider=data.get("provider") or data.get("artist"),
            interpreter=data.get("interpreter") or data.get("translator"),
            interpreter_calendar_id=(
                data.get("interpreter_calendar_id") or data.get("translatorCalendarId")
            ),
            consult_mode=data.get("consult_mode") or data.get("consultMode") or "online",
            display_text=data.get("display_text") or data.get("displayText"),
        )


def chunk_date_range(
    start: datetime, end: datetime, max_days: int
) -> list[tuple[datetime, datetime]]:
    """Split [start, end) into consecutive windows no longer than max_days."""
    chunks: list[tuple[datetime, datetime]] = []
    step = timedelta(days=max_days)
    cursor = start
    while cursor < end:
        chunk_end = min(cursor + step, end)
        chunks.append((cursor, chunk_end))
        cursor = chunk_end
    return chunks


def parse_free_slots_response(
    data: dict[str, Any], calendar_id: str, slot_minutes: int
) -> list[Slot]:
    """
    Parse a date-keyed free-slot payload.

    Example:
        {"2025-12-22": {"slots": ["2025-12-22T10:00:00-06:00", ...]}, "traceId": "..."}
    """
    slots: list[Slot] = []
    for date_key, date_data in data.items():
        if date_key == "traceId" or not isinstance(date_data, dict):
            continue
        for raw in date_data.get("slots") or []:
            start = parse_datetime(raw)
            if start is None:
                continue
            slots.append(
                Slot(
                    start_time=start,
                    end_time=start + timedelta(minutes=slot_minutes),
                    calendar_id=calendar_id,
                )
            )
    return slots


class CalendarClient:
    """Client for calendar free slots and appointment records."""

    def __init__(self):
        settings = get_settings()
        self.api_url = settings.CRM_API_URL.rstrip("/")
        self.location_id = settings.CRM_LOCATION_ID
        self.max_range_days = settings.CALENDAR_MAX_RANGE_DAYS
        self.slot_minutes = settings.SLOT_DURATION_MINUTES
        self.headers = {
            "Authorization": f"Bearer {settings.CRM_API_TOKEN}",
            "Version": settings.CRM_API_VERSION,
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        async with httpx.AsyncClient() as client:
            try:
                response = await client.request(
                    method,
                    f"{self.api_url}{path}",
                    json=json_body,
                    params=params,
                    headers=self.headers,
                    timeout=10.0,
                )
                response.raise_for_status()
                if not response.content:
                    return {}
                return cast(dict[str, Any], response.json())

            except httpx.HTTPError as e:
                logger.error(
                    f"Calendar HTTP error | method={method} | path={path} | error={e}"
                )
                raise

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    @http_retry
    async def _get_free_slots_chunk(
        self, calendar_id: str, start: datetime, end: datetime
    ) -> list[Slot]:
        data = await self._request(
            "GET",
            f"/calendars/{calendar_id}/free-slots",
            params={
                "startDate": int(start.timestamp() * 1000),
                "endDate": int(end.timestamp() * 1000),
            },
        )
        return parse_free_slots_response(data, calendar_id, self.slot_minutes)

    async def get_free_slots(
        self, calendar_id: str, start: datetime, end: datetime
    ) -> list[Slot]:
        """
        List free slots for a calendar, chunking ranges longer than the API cap.

        Returns:
            Slots sorted by start time, de-duplicated across chunk boundaries
        """
        seen: set[datetime] = set()
        slots: list[Slot] = []

        for chunk_start, chunk_end in chunk_date_range(start, end, self.max_range_days):
            for slot in await self._get_free_slots_chunk(calendar_id, chunk_start, chunk_end):
                if slot.start_time in seen:
                    continue
                seen.add(slot.start_time)
                slots.append(slot)

        slots.sort(key=lambda s: s.start_time)
        logger.debug(
            f"Free slots fetched | calendar_id={calendar_id} | count={len(slots)}"
        )
        return slots

    # ------------------------------------------------------------------
    # Appointments
    # ------------------------------------------------------------------

    @http_retry
    async def create_appointment(
        self,
        calendar_id: str,
        contact_id: str,
        start: datetime,
        end: datetime,
        title: str = "Consultation",
        notes: str = "",
        status: str = AppointmentStatus.NEW,
        assigned_user_id: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "title": title,
            "meetingLocationType": "custom",
            "overrideLocationConfig": True,
            "appointmentStatus": status,
            "description": notes,
            "notes": notes,
            "toNotify": False,
            "ignoreFreeSlotValidation": False,
            "calendarId": calendar_id,
            "locationId": self.location_id,
            "contactId": contact_id,
            "startTime": start.isoformat(),
            "endTime": end.isoformat(),
        }
        if assigned_user_id:
            payload["assignedUserId"] = assigned_user_id

        appointment = await self._request(
            "POST", "/calendars/events/appointments", json_body=payload
        )
        logger.info(
            f"Appointment created | appointment_id={appointment.get('id')} | "
            f"calendar_id={calendar_id} | contact_id={contact_id} | status={status}"
        )
        return appointment

    @http_retry
    async def list_contact_appointments(self, contact_id: str) -> list[dict[str, Any]]:
        data = await self._request("GET", f"/contacts/{contact_id}/appointments")
        return cast(list[dict[str, Any]], data.get("events", []))

    @http_retry
    async def list_calendar_events(
        self, calendar_id: str, start: datetime, end: datetime
    ) -> list[dict[str, Any]]:
        data = await self._request(
            "GET",
            "/calendars/events",
            params={
                "locationId": self.location_id,
                "calendarId": calendar_id,
                "startTime": int(start.timestamp() * 1000),
                "endTime": int(end.timestamp() * 1000),
            },
        )
        return cast(list[dict[str, Any]], data.get("events", []))

    @http_retry
    async def update_appointment_status(
        self, appointment_id: str, status: str, calendar_id: str | None = None
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"appointmentStatus": status, "toNotify": False}
        if calendar_id:
            payload["calendarId"] = calendar_id
        result = await self._request(
            "PUT", f"/calendars/events/appointments/{appointment_id}", json_body=payload
        )
        logger.info(f"Appointment status updated | appointment_id={appointment_id} | status={status}")
        return result

    async def update_appointment_status_legacy(
        self, appointment_id: str, status: str, calendar_id: str | None = None
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"status": status}
        if calendar_id:
            payload["calendarId"] = calendar_id
        return await self._request(
            "PUT", f"/appointments/{appointment_id}/status", json_body=payload
        )

    @http_retry
    async def reschedule_appointment(
        self,
        appointment_id: str,
        start: str,
        end: str,
        calendar_id: str | None = None,
        assigned_user_id: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "startTime": start,
            "endTime": end,
            "ignoreFreeSlotValidation": True,
            "overrideLocationConfig": True,
            "toNotify": False,
        }
        if calendar_id:
            payload["calendarId"] = calendar_id
        if assigned_user_id:
            payload["assignedUserId"] = assigned_user_id
        return await self._request(
            "PUT", f"/calendars/events/appointments/{appointment_id}", json_body=payload
        )

    async def reschedule_appointment_legacy(
        self,
        appointment_id: str,
        start: str,
        end: str,
        calendar_id: str | None = None,
        assigned_user_id: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"startTime": start, "endTime": end}
        if calendar_id:
            payload["calendarId"] = calendar_id
        if assigned_user_id:
            payload["assignedUserId"] = assigned_user_id
        return await self._request("PUT", f"/appointments/{appointment_id}", json_body=payload)
