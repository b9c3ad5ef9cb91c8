"""
Assignment / Booking Engine.

Computes the consult slots a lead can be offered and, once one is chosen,
books it with the least-loaded free provider (plus a free interpreter when
the consult needs one).

Availability:
    offerable = union(provider slots)                          no interpreter
    offerable = union(provider slots) ∩ union(interpreter slots) interpreter

Availability queries fan out concurrently, one per calendar; a calendar that
fails to answer contributes no slots instead of failing the whole request.

Fairness:
    Providers free at the chosen time are ranked by workload (non-cancelled
    bookings in the day or week around the slot), ascending, ties broken by
    roster order. A workload read that fails scores BUSY_SENTINEL: the
    provider stays assignable, just last in line.

Failure policy:
    Chosen slot no longer free (or no interpreter free) raises
    SlotUnavailableError. If a deposit was captured it is refunded first.
    An interpreter appointment that cannot be created cancels the provider
    appointment already made for the pair, then raises the same way.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from shared.calendar_client import (
    CANCELLED_STATUSES,
    AppointmentStatus,
    CalendarClient,
    Slot,
)
from shared.circuit_breaker import calendar_breaker, call_with_breaker
from shared.config import Settings, StaffMember, get_settings
from shared.payment_client import PaymentClient
from agent.services.calendar_sync_service import cancel_appointment_with_fallback
from agent.utils.time_parsing import format_slot_display, get_timezone

logger = logging.getLogger(__name__)

PAIRING_KEY_PREFIX = "PairingKey:"
BUSY_SENTINEL = 10**6


class SlotUnavailableError(Exception):
    """The chosen slot was taken between offer and booking."""

    def __init__(self, message: str, refunded: bool = False):
        super().__init__(message)
        self.refunded = refunded


class AssignmentConfigError(Exception):
    """No provider or interpreter calendars configured for the requested mode."""


@dataclass
class Assignment:
    slot: Slot
    provider: StaffMember
    appointment: dict[str, Any]
    interpreter: StaffMember | None = None
    interpreter_appointment: dict[str, Any] | None = None
    pairing_key: str | None = None

    @property
    def appointment_id(self) -> str | None:
        return self.appointment.get("id")

    @property
    def interpreter_appointment_id(self) -> str | None:
        if not self.interpreter_appointment:
            return None
        return self.interpreter_appointment.get("id")


def generate_pairing_key() -> str:
    return uuid.uuid4().hex[:8].upper()


def workload_window(at: datetime, window: str) -> tuple[datetime, datetime]:
    """Local day, or Monday-to-Monday week, containing ``at``."""
    local = at.astimezone(get_timezone())
    day_start = local.replace(hour=0, minute=0, second=0, microsecond=0)
    if window == "day":
        return day_start, day_start + timedelta(days=1)
    week_start = day_start - timedelta(days=day_start.weekday())
    return week_start, week_start + timedelta(days=7)


def _same_name(member: StaffMember, name: str | None) -> bool:
    return bool(name) and member.name.strip().lower() == name.strip().lower()


class BookingEngine:
    """Offers and books consult slots across provider and interpreter calendars."""

    def __init__(
        self,
        calendar: CalendarClient | None = None,
        payments: PaymentClient | None = None,
        settings: Settings | None = None,
    ):
        self.calendar = calendar or CalendarClient()
        self.payments = payments or PaymentClient()
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Roster
    # ------------------------------------------------------------------

    def candidate_providers(self, preferred: str | None = None) -> list[StaffMember]:
        providers = list(self.settings.PROVIDERS)
        if preferred:
            matching = [p for p in providers if _same_name(p, preferred)]
            if matching:
                return matching
        return providers

    def _with_calendar(
        self, members: list[StaffMember], mode: str
    ) -> list[tuple[StaffMember, str]]:
        pairs = []
        for member in members:
            calendar_id = member.calendar_for_mode(mode)
            if calendar_id:
                pairs.append((member, calendar_id))
        return pairs

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    async def _fetch_slots(self, calendar_id: str, start: datetime, end: datetime) -> list[Slot]:
        try:
            return await call_with_breaker(
                calendar_breaker, self.calendar.get_free_slots, calendar_id, start, end
            )
        except Exception as e:
            logger.warning(
                f"Free-slot fetch failed, treating as empty | calendar_id={calendar_id} | error={e}"
            )
            return []

    async def _slots_by_calendar(
        self, calendar_ids: list[str], start: datetime, end: datetime
    ) -> dict[str, list[Slot]]:
        results = await asyncio.gather(
            *(self._fetch_slots(calendar_id, start, end) for calendar_id in calendar_ids)
        )
        return dict(zip(calendar_ids, results))

    def _search_window(
        self, start: datetime | None, end: datetime | None
    ) -> tuple[datetime, datetime]:
        start = start or datetime.now(get_timezone())
        end = end or start + timedelta(days=self.settings.SLOT_SEARCH_DAYS)
        return start, end

    async def get_offerable_slots(
        self,
        mode: str = "online",
        needs_interpreter: bool = False,
        preferred_provider: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Slot]:
        """
        Slots at which some candidate provider (and interpreter, if needed) is free.

        Returns:
            Slots sorted by start time, each labelled with the first provider
            free at that time

        Raises:
            AssignmentConfigError: No calendars configured for the mode
        """
        start, end = self._search_window(start, end)

        providers = self._with_calendar(self.candidate_providers(preferred_provider), mode)
        if not providers:
            raise AssignmentConfigError(f"No provider calendars configured for mode={mode}")

        provider_slots = await self._slots_by_calendar([c for _, c in providers], start, end)

        offerable: dict[datetime, Slot] = {}
        for member, calendar_id in providers:
            for slot in provider_slots[calendar_id]:
                if slot.start_time not in offerable:
                    offerable[slot.start_time] = Slot(
                        start_time=slot.start_time,
                        end_time=slot.end_time,
                        calendar_id=calendar_id,
                        provider=member.name,
                        consult_mode=mode,
                    )

        if needs_interpreter:
            interpreters = self._with_calendar(list(self.settings.INTERPRETERS), mode)
            if not interpreters:
                raise AssignmentConfigError(f"No interpreter calendars configured for mode={mode}")
            interpreter_slots = await self._slots_by_calendar(
                [c for _, c in interpreters], start, end
            )
            interpreter_starts = {
                slot.start_time for slots in interpreter_slots.values() for slot in slots
            }
            offerable = {
                at: slot for at, slot in offerable.items() if at in interpreter_starts
            }

        slots = sorted(offerable.values(), key=lambda s: s.start_time)
        for slot in slots:
            slot.display_text = format_slot_display(slot.start_time)

        logger.info(
            f"Offerable slots computed | mode={mode} | interpreter={needs_interpreter} | "
            f"count={len(slots)}"
        )
        return slots

    async def _free_at(
        self, members: list[tuple[StaffMember, str]], at: datetime
    ) -> list[tuple[StaffMember, str]]:
        """Members whose calendar still lists ``at`` as free (roster order kept)."""
        day_start, day_end = workload_window(at, "day")
        by_calendar = await self._slots_by_calendar([c for _, c in members], day_start, day_end)
        return [
            (member, calendar_id)
            for member, calendar_id in members
            if any(slot.start_time == at for slot in by_calendar[calendar_id])
        ]

    # ------------------------------------------------------------------
    # Fairness
    # ------------------------------------------------------------------

    async def workload(self, calendar_id: str, at: datetime) -> int:
        """Non-cancelled bookings in the scoring window; BUSY_SENTINEL on failure."""
        window_start, window_end = workload_window(at, self.settings.WORKLOAD_WINDOW)
        try:
            events = await call_with_breaker(
                calendar_breaker,
                self.calendar.list_calendar_events,
                calendar_id,
                window_start,
                window_end,
            )
        except Exception as e:
            logger.warning(
                f"Workload lookup failed, scoring as busy | calendar_id={calendar_id} | error={e}"
            )
            return BUSY_SENTINEL

        return sum(
            1
            for event in events
            if str(event.get("appointmentStatus") or event.get("status") or "").lower()
            not in CANCELLED_STATUSES
        )

    async def rank_providers(
        self, candidates: list[tuple[StaffMember, str]], at: datetime
    ) -> list[tuple[StaffMember, str]]:
        scores = await asyncio.gather(
            *(self.workload(calendar_id, at) for _, calendar_id in candidates)
        )
        ranked = sorted(zip(scores, range(len(candidates)), candidates))
        for score, _, (member, _) in ranked:
            logger.debug(f"Provider workload | provider={member.name} | score={score}")
        return [candidate for _, _, candidate in ranked]

    # ------------------------------------------------------------------
    # Booking
    # ------------------------------------------------------------------

    async def _refund_and_raise(
        self, contact_id: str, reason: str, deposit_payment_id: str | None
    ) -> None:
        refunded = False
        if deposit_payment_id:
            try:
                await self.payments.refund_payment(
                    deposit_payment_id,
                    self.settings.DEPOSIT_AMOUNT_CENTS,
                    reason="Requested consult slot no longer available",
                )
                refunded = True
            except Exception as e:
                logger.error(
                    f"Refund after lost slot failed | contact_id={contact_id} | "
                    f"payment_id={deposit_payment_id} | error={e}",
                    exc_info=True,
                )
        logger.warning(
            f"Slot unavailable | contact_id={contact_id} | reason={reason} | refunded={refunded}"
        )
        raise SlotUnavailableError(reason, refunded=refunded)

    async def _cancel_orphan(self, appointment_id: str | None, calendar_id: str) -> None:
        if not appointment_id:
            return
        result = await cancel_appointment_with_fallback(self.calendar, appointment_id, calendar_id)
        if not result.succeeded:
            logger.error(
                f"Orphaned provider appointment left booked | appointment_id={appointment_id} | "
                f"calendar_id={calendar_id}"
            )

    async def assign_and_book(
        self,
        contact_id: str,
        slot: Slot,
        needs_interpreter: bool = False,
        preferred_provider: str | None = None,
        deposit_payment_id: str | None = None,
        status: str = AppointmentStatus.NEW,
        title: str = "Tattoo Consultation",
    ) -> Assignment:
        """
        Book a chosen slot with a provider and, if needed, an interpreter.

        Args:
            contact_id: CRM contact id
            slot: Slot the lead picked (its consult_mode selects calendars)
            needs_interpreter: Pair the booking with an interpreter appointment
            preferred_provider: Provider name the lead asked for, if any
            deposit_payment_id: Captured deposit to refund if the slot is gone
            status: Appointment status (holds are created as NEW)

        Raises:
            AssignmentConfigError: No provider/interpreter calendars configured
            SlotUnavailableError: Slot taken, or no interpreter free at that time
        """
        mode = slot.consult_mode or "online"
        providers = self._with_calendar(list(self.settings.PROVIDERS), mode)
        if not providers:
            raise AssignmentConfigError(f"No provider calendars configured for mode={mode}")

        free_providers = await self._free_at(providers, slot.start_time)
        if not free_providers:
            await self._refund_and_raise(contact_id, "slot_taken", deposit_payment_id)

        preferred = [c for c in free_providers if _same_name(c[0], preferred_provider)]
        if preferred:
            provider, provider_calendar = preferred[0]
        else:
            provider, provider_calendar = (await self.rank_providers(free_providers, slot.start_time))[0]

        interpreter: tuple[StaffMember, str] | None = None
        if needs_interpreter:
            interpreters = self._with_calendar(list(self.settings.INTERPRETERS), mode)
            if not interpreters:
                raise AssignmentConfigError(f"No interpreter calendars configured for mode={mode}")
            free_interpreters = await self._free_at(interpreters, slot.start_time)
            if not free_interpreters:
                await self._refund_and_raise(
                    contact_id, "no_interpreter_available", deposit_payment_id
                )
            interpreter = free_interpreters[0]

        pairing_key = generate_pairing_key() if interpreter else None
        notes = f"{PAIRING_KEY_PREFIX}{pairing_key}" if pairing_key else ""

        appointment = await self.calendar.create_appointment(
            provider_calendar,
            contact_id,
            slot.start_time,
            slot.end_time,
            title=title,
            notes=notes,
            status=status,
            assigned_user_id=provider.user_id,
        )

        assignment = Assignment(
            slot=Slot(
                start_time=slot.start_time,
                end_time=slot.end_time,
                calendar_id=provider_calendar,
                provider=provider.name,
                consult_mode=mode,
                display_text=slot.display_text or format_slot_display(slot.start_time),
            ),
            provider=provider,
            appointment=appointment,
            pairing_key=pairing_key,
        )

        if interpreter:
            member, interpreter_calendar = interpreter
            assignment.interpreter = member
            assignment.slot.interpreter = member.name
            assignment.slot.interpreter_calendar_id = interpreter_calendar
            try:
                assignment.interpreter_appointment = await self.calendar.create_appointment(
                    interpreter_calendar,
                    contact_id,
                    slot.start_time,
                    slot.end_time,
                    title=f"{title} (Interpreter)",
                    notes=notes,
                    status=status,
                    assigned_user_id=member.user_id,
                )
            except Exception as e:
                logger.error(
                    f"Interpreter booking failed, releasing provider appointment | "
                    f"contact_id={contact_id} | appointment_id={assignment.appointment_id} | error={e}"
                )
                await self._cancel_orphan(assignment.appointment_id, provider_calendar)
                await self._refund_and_raise(
                    contact_id, "interpreter_booking_failed", deposit_payment_id
                )

        logger.info(
            f"Slot booked | contact_id={contact_id} | appointment_id={assignment.appointment_id} | "
            f"provider={provider.name} | interpreter={assignment.slot.interpreter} | "
            f"pairing_key={pairing_key}"
        )
        return assignment
