"""
Unit tests for assignment_service.py - offerable slots and fair booking.

Tests coverage:
- get_offerable_slots(): provider union, interpreter intersection, failing calendars
- assign_and_book(): least-loaded provider, roster tie-break, busy sentinel
- Lost slot raises SlotUnavailableError after refunding a captured deposit
- Interpreter bookings share a pairing key; a failed interpreter booking
  cancels the provider appointment
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from agent.services.assignment_service import (
    BUSY_SENTINEL,
    PAIRING_KEY_PREFIX,
    BookingEngine,
    SlotUnavailableError,
)
from shared.calendar_client import AppointmentStatus
from shared.config import get_settings


@pytest.fixture
def calendar():
    mock = AsyncMock()
    mock.list_calendar_events.return_value = []
    mock.create_appointment.side_effect = lambda calendar_id, *a, **kw: {
        "id": f"appt-{calendar_id}"
    }
    return mock


@pytest.fixture
def payments():
    return AsyncMock()


@pytest.fixture
def engine(calendar, payments):
    return BookingEngine(calendar=calendar, payments=payments, settings=get_settings())


def free_slots(by_calendar):
    """side_effect for get_free_slots keyed by calendar id."""

    async def _get(calendar_id, start, end):
        value = by_calendar.get(calendar_id, [])
        if isinstance(value, Exception):
            raise value
        return value

    return _get


def events(count):
    return [{"appointmentStatus": "confirmed"} for _ in range(count)]


# ============================================================================
# Availability
# ============================================================================


class TestGetOfferableSlots:
    @pytest.mark.asyncio
    async def test_union_of_providers(self, engine, calendar, make_slot):
        calendar.get_free_slots.side_effect = free_slots({
            "cal-joan": [make_slot(hour=17)],
            "cal-andrew": [make_slot(hour=17, calendar_id="cal-andrew"),
                           make_slot(hour=18, calendar_id="cal-andrew")],
        })

        slots = await engine.get_offerable_slots()

        assert [s.start_time.hour for s in slots] == [17, 18]
        assert slots[0].provider == "Joan"
        assert slots[1].provider == "Andrew"
        assert slots[0].display_text == "Tuesday, Dec 2 at 5pm"

    @pytest.mark.asyncio
    async def test_interpreter_intersection(self, engine, calendar, make_slot):
        calendar.get_free_slots.side_effect = free_slots({
            "cal-joan": [make_slot(hour=17), make_slot(hour=18)],
            "cal-maria": [make_slot(hour=18, calendar_id="cal-maria")],
        })

        slots = await engine.get_offerable_slots(needs_interpreter=True)

        assert [s.start_time.hour for s in slots] == [18]

    @pytest.mark.asyncio
    async def test_failing_calendar_contributes_nothing(self, engine, calendar, make_slot):
        calendar.get_free_slots.side_effect = free_slots({
            "cal-joan": RuntimeError("timeout"),
            "cal-andrew": [make_slot(hour=9, calendar_id="cal-andrew")],
        })

        slots = await engine.get_offerable_slots()

        assert len(slots) == 1
        assert slots[0].provider == "Andrew"

    @pytest.mark.asyncio
    async def test_preferred_provider_narrows_roster(self, engine, calendar, make_slot):
        calendar.get_free_slots.side_effect = free_slots({
            "cal-joan": [make_slot(hour=17)],
            "cal-andrew": [make_slot(hour=10, calendar_id="cal-andrew")],
        })

        slots = await engine.get_offerable_slots(preferred_provider="andrew")

        assert [s.provider for s in slots] == ["Andrew"]


# ============================================================================
# Booking
# ============================================================================


class TestAssignAndBook:
    @pytest.mark.asyncio
    async def test_least_loaded_provider_wins(self, engine, calendar, make_slot):
        slot = make_slot(hour=17)
        calendar.get_free_slots.side_effect = free_slots({
            "cal-joan": [make_slot(hour=17)],
            "cal-andrew": [make_slot(hour=17, calendar_id="cal-andrew")],
        })
        calendar.list_calendar_events.side_effect = lambda cal, *a: (
            events(3) if cal == "cal-joan" else events(1)
        )

        assignment = await engine.assign_and_book("contact-1", slot)

        assert assignment.provider.name == "Andrew"
        assert assignment.appointment_id == "appt-cal-andrew"
        assert assignment.pairing_key is None
        kwargs = calendar.create_appointment.call_args.kwargs
        assert kwargs["assigned_user_id"] == "user-andrew"
        assert kwargs["notes"] == ""

    @pytest.mark.asyncio
    async def test_tie_breaks_by_roster_order(self, engine, calendar, make_slot):
        calendar.get_free_slots.side_effect = free_slots({
            "cal-joan": [make_slot(hour=17)],
            "cal-andrew": [make_slot(hour=17, calendar_id="cal-andrew")],
        })

        assignment = await engine.assign_and_book("contact-1", make_slot(hour=17))

        assert assignment.provider.name == "Joan"

    @pytest.mark.asyncio
    async def test_cancelled_events_do_not_count(self, engine, calendar, make_slot):
        calendar.list_calendar_events.return_value = [
            {"appointmentStatus": "cancelled"},
            {"status": "Canceled"},
        ]
        assert await engine.workload("cal-joan", make_slot().start_time) == 0

    @pytest.mark.asyncio
    async def test_workload_failure_is_busy_not_excluded(self, engine, calendar, make_slot):
        calendar.get_free_slots.side_effect = free_slots({
            "cal-joan": [make_slot(hour=17)],
            "cal-andrew": [make_slot(hour=17, calendar_id="cal-andrew")],
        })

        async def _events(calendar_id, start, end):
            if calendar_id == "cal-joan":
                raise RuntimeError("500")
            return events(5)

        calendar.list_calendar_events.side_effect = _events

        assert await engine.workload("cal-joan", make_slot().start_time) == BUSY_SENTINEL
        assignment = await engine.assign_and_book("contact-1", make_slot(hour=17))
        assert assignment.provider.name == "Andrew"

    @pytest.mark.asyncio
    async def test_preferred_provider_skips_ranking(self, engine, calendar, make_slot):
        calendar.get_free_slots.side_effect = free_slots({
            "cal-joan": [make_slot(hour=17)],
            "cal-andrew": [make_slot(hour=17, calendar_id="cal-andrew")],
        })
        calendar.list_calendar_events.side_effect = lambda cal, *a: (
            events(9) if cal == "cal-andrew" else events(0)
        )

        assignment = await engine.assign_and_book(
            "contact-1", make_slot(hour=17), preferred_provider="Andrew"
        )

        assert assignment.provider.name == "Andrew"

    @pytest.mark.asyncio
    async def test_lost_slot_refunds_and_raises(self, engine, calendar, payments, make_slot):
        calendar.get_free_slots.side_effect = free_slots({})

        with pytest.raises(SlotUnavailableError) as exc_info:
            await engine.assign_and_book(
                "contact-1", make_slot(hour=17), deposit_payment_id="pay-1"
            )

        assert exc_info.value.refunded is True
        assert payments.refund_payment.call_args.args[:2] == ("pay-1", 10000)
        calendar.create_appointment.assert_not_called()

    @pytest.mark.asyncio
    async def test_lost_slot_without_deposit(self, engine, calendar, payments, make_slot):
        calendar.get_free_slots.side_effect = free_slots({})

        with pytest.raises(SlotUnavailableError) as exc_info:
            await engine.assign_and_book("contact-1", make_slot(hour=17))

        assert exc_info.value.refunded is False
        payments.refund_payment.assert_not_called()

    @pytest.mark.asyncio
    async def test_interpreter_pairing(self, engine, calendar, make_slot):
        calendar.get_free_slots.side_effect = free_slots({
            "cal-joan": [make_slot(hour=17)],
            "cal-maria": [make_slot(hour=17, calendar_id="cal-maria")],
        })

        assignment = await engine.assign_and_book(
            "contact-1", make_slot(hour=17), needs_interpreter=True
        )

        assert assignment.interpreter.name == "Maria"
        assert assignment.interpreter_appointment_id == "appt-cal-maria"
        assert assignment.slot.interpreter_calendar_id == "cal-maria"
        notes = [c.kwargs["notes"] for c in calendar.create_appointment.call_args_list]
        assert len(notes) == 2
        assert notes[0] == notes[1] == f"{PAIRING_KEY_PREFIX}{assignment.pairing_key}"

    @pytest.mark.asyncio
    async def test_no_interpreter_free(self, engine, calendar, make_slot):
        calendar.get_free_slots.side_effect = free_slots({"cal-joan": [make_slot(hour=17)]})

        with pytest.raises(SlotUnavailableError):
            await engine.assign_and_book("contact-1", make_slot(hour=17), needs_interpreter=True)

    @pytest.mark.asyncio
    async def test_booked_slot_keeps_times(self, engine, calendar, make_slot):
        slot = make_slot(hour=17)
        calendar.get_free_slots.side_effect = free_slots({"cal-joan": [make_slot(hour=17)]})

        assignment = await engine.assign_and_book("contact-1", slot)

        assert assignment.slot.start_time == slot.start_time
        assert assignment.slot.end_time - assignment.slot.start_time == timedelta(minutes=30)

    @pytest.mark.asyncio
    async def test_interpreter_failure_cancels_provider_appointment(
        self, engine, calendar, payments, make_slot
    ):
        """A half-booked pair must not leave the provider's slot blocked."""
        calendar.get_free_slots.side_effect = free_slots({
            "cal-joan": [make_slot(hour=17)],
            "cal-maria": [make_slot(hour=17, calendar_id="cal-maria")],
        })
        calendar.create_appointment.side_effect = [
            {"id": "prov-1"},
            RuntimeError("interpreter calendar down"),
        ]

        with pytest.raises(SlotUnavailableError) as exc_info:
            await engine.assign_and_book(
                "contact-1", make_slot(hour=17), needs_interpreter=True, deposit_payment_id="pay-1"
            )

        assert exc_info.value.refunded is True
        calendar.update_appointment_status.assert_awaited_once_with(
            "prov-1", AppointmentStatus.CANCELLED, "cal-joan"
        )
        payments.refund_payment.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_status_is_passed_to_every_appointment(self, engine, calendar, make_slot):
        calendar.get_free_slots.side_effect = free_slots({
            "cal-joan": [make_slot(hour=17)],
            "cal-maria": [make_slot(hour=17, calendar_id="cal-maria")],
        })

        await engine.assign_and_book(
            "contact-1", make_slot(hour=17), needs_interpreter=True,
            status=AppointmentStatus.CONFIRMED,
        )

        statuses = [c.kwargs["status"] for c in calendar.create_appointment.call_args_list]
        assert statuses == [AppointmentStatus.CONFIRMED, AppointmentStatus.CONFIRMED]
