"""
Deterministic handler - template replies for hard-skip turns.

Everything here is rule-driven: scheduling offers, slot selection (hold +
deposit link), deposit requests, translator confirmation, cancel and
reschedule. Replies are rendered from Jinja2 templates in strict mode; no
language model is involved, so prices, links and times are never invented.

Dispatch follows the hard-skip reasons in the same order they are evaluated.
"""

import dataclasses
import logging
from datetime import datetime, timezone
from typing import Any

from jinja2 import StrictUndefined, Template

from agent.fsm.intent_detector import offered_slots
from agent.fsm.models import AIResult, ConsultationType, IntentFlags, Phase
from agent.routing import hard_skip
from agent.services.assignment_service import BookingEngine, SlotUnavailableError
from agent.services.calendar_sync_service import cancel_appointment_with_fallback
from agent.services.deposit_service import deposit_amount_display, ensure_deposit_link
from agent.services.hold_lifecycle import HoldLifecycleManager
from agent.state import field_keys as fk
from agent.state.canonical_state import CanonicalState
from agent.utils.time_parsing import (
    extract_time_preferences,
    parse_time_selection,
    slot_label,
    slot_matches_preferences,
)
from shared.calendar_client import AppointmentStatus, Slot
from shared.config import Settings, get_settings
from shared.payment_client import PaymentClient
from shared.redis_client import untrack_active_hold

logger = logging.getLogger(__name__)

SLOT_OFFER_TEMPLATE = Template(
    "{{ intro }}\n"
    "{% for label in labels %}{{ loop.index }}) {{ label }}\n{% endfor %}"
    "\nWhich works best?",
    undefined=StrictUndefined,
)
SLOT_SELECTED_TEMPLATE = Template(
    "Got you for {{ display }}.\n"
    "Here's the ${{ amount }} refundable deposit to lock it: {{ url }}\n"
    "I'll keep it on hold for ~{{ hold_minutes }} minutes.",
    undefined=StrictUndefined,
)
SLOT_HELD_NO_LINK_TEMPLATE = Template(
    "Got you for {{ display }}. I'll keep it on hold for ~{{ hold_minutes }} minutes "
    "and send the deposit link in a moment.",
    undefined=StrictUndefined,
)
SLOT_BOOKED_PAID_TEMPLATE = Template(
    "You're booked for {{ display }}. Your deposit is already covered, so there's nothing "
    "else to pay. See you then!",
    undefined=StrictUndefined,
)
DEPOSIT_LINK_TEMPLATE = Template(
    "Here's your ${{ amount }} refundable deposit to lock your consult: {{ url }}",
    undefined=StrictUndefined,
)

OFFER_INTRO = "I pulled a few openings for a consult with an artist:"
DEPOSIT_PAID_INTRO = "Thanks, your deposit is confirmed. Here are the next openings:"
SLOT_TAKEN_INTRO = "Looks like that time was just taken. Here are the next openings:"
SCHEDULING_FALLBACK = (
    "I can hold a spot. What day(s) this week and what time window works best "
    "(morning / afternoon / evening)?"
)
DEPOSIT_PAID_FALLBACK = (
    "Thanks, your deposit is confirmed. What day(s) this week and what time window "
    "works best (morning / afternoon / evening)?"
)
DEPOSIT_PAID_BOOKED = (
    "Thanks, your deposit is already confirmed and your consult is booked. "
    "Let me know if you need to change the time."
)
DEPOSIT_LINK_FALLBACK = "I can send your deposit link now, can you confirm your email or phone?"
CONSULT_PATH_QUESTION = (
    "And for the consult itself: would you like a quick video call with a translator, "
    "or keep everything here in messages?"
)
CANCEL_CONFIRMED = "You're all set, the appointment has been canceled."
CANCEL_NOTHING_BOOKED = "I don't see an upcoming appointment, would you like to book one?"
CANCEL_FAILED = (
    "I couldn't cancel that appointment on my end just now. I'll have the team follow up "
    "with you shortly to sort it out."
)

DEPOSIT_PAID_OFFER_LIMIT = 3


class CancelFailedError(Exception):
    """Every cancel strategy failed; the booking still exists."""

    def __init__(self, appointment_id: str):
        super().__init__(f"Could not cancel appointment {appointment_id}")
        self.appointment_id = appointment_id


def _result(
    bubbles: list[str],
    phase: Phase | None,
    notes: str,
    field_updates: dict[str, Any] | None = None,
) -> AIResult:
    return AIResult(
        bubbles=bubbles,
        field_updates=field_updates or {},
        meta={"aiPhase": phase.value if phase else None, "handler": "deterministic"},
        internal_notes=notes,
    )


def consult_mode_for(state: CanonicalState) -> str:
    return "in_person" if state.consultation_type == "in_person" else "online"


def render_slot_offer(intro: str, slots: list[Slot]) -> str:
    return SLOT_OFFER_TEMPLATE.render(intro=intro, labels=[slot_label(s) for s in slots])


class DeterministicHandler:
    """Builds template replies and performs the bookings behind them."""

    def __init__(
        self,
        engine: BookingEngine | None = None,
        holds: HoldLifecycleManager | None = None,
        payments: PaymentClient | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.engine = engine or BookingEngine(settings=self.settings)
        self.holds = holds or HoldLifecycleManager(settings=self.settings)
        self.payments = payments or PaymentClient()

    # ------------------------------------------------------------------
    # Slots
    # ------------------------------------------------------------------

    async def find_slots(
        self, state: CanonicalState, text: str, now: datetime | None = None
    ) -> list[Slot]:
        """Offerable slots narrowed by stated preferences, released slot first."""
        try:
            slots = await self.engine.get_offerable_slots(
                mode=consult_mode_for(state),
                needs_interpreter=state.translator_needed,
                preferred_provider=state.inquired_technician,
            )
        except Exception as e:
            logger.error(f"Slot lookup failed | error={e}", exc_info=True)
            return []

        prefs = extract_time_preferences(text)
        if not prefs.is_empty():
            now = now or datetime.now(timezone.utc)
            narrowed = [s for s in slots if slot_matches_preferences(s, prefs, now)]
            # nothing matching: better to offer alternatives than ask again
            if narrowed:
                slots = narrowed

        if state.released_slot_display:
            slots.sort(
                key=lambda s: not (
                    slot_label(s) == state.released_slot_display
                    and s.calendar_id == state.released_slot_calendar_id
                )
            )
        return slots

    async def offer_slots(
        self,
        state: CanonicalState,
        text: str,
        phase: Phase | None,
        notes: str = "deterministic_scheduling_slots",
        intro: str = OFFER_INTRO,
    ) -> AIResult:
        slots = (await self.find_slots(state, text))[: self.settings.MAX_SLOTS_OFFERED]
        if not slots:
            return _result(
                [SCHEDULING_FALLBACK],
                phase,
                "deterministic_scheduling_fallback",
                {fk.CONSULT_EXPLAINED: True},
            )
        return _result(
            [render_slot_offer(intro, slots)],
            phase,
            notes,
            {
                fk.LAST_SENT_SLOTS: [s.to_dict() for s in slots],
                fk.TIMES_SENT: True,
                fk.CONSULT_EXPLAINED: True,
            },
        )

    async def select_slot(
        self, contact: dict[str, Any], state: CanonicalState, text: str, phase: Phase | None
    ) -> AIResult:
        """
        Resolve the picked slot and book it in one turn.

        Unpaid leads get a tentative hold plus the deposit link; a lead whose
        deposit is already paid gets a confirmed appointment and no link.
        """
        slots = offered_slots(state)
        if not slots:
            # selection without stored offers: match against fresh availability
            slots = (await self.find_slots(state, text))[: self.settings.MAX_SLOTS_OFFERED]

        index = parse_time_selection(text, slots)
        if index is not None:
            chosen = slots[index]
        elif len(slots) == 1:
            chosen = slots[0]
        else:
            return await self.offer_slots(state, text, phase, "deterministic_slot_selection_reoffer")

        updates: dict[str, Any] = {}
        if state.has_active_hold:
            updates.update(await self.holds.release_hold(contact, state, notify=False))

        # deposit already covered: book confirmed, no hold and no link
        status = AppointmentStatus.CONFIRMED if state.deposit_paid else AppointmentStatus.NEW
        try:
            assignment = await self.engine.assign_and_book(
                contact["id"],
                chosen,
                needs_interpreter=state.translator_needed or bool(chosen.interpreter_calendar_id),
                preferred_provider=state.inquired_technician,
                deposit_payment_id=state.deposit_payment_id,
                status=status,
            )
        except SlotUnavailableError:
            fresh = dataclasses.replace(state, last_sent_slots=[])
            result = await self.offer_slots(
                fresh, text, phase, "deterministic_slot_taken_reoffer", intro=SLOT_TAKEN_INTRO
            )
            result.field_updates = {**updates, **result.field_updates}
            return result
        except Exception as e:
            logger.error(
                f"Slot booking failed | contact_id={contact['id']} | error={e}", exc_info=True
            )
            return _result(
                [SCHEDULING_FALLBACK],
                phase,
                "deterministic_slot_selection_error_fallback",
                {**updates, fk.CONSULT_EXPLAINED: True},
            )

        if state.deposit_paid:
            updates.update(
                {
                    fk.CONSULT_APPOINTMENT_ID: assignment.appointment_id,
                    fk.LAST_SENT_SLOTS: None,
                    fk.CONSULT_EXPLAINED: True,
                }
            )
            logger.info(
                f"Paid consult booked directly | contact_id={contact['id']} | "
                f"appointment_id={assignment.appointment_id}"
            )
            text_out = SLOT_BOOKED_PAID_TEMPLATE.render(display=assignment.slot.display_text)
            return _result([text_out], phase, "deterministic_slot_selection_paid_booked", updates)

        updates.update(await self.holds.start_hold(contact, assignment))
        updates[fk.CONSULT_EXPLAINED] = True
        display = assignment.slot.display_text

        try:
            url, link_updates = await ensure_deposit_link(
                contact["id"], state, self.payments, self.settings
            )
        except Exception as e:
            logger.error(f"Deposit link failed after hold | contact_id={contact['id']} | error={e}")
            text_out = SLOT_HELD_NO_LINK_TEMPLATE.render(
                display=display, hold_minutes=self.settings.HOLD_MINUTES
            )
            return _result([text_out], phase, "deterministic_slot_selection_hold_only", updates)

        updates.update(link_updates)
        text_out = SLOT_SELECTED_TEMPLATE.render(
            display=display,
            amount=deposit_amount_display(self.settings),
            url=url,
            hold_minutes=self.settings.HOLD_MINUTES,
        )
        return _result([text_out], phase, "deterministic_slot_selection_hold_and_deposit", updates)

    # ------------------------------------------------------------------
    # Deposit
    # ------------------------------------------------------------------

    async def deposit_already_paid(self, state: CanonicalState, text: str, phase: Phase | None) -> AIResult:
        """Never a payment link once paid; point at booking instead."""
        if state.appointment_booked:
            return _result([DEPOSIT_PAID_BOOKED], phase, "deterministic_deposit_paid_booked")

        slots = offered_slots(state) or await self.find_slots(state, text)
        slots = slots[:DEPOSIT_PAID_OFFER_LIMIT]
        if not slots:
            return _result([DEPOSIT_PAID_FALLBACK], phase, "deterministic_deposit_paid_fallback")
        return _result(
            [render_slot_offer(DEPOSIT_PAID_INTRO, slots)],
            phase,
            "deterministic_deposit_paid_scheduling",
            {fk.LAST_SENT_SLOTS: [s.to_dict() for s in slots], fk.TIMES_SENT: True},
        )

    async def send_deposit_link(
        self, contact: dict[str, Any], state: CanonicalState, phase: Phase | None
    ) -> AIResult:
        try:
            url, updates = await ensure_deposit_link(
                contact["id"], state, self.payments, self.settings
            )
        except Exception as e:
            logger.error(f"Deposit link failed | contact_id={contact['id']} | error={e}")
            return _result([DEPOSIT_LINK_FALLBACK], phase, "deterministic_deposit_error_fallback")

        text_out = DEPOSIT_LINK_TEMPLATE.render(
            amount=deposit_amount_display(self.settings), url=url
        )
        return _result(
            [text_out],
            phase,
            "deterministic_deposit_link",
            {**updates, fk.CONSULT_EXPLAINED: True},
        )

    # ------------------------------------------------------------------
    # Cancel / reschedule
    # ------------------------------------------------------------------

    async def _cancel_upcoming(
        self, contact: dict[str, Any], state: CanonicalState
    ) -> dict[str, Any] | None:
        """
        Cancel the confirmed appointment, else the hold.

        Returns:
            Field updates clearing the canceled booking, None when nothing is booked

        Raises:
            CancelFailedError: Every cancel strategy failed; fields stay untouched
        """
        target = state.upcoming_appointment_id
        if not target:
            return None

        is_hold = target == state.hold_appointment_id
        if is_hold:
            if not await self.holds.cancel_hold_appointments(state):
                raise CancelFailedError(target)
            try:
                await untrack_active_hold(contact["id"])
            except Exception as e:
                logger.warning(f"Failed to untrack hold | contact_id={contact['id']} | error={e}")
            updates = {**fk.CLEARED_HOLD_FIELDS, fk.LAST_SENT_SLOTS: None}
        else:
            result = await cancel_appointment_with_fallback(self.holds.calendar, target)
            if not result.succeeded:
                raise CancelFailedError(target)
            updates = {
                fk.CONSULT_APPOINTMENT_ID: None,
                fk.APPOINTMENT_ID: None,
                fk.LAST_SENT_SLOTS: None,
                fk.TIMES_SENT: False,
            }

        logger.info(
            f"Appointment canceled by lead | contact_id={contact['id']} | "
            f"appointment_id={target} | hold={is_hold}"
        )
        return updates

    def _cancel_failed(
        self, contact: dict[str, Any], error: CancelFailedError, phase: Phase | None
    ) -> AIResult:
        logger.error(
            f"Failed to cancel appointment, keeping booking fields | contact_id={contact['id']} | "
            f"appointment_id={error.appointment_id}"
        )
        return _result([CANCEL_FAILED], phase, "deterministic_cancel_failed")

    async def cancel(self, contact: dict[str, Any], state: CanonicalState, phase: Phase | None) -> AIResult:
        try:
            updates = await self._cancel_upcoming(contact, state)
        except CancelFailedError as e:
            return self._cancel_failed(contact, e, phase)
        if updates is None:
            return _result([CANCEL_NOTHING_BOOKED], phase, "deterministic_cancel_no_appt")
        return _result([CANCEL_CONFIRMED], phase, "deterministic_cancel_confirmed", updates)

    async def reschedule(
        self, contact: dict[str, Any], state: CanonicalState, text: str, phase: Phase | None
    ) -> AIResult:
        try:
            updates = await self._cancel_upcoming(contact, state) or {}
        except CancelFailedError as e:
            # never offer new times while the old booking is still live
            return self._cancel_failed(contact, e, phase)
        cleared = dataclasses.replace(state, last_sent_slots=[], hold_appointment_id=None)
        result = await self.offer_slots(cleared, text, phase, "deterministic_reschedule_slots")
        result.field_updates = {**updates, **result.field_updates}
        return result

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def handle(
        self,
        reason: str,
        contact: dict[str, Any],
        state: CanonicalState,
        intents: IntentFlags,
        text: str,
        phase: Phase | None = None,
    ) -> AIResult:
        """
        Produce the reply for a hard-skip reason.

        Args:
            reason: Hard-skip reason from should_hard_skip
            contact: CRM contact (id required)
            state: Canonical state, including any same-turn consult-path updates
            intents: Flags for this message
            text: Inbound message
            phase: Derived phase, echoed into meta
        """
        logger.info(f"Deterministic handler | contact_id={contact.get('id')} | reason={reason}")

        if reason == hard_skip.RESCHEDULE_OR_CANCEL:
            if intents.reschedule:
                return await self.reschedule(contact, state, text, phase)
            return await self.cancel(contact, state, phase)

        if reason == hard_skip.DEPOSIT_ALREADY_PAID:
            return await self.deposit_already_paid(state, text, phase)

        if reason == hard_skip.SLOT_SELECTION:
            return await self.select_slot(contact, state, text, phase)

        if reason == hard_skip.DEPOSIT_WITH_CONSULT_QUESTION:
            result = await self.send_deposit_link(contact, state, phase)
            if not state.consultation_type:
                result.bubbles.append(CONSULT_PATH_QUESTION)
            return result

        if reason == hard_skip.DEPOSIT_INTENT:
            return await self.send_deposit_link(contact, state, phase)

        if reason == hard_skip.TRANSLATOR_CONFIRMATION:
            confirmed = {
                fk.TRANSLATOR_CONFIRMED: True,
                fk.TRANSLATOR_NEEDED: True,
                fk.CONSULTATION_TYPE: ConsultationType.APPOINTMENT.value,
                fk.CONSULTATION_TYPE_LOCKED: True,
            }
            updated_state = dataclasses.replace(
                state,
                translator_confirmed=True,
                translator_needed=True,
                consultation_type=ConsultationType.APPOINTMENT.value,
                consultation_type_locked=True,
            )
            result = await self.offer_slots(
                updated_state, text, phase, "deterministic_translator_confirmed_slots"
            )
            result.field_updates = {**confirmed, **result.field_updates}
            return result

        if reason == hard_skip.PROCESS_AFTER_EXPLAINED:
            return await self.offer_slots(state, text, phase, "deterministic_process_after_explained")

        return await self.offer_slots(state, text, phase)
