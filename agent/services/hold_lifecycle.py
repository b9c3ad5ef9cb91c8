"""
Hold Lifecycle Manager - tentative consult appointments pending deposit.

States per contact: NONE -> HELD -> {CONFIRMED | EXPIRED}

- NONE -> HELD:       start_hold() after the booking engine creates the slot
- HELD (inbound):     each inbound message refreshes hold_last_activity_at
- HELD (sweep):       one-time warning at (HOLD_MINUTES - HOLD_WARNING_MINUTES)
                      of inactivity, release at HOLD_MINUTES
- HELD -> CONFIRMED:  promote_hold() when the deposit is paid
- HELD -> EXPIRED:    release: appointment cancelled, hold fields cleared,
                      released slot recorded so it can be re-offered

Expiry is always recomputed from hold_last_activity_at; nothing counts down.
Evaluating a contact without a live hold (or with the deposit paid) is a
no-op, so the sweep and the inbound path can both call it safely.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from agent.services.assignment_service import Assignment
from agent.services.calendar_sync_service import cancel_appointment_with_fallback
from agent.state import field_keys as fk
from agent.state.canonical_state import CanonicalState, canonical_state_for_contact
from shared.calendar_client import AppointmentStatus, CalendarClient
from shared.config import Settings, get_settings
from shared.crm_client import CRMClient, resolve_channel
from shared.redis_client import track_active_hold, untrack_active_hold
from shared.resilient_api import try_strategies

logger = logging.getLogger(__name__)

HOLD_WARNING_TEXT = (
    "Quick heads up, I'm still holding that consult time. "
    "I'll need to release it soon if the deposit isn't done."
)
HOLD_RELEASE_TEXT = (
    "I released that consult hold so others can book it. "
    "Tell me what day/time works and I'll grab the next best slot."
)


@dataclass
class HoldEvaluation:
    warned: bool = False
    released: bool = False
    refreshed: bool = False
    field_updates: dict[str, Any] = field(default_factory=dict)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class HoldLifecycleManager:
    """Owns the hold timer and the hold's appointment until it is promoted or released."""

    def __init__(
        self,
        crm: CRMClient | None = None,
        calendar: CalendarClient | None = None,
        settings: Settings | None = None,
    ):
        self.crm = crm or CRMClient()
        self.calendar = calendar or CalendarClient()
        self.settings = settings or get_settings()

    async def _send(self, contact: dict[str, Any], text: str) -> None:
        try:
            await self.crm.send_message(contact["id"], text, resolve_channel(contact))
        except Exception as e:
            logger.error(f"Hold message failed | contact_id={contact['id']} | error={e}")

    async def _persist(self, contact_id: str, updates: dict[str, Any]) -> None:
        try:
            await self.crm.update_custom_fields(contact_id, updates)
        except Exception as e:
            logger.error(f"Hold field update failed | contact_id={contact_id} | error={e}")

    async def start_hold(
        self,
        contact: dict[str, Any],
        assignment: Assignment,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """
        Record a freshly booked tentative appointment as the contact's hold.

        Returns:
            Field updates for the caller to persist with the turn's other updates
        """
        now = now or utc_now()
        try:
            await track_active_hold(contact["id"])
        except Exception as e:
            logger.warning(f"Failed to track active hold | contact_id={contact['id']} | error={e}")

        logger.info(
            f"Hold started | contact_id={contact['id']} | "
            f"appointment_id={assignment.appointment_id} | slot={assignment.slot.display_text}"
        )
        return {
            fk.HOLD_APPOINTMENT_ID: assignment.appointment_id,
            fk.HOLD_INTERPRETER_APPOINTMENT_ID: assignment.interpreter_appointment_id,
            fk.HOLD_CALENDAR_ID: assignment.slot.calendar_id,
            fk.HOLD_SLOT_DISPLAY: assignment.slot.display_text,
            fk.HOLD_CREATED_AT: now.isoformat(),
            fk.HOLD_LAST_ACTIVITY_AT: now.isoformat(),
            fk.HOLD_WARNING_SENT: False,
            fk.LAST_SENT_SLOTS: None,
        }

    async def cancel_hold_appointments(self, state: CanonicalState) -> bool:
        """Cancel the hold's appointment (and interpreter sibling). True if the main one succeeded."""
        result = await cancel_appointment_with_fallback(
            self.calendar, state.hold_appointment_id, state.hold_calendar_id
        )
        if state.hold_interpreter_appointment_id:
            await cancel_appointment_with_fallback(
                self.calendar, state.hold_interpreter_appointment_id
            )
        if not result.succeeded:
            logger.error(
                f"Failed to cancel hold appointment | appointment_id={state.hold_appointment_id}"
            )
        return result.succeeded

    async def release_hold(
        self, contact: dict[str, Any], state: CanonicalState, notify: bool = True
    ) -> dict[str, Any]:
        """Expire the hold: cancel, clear, record the released slot, notify."""
        contact_id = contact["id"]
        await self.cancel_hold_appointments(state)

        updates = {
            **fk.CLEARED_HOLD_FIELDS,
            fk.LAST_SENT_SLOTS: None,
            fk.TIMES_SENT: False,
            fk.RELEASED_SLOT_DISPLAY: state.hold_slot_display,
            fk.RELEASED_SLOT_CALENDAR_ID: state.hold_calendar_id,
        }
        await self._persist(contact_id, updates)
        if notify:
            await self._send(contact, HOLD_RELEASE_TEXT)

        try:
            await untrack_active_hold(contact_id)
        except Exception as e:
            logger.warning(f"Failed to untrack hold | contact_id={contact_id} | error={e}")

        logger.info(
            f"Hold released | contact_id={contact_id} | appointment_id={state.hold_appointment_id}"
        )
        return updates

    async def promote_hold(self, contact: dict[str, Any], state: CanonicalState) -> dict[str, Any]:
        """
        HELD -> CONFIRMED: confirm the existing appointment, never create a new one.

        Returns:
            Field updates (hold cleared, confirmed id recorded, deposit paid)
        """
        contact_id = contact["id"]
        hold_id = state.hold_appointment_id
        updates: dict[str, Any] = {fk.DEPOSIT_PAID: True}
        if not hold_id:
            return updates

        for appointment_id, calendar_id in (
            (hold_id, state.hold_calendar_id),
            (state.hold_interpreter_appointment_id, None),
        ):
            if not appointment_id:
                continue
            result = await try_strategies([
                (
                    "primary",
                    lambda: self.calendar.update_appointment_status(
                        appointment_id, AppointmentStatus.CONFIRMED, calendar_id
                    ),
                ),
                (
                    "legacy",
                    lambda: self.calendar.update_appointment_status_legacy(
                        appointment_id, AppointmentStatus.CONFIRMED, calendar_id
                    ),
                ),
            ])
            if not result.succeeded:
                logger.error(f"Failed to confirm held appointment | appointment_id={appointment_id}")

        updates.update(fk.CLEARED_HOLD_FIELDS)
        updates[fk.CONSULT_APPOINTMENT_ID] = hold_id

        try:
            await untrack_active_hold(contact_id)
        except Exception as e:
            logger.warning(f"Failed to untrack hold | contact_id={contact_id} | error={e}")

        logger.info(f"Hold promoted | contact_id={contact_id} | appointment_id={hold_id}")
        return updates

    async def evaluate_hold_state(
        self,
        contact: dict[str, Any] | None,
        canonical_state: CanonicalState | None = None,
        now: datetime | None = None,
        touch: bool = True,
    ) -> HoldEvaluation:
        """
        Idempotent hold tick.

        Args:
            contact: CRM contact record
            canonical_state: Pre-built state (rebuilt from contact if omitted)
            now: Evaluation time (UTC now if omitted)
            touch: True on an inbound message (refresh activity unless expired);
                False for the periodic sweep (warn or release, never refresh)
        """
        if not contact or not contact.get("id"):
            return HoldEvaluation()

        state = canonical_state or canonical_state_for_contact(contact)
        if not state.hold_appointment_id or state.deposit_paid:
            return HoldEvaluation()
        if state.hold_last_activity_at is None:
            return HoldEvaluation()

        now = now or utc_now()
        elapsed = now - _aware(state.hold_last_activity_at)
        hold = timedelta(minutes=self.settings.HOLD_MINUTES)
        warn_at = hold - timedelta(minutes=self.settings.HOLD_WARNING_MINUTES)

        if elapsed >= hold:
            updates = await self.release_hold(contact, state)
            return HoldEvaluation(released=True, field_updates=updates)

        if touch:
            updates = {fk.HOLD_LAST_ACTIVITY_AT: now.isoformat(), fk.HOLD_WARNING_SENT: False}
            await self._persist(contact["id"], updates)
            return HoldEvaluation(refreshed=True, field_updates=updates)

        if elapsed >= warn_at and not state.hold_warning_sent:
            await self._send(contact, HOLD_WARNING_TEXT)
            updates = {fk.HOLD_WARNING_SENT: True}
            await self._persist(contact["id"], updates)
            logger.info(f"Hold warning sent | contact_id={contact['id']}")
            return HoldEvaluation(warned=True, field_updates=updates)

        return HoldEvaluation()
