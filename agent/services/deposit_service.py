"""
Deposit service - payment links and the deposit-paid transition.

- ensure_deposit_link(): reuse the contact's open link or create one
- handle_deposit_paid(): payment webhook entry point; promotes the hold,
  advances the pipeline to QUALIFIED and confirms to the lead
"""

import logging
from typing import Any

from agent.services.hold_lifecycle import HoldLifecycleManager
from agent.services.pipeline_service import PipelineManager, PipelineStage
from agent.state import field_keys as fk
from agent.state.canonical_state import (
    CanonicalState,
    apply_field_updates,
    canonical_state_for_contact,
)
from shared.circuit_breaker import call_with_breaker, payment_breaker
from shared.config import Settings, get_settings
from shared.crm_client import CRMClient, resolve_channel
from shared.payment_client import PaymentClient

logger = logging.getLogger(__name__)

DEPOSIT_CONFIRMED_TEXT = "Thanks, your deposit is confirmed. {booking}"


def deposit_amount_display(settings: Settings | None = None) -> str:
    cents = (settings or get_settings()).DEPOSIT_AMOUNT_CENTS
    return f"{cents // 100}" if cents % 100 == 0 else f"{cents / 100:.2f}"


async def ensure_deposit_link(
    contact_id: str,
    state: CanonicalState,
    payments: PaymentClient | None = None,
    settings: Settings | None = None,
) -> tuple[str, dict[str, Any]]:
    """
    Deposit link for the contact, created at most once while unpaid.

    Returns:
        (url, field_updates)
    """
    if state.deposit_link_sent and state.deposit_link_url:
        return state.deposit_link_url, {}

    settings = settings or get_settings()
    payments = payments or PaymentClient()
    link = await call_with_breaker(
        payment_breaker,
        payments.create_deposit_link,
        contact_id,
        settings.DEPOSIT_AMOUNT_CENTS,
        settings.DEPOSIT_DESCRIPTION,
    )
    url = link["url"]
    return url, {fk.DEPOSIT_LINK_SENT: True, fk.DEPOSIT_LINK_URL: url}


async def handle_deposit_paid(
    contact_id: str,
    payment_id: str | None,
    amount_cents: int | None = None,
    crm: CRMClient | None = None,
    holds: HoldLifecycleManager | None = None,
    pipeline: PipelineManager | None = None,
) -> dict[str, Any] | None:
    """
    Record a captured deposit for a contact.

    Idempotent: a repeated webhook for an already-paid contact without a
    live hold changes nothing and sends nothing.

    Returns:
        Field updates written, or None when the payment was already recorded
    """
    crm = crm or CRMClient()
    holds = holds or HoldLifecycleManager(crm=crm)
    pipeline = pipeline or PipelineManager(crm=crm)

    contact = await crm.get_contact(contact_id)
    contact.setdefault("id", contact_id)
    state = canonical_state_for_contact(contact)

    if state.deposit_paid and not state.has_active_hold:
        logger.info(f"Deposit already recorded | contact_id={contact_id} | payment_id={payment_id}")
        return None

    if amount_cents is not None and amount_cents < get_settings().DEPOSIT_AMOUNT_CENTS:
        logger.warning(
            f"Deposit below configured amount | contact_id={contact_id} | amount={amount_cents}"
        )

    updates = await holds.promote_hold(contact, state)
    if payment_id:
        updates[fk.DEPOSIT_PAYMENT_ID] = payment_id
    await crm.update_custom_fields(contact_id, updates)

    updated_contact = apply_field_updates(contact, updates)
    try:
        await pipeline.transition_to_stage(
            updated_contact, PipelineStage.QUALIFIED, note=f"Deposit paid (payment {payment_id})"
        )
    except Exception as e:
        logger.warning(f"Pipeline update after deposit failed | contact_id={contact_id} | error={e}")

    booking = (
        f"You're confirmed for {state.hold_slot_display}."
        if state.hold_slot_display
        else "I'll follow up with the next openings shortly."
    )
    try:
        await crm.send_message(
            contact_id,
            DEPOSIT_CONFIRMED_TEXT.format(booking=booking),
            resolve_channel(contact),
        )
    except Exception as e:
        logger.error(f"Deposit confirmation message failed | contact_id={contact_id} | error={e}")

    logger.info(
        f"Deposit paid | contact_id={contact_id} | payment_id={payment_id} | "
        f"appointment_id={updates.get(fk.CONSULT_APPOINTMENT_ID)}"
    )
    return updates
