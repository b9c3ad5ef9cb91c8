"""
Hold Expiration Worker - warns about and releases idle consult holds.

Runs every HOLD_CHECK_INTERVAL_SECONDS over the contacts registered in the
Redis active-hold set:
1. Load the contact from the CRM
2. Evaluate the hold in sweep mode (warn once, release when idle too long,
   never refresh activity)
3. Drop contacts whose hold is already gone from the set

Evaluation is idempotent, so overlapping with the inbound-message path (which
evaluates the same hold on every message) is harmless.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime

from agent.services.hold_lifecycle import HoldLifecycleManager, utc_now
from agent.state.canonical_state import canonical_state_for_contact
from shared.config import get_settings
from shared.crm_client import CRMClient
from shared.logging_config import configure_logging
from shared.redis_client import get_active_hold_contacts, untrack_active_hold

logger = logging.getLogger(__name__)


@dataclass
class SweepStats:
    checked: int = 0
    warned: int = 0
    released: int = 0
    untracked: int = 0
    errors: int = 0


async def sweep_active_holds(
    crm: CRMClient | None = None,
    holds: HoldLifecycleManager | None = None,
    now: datetime | None = None,
) -> SweepStats:
    """
    One pass over every tracked hold.

    Returns:
        SweepStats for this pass
    """
    crm = crm or CRMClient()
    holds = holds or HoldLifecycleManager(crm=crm)
    now = now or utc_now()
    stats = SweepStats()

    for contact_id in await get_active_hold_contacts():
        stats.checked += 1
        try:
            contact = await crm.get_contact(contact_id)
            contact.setdefault("id", contact_id)
            state = canonical_state_for_contact(contact)

            if not state.hold_appointment_id or state.deposit_paid:
                await untrack_active_hold(contact_id)
                stats.untracked += 1
                continue

            result = await holds.evaluate_hold_state(contact, state, now=now, touch=False)
            stats.warned += int(result.warned)
            stats.released += int(result.released)

        except Exception as e:
            stats.errors += 1
            logger.error(f"Hold sweep failed for contact | contact_id={contact_id} | error={e}")

    if stats.checked:
        logger.info(
            f"Hold sweep completed | checked={stats.checked} | warned={stats.warned} | "
            f"released={stats.released} | untracked={stats.untracked} | errors={stats.errors}"
        )
    return stats


async def run_hold_expiration_worker() -> None:
    """Main loop; runs until cancelled."""
    interval = get_settings().HOLD_CHECK_INTERVAL_SECONDS
    logger.info(f"Hold expiration worker starting | interval={interval}s")

    crm = CRMClient()
    holds = HoldLifecycleManager(crm=crm)

    try:
        while True:
            try:
                await sweep_active_holds(crm, holds)
            except Exception as e:
                logger.exception(f"Error in hold sweep cycle: {e}")

            await asyncio.sleep(interval)

    except asyncio.CancelledError:
        logger.info("Hold expiration worker shutting down...")


if __name__ == "__main__":
    configure_logging()

    try:
        asyncio.run(run_hold_expiration_worker())
    except KeyboardInterrupt:
        logger.info("Hold expiration worker stopped by user")
