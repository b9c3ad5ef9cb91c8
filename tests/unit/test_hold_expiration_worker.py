"""
Unit tests for the hold expiration worker sweep.

Tests coverage:
- Contacts without a hold (or already paid) are dropped from the active set
- Live holds are evaluated in sweep mode (touch=False)
- Warned and released counts are aggregated
- A failing contact does not stop the sweep
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from agent.services.hold_lifecycle import HoldEvaluation
from agent.workers.hold_expiration import sweep_active_holds

NOW = datetime(2025, 12, 2, 18, 0, tzinfo=timezone.utc)


@pytest.fixture
def tracked():
    with patch(
        "agent.workers.hold_expiration.get_active_hold_contacts", new_callable=AsyncMock
    ) as get_members, patch(
        "agent.workers.hold_expiration.untrack_active_hold", new_callable=AsyncMock
    ) as untrack:
        yield get_members, untrack


class TestSweepActiveHolds:
    @pytest.mark.asyncio
    async def test_empty_set(self, tracked):
        get_members, _ = tracked
        get_members.return_value = []
        crm = AsyncMock()

        stats = await sweep_active_holds(crm=crm, holds=AsyncMock(), now=NOW)

        assert stats.checked == 0
        crm.get_contact.assert_not_called()

    @pytest.mark.asyncio
    async def test_stale_entries_untracked(self, tracked, make_contact):
        get_members, untrack = tracked
        get_members.return_value = ["no-hold", "paid"]
        contacts = {
            "no-hold": make_contact({}, contact_id="no-hold"),
            "paid": make_contact(
                {"hold_appointment_id": "appt-1", "deposit_paid": "true"}, contact_id="paid"
            ),
        }
        crm = AsyncMock()
        crm.get_contact.side_effect = lambda cid: contacts[cid]
        holds = AsyncMock()

        stats = await sweep_active_holds(crm=crm, holds=holds, now=NOW)

        assert stats.untracked == 2
        assert [c.args[0] for c in untrack.await_args_list] == ["no-hold", "paid"]
        holds.evaluate_hold_state.assert_not_called()

    @pytest.mark.asyncio
    async def test_live_holds_evaluated_without_touch(self, tracked, make_contact):
        get_members, untrack = tracked
        get_members.return_value = ["c1", "c2"]
        crm = AsyncMock()
        crm.get_contact.side_effect = lambda cid: make_contact(
            {"hold_appointment_id": f"appt-{cid}"}, contact_id=cid
        )
        holds = AsyncMock()
        holds.evaluate_hold_state.side_effect = [
            HoldEvaluation(warned=True),
            HoldEvaluation(released=True),
        ]

        stats = await sweep_active_holds(crm=crm, holds=holds, now=NOW)

        assert (stats.checked, stats.warned, stats.released) == (2, 1, 1)
        for call in holds.evaluate_hold_state.await_args_list:
            assert call.kwargs == {"now": NOW, "touch": False}
        untrack.assert_not_called()

    @pytest.mark.asyncio
    async def test_failure_isolated(self, tracked, make_contact):
        """One CRM failure is counted and the next contact is still swept."""
        get_members, _ = tracked
        get_members.return_value = ["broken", "c1"]
        crm = AsyncMock()
        crm.get_contact.side_effect = [
            ConnectionError("crm down"),
            make_contact({"hold_appointment_id": "appt-1"}),
        ]
        holds = AsyncMock()
        holds.evaluate_hold_state.return_value = HoldEvaluation()

        stats = await sweep_active_holds(crm=crm, holds=holds, now=NOW)

        assert stats.errors == 1
        assert stats.checked == 2
        holds.evaluate_hold_state.assert_awaited_once()
