"""
Phase Deriver - pure mapping from CanonicalState to one Phase.

Guards are evaluated top-down, most advanced fact first. Reordering them
changes business behavior: a paid deposit must never be reported as an
earlier phase because qualification fields happen to be missing.

Priority order:
    1. BOOKED           confirmed appointment and deposit paid
    2. QUALIFIED        deposit paid
    3. DEPOSIT_PENDING  live hold, or deposit link sent and unpaid
    4. SCHEDULING       consult path chosen and slots already offered
    5. CONSULT_PATH     timeline known, consult path not chosen
    6. QUALIFICATION    summary + placement + size known, timeline missing
    7. INTAKE           summary or placement missing
    8. DISCOVERY        fallback
"""

from typing import Callable

from agent.fsm.models import Phase
from agent.state.canonical_state import CanonicalState


def size_satisfied(state: CanonicalState) -> bool:
    """Any recorded size counts, including the artist-guided sentinel."""
    size = (state.tattoo_size or "").strip().lower()
    return bool(size)


def consult_chosen(state: CanonicalState) -> bool:
    return bool(state.consultation_type) or state.consultation_type_locked


def slots_sent(state: CanonicalState) -> bool:
    return state.times_sent or len(state.last_sent_slots) > 0


PHASE_GUARDS: list[tuple[Phase, Callable[[CanonicalState], bool]]] = [
    (Phase.BOOKED, lambda s: s.appointment_booked and s.deposit_paid),
    (Phase.QUALIFIED, lambda s: s.deposit_paid),
    (
        Phase.DEPOSIT_PENDING,
        lambda s: s.hold_appointment_id is not None
        or (s.deposit_link_sent and not s.deposit_paid),
    ),
    (Phase.SCHEDULING, lambda s: consult_chosen(s) and slots_sent(s)),
    (Phase.CONSULT_PATH, lambda s: bool(s.timeline) and not consult_chosen(s)),
    (
        Phase.QUALIFICATION,
        lambda s: bool(s.tattoo_summary)
        and bool(s.tattoo_placement)
        and size_satisfied(s)
        and not s.timeline,
    ),
    (Phase.INTAKE, lambda s: not s.tattoo_summary or not s.tattoo_placement),
]


def derive_phase(state: CanonicalState | None) -> Phase:
    """
    Derive the conversation phase. Total: always returns exactly one Phase.

    Args:
        state: Canonical state snapshot (None is treated as a fresh lead)
    """
    if state is None:
        return Phase.INTAKE

    for phase, guard in PHASE_GUARDS:
        if guard(state):
            return phase

    return Phase.DISCOVERY
