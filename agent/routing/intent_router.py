"""
Intent Router - picks exactly one handler per inbound turn.

Precedence:
1. scheduling + consult-path choice in one message: apply the consult-path
   effects silently, then keep routing so the scheduling reply is produced
2. consult-path choice alone: ConsultPathHandler owns the reply
3. hard-skip rule matched: DeterministicHandler
4. anything else: GenerativeHandler

Derived profile fields are merged into the field updates before routing. The
artist pick is one of them, so the slot search already sees the chosen provider.

Field updates are returned, not written, except for the last-seen snapshot
(bookkeeping) and the hold refresh done by the hold manager. The caller
persists ``ai_result.field_updates`` after sending the bubbles.
"""

import logging
import time
from typing import Any

from agent.fsm.intent_detector import detect_intents
from agent.fsm.models import (
    AIResult,
    HandlerType,
    InboundResult,
    IntentFlags,
    Phase,
    RoutingInfo,
)
from agent.fsm.phase_deriver import derive_phase
from agent.routing.artist_router import route_artist
from agent.routing.consult_path_handler import ConsultPathHandler
from agent.routing.deterministic_handler import DeterministicHandler
from agent.routing.generative_handler import GenerativeHandler
from agent.routing.hard_skip import should_hard_skip
from agent.services.hold_lifecycle import HoldLifecycleManager
from agent.services.pipeline_service import PipelineManager
from agent.state import field_keys as fk
from agent.state.canonical_state import (
    apply_field_updates,
    build_canonical_state,
    build_effective_contact,
    compute_last_seen_diff,
    contact_fields,
)
from agent.state.returning_client import detect_returning_client
from shared.config import Settings, get_settings
from shared.crm_client import CRMClient

logger = logging.getLogger(__name__)

INTERNAL_ERROR_REPLY = "Sorry, something went wrong on my end. Give me a moment and I'll follow up."

CONSULT_PATH_REASON = "consult_path_choice"
AI_FALLBACK_REASON = "ai_fallback"
INTERNAL_ERROR_REASON = "internal_error"


def is_consult_only(intents: IntentFlags) -> bool:
    return intents.consult_path_choice and not (
        intents.scheduling
        or intents.deposit
        or intents.slot_selection
        or intents.reschedule
        or intents.cancel
    )


class IntentRouter:
    """Wires the handlers together; collaborators are injectable for tests."""

    def __init__(
        self,
        crm: CRMClient | None = None,
        holds: HoldLifecycleManager | None = None,
        consult_path: ConsultPathHandler | None = None,
        deterministic: DeterministicHandler | None = None,
        generative: GenerativeHandler | None = None,
        settings: Settings | None = None,
    ):
        self.crm = crm or CRMClient()
        self.holds = holds or HoldLifecycleManager(crm=self.crm)
        self.consult_path = consult_path or ConsultPathHandler(PipelineManager(crm=self.crm))
        self.deterministic = deterministic or DeterministicHandler(holds=self.holds)
        self.generative = generative or GenerativeHandler()
        self.settings = settings or get_settings()

    async def _persist_snapshot(self, contact_id: str, snapshot: dict[str, Any]) -> None:
        try:
            await self.crm.update_custom_fields(contact_id, {fk.LAST_SEEN_SNAPSHOT: snapshot})
        except Exception as e:
            logger.warning(f"Failed to persist last-seen snapshot | contact_id={contact_id} | error={e}")

    async def route(
        self,
        contact: dict[str, Any],
        latest_message_text: str,
        payload_fields: Any = None,
    ) -> InboundResult:
        start = time.time()
        text = latest_message_text or ""
        effective = build_effective_contact(contact, payload_fields)
        contact_id = effective.get("id")
        state = build_canonical_state(contact_fields(effective))

        # inbound activity keeps a live hold alive (or releases an expired one)
        try:
            hold = await self.holds.evaluate_hold_state(effective, state, touch=True)
        except Exception as e:
            logger.error(f"Hold evaluation failed | contact_id={contact_id} | error={e}")
        else:
            if hold.field_updates:
                effective = apply_field_updates(effective, hold.field_updates)
                state = build_canonical_state(contact_fields(effective))

        intents = detect_intents(text, state)
        phase = derive_phase(state)
        logger.info(
            f"Inbound turn | contact_id={contact_id} | phase={phase.value} | "
            f"intents={intents.active()}"
        )

        _, changed_fields = compute_last_seen_diff(state, state.last_seen_snapshot)
        pre_updates: dict[str, Any] = {}

        if intents.artist_guided_size and not state.tattoo_size:
            pre_updates[fk.TATTOO_SIZE] = fk.ARTIST_GUIDED_SIZE

        if not state.returning_client and detect_returning_client(effective).is_returning:
            pre_updates[fk.RETURNING_CLIENT] = True

        artist = route_artist(effective, state, text, self.settings.PROVIDERS)
        if artist:
            pre_updates.update(artist.field_updates)
            logger.info(
                f"Artist routed | contact_id={contact_id} | artist={artist.provider.name} | "
                f"source={artist.source}"
            )

        response: AIResult | None = None
        handler: HandlerType | None = None
        reason: str | None = None

        if intents.scheduling and intents.consult_path_choice:
            applied = await self.consult_path.handle_path_choice(
                effective, state, text, apply_only=True
            )
            if applied:
                pre_updates.update(applied.field_updates)
                logger.info(
                    f"Consult path applied before scheduling | contact_id={contact_id} | "
                    f"choice={applied.choice}"
                )

        if pre_updates:
            effective = apply_field_updates(effective, pre_updates)
            state = build_canonical_state(contact_fields(effective))

        if is_consult_only(intents):
            choice = await self.consult_path.handle_path_choice(effective, state, text)
            if choice is not None:
                response = AIResult(
                    bubbles=[choice.reply] if choice.reply else [],
                    field_updates=dict(choice.field_updates),
                    meta={"aiPhase": phase.value, "handler": HandlerType.CONSULT_PATH.value},
                    internal_notes=CONSULT_PATH_REASON,
                )
                handler = HandlerType.CONSULT_PATH
                reason = CONSULT_PATH_REASON

        if response is None:
            decision = should_hard_skip(intents, state)
            if decision.skip:
                handler = HandlerType.DETERMINISTIC
                reason = decision.reason
                response = await self.deterministic.handle(
                    decision.reason, effective, state, intents, text, phase
                )
            else:
                handler = HandlerType.AI
                reason = AI_FALLBACK_REASON
                response = await self.generative.generate(
                    state, phase, changed_fields, intents, text
                )

        if pre_updates:
            response.field_updates = {**pre_updates, **response.field_updates}

        # telemetry only; the authoritative write is the caller's
        after = build_canonical_state(
            contact_fields(apply_field_updates(effective, response.field_updates))
        )
        phase_after = derive_phase(after)
        snapshot, changed_after = compute_last_seen_diff(after, after.last_seen_snapshot)
        if contact_id and changed_after:
            await self._persist_snapshot(contact_id, snapshot)

        logger.info(
            f"Turn routed | contact_id={contact_id} | handler={handler.value} | reason={reason} | "
            f"phase_before={phase.value} | phase_after={phase_after.value} | "
            f"latency_ms={(time.time() - start) * 1000:.0f}"
        )
        return InboundResult(
            ai_result=response,
            ai_phase=phase_after,
            routing=RoutingInfo(intents=intents, selected_handler=handler, reason=reason),
        )


async def handle_inbound_message(
    contact: dict[str, Any],
    latest_message_text: str,
    payload_fields: Any = None,
    router: IntentRouter | None = None,
) -> InboundResult:
    """
    Process one (possibly debounced) inbound message for a contact.

    Args:
        contact: CRM contact record
        latest_message_text: Message text, already coalesced by the debouncer
        payload_fields: Custom fields delivered with the webhook (win over stored values)
        router: Pre-built router (a default one is created otherwise)

    Returns:
        InboundResult {ai_result, ai_phase, routing}. Never raises: unexpected
        errors become a generic reply with routing.reason="internal_error".
    """
    try:
        router = router or IntentRouter()
        return await router.route(contact, latest_message_text, payload_fields)
    except Exception as e:
        logger.error(
            f"Inbound message failed | contact_id={(contact or {}).get('id')} | error={e}",
            exc_info=True,
        )
        try:
            phase = derive_phase(build_canonical_state(contact_fields(contact)))
        except Exception:
            phase = Phase.INTAKE
        return InboundResult(
            ai_result=AIResult(
                bubbles=[INTERNAL_ERROR_REPLY],
                meta={"aiPhase": phase.value},
                internal_notes=INTERNAL_ERROR_REASON,
            ),
            ai_phase=phase,
            routing=RoutingInfo(
                intents=IntentFlags(),
                selected_handler=HandlerType.DETERMINISTIC,
                reason=INTERNAL_ERROR_REASON,
            ),
        )
