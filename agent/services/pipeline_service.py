"""
Pipeline Stage Manager - monotonic sales-funnel stage for each contact.

One opportunity per contact, created lazily. Stage transitions only move
forward through STAGE_ORDER; terminal stages (COMPLETED, COLD_NURTURE_LOST)
may be reached from anywhere.

determine_stage_from_context is a pure, ordered guard list like the phase
deriver: the most advanced fact wins. Reordering guards changes which stage
a lead lands in.

Pipeline writes are auxiliary to the conversation: failures are logged and
never abort the message path.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from agent.fsm.models import Phase
from agent.state import field_keys as fk
from agent.state.canonical_state import CanonicalState, canonical_state_for_contact
from shared.config import get_settings
from shared.crm_client import CRMClient
from shared.resilient_api import try_strategies

logger = logging.getLogger(__name__)


class PipelineStage(str, Enum):
    INTAKE = "INTAKE"
    DISCOVERY = "DISCOVERY"
    DEPOSIT_PENDING = "DEPOSIT_PENDING"
    QUALIFIED = "QUALIFIED"
    CONSULT_APPOINTMENT = "CONSULT_APPOINTMENT"
    CONSULT_MESSAGE = "CONSULT_MESSAGE"
    TATTOO_BOOKED = "TATTOO_BOOKED"
    COMPLETED = "COMPLETED"
    COLD_NURTURE_LOST = "COLD_NURTURE_LOST"


STAGE_ORDER = list(PipelineStage)
STAGE_RANK = {stage.value: rank for rank, stage in enumerate(STAGE_ORDER)}
TERMINAL_STAGES = {PipelineStage.COMPLETED, PipelineStage.COLD_NURTURE_LOST}

DIRECT_CHANNELS = {"sms", "dm", "ig", "fb", "facebook", "instagram", "whatsapp", "messenger"}


@dataclass(frozen=True)
class StageConfig:
    name: str
    default_monetary_value: float = 0


STAGE_CONFIGS: dict[PipelineStage, StageConfig] = {
    PipelineStage.INTAKE: StageConfig("Intake"),
    PipelineStage.DISCOVERY: StageConfig("Discovery"),
    PipelineStage.DEPOSIT_PENDING: StageConfig("Deposit Pending", 100),
    PipelineStage.QUALIFIED: StageConfig("Qualified (Deposit Paid)", 100),
    PipelineStage.CONSULT_APPOINTMENT: StageConfig("Consult - Appointment", 100),
    PipelineStage.CONSULT_MESSAGE: StageConfig("Consult - Message", 100),
    PipelineStage.TATTOO_BOOKED: StageConfig("Tattoo Booked", 600),
    PipelineStage.COMPLETED: StageConfig("Completed"),
    PipelineStage.COLD_NURTURE_LOST: StageConfig("Cold / Nurture / Lost"),
}


def stage_id(stage: PipelineStage) -> str:
    """CRM stage id for a stage key; falls back to the key itself."""
    return get_settings().PIPELINE_STAGE_IDS.get(stage.value, stage.value)


def stage_from_id(raw_stage_id: str | None) -> PipelineStage | None:
    if not raw_stage_id:
        return None
    for stage in STAGE_ORDER:
        if stage_id(stage) == raw_stage_id or stage.value == raw_stage_id:
            return stage
    return None


def can_advance(
    current: str | None, target: str, allow_regression: bool = False
) -> bool:
    """
    Whether a move from current to target is allowed.

    Forward and equal moves always pass; backward moves need allow_regression.
    Unknown stage keys are never blocked.
    """
    if not current or allow_regression:
        return True
    current_rank = STAGE_RANK.get(str(getattr(current, "value", current)))
    target_rank = STAGE_RANK.get(str(getattr(target, "value", target)))
    if current_rank is None or target_rank is None:
        return True
    return target_rank >= current_rank


@dataclass
class StageContext:
    ai_phase: Phase | None = None
    deposit_link_sent: bool = False
    deposit_paid: bool = False
    consult_type: str | None = None
    booked: bool = False
    completed: bool = False
    lost: bool = False


def determine_stage_from_context(ctx: StageContext) -> PipelineStage:
    """
    Pick the funnel stage from the facts on file.

    Priority: completed > lost > booked > message consult > appointment
    consult > deposit paid > deposit link sent > discovery phase > intake.
    """
    if ctx.completed:
        return PipelineStage.COMPLETED
    if ctx.lost:
        return PipelineStage.COLD_NURTURE_LOST
    if ctx.booked:
        return PipelineStage.TATTOO_BOOKED
    if ctx.consult_type == "message":
        return PipelineStage.CONSULT_MESSAGE
    if ctx.consult_type in ("appointment", "online", "in_person"):
        return PipelineStage.CONSULT_APPOINTMENT
    if ctx.deposit_paid:
        return PipelineStage.QUALIFIED
    if ctx.deposit_link_sent:
        return PipelineStage.DEPOSIT_PENDING
    if ctx.ai_phase == Phase.DISCOVERY:
        return PipelineStage.DISCOVERY
    return PipelineStage.INTAKE


def stage_context_from_state(state: CanonicalState, phase: Phase | None) -> StageContext:
    return StageContext(
        ai_phase=phase,
        deposit_link_sent=state.deposit_link_sent,
        deposit_paid=state.deposit_paid,
        consult_type=state.consultation_type,
        booked=state.tattoo_booked,
        completed=state.tattoo_completed,
        lost=state.lead_lost,
    )


@dataclass
class OpportunityRef:
    opportunity_id: str | None
    current_stage: str | None


@dataclass
class TransitionResult:
    opportunity_id: str | None
    stage: str | None
    skipped: bool = False
    reason: str | None = None


def _opportunity_name(contact: dict[str, Any]) -> str:
    first_name = contact.get("firstName") or contact.get("first_name")
    return f"{first_name} Tattoo" if first_name else "Tattoo Opportunity"


class PipelineManager:
    """Keeps one CRM opportunity per contact at the right stage."""

    def __init__(self, crm: CRMClient | None = None):
        self.crm = crm or CRMClient()

    async def _find_existing(self, contact_id: str) -> dict[str, Any] | None:
        try:
            opportunities = await self.crm.search_opportunities(contact_id)
        except Exception as e:
            logger.warning(
                f"Opportunity search failed, will create | contact_id={contact_id} | error={e}"
            )
            return None
        return opportunities[0] if opportunities else None

    async def _persist_ref(self, contact_id: str, opportunity_id: str, stage: str) -> None:
        try:
            await self.crm.update_custom_fields(
                contact_id,
                {fk.OPPORTUNITY_ID: opportunity_id, fk.OPPORTUNITY_STAGE: stage},
            )
        except Exception as e:
            logger.warning(
                f"Failed to persist opportunity ref | contact_id={contact_id} | error={e}"
            )

    async def ensure_opportunity(
        self,
        contact: dict[str, Any],
        default_stage: PipelineStage = PipelineStage.INTAKE,
    ) -> OpportunityRef:
        """
        Return the contact's opportunity, creating it only if none exists.

        Lookup order: stored opportunity_id field, CRM search by contact id,
        then create at default_stage.
        """
        contact_id = contact["id"]
        state = canonical_state_for_contact(contact)
        if state.opportunity_id:
            return OpportunityRef(state.opportunity_id, state.opportunity_stage)

        existing = await self._find_existing(contact_id)
        if existing:
            ref = OpportunityRef(
                existing.get("id"),
                getattr(stage_from_id(existing.get("pipelineStageId")), "value", None),
            )
        else:
            created = await self.crm.create_opportunity(
                contact_id,
                stage_id(default_stage),
                _opportunity_name(contact),
                STAGE_CONFIGS[default_stage].default_monetary_value,
            )
            ref = OpportunityRef(created.get("id"), default_stage.value)
            logger.info(
                f"Opportunity created | contact_id={contact_id} | "
                f"opportunity_id={ref.opportunity_id} | stage={default_stage.value}"
            )

        if ref.opportunity_id:
            await self._persist_ref(
                contact_id, ref.opportunity_id, ref.current_stage or default_stage.value
            )
        return ref

    async def transition_to_stage(
        self,
        contact: dict[str, Any],
        target: PipelineStage,
        allow_regression: bool = False,
        note: str | None = None,
    ) -> TransitionResult | None:
        """
        Move the contact's opportunity to target if the move is allowed.

        Upsert is tried first, then a direct stage update on the known id.

        Returns:
            TransitionResult, skipped=True on a blocked regression; None when
            no opportunity could be written
        """
        contact_id = contact["id"]
        ref = await self.ensure_opportunity(contact, default_stage=target)
        if not ref.opportunity_id:
            logger.warning(f"No opportunity for contact, skipping transition | contact_id={contact_id}")
            return None

        regression_ok = allow_regression or target in TERMINAL_STAGES
        if not can_advance(ref.current_stage, target.value, regression_ok):
            logger.info(
                f"Stage transition skipped | contact_id={contact_id} | "
                f"current={ref.current_stage} | target={target.value}"
            )
            return TransitionResult(
                ref.opportunity_id, ref.current_stage, skipped=True, reason="stage_regression"
            )

        monetary_value = STAGE_CONFIGS[target].default_monetary_value
        result = await try_strategies([
            (
                "upsert",
                lambda: self.crm.upsert_opportunity(
                    contact_id, stage_id(target), _opportunity_name(contact), monetary_value
                ),
            ),
            (
                "update",
                lambda: self.crm.update_opportunity(
                    ref.opportunity_id, stage_id(target), monetary_value
                ),
            ),
        ])
        if not result.succeeded:
            logger.error(
                f"Stage transition failed | contact_id={contact_id} | target={target.value}"
            )
            return None

        opportunity_id = (result.value or {}).get("id") or ref.opportunity_id
        if ref.current_stage != target.value:
            logger.info(
                f"Stage transition | contact_id={contact_id} | "
                f"{ref.current_stage or '(none)'} -> {target.value}"
            )

        if note:
            try:
                await self.crm.add_contact_note(contact_id, note)
            except Exception as e:
                logger.warning(f"Failed to add stage note | contact_id={contact_id} | error={e}")

        await self._persist_ref(contact_id, opportunity_id, target.value)
        return TransitionResult(opportunity_id, target.value)

    async def sync_stage_from_contact(
        self,
        contact: dict[str, Any],
        phase: Phase | None,
    ) -> TransitionResult | None:
        """Derive the stage from the contact's fields and transition to it."""
        state = canonical_state_for_contact(contact)
        target = determine_stage_from_context(stage_context_from_state(state, phase))
        try:
            return await self.transition_to_stage(contact, target)
        except Exception as e:
            logger.warning(
                f"Pipeline sync failed | contact_id={contact.get('id')} | error={e}"
            )
            return None

    async def sync_pipeline_on_entry(
        self, contact: dict[str, Any], channel: str | None
    ) -> TransitionResult | None:
        """Direct-message channels start at DISCOVERY, widget/form leads at INTAKE."""
        if (channel or "").lower() in DIRECT_CHANNELS:
            entry = PipelineStage.DISCOVERY
        else:
            entry = PipelineStage.INTAKE
        try:
            return await self.transition_to_stage(contact, entry)
        except Exception as e:
            logger.warning(
                f"Pipeline entry sync failed | contact_id={contact.get('id')} | error={e}"
            )
            return None
