"""
Data models for conversation routing.

This module defines the core data structures shared by the phase deriver,
intent detector and router:
- Phase: Derived conversation phase (never stored)
- IntentFlags: Independent boolean intent flags detected in one message
- HandlerType: Which handler produced the turn's reply
- AIResult: Structured reply {bubbles, field_updates, meta}
- RoutingInfo / InboundResult: Observable outcome of one inbound turn
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class Phase(str, Enum):
    """Conversation phases, ordered from earliest to most advanced."""

    INTAKE = "intake"
    DISCOVERY = "discovery"
    QUALIFICATION = "qualification"
    CONSULT_PATH = "consult_path"
    SCHEDULING = "scheduling"
    DEPOSIT_PENDING = "deposit_pending"
    QUALIFIED = "qualified"
    BOOKED = "booked"


class HandlerType(str, Enum):
    DETERMINISTIC = "deterministic"
    CONSULT_PATH = "consult_path"
    AI = "ai"


class ConsultationType(str, Enum):
    APPOINTMENT = "appointment"
    MESSAGE = "message"


@dataclass
class IntentFlags:
    """
    Intent flags for one inbound message.

    Flags are not mutually exclusive; the router resolves precedence.
    """

    reschedule: bool = False
    cancel: bool = False
    scheduling: bool = False
    slot_selection: bool = False
    deposit: bool = False
    consult_path_choice: bool = False
    translator_affirmation: bool = False
    artist_guided_size: bool = False
    process_or_price_question: bool = False

    def active(self) -> list[str]:
        return [name for name, value in asdict(self).items() if value]

    def to_dict(self) -> dict[str, bool]:
        return asdict(self)


@dataclass
class HardSkipDecision:
    skip: bool
    reason: str | None = None


@dataclass
class AIResult:
    """Reply produced by any handler."""

    bubbles: list[str] = field(default_factory=list)
    field_updates: dict[str, Any] = field(default_factory=dict)
    meta: dict[str, Any] = field(default_factory=dict)
    internal_notes: str | None = None
    language: str = "en"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RoutingInfo:
    intents: IntentFlags
    selected_handler: HandlerType
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "intents": self.intents.to_dict(),
            "selected_handler": self.selected_handler.value,
            "reason": self.reason,
        }


@dataclass
class InboundResult:
    """Result of handle_inbound_message."""

    ai_result: AIResult
    ai_phase: Phase
    routing: RoutingInfo

    def to_dict(self) -> dict[str, Any]:
        return {
            "aiResult": self.ai_result.to_dict(),
            "ai_phase": self.ai_phase.value,
            "routing": self.routing.to_dict(),
        }
