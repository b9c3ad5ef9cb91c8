"""
Conversation state derivation.

Public exports:
    - Phase: Derived conversation phase (never stored)
    - IntentFlags: Independent intent flags for one message
    - HandlerType, AIResult, RoutingInfo, InboundResult: routing outcome models
    - derive_phase: Pure phase function over CanonicalState
    - detect_intents: Pattern-based intent detection
"""

from agent.fsm.intent_detector import detect_intents
from agent.fsm.models import (
    AIResult,
    ConsultationType,
    HandlerType,
    InboundResult,
    IntentFlags,
    Phase,
    RoutingInfo,
)
from agent.fsm.phase_deriver import derive_phase

__all__ = [
    "AIResult",
    "ConsultationType",
    "HandlerType",
    "InboundResult",
    "IntentFlags",
    "Phase",
    "RoutingInfo",
    "derive_phase",
    "detect_intents",
]
