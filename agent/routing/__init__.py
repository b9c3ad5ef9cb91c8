"""
Routing layer: one handler per inbound turn.

Architecture:
    message -> detect_intents + derive_phase + route_artist -> IntentRouter
        ├─ consult-path choice only  -> ConsultPathHandler
        ├─ hard-skip rule matched    -> DeterministicHandler (templates)
        └─ otherwise                 -> GenerativeHandler (LLM)
"""

from agent.routing.artist_router import route_artist
from agent.routing.consult_path_handler import ConsultPathHandler
from agent.routing.deterministic_handler import DeterministicHandler
from agent.routing.generative_handler import GenerativeHandler
from agent.routing.hard_skip import should_hard_skip
from agent.routing.intent_router import IntentRouter, handle_inbound_message

__all__ = [
    "ConsultPathHandler",
    "DeterministicHandler",
    "GenerativeHandler",
    "IntentRouter",
    "handle_inbound_message",
    "route_artist",
    "should_hard_skip",
]
