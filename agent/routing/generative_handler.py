"""
Generative handler - language-model replies for turns no rule claims.

The model sees the canonical state, the derived phase, the fields that
changed this turn and the latest message, and must answer with a JSON object
{language, bubbles, internal_notes, meta, field_updates}. Output is parsed
tolerantly; anything unusable degrades to a single safe bubble.
"""

import json
import logging
from dataclasses import asdict
from typing import Any

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from agent.fsm.models import AIResult, IntentFlags, Phase
from agent.state import field_keys as fk
from agent.state.canonical_state import CanonicalState
from shared.circuit_breaker import call_with_breaker, openrouter_breaker
from shared.config import get_settings

logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

SAFE_FALLBACK_REPLY = "Thanks for the message! Give me one moment and I'll get right back to you."

# Only profile fields may be written by the model; everything else is engine-owned
MODEL_WRITABLE_FIELDS = {
    fk.TATTOO_SUMMARY,
    fk.TATTOO_PLACEMENT,
    fk.TATTOO_SIZE,
    fk.TATTOO_STYLE,
    fk.TIMELINE,
    fk.LANGUAGE_PREFERENCE,
    fk.INQUIRED_TECHNICIAN,
    "tattoo_size",
    "tattoo_color_preference",
    "first_tattoo",
    "tattoo_concerns",
}
FIELD_ALIASES = {"tattoo_size": fk.TATTOO_SIZE}

SYSTEM_PROMPT = """You are the front desk for a bilingual (English/Spanish) tattoo studio, \
chatting with a lead over text. Your goal is to learn what they want and move them toward \
a short consult with an artist, secured by a refundable deposit.

Rules:
- The current phase is computed by the backend from stored facts. Follow it; do not skip ahead.
- Treat contact_profile and changed_fields_this_turn as your memory. Only acknowledge tattoo \
details that appear in changed_fields_this_turn.
- If consult_explained is true, never re-explain the consult and deposit; refer to it briefly.
- Never invent prices, links, appointment times or availability. The backend sends those.
- Do not greet again after the first message.
- If returning_client is true, welcome them back and skip first-tattoo questions.
- If language_preference is "es", reply in Spanish; otherwise reply in English.
- Keep it to 1-3 short bubbles, no emojis.

Fill field_updates only with details the lead clearly stated (placement, size, style, \
timeline, color preference, first tattoo, concerns, summary).

Respond with VALID JSON ONLY:
{"language": "en" | "es", "bubbles": [string], "internal_notes": string,
 "meta": {"aiPhase": string, "leadTemperature": "hot" | "warm" | "cold"},
 "field_updates": {string: string | boolean}}"""


def get_llm_client() -> ChatOpenAI:
    settings = get_settings()
    return ChatOpenAI(
        model=settings.LLM_MODEL,
        base_url=OPENROUTER_BASE_URL,
        api_key=settings.OPENROUTER_API_KEY,
        temperature=settings.LLM_TEMPERATURE,
        request_timeout=30.0,
        max_retries=2,
    )


def strip_code_fence(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def parse_model_output(raw: str, phase: Phase | None, language: str = "en") -> AIResult:
    """
    Turn raw model text into an AIResult.

    Non-JSON output is wrapped as a single bubble; missing keys get defaults;
    field updates outside MODEL_WRITABLE_FIELDS are dropped.
    """
    phase_value = phase.value if phase else None
    try:
        data = json.loads(strip_code_fence(raw))
    except (TypeError, ValueError):
        logger.warning(f"Model returned non-JSON reply | length={len(raw or '')}")
        text = (raw or "").strip()
        return AIResult(
            bubbles=[text] if text else [SAFE_FALLBACK_REPLY],
            meta={"aiPhase": phase_value, "handler": "ai"},
            internal_notes="model_non_json_wrapped",
            language=language,
        )

    if not isinstance(data, dict):
        data = {"bubbles": data}

    bubbles = data.get("bubbles")
    if not isinstance(bubbles, list):
        bubbles = [bubbles] if bubbles else []
    bubbles = [str(b).strip() for b in bubbles if b and str(b).strip()]
    if not bubbles:
        bubbles = [SAFE_FALLBACK_REPLY]

    raw_updates = data.get("field_updates")
    if not isinstance(raw_updates, dict):
        raw_updates = {}
    field_updates: dict[str, Any] = {}
    for key, value in raw_updates.items():
        if key not in MODEL_WRITABLE_FIELDS or value is None or value == "":
            continue
        field_updates[FIELD_ALIASES.get(key, key)] = value

    meta = data.get("meta") if isinstance(data.get("meta"), dict) else {}
    # the backend phase wins over whatever the model believes
    meta = {**meta, "aiPhase": phase_value, "handler": "ai"}

    return AIResult(
        bubbles=bubbles,
        field_updates=field_updates,
        meta=meta,
        internal_notes=data.get("internal_notes") or None,
        language=data.get("language") if data.get("language") in ("en", "es") else language,
    )


class GenerativeHandler:
    def __init__(self, llm: ChatOpenAI | None = None):
        self._llm = llm

    @property
    def llm(self) -> ChatOpenAI:
        if self._llm is None:
            self._llm = get_llm_client()
        return self._llm

    def build_payload(
        self,
        canonical_state: CanonicalState,
        phase: Phase | None,
        changed_fields: dict[str, Any],
        intents: IntentFlags,
        latest_message: str,
    ) -> dict[str, Any]:
        profile = asdict(canonical_state)
        # timestamps and slot payloads are not conversational context
        for key in ("hold_last_activity_at", "last_sent_slots", "last_seen_snapshot"):
            profile.pop(key, None)
        return {
            "ai_phase": phase.value if phase else None,
            "consult_explained": canonical_state.consult_explained,
            "contact_profile": profile,
            "changed_fields_this_turn": changed_fields,
            "intents": intents.active(),
            "latest_message_text": latest_message,
        }

    async def generate(
        self,
        canonical_state: CanonicalState,
        phase: Phase | None,
        changed_fields: dict[str, Any],
        intents: IntentFlags,
        latest_message: str,
    ) -> AIResult:
        """
        Generate a reply with the language model.

        Never raises: an open breaker, a transport error or garbage output
        all end in a safe single-bubble reply.
        """
        language = "es" if (canonical_state.language_preference or "").lower().startswith("es") else "en"
        payload = self.build_payload(canonical_state, phase, changed_fields, intents, latest_message)

        try:
            response = await call_with_breaker(
                openrouter_breaker,
                self.llm.ainvoke,
                [
                    SystemMessage(content=SYSTEM_PROMPT),
                    HumanMessage(content=json.dumps(payload, default=str)),
                ],
            )
        except Exception as e:
            logger.error(f"Generative reply failed | phase={payload['ai_phase']} | error={e}")
            return AIResult(
                bubbles=[SAFE_FALLBACK_REPLY],
                meta={"aiPhase": payload["ai_phase"], "handler": "ai"},
                internal_notes="ai_unavailable_fallback",
                language=language,
            )

        result = parse_model_output(str(response.content or ""), phase, language)
        logger.info(
            f"Generative reply | phase={payload['ai_phase']} | bubbles={len(result.bubbles)} | "
            f"field_updates={list(result.field_updates)}"
        )
        return result
