"""CRM inbound-message webhook route."""

import hmac
import logging
from functools import lru_cache
from typing import Any

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request
from fastapi.responses import JSONResponse

from agent.batching.message_batcher import Batch, MessageDebouncer, RedisDebounceStore
from agent.routing.intent_router import handle_inbound_message
from agent.services.pipeline_service import PipelineManager
from agent.state.canonical_state import apply_field_updates, build_effective_contact
from api.models.webhooks import InboundMessagePayload
from shared.config import get_settings
from shared.crm_client import CRMClient, resolve_channel
from shared.redis_client import get_redis_client

logger = logging.getLogger(__name__)

router = APIRouter()


def verify_webhook_token(token: str, expected: str, request: Request) -> None:
    """Timing-safe path token check; 401 on mismatch."""
    if not hmac.compare_digest(token, expected):
        client = request.client.host if request.client else "unknown"
        logger.warning(f"Invalid webhook token attempted | path={request.url.path} | ip={client}")
        raise HTTPException(status_code=401, detail="Invalid token")


@lru_cache
def get_debouncer() -> MessageDebouncer:
    return MessageDebouncer(
        quiet_seconds=get_settings().MESSAGE_DEBOUNCE_SECONDS,
        store=RedisDebounceStore(get_redis_client()),
    )


async def process_batch(batch: Batch, crm: CRMClient | None = None) -> dict[str, Any] | None:
    """
    Run one coalesced batch through the engine and deliver the reply.

    load contact -> handle_inbound_message -> send bubbles -> persist field
    updates -> pipeline sync

    Returns:
        The InboundResult as a dict, or None when the contact could not be loaded
    """
    crm = crm or CRMClient()
    contact_id = batch.contact_id
    payload = InboundMessagePayload.model_validate(batch.latest_payload)

    try:
        contact = await crm.get_contact(contact_id)
    except Exception as e:
        logger.error(f"Failed to load contact | contact_id={contact_id} | error={e}")
        return None
    contact.setdefault("id", contact_id)

    result = await handle_inbound_message(
        contact, batch.combined_text, payload_fields=payload.custom_fields
    )
    ai_result = result.ai_result
    channel = payload.channel or resolve_channel(contact)

    for bubble in ai_result.bubbles:
        if not bubble or not bubble.strip():
            continue
        try:
            await crm.send_message(contact_id, bubble, channel)
        except Exception as e:
            logger.error(f"Failed to send reply bubble | contact_id={contact_id} | error={e}")
            break

    if ai_result.field_updates:
        try:
            await crm.update_custom_fields(contact_id, ai_result.field_updates)
        except Exception as e:
            logger.error(f"Failed to persist field updates | contact_id={contact_id} | error={e}")

    effective = apply_field_updates(
        build_effective_contact(contact, payload.custom_fields), ai_result.field_updates
    )
    pipeline = PipelineManager(crm=crm)
    if not effective.get("customFields", {}).get("opportunity_id"):
        await pipeline.sync_pipeline_on_entry(effective, channel)
    await pipeline.sync_stage_from_contact(effective, result.ai_phase)

    logger.info(
        f"Inbound batch processed | contact_id={contact_id} | messages={len(batch.messages)} | "
        f"handler={result.routing.selected_handler.value} | reason={result.routing.reason}"
    )
    return result.to_dict()


async def debounce_and_process(
    contact_id: str, text: str, raw_payload: dict[str, Any], debouncer: MessageDebouncer
) -> None:
    batch = await debouncer.submit(contact_id, text, raw_payload)
    if batch is None:
        logger.debug(f"Message coalesced into another request's batch | contact_id={contact_id}")
        return
    try:
        await process_batch(batch)
    except Exception as e:
        # persisted copy stays for recovery on next startup
        logger.error(f"Batch processing failed | contact_id={contact_id} | error={e}", exc_info=True)
        return
    await debouncer.clear_persisted(contact_id)


@router.post("/crm/{token}/message")
async def receive_message_webhook(
    request: Request,
    token: str,
    background_tasks: BackgroundTasks,
) -> JSONResponse:
    """
    Receive an inbound lead message from the CRM.

    Authentication: token in URL path must match CRM_WEBHOOK_TOKEN.
    Acknowledges immediately; debouncing and processing run in the background.

    Raises:
        HTTPException 401: Invalid token
        HTTPException 400: Unparseable payload
    """
    verify_webhook_token(token, get_settings().CRM_WEBHOOK_TOKEN, request)

    try:
        raw = await request.json()
        payload = InboundMessagePayload.model_validate(raw)
    except Exception as e:
        logger.error(f"Failed to parse message webhook payload: {e}")
        raise HTTPException(status_code=400, detail="Invalid payload format")

    contact_id = payload.resolved_contact_id
    if not contact_id:
        logger.warning("Message webhook missing contact id, ignoring")
        return JSONResponse(status_code=200, content={"status": "ignored"})

    background_tasks.add_task(
        debounce_and_process, contact_id, payload.message_text, raw, get_debouncer()
    )
    logger.info(f"Message webhook accepted | contact_id={contact_id}")
    return JSONResponse(status_code=200, content={"status": "accepted"})
