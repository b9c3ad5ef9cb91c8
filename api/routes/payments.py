"""Payment provider webhook route."""

import logging

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request
from fastapi.responses import JSONResponse

from agent.services.deposit_service import handle_deposit_paid
from api.models.webhooks import PaymentWebhookPayload
from api.routes.messages import verify_webhook_token
from shared.config import get_settings

logger = logging.getLogger(__name__)

router = APIRouter()


async def run_deposit_paid(contact_id: str, payment_id: str | None, amount_cents: int | None) -> None:
    try:
        await handle_deposit_paid(contact_id, payment_id, amount_cents)
    except Exception as e:
        logger.error(
            f"Deposit handling failed | contact_id={contact_id} | payment_id={payment_id} | error={e}",
            exc_info=True,
        )


@router.post("/payments/{token}")
async def receive_payment_webhook(
    request: Request,
    token: str,
    background_tasks: BackgroundTasks,
) -> JSONResponse:
    """
    Receive a payment event. Only completed payments carrying a contact
    reference are processed; everything else is acknowledged and ignored.
    """
    verify_webhook_token(token, get_settings().PAYMENT_WEBHOOK_TOKEN, request)

    try:
        payload = PaymentWebhookPayload.model_validate(await request.json())
    except Exception as e:
        logger.error(f"Failed to parse payment webhook payload: {e}")
        raise HTTPException(status_code=400, detail="Invalid payload format")

    if not payload.is_completed:
        logger.debug(f"Ignoring payment event | type={payload.type}")
        return JSONResponse(status_code=200, content={"status": "ignored"})

    contact_id = payload.contact_id
    if not contact_id:
        logger.warning(f"Completed payment without contact reference | payment_id={payload.payment.id}")
        return JSONResponse(status_code=200, content={"status": "ignored"})

    background_tasks.add_task(run_deposit_paid, contact_id, payload.payment.id, payload.amount_cents)
    logger.info(f"Payment webhook accepted | contact_id={contact_id} | payment_id={payload.payment.id}")
    return JSONResponse(status_code=200, content={"status": "accepted"})
