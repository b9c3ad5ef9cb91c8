"""CRM appointment-changed webhook route (cross-calendar sync trigger)."""

import logging

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request
from fastapi.responses import JSONResponse

from agent.services.calendar_sync_service import AppointmentChange, CalendarSyncService
from api.models.webhooks import AppointmentWebhookPayload
from api.routes.messages import verify_webhook_token
from shared.config import get_settings

logger = logging.getLogger(__name__)

router = APIRouter()


async def run_appointment_sync(change: AppointmentChange) -> None:
    try:
        result = await CalendarSyncService().sync_appointment_change(change)
    except Exception as e:
        logger.error(
            f"Appointment sync failed | appointment_id={change.appointment_id} | error={e}",
            exc_info=True,
        )
        return
    if result is not None and result.failed:
        logger.warning(
            f"Appointment sync incomplete | appointment_id={change.appointment_id} | "
            f"failed={[s.appointment_id for s in result.failed]}"
        )


@router.post("/crm/{token}/appointment")
async def receive_appointment_webhook(
    request: Request,
    token: str,
    background_tasks: BackgroundTasks,
) -> JSONResponse:
    """
    Receive an appointment create/update/cancel event.

    Always acknowledged once authenticated; sibling sync runs in the background
    and its failures never reach the response.
    """
    verify_webhook_token(token, get_settings().CRM_WEBHOOK_TOKEN, request)

    try:
        payload = AppointmentWebhookPayload.model_validate(await request.json())
    except Exception as e:
        logger.error(f"Failed to parse appointment webhook payload: {e}")
        raise HTTPException(status_code=400, detail="Invalid payload format")

    change = payload.to_change()
    if change is None:
        logger.info("Appointment webhook missing contact, appointment or calendar id, ignoring")
        return JSONResponse(status_code=200, content={"status": "ignored"})

    background_tasks.add_task(run_appointment_sync, change)
    logger.info(
        f"Appointment webhook accepted | appointment_id={change.appointment_id} | "
        f"calendar_id={change.calendar_id} | status={change.status}"
    )
    return JSONResponse(status_code=200, content={"status": "accepted"})
