"""Pydantic models for CRM and payment webhook payloads."""

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from agent.services.calendar_sync_service import AppointmentChange, appointment_status
from agent.utils.time_parsing import ensure_timezone

CONTACT_NOTE_PATTERN = re.compile(r"contact:([A-Za-z0-9_-]+)")


class WebhookContact(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    contactId: str | None = None


class InboundMessagePayload(BaseModel):
    """
    CRM inbound-message webhook.

    The CRM sends the message either as a string or as {type, body}; the
    contact id under several spellings; custom fields inline.
    """

    model_config = ConfigDict(extra="allow")

    contact_id: str | None = None
    contactId: str | None = None
    contact: WebhookContact | None = None
    message: str | dict[str, Any] | None = None
    text: str | None = None
    body: str | dict[str, Any] | None = None
    customData: dict[str, Any] = Field(default_factory=dict)
    customFields: Any = None
    customField: Any = None
    channel: str | None = None

    @property
    def resolved_contact_id(self) -> str | None:
        return (
            self.contactId
            or self.contact_id
            or (self.contact.id or self.contact.contactId if self.contact else None)
        )

    @property
    def message_text(self) -> str:
        if isinstance(self.message, dict) and self.message.get("body"):
            return str(self.message["body"])
        if isinstance(self.message, str):
            return self.message
        if self.text:
            return self.text
        if self.customData.get("messageBody"):
            return str(self.customData["messageBody"])
        if isinstance(self.body, str):
            return self.body
        if isinstance(self.body, dict):
            return str(self.body.get("text") or self.body.get("message") or "")
        return ""

    @property
    def custom_fields(self) -> Any:
        return self.customFields or self.customField


class CalendarInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    calendarId: str | None = None
    appointmentId: str | None = None
    startTime: str | None = None
    endTime: str | None = None
    status: str | None = None
    appointmentStatus: str | None = None
    appoinmentStatus: str | None = None
    notes: str | None = None


class AppointmentWebhookPayload(BaseModel):
    """CRM appointment-changed webhook; details live under ``calendar``."""

    model_config = ConfigDict(extra="allow")

    contact_id: str | None = None
    contactId: str | None = None
    contact: WebhookContact | None = None
    calendar: CalendarInfo = Field(default_factory=CalendarInfo)
    appointmentId: str | None = None
    calendarId: str | None = None
    startTime: str | None = None
    endTime: str | None = None
    appointmentStatus: str | None = None
    notes: str | None = None

    def to_change(self) -> AppointmentChange | None:
        """Normalized change event, or None when ids are missing."""
        cal = self.calendar
        contact_id = self.contact_id or self.contactId or (self.contact.id if self.contact else None)
        appointment_id = cal.appointmentId or self.appointmentId
        calendar_id = cal.id or cal.calendarId or self.calendarId
        if not (contact_id and appointment_id and calendar_id):
            return None

        status = appointment_status(cal.model_dump()) or (self.appointmentStatus or "").lower()
        return AppointmentChange(
            contact_id=contact_id,
            appointment_id=appointment_id,
            calendar_id=calendar_id,
            start_time=ensure_timezone(cal.startTime or self.startTime),
            end_time=ensure_timezone(cal.endTime or self.endTime),
            status=status or None,
            notes=cal.notes or self.notes,
        )


class Money(BaseModel):
    model_config = ConfigDict(extra="allow")

    amount: int | None = None
    currency: str | None = None


class Payment(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    status: str | None = None
    reference_id: str | None = None
    note: str | None = None
    order_id: str | None = None
    amount_money: Money | None = None
    total_money: Money | None = None


class PaymentObject(BaseModel):
    model_config = ConfigDict(extra="allow")

    payment: Payment | None = None


class PaymentData(BaseModel):
    model_config = ConfigDict(extra="allow")

    object: PaymentObject = Field(default_factory=PaymentObject)


class PaymentWebhookPayload(BaseModel):
    """Payment provider event; only completed payments are acted on."""

    model_config = ConfigDict(extra="allow")

    type: str | None = None
    event_id: str | None = None
    data: PaymentData = Field(default_factory=PaymentData)

    @property
    def payment(self) -> Payment | None:
        return self.data.object.payment

    @property
    def is_completed(self) -> bool:
        return bool(self.payment and (self.payment.status or "").upper() == "COMPLETED")

    @property
    def contact_id(self) -> str | None:
        payment = self.payment
        if payment is None:
            return None
        if payment.reference_id:
            return payment.reference_id
        match = CONTACT_NOTE_PATTERN.search(payment.note or "")
        return match.group(1) if match else None

    @property
    def amount_cents(self) -> int | None:
        payment = self.payment
        if payment is None:
            return None
        money = payment.amount_money or payment.total_money
        return money.amount if money else None
