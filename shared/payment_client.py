"""
Payment API client for deposit links and refunds.

Only two operations are needed by the booking engine: a hosted link for the
consultation deposit, and a refund when a captured deposit can no longer be
matched to a free slot.
"""

import logging
import uuid
from typing import Any, cast

import httpx

from shared.config import get_settings
from shared.crm_client import http_retry

logger = logging.getLogger(__name__)


class PaymentClient:
    """Client for the payment provider's REST API."""

    def __init__(self):
        settings = get_settings()
        self.api_url = settings.PAYMENT_API_URL.rstrip("/")
        self.location_id = settings.PAYMENT_LOCATION_ID
        self.currency = settings.DEPOSIT_CURRENCY
        self.headers = {
            "Authorization": f"Bearer {settings.PAYMENT_ACCESS_TOKEN}",
            "Content-Type": "application/json",
        }

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        async with httpx.AsyncClient() as client:
            try:
                response = await client.post(
                    f"{self.api_url}{path}",
                    json=payload,
                    headers=self.headers,
                    timeout=10.0,
                )
                response.raise_for_status()
                return cast(dict[str, Any], response.json())

            except httpx.HTTPError as e:
                logger.error(f"Payment HTTP error | path={path} | error={e}")
                raise

    @http_retry
    async def create_deposit_link(
        self, contact_id: str, amount_cents: int, description: str
    ) -> dict[str, Any]:
        """
        Create a hosted payment link for a contact's deposit.

        The contact id travels in the order reference so the payment webhook
        can be matched back to the contact.

        Returns:
            {"id": link_id, "url": checkout_url}
        """
        data = await self._post(
            "/v2/online-checkout/payment-links",
            {
                "idempotency_key": str(uuid.uuid4()),
                "quick_pay": {
                    "name": description,
                    "price_money": {"amount": amount_cents, "currency": self.currency},
                    "location_id": self.location_id,
                },
                "payment_note": f"contact:{contact_id}",
            },
        )
        link = data.get("payment_link", {})
        logger.info(
            f"Deposit link created | contact_id={contact_id} | link_id={link.get('id')}"
        )
        return {"id": link.get("id"), "url": link.get("url")}

    @http_retry
    async def refund_payment(
        self, payment_id: str, amount_cents: int, reason: str
    ) -> dict[str, Any]:
        data = await self._post(
            "/v2/refunds",
            {
                "idempotency_key": f"refund-{payment_id}",
                "payment_id": payment_id,
                "amount_money": {"amount": amount_cents, "currency": self.currency},
                "reason": reason,
            },
        )
        refund = data.get("refund", {})
        logger.info(
            f"Refund issued | payment_id={payment_id} | refund_id={refund.get('id')} | "
            f"status={refund.get('status')}"
        )
        return cast(dict[str, Any], refund)
