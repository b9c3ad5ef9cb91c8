"""
CRM client for contacts, custom fields, conversations and opportunities.

This module provides the CRMClient class for interacting with the CRM API:
reading a contact's flexible field map, writing name-keyed custom fields,
sending outbound messages and managing pipeline opportunities.
"""

import json
import logging
from typing import Any, cast

import httpx
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from shared.config import get_settings
from shared.resilient_api import is_retryable_error

logger = logging.getLogger(__name__)

DM_TAG_CHANNELS = {"INSTAGRAM": "IG", "FACEBOOK": "FB", "DM": "IG"}

http_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    retry=retry_if_exception(is_retryable_error),
    reraise=True,
)


def serialize_field_value(value: Any) -> Any:
    """Field store values are strings or booleans; None clears the field."""
    if value is None:
        return ""
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return value


def resolve_channel(contact: dict[str, Any]) -> str:
    """
    Pick the outbound channel hint for a contact.

    DM tags win over phone so Instagram/Facebook leads are answered in-thread.
    """
    for tag in contact.get("tags") or []:
        if not isinstance(tag, str):
            continue
        upper = tag.upper()
        for marker, channel in DM_TAG_CHANNELS.items():
            if marker in upper:
                return channel
    if contact.get("phone") or contact.get("phoneNumber"):
        return "SMS"
    return "Live_Chat"


class CRMClient:
    """
    Client for the CRM REST API.

    Every call is bounded by a 10s timeout and retried on transient errors.
    """

    def __init__(self):
        settings = get_settings()
        self.api_url = settings.CRM_API_URL.rstrip("/")
        self.location_id = settings.CRM_LOCATION_ID
        self.pipeline_id = settings.CRM_PIPELINE_ID
        self.headers = {
            "Authorization": f"Bearer {settings.CRM_API_TOKEN}",
            "Version": settings.CRM_API_VERSION,
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        async with httpx.AsyncClient() as client:
            try:
                response = await client.request(
                    method,
                    f"{self.api_url}{path}",
                    json=json_body,
                    params=params,
                    headers=self.headers,
                    timeout=10.0,
                )
                response.raise_for_status()
                if not response.content:
                    return {}
                return cast(dict[str, Any], response.json())

            except httpx.HTTPError as e:
                logger.error(f"CRM HTTP error | method={method} | path={path} | error={e}")
                raise

    # ------------------------------------------------------------------
    # Contacts & fields
    # ------------------------------------------------------------------

    @http_retry
    async def get_contact(self, contact_id: str) -> dict[str, Any]:
        data = await self._request("GET", f"/contacts/{contact_id}")
        return cast(dict[str, Any], data.get("contact", data))

    @http_retry
    async def update_custom_fields(self, contact_id: str, fields: dict[str, Any]) -> None:
        """
        Write name-keyed custom fields on a contact.

        Args:
            contact_id: CRM contact id
            fields: {field_key: value}; lists/dicts are stored as JSON, None clears
        """
        if not fields:
            return

        payload = {
            "customFields": [
                {"key": key, "field_value": serialize_field_value(value)}
                for key, value in fields.items()
            ]
        }
        await self._request("PUT", f"/contacts/{contact_id}", json_body=payload)
        logger.info(
            f"Custom fields updated | contact_id={contact_id} | keys={sorted(fields)}"
        )

    @http_retry
    async def add_contact_note(self, contact_id: str, body: str) -> None:
        await self._request("POST", f"/contacts/{contact_id}/notes", json_body={"body": body})

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    @http_retry
    async def send_message(self, contact_id: str, text: str, channel: str = "SMS") -> bool:
        """
        Send an outbound text to the contact's active channel.

        Returns:
            True once the CRM accepted the message
        """
        await self._request(
            "POST",
            "/conversations/messages",
            json_body={"type": channel, "contactId": contact_id, "message": text},
        )
        logger.info(
            f"Message sent | contact_id={contact_id} | channel={channel} | length={len(text)}"
        )
        return True

    # ------------------------------------------------------------------
    # Opportunities
    # ------------------------------------------------------------------

    @http_retry
    async def search_opportunities(self, contact_id: str) -> list[dict[str, Any]]:
        data = await self._request(
            "GET",
            "/opportunities/search",
            params={
                "location_id": self.location_id,
                "contact_id": contact_id,
                "pipeline_id": self.pipeline_id,
            },
        )
        return cast(list[dict[str, Any]], data.get("opportunities", []))

    @http_retry
    async def create_opportunity(
        self,
        contact_id: str,
        stage_id: str,
        name: str,
        monetary_value: float = 0,
    ) -> dict[str, Any]:
        data = await self._request(
            "POST",
            "/opportunities/",
            json_body={
                "pipelineId": self.pipeline_id,
                "locationId": self.location_id,
                "contactId": contact_id,
                "pipelineStageId": stage_id,
                "name": name,
                "status": "open",
                "monetaryValue": monetary_value,
            },
        )
        return cast(dict[str, Any], data.get("opportunity", data))

    @http_retry
    async def upsert_opportunity(
        self,
        contact_id: str,
        stage_id: str,
        name: str,
        monetary_value: float = 0,
        status: str = "open",
    ) -> dict[str, Any]:
        data = await self._request(
            "POST",
            "/opportunities/upsert",
            json_body={
                "pipelineId": self.pipeline_id,
                "locationId": self.location_id,
                "contactId": contact_id,
                "pipelineStageId": stage_id,
                "name": name,
                "status": status,
                "monetaryValue": monetary_value,
            },
        )
        return cast(dict[str, Any], data.get("opportunity", data))

    @http_retry
    async def update_opportunity(
        self,
        opportunity_id: str,
        stage_id: str,
        monetary_value: float | None = None,
        status: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"pipelineId": self.pipeline_id, "pipelineStageId": stage_id}
        if monetary_value is not None:
            body["monetaryValue"] = monetary_value
        if status:
            body["status"] = status
        data = await self._request("PUT", f"/opportunities/{opportunity_id}", json_body=body)
        return cast(dict[str, Any], data.get("opportunity", data))
