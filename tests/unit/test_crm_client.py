"""
Unit tests for crm_client.py helpers and request shaping.

Tests coverage:
- serialize_field_value() - None/list/dict/scalar handling
- resolve_channel() - DM tags, phone, live chat fallback
- CRMClient.update_custom_fields() - name-keyed payload, empty no-op
"""

from unittest.mock import AsyncMock, patch

import pytest

from shared.crm_client import CRMClient, resolve_channel, serialize_field_value


class TestSerializeFieldValue:
    def test_none_clears_field(self):
        assert serialize_field_value(None) == ""

    def test_collections_are_json_encoded(self):
        assert serialize_field_value([{"a": 1}]) == '[{"a": 1}]'
        assert serialize_field_value({"k": "v"}) == '{"k": "v"}'

    def test_scalars_pass_through(self):
        assert serialize_field_value(True) is True
        assert serialize_field_value("forearm") == "forearm"


class TestResolveChannel:
    def test_instagram_tag_wins_over_phone(self):
        contact = {"tags": ["lead", "Instagram DM"], "phone": "+15555550100"}
        assert resolve_channel(contact) == "IG"

    def test_facebook_tag(self):
        assert resolve_channel({"tags": ["facebook"]}) == "FB"

    def test_phone_means_sms(self):
        assert resolve_channel({"phone": "+15555550100"}) == "SMS"

    def test_fallback_is_live_chat(self):
        assert resolve_channel({"tags": [None, 3]}) == "Live_Chat"


class TestUpdateCustomFields:
    @pytest.mark.asyncio
    async def test_payload_is_name_keyed(self):
        client = CRMClient()
        with patch.object(client, "_request", new_callable=AsyncMock) as request:
            await client.update_custom_fields(
                "c1", {"deposit_paid": True, "hold_appointment_id": None}
            )

        method, path = request.call_args.args[:2]
        body = request.call_args.kwargs["json_body"]
        assert (method, path) == ("PUT", "/contacts/c1")
        assert {"key": "deposit_paid", "field_value": True} in body["customFields"]
        assert {"key": "hold_appointment_id", "field_value": ""} in body["customFields"]

    @pytest.mark.asyncio
    async def test_empty_update_is_noop(self):
        client = CRMClient()
        with patch.object(client, "_request", new_callable=AsyncMock) as request:
            await client.update_custom_fields("c1", {})
        request.assert_not_called()
