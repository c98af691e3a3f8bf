"""Tests for the WhatsApp gateway: webhook parsing, verification and sending."""
import json

import httpx
import pytest
from tenacity import wait_none

from channels.base import GatewayError, RecordingGateway
from channels.whatsapp import WhatsAppGateway, normalize_phone, parse_webhook, verify_webhook
from config.settings import WhatsAppConfig


def _webhook(message: dict, contacts: list = None) -> dict:
    value = {"messaging_product": "whatsapp", "messages": [message]}
    if contacts is not None:
        value["contacts"] = contacts
    return {"object": "whatsapp_business_account",
            "entry": [{"id": "1", "changes": [{"field": "messages", "value": value}]}]}


@pytest.fixture
def config() -> WhatsAppConfig:
    return WhatsAppConfig(phone_number_id="1234567890", access_token="secret-token",
                          verify_token="verify-me")


def _gateway(config, handler) -> WhatsAppGateway:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=config.base_url)
    return WhatsAppGateway(config, client=client)


class TestParseWebhook:
    def test_text_message(self):
        msg = parse_webhook(_webhook(
            {"from": "+91 98765-43210", "id": "wamid.1", "timestamp": "1760000000",
             "type": "text", "text": {"body": "hi"}},
            contacts=[{"profile": {"name": "Priya"}, "wa_id": "919876543210"}],
        ))
        assert msg.sender == "919876543210"
        assert msg.text == "hi"
        assert msg.customer_name == "Priya"
        assert msg.message_id == "wamid.1"
        assert int(msg.timestamp.timestamp()) == 1760000000

    @pytest.mark.parametrize("kind", ["button_reply", "list_reply"])
    def test_interactive_reply(self, kind):
        msg = parse_webhook(_webhook({
            "from": "919876543210", "type": "interactive",
            "interactive": {"type": kind, kind: {"id": "svc_1", "title": "Haircut"}},
        }))
        assert msg.text == "Haircut"

    def test_status_callback_is_ignored(self):
        payload = {"entry": [{"changes": [{"value": {"statuses": [{"status": "read"}]}}]}]}
        assert parse_webhook(payload) is None

    def test_unsupported_message_is_ignored(self):
        assert parse_webhook(_webhook({"from": "919876543210", "type": "image", "image": {}})) is None

    def test_empty_payload(self):
        assert parse_webhook({}) is None
        assert parse_webhook({"entry": []}) is None


class TestVerifyWebhook:
    def test_valid(self):
        params = {"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "42"}
        assert verify_webhook(params, "verify-me") == "42"

    def test_wrong_token(self):
        params = {"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "42"}
        assert verify_webhook(params, "verify-me") is None

    def test_unset_token_never_verifies(self):
        params = {"hub.mode": "subscribe", "hub.verify_token": "", "hub.challenge": "42"}
        assert verify_webhook(params, "") is None


class TestWhatsAppGateway:
    def test_normalize_phone(self):
        assert normalize_phone("+91 (987) 654-3210") == "919876543210"

    @pytest.mark.asyncio
    async def test_send_success(self, config):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"messages": [{"id": "wamid.out"}]})

        gateway = _gateway(config, handler)
        assert await gateway.send_message("+91 98765 43210", "Hello") is True

        request = seen[0]
        assert request.url.path == "/v18.0/1234567890/messages"
        assert request.headers["Authorization"] == "Bearer secret-token"
        body = json.loads(request.content)
        assert body == {"messaging_product": "whatsapp", "to": "919876543210",
                        "type": "text", "text": {"body": "Hello"}}
        await gateway.close()

    @pytest.mark.asyncio
    async def test_rejected_message_is_not_retried(self, config):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, json={"error": {"message": "Invalid parameter"}})

        gateway = _gateway(config, handler)
        assert await gateway.send_message("919876543210", "Hello") is False
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_transport_error_is_retried(self, config, monkeypatch):
        monkeypatch.setattr(WhatsAppGateway._post.retry, "wait", wait_none())
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                raise httpx.ConnectError("connection reset", request=request)
            return httpx.Response(200, json={"messages": [{"id": "wamid.ok"}]})

        gateway = _gateway(config, handler)
        assert await gateway.send_message("919876543210", "Hello") is True
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_unconfigured_gateway_raises(self):
        gateway = WhatsAppGateway(WhatsAppConfig())
        with pytest.raises(GatewayError):
            await gateway.send_message("919876543210", "Hello")


class TestRecordingGateway:
    @pytest.mark.asyncio
    async def test_records_and_fails_on_demand(self):
        gateway = RecordingGateway()
        await gateway.send_message("1", "a")
        await gateway.send_message("2", "b")
        assert gateway.messages_to("1") == ["a"]

        gateway.fail = True
        with pytest.raises(GatewayError) as exc:
            await gateway.send_message("1", "c")
        assert exc.value.retryable
