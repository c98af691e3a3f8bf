"""Tests for BookingApp wiring."""
import pytest

from channels.base import RecordingGateway
from channels.whatsapp import WhatsAppGateway
from config.settings import Settings, TemplateConfig, WhatsAppConfig
from core.app import BookingApp
from database.store_factory import reset_store
from database.store_memory import InMemoryStore


@pytest.fixture(autouse=True)
def _fresh_factory():
    reset_store()
    yield
    reset_store()


def _webhook(text: str, sender: str = "919876543210") -> dict:
    return {"entry": [{"changes": [{"value": {
        "contacts": [{"profile": {"name": "Priya"}}],
        "messages": [{"from": sender, "type": "text", "text": {"body": text}}],
    }}]}]}


class TestBookingApp:
    def test_from_default_settings(self):
        app = BookingApp.from_settings(Settings())
        assert isinstance(app.store, InMemoryStore)
        assert isinstance(app.gateway, RecordingGateway)
        assert len(app.library) == 3

    def test_whatsapp_gateway_when_configured(self):
        settings = Settings(whatsapp=WhatsAppConfig(phone_number_id="1", access_token="tok"))
        assert isinstance(BookingApp.from_settings(settings).gateway, WhatsAppGateway)

    def test_unsubstituted_token_is_not_configured(self):
        settings = Settings(whatsapp=WhatsAppConfig(phone_number_id="1",
                                                    access_token="${WHATSAPP_ACCESS_TOKEN}"))
        assert isinstance(BookingApp.from_settings(settings).gateway, RecordingGateway)

    @pytest.mark.asyncio
    async def test_webhook_round_trip(self):
        app = BookingApp.from_settings(Settings(default_tenant_id="salon-1"))
        await app.start()

        reply = await app.handle_webhook(_webhook("hi"))
        assert reply.state == "awaiting_service"
        assert app.gateway.messages_to("919876543210") == [reply.text]

        state = await app.engine.get_conversation_state("salon-1", "919876543210")
        assert state["customer_name"] == "Priya"
        await app.stop()

    @pytest.mark.asyncio
    async def test_status_webhook_is_ignored(self):
        app = BookingApp.from_settings(Settings())
        payload = {"entry": [{"changes": [{"value": {"statuses": [{"status": "delivered"}]}}]}]}
        assert await app.handle_webhook(payload) is None

    def test_verify_webhook(self):
        app = BookingApp.from_settings(Settings(whatsapp=WhatsAppConfig(verify_token="v")))
        params = {"hub.mode": "subscribe", "hub.verify_token": "v", "hub.challenge": "7"}
        assert app.verify_webhook(params) == "7"

    @pytest.mark.asyncio
    async def test_instantiate_through_app(self):
        app = BookingApp.from_settings(Settings(templates=TemplateConfig(strict_instantiation=True)))
        response = await app.instantiator.instantiate("clinic-appointment-flow", "salon-1", {"name": "Clinic"})
        assert response.success
