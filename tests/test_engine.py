"""
Tests for ConversationEngine — full booking path, persistence, delivery,
fault handling, live flow pickup, inspection and test drive.
"""
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from channels.base import RecordingGateway
from conftest import TENANT, TODAY
from core.engine import TECHNICAL_DIFFICULTIES_REPLY, ConversationEngine
from core.renderer import format_long_date
from flows.errors import ErrorCode
from flows.templates import TemplateInstantiator
from models.schemas import InboundMessage

PHONE = "919876543210"


def _msg(text: str, sender: str = PHONE) -> InboundMessage:
    return InboundMessage(sender=sender, text=text, customer_name="Priya")


async def _say(engine, *texts, sender=PHONE):
    replies = []
    for text in texts:
        replies.append(await engine.handle_inbound(TENANT, _msg(text, sender)))
    return replies


class TestBookingPath:
    @pytest.mark.asyncio
    async def test_full_booking(self, engine, store):
        hi, service, day, slot, paid = await _say(engine, "hi", "1", "3", "2", "paid")

        assert hi.state == "awaiting_service"
        assert "Welcome to Spark Salon!" in hi.text

        assert service.state == "awaiting_date"
        assert "Haircut" in service.text

        assert day.state == "awaiting_time"
        assert format_long_date(TODAY + timedelta(days=3)) in day.text

        assert slot.state == "awaiting_payment"
        assert "11:30 AM" in slot.text
        assert "upi://pay" in slot.text

        assert paid.state == "completed"
        assert paid.advanced

        conversation = await store.get_conversation(TENANT, PHONE)
        assert conversation.current_state == "completed"
        assert conversation.customer_name == "Priya"
        assert conversation.selected_service == "haircut"
        assert conversation.selected_date == (TODAY + timedelta(days=3)).isoformat()
        assert conversation.selected_time == "11:30 AM"
        assert conversation.context_data["payment_status"] == "paid"

    @pytest.mark.asyncio
    async def test_messages_are_logged_both_ways(self, engine):
        await _say(engine, "hi", "nonsense")
        history = await engine.get_message_history(TENANT, PHONE)
        assert [m.is_from_bot for m in history] == [False, True, False, True]
        assert history[2].content == "nonsense"
        assert "didn't recognize that service" in history[3].content

    @pytest.mark.asyncio
    async def test_rejected_input_keeps_state(self, engine):
        _, rejected = await _say(engine, "hi", "pedicure")
        assert rejected.state == "awaiting_service"
        assert rejected.previous_state == "awaiting_service"
        assert not rejected.advanced

    @pytest.mark.asyncio
    async def test_superscript_digit_is_corrected_not_faulted(self, engine):
        _, reply = await _say(engine, "hi", "²")
        assert reply.text != TECHNICAL_DIFFICULTIES_REPLY
        assert reply.state == "awaiting_service"
        assert "didn't recognize that service" in reply.text

    @pytest.mark.asyncio
    async def test_senders_are_isolated(self, engine):
        await _say(engine, "hi", "1")
        other = (await _say(engine, "hi", sender="911111111111"))[0]
        assert other.state == "awaiting_service"
        state = await engine.get_conversation_state(TENANT, PHONE)
        assert state["current_state"] == "awaiting_date"


class TestDelivery:
    @pytest.mark.asyncio
    async def test_reply_is_sent_to_sender(self, engine, gateway):
        reply = (await _say(engine, "hi"))[0]
        assert reply.delivered
        assert gateway.messages_to(PHONE) == [reply.text]

    @pytest.mark.asyncio
    async def test_gateway_failure_does_not_lose_state(self, store, cache, repository, settings):
        engine = ConversationEngine(store, cache, gateway=RecordingGateway(fail=True),
                                    repository=repository, settings=settings, today=lambda: TODAY)
        reply = (await _say(engine, "hi"))[0]
        assert reply.delivered is False
        assert reply.state == "awaiting_service"
        assert (await store.get_conversation(TENANT, PHONE)).current_state == "awaiting_service"

    @pytest.mark.asyncio
    async def test_no_gateway(self, store, cache, settings):
        engine = ConversationEngine(store, cache, settings=settings, today=lambda: TODAY)
        reply = (await _say(engine, "hi"))[0]
        assert reply.delivered is False


class TestFaults:
    @pytest.mark.asyncio
    async def test_store_down_gives_generic_reply(self, cache, gateway, settings):
        store = AsyncMock()
        store.get_conversation.side_effect = ConnectionError("database unreachable")
        engine = ConversationEngine(store, cache, gateway=gateway, settings=settings, today=lambda: TODAY)

        reply = (await _say(engine, "hi"))[0]
        assert reply.text == TECHNICAL_DIFFICULTIES_REPLY
        assert reply.state == "greeting"
        assert reply.conversation_id is None
        assert gateway.messages_to(PHONE) == [TECHNICAL_DIFFICULTIES_REPLY]

    @pytest.mark.asyncio
    async def test_failed_update_leaves_state_unchanged(self, engine, store):
        await _say(engine, "hi")
        store.update_conversation = AsyncMock(side_effect=RuntimeError("write failed"))

        reply = (await _say(engine, "1"))[0]
        assert reply.text == TECHNICAL_DIFFICULTIES_REPLY
        assert reply.state == "awaiting_service"
        assert (await store.get_conversation(TENANT, PHONE)).current_state == "awaiting_service"

    @pytest.mark.asyncio
    async def test_fallback_reply_is_logged(self, engine, store):
        await _say(engine, "hi")
        store.update_conversation = AsyncMock(side_effect=RuntimeError("write failed"))
        await _say(engine, "1")

        history = await engine.get_message_history(TENANT, PHONE)
        assert [(m.is_from_bot, m.content) for m in history[2:]] == [
            (False, "1"), (True, TECHNICAL_DIFFICULTIES_REPLY),
        ]

    @pytest.mark.asyncio
    async def test_unloggable_fallback_still_delivered(self, engine, store, gateway):
        await _say(engine, "hi")
        store.update_conversation = AsyncMock(side_effect=RuntimeError("write failed"))
        store.add_message = AsyncMock(side_effect=RuntimeError("log down"))
        reply = (await _say(engine, "1"))[0]
        assert reply.text == TECHNICAL_DIFFICULTIES_REPLY
        assert gateway.messages_to(PHONE)[-1] == TECHNICAL_DIFFICULTIES_REPLY

    @pytest.mark.asyncio
    async def test_flow_lookup_failure_uses_builtin(self, engine, cache):
        cache.bind_loader(AsyncMock(side_effect=RuntimeError("lookup failed")))
        reply = (await _say(engine, "hi"))[0]
        assert "Welcome to Spark Salon!" in reply.text


class TestLiveFlow:
    @pytest.mark.asyncio
    async def test_activated_flow_is_used_without_restart(self, engine, repository, library):
        before = (await _say(engine, "hi"))[0]
        assert "Welcome to Spark Salon!" in before.text

        instantiator = TemplateInstantiator(library, repository)
        flow = (await instantiator.instantiate("salon-booking-flow", TENANT, {
            "name": "Glow", "variables": {"businessName": "Glow Studio"},
        })).data
        await repository.activate_flow(TENANT, flow.id)

        after = (await _say(engine, "hi"))[0]
        assert "Welcome to Glow Studio!" in after.text
        assert after.state == "awaiting_service"

    @pytest.mark.asyncio
    async def test_deactivated_flow_falls_back(self, engine, repository, library):
        instantiator = TemplateInstantiator(library, repository)
        flow = (await instantiator.instantiate("salon-booking-flow", TENANT, {
            "name": "Glow", "variables": {"businessName": "Glow Studio"},
        })).data
        await repository.activate_flow(TENANT, flow.id)
        assert "Glow Studio" in (await _say(engine, "hi"))[0].text

        await repository.deactivate_flow(TENANT, flow.id)
        assert "Spark Salon" in (await _say(engine, "hi"))[0].text


class TestInspection:
    @pytest.mark.asyncio
    async def test_conversation_state(self, engine):
        await _say(engine, "hi", "2")
        state = await engine.get_conversation_state(TENANT, PHONE)
        assert state["current_state"] == "awaiting_date"
        assert state["selected_service"] == "facial"
        assert state["customer_name"] == "Priya"
        assert state["available_transitions"] == ["awaiting_time", "awaiting_service"]

    @pytest.mark.asyncio
    async def test_unknown_sender(self, engine):
        assert await engine.get_conversation_state(TENANT, "000") is None
        assert await engine.get_message_history(TENANT, "000") == []


class TestTestDrive:
    @pytest.mark.asyncio
    async def test_booking_mode(self, engine, store, library, repository):
        flow = (await TemplateInstantiator(library, repository).instantiate(
            "salon-booking-flow", TENANT, {"name": "Draft"},
        )).data
        result = await engine.test_drive(flow, ["hi", "3", "1"])
        assert result["mode"] == "booking"
        assert result["final_state"] == "awaiting_time"
        assert "Massage" in result["replies"][1]
        assert await store.get_conversation(TENANT, "test-drive") is None

    @pytest.mark.asyncio
    async def test_graph_mode(self, engine, linear_flow):
        result = await engine.test_drive(linear_flow, ["hi", "", "Ana"])
        assert result["mode"] == "graph"
        assert result["replies"] == [
            "Hello from Corner Shop!\n\nWhat is your name?",
            "This field is required.",
            "Goodbye Ana.",
        ]
        assert result["finished"] is True
        assert result["variables"]["customerName"] == "Ana"
        assert result["errors"] == []

    @pytest.mark.asyncio
    async def test_drive_stored_flow(self, engine, library, repository):
        flow = (await TemplateInstantiator(library, repository).instantiate(
            "restaurant-order-flow", TENANT, {"name": "Orders", "variables": {"restaurantName": "Tandoor"}},
        )).data
        response = await engine.test_drive_flow(TENANT, flow.id, ["hi", "2 naan"])
        assert response.success
        replies = response.data["replies"]
        assert replies[0].startswith("Welcome to Tandoor!")
        assert replies[1] == "Thank you! Your order of 2 naan from Tandoor has been placed."

    @pytest.mark.asyncio
    async def test_drive_unknown_flow(self, engine):
        response = await engine.test_drive_flow(TENANT, "missing", ["hi"])
        assert response.error.code == ErrorCode.NOT_FOUND
