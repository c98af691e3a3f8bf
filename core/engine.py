"""
Conversation Engine — drives one inbound message through the booking flow.

Pipeline per message (serialized per tenant + sender):
  1. load or create the sender's conversation
  2. append the inbound text to the message log
  3. resolve the tenant's live flow (FlowCache, checked on every message;
     the built-in booking flow covers tenants without one)
  4. run the booking state machine: validate input, pick the node,
     render its copy, compute the next state
  5. persist the new state and captured selections
  6. append the reply to the message log and hand it to the gateway

A store or processing fault never reaches the customer as a technical
error: they get a generic "try again" reply and the conversation state is
left as it was.
"""
from __future__ import annotations

import structlog
from datetime import date, datetime
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo

from channels.base import MessagingGateway
from config.settings import Settings, get_settings
from core.booking import BookingStateMachine, available_transitions, uses_booking_nodes
from core.catalog import ServiceCatalog
from core.renderer import BookingRenderer
from core.static_flow import build_static_flow
from database.store_base import BaseStore
from flows.cache import FlowCache
from flows.errors import ErrorCode
from flows.executor import GraphExecutor
from models.schemas import (
    Conversation, ConversationState, EngineReply, Flow, InboundMessage, MessageLog,
    ServiceResponse,
)
from utils.locks import KeyedLock

logger = structlog.get_logger()

TECHNICAL_DIFFICULTIES_REPLY = "Sorry, I'm experiencing technical difficulties. Please try again later."

TEST_DRIVE_SENDER = "test-drive"


class ConversationEngine:
    """
    Booking conversation runtime.

    Collaborators are injected so tests can swap the store, the flow
    cache, the gateway and the clock.
    """

    def __init__(
        self,
        store: BaseStore,
        flow_cache: FlowCache,
        gateway: MessagingGateway = None,
        booking: BookingStateMachine = None,
        executor: GraphExecutor = None,
        repository=None,
        settings: Settings = None,
        today: Callable[[], date] = None,
    ):
        self.store = store
        self.flow_cache = flow_cache
        self.gateway = gateway
        self.repository = repository
        self._settings = settings or get_settings()
        self.booking = booking or self._default_booking(self._settings)
        self.executor = executor or GraphExecutor()
        self._today = today or self._local_today
        self._conversation_locks = KeyedLock()

    @staticmethod
    def _default_booking(settings: Settings) -> BookingStateMachine:
        catalog = ServiceCatalog.from_config(settings.booking)
        return BookingStateMachine(
            renderer=BookingRenderer(settings.booking, catalog),
            fallback_flow=build_static_flow(settings.booking),
            restart_keywords=settings.booking.restart_keywords,
        )

    def _local_today(self) -> date:
        return datetime.now(ZoneInfo(self._settings.timezone)).date()

    # ══════════════════════════════════════════════════════════
    #  INBOUND: message received from a customer
    # ══════════════════════════════════════════════════════════

    async def handle_inbound(self, tenant_id: str, message: InboundMessage) -> EngineReply:
        logger.info("inbound_message",
                    tenant_id=tenant_id,
                    sender=message.sender,
                    content=message.text[:100])

        async with self._conversation_locks.hold((tenant_id, message.sender)):
            conversation: Optional[Conversation] = None
            try:
                conversation = await self._load_conversation(tenant_id, message)
                reply = await self._process(tenant_id, conversation, message)
            except Exception as e:
                logger.error("engine_processing_failed",
                             tenant_id=tenant_id, sender=message.sender, error=str(e))
                state = conversation.current_state if conversation else ConversationState.GREETING.value
                reply = EngineReply(
                    text=TECHNICAL_DIFFICULTIES_REPLY,
                    state=state,
                    previous_state=state,
                    conversation_id=conversation.id if conversation else None,
                )
                if conversation is not None:
                    await self._log_fallback_reply(tenant_id, conversation, reply.text)

            reply.delivered = await self._deliver(message.sender, reply.text)
        return reply

    async def _load_conversation(self, tenant_id: str, message: InboundMessage) -> Conversation:
        conversation = await self.store.get_conversation(tenant_id, message.sender)
        if conversation is None:
            conversation = await self.store.create_conversation(
                tenant_id, message.sender, customer_name=message.customer_name,
            )
            logger.info("conversation_created", tenant_id=tenant_id,
                        conversation_id=conversation.id, sender=message.sender)
        return conversation

    async def _process(self, tenant_id: str, conversation: Conversation, message: InboundMessage) -> EngineReply:
        previous_state = conversation.current_state
        await self.store.add_message(conversation.id, message.text, is_from_bot=False)

        flow = await self._active_flow(tenant_id)
        outcome = self.booking.step(conversation, message.text, flow, self._today())

        if outcome.advanced or outcome.to_state != previous_state:
            updated = await self.store.update_conversation(
                conversation.id, current_state=outcome.to_state, **outcome.updates,
            )
            if updated is None:
                logger.warning("conversation_update_lost",
                               tenant_id=tenant_id, conversation_id=conversation.id)
            logger.info("conversation_state_changed",
                        tenant_id=tenant_id,
                        conversation_id=conversation.id,
                        from_state=previous_state,
                        to_state=outcome.to_state,
                        node_id=outcome.node_id)
        else:
            logger.info("conversation_input_rejected",
                        tenant_id=tenant_id, conversation_id=conversation.id, state=previous_state)

        await self.store.add_message(conversation.id, outcome.reply, is_from_bot=True)
        return EngineReply(
            text=outcome.reply,
            state=outcome.to_state,
            previous_state=previous_state,
            advanced=outcome.advanced,
            node_id=outcome.node_id,
            conversation_id=conversation.id,
        )

    async def _log_fallback_reply(self, tenant_id: str, conversation: Conversation, text: str):
        try:
            await self.store.add_message(conversation.id, text, is_from_bot=True)
        except Exception as e:
            logger.warning("fallback_reply_not_logged",
                           tenant_id=tenant_id, conversation_id=conversation.id, error=str(e))

    async def _active_flow(self, tenant_id: str) -> Optional[Flow]:
        try:
            return await self.flow_cache.get(tenant_id)
        except Exception as e:
            logger.warning("active_flow_lookup_failed", tenant_id=tenant_id, error=str(e))
            return None

    async def _deliver(self, to: str, text: str) -> bool:
        if self.gateway is None:
            return False
        try:
            return await self.gateway.send_message(to, text)
        except Exception as e:
            logger.error("reply_delivery_failed", to=to, gateway=self.gateway.name, error=str(e))
            return False

    # ══════════════════════════════════════════════════════════
    #  INSPECTION
    # ══════════════════════════════════════════════════════════

    async def get_conversation_state(self, tenant_id: str, phone_number: str) -> Optional[dict[str, Any]]:
        conversation = await self.store.get_conversation(tenant_id, phone_number)
        if conversation is None:
            return None
        return {
            "conversation_id": conversation.id,
            "customer_name": conversation.customer_name,
            "current_state": conversation.current_state,
            "available_transitions": available_transitions(conversation.current_state),
            "selected_service": conversation.selected_service,
            "selected_date": conversation.selected_date,
            "selected_time": conversation.selected_time,
            "updated_at": conversation.updated_at.isoformat(),
        }

    async def get_message_history(self, tenant_id: str, phone_number: str, limit: int = 50) -> list[MessageLog]:
        conversation = await self.store.get_conversation(tenant_id, phone_number)
        if conversation is None:
            return []
        return await self.store.get_messages(conversation.id, limit=limit)

    # ══════════════════════════════════════════════════════════
    #  TEST DRIVE: preview a flow without touching live state
    # ══════════════════════════════════════════════════════════

    async def test_drive(self, flow: Flow, inputs: list[str]) -> dict[str, Any]:
        """
        Feed simulated inbound texts through flow and collect one reply per
        input. Booking-shaped flows run through the booking state machine;
        any other flow is walked node by node by the GraphExecutor.
        """
        if uses_booking_nodes(flow):
            return self._test_drive_booking(flow, inputs)
        return await self._test_drive_graph(flow, inputs)

    async def test_drive_flow(self, tenant_id: str, flow_id: str, inputs: list[str]) -> ServiceResponse:
        if self.repository is None:
            return ServiceResponse.fail(ErrorCode.NOT_FOUND, "No flow repository configured",
                                        tenant_id=tenant_id, resource_id=flow_id)
        response = await self.repository.get_flow(tenant_id, flow_id)
        if not response.success:
            return response
        return ServiceResponse.ok(await self.test_drive(response.data, inputs))

    def _test_drive_booking(self, flow: Flow, inputs: list[str]) -> dict[str, Any]:
        today = self._today()
        conversation = Conversation(tenant_id=flow.tenant_id, phone_number=TEST_DRIVE_SENDER)
        replies = []
        for text in inputs:
            outcome = self.booking.step(conversation, text, flow, today)
            conversation = conversation.model_copy(
                update={**outcome.updates, "current_state": outcome.to_state},
            )
            replies.append(outcome.reply)
        return {
            "flow_id": flow.id,
            "mode": "booking",
            "replies": replies,
            "final_state": conversation.current_state,
        }

    async def _test_drive_graph(self, flow: Flow, inputs: list[str]) -> dict[str, Any]:
        session = None
        replies = []
        errors = []
        for text in inputs:
            if session is None or session.finished:
                # The first message of a conversation only opens it.
                step = await self.executor.advance(flow, self.executor.start(flow))
            else:
                step = await self.executor.advance(flow, session, text)
            session = step.session
            replies.append("\n\n".join(step.replies))
            if step.error:
                errors.append(step.error)
        return {
            "flow_id": flow.id,
            "mode": "graph",
            "replies": replies,
            "variables": session.variables if session else {},
            "finished": session.finished if session else False,
            "errors": errors,
        }
