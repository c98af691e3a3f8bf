"""
Booking State Machine — the five-step booking conversation.

    greeting → awaiting_service → awaiting_date → awaiting_time
             → awaiting_payment → completed

Each state is bound to the flow node whose copy is sent once the state's
input is accepted (a lookup table, see BOOKING_STEPS), and each of those
nodes leads to exactly one successor state. Invalid input is answered with
the corrective text of the state's question node and leaves the state
unchanged.

Node copy comes from the tenant's active flow when it has the node (by id,
or by `metadata.booking_step` for flows instantiated from the salon
template) and from the built-in flow otherwise.

The machine is pure: it reads a Conversation and returns a StepOutcome;
persistence and delivery belong to the ConversationEngine.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Optional

from core.catalog import ServiceCatalog
from core.renderer import BookingRenderer
from models.schemas import Conversation, ConversationState, Flow, FlowNode, NodeType

logger = structlog.get_logger()

S = ConversationState

GENERIC_ERROR_REPLY = "Sorry, I encountered an error. Please try again."


@dataclass(frozen=True)
class BookingStep:
    state: ConversationState
    reply_node: str                      # rendered when the input is accepted
    next_state: ConversationState
    question_node: Optional[str] = None  # carries the corrective text


BOOKING_STEPS: dict[ConversationState, BookingStep] = {
    S.GREETING: BookingStep(S.GREETING, "welcome_msg", S.AWAITING_SERVICE),
    S.AWAITING_SERVICE: BookingStep(S.AWAITING_SERVICE, "service_confirmed", S.AWAITING_DATE, "service_question"),
    S.AWAITING_DATE: BookingStep(S.AWAITING_DATE, "date_confirmed", S.AWAITING_TIME, "date_question"),
    S.AWAITING_TIME: BookingStep(S.AWAITING_TIME, "booking_summary", S.AWAITING_PAYMENT, "time_question"),
    S.AWAITING_PAYMENT: BookingStep(S.AWAITING_PAYMENT, "payment_confirmed", S.COMPLETED, "payment_question"),
    S.COMPLETED: BookingStep(S.COMPLETED, "payment_confirmed", S.COMPLETED),
}

_missing_steps = set(ConversationState) - set(BOOKING_STEPS)
if _missing_steps:
    raise RuntimeError(f"No booking step for states: {sorted(s.value for s in _missing_steps)}")

NODE_SUCCESSORS: dict[str, ConversationState] = {
    step.reply_node: step.next_state for step in BOOKING_STEPS.values()
}

AVAILABLE_TRANSITIONS: dict[ConversationState, list[ConversationState]] = {
    S.GREETING: [S.AWAITING_SERVICE],
    S.AWAITING_SERVICE: [S.AWAITING_DATE, S.COMPLETED],
    S.AWAITING_DATE: [S.AWAITING_TIME, S.AWAITING_SERVICE],
    S.AWAITING_TIME: [S.AWAITING_PAYMENT, S.AWAITING_DATE],
    S.AWAITING_PAYMENT: [S.COMPLETED, S.AWAITING_TIME],
    S.COMPLETED: [S.AWAITING_SERVICE],
}


def available_transitions(state: str) -> list[str]:
    try:
        return [s.value for s in AVAILABLE_TRANSITIONS[ConversationState(state)]]
    except ValueError:
        return []


def find_booking_node(flow: Flow, key: str) -> Optional[FlowNode]:
    node = flow.get_node(key)
    if node is not None:
        return node
    for candidate in flow.nodes:
        if candidate.metadata.get("booking_step") == key:
            return candidate
    return None


def uses_booking_nodes(flow: Flow) -> bool:
    return find_booking_node(flow, BOOKING_STEPS[S.GREETING].reply_node) is not None


def _node_copy(node: FlowNode) -> str:
    config = node.configuration
    if node.type == NodeType.MESSAGE:
        return config.message_text
    if node.type == NodeType.QUESTION:
        return config.validation.error_message or config.question_text
    if node.type == NodeType.END:
        return config.end_message
    return ""


# ──────────────────────────────────────────────────────────────
#  Step outcome
# ──────────────────────────────────────────────────────────────

class StepOutcome:
    """Result of feeding one input to the booking state machine."""

    def __init__(
        self,
        reply: str,
        from_state: str,
        to_state: str,
        node_id: str = None,
        updates: dict[str, Any] = None,
        advanced: bool = False,
    ):
        self.reply = reply
        self.from_state = from_state
        self.to_state = to_state
        self.node_id = node_id
        self.updates = updates or {}
        self.advanced = advanced

    def __bool__(self):
        return self.advanced

    def __repr__(self):
        if self.advanced:
            return f"<Step {self.from_state} → {self.to_state} via {self.node_id}>"
        return f"<Stay {self.from_state}>"


# ──────────────────────────────────────────────────────────────
#  State machine
# ──────────────────────────────────────────────────────────────

class BookingStateMachine:

    def __init__(
        self,
        renderer: BookingRenderer,
        fallback_flow: Flow,
        restart_keywords: list[str] = None,
    ):
        self.renderer = renderer
        self.catalog: ServiceCatalog = renderer.catalog
        self.fallback_flow = fallback_flow
        self.restart_keywords = [k.lower() for k in (restart_keywords or ["hi", "hello"])]

    def step(self, conversation: Conversation, text: str, flow: Optional[Flow], today: date) -> StepOutcome:
        flow = flow or self.fallback_flow
        state = conversation.current_state
        answer = (text or "").strip()

        if answer.lower() in self.restart_keywords:
            return self._greet(conversation, flow, today)

        try:
            current = ConversationState(state)
        except ValueError:
            logger.warning("unknown_conversation_state", conversation_id=conversation.id, state=state)
            return self._greet(conversation, flow, today)

        if current == S.GREETING:
            return self._greet(conversation, flow, today)

        if current == S.COMPLETED:
            step = BOOKING_STEPS[S.COMPLETED]
            reply = self._render(flow, step.reply_node, conversation, today)
            return StepOutcome(reply, state, state, node_id=step.reply_node)

        updates = self._accept(current, answer, conversation, today)
        step = BOOKING_STEPS[current]
        if updates is None:
            reply = self._render(flow, step.question_node, conversation, today)
            return StepOutcome(reply, state, state, node_id=step.question_node)

        captured = conversation.model_copy(update=updates)
        reply = self._render(flow, step.reply_node, captured, today)
        return StepOutcome(
            reply, state, NODE_SUCCESSORS[step.reply_node].value,
            node_id=step.reply_node, updates=updates, advanced=True,
        )

    # ── Input grammars ────────────────────────────────

    def _accept(
        self, state: ConversationState, answer: str, conversation: Conversation, today: date,
    ) -> Optional[dict[str, Any]]:
        """Parse answer for state. Returns the fields to persist, or None if rejected."""
        if state == S.AWAITING_SERVICE:
            service = self.catalog.match(answer)
            return {"selected_service": service.id} if service else None

        if state == S.AWAITING_DATE:
            picked = self.renderer.pick_date(answer, today)
            return {"selected_date": picked.isoformat()} if picked else None

        if state == S.AWAITING_TIME:
            slot = self.renderer.pick_slot(answer)
            return {"selected_time": slot} if slot else None

        if state == S.AWAITING_PAYMENT:
            if not self.renderer.is_payment_confirmation(answer):
                return None
            return {"context_data": {
                **conversation.context_data,
                "payment_status": "paid",
                "paid_at": datetime.now(timezone.utc).isoformat(),
            }}

        return None

    # ── Rendering ─────────────────────────────────────

    def _greet(self, conversation: Conversation, flow: Flow, today: date) -> StepOutcome:
        step = BOOKING_STEPS[S.GREETING]
        updates = {"selected_service": None, "selected_date": None, "selected_time": None}
        reply = self._render(flow, step.reply_node, conversation.model_copy(update=updates), today)
        return StepOutcome(
            reply, conversation.current_state, NODE_SUCCESSORS[step.reply_node].value,
            node_id=step.reply_node, updates=updates, advanced=True,
        )

    def _render(self, flow: Flow, key: str, conversation: Conversation, today: date) -> str:
        for source in (flow, self.fallback_flow):
            node = find_booking_node(source, key)
            if node is None:
                continue
            text = _node_copy(node)
            if not text:
                continue
            variables = {v.name: v.default_value for v in source.variables if v.default_value is not None}
            variables.update(conversation.context_data)
            return self.renderer.render(text, self.renderer.values(conversation, today), variables)
        logger.error("booking_node_missing", node=key, flow_id=flow.id)
        return GENERIC_ERROR_REPLY
