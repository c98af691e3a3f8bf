"""
Graph Executor — walks an arbitrary flow graph one inbound message at a time.

Used to test-drive flows that are not bound to the booking state machine
(e.g. the restaurant and clinic templates).

Per call to advance():
  - start / message / condition / action / integration nodes are executed
    and followed immediately
  - a question node asks its question once, then waits; the next input is
    validated against the node's input_type and validation rules and, if
    accepted, bound to the node's variable_name
  - an end node emits its end message and finishes the session

The executor is stateless: all progress lives on the ExecutionSession that
is passed in and returned.
"""
from __future__ import annotations

import re
import structlog
from datetime import date
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel

from models.schemas import Flow, FlowNode, InputType, NodeType, QuestionConfig
from utils.conditions import evaluate_conditions
from utils.interpolation import substitute_tokens

logger = structlog.get_logger()

MAX_STEPS = 50  # prevent infinite loops in branching

DEFAULT_END_MESSAGE = "Thank you! This conversation has ended."

_EMAIL = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE = re.compile(r"^\+?[\d\s\-\(\)]+$")

INPUT_ERRORS = {
    "required": "This field is required.",
    InputType.EMAIL: "Please enter a valid email address.",
    InputType.PHONE: "Please enter a valid phone number.",
    InputType.NUMBER: "Please enter a valid number.",
    InputType.DATE: "Please enter a valid date (YYYY-MM-DD).",
    InputType.CHOICE: "Please select a valid option.",
    InputType.TEXT: "Please enter a valid answer.",
}

ActionHandler = Callable[[dict[str, Any], dict[str, Any]], Awaitable[Optional[dict[str, Any]]]]


class ExecutionSession(BaseModel):
    flow_id: str
    current_node_id: Optional[str] = None
    variables: dict[str, Any] = {}
    awaiting_input: bool = False
    finished: bool = False
    visited: list[str] = []


class ExecutionStep(BaseModel):
    replies: list[str] = []
    session: ExecutionSession
    error: str = ""


# ──────────────────────────────────────────────────────────────
#  Input checks
# ──────────────────────────────────────────────────────────────

def check_input(text: str, config: QuestionConfig) -> tuple[bool, Any, str]:
    """Validate an answer. Returns (ok, parsed value, error message)."""
    rules = config.validation
    value = (text or "").strip()
    custom = rules.error_message

    if not value:
        if rules.required:
            return False, None, custom or INPUT_ERRORS["required"]
        return True, "", ""

    kind = config.input_type
    if kind == InputType.EMAIL and not _EMAIL.match(value):
        return False, None, custom or INPUT_ERRORS[kind]
    if kind == InputType.PHONE and not _PHONE.match(value):
        return False, None, custom or INPUT_ERRORS[kind]
    if kind == InputType.NUMBER:
        try:
            parsed = float(value)
        except ValueError:
            return False, None, custom or INPUT_ERRORS[kind]
        return True, int(parsed) if parsed.is_integer() else parsed, ""
    if kind == InputType.DATE:
        try:
            return True, date.fromisoformat(value).isoformat(), ""
        except ValueError:
            return False, None, custom or INPUT_ERRORS[kind]
    if kind == InputType.CHOICE:
        lowered = value.lower()
        for index, choice in enumerate(config.choices, start=1):
            if lowered in (choice.value.lower(), (choice.label or "").lower(), str(index)):
                return True, choice.value, ""
        return False, None, custom or INPUT_ERRORS[kind]

    if rules.min_length is not None and len(value) < rules.min_length:
        return False, None, custom or INPUT_ERRORS[InputType.TEXT]
    if rules.max_length is not None and len(value) > rules.max_length:
        return False, None, custom or INPUT_ERRORS[InputType.TEXT]
    if rules.pattern and not re.search(rules.pattern, value):
        return False, None, custom or INPUT_ERRORS[InputType.TEXT]
    return True, value, ""


def render_question(config: QuestionConfig, variables: dict[str, Any]) -> str:
    text = substitute_tokens(config.question_text, variables)
    if config.input_type == InputType.CHOICE and config.choices:
        options = "\n".join(
            f"{i}. {c.label or c.value}" for i, c in enumerate(config.choices, start=1)
        )
        text = f"{text}\n\n{options}"
    return text


# ──────────────────────────────────────────────────────────────
#  Executor
# ──────────────────────────────────────────────────────────────

class GraphExecutor:
    """
    Executes flows node by node.

    Action and integration side effects are delegated to injected handlers
    keyed by action_type / integration_type; unknown types are logged and
    skipped so a draft flow can still be walked end to end.
    """

    def __init__(
        self,
        action_handlers: dict[str, ActionHandler] = None,
        integration_handlers: dict[str, ActionHandler] = None,
    ):
        self._actions = dict(action_handlers or {})
        self._integrations = dict(integration_handlers or {})
        self._actions.setdefault("set_variable", self._set_variable)

    def start(self, flow: Flow, variables: dict[str, Any] = None) -> ExecutionSession:
        start = flow.start_node()
        values = {v.name: v.default_value for v in flow.variables if v.default_value is not None}
        values.update(variables or {})
        return ExecutionSession(
            flow_id=flow.id,
            current_node_id=start.id if start else None,
            variables=values,
            finished=start is None,
        )

    async def advance(self, flow: Flow, session: ExecutionSession, text: Optional[str] = None) -> ExecutionStep:
        session = session.model_copy(deep=True)
        replies: list[str] = []
        pending = text

        for _ in range(MAX_STEPS):
            if session.finished or session.current_node_id is None:
                session.finished = True
                return ExecutionStep(replies=replies, session=session)

            node = flow.get_node(session.current_node_id)
            if node is None:
                session.finished = True
                logger.warning("graph_executor_missing_node",
                               flow_id=flow.id, node_id=session.current_node_id)
                return ExecutionStep(replies=replies, session=session,
                                     error=f"Node '{session.current_node_id}' not found")

            if node.type == NodeType.QUESTION:
                config: QuestionConfig = node.configuration
                if not session.awaiting_input:
                    replies.append(render_question(config, session.variables))
                    session.awaiting_input = True
                    session.visited.append(node.id)
                    return ExecutionStep(replies=replies, session=session)
                if pending is None:
                    return ExecutionStep(replies=replies, session=session)
                ok, value, error = check_input(pending, config)
                pending = None
                if not ok:
                    replies.append(error)
                    return ExecutionStep(replies=replies, session=session)
                session.variables[config.variable_name] = value
                session.awaiting_input = False
                session.current_node_id = self._next(node)
                continue

            session.visited.append(node.id)
            reply, next_id = await self._execute(node, session)
            if reply:
                replies.append(reply)
            if node.type == NodeType.END:
                session.finished = True
                session.current_node_id = None
                return ExecutionStep(replies=replies, session=session)
            session.current_node_id = next_id

        session.finished = True
        logger.error("graph_executor_step_limit", flow_id=flow.id, max_steps=MAX_STEPS)
        return ExecutionStep(replies=replies, session=session,
                             error=f"Exceeded {MAX_STEPS} steps without waiting for input")

    # ── Node handlers ─────────────────────────────────

    async def _execute(self, node: FlowNode, session: ExecutionSession) -> tuple[Optional[str], Optional[str]]:
        config = node.configuration
        variables = session.variables

        if node.type == NodeType.START:
            return None, self._next(node)

        if node.type == NodeType.MESSAGE:
            return substitute_tokens(config.message_text, variables), self._next(node)

        if node.type == NodeType.CONDITION:
            outcome = evaluate_conditions(config.conditions, variables)
            return None, self._branch(node, outcome)

        if node.type == NodeType.ACTION:
            await self._run_handler(self._actions, config.action_type,
                                    config.action_parameters, variables, node)
            return None, self._next(node)

        if node.type == NodeType.INTEGRATION:
            await self._run_handler(self._integrations, config.integration_type,
                                    config.integration_config, variables, node)
            return None, self._next(node)

        if node.type == NodeType.END:
            message = config.end_message or DEFAULT_END_MESSAGE
            return substitute_tokens(message, variables), None

        raise ValueError(f"Unsupported node type: {node.type}")

    async def _run_handler(
        self, handlers: dict[str, ActionHandler], kind: str,
        params: dict[str, Any], variables: dict[str, Any], node: FlowNode,
    ):
        handler = handlers.get(kind)
        if handler is None:
            logger.info("graph_executor_unhandled_step", node_id=node.id,
                        node_type=node.type.value, kind=kind)
            return
        result = await handler(params, variables)
        if result:
            variables.update(result)

    @staticmethod
    async def _set_variable(params: dict[str, Any], variables: dict[str, Any]) -> dict[str, Any]:
        name = params.get("name") or params.get("variable")
        if not name:
            return {}
        value = params.get("value")
        if isinstance(value, str):
            value = substitute_tokens(value, variables)
        return {name: value}

    # ── Edge selection ────────────────────────────────

    @staticmethod
    def _next(node: FlowNode) -> Optional[str]:
        return node.connections[0].target_node_id if node.connections else None

    @staticmethod
    def _branch(node: FlowNode, outcome: bool) -> Optional[str]:
        wanted = ("true",) if outcome else ("false", "default")
        for conn in node.connections:
            if conn.label.lower() in wanted:
                return conn.target_node_id
        return node.connections[0].target_node_id if node.connections else None
