"""
Core data models for the booking assistant.
These are the universal types shared across all modules: the flow graph,
its per-node-type configuration payloads, conversations, the message log,
and the response envelope returned by every flow-management operation.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class NodeType(str, Enum):
    START = "start"
    MESSAGE = "message"
    QUESTION = "question"
    CONDITION = "condition"
    ACTION = "action"
    INTEGRATION = "integration"
    END = "end"


class InputType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    CHOICE = "choice"
    DATE = "date"
    PHONE = "phone"
    EMAIL = "email"


class ConversationState(str, Enum):
    GREETING = "greeting"
    AWAITING_SERVICE = "awaiting_service"
    AWAITING_DATE = "awaiting_date"
    AWAITING_TIME = "awaiting_time"
    AWAITING_PAYMENT = "awaiting_payment"
    COMPLETED = "completed"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


# ──────────────────────────────────────────────────────────────
#  Node configuration: one payload type per NodeType
# ──────────────────────────────────────────────────────────────

class _Configuration(BaseModel):
    # Unknown keys survive a round trip through the editor.
    model_config = ConfigDict(extra="allow")


class StartConfig(_Configuration):
    pass


class MessageConfig(_Configuration):
    message_text: str = ""
    message_type: str = "text"                # text | image | interactive


class Choice(BaseModel):
    value: str
    label: str = ""


class InputValidation(BaseModel):
    required: bool = False
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    pattern: str = ""
    error_message: str = ""


class QuestionConfig(_Configuration):
    question_text: str = ""
    input_type: InputType = InputType.TEXT
    choices: list[Choice] = []
    validation: InputValidation = Field(default_factory=InputValidation)
    variable_name: str = ""


class ConditionClause(BaseModel):
    variable: str
    operator: str = "equals"                  # equals | not_equals | contains | greater_than | less_than | exists
    value: Any = None
    logical_operator: str = "and"             # and | or: how this clause joins the previous one


class ConditionConfig(_Configuration):
    conditions: list[ConditionClause] = []


class ActionConfig(_Configuration):
    action_type: str = ""                     # create_transaction | update_transaction | send_notification | call_webhook | set_variable
    action_parameters: dict[str, Any] = {}


class IntegrationConfig(_Configuration):
    integration_type: str = ""                # webhook | api_call | database_query | external_service
    integration_config: dict[str, Any] = {}


class EndConfig(_Configuration):
    end_message: str = ""


NodeConfiguration = Union[
    StartConfig, MessageConfig, QuestionConfig, ConditionConfig,
    ActionConfig, IntegrationConfig, EndConfig,
]

CONFIGURATION_TYPES: dict[NodeType, type[_Configuration]] = {
    NodeType.START: StartConfig,
    NodeType.MESSAGE: MessageConfig,
    NodeType.QUESTION: QuestionConfig,
    NodeType.CONDITION: ConditionConfig,
    NodeType.ACTION: ActionConfig,
    NodeType.INTEGRATION: IntegrationConfig,
    NodeType.END: EndConfig,
}


def build_configuration(node_type: NodeType, raw: Any) -> _Configuration:
    """Coerce a raw dict (or a payload of another type) into the payload for node_type."""
    config_cls = CONFIGURATION_TYPES[NodeType(node_type)]
    if isinstance(raw, config_cls):
        return raw
    if isinstance(raw, BaseModel):
        raw = raw.model_dump()
    return config_cls(**(raw or {}))


# ──────────────────────────────────────────────────────────────
#  Graph
# ──────────────────────────────────────────────────────────────

class Position(BaseModel):
    x: float = 0
    y: float = 0


class Connection(BaseModel):
    """A directed, labelled edge between two nodes of the same flow."""
    id: str = Field(default_factory=new_id)
    source_node_id: str
    target_node_id: str
    label: str = ""


class FlowNode(BaseModel):
    id: str = Field(default_factory=new_id)
    flow_id: str = ""
    type: NodeType
    name: str
    description: str = ""
    position: Position = Field(default_factory=Position)
    configuration: NodeConfiguration = Field(default_factory=StartConfig)
    connections: list[Connection] = []
    metadata: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="before")
    @classmethod
    def _coerce_configuration(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("type"):
            data = dict(data)
            data["configuration"] = build_configuration(data["type"], data.get("configuration"))
        return data

    def export(self) -> dict[str, Any]:
        """The persisted / template / sync shape of a node."""
        return {
            "id": self.id,
            "type": self.type.value,
            "name": self.name,
            "position": self.position.model_dump(),
            "configuration": self.configuration.model_dump(mode="json"),
            "connections": [c.model_dump() for c in self.connections],
            "metadata": self.metadata,
        }


class Variable(BaseModel):
    name: str
    type: str = "string"
    default_value: Any = None
    description: str = ""
    is_required: bool = False


class Flow(BaseModel):
    """A tenant-owned, versioned conversation graph."""
    id: str = Field(default_factory=new_id)
    tenant_id: str
    name: str
    description: str = ""
    flow_type: str = "custom"
    business_type: str = ""
    start_node_id: Optional[str] = None
    is_active: bool = False
    is_default: bool = False
    is_template: bool = False
    version: int = 1
    variables: list[Variable] = []
    metadata: dict[str, Any] = {}
    nodes: list[FlowNode] = []                # attached on read, persisted separately
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def get_node(self, node_id: str) -> Optional[FlowNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def start_node(self) -> Optional[FlowNode]:
        if self.start_node_id:
            node = self.get_node(self.start_node_id)
            if node:
                return node
        return next((n for n in self.nodes if n.type == NodeType.START), None)

    def export(self) -> dict[str, Any]:
        """Flow JSON shape shared by persistence, templates and sync payloads."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "flow_type": self.flow_type,
            "business_type": self.business_type,
            "is_active": self.is_active,
            "nodes": [n.export() for n in self.nodes],
            "variables": [v.model_dump(mode="json") for v in self.variables],
            "metadata": self.metadata,
        }


class FlowTemplate(BaseModel):
    """A tenant-agnostic flow skeleton. Same shape as an exported flow."""
    id: str
    name: str
    description: str = ""
    flow_type: str = "template"
    business_type: str = ""
    nodes: list[FlowNode] = []
    variables: list[Variable] = []
    metadata: dict[str, Any] = {}


class TemplateCustomization(BaseModel):
    name: str
    description: Optional[str] = None
    variables: dict[str, Any] = {}


# ──────────────────────────────────────────────────────────────
#  Validation
# ──────────────────────────────────────────────────────────────

class ValidationIssue(BaseModel):
    code: str
    message: str
    severity: Severity = Severity.ERROR
    node_id: Optional[str] = None
    connection_id: Optional[str] = None


class ValidationResult(BaseModel):
    is_valid: bool = True
    errors: list[ValidationIssue] = []
    warnings: list[ValidationIssue] = []

    @property
    def error_codes(self) -> list[str]:
        return [e.code for e in self.errors]

    @property
    def warning_codes(self) -> list[str]:
        return [w.code for w in self.warnings]


# ──────────────────────────────────────────────────────────────
#  Response envelope
# ──────────────────────────────────────────────────────────────

class ServiceError(BaseModel):
    code: str
    message: str
    tenant_id: Optional[str] = None
    resource_id: Optional[str] = None
    details: Any = None


class ServiceResponse(BaseModel):
    success: bool
    data: Any = None
    error: Optional[ServiceError] = None

    @classmethod
    def ok(cls, data: Any = None) -> ServiceResponse:
        return cls(success=True, data=data)

    @classmethod
    def fail(
        cls, code: str, message: str, tenant_id: str = None,
        resource_id: str = None, details: Any = None,
    ) -> ServiceResponse:
        return cls(success=False, error=ServiceError(
            code=code, message=message, tenant_id=tenant_id,
            resource_id=resource_id, details=details,
        ))


# ──────────────────────────────────────────────────────────────
#  Conversations
# ──────────────────────────────────────────────────────────────

class Conversation(BaseModel):
    """Live execution context for one sender of one tenant."""
    id: str = Field(default_factory=new_id)
    tenant_id: str
    phone_number: str
    customer_name: Optional[str] = None
    # Kept as a plain string so an unrecognised persisted value can be read and reset.
    current_state: str = ConversationState.GREETING.value
    selected_service: Optional[str] = None
    selected_date: Optional[str] = None       # ISO date, YYYY-MM-DD
    selected_time: Optional[str] = None
    context_data: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class MessageLog(BaseModel):
    """Append-only audit entry."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    conversation_id: str
    content: str
    message_type: str = "text"
    is_from_bot: bool = False
    timestamp: datetime = Field(default_factory=_utcnow)


class InboundMessage(BaseModel):
    """A message delivered by the messaging gateway."""
    sender: str
    text: str
    timestamp: datetime = Field(default_factory=_utcnow)
    customer_name: Optional[str] = None
    message_id: str = ""


class Service(BaseModel):
    """A bookable service offered by the tenant."""
    id: str = Field(default_factory=new_id)
    name: str
    price: float
    description: str = ""
    is_active: bool = True


class EngineReply(BaseModel):
    """Outcome of processing one inbound message."""
    text: str
    state: str
    previous_state: str
    advanced: bool = False
    node_id: Optional[str] = None
    conversation_id: Optional[str] = None
    delivered: bool = False
