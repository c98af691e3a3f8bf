"""
Abstract Store — Interface for all storage backends.

Implementations:
  - SqlStore        (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryStore   (dict-based, single-process, no persistence)
  - ResilientStore  (SqlStore first, InMemoryStore after the first failure)

Every backend returns pydantic models (Flow, FlowNode, Conversation,
MessageLog), never ORM rows, so callers are backend-agnostic. Flows are
returned without nodes; the repository attaches them.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from models.schemas import Conversation, Flow, FlowNode, MessageLog


class BaseStore(ABC):
    """Interface that all store backends must implement."""

    backend_name: str = "base"

    # ── Flows ─────────────────────────────────────────────────

    @abstractmethod
    async def get_flow(self, flow_id: str) -> Optional[Flow]:
        ...

    @abstractmethod
    async def list_flows(
        self, tenant_id: str, *, filters: dict[str, Any] = None,
        offset: int = 0, limit: int = 50,
    ) -> tuple[list[Flow], int]:
        """Return (page, total) ordered by updated_at descending."""
        ...

    @abstractmethod
    async def save_flow(self, flow: Flow) -> Flow:
        """
        Insert or replace the flow record (nodes are ignored). On an existing
        flow is_active is left alone: only activate_flow / deactivate_flow change it.
        """
        ...

    @abstractmethod
    async def delete_flow(self, flow_id: str) -> bool:
        """Delete the flow and all of its nodes."""
        ...

    @abstractmethod
    async def activate_flow(self, tenant_id: str, flow_id: str) -> bool:
        """Deactivate every flow of the tenant and activate flow_id in one step."""
        ...

    @abstractmethod
    async def deactivate_flow(self, flow_id: str) -> bool:
        ...

    @abstractmethod
    async def get_active_flow(self, tenant_id: str) -> Optional[Flow]:
        ...

    # ── Nodes ─────────────────────────────────────────────────

    @abstractmethod
    async def list_nodes(self, flow_id: str) -> list[FlowNode]:
        """Nodes of a flow ordered by creation time."""
        ...

    @abstractmethod
    async def get_node(self, node_id: str) -> Optional[FlowNode]:
        ...

    @abstractmethod
    async def save_nodes(self, nodes: list[FlowNode]) -> list[FlowNode]:
        """Insert or replace each node."""
        ...

    @abstractmethod
    async def delete_node(self, node_id: str) -> bool:
        ...

    # ── Conversations ─────────────────────────────────────────

    @abstractmethod
    async def get_conversation(self, tenant_id: str, phone_number: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def create_conversation(
        self, tenant_id: str, phone_number: str, customer_name: str = None,
    ) -> Conversation:
        ...

    @abstractmethod
    async def update_conversation(self, conversation_id: str, **fields) -> Optional[Conversation]:
        ...

    # ── Messages ──────────────────────────────────────────────

    @abstractmethod
    async def add_message(
        self, conversation_id: str, content: str, is_from_bot: bool,
        message_type: str = "text",
    ) -> MessageLog:
        ...

    @abstractmethod
    async def get_messages(self, conversation_id: str, limit: int = 50) -> list[MessageLog]:
        """Most recent messages, oldest first."""
        ...
