"""
ORM rows for flows, nodes, conversations and the message log.

Portable across PostgreSQL, MySQL 8+ and SQLite:
  - node configuration, connections and flow variables are plain JSON columns
  - connections live inside their source node's row with no foreign key on
    target ids; dangling references are reported by the validator
  - primary keys are uuid hex strings, so no sequences are needed
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, Boolean, DateTime, Text, ForeignKey,
    Index, JSON, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Flows
# ──────────────────────────────────────────────────────────────

class FlowRow(Base):
    __tablename__ = "bot_flows"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    flow_type: Mapped[str] = mapped_column(String(64), default="custom")
    business_type: Mapped[str] = mapped_column(String(64), default="")
    start_node_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    is_template: Mapped[bool] = mapped_column(Boolean, default=False)
    version: Mapped[int] = mapped_column(Integer, default=1)

    variables: Mapped[Any] = mapped_column(JSON, default=list)
    metadata_: Mapped[Any] = mapped_column("metadata", JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_bot_flows_tenant_active", "tenant_id", "is_active"),
        Index("ix_bot_flows_tenant_updated", "tenant_id", "updated_at"),
    )


class FlowNodeRow(Base):
    __tablename__ = "bot_flow_nodes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    flow_id: Mapped[str] = mapped_column(String(64), ForeignKey("bot_flows.id", ondelete="CASCADE"), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")

    position: Mapped[Any] = mapped_column(JSON, default=dict)
    configuration: Mapped[Any] = mapped_column(JSON, default=dict)
    connections: Mapped[Any] = mapped_column(JSON, default=list)
    metadata_: Mapped[Any] = mapped_column("metadata", JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_bot_flow_nodes_flow_created", "flow_id", "created_at"),
    )


# ──────────────────────────────────────────────────────────────
#  Conversations
# ──────────────────────────────────────────────────────────────

class ConversationRow(Base):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    phone_number: Mapped[str] = mapped_column(String(32), nullable=False)
    customer_name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    current_state: Mapped[str] = mapped_column(String(64), default="greeting")

    selected_service: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    selected_date: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    selected_time: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    context_data: Mapped[Any] = mapped_column(JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "phone_number", name="uq_conversations_tenant_phone"),
    )


# ──────────────────────────────────────────────────────────────
#  Messages (append-only)
# ──────────────────────────────────────────────────────────────

class MessageRow(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    conversation_id: Mapped[str] = mapped_column(String(64), ForeignKey("conversations.id"), nullable=False)
    content: Mapped[str] = mapped_column(Text, default="")
    message_type: Mapped[str] = mapped_column(String(32), default="text")
    is_from_bot: Mapped[bool] = mapped_column(Boolean, default=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_messages_conversation_ts", "conversation_id", "timestamp"),
    )
