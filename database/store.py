"""
SqlStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Flow activation runs its deactivate-all and activate statements inside a
single session so the tenant never observes two active flows.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, update, delete, func, and_
from sqlalchemy.exc import IntegrityError

from database.models import FlowRow, FlowNodeRow, ConversationRow, MessageRow
from database.session import get_session
from database.store_base import BaseStore
from models.schemas import Conversation, Flow, FlowNode, MessageLog, Variable

logger = structlog.get_logger()

_FLOW_FILTERS = ("is_active", "is_template", "business_type", "flow_type")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SqlStore(BaseStore):
    """
    Persistent store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    backend_name = "sql"

    # ── Flow operations ────────────────────────────────────

    async def get_flow(self, flow_id: str) -> Optional[Flow]:
        async with get_session() as db:
            row = await db.get(FlowRow, flow_id)
            return self._row_to_flow(row) if row else None

    async def list_flows(
        self, tenant_id: str, *, filters: dict[str, Any] = None,
        offset: int = 0, limit: int = 50,
    ) -> tuple[list[Flow], int]:
        filters = filters or {}
        clauses = [FlowRow.tenant_id == tenant_id]
        for key in _FLOW_FILTERS:
            if filters.get(key) is not None:
                clauses.append(getattr(FlowRow, key) == filters[key])

        async with get_session() as db:
            total = await db.scalar(select(func.count()).select_from(FlowRow).where(and_(*clauses)))
            stmt = (
                select(FlowRow)
                .where(and_(*clauses))
                .order_by(FlowRow.updated_at.desc())
                .offset(offset)
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_flow(r) for r in result.scalars()], int(total or 0)

    async def save_flow(self, flow: Flow) -> Flow:
        async with get_session() as db:
            row = await db.get(FlowRow, flow.id)
            if row is None:
                row = FlowRow(id=flow.id, tenant_id=flow.tenant_id, created_at=flow.created_at,
                              is_active=flow.is_active)
                db.add(row)
            row.name = flow.name
            row.description = flow.description
            row.flow_type = flow.flow_type
            row.business_type = flow.business_type
            row.start_node_id = flow.start_node_id
            row.is_default = flow.is_default
            row.is_template = flow.is_template
            row.version = flow.version
            row.variables = [v.model_dump(mode="json") for v in flow.variables]
            row.metadata_ = flow.metadata
            row.updated_at = flow.updated_at
        return flow

    async def delete_flow(self, flow_id: str) -> bool:
        async with get_session() as db:
            await db.execute(delete(FlowNodeRow).where(FlowNodeRow.flow_id == flow_id))
            result = await db.execute(delete(FlowRow).where(FlowRow.id == flow_id))
            return result.rowcount > 0

    async def activate_flow(self, tenant_id: str, flow_id: str) -> bool:
        now = _utcnow()
        async with get_session() as db:
            target = await db.get(FlowRow, flow_id)
            if target is None or target.tenant_id != tenant_id:
                return False
            await db.execute(
                update(FlowRow)
                .where(and_(FlowRow.tenant_id == tenant_id,
                            FlowRow.is_active.is_(True),
                            FlowRow.id != flow_id))
                .values(is_active=False, updated_at=now)
            )
            target.is_active = True
            target.updated_at = now
            return True

    async def deactivate_flow(self, flow_id: str) -> bool:
        async with get_session() as db:
            result = await db.execute(
                update(FlowRow)
                .where(FlowRow.id == flow_id)
                .values(is_active=False, updated_at=_utcnow())
            )
            return result.rowcount > 0

    async def get_active_flow(self, tenant_id: str) -> Optional[Flow]:
        async with get_session() as db:
            stmt = (
                select(FlowRow)
                .where(and_(FlowRow.tenant_id == tenant_id, FlowRow.is_active.is_(True)))
                .order_by(FlowRow.updated_at.desc())
                .limit(1)
            )
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_flow(row) if row else None

    # ── Node operations ────────────────────────────────────

    async def list_nodes(self, flow_id: str) -> list[FlowNode]:
        async with get_session() as db:
            stmt = (
                select(FlowNodeRow)
                .where(FlowNodeRow.flow_id == flow_id)
                .order_by(FlowNodeRow.created_at.asc())
            )
            result = await db.execute(stmt)
            return [self._row_to_node(r) for r in result.scalars()]

    async def get_node(self, node_id: str) -> Optional[FlowNode]:
        async with get_session() as db:
            row = await db.get(FlowNodeRow, node_id)
            return self._row_to_node(row) if row else None

    async def save_nodes(self, nodes: list[FlowNode]) -> list[FlowNode]:
        async with get_session() as db:
            for node in nodes:
                row = await db.get(FlowNodeRow, node.id)
                if row is None:
                    row = FlowNodeRow(id=node.id, flow_id=node.flow_id, created_at=node.created_at)
                    db.add(row)
                row.type = node.type.value
                row.name = node.name
                row.description = node.description
                row.position = node.position.model_dump()
                row.configuration = node.configuration.model_dump(mode="json")
                row.connections = [c.model_dump() for c in node.connections]
                row.metadata_ = node.metadata
                row.updated_at = node.updated_at
        return nodes

    async def delete_node(self, node_id: str) -> bool:
        async with get_session() as db:
            result = await db.execute(delete(FlowNodeRow).where(FlowNodeRow.id == node_id))
            return result.rowcount > 0

    # ── Conversation operations ────────────────────────────

    async def get_conversation(self, tenant_id: str, phone_number: str) -> Optional[Conversation]:
        async with get_session() as db:
            stmt = select(ConversationRow).where(and_(
                ConversationRow.tenant_id == tenant_id,
                ConversationRow.phone_number == phone_number,
            ))
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_conversation(row) if row else None

    async def create_conversation(
        self, tenant_id: str, phone_number: str, customer_name: str = None,
    ) -> Conversation:
        try:
            async with get_session() as db:
                row = ConversationRow(
                    tenant_id=tenant_id,
                    phone_number=phone_number,
                    customer_name=customer_name,
                    current_state="greeting",
                    context_data={},
                )
                db.add(row)
                await db.flush()
                return self._row_to_conversation(row)
        except IntegrityError:
            # Lost a race on (tenant_id, phone_number): return the winner.
            existing = await self.get_conversation(tenant_id, phone_number)
            if existing is None:
                raise
            return existing

    async def update_conversation(self, conversation_id: str, **fields) -> Optional[Conversation]:
        async with get_session() as db:
            row = await db.get(ConversationRow, conversation_id)
            if row is None:
                return None
            for key, value in fields.items():
                setattr(row, key, value)
            row.updated_at = _utcnow()
            return self._row_to_conversation(row)

    # ── Message operations ─────────────────────────────────

    async def add_message(
        self, conversation_id: str, content: str, is_from_bot: bool,
        message_type: str = "text",
    ) -> MessageLog:
        async with get_session() as db:
            row = MessageRow(
                conversation_id=conversation_id,
                content=content,
                message_type=message_type,
                is_from_bot=is_from_bot,
                timestamp=_utcnow(),
            )
            db.add(row)
            await db.flush()
            return self._row_to_message(row)

    async def get_messages(self, conversation_id: str, limit: int = 50) -> list[MessageLog]:
        async with get_session() as db:
            stmt = (
                select(MessageRow)
                .where(MessageRow.conversation_id == conversation_id)
                .order_by(MessageRow.timestamp.desc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            rows = result.scalars().all()
            return [self._row_to_message(r) for r in reversed(rows)]

    # ── Helpers ────────────────────────────────────────────

    @staticmethod
    def _row_to_flow(row: FlowRow) -> Flow:
        return Flow(
            id=row.id, tenant_id=row.tenant_id, name=row.name,
            description=row.description or "",
            flow_type=row.flow_type or "custom",
            business_type=row.business_type or "",
            start_node_id=row.start_node_id,
            is_active=bool(row.is_active),
            is_default=bool(row.is_default),
            is_template=bool(row.is_template),
            version=row.version or 1,
            variables=[Variable(**v) for v in (row.variables or [])],
            metadata=row.metadata_ or {},
            created_at=row.created_at, updated_at=row.updated_at,
        )

    @staticmethod
    def _row_to_node(row: FlowNodeRow) -> FlowNode:
        return FlowNode(
            id=row.id, flow_id=row.flow_id, type=row.type, name=row.name,
            description=row.description or "",
            position=row.position or {},
            configuration=row.configuration or {},
            connections=row.connections or [],
            metadata=row.metadata_ or {},
            created_at=row.created_at, updated_at=row.updated_at,
        )

    @staticmethod
    def _row_to_conversation(row: ConversationRow) -> Conversation:
        return Conversation(
            id=row.id, tenant_id=row.tenant_id, phone_number=row.phone_number,
            customer_name=row.customer_name,
            current_state=row.current_state or "greeting",
            selected_service=row.selected_service,
            selected_date=row.selected_date,
            selected_time=row.selected_time,
            context_data=row.context_data or {},
            created_at=row.created_at, updated_at=row.updated_at,
        )

    @staticmethod
    def _row_to_message(row: MessageRow) -> MessageLog:
        return MessageLog(
            id=row.id, conversation_id=row.conversation_id, content=row.content,
            message_type=row.message_type or "text",
            is_from_bot=bool(row.is_from_bot), timestamp=row.timestamp,
        )
