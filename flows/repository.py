"""
Flow Repository — CRUD over flows and their nodes.

Every public method returns a ServiceResponse envelope:
    {success: True,  data: ...}
    {success: False, error: {code, message, tenant_id, resource_id, details}}

Validation and not-found problems are reported with stable codes and never
raised. Unexpected failures are logged and reported with the operation's
*_FAILED code.

Rules enforced here:
  - a tenant has at most one active flow; activation is serialised per
    tenant and the store swaps the active flag in one step
  - node create/update re-validates the node's configuration against its
    own type before persisting (validate_only=True reports without saving)
  - deleting a node strips every connection in the flow that names it
  - structural edits (nodes, connections, start node, variables) bump version
"""
from __future__ import annotations

import functools
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import ValidationError

from database.store_base import BaseStore
from flows.cache import FlowCache
from flows.errors import ErrorCode, FlowServiceError
from flows.validator import validate_flow, validate_node
from models.schemas import (
    Connection, Flow, FlowNode, NodeType, ServiceResponse, ValidationResult,
    Variable, new_id,
)
from utils.locks import KeyedLock

logger = structlog.get_logger()

_UPDATABLE_FLOW_FIELDS = (
    "name", "description", "flow_type", "business_type", "start_node_id",
    "is_default", "is_template", "variables", "metadata",
)
_STRUCTURAL_FLOW_FIELDS = ("start_node_id", "variables")
_UPDATABLE_NODE_FIELDS = (
    "type", "name", "description", "position", "configuration", "connections", "metadata",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _envelope(failure_code: str):
    """Convert a method's return value / exceptions into a ServiceResponse."""
    def decorator(fn):
        @functools.wraps(fn)
        async def wrapper(self, tenant_id: str, *args, **kwargs) -> ServiceResponse:
            try:
                return ServiceResponse.ok(await fn(self, tenant_id, *args, **kwargs))
            except FlowServiceError as e:
                return ServiceResponse.fail(
                    e.code, e.message, tenant_id=tenant_id,
                    resource_id=e.resource_id, details=e.details,
                )
            except Exception as e:
                logger.error("flow_operation_failed",
                             operation=fn.__name__, tenant_id=tenant_id, error=str(e))
                return ServiceResponse.fail(
                    failure_code, f"{fn.__name__} failed: {e}", tenant_id=tenant_id,
                )
        return wrapper
    return decorator


def _parse_variables(raw: list[Any]) -> list[Variable]:
    variables = []
    for item in raw or []:
        if isinstance(item, Variable):
            variables.append(item)
            continue
        if not item.get("name") or not item.get("type"):
            raise FlowServiceError(ErrorCode.VALIDATION_FAILED, "Variable name and type are required",
                                   details={"variable": item})
        variables.append(Variable(**item))
    return variables


def _normalize_connections(node_id: str, raw: list[Any]) -> list[Connection]:
    connections = []
    for item in raw or []:
        if isinstance(item, Connection):
            connections.append(item)
            continue
        item = dict(item)
        item.setdefault("source_node_id", node_id)
        connections.append(Connection(**item))
    return connections


def _issues_payload(issues) -> list[dict[str, Any]]:
    return [i.model_dump(mode="json") for i in issues]


class FlowRepository:
    """Flow and node CRUD on top of a BaseStore, with optional FlowCache invalidation."""

    def __init__(self, store: BaseStore, cache: FlowCache = None):
        self._store = store
        self._cache = cache
        self._tenant_locks = KeyedLock()
        if cache is not None:
            cache.bind_loader(self.active_flow)

    # ── Internal helpers ──────────────────────────────────────

    async def _load_flow(self, tenant_id: str, flow_id: str, with_nodes: bool = False) -> Flow:
        flow = await self._store.get_flow(flow_id)
        if flow is None or flow.tenant_id != tenant_id:
            raise FlowServiceError(ErrorCode.NOT_FOUND, f"Bot flow '{flow_id}' not found", resource_id=flow_id)
        if with_nodes:
            flow.nodes = await self._store.list_nodes(flow.id)
        return flow

    async def _load_node(self, flow: Flow, node_id: str) -> FlowNode:
        node = await self._store.get_node(node_id)
        if node is None or node.flow_id != flow.id:
            raise FlowServiceError(ErrorCode.NODE_NOT_FOUND, f"Node '{node_id}' not found", resource_id=node_id)
        return node

    async def _bump_version(self, flow: Flow) -> Flow:
        flow.version += 1
        flow.updated_at = _utcnow()
        await self._store.save_flow(flow)
        return flow

    def _invalidate(self, tenant_id: str) -> None:
        if self._cache is not None:
            self._cache.invalidate(tenant_id)

    @staticmethod
    def _reject_node(node: FlowNode) -> None:
        errors = validate_node(node)
        if errors:
            raise FlowServiceError(
                ErrorCode.NODE_VALIDATION_FAILED,
                f"Node '{node.name}' failed validation: {', '.join(e.code for e in errors)}",
                resource_id=node.id, details=_issues_payload(errors),
            )

    @staticmethod
    def _build_node(data: dict[str, Any]) -> FlowNode:
        try:
            return FlowNode(**data)
        except (ValidationError, ValueError) as e:
            raise FlowServiceError(ErrorCode.NODE_VALIDATION_FAILED, f"Invalid node: {e}",
                                   resource_id=data.get("id"))

    # ── Active flow (FlowCache loader) ────────────────────────

    async def active_flow(self, tenant_id: str) -> Optional[Flow]:
        flow = await self._store.get_active_flow(tenant_id)
        if flow is None:
            return None
        flow.nodes = await self._store.list_nodes(flow.id)
        return flow

    # ── Flows ─────────────────────────────────────────────────

    @_envelope(ErrorCode.CREATE_FAILED)
    async def create_flow(self, tenant_id: str, data: dict[str, Any]) -> Flow:
        name = (data.get("name") or "").strip()
        if not name:
            raise FlowServiceError(ErrorCode.VALIDATION_FAILED, "Bot flow name is required")

        flow = Flow(
            tenant_id=tenant_id,
            name=name,
            description=data.get("description", ""),
            flow_type=data.get("flow_type", "custom"),
            business_type=data.get("business_type", ""),
            is_default=data.get("is_default", False),
            is_template=data.get("is_template", False),
            variables=_parse_variables(data.get("variables", [])),
            metadata=data.get("metadata", {}),
        )
        await self._store.save_flow(flow)
        logger.info("bot_flow_created", tenant_id=tenant_id, flow_id=flow.id, name=flow.name)
        return flow

    @_envelope(ErrorCode.INTERNAL_ERROR)
    async def get_flow(self, tenant_id: str, flow_id: str) -> Flow:
        return await self._load_flow(tenant_id, flow_id, with_nodes=True)

    @_envelope(ErrorCode.LIST_FAILED)
    async def list_flows(
        self, tenant_id: str, page: int = 1, limit: int = 50,
        is_active: bool = None, is_template: bool = None,
        business_type: str = None, flow_type: str = None,
    ) -> dict[str, Any]:
        if page < 1 or limit < 1:
            raise FlowServiceError(ErrorCode.VALIDATION_FAILED, "page and limit must be positive")
        filters = {
            "is_active": is_active, "is_template": is_template,
            "business_type": business_type, "flow_type": flow_type,
        }
        flows, total = await self._store.list_flows(
            tenant_id, filters=filters, offset=(page - 1) * limit, limit=limit,
        )
        return {"flows": flows, "total": total, "page": page, "limit": limit}

    @_envelope(ErrorCode.UPDATE_FAILED)
    async def update_flow(self, tenant_id: str, flow_id: str, updates: dict[str, Any]) -> Flow:
        flow = await self._load_flow(tenant_id, flow_id, with_nodes=True)

        if "name" in updates and not (updates["name"] or "").strip():
            raise FlowServiceError(ErrorCode.VALIDATION_FAILED, "Bot flow name is required", resource_id=flow_id)
        if updates.get("start_node_id"):
            start = flow.get_node(updates["start_node_id"])
            if start is None or start.type != NodeType.START:
                raise FlowServiceError(ErrorCode.VALIDATION_FAILED,
                                       "start_node_id must reference a start node of this flow",
                                       resource_id=flow_id)

        structural = False
        for key in _UPDATABLE_FLOW_FIELDS:
            if key not in updates:
                continue
            value = updates[key]
            if key == "variables":
                value = _parse_variables(value)
            if key in _STRUCTURAL_FLOW_FIELDS and value != getattr(flow, key):
                structural = True
            setattr(flow, key, value)

        if structural:
            flow.version += 1
        flow.updated_at = _utcnow()
        await self._store.save_flow(flow)

        if "is_active" in updates and updates["is_active"] != flow.is_active:
            async with self._tenant_locks.hold(tenant_id):
                if updates["is_active"]:
                    await self._store.activate_flow(tenant_id, flow_id)
                else:
                    await self._store.deactivate_flow(flow_id)
            flow.is_active = bool(updates["is_active"])

        self._invalidate(tenant_id)
        logger.info("bot_flow_updated", tenant_id=tenant_id, flow_id=flow_id,
                    fields=sorted(updates), version=flow.version)
        return flow

    @_envelope(ErrorCode.DELETE_FAILED)
    async def delete_flow(self, tenant_id: str, flow_id: str) -> dict[str, Any]:
        await self._load_flow(tenant_id, flow_id)
        await self._store.delete_flow(flow_id)
        self._invalidate(tenant_id)
        logger.info("bot_flow_deleted", tenant_id=tenant_id, flow_id=flow_id)
        return {"deleted_flow_id": flow_id}

    @_envelope(ErrorCode.UPDATE_FAILED)
    async def activate_flow(self, tenant_id: str, flow_id: str) -> Flow:
        async with self._tenant_locks.hold(tenant_id):
            return await self._activate(tenant_id, flow_id)

    @_envelope(ErrorCode.UPDATE_FAILED)
    async def deactivate_flow(self, tenant_id: str, flow_id: str) -> Flow:
        async with self._tenant_locks.hold(tenant_id):
            return await self._deactivate(tenant_id, flow_id)

    @_envelope(ErrorCode.UPDATE_FAILED)
    async def toggle_flow(self, tenant_id: str, flow_id: str) -> Flow:
        async with self._tenant_locks.hold(tenant_id):
            flow = await self._load_flow(tenant_id, flow_id)
            if flow.is_active:
                return await self._deactivate(tenant_id, flow_id)
            return await self._activate(tenant_id, flow_id)

    async def _activate(self, tenant_id: str, flow_id: str) -> Flow:
        await self._load_flow(tenant_id, flow_id)
        if not await self._store.activate_flow(tenant_id, flow_id):
            raise FlowServiceError(ErrorCode.NOT_FOUND, f"Bot flow '{flow_id}' not found", resource_id=flow_id)
        self._invalidate(tenant_id)
        logger.info("bot_flow_activated", tenant_id=tenant_id, flow_id=flow_id)
        return await self._load_flow(tenant_id, flow_id)

    async def _deactivate(self, tenant_id: str, flow_id: str) -> Flow:
        await self._load_flow(tenant_id, flow_id)
        await self._store.deactivate_flow(flow_id)
        self._invalidate(tenant_id)
        logger.info("bot_flow_deactivated", tenant_id=tenant_id, flow_id=flow_id)
        return await self._load_flow(tenant_id, flow_id)

    @_envelope(ErrorCode.INTERNAL_ERROR)
    async def validate(self, tenant_id: str, flow_id: str) -> ValidationResult:
        flow = await self._load_flow(tenant_id, flow_id, with_nodes=True)
        return validate_flow(flow)

    @_envelope(ErrorCode.CREATE_FAILED)
    async def import_flow(self, tenant_id: str, flow: Flow, nodes: list[FlowNode]) -> Flow:
        """
        Persist a fully formed flow with its nodes (template instantiation, sync
        import). Node configurations must be complete; graph warnings are
        returned on flow.metadata["validation"].
        """
        if not flow.name.strip():
            raise FlowServiceError(ErrorCode.VALIDATION_FAILED, "Bot flow name is required")
        flow = flow.model_copy(update={"tenant_id": tenant_id, "is_active": False, "nodes": []})
        for node in nodes:
            node.flow_id = flow.id
            self._reject_node(node)

        result = validate_flow(flow, nodes)
        flow.metadata = {**flow.metadata, "validation": {
            "is_valid": result.is_valid,
            "warnings": result.warning_codes,
            "errors": result.error_codes,
        }}
        await self._store.save_flow(flow)
        await self._store.save_nodes(nodes)
        flow.nodes = list(nodes)
        self._invalidate(tenant_id)
        logger.info("bot_flow_imported", tenant_id=tenant_id, flow_id=flow.id,
                    nodes=len(nodes), warnings=len(result.warnings))
        return flow

    # ── Nodes ─────────────────────────────────────────────────

    @_envelope(ErrorCode.NODE_VALIDATION_FAILED)
    async def create_node(
        self, tenant_id: str, flow_id: str, data: dict[str, Any], validate_only: bool = False,
    ) -> dict[str, Any]:
        flow = await self._load_flow(tenant_id, flow_id, with_nodes=True)

        node_id = data.get("id") or new_id()
        payload = {k: v for k, v in data.items() if k in _UPDATABLE_NODE_FIELDS}
        payload["connections"] = _normalize_connections(node_id, data.get("connections", []))
        node = self._build_node({**payload, "id": node_id, "flow_id": flow.id})
        self._reject_node(node)

        if node.type == NodeType.START and flow.start_node():
            raise FlowServiceError(ErrorCode.NODE_VALIDATION_FAILED,
                                   "Flow already has a start node", resource_id=node.id,
                                   details=[{"code": "MULTIPLE_START_NODES"}])

        result = validate_flow(flow, flow.nodes + [node])
        if validate_only:
            return {"node": node, "validation": result, "persisted": False}

        await self._store.save_nodes([node])
        if node.type == NodeType.START:
            flow.start_node_id = node.id
        await self._bump_version(flow)
        self._invalidate(tenant_id)
        logger.info("bot_flow_node_created", tenant_id=tenant_id, flow_id=flow_id,
                    node_id=node.id, node_type=node.type.value)
        return {"node": node, "validation": result, "persisted": True}

    @_envelope(ErrorCode.NODE_VALIDATION_FAILED)
    async def update_node(
        self, tenant_id: str, flow_id: str, node_id: str, updates: dict[str, Any],
        validate_only: bool = False,
    ) -> dict[str, Any]:
        flow = await self._load_flow(tenant_id, flow_id, with_nodes=True)
        node = await self._load_node(flow, node_id)

        merged = node.model_dump()
        merged["configuration"] = node.configuration.model_dump()
        type_changed = "type" in updates and updates["type"] != node.type.value and updates["type"] != node.type
        for key in _UPDATABLE_NODE_FIELDS:
            if key not in updates:
                continue
            if key == "configuration" and not type_changed:
                merged["configuration"] = {**merged["configuration"], **(updates["configuration"] or {})}
            elif key == "connections":
                merged["connections"] = _normalize_connections(node.id, updates["connections"])
            else:
                merged[key] = updates[key]
        if type_changed and "configuration" not in updates:
            merged["configuration"] = {}
        merged["updated_at"] = _utcnow()

        updated = self._build_node(merged)
        self._reject_node(updated)

        siblings = [n for n in flow.nodes if n.id != node.id]
        if updated.type == NodeType.START and any(n.type == NodeType.START for n in siblings):
            raise FlowServiceError(ErrorCode.NODE_VALIDATION_FAILED,
                                   "Flow already has a start node", resource_id=node.id,
                                   details=[{"code": "MULTIPLE_START_NODES"}])

        result = validate_flow(flow, siblings + [updated])
        if validate_only:
            return {"node": updated, "validation": result, "persisted": False}

        await self._store.save_nodes([updated])
        if updated.type == NodeType.START:
            flow.start_node_id = updated.id
        elif flow.start_node_id == node.id:
            flow.start_node_id = None
        await self._bump_version(flow)
        self._invalidate(tenant_id)
        logger.info("bot_flow_node_updated", tenant_id=tenant_id, flow_id=flow_id,
                    node_id=node_id, fields=sorted(updates))
        return {"node": updated, "validation": result, "persisted": True}

    @_envelope(ErrorCode.DELETE_FAILED)
    async def delete_node(self, tenant_id: str, flow_id: str, node_id: str) -> dict[str, Any]:
        flow = await self._load_flow(tenant_id, flow_id, with_nodes=True)
        await self._load_node(flow, node_id)

        changed: list[FlowNode] = []
        removed = 0
        for sibling in flow.nodes:
            if sibling.id == node_id:
                continue
            kept = [
                c for c in sibling.connections
                if c.source_node_id != node_id and c.target_node_id != node_id
            ]
            if len(kept) != len(sibling.connections):
                removed += len(sibling.connections) - len(kept)
                sibling.connections = kept
                sibling.updated_at = _utcnow()
                changed.append(sibling)

        if changed:
            await self._store.save_nodes(changed)
        await self._store.delete_node(node_id)

        if flow.start_node_id == node_id:
            flow.start_node_id = None
        await self._bump_version(flow)
        self._invalidate(tenant_id)
        logger.info("bot_flow_node_deleted", tenant_id=tenant_id, flow_id=flow_id,
                    node_id=node_id, connections_removed=removed)
        return {"deleted_node_id": node_id, "connections_removed": removed}
