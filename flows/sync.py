"""
Flow Sync — moves flow payloads between the editor, the live cache and disk.

Operations:
  push(payload)           validate an exported flow and, if it is active,
                          install it as the tenant's live flow (FlowCache)
  export(flow_id)         produce the exported JSON shape of a stored flow
  backup(path)            write the tenant's live flow to a JSON file
  restore(path)           read a backup file and install its flow as live
  import_payload()        store a payload as a new tenant flow (fresh ids)
  register_as_template()  add a payload to the TemplateLibrary

A pushed flow is not written to the durable store; the repository remains
the source of truth and the next repository mutation for the tenant drops
the pushed copy from the cache.
"""
from __future__ import annotations

import json
import structlog
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Union

from pydantic import ValidationError

from flows.cache import FlowCache
from flows.errors import ErrorCode
from flows.templates import TemplateInstantiator, TemplateLibrary
from flows.validator import validate_flow
from models.schemas import Flow, FlowNode, ServiceResponse, Variable

logger = structlog.get_logger()

BACKUP_DESCRIPTION = "Backup of current bot flow before changes"


def parse_payload(payload: dict[str, Any], tenant_id: str) -> Flow:
    """Build a Flow (with nodes) from the exported JSON shape."""
    flow = Flow(
        id=payload["id"],
        tenant_id=tenant_id,
        name=payload["name"],
        description=payload.get("description", ""),
        flow_type=payload.get("flow_type", "custom"),
        business_type=payload.get("business_type", ""),
        is_active=bool(payload.get("is_active", False)),
        variables=[Variable(**v) for v in payload.get("variables", [])],
        metadata=payload.get("metadata", {}),
    )
    flow.nodes = [FlowNode(**{**n, "flow_id": flow.id}) for n in payload.get("nodes", [])]
    start = flow.start_node()
    flow.start_node_id = start.id if start else None
    return flow


class FlowSyncService:

    def __init__(self, cache: FlowCache, repository=None, library=None):
        self._cache = cache
        self._repository = repository
        self._library = library

    async def push(self, tenant_id: str, payload: dict[str, Any]) -> ServiceResponse:
        try:
            flow = parse_payload(payload, tenant_id)
        except (KeyError, ValidationError, ValueError) as e:
            return ServiceResponse.fail(ErrorCode.SYNC_FAILED, f"Malformed flow payload: {e}",
                                        tenant_id=tenant_id, resource_id=payload.get("id"))

        result = validate_flow(flow)
        if not result.is_valid:
            logger.warning("bot_flow_sync_rejected", tenant_id=tenant_id,
                           flow_id=flow.id, errors=result.error_codes)
            return ServiceResponse.fail(
                ErrorCode.SYNC_FAILED, "Flow failed validation", tenant_id=tenant_id,
                resource_id=flow.id, details=[e.model_dump(mode="json") for e in result.errors],
            )

        if not flow.is_active:
            logger.info("bot_flow_sync_skipped", tenant_id=tenant_id, flow_id=flow.id, reason="inactive")
            return ServiceResponse.ok({"synced": False, "flow_id": flow.id,
                                       "warnings": result.warning_codes})

        self._cache.put(tenant_id, flow)
        logger.info("bot_flow_synced", tenant_id=tenant_id, flow_id=flow.id, nodes=len(flow.nodes))
        return ServiceResponse.ok({"synced": True, "flow_id": flow.id,
                                   "warnings": result.warning_codes})

    async def export(self, tenant_id: str, flow_id: str) -> ServiceResponse:
        response = await self._repository.get_flow(tenant_id, flow_id)
        if not response.success:
            return response
        return ServiceResponse.ok(response.data.export())

    async def backup(self, tenant_id: str, path: Union[str, Path]) -> ServiceResponse:
        flow = await self._cache.get(tenant_id)
        if flow is None:
            return ServiceResponse.fail(ErrorCode.NOT_FOUND, "No live bot flow to back up",
                                        tenant_id=tenant_id)
        document = {
            "backup_created": datetime.now(timezone.utc).isoformat(),
            "description": BACKUP_DESCRIPTION,
            "flow": flow.export(),
        }
        try:
            path = Path(path)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(document, indent=2, ensure_ascii=False), encoding="utf-8")
        except OSError as e:
            logger.error("bot_flow_backup_failed", tenant_id=tenant_id, path=str(path), error=str(e))
            return ServiceResponse.fail(ErrorCode.SYNC_FAILED, f"Backup failed: {e}", tenant_id=tenant_id)

        logger.info("bot_flow_backed_up", tenant_id=tenant_id, flow_id=flow.id, path=str(path))
        return ServiceResponse.ok({"path": str(path), "flow_id": flow.id})

    async def restore(self, tenant_id: str, path: Union[str, Path]) -> ServiceResponse:
        try:
            document = json.loads(Path(path).read_text(encoding="utf-8"))
            payload = document["flow"]
        except (OSError, ValueError, KeyError) as e:
            logger.error("bot_flow_restore_failed", tenant_id=tenant_id, path=str(path), error=str(e))
            return ServiceResponse.fail(ErrorCode.SYNC_FAILED, f"Restore failed: {e}", tenant_id=tenant_id)

        # A backup always holds the flow that was live, whatever its flag said.
        return await self.push(tenant_id, {**payload, "is_active": True})

    async def import_payload(
        self, tenant_id: str, payload: dict[str, Any], name: str = None,
    ) -> ServiceResponse:
        """Store a payload as a new, inactive tenant flow with fresh node ids."""
        try:
            template = TemplateLibrary.template_from_payload(payload)
        except (KeyError, ValidationError, ValueError) as e:
            return ServiceResponse.fail(ErrorCode.SYNC_FAILED, f"Malformed flow payload: {e}",
                                        tenant_id=tenant_id, resource_id=payload.get("id"))
        instantiator = TemplateInstantiator(self._library, self._repository)
        customization = {
            "name": name or payload.get("name") or template.name,
            "description": payload.get("description"),
        }
        return await instantiator.instantiate_template(template, tenant_id, customization)

    def register_as_template(self, payload: dict[str, Any], template_id: str = None) -> ServiceResponse:
        try:
            template = self._library.register_payload(payload, template_id=template_id)
        except (KeyError, ValidationError, ValueError) as e:
            return ServiceResponse.fail(ErrorCode.TEMPLATE_INVALID, str(e),
                                        resource_id=template_id or payload.get("id"))
        return ServiceResponse.ok(template)
