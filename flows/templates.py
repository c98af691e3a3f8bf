"""
Flow Templates — a library of reusable flow skeletons and the instantiator
that turns one into a tenant-owned flow.

Templates use the exported flow shape (see Flow.export), so a synced flow
payload can be registered as a template and instantiated again.

Instantiation:
  1. mint a fresh id for every template node
  2. rewrite every connection through the template-node → new-id mapping
     (connection targets may name a node by `name` or by template `id`)
  3. substitute {{variable}} tokens in text-bearing configuration fields
     with the customization values (falling back to variable defaults)
  4. persist through FlowRepository.import_flow as an inactive flow

Unresolvable connection targets are kept as-is in lenient mode (the flow
validator later reports them as dangling) and rejected in strict mode.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional, Union

import yaml
from pydantic import ValidationError

from flows.errors import ErrorCode, FlowServiceError
from flows.validator import validate_node
from models.schemas import (
    Connection, Flow, FlowNode, FlowTemplate, NodeType, ServiceResponse,
    TemplateCustomization, Variable, new_id,
)
from utils.interpolation import find_tokens, substitute_tokens

logger = structlog.get_logger()

BUILTIN_TEMPLATES_PATH = Path(__file__).parent / "builtin_templates.yaml"


# ──────────────────────────────────────────────────────────────
#  Token substitution over node configuration
# ──────────────────────────────────────────────────────────────

_TEXT_FIELDS = ("message_text", "question_text", "end_message")


def customize_configuration(node: FlowNode, values: dict[str, Any]) -> FlowNode:
    """Return a copy of node with {{tokens}} substituted in its user-facing text."""
    config = node.configuration.model_dump()
    for key in _TEXT_FIELDS:
        if isinstance(config.get(key), str):
            config[key] = substitute_tokens(config[key], values)
    for choice in config.get("choices") or []:
        choice["label"] = substitute_tokens(choice.get("label", ""), values)
    validation = config.get("validation")
    if isinstance(validation, dict) and validation.get("error_message"):
        validation["error_message"] = substitute_tokens(validation["error_message"], values)
    return node.model_copy(update={"configuration": node.configuration.model_validate(config)})


def unbound_tokens(nodes: list[FlowNode]) -> list[str]:
    """{{tokens}} still present in node text that no question node binds at runtime."""
    bound = {getattr(n.configuration, "variable_name", "") for n in nodes}
    found: set[str] = set()
    for node in nodes:
        config = node.configuration.model_dump()
        for key in _TEXT_FIELDS:
            found.update(find_tokens(config.get(key)))
    return sorted(found - bound)


# ──────────────────────────────────────────────────────────────
#  Library
# ──────────────────────────────────────────────────────────────

class TemplateLibrary:
    """
    Registry of flow templates, indexed by id and business_type.
    Templates are validated on registration; a broken template never lands.
    """

    def __init__(self):
        self._templates: dict[str, FlowTemplate] = {}
        self._business_index: dict[str, list[str]] = {}   # business_type → [template_ids]

    @classmethod
    def with_builtins(cls, extra_paths: list[str] = None) -> TemplateLibrary:
        library = cls()
        library.load_file(BUILTIN_TEMPLATES_PATH)
        for path in extra_paths or []:
            library.load_file(path)
        return library

    # ── Registration ──────────────────────────────────

    def register(self, template: FlowTemplate):
        """Register a single template."""
        errors = self._validate(template)
        if errors:
            logger.error("invalid_flow_template", template_id=template.id, errors=errors)
            raise ValueError(f"Invalid flow template '{template.id}': {'; '.join(errors)}")

        if template.id in self._templates:
            self._unindex(self._templates[template.id])
            logger.info("flow_template_replaced", template_id=template.id)

        self._templates[template.id] = template
        if template.business_type:
            self._business_index.setdefault(template.business_type, []).append(template.id)

        logger.info("flow_template_registered",
                    template_id=template.id,
                    name=template.name,
                    nodes=len(template.nodes),
                    business_type=template.business_type)

    def register_from_config(self, config: list[dict[str, Any]]):
        """Load templates from parsed YAML."""
        for raw in config:
            self.register(self._parse_template(raw))
        logger.info("flow_templates_loaded", count=len(config))

    def register_payload(self, payload: dict[str, Any], template_id: str = None) -> FlowTemplate:
        """Register an exported flow (sync payload) as a template."""
        template = self.template_from_payload(payload, template_id)
        self.register(template)
        return template

    @classmethod
    def template_from_payload(cls, payload: dict[str, Any], template_id: str = None) -> FlowTemplate:
        raw = dict(payload)
        raw["id"] = template_id or raw.get("id") or new_id()
        return cls._parse_template(raw)

    def load_file(self, path: Union[str, Path]):
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or []
        if isinstance(raw, dict):
            raw = raw.get("templates", [])
        self.register_from_config(raw)

    # ── Lookup ────────────────────────────────────────

    def get(self, template_id: str) -> Optional[FlowTemplate]:
        return self._templates.get(template_id)

    def list_all(self) -> list[FlowTemplate]:
        return list(self._templates.values())

    def list_by_business_type(self, business_type: str) -> list[FlowTemplate]:
        ids = self._business_index.get(business_type, [])
        return [self._templates[i] for i in ids if i in self._templates]

    def __contains__(self, template_id: str) -> bool:
        return template_id in self._templates

    def __len__(self) -> int:
        return len(self._templates)

    # ── Parsing & validation ──────────────────────────

    @staticmethod
    def _parse_template(raw: dict[str, Any]) -> FlowTemplate:
        nodes = []
        for n in raw.get("nodes", []):
            n = dict(n)
            n.pop("flow_id", None)
            nodes.append(FlowNode(**n))
        return FlowTemplate(
            id=raw["id"],
            name=raw.get("name", raw["id"]),
            description=raw.get("description", ""),
            business_type=raw.get("business_type", ""),
            nodes=nodes,
            variables=[Variable(**v) for v in raw.get("variables", [])],
            metadata=raw.get("metadata", {}),
        )

    @staticmethod
    def _validate(template: FlowTemplate) -> list[str]:
        errors = []
        if not template.id:
            errors.append("Template id is required")
        if not template.name:
            errors.append("Template name is required")
        if not template.nodes:
            errors.append("Template has no nodes")
            return errors

        starts = [n for n in template.nodes if n.type == NodeType.START]
        if len(starts) != 1:
            errors.append(f"Template must have exactly one start node (found {len(starts)})")

        names = [n.name for n in template.nodes]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            errors.append(f"Duplicate node names: {', '.join(dupes)}")

        known = set(names) | {n.id for n in template.nodes}
        for node in template.nodes:
            for issue in validate_node(node):
                errors.append(f"Node '{node.name}': {issue.code}")
            for conn in node.connections:
                if conn.target_node_id not in known:
                    errors.append(f"Node '{node.name}' connects to unknown node '{conn.target_node_id}'")
        return errors

    def _unindex(self, template: FlowTemplate):
        ids = self._business_index.get(template.business_type)
        if ids and template.id in ids:
            ids.remove(template.id)


# ──────────────────────────────────────────────────────────────
#  Instantiation
# ──────────────────────────────────────────────────────────────

class TemplateInstantiator:
    """Builds tenant flows from library templates and persists them via the repository."""

    def __init__(self, library: TemplateLibrary, repository=None, strict: bool = False):
        self._library = library
        self._repository = repository
        self._strict = strict

    async def instantiate(
        self,
        template_id: str,
        tenant_id: str,
        customization: Union[TemplateCustomization, dict[str, Any]],
    ) -> ServiceResponse:
        template = self._library.get(template_id)
        if template is None:
            return ServiceResponse.fail(
                ErrorCode.TEMPLATE_NOT_FOUND, f"Template '{template_id}' not found",
                tenant_id=tenant_id, resource_id=template_id,
            )
        return await self.instantiate_template(template, tenant_id, customization)

    async def instantiate_template(
        self,
        template: FlowTemplate,
        tenant_id: str,
        customization: Union[TemplateCustomization, dict[str, Any]],
    ) -> ServiceResponse:
        template_id = template.id
        try:
            if isinstance(customization, dict):
                customization = TemplateCustomization(**customization)
            flow, nodes = self.build(template, tenant_id, customization)
        except ValidationError as e:
            return ServiceResponse.fail(
                ErrorCode.VALIDATION_FAILED, f"Invalid customization: {e}",
                tenant_id=tenant_id, resource_id=template_id,
            )
        except FlowServiceError as e:
            return ServiceResponse.fail(e.code, e.message, tenant_id=tenant_id,
                                        resource_id=e.resource_id, details=e.details)

        logger.info("flow_template_instantiated", template_id=template_id,
                    tenant_id=tenant_id, flow_id=flow.id, nodes=len(nodes))
        return await self._repository.import_flow(tenant_id, flow, nodes)

    def build(
        self, template: FlowTemplate, tenant_id: str, customization: TemplateCustomization,
    ) -> tuple[Flow, list[FlowNode]]:
        """Materialize template into an unsaved Flow and its nodes with fresh ids."""
        if not customization.name.strip():
            raise FlowServiceError(ErrorCode.VALIDATION_FAILED, "Bot flow name is required",
                                   resource_id=template.id)

        values = {v.name: v.default_value for v in template.variables if v.default_value is not None}
        values.update(customization.variables)

        by_name: dict[str, str] = {}
        by_template_id: dict[str, str] = {}
        for node in template.nodes:
            minted = new_id()
            by_name.setdefault(node.name, minted)
            by_template_id[node.id] = minted

        def resolve(ref: str) -> Optional[str]:
            return by_name.get(ref) or by_template_id.get(ref)

        flow = Flow(
            tenant_id=tenant_id,
            name=customization.name.strip(),
            description=customization.description if customization.description is not None
            else template.description,
            business_type=template.business_type,
            variables=[
                v.model_copy(update={"default_value": values.get(v.name, v.default_value)})
                for v in template.variables
            ],
        )

        base = datetime.now(timezone.utc)
        nodes: list[FlowNode] = []
        unresolved: list[dict[str, str]] = []
        for index, tpl_node in enumerate(template.nodes):
            node_id = by_template_id[tpl_node.id]
            connections = []
            for conn in tpl_node.connections:
                target = resolve(conn.target_node_id)
                if target is None:
                    unresolved.append({"node": tpl_node.name, "target": conn.target_node_id})
                    target = conn.target_node_id
                connections.append(Connection(
                    source_node_id=node_id, target_node_id=target, label=conn.label,
                ))
            node = tpl_node.model_copy(update={
                "id": node_id,
                "flow_id": flow.id,
                "connections": connections,
                "metadata": dict(tpl_node.metadata),
                "created_at": base + timedelta(microseconds=index),
                "updated_at": base,
            })
            nodes.append(customize_configuration(node, values))
            if tpl_node.type == NodeType.START and flow.start_node_id is None:
                flow.start_node_id = node_id

        if unresolved:
            if self._strict:
                raise FlowServiceError(
                    ErrorCode.TEMPLATE_INVALID,
                    f"Template '{template.id}' has unresolvable connection targets",
                    resource_id=template.id, details=unresolved,
                )
            logger.warning("flow_template_unresolved_targets",
                           template_id=template.id, targets=unresolved)

        leftover = unbound_tokens(nodes)
        if leftover:
            logger.warning("flow_template_unbound_tokens", template_id=template.id, tokens=leftover)

        flow.metadata = {
            **template.metadata,
            "template_id": template.id,
            "customization": customization.model_dump(),
            "entry_node_id": flow.start_node_id,
            "unbound_tokens": leftover,
        }
        return flow, nodes
