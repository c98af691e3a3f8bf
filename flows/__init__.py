"""
Flow management — the editable conversation graphs behind the booking bot.

  validator     structural checks over a flow graph
  repository    tenant-scoped CRUD over flows and nodes
  templates     template library and instantiation into tenant flows
  cache         per-tenant live flow reference
  sync          push / export / backup / restore of flow payloads
  executor      generic graph walker for non-booking flows
"""
from flows.errors import ErrorCode, FlowServiceError
from flows.validator import NODE_RULES, validate_flow, validate_node
from flows.cache import FlowCache
from flows.repository import FlowRepository
from flows.templates import TemplateLibrary, TemplateInstantiator, customize_configuration
from flows.sync import FlowSyncService, parse_payload
from flows.executor import GraphExecutor, ExecutionSession, ExecutionStep, check_input

__all__ = [
    "ErrorCode", "FlowServiceError",
    "NODE_RULES", "validate_flow", "validate_node",
    "FlowCache", "FlowRepository",
    "TemplateLibrary", "TemplateInstantiator", "customize_configuration",
    "FlowSyncService", "parse_payload",
    "GraphExecutor", "ExecutionSession", "ExecutionStep", "check_input",
]
