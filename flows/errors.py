"""Error codes and the internal exception used across the flows package."""
from __future__ import annotations

from typing import Any


class ErrorCode:
    VALIDATION_FAILED = "BOT_FLOW_VALIDATION_FAILED"
    NOT_FOUND = "BOT_FLOW_NOT_FOUND"
    NODE_VALIDATION_FAILED = "BOT_FLOW_NODE_VALIDATION_FAILED"
    NODE_NOT_FOUND = "BOT_FLOW_NODE_NOT_FOUND"
    TEMPLATE_NOT_FOUND = "BOT_FLOW_TEMPLATE_NOT_FOUND"
    TEMPLATE_INVALID = "BOT_FLOW_TEMPLATE_INVALID"
    CREATE_FAILED = "BOT_FLOW_CREATE_FAILED"
    UPDATE_FAILED = "BOT_FLOW_UPDATE_FAILED"
    DELETE_FAILED = "BOT_FLOW_DELETE_FAILED"
    LIST_FAILED = "BOT_FLOW_LIST_FAILED"
    SYNC_FAILED = "BOT_FLOW_SYNC_FAILED"
    INTERNAL_ERROR = "BOT_FLOW_INTERNAL_ERROR"


class FlowServiceError(Exception):
    """Raised inside flow operations; converted to a ServiceResponse at the public surface."""

    def __init__(self, code: str, message: str, resource_id: str = None, details: Any = None):
        self.code = code
        self.message = message
        self.resource_id = resource_id
        self.details = details
        super().__init__(message)
