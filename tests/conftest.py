"""Shared test fixtures for the booking assistant."""
from datetime import date
from typing import Any

import pytest

from channels.base import RecordingGateway
from config.settings import Settings
from core.engine import ConversationEngine
from database.store_memory import InMemoryStore
from flows.cache import FlowCache
from flows.repository import FlowRepository
from flows.templates import TemplateLibrary
from models.schemas import Connection, Flow, FlowNode


TENANT = "tenant-1"
TODAY = date(2026, 10, 19)   # a Monday


def make_node(node_id: str, node_type: str, targets: list[str] = None,
              labels: list[str] = None, name: str = None, **configuration: Any) -> FlowNode:
    targets = targets or []
    labels = labels or [""] * len(targets)
    return FlowNode(
        id=node_id,
        type=node_type,
        name=name or node_id,
        configuration=configuration,
        connections=[
            Connection(source_node_id=node_id, target_node_id=t, label=label)
            for t, label in zip(targets, labels)
        ],
    )


def make_flow(nodes: list[FlowNode], tenant_id: str = TENANT, **fields: Any) -> Flow:
    flow = Flow(tenant_id=tenant_id, name=fields.pop("name", "Test flow"), **fields)
    flow.nodes = [n.model_copy(update={"flow_id": flow.id}) for n in nodes]
    start = flow.start_node()
    flow.start_node_id = start.id if start else None
    return flow


@pytest.fixture
def linear_flow() -> Flow:
    """start → greet → ask_name → bye"""
    return make_flow([
        make_node("start", "start", ["greet"]),
        make_node("greet", "message", ["ask_name"], message_text="Hello from {{shopName}}!"),
        make_node("ask_name", "question", ["bye"], question_text="What is your name?",
                  variable_name="customerName", validation={"required": True}),
        make_node("bye", "end", end_message="Goodbye {{customerName}}."),
    ], variables=[{"name": "shopName", "type": "string", "default_value": "Corner Shop"}])


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def cache() -> FlowCache:
    return FlowCache()


@pytest.fixture
def repository(store, cache) -> FlowRepository:
    return FlowRepository(store, cache)


@pytest.fixture
def library() -> TemplateLibrary:
    return TemplateLibrary.with_builtins()


@pytest.fixture
def gateway() -> RecordingGateway:
    return RecordingGateway()


@pytest.fixture
def engine(store, cache, gateway, repository, settings) -> ConversationEngine:
    return ConversationEngine(
        store=store,
        flow_cache=cache,
        gateway=gateway,
        repository=repository,
        settings=settings,
        today=lambda: TODAY,
    )
