"""Pytest configuration and fixtures."""

import random
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest

from automation_engine.core.capabilities import CapabilityKind, CapabilityRegistry
from automation_engine.core.execution_engine import ExecutionEngine
from automation_engine.core.graph_manager import GraphManager
from automation_engine.core.scheduler import QueueScheduler
from automation_engine.core.triggers import TriggerService
from automation_engine.storage.database import create_database_engine, create_tables, get_session_factory
from automation_engine.storage.sql_store import SQLExecutionStore
from automation_engine.tools import EchoAiCapability, LogMessageCapability


class FrozenClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 1, 1, 12, 0, 0))


@pytest.fixture
def db_engine(tmp_path):
    """Engine over a temporary SQLite file with all tables created."""
    engine = create_database_engine(f"sqlite:///{tmp_path / 'automation.db'}")
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return get_session_factory(db_engine)


@pytest.fixture
def store(session_factory, clock):
    return SQLExecutionStore(session_factory, clock=clock)


@pytest.fixture
def messages():
    """Records every message the engine sends."""
    return LogMessageCapability()


@pytest.fixture
def capabilities(messages):
    registry = CapabilityRegistry()
    registry.register(CapabilityKind.SEND_MESSAGE, messages)
    registry.register(CapabilityKind.AI_AGENT, EchoAiCapability())
    return registry


@pytest.fixture
def engine(store, capabilities, clock):
    return ExecutionEngine(store, capabilities=capabilities, clock=clock, rng=random.Random(7))


@pytest.fixture
def scheduler(store, engine, clock):
    return QueueScheduler(store, engine, clock=clock)


@pytest.fixture
def graph_manager(store):
    return GraphManager(store)


@pytest.fixture
def trigger_service(store, engine, scheduler):
    return TriggerService(store, engine, scheduler)


def node(node_id: str, node_type: str, **config) -> Dict[str, Any]:
    return {"id": node_id, "type": node_type, "config": config}


def edge(source: str, target: str, handle: Optional[str] = None) -> Dict[str, Any]:
    data = {"id": f"{source}-{target}", "source": source, "target": target}
    if handle:
        data["sourceHandle"] = handle
    return data


def chain(*node_ids: str) -> List[Dict[str, Any]]:
    """Default edges linking ``node_ids`` in order."""
    return [edge(a, b) for a, b in zip(node_ids, node_ids[1:])]


@pytest.fixture
def create_workflow(graph_manager):
    """Store a workflow from node and edge dicts and return it."""
    def _create(nodes, edges, name="Test workflow", **kwargs):
        return graph_manager.create_workflow(name, {"nodes": nodes, "edges": edges}, **kwargs)
    return _create


@pytest.fixture
def reply_workflow(create_workflow):
    """trigger -> greet -> wait for reply -> condition on "si" -> yes/no actions."""
    nodes = [
        node("start", "trigger"),
        node("greet", "action", message="Hola {{lead.name}}, quieres continuar?"),
        node("ask", "wait_input", timeout="5m", storeAs="reply", timeoutAction="continue"),
        node("check", "condition", field="reply", operator="==", value="si"),
        node("yes_msg", "action", message="Perfecto"),
        node("no_msg", "action", message="Otra vez sera"),
    ]
    edges = chain("start", "greet", "ask", "check") + [
        edge("check", "yes_msg", "yes"),
        edge("check", "no_msg", "no"),
    ]
    return create_workflow(nodes, edges, name="Reply flow")
