"""Pytest configuration and fixtures."""

import pytest
from fastapi.testclient import TestClient

from bpm_engine.config import get_testing_config
from bpm_engine.core.events import EventBus
from bpm_engine.core.expressions import ExpressionEvaluator
from bpm_engine.core.rule_registry import RuleRegistry
from bpm_engine.core.session_manager import SimulationSessionManager
from bpm_engine.core.validation_engine import ValidationEngine
from bpm_engine.factory import create_app
from bpm_engine.models.core import EdgeConfig, NodeConfig, WorkflowGraph


@pytest.fixture
def evaluator():
    """Create an ExpressionEvaluator instance for testing."""
    return ExpressionEvaluator()


@pytest.fixture
def event_bus():
    """Create an EventBus instance for testing."""
    return EventBus()


@pytest.fixture
def rule_registry(event_bus):
    """Create a RuleRegistry wired to the test event bus."""
    return RuleRegistry(event_bus=event_bus)


@pytest.fixture
def validation_engine(rule_registry, event_bus, evaluator):
    """Create a ValidationEngine instance for testing."""
    return ValidationEngine(rule_registry=rule_registry, event_bus=event_bus, evaluator=evaluator)


@pytest.fixture
def session_manager(evaluator, event_bus):
    """Create a SimulationSessionManager with small limits."""
    return SimulationSessionManager(evaluator=evaluator, event_bus=event_bus, max_steps=20, max_sessions=3)


@pytest.fixture
def recorded_events(event_bus):
    """Collect every event emitted on the test bus, in order."""
    events = []
    for event_type in (
        "workflow:loaded",
        "workflow:validated",
        "registry:item:registered",
        "registry:item:unregistered",
        "simulation:started",
        "simulation:stepped",
        "simulation:completed",
        "simulation:stuck",
        "simulation:halted",
        "simulation:stopped",
    ):
        event_bus.on(event_type, events.append)
    return events


@pytest.fixture
def linear_graph():
    """start -> task -> end, with a script on the task."""
    return WorkflowGraph(
        nodes=[
            NodeConfig(id="start", node_type="startEvent", category="start"),
            NodeConfig(id="task", node_type="scriptTask", category="task", properties={"script": "count = count + 1"}),
            NodeConfig(id="end", node_type="endEvent", category="end"),
        ],
        edges=[
            EdgeConfig(id="e1", source="start", target="task"),
            EdgeConfig(id="e2", source="task", target="end"),
        ]
    )


@pytest.fixture
def gateway_graph():
    """start -> gateway, branching to high/low with a default edge to manual review."""
    return WorkflowGraph(
        nodes=[
            NodeConfig(id="start", node_type="startEvent", category="start"),
            NodeConfig(id="gw", node_type="exclusiveGateway", category="gateway"),
            NodeConfig(id="high", node_type="userTask", category="task"),
            NodeConfig(id="low", node_type="userTask", category="task"),
            NodeConfig(id="review", node_type="userTask", category="task"),
        ],
        edges=[
            EdgeConfig(id="e0", source="start", target="gw"),
            EdgeConfig(id="to-high", source="gw", target="high", properties={"condition": "amount > 1000"}),
            EdgeConfig(id="to-low", source="gw", target="low", properties={"condition": "amount > 100"}),
            EdgeConfig(id="to-review", source="gw", target="review", data={"isDefault": True}),
        ]
    )


@pytest.fixture
def test_config():
    """Create test configuration."""
    return get_testing_config()


@pytest.fixture
def client(test_config):
    """Create a test client; entering the context runs the application lifespan."""
    app = create_app(test_config)
    with TestClient(app) as test_client:
        yield test_client
