"""Core workflow validation and simulation components."""

from .exceptions import (
    WorkflowEngineError,
    ExpressionError,
    RuleRegistryError,
    RuleExecutionError,
    SimulationError,
    SessionNotFoundError,
    ResourceExhaustionError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger
from .events import EventBus, WorkflowEvent, WorkflowEventType
from .expressions import ExpressionEvaluator
from .rule_registry import RuleRegistry
from .validation_engine import ValidationEngine
from .simulation_engine import SimulationEngine
from .session_manager import SimulationSessionManager

__all__ = [
    "WorkflowEngineError",
    "ExpressionError",
    "RuleRegistryError",
    "RuleExecutionError",
    "SimulationError",
    "SessionNotFoundError",
    "ResourceExhaustionError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
    "EventBus",
    "WorkflowEvent",
    "WorkflowEventType",
    "ExpressionEvaluator",
    "RuleRegistry",
    "ValidationEngine",
    "SimulationEngine",
    "SimulationSessionManager",
]
