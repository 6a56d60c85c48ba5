"""Data models for the BPM workflow core."""

from .core import (
    NodeCategory,
    RuleKind,
    RuleScope,
    Severity,
    SimulationStatus,
    ValidationRule,
    PropertyDefinition,
    ConnectionResult,
    ConnectionRule,
    NodeConfig,
    EdgeConfig,
    WorkflowGraph,
    ValidationError,
    ValidationResult,
    SimulationState,
    GlobalRule,
)

__all__ = [
    "NodeCategory",
    "RuleKind",
    "RuleScope",
    "Severity",
    "SimulationStatus",
    "ValidationRule",
    "PropertyDefinition",
    "ConnectionResult",
    "ConnectionRule",
    "NodeConfig",
    "EdgeConfig",
    "WorkflowGraph",
    "ValidationError",
    "ValidationResult",
    "SimulationState",
    "GlobalRule",
]
