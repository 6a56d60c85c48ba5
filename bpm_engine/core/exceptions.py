"""Exceptions raised by the BPM workflow core.

Validation problems are data (``ValidationError`` models in a
``ValidationResult``) and never appear here. These exceptions cover misuse of
the engines: unknown sessions, exhausted limits, rule registry misuse, async
callables on the sync path and invalid configuration. Expression failures are
raised inside the evaluator only and turned into its safe defaults before
they reach a caller.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from enum import Enum


class ErrorSeverity(Enum):
    """How badly an error affects the run or request that hit it."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Which part of the core an error comes from."""
    VALIDATION = "validation"
    SIMULATION = "simulation"
    EXPRESSION = "expression"
    REGISTRY = "registry"
    CONFIGURATION = "configuration"
    RESOURCE = "resource"


class WorkflowEngineError(Exception):
    """Base exception for all workflow core errors.

    Subclasses set ``http_status`` so the API layer can answer without
    knowing the hierarchy.
    """

    http_status = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.SIMULATION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.context = context or {}
        self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Flatten the error for structured log lines."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "context": self.context,
            "timestamp": self.timestamp.isoformat()
        }

    def add_context(self, **kwargs):
        """Attach identifiers (session, node, rule, ...) the error refers to."""
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        self.details.update(kwargs)
        return self


class ExpressionError(WorkflowEngineError):
    """Raised when an expression or script cannot be tokenized, parsed or evaluated.

    Never escapes the ExpressionEvaluator public methods; it is converted
    into the evaluator's safe default there.
    """

    http_status = 400

    def __init__(
        self,
        message: str,
        expression: Optional[str] = None,
        position: Optional[int] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.EXPRESSION,
            recoverable=True,
            **kwargs
        )
        self.expression = expression
        self.position = position
        if expression is not None:
            self.add_context(expression=expression)
        if position is not None:
            self.add_details(position=position)


class RuleRegistryError(WorkflowEngineError):
    """Raised on registry misuse: looking up an unknown rule or registering a non-rule."""

    http_status = 400

    def __init__(
        self,
        message: str,
        rule_id: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.REGISTRY,
            **kwargs
        )
        self.rule_id = rule_id
        self.operation = operation
        if rule_id:
            self.add_context(rule_id=rule_id)
        if operation:
            self.add_context(operation=operation)
        if operation == "get":
            self.http_status = 404


class RuleExecutionError(WorkflowEngineError):
    """Raised when a rule or validator returns an awaitable on the synchronous path."""

    http_status = 400

    def __init__(
        self,
        message: str,
        rule_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.rule_id = rule_id
        if rule_id:
            self.add_context(rule_id=rule_id)


class SimulationError(WorkflowEngineError):
    """Raised when a simulation session cannot be created or driven."""

    http_status = 409

    def __init__(
        self,
        message: str,
        session_id: Optional[str] = None,
        node_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.SIMULATION,
            **kwargs
        )
        if session_id:
            self.add_context(session_id=session_id)
        if node_id:
            self.add_context(node_id=node_id)


class SessionNotFoundError(SimulationError):
    """Raised when a simulation session id is unknown."""

    http_status = 404

    def __init__(self, session_id: str, **kwargs):
        super().__init__(
            f"Simulation session '{session_id}' not found",
            session_id=session_id,
            **kwargs
        )


class ResourceExhaustionError(WorkflowEngineError):
    """Raised when the session limit is reached."""

    http_status = 503

    def __init__(
        self,
        message: str,
        resource_type: Optional[str] = None,
        current_usage: Optional[int] = None,
        limit: Optional[int] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.CRITICAL,
            category=ErrorCategory.RESOURCE,
            recoverable=True,
            **kwargs
        )
        if resource_type:
            self.add_context(resource_type=resource_type)
        if current_usage is not None and limit is not None:
            self.add_details(current_usage=current_usage, limit=limit)


class ConfigurationError(WorkflowEngineError):
    """Raised when settings from the environment or a preset are unusable.

    ``problems`` lists every failed check so one start-up attempt reports
    them all.
    """

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        problems: Optional[List[str]] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.CRITICAL,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        self.config_key = config_key
        self.problems = list(problems or [])
        if config_key:
            self.add_context(config_key=config_key)
        if self.problems:
            self.add_details(problems=self.problems)


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Create the JSON error body returned by the API."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }
