"""Core Pydantic models for the BPM workflow core."""

from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel
from pydantic.json_schema import SkipJsonSchema


class GraphModel(BaseModel):
    """Base model whose wire names are camelCase (``nodeType``, ``isDefault``, ...)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class NodeCategory(str, Enum):
    """Enumeration of node categories understood by the engines."""
    START = "start"
    TASK = "task"
    GATEWAY = "gateway"
    END = "end"
    IMMEDIATE = "immediate"
    SUBFLOW = "subflow"
    BOUNDARY = "boundary"
    CUSTOM = "custom"
    OTHER = "other"


class RuleKind(str, Enum):
    """Closed set of built-in property rule kinds."""
    REQUIRED = "required"
    MIN = "min"
    MAX = "max"
    PATTERN = "pattern"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, rule_type: Optional[str]) -> Optional['RuleKind']:
        """Return the matching kind, or None for an unrecognised rule type."""
        try:
            return cls(rule_type)
        except ValueError:
            return None


class RuleScope(str, Enum):
    """Scopes a global rule can be registered under."""
    GLOBAL = "global"
    NODE = "node"
    EDGE = "edge"
    WORKFLOW = "workflow"


class Severity(str, Enum):
    """Severity of a reported validation problem."""
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class SimulationStatus(str, Enum):
    """Lifecycle of a simulation run."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    STUCK = "stuck"
    HALTED = "halted"


class ValidationRule(GraphModel):
    """A rule attached to a property definition or to a node."""
    id: str = Field(..., description="Rule identifier, unique within its owner")
    type: str = Field(..., description="Rule type: required, min, max, pattern or custom")
    value: Any = Field(None, description="Rule parameter (bound, regex, ...)")
    message: str = Field("", description="Message reported when the rule fails")
    validator: SkipJsonSchema[Optional[Callable[..., Any]]] = Field(
        None,
        exclude=True,
        description="Optional callable (value, context) returning a bool or an awaitable bool"
    )

    @property
    def kind(self) -> Optional[RuleKind]:
        return RuleKind.parse(self.type)


class PropertyDefinition(GraphModel):
    """Definition of an editable node property."""
    id: str = Field(..., description="Property key inside node properties")
    label: Optional[str] = Field(None, description="Human readable label, defaults to the id")
    type: str = Field("string", description="Property value type")
    required: bool = Field(False, description="Whether a value must be present")
    validation: List[ValidationRule] = Field(default_factory=list, description="Rules run against the value")
    default_value: Any = Field(None, description="Value used when the property is created")

    @model_validator(mode='after')
    def default_label(self):
        """Fall back to the id when no label is given."""
        if not self.label:
            self.label = self.id
        return self


class ConnectionResult(GraphModel):
    """Structured answer of a connection rule callable."""
    valid: bool = Field(..., description="Whether the connection is allowed")
    message: Optional[str] = Field(None, description="Reason shown when it is not")


class ConnectionRule(GraphModel):
    """Constraint on edges leaving a node."""
    id: str = Field(..., description="Rule identifier")
    name: str = Field("", description="Rule name")
    description: str = Field("", description="Rule description, used as fallback error message")
    source_node_types: Optional[List[str]] = Field(None, description="Node types allowed as source")
    source_handle_types: Optional[List[str]] = Field(None, description="Handles allowed on the source")
    max_output_connections: Optional[int] = Field(None, description="Maximum outgoing edges of the source")
    target_node_types: Optional[List[str]] = Field(None, description="Node types allowed as target")
    target_handle_types: Optional[List[str]] = Field(None, description="Handles allowed on the target")
    max_input_connections: Optional[int] = Field(None, description="Maximum incoming edges of the target")
    validate_fn: SkipJsonSchema[Optional[Callable[..., Any]]] = Field(
        None,
        alias="validate",
        exclude=True,
        description="Callable (source, target, source_handle, target_handle) returning bool or {valid, message}"
    )


class NodeConfig(GraphModel):
    """A node of a workflow graph as held by the graph store."""
    id: str = Field("", description="Unique identifier for the node")
    node_type: str = Field("", description="Registered node type")
    category: Union[NodeCategory, str] = Field(NodeCategory.TASK, description="Node category")
    properties: Dict[str, Any] = Field(default_factory=dict, description="Property values")
    property_definitions: List[PropertyDefinition] = Field(
        default_factory=list,
        description="Definitions of the node properties"
    )
    validation_rules: List[ValidationRule] = Field(
        default_factory=list,
        description="Rules evaluated against the whole node"
    )
    connection_rules: List[ConnectionRule] = Field(
        default_factory=list,
        description="Rules constraining edges that leave this node"
    )

    @field_validator('category', mode='before')
    @classmethod
    def parse_category(cls, category):
        """Map known categories onto the enum and keep unknown ones as strings."""
        if isinstance(category, NodeCategory):
            return category
        try:
            return NodeCategory(category)
        except ValueError:
            return category

    @property
    def is_gateway(self) -> bool:
        return self.category == NodeCategory.GATEWAY


class EdgeConfig(GraphModel):
    """A directed connection between two nodes."""
    id: str = Field("", description="Unique identifier for the edge")
    source: str = Field("", description="Source node ID")
    target: str = Field("", description="Target node ID")
    source_handle: Optional[str] = Field(None, description="Handle on the source node")
    target_handle: Optional[str] = Field(None, description="Handle on the target node")
    condition: Optional[str] = Field(None, description="Legacy condition expression")
    properties: Dict[str, Any] = Field(default_factory=dict, description="Edge properties (condition, isDefault)")
    data: Dict[str, Any] = Field(default_factory=dict, description="Free-form edge data (isDefault)")

    @property
    def condition_expression(self) -> Optional[str]:
        """Condition to evaluate, property value first, then the legacy field."""
        return self.properties.get("condition") or self.condition

    @property
    def is_default(self) -> bool:
        return bool(self.properties.get("isDefault") or self.data.get("isDefault"))


class WorkflowGraph(GraphModel):
    """Complete workflow: nodes and edges with lookup helpers."""
    nodes: List[NodeConfig] = Field(default_factory=list, description="Nodes of the workflow")
    edges: List[EdgeConfig] = Field(default_factory=list, description="Edges of the workflow")

    def get_node(self, node_id: Optional[str]) -> Optional[NodeConfig]:
        """Return the first node with the given id, or None."""
        if node_id is None:
            return None
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def outgoing_edges(self, node_id: str) -> List[EdgeConfig]:
        """Edges whose source is the node, in array order."""
        return [edge for edge in self.edges if edge.source == node_id]

    def incoming_edges(self, node_id: str) -> List[EdgeConfig]:
        """Edges whose target is the node, in array order."""
        return [edge for edge in self.edges if edge.target == node_id]

    def find_start_node(self, start_node_id: Optional[str] = None) -> Optional[NodeConfig]:
        """Resolve the explicit start node, or the first node of category start."""
        if start_node_id:
            return self.get_node(start_node_id)
        for node in self.nodes:
            if node.category == NodeCategory.START:
                return node
        return None


class ValidationError(GraphModel):
    """A single validation problem. Returned by the engine, never raised."""
    id: str = Field(..., description="Deterministic identifier derived from node/edge/rule ids")
    type: Severity = Field(Severity.ERROR, description="Severity of the problem")
    message: str = Field(..., description="Human readable message")
    node_id: Optional[str] = Field(None, description="Node the problem belongs to")
    edge_id: Optional[str] = Field(None, description="Edge the problem belongs to")
    field: Optional[str] = Field(None, description="Property the problem belongs to")
    code: Optional[str] = Field(None, description="Machine readable code (rule type)")


class ValidationResult(GraphModel):
    """Aggregate result of a validation run."""
    valid: bool = Field(True, description="True when no errors were found")
    errors: List[ValidationError] = Field(default_factory=list, description="Validation errors")
    warnings: List[ValidationError] = Field(default_factory=list, description="Validation warnings")

    @classmethod
    def from_problems(cls, problems: List[ValidationError]) -> 'ValidationResult':
        """Split problems by severity; only errors affect validity."""
        errors = [p for p in problems if p.type == Severity.ERROR]
        warnings = [p for p in problems if p.type != Severity.ERROR]
        return cls(valid=not errors, errors=errors, warnings=warnings)


class SimulationState(GraphModel):
    """Run-time state of a simulation."""
    active: bool = Field(False, description="Whether a run is in progress")
    current_node_id: Optional[str] = Field(None, description="Node under the cursor")
    variables: Dict[str, Any] = Field(default_factory=dict, description="Runtime variables")
    history: List[str] = Field(default_factory=list, description="Visited node ids, in order")
    status: SimulationStatus = Field(SimulationStatus.IDLE, description="Lifecycle status")
    step_count: int = Field(0, description="Number of steps taken since start")


class GlobalRule(GraphModel):
    """A rule registered globally and executed at its scope."""
    id: str = Field(..., description="Rule identifier")
    name: str = Field("", description="Rule name")
    description: str = Field("", description="Rule description, used as error message")
    type: str = Field("custom", description="Free-form rule type")
    enabled: bool = Field(True, description="Disabled rules are skipped")
    priority: int = Field(0, description="Lower values run first")
    scope: RuleScope = Field(RuleScope.GLOBAL, description="Where the rule applies")
    condition: SkipJsonSchema[Optional[Callable[..., Any]]] = Field(
        None,
        exclude=True,
        description="Predicate over the context; a falsy result fails the rule"
    )
    action: SkipJsonSchema[Optional[Callable[..., Any]]] = Field(
        None,
        exclude=True,
        description="Callable run against the context when the condition holds"
    )

    @field_validator('id')
    @classmethod
    def validate_id(cls, rule_id):
        """Ensure rule ID is not empty."""
        if not rule_id or not rule_id.strip():
            raise ValueError("Rule ID cannot be empty")
        return rule_id.strip()
