"""FastAPI REST endpoints for the BPM workflow core."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, HTTPException, Depends, status
from pydantic import Field

from ..core.exceptions import WorkflowEngineError, create_error_response
from ..core.expressions import ExpressionEvaluator
from ..core.logging import get_logger
from ..core.middleware import status_code_for_error
from ..core.rule_registry import RuleRegistry
from ..core.session_manager import SimulationSessionManager
from ..core.validation_engine import ValidationEngine
from ..models.core import (
    EdgeConfig,
    GraphModel,
    NodeConfig,
    SimulationState,
    ValidationResult,
    WorkflowGraph,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["workflow"])

# Global instances (initialized by the application factory)
_validation_engine: Optional[ValidationEngine] = None
_expression_evaluator: Optional[ExpressionEvaluator] = None
_session_manager: Optional[SimulationSessionManager] = None
_rule_registry: Optional[RuleRegistry] = None


def init_dependencies(
    validation_engine: ValidationEngine,
    expression_evaluator: ExpressionEvaluator,
    session_manager: SimulationSessionManager,
    rule_registry: RuleRegistry
):
    """Initialize the global dependencies."""
    global _validation_engine, _expression_evaluator, _session_manager, _rule_registry
    _validation_engine = validation_engine
    _expression_evaluator = expression_evaluator
    _session_manager = session_manager
    _rule_registry = rule_registry


def get_validation_engine() -> ValidationEngine:
    """Dependency to get the validation engine."""
    if _validation_engine is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Validation engine not initialized"
        )
    return _validation_engine


def get_expression_evaluator() -> ExpressionEvaluator:
    """Dependency to get the expression evaluator."""
    if _expression_evaluator is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Expression evaluator not initialized"
        )
    return _expression_evaluator


def get_session_manager() -> SimulationSessionManager:
    """Dependency to get the simulation session manager."""
    if _session_manager is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Simulation session manager not initialized"
        )
    return _session_manager


def get_rule_registry() -> RuleRegistry:
    """Dependency to get the rule registry."""
    if _rule_registry is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Rule registry not initialized"
        )
    return _rule_registry


def _engine_error(e: WorkflowEngineError, action: str) -> HTTPException:
    logger.warning(f"Workflow engine error while {action}: {str(e)}")
    return HTTPException(status_code=status_code_for_error(e), detail=create_error_response(e))


def _internal_error(e: Exception, action: str) -> HTTPException:
    logger.error(f"Unexpected error while {action}: {str(e)}", exc_info=True)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "error": "InternalError",
            "message": f"An unexpected error occurred while {action}",
            "details": {"original_error": str(e)},
            "timestamp": datetime.utcnow().isoformat()
        }
    )


def _no_start_node(session_id: str, start_node_id: Optional[str]) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={
            "error": "StartNodeNotFound",
            "message": "No start node found for simulation",
            "details": {"session_id": session_id, "start_node_id": start_node_id}
        }
    )


# Request/Response models
class ValidateNodeRequest(GraphModel):
    """Request model for node validation."""
    node: NodeConfig = Field(..., description="Node to validate")


class ValidateEdgeRequest(GraphModel):
    """Request model for edge validation."""
    edge: EdgeConfig = Field(..., description="Edge to validate")
    source_node: Optional[NodeConfig] = Field(None, description="Resolved source node")
    target_node: Optional[NodeConfig] = Field(None, description="Resolved target node")
    edges: Optional[List[EdgeConfig]] = Field(None, description="All workflow edges, enables cardinality checks")


class EvaluateExpressionRequest(GraphModel):
    """Request model for evaluating a condition expression."""
    expression: str = Field(..., description="Expression to evaluate")
    context: Dict[str, Any] = Field(default_factory=dict, description="Variables visible to the expression")


class EvaluateExpressionResponse(GraphModel):
    """Response model for expression evaluation."""
    expression: str = Field(..., description="Evaluated expression")
    result: Any = Field(None, description="Expression value, false on failure")
    syntax_errors: List[str] = Field(default_factory=list, description="Problems found while parsing")


class ExecuteScriptRequest(GraphModel):
    """Request model for executing a script."""
    script: str = Field(..., description="Statements separated by ';' or newlines")
    context: Dict[str, Any] = Field(default_factory=dict, description="Variables visible to the script")


class ExecuteScriptResponse(GraphModel):
    """Response model for script execution."""
    variables: Dict[str, Any] = Field(..., description="Context after the script ran")


class CreateSimulationRequest(GraphModel):
    """Request model for creating a simulation session."""
    graph: WorkflowGraph = Field(..., description="Workflow to simulate")
    session_id: Optional[str] = Field(None, description="Explicit session id")
    start: bool = Field(False, description="Start the run immediately")
    start_node_id: Optional[str] = Field(None, description="Explicit start node id")
    variables: Dict[str, Any] = Field(default_factory=dict, description="Initial variables")


class StartSimulationRequest(GraphModel):
    """Request model for starting a simulation run."""
    start_node_id: Optional[str] = Field(None, description="Explicit start node id")
    variables: Dict[str, Any] = Field(default_factory=dict, description="Initial variables")


class RunSimulationRequest(GraphModel):
    """Request model for running a simulation to its end."""
    max_steps: Optional[int] = Field(None, ge=1, description="Tighter step budget for this call")


class SetVariableRequest(GraphModel):
    """Request model for setting a simulation variable."""
    value: Any = Field(None, description="Variable value")


class SimulationResponse(GraphModel):
    """Response model carrying a session's state."""
    session_id: str = Field(..., description="Simulation session id")
    state: SimulationState = Field(..., description="Current simulation state")
    message: str = Field("", description="Human readable summary")


# Validation endpoints

@router.post(
    "/validate/node",
    response_model=ValidationResult,
    summary="Validate a node",
    description="Run property, node and globally registered node rules against a single node"
)
async def validate_node(
    request: ValidateNodeRequest,
    engine: ValidationEngine = Depends(get_validation_engine)
) -> ValidationResult:
    """
    Validate a single node.

    Args:
        request: Node validation request
        engine: Validation engine dependency

    Returns:
        Validation result for the node
    """
    try:
        logger.debug(f"Validating node: {request.node.id}")
        return await engine.validate_node_async(request.node)
    except WorkflowEngineError as e:
        raise _engine_error(e, "validating node")
    except Exception as e:
        raise _internal_error(e, "validating node")


@router.post(
    "/validate/edge",
    response_model=ValidationResult,
    summary="Validate an edge",
    description="Check an edge against the connection rules of its source node and edge-scoped rules"
)
async def validate_edge(
    request: ValidateEdgeRequest,
    engine: ValidationEngine = Depends(get_validation_engine)
) -> ValidationResult:
    """Validate a single edge."""
    try:
        logger.debug(f"Validating edge: {request.edge.id}")
        return await engine.validate_edge_async(
            request.edge,
            source_node=request.source_node,
            target_node=request.target_node,
            edges=request.edges
        )
    except WorkflowEngineError as e:
        raise _engine_error(e, "validating edge")
    except Exception as e:
        raise _internal_error(e, "validating edge")


@router.post(
    "/validate/workflow",
    response_model=ValidationResult,
    summary="Validate a workflow",
    description="Validate every node and edge, then run workflow-scoped rules and structural checks"
)
async def validate_workflow(
    request: WorkflowGraph,
    engine: ValidationEngine = Depends(get_validation_engine)
) -> ValidationResult:
    """
    Validate a whole workflow.

    Args:
        request: Workflow nodes and edges
        engine: Validation engine dependency

    Returns:
        Aggregate validation result
    """
    try:
        logger.info(f"Validating workflow with {len(request.nodes)} nodes and {len(request.edges)} edges")
        return await engine.validate_workflow_async(request.nodes, request.edges)
    except WorkflowEngineError as e:
        raise _engine_error(e, "validating workflow")
    except Exception as e:
        raise _internal_error(e, "validating workflow")


@router.get(
    "/rules",
    response_model=List[Dict[str, Any]],
    summary="List registered rules",
    description="List globally registered rules in registration order"
)
async def list_rules(
    registry: RuleRegistry = Depends(get_rule_registry)
) -> List[Dict[str, Any]]:
    """List registered rules without their callables."""
    return [rule.model_dump(by_alias=True, mode="json") for rule in registry.list_rules()]


# Expression endpoints

@router.post(
    "/expressions/evaluate",
    response_model=EvaluateExpressionResponse,
    summary="Evaluate an expression",
    description="Evaluate a condition expression against a context; failures evaluate to false"
)
async def evaluate_expression(
    request: EvaluateExpressionRequest,
    evaluator: ExpressionEvaluator = Depends(get_expression_evaluator)
) -> EvaluateExpressionResponse:
    """Evaluate a condition expression."""
    return EvaluateExpressionResponse(
        expression=request.expression,
        result=evaluator.evaluate(request.expression, request.context),
        syntax_errors=evaluator.check_syntax(request.expression)
    )


@router.post(
    "/expressions/execute",
    response_model=ExecuteScriptResponse,
    summary="Execute a script",
    description="Execute a script against a context; failures return the context unchanged"
)
async def execute_script(
    request: ExecuteScriptRequest,
    evaluator: ExpressionEvaluator = Depends(get_expression_evaluator)
) -> ExecuteScriptResponse:
    """Execute a script."""
    return ExecuteScriptResponse(variables=dict(evaluator.execute(request.script, request.context)))


# Simulation endpoints

@router.post(
    "/simulations",
    response_model=SimulationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a simulation session",
    description="Create a simulation session for a workflow graph and optionally start it"
)
async def create_simulation(
    request: CreateSimulationRequest,
    manager: SimulationSessionManager = Depends(get_session_manager)
) -> SimulationResponse:
    """
    Create a simulation session.

    Args:
        request: Session creation request
        manager: Session manager dependency

    Returns:
        The new session id and its state

    Raises:
        HTTPException: If the session cannot be created or the start node is missing
    """
    try:
        session = manager.create_session(request.graph, session_id=request.session_id)
        for name, value in request.variables.items():
            manager.set_variable(session.session_id, name, value)

        message = "Simulation session created"
        if request.start:
            if not manager.start(session.session_id, request.start_node_id):
                manager.delete_session(session.session_id)
                raise _no_start_node(session.session_id, request.start_node_id)
            message = "Simulation session created and started"

        return SimulationResponse(
            session_id=session.session_id,
            state=manager.get_state(session.session_id),
            message=message
        )
    except HTTPException:
        raise
    except WorkflowEngineError as e:
        raise _engine_error(e, "creating simulation")
    except Exception as e:
        raise _internal_error(e, "creating simulation")


@router.get(
    "/simulations",
    response_model=List[Dict[str, Any]],
    summary="List simulation sessions"
)
async def list_simulations(
    manager: SimulationSessionManager = Depends(get_session_manager)
) -> List[Dict[str, Any]]:
    """List all simulation sessions."""
    return [session.to_dict() for session in manager.list_sessions()]


@router.get(
    "/simulations/{session_id}",
    response_model=SimulationResponse,
    summary="Get simulation state"
)
async def get_simulation(
    session_id: str,
    manager: SimulationSessionManager = Depends(get_session_manager)
) -> SimulationResponse:
    """Get the state of a simulation session."""
    try:
        return SimulationResponse(session_id=session_id, state=manager.get_state(session_id))
    except WorkflowEngineError as e:
        raise _engine_error(e, "reading simulation")
    except Exception as e:
        raise _internal_error(e, "reading simulation")


@router.post(
    "/simulations/{session_id}/start",
    response_model=SimulationResponse,
    summary="Start a simulation run",
    description="Start at the given node or the first node of category start"
)
async def start_simulation(
    session_id: str,
    request: Optional[StartSimulationRequest] = None,
    manager: SimulationSessionManager = Depends(get_session_manager)
) -> SimulationResponse:
    """Start a simulation run."""
    request = request or StartSimulationRequest()
    try:
        if not manager.start(session_id, request.start_node_id, request.variables):
            raise _no_start_node(session_id, request.start_node_id)
        return SimulationResponse(
            session_id=session_id,
            state=manager.get_state(session_id),
            message="Simulation started"
        )
    except HTTPException:
        raise
    except WorkflowEngineError as e:
        raise _engine_error(e, "starting simulation")
    except Exception as e:
        raise _internal_error(e, "starting simulation")


@router.post(
    "/simulations/{session_id}/step",
    response_model=SimulationResponse,
    summary="Advance a simulation by one node"
)
async def step_simulation(
    session_id: str,
    manager: SimulationSessionManager = Depends(get_session_manager)
) -> SimulationResponse:
    """Advance a simulation by one step."""
    try:
        state = manager.step(session_id)
        return SimulationResponse(session_id=session_id, state=state, message=f"Simulation {state.status.value}")
    except WorkflowEngineError as e:
        raise _engine_error(e, "stepping simulation")
    except Exception as e:
        raise _internal_error(e, "stepping simulation")


@router.post(
    "/simulations/{session_id}/run",
    response_model=SimulationResponse,
    summary="Run a simulation until it stops",
    description="Step until the run completes, gets stuck or exhausts its step budget"
)
async def run_simulation(
    session_id: str,
    request: Optional[RunSimulationRequest] = None,
    manager: SimulationSessionManager = Depends(get_session_manager)
) -> SimulationResponse:
    """Run a simulation until it leaves the running status."""
    request = request or RunSimulationRequest()
    try:
        state = manager.run(session_id, request.max_steps)
        return SimulationResponse(session_id=session_id, state=state, message=f"Simulation {state.status.value}")
    except WorkflowEngineError as e:
        raise _engine_error(e, "running simulation")
    except Exception as e:
        raise _internal_error(e, "running simulation")


@router.post(
    "/simulations/{session_id}/stop",
    response_model=SimulationResponse,
    summary="Stop a simulation run"
)
async def stop_simulation(
    session_id: str,
    manager: SimulationSessionManager = Depends(get_session_manager)
) -> SimulationResponse:
    """Reset a simulation to idle."""
    try:
        return SimulationResponse(session_id=session_id, state=manager.stop(session_id), message="Simulation stopped")
    except WorkflowEngineError as e:
        raise _engine_error(e, "stopping simulation")
    except Exception as e:
        raise _internal_error(e, "stopping simulation")


@router.put(
    "/simulations/{session_id}/variables/{name}",
    response_model=SimulationResponse,
    summary="Set a simulation variable"
)
async def set_simulation_variable(
    session_id: str,
    name: str,
    request: SetVariableRequest,
    manager: SimulationSessionManager = Depends(get_session_manager)
) -> SimulationResponse:
    """Merge one variable into a simulation."""
    try:
        state = manager.set_variable(session_id, name, request.value)
        return SimulationResponse(session_id=session_id, state=state, message=f"Variable '{name}' set")
    except WorkflowEngineError as e:
        raise _engine_error(e, "setting simulation variable")
    except Exception as e:
        raise _internal_error(e, "setting simulation variable")


@router.delete(
    "/simulations/{session_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a simulation session"
)
async def delete_simulation(
    session_id: str,
    manager: SimulationSessionManager = Depends(get_session_manager)
):
    """
    Delete a simulation session.

    Raises:
        HTTPException: If the session does not exist
    """
    if not manager.delete_session(session_id):
        logger.warning(f"Simulation session not found for deletion: {session_id}")
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error": "SessionNotFound",
                "message": f"Simulation session '{session_id}' not found",
                "details": {"session_id": session_id}
            }
        )
    logger.info(f"Deleted simulation session: {session_id}")
