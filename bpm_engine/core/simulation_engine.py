"""Simulation Engine that walks a single execution cursor through a workflow graph."""

import logging
from collections.abc import Mapping
from typing import Any, Dict, Optional, Sequence

from ..models.core import EdgeConfig, NodeConfig, SimulationState, SimulationStatus, WorkflowGraph
from .events import EventBus, WorkflowEventType
from .expressions import ExpressionEvaluator
from .logging import get_logger, simulation_extra

logger = get_logger(__name__)

DEFAULT_MAX_STEPS = 1000


def select_by_first_truthy_condition(
    edges: Sequence[EdgeConfig],
    evaluator: ExpressionEvaluator,
    variables: Mapping
) -> Optional[EdgeConfig]:
    """Return the first edge, in array order, whose condition evaluates truthy.

    Edges without a condition never match here; they can only be chosen as
    the default edge.
    """
    for edge in edges:
        condition = edge.condition_expression
        if condition and evaluator.evaluate(condition, variables):
            return edge
    return None


def select_default_edge(edges: Sequence[EdgeConfig]) -> Optional[EdgeConfig]:
    """Return the first edge flagged isDefault, or None."""
    for edge in edges:
        if edge.is_default:
            return edge
    return None


def select_next_edge(
    node: NodeConfig,
    edges: Sequence[EdgeConfig],
    evaluator: ExpressionEvaluator,
    variables: Mapping
) -> Optional[EdgeConfig]:
    """
    Choose the edge to follow out of a node.

    Gateways take the first edge with a truthy condition and fall back to the
    default edge. Every other category takes the first outgoing edge.

    Args:
        node: Node under the cursor
        edges: Outgoing edges of the node, in array order
        evaluator: Evaluator for edge conditions
        variables: Variables visible to the conditions

    Returns:
        Selected edge, or None when no edge qualifies
    """
    if not edges:
        return None
    if node.is_gateway:
        return select_by_first_truthy_condition(edges, evaluator, variables) or select_default_edge(edges)
    return edges[0]


class SimulationEngine:
    """Steps a workflow graph one node at a time.

    States: idle, running, then completed (no outgoing edges), stuck (no
    resolvable next node) or halted (step budget exhausted). ``stop`` resets
    to idle from anywhere.
    """

    def __init__(
        self,
        graph: WorkflowGraph,
        evaluator: Optional[ExpressionEvaluator] = None,
        event_bus: Optional[EventBus] = None,
        max_steps: int = DEFAULT_MAX_STEPS,
        session_id: Optional[str] = None
    ):
        """Initialize the simulation engine.

        Args:
            graph: Workflow to simulate; read on every step
            evaluator: Evaluator for node scripts and edge conditions
            event_bus: Channel notified of lifecycle transitions
            max_steps: Steps allowed per run before it is halted
            session_id: Id of the owning session, attached to log records
        """
        if max_steps < 1:
            raise ValueError("max_steps must be at least 1")
        self.graph = graph
        self.evaluator = evaluator or ExpressionEvaluator()
        self.event_bus = event_bus
        self.max_steps = max_steps
        self.session_id = session_id
        self._state = SimulationState()

    @property
    def state(self) -> SimulationState:
        """Deep copy of the current state; mutating it has no effect on the engine."""
        return self._state.model_copy(deep=True)

    @property
    def status(self) -> SimulationStatus:
        return self._state.status

    def _log(self, level: int, message: str, node_id: Optional[str] = None):
        logger.log(level, message, extra=simulation_extra(
            session_id=self.session_id,
            node_id=node_id,
            status=self._state.status,
            step_count=self._state.step_count
        ))

    def _emit(self, event_type: WorkflowEventType, payload: Dict[str, Any]):
        if self.event_bus is not None:
            self.event_bus.emit(event_type, payload, source="SimulationEngine")

    def start(self, start_node_id: Optional[str] = None, variables: Optional[Dict[str, Any]] = None) -> bool:
        """
        Start a run at the given node or at the first node of category start.

        Variables set while idle are kept as the initial variables of the run.

        Args:
            start_node_id: Explicit start node id
            variables: Additional initial variables

        Returns:
            True if the run started, False if no start node was found (state unchanged)
        """
        start_node = self.graph.find_start_node(start_node_id)
        if start_node is None:
            self._log(
                logging.WARNING,
                f"No start node found for simulation (requested: {start_node_id or 'first start-category node'})"
            )
            return False

        seeded = dict(self._state.variables) if self._state.status == SimulationStatus.IDLE else {}
        seeded.update(variables or {})

        self._state = SimulationState(
            active=True,
            current_node_id=start_node.id,
            variables=seeded,
            history=[start_node.id],
            status=SimulationStatus.RUNNING,
            step_count=0
        )

        self._log(logging.INFO, f"Simulation started at node '{start_node.id}'", start_node.id)
        self._emit(WorkflowEventType.WORKFLOW_LOADED, {"simulation": True})
        self._emit(WorkflowEventType.SIMULATION_STARTED, {"startNodeId": start_node.id})
        return True

    def _finish(self, status: SimulationStatus, variables: Dict[str, Any], event_type: WorkflowEventType,
                node_id: Optional[str]):
        self._state.current_node_id = None
        self._state.variables = variables
        self._state.status = status
        self._log(logging.INFO, f"Simulation {status.value} after {self._state.step_count} steps", node_id)
        self._emit(event_type, {"nodeId": node_id, "stepCount": self._state.step_count})

    def _run_script(self, node: NodeConfig, variables: Dict[str, Any]) -> Dict[str, Any]:
        script = node.properties.get("script")
        if not script:
            return variables
        if not isinstance(script, str):
            self._log(logging.WARNING, f"Ignoring non-string script on node '{node.id}'", node.id)
            return variables

        result = self.evaluator.execute(script, dict(variables))
        if isinstance(result, Mapping):
            variables.update(result)
        return variables

    def step(self) -> SimulationState:
        """
        Advance the cursor by one node.

        No-op when the run is inactive, the cursor is empty or the node under
        the cursor no longer exists in the graph.

        When the selected edge targets an id that matches no node, the cursor
        does not move onto that id: the run ends as ``stuck`` with the cursor
        cleared, and ``simulation:stuck`` names the node the run left from.

        Returns:
            Copy of the state after the step
        """
        return self._step(self.max_steps)

    def _step(self, limit: int) -> SimulationState:
        state = self._state
        if not state.active or state.current_node_id is None:
            return self.state

        node = self.graph.get_node(state.current_node_id)
        if node is None:
            self._log(logging.WARNING, f"Simulation cursor points at missing node '{state.current_node_id}'",
                      state.current_node_id)
            return self.state

        if state.step_count >= limit:
            self._log(logging.WARNING, f"Simulation exceeded step budget of {limit}", node.id)
            self._finish(SimulationStatus.HALTED, state.variables, WorkflowEventType.SIMULATION_HALTED, node.id)
            return self.state

        state.step_count += 1
        variables = self._run_script(node, dict(state.variables))

        outgoing = self.graph.outgoing_edges(node.id)
        if not outgoing:
            self._finish(SimulationStatus.COMPLETED, variables, WorkflowEventType.SIMULATION_COMPLETED, node.id)
            return self.state

        edge = select_next_edge(node, outgoing, self.evaluator, variables)
        next_node = self.graph.get_node(edge.target) if edge is not None and edge.target else None
        if next_node is None:
            if edge is not None:
                self._log(logging.WARNING, f"Edge '{edge.id}' points at missing node '{edge.target}'", node.id)
            self._finish(SimulationStatus.STUCK, variables, WorkflowEventType.SIMULATION_STUCK, node.id)
            return self.state

        state.variables = variables
        state.history = [*state.history, next_node.id]
        state.current_node_id = next_node.id
        self._log(logging.DEBUG, f"Simulation step '{node.id}' -> '{next_node.id}' via '{edge.id}'", next_node.id)
        self._emit(WorkflowEventType.SIMULATION_STEPPED, {
            "fromNodeId": node.id,
            "toNodeId": next_node.id,
            "edgeId": edge.id,
            "stepCount": state.step_count
        })
        return self.state

    def run(self, max_steps: Optional[int] = None) -> SimulationState:
        """
        Step until the run is no longer running.

        Args:
            max_steps: Optional tighter step budget for this call

        Returns:
            Copy of the final state
        """
        limit = self.max_steps if max_steps is None else min(max_steps, self.max_steps)
        while self._state.status == SimulationStatus.RUNNING:
            before = self._state.step_count
            self._step(limit)
            if self._state.status == SimulationStatus.RUNNING and self._state.step_count == before:
                # cursor on a node removed from the graph
                break
        return self.state

    def stop(self) -> None:
        """Reset to the idle state, whatever the current state is."""
        was_active = self._state.active
        self._state = SimulationState()
        if was_active:
            self._log(logging.INFO, "Simulation stopped")
            self._emit(WorkflowEventType.SIMULATION_STOPPED, {})

    def set_variable(self, name: str, value: Any) -> None:
        """Merge one variable into the state, whether or not a run is active."""
        self._state.variables = {**self._state.variables, name: value}
