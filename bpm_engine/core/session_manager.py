"""In-memory management of independent simulation sessions."""

import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from ..models.core import SimulationState, SimulationStatus, WorkflowGraph
from .events import EventBus
from .exceptions import ResourceExhaustionError, SessionNotFoundError, SimulationError
from .expressions import ExpressionEvaluator
from .logging import get_logger, simulation_extra
from .simulation_engine import DEFAULT_MAX_STEPS, SimulationEngine

logger = get_logger(__name__)


class SimulationSession:
    """A simulation engine together with its bookkeeping."""

    def __init__(self, session_id: str, engine: SimulationEngine):
        self.session_id = session_id
        self.engine = engine
        self.created_at = datetime.utcnow()
        self.updated_at = self.created_at
        self.lock = threading.RLock()

    def to_dict(self) -> Dict[str, Any]:
        """Convert session to dictionary representation."""
        state = self.engine.state
        return {
            "sessionId": self.session_id,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "nodeCount": len(self.engine.graph.nodes),
            "edgeCount": len(self.engine.graph.edges),
            "state": state.model_dump(by_alias=True, mode="json")
        }


class SimulationSessionManager:
    """Holds simulation engines keyed by session id.

    The session map is guarded by a re-entrant lock and every operation on a
    session holds that session's own lock, so calls on one session are
    serialised while different sessions proceed independently.
    """

    def __init__(
        self,
        evaluator: Optional[ExpressionEvaluator] = None,
        event_bus: Optional[EventBus] = None,
        max_steps: int = DEFAULT_MAX_STEPS,
        max_sessions: int = 100
    ):
        """Initialize the session manager.

        Args:
            evaluator: Evaluator shared by all engines
            event_bus: Channel handed to every engine
            max_steps: Step budget of each engine
            max_sessions: Maximum number of sessions held at once
        """
        self.evaluator = evaluator or ExpressionEvaluator()
        self.event_bus = event_bus
        self.max_steps = max_steps
        self.max_sessions = max_sessions
        self._sessions: Dict[str, SimulationSession] = {}
        self._session_lock_manager = threading.RLock()
        logger.info(f"SimulationSessionManager initialized with max_sessions={max_sessions}, max_steps={max_steps}")

    def create_session(self, graph: WorkflowGraph, session_id: Optional[str] = None) -> SimulationSession:
        """
        Create a session for a workflow graph.

        Args:
            graph: Workflow to simulate
            session_id: Optional explicit id, generated when omitted

        Returns:
            The new session

        Raises:
            SimulationError: If the id is already in use
            ResourceExhaustionError: If the session limit is reached
        """
        session_id = session_id or str(uuid.uuid4())

        with self._session_lock_manager:
            if session_id in self._sessions:
                raise SimulationError(f"Simulation session '{session_id}' already exists", session_id=session_id)
            if len(self._sessions) >= self.max_sessions:
                raise ResourceExhaustionError(
                    "Maximum number of simulation sessions reached",
                    resource_type="simulation_sessions",
                    current_usage=len(self._sessions),
                    limit=self.max_sessions
                )

            engine = SimulationEngine(
                graph,
                evaluator=self.evaluator,
                event_bus=self.event_bus,
                max_steps=self.max_steps,
                session_id=session_id
            )
            session = SimulationSession(session_id, engine)
            self._sessions[session_id] = session

        logger.info(
            f"Created simulation session {session_id} ({len(graph.nodes)} nodes, {len(graph.edges)} edges)",
            extra=simulation_extra(session_id=session_id)
        )
        return session

    def get_session(self, session_id: str) -> SimulationSession:
        """
        Get a session by id.

        Raises:
            SessionNotFoundError: If no session has this id
        """
        with self._session_lock_manager:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def list_sessions(self) -> List[SimulationSession]:
        with self._session_lock_manager:
            return list(self._sessions.values())

    def delete_session(self, session_id: str) -> bool:
        """
        Stop and remove a session.

        Returns:
            True if the session was removed, False if it did not exist
        """
        with self._session_lock_manager:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False

        with session.lock:
            session.engine.stop()
        logger.info(f"Deleted simulation session {session_id}", extra=simulation_extra(session_id=session_id))
        return True

    def _with_session(self, session_id: str, operation: Callable[[SimulationEngine], Any]) -> Any:
        session = self.get_session(session_id)
        with session.lock:
            result = operation(session.engine)
            session.updated_at = datetime.utcnow()
        return result

    def start(self, session_id: str, start_node_id: Optional[str] = None,
              variables: Optional[Dict[str, Any]] = None) -> bool:
        """Start the session's run; False when no start node was found."""
        return self._with_session(session_id, lambda engine: engine.start(start_node_id, variables))

    def step(self, session_id: str) -> SimulationState:
        return self._with_session(session_id, lambda engine: engine.step())

    def run(self, session_id: str, max_steps: Optional[int] = None) -> SimulationState:
        return self._with_session(session_id, lambda engine: engine.run(max_steps))

    def stop(self, session_id: str) -> SimulationState:
        def stop_engine(engine: SimulationEngine) -> SimulationState:
            engine.stop()
            return engine.state
        return self._with_session(session_id, stop_engine)

    def set_variable(self, session_id: str, name: str, value: Any) -> SimulationState:
        def set_on_engine(engine: SimulationEngine) -> SimulationState:
            engine.set_variable(name, value)
            return engine.state
        return self._with_session(session_id, set_on_engine)

    def get_state(self, session_id: str) -> SimulationState:
        return self._with_session(session_id, lambda engine: engine.state)

    def cleanup_finished_sessions(self, max_age_hours: int = 24) -> int:
        """
        Remove sessions that are not running and were last touched before the cutoff.

        Args:
            max_age_hours: Maximum idle age in hours

        Returns:
            Number of sessions removed
        """
        cutoff_time = datetime.utcnow() - timedelta(hours=max_age_hours)
        with self._session_lock_manager:
            stale = [
                session_id for session_id, session in self._sessions.items()
                if session.engine.status != SimulationStatus.RUNNING and session.updated_at < cutoff_time
            ]
            for session_id in stale:
                del self._sessions[session_id]

        if stale:
            logger.info(f"Cleaned up {len(stale)} finished simulation sessions")
        return len(stale)

    def session_count(self) -> int:
        with self._session_lock_manager:
            return len(self._sessions)
