"""Tests for the simulation engine and its branching policy."""

import logging

import pytest

from bpm_engine.core.simulation_engine import (
    SimulationEngine,
    select_by_first_truthy_condition,
    select_default_edge,
    select_next_edge,
)
from bpm_engine.models.core import EdgeConfig, NodeConfig, SimulationStatus, WorkflowGraph


def cyclic_graph():
    """a -> b -> a forever through the gateway's default edge."""
    return WorkflowGraph(
        nodes=[
            NodeConfig(id="a", node_type="startEvent", category="start"),
            NodeConfig(id="b", node_type="exclusiveGateway", category="gateway"),
        ],
        edges=[
            EdgeConfig(id="ab", source="a", target="b"),
            EdgeConfig(id="ba", source="b", target="a", properties={"isDefault": True}),
        ]
    )


class TestBranchSelection:
    """Test cases for the named branching functions."""

    def test_first_truthy_condition_wins(self, evaluator):
        edges = [
            EdgeConfig(id="e1", source="g", target="x", properties={"condition": "amount > 100"}),
            EdgeConfig(id="e2", source="g", target="y", properties={"condition": "amount > 10"}),
        ]
        assert select_by_first_truthy_condition(edges, evaluator, {"amount": 500}).id == "e1"
        assert select_by_first_truthy_condition(edges, evaluator, {"amount": 50}).id == "e2"
        assert select_by_first_truthy_condition(edges, evaluator, {"amount": 5}) is None

    def test_edges_without_condition_never_match(self, evaluator):
        edges = [EdgeConfig(id="e1", source="g", target="x")]
        assert select_by_first_truthy_condition(edges, evaluator, {}) is None

    def test_legacy_condition_field(self, evaluator):
        edges = [EdgeConfig(id="e1", source="g", target="x", condition="approved")]
        assert select_by_first_truthy_condition(edges, evaluator, {"approved": True}).id == "e1"

    def test_property_condition_takes_precedence(self, evaluator):
        edge = EdgeConfig(id="e1", source="g", target="x", condition="true", properties={"condition": "false"})
        assert select_by_first_truthy_condition([edge], evaluator, {}) is None

    def test_default_edge(self):
        edges = [
            EdgeConfig(id="e1", source="g", target="x"),
            EdgeConfig(id="e2", source="g", target="y", properties={"isDefault": True}),
            EdgeConfig(id="e3", source="g", target="z", data={"isDefault": True}),
        ]
        assert select_default_edge(edges).id == "e2"
        assert select_default_edge(edges[2:]).id == "e3"
        assert select_default_edge(edges[:1]) is None

    def test_non_gateway_takes_first_edge(self, evaluator):
        node = NodeConfig(id="t", node_type="task", category="task")
        edges = [
            EdgeConfig(id="e1", source="t", target="x", properties={"condition": "false"}),
            EdgeConfig(id="e2", source="t", target="y"),
        ]
        assert select_next_edge(node, edges, evaluator, {}).id == "e1"
        assert select_next_edge(node, [], evaluator, {}) is None


class TestSimulationLifecycle:
    """Test cases for start, step, run and stop."""

    def test_start_without_start_node(self, evaluator, event_bus, recorded_events):
        """Test that a graph without start node does not start."""
        graph = WorkflowGraph(nodes=[NodeConfig(id="t", node_type="task")])
        engine = SimulationEngine(graph, evaluator, event_bus)

        assert engine.start() is False
        assert engine.state.active is False
        assert engine.state.status == SimulationStatus.IDLE
        assert recorded_events == []

    def test_start_with_unknown_explicit_id(self, linear_graph):
        engine = SimulationEngine(linear_graph)
        assert engine.start("nope") is False
        assert engine.state.active is False

    def test_start(self, linear_graph, event_bus, recorded_events):
        engine = SimulationEngine(linear_graph, event_bus=event_bus)

        assert engine.start() is True

        state = engine.state
        assert state.active is True
        assert state.current_node_id == "start"
        assert state.history == ["start"]
        assert state.variables == {}
        assert state.status == SimulationStatus.RUNNING
        assert state.step_count == 0
        assert [event.type for event in recorded_events] == ["workflow:loaded", "simulation:started"]
        assert recorded_events[1].payload == {"startNodeId": "start"}

    def test_start_at_explicit_node(self, linear_graph):
        engine = SimulationEngine(linear_graph)
        assert engine.start("task") is True
        assert engine.state.current_node_id == "task"

    def test_step_through_linear_graph(self, linear_graph, event_bus, recorded_events):
        """Test scripts, history and completion on a linear graph."""
        engine = SimulationEngine(linear_graph, event_bus=event_bus)
        engine.start(variables={"count": 0})

        engine.step()
        state = engine.step()
        assert state.current_node_id == "end"
        assert state.variables == {"count": 1}
        assert state.history == ["start", "task", "end"]

        state = engine.step()
        assert state.current_node_id is None
        assert state.active is True
        assert state.status == SimulationStatus.COMPLETED
        assert state.variables == {"count": 1}

        assert engine.step() == state

        types = [event.type for event in recorded_events]
        assert types.count("simulation:stepped") == 2
        assert types[-1] == "simulation:completed"

    def test_stepped_event_payload(self, linear_graph, event_bus, recorded_events):
        engine = SimulationEngine(linear_graph, event_bus=event_bus)
        engine.start()
        engine.step()

        stepped = [event for event in recorded_events if event.type == "simulation:stepped"]
        assert stepped[0].payload == {"fromNodeId": "start", "toNodeId": "task", "edgeId": "e1", "stepCount": 1}

    def test_step_is_noop_when_idle(self, linear_graph):
        engine = SimulationEngine(linear_graph)
        state = engine.step()
        assert state.active is False
        assert state.step_count == 0

    def test_failing_script_does_not_abort_step(self, evaluator):
        graph = WorkflowGraph(
            nodes=[
                NodeConfig(id="s", node_type="startEvent", category="start", properties={"script": "x = missing + 1"}),
                NodeConfig(id="e", node_type="endEvent", category="end"),
            ],
            edges=[EdgeConfig(id="se", source="s", target="e")]
        )
        engine = SimulationEngine(graph, evaluator)
        engine.start(variables={"x": 1})

        state = engine.step()
        assert state.current_node_id == "e"
        assert state.variables == {"x": 1}

    @pytest.mark.parametrize("amount, expected", [
        (150, "low"),
        (2000, "high"),
        (50, "review"),
    ])
    def test_gateway_branching(self, gateway_graph, amount, expected):
        """Test first-truthy-wins with default fallback."""
        engine = SimulationEngine(gateway_graph)
        engine.start(variables={"amount": amount})

        engine.step()
        state = engine.step()

        assert state.current_node_id == expected
        assert state.history == ["start", "gw", expected]

    def test_gateway_without_match_or_default_is_stuck(self, gateway_graph, event_bus, recorded_events):
        gateway_graph.edges = [edge for edge in gateway_graph.edges if edge.id != "to-review"]
        engine = SimulationEngine(gateway_graph, event_bus=event_bus)
        engine.start(variables={"amount": 1})

        engine.step()
        state = engine.step()

        assert state.current_node_id is None
        assert state.active is True
        assert state.status == SimulationStatus.STUCK
        assert state.variables == {"amount": 1}
        assert recorded_events[-1].type == "simulation:stuck"
        assert recorded_events[-1].payload["nodeId"] == "gw"

    def test_literal_gateway_condition(self, gateway_graph):
        """Test a condition stored as a JSON boolean rather than text."""
        gateway_graph.edges[1].properties["condition"] = True
        engine = SimulationEngine(gateway_graph)
        engine.start("gw", variables={"amount": 1})

        assert engine.step().current_node_id == "high"

    def test_unparseable_gateway_condition_falls_back_to_default(self, gateway_graph):
        gateway_graph.edges[1].properties["condition"] = {"op": ">"}
        gateway_graph.edges[2].properties["condition"] = "(" * 200 + "1" + ")" * 200
        engine = SimulationEngine(gateway_graph)
        engine.start("gw", variables={"amount": 5000})

        assert engine.step().current_node_id == "review"

    def test_edge_to_missing_node_is_stuck(self):
        graph = WorkflowGraph(
            nodes=[NodeConfig(id="s", node_type="startEvent", category="start")],
            edges=[EdgeConfig(id="e1", source="s", target="ghost")]
        )
        engine = SimulationEngine(graph)
        engine.start()

        state = engine.step()

        assert state.status == SimulationStatus.STUCK
        assert state.current_node_id is None
        assert state.history == ["s"]

    def test_set_variable_is_visible_during_step(self):
        """Test that a variable set mid-run reaches scripts and conditions."""
        graph = WorkflowGraph(
            nodes=[
                NodeConfig(id="s", node_type="startEvent", category="start", properties={"script": "y = x * 2"}),
                NodeConfig(id="big", node_type="task"),
                NodeConfig(id="small", node_type="task"),
            ],
            edges=[
                EdgeConfig(id="e1", source="s", target="big"),
            ]
        )
        engine = SimulationEngine(graph)
        engine.start()
        engine.set_variable("x", 5)

        state = engine.step()
        assert state.variables == {"x": 5, "y": 10}

    def test_set_variable_drives_gateway(self, gateway_graph):
        engine = SimulationEngine(gateway_graph)
        engine.start("gw")
        engine.set_variable("amount", 5000)
        assert engine.step().current_node_id == "high"

    def test_variables_set_while_idle_seed_the_run(self, gateway_graph):
        engine = SimulationEngine(gateway_graph)
        engine.set_variable("amount", 150)
        assert engine.state.variables == {"amount": 150}

        engine.start()
        assert engine.state.variables == {"amount": 150}
        assert engine.run().current_node_id is None
        assert engine.state.history[-1] == "low"

    def test_cursor_on_removed_node_is_noop(self, linear_graph):
        engine = SimulationEngine(linear_graph)
        engine.start()
        linear_graph.nodes = [node for node in linear_graph.nodes if node.id != "start"]

        state = engine.step()
        assert state.current_node_id == "start"
        assert state.step_count == 0
        assert engine.run().status == SimulationStatus.RUNNING

    def test_run_to_completion(self, linear_graph):
        engine = SimulationEngine(linear_graph)
        engine.start(variables={"count": 10})

        state = engine.run()

        assert state.status == SimulationStatus.COMPLETED
        assert state.step_count == 3
        assert state.variables == {"count": 11}
        assert state.history == ["start", "task", "end"]

    def test_stop_resets_to_idle(self, linear_graph, event_bus, recorded_events):
        engine = SimulationEngine(linear_graph, event_bus=event_bus)
        engine.start(variables={"count": 0})
        engine.step()

        engine.stop()

        state = engine.state
        assert state.active is False
        assert state.current_node_id is None
        assert state.history == []
        assert state.variables == {}
        assert state.status == SimulationStatus.IDLE
        assert recorded_events[-1].type == "simulation:stopped"

        engine.stop()
        assert [event.type for event in recorded_events].count("simulation:stopped") == 1

    def test_restart_after_completion_starts_fresh(self, linear_graph):
        engine = SimulationEngine(linear_graph)
        engine.start(variables={"count": 0})
        engine.run()

        engine.start()
        assert engine.state.variables == {}
        assert engine.state.history == ["start"]

    def test_state_is_a_copy(self, linear_graph):
        engine = SimulationEngine(linear_graph)
        engine.start(variables={"nested": {"a": 1}})

        state = engine.state
        state.variables["nested"]["a"] = 2
        state.history.append("elsewhere")

        assert engine.state.variables == {"nested": {"a": 1}}
        assert engine.state.history == ["start"]


class TestStepBudget:
    """Test cases for the runaway guard."""

    def test_cyclic_graph_halts(self, event_bus, recorded_events):
        engine = SimulationEngine(cyclic_graph(), event_bus=event_bus, max_steps=10)
        engine.start()

        state = engine.run()

        assert state.status == SimulationStatus.HALTED
        assert state.step_count == 10
        assert state.current_node_id is None
        assert state.active is True
        assert len(state.history) == 11
        assert recorded_events[-1].type == "simulation:halted"
        assert recorded_events[-1].payload == {"nodeId": "a", "stepCount": 10}

    def test_run_with_tighter_budget(self):
        engine = SimulationEngine(cyclic_graph(), max_steps=100)
        engine.start()

        state = engine.run(max_steps=3)
        assert state.status == SimulationStatus.HALTED
        assert state.step_count == 3

    def test_run_cannot_exceed_engine_budget(self):
        engine = SimulationEngine(cyclic_graph(), max_steps=5)
        engine.start()
        assert engine.run(max_steps=50).step_count == 5

    def test_single_steps_halt_at_budget(self):
        engine = SimulationEngine(cyclic_graph(), max_steps=2)
        engine.start()

        engine.step()
        engine.step()
        state = engine.step()

        assert state.status == SimulationStatus.HALTED
        assert engine.step() == state

    def test_invalid_budget(self, linear_graph):
        with pytest.raises(ValueError):
            SimulationEngine(linear_graph, max_steps=0)


class TestSimulationLogging:
    """Log records carry the run's session, node and status."""

    def test_finish_record_names_session_and_status(self, linear_graph, caplog):
        engine = SimulationEngine(linear_graph, session_id="order-42")

        with caplog.at_level(logging.INFO, logger="bpm_engine.core.simulation_engine"):
            engine.start(variables={"count": 0})
            engine.run()

        started, finished = [record for record in caplog.records if record.levelno == logging.INFO]
        assert started.extra_fields == {
            "session_id": "order-42", "node_id": "start", "status": "running", "step_count": 0
        }
        assert finished.extra_fields == {
            "session_id": "order-42", "node_id": "end", "status": "completed", "step_count": 3
        }

    def test_halt_is_logged_as_warning(self, caplog):
        engine = SimulationEngine(cyclic_graph(), max_steps=4)
        engine.start()

        with caplog.at_level(logging.WARNING, logger="bpm_engine.core.simulation_engine"):
            engine.run()

        warning = next(record for record in caplog.records if record.levelno == logging.WARNING)
        assert "step budget of 4" in warning.getMessage()
        assert warning.extra_fields["status"] == "running"
        assert "session_id" not in warning.extra_fields
