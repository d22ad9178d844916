"""Tests for graph loading, validation and workflow management."""

import pytest

from automation_engine.core.exceptions import GraphValidationError, RecordNotFoundError, ValidationErrorKind
from automation_engine.core.graph_manager import load_graph, validate_definition
from automation_engine.models.core import NodeType

from conftest import chain, edge, node


def linear_definition():
    return {
        "nodes": [node("t", "trigger"), node("a", "action", message="hi"), node("b", "action", message="bye")],
        "edges": chain("t", "a", "b"),
    }


class TestLoadGraph:
    """Structural validation performed before any run starts."""

    def test_valid_graph_loads(self):
        graph = load_graph(linear_definition())

        assert graph.trigger.id == "t"
        assert graph.next_node_id("t") == "a"
        assert graph.next_node_id("b") is None

    @pytest.mark.parametrize("definition, kind", [
        ({"nodes": [], "edges": []}, ValidationErrorKind.EMPTY_GRAPH),
        ({"nodes": [node("a", "action")], "edges": []}, ValidationErrorKind.MISSING_TRIGGER),
        (
            {"nodes": [node("t1", "trigger"), node("t2", "trigger")], "edges": [edge("t1", "t2")]},
            ValidationErrorKind.MULTIPLE_TRIGGERS,
        ),
        (
            {"nodes": [node("t", "trigger"), node("t", "action")], "edges": []},
            ValidationErrorKind.DUPLICATE_NODE_ID,
        ),
        (
            {"nodes": [node("t", "trigger")], "edges": [edge("t", "ghost")]},
            ValidationErrorKind.DANGLING_EDGE,
        ),
        (
            {"nodes": [node("t", "trigger"), node("island", "action")], "edges": []},
            ValidationErrorKind.UNREACHABLE_NODE,
        ),
        (
            {"nodes": [{"id": "t", "type": "teleport"}], "edges": []},
            ValidationErrorKind.MALFORMED_DEFINITION,
        ),
    ])
    def test_invalid_graphs_report_kind(self, definition, kind):
        with pytest.raises(GraphValidationError) as exc_info:
            load_graph(definition)

        assert exc_info.value.kind == kind

    def test_first_matching_handle_wins(self):
        definition = {
            "nodes": [node("t", "trigger"), node("a", "action"), node("b", "action")],
            "edges": [edge("t", "a", "x"), edge("t", "b", "x")],
        }
        graph = load_graph(definition)

        assert graph.next_node_id("t", "x") == "a"
        assert graph.next_node_id("t", "y") is None
        assert graph.next_node_id("t") is None

    def test_legacy_aliases_are_accepted(self):
        definition = {
            "nodes": [
                {"id": "t", "type": "trigger", "data": {"triggerType": "manual"}},
                {"id": "d", "type": "delay", "data": {"delay": "5m"}},
            ],
            "edges": [{"source": "t", "target": "d", "sourceHandle": ""}],
        }
        graph = load_graph(definition)

        assert graph.get_node("d").type == NodeType.WAIT
        assert graph.get_node("d").config == {"delay": "5m"}
        assert graph.outgoing("t")[0].source_handle is None


class TestValidateDefinition:
    """Non-raising validation used by the API."""

    def test_reports_every_error(self):
        result = validate_definition({
            "nodes": [node("a", "action"), node("a", "action")],
            "edges": [edge("a", "missing")],
        })

        assert not result.is_valid
        assert result.error_kind == ValidationErrorKind.DUPLICATE_NODE_ID.value
        assert len(result.errors) == 3

    def test_cycles_are_warnings(self):
        result = validate_definition({
            "nodes": [node("t", "trigger"), node("a", "action"), node("b", "action")],
            "edges": chain("t", "a", "b") + [edge("b", "a", "again")],
        })

        assert result.is_valid
        assert any("cycles" in warning for warning in result.warnings)


class TestGraphManager:
    """Workflow storage through the graph manager."""

    def test_create_and_get_workflow(self, graph_manager):
        workflow = graph_manager.create_workflow("Linear", linear_definition(), description="three nodes")

        stored = graph_manager.get_workflow(workflow.id)
        assert stored.name == "Linear"
        assert stored.description == "three nodes"
        assert stored.is_active
        assert [n.id for n in stored.definition.nodes] == ["t", "a", "b"]

    def test_invalid_definition_is_not_stored(self, graph_manager):
        with pytest.raises(GraphValidationError):
            graph_manager.create_workflow("Broken", {"nodes": [node("a", "action")], "edges": []})

        assert graph_manager.list_workflows() == []

    def test_list_and_deactivate(self, graph_manager):
        first = graph_manager.create_workflow("First", linear_definition())
        graph_manager.create_workflow("Second", linear_definition())

        graph_manager.set_active(first.id, False)

        assert len(graph_manager.list_workflows()) == 2
        active = graph_manager.list_workflows(active_only=True)
        assert [summary.name for summary in active] == ["Second"]
        assert active[0].trigger_type == "manual"
        assert active[0].node_count == 3

    def test_delete_workflow(self, graph_manager):
        workflow = graph_manager.create_workflow("Doomed", linear_definition())

        assert graph_manager.delete_workflow(workflow.id)
        assert not graph_manager.delete_workflow(workflow.id)
        with pytest.raises(RecordNotFoundError):
            graph_manager.get_workflow(workflow.id)

    def test_update_workflow_revalidates(self, graph_manager):
        workflow = graph_manager.create_workflow("Editable", linear_definition())

        with pytest.raises(GraphValidationError):
            graph_manager.update_workflow(workflow.id, {"nodes": [], "edges": []})

        definition = linear_definition()
        definition["nodes"][2]["config"]["message"] = "changed"
        updated = graph_manager.update_workflow(workflow.id, definition, name="Edited")
        assert updated.name == "Edited"
        assert graph_manager.get_workflow(workflow.id).definition.nodes[2].config["message"] == "changed"
