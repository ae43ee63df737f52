"""
Unit Tests for the workflow graph resolver

Tests cover:
- Successor resolution (fan-out, leaf nodes, dangling edges)
- Edge conditions (literals, expressions, evaluation errors)
- Definition parsing and integrity checks
"""

import pytest
from pydantic import ValidationError

from hookflow.core.exceptions import DefinitionError
from hookflow.core.graph import ConditionError, evaluate_condition, next_nodes
from hookflow.core.nodes import NodeKind, parse_definition


# ============================================================================
# RESOLUTION TESTS
# ============================================================================

@pytest.mark.unit
def test_next_nodes_fan_out(fan_out_workflow):
    """Both targets of n1 are returned in edge order"""
    result = next_nodes(fan_out_workflow, "n1")

    assert [node.id for node in result] == ["n2", "n3"]


@pytest.mark.unit
def test_next_nodes_leaf_returns_empty(fan_out_workflow):
    assert next_nodes(fan_out_workflow, "n2") == []


@pytest.mark.unit
def test_next_nodes_unknown_current_node(fan_out_workflow):
    assert next_nodes(fan_out_workflow, "missing") == []


@pytest.mark.unit
def test_next_nodes_drops_targets_missing_from_node_set():
    """Only single-edge successors present in the node set are returned"""
    graph = {
        "nodes": [{"id": "a", "type": "transform"}, {"id": "b", "type": "transform"}],
        "edges": [
            {"source": "a", "target": "b"},
            {"source": "a", "target": "ghost"},
        ],
    }

    assert [node.id for node in next_nodes(graph, "a")] == ["b"]


@pytest.mark.unit
def test_next_nodes_unparseable_definition():
    assert next_nodes("not a graph", "a") == []
    assert next_nodes({"nodes": [{"id": ""}]}, "a") == []


@pytest.mark.unit
def test_next_nodes_accepts_from_to_aliases():
    graph = {
        "nodes": [{"id": "a"}, {"id": "b"}],
        "edges": [{"from": "a", "to": "b"}],
    }

    assert [node.id for node in next_nodes(graph, "a")] == ["b"]


@pytest.mark.unit
def test_next_nodes_only_follows_immediate_edges():
    graph = {
        "nodes": [{"id": "a"}, {"id": "b"}, {"id": "c"}],
        "edges": [{"source": "a", "target": "b"}, {"source": "b", "target": "c"}],
    }

    assert [node.id for node in next_nodes(graph, "a")] == ["b"]


# ============================================================================
# CONDITION TESTS
# ============================================================================

@pytest.mark.unit
def test_decision_branches_follow_decision_key(decision_workflow):
    assert [n.id for n in next_nodes(decision_workflow, "check", {"decision": True})] == ["high"]
    assert [n.id for n in next_nodes(decision_workflow, "check", {"decision": False})] == ["low"]


@pytest.mark.unit
def test_decision_missing_key_counts_as_false(decision_workflow):
    assert [n.id for n in next_nodes(decision_workflow, "check", {})] == ["low"]


@pytest.mark.unit
@pytest.mark.parametrize("condition, output, expected", [
    (None, {}, True),
    ("", {}, True),
    ("yes", {"decision": "yes"}, True),
    ("no", {"decision": "yes"}, False),
    ("data.get('score', 0) > 3", {"score": 5}, True),
    ("data.get('score', 0) > 3", {"score": 1}, False),
    ("data['intent'] == 'refund' and len(data['items']) > 0", {"intent": "refund", "items": [1]}, True),
    ("'vip' in output.get('tags', [])", {"tags": ["vip"]}, True),
    ("data.get('text', '').lower().startswith('hola')", {"text": "HOLA amigo"}, True),
    ("data['score'] * 2 > 5", {"score": 3}, True),
])
def test_evaluate_condition(condition, output, expected):
    assert evaluate_condition(condition, output) is expected


@pytest.mark.unit
@pytest.mark.parametrize("condition", [
    "__import__('os')",
    "data.__class__",
    "open('/etc/passwd')",
    "data[",
    "unknown_name > 1",
    "'a' * 10000000000",
    "10000000000 * [0]",
    "(1, 2) * 10000000000",
    "'%0999999999d' % 1",
])
def test_evaluate_condition_rejects_unsafe_or_invalid(condition):
    with pytest.raises(ConditionError):
        evaluate_condition(condition, {"x": 1})


@pytest.mark.unit
def test_condition_error_makes_edge_non_traversable():
    graph = {
        "nodes": [{"id": "a"}, {"id": "b"}, {"id": "c"}],
        "edges": [
            {"source": "a", "target": "b", "condition": "data['missing'] > 1"},
            {"source": "a", "target": "c"},
        ],
    }

    assert [node.id for node in next_nodes(graph, "a", {"other": 1})] == ["c"]


@pytest.mark.unit
def test_boolean_json_condition_is_normalized():
    graph = {
        "nodes": [{"id": "a"}, {"id": "b"}],
        "edges": [{"source": "a", "target": "b", "condition": True}],
    }

    assert [node.id for node in next_nodes(graph, "a", {"decision": True})] == ["b"]
    assert next_nodes(graph, "a", {"decision": False}) == []


# ============================================================================
# DEFINITION TESTS
# ============================================================================

@pytest.mark.unit
def test_parse_definition_node_kinds():
    definition = parse_definition({
        "nodes": [
            {"id": "a", "type": "Email"},
            {"id": "b", "type": "foobar"},
            {"id": "c"},
        ],
        "edges": [],
    })

    kinds = {node.id: node.kind for node in definition.nodes}
    assert kinds == {"a": NodeKind.EMAIL, "b": NodeKind.UNKNOWN, "c": NodeKind.UNKNOWN}


@pytest.mark.unit
def test_parse_definition_lifts_data_into_config():
    definition = parse_definition({"nodes": [{"id": "a", "type": "agent", "data": {"agent_id": "x"}}]})

    assert definition.get_node("a").config == {"agent_id": "x"}


@pytest.mark.unit
def test_parse_definition_rejects_non_object():
    with pytest.raises(DefinitionError):
        parse_definition(["nodes"])


@pytest.mark.unit
def test_validate_integrity_duplicate_ids():
    definition = parse_definition({"nodes": [{"id": "a"}, {"id": "a"}]})

    with pytest.raises(DefinitionError, match="Duplicate node id"):
        definition.validate_integrity()


@pytest.mark.unit
def test_validate_integrity_dangling_edge():
    definition = parse_definition({"nodes": [{"id": "a"}], "edges": [{"source": "a", "target": "b"}]})

    with pytest.raises(DefinitionError, match="non-existent node"):
        definition.validate_integrity()


@pytest.mark.unit
def test_parsed_definition_is_frozen_and_ignores_extra_keys():
    definition = parse_definition({
        "nodes": [{"id": "a", "type": "api", "ui": {"color": "red"}}],
        "edges": [{"source": "a", "target": "a", "animated": True}],
        "viewport": {"zoom": 1},
    })

    node = definition.get_node("a")
    assert not hasattr(node, "ui")
    assert not hasattr(definition.edges[0], "animated")
    with pytest.raises(ValidationError):
        node.id = "b"
    with pytest.raises(ValidationError):
        definition.nodes = []
