# tests/test_graph_models.py

import pytest
from core.errors import StructureInvalidError
from fakes import EIGHT_NODE_GRAPH, FOUR_NODE_GRAPH, structure_reply
from models.graph_models import StoryGraph


def _graph(adjacency=EIGHT_NODE_GRAPH):
    return StoryGraph.from_skeleton(structure_reply(adjacency))


def test_from_skeleton_derives_convergence_and_depth():
    graph = _graph()

    assert graph.start_id == "n1"
    assert graph.convergence_ids == {"n5", "n7", "n8"}
    assert graph.max_depth() == 5
    assert graph.depths()["n8"] == 4
    assert graph.empty_node_ids() == graph.node_ids
    graph.check_invariants(max_depth=10, convergence_ratio=0.25, tolerance=0.2)


def test_targets_fall_back_to_edges():
    skeleton = {
        "dag": {
            "nodes": {
                "a": {"choices": [{"id": "a1", "text": "left"}, {"id": "a2"}]},
                "b": {},
                "c": {},
            },
            "edges": [
                {"from_node_id": "a", "to_node_id": "b"},
                {"from_node_id": "a", "to_node_id": "c", "choice_id": "a2"},
            ],
        }
    }
    graph = StoryGraph.from_skeleton(skeleton)

    targets = {c.id: graph.at(c.target).id for c in graph.node("a").choices}
    assert targets == {"a1": "b", "a2": "c"}
    assert graph.start_id == "a"


def test_unknown_target_is_rejected():
    reply = structure_reply({"n1": ["n2"], "n2": []})
    reply["nodes"][0]["choices"][0]["target_node_id"] = "n9"

    with pytest.raises(StructureInvalidError):
        StoryGraph.from_skeleton(reply)


def test_cycle_is_rejected():
    reply = structure_reply({"n1": ["n2"], "n2": ["n3"], "n3": ["n2"]})
    graph = StoryGraph.from_skeleton(reply)

    with pytest.raises(StructureInvalidError, match="cycle"):
        graph.check_invariants(max_depth=10, convergence_ratio=None, tolerance=0.2)


def test_multiple_roots_are_rejected():
    with pytest.raises(StructureInvalidError):
        StoryGraph.from_skeleton(
            {"nodes": [{"id": "a"}, {"id": "b"}]}
        )


def test_depth_and_ratio_bounds():
    graph = _graph()

    with pytest.raises(StructureInvalidError, match="longest path"):
        graph.check_invariants(max_depth=4, convergence_ratio=None, tolerance=0.2)
    with pytest.raises(StructureInvalidError, match="convergence ratio"):
        graph.check_invariants(max_depth=10, convergence_ratio=0.9, tolerance=0.1)
    with pytest.raises(StructureInvalidError, match="expected 9"):
        graph.check_invariants(
            max_depth=10, convergence_ratio=None, tolerance=0.2, expected_count=9
        )


def test_outline_and_clear_bodies():
    graph = _graph(FOUR_NODE_GRAPH)
    for node in graph:
        node.body = f"text of {node.id}"
    graph.clear_bodies(["n3"])

    assert graph.empty_node_ids() == ["n3"]
    [outline] = graph.outline(["n1"])
    assert [c["target_node_id"] for c in outline.choices] == ["n2", "n3"]
    data = graph.to_dict()
    assert data["convergence_points"] == ["n4"]
    assert len(data["edges"]) == 4
