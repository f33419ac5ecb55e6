# tests/orchestration/test_trail_assembly.py

from fakes import story_graph
from orchestration.trail_assembly import graph_to_trail_steps


def test_steps_follow_breadth_first_order():
    graph = story_graph()
    for node in graph:
        node.body = f"Scene {node.id} begins here. It continues for a while."

    steps = graph_to_trail_steps(graph)

    assert [step.node_id for step in steps] == [
        "n1", "n2", "n3", "n4", "n5", "n6", "n7", "n8"
    ]
    assert [step.step_order for step in steps] == list(range(1, 9))
    first = steps[0]
    assert first.title == "Scene n1 begins here."
    assert [choice.next_node_id for choice in first.choices] == ["n2", "n3"]
    assert first.depth == 1
    n5 = steps[4]
    assert n5.is_convergence is True
    assert n5.metadata == {
        "incoming_edges": 2,
        "outgoing_edges": 1,
        "convergence_point": True,
    }


def test_long_first_sentence_is_truncated():
    graph = story_graph()
    graph.node("n1").body = "word " * 40

    title = graph_to_trail_steps(graph)[0].title

    assert len(title) == 80
    assert title.endswith("...")
