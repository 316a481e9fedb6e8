"""Tests for the dependency graph builder."""

import textwrap

import pytest

from converge.config import load_document
from converge.orchestrator import DependencyGraph
from converge.utils.errors import CyclicDependencyError, DependencyError


def _graph(text):
    document = load_document(textwrap.dedent(text))
    return DependencyGraph.from_declarations(document.resources)


def _make_graph(edges):
    """Build a graph from (address, [dependencies]) pairs in declaration order."""
    graph = DependencyGraph()
    for address, deps in edges:
        graph.add_node(address, deps)
    return graph


class TestTopologicalSort:
    def test_dependency_comes_first(self):
        graph = _graph("""
        resources:
          aws_iam_role:
            role_b:
              bucket_arn: ${aws_s3_bucket.bucket_a.arn}
          aws_s3_bucket:
            bucket_a:
              bucket: a
        """)
        assert graph.topological_sort() == ["aws_s3_bucket.bucket_a", "aws_iam_role.role_b"]

    def test_ties_follow_declaration_order(self):
        graph = _make_graph([
            ("t.c", []),
            ("t.a", []),
            ("t.b", []),
        ])
        assert graph.topological_sort() == ["t.c", "t.a", "t.b"]

    def test_order_is_deterministic(self):
        edges = [
            ("t.root", []),
            ("t.left", ["t.root"]),
            ("t.right", ["t.root"]),
            ("t.leaf", ["t.left", "t.right"]),
            ("t.lone", []),
        ]
        first = _make_graph(edges).topological_sort()
        for _ in range(5):
            assert _make_graph(edges).topological_sort() == first
        assert first == ["t.root", "t.left", "t.right", "t.leaf", "t.lone"]

    def test_empty_graph(self):
        graph = DependencyGraph()
        assert graph.is_empty()
        assert graph.topological_sort() == []

    def test_destruction_order_is_reversed(self):
        graph = _make_graph([("t.a", []), ("t.b", ["t.a"]), ("t.c", ["t.b"])])
        assert graph.get_destruction_order() == ["t.c", "t.b", "t.a"]


class TestCycles:
    def test_mutual_reference(self):
        graph = _graph("""
        resources:
          aws_iam_role:
            a:
              peer: ${aws_iam_role.b.arn}
            b:
              peer: ${aws_iam_role.a.arn}
        """)
        with pytest.raises(CyclicDependencyError) as exc_info:
            graph.topological_sort()

        cycle = exc_info.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"aws_iam_role.a", "aws_iam_role.b"}
        assert "Circular dependency detected" in exc_info.value.message

    def test_self_reference(self):
        graph = _make_graph([("t.a", ["t.a"])])
        assert graph.detect_circular_dependencies() == ["t.a", "t.a"]

    def test_longer_cycle(self):
        graph = _make_graph([
            ("t.ok", []),
            ("t.a", ["t.c"]),
            ("t.b", ["t.a"]),
            ("t.c", ["t.b"]),
        ])
        cycle = graph.detect_circular_dependencies()
        assert cycle is not None
        assert len(cycle) == 4
        assert set(cycle) == {"t.a", "t.b", "t.c"}

    def test_acyclic_graph_has_no_cycle(self):
        graph = _make_graph([("t.a", []), ("t.b", ["t.a"])])
        assert graph.detect_circular_dependencies() is None


class TestGraphQueries:
    def _diamond(self):
        return _make_graph([
            ("t.root", []),
            ("t.left", ["t.root"]),
            ("t.right", ["t.root"]),
            ("t.leaf", ["t.left", "t.right"]),
        ])

    def test_direct_relations(self):
        graph = self._diamond()
        assert graph.get_dependencies("t.leaf") == {"t.left", "t.right"}
        assert graph.get_dependents("t.root") == {"t.left", "t.right"}
        assert graph.get_dependencies("t.unknown") == set()

    def test_transitive_relations(self):
        graph = self._diamond()
        assert graph.get_all_dependencies("t.leaf") == {"t.root", "t.left", "t.right"}
        assert graph.get_all_dependents("t.root") == {"t.left", "t.right", "t.leaf"}
        assert graph.is_ancestor("t.root", "t.leaf")
        assert not graph.is_ancestor("t.leaf", "t.root")

    def test_apply_waves(self):
        graph = self._diamond()
        assert graph.get_apply_waves() == [["t.root"], ["t.left", "t.right"], ["t.leaf"]]
        assert graph.roots() == ["t.root"]

    def test_unknown_dependency(self):
        graph = _make_graph([("t.a", ["t.ghost"])])
        with pytest.raises(DependencyError) as exc_info:
            graph.validate()
        assert not isinstance(exc_info.value, CyclicDependencyError)

    def test_duplicate_address(self):
        graph = _make_graph([("t.a", [])])
        with pytest.raises(DependencyError):
            graph.add_node("t.a")

    def test_declarations_are_kept(self):
        graph = _graph("""
        resources:
          aws_s3_bucket:
            logs:
              bucket: logs
        """)
        assert graph.size() == 1
        assert graph.has_resource("aws_s3_bucket.logs")
        assert graph.get_declaration("aws_s3_bucket.logs").attributes == {"bucket": "logs"}
