"""Dependency graph builder for resource apply ordering."""

import heapq
from typing import Dict, Iterable, List, Set, Optional
from dataclasses import dataclass, field
from collections import defaultdict, deque

from converge.config.models import ResourceDeclaration
from converge.utils.errors import CyclicDependencyError, DependencyError, ErrorContext


@dataclass
class DependencyNode:
    """Node in the dependency graph."""

    address: str
    index: int  # Declaration order, used to break ties
    dependencies: Set[str] = field(default_factory=set)  # Addresses this node depends on
    declaration: Optional[ResourceDeclaration] = None


class DependencyGraph:
    """Directed acyclic graph (DAG) of resource dependencies.

    An edge A -> B means A must be applied before B, because B references an
    attribute of A or lists A in ``depends_on``.
    """

    def __init__(self):
        """Initialize empty dependency graph."""
        self.nodes: Dict[str, DependencyNode] = {}
        self._adjacency_list: Dict[str, Set[str]] = defaultdict(set)

    @classmethod
    def from_declarations(cls, declarations: Iterable[ResourceDeclaration]) -> "DependencyGraph":
        """Build a graph from resource declarations.

        Args:
            declarations: Declarations in document order

        Returns:
            Graph with one node per declaration; call validate() before use
        """
        graph = cls()
        for declaration in declarations:
            graph.add_node(
                declaration.address,
                declaration.dependencies(),
                index=declaration.index,
                declaration=declaration
            )
        return graph

    def add_node(
        self,
        address: str,
        dependencies: Iterable[str] = (),
        index: Optional[int] = None,
        declaration: Optional[ResourceDeclaration] = None
    ) -> None:
        """Add a resource to the graph.

        Args:
            address: Resource address TYPE.NAME
            dependencies: Addresses that must be applied first
            index: Declaration order; defaults to insertion order
            declaration: Declaration the node stands for, if any
        """
        if address in self.nodes:
            raise DependencyError(
                f"Resource '{address}' is declared more than once",
                context=ErrorContext(resource_id=address)
            )
        node = DependencyNode(
            address=address,
            index=len(self.nodes) if index is None else index,
            dependencies=set(dependencies),
            declaration=declaration
        )
        self.nodes[address] = node
        for dep in node.dependencies:
            self._adjacency_list[dep].add(address)

    def _ordered(self, addresses: Iterable[str]) -> List[str]:
        return sorted(addresses, key=lambda a: (self.nodes[a].index, a) if a in self.nodes else (-1, a))

    def get_dependencies(self, address: str) -> Set[str]:
        """Get direct dependencies of a resource."""
        if address not in self.nodes:
            return set()
        return self.nodes[address].dependencies.copy()

    def get_dependents(self, address: str) -> Set[str]:
        """Get direct dependents of a resource."""
        return self._adjacency_list.get(address, set()).copy()

    def get_all_dependencies(self, address: str) -> Set[str]:
        """Get all transitive dependencies of a resource.

        Args:
            address: Resource address

        Returns:
            Set of every address in the dependency chain
        """
        visited = set()
        queue = deque([address])

        while queue:
            current = queue.popleft()
            if current in visited:
                continue

            visited.add(current)
            if current in self.nodes:
                for dep in self.nodes[current].dependencies:
                    if dep not in visited:
                        queue.append(dep)

        visited.discard(address)
        return visited

    def get_all_dependents(self, address: str) -> Set[str]:
        """Get all transitive dependents of a resource.

        Args:
            address: Resource address

        Returns:
            Set of every address that depends on this resource
        """
        visited = set()
        queue = deque([address])

        while queue:
            current = queue.popleft()
            if current in visited:
                continue

            visited.add(current)
            for dependent in self._adjacency_list.get(current, ()):
                if dependent not in visited:
                    queue.append(dependent)

        visited.discard(address)
        return visited

    def is_ancestor(self, ancestor: str, address: str) -> bool:
        """Whether ancestor must be applied before address."""
        return ancestor in self.get_all_dependencies(address)

    def roots(self) -> List[str]:
        """Resources with no dependencies, in declaration order."""
        return self._ordered(a for a, node in self.nodes.items() if not node.dependencies)

    def detect_circular_dependencies(self) -> Optional[List[str]]:
        """Detect circular dependencies in the graph.

        Returns:
            Addresses forming a cycle, first one repeated at the end, or None
        """
        # White (0): unvisited, Gray (1): visiting, Black (2): visited
        color = {address: 0 for address in self.nodes}
        parent: Dict[str, str] = {}

        def dfs(address: str) -> Optional[List[str]]:
            color[address] = 1

            for dependent in self._ordered(self._adjacency_list.get(address, ())):
                if color.get(dependent) == 1:
                    # Back edge: walk parents back to the start of the cycle
                    cycle = [dependent]
                    current = address
                    while current != dependent:
                        cycle.append(current)
                        current = parent[current]
                    cycle.append(dependent)
                    return list(reversed(cycle))

                if color.get(dependent) == 0:
                    parent[dependent] = address
                    cycle = dfs(dependent)
                    if cycle:
                        return cycle

            color[address] = 2
            return None

        for address in self._ordered(self.nodes):
            if color[address] == 0:
                cycle = dfs(address)
                if cycle:
                    return cycle

        return None

    def validate(self) -> None:
        """Validate the dependency graph.

        Raises:
            CyclicDependencyError: If the graph contains a cycle
            DependencyError: If a resource depends on one that is not in the graph
        """
        for address in self._ordered(self.nodes):
            for dep in sorted(self.nodes[address].dependencies):
                if dep not in self.nodes:
                    raise DependencyError(
                        f"Resource '{address}' depends on '{dep}' which does not exist",
                        context=ErrorContext(resource_id=address)
                    )

        cycle = self.detect_circular_dependencies()
        if cycle:
            raise CyclicDependencyError(
                cycle,
                context=ErrorContext(resource_id=cycle[0]),
                suggestions=["Remove one of the references or depends_on entries in the cycle"]
            )

    def topological_sort(self) -> List[str]:
        """Perform topological sort on the dependency graph.

        Ties are broken by declaration order, so the result is deterministic.

        Returns:
            Addresses with every dependency before its dependents

        Raises:
            CyclicDependencyError: If graph contains cycles
        """
        self.validate()

        # Kahn's algorithm with a heap keyed on declaration order
        in_degree = {address: len(node.dependencies) for address, node in self.nodes.items()}
        heap = [(self.nodes[a].index, a) for a, degree in in_degree.items() if degree == 0]
        heapq.heapify(heap)
        result = []

        while heap:
            _, address = heapq.heappop(heap)
            result.append(address)

            for dependent in self._adjacency_list.get(address, ()):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(heap, (self.nodes[dependent].index, dependent))

        if len(result) != len(self.nodes):
            raise DependencyError("Cannot perform topological sort: graph contains cycles")

        return result

    def get_apply_waves(self) -> List[List[str]]:
        """Group resources into waves that can be applied in parallel.

        Returns:
            Waves in apply order; resources within a wave are independent

        Raises:
            CyclicDependencyError: If graph contains cycles
        """
        self.validate()

        in_degree = {address: len(node.dependencies) for address, node in self.nodes.items()}
        current_wave = self._ordered(a for a, degree in in_degree.items() if degree == 0)
        waves = []

        while current_wave:
            waves.append(current_wave)
            next_wave = []

            for address in current_wave:
                for dependent in self._adjacency_list.get(address, ()):
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        next_wave.append(dependent)

            current_wave = self._ordered(next_wave)

        return waves

    def get_destruction_order(self) -> List[str]:
        """Get resource destruction order (reverse of apply order).

        Raises:
            CyclicDependencyError: If graph contains cycles
        """
        return list(reversed(self.topological_sort()))

    def get_declaration(self, address: str) -> Optional[ResourceDeclaration]:
        node = self.nodes.get(address)
        return node.declaration if node else None

    def has_resource(self, address: str) -> bool:
        return address in self.nodes

    def size(self) -> int:
        """Get the number of resources in the graph."""
        return len(self.nodes)

    def is_empty(self) -> bool:
        return len(self.nodes) == 0
