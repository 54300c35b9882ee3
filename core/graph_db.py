"""
STRATA GRAPH INDEX - The Rust-Accelerated Bridge

Plan documents address nodes by string ids ("story-checkout", "cap-cart").
rustworkx addresses them by integer indices. This module bridges the two
so that validators and analyzers can run Rust-native graph algorithms over
any id-keyed node/edge set:

  Python Layer (Plan Documents)
  - string ids, insertion-ordered dicts

  Bridge Layer (This File)
  - _node_map: Dict[str, int]  (id -> index)
  - _inv_map: Dict[int, str]   (index -> id)
  - _successors / _predecessors: ordered adjacency for deterministic walks

  Rust Layer (rustworkx.PyDiGraph)
  - is_directed_acyclic_graph, lexicographical_topological_sort,
    descendants, ancestors

rustworkx does not promise any particular neighbour order, so every
traversal whose ORDER is observable (cycle reports, BFS impact lists) walks
the ordered Python adjacency instead; rustworkx answers the order-free
questions (is it a DAG? is there a path?).

The exception taxonomy for the whole engine also lives here.
"""
from typing import Dict, Iterable, List, Optional, Set, Tuple

import rustworkx as rx


# =============================================================================
# CUSTOM EXCEPTIONS
# =============================================================================

class StrataError(Exception):
    """Base exception for every failure the engine reports."""
    pass


class NotFoundError(StrataError):
    """A referenced project, node, version or change request does not exist."""
    pass


class NodeNotFoundError(NotFoundError):
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Node not found: {node_id}")


class VersionNotFoundError(NotFoundError):
    def __init__(self, version: str):
        self.version = version
        super().__init__(f"Version not found: {version}")


class ChangeRequestNotFoundError(NotFoundError):
    def __init__(self, change_request_id: str):
        self.change_request_id = change_request_id
        super().__init__(f"Change request not found: {change_request_id}")


class ProjectNotFoundError(NotFoundError):
    def __init__(self, project_id: str):
        self.project_id = project_id
        super().__init__(f"Project not found: {project_id}")


class ProjectExistsError(StrataError):
    def __init__(self, project_id: str):
        self.project_id = project_id
        super().__init__(f"Project already exists: {project_id}")


class ValidationFailure(StrataError):
    """
    A proposed change would violate a graph invariant.

    Attributes:
        layer: Logical scope that failed ("narrative", "structure.flows",
               "cross-layer", "mappings", ...)
        cycle: The offending cycle, first node repeated at the end
        errors: Every hard error collected (mapping validation reports all)
        warnings: Soft warnings gathered alongside
    """
    def __init__(
        self,
        message: str,
        layer: Optional[str] = None,
        cycle: Optional[List[str]] = None,
        errors: Optional[List[str]] = None,
        warnings: Optional[List[str]] = None,
    ):
        self.layer = layer
        self.cycle = cycle
        self.errors = errors if errors is not None else [message]
        self.warnings = warnings or []
        super().__init__(message)


class IllegalStateTransition(StrataError):
    """A change request was asked to move along a forbidden lifecycle edge."""
    pass


class AlreadyAppliedError(IllegalStateTransition):
    def __init__(self, change_request_id: str):
        self.change_request_id = change_request_id
        super().__init__(f"Change request {change_request_id} has already been applied")


class CannotDeleteAppliedError(IllegalStateTransition):
    def __init__(self, change_request_id: str):
        self.change_request_id = change_request_id
        super().__init__(f"Change request {change_request_id} is applied and cannot be deleted")


class SchemaMismatchError(StrataError):
    """A layered-only operation was attempted on a legacy flat project."""
    def __init__(self, project_id: str, operation: str):
        self.project_id = project_id
        self.operation = operation
        super().__init__(
            f"Project {project_id} uses the legacy flat schema; {operation} requires a layered project"
        )


class DocumentError(StrataError):
    """A persisted document is unreadable or does not match its schema."""
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid document {path}: {reason}")


class GraphInvariantError(StrataError):
    """Raised by graph primitives that require a DAG (topological sort)."""
    pass


# =============================================================================
# GRAPH INDEX (The Bridge)
# =============================================================================

class GraphIndex:
    """
    Directed multigraph over string ids, backed by rustworkx.

    Nodes are registered in the order they are first seen (explicit nodes
    first, then unknown edge endpoints). Successor and predecessor lists keep
    edge insertion order.

    Usage:
        index = GraphIndex.build(["task-1", "task-2"], [("task-1", "task-2")])
        index.is_dag()                 # True
        index.successors("task-1")     # ["task-2"]
        index.find_cycle()             # None
    """

    def __init__(self):
        self._graph: rx.PyDiGraph = rx.PyDiGraph(multigraph=True)

        # The Bridge: bidirectional id <-> index mapping
        self._node_map: Dict[str, int] = {}
        self._inv_map: Dict[int, str] = {}

        # Ordered adjacency (dicts as ordered sets)
        self._successors: Dict[str, Dict[str, None]] = {}
        self._predecessors: Dict[str, Dict[str, None]] = {}

    @classmethod
    def build(cls, node_ids: Iterable[str], edges: Iterable[Tuple[str, str]]) -> "GraphIndex":
        index = cls()
        for node_id in node_ids:
            index.add_node(node_id)
        for from_id, to_id in edges:
            index.add_edge(from_id, to_id)
        return index

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def node_count(self) -> int:
        return self._graph.num_nodes()

    @property
    def edge_count(self) -> int:
        return self._graph.num_edges()

    def node_ids(self) -> List[str]:
        """All ids in registration order."""
        return list(self._node_map)

    # =========================================================================
    # MUTATION
    # =========================================================================

    def add_node(self, node_id: str) -> int:
        """Register ``node_id`` (idempotent) and return its rustworkx index."""
        idx = self._node_map.get(node_id)
        if idx is not None:
            return idx
        idx = self._graph.add_node(node_id)
        self._node_map[node_id] = idx
        self._inv_map[idx] = node_id
        self._successors[node_id] = {}
        self._predecessors[node_id] = {}
        return idx

    def add_edge(self, from_id: str, to_id: str) -> int:
        """Add ``from_id -> to_id``, registering unknown endpoints on the fly."""
        src_idx = self.add_node(from_id)
        tgt_idx = self.add_node(to_id)
        self._successors[from_id].setdefault(to_id, None)
        self._predecessors[to_id].setdefault(from_id, None)
        return self._graph.add_edge(src_idx, tgt_idx, (from_id, to_id))

    # =========================================================================
    # NEIGHBOURHOOD
    # =========================================================================

    def successors(self, node_id: str) -> List[str]:
        """Direct successors in edge insertion order; empty for unknown ids."""
        return list(self._successors.get(node_id, ()))

    def predecessors(self, node_id: str) -> List[str]:
        return list(self._predecessors.get(node_id, ()))

    def descendants(self, node_id: str) -> List[str]:
        """Transitive successors, in registration order."""
        return self._ids_in_order(rx.descendants(self._graph, self._get_index(node_id)))

    def ancestors(self, node_id: str) -> List[str]:
        return self._ids_in_order(rx.ancestors(self._graph, self._get_index(node_id)))

    def has_path(self, from_id: str, to_id: str) -> bool:
        if from_id not in self._node_map or to_id not in self._node_map:
            return False
        return self._node_map[to_id] in rx.descendants(self._graph, self._node_map[from_id])

    # =========================================================================
    # ACYCLICITY
    # =========================================================================

    def is_dag(self) -> bool:
        return rx.is_directed_acyclic_graph(self._graph)

    def find_cycle(self) -> Optional[List[str]]:
        """
        Depth-first cycle search from every unvisited node, in registration order.

        The recursion stack is kept explicitly; when a neighbour already on
        the stack is reached, the cycle is the tail of the current DFS path
        starting at that neighbour, closed by repeating it.

        Returns:
            ``[a, b, ..., a]`` or None if the graph is acyclic
        """
        if self.is_dag():
            return None

        visited: Set[str] = set()
        on_stack: Set[str] = set()
        path: List[str] = []

        for start in self._node_map:
            if start in visited:
                continue
            visited.add(start)
            on_stack.add(start)
            path.append(start)
            frames = [(start, iter(self._successors[start]))]

            while frames:
                current, neighbours = frames[-1]
                descended = False
                for neighbour in neighbours:
                    if neighbour in on_stack:
                        return path[path.index(neighbour):] + [neighbour]
                    if neighbour not in visited:
                        visited.add(neighbour)
                        on_stack.add(neighbour)
                        path.append(neighbour)
                        frames.append((neighbour, iter(self._successors[neighbour])))
                        descended = True
                        break
                if not descended:
                    frames.pop()
                    on_stack.discard(current)
                    path.pop()
        return None

    def topological_order(self) -> List[str]:
        """
        Topological order, ties broken by registration order.

        Raises:
            GraphInvariantError: If the graph has a cycle
        """
        if not self.is_dag():
            raise GraphInvariantError("Cannot topologically sort: graph has cycles")
        positions = {node_id: f"{idx:012d}" for idx, node_id in enumerate(self._node_map)}
        return list(rx.lexicographical_topological_sort(self._graph, key=lambda node_id: positions[node_id]))

    # =========================================================================
    # INTERNAL UTILITIES
    # =========================================================================

    def _get_index(self, node_id: str) -> int:
        if node_id not in self._node_map:
            raise NodeNotFoundError(node_id)
        return self._node_map[node_id]

    def _ids_in_order(self, indices: Iterable[int]) -> List[str]:
        return [self._inv_map[idx] for idx in sorted(indices)]

    def __len__(self) -> int:
        return self.node_count

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._node_map

    def __repr__(self) -> str:
        return f"GraphIndex(nodes={self.node_count}, edges={self.edge_count})"
