"""Dependency graph (DAG) for a batch of task definitions."""

import logging
from typing import Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class TaskNode(BaseModel):
    """Node in the task dependency graph."""
    key: str
    title: str
    dependencies: list[str] = []
    estimated_hours: float = 0.0


class DependencyGraph:
    """
    Directed Acyclic Graph (DAG) over tasks that are about to be created.

    Generated plans refer to dependencies by title. The graph maps titles
    to node keys (the ids the tasks will be created with), drops references
    that do not resolve, and rejects cycles before anything is written.
    """

    def __init__(self):
        """Initialize empty graph."""
        self.nodes: dict[str, TaskNode] = {}
        self.edges: dict[str, list[str]] = {}  # key -> list of dependent keys
        self._keys_by_title: dict[str, str] = {}

    @classmethod
    def from_titles(
        cls,
        entries: list[tuple[str, str, list[str], float]],
    ) -> "DependencyGraph":
        """
        Build a graph from (key, title, dependency titles, hours) entries.

        Dependency titles are matched case-insensitively. Unknown titles and
        self references are dropped with a warning.
        """
        graph = cls()
        for key, title, _, _ in entries:
            graph._keys_by_title.setdefault(title.strip().lower(), key)

        for key, title, dependency_titles, hours in entries:
            resolved = []
            for dep_title in dependency_titles:
                dep_key = graph._keys_by_title.get(dep_title.strip().lower())
                if dep_key is None or dep_key == key:
                    logger.warning(f"Dropping unresolved dependency '{dep_title}' of '{title}'")
                    continue
                if dep_key not in resolved:
                    resolved.append(dep_key)
            graph.add_node(TaskNode(key=key, title=title, dependencies=resolved, estimated_hours=hours))

        is_valid, cycle = graph.validate_acyclic()
        if not is_valid:
            titles = [graph.nodes[k].title for k in cycle if k in graph.nodes]
            raise CyclicDependencyError(f"Circular dependency: {' -> '.join(titles)}")
        return graph

    def add_node(self, node: TaskNode) -> None:
        """
        Add task node to graph.

        Args:
            node: Task node to add
        """
        if node.key in self.nodes:
            logger.warning(f"Task {node.key} already exists in graph, replacing")

        self.nodes[node.key] = node

        if node.key not in self.edges:
            self.edges[node.key] = []

        for dep_key in node.dependencies:
            if dep_key not in self.edges:
                self.edges[dep_key] = []
            self.edges[dep_key].append(node.key)

    def dependencies_of(self, key: str) -> list[str]:
        node = self.nodes.get(key)
        return list(node.dependencies) if node else []

    def validate_acyclic(self) -> tuple[bool, Optional[list[str]]]:
        """
        Validate that graph is acyclic (no circular dependencies).

        Returns:
            Tuple of (is_valid, cycle_path if invalid)
        """
        visited = set()
        rec_stack = set()

        def has_cycle(key: str, path: list[str]) -> Optional[list[str]]:
            """DFS to detect cycles."""
            visited.add(key)
            rec_stack.add(key)
            path.append(key)

            for dependent_key in self.edges.get(key, []):
                if dependent_key not in visited:
                    cycle = has_cycle(dependent_key, path.copy())
                    if cycle:
                        return cycle
                elif dependent_key in rec_stack:
                    return path + [dependent_key]

            rec_stack.remove(key)
            return None

        for key in self.nodes:
            if key not in visited:
                cycle = has_cycle(key, [])
                if cycle:
                    return False, cycle

        return True, None

    def get_execution_order(self) -> list[list[str]]:
        """
        Get topological sort of tasks (execution order by levels).

        Returns:
            List of levels, where each level contains keys that can run in parallel

        Raises:
            CyclicDependencyError: If graph has cycles
        """
        is_valid, cycle = self.validate_acyclic()
        if not is_valid:
            raise CyclicDependencyError(f"Graph has circular dependency: {' -> '.join(cycle)}")

        in_degree = {key: len(node.dependencies) for key, node in self.nodes.items()}
        levels = []
        remaining = [key for key in self.nodes]

        while remaining:
            current_level = [key for key in remaining if in_degree[key] == 0]
            levels.append(current_level)

            for key in current_level:
                remaining.remove(key)
                for dependent_key in self.edges.get(key, []):
                    if dependent_key in in_degree:
                        in_degree[dependent_key] -= 1

        return levels

    def get_parallel_estimated_hours(self) -> float:
        """
        Get estimated time if tasks are executed in parallel.

        Returns:
            Sum over levels of the longest task in each level
        """
        total_time = 0.0
        for level in self.get_execution_order():
            total_time += max(self.nodes[key].estimated_hours for key in level)
        return total_time


class CyclicDependencyError(ValueError):
    """Raised when task dependencies form a cycle."""
    pass
