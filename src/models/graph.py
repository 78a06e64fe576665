"""Flattened task graph for workflow execution."""

from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

from models.loop import LoopControl
from models.state import SATISFIED_STATUSES, TaskStatus, WorkflowState
from models.task import ErrorPolicy, TaskSpec


@dataclass
class TaskNode:
    """A leaf, executable task in the graph."""
    id: str
    spec: TaskSpec
    dependencies: List[str] = field(default_factory=list)
    priority: int = 0
    parallel_with: List[str] = field(default_factory=list)
    agent: Optional[str] = None
    on_error: Optional[ErrorPolicy] = None
    inject_context: bool = False
    loop_control: Optional[LoopControl] = None
    body: List["TaskNode"] = field(default_factory=list)
    order: int = 0

    @property
    def is_loop(self) -> bool:
        return self.spec.loop is not None

    @property
    def name(self) -> str:
        """Last path segment of the ID."""
        return self.id.rsplit(".", 1)[-1]

    def __hash__(self):
        return hash(self.id)

    def __eq__(self, other):
        if not isinstance(other, TaskNode):
            return False
        return self.id == other.id


@dataclass
class TaskGraph:
    """Acyclic graph of leaf tasks keyed by dot-separated ID."""
    nodes: Dict[str, TaskNode] = field(default_factory=dict)
    _order: Optional[List[str]] = field(default=None, repr=False)

    def add_node(self, node: TaskNode):
        """Add a node to the graph."""
        node.order = len(self.nodes)
        self.nodes[node.id] = node
        self._order = None

    def get(self, task_id: str) -> TaskNode:
        return self.nodes[task_id]

    @property
    def ids(self) -> List[str]:
        return list(self.nodes)

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self.nodes

    def __iter__(self) -> Iterator[TaskNode]:
        return iter(self.nodes.values())

    def get_dependents(self, task_id: str) -> List[str]:
        """IDs of tasks that declare a dependency on `task_id`."""
        return [n.id for n in self.nodes.values() if task_id in n.dependencies]

    def _sort_key(self, task_id: str):
        node = self.nodes[task_id]
        return (-node.priority, node.order)

    def topological_sort(self) -> List[str]:
        """Kahn's algorithm; ties go to higher priority, then declaration order."""
        if self._order is not None:
            return list(self._order)

        in_degree = {task_id: 0 for task_id in self.nodes}
        dependents: Dict[str, List[str]] = {task_id: [] for task_id in self.nodes}
        for node in self.nodes.values():
            for dep in node.dependencies:
                in_degree[node.id] += 1
                dependents[dep].append(node.id)

        queue = deque(sorted(
            (t for t, d in in_degree.items() if d == 0), key=self._sort_key
        ))
        order = []
        while queue:
            task_id = queue.popleft()
            order.append(task_id)
            released = []
            for dependent in dependents[task_id]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    released.append(dependent)
            queue.extend(sorted(released, key=self._sort_key))

        if len(order) != len(self.nodes):
            raise RuntimeError("Unable to determine execution order - circular dependency")

        self._order = order
        return list(order)

    def find_cycle(self) -> Optional[List[str]]:
        """Return one cycle as an ordered list of IDs, or None."""
        done = set()

        for root in self.nodes:
            if root in done:
                continue
            path = [root]
            on_path = {root}
            stack = [iter(self.nodes[root].dependencies)]
            while stack:
                dep = next(stack[-1], None)
                if dep is None:
                    stack.pop()
                    finished = path.pop()
                    on_path.discard(finished)
                    done.add(finished)
                    continue
                if dep not in self.nodes or dep in done:
                    continue
                if dep in on_path:
                    return path[path.index(dep):] + [dep]
                path.append(dep)
                on_path.add(dep)
                stack.append(iter(self.nodes[dep].dependencies))
        return None

    def get_ready_tasks(self, state: WorkflowState) -> List[TaskNode]:
        """Pending tasks whose dependencies are all completed or skipped."""
        ready = []
        for node in self.nodes.values():
            status = state.task_statuses.get(node.id, TaskStatus.PENDING)
            if status != TaskStatus.PENDING:
                continue
            if all(
                state.task_statuses.get(dep) in SATISFIED_STATUSES
                for dep in node.dependencies
            ):
                ready.append(node)
        return sorted(ready, key=lambda n: (-n.priority, n.order))

    def get_parallel_groups(self) -> List[List[str]]:
        """Group tasks into dependency levels that may run concurrently."""
        level: Dict[str, int] = {}
        for task_id in self.topological_sort():
            deps = self.nodes[task_id].dependencies
            level[task_id] = 1 + max((level[d] for d in deps), default=-1)
        groups: List[List[str]] = []
        for task_id, depth in level.items():
            while len(groups) <= depth:
                groups.append([])
            groups[depth].append(task_id)
        return groups

    def is_complete(self, state: WorkflowState) -> bool:
        """Check if every node has completed or been skipped."""
        return all(
            state.task_statuses.get(task_id) in SATISFIED_STATUSES
            for task_id in self.nodes
        )

    def get_blocked_tasks(self, state: WorkflowState) -> List[str]:
        """Pending tasks that can never run because a dependency failed."""
        blocked = []
        failed = {
            t for t, s in state.task_statuses.items() if s == TaskStatus.FAILED
        }
        for task_id in self.topological_sort():
            if state.task_statuses.get(task_id, TaskStatus.PENDING) != TaskStatus.PENDING:
                continue
            deps = self.nodes[task_id].dependencies
            if any(d in failed or d in blocked for d in deps):
                blocked.append(task_id)
        return blocked
