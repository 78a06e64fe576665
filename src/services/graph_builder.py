"""Service for flattening declared task trees into executable graphs."""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from models.graph import TaskGraph, TaskNode
from models.loop import LoopControl
from models.task import ErrorPolicy, TaskSpec, WorkflowSpec


class GraphConstructionError(Exception):
    """Raised when the declared tasks cannot form a valid graph."""

    def __init__(
        self,
        message: str,
        task_id: Optional[str] = None,
        cycle: Optional[List[str]] = None,
    ):
        self.task_id = task_id
        self.cycle = cycle or []
        super().__init__(message)


@dataclass
class _Inherited:
    agent: Optional[str] = None
    priority: int = 0
    on_error: Optional[ErrorPolicy] = None
    inject_context: bool = False
    loop_control: Optional[LoopControl] = None

    def merge(self, spec: TaskSpec) -> "_Inherited":
        """Attributes as seen by `spec` after applying its own overrides."""
        return _Inherited(
            agent=spec.execution_ref or self.agent,
            priority=spec.priority if "priority" in spec.model_fields_set else self.priority,
            on_error=spec.on_error or self.on_error,
            inject_context=(
                spec.inject_context
                if "inject_context" in spec.model_fields_set
                else self.inject_context
            ),
            loop_control=spec.loop_control or self.loop_control,
        )


@dataclass
class _Entry:
    id: str
    spec: TaskSpec
    inherited: _Inherited
    deps: List[Tuple[str, str]] = field(default_factory=list)
    members: List[str] = field(default_factory=list)

    @property
    def is_group(self) -> bool:
        return self.spec.is_group


class GraphBuilder:
    """Builds a flat TaskGraph of leaf tasks from a workflow definition."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def build(self, workflow: WorkflowSpec) -> TaskGraph:
        """Build the task graph for a workflow."""
        if workflow is None:
            raise ValueError("workflow is required")

        self.logger.info(f"Building task graph for workflow: {workflow.name}")
        graph = self.build_tasks(workflow.tasks)
        self.logger.info(
            f"Graph built successfully with {len(graph)} nodes, "
            f"{len(graph.get_parallel_groups())} levels"
        )
        return graph

    def build_tasks(
        self,
        tasks: Dict[str, TaskSpec],
        prefix: str = "",
        inherited: Optional[_Inherited] = None,
    ) -> TaskGraph:
        """Flatten a task mapping; `prefix` scopes IDs and dependency lookup."""
        if not tasks:
            raise ValueError("tasks is required")

        entries: Dict[str, _Entry] = {}
        for name, spec in tasks.items():
            self._collect(name, spec, prefix, inherited or _Inherited(), [], entries)

        resolved = {
            entry_id: self._resolve_deps(entry, entries, prefix)
            for entry_id, entry in entries.items()
        }

        graph = TaskGraph()
        for entry in entries.values():
            if entry.is_group:
                continue
            graph.add_node(self._create_node(entry, entries, resolved, prefix))
            self.logger.debug(f"Created task node: {entry.id}")

        cycle = graph.find_cycle()
        if cycle:
            raise GraphConstructionError(
                f"Circular dependency detected: {' -> '.join(cycle)}",
                task_id=cycle[0],
                cycle=cycle,
            )

        order = graph.topological_sort()
        self.logger.debug(f"Topological order: {order}")
        return graph

    def _collect(
        self,
        name: str,
        spec: TaskSpec,
        scope: str,
        inherited: _Inherited,
        extra_deps: List[Tuple[str, str]],
        entries: Dict[str, _Entry],
    ) -> None:
        """First pass: register every task and group under its full path."""
        task_id = f"{scope}.{name}" if scope else name
        if task_id in entries:
            raise GraphConstructionError(f"Duplicate task id: {task_id}", task_id=task_id)

        deps = [(dep, scope) for dep in spec.depends_on] + list(extra_deps)
        entry = _Entry(id=task_id, spec=spec, inherited=inherited, deps=deps)
        entries[task_id] = entry

        if not spec.is_group:
            return

        passed_down = inherited.merge(spec)
        for child_name, child in spec.subtasks.items():
            entry.members.append(f"{task_id}.{child_name}")
            depends_on_sibling = any(
                self._names_sibling(dep, task_id, spec.subtasks)
                for dep in child.depends_on
            )
            self._collect(
                child_name,
                child,
                task_id,
                passed_down,
                [] if depends_on_sibling else deps,
                entries,
            )

    def _names_sibling(self, dep: str, group_id: str, siblings: Dict[str, TaskSpec]) -> bool:
        group_prefix = f"{group_id}."
        local = dep[len(group_prefix):] if dep.startswith(group_prefix) else dep
        return local.split(".")[0] in siblings

    def _resolve_ref(self, ref: str, scope: str, entries: Dict[str, _Entry], prefix: str) -> Optional[str]:
        """Look a reference up from its declaring scope outwards."""
        current = scope
        while True:
            candidate = f"{current}.{ref}" if current else ref
            if candidate in entries:
                return candidate
            if current == prefix or not current:
                break
            current = current.rsplit(".", 1)[0] if "." in current else ""
        if ref in entries:
            return ref
        return None

    def _resolve_deps(self, entry: _Entry, entries: Dict[str, _Entry], prefix: str) -> List[str]:
        resolved = []
        for ref, scope in entry.deps:
            target = self._resolve_ref(ref, scope, entries, prefix)
            if target is None:
                raise GraphConstructionError(
                    f"Task '{entry.id}' depends on unknown task '{ref}'",
                    task_id=entry.id,
                )
            if target not in resolved:
                resolved.append(target)
        return resolved

    def _leaf_sinks(
        self,
        task_id: str,
        entries: Dict[str, _Entry],
        resolved: Dict[str, List[str]],
    ) -> List[str]:
        """Expand a group reference to its leaf sink subtasks."""
        entry = entries[task_id]
        if not entry.is_group:
            return [task_id]

        internal = {
            dep
            for member in entry.members
            for dep in resolved[member]
            if dep in entry.members
        }
        sinks = []
        for member in entry.members:
            if member in internal:
                continue
            for leaf in self._leaf_sinks(member, entries, resolved):
                if leaf not in sinks:
                    sinks.append(leaf)
        return sinks

    def _create_node(
        self,
        entry: _Entry,
        entries: Dict[str, _Entry],
        resolved: Dict[str, List[str]],
        prefix: str,
    ) -> TaskNode:
        spec = entry.spec
        attrs = entry.inherited.merge(spec)

        if attrs.agent is None and not (spec.loop is not None and spec.subtasks):
            raise GraphConstructionError(
                f"Task '{entry.id}' is missing execution type "
                f"(agent, command, uses or subflow)",
                task_id=entry.id,
            )

        dependencies: List[str] = []
        for dep in resolved[entry.id]:
            for leaf in self._leaf_sinks(dep, entries, resolved):
                if leaf not in dependencies:
                    dependencies.append(leaf)

        parallel_with: List[str] = []
        for ref in spec.parallel_with:
            scope = entry.id.rsplit(".", 1)[0] if "." in entry.id else ""
            target = self._resolve_ref(ref, scope, entries, prefix)
            if target is None:
                self.logger.warning(f"Task '{entry.id}' lists unknown parallel_with task '{ref}'")
                continue
            parallel_with.extend(self._leaf_sinks(target, entries, resolved))

        node = TaskNode(
            id=entry.id,
            spec=spec,
            dependencies=dependencies,
            priority=attrs.priority,
            parallel_with=parallel_with,
            agent=attrs.agent,
            on_error=attrs.on_error,
            inject_context=attrs.inject_context,
            loop_control=attrs.loop_control,
        )

        if spec.loop is not None and spec.subtasks:
            node.body = self._build_body(entry.id, spec, attrs)
        return node

    def _build_body(self, task_id: str, spec: TaskSpec, attrs: _Inherited) -> List[TaskNode]:
        """Subtasks of a loop task run, in order, once per iteration."""
        body_inherited = _Inherited(
            agent=attrs.agent,
            priority=attrs.priority,
            on_error=attrs.on_error,
            inject_context=attrs.inject_context,
        )
        body_graph = self.build_tasks(spec.subtasks, prefix=task_id, inherited=body_inherited)
        for body_node in body_graph:
            if body_node.is_loop:
                raise GraphConstructionError(
                    f"Loop '{body_node.id}' cannot be nested inside loop body '{task_id}'",
                    task_id=body_node.id,
                )
        return [body_graph.get(body_id) for body_id in body_graph.topological_sort()]
