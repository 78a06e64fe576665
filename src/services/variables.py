"""Placeholder substitution for task inputs."""

import re
from typing import Any, Mapping, Optional

from models.state import WorkflowState
from services.condition_evaluator import lookup_path

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}|\$\{\s*([\w.\-]+)\s*\}")

_UNRESOLVED = object()


def _resolve(name: str, variables: Mapping[str, Any], state: Optional[WorkflowState]) -> Any:
    found, value = lookup_path(variables, name)
    if found:
        return value
    if state is None:
        return _UNRESOLVED

    if name.startswith("workflow."):
        found, value = lookup_path(state.metadata, name[len("workflow."):])
        return value if found else _UNRESOLVED

    parts = name.split(".")
    for split in range(len(parts), 0, -1):
        task_id = ".".join(parts[:split])
        if task_id in state.task_results:
            result = state.task_results[task_id]
            rest = ".".join(parts[split:])
            if not rest:
                return result
            found, value = lookup_path(result, rest)
            return value if found else _UNRESOLVED

    found, value = lookup_path(state.metadata, name)
    return value if found else _UNRESOLVED


def substitute(
    value: Any,
    variables: Mapping[str, Any],
    state: Optional[WorkflowState] = None,
) -> Any:
    """Replace `{{name}}` and `${task.path}` placeholders.

    A string that is exactly one placeholder takes the referenced value
    unchanged; placeholders embedded in text are rendered with str().
    Unknown names are left as written.
    """
    if isinstance(value, dict):
        return {k: substitute(v, variables, state) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute(v, variables, state) for v in value]
    if not isinstance(value, str):
        return value

    whole = _PLACEHOLDER.fullmatch(value.strip())
    if whole:
        resolved = _resolve(whole.group(1) or whole.group(2), variables, state)
        return value if resolved is _UNRESOLVED else resolved

    def render(match: re.Match) -> str:
        resolved = _resolve(match.group(1) or match.group(2), variables, state)
        return match.group(0) if resolved is _UNRESOLVED else str(resolved)

    return _PLACEHOLDER.sub(render, value)
