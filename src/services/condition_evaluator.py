"""Pure evaluation of condition expressions against workflow state."""

import logging
from typing import Any, Mapping, Optional, Tuple

from models.condition import (
    AlwaysCondition,
    AndCondition,
    NeverCondition,
    NotCondition,
    OrCondition,
    SingleCondition,
    StateEqualsCondition,
    StateExistsCondition,
    TaskStatusCondition,
)
from models.state import WorkflowState


def lookup_path(data: Any, key: str) -> Tuple[bool, Any]:
    """Walk a dotted key through nested mappings and lists.

    Returns (found, value). An exact match on the whole key wins over
    a nested walk so keys that contain dots still resolve.
    """
    if isinstance(data, Mapping) and key in data:
        return True, data[key]

    current = data
    for part in key.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return False, None
    return True, current


class ConditionEvaluator:
    """Evaluates ConditionSpec trees.

    Evaluation never raises for unknown tasks or keys; those simply
    evaluate to false. `variables` (loop variables, iteration results)
    are consulted before workflow metadata.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def evaluate(
        self,
        spec,
        state: WorkflowState,
        variables: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        if spec is None:
            return True
        if state is None:
            raise ValueError("state is required")

        result = self._evaluate(spec, state, variables or {})
        self.logger.debug(f"Condition {spec.type} evaluated to {result}")
        return result

    def _evaluate(self, spec, state: WorkflowState, variables: Mapping[str, Any]) -> bool:
        if isinstance(spec, AndCondition):
            return all(self._evaluate(c, state, variables) for c in spec.conditions)
        if isinstance(spec, OrCondition):
            return any(self._evaluate(c, state, variables) for c in spec.conditions)
        if isinstance(spec, NotCondition):
            return not self._evaluate(spec.condition, state, variables)
        if isinstance(spec, SingleCondition):
            return self._evaluate(spec.condition, state, variables)
        return self._evaluate_leaf(spec, state, variables)

    def _evaluate_leaf(self, spec, state: WorkflowState, variables: Mapping[str, Any]) -> bool:
        if isinstance(spec, AlwaysCondition):
            return True
        if isinstance(spec, NeverCondition):
            return False
        if isinstance(spec, TaskStatusCondition):
            return state.task_statuses.get(spec.task) == spec.status
        if isinstance(spec, StateEqualsCondition):
            found, value = self._lookup(spec.key, state, variables)
            return found and value == spec.value
        if isinstance(spec, StateExistsCondition):
            found, _ = self._lookup(spec.key, state, variables)
            return found

        self.logger.warning(f"Unknown condition type: {type(spec).__name__}")
        return False

    def _lookup(self, key: str, state: WorkflowState, variables: Mapping[str, Any]) -> Tuple[bool, Any]:
        found, value = lookup_path(variables, key)
        if found:
            return True, value
        return lookup_path(state.metadata, key)
