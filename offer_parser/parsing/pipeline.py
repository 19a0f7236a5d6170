from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from ..models.config_models import RuleConfig
from .state import Assignment, TransformState
from .steps import StepFn, build_step

"""Rule pipeline: an ordered list of steps bound to one configured rule."""

__all__ = [
    "RuleConfigError",
    "RuleResult",
    "PipelineRule",
]


class RuleConfigError(Exception):
    """Raised at engine construction for a rule that cannot be built."""


@dataclass(frozen=True)
class RuleResult:
    matched: bool
    assignments: list[Assignment] = field(default_factory=list)

    @staticmethod
    def empty() -> RuleResult:
        return RuleResult(False, [])


class PipelineRule:
    """Folds configured steps over ``(raw, {})`` and collects ``assign:`` captures.

    A blank raw value yields no assignments without running any step.
    """

    def __init__(self, config: RuleConfig, lookups: Mapping[str, Mapping[str, str]]) -> None:
        self.id = config.id
        self.priority = config.priority
        self._steps: list[StepFn] = [build_step(s, lookups) for s in config.steps]

    def run(self, raw: str, bag: Mapping[str, Any] | None = None) -> TransformState:
        """Execute all steps and return the final state (raw must be non-blank).

        ``bag`` is the row's property bag so far; steps may read it by name.
        """
        state = TransformState.seed(raw, bag)
        for step in self._steps:
            state = step(state)
        return state

    def execute(self, raw: str | None, bag: Mapping[str, Any] | None = None) -> RuleResult:
        if raw is None or not str(raw).strip():
            return RuleResult.empty()
        assignments = self.run(str(raw), bag).assignments(self.id)
        return RuleResult(bool(assignments), assignments)

    def __len__(self) -> int:
        return len(self._steps)
