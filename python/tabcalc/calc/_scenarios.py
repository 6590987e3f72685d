"""Scenario overlay: named scalar overrides applied to a copy of a model."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from tabcalc._model import Scalar, Scenario
from tabcalc.calc._errors import EngineError, UnknownReference
from tabcalc.calc._evaluator import ModelEvaluator

if TYPE_CHECKING:
    from tabcalc._model import Model

logger = logging.getLogger(__name__)


def apply_overrides(model: Model, overrides: Mapping[str, Any]) -> Model:
    """Return a copy of *model* with scalar values replaced.

    An overridden scalar loses its formula: an explicit value always wins
    over a derivation. Names that are not scalars yet are created.
    """
    clone = model.copy()
    for name, value in overrides.items():
        current = clone.scalars.get(name)
        if current is None:
            clone.add_scalar(Scalar(name, value=value))
            logger.debug("Override created scalar '%s'", name)
        else:
            clone.scalars[name] = Scalar(name, value=value, unit=current.unit)
    return clone


def apply_scenario(model: Model, scenario: str | Scenario) -> Model:
    """Return a copy of *model* with the named scenario's overrides applied."""
    if isinstance(scenario, str):
        found = model.scenarios.get(scenario)
        if found is None:
            raise UnknownReference(scenario, model.scenarios, what="scenario")
        scenario = found
    logger.debug("Applying scenario '%s' (%d overrides)", scenario.name, len(scenario.overrides))
    return apply_overrides(model, scenario.overrides)


@dataclass(frozen=True)
class ScenarioComparison:
    """Scalar outputs side by side across scenarios.

    ``values[output][scenario]`` is the calculated value, or None when the
    output failed (see ``errors[scenario]``) or does not exist.
    """

    scenarios: tuple[str, ...]
    outputs: tuple[str, ...]
    values: dict[str, dict[str, Any]]
    errors: dict[str, tuple[EngineError, ...]] = field(default_factory=dict)

    def value(self, output: str, scenario: str) -> Any:
        return self.values[output][scenario]

    def row(self, output: str) -> list[Any]:
        """Values of *output* in scenario order."""
        return [self.values[output][s] for s in self.scenarios]

    @property
    def ok(self) -> bool:
        return not any(self.errors.values())


def compare_scenarios(
    model: Model,
    names: Iterable[str] | None = None,
    outputs: Iterable[str] | None = None,
    evaluator: ModelEvaluator | None = None,
) -> ScenarioComparison:
    """Calculate each scenario independently and collect scalar outputs.

    *names* defaults to every scenario of the model and *outputs* to every
    scalar. The base model is never modified.
    """
    evaluator = evaluator or ModelEvaluator()
    names = list(model.scenarios) if names is None else list(names)
    outputs = list(model.scalars) if outputs is None else list(outputs)

    values: dict[str, dict[str, Any]] = {o: {} for o in outputs}
    errors: dict[str, tuple[EngineError, ...]] = {}
    for name in names:
        trial = apply_scenario(model, name)
        result = evaluator.calculate(trial)
        errors[name] = result.errors
        for output in outputs:
            scalar = trial.scalars.get(output)
            # a failed scalar still holds whatever the base model stored
            if scalar is None or result.error_for(output) is not None:
                values[output][name] = None
            else:
                values[output][name] = scalar.value

    logger.info("Compared %d scenarios over %d outputs", len(names), len(outputs))
    return ScenarioComparison(tuple(names), tuple(outputs), values, errors)
