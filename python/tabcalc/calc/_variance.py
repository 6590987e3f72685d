"""Budget vs actual variance report over scalar outputs."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from tabcalc.calc._evaluator import ModelEvaluator

if TYPE_CHECKING:
    from tabcalc._model import Model

logger = logging.getLogger(__name__)

# Name fragments marking scalars where a lower actual is the good outcome
_EXPENSE_MARKERS = ("expense", "cost", "cogs")


def is_expense(name: str) -> bool:
    lowered = name.lower()
    return any(marker in lowered for marker in _EXPENSE_MARKERS)


@dataclass(frozen=True)
class VarianceLine:
    name: str
    budget: float
    actual: float
    variance: float
    variance_pct: float
    favorable: bool
    exceeds_threshold: bool

    @property
    def status(self) -> str:
        if self.exceeds_threshold:
            return "alert_favorable" if self.favorable else "alert_unfavorable"
        return "favorable" if self.favorable else "unfavorable"


@dataclass(frozen=True)
class VarianceReport:
    threshold_pct: float
    lines: tuple[VarianceLine, ...]

    @property
    def alerts(self) -> list[VarianceLine]:
        return [line for line in self.lines if line.exceeds_threshold]

    @property
    def favorable_count(self) -> int:
        return sum(1 for line in self.lines if line.favorable)

    @property
    def unfavorable_count(self) -> int:
        return len(self.lines) - self.favorable_count

    def line(self, name: str) -> VarianceLine:
        for line in self.lines:
            if line.name == name:
                return line
        raise KeyError(name)


def _numeric(model: Model, name: str) -> float:
    scalar = model.scalars.get(name)
    if scalar is None or isinstance(scalar.value, bool) or not isinstance(scalar.value, float):
        return 0.0
    return scalar.value


def variance_report(
    budget: Model,
    actual: Model,
    threshold_pct: float = 10.0,
    evaluator: ModelEvaluator | None = None,
) -> VarianceReport:
    """Calculate copies of both models and compare every scalar.

    Scalars missing from one side (or without a numeric value) count as 0.
    ``variance_pct`` is relative to the budget and 0 when the budget is 0.
    Names containing expense/cost/cogs are favourable when the actual is at
    or below budget; everything else when it is at or above.

    Calculation errors in either model are raised.
    """
    evaluator = evaluator or ModelEvaluator()
    budget = budget.copy()
    actual = actual.copy()
    evaluator.calculate(budget).raise_on_error()
    evaluator.calculate(actual).raise_on_error()

    names = sorted(set(budget.scalars) | set(actual.scalars))
    lines = []
    for name in names:
        b = _numeric(budget, name)
        a = _numeric(actual, name)
        variance = a - b
        pct = variance / b * 100.0 if abs(b) > 1e-4 else 0.0
        favorable = a <= b if is_expense(name) else a >= b
        lines.append(
            VarianceLine(name, b, a, variance, pct, favorable, abs(pct) >= threshold_pct)
        )

    report = VarianceReport(threshold_pct, tuple(lines))
    logger.info(
        "Variance: %d favorable, %d unfavorable, %d alerts",
        report.favorable_count, report.unfavorable_count, len(report.alerts),
    )
    return report
