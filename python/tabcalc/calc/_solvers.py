"""Goal seek, break-even and sensitivity sweeps.

Every solver works the same way: copy the model, override one scalar,
calculate the whole model, read one scalar output. The base model is never
modified, and each trial is independent of the previous one.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from tabcalc.calc._errors import (
    ConvergenceError,
    EngineError,
    NotFound,
    TypeMismatch,
    UnknownReference,
)
from tabcalc.calc._evaluator import ModelEvaluator
from tabcalc.calc._functions import describe
from tabcalc.calc._scenarios import apply_overrides

if TYPE_CHECKING:
    from tabcalc._model import Model

logger = logging.getLogger(__name__)

_WIDEN_FACTORS = (10.0, 100.0, 1000.0)


def _require_scalar(model: Model, name: str) -> None:
    if name not in model.scalars:
        raise UnknownReference(name, model.scalars, what="scalar")


def observe(
    model: Model,
    vary: str,
    value: float,
    output: str,
    evaluator: ModelEvaluator | None = None,
) -> float:
    """Calculate a copy of *model* with ``vary = value`` and return *output*.

    Raises the error recorded for *output* if it failed to calculate.
    """
    evaluator = evaluator or ModelEvaluator()
    trial = apply_overrides(model, {vary: float(value)})
    result = evaluator.calculate(trial)
    error = result.error_for(output)
    if error is not None:
        raise error
    observed = trial.scalars[output].value
    if isinstance(observed, bool) or not isinstance(observed, float):
        raise TypeMismatch(
            f"Output '{output}' must be a number, got {describe(observed)}",
            location=output,
        )
    return observed


# ---------------------------------------------------------------------------
# Goal seek
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GoalSeekResult:
    """Solution of a goal seek: ``target`` reaches ``achieved`` at ``vary = value``."""

    target: str
    target_value: float
    vary: str
    value: float
    achieved: float
    iterations: int
    tolerance: float

    @property
    def error(self) -> float:
        return abs(self.achieved - self.target_value)

    @property
    def within_tolerance(self) -> bool:
        return self.error < self.tolerance


def _default_bounds(current: float) -> tuple[float, float]:
    """Search 0.01x to 100x the current value, or +-1000 around zero."""
    if current > 0:
        return current * 0.01, current * 100.0
    if current < 0:
        return current * 100.0, current * 0.01
    return -1000.0, 1000.0


def _widened(low: float, high: float, factor: float) -> tuple[float, float]:
    return (
        low / factor if low > 0 else low * factor,
        high * factor if high > 0 else high / factor,
    )


def goal_seek(
    model: Model,
    target: str,
    value: float,
    vary: str,
    low: float | None = None,
    high: float | None = None,
    tolerance: float = 1e-2,
    max_iterations: int = 100,
    evaluator: ModelEvaluator | None = None,
) -> GoalSeekResult:
    """Find the value of scalar *vary* that makes scalar *target* equal *value*.

    Bisection over ``[low, high]``. When no bracket is given, one is derived
    from the current value of *vary* and widened (10x, 100x, 1000x) until
    the output changes sign across it.

    Raises NotFound when the bracket has no sign change, and
    ConvergenceError when *max_iterations* is reached first.
    """
    _require_scalar(model, target)
    _require_scalar(model, vary)
    if tolerance <= 0:
        raise ValueError(f"tolerance must be positive, got {tolerance}")
    if max_iterations < 1:
        raise ValueError(f"max_iterations must be at least 1, got {max_iterations}")
    if low is not None and high is not None and low >= high:
        raise ValueError(f"Invalid bracket: low ({low}) must be less than high ({high})")

    evaluator = evaluator or ModelEvaluator()

    def f(x: float) -> float:
        return observe(model, vary, x, target, evaluator) - value

    def solved(x: float, fx: float, iterations: int) -> GoalSeekResult:
        logger.info("Goal seek: %s = %s after %d iterations", vary, x, iterations)
        return GoalSeekResult(target, value, vary, x, fx + value, iterations, tolerance)

    current = model.scalars[vary].value
    if isinstance(current, bool) or not isinstance(current, float):
        current = 1.0
    default_low, default_high = _default_bounds(current)
    lo = default_low if low is None else float(low)
    hi = default_high if high is None else float(high)

    f_lo, f_hi = f(lo), f(hi)
    logger.debug("Goal seek bracket [%s, %s]: f = [%s, %s]", lo, hi, f_lo, f_hi)
    if f_lo * f_hi > 0:
        if low is not None and high is not None:
            raise NotFound(
                f"No sign change for '{target}' - {value} when varying '{vary}' "
                f"over [{lo}, {hi}]"
            )
        for factor in _WIDEN_FACTORS:
            wide_lo, wide_hi = _widened(lo, hi, factor)
            f_wide_lo, f_wide_hi = f(wide_lo), f(wide_hi)
            if f_wide_lo * f_wide_hi <= 0:
                lo, hi, f_lo, f_hi = wide_lo, wide_hi, f_wide_lo, f_wide_hi
                logger.debug("Widened bracket to [%s, %s]", lo, hi)
                break
        else:
            raise NotFound(
                f"No solution found: '{target}' = {value} may not be achievable "
                f"by varying '{vary}'"
            )

    if abs(f_lo) < tolerance:
        return solved(lo, f_lo, 0)
    if abs(f_hi) < tolerance:
        return solved(hi, f_hi, 0)

    for iteration in range(1, max_iterations + 1):
        mid = (lo + hi) / 2.0
        f_mid = f(mid)
        if abs(f_mid) < tolerance:
            return solved(mid, f_mid, iteration)
        if f_lo * f_mid < 0:
            hi, f_hi = mid, f_mid
        else:
            lo, f_lo = mid, f_mid

    raise ConvergenceError(
        f"Goal seek for '{target}' = {value} did not converge within "
        f"{max_iterations} iterations (last {vary} = {(lo + hi) / 2.0})",
        iterations=max_iterations,
    )


def break_even(
    model: Model,
    output: str,
    vary: str,
    low: float | None = None,
    high: float | None = None,
    tolerance: float = 1e-4,
    max_iterations: int = 100,
    evaluator: ModelEvaluator | None = None,
) -> GoalSeekResult:
    """Goal seek for ``output = 0``."""
    return goal_seek(
        model, output, 0.0, vary, low, high, tolerance, max_iterations, evaluator
    )


# ---------------------------------------------------------------------------
# Sensitivity
# ---------------------------------------------------------------------------


def sweep(start: float, end: float, step: float) -> list[float]:
    """Evenly spaced values from *start* to *end* inclusive.

    Each value is computed as ``start + i * step`` so error does not
    accumulate across the sweep.
    """
    if not step > 0:
        raise ValueError(f"Step must be positive, got {step}")
    if start > end:
        raise ValueError(f"Start ({start}) must be less than or equal to end ({end})")
    # 1e-9 absorbs representation error in (end - start) / step
    count = math.floor((end - start) / step + 1e-9) + 1
    return [round(start + i * step, 12) for i in range(count)]


@dataclass(frozen=True)
class SensitivityPoint:
    input: float
    output: float | None
    error: EngineError | None = None


@dataclass(frozen=True)
class SensitivityTable:
    """One output observed across values of one input."""

    vary: str
    output: str
    points: tuple[SensitivityPoint, ...]

    @property
    def inputs(self) -> list[float]:
        return [p.input for p in self.points]

    @property
    def outputs(self) -> list[float | None]:
        return [p.output for p in self.points]

    @property
    def errors(self) -> list[SensitivityPoint]:
        return [p for p in self.points if p.error is not None]


@dataclass(frozen=True)
class SensitivityMatrix:
    """One output over the grid of two inputs; ``matrix[i][j]`` is at
    ``(rows[i], columns[j])``."""

    vary: str
    vary2: str
    output: str
    rows: tuple[float, ...]
    columns: tuple[float, ...]
    matrix: tuple[tuple[float | None, ...], ...]
    errors: dict[tuple[int, int], EngineError] = field(default_factory=dict)

    def value(self, i: int, j: int) -> float | None:
        return self.matrix[i][j]


def sensitivity(
    model: Model,
    vary: str,
    values: Sequence[float],
    output: str,
    evaluator: ModelEvaluator | None = None,
) -> SensitivityTable:
    """Recalculate *model* for each input value and collect *output*.

    Failed points are recorded with their error instead of raising::

        table = sensitivity(model, "price", sweep(10, 20, 2), "profit")
    """
    _require_scalar(model, vary)
    _require_scalar(model, output)
    evaluator = evaluator or ModelEvaluator()

    points = []
    for x in values:
        try:
            points.append(SensitivityPoint(x, observe(model, vary, x, output, evaluator)))
        except EngineError as exc:
            logger.debug("Sensitivity point %s = %s failed: %s", vary, x, exc.message)
            points.append(SensitivityPoint(x, None, exc))
    return SensitivityTable(vary, output, tuple(points))


def sensitivity_2d(
    model: Model,
    vary: str,
    values: Sequence[float],
    vary2: str,
    values2: Sequence[float],
    output: str,
    evaluator: ModelEvaluator | None = None,
) -> SensitivityMatrix:
    """Two-input sweep over the Cartesian product of *values* and *values2*."""
    _require_scalar(model, vary)
    _require_scalar(model, vary2)
    _require_scalar(model, output)
    evaluator = evaluator or ModelEvaluator()

    matrix = []
    errors: dict[tuple[int, int], EngineError] = {}
    for i, x in enumerate(values):
        base = apply_overrides(model, {vary: float(x)})
        row = []
        for j, y in enumerate(values2):
            try:
                row.append(observe(base, vary2, y, output, evaluator))
            except EngineError as exc:
                errors[(i, j)] = exc
                row.append(None)
        matrix.append(tuple(row))
    return SensitivityMatrix(
        vary, vary2, output, tuple(values), tuple(values2), tuple(matrix), errors
    )
