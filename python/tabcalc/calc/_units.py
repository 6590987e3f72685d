"""Unit consistency checks for formulas.

Units are free-form strings on columns and scalars (``"USD"``, ``"%"``,
``"days"``). Each is mapped to a :class:`UnitCategory`; a formula that adds,
subtracts or compares operands of incompatible categories, or whose
inferred unit contradicts its declared unit, produces a :class:`UnitWarning`.
Unknown units are compatible with everything.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from tabcalc.calc._errors import EngineError
from tabcalc.calc._parser import (
    BinaryOp,
    Call,
    Expr,
    FormulaParser,
    Index,
    Ref,
    UnaryOp,
)
from tabcalc.calc._resolver import (
    ColumnLocation,
    Location,
    ReferenceResolver,
    ScalarLocation,
    Scope,
)

if TYPE_CHECKING:
    from tabcalc._model import Model

logger = logging.getLogger(__name__)

_CURRENCIES = {"cad", "usd", "eur", "gbp", "jpy", "cny", "$"}
_TIME_UNITS = {
    "days": "days", "day": "days", "d": "days",
    "months": "months", "month": "months", "mo": "months",
    "years": "years", "year": "years", "yr": "years",
    "hours": "hours", "hour": "hours", "hr": "hours",
}

# Functions whose result carries the unit of their first argument
_UNIT_PRESERVING = frozenset({
    "SUM", "AVERAGE", "AVG", "MIN", "MAX", "MEDIAN", "ROUND", "ROUNDUP",
    "ROUNDDOWN", "ABS", "FLOOR", "CEILING", "SUMIF", "SUMIFS", "AVERAGEIF",
    "AVERAGEIFS", "MINIFS", "MAXIFS", "INDEX", "VARIANCE",
})
_COUNTING = frozenset({"COUNT", "COUNTA", "COUNTIF", "COUNTIFS", "COUNTUNIQUE"})


@dataclass(frozen=True)
class UnitCategory:
    kind: str  # currency | percentage | count | time | ratio | unknown
    name: str = ""

    @classmethod
    def parse(cls, unit: str) -> UnitCategory:
        lowered = unit.strip().lower()
        if lowered in _CURRENCIES:
            return cls("currency", unit.strip().upper())
        if lowered in ("%", "percent", "percentage"):
            return cls("percentage")
        if lowered in ("count", "units", "items", "qty", "quantity"):
            return cls("count")
        if lowered in _TIME_UNITS:
            return cls("time", _TIME_UNITS[lowered])
        if lowered in ("ratio", "factor", "multiplier", "x"):
            return cls("ratio")
        return cls("unknown")

    @property
    def known(self) -> bool:
        return self.kind != "unknown"

    def compatible(self, other: UnitCategory) -> bool:
        """True when values of both categories may be added or compared."""
        if not self.known or not other.known:
            return True
        if {self.kind, other.kind} == {"percentage", "ratio"}:
            # both dimensionless
            return True
        return self == other

    def display(self) -> str:
        if self.kind == "percentage":
            return "%"
        return self.name or self.kind


@dataclass(frozen=True)
class UnitWarning:
    location: str
    formula: str
    message: str
    severity: str = "warning"

    def __str__(self) -> str:
        return f"{self.severity.capitalize()}: {self.location} - {self.message} ({self.formula})"


Unit = Optional[UnitCategory]


class _UnitChecker:
    def __init__(self, model: Model) -> None:
        self._model = model
        self._resolver = ReferenceResolver(model)
        self._parser = FormulaParser()
        self.warnings: list[UnitWarning] = []

    def declared(self, loc: Location) -> Unit:
        if isinstance(loc, ColumnLocation):
            unit = self._model.tables[loc.table][loc.column].unit
        else:
            unit = self._model.scalars[loc.name].unit
        if unit is None:
            return None
        category = UnitCategory.parse(unit)
        return category if category.known else None

    def check(self, location: str, formula: str, scope: Scope, declared: Unit) -> None:
        self._location, self._formula = location, formula
        try:
            inferred = self._infer(self._parser.parse(formula), scope)
        except EngineError as exc:
            # Unresolvable formulas are reported by calculate
            logger.debug("Skipping unit check for %s: %s", location, exc.message)
            return
        if declared is not None and inferred is not None and not declared.compatible(inferred):
            self._warn(
                f"Declared unit {declared.display()} but formula yields {inferred.display()}"
            )

    def _warn(self, message: str) -> None:
        warning = UnitWarning(self._location, self._formula, message)
        if warning not in self.warnings:
            self.warnings.append(warning)

    def _infer(self, expr: Expr, scope: Scope) -> Unit:
        if isinstance(expr, Ref):
            return self.declared(self._resolver.resolve(expr.name, scope))
        if isinstance(expr, Index):
            return self._infer(expr.target, scope)
        if isinstance(expr, UnaryOp):
            return self._infer(expr.operand, scope)
        if isinstance(expr, Call):
            units = [self._infer(arg, scope) for arg in expr.args]
            if expr.name in _COUNTING:
                return UnitCategory("count")
            if expr.name in _UNIT_PRESERVING and units:
                return units[0]
            return None
        if isinstance(expr, BinaryOp):
            return self._binary(expr, scope)
        return None

    def _binary(self, expr: BinaryOp, scope: Scope) -> Unit:
        left = self._infer(expr.left, scope)
        right = self._infer(expr.right, scope)
        op = expr.op
        if op in ("+", "-", "=", "<>", "<", ">", "<=", ">="):
            if left is not None and right is not None and not left.compatible(right):
                kinds = {left.kind, right.kind}
                if op == "+" and kinds == {"percentage", "currency"}:
                    self._warn("Adding percentage to currency - did you mean to multiply?")
                elif op in ("+", "-"):
                    self._warn(
                        "Mixing incompatible units in addition/subtraction: "
                        f"{left.display()} and {right.display()}"
                    )
                else:
                    self._warn(
                        f"Comparing incompatible units: {left.display()} and {right.display()}"
                    )
            return left or right if op in ("+", "-") else None
        if op == "*":
            if left is None or left.kind in ("percentage", "ratio"):
                return right if right is not None else left
            if right is None or right.kind in ("percentage", "ratio"):
                return left
            return None
        if op == "/":
            if left is not None and right is not None and left == right:
                return UnitCategory("ratio")
            if right is None or right.kind in ("percentage", "ratio"):
                return left
            return None
        if op == "^":
            return left
        return None


def check_units(model: Model) -> list[UnitWarning]:
    """Unit warnings for every formula column and derived scalar of *model*."""
    checker = _UnitChecker(model)
    for table in model.tables.values():
        for column in table.formula_columns:
            declared = checker.declared(ColumnLocation(table.name, column.name))
            checker.check(
                f"{table.name}.{column.name}", column.formula, Scope.for_column(table.name), declared
            )
    for scalar in model.scalars.values():
        if scalar.is_derived:
            declared = checker.declared(ScalarLocation(scalar.name))
            checker.check(scalar.name, scalar.formula, Scope.for_scalar(scalar.name), declared)
    if checker.warnings:
        logger.info("Unit check found %d warnings", len(checker.warnings))
    return checker.warnings
