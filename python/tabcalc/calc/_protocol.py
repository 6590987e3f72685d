"""CalcEngine protocol, engine options and result dataclasses."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from tabcalc._model import Model
    from tabcalc.calc._errors import EngineError


@dataclass(frozen=True)
class EngineOptions:
    """Numeric knobs shared by the evaluator and the iterative functions."""

    decimal_places: int = 6
    validation_tolerance: float = 1e-4
    newton_max_iterations: int = 100
    newton_tolerance: float = 1e-10
    irr_guess: float = 0.1


DEFAULT_OPTIONS = EngineOptions()


@dataclass(frozen=True)
class CalcResult:
    """Outcome of one calculation.

    ``model`` is the calculated model (filled in place). ``errors`` lists
    every failed column or scalar; ``order`` is the evaluation order of the
    derived values that were attempted, as ``table.column`` or scalar names.
    """

    model: Model
    errors: tuple[EngineError, ...] = ()
    order: tuple[str, ...] = ()
    values: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    def error_for(self, location: str) -> EngineError | None:
        for err in self.errors:
            if err.location == location:
                return err
        return None

    def raise_on_error(self) -> CalcResult:
        """Raise the first error, if any; returns self otherwise."""
        if self.errors:
            raise self.errors[0]
        return self


@dataclass(frozen=True)
class Mismatch:
    """A stored value that disagrees with its recalculated value."""

    location: str  # "table.column" or scalar name
    expected: Any  # recalculated
    actual: Any  # stored
    row: int | None = None


@dataclass(frozen=True)
class AuditEntry:
    name: str
    kind: str  # "column" | "scalar"
    formula: str | None
    depth: int  # 1 = direct dependency
    value: Any = None


@dataclass(frozen=True)
class DependencyChain:
    """Everything a derived value transitively depends on."""

    target: str
    formula: str | None
    entries: tuple[AuditEntry, ...]

    @property
    def names(self) -> list[str]:
        return [e.name for e in self.entries]

    @property
    def max_depth(self) -> int:
        return max((e.depth for e in self.entries), default=0)

    @property
    def inputs(self) -> list[AuditEntry]:
        """Leaf entries: stored values with no formula."""
        return [e for e in self.entries if e.formula is None]


@runtime_checkable
class CalcEngine(Protocol):
    """Protocol for model calculation engines."""

    def calculate(self, model: Model) -> CalcResult:
        """Evaluate every formula in dependency order, filling *model* in place."""
        ...

    def validate(self, model: Model) -> list[Mismatch]:
        """Recalculate a copy of *model* and report stored values that differ."""
        ...

    def audit(self, model: Model, name: str) -> DependencyChain:
        """Return the upstream dependency chain of one column or scalar."""
        ...
