"""Engine error taxonomy.

Every error carries the failing formula text and its location (``table.column``
or a scalar name) once the evaluator has attached them, so callers can render
diagnostics without re-parsing anything.
"""

from __future__ import annotations

import difflib
from collections.abc import Iterable


class EngineError(Exception):
    """Base class for all user-input errors reported by the engine."""

    def __init__(
        self,
        message: str,
        *,
        formula: str | None = None,
        location: str | None = None,
        suggestion: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.formula = formula
        self.location = location
        self.suggestion = suggestion

    def attach(self, formula: str | None, location: str | None) -> EngineError:
        """Fill in formula/location if not already set; returns self."""
        if self.formula is None:
            self.formula = formula
        if self.location is None:
            self.location = location
        return self

    @property
    def kind(self) -> str:
        return type(self).__name__

    def __str__(self) -> str:
        if self.location is None:
            msg = self.message
        else:
            msg = f"Formula error in '{self.location}': {self.message}"
            if self.formula is not None:
                msg += f"\n  Formula: {self.formula}"
        if self.suggestion:
            msg += f"\n  Suggestion: {self.suggestion}"
        return msg


class FormulaSyntaxError(EngineError):
    """Formula text could not be tokenized or parsed."""

    def __init__(
        self, message: str, position: int | None = None, **kwargs: str | None
    ) -> None:
        if position is not None:
            message = f"{message} (at position {position})"
        super().__init__(message, **kwargs)
        self.position = position


class UnknownReference(EngineError):
    """An operand matched nothing in any searched scope."""

    def __init__(
        self,
        name: str,
        available: Iterable[str] = (),
        what: str = "reference",
        **kwargs: str | None,
    ) -> None:
        available = list(available)
        if "suggestion" not in kwargs:
            close = difflib.get_close_matches(name, available, n=1)
            if close:
                kwargs["suggestion"] = f"did you mean '{close[0]}'?"
        super().__init__(f"Unknown {what} '{name}'", **kwargs)
        self.name = name
        self.available = tuple(available)


class UnknownFunction(UnknownReference):
    """A called function is not in the registry."""

    def __init__(self, name: str, available: Iterable[str] = ()) -> None:
        super().__init__(name, available, what="function")


class AmbiguousReference(EngineError):
    """More than one candidate matched at the same scope level."""

    def __init__(self, name: str, candidates: Iterable[str], **kwargs: str | None) -> None:
        candidates = tuple(candidates)
        super().__init__(
            f"Ambiguous reference '{name}': matches {', '.join(candidates)}", **kwargs
        )
        self.name = name
        self.candidates = candidates


class TypeMismatch(EngineError):
    """An operand has the wrong type for the operation applied to it."""


class CircularDependency(EngineError):
    """A dependency cycle; ``members`` names every node on it."""

    def __init__(self, members: Iterable[str], **kwargs: str | None) -> None:
        members = tuple(members)
        super().__init__(
            f"Circular dependency detected involving: {', '.join(members)}", **kwargs
        )
        self.members = members


class IndexOutOfRange(EngineError):
    """A positional index fell outside ``[0, length)``."""

    def __init__(self, index: int, length: int, target: str = "", **kwargs: str | None) -> None:
        where = f" for '{target}'" if target else ""
        super().__init__(
            f"Index {index} out of range{where} (length {length})", **kwargs
        )
        self.index = index
        self.length = length


class DomainError(EngineError):
    """A mathematically undefined operation (negative sqrt, division by zero)."""


class ConvergenceError(EngineError):
    """An iterative solver exceeded its iteration cap."""

    def __init__(self, message: str, iterations: int = 0, **kwargs: str | None) -> None:
        super().__init__(message, **kwargs)
        self.iterations = iterations


class NotFound(EngineError):
    """A search found nothing: no sign change in a bracket, or a lookup miss."""


class UpstreamError(EngineError):
    """Skipped because something this formula depends on failed."""

    def __init__(self, upstream: Iterable[str], **kwargs: str | None) -> None:
        upstream = tuple(upstream)
        super().__init__(
            f"Not calculated: depends on failed {', '.join(upstream)}", **kwargs
        )
        self.upstream = upstream
