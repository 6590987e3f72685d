"""Scope-chain reference resolution.

A formula is resolved relative to the :class:`Scope` it is written in. The
chain is walked innermost to outermost and stops at the first level with a
match::

    table level     bare ``x``   -> column ``x`` of the formula's own table
    group levels    ``x``        -> scalar ``a.b.x``, then ``a.x`` (for ``a.b.name``)
    global level    ``x``        -> scalar ``x``; ``t.c`` also -> column ``c`` of ``t``

Two candidates at one level is an :class:`AmbiguousReference`; no candidate
at any level is an :class:`UnknownReference`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Union

from tabcalc.calc._errors import AmbiguousReference, UnknownReference

if TYPE_CHECKING:
    from tabcalc._model import Model

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ColumnLocation:
    table: str
    column: str

    def __str__(self) -> str:
        return f"{self.table}.{self.column}"


@dataclass(frozen=True)
class ScalarLocation:
    name: str

    def __str__(self) -> str:
        return self.name


Location = Union[ColumnLocation, ScalarLocation]


@dataclass(frozen=True)
class Scope:
    """Where a formula lives: a table column or a (possibly grouped) scalar."""

    table: str | None = None
    scalar: str | None = None

    @classmethod
    def for_column(cls, table: str) -> Scope:
        return cls(table=table)

    @classmethod
    def for_scalar(cls, name: str) -> Scope:
        return cls(scalar=name)

    @property
    def groups(self) -> list[str]:
        """Enclosing scalar groups, innermost first."""
        if self.scalar is None or "." not in self.scalar:
            return []
        parts = self.scalar.split(".")[:-1]
        return [".".join(parts[:i]) for i in range(len(parts), 0, -1)]


class ReferenceResolver:
    """Maps reference names to model locations for one model.

    Resolutions are cached per ``(name, scope)``; the model's set of names
    must not change while a resolver is in use.
    """

    def __init__(self, model: Model) -> None:
        self._model = model
        self._cache: dict[tuple[str, Scope], Location] = {}

    def resolve(self, name: str, scope: Scope) -> Location:
        key = (name, scope)
        loc = self._cache.get(key)
        if loc is None:
            loc = self._resolve(name, scope)
            self._cache[key] = loc
        return loc

    def _resolve(self, name: str, scope: Scope) -> Location:
        model = self._model

        # Table level: bare names only
        if scope.table is not None and "." not in name:
            table = model.tables.get(scope.table)
            if table is not None and name in table:
                return ColumnLocation(scope.table, name)

        for group in scope.groups:
            qualified = f"{group}.{name}"
            if qualified in model.scalars:
                return ScalarLocation(qualified)

        candidates: list[Location] = []
        if name in model.scalars:
            candidates.append(ScalarLocation(name))
        if name.count(".") == 1:
            table_name, column = name.split(".")
            table = model.tables.get(table_name)
            if table is not None and column in table:
                candidates.append(ColumnLocation(table_name, column))

        if len(candidates) > 1:
            raise AmbiguousReference(name, [str(c) for c in candidates])
        if candidates:
            return candidates[0]
        raise UnknownReference(name, self._names_in(scope))

    def _names_in(self, scope: Scope) -> list[str]:
        """Every name reachable from *scope*, for suggestions."""
        names: list[str] = []
        if scope.table is not None and scope.table in self._model.tables:
            names.extend(self._model.tables[scope.table].column_names)
        for group in scope.groups:
            prefix = f"{group}."
            names.extend(
                s[len(prefix):] for s in self._model.scalars if s.startswith(prefix)
            )
        names.extend(self._model.scalars)
        for table in self._model.tables.values():
            names.extend(f"{table.name}.{c}" for c in table.column_names)
        return names
