"""Model, Table, Column, Scalar and Scenario: the in-memory calculation unit.

A loader builds a :class:`Model` once per calculation request, the engine
fills in derived values in place, and a writer consumes the result.
"""

from __future__ import annotations

import datetime
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


class ColumnType(str, Enum):
    """Primitive type tag shared by every value in a column."""

    NUMBER = "number"
    TEXT = "text"
    BOOLEAN = "boolean"
    DATE = "date"


def value_type(value: Any) -> ColumnType:
    """Return the type tag for a single primitive value.

    ``bool`` is checked before numbers since it subclasses ``int``.
    Raises TypeError for anything that is not a supported primitive.
    """
    if isinstance(value, bool):
        return ColumnType.BOOLEAN
    if isinstance(value, (int, float)):
        return ColumnType.NUMBER
    if isinstance(value, str):
        return ColumnType.TEXT
    if isinstance(value, datetime.datetime):
        raise TypeError(f"datetime values are not supported, use date: {value!r}")
    if isinstance(value, datetime.date):
        return ColumnType.DATE
    raise TypeError(f"Unsupported value type {type(value).__name__}: {value!r}")


def _normalize(value: Any) -> Any:
    # ints are stored as floats so Number columns are homogeneous doubles
    if isinstance(value, int) and not isinstance(value, bool):
        return float(value)
    return value


def _strip_formula(formula: str | None) -> str | None:
    if formula is None:
        return None
    formula = formula.strip()
    return formula or None


# ---------------------------------------------------------------------------
# Columns and scalars
# ---------------------------------------------------------------------------


@dataclass
class Column:
    """A typed array with an optional derivation formula."""

    name: str
    values: list[Any] = field(default_factory=list)
    formula: str | None = None
    type: ColumnType | None = None
    unit: str | None = None

    def __post_init__(self) -> None:
        self.formula = _strip_formula(self.formula)
        self.values = [_normalize(v) for v in self.values]
        inferred: ColumnType | None = None
        for i, v in enumerate(self.values):
            t = value_type(v)
            if inferred is None:
                inferred = t
            elif t is not inferred:
                raise ValueError(
                    f"Column '{self.name}' row {i}: expected {inferred.value}, "
                    f"found {t.value}"
                )
        if self.type is None:
            self.type = inferred
        elif inferred is not None and inferred is not self.type:
            raise ValueError(
                f"Column '{self.name}' declared {self.type.value} "
                f"but holds {inferred.value} values"
            )

    @property
    def is_derived(self) -> bool:
        return self.formula is not None

    def copy(self) -> Column:
        return replace(self, values=list(self.values))

    def __len__(self) -> int:
        return len(self.values)


@dataclass
class Scalar:
    """A single typed value with an optional derivation formula.

    Dotted names (``summary.total``) place the scalar in the ``summary``
    group; bare references inside its formula resolve against that group
    before the global namespace.
    """

    name: str
    value: Any = None
    formula: str | None = None
    unit: str | None = None

    def __post_init__(self) -> None:
        self.formula = _strip_formula(self.formula)
        if self.value is not None:
            value_type(self.value)
            self.value = _normalize(self.value)

    @property
    def is_derived(self) -> bool:
        return self.formula is not None

    @property
    def group(self) -> str | None:
        """Enclosing scalar group (``"a.b"`` for ``"a.b.c"``), or None."""
        if "." not in self.name:
            return None
        return self.name.rsplit(".", 1)[0]

    def copy(self) -> Scalar:
        return replace(self)


# ---------------------------------------------------------------------------
# Table
# ---------------------------------------------------------------------------


class Table:
    """Named collection of equal-length typed columns."""

    __slots__ = ("name", "_columns")

    def __init__(self, name: str, columns: Iterable[Column] = ()) -> None:
        if not name or "." in name:
            raise ValueError(f"Invalid table name: {name!r}")
        self.name = name
        self._columns: dict[str, Column] = {}
        for column in columns:
            self.add_column(column)

    @property
    def row_count(self) -> int:
        """Length shared by all non-empty columns (0 for an empty table)."""
        for column in self._columns.values():
            if column.values or not column.is_derived:
                return len(column.values)
        return 0

    def add_column(self, column: Column) -> None:
        """Add a column, enforcing unique names and the shared row count."""
        if not column.name or "." in column.name:
            raise ValueError(f"Invalid column name: {column.name!r}")
        if column.name in self._columns:
            raise ValueError(f"Column '{column.name}' already exists in table '{self.name}'")
        if column.values or not column.is_derived:
            populated = [
                c for c in self._columns.values() if c.values or not c.is_derived
            ]
            if populated and len(column) != len(populated[0]):
                raise ValueError(
                    f"Column '{column.name}' has {len(column)} rows, "
                    f"table '{self.name}' has {len(populated[0])}"
                )
        self._columns[column.name] = column

    def set_values(self, name: str, values: list[Any], type_: ColumnType | None) -> None:
        """Overwrite a derived column's values (engine use)."""
        column = self._columns[name]
        column.values = values
        column.type = type_

    @property
    def columns(self) -> dict[str, Column]:
        return dict(self._columns)

    @property
    def column_names(self) -> list[str]:
        return list(self._columns)

    @property
    def data_columns(self) -> list[Column]:
        return [c for c in self._columns.values() if not c.is_derived]

    @property
    def formula_columns(self) -> list[Column]:
        return [c for c in self._columns.values() if c.is_derived]

    def copy(self) -> Table:
        return Table(self.name, [c.copy() for c in self._columns.values()])

    def __getitem__(self, name: str) -> Column:
        if name not in self._columns:
            raise KeyError(f"Column '{name}' does not exist in table '{self.name}'")
        return self._columns[name]

    def __contains__(self, name: object) -> bool:
        return name in self._columns

    def __iter__(self) -> Iterator[str]:
        return iter(self._columns)

    def __len__(self) -> int:
        return self.row_count

    def __repr__(self) -> str:
        return f"<Table {self.name!r} rows={self.row_count} columns={self.column_names}>"


# ---------------------------------------------------------------------------
# Scenario and Model
# ---------------------------------------------------------------------------


@dataclass
class Scenario:
    """Named set of scalar overrides applied before calculation."""

    name: str
    overrides: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for key, value in self.overrides.items():
            value_type(value)
            self.overrides[key] = _normalize(value)


class Model:
    """Uniquely named tables, scalars and scenarios: the unit of calculation."""

    __slots__ = ("tables", "scalars", "scenarios")

    def __init__(
        self,
        tables: Iterable[Table] = (),
        scalars: Iterable[Scalar] = (),
        scenarios: Iterable[Scenario] = (),
    ) -> None:
        self.tables: dict[str, Table] = {}
        self.scalars: dict[str, Scalar] = {}
        self.scenarios: dict[str, Scenario] = {}
        for table in tables:
            self.add_table(table)
        for scalar in scalars:
            self.add_scalar(scalar)
        for scenario in scenarios:
            self.add_scenario(scenario)

    def add_table(self, table: Table) -> Table:
        if table.name in self.tables:
            raise ValueError(f"Table '{table.name}' already exists")
        self.tables[table.name] = table
        return table

    def add_scalar(self, scalar: Scalar) -> Scalar:
        if scalar.name in self.scalars:
            raise ValueError(f"Scalar '{scalar.name}' already exists")
        self.scalars[scalar.name] = scalar
        return scalar

    def add_scenario(self, scenario: Scenario) -> Scenario:
        if scenario.name in self.scenarios:
            raise ValueError(f"Scenario '{scenario.name}' already exists")
        self.scenarios[scenario.name] = scenario
        return scenario

    def copy(self) -> Model:
        """Independent copy; mutating it never touches this model."""
        return Model(
            tables=[t.copy() for t in self.tables.values()],
            scalars=[s.copy() for s in self.scalars.values()],
            scenarios=[
                Scenario(s.name, dict(s.overrides)) for s in self.scenarios.values()
            ],
        )

    def __getitem__(self, name: str) -> Table:
        if name not in self.tables:
            raise KeyError(f"Table '{name}' does not exist")
        return self.tables[name]

    def __contains__(self, name: object) -> bool:
        return name in self.tables

    def __repr__(self) -> str:
        return (
            f"<Model tables={list(self.tables)} scalars={len(self.scalars)} "
            f"scenarios={list(self.scenarios)}>"
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Model:
        """Build a model from plain mappings.

        Usage::

            model = Model.from_dict({
                "tables": {"sales": {"revenue": [100, 200], "tax": "=revenue*rate"}},
                "scalars": {"rate": 0.2, "total": "=SUM(sales.tax)"},
                "scenarios": {"high": {"rate": 0.3}},
            })

        A string starting with ``=`` is a formula; scalars may also be given
        as ``{"value": ..., "formula": ..., "unit": ...}`` mappings.
        """
        model = cls()
        for table_name, columns in data.get("tables", {}).items():
            table = Table(table_name)
            for col_name, spec in columns.items():
                table.add_column(_column_from_spec(col_name, spec))
            model.add_table(table)
        for name, spec in data.get("scalars", {}).items():
            model.add_scalar(_scalar_from_spec(name, spec))
        for name, overrides in data.get("scenarios", {}).items():
            model.add_scenario(Scenario(name, dict(overrides)))
        return model


def _column_from_spec(name: str, spec: Any) -> Column:
    if isinstance(spec, Column):
        return spec
    if isinstance(spec, str) and spec.startswith("="):
        return Column(name, formula=spec)
    if isinstance(spec, Mapping):
        return Column(
            name,
            values=list(spec.get("values", [])),
            formula=spec.get("formula"),
            unit=spec.get("unit"),
        )
    if isinstance(spec, (list, tuple)):
        return Column(name, values=list(spec))
    raise ValueError(f"Column '{name}' must be a list, formula or mapping")


def _scalar_from_spec(name: str, spec: Any) -> Scalar:
    if isinstance(spec, Scalar):
        return spec
    if isinstance(spec, str) and spec.startswith("="):
        return Scalar(name, formula=spec)
    if isinstance(spec, Mapping):
        return Scalar(
            name,
            value=spec.get("value"),
            formula=spec.get("formula"),
            unit=spec.get("unit"),
        )
    return Scalar(name, value=spec)
