"""Tests for tabcalc.calc scope-chain reference resolution."""

from __future__ import annotations

import pytest

from tabcalc import Model
from tabcalc.calc._errors import AmbiguousReference, UnknownReference
from tabcalc.calc._resolver import ColumnLocation, ReferenceResolver, ScalarLocation, Scope


def _model() -> Model:
    return Model.from_dict({
        "tables": {
            "sales": {"revenue": [1, 2], "cogs": [1, 1], "rate": [0.1, 0.2]},
            "costs": {"fixed": [5, 5]},
        },
        "scalars": {
            "rate": 0.5,
            "north.base": 10,
            "south.base": 20,
            "north.sub.base": 30,
            "north.sub.result": "=base*2",
            "base": 1,
        },
    })


class TestScope:
    def test_groups_innermost_first(self) -> None:
        assert Scope.for_scalar("a.b.c").groups == ["a.b", "a"]

    def test_no_groups(self) -> None:
        assert Scope.for_scalar("x").groups == []
        assert Scope.for_column("t").groups == []


class TestTableLevel:
    def test_bare_name_is_own_column(self) -> None:
        resolver = ReferenceResolver(_model())
        loc = resolver.resolve("revenue", Scope.for_column("sales"))
        assert loc == ColumnLocation("sales", "revenue")

    def test_own_column_shadows_global_scalar(self) -> None:
        resolver = ReferenceResolver(_model())
        assert resolver.resolve("rate", Scope.for_column("sales")) == ColumnLocation("sales", "rate")

    def test_other_table_needs_qualified_name(self) -> None:
        resolver = ReferenceResolver(_model())
        assert resolver.resolve("costs.fixed", Scope.for_column("sales")) == ColumnLocation(
            "costs", "fixed"
        )
        with pytest.raises(UnknownReference):
            resolver.resolve("fixed", Scope.for_column("sales"))

    def test_global_scalar_from_table(self) -> None:
        resolver = ReferenceResolver(_model())
        assert resolver.resolve("rate", Scope.for_column("costs")) == ScalarLocation("rate")


class TestGroupLevels:
    def test_sibling_scopes_resolve_locally(self) -> None:
        resolver = ReferenceResolver(_model())
        assert resolver.resolve("base", Scope.for_scalar("north.result")) == ScalarLocation(
            "north.base"
        )
        assert resolver.resolve("base", Scope.for_scalar("south.result")) == ScalarLocation(
            "south.base"
        )

    def test_innermost_group_wins(self) -> None:
        resolver = ReferenceResolver(_model())
        loc = resolver.resolve("base", Scope.for_scalar("north.sub.result"))
        assert loc == ScalarLocation("north.sub.base")

    def test_falls_back_to_global(self) -> None:
        resolver = ReferenceResolver(_model())
        assert resolver.resolve("base", Scope.for_scalar("east.result")) == ScalarLocation("base")

    def test_fully_qualified_scalar(self) -> None:
        resolver = ReferenceResolver(_model())
        loc = resolver.resolve("south.base", Scope.for_scalar("north.result"))
        assert loc == ScalarLocation("south.base")


class TestErrors:
    def test_unknown_with_suggestion(self) -> None:
        resolver = ReferenceResolver(_model())
        with pytest.raises(UnknownReference) as info:
            resolver.resolve("revenu", Scope.for_column("sales"))
        assert info.value.suggestion == "did you mean 'revenue'?"
        assert "revenue" in info.value.available

    def test_ambiguous_at_global_level(self) -> None:
        model = Model.from_dict({
            "tables": {"t": {"c": [1]}},
            "scalars": {"t.c": 2},
        })
        with pytest.raises(AmbiguousReference) as info:
            ReferenceResolver(model).resolve("t.c", Scope())
        assert info.value.candidates == ("t.c", "t.c")


class TestCache:
    def test_repeated_resolution_is_cached(self) -> None:
        resolver = ReferenceResolver(_model())
        scope = Scope.for_column("sales")
        first = resolver.resolve("revenue", scope)
        assert resolver.resolve("revenue", scope) is first
