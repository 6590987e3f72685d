"""Integration tests for tabcalc.calc: multi-table models end to end."""

from __future__ import annotations

import time

import pytest

from tabcalc import Column, Model, Scalar, Scenario, Table
from tabcalc.calc import (
    ModelEvaluator,
    apply_overrides,
    audit,
    calculate,
    compare_scenarios,
    goal_seek,
    validate,
)

# ---------------------------------------------------------------------------
# Model builders
# ---------------------------------------------------------------------------


def _build_income_statement(num_rows: int = 4) -> Model:
    """Monthly revenue and cost lines, summarized into grouped scalars."""
    months = list(range(1, num_rows + 1))
    return Model(
        tables=[
            Table("revenue", [
                Column("month", months),
                Column("units", [100 + 10 * m for m in months]),
                Column("price", [25.0] * num_rows),
                Column("sales", formula="=units * price"),
            ]),
            Table("costs", [
                Column("month", months),
                Column("materials", formula="=revenue.units * unit_cost"),
                Column("total", formula="=materials + overhead"),
            ]),
        ],
        scalars=[
            Scalar("unit_cost", 8.0),
            Scalar("overhead", 500.0),
            Scalar("summary.revenue", formula="=SUM(revenue.sales)"),
            Scalar("summary.costs", formula="=SUM(costs.total)"),
            Scalar("summary.profit", formula="=revenue - costs"),
            Scalar("summary.margin", formula="=profit / revenue"),
        ],
    )


def _build_hardcoded() -> Model:
    """Same shape as the sum chain, but the total is typed in."""
    return Model.from_dict({
        "tables": {"t": {"x": [10, 20]}},
        "scalars": {"total": 30, "double": "=total * 2"},
    })


def _build_sum_chain() -> Model:
    return Model.from_dict({
        "tables": {"t": {"x": [10, 20]}},
        "scalars": {"total": "=SUM(t.x)", "double": "=total * 2"},
    })


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestIncomeStatement:
    def test_cross_table_and_grouped_scalars(self) -> None:
        model = _build_income_statement()
        calculate(model).raise_on_error()
        assert model["revenue"]["sales"].values == [2750.0, 3000.0, 3250.0, 3500.0]
        assert model["costs"]["materials"].values == [880.0, 960.0, 1040.0, 1120.0]
        assert model["costs"]["total"].values == [1380.0, 1460.0, 1540.0, 1620.0]
        assert model.scalars["summary.revenue"].value == 12500.0
        assert model.scalars["summary.costs"].value == 6000.0
        assert model.scalars["summary.profit"].value == 6500.0
        assert model.scalars["summary.margin"].value == 0.52

    def test_validates_clean_after_calculate(self) -> None:
        model = _build_income_statement()
        calculate(model).raise_on_error()
        assert validate(model) == []

    def test_audit_crosses_tables(self) -> None:
        chain = audit(_build_income_statement(), "summary.margin")
        names = set(chain.names)
        assert {"summary.profit", "summary.costs", "costs.materials", "unit_cost"} <= names
        assert {e.name for e in chain.inputs} == {
            "revenue.units", "revenue.price", "unit_cost", "overhead",
        }


class TestSiblingScopes:
    def test_each_scope_uses_its_own_base(self) -> None:
        model = Model.from_dict({
            "scalars": {
                "north.base": 10,
                "north.result": "=base * 2",
                "south.base": 20,
                "south.result": "=base * 2",
            },
        })
        calculate(model).raise_on_error()
        assert model.scalars["north.result"].value == 20.0
        assert model.scalars["south.result"].value == 40.0


class TestPropagation:
    """Changed inputs reach formulas, never typed-in values."""

    def test_formulas_propagate(self) -> None:
        model = apply_overrides(_build_income_statement(), {"unit_cost": 10.0})
        calculate(model).raise_on_error()
        assert model.scalars["summary.costs"].value == 7000.0
        assert model.scalars["summary.profit"].value == 5500.0

    def test_hardcoded_no_propagation(self) -> None:
        model = _build_hardcoded()
        model["t"]["x"].values[0] = 15.0
        calculate(model).raise_on_error()
        assert model.scalars["double"].value == 60.0

    def test_sum_chain_propagates(self) -> None:
        model = _build_sum_chain()
        model["t"]["x"].values[0] = 15.0
        calculate(model).raise_on_error()
        assert model.scalars["double"].value == 70.0


class TestWhatIf:
    def test_goal_seek_through_tables(self) -> None:
        result = goal_seek(
            _build_income_statement(), "summary.profit", 8000.0, "overhead",
            low=-1000.0, high=1000.0,
        )
        # each extra unit of overhead costs 4 (one per month)
        assert result.value == pytest.approx(125.0, abs=1e-3)

    def test_recalculating_same_model_is_stable(self) -> None:
        model = _build_income_statement()
        first = calculate(model)
        second = calculate(model)
        assert first.values == second.values

    def test_scenarios_side_by_side(self) -> None:
        model = _build_income_statement()
        model.add_scenario(Scenario("cheap", {"unit_cost": 6}))
        model.add_scenario(Scenario("expensive", {"unit_cost": 10}))
        comparison = compare_scenarios(model, outputs=["summary.profit"])
        assert comparison.row("summary.profit") == [7500.0, 5500.0]
        assert model.scalars["summary.profit"].value is None


class TestDeterminism:
    def test_20_rounds_bit_exact(self) -> None:
        base = _build_income_statement(num_rows=50)
        ev = ModelEvaluator()
        baseline = ev.calculate(base.copy())
        for _ in range(19):
            result = ev.calculate(base.copy())
            assert result.order == baseline.order
            assert result.values == baseline.values


class TestPerformance:
    @pytest.mark.slow
    def test_20k_rows_under_5s(self) -> None:
        """calculate() over 20K rows and three formula columns.

        Threshold is generous to avoid CI flakiness across platforms.
        """
        model = _build_income_statement(num_rows=20_000)

        start = time.perf_counter()
        calculate(model).raise_on_error()
        elapsed = time.perf_counter() - start

        assert elapsed < 5.0, f"calculate() took {elapsed:.3f}s (>5s)"
        assert len(model["costs"]["total"]) == 20_000
