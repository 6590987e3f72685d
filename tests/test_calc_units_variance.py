"""Tests for unit consistency checks and budget variance reports."""

from __future__ import annotations

import pytest

from tabcalc import Model
from tabcalc.calc import (
    DomainError,
    UnitCategory,
    check_units,
    variance_report,
)
from tabcalc.calc._variance import is_expense


def _unit_model(**formulas: object) -> Model:
    columns: dict[str, object] = {
        "revenue": {"values": [100, 200], "unit": "USD"},
        "cost": {"values": [60, 80], "unit": "usd"},
        "margin_pct": {"values": [0.1, 0.2], "unit": "%"},
        "days_open": {"values": [30, 31], "unit": "days"},
        "note": {"values": ["a", "b"], "unit": "widgets"},
    }
    columns.update(formulas)
    return Model.from_dict({"tables": {"sales": columns}})


def _messages(model: Model) -> list[str]:
    return [w.message for w in check_units(model)]


class TestUnitCategory:
    @pytest.mark.parametrize(
        ("unit", "kind"),
        [
            ("USD", "currency"),
            ("$", "currency"),
            ("%", "percentage"),
            ("qty", "count"),
            ("Months", "time"),
            ("x", "ratio"),
            ("furlongs", "unknown"),
        ],
    )
    def test_parse(self, unit: str, kind: str) -> None:
        assert UnitCategory.parse(unit).kind == kind

    def test_currency_name_normalized(self) -> None:
        assert UnitCategory.parse("eur") == UnitCategory.parse("EUR")
        assert UnitCategory.parse("eur").display() == "EUR"

    def test_compatibility(self) -> None:
        usd, eur = UnitCategory.parse("USD"), UnitCategory.parse("EUR")
        pct, ratio = UnitCategory.parse("%"), UnitCategory.parse("ratio")
        unknown = UnitCategory.parse("furlongs")
        assert not usd.compatible(eur)
        assert pct.compatible(ratio)
        assert unknown.compatible(usd)
        assert UnitCategory.parse("days").compatible(UnitCategory.parse("d"))


class TestCheckUnits:
    def test_consistent_model_is_clean(self) -> None:
        model = _unit_model(
            profit={"formula": "=revenue - cost", "unit": "USD"},
            bonus={"formula": "=revenue * margin_pct", "unit": "USD"},
            markup={"formula": "=revenue / cost", "unit": "ratio"},
        )
        assert check_units(model) == []

    def test_percentage_plus_currency(self) -> None:
        model = _unit_model(bad="=revenue + margin_pct")
        assert _messages(model) == ["Adding percentage to currency - did you mean to multiply?"]

    def test_mixed_subtraction(self) -> None:
        model = _unit_model(bad="=revenue - days_open")
        assert _messages(model) == [
            "Mixing incompatible units in addition/subtraction: USD and days"
        ]

    def test_comparison(self) -> None:
        model = _unit_model(flag="=revenue > days_open")
        assert _messages(model) == ["Comparing incompatible units: USD and days"]

    def test_declared_conflict(self) -> None:
        model = _unit_model(profit={"formula": "=revenue - cost", "unit": "%"})
        warnings = check_units(model)
        assert len(warnings) == 1
        assert warnings[0].location == "sales.profit"
        assert warnings[0].message == "Declared unit % but formula yields USD"
        assert str(warnings[0]).startswith("Warning: sales.profit - ")

    def test_counting_functions(self) -> None:
        model = Model.from_dict({
            "tables": {"sales": {"revenue": {"values": [1, 2], "unit": "USD"}}},
            "scalars": {"n": {"formula": "=COUNT(sales.revenue)", "unit": "USD"}},
        })
        assert _messages(model) == ["Declared unit USD but formula yields count"]

    def test_unknown_units_ignored(self) -> None:
        assert check_units(_unit_model(x="=revenue + note")) == []

    def test_unresolvable_formula_skipped(self) -> None:
        assert check_units(_unit_model(x="=missing + revenue")) == []


def _budget() -> Model:
    return Model.from_dict({
        "scalars": {
            "revenue": 1000,
            "cogs": 400,
            "marketing_expense": 100,
            "profit": "=revenue - cogs - marketing_expense",
        },
    })


def _actual() -> Model:
    return Model.from_dict({
        "scalars": {
            "revenue": 1100,
            "cogs": 500,
            "marketing_expense": 90,
            "profit": "=revenue - cogs - marketing_expense",
            "bonus": 50,
        },
    })


class TestVariance:
    def test_is_expense(self) -> None:
        assert is_expense("Total_COGS")
        assert is_expense("shipping_cost")
        assert not is_expense("revenue")

    def test_lines(self) -> None:
        report = variance_report(_budget(), _actual())
        assert [line.name for line in report.lines] == [
            "bonus", "cogs", "marketing_expense", "profit", "revenue",
        ]
        profit = report.line("profit")
        assert (profit.budget, profit.actual, profit.variance) == (500.0, 510.0, 10.0)
        assert profit.variance_pct == pytest.approx(2.0)
        assert profit.status == "favorable"

    def test_expense_direction(self) -> None:
        report = variance_report(_budget(), _actual())
        assert report.line("cogs").status == "alert_unfavorable"
        assert report.line("marketing_expense").status == "alert_favorable"

    def test_threshold_is_inclusive(self) -> None:
        report = variance_report(_budget(), _actual())
        revenue = report.line("revenue")
        assert revenue.variance_pct == pytest.approx(10.0)
        assert revenue.exceeds_threshold

    def test_missing_on_one_side(self) -> None:
        bonus = variance_report(_budget(), _actual()).line("bonus")
        assert (bonus.budget, bonus.actual, bonus.variance_pct) == (0.0, 50.0, 0.0)
        assert bonus.favorable
        assert not bonus.exceeds_threshold

    def test_summary(self) -> None:
        report = variance_report(_budget(), _actual(), threshold_pct=20.0)
        assert [line.name for line in report.alerts] == ["cogs"]
        assert report.favorable_count == 4
        assert report.unfavorable_count == 1

    def test_inputs_untouched(self) -> None:
        budget = _budget()
        variance_report(budget, _actual())
        assert budget.scalars["profit"].value is None

    def test_unknown_line(self) -> None:
        with pytest.raises(KeyError):
            variance_report(_budget(), _actual()).line("nope")

    def test_calculation_errors_raise(self) -> None:
        broken = Model.from_dict({"scalars": {"x": "=1/0"}})
        with pytest.raises(DomainError):
            variance_report(broken, _actual())
