"""Tests for tabcalc.calc ModelEvaluator."""

from __future__ import annotations

import datetime
import math

import pytest

from tabcalc import Model
from tabcalc.calc._errors import (
    CircularDependency,
    DomainError,
    FormulaSyntaxError,
    IndexOutOfRange,
    NotFound,
    TypeMismatch,
    UnknownFunction,
    UnknownReference,
    UpstreamError,
)
from tabcalc.calc._evaluator import FormulaKind, ModelEvaluator, audit, calculate, validate
from tabcalc.calc._functions import FunctionRegistry
from tabcalc.calc._protocol import CalcEngine, EngineOptions


def _pl_model() -> Model:
    """Profit and loss table plus summary scalars declared out of order."""
    return Model.from_dict({
        "tables": {
            "pl": {
                "revenue": [1000, 1200, 1500, 1800],
                "cogs": [300, 360, 450, 540],
                "gross_margin": "=gross_profit / revenue",
                "gross_profit": "=revenue - cogs",
            },
        },
        "scalars": {
            "avg_margin": "=total_profit / total_revenue",
            "total_profit": "=SUM(pl.gross_profit)",
            "total_revenue": "=SUM(pl.revenue)",
        },
    })


def _scalars(**specs: object) -> Model:
    return Model.from_dict({"scalars": specs})


class TestCalculate:
    def test_row_wise_columns(self) -> None:
        model = _pl_model()
        result = calculate(model)
        assert result.ok
        assert model["pl"]["gross_profit"].values == [700.0, 840.0, 1050.0, 1260.0]
        assert model["pl"]["gross_margin"].values == [0.7, 0.7, 0.7, 0.7]

    def test_aggregation_feeds_scalars(self) -> None:
        model = _pl_model()
        calculate(model).raise_on_error()
        assert model.scalars["total_revenue"].value == 5500.0
        assert model.scalars["total_profit"].value == 3850.0
        assert model.scalars["avg_margin"].value == 0.7

    def test_order_respects_dependencies(self) -> None:
        result = calculate(_pl_model())
        order = list(result.order)
        assert order.index("pl.gross_profit") < order.index("pl.gross_margin")
        assert order.index("pl.gross_profit") < order.index("total_profit")
        assert order.index("total_profit") < order.index("avg_margin")
        assert order.index("total_revenue") < order.index("avg_margin")

    def test_result_values(self) -> None:
        result = calculate(_pl_model())
        assert result.values["total_revenue"] == 5500.0
        assert result.values["pl.gross_profit"] == [700.0, 840.0, 1050.0, 1260.0]

    def test_deterministic(self) -> None:
        base = _pl_model()
        first = calculate(base.copy())
        second = calculate(base.copy())
        assert first.order == second.order
        assert first.values == second.values

    def test_satisfies_protocol(self) -> None:
        assert isinstance(ModelEvaluator(), CalcEngine)

    def test_numbers_rounded(self) -> None:
        model = _scalars(third="=1/3", zero="=-0")
        calculate(model).raise_on_error()
        assert model.scalars["third"].value == 0.333333
        assert math.copysign(1.0, model.scalars["zero"].value) == 1.0

    def test_decimal_places_option(self) -> None:
        model = _scalars(third="=1/3")
        calculate(model, EngineOptions(decimal_places=2)).raise_on_error()
        assert model.scalars["third"].value == 0.33

    def test_date_arithmetic(self) -> None:
        model = Model.from_dict({
            "tables": {
                "plan": {
                    "start": [datetime.date(2024, 1, 1), datetime.date(2024, 2, 1)],
                    "due": "=start + 30",
                    "span": "=due - start",
                },
            },
        })
        calculate(model).raise_on_error()
        assert model["plan"]["due"].values == [
            datetime.date(2024, 1, 31), datetime.date(2024, 3, 2),
        ]
        assert model["plan"]["span"].values == [30.0, 30.0]

    def test_text_concatenation(self) -> None:
        model = Model.from_dict({
            "tables": {"q": {"n": [1, 2], "label": '="Q" & n'}},
        })
        calculate(model).raise_on_error()
        assert model["q"]["label"].values == ["Q1", "Q2"]

    def test_boolean_column(self) -> None:
        model = Model.from_dict({
            "tables": {"t": {"x": [1, 5], "big": "=x > 2"}},
        })
        calculate(model).raise_on_error()
        assert model["t"]["big"].values == [False, True]

    def test_custom_function(self) -> None:
        registry = FunctionRegistry()
        registry.register("DOUBLE", lambda args: args[0] * 2)
        model = _scalars(x=21, y="=DOUBLE(x)")
        ModelEvaluator(functions=registry).calculate(model).raise_on_error()
        assert model.scalars["y"].value == 42.0


class TestDispatch:
    def test_whole_column_argument_in_row_formula(self) -> None:
        model = Model.from_dict({"tables": {"t": {"x": [1, 3], "share": "=x / SUM(x)"}}})
        calculate(model).raise_on_error()
        assert model["t"]["share"].values == [0.25, 0.75]

    def test_aggregation_broadcasts(self) -> None:
        model = Model.from_dict({"tables": {"t": {"x": [1, 3], "total": "=SUM(x)"}}})
        calculate(model).raise_on_error()
        assert model["t"]["total"].values == [4.0, 4.0]

    def test_single_argument_max_reduces_column(self) -> None:
        model = Model.from_dict({"tables": {"t": {"x": [1, 4], "rel": "=x / MAX(x)"}}})
        calculate(model).raise_on_error()
        assert model["t"]["rel"].values == [0.25, 1.0]

    def test_multi_argument_max_clamps_each_row(self) -> None:
        model = Model.from_dict({
            "tables": {
                "t": {
                    "rev": [100, 50],
                    "cost": [80, 90],
                    "profit": "=MAX(0, rev - cost)",
                    "floor": "=MIN(rev, cost)",
                },
            },
        })
        calculate(model).raise_on_error()
        assert model["t"]["profit"].values == [20.0, 0.0]
        assert model["t"]["floor"].values == [80.0, 50.0]

    def test_multi_argument_max_inside_aggregation(self) -> None:
        model = Model.from_dict({
            "tables": {"t": {"x": [-3, 2, 5], "pos": "=SUM(MAX(0, x))"}},
        })
        calculate(model).raise_on_error()
        assert model["t"]["pos"].values == [7.0, 7.0, 7.0]

    def test_multi_argument_max_in_scalar_reduces(self) -> None:
        model = Model.from_dict({
            "tables": {"t": {"x": [-1, 2]}},
            "scalars": {"m": "=MAX(t.x, 0)"},
        })
        calculate(model).raise_on_error()
        assert model.scalars["m"].value == 2.0

    def test_scalar_function_maps_over_rows(self) -> None:
        model = Model.from_dict({"tables": {"t": {"x": [-1.5, 2], "a": "=ABS(x)"}}})
        calculate(model).raise_on_error()
        assert model["t"]["a"].values == [1.5, 2.0]

    def test_array_result_must_match_row_count(self) -> None:
        model = Model.from_dict({"tables": {"t": {"x": [1, 1, 2], "u": "=UNIQUE(x)"}}})
        result = calculate(model)
        err = result.error_for("t.u")
        assert isinstance(err, TypeMismatch)
        assert "has 3 rows" in err.message

    def test_array_valued_scalar_stores_length(self) -> None:
        model = Model.from_dict({
            "tables": {"t": {"x": [1, 1, 2]}},
            "scalars": {"n": "=UNIQUE(t.x)"},
        })
        calculate(model).raise_on_error()
        assert model.scalars["n"].value == 2.0

    def test_mixed_result_types(self) -> None:
        model = Model.from_dict({
            "tables": {"t": {"x": [1, 2], "y": '=IF(x > 1, "big", 0)'}},
        })
        err = calculate(model).error_for("t.y")
        assert isinstance(err, TypeMismatch)
        assert "Mixed result types" in err.message

    def test_classify(self) -> None:
        model = Model.from_dict({
            "tables": {
                "t": {
                    "x": [1, 2],
                    "y": "=x * 2",
                    "first": "=x[0]",
                    "sum": "=SUM(x)",
                    "clamp": "=MAX(x, 0)",
                },
            },
            "scalars": {"total": "=SUM(t.x)", "k": 2, "twice": "=k * 2", "top": "=MAX(t.x, 0)"},
        })
        ev = ModelEvaluator()
        assert ev.classify(model, "t.y") is FormulaKind.ROW_WISE
        assert ev.classify(model, "t.first") is FormulaKind.ARRAY_INDEX
        assert ev.classify(model, "t.sum") is FormulaKind.AGGREGATION
        assert ev.classify(model, "t.clamp") is FormulaKind.ROW_WISE
        assert ev.classify(model, "total") is FormulaKind.AGGREGATION
        assert ev.classify(model, "top") is FormulaKind.AGGREGATION
        assert ev.classify(model, "twice") is FormulaKind.SCALAR

    def test_classify_requires_formula(self) -> None:
        model = _scalars(k=2)
        with pytest.raises(ValueError, match="has no formula"):
            ModelEvaluator().classify(model, "k")


class TestIndex:
    def _model(self, **scalars: object) -> Model:
        return Model.from_dict({"tables": {"t": {"x": [10, 20, 30]}}, "scalars": scalars})

    def test_zero_based(self) -> None:
        model = self._model(first="=t.x[0]", last="=t.x[COUNT(t.x) - 1]")
        calculate(model).raise_on_error()
        assert model.scalars["first"].value == 10.0
        assert model.scalars["last"].value == 30.0

    def test_out_of_range(self) -> None:
        err = calculate(self._model(bad="=t.x[3]")).error_for("bad")
        assert isinstance(err, IndexOutOfRange)
        assert err.index == 3
        assert err.length == 3

    def test_fractional_index(self) -> None:
        err = calculate(self._model(bad="=t.x[0.5]")).error_for("bad")
        assert isinstance(err, TypeMismatch)

    def test_indexed_column_broadcasts(self) -> None:
        model = Model.from_dict({"tables": {"t": {"x": [10, 20], "base": "=x[0]"}}})
        calculate(model).raise_on_error()
        assert model["t"]["base"].values == [10.0, 10.0]

    def test_row_relative_index(self) -> None:
        model = Model.from_dict({
            "tables": {"t": {"x": [10, 20, 30], "i": [2, 0, 1], "picked": "=x[i]"}},
        })
        calculate(model).raise_on_error()
        assert model["t"]["picked"].values == [30.0, 10.0, 20.0]


class TestLaziness:
    def test_if_skips_untaken_branch(self) -> None:
        model = _scalars(x=0, y="=IF(x = 0, 0, 1 / x)")
        calculate(model).raise_on_error()
        assert model.scalars["y"].value == 0.0

    def test_iferror_fallback(self) -> None:
        model = _scalars(x=0, y="=IFERROR(1 / x, -1)")
        calculate(model).raise_on_error()
        assert model.scalars["y"].value == -1.0

    def _guarded(self, formula: str) -> Model:
        return Model.from_dict({
            "tables": {"t": {"x": [0, 5], "a": [10, 20]}},
            "scalars": {"s": formula},
        })

    def test_if_guards_each_element_in_aggregation(self) -> None:
        model = self._guarded("=SUM(IF(t.x > 0, t.a / t.x, 0))")
        calculate(model).raise_on_error()
        assert model.scalars["s"].value == 4.0

    def test_iferror_falls_back_per_element(self) -> None:
        model = self._guarded("=SUM(IFERROR(t.a / t.x, 1))")
        calculate(model).raise_on_error()
        assert model.scalars["s"].value == 5.0

    def test_if_guard_in_table_aggregation(self) -> None:
        model = Model.from_dict({
            "tables": {"t": {"x": [0, 5], "a": [10, 20], "s": "=SUM(IF(x > 0, a / x, 0))"}},
        })
        calculate(model).raise_on_error()
        assert model["t"]["s"].values == [4.0, 4.0]


class TestScenarioForm:
    def _model(self, formula: str) -> Model:
        return Model.from_dict({
            "scalars": {"price": 10, "alt": formula},
            "scenarios": {"high": {"price": 12}},
        })

    def test_reads_override(self) -> None:
        model = self._model('=SCENARIO("high", "price")')
        calculate(model).raise_on_error()
        assert model.scalars["alt"].value == 12.0

    def test_unknown_scenario(self) -> None:
        err = calculate(self._model('=SCENARIO("low", "price")')).error_for("alt")
        assert isinstance(err, UnknownReference)
        assert "scenario" in err.message

    def test_missing_variable(self) -> None:
        err = calculate(self._model('=SCENARIO("high", "volume")')).error_for("alt")
        assert isinstance(err, NotFound)


class TestErrors:
    def test_domain_error_located(self) -> None:
        model = _scalars(bad="=1/0")
        err = calculate(model).error_for("bad")
        assert isinstance(err, DomainError)
        assert err.formula == "=1/0"
        assert "Formula error in 'bad'" in str(err)

    def test_overflow_is_domain_error(self) -> None:
        model = _scalars(big="=EXP(1000)", huge="=10^400")
        result = calculate(model)
        assert isinstance(result.error_for("big"), DomainError)
        assert isinstance(result.error_for("huge"), DomainError)

    def test_unknown_reference(self) -> None:
        err = calculate(_scalars(x="=nope + 1")).error_for("x")
        assert isinstance(err, UnknownReference)

    def test_unknown_function(self) -> None:
        err = calculate(_scalars(x="=FOO(1)")).error_for("x")
        assert isinstance(err, UnknownFunction)

    def test_syntax_error(self) -> None:
        err = calculate(_scalars(x="=1 +")).error_for("x")
        assert isinstance(err, FormulaSyntaxError)

    def test_text_comparison_with_number(self) -> None:
        model = Model.from_dict({"tables": {"t": {"x": [1], "y": '=x > "a"'}}})
        assert isinstance(calculate(model).error_for("t.y"), TypeMismatch)

    def test_upstream_error_and_isolation(self) -> None:
        model = _scalars(bad="=1/0", after="=bad + 1", fine="=2 * 3")
        result = calculate(model)
        err = result.error_for("after")
        assert isinstance(err, UpstreamError)
        assert err.upstream == ("bad",)
        assert result.error_for("fine") is None
        assert model.scalars["fine"].value == 6.0
        assert model.scalars["after"].value is None

    def test_raise_on_error(self) -> None:
        with pytest.raises(DomainError):
            calculate(_scalars(bad="=1/0")).raise_on_error()

    def test_table_commit_is_atomic(self) -> None:
        model = Model.from_dict({
            "tables": {"t": {"x": [1, 2], "good": "=x * 2", "bad": "=x / 0"}},
        })
        result = calculate(model)
        assert isinstance(result.error_for("t.bad"), DomainError)
        assert model["t"]["good"].values == []


class TestCycles:
    def test_scalar_cycle(self) -> None:
        model = _scalars(a="=b + 1", b="=a + 1", c=5, d="=c * 2")
        result = calculate(model)
        for name in ("a", "b"):
            err = result.error_for(name)
            assert isinstance(err, CircularDependency)
            assert set(err.members) == {"a", "b"}
            assert model.scalars[name].value is None
        assert model.scalars["d"].value == 10.0

    def test_downstream_of_cycle_is_upstream_error(self) -> None:
        model = Model.from_dict({
            "tables": {"t": {"x": [1, 2], "y": "=x * a"}},
            "scalars": {"a": "=b + 1", "b": "=a + 1", "ok": "=1 + 1"},
        })
        result = calculate(model)
        err = result.error_for("t.y")
        assert isinstance(err, UpstreamError)
        assert not isinstance(err, CircularDependency)
        assert model["t"]["y"].values == []
        assert model.scalars["ok"].value == 2.0

    def test_self_reference(self) -> None:
        err = calculate(_scalars(a="=a + 1")).error_for("a")
        assert isinstance(err, CircularDependency)
        assert err.members == ("a",)

    def test_column_cycle_fails_table(self) -> None:
        model = Model.from_dict({
            "tables": {"t": {"x": [1], "p": "=q + 1", "q": "=p + 1", "r": "=x + 1"}},
        })
        result = calculate(model)
        for name in ("t.p", "t.q"):
            err = result.error_for(name)
            assert isinstance(err, CircularDependency)
            assert set(err.members) == {"t.p", "t.q"}
        assert result.error_for("t.r") is None
        assert model["t"]["r"].values == []

    def test_share_of_total_is_not_a_cycle(self) -> None:
        model = Model.from_dict({
            "tables": {"t": {"x": [1, 2], "a": "=x * 2", "b": "=a / total"}},
            "scalars": {"total": "=SUM(t.a)"},
        })
        result = calculate(model)
        result.raise_on_error()
        assert model["t"]["a"].values == [2.0, 4.0]
        assert model.scalars["total"].value == 6.0
        assert model["t"]["b"].values == [0.333333, 0.666667]
        order = list(result.order)
        assert order.index("t.a") < order.index("total") < order.index("t.b")

    def test_scalar_between_tables(self) -> None:
        model = Model.from_dict({
            "tables": {
                "orders": {"qty": [2, 3], "amount": "=qty * price"},
                "lines": {"n": [1, 2], "share": "=n / total", "base": "=n * 10"},
            },
            "scalars": {
                "price": 5,
                "total": "=SUM(orders.amount) + SUM(lines.base)",
            },
        })
        calculate(model).raise_on_error()
        assert model.scalars["total"].value == 55.0
        assert model["lines"]["share"].values == [0.018182, 0.036364]

    def test_iferror_does_not_hide_cycle(self) -> None:
        model = _scalars(a="=IFERROR(b, 0)", b="=a + 1")
        assert isinstance(calculate(model).error_for("a"), CircularDependency)


class TestValidate:
    def test_calculated_model_is_clean(self) -> None:
        model = _pl_model()
        calculate(model).raise_on_error()
        assert validate(model) == []

    def test_uncalculated_values_are_mismatches(self) -> None:
        model = _pl_model()
        mismatches = validate(model)
        locations = {m.location for m in mismatches}
        assert locations == {
            "pl.gross_margin", "pl.gross_profit", "avg_margin", "total_profit",
            "total_revenue",
        }
        # the model itself is untouched
        assert model["pl"]["gross_profit"].values == []

    def test_tampered_value(self) -> None:
        model = _pl_model()
        calculate(model).raise_on_error()
        model["pl"]["gross_profit"].values[2] = 999.0
        mismatches = validate(model)
        assert len(mismatches) == 1
        m = mismatches[0]
        assert (m.location, m.row, m.expected, m.actual) == ("pl.gross_profit", 2, 1050.0, 999.0)

    def test_within_tolerance(self) -> None:
        model = _pl_model()
        calculate(model).raise_on_error()
        model.scalars["total_revenue"].value = 5500.00001
        assert validate(model) == []

    def test_failure_raises(self) -> None:
        with pytest.raises(DomainError):
            validate(_scalars(bad="=1/0"))


class TestAudit:
    def test_chain_depths(self) -> None:
        chain = audit(_pl_model(), "avg_margin")
        depths = {e.name: e.depth for e in chain.entries}
        assert depths == {
            "total_profit": 1,
            "total_revenue": 1,
            "pl.gross_profit": 2,
            "pl.revenue": 2,
            "pl.cogs": 3,
        }
        assert chain.target == "avg_margin"
        assert chain.formula == "=total_profit / total_revenue"
        assert chain.max_depth == 3

    def test_inputs_and_kinds(self) -> None:
        chain = audit(_pl_model(), "pl.gross_margin")
        assert sorted(e.name for e in chain.inputs) == ["pl.cogs", "pl.revenue"]
        kinds = {e.name: e.kind for e in chain.entries}
        assert kinds["pl.gross_profit"] == "column"

    def test_input_has_empty_chain(self) -> None:
        chain = audit(_pl_model(), "pl.revenue")
        assert chain.entries == ()
        assert chain.formula is None
