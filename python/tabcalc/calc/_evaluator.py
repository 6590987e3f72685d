"""ModelEvaluator: dependency-ordered evaluation of table and scalar formulas.

A calculation builds one plan graph whose nodes are formula columns and
derived scalars; within a table it holds the row graph between columns,
and across tables and scalars the table and scalar edges. Nodes are
evaluated in topological order; each formula's cached AST is walked
directly, either once per row (row-wise column formulas) or once over
whole columns (aggregations, indexed and scalar formulas).

Column results are staged and a table is committed only when every one of
its formula columns succeeded. Failures are isolated: a failing column or
scalar is reported and everything downstream of it is skipped with
``UpstreamError``, while unrelated tables and scalars still calculate.

Usage::

    evaluator = ModelEvaluator()
    result = evaluator.calculate(model)
    result.raise_on_error()
    mismatches = evaluator.validate(model)
"""

from __future__ import annotations

import datetime
import functools
import logging
import math
import operator
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from tabcalc._model import ColumnType, value_type
from tabcalc.calc._errors import (
    CircularDependency,
    DomainError,
    EngineError,
    FormulaSyntaxError,
    IndexOutOfRange,
    NotFound,
    TypeMismatch,
    UnknownFunction,
    UnknownReference,
    UpstreamError,
)
from tabcalc.calc._functions import (
    REDUCING_FUNCTIONS,
    ArrayValue,
    FunctionRegistry,
    describe,
    is_array_position,
    power,
    to_number,
    to_text,
    values_equal,
)
from tabcalc.calc._graph import DependencyGraph
from tabcalc.calc._parser import (
    BinaryOp,
    Boolean,
    Call,
    Expr,
    FormulaParser,
    Index,
    Number,
    Ref,
    Text,
    UnaryOp,
    has_index,
    references,
    walk,
)
from tabcalc.calc._protocol import (
    DEFAULT_OPTIONS,
    AuditEntry,
    CalcResult,
    DependencyChain,
    EngineOptions,
    Mismatch,
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

_COLUMN = "column"
_SCALAR = "scalar"
Node = tuple[str, str]  # (_COLUMN, "table.column") | (_SCALAR, name)

# Evaluated by the evaluator itself rather than through the registry
SPECIAL_FORMS = frozenset({"SCENARIO"})


class FormulaKind(str, Enum):
    """How a formula is dispatched."""

    AGGREGATION = "aggregation"
    ARRAY_INDEX = "array_index"
    ROW_WISE = "row_wise"
    SCALAR = "scalar"


# ---------------------------------------------------------------------------
# Operators
# ---------------------------------------------------------------------------

_ORDERING: dict[str, Callable[[Any, Any], bool]] = {
    "<": operator.lt,
    ">": operator.gt,
    "<=": operator.le,
    ">=": operator.ge,
}


def _arith_operand(value: Any, op: str) -> Any:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (float, datetime.date)):
        return value
    raise TypeMismatch(f"Operator '{op}' cannot be applied to {describe(value)}")


def _arith(left: Any, op: str, right: Any) -> Any:
    """Arithmetic on numbers; dates support ``date +/- days`` and ``date - date``."""
    a = _arith_operand(left, op)
    b = _arith_operand(right, op)
    a_date = isinstance(a, datetime.date)
    b_date = isinstance(b, datetime.date)
    if a_date or b_date:
        if op == "+" and a_date != b_date:
            day, days = (a, b) if a_date else (b, a)
            return day + datetime.timedelta(days=days)
        if op == "-" and a_date and b_date:
            return float((a - b).days)
        if op == "-" and a_date:
            return a - datetime.timedelta(days=b)
        raise TypeMismatch(f"Operator '{op}' cannot be applied to dates")
    if op == "+":
        return a + b
    if op == "-":
        return a - b
    if op == "*":
        return a * b
    if op == "/":
        if b == 0:
            raise DomainError("Division by zero")
        return a / b
    return power(a, b)


def _compare(left: Any, right: Any, op: str) -> bool:
    """Tagged comparison.

    ``=`` and ``<>`` never coerce: values of different types are simply not
    equal. Ordering requires both sides to have the same type; text orders
    case-insensitively.
    """
    if op == "=":
        return values_equal(left, right)
    if op == "<>":
        return not values_equal(left, right)
    kl, kr = value_type(left), value_type(right)
    if kl is not kr:
        raise TypeMismatch(f"Cannot compare {describe(left)} with {describe(right)}")
    if kl is ColumnType.TEXT:
        left, right = left.casefold(), right.casefold()
    return _ORDERING[op](left, right)


def _binary_op(left: Any, op: str, right: Any) -> Any:
    if op == "&":
        return to_text(left, "&") + to_text(right, "&")
    if op in ("=", "<>", "<", ">", "<=", ">="):
        return _compare(left, right, op)
    return _arith(left, op, right)


def _unary_op(op: str, value: Any) -> float:
    x = to_number(value, f"unary {op}")
    return -x if op == "-" else x


def _common_length(arrays: list[ArrayValue]) -> int:
    n = len(arrays[0])
    for arr in arrays[1:]:
        if len(arr) != n:
            raise TypeMismatch(
                f"Element-wise operation on arrays of different length "
                f"({arrays[0].describe()}: {n}, {arr.describe()}: {len(arr)})"
            )
    return n


def _elementwise(fn: Callable[..., Any], *operands: Any) -> Any:
    """Apply *fn* directly, or element by element when any operand is an array."""
    arrays = [o for o in operands if isinstance(o, ArrayValue)]
    if not arrays:
        return fn(*operands)
    n = _common_length(arrays)
    columns = [o.values if isinstance(o, ArrayValue) else [o] * n for o in operands]
    return ArrayValue([fn(*items) for items in zip(*columns)])


def _values_differ(a: Any, b: Any, tolerance: float) -> bool:
    """Check if two values differ beyond tolerance."""
    if a is None and b is None:
        return False
    if a is None or b is None:
        return True
    if isinstance(a, bool) or isinstance(b, bool):
        return a is not b
    if isinstance(a, float) and isinstance(b, float):
        return abs(a - b) > tolerance
    return a != b


# ---------------------------------------------------------------------------
# Per-calculation state
# ---------------------------------------------------------------------------


class _Session:
    """State owned by one calculation of one model."""

    def __init__(self, evaluator: ModelEvaluator, model: Model) -> None:
        self.model = model
        self.options = evaluator.options
        self.parser = evaluator._parser
        self.functions = evaluator._functions
        self.resolver = ReferenceResolver(model)
        # (table, column) -> values computed but not yet committed
        self.staged: dict[tuple[str, str], list[Any]] = {}
        self.staged_types: dict[tuple[str, str], ColumnType | None] = {}
        self.errors: list[EngineError] = []
        self.order: list[str] = []
        self.values: dict[str, Any] = {}

    # ------------------------------------------------------------------
    # Dependencies and classification
    # ------------------------------------------------------------------

    def locations(self, formula: str, scope: Scope) -> list[Location]:
        """Resolved operands of *formula*, first-seen order."""
        expr = self.parser.parse(formula)
        found: dict[Location, None] = {}
        for name in references(expr):
            found[self.resolver.resolve(name, scope)] = None
        return list(found)

    def _mentions_column(self, expr: Expr, scope: Scope) -> bool:
        return any(
            isinstance(node, Ref)
            and isinstance(self.resolver.resolve(node.name, scope), ColumnLocation)
            for node in walk(expr)
        )

    @staticmethod
    def reduces_per_row(func: Callable[..., Any], call: Call, in_row: bool) -> bool:
        """True for a multi-argument reducer in row context, e.g. ``MAX(0, x)``.

        Such calls combine their arguments row by row; a single argument
        (``SUM(x)``, ``SUM(a * b)``) still reduces the whole column.
        """
        return in_row and len(call.args) > 1 and getattr(func, "_array_args", None) is True

    def row_columns(self, expr: Expr, scope: Scope) -> list[ColumnLocation]:
        """Columns *expr* reads element by element, first-seen order."""
        if isinstance(expr, Ref):
            loc = self.resolver.resolve(expr.name, scope)
            return [loc] if isinstance(loc, ColumnLocation) else []
        if isinstance(expr, Index):
            return self.row_columns(expr.index, scope)
        if isinstance(expr, BinaryOp):
            return self.row_columns(expr.left, scope) + self.row_columns(expr.right, scope)
        if isinstance(expr, UnaryOp):
            return self.row_columns(expr.operand, scope)
        if isinstance(expr, Call):
            func = self.functions.get(expr.name)
            per_row = func is not None and self.reduces_per_row(
                func, expr, scope.table is not None
            )
            found: list[ColumnLocation] = []
            for i, arg in enumerate(expr.args):
                if func is None or per_row or not is_array_position(func, i):
                    found.extend(self.row_columns(arg, scope))
            return found
        return []

    def row_relative(self, expr: Expr, scope: Scope) -> bool:
        """True when *expr* reads a column element-by-element."""
        return bool(self.row_columns(expr, scope))

    def classify(self, expr: Expr, scope: Scope) -> FormulaKind:
        if isinstance(expr, Call) and expr.name in REDUCING_FUNCTIONS:
            func = self.functions.get(expr.name)
            if func is not None and self.reduces_per_row(func, expr, scope.table is not None):
                return FormulaKind.ROW_WISE
            for i, arg in enumerate(expr.args):
                if func is not None and is_array_position(func, i):
                    if self._mentions_column(arg, scope):
                        return FormulaKind.AGGREGATION
                    break
        if has_index(expr) and not self.row_relative(expr, scope):
            return FormulaKind.ARRAY_INDEX
        if scope.table is not None:
            return FormulaKind.ROW_WISE
        return FormulaKind.SCALAR

    # ------------------------------------------------------------------
    # Expression evaluation
    # ------------------------------------------------------------------

    def eval(self, expr: Expr, scope: Scope, row: int | None, memo: dict[int, Any]) -> Any:
        """Evaluate *expr* for one row, or over whole columns when *row* is None."""
        if isinstance(expr, Number):
            return expr.value
        if isinstance(expr, Text):
            return expr.value
        if isinstance(expr, Boolean):
            return expr.value
        if isinstance(expr, Ref):
            return self._ref(expr.name, scope, row)
        if isinstance(expr, BinaryOp):
            left = self.eval(expr.left, scope, row, memo)
            right = self.eval(expr.right, scope, row, memo)
            op = expr.op
            try:
                return _elementwise(lambda a, b: _binary_op(a, op, b), left, right)
            except ArithmeticError as exc:
                raise DomainError(f"Operator '{expr.op}': {exc}") from exc
        if isinstance(expr, UnaryOp):
            operand = self.eval(expr.operand, scope, row, memo)
            return _elementwise(functools.partial(_unary_op, expr.op), operand)
        if isinstance(expr, Index):
            return self._index(expr, scope, row, memo)
        if isinstance(expr, Call):
            return self._call(expr, scope, row, memo)
        raise TypeError(f"Unknown expression node {expr!r}")

    def _whole(self, expr: Expr, scope: Scope, row: int | None, memo: dict[int, Any]) -> Any:
        """Evaluate over whole columns; memoized across the rows of one formula."""
        if row is None:
            return self.eval(expr, scope, None, memo)
        key = id(expr)
        if key not in memo:
            memo[key] = self.eval(expr, scope, None, memo)
        return memo[key]

    def column_values(self, loc: ColumnLocation) -> list[Any]:
        staged = self.staged.get((loc.table, loc.column))
        if staged is not None:
            return staged
        return self.model.tables[loc.table][loc.column].values

    def _ref(self, name: str, scope: Scope, row: int | None) -> Any:
        loc = self.resolver.resolve(name, scope)
        if isinstance(loc, ScalarLocation):
            value = self.model.scalars[loc.name].value
            if value is None:
                raise TypeMismatch(f"Scalar '{loc.name}' has no value")
            return value
        values = self.column_values(loc)
        if row is None:
            return ArrayValue(values, str(loc))
        if row >= len(values):
            raise IndexOutOfRange(row, len(values), str(loc))
        return values[row]

    def _index(self, expr: Index, scope: Scope, row: int | None, memo: dict[int, Any]) -> Any:
        target = self._whole(expr.target, scope, row, memo)
        if not isinstance(target, ArrayValue):
            raise TypeMismatch(f"Cannot index {describe(target)}")
        position = self.eval(expr.index, scope, row, memo)

        def element(value: Any) -> Any:
            x = to_number(value, "index")
            if not x.is_integer():
                raise TypeMismatch(f"Index must be a whole number, got {x!r}")
            i = int(x)
            if i < 0 or i >= len(target):
                raise IndexOutOfRange(i, len(target), target.source)
            return target[i]

        return _elementwise(element, position)

    def _call(self, call: Call, scope: Scope, row: int | None, memo: dict[int, Any]) -> Any:
        if call.name in SPECIAL_FORMS:
            return self._scenario(call, scope, row, memo)
        func = self.functions.get(call.name)
        if func is None:
            raise UnknownFunction(call.name, sorted(self.functions.supported_functions))
        if getattr(func, "_lazy", False):
            if row is None:
                columns = self.row_columns(call, scope)
                if columns:
                    return self._lazy_by_element(call, func, scope, columns, memo)
            thunks = [functools.partial(self.eval, a, scope, row, memo) for a in call.args]
            return self._invoke(call.name, func, thunks)
        per_row = self.reduces_per_row(func, call, row is not None or scope.table is not None)
        args = [
            self._whole(a, scope, row, memo)
            if is_array_position(func, i) and not per_row
            else self.eval(a, scope, row, memo)
            for i, a in enumerate(call.args)
        ]
        return self._apply(call.name, func, args, per_row)

    def _lazy_by_element(
        self,
        call: Call,
        func: Callable[..., Any],
        scope: Scope,
        columns: list[ColumnLocation],
        memo: dict[int, Any],
    ) -> ArrayValue:
        """Whole-column IF/IFERROR/SWITCH: one lazy call per element.

        Only the branch each element selects is evaluated for that element.
        """
        lengths = {len(self.column_values(loc)) for loc in columns}
        if len(lengths) > 1:
            raise TypeMismatch(
                f"{call.name} over columns of different length "
                f"({', '.join(str(loc) for loc in dict.fromkeys(columns))})"
            )
        results = []
        for k in range(lengths.pop()):
            thunks = [functools.partial(self.eval, a, scope, k, memo) for a in call.args]
            results.append(self._invoke(call.name, func, thunks))
        return ArrayValue(results)

    def _apply(
        self, name: str, func: Callable[..., Any], args: list[Any], per_row: bool = False
    ) -> Any:
        """Call *func*, mapping it element-wise over arrays in scalar positions.

        With *per_row* every array argument is mapped, including array positions.
        """
        mapped = [
            i for i, a in enumerate(args)
            if isinstance(a, ArrayValue) and (per_row or not is_array_position(func, i))
        ]
        if not mapped:
            return self._invoke(name, func, args)
        n = _common_length([args[i] for i in mapped])
        results = []
        for k in range(n):
            row_args = list(args)
            for i in mapped:
                row_args[i] = args[i].values[k]
            results.append(self._invoke(name, func, row_args))
        return ArrayValue(results)

    def _invoke(self, name: str, func: Callable[..., Any], args: list[Any]) -> Any:
        try:
            if getattr(func, "_uses_options", False):
                return func(args, options=self.options)
            return func(args)
        except EngineError:
            raise
        except (ArithmeticError, ValueError) as exc:
            raise DomainError(f"{name}: {exc}") from exc

    def _scenario(self, call: Call, scope: Scope, row: int | None, memo: dict[int, Any]) -> Any:
        """SCENARIO("name", "scalar"): the override a scenario sets for a scalar."""
        if len(call.args) != 2:
            raise FormulaSyntaxError("SCENARIO requires exactly 2 arguments")
        name = to_text(self.eval(call.args[0], scope, row, memo), "SCENARIO")
        var = to_text(self.eval(call.args[1], scope, row, memo), "SCENARIO")
        scenario = self.model.scenarios.get(name)
        if scenario is None:
            raise UnknownReference(name, self.model.scenarios, what="scenario")
        if var not in scenario.overrides:
            raise NotFound(f"Scalar '{var}' not found in scenario '{name}'")
        return scenario.overrides[var]

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def finish(self, value: Any) -> Any:
        """Normalize one result value: finite, rounded numbers."""
        if isinstance(value, (bool, str, datetime.date)):
            return value
        if isinstance(value, (int, float)):
            x = float(value)
            if not math.isfinite(x):
                raise DomainError("Result is not a finite number")
            # + 0.0 turns -0.0 into 0.0
            return round(x, self.options.decimal_places) + 0.0
        raise TypeMismatch(f"Unsupported result value {value!r}")

    @staticmethod
    def infer_type(values: list[Any], location: str) -> ColumnType | None:
        inferred: ColumnType | None = None
        for i, v in enumerate(values):
            t = value_type(v)
            if inferred is None:
                inferred = t
            elif t is not inferred:
                raise TypeMismatch(
                    f"Mixed result types in '{location}': row {i} is {t.value}, "
                    f"expected {inferred.value}"
                )
        return inferred

    def fail(self, node: Node, error: EngineError) -> None:
        logger.warning("Calculation failed for %s '%s': %s", node[0], node[1], error.message)
        self.errors.append(error)


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------


class ModelEvaluator:
    """Calculates, validates and audits models.

    The evaluator holds only immutable configuration and a parse cache, so
    one instance can serve many models (solver sweeps reuse it for every
    trial calculation).
    """

    def __init__(
        self,
        options: EngineOptions | None = None,
        functions: FunctionRegistry | None = None,
    ) -> None:
        self.options = options or DEFAULT_OPTIONS
        self._functions = functions or FunctionRegistry()
        self._parser = FormulaParser()

    @property
    def functions(self) -> FunctionRegistry:
        return self._functions

    # ------------------------------------------------------------------
    # calculate
    # ------------------------------------------------------------------

    def calculate(self, model: Model) -> CalcResult:
        """Evaluate every formula in dependency order, filling *model* in place.

        User-input errors never raise: each failed column or scalar is listed
        in ``CalcResult.errors`` and everything else still calculates.
        """
        session = _Session(self, model)
        graph, columns, plan_errors = self._plan(session)

        def formula_of(node: Node) -> str | None:
            if node[0] == _SCALAR:
                return model.scalars[node[1]].formula
            table, column = columns[node]
            return model.tables[table][column].formula

        order, residual = graph.partial_order()
        failed: dict[Node, None] = {}

        for node in order:
            if node in plan_errors:
                error = plan_errors[node]
            else:
                bad = [d for d in graph.dependencies[node] if d in failed]
                if bad:
                    error = UpstreamError(
                        [d[1] for d in bad], formula=formula_of(node), location=node[1]
                    )
                else:
                    try:
                        if node[0] == _COLUMN:
                            self._calculate_column(session, *columns[node])
                        else:
                            self._calculate_scalar(session, node[1])
                        continue
                    except EngineError as exc:
                        error = exc.attach(formula_of(node), node[1])
            failed[node] = None
            session.fail(node, error)

        in_cycle: set[Node] = set()
        for cycle in graph.cycles(residual):
            members = [n[1] for n in cycle]
            for node in cycle:
                in_cycle.add(node)
                failed[node] = None
                session.fail(
                    node, CircularDependency(members, formula=formula_of(node), location=node[1])
                )
        for node in residual:
            if node in in_cycle:
                continue
            bad = [d for d in graph.dependencies[node] if d in failed or d in residual]
            failed[node] = None
            session.fail(
                node, UpstreamError([d[1] for d in bad], formula=formula_of(node), location=node[1])
            )

        self._commit(session, columns, failed)
        logger.info(
            "Calculated %d tables and %d scalars: %d values, %d errors",
            len(model.tables), len(model.scalars), len(session.values), len(session.errors),
        )
        return CalcResult(
            model=model,
            errors=tuple(session.errors),
            order=tuple(session.order),
            values=session.values,
        )

    def _plan(
        self, session: _Session
    ) -> tuple[DependencyGraph[Node], dict[Node, tuple[str, str]], dict[Node, EngineError]]:
        """Build the plan graph, its column nodes and plan-time errors.

        Edges run between formula columns and derived scalars only; data
        columns and plain scalars are available from the start.
        """
        model = session.model
        graph: DependencyGraph[Node] = DependencyGraph()
        columns: dict[Node, tuple[str, str]] = {}
        errors: dict[Node, EngineError] = {}

        def upstream_node(loc: Location) -> Node | None:
            if isinstance(loc, ScalarLocation):
                derived = model.scalars[loc.name].is_derived
                return (_SCALAR, loc.name) if derived else None
            derived = model.tables[loc.table][loc.column].is_derived
            return (_COLUMN, str(loc)) if derived else None

        def add(node: Node, formula: str, scope: Scope) -> None:
            graph.add_node(node)
            try:
                locs = session.locations(formula, scope)
            except EngineError as exc:
                errors[node] = exc.attach(formula, node[1])
                return
            for loc in locs:
                dep = upstream_node(loc)
                if dep is not None:
                    graph.add_edge(node, dep)

        for table in model.tables.values():
            scope = Scope.for_column(table.name)
            for column in table.formula_columns:
                node = (_COLUMN, f"{table.name}.{column.name}")
                columns[node] = (table.name, column.name)
                add(node, column.formula, scope)

        for scalar in model.scalars.values():
            if scalar.is_derived:
                add((_SCALAR, scalar.name), scalar.formula, Scope.for_scalar(scalar.name))

        logger.debug(
            "Plan: %d nodes, %d with errors", len(graph), len(errors)
        )
        return graph, columns, errors

    def _calculate_column(self, session: _Session, table_name: str, column_name: str) -> None:
        """Evaluate one formula column and stage its values."""
        table = session.model.tables[table_name]
        location = f"{table_name}.{column_name}"
        session.order.append(location)
        values = self._column_values(
            session, table[column_name].formula, Scope.for_column(table_name),
            table.row_count, location,
        )
        key = (table_name, column_name)
        session.staged_types[key] = session.infer_type(values, location)
        session.staged[key] = values

    @staticmethod
    def _commit(
        session: _Session, columns: dict[Node, tuple[str, str]], failed: dict[Node, None]
    ) -> None:
        """Write staged columns, table by table; a table with any failure keeps its values."""
        by_table: dict[str, list[Node]] = {}
        for node, (table_name, _) in columns.items():
            by_table.setdefault(table_name, []).append(node)
        for table_name, nodes in by_table.items():
            lost = [node[1] for node in nodes if node in failed]
            if lost:
                logger.warning(
                    "Table '%s' not updated: %s failed", table_name, ", ".join(lost)
                )
                continue
            table = session.model.tables[table_name]
            for node in nodes:
                key = columns[node]
                table.set_values(key[1], session.staged[key], session.staged_types[key])
                session.values[node[1]] = list(session.staged[key])
            logger.debug("Table '%s': %d formula columns committed", table_name, len(nodes))

    def _column_values(
        self, session: _Session, formula: str, scope: Scope, n: int, location: str
    ) -> list[Any]:
        expr = session.parser.parse(formula)
        kind = session.classify(expr, scope)
        logger.debug("%s classified as %s", location, kind.value)
        if kind is FormulaKind.ROW_WISE:
            memo: dict[int, Any] = {}
            values = []
            for i in range(n):
                value = session.eval(expr, scope, i, memo)
                if isinstance(value, ArrayValue):
                    raise TypeMismatch(f"Row {i} produced an array, expected a single value")
                values.append(session.finish(value))
            return values

        result = session.eval(expr, scope, None, {})
        if isinstance(result, ArrayValue):
            if len(result) != n:
                raise TypeMismatch(
                    f"Formula yields {len(result)} values but table '{scope.table}' "
                    f"has {n} rows"
                )
            return [session.finish(v) for v in result.values]
        return [session.finish(result)] * n

    def _calculate_scalar(self, session: _Session, name: str) -> None:
        scalar = session.model.scalars[name]
        scope = Scope.for_scalar(name)
        session.order.append(name)
        expr = session.parser.parse(scalar.formula)
        result = session.eval(expr, scope, None, {})
        if isinstance(result, ArrayValue):
            # Array-valued scalar formulas store their element count
            result = float(len(result))
        scalar.value = session.finish(result)
        session.values[name] = scalar.value

    # ------------------------------------------------------------------
    # classify / validate / audit
    # ------------------------------------------------------------------

    def classify(self, model: Model, name: str) -> FormulaKind:
        """Dispatch kind of the formula at *name* (``table.column`` or scalar)."""
        session = _Session(self, model)
        loc = session.resolver.resolve(name, Scope())
        formula, scope = self._formula_at(model, loc)
        if formula is None:
            raise ValueError(f"'{name}' has no formula")
        return session.classify(session.parser.parse(formula), scope)

    def validate(self, model: Model) -> list[Mismatch]:
        """Recalculate a copy of *model* and report stored values that differ.

        *model* itself is never modified. A derived value with nothing stored
        counts as a mismatch. Calculation failures are raised.
        """
        clone = model.copy()
        self.calculate(clone).raise_on_error()
        tolerance = self.options.validation_tolerance

        mismatches: list[Mismatch] = []
        for table in model.tables.values():
            for column in table.formula_columns:
                location = f"{table.name}.{column.name}"
                expected = clone.tables[table.name][column.name].values
                actual = column.values
                for i, value in enumerate(expected):
                    stored = actual[i] if i < len(actual) else None
                    if _values_differ(value, stored, tolerance):
                        mismatches.append(Mismatch(location, value, stored, row=i))
        for scalar in model.scalars.values():
            if not scalar.is_derived:
                continue
            expected = clone.scalars[scalar.name].value
            if _values_differ(expected, scalar.value, tolerance):
                mismatches.append(Mismatch(scalar.name, expected, scalar.value))

        logger.info("Validation found %d mismatches", len(mismatches))
        return mismatches

    def audit(self, model: Model, name: str) -> DependencyChain:
        """Upstream dependency chain of the column or scalar at *name*."""
        session = _Session(self, model)
        target = session.resolver.resolve(name, Scope())
        graph: DependencyGraph[str] = DependencyGraph()
        graph.add_node(str(target))
        locations: dict[str, Location] = {str(target): target}
        pending = [target]
        while pending:
            loc = pending.pop()
            formula, scope = self._formula_at(model, loc)
            if formula is None:
                continue
            for dep in session.locations(formula, scope):
                key = str(dep)
                graph.add_edge(str(loc), key)
                if key not in locations:
                    locations[key] = dep
                    pending.append(dep)

        entries = []
        for key, depth in graph.upstream(str(target)).items():
            loc = locations[key]
            formula, _ = self._formula_at(model, loc)
            if isinstance(loc, ScalarLocation):
                kind, value = "scalar", model.scalars[loc.name].value
            else:
                kind, value = "column", list(model.tables[loc.table][loc.column].values)
            entries.append(AuditEntry(key, kind, formula, depth, value))
        target_formula, _ = self._formula_at(model, target)
        return DependencyChain(str(target), target_formula, tuple(entries))

    @staticmethod
    def _formula_at(model: Model, loc: Location) -> tuple[str | None, Scope]:
        if isinstance(loc, ScalarLocation):
            return model.scalars[loc.name].formula, Scope.for_scalar(loc.name)
        return model.tables[loc.table][loc.column].formula, Scope.for_column(loc.table)


# ---------------------------------------------------------------------------
# Module-level entry points
# ---------------------------------------------------------------------------


def calculate(model: Model, options: EngineOptions | None = None) -> CalcResult:
    """Calculate *model* in place with a fresh evaluator."""
    return ModelEvaluator(options).calculate(model)


def validate(model: Model, options: EngineOptions | None = None) -> list[Mismatch]:
    return ModelEvaluator(options).validate(model)


def audit(model: Model, name: str) -> DependencyChain:
    return ModelEvaluator().audit(model, name)
