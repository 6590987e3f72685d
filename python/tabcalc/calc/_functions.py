"""Function registry and builtin implementations for formula evaluation."""

from __future__ import annotations

import calendar
import datetime
import fnmatch
import logging
import math
import operator
import re
from collections.abc import Callable
from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_HALF_UP, ROUND_UP, Decimal
from typing import Any

import numpy as np

from tabcalc._model import ColumnType, value_type
from tabcalc.calc._errors import (
    CircularDependency,
    ConvergenceError,
    DomainError,
    EngineError,
    FormulaSyntaxError,
    IndexOutOfRange,
    NotFound,
    TypeMismatch,
)
from tabcalc.calc._protocol import DEFAULT_OPTIONS, EngineOptions

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# ArrayValue: a whole column flowing through a formula
# ---------------------------------------------------------------------------


@dataclass
class ArrayValue:
    """A resolved column, or an element-wise result computed from columns.

    Iterable and sized so functions can treat it like a list.
    """

    values: list[Any]
    source: str = ""  # "table.column" when read straight from the model

    @property
    def type(self) -> ColumnType | None:
        return value_type(self.values[0]) if self.values else None

    def describe(self) -> str:
        return f"column '{self.source}'" if self.source else "array"

    def __iter__(self):
        return iter(self.values)

    def __len__(self):
        return len(self.values)

    def __getitem__(self, i: int) -> Any:
        return self.values[i]


# ---------------------------------------------------------------------------
# Categories: every function the engine evaluates, by family.
# ---------------------------------------------------------------------------

FUNCTION_CATEGORIES: dict[str, str] = {
    # Aggregation (10)
    "SUM": "aggregation",
    "AVERAGE": "aggregation",
    "AVG": "aggregation",
    "MIN": "aggregation",
    "MAX": "aggregation",
    "COUNT": "aggregation",
    "COUNTA": "aggregation",
    "PRODUCT": "aggregation",
    "UNIQUE": "aggregation",
    "COUNTUNIQUE": "aggregation",
    # Conditional (8)
    "SUMIF": "conditional",
    "SUMIFS": "conditional",
    "COUNTIF": "conditional",
    "COUNTIFS": "conditional",
    "AVERAGEIF": "conditional",
    "AVERAGEIFS": "conditional",
    "MINIFS": "conditional",
    "MAXIFS": "conditional",
    # Lookup (5)
    "INDEX": "lookup",
    "MATCH": "lookup",
    "XLOOKUP": "lookup",
    "CHOOSE": "lookup",
    "SWITCH": "lookup",
    # Math (16)
    "ABS": "math",
    "SQRT": "math",
    "ROUND": "math",
    "ROUNDUP": "math",
    "ROUNDDOWN": "math",
    "FLOOR": "math",
    "CEILING": "math",
    "MOD": "math",
    "POWER": "math",
    "EXP": "math",
    "LN": "math",
    "LOG": "math",
    "LOG10": "math",
    "INT": "math",
    "SIGN": "math",
    "PI": "math",
    # Text (13)
    "CONCAT": "text",
    "CONCATENATE": "text",
    "UPPER": "text",
    "LOWER": "text",
    "TRIM": "text",
    "LEN": "text",
    "LEFT": "text",
    "RIGHT": "text",
    "MID": "text",
    "SUBSTITUTE": "text",
    "REPT": "text",
    "EXACT": "text",
    "FIND": "text",
    # Date (11)
    "TODAY": "date",
    "DATE": "date",
    "YEAR": "date",
    "MONTH": "date",
    "DAY": "date",
    "EDATE": "date",
    "EOMONTH": "date",
    "DAYS": "date",
    "DATEDIF": "date",
    "NETWORKDAYS": "date",
    "YEARFRAC": "date",
    # Logic (6)
    "IF": "logic",
    "IFERROR": "logic",
    "AND": "logic",
    "OR": "logic",
    "NOT": "logic",
    "XOR": "logic",
    # Statistical (11)
    "MEDIAN": "statistical",
    "VAR": "statistical",
    "VAR.S": "statistical",
    "VAR.P": "statistical",
    "STDEV": "statistical",
    "STDEV.S": "statistical",
    "STDEV.P": "statistical",
    "PERCENTILE": "statistical",
    "QUARTILE": "statistical",
    "CORREL": "statistical",
    # Financial (18)
    "PMT": "financial",
    "PV": "financial",
    "FV": "financial",
    "NPV": "financial",
    "XNPV": "financial",
    "IRR": "financial",
    "XIRR": "financial",
    "RATE": "financial",
    "NPER": "financial",
    "MIRR": "financial",
    "SLN": "financial",
    "DB": "financial",
    "DDB": "financial",
    "VARIANCE": "financial",
    "VARIANCE_PCT": "financial",
    "VARIANCE_STATUS": "financial",
    "BREAKEVEN_UNITS": "financial",
    "BREAKEVEN_REVENUE": "financial",
}

# Functions that collapse a column to one value; a formula whose top-level
# call is one of these over a column is an aggregation.
REDUCING_FUNCTIONS: frozenset[str] = frozenset(
    name
    for name, cat in FUNCTION_CATEGORIES.items()
    if cat in ("aggregation", "conditional", "statistical")
) | frozenset({"INDEX", "MATCH", "XLOOKUP", "NPV", "IRR", "MIRR", "XNPV", "XIRR"})


def is_supported(func_name: str) -> bool:
    """Check if a function name is in the builtin set."""
    return func_name.upper() in FUNCTION_CATEGORIES


# ---------------------------------------------------------------------------
# Argument checks and coercion
# ---------------------------------------------------------------------------


def _require_args(name: str, args: list[Any], low: int, high: int | None = -1) -> None:
    """Arity check; *high* of -1 means exactly *low*, None means unbounded."""
    n = len(args)
    if high == -1:
        if n != low:
            plural = "" if low == 1 else "s"
            raise FormulaSyntaxError(f"{name} requires exactly {low} argument{plural}")
    elif high is None:
        if n < low:
            plural = "" if low == 1 else "s"
            raise FormulaSyntaxError(f"{name} requires at least {low} argument{plural}")
    elif n < low or n > high:
        raise FormulaSyntaxError(f"{name} requires {low} to {high} arguments")


def describe(value: Any) -> str:
    if isinstance(value, ArrayValue):
        return value.describe()
    return f"{value_type(value).value} {value!r}"


def to_number(value: Any, func: str = "") -> float:
    """Number or boolean (as 1/0) to float; anything else is a TypeMismatch."""
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    prefix = f"{func}: " if func else ""
    raise TypeMismatch(f"{prefix}expected a number, got {describe(value)}")


def _to_int(value: Any, func: str) -> int:
    return int(to_number(value, func))


def format_number(x: float) -> str:
    if x.is_integer() and abs(x) < 1e15:
        return str(int(x))
    return repr(x)


def to_text(value: Any, func: str = "") -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float):
        return format_number(value)
    if isinstance(value, datetime.date):
        return value.isoformat()
    prefix = f"{func}: " if func else ""
    raise TypeMismatch(f"{prefix}expected text, got {describe(value)}")


def to_bool(value: Any, func: str = "") -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str) and value.upper() in ("TRUE", "FALSE"):
        return value.upper() == "TRUE"
    prefix = f"{func}: " if func else ""
    raise TypeMismatch(f"{prefix}expected a boolean, got {describe(value)}")


def to_date(value: Any, func: str = "") -> datetime.date:
    """Date values pass through; ISO ``YYYY-MM-DD`` text is parsed."""
    if isinstance(value, datetime.date):
        return value
    if isinstance(value, str):
        try:
            return datetime.date.fromisoformat(value)
        except ValueError:
            pass
    prefix = f"{func}: " if func else ""
    raise TypeMismatch(f"{prefix}expected a date, got {describe(value)}")


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, ArrayValue):
        return value.values
    return [value]


def _flatten(args: list[Any]) -> list[Any]:
    result: list[Any] = []
    for a in args:
        result.extend(_as_list(a))
    return result


def _numbers(args: list[Any], func: str) -> list[float]:
    """Flatten arguments into floats.

    Array elements must be numbers: a text, boolean or date column is a
    TypeMismatch. Single arguments follow :func:`to_number`.
    """
    result: list[float] = []
    for a in args:
        if isinstance(a, ArrayValue):
            for v in a.values:
                if isinstance(v, bool) or not isinstance(v, float):
                    raise TypeMismatch(
                        f"{func} requires numeric values, {a.describe()} "
                        f"holds {value_type(v).value}"
                    )
                result.append(v)
        else:
            result.append(to_number(a, func))
    return result


def _ordered(args: list[Any], func: str) -> list[Any]:
    """Values for MIN/MAX: all numbers or all dates."""
    values = _flatten(args)
    if values and all(isinstance(v, datetime.date) for v in values):
        return values
    return _numbers(args, func)


def values_equal(a: Any, b: Any) -> bool:
    """Tagged equality: values of different types are never equal.

    Text compares case-insensitively.
    """
    ka, kb = value_type(a), value_type(b)
    if ka is not kb:
        return False
    if ka is ColumnType.TEXT:
        return a.casefold() == b.casefold()
    return a == b


def _same_length(func: str, *arrays: list[Any]) -> int:
    n = len(arrays[0])
    for arr in arrays[1:]:
        if len(arr) != n:
            raise TypeMismatch(f"{func}: ranges differ in length ({n} vs {len(arr)})")
    return n


# ---------------------------------------------------------------------------
# Aggregation builtins
# ---------------------------------------------------------------------------


def _builtin_sum(args: list[Any]) -> float:
    return sum(_numbers(args, "SUM"))


def _builtin_average(args: list[Any]) -> float:
    _require_args("AVERAGE", args, 1, None)
    nums = _numbers(args, "AVERAGE")
    if not nums:
        raise DomainError("AVERAGE of an empty set")
    return sum(nums) / len(nums)


def _builtin_min(args: list[Any]) -> Any:
    values = _ordered(args, "MIN")
    if not values:
        return 0.0
    return min(values)


def _builtin_max(args: list[Any]) -> Any:
    values = _ordered(args, "MAX")
    if not values:
        return 0.0
    return max(values)


def _builtin_count(args: list[Any]) -> float:
    """COUNT - counts numeric values only."""
    return float(sum(1 for v in _flatten(args) if isinstance(v, float)))


def _builtin_counta(args: list[Any]) -> float:
    """COUNTA - counts non-empty values."""
    return float(sum(1 for v in _flatten(args) if v != ""))


def _builtin_product(args: list[Any]) -> float:
    nums = _numbers(args, "PRODUCT")
    return math.prod(nums) if nums else 0.0


def _unique(values: list[Any]) -> list[Any]:
    seen: set[tuple[ColumnType, Any]] = set()
    result: list[Any] = []
    for v in values:
        key = (value_type(v), v)
        if key not in seen:
            seen.add(key)
            result.append(v)
    return result


def _builtin_unique(args: list[Any]) -> ArrayValue:
    _require_args("UNIQUE", args, 1)
    return ArrayValue(_unique(_as_list(args[0])))


def _builtin_countunique(args: list[Any]) -> float:
    _require_args("COUNTUNIQUE", args, 1, None)
    return float(len(_unique(_flatten(args))))


# ---------------------------------------------------------------------------
# Criteria matching engine (shared by the *IF / *IFS family)
# ---------------------------------------------------------------------------

_CRITERIA_OP_RE = re.compile(r"^(>=|<=|<>|>|<|=)(.*)$", re.DOTALL)
_NUMBER_RE = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?$")
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "=": operator.eq,
    "<>": operator.ne,
    "<": operator.lt,
    ">": operator.gt,
    "<=": operator.le,
    ">=": operator.ge,
}


def _parse_literal(text: str) -> Any:
    if _NUMBER_RE.match(text):
        return float(text)
    if text.upper() in ("TRUE", "FALSE"):
        return text.upper() == "TRUE"
    if _ISO_DATE_RE.match(text):
        try:
            return datetime.date.fromisoformat(text)
        except ValueError:
            pass
    return text


def _parse_criteria(criteria: Any) -> Callable[[Any], bool]:
    """Parse a criteria value into a predicate function.

    Supports:
    - Typed exact match: ``100``, ``TRUE``, a date value
    - Operator prefix: ``">100"``, ``"<=50"``, ``"<>0"``, ``">=2024-01-01"``
    - Text match (case-insensitive): ``"Sales"``, ``"<>north"``
    - Wildcards on text equality: ``"app*"``, ``"?pple"`` (via fnmatch)

    Numeric and date literals only ever match values of the same type.
    """
    if isinstance(criteria, ArrayValue):
        raise TypeMismatch("Criteria must be a single value, got an array")
    if isinstance(criteria, str):
        m = _CRITERIA_OP_RE.match(criteria)
        if m:
            op, literal = m.group(1), _parse_literal(m.group(2).strip())
        else:
            op, literal = "=", _parse_literal(criteria)
    else:
        op, literal = "=", criteria

    kind = value_type(literal)
    if kind is ColumnType.TEXT:
        return _text_predicate(op, literal)
    if kind is ColumnType.BOOLEAN and op not in ("=", "<>"):
        raise TypeMismatch(f"Criteria operator '{op}' cannot be applied to a boolean")

    if op == "<>":
        return lambda v, t=literal: value_type(v) is not kind or v != t
    compare = _COMPARATORS[op]
    return lambda v, t=literal: value_type(v) is kind and compare(v, t)


def _text_predicate(op: str, literal: str) -> Callable[[Any], bool]:
    lower = literal.lower()
    if op in ("=", "<>") and ("*" in lower or "?" in lower):
        def matches(v: Any, p: str = lower) -> bool:
            return isinstance(v, str) and fnmatch.fnmatchcase(v.lower(), p)
    elif op in ("=", "<>"):
        def matches(v: Any, t: str = lower) -> bool:
            return isinstance(v, str) and v.lower() == t
    else:
        compare = _COMPARATORS[op]

        def matches(v: Any, t: str = lower) -> bool:
            return isinstance(v, str) and compare(v.lower(), t)

        return matches
    if op == "<>":
        return lambda v: not matches(v)
    return matches


def _criteria_mask(func: str, pairs: list[tuple[Any, Any]]) -> list[bool]:
    """AND together every ``(range, criteria)`` pair, row by row."""
    columns = [(_as_list(rng), _parse_criteria(crit)) for rng, crit in pairs]
    n = _same_length(func, *(values for values, _ in columns))
    return [all(pred(values[i]) for values, pred in columns) for i in range(n)]


def _select(func: str, target: Any, mask: list[bool]) -> ArrayValue:
    values = _as_list(target)
    _same_length(func, values, mask)
    source = target.source if isinstance(target, ArrayValue) else ""
    return ArrayValue([v for v, keep in zip(values, mask) if keep], source)


def _pairs(args: list[Any], start: int) -> list[tuple[Any, Any]]:
    return [(args[j], args[j + 1]) for j in range(start, len(args), 2)]


def _builtin_sumif(args: list[Any]) -> float:
    """SUMIF(criteria_range, criteria, [sum_range])."""
    _require_args("SUMIF", args, 2, 3)
    mask = _criteria_mask("SUMIF", [(args[0], args[1])])
    target = args[2] if len(args) > 2 else args[0]
    return sum(_numbers([_select("SUMIF", target, mask)], "SUMIF"))


def _builtin_sumifs(args: list[Any]) -> float:
    """SUMIFS(sum_range, criteria_range1, criteria1, ...).

    Note: sum_range is FIRST (unlike SUMIF where it's last).
    """
    if len(args) < 3 or len(args) % 2 == 0:
        raise FormulaSyntaxError(
            "SUMIFS requires sum_range + pairs of (criteria_range, criteria)"
        )
    mask = _criteria_mask("SUMIFS", _pairs(args, 1))
    return sum(_numbers([_select("SUMIFS", args[0], mask)], "SUMIFS"))


def _builtin_countif(args: list[Any]) -> float:
    """COUNTIF(range, criteria)."""
    _require_args("COUNTIF", args, 2)
    return float(sum(_criteria_mask("COUNTIF", [(args[0], args[1])])))


def _builtin_countifs(args: list[Any]) -> float:
    """COUNTIFS(criteria_range1, criteria1, [criteria_range2, criteria2, ...])."""
    if len(args) < 2 or len(args) % 2 != 0:
        raise FormulaSyntaxError("COUNTIFS requires pairs of (criteria_range, criteria)")
    return float(sum(_criteria_mask("COUNTIFS", _pairs(args, 0))))


def _builtin_averageif(args: list[Any]) -> float:
    """AVERAGEIF(criteria_range, criteria, [average_range])."""
    _require_args("AVERAGEIF", args, 2, 3)
    mask = _criteria_mask("AVERAGEIF", [(args[0], args[1])])
    target = args[2] if len(args) > 2 else args[0]
    nums = _numbers([_select("AVERAGEIF", target, mask)], "AVERAGEIF")
    if not nums:
        raise DomainError("AVERAGEIF: no values match the criteria")
    return sum(nums) / len(nums)


def _ifs_values(func: str, args: list[Any]) -> list[float]:
    if len(args) < 3 or len(args) % 2 == 0:
        raise FormulaSyntaxError(
            f"{func} requires a value range + pairs of (criteria_range, criteria)"
        )
    mask = _criteria_mask(func, _pairs(args, 1))
    return _numbers([_select(func, args[0], mask)], func)


def _builtin_averageifs(args: list[Any]) -> float:
    """AVERAGEIFS(average_range, criteria_range1, criteria1, ...)."""
    nums = _ifs_values("AVERAGEIFS", args)
    if not nums:
        raise DomainError("AVERAGEIFS: no values match the criteria")
    return sum(nums) / len(nums)


def _builtin_minifs(args: list[Any]) -> float:
    """MINIFS(min_range, criteria_range1, criteria1, ...). 0 when nothing matches."""
    nums = _ifs_values("MINIFS", args)
    return min(nums) if nums else 0.0


def _builtin_maxifs(args: list[Any]) -> float:
    """MAXIFS(max_range, criteria_range1, criteria1, ...). 0 when nothing matches."""
    nums = _ifs_values("MAXIFS", args)
    return max(nums) if nums else 0.0


# ---------------------------------------------------------------------------
# Lookup builtins (INDEX, MATCH, XLOOKUP, CHOOSE, SWITCH)
# ---------------------------------------------------------------------------


def _require_array(func: str, value: Any) -> ArrayValue:
    if not isinstance(value, ArrayValue):
        raise TypeMismatch(f"{func} expects a column, got {describe(value)}")
    return value


def _builtin_index(args: list[Any]) -> Any:
    """INDEX(array, position [, 1]). Position is 1-based."""
    _require_args("INDEX", args, 2, 3)
    array = _require_array("INDEX", args[0])
    position = _to_int(args[1], "INDEX")
    if len(args) > 2 and _to_int(args[2], "INDEX") != 1:
        raise IndexOutOfRange(_to_int(args[2], "INDEX"), 1, "INDEX column")
    if position < 1 or position > len(array):
        raise IndexOutOfRange(position, len(array), array.source)
    return array[position - 1]


def _builtin_match(args: list[Any]) -> float:
    """MATCH(lookup_value, lookup_array, [match_type]).

    match_type: 0=exact, 1=largest<=, -1=smallest>=. Default 0.
    """
    _require_args("MATCH", args, 2, 3)
    lookup_value = args[0]
    array = _require_array("MATCH", args[1])
    match_type = _to_int(args[2], "MATCH") if len(args) > 2 else 0

    if match_type == 0:
        for i, v in enumerate(array):
            if values_equal(lookup_value, v):
                return float(i + 1)
    elif match_type in (1, -1):
        target = to_number(lookup_value, "MATCH")
        best: int | None = None
        for i, v in enumerate(array):
            if isinstance(v, float) and not isinstance(v, bool):
                if (match_type == 1 and v <= target) or (match_type == -1 and v >= target):
                    best = i + 1
        if best is not None:
            return float(best)
    else:
        raise DomainError(f"MATCH: invalid match_type {match_type}")
    raise NotFound(f"MATCH: {lookup_value!r} not found in {array.describe()}")


def _builtin_xlookup(args: list[Any]) -> Any:
    """XLOOKUP(lookup_value, lookup_array, return_array, [if_not_found], [match_mode], [search_mode]).

    match_mode: 0=exact (default), -1=next smaller, 1=next larger, 2=wildcard.
    search_mode: 1=first-to-last (default), -1=last-to-first.
    """
    _require_args("XLOOKUP", args, 3, 6)
    lookup_value = args[0]
    lookup_vals = _require_array("XLOOKUP", args[1]).values
    return_vals = _as_list(args[2])
    has_fallback = len(args) > 3
    match_mode = _to_int(args[4], "XLOOKUP") if len(args) > 4 else 0
    search_mode = _to_int(args[5], "XLOOKUP") if len(args) > 5 else 1
    if match_mode not in (0, -1, 1, 2) or search_mode not in (1, -1):
        raise DomainError(f"XLOOKUP: unsupported mode ({match_mode}, {search_mode})")
    _same_length("XLOOKUP", lookup_vals, return_vals)

    if search_mode == 1:
        search_range = range(len(lookup_vals))
    else:
        search_range = range(len(lookup_vals) - 1, -1, -1)

    found: int | None = None
    if match_mode in (0, 2):
        wildcard = match_mode == 2 and isinstance(lookup_value, str)
        pattern = lookup_value.lower() if wildcard else ""
        for i in search_range:
            v = lookup_vals[i]
            if wildcard:
                if isinstance(v, str) and fnmatch.fnmatchcase(v.lower(), pattern):
                    found = i
                    break
            elif values_equal(lookup_value, v):
                found = i
                break
    else:
        # Approximate match: -1 (next smaller) or 1 (next larger)
        lv = to_number(lookup_value, "XLOOKUP")
        best_val: float | None = None
        for i in search_range:
            v = lookup_vals[i]
            if isinstance(v, bool) or not isinstance(v, float):
                continue
            if v == lv:
                found = i
                break
            if match_mode == -1 and v < lv and (best_val is None or v > best_val):
                best_val, found = v, i
            elif match_mode == 1 and v > lv and (best_val is None or v < best_val):
                best_val, found = v, i

    if found is not None:
        return return_vals[found]
    if has_fallback:
        return args[3]
    raise NotFound(f"XLOOKUP: {lookup_value!r} not found")


def _builtin_choose(args: list[Any]) -> Any:
    """CHOOSE(index_num, value1, value2, ...). 1-based."""
    _require_args("CHOOSE", args, 2, None)
    index_num = _to_int(args[0], "CHOOSE")
    if index_num < 1 or index_num > len(args) - 1:
        raise IndexOutOfRange(index_num, len(args) - 1, "CHOOSE")
    return args[index_num]


def _builtin_switch(thunks: list[Callable[[], Any]]) -> Any:
    """SWITCH(expression, value1, result1, [value2, result2, ...], [default])."""
    _require_args("SWITCH", thunks, 3, None)
    subject = thunks[0]()
    rest = thunks[1:]
    for i in range(0, len(rest) - 1, 2):
        if values_equal(subject, rest[i]()):
            return rest[i + 1]()
    if len(rest) % 2 == 1:
        return rest[-1]()
    raise NotFound(f"SWITCH: no case matches {subject!r}")


# ---------------------------------------------------------------------------
# Math builtins
# ---------------------------------------------------------------------------


def _decimal_round(x: float, digits: int, rounding: str) -> float:
    quantum = Decimal(1).scaleb(-digits)
    return float(Decimal(repr(x)).quantize(quantum, rounding=rounding))


def _rounding_args(name: str, args: list[Any]) -> tuple[float, int]:
    _require_args(name, args, 1, 2)
    digits = _to_int(args[1], name) if len(args) > 1 else 0
    return to_number(args[0], name), digits


def _builtin_abs(args: list[Any]) -> float:
    _require_args("ABS", args, 1)
    return abs(to_number(args[0], "ABS"))


def _builtin_sqrt(args: list[Any]) -> float:
    _require_args("SQRT", args, 1)
    x = to_number(args[0], "SQRT")
    if x < 0:
        raise DomainError(f"SQRT of negative number {format_number(x)}")
    return math.sqrt(x)


def _builtin_round(args: list[Any]) -> float:
    """ROUND(x, [digits]). Halves round away from zero."""
    x, digits = _rounding_args("ROUND", args)
    return _decimal_round(x, digits, ROUND_HALF_UP)


def _builtin_roundup(args: list[Any]) -> float:
    x, digits = _rounding_args("ROUNDUP", args)
    return _decimal_round(x, digits, ROUND_UP)


def _builtin_rounddown(args: list[Any]) -> float:
    x, digits = _rounding_args("ROUNDDOWN", args)
    return _decimal_round(x, digits, ROUND_DOWN)


def _significance_args(name: str, args: list[Any]) -> tuple[float, float]:
    _require_args(name, args, 1, 2)
    x = to_number(args[0], name)
    sig = to_number(args[1], name) if len(args) > 1 else 1.0
    if sig == 0:
        raise DomainError(f"{name}: significance cannot be zero")
    if x > 0 and sig < 0:
        raise DomainError(f"{name}: significance must have the sign of the number")
    return x, sig


def _builtin_floor(args: list[Any]) -> float:
    """FLOOR(x, [significance]). Rounds down to a multiple of significance."""
    x, sig = _significance_args("FLOOR", args)
    return math.floor(x / sig) * sig


def _builtin_ceiling(args: list[Any]) -> float:
    x, sig = _significance_args("CEILING", args)
    return math.ceil(x / sig) * sig


def _builtin_mod(args: list[Any]) -> float:
    _require_args("MOD", args, 2)
    a, b = to_number(args[0], "MOD"), to_number(args[1], "MOD")
    if b == 0:
        raise DomainError("MOD: division by zero")
    # Result has the sign of the divisor
    return a - b * math.floor(a / b)


def power(base: float, exponent: float) -> float:
    """``base ** exponent`` restricted to real results."""
    if base < 0 and not exponent.is_integer():
        raise DomainError(
            f"Negative base {format_number(base)} with fractional exponent "
            f"{format_number(exponent)}"
        )
    if base == 0 and exponent < 0:
        raise DomainError("Zero raised to a negative power")
    return base ** exponent


def _builtin_power(args: list[Any]) -> float:
    _require_args("POWER", args, 2)
    return power(to_number(args[0], "POWER"), to_number(args[1], "POWER"))


def _builtin_exp(args: list[Any]) -> float:
    _require_args("EXP", args, 1)
    return math.exp(to_number(args[0], "EXP"))


def _builtin_ln(args: list[Any]) -> float:
    _require_args("LN", args, 1)
    x = to_number(args[0], "LN")
    if x <= 0:
        raise DomainError(f"LN of non-positive number {format_number(x)}")
    return math.log(x)


def _builtin_log(args: list[Any]) -> float:
    """LOG(x, [base]). Base defaults to 10."""
    _require_args("LOG", args, 1, 2)
    x = to_number(args[0], "LOG")
    base = to_number(args[1], "LOG") if len(args) > 1 else 10.0
    if x <= 0 or base <= 0 or base == 1:
        raise DomainError(f"LOG undefined for x={format_number(x)}, base={format_number(base)}")
    return math.log(x, base)


def _builtin_log10(args: list[Any]) -> float:
    _require_args("LOG10", args, 1)
    x = to_number(args[0], "LOG10")
    if x <= 0:
        raise DomainError(f"LOG10 of non-positive number {format_number(x)}")
    return math.log10(x)


def _builtin_int(args: list[Any]) -> float:
    _require_args("INT", args, 1)
    return float(math.floor(to_number(args[0], "INT")))


def _builtin_sign(args: list[Any]) -> float:
    _require_args("SIGN", args, 1)
    x = to_number(args[0], "SIGN")
    if x > 0:
        return 1.0
    if x < 0:
        return -1.0
    return 0.0


def _builtin_pi(args: list[Any]) -> float:
    _require_args("PI", args, 0)
    return math.pi


# ---------------------------------------------------------------------------
# Text builtins
# ---------------------------------------------------------------------------


def _builtin_concat(args: list[Any]) -> str:
    return "".join(to_text(a, "CONCAT") for a in args)


def _builtin_concatenate(args: list[Any]) -> str:
    _require_args("CONCATENATE", args, 1, None)
    return "".join(to_text(a, "CONCATENATE") for a in args)


def _builtin_upper(args: list[Any]) -> str:
    _require_args("UPPER", args, 1)
    return to_text(args[0], "UPPER").upper()


def _builtin_lower(args: list[Any]) -> str:
    _require_args("LOWER", args, 1)
    return to_text(args[0], "LOWER").lower()


def _builtin_trim(args: list[Any]) -> str:
    """TRIM: remove leading/trailing spaces and collapse internal spaces."""
    _require_args("TRIM", args, 1)
    return " ".join(to_text(args[0], "TRIM").split())


def _builtin_len(args: list[Any]) -> float:
    _require_args("LEN", args, 1)
    return float(len(to_text(args[0], "LEN")))


def _builtin_left(args: list[Any]) -> str:
    _require_args("LEFT", args, 1, 2)
    text = to_text(args[0], "LEFT")
    n = _to_int(args[1], "LEFT") if len(args) > 1 else 1
    if n < 0:
        raise DomainError("LEFT: number of characters cannot be negative")
    return text[:n]


def _builtin_right(args: list[Any]) -> str:
    _require_args("RIGHT", args, 1, 2)
    text = to_text(args[0], "RIGHT")
    n = _to_int(args[1], "RIGHT") if len(args) > 1 else 1
    if n < 0:
        raise DomainError("RIGHT: number of characters cannot be negative")
    return text[-n:] if n > 0 else ""


def _builtin_mid(args: list[Any]) -> str:
    """MID(text, start, count). *start* is 1-based."""
    _require_args("MID", args, 3)
    text = to_text(args[0], "MID")
    start = _to_int(args[1], "MID")
    n = _to_int(args[2], "MID")
    if start < 1 or n < 0:
        raise DomainError("MID: start must be >= 1 and count >= 0")
    return text[start - 1 : start - 1 + n]


def _builtin_substitute(args: list[Any]) -> str:
    """SUBSTITUTE(text, old_text, new_text, [instance_num])."""
    _require_args("SUBSTITUTE", args, 3, 4)
    text = to_text(args[0], "SUBSTITUTE")
    old_text = to_text(args[1], "SUBSTITUTE")
    new_text = to_text(args[2], "SUBSTITUTE")
    if not old_text:
        return text

    if len(args) > 3:
        instance = _to_int(args[3], "SUBSTITUTE")
        # Replace only the Nth occurrence
        count = 0
        start = 0
        while True:
            idx = text.find(old_text, start)
            if idx == -1:
                return text
            count += 1
            if count == instance:
                return text[:idx] + new_text + text[idx + len(old_text):]
            start = idx + 1

    return text.replace(old_text, new_text)


def _builtin_rept(args: list[Any]) -> str:
    """REPT(text, number_times)."""
    _require_args("REPT", args, 2)
    n = _to_int(args[1], "REPT")
    if n < 0:
        raise DomainError("REPT: repeat count cannot be negative")
    return to_text(args[0], "REPT") * n


def _builtin_exact(args: list[Any]) -> bool:
    """EXACT(text1, text2). Case-sensitive comparison."""
    _require_args("EXACT", args, 2)
    return to_text(args[0], "EXACT") == to_text(args[1], "EXACT")


def _builtin_find(args: list[Any]) -> float:
    """FIND(find_text, within_text, [start_num]). Case-sensitive, 1-based."""
    _require_args("FIND", args, 2, 3)
    find_text = to_text(args[0], "FIND")
    within_text = to_text(args[1], "FIND")
    start_num = _to_int(args[2], "FIND") if len(args) > 2 else 1
    if start_num < 1:
        raise DomainError("FIND: start position must be >= 1")
    idx = within_text.find(find_text, start_num - 1)
    if idx == -1:
        raise NotFound(f"FIND: {find_text!r} not found in {within_text!r}")
    return float(idx + 1)


# ---------------------------------------------------------------------------
# Date builtins
# ---------------------------------------------------------------------------


def _add_months(d: datetime.date, months: int) -> datetime.date:
    """Shift by whole months, clamping the day to the target month's end."""
    total = d.year * 12 + (d.month - 1) + months
    year, month = divmod(total, 12)
    month += 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return datetime.date(year, month, day)


def _builtin_today(args: list[Any]) -> datetime.date:
    _require_args("TODAY", args, 0)
    return datetime.date.today()


def _builtin_date(args: list[Any]) -> datetime.date:
    """DATE(year, month, day). Month and day overflow roll forward."""
    _require_args("DATE", args, 3)
    year = _to_int(args[0], "DATE")
    month = _to_int(args[1], "DATE")
    day = _to_int(args[2], "DATE")
    first = _add_months(datetime.date(year, 1, 1), month - 1)
    return first + datetime.timedelta(days=day - 1)


def _builtin_year(args: list[Any]) -> float:
    _require_args("YEAR", args, 1)
    return float(to_date(args[0], "YEAR").year)


def _builtin_month(args: list[Any]) -> float:
    _require_args("MONTH", args, 1)
    return float(to_date(args[0], "MONTH").month)


def _builtin_day(args: list[Any]) -> float:
    _require_args("DAY", args, 1)
    return float(to_date(args[0], "DAY").day)


def _builtin_edate(args: list[Any]) -> datetime.date:
    """EDATE(start_date, months). Date N months from start."""
    _require_args("EDATE", args, 2)
    return _add_months(to_date(args[0], "EDATE"), _to_int(args[1], "EDATE"))


def _builtin_eomonth(args: list[Any]) -> datetime.date:
    """EOMONTH(start_date, months). End of month N months from start."""
    _require_args("EOMONTH", args, 2)
    shifted = _add_months(to_date(args[0], "EOMONTH"), _to_int(args[1], "EOMONTH"))
    last = calendar.monthrange(shifted.year, shifted.month)[1]
    return shifted.replace(day=last)


def _builtin_days(args: list[Any]) -> float:
    """DAYS(end_date, start_date)."""
    _require_args("DAYS", args, 2)
    return float((to_date(args[0], "DAYS") - to_date(args[1], "DAYS")).days)


def _builtin_datedif(args: list[Any]) -> float:
    """DATEDIF(start, end, unit) with unit one of D, M, Y, MD, YM, YD."""
    _require_args("DATEDIF", args, 3)
    start = to_date(args[0], "DATEDIF")
    end = to_date(args[1], "DATEDIF")
    unit = to_text(args[2], "DATEDIF").upper()
    if start > end:
        raise DomainError("DATEDIF: start date is after end date")

    months = (end.year - start.year) * 12 + (end.month - start.month)
    if end.day < start.day:
        months -= 1
    if unit == "D":
        return float((end - start).days)
    if unit == "M":
        return float(months)
    if unit == "Y":
        return float(months // 12)
    if unit == "YM":
        return float(months % 12)
    if unit == "MD":
        return float((end - _add_months(start, months)).days)
    if unit == "YD":
        return float((end - _add_months(start, (months // 12) * 12)).days)
    raise DomainError(f"DATEDIF: unknown unit '{unit}'")


def _builtin_networkdays(args: list[Any]) -> float:
    """NETWORKDAYS(start, end, [holidays]). Inclusive; negative when end < start."""
    _require_args("NETWORKDAYS", args, 2, 3)
    start = to_date(args[0], "NETWORKDAYS")
    end = to_date(args[1], "NETWORKDAYS")
    holidays = [to_date(h, "NETWORKDAYS") for h in _as_list(args[2])] if len(args) > 2 else []
    sign = 1.0
    if end < start:
        start, end, sign = end, start, -1.0
    count = np.busday_count(
        np.datetime64(start, "D"),
        np.datetime64(end + datetime.timedelta(days=1), "D"),
        holidays=[np.datetime64(h, "D") for h in holidays],
    )
    return sign * float(count)


def _builtin_yearfrac(args: list[Any]) -> float:
    """YEARFRAC(start, end, [basis]).

    basis: 0 = US 30/360 (default), 1 = actual/actual, 2 = actual/360,
    3 = actual/365, 4 = European 30/360.
    """
    _require_args("YEARFRAC", args, 2, 3)
    start = to_date(args[0], "YEARFRAC")
    end = to_date(args[1], "YEARFRAC")
    basis = _to_int(args[2], "YEARFRAC") if len(args) > 2 else 0
    if start > end:
        start, end = end, start
    days = (end - start).days

    if basis in (0, 4):
        d1, d2 = start.day, end.day
        if d1 == 31:
            d1 = 30
        if d2 == 31 and (d1 >= 30 or basis == 4):
            d2 = 30
        return (
            (end.year - start.year) * 360 + (end.month - start.month) * 30 + (d2 - d1)
        ) / 360.0
    if basis == 1:
        return days / (366.0 if calendar.isleap(start.year) else 365.0)
    if basis == 2:
        return days / 360.0
    if basis == 3:
        return days / 365.0
    raise DomainError(f"YEARFRAC: invalid basis {basis}")


# ---------------------------------------------------------------------------
# Logic builtins
# ---------------------------------------------------------------------------


def _pick(condition: Any, when_true: Callable[[], Any], when_false: Callable[[], Any]) -> Any:
    if not isinstance(condition, ArrayValue):
        return when_true() if to_bool(condition, "IF") else when_false()
    # Whole-column condition: choose element by element
    n = len(condition)
    yes, no = when_true(), when_false()
    yes_vals = yes.values if isinstance(yes, ArrayValue) else [yes] * n
    no_vals = no.values if isinstance(no, ArrayValue) else [no] * n
    _same_length("IF", condition.values, yes_vals, no_vals)
    return ArrayValue(
        [y if to_bool(c, "IF") else f for c, y, f in zip(condition, yes_vals, no_vals)]
    )


def _builtin_if(thunks: list[Callable[[], Any]]) -> Any:
    """IF(condition, value_if_true, [value_if_false]). Only the taken branch runs."""
    _require_args("IF", thunks, 2, 3)
    when_false = thunks[2] if len(thunks) > 2 else (lambda: False)
    return _pick(thunks[0](), thunks[1], when_false)


def _builtin_iferror(thunks: list[Callable[[], Any]]) -> Any:
    """IFERROR(value, fallback). Cycles are never masked."""
    _require_args("IFERROR", thunks, 2)
    try:
        return thunks[0]()
    except CircularDependency:
        raise
    except EngineError as exc:
        logger.debug("IFERROR caught %s: %s", exc.kind, exc.message)
        return thunks[1]()


def _builtin_and(args: list[Any]) -> bool:
    _require_args("AND", args, 1, None)
    return all(to_bool(a, "AND") for a in args)


def _builtin_or(args: list[Any]) -> bool:
    _require_args("OR", args, 1, None)
    return any(to_bool(a, "OR") for a in args)


def _builtin_not(args: list[Any]) -> bool:
    _require_args("NOT", args, 1)
    return not to_bool(args[0], "NOT")


def _builtin_xor(args: list[Any]) -> bool:
    """XOR: true when an odd number of arguments are true."""
    _require_args("XOR", args, 1, None)
    return sum(to_bool(a, "XOR") for a in args) % 2 == 1


# ---------------------------------------------------------------------------
# Statistical builtins (numpy)
# ---------------------------------------------------------------------------


def _sample(args: list[Any], func: str, minimum: int = 1) -> np.ndarray:
    nums = _numbers(args, func)
    if len(nums) < minimum:
        raise DomainError(f"{func} requires at least {minimum} value(s), got {len(nums)}")
    return np.asarray(nums, dtype=float)


def _builtin_median(args: list[Any]) -> float:
    return float(np.median(_sample(args, "MEDIAN")))


def _builtin_var_s(args: list[Any]) -> float:
    return float(np.var(_sample(args, "VAR.S", 2), ddof=1))


def _builtin_var_p(args: list[Any]) -> float:
    return float(np.var(_sample(args, "VAR.P")))


def _builtin_stdev_s(args: list[Any]) -> float:
    return float(np.std(_sample(args, "STDEV.S", 2), ddof=1))


def _builtin_stdev_p(args: list[Any]) -> float:
    return float(np.std(_sample(args, "STDEV.P")))


def _builtin_percentile(args: list[Any]) -> float:
    """PERCENTILE(array, k) with k in [0, 1], linear interpolation."""
    _require_args("PERCENTILE", args, 2)
    k = to_number(args[1], "PERCENTILE")
    if not 0.0 <= k <= 1.0:
        raise DomainError(f"PERCENTILE: k must be between 0 and 1, got {format_number(k)}")
    return float(np.percentile(_sample(args[:1], "PERCENTILE"), k * 100.0))


def _builtin_quartile(args: list[Any]) -> float:
    """QUARTILE(array, quart) with quart in 0..4."""
    _require_args("QUARTILE", args, 2)
    quart = _to_int(args[1], "QUARTILE")
    if quart not in (0, 1, 2, 3, 4):
        raise DomainError(f"QUARTILE: quart must be 0, 1, 2, 3 or 4, got {quart}")
    return float(np.percentile(_sample(args[:1], "QUARTILE"), quart * 25.0))


def _builtin_correl(args: list[Any]) -> float:
    _require_args("CORREL", args, 2)
    x = _sample(args[:1], "CORREL", 2)
    y = _sample(args[1:], "CORREL", 2)
    if len(x) != len(y):
        raise DomainError(f"CORREL requires arrays of equal length ({len(x)} vs {len(y)})")
    if np.std(x) == 0 or np.std(y) == 0:
        raise DomainError("CORREL: zero variance")
    return float(np.corrcoef(x, y)[0, 1])


# ---------------------------------------------------------------------------
# Financial builtins
# ---------------------------------------------------------------------------


def _newton(
    func: str,
    f: Callable[[float], float],
    df: Callable[[float], float],
    guess: float,
    options: EngineOptions,
) -> float:
    """Bounded Newton-Raphson for a rate; keeps ``1 + rate`` positive."""
    rate = guess
    for i in range(options.newton_max_iterations):
        value = f(rate)
        if abs(value) < options.newton_tolerance:
            return rate
        slope = df(rate)
        if slope == 0 or not math.isfinite(slope):
            raise ConvergenceError(
                f"{func}: derivative vanished at rate {rate:g}", iterations=i + 1
            )
        new_rate = rate - value / slope
        if new_rate <= -1.0:
            new_rate = (rate - 1.0) / 2.0
        if abs(new_rate - rate) < options.newton_tolerance:
            return new_rate
        rate = new_rate
    raise ConvergenceError(
        f"{func} did not converge after {options.newton_max_iterations} iterations",
        iterations=options.newton_max_iterations,
    )


def _optional_number(args: list[Any], i: int, func: str, default: float) -> float:
    return to_number(args[i], func) if len(args) > i else default


def _builtin_pv(args: list[Any]) -> float:
    """PV(rate, nper, pmt, [fv], [type]).

    Present value of an investment: the total amount that a series of future
    payments is worth right now.
    """
    _require_args("PV", args, 3, 5)
    rate, nper, pmt = (to_number(a, "PV") for a in args[:3])
    fv = _optional_number(args, 3, "PV", 0.0)
    pmt_type = _optional_number(args, 4, "PV", 0.0)

    if rate == 0:
        return -(fv + pmt * nper)
    pv_annuity = pmt * (1 + rate * pmt_type) * (1 - (1 + rate) ** (-nper)) / rate
    pv_fv = fv / (1 + rate) ** nper
    return -(pv_annuity + pv_fv)


def _builtin_fv(args: list[Any]) -> float:
    """FV(rate, nper, pmt, [pv], [type])."""
    _require_args("FV", args, 3, 5)
    rate, nper, pmt = (to_number(a, "FV") for a in args[:3])
    pv = _optional_number(args, 3, "FV", 0.0)
    pmt_type = _optional_number(args, 4, "FV", 0.0)

    if rate == 0:
        return -(pv + pmt * nper)
    fv_pv = pv * (1 + rate) ** nper
    fv_annuity = pmt * (1 + rate * pmt_type) * ((1 + rate) ** nper - 1) / rate
    return -(fv_pv + fv_annuity)


def _builtin_pmt(args: list[Any]) -> float:
    """PMT(rate, nper, pv, [fv], [type]).

    Payment for a loan based on constant payments and constant interest rate.
    """
    _require_args("PMT", args, 3, 5)
    rate, nper, pv = (to_number(a, "PMT") for a in args[:3])
    fv = _optional_number(args, 3, "PMT", 0.0)
    pmt_type = _optional_number(args, 4, "PMT", 0.0)

    if nper == 0:
        raise DomainError("PMT: number of periods cannot be zero")
    if rate == 0:
        return -(pv + fv) / nper
    pvif = (1 + rate) ** nper
    return -(rate * (pv * pvif + fv)) / (pvif - 1) / (1 + rate * pmt_type)


def _builtin_nper(args: list[Any]) -> float:
    """NPER(rate, pmt, pv, [fv], [type])."""
    _require_args("NPER", args, 3, 5)
    rate, pmt, pv = (to_number(a, "NPER") for a in args[:3])
    fv = _optional_number(args, 3, "NPER", 0.0)
    pmt_type = _optional_number(args, 4, "NPER", 0.0)

    if rate == 0:
        if pmt == 0:
            raise DomainError("NPER: payment cannot be zero when rate is zero")
        return -(pv + fv) / pmt
    adjusted = pmt * (1 + rate * pmt_type)
    ratio = (adjusted - fv * rate) / (adjusted + pv * rate)
    if ratio <= 0:
        raise DomainError("NPER: no number of periods reaches the future value")
    return math.log(ratio) / math.log(1 + rate)


def _builtin_npv(args: list[Any]) -> float:
    """NPV(rate, value1, [value2], ...).

    Net present value of a series of cash flows; the first value is
    discounted one full period.
    """
    _require_args("NPV", args, 2, None)
    rate = to_number(args[0], "NPV")
    values = _numbers(args[1:], "NPV")
    return sum(v / (1 + rate) ** (i + 1) for i, v in enumerate(values))


def _dated_flows(func: str, values_arg: Any, dates_arg: Any) -> tuple[list[float], list[float]]:
    """Cash flows and their year offsets (actual/365) from the first date."""
    values = _numbers([values_arg], func)
    dates = [to_date(d, func) for d in _as_list(dates_arg)]
    if not values or len(values) != len(dates):
        raise DomainError(f"{func}: values and dates must be non-empty and equal in length")
    base = dates[0]
    return values, [(d - base).days / 365.0 for d in dates]


def _builtin_xnpv(args: list[Any]) -> float:
    """XNPV(rate, values, dates)."""
    _require_args("XNPV", args, 3)
    rate = to_number(args[0], "XNPV")
    values, years = _dated_flows("XNPV", args[1], args[2])
    return sum(v / (1 + rate) ** t for v, t in zip(values, years))


def _require_sign_change(func: str, values: list[float]) -> None:
    if not (any(v > 0 for v in values) and any(v < 0 for v in values)):
        raise DomainError(f"{func} requires both positive and negative cash flows")


def _builtin_irr(args: list[Any], options: EngineOptions = DEFAULT_OPTIONS) -> float:
    """IRR(values, [guess]). Newton-Raphson from *guess* (default 0.1)."""
    _require_args("IRR", args, 1, 2)
    values = _numbers(args[:1], "IRR")
    _require_sign_change("IRR", values)
    guess = _optional_number(args, 1, "IRR", options.irr_guess)

    def npv(rate: float) -> float:
        return sum(v / (1 + rate) ** i for i, v in enumerate(values))

    def slope(rate: float) -> float:
        return sum(-i * v / (1 + rate) ** (i + 1) for i, v in enumerate(values))

    return _newton("IRR", npv, slope, guess, options)


def _builtin_xirr(args: list[Any], options: EngineOptions = DEFAULT_OPTIONS) -> float:
    """XIRR(values, dates, [guess])."""
    _require_args("XIRR", args, 2, 3)
    values, years = _dated_flows("XIRR", args[0], args[1])
    _require_sign_change("XIRR", values)
    guess = _optional_number(args, 2, "XIRR", options.irr_guess)

    def npv(rate: float) -> float:
        return sum(v / (1 + rate) ** t for v, t in zip(values, years))

    def slope(rate: float) -> float:
        return sum(-t * v / (1 + rate) ** (t + 1) for v, t in zip(values, years))

    return _newton("XIRR", npv, slope, guess, options)


def _builtin_rate(args: list[Any], options: EngineOptions = DEFAULT_OPTIONS) -> float:
    """RATE(nper, pmt, pv, [fv], [type], [guess])."""
    _require_args("RATE", args, 3, 6)
    nper, pmt, pv = (to_number(a, "RATE") for a in args[:3])
    fv = _optional_number(args, 3, "RATE", 0.0)
    pmt_type = _optional_number(args, 4, "RATE", 0.0)
    guess = _optional_number(args, 5, "RATE", options.irr_guess)

    def balance(rate: float) -> float:
        if rate == 0:
            return pv + pmt * nper + fv
        growth = (1 + rate) ** nper
        return pv * growth + pmt * (1 + rate * pmt_type) * (growth - 1) / rate + fv

    def slope(rate: float) -> float:
        h = 1e-7 * max(1.0, abs(rate))
        return (balance(rate + h) - balance(rate - h)) / (2 * h)

    return _newton("RATE", balance, slope, guess, options)


def _builtin_mirr(args: list[Any]) -> float:
    """MIRR(values, finance_rate, reinvest_rate)."""
    _require_args("MIRR", args, 3)
    values = _numbers(args[:1], "MIRR")
    finance_rate = to_number(args[1], "MIRR")
    reinvest_rate = to_number(args[2], "MIRR")
    n = len(values)
    if n < 2:
        raise DomainError("MIRR requires at least 2 cash flows")

    pv_negative = sum(v / (1 + finance_rate) ** i for i, v in enumerate(values) if v < 0)
    fv_positive = sum(
        v * (1 + reinvest_rate) ** (n - 1 - i) for i, v in enumerate(values) if v > 0
    )
    if pv_negative == 0 or fv_positive == 0:
        raise DomainError("MIRR requires both positive and negative cash flows")
    return (-fv_positive / pv_negative) ** (1.0 / (n - 1)) - 1.0


def _builtin_sln(args: list[Any]) -> float:
    """SLN(cost, salvage, life). Straight-line depreciation for one period."""
    _require_args("SLN", args, 3)
    cost, salvage, life = (to_number(a, "SLN") for a in args)
    if life == 0:
        raise DomainError("SLN: life cannot be zero")
    return (cost - salvage) / life


def _builtin_db(args: list[Any]) -> float:
    """DB(cost, salvage, life, period, [month]).

    Fixed-declining balance depreciation. *month* is the number of months
    in the first year (default 12).
    """
    _require_args("DB", args, 4, 5)
    cost = to_number(args[0], "DB")
    salvage = to_number(args[1], "DB")
    life = _to_int(args[2], "DB")
    period = _to_int(args[3], "DB")
    month = _to_int(args[4], "DB") if len(args) > 4 else 12

    if life <= 0 or period <= 0 or period > life + 1:
        raise DomainError(f"DB: invalid life {life} / period {period}")
    if cost <= 0:
        return 0.0

    # Rate is rounded to 3 decimal places
    rate = round(1 - (salvage / cost) ** (1 / life), 3)
    book_value = cost
    dep = 0.0
    for yr in range(1, period + 1):
        if yr == 1:
            dep = cost * rate * month / 12
        elif yr == life + 1:
            # Final partial year
            dep = book_value * rate * (12 - month) / 12
        else:
            dep = book_value * rate
        book_value -= dep
    return dep


def _builtin_ddb(args: list[Any]) -> float:
    """DDB(cost, salvage, life, period, [factor]). Never depreciates below salvage."""
    _require_args("DDB", args, 4, 5)
    cost = to_number(args[0], "DDB")
    salvage = to_number(args[1], "DDB")
    life = to_number(args[2], "DDB")
    period = _to_int(args[3], "DDB")
    factor = _optional_number(args, 4, "DDB", 2.0)
    if life <= 0 or period <= 0 or period > life:
        raise DomainError(f"DDB: invalid life {format_number(life)} / period {period}")

    rate = factor / life
    remaining = cost
    dep = 0.0
    for _ in range(period):
        dep = min(remaining * rate, max(remaining - salvage, 0.0))
        remaining -= dep
    return dep


def _builtin_variance(args: list[Any]) -> float:
    """VARIANCE(actual, budget) = actual - budget."""
    _require_args("VARIANCE", args, 2)
    return to_number(args[0], "VARIANCE") - to_number(args[1], "VARIANCE")


def _builtin_variance_pct(args: list[Any]) -> float:
    """VARIANCE_PCT(actual, budget) = (actual - budget) / budget."""
    _require_args("VARIANCE_PCT", args, 2)
    actual = to_number(args[0], "VARIANCE_PCT")
    budget = to_number(args[1], "VARIANCE_PCT")
    if budget == 0:
        raise DomainError("VARIANCE_PCT: budget cannot be zero")
    return (actual - budget) / budget


def _builtin_variance_status(args: list[Any]) -> float:
    """VARIANCE_STATUS(actual, budget, [threshold_or_type]).

    Returns 1 (favorable), -1 (unfavorable) or 0 (within threshold). The
    third argument is either a threshold fraction (default 0.01) or the
    text ``"cost"``, for which being under budget is favorable.
    """
    _require_args("VARIANCE_STATUS", args, 2, 3)
    actual = to_number(args[0], "VARIANCE_STATUS")
    budget = to_number(args[1], "VARIANCE_STATUS")
    threshold, is_cost = 0.01, False
    if len(args) > 2:
        if isinstance(args[2], str):
            is_cost = args[2].lower() == "cost"
        else:
            threshold = to_number(args[2], "VARIANCE_STATUS")

    if budget == 0:
        diff = actual
    else:
        diff = (actual - budget) / abs(budget)
        if abs(diff) <= threshold:
            return 0.0
    if diff == 0:
        return 0.0
    favorable = diff < 0 if is_cost else diff > 0
    return 1.0 if favorable else -1.0


def _builtin_breakeven_units(args: list[Any]) -> float:
    """BREAKEVEN_UNITS(fixed_costs, unit_price, variable_cost_per_unit)."""
    _require_args("BREAKEVEN_UNITS", args, 3)
    fixed, price, variable = (to_number(a, "BREAKEVEN_UNITS") for a in args)
    margin = price - variable
    if margin <= 0:
        raise DomainError("BREAKEVEN_UNITS: unit price must exceed variable cost")
    return fixed / margin


def _builtin_breakeven_revenue(args: list[Any]) -> float:
    """BREAKEVEN_REVENUE(fixed_costs, contribution_margin_ratio)."""
    _require_args("BREAKEVEN_REVENUE", args, 2)
    fixed = to_number(args[0], "BREAKEVEN_REVENUE")
    ratio = to_number(args[1], "BREAKEVEN_REVENUE")
    if ratio <= 0 or ratio > 1:
        raise DomainError("BREAKEVEN_REVENUE: margin ratio must be in (0, 1]")
    return fixed / ratio


# ---------------------------------------------------------------------------
# Calling conventions (function attributes read by the evaluator)
#
#   _array_args   True, a tuple of positions, or a predicate on the position:
#                 those arguments are evaluated as whole columns even
#                 inside a row formula.
#   _lazy         receives zero-argument thunks instead of values.
#   _uses_options receives the evaluator's EngineOptions as ``options=``.
# ---------------------------------------------------------------------------

for _f in (
    _builtin_sum, _builtin_average, _builtin_min, _builtin_max, _builtin_count,
    _builtin_counta, _builtin_product, _builtin_unique, _builtin_countunique,
    _builtin_median, _builtin_var_s, _builtin_var_p, _builtin_stdev_s,
    _builtin_stdev_p,
):
    _f._array_args = True  # type: ignore[attr-defined]

for _f, _positions in (
    (_builtin_sumif, (0, 2)),
    (_builtin_averageif, (0, 2)),
    (_builtin_countif, (0,)),
    (_builtin_index, (0,)),
    (_builtin_match, (1,)),
    (_builtin_xlookup, (1, 2)),
    (_builtin_percentile, (0,)),
    (_builtin_quartile, (0,)),
    (_builtin_correl, (0, 1)),
    (_builtin_irr, (0,)),
    (_builtin_mirr, (0,)),
    (_builtin_xirr, (0, 1)),
    (_builtin_xnpv, (1, 2)),
    (_builtin_networkdays, (2,)),
):
    _f._array_args = _positions  # type: ignore[attr-defined]


def _value_then_ranges(i: int) -> bool:
    return i == 0 or i % 2 == 1


for _f in (_builtin_sumifs, _builtin_averageifs, _builtin_minifs, _builtin_maxifs):
    _f._array_args = _value_then_ranges  # type: ignore[attr-defined]
_builtin_countifs._array_args = lambda i: i % 2 == 0  # type: ignore[attr-defined]
_builtin_npv._array_args = lambda i: i > 0  # type: ignore[attr-defined]

for _f in (_builtin_if, _builtin_iferror, _builtin_switch):
    _f._lazy = True  # type: ignore[attr-defined]

for _f in (_builtin_irr, _builtin_xirr, _builtin_rate):
    _f._uses_options = True  # type: ignore[attr-defined]


def is_array_position(func: Callable[..., Any], index: int) -> bool:
    """True when argument *index* of *func* takes a whole column."""
    positions = getattr(func, "_array_args", None)
    if positions is None:
        return False
    if positions is True:
        return True
    if callable(positions):
        return bool(positions(index))
    return index in positions


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

_BUILTINS: dict[str, Callable[..., Any]] = {
    "SUM": _builtin_sum,
    "AVERAGE": _builtin_average,
    "AVG": _builtin_average,
    "MIN": _builtin_min,
    "MAX": _builtin_max,
    "COUNT": _builtin_count,
    "COUNTA": _builtin_counta,
    "PRODUCT": _builtin_product,
    "UNIQUE": _builtin_unique,
    "COUNTUNIQUE": _builtin_countunique,
    # Conditional
    "SUMIF": _builtin_sumif,
    "SUMIFS": _builtin_sumifs,
    "COUNTIF": _builtin_countif,
    "COUNTIFS": _builtin_countifs,
    "AVERAGEIF": _builtin_averageif,
    "AVERAGEIFS": _builtin_averageifs,
    "MINIFS": _builtin_minifs,
    "MAXIFS": _builtin_maxifs,
    # Lookup
    "INDEX": _builtin_index,
    "MATCH": _builtin_match,
    "XLOOKUP": _builtin_xlookup,
    "CHOOSE": _builtin_choose,
    "SWITCH": _builtin_switch,
    # Math
    "ABS": _builtin_abs,
    "SQRT": _builtin_sqrt,
    "ROUND": _builtin_round,
    "ROUNDUP": _builtin_roundup,
    "ROUNDDOWN": _builtin_rounddown,
    "FLOOR": _builtin_floor,
    "CEILING": _builtin_ceiling,
    "MOD": _builtin_mod,
    "POWER": _builtin_power,
    "EXP": _builtin_exp,
    "LN": _builtin_ln,
    "LOG": _builtin_log,
    "LOG10": _builtin_log10,
    "INT": _builtin_int,
    "SIGN": _builtin_sign,
    "PI": _builtin_pi,
    # Text
    "CONCAT": _builtin_concat,
    "CONCATENATE": _builtin_concatenate,
    "UPPER": _builtin_upper,
    "LOWER": _builtin_lower,
    "TRIM": _builtin_trim,
    "LEN": _builtin_len,
    "LEFT": _builtin_left,
    "RIGHT": _builtin_right,
    "MID": _builtin_mid,
    "SUBSTITUTE": _builtin_substitute,
    "REPT": _builtin_rept,
    "EXACT": _builtin_exact,
    "FIND": _builtin_find,
    # Date
    "TODAY": _builtin_today,
    "DATE": _builtin_date,
    "YEAR": _builtin_year,
    "MONTH": _builtin_month,
    "DAY": _builtin_day,
    "EDATE": _builtin_edate,
    "EOMONTH": _builtin_eomonth,
    "DAYS": _builtin_days,
    "DATEDIF": _builtin_datedif,
    "NETWORKDAYS": _builtin_networkdays,
    "YEARFRAC": _builtin_yearfrac,
    # Logic
    "IF": _builtin_if,
    "IFERROR": _builtin_iferror,
    "AND": _builtin_and,
    "OR": _builtin_or,
    "NOT": _builtin_not,
    "XOR": _builtin_xor,
    # Statistical
    "MEDIAN": _builtin_median,
    "VAR": _builtin_var_s,
    "VAR.S": _builtin_var_s,
    "VAR.P": _builtin_var_p,
    "STDEV": _builtin_stdev_s,
    "STDEV.S": _builtin_stdev_s,
    "STDEV.P": _builtin_stdev_p,
    "PERCENTILE": _builtin_percentile,
    "QUARTILE": _builtin_quartile,
    "CORREL": _builtin_correl,
    # Financial
    "PMT": _builtin_pmt,
    "PV": _builtin_pv,
    "FV": _builtin_fv,
    "NPV": _builtin_npv,
    "XNPV": _builtin_xnpv,
    "IRR": _builtin_irr,
    "XIRR": _builtin_xirr,
    "RATE": _builtin_rate,
    "NPER": _builtin_nper,
    "MIRR": _builtin_mirr,
    "SLN": _builtin_sln,
    "DB": _builtin_db,
    "DDB": _builtin_ddb,
    "VARIANCE": _builtin_variance,
    "VARIANCE_PCT": _builtin_variance_pct,
    "VARIANCE_STATUS": _builtin_variance_status,
    "BREAKEVEN_UNITS": _builtin_breakeven_units,
    "BREAKEVEN_REVENUE": _builtin_breakeven_revenue,
}


class FunctionRegistry:
    """Registry of callable function implementations.

    Starts with builtins and can be extended with custom functions. A custom
    function takes the list of resolved argument values and may carry the
    same calling-convention attributes as the builtins.
    """

    def __init__(self) -> None:
        self._functions: dict[str, Callable[..., Any]] = dict(_BUILTINS)
        self._categories: dict[str, str] = dict(FUNCTION_CATEGORIES)

    def register(self, name: str, func: Callable[..., Any], category: str = "custom") -> None:
        self._functions[name.upper()] = func
        self._categories[name.upper()] = category

    def get(self, name: str) -> Callable[..., Any] | None:
        return self._functions.get(name.upper())

    def has(self, name: str) -> bool:
        return name.upper() in self._functions

    def category(self, name: str) -> str | None:
        return self._categories.get(name.upper())

    @property
    def supported_functions(self) -> frozenset[str]:
        return frozenset(self._functions.keys())
