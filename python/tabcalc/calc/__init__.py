"""tabcalc.calc - Dependency-ordered formula engine for tabcalc models."""

from tabcalc.calc._errors import (
    AmbiguousReference,
    CircularDependency,
    ConvergenceError,
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
from tabcalc.calc._evaluator import (
    FormulaKind,
    ModelEvaluator,
    audit,
    calculate,
    validate,
)
from tabcalc.calc._functions import (
    FUNCTION_CATEGORIES,
    ArrayValue,
    FunctionRegistry,
    is_supported,
)
from tabcalc.calc._graph import DependencyGraph
from tabcalc.calc._parser import FormulaParser, parse_formula, references
from tabcalc.calc._protocol import (
    AuditEntry,
    CalcEngine,
    CalcResult,
    DependencyChain,
    EngineOptions,
    Mismatch,
)
from tabcalc.calc._resolver import ColumnLocation, ReferenceResolver, ScalarLocation, Scope
from tabcalc.calc._scenarios import (
    ScenarioComparison,
    apply_overrides,
    apply_scenario,
    compare_scenarios,
)
from tabcalc.calc._solvers import (
    GoalSeekResult,
    SensitivityMatrix,
    SensitivityPoint,
    SensitivityTable,
    break_even,
    goal_seek,
    sensitivity,
    sensitivity_2d,
    sweep,
)
from tabcalc.calc._units import UnitCategory, UnitWarning, check_units
from tabcalc.calc._variance import VarianceLine, VarianceReport, variance_report

__all__ = [
    "AmbiguousReference",
    "ArrayValue",
    "AuditEntry",
    "CalcEngine",
    "CalcResult",
    "CircularDependency",
    "ColumnLocation",
    "ConvergenceError",
    "DependencyChain",
    "DependencyGraph",
    "DomainError",
    "EngineError",
    "EngineOptions",
    "FUNCTION_CATEGORIES",
    "FormulaKind",
    "FormulaParser",
    "FormulaSyntaxError",
    "FunctionRegistry",
    "GoalSeekResult",
    "IndexOutOfRange",
    "Mismatch",
    "ModelEvaluator",
    "NotFound",
    "ReferenceResolver",
    "ScalarLocation",
    "ScenarioComparison",
    "Scope",
    "SensitivityMatrix",
    "SensitivityPoint",
    "SensitivityTable",
    "TypeMismatch",
    "UnitCategory",
    "UnitWarning",
    "UnknownFunction",
    "UnknownReference",
    "UpstreamError",
    "VarianceLine",
    "VarianceReport",
    "apply_overrides",
    "apply_scenario",
    "audit",
    "break_even",
    "calculate",
    "check_units",
    "compare_scenarios",
    "goal_seek",
    "is_supported",
    "parse_formula",
    "references",
    "sensitivity",
    "sensitivity_2d",
    "sweep",
    "validate",
    "variance_report",
]
