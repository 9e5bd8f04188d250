"""Function catalog and builtin implementations for gradebook formulas."""

from __future__ import annotations

import logging
import math
from typing import Any, Callable

from gradeflow._types import EXCUSED, Scored
from gradeflow.calc._protocol import (
    DEFAULT_REVIEW_ROUND,
    ColumnInput,
    ColumnRecord,
    EvaluationContext,
    IncompletePolicy,
)

logger = logging.getLogger(__name__)


class CalcError(Exception):
    """Raised when a formula cannot be evaluated."""


# ---------------------------------------------------------------------------
# Catalog: every name a formula may call, organized by category.
# ---------------------------------------------------------------------------

FUNCTION_CATALOG: dict[str, str] = {
    # Arithmetic (operators dispatch here)
    "add": "arithmetic",
    "subtract": "arithmetic",
    "multiply": "arithmetic",
    "divide": "arithmetic",
    "pow": "arithmetic",
    "unaryMinus": "arithmetic",
    "unaryPlus": "arithmetic",
    # Comparison (return 1/0)
    "equal": "comparison",
    "unequal": "comparison",
    "larger": "comparison",
    "smaller": "comparison",
    "largerEq": "comparison",
    "smallerEq": "comparison",
    # Math
    "min": "math",
    "max": "math",
    "round": "math",
    "abs": "math",
    "floor": "math",
    "ceil": "math",
    # Logic
    "case_when": "logic",
    # Display
    "letter": "display",
    "check": "display",
    "checkOrX": "display",
    "customLabel": "display",
    # Context-consuming
    "gradebook_columns": "context",
    "assignments": "context",
    "mean": "context",
    "sum": "context",
    "countif": "context",
    "drop_lowest": "context",
}

# Call sites of these carry slug literals that become column dependencies.
REFERENCE_FUNCTIONS = frozenset({"gradebook_columns", "assignments"})

# Host-introspection helpers of general-purpose math libraries. Never callable.
DISALLOWED_FUNCTIONS = frozenset({"import", "createUnit", "reviver", "resolve", "evaluate", "parse"})

OPERATOR_FUNCTIONS: dict[str, str] = {
    "+": "add",
    "-": "subtract",
    "*": "multiply",
    "/": "divide",
    "^": "pow",
    "==": "equal",
    "!=": "unequal",
    ">": "larger",
    "<": "smaller",
    ">=": "largerEq",
    "<=": "smallerEq",
}

UNARY_FUNCTIONS: dict[str, str] = {"-": "unaryMinus", "+": "unaryPlus"}

MISSING_LABEL = "(Missing)"

LETTER_BREAKPOINTS: tuple[tuple[float, str], ...] = (
    (93, "A"),
    (90, "A-"),
    (87, "B+"),
    (83, "B"),
    (80, "B-"),
    (77, "C+"),
    (73, "C"),
    (70, "C-"),
    (67, "D+"),
    (63, "D"),
    (60, "D-"),
    (0, "F"),
)

CHECK_BREAKPOINTS: tuple[tuple[float, str], ...] = (
    (90, "✔️+"),
    (80, "✔️"),
    (70, "✔️-"),
    (0, "❌"),
)


def is_supported(func_name: str) -> bool:
    """Check if a function name is in the formula catalog."""
    return func_name in FUNCTION_CATALOG


# ---------------------------------------------------------------------------
# Value coercion
# ---------------------------------------------------------------------------


def _operand(value: Any, func_name: str) -> float | None:
    """Numeric view of an arithmetic operand.

    ``None`` stays ``None``; a column record contributes its score, or 0 when
    it has none.
    """
    if value is None:
        return None
    if isinstance(value, ColumnRecord):
        return value.score if value.score is not None else 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        if isinstance(value, float) and math.isnan(value):
            return None
        return value
    raise CalcError(f"{func_name}: expected a number or column, got {_describe(value)}")


def _describe(value: Any) -> str:
    if isinstance(value, list):
        return "a list"
    if isinstance(value, str):
        return f"text {value!r}"
    return type(value).__name__


def _flatten(values: Any) -> list[Any]:
    """Flatten nested lists (matrix rows, variadic arguments) into one list."""
    if not isinstance(values, (list, tuple)):
        return [values]
    result: list[Any] = []
    for v in values:
        if isinstance(v, (list, tuple)):
            result.extend(_flatten(v))
        else:
            result.append(v)
    return result


def _display_score(value: Any) -> float | None:
    if isinstance(value, ColumnRecord):
        return value.score
    return _operand(value, "display")


def truthy(value: Any) -> bool:
    """Formula truthiness: no value and zero are false, records test their score."""
    if value is None:
        return False
    if isinstance(value, ColumnRecord):
        return bool(value.score)
    if isinstance(value, float) and math.isnan(value):
        return False
    if isinstance(value, list):
        return len(value) > 0
    return bool(value)


def numeric_result(value: Any) -> float | None:
    """Coerce an evaluation result to a score: non-numeric and NaN become None."""
    if isinstance(value, ColumnRecord):
        value = value.score
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        try:
            value = float(value)
        except OverflowError:
            return None
        if math.isnan(value) or math.isinf(value):
            return None
        return value
    return None


def _need(args: list[Any], low: int, high: int | None, name: str) -> None:
    if len(args) < low or (high is not None and len(args) > high):
        if high == low:
            raise CalcError(f"{name} requires exactly {low} argument{'s' if low != 1 else ''}")
        if high is None:
            raise CalcError(f"{name} requires at least {low} arguments")
        raise CalcError(f"{name} requires {low} to {high} arguments")


# ---------------------------------------------------------------------------
# Arithmetic
# ---------------------------------------------------------------------------


def _builtin_add(args: list[Any]) -> float | None:
    _need(args, 2, None, "add")
    nums = [_operand(a, "add") for a in args]
    if any(n is None for n in nums):
        return None
    return sum(nums)  # type: ignore[arg-type]


def _builtin_subtract(args: list[Any]) -> float | None:
    _need(args, 2, 2, "subtract")
    a, b = _operand(args[0], "subtract"), _operand(args[1], "subtract")
    if a is None or b is None:
        return None
    return a - b


def _builtin_multiply(args: list[Any]) -> float | None:
    _need(args, 2, None, "multiply")
    nums = [_operand(a, "multiply") for a in args]
    if any(n is None for n in nums):
        return None
    return math.prod(nums)  # type: ignore[arg-type]


def _builtin_divide(args: list[Any]) -> float | None:
    _need(args, 2, 2, "divide")
    a, b = _operand(args[0], "divide"), _operand(args[1], "divide")
    if a is None or b is None or b == 0:
        return None
    return a / b


def _builtin_pow(args: list[Any]) -> float | None:
    _need(args, 2, 2, "pow")
    a, b = _operand(args[0], "pow"), _operand(args[1], "pow")
    if a is None or b is None:
        return None
    try:
        result = a**b
    except (OverflowError, ZeroDivisionError):
        return None
    if isinstance(result, complex):
        return None
    return result


def _builtin_unary_minus(args: list[Any]) -> float | None:
    _need(args, 1, 1, "unaryMinus")
    value = _operand(args[0], "unaryMinus")
    return None if value is None else -value


def _builtin_unary_plus(args: list[Any]) -> float | None:
    _need(args, 1, 1, "unaryPlus")
    return _operand(args[0], "unaryPlus")


# ---------------------------------------------------------------------------
# Comparison
# ---------------------------------------------------------------------------


def _compare_operands(args: list[Any], name: str) -> tuple[Any, Any]:
    _need(args, 2, 2, name)
    left, right = args
    if isinstance(left, str) and isinstance(right, str):
        return left, right
    return _operand(left, name), _operand(right, name)


def _builtin_equal(args: list[Any]) -> int:
    left, right = _compare_operands(args, "equal")
    if left is None or right is None:
        return int(left is None and right is None)
    return int(left == right)


def _builtin_unequal(args: list[Any]) -> int:
    return 1 - _builtin_equal(args)


def _ordering(name: str, op: Callable[[Any, Any], bool]) -> Callable[[list[Any]], int]:
    def _builtin(args: list[Any]) -> int:
        left, right = _compare_operands(args, name)
        if left is None or right is None:
            return 0
        return int(op(left, right))

    _builtin.__name__ = f"_builtin_{name}"
    return _builtin


_builtin_larger = _ordering("larger", lambda a, b: a > b)
_builtin_smaller = _ordering("smaller", lambda a, b: a < b)
_builtin_larger_eq = _ordering("largerEq", lambda a, b: a >= b)
_builtin_smaller_eq = _ordering("smallerEq", lambda a, b: a <= b)


# ---------------------------------------------------------------------------
# Math
# ---------------------------------------------------------------------------


def _present_scores(args: list[Any]) -> list[float]:
    """Scores of every flattened argument, skipping values that have none."""
    result: list[float] = []
    for v in _flatten(args):
        if isinstance(v, ColumnRecord):
            if v.score is not None:
                result.append(v.score)
            continue
        num = _operand(v, "min/max")
        if num is not None:
            result.append(num)
    return result


def _builtin_min(args: list[Any]) -> float | None:
    nums = _present_scores(args)
    return min(nums) if nums else None


def _builtin_max(args: list[Any]) -> float | None:
    nums = _present_scores(args)
    return max(nums) if nums else None


def _builtin_round(args: list[Any]) -> float | None:
    _need(args, 1, 2, "round")
    value = _operand(args[0], "round")
    if value is None:
        return None
    digits = int(_operand(args[1], "round") or 0) if len(args) > 1 else 0
    factor = 10**digits
    # Half away from zero, like spreadsheet ROUND.
    rounded = math.floor(abs(value) * factor + 0.5) / factor
    return math.copysign(rounded, value) if rounded else 0.0


def _builtin_abs(args: list[Any]) -> float | None:
    _need(args, 1, 1, "abs")
    value = _operand(args[0], "abs")
    return None if value is None else abs(value)


def _builtin_floor(args: list[Any]) -> float | None:
    _need(args, 1, 1, "floor")
    value = _operand(args[0], "floor")
    return None if value is None else float(math.floor(value))


def _builtin_ceil(args: list[Any]) -> float | None:
    _need(args, 1, 1, "ceil")
    value = _operand(args[0], "ceil")
    return None if value is None else float(math.ceil(value))


# ---------------------------------------------------------------------------
# Logic
# ---------------------------------------------------------------------------


def _rows(value: Any, name: str) -> list[list[Any]]:
    """Normalize a matrix argument to a list of rows."""
    if not isinstance(value, list):
        raise CalcError(f"{name} expects a matrix argument")
    if value and not isinstance(value[0], list):
        return [value]
    return value


def _builtin_case_when(args: list[Any]) -> Any:
    """First ``[condition, value]`` row whose condition is truthy."""
    _need(args, 1, 1, "case_when")
    for row in _rows(args[0], "case_when"):
        if len(row) != 2:
            raise CalcError("case_when rows must have exactly two entries")
        condition, result = row
        if truthy(condition):
            return result
    return None


# ---------------------------------------------------------------------------
# Display helpers (score -> label)
# ---------------------------------------------------------------------------


def _label(score: float, table: tuple[tuple[float, str], ...]) -> str:
    for threshold, label in table:
        if score >= threshold:
            return label
    return table[-1][1]


def _builtin_letter(args: list[Any]) -> str:
    _need(args, 1, 1, "letter")
    score = _display_score(args[0])
    if score is None:
        return MISSING_LABEL
    return _label(score, LETTER_BREAKPOINTS)


def _builtin_check(args: list[Any]) -> str:
    _need(args, 1, 1, "check")
    score = _display_score(args[0])
    if score is None:
        return MISSING_LABEL
    return _label(score, CHECK_BREAKPOINTS)


def _builtin_check_or_x(args: list[Any]) -> str:
    _need(args, 1, 1, "checkOrX")
    score = _display_score(args[0])
    if score is None:
        return MISSING_LABEL
    return "✔️" if score > 0 else "❌"


def _builtin_custom_label(args: list[Any]) -> Any:
    """``customLabel(score, [threshold, label; ...])``: first threshold reached wins.

    When no threshold is reached the last row's label is used.
    """
    _need(args, 2, 2, "customLabel")
    score = _display_score(args[0])
    if score is None:
        return MISSING_LABEL
    rows = _rows(args[1], "customLabel")
    if not rows:
        raise CalcError("customLabel requires at least one [threshold, label] row")
    table: list[tuple[float, Any]] = []
    for row in rows:
        if len(row) != 2:
            raise CalcError("customLabel rows must be [threshold, label]")
        threshold = _operand(row[0], "customLabel")
        if threshold is None:
            raise CalcError("customLabel thresholds must be numbers")
        table.append((threshold, row[1]))
    return _label(score, tuple(table))


# ---------------------------------------------------------------------------
# Column resolution
# ---------------------------------------------------------------------------


def resolve_column_record(inp: ColumnInput, context: EvaluationContext) -> ColumnRecord:
    """Resolve one referenced column under the context's policy.

    Precedence: score override, then what-if value, then policy
    substitution for unreleased columns, then the raw score, else missing.
    The context's incomplete-values accumulator is updated as a side effect.
    """
    column, record = inp.column, inp.record
    is_excused = record.is_excused if record is not None else False
    is_droppable = record.is_droppable if record is not None else True
    is_private = record.is_private if record is not None else context.is_private
    known = record.incomplete_values if record is not None else None

    if record is not None and record.score_override is not None:
        score, released, is_missing = record.score_override, True, False
    elif inp.what_if is not None:
        score, released, is_missing = inp.what_if, True, False
        known = inp.what_if_advice
    elif not inp.released and context.policy is not IncompletePolicy.REPORT_ONLY:
        if context.policy is IncompletePolicy.ASSUME_MAX:
            score = column.max_score if column.max_score is not None else 0
        else:
            score = 0
        released, is_missing = True, False
    elif record is not None and record.score is not None:
        score, released, is_missing = record.score, inp.released, record.is_missing
    else:
        score, released, is_missing = None, inp.released, True

    advice = context.incomplete_values
    if not released and not context.is_private:
        advice.add_not_released(column.slug)
    if is_missing:
        advice.add_missing(column.slug)
    advice.merge(known)

    return ColumnRecord(
        column_slug=column.slug,
        score=score,
        max_score=column.max_score,
        is_missing=is_missing,
        is_excused=is_excused,
        is_droppable=is_droppable,
        released=released,
        is_private=is_private,
        incomplete_values=known,
    )


# ---------------------------------------------------------------------------
# Context-consuming functions (args[0] is the EvaluationContext)
# ---------------------------------------------------------------------------


def _context(args: list[Any], name: str) -> EvaluationContext:
    if not args or not isinstance(args[0], EvaluationContext):
        raise CalcError(f"{name} called without an evaluation context")
    return args[0]


def _source(context: EvaluationContext, name: str):
    if context.source is None:
        raise CalcError(f"{name} is not available without a gradebook")
    return context.source


def _builtin_gradebook_columns(args: list[Any]) -> ColumnRecord | list[ColumnRecord]:
    context = _context(args, "gradebook_columns")
    _need(args, 2, 2, "gradebook_columns")
    source = _source(context, "gradebook_columns")
    target = args[1]

    def lookup(slug: Any) -> ColumnRecord:
        if not isinstance(slug, str):
            raise CalcError(f"gradebook_columns expects slugs, got {_describe(slug)}")
        inp = source.column_input(slug, context)
        if inp is None:
            raise CalcError(f"Unknown gradebook column: {slug}")
        return resolve_column_record(inp, context)

    if isinstance(target, list):
        return [lookup(slug) for slug in _flatten(target)]
    return lookup(target)


_builtin_gradebook_columns._context_arg = True  # type: ignore[attr-defined]


def _builtin_assignments(args: list[Any]) -> float | None | list[float | None]:
    context = _context(args, "assignments")
    _need(args, 2, 3, "assignments")
    source = _source(context, "assignments")
    review_round = args[2] if len(args) > 2 else DEFAULT_REVIEW_ROUND
    if not isinstance(review_round, str):
        raise CalcError("assignments review round must be text")
    target = args[1]
    if isinstance(target, list):
        return [source.assignment_score(slug, context, review_round) for slug in _flatten(target)]
    return source.assignment_score(target, context, review_round)


_builtin_assignments._context_arg = True  # type: ignore[attr-defined]


def _builtin_mean(args: list[Any]) -> float | None:
    """Average of column records; ``weighted`` (default true) divides by total points."""
    _context(args, "mean")
    rest = list(args[1:])
    weighted = True
    if rest and isinstance(rest[-1], bool):
        weighted = rest.pop()
    values: list[tuple[float, float]] = []
    for v in _flatten(rest):
        if not isinstance(v, ColumnRecord):
            raise CalcError(
                f"mean can only be applied to gradebook columns because it needs a max score, got {_describe(v)}"
            )
        if not v.released and not v.is_private:
            continue
        state = v.state
        if state is EXCUSED:
            continue
        score = state.value if isinstance(state, Scored) else 0.0
        if v.max_score is None:
            continue
        values.append((score, v.max_score))
    if not values:
        return None
    if weighted:
        total_points = sum(m for _, m in values)
        if total_points == 0:
            return None
        return 100 * sum(s for s, _ in values) / total_points
    ratios = [s / m for s, m in values if m]
    if not ratios:
        return None
    return 100 * sum(ratios) / len(ratios)


_builtin_mean._context_arg = True  # type: ignore[attr-defined]


def _builtin_sum(args: list[Any]) -> float | None:
    _context(args, "sum")
    values = _flatten(list(args[1:]))
    if not values:
        return None
    total = 0.0
    for v in values:
        num = _operand(v, "sum")
        if num is not None:
            total += num
    return total


_builtin_sum._context_arg = True  # type: ignore[attr-defined]


def _builtin_countif(args: list[Any]) -> int | None:
    _context(args, "countif")
    _need(args, 3, 3, "countif")
    records, predicate = args[1], args[2]
    if not callable(predicate):
        raise CalcError("countif expects a function as its second argument, e.g. f(x) = x.score > 0")
    items = _flatten(records)
    if not items:
        return None
    return sum(1 for item in items if truthy(predicate(item)))


_builtin_countif._context_arg = True  # type: ignore[attr-defined]


def _builtin_drop_lowest(args: list[Any]) -> list[Any]:
    """Drop the ``n`` lowest-scoring droppable records (no score sorts as 0)."""
    _context(args, "drop_lowest")
    _need(args, 3, 3, "drop_lowest")
    records = args[1]
    if not isinstance(records, list):
        raise CalcError("drop_lowest called with a single value instead of a list")
    count = _operand(args[2], "drop_lowest")
    count = int(count) if count is not None else 0

    def sort_key(v: Any) -> float:
        if isinstance(v, ColumnRecord):
            return v.score if v.score is not None else 0
        return _operand(v, "drop_lowest") or 0

    kept: list[Any] = []
    dropped = 0
    for v in sorted(_flatten(records), key=sort_key):
        droppable = v.is_droppable if isinstance(v, ColumnRecord) else True
        if dropped < count and droppable:
            dropped += 1
            continue
        kept.append(v)
    return kept


_builtin_drop_lowest._context_arg = True  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

_BUILTINS: dict[str, Callable[..., Any]] = {
    "add": _builtin_add,
    "subtract": _builtin_subtract,
    "multiply": _builtin_multiply,
    "divide": _builtin_divide,
    "pow": _builtin_pow,
    "unaryMinus": _builtin_unary_minus,
    "unaryPlus": _builtin_unary_plus,
    "equal": _builtin_equal,
    "unequal": _builtin_unequal,
    "larger": _builtin_larger,
    "smaller": _builtin_smaller,
    "largerEq": _builtin_larger_eq,
    "smallerEq": _builtin_smaller_eq,
    "min": _builtin_min,
    "max": _builtin_max,
    "round": _builtin_round,
    "abs": _builtin_abs,
    "floor": _builtin_floor,
    "ceil": _builtin_ceil,
    "case_when": _builtin_case_when,
    "letter": _builtin_letter,
    "check": _builtin_check,
    "checkOrX": _builtin_check_or_x,
    "customLabel": _builtin_custom_label,
    # Context-consuming (flagged with _context_arg)
    "gradebook_columns": _builtin_gradebook_columns,
    "assignments": _builtin_assignments,
    "mean": _builtin_mean,
    "sum": _builtin_sum,
    "countif": _builtin_countif,
    "drop_lowest": _builtin_drop_lowest,
}


class FunctionRegistry:
    """Registry of callable function implementations.

    Starts with the builtins and can be extended with custom functions.
    Names are case-sensitive. Disallowed names can never be registered.
    """

    def __init__(self) -> None:
        self._functions: dict[str, Callable[..., Any]] = dict(_BUILTINS)

    def register(self, name: str, func: Callable[..., Any], *, context_arg: bool = False) -> None:
        if name in DISALLOWED_FUNCTIONS:
            raise ValueError(f"{name} is not allowed")
        if context_arg:
            func._context_arg = True  # type: ignore[attr-defined]
        self._functions[name] = func

    def get(self, name: str) -> Callable[..., Any] | None:
        return self._functions.get(name)

    def has(self, name: str) -> bool:
        return name in self._functions

    def takes_context(self, name: str) -> bool:
        func = self._functions.get(name)
        return bool(getattr(func, "_context_arg", False))

    @property
    def context_functions(self) -> frozenset[str]:
        return frozenset(n for n, f in self._functions.items() if getattr(f, "_context_arg", False))

    @property
    def supported_functions(self) -> frozenset[str]:
        return frozenset(self._functions.keys())
