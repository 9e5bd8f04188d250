"""Formula interpreter, compiled expressions, cell renderer and row calculator.

Formulas are parsed once into a tree, rewritten so that context-consuming
calls receive the evaluation context as their first argument, and then
interpreted against the fixed :class:`FunctionRegistry`.  Nothing outside
the registry is reachable from formula text.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

from gradeflow._types import CellState, StudentColumnRecord
from gradeflow.calc._functions import (
    DISALLOWED_FUNCTIONS,
    OPERATOR_FUNCTIONS,
    REFERENCE_FUNCTIONS,
    UNARY_FUNCTIONS,
    CalcError,
    FunctionRegistry,
    numeric_result,
    truthy,
)
from gradeflow.calc._parser import (
    Assign,
    Attribute,
    Binary,
    Boolean,
    Call,
    Conditional,
    ContextRef,
    FormulaSyntaxError,
    FunctionDef,
    Logical,
    Matrix,
    Node,
    Number,
    Program,
    String,
    Symbol,
    Unary,
    is_glob,
    parse,
    transform,
)
from gradeflow.calc._protocol import (
    RECORD_ATTRIBUTES,
    CalcResult,
    ColumnInput,
    ColumnRecord,
    EvaluationContext,
    IncompletePolicy,
)

if TYPE_CHECKING:
    from gradeflow._gradebook import Gradebook

logger = logging.getLogger(__name__)

DEFAULT_RENDER_EXPRESSION = "round(score, 2)"
PARSE_ERROR = "Expression parse error"
EVALUATION_ERROR = "Expression evaluation error"
MISSING_CELL = "Missing"
EMPTY_CELL = "-"

# (function name, glob pattern) -> matching slugs
GlobExpander = Callable[[str, str], list[str]]
# (column id, student id, is_private) -> record, with privacy fallback
RecordLookup = Callable[[int, str, bool], "StudentColumnRecord | None"]
# column id -> (what-if value, its incomplete-values advice)
SpeculativeLookup = Callable[[int], "tuple[float | None, Any]"]


# ---------------------------------------------------------------------------
# Rewrite pass
# ---------------------------------------------------------------------------


def instrument(tree: Node, registry: FunctionRegistry, expand: GlobExpander | None = None) -> Node:
    """Prepend a context argument to context-consuming calls.

    With *expand*, a glob literal passed to ``gradebook_columns`` or
    ``assignments`` is replaced by a matrix of the slugs it matches.
    """

    def rewrite(node: Node) -> Node:
        if not isinstance(node, Call) or not registry.takes_context(node.name):
            return node
        args = node.args
        if args and isinstance(args[0], ContextRef):
            return node
        if (
            expand is not None
            and node.name in REFERENCE_FUNCTIONS
            and args
            and isinstance(args[0], String)
            and is_glob(args[0].value)
        ):
            slugs = expand(node.name, args[0].value)
            expanded = Matrix((tuple(String(s) for s in slugs),) if slugs else ())
            args = (expanded,) + args[1:]
        return Call(node.name, (ContextRef(),) + args)

    return transform(tree, rewrite)


# ---------------------------------------------------------------------------
# Interpreter
# ---------------------------------------------------------------------------


class Lambda:
    """A formula-defined function, e.g. ``f(x) = x.score > 0``. Callable from Python."""

    __slots__ = ("name", "params", "body", "closure", "_interpreter")

    def __init__(
        self,
        name: str,
        params: tuple[str, ...],
        body: Node,
        closure: dict[str, Any],
        interpreter: _Interpreter,
    ) -> None:
        self.name = name
        self.params = params
        self.body = body
        self.closure = closure
        self._interpreter = interpreter

    def __call__(self, *values: Any) -> Any:
        if len(values) != len(self.params):
            raise CalcError(f"{self.name} expects {len(self.params)} argument(s), got {len(values)}")
        scope = dict(self.closure)
        scope.update(zip(self.params, values))
        return self._interpreter.eval(self.body, scope)

    def __repr__(self) -> str:
        return f"{self.name}({', '.join(self.params)})"


class _Interpreter:
    __slots__ = ("_registry", "_context")

    def __init__(self, registry: FunctionRegistry, context: EvaluationContext | None) -> None:
        self._registry = registry
        self._context = context

    def run(self, program: Node, scope: dict[str, Any]) -> Any:
        if not isinstance(program, Program):
            return self.eval(program, scope)
        value: Any = None
        for statement in program.statements:
            value = self.eval(statement, scope)
        return value

    def eval(self, node: Node, scope: dict[str, Any]) -> Any:
        if isinstance(node, (Number, String, Boolean)):
            return node.value
        if isinstance(node, Symbol):
            if node.name in scope:
                return scope[node.name]
            raise CalcError(f"Undefined symbol {node.name}")
        if isinstance(node, ContextRef):
            if self._context is None:
                raise CalcError("This function needs a gradebook context")
            return self._context
        if isinstance(node, Call):
            return self._call(node, scope)
        if isinstance(node, Binary):
            left = self.eval(node.left, scope)
            right = self.eval(node.right, scope)
            return self._apply(OPERATOR_FUNCTIONS[node.op], [left, right])
        if isinstance(node, Unary):
            operand = self.eval(node.operand, scope)
            if node.op == "not":
                return not truthy(operand)
            return self._apply(UNARY_FUNCTIONS[node.op], [operand])
        if isinstance(node, Logical):
            left = truthy(self.eval(node.left, scope))
            if node.op == "and":
                return left and truthy(self.eval(node.right, scope))
            return left or truthy(self.eval(node.right, scope))
        if isinstance(node, Conditional):
            if truthy(self.eval(node.test, scope)):
                return self.eval(node.if_true, scope)
            return self.eval(node.if_false, scope)
        if isinstance(node, Attribute):
            return self._attribute(self.eval(node.target, scope), node.name)
        if isinstance(node, Matrix):
            rows = [[self.eval(item, scope) for item in row] for row in node.rows]
            if node.two_d:
                return rows
            return rows[0] if rows else []
        if isinstance(node, Assign):
            value = self.eval(node.value, scope)
            scope[node.name] = value
            return value
        if isinstance(node, FunctionDef):
            func = Lambda(node.name, node.params, node.body, scope, self)
            scope[node.name] = func
            return func
        if isinstance(node, Program):
            return self.run(node, scope)
        raise CalcError(f"Unsupported expression: {type(node).__name__}")

    def _call(self, node: Call, scope: dict[str, Any]) -> Any:
        if node.name in DISALLOWED_FUNCTIONS:
            raise CalcError(f"{node.name} is not allowed")
        local = scope.get(node.name)
        if isinstance(local, Lambda):
            return local(*[self.eval(a, scope) for a in node.args])
        if not self._registry.has(node.name):
            raise CalcError(f"Unknown function {node.name}")
        return self._apply(node.name, [self.eval(a, scope) for a in node.args])

    def _apply(self, name: str, args: list[Any]) -> Any:
        func = self._registry.get(name)
        if func is None:
            raise CalcError(f"Unknown function {name}")
        try:
            return func(args)
        except CalcError:
            raise
        except (TypeError, ValueError, ArithmeticError) as exc:
            raise CalcError(f"{name}: {exc}") from exc

    @staticmethod
    def _attribute(target: Any, name: str) -> Any:
        if isinstance(target, ColumnRecord) and name in RECORD_ATTRIBUTES:
            return getattr(target, name)
        raise CalcError(f"Cannot read attribute {name!r} of {type(target).__name__}")


# ---------------------------------------------------------------------------
# Compiled expressions
# ---------------------------------------------------------------------------


class CompiledExpression:
    """A parsed and instrumented formula, reusable across evaluations."""

    __slots__ = ("text", "tree", "_registry")

    error: str | None = None

    def __init__(self, text: str, tree: Node, registry: FunctionRegistry) -> None:
        self.text = text
        self.tree = tree
        self._registry = registry

    def evaluate(
        self,
        scope: Mapping[str, Any] | None = None,
        context: EvaluationContext | None = None,
    ) -> Any:
        """Run the formula. Raises :class:`CalcError` on evaluation failure."""
        local = dict(scope) if scope else {}
        try:
            return _Interpreter(self._registry, context).run(self.tree, local)
        except RecursionError as exc:
            raise CalcError("Formula recursion is too deep") from exc

    def score(self, context: EvaluationContext, scope: Mapping[str, Any] | None = None) -> float | None:
        """Evaluate as a score: non-numeric results become None."""
        return numeric_result(self.evaluate(scope, context))

    def __repr__(self) -> str:
        return f"CompiledExpression({self.text!r})"


class BrokenExpression:
    """Stand-in for a formula that failed to parse; always yields no value."""

    __slots__ = ("text", "error", "cause")

    def __init__(self, text: str, cause: Exception | None = None) -> None:
        self.text = text
        self.error = PARSE_ERROR
        self.cause = cause

    def evaluate(
        self,
        scope: Mapping[str, Any] | None = None,
        context: EvaluationContext | None = None,
    ) -> Any:
        return None

    def score(self, context: EvaluationContext, scope: Mapping[str, Any] | None = None) -> float | None:
        return None

    def __repr__(self) -> str:
        return f"BrokenExpression({self.text!r})"


def compile_expression(
    text: str,
    registry: FunctionRegistry | None = None,
    expand: GlobExpander | None = None,
) -> CompiledExpression:
    """Parse and instrument *text*. Raises :class:`FormulaSyntaxError`."""
    registry = registry or FunctionRegistry()
    tree = instrument(parse(text), registry, expand)
    return CompiledExpression(text, tree, registry)


def compile_score_expression(
    text: str,
    registry: FunctionRegistry | None = None,
    expand: GlobExpander | None = None,
) -> CompiledExpression | BrokenExpression:
    """Like :func:`compile_expression`, but a syntax error yields a BrokenExpression."""
    try:
        return compile_expression(text, registry, expand)
    except FormulaSyntaxError as exc:
        logger.debug("Score expression failed to parse: %r (%s)", text, exc)
        return BrokenExpression(text, exc)


def format_value(value: Any) -> str:
    """Display text for a render result."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if value.is_integer():
            return str(int(value))
        return str(value)
    if isinstance(value, ColumnRecord):
        return format_value(value.score)
    if isinstance(value, list):
        return "[" + ", ".join(format_value(v) for v in value) + "]"
    return str(value)


# ---------------------------------------------------------------------------
# Renderer
# ---------------------------------------------------------------------------


class CellRenderer:
    """Maps a cell's state to display text using a column's render expression.

    Outputs are memoized per :class:`CellState`; ``evaluations`` counts the
    renders that actually did work.
    """

    __slots__ = ("expression", "max_score", "evaluations", "_compiled", "_memo")

    def __init__(
        self,
        render_expression: str | None = None,
        max_score: float | None = None,
        registry: FunctionRegistry | None = None,
    ) -> None:
        self.expression = render_expression or DEFAULT_RENDER_EXPRESSION
        self.max_score = max_score
        self.evaluations = 0
        self._memo: dict[CellState, str] = {}
        try:
            self._compiled: CompiledExpression | BrokenExpression = compile_expression(
                self.expression, registry
            )
        except FormulaSyntaxError as exc:
            logger.debug("Render expression failed to parse: %r (%s)", self.expression, exc)
            self._compiled = BrokenExpression(self.expression, exc)

    def __call__(self, state: CellState | StudentColumnRecord) -> str:
        if isinstance(state, StudentColumnRecord):
            state = CellState.from_record(state)
        cached = self._memo.get(state)
        if cached is not None:
            return cached
        self.evaluations += 1
        output = self._render(state)
        self._memo[state] = output
        return output

    def _render(self, state: CellState) -> str:
        if state.is_missing:
            return MISSING_CELL
        score = state.score_override if state.score_override is not None else state.score
        if score is None:
            return EMPTY_CELL
        if self._compiled.error is not None:
            return self._compiled.error
        try:
            value = self._compiled.evaluate({"score": score, "max_score": self.max_score})
        except CalcError as exc:
            logger.debug("Render expression %r failed for score %s: %s", self.expression, score, exc)
            return EVALUATION_ERROR
        return format_value(value)

    def clear(self) -> None:
        self._memo.clear()


# ---------------------------------------------------------------------------
# Value source and row calculation
# ---------------------------------------------------------------------------


class GradebookValueSource:
    """Feeds gradebook columns, records and (optionally) what-if values to formulas."""

    __slots__ = ("_gradebook", "_lookup", "_speculative")

    def __init__(
        self,
        gradebook: Gradebook,
        lookup: RecordLookup,
        speculative: SpeculativeLookup | None = None,
    ) -> None:
        self._gradebook = gradebook
        self._lookup = lookup
        self._speculative = speculative

    def column_input(self, slug: str, context: EvaluationContext) -> ColumnInput | None:
        column = self._gradebook.column_by_slug(slug)
        if column is None:
            return None
        record = self._lookup(column.id, context.student_id, context.is_private)
        what_if, advice = (None, None)
        if self._speculative is not None:
            what_if, advice = self._speculative(column.id)
        return ColumnInput(
            column=column,
            record=record,
            released=self._gradebook.is_released(column.id),
            what_if=what_if,
            what_if_advice=advice,
        )

    def assignment_score(
        self, slug: str, context: EvaluationContext, review_round: str
    ) -> float | None:
        assignment = self._gradebook.assignment_by_slug(slug)
        if assignment is None:
            raise CalcError(f"Unknown assignment: {slug}")
        if self._speculative is not None:
            for column in self._gradebook.columns_reading_assignment(assignment.id):
                what_if, _ = self._speculative(column.id)
                if what_if is not None:
                    return what_if
        return self._gradebook.submission_score(context.student_id, assignment.id, review_round)


class GradebookEvaluator:
    """Recomputes every formula column of one student row.

    Columns are evaluated in dependency order under ``report_only`` and each
    fresh result feeds the columns after it. Score overrides are left alone.
    """

    __slots__ = ("_gradebook", "_lookup")

    def __init__(self, gradebook: Gradebook, lookup: RecordLookup) -> None:
        self._gradebook = gradebook
        self._lookup = lookup

    def calculate_row(self, student_id: str, is_private: bool = True) -> list[CalcResult]:
        gradebook = self._gradebook
        fresh: dict[int, StudentColumnRecord] = {}

        def lookup(column_id: int, sid: str, private: bool) -> StudentColumnRecord | None:
            if column_id in fresh:
                return fresh[column_id]
            return self._lookup(column_id, sid, private)

        source = GradebookValueSource(gradebook, lookup)
        results: list[CalcResult] = []
        for column_id in gradebook.graph.topological_order():
            compiled = gradebook.compiled_score_expression(column_id)
            context = EvaluationContext(
                student_id=student_id,
                policy=IncompletePolicy.REPORT_ONLY,
                is_private=is_private,
                source=source,
            )
            error = compiled.error
            score = None
            if error is None:
                try:
                    score = compiled.score(context)
                except CalcError as exc:
                    logger.debug("Column %s failed for student %s: %s", column_id, student_id, exc)
                    error = str(exc)
            base = self._lookup(column_id, student_id, is_private) or StudentColumnRecord(
                id=0, column_id=column_id, student_id=student_id, is_private=is_private
            )
            advice = context.incomplete_values.deduplicated() or None
            result = CalcResult(
                column_id=column_id,
                score=score,
                # An override counts as a value.
                is_missing=score is None and base.score_override is None,
                released=gradebook.is_released(column_id),
                incomplete_values=advice,
                error=error,
            )
            results.append(result)
            fresh[column_id] = base.with_changes(
                score=score,
                is_missing=result.is_missing,
                released=result.released,
                incomplete_values=advice,
            )
        return results
