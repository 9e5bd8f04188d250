"""gradeflow.calc - Formula language, dependency graph and evaluation for gradebooks."""

from gradeflow.calc._evaluator import (
    DEFAULT_RENDER_EXPRESSION,
    EVALUATION_ERROR,
    PARSE_ERROR,
    BrokenExpression,
    CellRenderer,
    CompiledExpression,
    GradebookEvaluator,
    GradebookValueSource,
    Lambda,
    compile_expression,
    compile_score_expression,
    format_value,
    instrument,
)
from gradeflow.calc._functions import (
    DISALLOWED_FUNCTIONS,
    FUNCTION_CATALOG,
    REFERENCE_FUNCTIONS,
    CalcError,
    FunctionRegistry,
    is_supported,
    resolve_column_record,
)
from gradeflow.calc._graph import (
    CYCLE_ERROR,
    NEW_COLUMN_ID,
    CircularDependencyError,
    DependencyGraph,
    DependencyValidationError,
    extract_and_validate_dependencies,
)
from gradeflow.calc._parser import FormulaSyntaxError, is_glob, parse, tokenize
from gradeflow.calc._protocol import (
    DEFAULT_REVIEW_ROUND,
    POLICIES,
    CalcResult,
    ColumnInput,
    ColumnRecord,
    EvaluationContext,
    IncompletePolicy,
    ValueSource,
)

__all__ = [
    "BrokenExpression",
    "CYCLE_ERROR",
    "CalcError",
    "CalcResult",
    "CellRenderer",
    "CircularDependencyError",
    "ColumnInput",
    "ColumnRecord",
    "CompiledExpression",
    "DEFAULT_RENDER_EXPRESSION",
    "DEFAULT_REVIEW_ROUND",
    "DISALLOWED_FUNCTIONS",
    "DependencyGraph",
    "DependencyValidationError",
    "EVALUATION_ERROR",
    "EvaluationContext",
    "FUNCTION_CATALOG",
    "FormulaSyntaxError",
    "FunctionRegistry",
    "GradebookEvaluator",
    "GradebookValueSource",
    "IncompletePolicy",
    "Lambda",
    "NEW_COLUMN_ID",
    "PARSE_ERROR",
    "POLICIES",
    "REFERENCE_FUNCTIONS",
    "ValueSource",
    "compile_expression",
    "compile_score_expression",
    "extract_and_validate_dependencies",
    "format_value",
    "instrument",
    "is_glob",
    "is_supported",
    "parse",
    "resolve_column_record",
    "tokenize",
]
