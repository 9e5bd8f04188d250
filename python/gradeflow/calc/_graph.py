"""Column dependency graph and the definition-time dependency resolver."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable

from gradeflow._types import Assignment, Column, ColumnRefs
from gradeflow.calc._functions import REFERENCE_FUNCTIONS
from gradeflow.calc._parser import FormulaSyntaxError, glob_match, literal_references, parse

logger = logging.getLogger(__name__)

# Column id used while validating a column that has not been persisted yet.
NEW_COLUMN_ID = -1

CYCLE_ERROR = "Cycle detected in score expression"


class DependencyValidationError(ValueError):
    """All problems found while validating one expression, newline-joined."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("\n".join(errors))
        self.errors = list(errors)


class CircularDependencyError(ValueError):
    """Raised when the persisted dependency edges contain a cycle."""

    def __init__(self, column_ids: Iterable[int]) -> None:
        self.column_ids = frozenset(column_ids)
        super().__init__(f"Circular reference detected involving: {sorted(self.column_ids)}")


def extract_and_validate_dependencies(
    expression: str,
    column_id: int,
    columns: Iterable[Column],
    assignments: Iterable[Assignment] = (),
) -> ColumnRefs | None:
    """Collect the columns and assignments *expression* references.

    Slug literals passed to ``gradebook_columns``/``assignments`` are glob
    matched against the catalogs. Each referenced column's persisted
    dependencies are then walked; reaching *column_id* is a cycle.

    Returns None when nothing is referenced. Raises
    :class:`DependencyValidationError` carrying every problem found.
    """
    columns = list(columns)
    catalogs: dict[str, list[tuple[str, int]]] = {
        "gradebook_columns": [(c.slug, c.id) for c in columns],
        "assignments": [(a.slug, a.id) for a in assignments],
    }
    try:
        tree = parse(expression)
    except FormulaSyntaxError as exc:
        raise DependencyValidationError([f"Syntax error: {exc}"]) from exc

    found: dict[str, set[int]] = {"gradebook_columns": set(), "assignments": set()}
    errors: list[str] = []
    for func_name, literal in literal_references(tree, REFERENCE_FUNCTIONS):
        matches = [ident for slug, ident in catalogs[func_name] if glob_match(slug, literal)]
        if not matches:
            errors.append(f"Invalid dependency: {literal} for function {func_name}")
            continue
        found[func_name].update(matches)

    if found["gradebook_columns"] and _reaches(column_id, found["gradebook_columns"], columns):
        errors.append(CYCLE_ERROR)

    if errors:
        logger.debug("Dependency validation failed for column %s: %s", column_id, errors)
        raise DependencyValidationError(errors)

    refs = ColumnRefs(
        gradebook_columns=frozenset(found["gradebook_columns"]),
        assignments=frozenset(found["assignments"]),
    )
    return refs or None


def _reaches(target: int, starts: Iterable[int], columns: list[Column]) -> bool:
    """Depth-first walk of persisted dependencies looking for *target*."""
    by_id = {c.id: c for c in columns}
    visited: set[int] = set()
    stack = list(starts)
    while stack:
        current = stack.pop()
        if current == target:
            return True
        if current in visited:
            continue
        visited.add(current)
        column = by_id.get(current)
        if column is not None and column.dependencies is not None:
            stack.extend(column.dependencies.gradebook_columns)
    return False


class DependencyGraph:
    """Tracks column-to-column dependencies for evaluation ordering.

    Only ``gradebook_columns`` edges are tracked; assignments are leaves.
    """

    __slots__ = ("dependencies", "dependents", "formulas", "_order")

    def __init__(self) -> None:
        # column -> columns it reads from
        self.dependencies: dict[int, set[int]] = {}
        # column -> columns that read from it (reverse edges)
        self.dependents: dict[int, set[int]] = {}
        # formula column ids
        self.formulas: set[int] = set()
        self._order: list[int] | None = None

    def add_column(self, column: Column) -> None:
        """Register a column and its dependencies, replacing any previous edges."""
        self.remove_column(column.id, keep_dependents=True)
        if column.is_formula:
            self.formulas.add(column.id)
        refs = column.dependencies.gradebook_columns if column.dependencies else frozenset()
        self.dependencies[column.id] = set(refs)
        for ref in refs:
            self.dependents.setdefault(ref, set()).add(column.id)
        self._order = None

    def remove_column(self, column_id: int, *, keep_dependents: bool = False) -> None:
        for ref in self.dependencies.pop(column_id, set()):
            readers = self.dependents.get(ref)
            if readers is not None:
                readers.discard(column_id)
        if not keep_dependents:
            self.dependents.pop(column_id, None)
        self.formulas.discard(column_id)
        self._order = None

    def topological_order(self) -> list[int]:
        """Formula columns in evaluation order (Kahn's algorithm).

        Raises CircularDependencyError if a cycle is detected.
        """
        if self._order is not None:
            return list(self._order)
        formula_columns = self.formulas
        if not formula_columns:
            return []

        in_degree: dict[int, int] = {
            col: len(self.dependencies.get(col, set()) & formula_columns) for col in formula_columns
        }
        queue: deque[int] = deque(sorted(c for c, d in in_degree.items() if d == 0))

        order: list[int] = []
        while queue:
            col = queue.popleft()
            order.append(col)
            for dep in sorted(self.dependents.get(col, set())):
                if dep in formula_columns:
                    in_degree[dep] -= 1
                    if in_degree[dep] == 0:
                        queue.append(dep)

        if len(order) != len(formula_columns):
            raise CircularDependencyError(formula_columns - set(order))

        self._order = order
        return list(order)

    def affected_columns(self, changed: Iterable[int]) -> list[int]:
        """Formula columns transitively reading from *changed*, in evaluation order.

        A changed column is included only when it reads from another changed
        column, directly or indirectly.
        """
        changed = set(changed)
        affected: set[int] = set()
        queue: deque[int] = deque(changed)
        visited: set[int] = set(changed)

        while queue:
            col = queue.popleft()
            for dep in self.dependents.get(col, set()):
                if dep in self.formulas:
                    affected.add(dep)
                if dep not in visited:
                    visited.add(dep)
                    queue.append(dep)

        if not affected:
            return []
        return [c for c in self.topological_order() if c in affected]

    def transitive_dependencies(self, column_id: int) -> set[int]:
        """Every column *column_id* reads from, directly or indirectly."""
        seen: set[int] = set()
        stack = list(self.dependencies.get(column_id, set()))
        while stack:
            col = stack.pop()
            if col in seen:
                continue
            seen.add(col)
            stack.extend(self.dependencies.get(col, set()))
        return seen

    @classmethod
    def from_columns(cls, columns: Iterable[Column]) -> DependencyGraph:
        """Build a dependency graph from persisted column definitions."""
        graph = cls()
        for column in columns:
            graph.add_column(column)
        return graph
