"""Gradebook: the column catalog, its authoring lifecycle and per-column caches."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from gradeflow._observer import Multicast, Subscription
from gradeflow._types import Assignment, Column, ColumnRefs, RosterEntry
from gradeflow.calc._evaluator import (
    BrokenExpression,
    CellRenderer,
    CompiledExpression,
    GradebookEvaluator,
    compile_score_expression,
)
from gradeflow.calc._functions import FunctionRegistry
from gradeflow.calc._graph import NEW_COLUMN_ID, DependencyGraph, extract_and_validate_dependencies
from gradeflow.calc._parser import glob_match
from gradeflow.calc._protocol import DEFAULT_REVIEW_ROUND, CalcResult

if TYPE_CHECKING:
    from gradeflow._cache import GradeRecordCache

logger = logging.getLogger(__name__)

EXPORT_HEADER = ("Name", "Email", "SID")


class ColumnInUseError(ValueError):
    """Raised when deleting a column other columns still reference."""


class Gradebook:
    """Columns, assignments and submission scores of one class.

    Score expressions are validated before a column is stored, compiled once
    per column and recompiled only after the catalog changes.
    """

    def __init__(
        self,
        columns: Iterable[Column] = (),
        assignments: Iterable[Assignment] = (),
        *,
        expression_prefix: str | None = None,
        registry: FunctionRegistry | None = None,
    ) -> None:
        self._columns: dict[int, Column] = {c.id: c for c in columns}
        self._assignments: dict[int, Assignment] = {a.id: a for a in assignments}
        # (student, assignment) -> {review round: score}
        self._submissions: dict[tuple[str, int], dict[str, float | None]] = {}
        self._registry = registry or FunctionRegistry()
        self.expression_prefix = expression_prefix
        self._graph: DependencyGraph | None = None
        self._compiled: dict[int, CompiledExpression | BrokenExpression] = {}
        self._renderers: dict[int, CellRenderer] = {}
        self._released: dict[int, bool] = {}
        self._column_listeners: Multicast[list[Column]] = Multicast(lambda: self.columns)

    # ------------------------------------------------------------------
    # Catalog access
    # ------------------------------------------------------------------

    @property
    def columns(self) -> list[Column]:
        """Columns in display order."""
        return sorted(self._columns.values(), key=lambda c: (c.sort_order, c.id))

    @property
    def assignments(self) -> list[Assignment]:
        return list(self._assignments.values())

    @property
    def registry(self) -> FunctionRegistry:
        return self._registry

    def column(self, column_id: int) -> Column | None:
        return self._columns.get(column_id)

    def column_by_slug(self, slug: str) -> Column | None:
        for column in self._columns.values():
            if column.slug == slug:
                return column
        return None

    def assignment_by_slug(self, slug: str) -> Assignment | None:
        for assignment in self._assignments.values():
            if assignment.slug == slug:
                return assignment
        return None

    def match_columns(self, pattern: str) -> list[Column]:
        """Columns whose slug matches the glob *pattern*, in display order."""
        return [c for c in self.columns if glob_match(c.slug, pattern)]

    def match_assignments(self, pattern: str) -> list[Assignment]:
        return [a for a in self._assignments.values() if glob_match(a.slug, pattern)]

    def expand_reference(self, func_name: str, pattern: str) -> list[str]:
        """Slugs a glob literal passed to *func_name* stands for."""
        if func_name == "assignments":
            return [a.slug for a in self.match_assignments(pattern)]
        return [c.slug for c in self.match_columns(pattern)]

    def columns_reading_assignment(self, assignment_id: int) -> list[Column]:
        return [
            c for c in self.columns if c.dependencies is not None and assignment_id in c.dependencies.assignments
        ]

    def __contains__(self, column_id: object) -> bool:
        return column_id in self._columns

    def __len__(self) -> int:
        return len(self._columns)

    # ------------------------------------------------------------------
    # Authoring lifecycle
    # ------------------------------------------------------------------

    def extract_and_validate_dependencies(
        self, expression: str, column_id: int = NEW_COLUMN_ID
    ) -> ColumnRefs | None:
        """Validate *expression* against this gradebook's catalog.

        Raises :class:`DependencyValidationError` with every problem found.
        """
        return extract_and_validate_dependencies(
            expression, column_id, self._columns.values(), self._assignments.values()
        )

    def add_column(self, column: Column) -> Column:
        """Validate and store a new column, returning it with its dependencies set."""
        if column.id in self._columns:
            raise ValueError(f"Column {column.id} already exists")
        if self.column_by_slug(column.slug) is not None:
            raise ValueError(f"Column slug {column.slug!r} is already in use")
        column = self._with_dependencies(column)
        self._columns[column.id] = column
        logger.debug("Added column %s (%s)", column.id, column.slug)
        self._catalog_changed()
        return column

    def update_column(self, column_id: int, **changes: Any) -> Column:
        """Edit a column. A changed score expression is re-validated first."""
        if column_id not in self._columns:
            raise KeyError(f"Column {column_id} does not exist")
        if "id" in changes:
            raise ValueError("A column's id cannot change")
        column = replace(self._columns[column_id], **changes)
        if "score_expression" in changes:
            column = self._with_dependencies(column)
        self._columns[column_id] = column
        logger.debug("Updated column %s: %s", column_id, sorted(changes))
        self._catalog_changed()
        return column

    def remove_column(self, column_id: int) -> None:
        """Delete a column no other column references."""
        column = self._columns.get(column_id)
        if column is None:
            raise KeyError(f"Column {column_id} does not exist")
        readers = [
            c.name or c.slug
            for c in self.columns
            if c.id != column_id and c.dependencies is not None and column_id in c.dependencies.gradebook_columns
        ]
        if readers:
            raise ColumnInUseError(
                f"Column {column.name or column.slug} is used by: {', '.join(readers)}"
            )
        del self._columns[column_id]
        self._catalog_changed()

    def apply_column_event(self, column: Column | None, *, deleted_id: int | None = None) -> None:
        """Mirror a column change that was already persisted elsewhere."""
        if column is not None:
            self._columns[column.id] = column
        elif deleted_id is not None:
            self._columns.pop(deleted_id, None)
        else:
            return
        self._catalog_changed()

    def add_assignment(self, assignment: Assignment) -> None:
        self._assignments[assignment.id] = assignment
        self._catalog_changed()

    def subscribe_columns(self, listener: Any) -> Subscription:
        """Be told the column list after every catalog change (replayed on subscribe)."""
        return self._column_listeners.subscribe(listener)

    def _with_dependencies(self, column: Column) -> Column:
        if not column.score_expression:
            return replace(column, dependencies=None)
        deps = extract_and_validate_dependencies(
            column.score_expression,
            column.id,
            [c for c in self._columns.values() if c.id != column.id] + [column],
            self._assignments.values(),
        )
        return replace(column, dependencies=deps)

    def _catalog_changed(self) -> None:
        self._graph = None
        self._compiled.clear()
        self._renderers.clear()
        self._released.clear()
        self._column_listeners.emit(self.columns)

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------

    @property
    def graph(self) -> DependencyGraph:
        if self._graph is None:
            self._graph = DependencyGraph.from_columns(self._columns.values())
        return self._graph

    def is_released(self, column_id: int) -> bool:
        """Manual flag for plain columns; for formula columns, whether every
        column they transitively read from is released."""
        cached = self._released.get(column_id)
        if cached is not None:
            return cached
        column = self._columns.get(column_id)
        if column is None:
            return False
        if not column.is_formula:
            released = column.released
        else:
            released = all(
                self._columns[dep].released
                for dep in self.graph.transitive_dependencies(column_id)
                if dep in self._columns and not self._columns[dep].is_formula
            )
        self._released[column_id] = released
        return released

    def compiled_score_expression(self, column_id: int) -> CompiledExpression | BrokenExpression:
        compiled = self._compiled.get(column_id)
        if compiled is None:
            column = self._columns[column_id]
            text = column.score_expression or ""
            if self.expression_prefix:
                text = f"{self.expression_prefix}\n{text}"
            compiled = compile_score_expression(text, self._registry, self.expand_reference)
            self._compiled[column_id] = compiled
        return compiled

    def renderer_for(self, column_id: int) -> CellRenderer:
        renderer = self._renderers.get(column_id)
        if renderer is None:
            column = self._columns[column_id]
            renderer = CellRenderer(column.render_expression, column.max_score, self._registry)
            self._renderers[column_id] = renderer
        return renderer

    # ------------------------------------------------------------------
    # Submissions
    # ------------------------------------------------------------------

    def set_submission_score(
        self,
        student_id: str,
        assignment_id: int,
        score: float | None,
        review_round: str = DEFAULT_REVIEW_ROUND,
    ) -> None:
        self._submissions.setdefault((student_id, assignment_id), {})[review_round] = score

    def submission_score(
        self, student_id: str, assignment_id: int, review_round: str = DEFAULT_REVIEW_ROUND
    ) -> float | None:
        return self._submissions.get((student_id, assignment_id), {}).get(review_round)

    # ------------------------------------------------------------------
    # Rows
    # ------------------------------------------------------------------

    def calculate_row(
        self, cache: GradeRecordCache, student_id: str, is_private: bool = True
    ) -> list[CalcResult]:
        """Recompute every formula column for one student from the cache's records."""
        return GradebookEvaluator(self, cache.find_record).calculate_row(student_id, is_private)

    def export_rows(self, cache: GradeRecordCache, roster: Iterable[RosterEntry]) -> list[list[Any]]:
        """Header row followed by one row of effective scores per student."""
        columns = self.columns
        rows: list[list[Any]] = [list(EXPORT_HEADER) + [c.name or c.slug for c in columns]]
        for entry in roster:
            row: list[Any] = [entry.name, entry.email, entry.sis_id or ""]
            for column in columns:
                record = cache.get_gradebook_column_student(column.id, entry.student_id)
                row.append(record.effective_score if record is not None else None)
            rows.append(row)
        return rows

    def __repr__(self) -> str:
        return f"<Gradebook columns={len(self._columns)} assignments={len(self._assignments)}>"
