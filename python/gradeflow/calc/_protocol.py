"""Evaluation contracts: policies, column records, context and result dataclasses."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol, runtime_checkable

from gradeflow._types import Column, IncompleteValuesAdvice, Score, StudentColumnRecord, classify_score

DEFAULT_REVIEW_ROUND = "grading-review"


class IncompletePolicy(str, Enum):
    """How an unreleased dependency is substituted during evaluation."""

    ASSUME_MAX = "assume_max"
    ASSUME_ZERO = "assume_zero"
    REPORT_ONLY = "report_only"


POLICIES: tuple[IncompletePolicy, ...] = (
    IncompletePolicy.ASSUME_MAX,
    IncompletePolicy.ASSUME_ZERO,
    IncompletePolicy.REPORT_ONLY,
)


@dataclass(frozen=True)
class ColumnRecord:
    """The value formulas see for a referenced column (``gradebook_columns(...)``).

    ``score`` has already been resolved under the active policy.
    """

    column_slug: str
    score: float | None = None
    max_score: float | None = None
    is_missing: bool = False
    is_excused: bool = False
    is_droppable: bool = True
    released: bool = False
    is_private: bool = False
    incomplete_values: IncompleteValuesAdvice | None = None

    @property
    def state(self) -> Score:
        return classify_score(self.score, self.is_missing, self.is_excused)


# Attributes reachable from formulas via ``x.name``.
RECORD_ATTRIBUTES = frozenset(
    {
        "column_slug",
        "score",
        "max_score",
        "is_missing",
        "is_excused",
        "is_droppable",
        "released",
        "is_private",
    }
)


@dataclass(frozen=True)
class ColumnInput:
    """Unresolved inputs for one referenced column, as supplied by a value source."""

    column: Column
    record: StudentColumnRecord | None
    released: bool
    what_if: float | None = None
    what_if_advice: IncompleteValuesAdvice | None = None


@runtime_checkable
class ValueSource(Protocol):
    """Supplies referenced column and assignment values to the function library."""

    def column_input(self, slug: str, context: EvaluationContext) -> ColumnInput | None:
        """Inputs for the column with *slug*, or None when no such column exists."""
        ...

    def assignment_score(
        self, slug: str, context: EvaluationContext, review_round: str
    ) -> float | None:
        ...


@dataclass
class EvaluationContext:
    """Per-evaluation state handed to context-consuming functions."""

    student_id: str
    policy: IncompletePolicy = IncompletePolicy.REPORT_ONLY
    is_private: bool = False
    incomplete_values: IncompleteValuesAdvice = field(default_factory=IncompleteValuesAdvice)
    source: ValueSource | None = None


@dataclass(frozen=True)
class CalcResult:
    """Result of recomputing one formula column for one student row."""

    column_id: int
    score: float | None
    is_missing: bool = False
    released: bool = False
    incomplete_values: IncompleteValuesAdvice | None = None
    error: str | None = None

    def as_update(self) -> dict[str, object]:
        """Fields to write back to the student's record for this column."""
        return {
            "score": self.score,
            "is_missing": self.is_missing,
            "released": self.released,
            "incomplete_values": (
                self.incomplete_values.to_json() if self.incomplete_values is not None else None
            ),
        }
