"""Gradebook data model: columns, per-student records, and what-if slots."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, fields, replace
from typing import Any, Union


# ---------------------------------------------------------------------------
# Score: explicit tri-state "value or no value"
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Scored:
    """A present numeric score."""

    value: float


class _NoScore:
    __slots__ = ("_name",)

    def __init__(self, name: str) -> None:
        self._name = name

    def __repr__(self) -> str:
        return self._name

    def __bool__(self) -> bool:
        return False


MISSING = _NoScore("MISSING")
EXCUSED = _NoScore("EXCUSED")

Score = Union[Scored, _NoScore]


def classify_score(score: float | None, is_missing: bool, is_excused: bool) -> Score:
    """Classify raw record fields into a :data:`Score`.

    Excused wins over missing; a present score is only ``Scored`` when the
    record is not flagged missing.
    """
    if is_excused:
        return EXCUSED
    if is_missing or score is None:
        return MISSING
    return Scored(float(score))


# ---------------------------------------------------------------------------
# Dependency descriptor
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ColumnRefs:
    """Columns and assignments referenced by a score expression."""

    gradebook_columns: frozenset[int] = frozenset()
    assignments: frozenset[int] = frozenset()

    def __bool__(self) -> bool:
        return bool(self.gradebook_columns or self.assignments)

    def to_json(self) -> dict[str, list[int]]:
        out: dict[str, list[int]] = {}
        if self.gradebook_columns:
            out["gradebook_columns"] = sorted(self.gradebook_columns)
        if self.assignments:
            out["assignments"] = sorted(self.assignments)
        return out

    @classmethod
    def from_json(cls, raw: Mapping[str, Iterable[int]] | None) -> ColumnRefs | None:
        """Build from the persisted ``{gradebook_columns?, assignments?}`` shape."""
        if not raw:
            return None
        refs = cls(
            gradebook_columns=frozenset(int(i) for i in raw.get("gradebook_columns") or ()),
            assignments=frozenset(int(i) for i in raw.get("assignments") or ()),
        )
        return refs or None


# ---------------------------------------------------------------------------
# Catalog entities
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Column:
    """A gradebook column definition.

    Formula columns carry a ``score_expression``; their ``released`` flag is
    ignored in favor of the release state of their transitive dependencies.
    """

    id: int
    slug: str
    name: str = ""
    max_score: float | None = None
    score_expression: str | None = None
    render_expression: str | None = None
    dependencies: ColumnRefs | None = None
    released: bool = False
    sort_order: int = 0
    description: str | None = None

    @property
    def is_formula(self) -> bool:
        return bool(self.score_expression)


@dataclass(frozen=True)
class Assignment:
    id: int
    slug: str
    title: str = ""
    total_points: float | None = None


@dataclass(frozen=True)
class RosterEntry:
    student_id: str
    name: str = ""
    email: str = ""
    sis_id: str | None = None


# ---------------------------------------------------------------------------
# Incomplete-value advisory
# ---------------------------------------------------------------------------


@dataclass
class IncompleteValuesAdvice:
    """Slugs of upstream columns that were missing or unreleased."""

    missing: list[str] = field(default_factory=list)
    not_released: list[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.missing or self.not_released)

    def add_missing(self, slug: str) -> None:
        self.missing.append(slug)

    def add_not_released(self, slug: str) -> None:
        self.not_released.append(slug)

    def merge(self, other: IncompleteValuesAdvice | None) -> None:
        if other is None:
            return
        self.missing.extend(other.missing)
        self.not_released.extend(other.not_released)

    def deduplicated(self) -> IncompleteValuesAdvice:
        """Copy with repeated slugs removed, first occurrence order kept."""
        return IncompleteValuesAdvice(
            missing=list(dict.fromkeys(self.missing)),
            not_released=list(dict.fromkeys(self.not_released)),
        )

    def to_json(self) -> dict[str, dict[str, list[str]]] | None:
        if not self:
            return None
        out: dict[str, dict[str, list[str]]] = {}
        if self.missing:
            out["missing"] = {"gradebook_columns": list(self.missing)}
        if self.not_released:
            out["not_released"] = {"gradebook_columns": list(self.not_released)}
        return out

    @classmethod
    def from_json(cls, raw: Any) -> IncompleteValuesAdvice | None:
        if isinstance(raw, IncompleteValuesAdvice):
            return raw
        if not isinstance(raw, Mapping):
            return None
        advice = cls()
        missing = raw.get("missing")
        if isinstance(missing, Mapping):
            advice.missing.extend(missing.get("gradebook_columns") or ())
        not_released = raw.get("not_released")
        if isinstance(not_released, Mapping):
            advice.not_released.extend(not_released.get("gradebook_columns") or ())
        return advice or None


# ---------------------------------------------------------------------------
# Per-student persisted record
# ---------------------------------------------------------------------------

# Wire names that differ from attribute names.
_ROW_ALIASES = {"gradebook_column_id": "column_id"}


@dataclass(frozen=True)
class StudentColumnRecord:
    """One student's persisted value for one column (private or public row)."""

    id: int
    column_id: int
    student_id: str
    is_private: bool = False
    score: float | None = None
    score_override: float | None = None
    is_missing: bool = False
    is_excused: bool = False
    is_droppable: bool = True
    released: bool = False
    score_override_note: str | None = None
    incomplete_values: IncompleteValuesAdvice | None = None
    is_recalculating: bool = False

    @property
    def effective_score(self) -> float | None:
        """``score_override`` when present, else ``score``."""
        if self.score_override is not None:
            return self.score_override
        return self.score

    @property
    def state(self) -> Score:
        return classify_score(self.effective_score, self.is_missing, self.is_excused)

    def with_changes(self, **changes: Any) -> StudentColumnRecord:
        if "incomplete_values" in changes:
            changes["incomplete_values"] = IncompleteValuesAdvice.from_json(changes["incomplete_values"])
        return replace(self, **changes)

    @classmethod
    def row_fields(cls, row: Mapping[str, Any]) -> dict[str, Any]:
        """Attribute values present in a backing-store row, unknown keys dropped.

        Null boolean flags are left out so the defaults apply.
        """
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in row.items():
            name = _ROW_ALIASES.get(key, key)
            if name in known:
                kwargs[name] = value
        if "incomplete_values" in kwargs:
            kwargs["incomplete_values"] = IncompleteValuesAdvice.from_json(kwargs["incomplete_values"])
        for flag in ("is_private", "is_missing", "is_excused", "is_droppable", "released", "is_recalculating"):
            if flag in kwargs and kwargs[flag] is None:
                del kwargs[flag]
        return kwargs

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> StudentColumnRecord:
        """Build a record from a backing-store row. Raises TypeError if ids are absent."""
        return cls(**cls.row_fields(row))


@dataclass(frozen=True)
class CellState:
    """Renderer input. Hashable, so identical states share a cached output."""

    score: float | None = None
    score_override: float | None = None
    is_missing: bool = False
    is_excused: bool = False
    is_droppable: bool = True
    released: bool = False

    @classmethod
    def from_record(cls, record: StudentColumnRecord) -> CellState:
        return cls(
            score=record.score,
            score_override=record.score_override,
            is_missing=record.is_missing,
            is_excused=record.is_excused,
            is_droppable=record.is_droppable,
            released=record.released,
        )


# ---------------------------------------------------------------------------
# What-if slot
# ---------------------------------------------------------------------------


@dataclass
class WhatIfGradeValue:
    """Speculative state for one (student, column) pair."""

    gradebook_score: float | None = None
    what_if: float | None = None
    user_set: bool = False
    assume_max: float | None = None
    assume_zero: float | None = None
    report_only: float | None = None
    incomplete_values: IncompleteValuesAdvice | None = None

    def reset(self) -> None:
        """Drop every speculative field, keeping the real gradebook score."""
        self.what_if = None
        self.user_set = False
        self.assume_max = None
        self.assume_zero = None
        self.report_only = None
        self.incomplete_values = None

    def snapshot(self) -> WhatIfGradeValue:
        return replace(
            self,
            incomplete_values=(
                self.incomplete_values.deduplicated() if self.incomplete_values is not None else None
            ),
        )
