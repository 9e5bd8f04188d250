"""WhatIfEngine: a per-student speculative overlay on top of the record cache.

Students set hypothetical scores on columns; every formula column that
depends on them is recomputed under all three incomplete-value policies.
Real data is only ever read from the cache, never written.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from gradeflow._cache import GradeRecordCache
from gradeflow._gradebook import Gradebook
from gradeflow._observer import KeyedMulticast, Multicast, Subscription
from gradeflow._types import Column, IncompleteValuesAdvice, StudentColumnRecord, WhatIfGradeValue
from gradeflow.calc._evaluator import GradebookValueSource
from gradeflow.calc._functions import CalcError
from gradeflow.calc._graph import CircularDependencyError
from gradeflow.calc._protocol import POLICIES, EvaluationContext, IncompletePolicy

logger = logging.getLogger(__name__)

# Scores closer than this are treated as equal when deciding what to expose.
SCORE_TOLERANCE = 1e-9


class CircularRecalculationError(RuntimeError):
    """A column was reached twice in one cascade; the dependency data has a cycle."""


def _values_differ(a: float | None, b: float | None, tolerance: float = SCORE_TOLERANCE) -> bool:
    """Check if two scores differ beyond tolerance. None only equals None."""
    if a is None or b is None:
        return a is not b
    return abs(a - b) > tolerance


class WhatIfEngine:
    """Speculative grades for one student in one gradebook.

    Every slot keeps the real ``gradebook_score`` next to the simulated
    values, so :meth:`reset` can always return to the persisted state.
    ``recalculations`` counts formula recomputes per column.
    """

    def __init__(self, gradebook: Gradebook, cache: GradeRecordCache, student_id: str) -> None:
        self._gradebook = gradebook
        self._cache = cache
        self._student_id = student_id
        self._slots: dict[int, WhatIfGradeValue] = {}
        self._signatures: dict[int, tuple[Any, ...] | None] = {}
        self._closed = False
        self.recalculations: Counter[int] = Counter()
        self._source = GradebookValueSource(gradebook, self._lookup, self._speculative)
        self._listeners: KeyedMulticast[WhatIfGradeValue] = KeyedMulticast(
            lambda column_id: self.get_grade(column_id).snapshot()  # type: ignore[arg-type]
        )
        self._all_listeners: Multicast[dict[int, WhatIfGradeValue]] = Multicast(self.snapshot)

        self._known_columns = tuple(gradebook.columns)
        for column in self._known_columns:
            self.get_grade(column.id)
            self._signatures[column.id] = self._signature(column.id)
        self._full_pass()

        # Both replay synchronously; the handlers see nothing new at this point.
        self._subscriptions: list[Subscription] = [
            cache.subscribe_to_student(student_id, self._on_records),
            gradebook.subscribe_columns(self._on_columns),
        ]

    @property
    def student_id(self) -> str:
        return self._student_id

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def get_grade(self, column_id: int) -> WhatIfGradeValue:
        """The slot for *column_id*, created from the cached real score on first access."""
        slot = self._slots.get(column_id)
        if slot is None:
            slot = WhatIfGradeValue(gradebook_score=self._real_score(column_id))
            self._slots[column_id] = slot
        return slot

    def effective_score(self, column_id: int) -> float | None:
        """Simulated score when there is one, else the real one."""
        slot = self.get_grade(column_id)
        return slot.what_if if slot.what_if is not None else slot.gradebook_score

    def snapshot(self) -> dict[int, WhatIfGradeValue]:
        return {column_id: slot.snapshot() for column_id, slot in self._slots.items()}

    def set_what_if_grade(
        self,
        column_id: int,
        value: float | None,
        incomplete_values: IncompleteValuesAdvice | Mapping[str, Any] | None = None,
    ) -> None:
        """Hypothesize *value* for a column and recompute everything downstream."""
        self._check_open()
        slot = self.get_grade(column_id)
        slot.what_if = value
        slot.user_set = value is not None
        slot.incomplete_values = IncompleteValuesAdvice.from_json(incomplete_values)
        self._emit(column_id)
        self._cascade({column_id}, [column_id])
        self._emit_all()

    def clear_grade(self, column_id: int) -> None:
        """Drop the column's simulated values and recompute downstream."""
        self._check_open()
        self.get_grade(column_id).reset()
        self._emit(column_id)
        self.recalculate(column_id)
        self._emit_all()

    def recalculate(self, column_id: int, history: Iterable[int] | None = None) -> None:
        """Recompute *column_id* and then every formula column downstream of it.

        *history* lists the columns already visited on the way here; meeting
        one of them again raises :class:`CircularRecalculationError`.
        """
        self._check_open()
        history = list(history or ())
        self._recalculate_one(column_id, list(history))
        self._cascade({column_id}, history + [column_id])

    def has_what_if_dependencies(self, column_id: int) -> bool:
        """True when a column this one reads from holds a user-set value,
        directly or through other formula columns."""
        seen: set[int] = set()
        stack = list(self._dependencies_of(column_id))
        while stack:
            dep = stack.pop()
            if dep in seen:
                continue
            seen.add(dep)
            slot = self._slots.get(dep)
            if slot is not None and slot.user_set and slot.what_if is not None:
                return True
            column = self._gradebook.column(dep)
            if column is not None and column.is_formula:
                stack.extend(self._dependencies_of(dep))
        return False

    def reset(self) -> None:
        """Forget every simulated value."""
        self._check_open()
        for slot in self._slots.values():
            slot.reset()
        self._full_pass()
        for column_id in list(self._slots):
            self._emit(column_id)
        self._emit_all()

    def subscribe(self, column_id: int, listener: Callable[[WhatIfGradeValue], None]) -> Subscription:
        """Receive a copy of the column's slot now and after every change."""
        return self._listeners.subscribe(column_id, listener)

    def subscribe_all(self, listener: Callable[[dict[int, WhatIfGradeValue]], None]) -> Subscription:
        return self._all_listeners.subscribe(listener)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions.clear()
        self._listeners.clear()
        self._all_listeners.clear()
        self._slots.clear()

    # ------------------------------------------------------------------
    # Recompute
    # ------------------------------------------------------------------

    def _full_pass(self) -> None:
        for column_id in self._evaluation_order():
            self._recalculate_one(column_id, [])

    def _cascade(self, roots: set[int], history: list[int]) -> None:
        """Recompute the formula columns downstream of *roots*, each once, in order."""
        for column_id in self._affected(roots):
            self._recalculate_one(column_id, list(history))

    def _recalculate_one(self, column_id: int, history: list[int]) -> None:
        if column_id in history:
            chain = " -> ".join(str(c) for c in history + [column_id])
            logger.error("Cycle detected while recalculating what-if grades: %s", chain)
            raise CircularRecalculationError(f"Cycle detected: {chain}")
        history.append(column_id)
        column = self._gradebook.column(column_id)
        if column is None or not column.is_formula:
            return
        self.recalculations[column_id] += 1
        slot = self.get_grade(column_id)
        compiled = self._gradebook.compiled_score_expression(column_id)

        scores: dict[IncompletePolicy, float | None] = {}
        report_advice: IncompleteValuesAdvice | None = None
        for policy in POLICIES:
            context = EvaluationContext(
                student_id=self._student_id, policy=policy, is_private=False, source=self._source
            )
            try:
                scores[policy] = compiled.score(context)
            except CalcError as exc:
                logger.debug("What-if %s evaluation of column %s failed: %s", policy.value, column_id, exc)
                scores[policy] = None
            if policy is IncompletePolicy.REPORT_ONLY:
                report_advice = context.incomplete_values.deduplicated() or None

        slot.assume_max = scores[IncompletePolicy.ASSUME_MAX]
        slot.assume_zero = scores[IncompletePolicy.ASSUME_ZERO]
        slot.report_only = scores[IncompletePolicy.REPORT_ONLY]
        slot.incomplete_values = report_advice
        self._expose(column_id, slot)
        self._emit(column_id)

    def _expose(self, column_id: int, slot: WhatIfGradeValue) -> None:
        # A user-set value stays; otherwise show report_only only when some
        # dependency is simulated and the result differs from the real score.
        if slot.user_set:
            return
        if self.has_what_if_dependencies(column_id) and _values_differ(slot.report_only, slot.gradebook_score):
            slot.what_if = slot.report_only
        else:
            slot.what_if = None

    def _evaluation_order(self) -> list[int]:
        try:
            return self._gradebook.graph.topological_order()
        except CircularDependencyError as exc:
            logger.error("What-if evaluation order failed: %s", exc)
            raise CircularRecalculationError(str(exc)) from exc

    def _affected(self, roots: set[int]) -> list[int]:
        try:
            return self._gradebook.graph.affected_columns(roots)
        except CircularDependencyError as exc:
            logger.error("What-if cascade from %s failed: %s", sorted(roots), exc)
            raise CircularRecalculationError(str(exc)) from exc

    def _dependencies_of(self, column_id: int) -> frozenset[int]:
        column = self._gradebook.column(column_id)
        if column is None or column.dependencies is None:
            return frozenset()
        return column.dependencies.gradebook_columns

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def _lookup(self, column_id: int, student_id: str, is_private: bool) -> StudentColumnRecord | None:
        return self._cache.find_record(column_id, student_id, is_private)

    def _speculative(self, column_id: int) -> tuple[float | None, IncompleteValuesAdvice | None]:
        slot = self._slots.get(column_id)
        if slot is None or slot.what_if is None:
            return None, None
        return slot.what_if, slot.incomplete_values

    def _record(self, column_id: int) -> StudentColumnRecord | None:
        return self._cache.find_record(column_id, self._student_id, False)

    def _real_score(self, column_id: int) -> float | None:
        record = self._record(column_id)
        return record.effective_score if record is not None else None

    def _signature(self, column_id: int) -> tuple[Any, ...] | None:
        record = self._record(column_id)
        if record is None:
            return None
        return (
            record.score,
            record.score_override,
            record.is_missing,
            record.is_excused,
            record.released,
            record.is_droppable,
        )

    # ------------------------------------------------------------------
    # Change handlers
    # ------------------------------------------------------------------

    def _on_records(self, records: list[StudentColumnRecord]) -> None:
        """Real data changed: refresh baselines and recompute what reads from them."""
        if self._closed:
            return
        changed: set[int] = set()
        for column in self._gradebook.columns:
            signature = self._signature(column.id)
            if self._signatures.get(column.id) != signature:
                self._signatures[column.id] = signature
                changed.add(column.id)
        if not changed:
            return
        logger.debug("Real scores changed for student %s in columns %s", self._student_id, sorted(changed))
        for column_id in changed:
            slot = self.get_grade(column_id)
            slot.gradebook_score = self._real_score(column_id)
            column = self._gradebook.column(column_id)
            if column is not None and column.is_formula:
                self._expose(column_id, slot)
            self._emit(column_id)
        self._cascade(changed, [])
        self._emit_all()

    def _on_columns(self, columns: list[Column]) -> None:
        """Column definitions changed: rebuild slots and re-run every formula."""
        if self._closed:
            return
        current = tuple(columns)
        if current == self._known_columns:
            return
        self._known_columns = current
        ids = {c.id for c in current}
        for column_id in [c for c in self._slots if c not in ids]:
            del self._slots[column_id]
            self._signatures.pop(column_id, None)
        for column in current:
            self.get_grade(column.id)
            self._signatures[column.id] = self._signature(column.id)
        self._full_pass()
        self._emit_all()

    # ------------------------------------------------------------------
    # Notification
    # ------------------------------------------------------------------

    def _emit(self, column_id: int) -> None:
        slot = self._slots.get(column_id)
        if slot is not None:
            self._listeners.emit(column_id, slot.snapshot())

    def _emit_all(self) -> None:
        self._all_listeners.emit(self.snapshot())

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("WhatIfEngine is closed")

    def __repr__(self) -> str:
        return f"<WhatIfEngine student={self._student_id} slots={len(self._slots)}>"
