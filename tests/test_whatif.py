"""Tests for WhatIfEngine cascades, exposure rules and change handling."""

from __future__ import annotations

import asyncio
import logging

import pytest
from fakes import FakeBackend, FakeChangeStream, FakeScheduler, make_message, make_row, settle

from gradeflow._cache import GradeRecordCache
from gradeflow._gradebook import Gradebook
from gradeflow._types import Column, ColumnRefs
from gradeflow._whatif import CircularRecalculationError, WhatIfEngine, _values_differ

HW1, HW2, AVERAGE, FINAL = 1, 2, 10, 11


def _gradebook() -> Gradebook:
    gradebook = Gradebook(
        [
            Column(id=HW1, slug="hw-1", max_score=100, released=True),
            Column(id=HW2, slug="hw-2", max_score=100, released=False),
        ]
    )
    gradebook.add_column(
        Column(id=AVERAGE, slug="average", max_score=100, score_expression='mean(gradebook_columns("hw-*"))')
    )
    gradebook.add_column(
        Column(id=FINAL, slug="final", max_score=100, score_expression='gradebook_columns("average") + 0')
    )
    return gradebook


def _rows(hw1: float = 80, average: float = 80) -> dict[str, list[dict]]:
    return {
        "s1": [
            make_row(1, HW1, score=hw1),
            make_row(2, HW2, released=False),
            make_row(3, AVERAGE, score=average),
            make_row(4, FINAL, score=average),
        ]
    }


def _cache(stream: FakeChangeStream) -> GradeRecordCache:
    cache = GradeRecordCache(FakeBackend(_rows()), stream, 1, student_id="s1", scheduler=FakeScheduler())
    asyncio.run(cache.load())
    return cache


@pytest.fixture
def stream() -> FakeChangeStream:
    return FakeChangeStream()


@pytest.fixture
def gradebook() -> Gradebook:
    return _gradebook()


@pytest.fixture
def engine(gradebook: Gradebook, stream: FakeChangeStream) -> WhatIfEngine:
    return WhatIfEngine(gradebook, _cache(stream), "s1")


class TestInitialState:
    def test_slots_start_from_real_scores(self, engine: WhatIfEngine) -> None:
        assert engine.get_grade(HW1).gradebook_score == 80
        assert engine.get_grade(HW2).gradebook_score is None
        assert engine.get_grade(FINAL).gradebook_score == 80

    def test_formulas_evaluated_under_every_policy(self, engine: WhatIfEngine) -> None:
        slot = engine.get_grade(AVERAGE)
        assert slot.assume_max == pytest.approx(90)
        assert slot.assume_zero == pytest.approx(40)
        assert slot.report_only == pytest.approx(80)
        assert slot.what_if is None
        assert slot.incomplete_values.not_released == ["hw-2"]
        assert slot.incomplete_values.missing == ["hw-2"]

    def test_each_formula_computed_once(self, engine: WhatIfEngine) -> None:
        assert engine.recalculations == {AVERAGE: 1, FINAL: 1}


class TestSetWhatIf:
    def test_cascade(self, engine: WhatIfEngine) -> None:
        engine.set_what_if_grade(HW2, 100)
        assert engine.get_grade(HW2).user_set
        assert engine.get_grade(AVERAGE).report_only == pytest.approx(90)
        assert engine.get_grade(AVERAGE).what_if == pytest.approx(90)
        assert engine.get_grade(FINAL).what_if == pytest.approx(90)
        assert engine.recalculations == {AVERAGE: 2, FINAL: 2}

    def test_effective_score(self, engine: WhatIfEngine) -> None:
        engine.set_what_if_grade(HW2, 100)
        assert engine.effective_score(HW2) == 100
        assert engine.effective_score(HW1) == 80
        assert engine.effective_score(FINAL) == pytest.approx(90)

    def test_has_what_if_dependencies(self, engine: WhatIfEngine) -> None:
        assert not engine.has_what_if_dependencies(FINAL)
        engine.set_what_if_grade(HW2, 100)
        assert engine.has_what_if_dependencies(AVERAGE)
        assert engine.has_what_if_dependencies(FINAL)
        assert not engine.has_what_if_dependencies(HW1)

    def test_result_equal_to_real_score_is_not_exposed(self, engine: WhatIfEngine) -> None:
        engine.set_what_if_grade(HW2, 80)
        assert engine.get_grade(AVERAGE).report_only == pytest.approx(80)
        assert engine.get_grade(AVERAGE).what_if is None

    def test_user_set_formula_value_is_kept(self, engine: WhatIfEngine) -> None:
        engine.set_what_if_grade(AVERAGE, 50)
        assert engine.get_grade(FINAL).what_if == pytest.approx(50)
        engine.recalculate(AVERAGE)
        assert engine.get_grade(AVERAGE).what_if == 50
        assert engine.get_grade(FINAL).what_if == pytest.approx(50)

    def test_incomplete_values_travel_with_the_value(self, engine: WhatIfEngine) -> None:
        engine.set_what_if_grade(AVERAGE, 50, {"missing": {"gradebook_columns": ["hw-2"]}})
        assert engine.get_grade(FINAL).incomplete_values.missing == ["hw-2"]

    def test_none_clears_user_flag(self, engine: WhatIfEngine) -> None:
        engine.set_what_if_grade(HW2, 100)
        engine.set_what_if_grade(HW2, None)
        assert not engine.get_grade(HW2).user_set
        assert engine.get_grade(FINAL).what_if is None


class TestClearAndReset:
    def test_clear_grade_restores_downstream(self, engine: WhatIfEngine) -> None:
        engine.set_what_if_grade(HW2, 100)
        engine.clear_grade(HW2)
        assert engine.get_grade(HW2).what_if is None
        assert engine.get_grade(AVERAGE).what_if is None
        assert engine.get_grade(FINAL).what_if is None
        assert engine.get_grade(AVERAGE).report_only == pytest.approx(80)

    def test_reset(self, engine: WhatIfEngine) -> None:
        engine.set_what_if_grade(HW2, 100)
        engine.set_what_if_grade(AVERAGE, 10)
        engine.reset()
        snapshot = engine.snapshot()
        assert all(slot.what_if is None and not slot.user_set for slot in snapshot.values())
        assert snapshot[AVERAGE].report_only == pytest.approx(80)
        assert snapshot[HW1].gradebook_score == 80


class TestRealDataChanges:
    def test_real_score_change_cascades(self, engine: WhatIfEngine, stream: FakeChangeStream) -> None:
        stream.publish(make_message(data={"id": 1, "student_id": "s1", "score": 60}))
        assert engine.get_grade(HW1).gradebook_score == 60
        assert engine.get_grade(AVERAGE).report_only == pytest.approx(60)
        assert engine.get_grade(AVERAGE).what_if is None

    def test_real_change_can_hide_a_simulated_result(
        self, engine: WhatIfEngine, stream: FakeChangeStream
    ) -> None:
        engine.set_what_if_grade(HW2, 100)
        stream.publish(make_message(data={"id": 1, "student_id": "s1", "score": 60}))
        # (60 + 100) / 2 matches the persisted average of 80
        assert engine.get_grade(AVERAGE).what_if is None
        assert engine.get_grade(HW2).what_if == 100

    def test_unrelated_message_does_not_recompute(
        self, engine: WhatIfEngine, stream: FakeChangeStream
    ) -> None:
        stream.publish(make_message(data={"id": 1, "student_id": "s1", "score_override_note": "late"}))
        assert engine.recalculations == {AVERAGE: 1, FINAL: 1}

    def test_refresh_moving_input_and_formula_together(
        self, gradebook: Gradebook, stream: FakeChangeStream
    ) -> None:
        async def scenario() -> None:
            backend, scheduler = FakeBackend(_rows()), FakeScheduler()
            cache = GradeRecordCache(backend, stream, 1, student_id="s1", scheduler=scheduler)
            await cache.load()
            engine = WhatIfEngine(gradebook, cache, "s1")
            backend.rows.update(_rows(hw1=60, average=60))
            scheduler.advance(5)
            cache.reconnected()
            await settle()
            average = engine.get_grade(AVERAGE)
            assert average.gradebook_score == 60
            assert average.report_only == pytest.approx(60)
            assert average.assume_max == pytest.approx(80)
            assert engine.get_grade(FINAL).report_only == pytest.approx(60)
            assert engine.recalculations == {AVERAGE: 2, FINAL: 2}

        asyncio.run(scenario())

    def test_column_change_reruns_formulas(self, engine: WhatIfEngine, gradebook: Gradebook) -> None:
        gradebook.update_column(FINAL, score_expression='gradebook_columns("average") * 2')
        assert engine.get_grade(FINAL).report_only == pytest.approx(160)

    def test_new_column_gets_a_slot(self, engine: WhatIfEngine, gradebook: Gradebook) -> None:
        gradebook.add_column(Column(id=12, slug="bonus", max_score=10, released=True))
        assert 12 in engine.snapshot()


class TestSubscriptions:
    def test_subscribe_replays_and_follows(self, engine: WhatIfEngine) -> None:
        seen = []
        engine.subscribe(FINAL, seen.append)
        assert seen[0].what_if is None
        engine.set_what_if_grade(HW2, 100)
        assert seen[-1].what_if == pytest.approx(90)

    def test_snapshots_are_copies(self, engine: WhatIfEngine) -> None:
        seen = []
        engine.subscribe(HW2, seen.append)
        seen[0].what_if = 1
        assert engine.get_grade(HW2).what_if is None

    def test_subscribe_all(self, engine: WhatIfEngine) -> None:
        seen = []
        engine.subscribe_all(seen.append)
        engine.set_what_if_grade(HW2, 100)
        assert len(seen) == 2
        assert seen[-1][HW2].what_if == 100


class TestEvaluationFailures:
    def test_result_too_large_for_a_score(self, gradebook: Gradebook, stream: FakeChangeStream) -> None:
        gradebook.add_column(Column(id=12, slug="huge", max_score=100, score_expression="10 ^ 400"))
        engine = WhatIfEngine(gradebook, _cache(stream), "s1")
        slot = engine.get_grade(12)
        assert slot.report_only is None
        assert slot.assume_max is None
        assert engine.get_grade(AVERAGE).report_only == pytest.approx(80)


class TestCycles:
    def test_cyclic_catalog_rejected(self, stream: FakeChangeStream, caplog) -> None:
        gradebook = Gradebook(
            [
                Column(id=1, slug="a", score_expression="1", dependencies=ColumnRefs(frozenset({2}))),
                Column(id=2, slug="b", score_expression="1", dependencies=ColumnRefs(frozenset({1}))),
            ]
        )
        with caplog.at_level(logging.ERROR, logger="gradeflow._whatif"):
            with pytest.raises(CircularRecalculationError):
                WhatIfEngine(gradebook, _cache(stream), "s1")
        assert any(r.levelno == logging.ERROR for r in caplog.records)

    def test_revisiting_a_column_raises(self, engine: WhatIfEngine) -> None:
        with pytest.raises(CircularRecalculationError, match="10 -> 10"):
            engine.recalculate(AVERAGE, history=[AVERAGE])


class TestClose:
    def test_closed_engine(self, engine: WhatIfEngine, stream: FakeChangeStream) -> None:
        engine.close()
        engine.close()
        with pytest.raises(RuntimeError, match="closed"):
            engine.set_what_if_grade(HW2, 1)
        stream.publish(make_message(data={"id": 1, "student_id": "s1", "score": 60}))
        assert engine.recalculations == {AVERAGE: 1, FINAL: 1}


class TestValuesDiffer:
    def test_tolerance(self) -> None:
        assert not _values_differ(1.0, 1.0 + 1e-12)
        assert _values_differ(1.0, 1.1)

    def test_none(self) -> None:
        assert not _values_differ(None, None)
        assert _values_differ(None, 0.0)
