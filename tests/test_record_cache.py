"""Tests for GradeRecordCache loading, change application, debounced refresh and queries."""

from __future__ import annotations

import asyncio

import pytest
from fakes import FakeBackend, FakeChangeStream, FakeScheduler, make_message, make_row, settle

from gradeflow._cache import (
    RECALC_STATE_TABLE,
    CacheSettings,
    CacheState,
    ChangeMessage,
    GradeRecordCache,
    Operation,
)


def _rows() -> dict[str, list[dict]]:
    return {
        "s1": [
            make_row(1, 10, "s1", score=80),
            make_row(2, 10, "s1", is_private=True, score=85),
            make_row(3, 11, "s1", score=70),
        ],
        "s2": [make_row(4, 10, "s2", score=60)],
    }


def _cache(
    backend: FakeBackend,
    stream: FakeChangeStream,
    scheduler: FakeScheduler,
    **kwargs,
) -> GradeRecordCache:
    kwargs.setdefault("is_staff", True)
    return GradeRecordCache(backend, stream, 1, scheduler=scheduler, **kwargs)


class TestLoad:
    def test_staff_bulk_load(self) -> None:
        async def scenario() -> None:
            backend, stream = FakeBackend(_rows()), FakeChangeStream()
            cache = _cache(backend, stream, FakeScheduler())
            await cache.load()
            assert cache.state is CacheState.READY
            assert backend.bulk_fetches == 1
            assert sorted(cache.students()) == ["s1", "s2"]
            assert [r.id for r in cache.get_student_data("s1")] == [1, 2, 3]
            assert stream.listener_count() == 2

        asyncio.run(scenario())

    def test_student_loads_own_rows(self) -> None:
        async def scenario() -> None:
            backend = FakeBackend(_rows())
            cache = _cache(backend, FakeChangeStream(), FakeScheduler(), is_staff=False, student_id="s2")
            await cache.load()
            assert backend.student_fetches == 1
            assert backend.bulk_fetches == 0
            assert cache.students() == ["s2"]

        asyncio.run(scenario())

    def test_student_cache_needs_student_id(self) -> None:
        with pytest.raises(ValueError, match="student_id"):
            GradeRecordCache(FakeBackend(), FakeChangeStream(), 1, scheduler=FakeScheduler())

    def test_row_aliases_and_defaults(self) -> None:
        async def scenario() -> None:
            row = {"id": 9, "gradebook_column_id": 12, "student_id": "s1", "is_missing": None, "extra": 1}
            cache = _cache(FakeBackend({"s1": [row]}), FakeChangeStream(), FakeScheduler())
            await cache.load()
            (record,) = cache.get_student_data("s1")
            assert record.column_id == 12
            assert record.is_missing is False

        asyncio.run(scenario())

    def test_failed_load_propagates_and_resets(self) -> None:
        async def scenario() -> None:
            backend, stream = FakeBackend(_rows()), FakeChangeStream()
            backend.fail_with = ConnectionError("offline")
            cache = _cache(backend, stream, FakeScheduler())
            with pytest.raises(ConnectionError):
                await cache.load()
            assert cache.state is CacheState.UNINITIALIZED
            assert stream.listener_count() == 0

            backend.fail_with = None
            await cache.load()
            assert cache.state is CacheState.READY

        asyncio.run(scenario())

    def test_messages_during_load_are_applied_after(self) -> None:
        async def scenario() -> None:
            backend, stream = FakeBackend(_rows()), FakeChangeStream()
            backend.gate = asyncio.Event()
            cache = _cache(backend, stream, FakeScheduler())
            loading = asyncio.ensure_future(cache.load())
            await settle()
            assert cache.state is CacheState.LOADING
            stream.publish(make_message(data=make_row(1, 10, "s1", score=99)))
            stream.publish(make_message(data=make_row(1, 10, "s1", score=100)))
            backend.gate.set()
            await loading
            assert cache.find_record(10, "s1", False).score == 100

        asyncio.run(scenario())

    def test_listeners_notified_after_load(self) -> None:
        async def scenario() -> None:
            cache = _cache(FakeBackend(_rows()), FakeChangeStream(), FakeScheduler())
            seen: list[list] = []
            cache.subscribe_to_student("s2", seen.append)
            assert seen == [[]]
            await cache.load()
            assert [r.score for r in seen[-1]] == [60]

        asyncio.run(scenario())


class TestChangeMessages:
    async def _ready(self, **kwargs) -> tuple[GradeRecordCache, FakeBackend, FakeChangeStream, FakeScheduler]:
        backend, stream, scheduler = FakeBackend(_rows()), FakeChangeStream(), FakeScheduler()
        cache = _cache(backend, stream, scheduler, **kwargs)
        await cache.load()
        return cache, backend, stream, scheduler

    def test_update_merges_into_existing_record(self) -> None:
        async def scenario() -> None:
            cache, _, stream, _ = await self._ready()
            stream.publish(make_message(data={"id": 3, "student_id": "s1", "score": 75}))
            record = cache.find_record(11, "s1", False)
            assert record.score == 75
            assert record.released is True

        asyncio.run(scenario())

    def test_insert_appends(self) -> None:
        async def scenario() -> None:
            cache, backend, stream, _ = await self._ready()
            stream.publish(make_message(Operation.INSERT, make_row(5, 12, "s2", score=40)))
            assert [r.id for r in cache.get_student_data("s2")] == [4, 5]
            assert backend.fetches == 1

        asyncio.run(scenario())

    def test_insert_for_new_student(self) -> None:
        async def scenario() -> None:
            cache, _, stream, _ = await self._ready()
            stream.publish(make_message(Operation.INSERT, make_row(6, 10, "s3", score=1)))
            assert "s3" in cache.students()

        asyncio.run(scenario())

    def test_incomplete_insert_refetches(self) -> None:
        async def scenario() -> None:
            cache, backend, stream, scheduler = await self._ready()
            scheduler.advance(5)
            stream.publish(make_message(Operation.INSERT, {"id": 7, "student_id": "s1"}))
            await settle()
            assert backend.bulk_fetches == 2

        asyncio.run(scenario())

    def test_delete_removes_row(self) -> None:
        async def scenario() -> None:
            cache, _, stream, _ = await self._ready()
            stream.publish(make_message(Operation.DELETE, {"id": 3, "student_id": "s1"}))
            assert [r.id for r in cache.get_student_data("s1")] == [1, 2]

        asyncio.run(scenario())

    def test_delete_without_student_refetches(self) -> None:
        async def scenario() -> None:
            cache, backend, stream, scheduler = await self._ready()
            scheduler.advance(5)
            stream.publish(make_message(Operation.DELETE, row_id=3))
            await settle()
            assert backend.bulk_fetches == 2

        asyncio.run(scenario())

    def test_other_class_ignored(self) -> None:
        async def scenario() -> None:
            cache, backend, stream, scheduler = await self._ready()
            scheduler.advance(5)
            stream.publish(make_message(data={"id": 1, "student_id": "s1", "score": 0}, class_id=2))
            stream.publish(make_message(requires_refetch=True, class_id=2))
            await settle()
            assert cache.find_record(10, "s1", False).score == 80
            assert backend.fetches == 1

        asyncio.run(scenario())

    def test_student_cache_ignores_other_students(self) -> None:
        async def scenario() -> None:
            cache, _, stream, _ = await self._ready(is_staff=False, student_id="s1")
            stream.publish(make_message(Operation.INSERT, make_row(8, 10, "s2", score=1)))
            assert cache.students() == ["s1"]

        asyncio.run(scenario())

    def test_recalculation_flag(self) -> None:
        async def scenario() -> None:
            cache, _, stream, _ = await self._ready()
            seen: list[list] = []
            cache.subscribe_to_student("s1", seen.append)
            stream.publish(
                make_message(
                    table=RECALC_STATE_TABLE,
                    data={"student_id": "s1", "is_private": True, "is_recalculating": True},
                )
            )
            flags = {r.id: r.is_recalculating for r in cache.get_student_data("s1")}
            assert flags == {1: False, 2: True, 3: False}
            assert len(seen) == 2

        asyncio.run(scenario())

    def test_student_and_data_listeners_notified(self) -> None:
        async def scenario() -> None:
            cache, _, stream, _ = await self._ready()
            student_views: list[list] = []
            data_views: list[dict] = []
            cache.subscribe_to_student("s2", student_views.append)
            cache.subscribe_to_data(data_views.append)
            stream.publish(make_message(data={"id": 4, "student_id": "s2", "score": 65}))
            assert student_views[-1][0].score == 65
            assert data_views[-1]["s2"][0].score == 65
            assert len(student_views) == 2
            assert len(data_views) == 2

        asyncio.run(scenario())

    def test_change_message_from_dict(self) -> None:
        message = ChangeMessage.from_dict(
            {"operation": "DELETE", "table": "gradebook_column_students", "class_id": 1, "row_id": 3}
        )
        assert message.operation is Operation.DELETE
        assert message.requires_refetch is False


class TestRefresh:
    def test_burst_of_refetch_messages_collapses(self) -> None:
        async def scenario() -> None:
            backend, stream, scheduler = FakeBackend(_rows()), FakeChangeStream(), FakeScheduler()
            cache = _cache(backend, stream, scheduler)
            await cache.load()
            assert backend.fetches == 1
            for _ in range(5):
                scheduler.advance(0.5)
                stream.publish(make_message(requires_refetch=True))
            await settle()
            assert backend.fetches == 1
            scheduler.advance(0.5)
            await settle()
            assert backend.fetches == 1
            scheduler.advance(0.5)
            await settle()
            assert backend.fetches == 2
            assert scheduler.now() == pytest.approx(3.5)

        asyncio.run(scenario())

    def test_refresh_replaces_data(self) -> None:
        async def scenario() -> None:
            backend, stream, scheduler = FakeBackend(_rows()), FakeChangeStream(), FakeScheduler()
            cache = _cache(backend, stream, scheduler)
            await cache.load()
            backend.rows["s2"] = [make_row(4, 10, "s2", score=99)]
            scheduler.advance(5)
            cache.reconnected()
            await settle()
            assert cache.find_record(10, "s2", False).score == 99

        asyncio.run(scenario())

    def test_bulk_update_message_refetches(self) -> None:
        async def scenario() -> None:
            backend, stream, scheduler = FakeBackend(_rows()), FakeChangeStream(), FakeScheduler()
            cache = _cache(backend, stream, scheduler)
            await cache.load()
            scheduler.advance(5)
            stream.publish(make_message(Operation.BULK_UPDATE))
            await settle()
            assert backend.fetches == 2

        asyncio.run(scenario())

    def test_failed_refresh_keeps_data(self) -> None:
        async def scenario() -> None:
            backend, stream, scheduler = FakeBackend(_rows()), FakeChangeStream(), FakeScheduler()
            cache = _cache(backend, stream, scheduler)
            await cache.load()
            backend.fail_with = ConnectionError("offline")
            scheduler.advance(5)
            cache.request_refresh()
            await settle()
            assert cache.state is CacheState.READY
            assert cache.find_record(10, "s1", False).score == 80

        asyncio.run(scenario())

    def test_bulk_loads_are_throttled(self) -> None:
        async def scenario() -> None:
            backend, stream, scheduler = FakeBackend(_rows()), FakeChangeStream(), FakeScheduler()
            cache = _cache(backend, stream, scheduler, settings=CacheSettings(refresh_debounce=0.0))
            await cache.load()
            backend.rows = {}
            scheduler.advance(0.5)
            cache.request_refresh()
            await settle()
            assert backend.bulk_fetches == 1
            assert sorted(cache.students()) == ["s1", "s2"]
            scheduler.advance(1.0)
            cache.request_refresh()
            await settle()
            assert backend.bulk_fetches == 2
            assert cache.students() == []

        asyncio.run(scenario())


class TestQueries:
    def _loaded(self, **kwargs) -> GradeRecordCache:
        cache = _cache(FakeBackend(_rows()), FakeChangeStream(), FakeScheduler(), **kwargs)
        asyncio.run(cache.load())
        return cache

    def test_find_record_by_privacy(self) -> None:
        cache = self._loaded()
        assert cache.find_record(10, "s1", True).id == 2
        assert cache.find_record(10, "s1", False).id == 1

    def test_find_record_falls_back_to_other_privacy(self) -> None:
        cache = self._loaded()
        assert cache.find_record(11, "s1", True).id == 3
        assert cache.find_record(10, "s2", True).id == 4

    def test_find_record_absent(self) -> None:
        cache = self._loaded()
        assert cache.find_record(99, "s1", True) is None
        assert cache.find_record(10, "nobody", False) is None

    def test_staff_reads_private_rows(self) -> None:
        assert self._loaded().get_gradebook_column_student(10, "s1").id == 2

    def test_student_reads_public_rows(self) -> None:
        cache = self._loaded(is_staff=False, student_id="s1")
        assert cache.get_gradebook_column_student(10, "s1").id == 1

    def test_get_student_data_is_a_copy(self) -> None:
        cache = self._loaded()
        cache.get_student_data("s1").clear()
        assert len(cache.get_student_data("s1")) == 3


class TestWriteThrough:
    def test_update_goes_to_backend_only(self) -> None:
        async def scenario() -> None:
            backend = FakeBackend(_rows())
            cache = _cache(backend, FakeChangeStream(), FakeScheduler())
            await cache.load()
            await cache.update_gradebook_entry(1, score_override=90, score_override_note="regrade")
            assert backend.updates == [(1, {"score_override": 90, "score_override_note": "regrade"})]
            assert cache.find_record(10, "s1", False).score_override is None

        asyncio.run(scenario())

    def test_backend_error_propagates(self) -> None:
        async def scenario() -> None:
            backend = FakeBackend(_rows())
            backend.update_error = PermissionError("denied")
            cache = _cache(backend, FakeChangeStream(), FakeScheduler())
            await cache.load()
            with pytest.raises(PermissionError):
                await cache.update_gradebook_entry(1, score=1)

        asyncio.run(scenario())


class TestClose:
    def test_close_stops_everything(self) -> None:
        async def scenario() -> None:
            backend, stream, scheduler = FakeBackend(_rows()), FakeChangeStream(), FakeScheduler()
            cache = _cache(backend, stream, scheduler)
            await cache.load()
            seen: list[list] = []
            cache.subscribe_to_student("s1", seen.append)
            scheduler.advance(0.5)
            cache.request_refresh()
            cache.close()
            assert cache.state is CacheState.CLOSED
            assert stream.listener_count() == 0
            assert scheduler.pending == []
            scheduler.advance(10)
            await settle()
            assert backend.fetches == 1

            await cache.update_gradebook_entry(1, score=1)
            assert backend.updates == []
            cache.subscribe_to_student("s1", seen.append)
            assert len(seen) == 1

        asyncio.run(scenario())

    def test_close_is_idempotent(self) -> None:
        cache = _cache(FakeBackend(), FakeChangeStream(), FakeScheduler())
        cache.close()
        cache.close()
        assert cache.state is CacheState.CLOSED
