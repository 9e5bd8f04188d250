"""In-memory collaborators for cache and what-if tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from typing import Any

from gradeflow._cache import RECORDS_TABLE, ChangeMessage, Operation


class FakeTimer:
    def __init__(self, when: float, callback: Callable[[], None]) -> None:
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Manual clock: callbacks run only when :meth:`advance` passes their time."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self.timers: list[FakeTimer] = []

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(self._now + delay, callback)
        self.timers.append(timer)
        return timer

    def advance(self, seconds: float) -> None:
        target = self._now + seconds
        while True:
            due = [t for t in self.timers if not t.cancelled and t.when <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.when)
            self.timers.remove(timer)
            self._now = timer.when
            timer.callback()
        self._now = target

    @property
    def pending(self) -> list[FakeTimer]:
        return [t for t in self.timers if not t.cancelled]


class FakeBackend:
    """Rows keyed by student id; counts every fetch."""

    def __init__(self, rows: Mapping[str, list[dict[str, Any]]] | None = None) -> None:
        self.rows: dict[str, list[dict[str, Any]]] = {k: list(v) for k, v in (rows or {}).items()}
        self.bulk_fetches = 0
        self.student_fetches = 0
        self.updates: list[tuple[int, dict[str, Any]]] = []
        self.fail_with: Exception | None = None
        self.update_error: Exception | None = None
        self.gate: asyncio.Event | None = None

    @property
    def fetches(self) -> int:
        return self.bulk_fetches + self.student_fetches

    async def _wait(self) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with

    async def fetch_all_student_records(self, class_id: int) -> dict[str, list[dict[str, Any]]]:
        self.bulk_fetches += 1
        await self._wait()
        return {k: [dict(r) for r in v] for k, v in self.rows.items()}

    async def fetch_student_records(self, class_id: int, student_id: str) -> list[dict[str, Any]]:
        self.student_fetches += 1
        await self._wait()
        return [dict(r) for r in self.rows.get(student_id, [])]

    async def update_record(self, record_id: int, fields: Mapping[str, Any]) -> None:
        if self.update_error is not None:
            raise self.update_error
        self.updates.append((record_id, dict(fields)))


class FakeChangeStream:
    def __init__(self) -> None:
        self.listeners: dict[str, list[Callable[[ChangeMessage], None]]] = {}

    def subscribe(self, table: str, listener: Callable[[ChangeMessage], None]) -> Callable[[], None]:
        self.listeners.setdefault(table, []).append(listener)

        def unsubscribe() -> None:
            if listener in self.listeners.get(table, []):
                self.listeners[table].remove(listener)

        return unsubscribe

    def publish(self, message: ChangeMessage) -> None:
        for listener in list(self.listeners.get(message.table, [])):
            listener(message)

    def listener_count(self) -> int:
        return sum(len(v) for v in self.listeners.values())


def make_row(
    record_id: int,
    column_id: int,
    student_id: str = "s1",
    **fields: Any,
) -> dict[str, Any]:
    row: dict[str, Any] = {
        "id": record_id,
        "gradebook_column_id": column_id,
        "student_id": student_id,
        "is_private": False,
        "score": None,
        "score_override": None,
        "is_missing": False,
        "is_excused": False,
        "is_droppable": True,
        "released": True,
    }
    row.update(fields)
    return row


def make_message(
    operation: Operation = Operation.UPDATE,
    data: Mapping[str, Any] | None = None,
    *,
    table: str = RECORDS_TABLE,
    class_id: int = 1,
    row_id: int | None = None,
    requires_refetch: bool = False,
) -> ChangeMessage:
    return ChangeMessage(
        operation=operation,
        table=table,
        class_id=class_id,
        data=data,
        row_id=row_id,
        requires_refetch=requires_refetch,
    )


async def settle() -> None:
    """Let scheduled refresh tasks run to completion."""
    for _ in range(5):
        await asyncio.sleep(0)
