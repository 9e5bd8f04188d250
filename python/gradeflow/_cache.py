"""GradeRecordCache: in-memory mirror of persisted grade rows.

The cache is filled by one fetch (every student's rows for staff, the
caller's own rows otherwise) and then kept current by a change stream.
Single-row changes are applied in place; anything the cache cannot apply
precisely falls back to a debounced full refresh.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, cast, runtime_checkable

from gradeflow._observer import NO_SNAPSHOT, KeyedMulticast, Multicast, Subscription
from gradeflow._scheduling import Debouncer, LoopScheduler, Scheduler
from gradeflow._types import StudentColumnRecord

logger = logging.getLogger(__name__)

RECORDS_TABLE = "gradebook_column_students"
RECALC_STATE_TABLE = "gradebook_row_recalc_state"

StudentRecords = dict[str, list[StudentColumnRecord]]


@dataclass(frozen=True)
class CacheSettings:
    """Timing and table names for a :class:`GradeRecordCache`."""

    refresh_debounce: float = 3.0
    bulk_load_min_interval: float = 1.0
    records_table: str = RECORDS_TABLE
    recalc_state_table: str = RECALC_STATE_TABLE


class CacheState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    CLOSED = "closed"


class Operation(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    BULK_UPDATE = "BULK_UPDATE"


@dataclass(frozen=True)
class ChangeMessage:
    """One notification from the change stream."""

    operation: Operation
    table: str
    class_id: int
    data: Mapping[str, Any] | None = None
    row_id: int | None = None
    requires_refetch: bool = False

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> ChangeMessage:
        return cls(
            operation=Operation(raw["operation"]),
            table=raw["table"],
            class_id=raw["class_id"],
            data=raw.get("data"),
            row_id=raw.get("row_id"),
            requires_refetch=bool(raw.get("requires_refetch", False)),
        )


@runtime_checkable
class GradebookBackend(Protocol):
    """Remote store of grade rows."""

    async def fetch_all_student_records(self, class_id: int) -> Mapping[str, Iterable[Mapping[str, Any]]]:
        """Every student's rows in one round trip, keyed by student id."""
        ...

    async def fetch_student_records(self, class_id: int, student_id: str) -> Iterable[Mapping[str, Any]]:
        ...

    async def update_record(self, record_id: int, fields: Mapping[str, Any]) -> None:
        ...


@runtime_checkable
class ChangeStream(Protocol):
    """Real-time change notifications, partitioned by table name."""

    def subscribe(self, table: str, listener: Callable[[ChangeMessage], None]) -> Callable[[], None]:
        ...


class GradeRecordCache:
    """Authoritative in-memory copy of ``student_id -> [record, ...]`` for one class."""

    def __init__(
        self,
        backend: GradebookBackend,
        stream: ChangeStream,
        class_id: int,
        *,
        student_id: str | None = None,
        is_staff: bool = False,
        settings: CacheSettings | None = None,
        scheduler: Scheduler | None = None,
    ) -> None:
        if not is_staff and student_id is None:
            raise ValueError("A non-staff cache needs the caller's student_id")
        self._backend = backend
        self._stream = stream
        self._class_id = class_id
        self._student_id = student_id
        self._is_staff = is_staff
        self._settings = settings or CacheSettings()
        self._scheduler = scheduler or LoopScheduler()
        self._state = CacheState.UNINITIALIZED
        self._records: StudentRecords = {}
        self._buffer: list[ChangeMessage] = []
        self._unsubscribers: list[Callable[[], None]] = []
        self._tasks: set[asyncio.Task[None]] = set()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._last_bulk_load: float | None = None
        self._refresh = Debouncer(self._start_refresh, self._settings.refresh_debounce, self._scheduler)
        self._data_listeners: Multicast[StudentRecords] = Multicast(self._data_snapshot)
        self._student_listeners: KeyedMulticast[list[StudentColumnRecord]] = KeyedMulticast(
            self._student_snapshot
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> CacheState:
        return self._state

    @property
    def is_staff(self) -> bool:
        return self._is_staff

    @property
    def settings(self) -> CacheSettings:
        return self._settings

    async def load(self) -> None:
        """Subscribe to changes and fetch the initial rows.

        Messages that arrive during the fetch are applied, in arrival order,
        once it lands. A failed fetch propagates and the cache goes back to
        ``UNINITIALIZED``.
        """
        if self._state is not CacheState.UNINITIALIZED:
            return
        self._state = CacheState.LOADING
        self._loop = asyncio.get_running_loop()
        settings = self._settings
        self._unsubscribers = [
            self._stream.subscribe(settings.records_table, self._on_message),
            self._stream.subscribe(settings.recalc_state_table, self._on_message),
        ]
        try:
            rows = await self._fetch()
        except Exception:
            self._state = CacheState.UNINITIALIZED
            self._unsubscribe_stream()
            self._buffer.clear()
            raise
        if self._state is CacheState.CLOSED:
            return
        self._replace(rows or {})
        self._state = CacheState.READY
        self._refresh.mark_ran()
        buffered, self._buffer = self._buffer, []
        for message in buffered:
            self._apply(message)
        self._notify_all()

    def close(self) -> None:
        """Cancel timers and in-flight refreshes, drop every listener."""
        if self._state is CacheState.CLOSED:
            return
        self._state = CacheState.CLOSED
        self._refresh.cancel()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._unsubscribe_stream()
        self._buffer.clear()
        self._data_listeners.clear()
        self._student_listeners.clear()

    def _unsubscribe_stream(self) -> None:
        unsubscribers, self._unsubscribers = self._unsubscribers, []
        for unsubscribe in unsubscribers:
            unsubscribe()

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def _fetch(self) -> StudentRecords | None:
        if self._is_staff:
            now = self._scheduler.now()
            last = self._last_bulk_load
            if last is not None and now - last < self._settings.bulk_load_min_interval:
                logger.debug(
                    "Suppressed bulk load for class %s: last one was %.3fs ago", self._class_id, now - last
                )
                return None
            self._last_bulk_load = now
            raw = await self._backend.fetch_all_student_records(self._class_id)
            return {
                student_id: [StudentColumnRecord.from_row(row) for row in rows]
                for student_id, rows in raw.items()
            }
        student_id = cast(str, self._student_id)
        rows = await self._backend.fetch_student_records(self._class_id, student_id)
        return {student_id: [StudentColumnRecord.from_row(row) for row in rows]}

    def _start_refresh(self) -> None:
        if self._state is not CacheState.READY or self._loop is None:
            return
        task = self._loop.create_task(self._do_refresh())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _do_refresh(self) -> None:
        try:
            rows = await self._fetch()
        except Exception:
            logger.debug("Background refresh of class %s failed; keeping current data", self._class_id, exc_info=True)
            return
        if rows is None or self._state is not CacheState.READY:
            return
        self._replace(rows)
        self._notify_all()

    def request_refresh(self) -> None:
        """Ask for a full refetch through the debouncer."""
        if self._state is CacheState.READY:
            self._refresh()

    def reconnected(self) -> None:
        """The change stream reconnected; messages may have been lost."""
        logger.debug("Change stream reconnected for class %s; refetching", self._class_id)
        self.request_refresh()

    def _replace(self, rows: StudentRecords) -> None:
        self._records = {student_id: list(records) for student_id, records in rows.items()}

    # ------------------------------------------------------------------
    # Change stream
    # ------------------------------------------------------------------

    def _on_message(self, message: ChangeMessage) -> None:
        if self._state is CacheState.CLOSED or message.class_id != self._class_id:
            return
        if self._state is CacheState.LOADING:
            self._buffer.append(message)
            return
        if self._state is CacheState.READY:
            self._apply(message)

    def _apply(self, message: ChangeMessage) -> None:
        if message.requires_refetch or message.operation is Operation.BULK_UPDATE:
            self.request_refresh()
            return
        if message.table == self._settings.recalc_state_table:
            self._apply_recalc_state(message)
        elif message.table == self._settings.records_table:
            self._apply_record(message)

    def _apply_recalc_state(self, message: ChangeMessage) -> None:
        data = message.data or {}
        student_id = data.get("student_id")
        if student_id is None:
            logger.debug("Ignoring recalculation message without a student: %r", message)
            return
        self.set_row_recalculating(
            student_id, bool(data.get("is_private", False)), bool(data.get("is_recalculating", False))
        )

    def _apply_record(self, message: ChangeMessage) -> None:
        data = message.data
        if message.operation is Operation.DELETE:
            record_id = (data or {}).get("id", message.row_id)
            student_id = (data or {}).get("student_id")
            if record_id is None or student_id is None:
                self.request_refresh()
                return
            self._remove(student_id, record_id)
            return
        if not data:
            self.request_refresh()
            return
        self._upsert(data)

    def _upsert(self, data: Mapping[str, Any]) -> None:
        changes = StudentColumnRecord.row_fields(data)
        student_id = changes.get("student_id")
        record_id = changes.get("id")
        if student_id is None or record_id is None:
            self.request_refresh()
            return
        if not self._is_staff and student_id != self._student_id:
            return
        records = self._records.setdefault(student_id, [])
        for i, existing in enumerate(records):
            if existing.id == record_id:
                records[i] = existing.with_changes(**changes)
                break
        else:
            try:
                records.append(StudentColumnRecord(**changes))
            except TypeError:
                logger.debug("Incomplete row in change message, refetching: %r", data)
                self.request_refresh()
                return
        self._notify_student(student_id)

    def _remove(self, student_id: str, record_id: int) -> None:
        records = self._records.get(student_id)
        if not records:
            return
        kept = [r for r in records if r.id != record_id]
        if len(kept) != len(records):
            self._records[student_id] = kept
            self._notify_student(student_id)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def set_row_recalculating(self, student_id: str, is_private: bool, is_recalculating: bool) -> None:
        """Flip ``is_recalculating`` on every record of one (student, privacy) row."""
        if self._state is CacheState.CLOSED:
            return
        records = self._records.get(student_id)
        if not records:
            return
        changed = False
        for i, record in enumerate(records):
            if record.is_private == is_private and record.is_recalculating != is_recalculating:
                records[i] = record.with_changes(is_recalculating=is_recalculating)
                changed = True
        if changed:
            self._notify_student(student_id)

    async def update_gradebook_entry(self, record_id: int, **fields: Any) -> None:
        """Write through to the backend. The change shows up via the stream."""
        if self._state is CacheState.CLOSED:
            return
        await self._backend.update_record(record_id, dict(fields))

    # ------------------------------------------------------------------
    # Queries and subscriptions
    # ------------------------------------------------------------------

    def get_student_data(self, student_id: str) -> list[StudentColumnRecord]:
        return list(self._records.get(student_id, ()))

    def students(self) -> list[str]:
        return list(self._records)

    def find_record(self, column_id: int, student_id: str, is_private: bool) -> StudentColumnRecord | None:
        """The record of the requested privacy, else the other one, else None."""
        fallback = None
        for record in self._records.get(student_id, ()):
            if record.column_id != column_id:
                continue
            if record.is_private == is_private:
                return record
            fallback = record
        return fallback

    def get_gradebook_column_student(self, column_id: int, student_id: str) -> StudentColumnRecord | None:
        """Private row for staff callers, student-visible row otherwise."""
        return self.find_record(column_id, student_id, self._is_staff)

    def subscribe_to_data(self, listener: Callable[[StudentRecords], None]) -> Subscription:
        return self._data_listeners.subscribe(listener)

    def subscribe_to_student(
        self, student_id: str, listener: Callable[[list[StudentColumnRecord]], None]
    ) -> Subscription:
        return self._student_listeners.subscribe(student_id, listener)

    def _data_snapshot(self) -> StudentRecords | object:
        if self._state is CacheState.CLOSED:
            return NO_SNAPSHOT
        return {student_id: list(records) for student_id, records in self._records.items()}

    def _student_snapshot(self, student_id: object) -> list[StudentColumnRecord] | object:
        if self._state is CacheState.CLOSED:
            return NO_SNAPSHOT
        return self.get_student_data(student_id)  # type: ignore[arg-type]

    def _notify_student(self, student_id: str) -> None:
        self._student_listeners.emit(student_id, self.get_student_data(student_id))
        self._data_listeners.emit(self._data_snapshot())  # type: ignore[arg-type]

    def _notify_all(self) -> None:
        for student_id in self._student_listeners.keys():
            self._student_listeners.emit(student_id, self.get_student_data(student_id))  # type: ignore[arg-type]
        self._data_listeners.emit(self._data_snapshot())  # type: ignore[arg-type]

    def __repr__(self) -> str:
        return f"<GradeRecordCache class={self._class_id} state={self._state.value} students={len(self._records)}>"
