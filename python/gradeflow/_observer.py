"""Typed multicast with replay-on-subscribe and idempotent unsubscribe."""

from __future__ import annotations

from collections.abc import Callable
from typing import Generic, TypeVar

T = TypeVar("T")

Listener = Callable[[T], None]


class _NoSnapshot:
    __slots__ = ()

    def __repr__(self) -> str:
        return "NO_SNAPSHOT"


NO_SNAPSHOT = _NoSnapshot()


class Subscription:
    """Handle returned by :meth:`Multicast.subscribe`. Calling it unsubscribes."""

    __slots__ = ("_multicast", "_listener", "closed")

    def __init__(self, multicast: Multicast, listener: Callable) -> None:
        self._multicast: Multicast | None = multicast
        self._listener = listener
        self.closed = False

    def __call__(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._multicast is not None:
            self._multicast._remove(self._listener)
            self._multicast = None


class Multicast(Generic[T]):
    """A list of listeners that all receive each emitted value.

    When built with a ``snapshot`` callable, every new subscriber is called
    synchronously with the current snapshot before :meth:`subscribe` returns.
    The snapshot callable may return :data:`NO_SNAPSHOT` to skip the replay.
    """

    __slots__ = ("_listeners", "_snapshot")

    def __init__(self, snapshot: Callable[[], T | _NoSnapshot] | None = None) -> None:
        self._listeners: list[Listener[T]] = []
        self._snapshot = snapshot

    def subscribe(self, listener: Listener[T]) -> Subscription:
        self._listeners.append(listener)
        subscription = Subscription(self, listener)
        if self._snapshot is not None:
            current = self._snapshot()
            if current is not NO_SNAPSHOT:
                listener(current)  # type: ignore[arg-type]
        return subscription

    def emit(self, value: T) -> None:
        # Copy so listeners may unsubscribe while being notified.
        for listener in list(self._listeners):
            listener(value)

    def clear(self) -> None:
        self._listeners.clear()

    def _remove(self, listener: Listener[T]) -> None:
        for i, existing in enumerate(self._listeners):
            if existing is listener:
                del self._listeners[i]
                return

    def __len__(self) -> int:
        return len(self._listeners)

    def __bool__(self) -> bool:
        return True


class KeyedMulticast(Generic[T]):
    """One :class:`Multicast` per key, created on first subscription."""

    __slots__ = ("_channels", "_snapshot")

    def __init__(self, snapshot: Callable[[object], T | _NoSnapshot] | None = None) -> None:
        self._channels: dict[object, Multicast[T]] = {}
        self._snapshot = snapshot

    def subscribe(self, key: object, listener: Listener[T]) -> Subscription:
        channel = self._channels.get(key)
        if channel is None:
            snapshot = self._snapshot
            channel = Multicast(None if snapshot is None else (lambda k=key: snapshot(k)))
            self._channels[key] = channel
        return channel.subscribe(listener)

    def emit(self, key: object, value: T) -> None:
        channel = self._channels.get(key)
        if channel is not None:
            channel.emit(value)

    def keys(self) -> list[object]:
        return [k for k, ch in self._channels.items() if len(ch)]

    def clear(self) -> None:
        for channel in self._channels.values():
            channel.clear()
        self._channels.clear()
