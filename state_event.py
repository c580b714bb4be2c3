"""Markers and runtime support for generated one-shot state events.

A UI state record marks its transient fields with ``StateEvent`` metadata:

    @ui_state
    class ScreenState:
        loading: bool = False
        message: Annotated[str | None, StateEvent()] = None
        navigate_to: Annotated[
            str | None,
            StateEvent(
                consume_operation_name="consumeNavigation",
                ordering_policy=EventType.CONSUME_THEN_ACTION,
            ),
        ] = None

`stategen` reads these markers from source and writes a sibling module with
one consume function per field plus a dispatcher that fires each pending
event exactly once through an ``EffectScope``.
"""

from __future__ import annotations

import asyncio
import dataclasses
import inspect
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from types import TracebackType
from typing import Any, Generic, Protocol, TypeVar

T = TypeVar("T")


# ===--- Markers ---=== #


class EventType(Enum):
    """Ordering between an event's side effect and its reset.

    ACTION_THEN_CONSUME (alias STANDARD) runs the callback first, then resets
    the field. Suited to messages, toasts and snackbars.

    CONSUME_THEN_ACTION (alias NAVIGATION) resets the field first, then runs
    the callback, so a navigation can never be replayed.
    """

    ACTION_THEN_CONSUME = "action_then_consume"
    CONSUME_THEN_ACTION = "consume_then_action"
    STANDARD = "action_then_consume"
    NAVIGATION = "consume_then_action"


@dataclass(frozen=True)
class StateEvent:
    """Field marker read by stategen. Has no runtime behavior.

    Attributes:
        consume_operation_name: Name of the generated reset function. Empty
            means derived from the field name (``consume<FieldName>``).
        ordering_policy: Whether the callback runs before or after the reset.
        handler_name: Name of the dispatcher callback parameter. Empty means
            derived from the field name (``on<FieldName>``).
    """

    consume_operation_name: str = ""
    ordering_policy: EventType = EventType.ACTION_THEN_CONSUME
    handler_name: str = ""


def ui_state(cls: type[T]) -> type[T]:
    """Mark ``cls`` as a UI state record, making it a frozen dataclass.

    Classes that are already dataclasses must be frozen.
    """
    if dataclasses.is_dataclass(cls):
        params = getattr(cls, "__dataclass_params__")
        if not params.frozen:
            raise TypeError(f"@ui_state requires a frozen dataclass: {cls.__name__}")
        return cls
    return dataclass(frozen=True)(cls)


# ===--- State holder capability ---=== #


class StateEventHandler(Protocol[T]):
    """Capability exposed by whatever owns a UI state record.

    Generated consume functions only ever call ``update_ui_state``; the
    transform receives the current record and returns its replacement.
    """

    def update_ui_state(self, transform: Callable[[T], T]) -> None: ...


class StateStore(Generic[T]):
    """Thread-safe holder of one immutable state record.

    Every update replaces the whole record under a lock. Listeners are called
    with the new record after each update that changed it.
    """

    def __init__(self, initial: T):
        self._value = initial
        self._lock = threading.Lock()
        self._listeners: list[Callable[[T], None]] = []

    @property
    def value(self) -> T:
        return self._value

    def update(self, transform: Callable[[T], T]) -> T:
        with self._lock:
            previous = self._value
            self._value = transform(previous)
            current = self._value
            listeners = tuple(self._listeners)
        if current != previous:
            for listener in listeners:
                listener(current)
        return current

    def update_ui_state(self, transform: Callable[[T], T]) -> None:
        self.update(transform)

    def subscribe(self, listener: Callable[[T], None]) -> Callable[[], None]:
        """Register ``listener``; returns a callable that unregisters it."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe


# ===--- Effect scheduling ---=== #


async def run_callback(callback: Callable[[Any], Any], value: Any) -> None:
    """Call ``callback(value)`` and await the result when it is awaitable."""
    result = callback(value)
    if inspect.isawaitable(result):
        await result


_NO_KEY = object()


class EffectScope:
    """Keyed effect launcher for generated dispatchers.

    Each slot (one per event field) remembers the key it last launched with.
    Launching with an equal key is a no-op; a different key cancels the
    slot's running sequence and starts a new one. Must be used from inside a
    running event loop.

    A sequence that fails is collected as soon as it finishes, even when a
    later launch replaces it. The first collected failure is raised by the
    next ``join()``, or when leaving ``async with`` without another error.
    """

    def __init__(self) -> None:
        self._keys: dict[str, object] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._failures: list[BaseException] = []

    def launch(
        self, slot: str, key: object, block: Callable[[], Awaitable[None]]
    ) -> bool:
        """Start ``block()`` for ``slot`` unless ``key`` already fired there.

        Returns:
            True when a new sequence was started.
        """
        if self._keys.get(slot, _NO_KEY) == key:
            return False
        self._keys[slot] = key
        previous = self._tasks.pop(slot, None)
        if previous is not None and not previous.done():
            previous.cancel()
        task = asyncio.get_running_loop().create_task(block())
        task.add_done_callback(self._collect_failure)
        self._tasks[slot] = task
        return True

    def release(self, slot: str) -> None:
        """Forget the key of ``slot`` without cancelling its sequence."""
        self._keys.pop(slot, None)

    def active_slots(self) -> frozenset[str]:
        return frozenset(slot for slot, task in self._tasks.items() if not task.done())

    def _collect_failure(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        failure = task.exception()
        if failure is not None:
            self._failures.append(failure)

    def _raise_failure(self) -> None:
        if self._failures:
            failure = self._failures[0]
            self._failures.clear()
            raise failure

    async def join(self) -> None:
        """Wait until every launched sequence finished.

        Sequences started while waiting are awaited too. The first failure
        collected since the last report is raised; cancelled sequences are
        skipped.
        """
        while True:
            pending = [task for task in self._tasks.values() if not task.done()]
            if not pending:
                break
            await asyncio.wait(pending)
        # Done callbacks of sequences that just finished run before this resumes.
        await asyncio.sleep(0)
        self._raise_failure()

    async def cancel(self) -> None:
        """Cancel every running sequence and wait for the cancellations."""
        running = [task for task in self._tasks.values() if not task.done()]
        for task in running:
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        await asyncio.sleep(0)
        self._tasks.clear()
        self._keys.clear()

    async def __aenter__(self) -> EffectScope:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.cancel()
        if exc is None:
            self._raise_failure()
        else:
            self._failures.clear()
