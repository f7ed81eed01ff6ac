"""Broadcast channels with independently cancellable listener handles.

Listeners are invoked in registration order on the event loop. A listener
may be a plain function or a coroutine function; coroutine results are
scheduled as tasks so a slow consumer never blocks the publisher. A
listener that raises is logged and kept registered.

Consumers that prefer pull-style access can iterate a channel::

    async for update in session.status.stream():
        ...
"""

from __future__ import annotations

import asyncio
import logging
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    FrozenSet,
    Generic,
    List,
    Optional,
    Set,
    Tuple,
    TypeVar,
)

from .core.models import SessionState, StatusUpdate

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[[T], Awaitable[None] | None]


class ListenerHandle:
    """Returned by ``add_listener``; cancelling it detaches only this listener."""

    def __init__(self, channel: "EventChannel[Any]", listener: Listener) -> None:
        self._channel = channel
        self._listener = listener
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        if not self._active:
            return
        self._active = False
        self._channel._detach(self)


class EventChannel(Generic[T]):
    def __init__(self, name: str, *, stream_buffer: int = 256) -> None:
        self._name = name
        self._handles: List[ListenerHandle] = []
        self._queues: Set["asyncio.Queue[Optional[T]]"] = set()
        self._stream_buffer = stream_buffer
        self._tasks: Set["asyncio.Task[None]"] = set()

    @property
    def name(self) -> str:
        return self._name

    @property
    def listener_count(self) -> int:
        return len(self._handles)

    def add_listener(self, listener: Listener) -> ListenerHandle:
        handle = ListenerHandle(self, listener)
        self._handles.append(handle)
        return handle

    def _detach(self, handle: ListenerHandle) -> None:
        try:
            self._handles.remove(handle)
        except ValueError:
            pass

    def publish(self, item: T) -> None:
        for handle in list(self._handles):
            if not handle.active:
                continue
            try:
                result = handle._listener(item)
            except Exception:
                LOGGER.exception("Listener on %s channel raised", self._name)
                continue
            if asyncio.iscoroutine(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._on_task_done)

        for queue in list(self._queues):
            if queue.full():
                # Slow stream consumer: drop its oldest item rather than block.
                queue.get_nowait()
            queue.put_nowait(item)

    def _on_task_done(self, task: "asyncio.Task[None]") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error(
                "Async listener on %s channel failed",
                self._name,
                exc_info=exc,
            )

    async def stream(self) -> AsyncIterator[T]:
        """Yield items published after the call until the channel closes."""

        queue: "asyncio.Queue[Optional[T]]" = asyncio.Queue(self._stream_buffer)
        self._queues.add(queue)
        try:
            while True:
                item = await queue.get()
                if item is None:
                    return
                yield item
        finally:
            self._queues.discard(queue)

    def close(self) -> None:
        """End all active streams. Listeners stay attached."""
        for queue in list(self._queues):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(None)


class StatusStream(EventChannel[StatusUpdate]):
    """Session status transitions, remembering the most recent update."""

    def __init__(self) -> None:
        super().__init__("status")
        self._current = StatusUpdate(state=SessionState.DISCONNECTED)
        self._waiters: List[
            Tuple[FrozenSet[SessionState], "asyncio.Future[StatusUpdate]"]
        ] = []

    @property
    def current(self) -> StatusUpdate:
        return self._current

    @property
    def state(self) -> SessionState:
        return self._current.state

    def publish(self, item: StatusUpdate) -> None:
        self._current = item
        for states, future in list(self._waiters):
            if item.state in states and not future.done():
                future.set_result(item)
        super().publish(item)

    async def wait_for(self, *states: SessionState, timeout: float) -> StatusUpdate:
        """Wait until the current state is one of ``states``."""

        if self._current.state in states:
            return self._current

        future: "asyncio.Future[StatusUpdate]" = (
            asyncio.get_running_loop().create_future()
        )
        entry = (frozenset(states), future)
        self._waiters.append(entry)
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        finally:
            self._waiters.remove(entry)
