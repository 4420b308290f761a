"""Event-loop timers used by the board: ticks, debounce, throttle.

All helpers schedule on the running asyncio loop. Callbacks may be plain
functions or coroutine functions; coroutine results run as tasks and
their failures are logged, never raised into the loop.
"""

from __future__ import annotations

import asyncio
import inspect

from collections.abc import Callable
from typing import Any

from .log import warn


def _run_callback(
    name: str, callback: Callable[..., Any], tasks: set[asyncio.Task[Any]], *args: Any
) -> None:
    try:
        result = callback(*args)
    except Exception as e:
        warn(f"Error in {name} callback: {e}")
        return
    if inspect.isawaitable(result):
        task = asyncio.ensure_future(result)
        tasks.add(task)
        task.add_done_callback(lambda t: _task_done(name, tasks, t))


def _task_done(name: str, tasks: set[asyncio.Task[Any]], task: asyncio.Task[Any]) -> None:
    tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        warn(f"Error in {name} callback: {exc}")


def _cancel_tasks(tasks: set[asyncio.Task[Any]]) -> None:
    for task in list(tasks):
        task.cancel()
    tasks.clear()


class Generation:
    """Monotonic token used to discard stale deferred work."""

    def __init__(self) -> None:
        self._value = 0

    @property
    def value(self) -> int:
        return self._value

    def next(self) -> int:
        """Advance and return the new token."""
        self._value += 1
        return self._value

    def is_current(self, token: int) -> bool:
        return token == self._value


class TickScheduler:
    """Run callbacks on the next scheduling tick.

    Parameters
    ----------
    tick_ms : int
        Tick length in milliseconds. Zero schedules with ``call_soon``.
    """

    def __init__(self, tick_ms: int = 16) -> None:
        self.tick_ms = tick_ms
        self._handles: set[asyncio.Handle] = set()
        self._tasks: set[asyncio.Task[Any]] = set()

    def schedule(self, callback: Callable[..., Any], *args: Any) -> asyncio.Handle:
        """Schedule ``callback(*args)`` for the next tick."""
        loop = asyncio.get_running_loop()
        handle: asyncio.Handle

        def fire() -> None:
            self._handles.discard(handle)
            _run_callback("tick", callback, self._tasks, *args)

        if self.tick_ms <= 0:
            handle = loop.call_soon(fire)
        else:
            handle = loop.call_later(self.tick_ms / 1000, fire)
        self._handles.add(handle)
        return handle

    @property
    def pending(self) -> int:
        return len(self._handles) + len(self._tasks)

    def cancel_all(self) -> None:
        """Cancel every tick not yet fired and every coroutine a tick started."""
        for handle in self._handles:
            handle.cancel()
        self._handles.clear()
        _cancel_tasks(self._tasks)


class Debouncer:
    """Trailing-edge debounce.

    Each call cancels the pending timer and reschedules; only the last
    arguments are delivered once the delay elapses without a new call.
    """

    def __init__(self, delay_ms: int, callback: Callable[..., Any], name: str = "debounce") -> None:
        self.delay_ms = delay_ms
        self.name = name
        self._callback = callback
        self._handle: asyncio.TimerHandle | None = None
        self._args: tuple[Any, ...] = ()
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def pending(self) -> bool:
        return self._handle is not None or bool(self._tasks)

    def __call__(self, *args: Any) -> None:
        loop = asyncio.get_running_loop()
        self._args = args

        # Cancel existing timer
        if self._handle is not None:
            self._handle.cancel()

        self._handle = loop.call_later(self.delay_ms / 1000, self._fire)

    def _fire(self) -> None:
        args = self._args
        self._handle = None
        self._args = ()
        _run_callback(self.name, self._callback, self._tasks, *args)

    def flush(self) -> None:
        """Deliver the pending call now, if any."""
        if self._handle is None:
            return
        self._handle.cancel()
        self._fire()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        self._handle = None
        self._args = ()
        _cancel_tasks(self._tasks)


class Throttler:
    """Leading and trailing edge throttle.

    The first call runs immediately. Calls inside the interval are
    coalesced into one trailing call with the latest arguments.
    """

    def __init__(
        self, interval_ms: int, callback: Callable[..., Any], name: str = "throttle"
    ) -> None:
        self.interval_ms = interval_ms
        self.name = name
        self._callback = callback
        self._handle: asyncio.TimerHandle | None = None
        self._trailing_args: tuple[Any, ...] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def pending(self) -> bool:
        return self._trailing_args is not None or bool(self._tasks)

    def __call__(self, *args: Any) -> None:
        if self._handle is None:
            _run_callback(self.name, self._callback, self._tasks, *args)
            self._start_window()
            return
        self._trailing_args = args

    def _start_window(self) -> None:
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.interval_ms / 1000, self._window_elapsed)

    def _window_elapsed(self) -> None:
        self._handle = None
        args = self._trailing_args
        if args is None:
            return
        self._trailing_args = None
        _run_callback(self.name, self._callback, self._tasks, *args)
        self._start_window()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        self._handle = None
        self._trailing_args = None
        _cancel_tasks(self._tasks)
