"""Windowed rendering math for long lanes."""

from __future__ import annotations

import asyncio
import math

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

from .config import MIN_PERFORMANCE_THRESHOLD
from .log import debug
from .scheduling import TickScheduler


T = TypeVar("T")

DEFAULT_BUFFER = 5
DEFAULT_INITIAL_SLICE = 20


@dataclass(frozen=True)
class Window:
    """Half-open index range ``[start, end)`` of rendered rows."""

    start: int
    end: int

    def __len__(self) -> int:
        return max(self.end - self.start, 0)


@dataclass(frozen=True)
class Spacers:
    """Sizes of the blank regions before and after the window."""

    before: float
    after: float


def _finite(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def resolve_window(
    scroll_offset: float,
    viewport_size: float,
    row_size: float,
    total: int,
    buffer: int = DEFAULT_BUFFER,
) -> Window:
    """Compute the rows to render for a scroll position.

    Non-finite offsets, sizes and buffers count as zero, and negative
    offsets (overscroll) as the top of the list. A non-positive
    row size or total yields the empty window.

    Examples
    --------
    >>> resolve_window(500, 300, 50, 100, 2)
    Window(start=8, end=18)
    """
    size = _finite(row_size)
    if size <= 0 or total <= 0:
        return Window(0, 0)
    top = max(_finite(scroll_offset), 0.0)
    height = _finite(viewport_size)
    pad = int(_finite(buffer))
    start = max(math.floor(top / size) - pad, 0)
    end = max(min(math.ceil((top + height) / size) + pad, total), 0)
    return Window(min(start, end), end)


def resolve_spacers(row_size: float, start: int, end: int, total: int) -> Spacers:
    """Blank space above and below a window so the scroll extent stays correct."""
    size = _finite(row_size)
    if size <= 0 or total <= 0:
        return Spacers(0, 0)
    safe_start = max(start or 0, 0)
    safe_end = max(end or 0, 0)
    return Spacers(before=size * safe_start, after=size * max(total - safe_end, 0))


def normalize_threshold(threshold: int | None, default: int) -> int:
    """Zero disables windowing; positive values are raised to the minimum."""
    if threshold is None:
        return default
    if threshold <= 0:
        return 0
    return max(threshold, MIN_PERFORMANCE_THRESHOLD)


def should_virtualize(total_cards: int, threshold: int) -> bool:
    """Window every lane once the board holds at least ``threshold`` cards."""
    return threshold > 0 and total_cards >= threshold


class VirtualList:
    """Scroll-driven window over one lane's cards.

    Shows the first ``initial_slice`` rows until a row has been measured.
    Measurement happens once per configuration generation. Scroll updates
    are applied at most once per tick; while a tick is pending only the
    latest offset is kept.

    Parameters
    ----------
    total : int
        Number of rows.
    buffer : int
        Extra rows rendered on each side of the viewport.
    initial_slice : int
        Rows shown before the first measurement.
    row_size : float, optional
        Known row size; skips measurement.
    scheduler : TickScheduler, optional
        Tick source for scroll updates.
    """

    def __init__(
        self,
        total: int = 0,
        *,
        buffer: int = DEFAULT_BUFFER,
        initial_slice: int = DEFAULT_INITIAL_SLICE,
        row_size: float | None = None,
        scheduler: TickScheduler | None = None,
    ) -> None:
        self.total = total
        self.buffer = buffer
        self.initial_slice = initial_slice
        self.default_row_size = row_size
        self.row_size = row_size
        self.viewport_size = 0.0
        self.scroll_offset = 0.0
        self.measured_generation: int | None = None
        self._scheduler = scheduler or TickScheduler()
        self._pending_offset: float | None = None
        self._tick: asyncio.Handle | None = None

    @property
    def is_measured(self) -> bool:
        return self.row_size is not None and self.row_size > 0

    @property
    def window(self) -> Window:
        if not self.is_measured:
            return Window(0, min(self.initial_slice, max(self.total, 0)))
        return resolve_window(
            self.scroll_offset, self.viewport_size, self.row_size, self.total, self.buffer
        )

    @property
    def spacers(self) -> Spacers:
        if not self.is_measured:
            return Spacers(0, 0)
        window = self.window
        return resolve_spacers(self.row_size, window.start, window.end, self.total)

    def visible(self, items: Sequence[T]) -> Sequence[T]:
        window = self.window
        return items[window.start : window.end]

    def set_total(self, total: int) -> None:
        self.total = max(total, 0)

    def set_viewport(self, viewport_size: float) -> None:
        self.viewport_size = _finite(viewport_size)

    def measure(self, sample_size: float, generation: int) -> bool:
        """Record the rendered row size for a configuration generation.

        Returns False when the generation was already measured or the
        sample is unusable.
        """
        if self.measured_generation == generation:
            return False
        size = _finite(sample_size)
        if size <= 0:
            return False
        self.row_size = size
        self.measured_generation = generation
        debug("Row size measured.", {"row_size": size, "generation": generation})
        return True

    def scroll_to(self, offset: float) -> None:
        """Apply a scroll offset immediately."""
        self.scroll_offset = _finite(offset)

    def on_scroll(self, offset: float) -> None:
        """Queue a scroll offset for the next tick."""
        self._pending_offset = offset
        if self._tick is None:
            self._tick = self._scheduler.schedule(self._apply_pending)

    def _apply_pending(self) -> None:
        self._tick = None
        offset = self._pending_offset
        self._pending_offset = None
        if offset is not None:
            self.scroll_to(offset)

    @property
    def pending(self) -> bool:
        return self._tick is not None

    def reset(self, generation: int | None = None) -> None:
        """Drop pending scroll work and rewind to the top.

        The measurement is kept only when ``generation`` is the one it was
        taken for.
        """
        self.close()
        if generation is None or generation != self.measured_generation:
            self.row_size = self.default_row_size
            self.measured_generation = None
        self.scroll_offset = 0.0

    def close(self) -> None:
        """Cancel any pending scroll tick."""
        if self._tick is not None:
            self._tick.cancel()
        self._tick = None
        self._pending_offset = None
