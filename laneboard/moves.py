"""Optimistic card moves between lanes.

A move updates the lanes immediately, commits the new grouping value,
then refreshes from the backend. A rejected commit restores the lanes
exactly as they were.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .exceptions import parse_error
from .fields import extract_simple_field_name
from .lanes import BLANK_KEY
from .log import debug, info, log_move_error
from .models import Lane


MOVE_FAILED_TITLE = "Unable to update record"
REFRESH_FAILED_TITLE = "Refresh failed"


class MoveOutcome(str, Enum):
    IGNORED = "ignored"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    REFRESH_FAILED = "refresh_failed"


@dataclass(frozen=True)
class MoveRequest:
    record_id: str
    source_lane_key: str | None
    target_lane_key: str


@dataclass(frozen=True)
class OptimisticMove:
    """Lane snapshots on either side of a speculative move."""

    previous: list[Lane]
    next: list[Lane]
    source_key: str
    target_key: str


def find_lane(lanes: Sequence[Lane], key: str | None) -> Lane | None:
    if key is None:
        return None
    return next((lane for lane in lanes if lane.key == key), None)


def build_optimistic_lanes(
    lanes: Sequence[Lane], record_id: str, source_key: str | None, target_key: str
) -> OptimisticMove | None:
    """Move a card to the end of the target lane, marked as saving.

    The card is looked up in the source lane first, then in every lane.
    Returns None when the target lane or the card cannot be found, or
    when the card already sits in the target lane.
    """
    current = list(lanes)
    if not current:
        return None
    target = find_lane(current, target_key)
    if target is None:
        return None

    source = find_lane(current, source_key)
    card = source.find_card(record_id) if source is not None else None
    if card is None:
        source = next((lane for lane in current if lane.find_card(record_id) is not None), None)
        card = source.find_card(record_id) if source is not None else None
    if source is None or card is None:
        return None
    if source.key == target.key:
        return None

    saving = card.model_copy(update={"is_saving": True})
    next_lanes = []
    for lane in current:
        if lane.key == source.key:
            lane = lane.model_copy(update={"cards": [c for c in lane.cards if c.id != record_id]})
        elif lane.key == target.key:
            cards = [c for c in lane.cards if c.id != record_id]
            cards.append(saving)
            lane = lane.model_copy(update={"cards": cards})
        next_lanes.append(lane)
    return OptimisticMove(previous=current, next=next_lanes, source_key=source.key, target_key=target.key)


def grouping_update(lane: Lane, record_id: str, grouping_field: str, blank_key: str = BLANK_KEY) -> dict[str, Any]:
    """Field map committed for a move; the blank lane clears the value."""
    if lane.key == blank_key:
        value = None
    else:
        value = lane.raw_value if lane.raw_value is not None else lane.key
    return {
        "Id": record_id,
        extract_simple_field_name(grouping_field): None if value is None else str(value),
    }


def has_loading_summaries(lanes: Sequence[Lane]) -> bool:
    return any(summary.is_loading for lane in lanes for summary in lane.summaries)


def clear_saving_flags(lanes: Sequence[Lane]) -> list[Lane]:
    result = []
    for lane in lanes:
        if any(card.is_saving for card in lane.cards):
            lane = lane.model_copy(
                update={"cards": [card.model_copy(update={"is_saving": False}) for card in lane.cards]}
            )
        result.append(lane)
    return result


class MoveCoordinator:
    """Runs optimistic moves against a board's lanes.

    Parameters
    ----------
    get_lanes, set_lanes : callable
        Read and replace the board's lanes.
    commit : callable
        ``await commit(record_id, fields)``; raises on rejection.
    refresh : callable
        ``await refresh()``; reloads the board from the backend.
    notify : callable
        ``notify(title, message, variant)``.
    grouping_field : callable
        Returns the current grouping field path.
    blank_key : str
        Key of the lane for records without a grouping value.
    set_loading, is_loading : callable, optional
        Board loading flag accessors.
    rebuild_token : callable, optional
        Returns the board's current lane rebuild token.
    rebuild : callable, optional
        Rebuilds the lanes from the current records; used after a
        rollback when the restored snapshot is stale or still waiting
        for its summaries.
    """

    def __init__(
        self,
        get_lanes: Callable[[], list[Lane]],
        set_lanes: Callable[[list[Lane]], None],
        commit: Callable[[str, Mapping[str, Any]], Awaitable[Any]],
        refresh: Callable[[], Awaitable[Any]],
        notify: Callable[[str, str, str], None],
        grouping_field: Callable[[], str | None],
        blank_key: str = BLANK_KEY,
        set_loading: Callable[[bool], None] | None = None,
        is_loading: Callable[[], bool] | None = None,
        rebuild_token: Callable[[], int] | None = None,
        rebuild: Callable[[], None] | None = None,
    ) -> None:
        self._get_lanes = get_lanes
        self._set_lanes = set_lanes
        self._commit = commit
        self._refresh = refresh
        self._notify = notify
        self._grouping_field = grouping_field
        self._set_loading = set_loading or (lambda value: None)
        self._is_loading = is_loading or (lambda: False)
        self._rebuild_token = rebuild_token or (lambda: 0)
        self._rebuild = rebuild
        self.blank_key = blank_key
        self._pending = False

    @property
    def pending(self) -> bool:
        return self._pending

    def begin_fetch_cycle(self) -> None:
        """Allow the next move; called whenever a new record snapshot is applied."""
        self._pending = False

    async def move_card(self, request: MoveRequest) -> MoveOutcome:
        """Move a card to another lane.

        Ignored when another move is pending, the board is loading, the
        lanes match, or the card or target lane cannot be found. Never
        leaves a card marked as saving once it returns.
        """
        if self._pending or self._is_loading():
            debug("Move ignored; another update is in flight.", {"record_id": request.record_id})
            return MoveOutcome.IGNORED
        grouping_field = self._grouping_field()
        if not request.record_id or not grouping_field:
            return MoveOutcome.IGNORED
        if request.target_lane_key == request.source_lane_key:
            return MoveOutcome.IGNORED

        move = build_optimistic_lanes(
            self._get_lanes(), request.record_id, request.source_lane_key, request.target_lane_key
        )
        if move is None:
            debug("Move ignored; card or lane not found.", {"record_id": request.record_id})
            return MoveOutcome.IGNORED

        target = find_lane(move.previous, move.target_key)
        fields = grouping_update(target, request.record_id, grouping_field, self.blank_key)
        self._pending = True
        self._set_lanes(move.next)
        self._set_loading(True)
        token = self._rebuild_token()
        info(
            "Updating record grouping.",
            {"record_id": request.record_id, "source": move.source_key, "target": move.target_key},
        )
        try:
            try:
                await self._commit(request.record_id, fields)
            except Exception as exc:
                self._restore(move.previous, token)
                log_move_error(request.record_id, move.target_key, exc)
                self._notify(MOVE_FAILED_TITLE, parse_error(exc).message, "error")
                return MoveOutcome.ROLLED_BACK

            try:
                await self._refresh()
            except Exception as exc:
                self._set_lanes(clear_saving_flags(self._get_lanes()))
                log_move_error(request.record_id, move.target_key, exc)
                self._notify(REFRESH_FAILED_TITLE, parse_error(exc).message, "error")
                return MoveOutcome.REFRESH_FAILED

            # A refresh that was skipped still must not leave the card saving
            self._set_lanes(clear_saving_flags(self._get_lanes()))
            info("Record grouping updated.", {"record_id": request.record_id, "target": move.target_key})
            return MoveOutcome.COMMITTED
        finally:
            self._pending = False
            self._set_loading(False)

    def _restore(self, lanes: list[Lane], token: int) -> None:
        self._set_lanes(lanes)
        if self._rebuild is None:
            return
        stale = self._rebuild_token() != token
        if stale or has_loading_summaries(lanes):
            debug("Rebuilding lanes after rollback.", {"stale": stale})
            self._rebuild()
