"""Tests for optimistic card moves."""

from __future__ import annotations

import asyncio

import pytest

from laneboard.backend import MemoryBackend, RecordingNotifier
from laneboard.exceptions import CommitError, FetchError
from laneboard.lanes import BLANK_KEY
from laneboard.models import Card, Lane, Summary
from laneboard.moves import (
    MOVE_FAILED_TITLE,
    REFRESH_FAILED_TITLE,
    MoveCoordinator,
    MoveOutcome,
    MoveRequest,
    build_optimistic_lanes,
    clear_saving_flags,
    grouping_update,
    has_loading_summaries,
)
from tests.factories import make_record


def _lanes() -> list[Lane]:
    return [
        Lane(key="New", label="New", raw_value="New", cards=[Card(id="1", title="A"), Card(id="2", title="B")]),
        Lane(key="Working", label="Working", raw_value="Working", cards=[Card(id="3", title="C")]),
        Lane(key=BLANK_KEY, label="None"),
    ]


def _layout(lanes: list[Lane]) -> dict[str, list[str]]:
    return {lane.key: [card.id for card in lane.cards] for lane in lanes}


class Harness:
    """Holds lanes and loading state the way a board does."""

    def __init__(
        self,
        backend: MemoryBackend,
        refresh_error: BaseException | None = None,
        commit=None,
    ) -> None:
        self.lanes = _lanes()
        self.token = 0
        self.rebuilds = 0
        self.loading = False
        self.history: list[list[Lane]] = []
        self.refreshes = 0
        self.refresh_error = refresh_error
        self.notifier = RecordingNotifier()
        self.coordinator = MoveCoordinator(
            get_lanes=lambda: self.lanes,
            set_lanes=self.set_lanes,
            commit=commit or backend.commit_update,
            refresh=self.refresh,
            notify=self.notifier.notify,
            grouping_field=lambda: "Case.Status",
            set_loading=self.set_loading,
            is_loading=lambda: self.loading,
            rebuild_token=lambda: self.token,
            rebuild=self.rebuild,
        )

    def set_lanes(self, lanes: list[Lane]) -> None:
        self.history.append(lanes)
        self.lanes = lanes

    def set_loading(self, value: bool) -> None:
        self.loading = value

    def rebuild(self) -> None:
        self.rebuilds += 1

    async def refresh(self) -> None:
        self.refreshes += 1
        if self.refresh_error is not None:
            raise self.refresh_error

    async def move(self, record_id: str, source: str | None, target: str) -> MoveOutcome:
        return await self.coordinator.move_card(MoveRequest(record_id, source, target))


@pytest.fixture
def memory() -> MemoryBackend:
    return MemoryBackend(
        [
            make_record("1", Status="New"),
            make_record("2", Status="New"),
            make_record("3", Status="Working"),
        ]
    )


class TestBuildOptimisticLanes:
    """Tests for the speculative lane snapshot."""

    def test_card_appended_to_target_as_saving(self):
        """The card leaves the source and is appended to the target."""
        move = build_optimistic_lanes(_lanes(), "1", "New", "Working")
        assert move is not None
        assert _layout(move.next) == {"New": ["2"], "Working": ["3", "1"], BLANK_KEY: []}
        assert move.next[1].cards[-1].is_saving
        assert _layout(move.previous) == _layout(_lanes())

    def test_card_found_outside_named_source(self):
        """A wrong source lane falls back to searching every lane."""
        move = build_optimistic_lanes(_lanes(), "3", "New", BLANK_KEY)
        assert move is not None
        assert move.source_key == "Working"

    @pytest.mark.parametrize(
        ("record_id", "source", "target"),
        [("1", "New", "Missing"), ("9", "New", "Working"), ("1", "New", "New")],
    )
    def test_no_move(self, record_id, source, target):
        """Unknown lanes, unknown cards and same-lane drops produce nothing."""
        assert build_optimistic_lanes(_lanes(), record_id, source, target) is None

    def test_empty_board(self):
        assert build_optimistic_lanes([], "1", "New", "Working") is None


class TestGroupingUpdate:
    """Tests for the committed field map."""

    def test_value_from_lane(self):
        """The lane's raw value is written to the simple field name."""
        assert grouping_update(_lanes()[1], "1", "Case.Status") == {"Id": "1", "Status": "Working"}

    def test_blank_lane_clears(self):
        """Dropping on the blank lane clears the value."""
        assert grouping_update(_lanes()[2], "1", "Case.Status") == {"Id": "1", "Status": None}


class TestMoveCoordinator:
    """Tests for the move state machine."""

    @pytest.mark.asyncio
    async def test_committed(self, memory: MemoryBackend):
        """A successful move commits, refreshes and clears the saving flag."""
        harness = Harness(memory)
        assert await harness.move("1", "New", "Working") is MoveOutcome.COMMITTED
        assert memory.commits == [("1", {"Id": "1", "Status": "Working"})]
        assert memory.records[0].fields["Status"].raw == "Working"
        assert harness.refreshes == 1
        assert not any(card.is_saving for lane in harness.lanes for card in lane.cards)
        assert harness.history[0][1].cards[-1].is_saving
        assert not harness.loading
        assert not harness.coordinator.pending

    @pytest.mark.asyncio
    async def test_rolled_back(self, memory: MemoryBackend):
        """A rejected commit restores the previous lanes and notifies."""
        memory.fail_next_commit(CommitError("Update rejected.", errors=[{"message": "Stage is locked"}]))
        harness = Harness(memory)
        before = harness.lanes
        assert await harness.move("1", "New", "Working") is MoveOutcome.ROLLED_BACK
        assert harness.lanes == before
        assert harness.rebuilds == 0
        assert not any(card.is_saving for lane in harness.lanes for card in lane.cards)
        assert harness.refreshes == 0
        assert harness.notifier.last.title == MOVE_FAILED_TITLE
        assert harness.notifier.last.message == "Stage is locked"
        assert harness.notifier.last.variant == "error"
        assert not harness.loading

    @pytest.mark.asyncio
    async def test_rollback_rebuilds_after_newer_rebuild(self, memory: MemoryBackend):
        """Lanes rebuilt during the commit are rebuilt again after restoring."""

        async def commit(record_id, fields):
            harness.token += 1
            raise CommitError("Update rejected.")

        harness = Harness(memory, commit=commit)
        assert await harness.move("1", "New", "Working") is MoveOutcome.ROLLED_BACK
        assert harness.rebuilds == 1

    @pytest.mark.asyncio
    async def test_rollback_rebuilds_loading_summaries(self, memory: MemoryBackend):
        """A restored snapshot still waiting for summaries is rebuilt."""
        memory.fail_next_commit()
        harness = Harness(memory)
        harness.lanes = [
            lane.model_copy(update={"summaries": [Summary(key="Amount|SUM|Total", label="Total", is_loading=True)]})
            for lane in harness.lanes
        ]
        assert await harness.move("1", "New", "Working") is MoveOutcome.ROLLED_BACK
        assert harness.rebuilds == 1
        assert has_loading_summaries(harness.history[-1])

    @pytest.mark.asyncio
    async def test_refresh_failed(self, memory: MemoryBackend):
        """A failed refresh keeps the move but clears saving flags."""
        harness = Harness(memory, refresh_error=FetchError("Server unavailable"))
        assert await harness.move("1", "New", "Working") is MoveOutcome.REFRESH_FAILED
        assert _layout(harness.lanes)["Working"] == ["3", "1"]
        assert not any(card.is_saving for lane in harness.lanes for card in lane.cards)
        assert harness.notifier.last.title == REFRESH_FAILED_TITLE
        assert harness.notifier.last.message == "Server unavailable"

    @pytest.mark.asyncio
    async def test_ignored_cases(self, memory: MemoryBackend):
        """Same lane, unknown card and a loading board are ignored."""
        harness = Harness(memory)
        assert await harness.move("1", "New", "New") is MoveOutcome.IGNORED
        assert await harness.move("9", "New", "Working") is MoveOutcome.IGNORED
        harness.loading = True
        assert await harness.move("1", "New", "Working") is MoveOutcome.IGNORED
        assert memory.commits == []
        assert harness.history == []

    @pytest.mark.asyncio
    async def test_second_move_ignored_while_pending(self, memory: MemoryBackend):
        """Only one move is in flight at a time."""
        release = asyncio.Event()
        harness = Harness(memory)

        async def slow_commit(record_id, fields):
            await release.wait()
            await memory.commit_update(record_id, fields)

        harness.coordinator._commit = slow_commit
        first = asyncio.create_task(harness.move("1", "New", "Working"))
        await asyncio.sleep(0)
        assert harness.coordinator.pending
        assert await harness.move("2", "New", "Working") is MoveOutcome.IGNORED
        release.set()
        assert await first is MoveOutcome.COMMITTED
        assert [record_id for record_id, _ in memory.commits] == ["1"]

    @pytest.mark.asyncio
    async def test_begin_fetch_cycle_releases(self, memory: MemoryBackend):
        """A new record snapshot allows the next move."""
        harness = Harness(memory)
        harness.coordinator._pending = True
        harness.coordinator.begin_fetch_cycle()
        assert await harness.move("1", "New", "Working") is MoveOutcome.COMMITTED


class TestClearSavingFlags:
    def test_clears_only_saving_lanes(self):
        """Lanes without saving cards are returned unchanged."""
        lanes = _lanes()
        lanes[0] = lanes[0].model_copy(update={"cards": [Card(id="1", is_saving=True)]})
        cleared = clear_saving_flags(lanes)
        assert not cleared[0].cards[0].is_saving
        assert cleared[1] is lanes[1]
