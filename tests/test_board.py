"""Tests for the board: lifecycle, user events, moves and refreshes."""

from __future__ import annotations

import asyncio

import pytest

from laneboard.backend import MemoryBackend, RecordingNotifier
from laneboard.board import NOTHING_TO_REFRESH, REFRESH_COMPLETE, Board
from laneboard.config import LaneBoardSettings
from laneboard.data_mode import DataModeReason, DataModeType
from laneboard.exceptions import CommitError
from laneboard.lanes import BLANK_KEY, PARENT_BADGE_API_NAME
from laneboard.models import BoardConfig, Lane, SortDirection
from laneboard.moves import MOVE_FAILED_TITLE, MoveOutcome


def _card_ids(lanes: list[Lane]) -> list[str]:
    return sorted(card.id for lane in lanes for card in lane.cards)


def _lane(board: Board, key: str) -> list[str]:
    lane = board.find_lane(key)
    assert lane is not None
    return [card.id for card in lane.cards]


@pytest.fixture
def board(board_config, backend, notifier, settings) -> Board:
    return Board(board_config, backend, notifier=notifier, settings=settings)


class GatedBackend(MemoryBackend):
    """Holds parent-less fetches until released, one gate per call."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.gates: list[asyncio.Event] = []

    async def fetch_parentless(self, request):
        gate = asyncio.Event()
        self.gates.append(gate)
        await gate.wait()
        return await super().fetch_parentless(request)


class SlowRejectingBackend(MemoryBackend):
    """Rejects every commit after a short delay."""

    async def commit_update(self, record_id, fields):
        await asyncio.sleep(0.02)
        raise CommitError("Update rejected.")


class TestLifecycle:
    """Tests for connecting and configuring a board."""

    @pytest.mark.asyncio
    async def test_connect_loads_metadata_and_records(self, board: Board, backend: MemoryBackend):
        """Connecting resolves parent-less mode and builds lanes."""
        assert board.data_mode.reason is DataModeReason.NO_PARENT_SELECTED
        await board.connect()
        assert board.metadata is not None
        assert board.data_mode.type is DataModeType.PARENTLESS
        assert [lane.key for lane in board.lanes] == [
            "Prospecting",
            "Negotiation",
            "Closed Won",
            BLANK_KEY,
            "Legacy Stage",
        ]
        assert _card_ids(board.lanes) == ["006A", "006B", "006C", "006D", "006E", "006F"]
        assert not board.is_loading
        assert backend.fetch_requests[0].fields[:2] == ("Opportunity.Id", "Opportunity.StageName")

    @pytest.mark.asyncio
    async def test_filters_built_from_records(self, board: Board):
        """Filters without values are omitted."""
        await board.connect()
        assert [d.id for d in board.filter_definitions] == ["Opportunity.StageName"]
        assert [o.value for o in board.filter_definitions[0].options] == [
            "Prospecting",
            "Negotiation",
            "Closed Won",
            "Legacy Stage",
        ]

    @pytest.mark.asyncio
    async def test_on_change_called(self, board_config, backend, settings):
        """Visible state changes are reported; callback errors are contained."""
        seen = []

        def on_change(changed: Board) -> None:
            seen.append(len(changed.lanes))
            raise RuntimeError("listener failed")

        board = Board(board_config, backend, settings=settings, on_change=on_change)
        await board.connect()
        assert seen[-1] == 5

    @pytest.mark.asyncio
    async def test_disconnect_cancels_pending_work(self, board: Board):
        """Pending search is dropped on disconnect."""
        await board.connect()
        board.set_search_text("acme")
        board.disconnect()
        await asyncio.sleep(0.05)
        assert board.search_text == ""
        assert not board.connected

    @pytest.mark.asyncio
    async def test_apply_config_rebuilds(self, board: Board, board_config: BoardConfig):
        """A new configuration refetches and rebuilds."""
        await board.connect()
        generation = board.config_generation
        await board.apply_config(board_config.model_copy(update={"empty_group_label": "Unstaged"}))
        assert board.config_generation > generation
        assert board.find_lane(BLANK_KEY).label == "Unstaged"

    @pytest.mark.asyncio
    async def test_record_url_template(self, board_config, backend, settings):
        """Cards link through the configured template."""
        config = board_config.model_copy(update={"record_url_template": "/r/{object}/{id}/view"})
        board = Board(config, backend, settings=settings)
        await board.connect()
        card = board.find_lane("Negotiation").cards[0]
        assert card.record_url == "/r/Opportunity/006C/view"


class TestConfigurationErrors:
    """Tests for fatal configuration problems."""

    @pytest.mark.asyncio
    async def test_unsupported_grouping_type(self, board_config, backend, settings):
        """A currency grouping field is rejected and nothing is fetched."""
        config = board_config.model_copy(update={"grouping_field": "Amount"})
        board = Board(config, backend, settings=settings)
        await board.connect()
        assert board.error_message == (
            "Grouping Field API Name must reference a Picklist or String field. "
            "Amount is configured as Currency."
        )
        assert board.lanes == []
        assert board.filter_definitions == []
        assert backend.fetch_requests == []
        assert board.field_list == []

    @pytest.mark.asyncio
    async def test_missing_grouping_field(self, board_config, backend, settings):
        config = board_config.model_copy(update={"grouping_field": "Region__c"})
        board = Board(config, backend, settings=settings)
        await board.connect()
        assert "is not a field on the 'Opportunity' object" in board.error_message

    def test_parent_without_relationship(self, board_config, backend, settings):
        """A parent object without a relationship name is an error at once."""
        config = board_config.model_copy(update={"parent_object": "Account"})
        board = Board(config, backend, settings=settings)
        assert board.error_message == "Child Relationship Name is required when Parent Object API Name is set."
        assert board.lanes == []


class TestSearchFilterSort:
    """Tests for user events that rebuild lanes."""

    @pytest.mark.asyncio
    async def test_search_is_debounced(self, board: Board):
        """Search applies after the debounce delay."""
        await board.connect()
        board.set_search_text("ac")
        board.set_search_text("  ACME ")
        assert board.search_text == ""
        await board.settle()
        assert board.search_text == "ACME"
        assert _card_ids(board.lanes) == ["006A"]

    @pytest.mark.asyncio
    async def test_immediate_search(self, board: Board):
        await board.connect()
        board.set_search_text("glob", immediate=True)
        assert _card_ids(board.lanes) == ["006B"]

    @pytest.mark.asyncio
    async def test_filter_selection_and_clear(self, board: Board):
        """Selections restrict the cards; clearing restores every card and the search."""
        await board.connect()
        board.set_filter_selection("Opportunity.StageName", "Prospecting")
        assert _card_ids(board.lanes) == ["006A", "006B"]
        board.set_search_text("globex", immediate=True)
        assert _card_ids(board.lanes) == ["006B"]
        board.clear_filters()
        assert board.search_text == ""
        assert len(_card_ids(board.lanes)) == 6
        assert not board.filter_definitions[0].has_selection

    @pytest.mark.asyncio
    async def test_sort_field_and_direction(self, board: Board):
        """Cards follow the chosen field; toggling reverses it."""
        await board.connect()
        board.set_sort_field("Amount")
        assert board.sort_field == "Opportunity.Amount"
        assert _lane(board, "Prospecting") == ["006B", "006A"]
        assert board.toggle_sort_direction() is SortDirection.DESC
        assert _lane(board, "Prospecting") == ["006A", "006B"]

    @pytest.mark.asyncio
    async def test_summaries_deferred_then_computed(self, board: Board):
        """Summaries show placeholders first and values after a tick."""
        await board.connect()
        board.set_summary_definitions("Amount|SUM|Total")
        prospecting = board.find_lane("Prospecting")
        assert prospecting.summaries[0].is_loading
        await board.settle()
        prospecting = board.find_lane("Prospecting")
        assert not prospecting.summaries[0].is_loading
        assert prospecting.summaries[0].value == "$1,250.50"

    @pytest.mark.asyncio
    async def test_summary_configuration_warnings(self, board: Board):
        """Invalid summaries are reported as a warning."""
        await board.connect()
        board.set_summary_definitions("Name|SUM|Bad")
        assert board.warning_message == 'Summary field "Name" is not valid for SUM.'
        assert board.summary_definitions == []

    @pytest.mark.asyncio
    async def test_drag_over_throttled(self, board: Board):
        """The first hover applies at once; later hovers coalesce."""
        await board.connect()
        board.drag_over("Prospecting")
        board.drag_over("Negotiation")
        board.drag_over("Closed Won")
        assert board.drag_over_lane_key == "Prospecting"
        await asyncio.sleep(0.06)
        assert board.drag_over_lane_key == "Closed Won"


class TestMoves:
    """Tests for moving cards through the board."""

    @pytest.mark.asyncio
    async def test_move_commits_and_refreshes(self, board: Board, backend: MemoryBackend):
        await board.connect()
        outcome = await board.move_card("006A", "Prospecting", "Closed Won")
        assert outcome is MoveOutcome.COMMITTED
        assert backend.commits == [("006A", {"Id": "006A", "StageName": "Closed Won"})]
        assert "006A" in _lane(board, "Closed Won")
        assert not any(card.is_saving for lane in board.lanes for card in lane.cards)
        assert not board.is_loading

    @pytest.mark.asyncio
    async def test_move_to_blank_lane_clears_value(self, board: Board, backend: MemoryBackend):
        await board.connect()
        assert await board.move_card("006C", "Negotiation", BLANK_KEY) is MoveOutcome.COMMITTED
        assert backend.commits[0][1] == {"Id": "006C", "StageName": None}
        assert "006C" in _lane(board, BLANK_KEY)

    @pytest.mark.asyncio
    async def test_rejected_move_rolls_back(
        self, board: Board, backend: MemoryBackend, notifier: RecordingNotifier
    ):
        await board.connect()
        before = board.lanes
        backend.fail_next_commit()
        assert await board.move_card("006A", "Prospecting", "Closed Won") is MoveOutcome.ROLLED_BACK
        assert board.lanes == before
        assert _lane(board, "Prospecting") == ["006A", "006B"]
        assert notifier.last.title == MOVE_FAILED_TITLE
        assert notifier.last.message == "Update rejected."

    @pytest.mark.asyncio
    async def test_rejected_move_completes_pending_summaries(
        self, board_config, opportunity_records, opportunity_metadata, notifier, settings
    ):
        """Summaries still pending when the move started are computed after the rollback."""
        backend = SlowRejectingBackend(opportunity_records, {"Opportunity": opportunity_metadata})
        config = board_config.model_copy(update={"summaries": "Amount|SUM|Total"})
        board = Board(config, backend, notifier=notifier, settings=settings)
        await board.connect()
        assert await board.move_card("006A", "Prospecting", "Closed Won") is MoveOutcome.ROLLED_BACK
        await board.settle()
        prospecting = board.find_lane("Prospecting")
        assert [card.id for card in prospecting.cards] == ["006A", "006B"]
        assert not prospecting.summaries[0].is_loading
        assert prospecting.summaries[0].value == "$1,250.50"
        assert not any(card.is_saving for lane in board.lanes for card in lane.cards)
        board.disconnect()

    @pytest.mark.asyncio
    async def test_move_ignored_while_loading(self, board: Board, backend: MemoryBackend):
        await board.connect()
        board.is_loading = True
        assert await board.move_card("006A", "Prospecting", "Closed Won") is MoveOutcome.IGNORED
        assert backend.commits == []


class TestRefresh:
    """Tests for fetching and manual refresh."""

    @pytest.mark.asyncio
    async def test_manual_refresh_success(self, board: Board, notifier: RecordingNotifier):
        await board.connect()
        assert await board.manual_refresh() is True
        assert (notifier.last.title, notifier.last.message) == REFRESH_COMPLETE
        assert notifier.last.variant == "success"

    @pytest.mark.asyncio
    async def test_manual_refresh_when_not_ready(self, board: Board, notifier: RecordingNotifier):
        """Before connecting there is nothing to refresh."""
        assert await board.manual_refresh() is False
        assert (notifier.last.title, notifier.last.message) == NOTHING_TO_REFRESH
        assert notifier.last.variant == "info"

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_lanes(
        self, board: Board, backend: MemoryBackend, notifier: RecordingNotifier
    ):
        """A fetch failure reports the error and keeps the last good lanes."""
        await board.connect()
        backend.fail_next_fetch()
        assert await board.manual_refresh() is False
        assert notifier.last.title == "Refresh failed"
        assert notifier.last.variant == "error"
        assert board.error_message == "Fetch failed."
        assert len(_card_ids(board.lanes)) == 6
        board.set_search_text("acme", immediate=True)
        assert _card_ids(board.lanes) == ["006A"]
        assert await board.manual_refresh() is True
        assert board.error_message is None

    @pytest.mark.asyncio
    async def test_stale_response_discarded(self, opportunity_records, opportunity_metadata, board_config, settings):
        """Only the latest request's snapshot is applied."""
        backend = GatedBackend(opportunity_records, {"Opportunity": opportunity_metadata})
        board = Board(board_config, backend, settings=settings)
        board.connected = True
        board.set_metadata(opportunity_metadata)
        first = asyncio.create_task(board.refresh())
        await asyncio.sleep(0)
        backend.add_record(opportunity_records[0].model_copy(update={"id": "006Z"}))
        second = asyncio.create_task(board.refresh())
        await asyncio.sleep(0)
        backend.gates[1].set()
        assert await second is True
        backend.gates[0].set()
        assert await first is False
        assert "006Z" in _card_ids(board.lanes)


class TestParentMode:
    """Tests for parent-scoped boards."""

    @pytest.fixture
    def parent_config(self, board_config: BoardConfig) -> BoardConfig:
        return board_config.model_copy(
            update={
                "parent_object": "Account",
                "child_relationship": "Opportunities",
                "multiple_parent_selection": True,
            }
        )

    @pytest.mark.asyncio
    async def test_waits_for_parent(self, parent_config, backend, settings):
        board = Board(parent_config, backend, settings=settings)
        await board.connect()
        assert board.data_mode.reason is DataModeReason.NO_PARENT_SELECTED
        assert backend.fetch_requests == []

    @pytest.mark.asyncio
    async def test_multiple_parents_show_badge(self, parent_config, backend, settings):
        """Several parents fetch related records and show the parent badge."""
        board = Board(parent_config, backend, settings=settings)
        await board.connect()
        await board.select_parents(["001X", "001Y"], immediate=True)
        assert backend.fetch_requests[-1].parent_ids == ("001X", "001Y")
        assert len(_card_ids(board.lanes)) == 6
        badge = board.find_lane("Negotiation").cards[0].details[-1]
        assert badge.api_name == PARENT_BADGE_API_NAME
        assert (badge.label, badge.value) == ("Parent Account", "Account 001Y")

    @pytest.mark.asyncio
    async def test_debounced_selection(self, parent_config, backend, settings):
        """Rapid selections collapse into one fetch for the last one."""
        board = Board(parent_config, backend, settings=settings)
        await board.connect()
        board.select_parents("001Y")
        board.select_parents("001X")
        await board.settle()
        assert [r.parent_ids for r in backend.fetch_requests] == [("001X",)]
        assert _card_ids(board.lanes) == ["006A", "006B", "006F"]
        assert not board.show_parent_badge

    @pytest.mark.asyncio
    async def test_record_context(self, parent_config, backend, settings):
        """A record context scopes the board without a selection."""
        board = Board(parent_config, backend, settings=settings, record_id="001Y")
        await board.connect()
        assert board.data_mode.type is DataModeType.PARENT
        assert _card_ids(board.lanes) == ["006C", "006D", "006E"]


class TestVirtualization:
    """Tests for the board's windowing switch."""

    @pytest.mark.asyncio
    async def test_threshold(self, board_config, backend):
        settings = LaneBoardSettings(timing={"tick_ms": 0}, virtualization={"performance_threshold": 0})
        board = Board(board_config, backend, settings=settings)
        await board.connect()
        assert not board.is_virtualized
        config = board_config.model_copy(update={"performance_threshold": 5})
        board = Board(config, backend, settings=settings)
        await board.connect()
        assert board.performance_threshold == 100
        assert not board.is_virtualized

    @pytest.mark.asyncio
    async def test_virtual_list_tracks_lane(self, board: Board):
        await board.connect()
        virtual = board.virtual_list("Prospecting")
        assert virtual.total == 2
        await board.move_card("006A", "Prospecting", "Closed Won")
        assert virtual.total == 1
