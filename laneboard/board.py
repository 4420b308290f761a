"""The lane board: state owner and control flow.

A :class:`Board` owns every cache (field values, pattern tokens, data
mode), the current records, lanes, filters and messages, and all
pending timers. Mutation happens on the event loop thread only.
"""

from __future__ import annotations

import asyncio

from collections.abc import Callable, Iterable, Sequence
from typing import Any

from .backend import MetadataProvider, Notifier, RecordingNotifier, RecordSource, RecordUpdater
from .config import LaneBoardSettings, get_settings
from .data_mode import (
    DataMode,
    DataModeInputs,
    DataModeResolver,
    DataModeType,
    FetchRequest,
    build_fetch_request,
    build_field_list,
    is_grouping_optional,
    mode_error,
    normalize_parent_selection,
    validate_grouping_field,
)
from .datetime_format import PatternTokenCache
from .exceptions import ConfigurationError, FetchError, parse_error
from .fields import (
    FieldDataCache,
    FieldResolver,
    format_object_label,
    parse_field_list,
    unique_fields,
)
from .filters import (
    FilterDefinition,
    FilterTarget,
    build_filter_definitions,
    clear_filter_selections,
    filter_blueprints,
    filter_value_key,
    filter_value_label,
    normalize_search_value,
    record_matches_filters,
    record_matches_search,
    update_filter_selection,
)
from .lanes import (
    BLANK_KEY,
    DEFAULT_BLANK_LABEL,
    DEFAULT_PARENT_BADGE_LABEL,
    LaneBuildOptions,
    build_lanes,
    declared_lanes_for,
)
from .log import debug, error, info, set_format, set_level, warn
from .models import BoardConfig, Lane, ObjectMetadata, Record, SortDirection, SummaryDefinition
from .moves import MoveCoordinator, MoveOutcome, MoveRequest
from .scheduling import Debouncer, Generation, Throttler, TickScheduler
from .summaries import (
    apply_summary_placeholders,
    collect_runtime_warnings,
    combine_warnings,
    parse_summary_definitions,
    should_defer_summaries,
    validate_summary_definitions,
)
from .virtualization import VirtualList, normalize_threshold, should_virtualize


NOTHING_TO_REFRESH = ("Nothing to refresh", "Configure the board to enable refresh.")
REFRESH_COMPLETE = ("Refresh complete", "Board updated.")
REFRESH_FAILED_TITLE = "Refresh failed"


def _has_running_loop() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


class Board:
    """A lane board over one card object.

    Parameters
    ----------
    config : BoardConfig, optional
        Per-board configuration.
    backend : RecordSource, optional
        Record source. When it also implements :class:`RecordUpdater`
        or :class:`MetadataProvider` those roles are taken from it too.
    notifier : Notifier, optional
        Receives user-facing messages; a :class:`RecordingNotifier` by default.
    settings : LaneBoardSettings, optional
        Locale, timing and virtualization settings; the global settings by default.
    on_change : callable, optional
        Called with the board after every visible state change.
    record_id : str, optional
        Record context; when set the board is scoped to that parent.
    """

    def __init__(
        self,
        config: BoardConfig | None = None,
        backend: RecordSource | None = None,
        *,
        notifier: Notifier | None = None,
        settings: LaneBoardSettings | None = None,
        on_change: Callable[[Board], Any] | None = None,
        record_id: str | None = None,
        updater: RecordUpdater | None = None,
        metadata_provider: MetadataProvider | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        set_level(self.settings.log.level)
        set_format(self.settings.log.format)

        self.config = config or BoardConfig()
        self.source = backend
        self.updater = updater or (backend if isinstance(backend, RecordUpdater) else None)
        self.metadata_provider = metadata_provider or (
            backend if isinstance(backend, MetadataProvider) else None
        )
        self.notifier = notifier or RecordingNotifier()
        self.on_change = on_change
        self.context_record_id = record_id

        self.field_cache = FieldDataCache()
        self.pattern_cache = PatternTokenCache()
        self.resolver = self._make_resolver(None)
        self.metadata: ObjectMetadata | None = None

        self.records: list[Record] = []
        self.lanes: list[Lane] = []
        self.filter_definitions: list[FilterDefinition] = []
        self.summary_definitions: list[SummaryDefinition] = []
        self.search_text = ""
        self.sort_field: str | None = None
        self.sort_direction = SortDirection.ASC
        self.selected_parent_ids: tuple[str, ...] = ()
        self.drag_over_lane_key: str | None = None
        self.error_message: str | None = None
        self.configuration_error: str | None = None
        self.warning_message: str | None = None
        self.is_loading = False
        self.connected = False

        self._summary_warnings: list[str] = []
        self._runtime_warnings: list[str] = []
        self._config_generation = 0
        self._requests = Generation()
        self._rebuilds = Generation()
        self._data_mode = DataModeResolver()
        self._virtual_lists: dict[str, VirtualList] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

        timing = self.settings.timing
        self._ticks = TickScheduler(timing.tick_ms)
        self._search_debouncer = Debouncer(timing.search_debounce_ms, self._apply_search, "search")
        self._parent_debouncer = Debouncer(
            timing.parent_selection_debounce_ms, self._start_parent_selection, "parent selection"
        )
        self._drag_throttler = Throttler(timing.drag_over_throttle_ms, self._apply_drag_over, "drag over")
        self._moves = MoveCoordinator(
            get_lanes=lambda: self.lanes,
            set_lanes=self._set_lanes,
            commit=self._commit,
            refresh=self.refresh,
            notify=self.notifier.notify,
            grouping_field=lambda: self.grouping_field,
            blank_key=BLANK_KEY,
            set_loading=self._set_loading,
            is_loading=lambda: self.is_loading,
            rebuild_token=lambda: self._rebuilds.value,
            rebuild=self.rebuild_lanes,
        )
        self._configure("init")

    # ── Derived configuration ─────────────────────────────────────────

    def _make_resolver(self, metadata: ObjectMetadata | None) -> FieldResolver:
        locale = self.settings.locale
        return FieldResolver(
            self.config.card_object,
            metadata,
            pattern=self.date_time_format,
            locale=locale.locale,
            time_zone=locale.time_zone,
            currency=locale.currency,
            cache=self.field_cache,
            pattern_cache=self.pattern_cache,
        )

    @property
    def date_time_format(self) -> str | None:
        return self.config.date_time_format or self.settings.locale.date_time_format

    @property
    def grouping_field(self) -> str | None:
        return self.resolver.qualify(self.config.grouping_field)

    @property
    def card_fields(self) -> list[str]:
        return unique_fields(parse_field_list(self.config.card_fields, self.config.card_object))

    @property
    def default_title_field(self) -> str | None:
        return self.resolver.default_display_field()

    @property
    def sort_fields(self) -> list[str]:
        return unique_fields(parse_field_list(self.config.sort_fields, self.config.card_object))

    @property
    def filter_fields(self) -> list[str]:
        return unique_fields(parse_field_list(self.config.filter_fields, self.config.card_object))

    @property
    def search_fields(self) -> list[str]:
        configured = unique_fields(parse_field_list(self.config.search_fields, self.config.card_object))
        if configured:
            return configured
        fallback = self.default_title_field
        return [fallback] if fallback else []

    @property
    def card_field_icons(self) -> list[str]:
        if not self.config.card_field_icons:
            return []
        return [entry.strip() for entry in self.config.card_field_icons.split(",")]

    @property
    def parent_badge_label(self) -> str:
        base = self.config.parent_object_label or format_object_label(self.config.parent_object)
        return f"{DEFAULT_PARENT_BADGE_LABEL} {base}" if base else DEFAULT_PARENT_BADGE_LABEL

    @property
    def show_parent_badge(self) -> bool:
        return self.config.multiple_parent_selection and len(self.selected_parent_ids) > 1

    @property
    def performance_threshold(self) -> int:
        return normalize_threshold(
            self.config.performance_threshold, self.settings.virtualization.performance_threshold
        )

    @property
    def is_virtualized(self) -> bool:
        return should_virtualize(sum(len(lane.cards) for lane in self.lanes), self.performance_threshold)

    @property
    def data_mode(self) -> DataMode:
        return self._data_mode.resolve(
            DataModeInputs(
                card_object=self.config.card_object,
                grouping_field=self.config.grouping_field,
                parent_object=self.config.parent_object,
                relationship_name=self.config.child_relationship,
                context_record_id=self.context_record_id,
                selected_parent_ids=self.selected_parent_ids,
                connected=self.connected,
            )
        )

    @property
    def field_list(self) -> list[str]:
        """Fields requested from the backend; empty while the board cannot fetch."""
        grouping_field = self.grouping_field
        if self.configuration_error or not grouping_field or not self.data_mode.ready:
            return []
        return build_field_list(
            self.resolver,
            grouping_field=grouping_field,
            card_fields=self.card_fields or [f for f in (self.default_title_field,) if f],
            sort_fields=self.sort_fields,
            filter_fields=self.filter_fields,
            search_fields=self.search_fields,
            summary_definitions=self.summary_definitions,
        )

    @property
    def fallback_sort_field(self) -> str | None:
        card_fields = self.card_fields
        return card_fields[0] if card_fields else self.default_title_field

    def fetch_request(self) -> FetchRequest:
        return build_fetch_request(
            self.data_mode,
            self.field_list,
            object_name=self.config.card_object,
            relationship_name=self.config.child_relationship,
            sort_field=self.sort_field or self.fallback_sort_field,
            sort_direction=self.sort_direction,
            limit=self.config.record_limit or self.settings.fetch.page_size,
            where_clause=self.config.record_where_clause,
            order_clause=self.config.record_order_clause,
        )

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def connect(self) -> None:
        """Mount the board: load metadata, then fetch when the mode allows it."""
        self.connected = True
        self._data_mode.invalidate()
        debug("Board connected.", {"mode": self.data_mode.type})
        await self.load_metadata()
        if self.data_mode.ready and not self.configuration_error:
            try:
                await self.refresh()
            except Exception as exc:
                warn(f"Initial refresh failed: {exc}")

    def disconnect(self) -> None:
        """Unmount the board and cancel every pending timer and tick."""
        self.connected = False
        self._data_mode.invalidate()
        self._requests.next()
        self._rebuilds.next()
        self._search_debouncer.cancel()
        self._parent_debouncer.cancel()
        self._drag_throttler.cancel()
        self._ticks.cancel_all()
        for task in self._tasks:
            task.cancel()
        for virtual_list in self._virtual_lists.values():
            virtual_list.close()
        debug("Board disconnected.")

    async def apply_config(self, config: BoardConfig) -> None:
        """Replace the configuration, rebuild derived state and refetch when ready."""
        object_changed = config.card_object != self.config.card_object
        self.config = config
        if object_changed:
            self.metadata = None
        self._configure("config")
        if object_changed and self.connected:
            await self.load_metadata()
        if self.connected and self.data_mode.ready and not self.configuration_error:
            await self.refresh()

    def _configure(self, reason: str) -> None:
        self._config_generation += 1
        self.field_cache.invalidate(reason)
        self.pattern_cache.invalidate(reason)
        self._data_mode.invalidate()
        self.resolver = self._make_resolver(self.metadata)
        for virtual_list in self._virtual_lists.values():
            virtual_list.reset(self._config_generation)
        if self.sort_field and self.sort_field not in self.sort_fields:
            self.sort_field = None
        self.error_message = None
        self.configuration_error = None
        self.refresh_summary_definitions()
        if self._validate():
            self._rebuild_filters()
            self.rebuild_lanes()

    def _validate(self) -> bool:
        """Check the grouping field and the data mode; present the first error."""
        try:
            validate_grouping_field(self.resolver, self.grouping_field)
            problem = mode_error(self.data_mode)
            if problem is not None:
                raise problem
        except ConfigurationError as exc:
            self._present_configuration_error(exc)
            return False
        return True

    def _present_configuration_error(self, exc: ConfigurationError) -> None:
        warn(f"Board configuration error: {exc}")
        self.lanes = []
        self.filter_definitions = []
        self.error_message = exc.message
        self.configuration_error = exc.message
        self.is_loading = False
        self._notify_change()

    async def load_metadata(self) -> ObjectMetadata | None:
        """Fetch card object metadata from the provider, if there is one."""
        if self.metadata_provider is None or not self.config.card_object:
            return None
        try:
            metadata = await self.metadata_provider.get_object_metadata(self.config.card_object)
        except Exception as exc:
            warn(f"Metadata load failed for {self.config.card_object}: {exc}")
            return None
        if metadata is not None:
            self.set_metadata(metadata)
        return metadata

    def set_metadata(self, metadata: ObjectMetadata | None) -> None:
        """Apply object metadata; may arrive before or after the first records."""
        self.metadata = metadata
        self._configure("metadata")

    # ── Fetching ──────────────────────────────────────────────────────

    async def refresh(self) -> bool:
        """Fetch a fresh record snapshot.

        Responses to superseded requests are discarded.

        Returns
        -------
        bool
            True when a snapshot was applied.

        Raises
        ------
        FetchError
            The backend fetch failed; ``error_message`` is set.
        """
        if self.source is None:
            warn("Cannot refresh records; no record source configured.")
            return False
        request = self.fetch_request()
        if not request.ready:
            warn("Cannot refresh records; required configuration missing.", {"reason": request.reason})
            return False

        token = self._requests.next()
        self.is_loading = True
        info("Refreshing card records.", {"mode": request.mode, "parents": len(request.parent_ids), "token": token})
        try:
            if request.mode is DataModeType.PARENT:
                records = await self.source.fetch_related(request)
            else:
                records = await self.source.fetch_parentless(request)
        except Exception as exc:
            if self._requests.is_current(token):
                self.error_message = parse_error(exc).message
                self.is_loading = False
                error("Card records refresh failed.", {"error": str(exc)})
                self._notify_change()
            if isinstance(exc, FetchError):
                raise
            raise FetchError(str(exc), mode=request.mode.value if request.mode else None) from exc

        if not self._requests.is_current(token):
            debug("Discarding stale record snapshot.", {"token": token, "current": self._requests.value})
            return False
        self.is_loading = False
        self.error_message = None
        self.apply_records_snapshot(records or [])
        return True

    async def manual_refresh(self) -> bool:
        """User-initiated refresh with a notification for every outcome."""
        if not self.data_mode.ready or not self.field_list:
            self.notifier.notify(*NOTHING_TO_REFRESH, "info")
            return False
        try:
            applied = await self.refresh()
        except Exception as exc:
            self.notifier.notify(REFRESH_FAILED_TITLE, parse_error(exc).message, "error")
            return False
        if applied:
            self.notifier.notify(*REFRESH_COMPLETE, "success")
        return applied

    def apply_records_snapshot(self, records: Iterable[Record]) -> None:
        """Replace the record set and rebuild filters and lanes."""
        self.records = list(records)
        self.field_cache.invalidate("records")
        self._moves.begin_fetch_cycle()
        info("Card snapshot applied.", {"records": len(self.records)})
        if self.configuration_error:
            return
        self._rebuild_filters()
        self.rebuild_lanes()

    # ── Building ──────────────────────────────────────────────────────

    def refresh_summary_definitions(self) -> None:
        definitions, warnings = parse_summary_definitions(self.config.summaries)
        valid, validation_warnings = validate_summary_definitions(definitions, self.resolver)
        self.summary_definitions = valid
        self._summary_warnings = [*warnings, *validation_warnings]
        self._update_warning_message()

    def _update_warning_message(self) -> None:
        self.warning_message = combine_warnings(self._summary_warnings, self._runtime_warnings)

    def _rebuild_filters(self) -> None:
        blueprints = filter_blueprints(self.resolver, self.filter_fields)
        self.filter_definitions = build_filter_definitions(
            self.records,
            blueprints,
            self.filter_definitions,
            self._filter_key,
            lambda record, blueprint, fallback: filter_value_label(self.resolver, record, blueprint, fallback),
            self.resolver.enumeration_order,
        )

    def _filter_key(self, record: Record, blueprint: FilterTarget) -> str:
        return filter_value_key(self.resolver, record, blueprint)

    def is_record_included(self, record: Record) -> bool:
        """Filters and search both have to match."""
        if not record_matches_filters(record, self.filter_definitions, self._filter_key):
            return False
        return record_matches_search(record, self.search_text, self.search_fields, self.resolver)

    def _record_url(self, record: Record) -> str | None:
        template = self.config.record_url_template
        if not template:
            return None
        return template.format(object=self.config.card_object or "", id=record.id)

    def lane_build_options(self, summaries: Sequence[SummaryDefinition] | None = None) -> LaneBuildOptions:
        card_fields = self.card_fields
        default_title = self.default_title_field
        grouping_field = self.grouping_field
        return LaneBuildOptions(
            grouping_field=grouping_field,
            resolver=self.resolver,
            card_fields=card_fields,
            default_title_field=default_title,
            blank_label=self.config.empty_group_label or DEFAULT_BLANK_LABEL,
            declared_lanes=declared_lanes_for(self.resolver, grouping_field),
            grouping_optional=is_grouping_optional(self.resolver, grouping_field),
            sort_field=self.sort_field,
            fallback_sort_field=self.fallback_sort_field,
            sort_direction=self.sort_direction,
            card_field_icons=self.card_field_icons,
            show_field_labels=self.config.show_field_labels,
            show_parent_badge=self.show_parent_badge,
            parent_badge_label=self.parent_badge_label,
            summary_definitions=list(self.summary_definitions if summaries is None else summaries),
            is_record_included=self.is_record_included,
            record_url=self._record_url,
        )

    def rebuild_lanes(self) -> None:
        """Rebuild every lane from the current records.

        With summaries configured and records present, lanes are built
        with placeholders and the summaries follow on the next tick.
        """
        if self.configuration_error:
            self.lanes = []
            self._notify_change()
            return
        token = self._rebuilds.next()
        defer = (
            self.connected
            and _has_running_loop()
            and should_defer_summaries(self.summary_definitions, self.records)
        )
        if defer:
            result = build_lanes(self.records, self.lane_build_options(summaries=[]))
            self._set_lanes(apply_summary_placeholders(result.lanes, self.summary_definitions))
            self._ticks.schedule(self._complete_summaries, token)
            debug("Summary rebuild scheduled.", {"token": token})
        else:
            result = build_lanes(self.records, self.lane_build_options())
            self._runtime_warnings = result.warnings
            self._update_warning_message()
            self._set_lanes(result.lanes)

    def _complete_summaries(self, token: int) -> None:
        if not self._rebuilds.is_current(token) or not self.connected:
            debug("Skipping stale summary rebuild.", {"token": token})
            return
        result = build_lanes(self.records, self.lane_build_options())
        self._runtime_warnings = collect_runtime_warnings(result.lanes)
        self._update_warning_message()
        self._set_lanes(result.lanes)

    def _set_lanes(self, lanes: list[Lane]) -> None:
        self.lanes = lanes
        for lane in lanes:
            virtual_list = self._virtual_lists.get(lane.key)
            if virtual_list is not None:
                virtual_list.set_total(len(lane.cards))
        self._notify_change()

    def _set_loading(self, value: bool) -> None:
        self.is_loading = value

    def _notify_change(self) -> None:
        if self.on_change is None:
            return
        try:
            self.on_change(self)
        except Exception as e:
            warn(f"Error in board change callback: {e}")

    def find_lane(self, key: str) -> Lane | None:
        return next((lane for lane in self.lanes if lane.key == key), None)

    def virtual_list(self, lane_key: str) -> VirtualList:
        """Window controller for one lane, created on first use."""
        virtual_list = self._virtual_lists.get(lane_key)
        if virtual_list is None:
            settings = self.settings.virtualization
            lane = self.find_lane(lane_key)
            virtual_list = VirtualList(
                len(lane.cards) if lane else 0,
                buffer=settings.buffer,
                initial_slice=settings.initial_slice,
                row_size=settings.default_row_size,
                scheduler=self._ticks,
            )
            self._virtual_lists[lane_key] = virtual_list
        return virtual_list

    @property
    def config_generation(self) -> int:
        return self._config_generation

    # ── User events ───────────────────────────────────────────────────

    def set_search_text(self, text: Any, *, immediate: bool = False) -> None:
        """Search after the debounce delay (or at once)."""
        normalized = normalize_search_value(text)
        if immediate:
            self._search_debouncer.cancel()
            self._apply_search(normalized)
            return
        self._search_debouncer(normalized)

    def flush_search(self) -> None:
        self._search_debouncer.flush()

    async def settle(self) -> None:
        """Wait until debounced input, parent reloads and deferred summaries have been applied."""
        delay = max(self.settings.timing.tick_ms, 1) / 1000
        while True:
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
            await asyncio.sleep(delay)
            if not (
                self._tasks
                or self._ticks.pending
                or self._search_debouncer.pending
                or self._parent_debouncer.pending
            ):
                return

    def _apply_search(self, text: str) -> None:
        if text == self.search_text:
            return
        debug("Search applied.", {"length": len(text)})
        self.search_text = text
        self.rebuild_lanes()

    def set_filter_selection(self, filter_id: str, value: str, selected: bool = True) -> None:
        self.filter_definitions = update_filter_selection(self.filter_definitions, filter_id, value, selected)
        self.rebuild_lanes()

    def clear_filters(self) -> None:
        """Clear every filter selection and the search text."""
        info("Clearing filters and search.")
        self.filter_definitions = clear_filter_selections(self.filter_definitions)
        self._search_debouncer.cancel()
        self.search_text = ""
        self.rebuild_lanes()

    def set_sort_field(self, field: str | None) -> None:
        self.sort_field = self.resolver.qualify(field) if field else None
        self.rebuild_lanes()

    def toggle_sort_direction(self) -> SortDirection:
        previous = self.sort_direction
        self.sort_direction = previous.toggled()
        debug("Sort direction toggled.", {"previous": previous.value, "next": self.sort_direction.value})
        self.rebuild_lanes()
        return self.sort_direction

    def set_summary_definitions(self, raw: str | None) -> None:
        self.config = self.config.model_copy(update={"summaries": raw})
        self.refresh_summary_definitions()
        self.rebuild_lanes()

    def select_parents(self, parent_ids: str | Iterable[str] | None, *, immediate: bool = False) -> Any:
        """Change the parent selection after the debounce delay (or at once)."""
        if immediate:
            self._parent_debouncer.cancel()
            return self._apply_parent_selection(parent_ids)
        self._parent_debouncer(parent_ids)
        return None

    def _start_parent_selection(self, parent_ids: str | Iterable[str] | None) -> None:
        task = asyncio.ensure_future(self._apply_parent_selection(parent_ids))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            warn(f"Parent selection reload failed: {exc}")

    async def _apply_parent_selection(self, parent_ids: str | Iterable[str] | None) -> None:
        selection = normalize_parent_selection(parent_ids, self.config.multiple_parent_selection)
        if selection == self.selected_parent_ids:
            return
        self.selected_parent_ids = selection
        self._data_mode.invalidate()
        self.error_message = None
        self.configuration_error = None
        if not self._validate():
            return
        if self.data_mode.ready:
            await self.refresh()
        else:
            self.apply_records_snapshot([])

    def drag_over(self, lane_key: str | None) -> None:
        self._drag_throttler(lane_key)

    def _apply_drag_over(self, lane_key: str | None) -> None:
        if lane_key != self.drag_over_lane_key:
            self.drag_over_lane_key = lane_key
            self._notify_change()

    async def move_card(self, record_id: str, source_lane_key: str | None, target_lane_key: str) -> MoveOutcome:
        """Move a card optimistically and commit the new grouping value."""
        self.drag_over_lane_key = None
        return await self._moves.move_card(MoveRequest(record_id, source_lane_key, target_lane_key))

    async def _commit(self, record_id: str, fields: dict[str, Any]) -> None:
        if self.updater is None:
            raise ConfigurationError("No record updater configured.", record_id=record_id)
        await self.updater.commit_update(record_id, fields)
