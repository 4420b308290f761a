"""Partition records into lanes, build cards, sort and summarize.

The builder is a pure function of the records, the options and the
resolver: building twice from the same inputs yields equal lanes.
"""

from __future__ import annotations

import functools

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .fields import (
    FieldResolver,
    extract_simple_field_name,
    parse_icon_entry,
    sanitize_field_output,
)
from .log import debug, warn
from .models import (
    Card,
    CardDetail,
    Lane,
    Record,
    SortDirection,
    SummaryDefinition,
)
from .summaries import collect_runtime_warnings, summarize_lane


BLANK_KEY = "__LANEBOARD_BLANK__"
DEFAULT_BLANK_LABEL = "No Value"
PARENT_BADGE_API_NAME = "__parentReference"
DEFAULT_PARENT_BADGE_LABEL = "Parent"


@dataclass(frozen=True)
class DeclaredLane:
    """A lane the grouping field's metadata declares up front."""

    key: str
    label: str
    raw_value: Any


@dataclass
class LaneBuildOptions:
    """Inputs to :func:`build_lanes` beyond the records themselves.

    Attributes
    ----------
    grouping_field : str
        Qualified grouping field path.
    resolver : FieldResolver
        Field accessor and formatter.
    card_fields : list[str]
        Qualified card fields; the first is the title.
    default_title_field : str, optional
        Title used when no card fields are configured.
    blank_label : str
        Label of the lane for records without a grouping value.
    declared_lanes : list[DeclaredLane]
        Lanes listed first, in order.
    grouping_optional : bool
        Show the blank lane even when it is empty.
    sort_field, fallback_sort_field : str, optional
        Primary and tie-breaking sort fields.
    sort_direction : SortDirection
        Direction of the primary comparison only.
    card_field_icons : list[str]
        Icon entries aligned with ``card_fields``.
    show_field_labels : bool
        Give card details their field labels; blank labels otherwise.
    show_parent_badge : bool
        Append the parent reference detail to every card.
    parent_badge_label : str
        Label of that detail.
    summary_definitions : list[SummaryDefinition]
        Summaries computed per lane; empty to skip.
    is_record_included : callable
        Filter and search predicate.
    record_url : callable, optional
        Returns the record link for a card.
    """

    grouping_field: str | None
    resolver: FieldResolver
    card_fields: list[str] = field(default_factory=list)
    default_title_field: str | None = None
    blank_label: str = DEFAULT_BLANK_LABEL
    declared_lanes: list[DeclaredLane] = field(default_factory=list)
    grouping_optional: bool = False
    sort_field: str | None = None
    fallback_sort_field: str | None = None
    sort_direction: SortDirection = SortDirection.ASC
    card_field_icons: list[str] = field(default_factory=list)
    show_field_labels: bool = True
    show_parent_badge: bool = False
    parent_badge_label: str = DEFAULT_PARENT_BADGE_LABEL
    summary_definitions: list[SummaryDefinition] = field(default_factory=list)
    is_record_included: Callable[[Record], bool] = lambda record: True
    record_url: Callable[[Record], str | None] | None = None


@dataclass
class LaneBuildResult:
    lanes: list[Lane]
    warnings: list[str] = field(default_factory=list)


def declared_lanes_for(resolver: FieldResolver, grouping_field: str | None) -> list[DeclaredLane]:
    """Active enumeration values of the grouping field, in declared order."""
    metadata = resolver.field_metadata(grouping_field)
    if metadata is None:
        return []
    return [
        DeclaredLane(key=str(item.value), label=item.label or str(item.value), raw_value=item.value)
        for item in metadata.enumeration_values
        if item.active and item.value not in (None, "")
    ]


def build_card(record: Record, options: LaneBuildOptions, fields: Sequence[str]) -> Card:
    """Build the card for one record: title, details, icons, parent badge."""
    resolver = options.resolver
    icons = options.card_field_icons
    title_icon, title_emoji = parse_icon_entry(icons[0] if icons else None)
    details = []
    for index, card_field in enumerate(fields[1:], start=1):
        icon_name, icon_emoji = parse_icon_entry(icons[index] if index < len(icons) else None)
        details.append(
            CardDetail(
                api_name=extract_simple_field_name(card_field),
                label=resolver.field_label(card_field) if options.show_field_labels else "",
                value=resolver.display_value(record, card_field),
                icon_name=icon_name,
                icon_emoji=icon_emoji,
            )
        )

    if options.show_parent_badge:
        parent_label = resolver.parent_label(record)
        if parent_label:
            details.append(
                CardDetail(
                    api_name=PARENT_BADGE_API_NAME,
                    label=options.parent_badge_label,
                    value=parent_label,
                    is_parent_badge=True,
                )
            )

    return Card(
        id=record.id,
        title=resolver.display_value(record, fields[0] if fields else None),
        title_icon=title_icon,
        title_emoji=title_emoji,
        details=details,
        record_url=options.record_url(record) if options.record_url else None,
    )


# ── Sorting ───────────────────────────────────────────────────────────


def is_empty_sort_value(value: Any) -> bool:
    return value is None or value == ""


def sort_value(record: Record, field_path: str, resolver: FieldResolver) -> Any:
    """Raw value if present, else the sanitized display."""
    data = resolver.resolve(record, field_path)
    if data.raw is not None and data.raw != "":
        return data.raw
    if data.display is not None:
        return sanitize_field_output(data.display)
    return None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def compare_sort_values(a: Any, b: Any) -> int:
    """Order two non-empty values: numerically, temporally, else case-insensitively."""
    if _is_number(a) and _is_number(b):
        return (a > b) - (a < b)
    if isinstance(a, datetime) and isinstance(b, datetime):
        return (a > b) - (a < b)
    left = str(a).casefold()
    right = str(b).casefold()
    return (left > right) - (left < right)


class FieldComparator:
    """Compares records on one field, honoring enumeration order.

    Empty values always sort after non-empty ones, whatever the
    direction. ``descending`` reverses only the non-empty comparison.
    """

    def __init__(self, field_path: str, resolver: FieldResolver, descending: bool = False) -> None:
        self.field_path = field_path
        self.resolver = resolver
        self.descending = descending
        self.order = resolver.enumeration_order(field_path)

    def __call__(self, a: Record, b: Record) -> int:
        value_a = sort_value(a, self.field_path, self.resolver)
        value_b = sort_value(b, self.field_path, self.resolver)
        empty_a = is_empty_sort_value(value_a)
        empty_b = is_empty_sort_value(value_b)
        if empty_a or empty_b:
            return int(empty_a) - int(empty_b)
        result = 0
        if self.order:
            unlisted = len(self.order) + 1
            index_a = self.order.get(str(value_a), unlisted)
            index_b = self.order.get(str(value_b), unlisted)
            result = index_a - index_b
        if result == 0:
            result = compare_sort_values(value_a, value_b)
        return -result if self.descending else result


def sort_records(
    records: Sequence[Record],
    resolver: FieldResolver,
    primary: str | None,
    fallback: str | None = None,
    direction: SortDirection = SortDirection.ASC,
) -> list[Record]:
    """Stable sort by the primary field, then the ascending fallback field."""
    if not records:
        return []
    primary = primary or fallback
    if not primary:
        return list(records)
    comparators = [FieldComparator(primary, resolver, descending=direction is SortDirection.DESC)]
    if fallback and fallback != primary:
        comparators.append(FieldComparator(fallback, resolver))

    def compare(a: Record, b: Record) -> int:
        for comparator in comparators:
            result = comparator(a, b)
            if result:
                return result
        return 0

    return sorted(records, key=functools.cmp_to_key(compare))


# ── Building ──────────────────────────────────────────────────────────


@dataclass
class _LaneDraft:
    key: str
    label: str
    raw_value: Any
    records: list[Record] = field(default_factory=list)


def build_lanes(records: Sequence[Record], options: LaneBuildOptions) -> LaneBuildResult:
    """Partition records into ordered lanes of sorted cards.

    Declared lanes come first in declared order, then the blank lane
    when it has records or the grouping field is optional, then every
    other value seen in the data sorted by label.

    Parameters
    ----------
    records : Sequence[Record]
        Current record set.
    options : LaneBuildOptions
        Grouping, card, sort and summary options.

    Returns
    -------
    LaneBuildResult
        Lanes and the runtime summary warnings.
    """
    grouping_field = options.grouping_field
    if not grouping_field:
        warn("Lane build requested without a grouping field.")
        return LaneBuildResult(lanes=[])

    resolver = options.resolver
    fields = list(options.card_fields) or [f for f in (options.default_title_field,) if f]
    title_field = fields[0] if fields else None
    debug(
        "Building lanes.",
        {"records": len(records), "grouping_field": grouping_field, "card_fields": len(options.card_fields)},
    )

    drafts: dict[str, _LaneDraft] = {}
    for record in records:
        if not options.is_record_included(record):
            continue
        data = resolver.resolve(record, grouping_field)
        raw = data.raw if data.raw is not None and data.raw != "" else None
        key = str(raw) if raw is not None else BLANK_KEY
        draft = drafts.get(key)
        if draft is None:
            if key == BLANK_KEY:
                label = options.blank_label
            else:
                label = data.display or str(raw)
            draft = drafts[key] = _LaneDraft(key=key, label=label, raw_value=raw)
        draft.records.append(record)

    ordered: list[_LaneDraft] = []
    used: set[str] = set()
    for declared in options.declared_lanes:
        if declared.key in used:
            continue
        draft = drafts.get(declared.key)
        if draft is None:
            draft = drafts[declared.key] = _LaneDraft(declared.key, declared.label, declared.raw_value)
        else:
            draft.label = declared.label
            draft.raw_value = declared.raw_value
        ordered.append(draft)
        used.add(declared.key)

    if BLANK_KEY in drafts or options.grouping_optional:
        blank = drafts.setdefault(BLANK_KEY, _LaneDraft(BLANK_KEY, options.blank_label, None))
        blank.label = options.blank_label
        blank.raw_value = None
        if BLANK_KEY not in used:
            ordered.append(blank)
            used.add(BLANK_KEY)

    remaining = sorted(
        (draft for key, draft in drafts.items() if key not in used),
        key=lambda draft: (draft.label or "").casefold(),
    )
    ordered.extend(remaining)

    primary = options.sort_field or options.fallback_sort_field or title_field
    fallback = options.fallback_sort_field or title_field
    lanes = []
    for draft in ordered:
        sorted_records = sort_records(draft.records, resolver, primary, fallback, options.sort_direction)
        summaries, summary_warnings = summarize_lane(
            sorted_records, options.summary_definitions, resolver, draft.label
        )
        lanes.append(
            Lane(
                key=draft.key,
                label=draft.label,
                raw_value=draft.raw_value,
                cards=[build_card(record, options, fields) for record in sorted_records],
                summaries=summaries,
                summary_warnings=summary_warnings,
            )
        )

    debug("Lane build complete.", {"lanes": len(lanes)})
    return LaneBuildResult(lanes=lanes, warnings=collect_runtime_warnings(lanes))
