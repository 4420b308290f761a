"""Data mode resolution, grouping validation and fetch request building.

The data mode decides whether (and how) records may be fetched:
parent-scoped, parent-less, or blocked with a reason.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from .exceptions import (
    GroupingFieldMissingError,
    GroupingFieldTypeError,
    MissingRelationshipError,
)
from .fields import FieldResolver, format_api_name, unique_fields
from .log import debug
from .models import FieldType, SortDirection, SummaryDefinition


DEFAULT_PAGE_SIZE = 200
SUPPORTED_GROUPING_TYPES = frozenset({FieldType.ENUMERATION, FieldType.STRING})
OWNER_NAME_FIELDS = ("Owner.Name", "Owner.FirstName", "Owner.LastName")


class DataModeType(str, Enum):
    PARENT = "parent"
    PARENTLESS = "parentless"


class DataModeReason(str, Enum):
    """Why fetching is blocked."""

    MISSING_CONFIG = "missingConfig"
    MISSING_RELATED_LIST = "missingRelatedList"
    NO_PARENT_SELECTED = "noParentSelected"


@dataclass(frozen=True)
class DataMode:
    """Resolved data mode.

    Attributes
    ----------
    type : DataModeType, optional
        None while blocked.
    ready : bool
        Whether fetching is authorized.
    reason : DataModeReason, optional
        Set while blocked.
    parent_ids : tuple[str, ...]
        Parents the fetch is scoped to.
    """

    type: DataModeType | None = None
    ready: bool = False
    reason: DataModeReason | None = None
    parent_ids: tuple[str, ...] = ()

    @property
    def is_blocked(self) -> bool:
        return not self.ready


@dataclass(frozen=True)
class DataModeInputs:
    card_object: str | None = None
    grouping_field: str | None = None
    parent_object: str | None = None
    relationship_name: str | None = None
    context_record_id: str | None = None
    selected_parent_ids: tuple[str, ...] = ()
    connected: bool = False

    @property
    def active_parent_ids(self) -> tuple[str, ...]:
        """The record context wins over a parent selection."""
        if self.context_record_id:
            return (self.context_record_id,)
        return tuple(self.selected_parent_ids)


class DataModeResolver:
    """Resolves the data mode and caches it until invalidated.

    The board calls :meth:`invalidate` on every configuration, parent
    selection or connection change.
    """

    def __init__(self) -> None:
        self._cached: DataMode | None = None

    @property
    def cached(self) -> DataMode | None:
        return self._cached

    def invalidate(self) -> None:
        self._cached = None

    def resolve(self, inputs: DataModeInputs) -> DataMode:
        """Apply the transition rules, first match wins.

        1. No card object or grouping field: blocked, missing config.
        2. A parent context without a relationship name: blocked,
           missing related list.
        3. A record context or selected parents: parent mode.
        4. Connected with no parent object configured: parent-less mode.
        5. Otherwise blocked until a parent is selected.
        """
        if self._cached is not None:
            return self._cached
        mode = self._resolve(inputs)
        debug("Data mode resolved.", {"type": mode.type, "reason": mode.reason})
        self._cached = mode
        return mode

    @staticmethod
    def _resolve(inputs: DataModeInputs) -> DataMode:
        if not (inputs.card_object and inputs.grouping_field):
            return DataMode(reason=DataModeReason.MISSING_CONFIG)
        parent_ids = inputs.active_parent_ids
        has_context = bool(inputs.context_record_id) or bool(parent_ids)
        if (has_context or inputs.parent_object) and not inputs.relationship_name:
            return DataMode(reason=DataModeReason.MISSING_RELATED_LIST, parent_ids=parent_ids)
        if has_context:
            return DataMode(type=DataModeType.PARENT, ready=True, parent_ids=parent_ids)
        if inputs.connected and not inputs.parent_object:
            return DataMode(type=DataModeType.PARENTLESS, ready=True)
        return DataMode(reason=DataModeReason.NO_PARENT_SELECTED, parent_ids=parent_ids)


def mode_error(mode: DataMode) -> MissingRelationshipError | None:
    """The configuration error a blocked mode stands for, if any."""
    if mode.reason is DataModeReason.MISSING_RELATED_LIST:
        return MissingRelationshipError(parent_ids=list(mode.parent_ids))
    return None


@dataclass(frozen=True)
class FetchRequest:
    """Everything a record source needs for one fetch."""

    ready: bool
    reason: DataModeReason | None = None
    mode: DataModeType | None = None
    parent_ids: tuple[str, ...] = ()
    object_name: str | None = None
    relationship_name: str | None = None
    fields: tuple[str, ...] = ()
    sort_field: str | None = None
    sort_direction: SortDirection = SortDirection.ASC
    limit: int = DEFAULT_PAGE_SIZE
    where_clause: str | None = None
    order_clause: str | None = None


def build_fetch_request(
    mode: DataMode,
    field_list: Sequence[str] | None,
    *,
    object_name: str | None = None,
    relationship_name: str | None = None,
    sort_field: str | None = None,
    sort_direction: SortDirection = SortDirection.ASC,
    limit: int | None = None,
    where_clause: str | None = None,
    order_clause: str | None = None,
) -> FetchRequest:
    """Build the fetch request for a mode; blocked modes yield a not-ready request."""
    if not mode.ready or not field_list:
        return FetchRequest(ready=False, reason=mode.reason)
    return FetchRequest(
        ready=True,
        mode=mode.type,
        parent_ids=mode.parent_ids if mode.type is DataModeType.PARENT else (),
        object_name=object_name,
        relationship_name=relationship_name if mode.type is DataModeType.PARENT else None,
        fields=tuple(field_list),
        sort_field=sort_field,
        sort_direction=sort_direction,
        limit=limit or DEFAULT_PAGE_SIZE,
        where_clause=where_clause,
        order_clause=order_clause,
    )


def build_field_list(
    resolver: FieldResolver,
    *,
    grouping_field: str,
    card_fields: Iterable[str] = (),
    sort_fields: Iterable[str] = (),
    filter_fields: Iterable[str] = (),
    search_fields: Iterable[str] = (),
    summary_definitions: Iterable[SummaryDefinition] = (),
) -> list[str]:
    """Every field the board reads, de-duplicated in first-use order."""
    fields: list[str | None] = [resolver.qualify("Id"), grouping_field]
    fields.extend(card_fields)
    fields.extend(sort_fields)
    filter_list = list(filter_fields)
    fields.extend(filter_list)
    owner_field = resolver.owner_field
    if owner_field and owner_field in filter_list:
        fields.extend(resolver.qualify(name) for name in OWNER_NAME_FIELDS)
    fields.extend(search_fields)
    for definition in summary_definitions:
        fields.append(definition.field_path)
        if definition.data_type is FieldType.CURRENCY:
            fields.append(resolver.qualify("CurrencyIsoCode"))
    return unique_fields(fields)


def validate_grouping_field(resolver: FieldResolver, grouping_field: str | None) -> None:
    """Raise when metadata says the grouping field is missing or unsupported.

    Without metadata the field is accepted.

    Raises
    ------
    GroupingFieldMissingError
        The field is not on the card object.
    GroupingFieldTypeError
        The field is neither an enumeration nor a string.
    """
    if resolver.metadata is None or not grouping_field:
        return
    metadata = resolver.field_metadata(grouping_field)
    if metadata is None:
        simple = resolver.strip_prefix(grouping_field) or grouping_field
        raise GroupingFieldMissingError(
            format_api_name(simple) or "Grouping Field API Name",
            format_api_name(resolver.object_name) or "the card object",
        )
    if not metadata.data_type or not metadata.data_type.strip():
        return
    if metadata.field_type not in SUPPORTED_GROUPING_TYPES:
        label = metadata.label or resolver.field_label(grouping_field) or "Grouping Field API Name"
        raise GroupingFieldTypeError(label, metadata.data_type or "an unsupported type")


def is_grouping_optional(resolver: FieldResolver, grouping_field: str | None) -> bool:
    """Optional unless metadata marks the field required."""
    metadata = resolver.field_metadata(grouping_field)
    return metadata is None or not metadata.required


def normalize_parent_selection(values: str | Iterable[str] | None, allow_multiple: bool = False) -> tuple[str, ...]:
    """Trim and de-duplicate parent ids; single selection keeps the first.

    A string may hold several comma-separated ids.
    """
    if values is None:
        return ()
    if isinstance(values, str):
        values = values.split(",")
    ids = unique_fields(str(value).strip() for value in values if value is not None)
    if not allow_multiple:
        ids = ids[:1]
    return tuple(ids)
