"""Filter definitions and record search."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from .fields import FieldResolver, sanitize_field_output
from .log import debug
from .models import Record


OWNER_FILTER_LABEL = "Owner"


class FilterBlueprint(BaseModel):
    """A configured filter before options are collected."""

    model_config = ConfigDict(frozen=True)

    id: str
    field: str
    label: str
    kind: Literal["field", "owner"] = "field"


class FilterOption(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: str
    label: str
    selected: bool = False


class FilterDefinition(BaseModel):
    """A filter with its current options and selection."""

    model_config = ConfigDict(frozen=True)

    id: str
    field: str
    label: str
    kind: Literal["field", "owner"] = "field"
    options: list[FilterOption] = Field(default_factory=list)
    selected_values: list[str] = Field(default_factory=list)

    @property
    def has_selection(self) -> bool:
        return bool(self.selected_values)


FilterTarget = FilterBlueprint | FilterDefinition
ValueKey = Callable[[Record, FilterTarget], str]
ValueLabel = Callable[[Record, FilterBlueprint, str], str]
OrderFor = Callable[[str], Mapping[str, int] | None]


def filter_blueprints(resolver: FieldResolver, fields: Iterable[str]) -> list[FilterBlueprint]:
    """One blueprint per filter field; the owner id field becomes an owner filter."""
    owner_field = resolver.owner_field
    blueprints = []
    for field in fields:
        is_owner = field == owner_field
        blueprints.append(
            FilterBlueprint(
                id=field,
                field=field,
                label=OWNER_FILTER_LABEL if is_owner else resolver.field_label(field),
                kind="owner" if is_owner else "field",
            )
        )
    return blueprints


def filter_value_key(resolver: FieldResolver, record: Record, blueprint: FilterTarget) -> str:
    """The value a record contributes to a filter; ``""`` when it has none."""
    if blueprint.kind == "owner":
        return resolver.owner_id(record)
    data = resolver.resolve(record, blueprint.field)
    if data.raw is not None and data.raw != "":
        return str(data.raw)
    if data.display:
        return sanitize_field_output(data.display)
    return ""


def filter_value_label(
    resolver: FieldResolver, record: Record, blueprint: FilterBlueprint, fallback: str
) -> str:
    if blueprint.kind == "owner":
        return resolver.owner_label(record) or fallback
    data = resolver.resolve(record, blueprint.field)
    display = data.display if data.display is not None else data.raw
    if display is None or display == "":
        return fallback
    return sanitize_field_output(str(display))


def sort_filter_options(
    options: Sequence[FilterOption], order: Mapping[str, int] | None
) -> list[FilterOption]:
    """Enumeration order first (unlisted values last), then label, case-insensitively."""
    if not order:
        return sorted(options, key=lambda option: option.label.casefold())
    unlisted = len(order)
    return sorted(
        options,
        key=lambda option: (order.get(option.value, unlisted), option.label.casefold()),
    )


def build_filter_definitions(
    records: Sequence[Record],
    blueprints: Sequence[FilterBlueprint],
    existing: Sequence[FilterDefinition],
    value_key: ValueKey,
    value_label: ValueLabel,
    order_for: OrderFor | None = None,
) -> list[FilterDefinition]:
    """Collect distinct option values per blueprint from the current records.

    Filters with no values are omitted. Previous selections are kept
    only for values that are still present.

    Parameters
    ----------
    records : Sequence[Record]
        Current record set (unfiltered).
    blueprints : Sequence[FilterBlueprint]
        Configured filters.
    existing : Sequence[FilterDefinition]
        Definitions from the previous build, for their selections.
    value_key, value_label : callable
        Option value and label for a record.
    order_for : callable, optional
        Enumeration order for a field.

    Returns
    -------
    list[FilterDefinition]
        Definitions in blueprint order.
    """
    previous = {definition.id: definition for definition in existing}
    debug("Building filter definitions.", {"blueprints": len(blueprints), "records": len(records)})

    definitions = []
    for blueprint in blueprints:
        values: dict[str, str] = {}
        for record in records:
            key = value_key(record, blueprint)
            if key is None or key == "" or key in values:
                continue
            values[key] = value_label(record, blueprint, key) or key
        if not values:
            continue
        prior = previous.get(blueprint.id)
        prior_selection = set(prior.selected_values) if prior else set()
        selected = [key for key in values if key in prior_selection]
        options = [
            FilterOption(value=key, label=label, selected=key in prior_selection)
            for key, label in values.items()
        ]
        order = order_for(blueprint.field) if order_for else None
        definitions.append(
            FilterDefinition(
                id=blueprint.id,
                field=blueprint.field,
                label=blueprint.label,
                kind=blueprint.kind,
                options=sort_filter_options(options, order),
                selected_values=selected,
            )
        )
    return definitions


def update_filter_selection(
    definitions: Sequence[FilterDefinition], filter_id: str, value: str, selected: bool
) -> list[FilterDefinition]:
    """Add or remove one value from a filter's selection."""
    debug("Updating filter selection.", {"filter_id": filter_id, "value": value, "selected": selected})
    result = []
    for definition in definitions:
        if definition.id != filter_id:
            result.append(definition)
            continue
        selection = list(definition.selected_values)
        if selected and value not in selection:
            selection.append(value)
        elif not selected and value in selection:
            selection.remove(value)
        result.append(
            definition.model_copy(
                update={
                    "selected_values": selection,
                    "options": [
                        option.model_copy(update={"selected": option.value in selection})
                        for option in definition.options
                    ],
                }
            )
        )
    return result


def clear_filter_selections(definitions: Sequence[FilterDefinition]) -> list[FilterDefinition]:
    return [
        definition.model_copy(
            update={
                "selected_values": [],
                "options": [option.model_copy(update={"selected": False}) for option in definition.options],
            }
        )
        for definition in definitions
    ]


def record_matches_filters(
    record: Record, definitions: Sequence[FilterDefinition], value_key: ValueKey
) -> bool:
    """Every filter with a selection must contain the record's value."""
    for definition in definitions:
        if not definition.selected_values:
            continue
        if value_key(record, definition) not in definition.selected_values:
            return False
    return True


def normalize_search_value(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def record_matches_search(
    record: Record, search_text: str, search_fields: Sequence[str], resolver: FieldResolver
) -> bool:
    """Case-insensitive substring match over the search fields."""
    if not search_text or not search_fields:
        return True
    needle = search_text.lower()
    for field in search_fields:
        value = resolver.field_display(record, field)
        if value and needle in str(value).lower():
            return True
    return False
