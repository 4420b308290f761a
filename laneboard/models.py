"""Pydantic models for laneboard.

Records and metadata arrive from the backend; lanes, cards and summaries are
the view-models handed to the rendering layer.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)


MIXED_CURRENCIES = "Mixed currencies"
MAX_SUMMARIES = 3


class FieldType(str, Enum):
    """Normalized field data types."""

    STRING = "string"
    NUMBER = "number"
    CURRENCY = "currency"
    PERCENT = "percent"
    DATE = "date"
    DATETIME = "datetime"
    BOOLEAN = "boolean"
    ENUMERATION = "enumeration"
    RELATIONSHIP = "relationship"

    @classmethod
    def from_tag(cls, tag: str | None) -> FieldType | None:
        """Map a backend type name (``Picklist``, ``Double``, ...) to a FieldType."""
        if not tag:
            return None
        return _TYPE_TAGS.get(str(tag).strip().lower())

    @property
    def is_numeric(self) -> bool:
        return self in (FieldType.NUMBER, FieldType.CURRENCY, FieldType.PERCENT)

    @property
    def is_temporal(self) -> bool:
        return self in (FieldType.DATE, FieldType.DATETIME)


_TYPE_TAGS: dict[str, FieldType] = {
    "string": FieldType.STRING,
    "text": FieldType.STRING,
    "textarea": FieldType.STRING,
    "email": FieldType.STRING,
    "phone": FieldType.STRING,
    "url": FieldType.STRING,
    "id": FieldType.STRING,
    "number": FieldType.NUMBER,
    "double": FieldType.NUMBER,
    "integer": FieldType.NUMBER,
    "int": FieldType.NUMBER,
    "long": FieldType.NUMBER,
    "currency": FieldType.CURRENCY,
    "percent": FieldType.PERCENT,
    "date": FieldType.DATE,
    "datetime": FieldType.DATETIME,
    "boolean": FieldType.BOOLEAN,
    "picklist": FieldType.ENUMERATION,
    "multipicklist": FieldType.ENUMERATION,
    "multiselectpicklist": FieldType.ENUMERATION,
    "enumeration": FieldType.ENUMERATION,
    "reference": FieldType.RELATIONSHIP,
    "relationship": FieldType.RELATIONSHIP,
}


class AggregationKind(str, Enum):
    """Lane summary aggregation."""

    SUM = "SUM"
    AVG = "AVG"
    MIN = "MIN"
    MAX = "MAX"
    COUNT_TRUE = "COUNT_TRUE"
    COUNT_FALSE = "COUNT_FALSE"

    @classmethod
    def parse(cls, value: str | None) -> AggregationKind | None:
        """Return the kind for a case-insensitive name, or None."""
        if not value:
            return None
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return None


class SortDirection(str, Enum):
    """Card sort direction within a lane."""

    ASC = "asc"
    DESC = "desc"

    def toggled(self) -> SortDirection:
        return SortDirection.ASC if self is SortDirection.DESC else SortDirection.DESC


# ── Backend inputs ────────────────────────────────────────────────────


class FieldValue(BaseModel):
    """A raw value plus the backend's pre-formatted display string."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    raw: Any = Field(default=None, alias="value")
    display: str | None = Field(default=None, alias="displayValue")

    @field_validator("display", mode="before")
    @classmethod
    def _stringify_display(cls, v: Any) -> str | None:
        if v is None or isinstance(v, str):
            return v
        return str(v)


class ParentRef(BaseModel):
    """The parent record a card record hangs off."""

    model_config = ConfigDict(frozen=True)

    id: str | None = None
    name: str | None = None


class Record(BaseModel):
    """An immutable backend record with a sparse field map.

    Keys of ``fields`` may be simple (``Name``), qualified (``Case.Status``)
    or dotted relationship paths (``Owner.Name``).
    """

    model_config = ConfigDict(frozen=True)

    id: str
    fields: dict[str, FieldValue] = Field(default_factory=dict)
    parent: ParentRef | None = None

    @model_validator(mode="before")
    @classmethod
    def _accept_backend_shape(cls, data: Any) -> Any:
        # Backend payloads may carry "Id" instead of "id" and plain scalars as field values
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "id" not in data and "Id" in data:
            data["id"] = data.pop("Id")
        fields = data.get("fields")
        if isinstance(fields, dict):
            data["fields"] = {
                k: v if isinstance(v, (dict, FieldValue)) else {"value": v}
                for k, v in fields.items()
            }
        return data

    def with_field(self, name: str, value: FieldValue) -> Record:
        """Return a copy with one field replaced."""
        fields = dict(self.fields)
        fields[name] = value
        return self.model_copy(update={"fields": fields})


class EnumerationValue(BaseModel):
    """One declared value of an enumerated field, in declared order."""

    model_config = ConfigDict(frozen=True)

    value: str
    label: str | None = None
    active: bool = True

    @model_validator(mode="after")
    def _label_defaults_to_value(self) -> EnumerationValue:
        if self.label is None:
            object.__setattr__(self, "label", self.value)
        return self


class FieldMetadata(BaseModel):
    """Metadata for one simple field name."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(alias="apiName")
    label: str | None = None
    data_type: str = Field(default="String", alias="dataType")
    scale: int | None = None
    precision: int | None = None
    required: bool = False
    enumeration_values: list[EnumerationValue] = Field(
        default_factory=list, alias="picklistValues"
    )
    relationship_name: str | None = Field(default=None, alias="relationshipName")
    reference_label: str | None = Field(default=None, alias="referenceLabel")

    @property
    def field_type(self) -> FieldType | None:
        return FieldType.from_tag(self.data_type)

    def enumeration_order(self) -> dict[str, int] | None:
        """Map each declared value to its position, or None if nothing is declared."""
        order: dict[str, int] = {}
        for item in self.enumeration_values:
            order.setdefault(str(item.value), len(order))
        return order or None


class ObjectMetadata(BaseModel):
    """Metadata for the card object."""

    model_config = ConfigDict(populate_by_name=True)

    api_name: str = Field(alias="apiName")
    label: str | None = None
    label_plural: str | None = Field(default=None, alias="labelPlural")
    name_fields: list[str] = Field(default_factory=list, alias="nameFields")
    fields: dict[str, FieldMetadata] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _fill_field_names(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("fields"), dict):
            data = dict(data)
            data["fields"] = {
                name: (
                    {"apiName": name, **meta}
                    if isinstance(meta, dict) and "apiName" not in meta and "name" not in meta
                    else meta
                )
                for name, meta in data["fields"].items()
            }
        return data


# ── Board configuration ───────────────────────────────────────────────


class BoardConfig(BaseModel):
    """Per-board inputs.

    Field lists are comma-separated API names; names without a dot are
    qualified with ``card_object``.
    """

    model_config = ConfigDict(validate_assignment=True)

    card_object: str | None = None
    grouping_field: str | None = None
    card_fields: str | None = None
    card_field_icons: str | None = None
    summaries: str | None = Field(
        default=None,
        description="Semicolon-separated 'field|KIND|label' entries",
    )
    sort_fields: str | None = None
    search_fields: str | None = None
    filter_fields: str | None = None
    parent_object: str | None = None
    parent_object_label: str | None = None
    child_relationship: str | None = None
    record_where_clause: str | None = None
    record_order_clause: str | None = None
    record_limit: int | None = Field(default=None, ge=1)
    performance_threshold: int | None = Field(default=None, ge=0)
    empty_group_label: str | None = None
    date_time_format: str | None = None
    board_title: str | None = None
    show_field_labels: bool = True
    multiple_parent_selection: bool = False
    record_url_template: str | None = Field(
        default=None,
        description="Template such as '/r/{object}/{id}/view'",
    )

    @field_validator(
        "card_object",
        "grouping_field",
        "parent_object",
        "child_relationship",
        mode="before",
    )
    @classmethod
    def _strip_names(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip() or None
        return v

    @field_validator("date_time_format", mode="before")
    @classmethod
    def _blank_pattern(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v


# ── View-models ───────────────────────────────────────────────────────


class SummaryDefinition(BaseModel):
    """One configured lane summary."""

    model_config = ConfigDict(frozen=True)

    field_path: str
    kind: AggregationKind
    label: str
    data_type: FieldType | None = None
    scale: int | None = None
    precision: int | None = None

    @property
    def key(self) -> str:
        return f"{self.field_path}|{self.kind.value}|{self.label}"


class Summary(BaseModel):
    """A computed (or pending) lane summary."""

    key: str
    label: str
    value: str = ""
    is_loading: bool = False


class CardDetail(BaseModel):
    """One labelled value shown under a card title."""

    api_name: str
    label: str = ""
    value: Any = ""
    icon_name: str | None = None
    icon_emoji: str | None = None
    is_parent_badge: bool = False


class Card(BaseModel):
    """The per-record view shown on the board."""

    id: str
    title: Any = ""
    title_icon: str | None = None
    title_emoji: str | None = None
    details: list[CardDetail] = Field(default_factory=list)
    record_url: str | None = None
    is_saving: bool = False


class Lane(BaseModel):
    """A column of cards sharing a grouping value."""

    key: str
    label: str = ""
    raw_value: Any = None
    cards: list[Card] = Field(default_factory=list)
    summaries: list[Summary] = Field(default_factory=list)
    summary_warnings: list[str] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def count(self) -> int:
        return len(self.cards)

    def find_card(self, record_id: str) -> Card | None:
        return next((card for card in self.cards if card.id == record_id), None)


class Notification(BaseModel):
    """A user-facing message emitted through a notifier."""

    title: str
    message: str
    variant: Literal["success", "info", "warning", "error"] = "info"
