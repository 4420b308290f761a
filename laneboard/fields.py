"""Field path resolution, display formatting and the per-record field cache.

Records carry sparse field maps whose keys may be simple (``Status``),
object-qualified (``Case.Status``) or relationship paths
(``Owner.Name``). :class:`FieldResolver` is the one accessor every
other module goes through to read a field from a record.
"""

from __future__ import annotations

import copy
import html
import math
import re
import unicodedata

from collections.abc import Iterable, Mapping
from typing import Any

from babel.numbers import (
    format_currency,
    format_decimal,
    format_percent,
    get_currency_symbol,
)

from .datetime_format import (
    DEFAULT_LOCALE,
    DEFAULT_TIME_ZONE,
    PatternTokenCache,
    format_with_pattern,
    resolve_locale,
)
from .log import debug
from .models import FieldMetadata, FieldType, FieldValue, ObjectMetadata, Record


DEFAULT_FIELD_PLACEHOLDER = "--"
DEFAULT_OBJECT_NAME_FIELD = "Name"
DEFAULT_CURRENCY = "USD"
ARROW_SEPARATOR = " → "

OBJECT_DEFAULT_NAME_FIELDS: dict[str, str] = {
    "Case": "CaseNumber",
    "EmailMessage": "Subject",
    "Task": "Subject",
    "Event": "Subject",
    "Order": "OrderNumber",
    "Invoice": "InvoiceNumber",
    "ContractLineItem": "LineItemNumber",
    "CaseMilestone": "MilestoneType",
    "OpportunityContactRole": "Contact.Name",
    "CampaignMember": "Contact.Name",
    "PricebookEntry": "Product2.Name",
    "OpportunityLineItem": "Product2.Name",
    "AssetRelationship": "Asset.Name",
    "KnowledgeArticleVersion": "Title",
}

_OBJECT_SUFFIXES = ("__c", "__mdt", "__pc", "__x", "__b")
_CURRENCY_CODE_RE = re.compile(r"^[A-Z]{3}$")
_UNICODE_ESCAPE_RE = re.compile(r"^u\+([0-9a-f]{1,6})$", re.IGNORECASE)
_CAMEL_BOUNDARY_RE = re.compile(r"([a-z0-9])([A-Z])")
_BR_RE = re.compile(r"<\s*br\s*/?>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]*>")
_NON_NUMERIC_RE = re.compile(r"[^0-9.\-]")


# ── Text helpers ──────────────────────────────────────────────────────


def sanitize_field_output(value: Any) -> Any:
    """Turn ``<br>`` into newlines, decode HTML, normalize CRLF.

    Non-string values are returned unchanged.
    """
    if not isinstance(value, str):
        return value
    text = _BR_RE.sub("\n", value)
    if "&" in text or "<" in text:
        text = html.unescape(_TAG_RE.sub("", text))
    return text.replace("\r\n", "\n")


def stringify(value: Any) -> str:
    """Render a raw value as text (``true``/``false`` for booleans)."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def format_api_name(name: str | None) -> str:
    """``AccountId`` -> ``Account Id``; ``Region__c`` -> ``Region c``."""
    if not name:
        return ""
    spaced = _CAMEL_BOUNDARY_RE.sub(r"\1 \2", name).replace("__", " ")
    return spaced[:1].upper() + spaced[1:]


def format_object_label(api_name: str | None) -> str | None:
    """Readable label from an object API name, dropping custom suffixes and namespaces."""
    if not api_name or not api_name.strip():
        return None
    base = api_name.strip().split(".")[-1]
    for suffix in _OBJECT_SUFFIXES:
        if base.lower().endswith(suffix):
            base = base[: -len(suffix)]
    if "__" in base:
        base = base.split("__")[-1]
    return format_api_name(base)


def extract_simple_field_name(field: str | None) -> str:
    """Last segment of a dotted path."""
    if not field:
        return ""
    return field.split(".")[-1]


def expand_relationship_path(field: str | None) -> list[str]:
    """Every progressively deeper prefix: ``A.B.C`` -> ``A``, ``A.B``, ``A.B.C``."""
    if not field:
        return []
    segments = [s for s in field.split(".") if s]
    return [".".join(segments[: i + 1]) for i in range(len(segments))]


def qualify_field_name(object_name: str | None, field: str | None) -> str | None:
    """Prefix a field with the card object.

    Simple names need an object; without one they resolve to None.
    Dotted paths already rooted at the object are left alone.
    """
    if not field:
        return None
    trimmed = field.strip()
    if not trimmed:
        return None
    if "." in trimmed:
        if object_name and not trimmed.startswith(f"{object_name}."):
            return f"{object_name}.{trimmed}"
        return trimmed
    if not object_name:
        return None
    return f"{object_name}.{trimmed}"


def parse_field_list(raw: str | None, object_name: str | None) -> list[str]:
    """Split a comma-separated field list and qualify each entry."""
    if not raw:
        return []
    fields = []
    for item in raw.split(","):
        qualified = qualify_field_name(object_name, item)
        if qualified:
            fields.append(qualified)
    return fields


def unique_fields(fields: Iterable[str | None]) -> list[str]:
    """De-duplicate in first-seen order, dropping empties."""
    seen: dict[str, None] = {}
    for field in fields:
        if field:
            seen.setdefault(field, None)
    return list(seen)


def coerce_icon_name(value: str | None) -> str | None:
    """Icon names without a namespace are taken from the utility set."""
    if not value:
        return None
    if ":" in value:
        return value
    return f"utility:{value}"


def _is_emoji_char(char: str) -> bool:
    code = ord(char)
    if 0x1F000 <= code <= 0x1FAFF or 0x2600 <= code <= 0x27BF:
        return True
    return unicodedata.category(char) == "So" and code >= 0x2190


def resolve_emoji(value: str | None) -> str | None:
    """Return the emoji for ``U+1F525`` notation or a literal emoji, else None."""
    if not value:
        return None
    match = _UNICODE_ESCAPE_RE.match(value)
    if match:
        try:
            return chr(int(match.group(1), 16))
        except (ValueError, OverflowError):
            return None
    if any(_is_emoji_char(char) for char in value):
        return value
    return None


def parse_icon_entry(value: str | None) -> tuple[str | None, str | None]:
    """Return ``(icon_name, emoji)``; emoji entries win over icon names."""
    if not value or not value.strip():
        return None, None
    trimmed = value.strip()
    emoji = resolve_emoji(trimmed)
    if emoji:
        return None, emoji
    return coerce_icon_name(trimmed), None


def coerce_numeric(value: Any) -> float | None:
    """Best-effort numeric coercion; ``"$1,200.50"`` -> ``1200.5``."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    cleaned = _NON_NUMERIC_RE.sub("", str(value))
    if not cleaned:
        return None
    try:
        parsed = float(cleaned)
    except ValueError:
        return None
    return parsed if math.isfinite(parsed) else None


def normalize_currency_code(value: Any) -> str | None:
    """Upper-cased ISO 4217 code, or None when the value is not one."""
    if not value:
        return None
    normalized = str(value).strip().upper()
    return normalized if _CURRENCY_CODE_RE.match(normalized) else None


def record_currency_code(record: Record | None, fallback: str | None = None) -> str | None:
    """Currency of a record from its ``CurrencyIsoCode`` field, else the fallback."""
    field = record.fields.get("CurrencyIsoCode") if record is not None else None
    if field is None:
        return normalize_currency_code(fallback)
    return (
        normalize_currency_code(field.raw)
        or normalize_currency_code(field.display)
        or normalize_currency_code(fallback)
    )


def narrow_currency_symbol(code: str, locale: str | None = DEFAULT_LOCALE) -> str:
    """Currency symbol without a country prefix (``US$`` -> ``$``)."""
    symbol = get_currency_symbol(code, locale=resolve_locale(locale))
    narrow = symbol.lstrip("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz")
    return narrow or symbol


def format_number(
    value: float,
    style: FieldType = FieldType.NUMBER,
    *,
    locale: str | None = DEFAULT_LOCALE,
    currency: str | None = None,
    scale: int | None = None,
    narrow_symbol: bool = False,
) -> str:
    """Locale-format a number as a plain number, percent or currency amount.

    Parameters
    ----------
    value : float
        The value. Percent values are fractions (``0.25`` -> ``25%``).
    style : FieldType
        NUMBER, PERCENT or CURRENCY.
    locale : str, optional
        Locale tag.
    currency : str, optional
        ISO code, required for CURRENCY.
    scale : int, optional
        Fixed number of fraction digits.
    narrow_symbol : bool
        Use the narrow currency symbol.

    Returns
    -------
    str
        The formatted value.
    """
    loc = resolve_locale(locale)
    if style is FieldType.CURRENCY and currency:
        if scale is None:
            formatted = format_currency(value, currency, locale=loc)
        else:
            pattern = copy.copy(loc.currency_formats["standard"])
            pattern.frac_prec = (scale, scale)
            formatted = pattern.apply(value, loc, currency=currency, currency_digits=False)
        if narrow_symbol:
            symbol = get_currency_symbol(currency, locale=loc)
            narrow = narrow_currency_symbol(currency, locale)
            if narrow != symbol:
                formatted = formatted.replace(symbol, narrow, 1)
        return formatted
    if style is FieldType.PERCENT:
        if scale is None:
            return format_percent(value, locale=loc)
        pattern = copy.copy(loc.percent_formats[None])
        pattern.frac_prec = (scale, scale)
        return pattern.apply(value, loc)
    if scale is None:
        return format_decimal(value, locale=loc)
    pattern = copy.copy(loc.decimal_formats[None])
    pattern.frac_prec = (scale, scale)
    return pattern.apply(value, loc)


def default_display_field(object_name: str | None, metadata: ObjectMetadata | None = None) -> str | None:
    """Title field for a card object.

    Well-known objects use their number or subject field, then the
    object's declared name field, then ``Name``.
    """
    mapped = OBJECT_DEFAULT_NAME_FIELDS.get(object_name or "")
    if mapped:
        qualified = qualify_field_name(object_name, mapped)
        if qualified:
            return qualified
    if metadata is not None and metadata.name_fields:
        qualified = qualify_field_name(object_name, metadata.name_fields[0])
        if qualified:
            return qualified
    return qualify_field_name(object_name, DEFAULT_OBJECT_NAME_FIELD)


# ── Cache ─────────────────────────────────────────────────────────────


class FieldDataCache:
    """Resolved field values keyed by record id then normalized path.

    Invalidated wholesale whenever the configuration, metadata or
    date/time pattern changes; ``generation`` counts invalidations.
    """

    def __init__(self) -> None:
        self._records: dict[str, dict[str, FieldValue]] = {}
        self.generation = 0

    def get(self, record_id: str, path: str) -> FieldValue | None:
        entry = self._records.get(record_id)
        return entry.get(path) if entry else None

    def put(self, record_id: str, path: str, value: FieldValue) -> None:
        self._records.setdefault(record_id, {})[path] = value

    def invalidate(self, reason: str = "unspecified") -> None:
        """Drop every cached value."""
        debug("Field cache cleared.", {"reason": reason, "records": len(self._records)})
        self._records.clear()
        self.generation += 1

    def __len__(self) -> int:
        return sum(len(entry) for entry in self._records.values())


# ── Resolver ──────────────────────────────────────────────────────────


class FieldResolver:
    """Reads and formats record fields for one card object.

    Parameters
    ----------
    object_name : str, optional
        Card object API name used to qualify simple field names.
    metadata : ObjectMetadata, optional
        Card object metadata; without it no type-driven formatting happens.
    pattern : str, optional
        Date/time pattern for date and date-time fields.
    locale : str
        Locale tag for number, currency and date formatting.
    time_zone : str
        IANA zone for date-time fields.
    currency : str
        Currency used when a record carries no ``CurrencyIsoCode``.
    cache : FieldDataCache, optional
        Shared cache; a private one is created if omitted.
    pattern_cache : PatternTokenCache, optional
        Shared token cache for the date/time pattern.
    """

    def __init__(
        self,
        object_name: str | None = None,
        metadata: ObjectMetadata | None = None,
        *,
        pattern: str | None = None,
        locale: str = DEFAULT_LOCALE,
        time_zone: str = DEFAULT_TIME_ZONE,
        currency: str = DEFAULT_CURRENCY,
        cache: FieldDataCache | None = None,
        pattern_cache: PatternTokenCache | None = None,
        parent_labels: Mapping[str, str] | None = None,
    ) -> None:
        self.object_name = object_name
        self.metadata = metadata
        self.pattern = pattern
        self.locale = locale
        self.time_zone = time_zone
        self.currency = currency
        self.cache = cache if cache is not None else FieldDataCache()
        self.pattern_cache = pattern_cache if pattern_cache is not None else PatternTokenCache()
        self.parent_labels: dict[str, str] = dict(parent_labels or {})

    # Paths

    def qualify(self, field: str | None) -> str | None:
        return qualify_field_name(self.object_name, field)

    def normalize_path(self, field: str | None) -> str | None:
        """Root a path at the card object unless it already is."""
        if not field:
            return field
        if self.object_name and not field.startswith(f"{self.object_name}."):
            return f"{self.object_name}.{field}"
        return field

    def strip_prefix(self, field: str | None) -> str | None:
        if not field or not self.object_name:
            return field
        prefix = f"{self.object_name}."
        return field[len(prefix):] if field.startswith(prefix) else field

    def candidates(self, field: str | None) -> list[str]:
        """Keys tried, in order, when looking a field up in a record."""
        if not field:
            return []
        normalized = self.normalize_path(field)
        stripped = self.strip_prefix(normalized)
        found = [normalized, stripped, *expand_relationship_path(stripped)]
        segments = [s for s in (stripped or "").split(".") if s]
        if len(segments) > 1:
            found.append(segments[-1])
        return unique_fields(found)

    def parse_field_list(self, raw: str | None) -> list[str]:
        return parse_field_list(raw, self.object_name)

    @property
    def owner_field(self) -> str | None:
        return self.qualify("OwnerId")

    def default_display_field(self) -> str | None:
        return default_display_field(self.object_name, self.metadata)

    # Values

    def lookup(self, record: Record | None, field: str | None) -> FieldValue | None:
        """First present entry among the field's candidates."""
        if record is None or not field:
            return None
        for candidate in self.candidates(field):
            value = record.fields.get(candidate)
            if value is not None:
                return value
        return None

    def resolve(self, record: Record | None, field: str | None) -> FieldValue:
        """Resolve and format a field, memoized per record and path.

        Missing fields resolve to ``FieldValue(raw=None, display="")``.
        """
        path = self.normalize_path(field) if field else None
        if record is not None and path:
            cached = self.cache.get(record.id, path)
            if cached is not None:
                return cached

        data = self.lookup(record, field)
        if data is None:
            return FieldValue(raw=None, display="")
        raw = data.raw
        if data.display is not None:
            initial = data.display
        elif raw is not None:
            initial = raw
        else:
            initial = ""
        display = self.format_display(field, raw, initial, record)
        result = FieldValue(raw=raw, display="" if display is None else display)
        if record is not None and path:
            self.cache.put(record.id, path, result)
        return result

    def warm(self, records: Iterable[Record], fields: Iterable[str]) -> int:
        """Resolve every field of every record ahead of a build; returns the cache size."""
        field_list = list(fields)
        for record in records:
            for field in field_list:
                self.resolve(record, field)
        return len(self.cache)

    def display_value(self, record: Record | None, field: str | None) -> Any:
        """Sanitized display (or raw) value, ``"--"`` when empty."""
        data = self.resolve(record, field)
        value = sanitize_field_output(data.display or data.raw)
        if value is None or value == "":
            return DEFAULT_FIELD_PLACEHOLDER
        return value

    def field_display(self, record: Record | None, field: str | None) -> Any:
        """Sanitized display (or raw) value, ``""`` when empty."""
        if not field:
            return ""
        data = self.resolve(record, field)
        value = data.display or data.raw
        if value is None:
            return ""
        return sanitize_field_output(value)

    def format_display(
        self,
        field: str | None,
        raw: Any,
        display: Any,
        record: Record | None = None,
    ) -> Any:
        """Format a value according to the field's metadata type.

        Date and date-time values go through the date/time pattern.
        Numbers, percents and currency amounts are locale-formatted only
        when the backend sent no display string or one that just repeats
        the raw value.
        """
        metadata = self.field_metadata(field)
        if metadata is None:
            return display
        value = raw if raw is not None else display
        if value is None or value == "":
            return display
        field_type = metadata.field_type
        if field_type is not None and field_type.is_temporal:
            formatted = format_with_pattern(
                value,
                pattern=self.pattern,
                date_only=field_type is FieldType.DATE,
                cache=self.pattern_cache,
                locale=self.locale,
                time_zone=self.time_zone,
            )
            return formatted if formatted is not None else display
        if field_type is None or not field_type.is_numeric:
            return display
        if display is not None and display != "":
            if raw is None or _numeric_text(display) != _numeric_text(raw):
                return display
        number = coerce_numeric(value)
        if number is None:
            return display
        scale = metadata.scale if metadata.scale is not None and metadata.scale >= 0 else None
        if field_type is FieldType.PERCENT:
            number = number / 100 if abs(number) > 1 else number
            return format_number(number, FieldType.PERCENT, locale=self.locale, scale=scale)
        if field_type is FieldType.CURRENCY:
            code = record_currency_code(record, self.currency) or DEFAULT_CURRENCY
            return format_number(
                number, FieldType.CURRENCY, locale=self.locale, currency=code, scale=scale
            )
        return format_number(number, locale=self.locale, scale=scale)

    # Owner and parent

    def owner_id(self, record: Record | None) -> str:
        data = self.resolve(record, self.owner_field)
        if data.raw is not None and data.raw != "":
            return str(data.raw)
        if data.display:
            return sanitize_field_output(data.display)
        return ""

    def owner_label(self, record: Record | None) -> str:
        """Owner full name, else first and last name, else the owner field display."""
        full_name = self.field_display(record, self.qualify("Owner.Name"))
        if full_name:
            return full_name
        first = self.field_display(record, self.qualify("Owner.FirstName"))
        last = self.field_display(record, self.qualify("Owner.LastName"))
        composed = " ".join(part for part in (first, last) if part).strip()
        if composed:
            return composed
        return self.field_display(record, self.owner_field)

    def parent_label(self, record: Record | None) -> str | None:
        if record is None or record.parent is None:
            return None
        if record.parent.name:
            return sanitize_field_output(record.parent.name)
        if record.parent.id:
            return self.parent_labels.get(record.parent.id) or record.parent.id
        return None

    # Metadata

    def field_metadata(self, field: str | None) -> FieldMetadata | None:
        if self.metadata is None or not field:
            return None
        return self.metadata.fields.get(extract_simple_field_name(field))

    def field_type(self, field: str | None) -> FieldType | None:
        metadata = self.field_metadata(field)
        return metadata.field_type if metadata is not None else None

    def enumeration_order(self, field: str | None) -> dict[str, int] | None:
        metadata = self.field_metadata(field)
        return metadata.enumeration_order() if metadata is not None else None

    def relationship_metadata(self, relationship_name: str | None) -> FieldMetadata | None:
        if not relationship_name or self.metadata is None:
            return None
        target = relationship_name.lower()
        for metadata in self.metadata.fields.values():
            if metadata.relationship_name and metadata.relationship_name.lower() == target:
                return metadata
        return None

    def relationship_label(self, relationship_name: str | None) -> str | None:
        """Readable label for a relationship path segment."""
        if not relationship_name:
            return None
        metadata = self.relationship_metadata(relationship_name)
        if metadata is None:
            return format_api_name(relationship_name)
        if relationship_name.lower().endswith("__r"):
            if metadata.reference_label:
                return metadata.reference_label
            if metadata.label:
                return metadata.label
            return format_object_label(relationship_name[:-3] or relationship_name)
        if metadata.relationship_name:
            return format_api_name(metadata.relationship_name)
        return metadata.reference_label or metadata.label or format_api_name(relationship_name)

    def field_label(self, field: str | None) -> str:
        """Display label; relationship paths are joined with arrows."""
        stripped = self.strip_prefix(field)
        segments = [s for s in (stripped or "").split(".") if s]
        if len(segments) > 1:
            labels = [self.relationship_label(segments[0]) or format_api_name(segments[0])]
            labels.extend(format_api_name(segment) for segment in segments[1:-1])
            labels.append(format_api_name(segments[-1]))
            return ARROW_SEPARATOR.join(label for label in labels if label)
        metadata = self.field_metadata(field)
        if metadata is not None and metadata.label:
            return metadata.label
        return format_api_name(extract_simple_field_name(field))

    def object_label(self) -> str | None:
        if self.metadata is not None and self.metadata.label:
            return self.metadata.label
        return format_object_label(self.object_name)


def _numeric_text(value: Any) -> str:
    if value is None:
        return ""
    return stringify(value).strip().replace(",", "")
