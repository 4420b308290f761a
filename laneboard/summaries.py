"""Lane summary definitions, value coercion, aggregation and formatting."""

from __future__ import annotations

import math

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from .datetime_format import PatternTokenCache, format_with_pattern, timestamp_of
from .fields import (
    DEFAULT_CURRENCY,
    FieldResolver,
    coerce_numeric,
    format_number,
    normalize_currency_code,
)
from .log import debug
from .models import (
    MAX_SUMMARIES,
    MIXED_CURRENCIES,
    AggregationKind,
    FieldType,
    Lane,
    Record,
    Summary,
    SummaryDefinition,
)


NO_VALUE = ""
EMPTY_LANE_PLACEHOLDER = "-"
CURRENCY_FIELD = "CurrencyIsoCode"

_BOOLEAN_KINDS = (AggregationKind.COUNT_TRUE, AggregationKind.COUNT_FALSE)
_NUMERIC_KINDS = (AggregationKind.SUM, AggregationKind.AVG)
_EXTREMA_KINDS = (AggregationKind.MIN, AggregationKind.MAX)
_TRUE_STRINGS = frozenset({"true", "1", "yes"})
_FALSE_STRINGS = frozenset({"false", "0", "no"})

coerce_numeric_value = coerce_numeric


@dataclass(frozen=True)
class CurrencyCode:
    """A resolved currency; ``is_fallback`` when the record carried none."""

    code: str
    is_fallback: bool = False


def parse_summary_definitions(raw: str | None) -> tuple[list[SummaryDefinition], list[str]]:
    """Parse ``field|KIND|label`` entries separated by semicolons.

    Entries may be wrapped in brackets and labels may contain ``|``. At
    most three definitions are kept.

    Parameters
    ----------
    raw : str or None
        The configured summaries string.

    Returns
    -------
    tuple[list[SummaryDefinition], list[str]]
        Parsed definitions (field paths not yet qualified) and warnings.

    Examples
    --------
    >>> defs, warnings = parse_summary_definitions("Amount|SUM|Total; [Amount|AVG|Avg]")
    >>> [d.key for d in defs]
    ['Amount|SUM|Total', 'Amount|AVG|Avg']
    """
    definitions: list[SummaryDefinition] = []
    warnings: list[str] = []
    text = "" if raw is None else str(raw)
    if not text.strip():
        return definitions, warnings

    entries = [entry.strip() for entry in text.split(";") if entry.strip()]
    for entry in entries:
        normalized = entry
        if normalized.startswith("[") and normalized.endswith("]"):
            normalized = normalized[1:-1].strip()

        parts = [part.strip() for part in normalized.split("|")]
        if len(parts) < 3:
            warnings.append(f'Invalid summary entry: "{entry}"')
            continue
        field_path, kind_raw = parts[0], parts[1]
        label = "|".join(parts[2:]).strip()
        if not field_path or not kind_raw or not label:
            warnings.append(f'Invalid summary entry: "{entry}"')
            continue

        kind = AggregationKind.parse(kind_raw)
        if kind is None:
            warnings.append(f'Unsupported summary type "{kind_raw}" in "{entry}"')
            continue

        definitions.append(SummaryDefinition(field_path=field_path, kind=kind, label=label))
        if len(definitions) == MAX_SUMMARIES:
            if len(entries) > MAX_SUMMARIES:
                warnings.append(f"Only the first {MAX_SUMMARIES} summaries are used.")
            break

    return definitions, warnings


def _kind_accepts(kind: AggregationKind, field_type: FieldType | None) -> bool:
    if field_type is None:
        return False
    if kind in _NUMERIC_KINDS:
        return field_type.is_numeric
    if kind in _EXTREMA_KINDS:
        return field_type.is_numeric or field_type.is_temporal
    return field_type is FieldType.BOOLEAN


def validate_summary_definitions(
    definitions: Sequence[SummaryDefinition], resolver: FieldResolver
) -> tuple[list[SummaryDefinition], list[str]]:
    """Qualify field paths and check each definition against metadata.

    Without metadata the definitions are only qualified. With metadata,
    definitions whose field is missing or whose type does not suit the
    aggregation are dropped with a warning; the rest carry the field's
    type, scale and precision.
    """
    if resolver.metadata is None:
        return [
            definition.model_copy(
                update={"field_path": resolver.qualify(definition.field_path) or definition.field_path}
            )
            for definition in definitions
        ], []

    valid: list[SummaryDefinition] = []
    warnings: list[str] = []
    for definition in definitions:
        name = definition.field_path
        qualified = resolver.qualify(name)
        if not qualified:
            warnings.append(f'Summary field "{name}" is invalid.')
            continue
        metadata = resolver.field_metadata(qualified)
        if metadata is None:
            warnings.append(f'Summary field "{name}" does not exist.')
            continue
        if not metadata.data_type or not metadata.data_type.strip():
            warnings.append(f'Summary field "{name}" has no supported data type.')
            continue
        field_type = metadata.field_type
        if not _kind_accepts(definition.kind, field_type):
            warnings.append(f'Summary field "{name}" is not valid for {definition.kind.value}.')
            continue
        valid.append(
            definition.model_copy(
                update={
                    "field_path": qualified,
                    "data_type": field_type,
                    "scale": metadata.scale,
                    "precision": metadata.precision,
                }
            )
        )
    return valid, warnings


def coerce_boolean_value(value: Any) -> bool | None:
    """Booleans pass through; ``"true"``/``"false"`` style strings convert."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in _TRUE_STRINGS:
            return True
        if normalized in _FALSE_STRINGS:
            return False
    return None


def coerce_summary_value(record: Record, definition: SummaryDefinition, resolver: FieldResolver) -> Any:
    """Read a record's value for a summary, or None when it cannot be aggregated."""
    raw = resolver.resolve(record, definition.field_path).raw
    if definition.kind in _BOOLEAN_KINDS:
        return coerce_boolean_value(raw)
    if definition.data_type is not None and definition.data_type.is_temporal:
        return raw if raw is not None and raw != "" else None
    return coerce_numeric_value(raw)


def resolve_currency_code(
    record: Record | None,
    resolver: FieldResolver,
    fallback: str | None = None,
) -> CurrencyCode | None:
    """Currency of a record, falling back to the configured currency."""
    fallback_code = normalize_currency_code(fallback or resolver.currency)
    field = resolver.qualify(CURRENCY_FIELD) or CURRENCY_FIELD
    data = resolver.resolve(record, field)
    candidate = data.raw if data.raw is not None else data.display
    code = normalize_currency_code(candidate)
    if code:
        return CurrencyCode(code)
    if fallback_code:
        return CurrencyCode(fallback_code, is_fallback=True)
    return None


def format_summary_value(
    definition: SummaryDefinition,
    value: Any,
    *,
    currency: str | None = None,
    narrow_symbol: bool = False,
    pattern: str | None = None,
    pattern_cache: PatternTokenCache | None = None,
    locale: str | None = None,
    time_zone: str | None = None,
) -> str:
    """Format an aggregated value; missing or non-finite values render as ``""``."""
    if value is None:
        return NO_VALUE
    data_type = definition.data_type
    locale_options = {k: v for k, v in (("locale", locale), ("time_zone", time_zone)) if v}
    if data_type is not None and data_type.is_temporal and definition.kind in _EXTREMA_KINDS:
        formatted = format_with_pattern(
            value,
            pattern=pattern,
            date_only=data_type is FieldType.DATE,
            cache=pattern_cache,
            **locale_options,
        )
        return formatted or NO_VALUE
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return NO_VALUE
    if not math.isfinite(value):
        return NO_VALUE
    scale = definition.scale if definition.scale is not None and definition.scale >= 0 else None
    number_locale = {"locale": locale} if locale else {}
    if definition.kind in _BOOLEAN_KINDS:
        return format_number(value, **number_locale)
    if data_type is FieldType.PERCENT:
        normalized = value / 100 if abs(value) > 1 else value
        return format_number(normalized, FieldType.PERCENT, scale=scale, **number_locale)
    if data_type is FieldType.CURRENCY and currency:
        return format_number(
            value,
            FieldType.CURRENCY,
            currency=currency,
            scale=scale,
            narrow_symbol=narrow_symbol,
            **number_locale,
        )
    return format_number(value, scale=scale, **number_locale)


def _aggregate(kind: AggregationKind, values: list[Any], temporal: bool) -> Any:
    if kind is AggregationKind.COUNT_TRUE:
        return sum(1 for value in values if value is True)
    if kind is AggregationKind.COUNT_FALSE:
        return sum(1 for value in values if value is False)
    if temporal and kind in _EXTREMA_KINDS:
        best = None
        best_time = None
        for value in values:
            ts = timestamp_of(value)
            if ts is None:
                continue
            if best_time is None or (ts < best_time if kind is AggregationKind.MIN else ts > best_time):
                best, best_time = value, ts
        return best
    if kind is AggregationKind.SUM:
        return sum(values)
    if kind is AggregationKind.AVG:
        return sum(values) / len(values)
    if kind is AggregationKind.MIN:
        return min(values)
    return max(values)


def summarize_lane(
    records: Sequence[Record],
    definitions: Sequence[SummaryDefinition],
    resolver: FieldResolver,
    lane_label: str | None = None,
) -> tuple[list[Summary], list[str]]:
    """Compute every summary for one lane.

    Currency summaries are blocked with ``"Mixed currencies"`` and a
    warning when the lane's records use more than one currency.
    """
    summaries: list[Summary] = []
    warnings: list[str] = []
    for definition in definitions:
        is_currency = definition.data_type is FieldType.CURRENCY
        codes: list[CurrencyCode] = []
        if is_currency:
            codes = [c for c in (resolve_currency_code(r, resolver) for r in records) if c]
            if len({c.code for c in codes}) > 1:
                warnings.append(
                    f'Summary "{definition.label}" is blocked for '
                    f'"{lane_label or "this column"}" because multiple currencies are present.'
                )
                summaries.append(
                    Summary(key=definition.key, label=definition.label, value=MIXED_CURRENCIES)
                )
                continue

        values = [
            value
            for value in (coerce_summary_value(r, definition, resolver) for r in records)
            if value is not None
        ]
        temporal = definition.data_type is not None and definition.data_type.is_temporal
        result = _aggregate(definition.kind, values, temporal) if values else None

        currency = None
        narrow = False
        if is_currency:
            if codes:
                currency, narrow = codes[0].code, codes[0].is_fallback
            else:
                currency = normalize_currency_code(resolver.currency) or DEFAULT_CURRENCY
        summaries.append(
            Summary(
                key=definition.key,
                label=definition.label,
                value=format_summary_value(
                    definition,
                    result,
                    currency=currency,
                    narrow_symbol=narrow,
                    pattern=resolver.pattern,
                    pattern_cache=resolver.pattern_cache,
                    locale=resolver.locale,
                    time_zone=resolver.time_zone,
                ),
            )
        )
    return summaries, warnings


def should_defer_summaries(definitions: Sequence[SummaryDefinition], records: Sequence[Record]) -> bool:
    return bool(definitions) and bool(records)


def apply_summary_placeholders(lanes: Sequence[Lane], definitions: Sequence[SummaryDefinition]) -> list[Lane]:
    """Replace summaries with placeholders until the deferred pass runs.

    Empty lanes show ``"-"``; lanes with cards show a loading summary.
    """
    if not definitions:
        return list(lanes)
    result = []
    for lane in lanes:
        has_cards = bool(lane.cards)
        summaries = [
            Summary(
                key=definition.key,
                label=definition.label,
                value="" if has_cards else EMPTY_LANE_PLACEHOLDER,
                is_loading=has_cards,
            )
            for definition in definitions
        ]
        result.append(lane.model_copy(update={"summaries": summaries, "summary_warnings": []}))
    debug("Summary placeholders applied.", {"lanes": len(result)})
    return result


def collect_runtime_warnings(lanes: Iterable[Lane]) -> list[str]:
    """Every lane's summary warnings, in lane order."""
    return [warning for lane in lanes for warning in lane.summary_warnings]


def combine_warnings(*groups: Iterable[str | None]) -> str | None:
    """De-duplicate and space-join warnings; None when there are none."""
    seen: dict[str, None] = {}
    for group in groups:
        for warning in group or ():
            if warning:
                seen.setdefault(warning, None)
    return " ".join(seen) if seen else None
