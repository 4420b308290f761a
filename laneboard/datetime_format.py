"""Date/time pattern tokenizer and formatter.

Patterns use the familiar letter tokens (``yyyy-MM-dd h:mm a``). Locale
names (months, weekdays, day periods, time zones) come from Babel and zone
conversion from :mod:`zoneinfo`.

None of the entry points raise on bad input: unparseable values, unknown
zones and empty patterns resolve to ``None`` or an empty string.
"""

from __future__ import annotations

import re

from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from functools import lru_cache
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from babel import Locale, UnknownLocaleError
from babel.dates import format_date, format_datetime, format_time

from .log import debug, warn


DEFAULT_LOCALE = "en-US"
DEFAULT_TIME_ZONE = "UTC"
DEFAULT_TIME_PATTERN = " h:mm a"

CONNECTOR_LITERAL_PATTERN = re.compile(r"^[\s:,/-]+$")
TOKEN_CHARS = frozenset("HhKkmsSayMdEz")
TIME_ONLY_TOKEN_CHARS = frozenset("HhKkmsSaz")

_DATE_ONLY_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_ISO_LIKE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}(?:[T\s].*)?$", re.IGNORECASE)
_HAS_TIME_RE = re.compile(r"\d{2}:\d{2}")
_TRAILING_SEPARATORS_RE = re.compile(r"[-:/,\s]+$")
_WHITESPACE_RUN_RE = re.compile(r"\s{2,}")


class TokenKind(str, Enum):
    """Pattern token kind."""

    LITERAL = "literal"
    TOKEN = "token"


@dataclass(frozen=True)
class PatternToken:
    """A literal run or a repeated format-letter run."""

    kind: TokenKind
    value: str

    @property
    def is_time_only(self) -> bool:
        return self.kind is TokenKind.TOKEN and self.value[0] in TIME_ONLY_TOKEN_CHARS


class PatternTokenCache:
    """Tokenized patterns keyed by pattern string.

    Owned by a board and cleared when its date/time pattern changes.
    """

    def __init__(self) -> None:
        self._tokens: dict[str, list[PatternToken]] = {}

    def get(self, pattern: str) -> list[PatternToken] | None:
        return self._tokens.get(pattern)

    def put(self, pattern: str, tokens: list[PatternToken]) -> None:
        self._tokens[pattern] = tokens

    def invalidate(self, reason: str = "unspecified") -> None:
        """Drop every cached pattern."""
        if self._tokens:
            debug("Pattern token cache cleared.", {"reason": reason, "size": len(self._tokens)})
        self._tokens.clear()

    def __contains__(self, pattern: object) -> bool:
        return pattern in self._tokens

    def __len__(self) -> int:
        return len(self._tokens)


@dataclass(frozen=True)
class FormatParts:
    """Every individually addressable component of one instant.

    Attributes
    ----------
    year, year_short : str
        ``"2023"`` and ``"23"``.
    month, month_number : str
        Zero-padded and unpadded month number.
    day, day_number : str
        Zero-padded and unpadded day of month.
    hour24, hour12, hour12_no_pad : str
        ``"14"``, ``"02"`` and ``"2"``.
    minute, second, millisecond : str
        Zero-padded to 2, 2 and 3 digits.
    am_pm : str
        Locale day period, empty for calendar dates.
    month_short, month_long, weekday_short, weekday_long : str
        Locale names.
    time_zone_short, time_zone_long : str
        Locale zone names, empty for calendar dates.
    """

    year: str
    year_short: str
    month: str
    month_number: str
    day: str
    day_number: str
    hour24: str
    hour12: str
    hour12_no_pad: str
    minute: str
    second: str
    millisecond: str
    am_pm: str
    month_short: str
    month_long: str
    weekday_short: str
    weekday_long: str
    time_zone_short: str
    time_zone_long: str


_TOKEN_FIELDS: dict[str, str] = {
    "yyyy": "year",
    "yy": "year_short",
    "MMMM": "month_long",
    "MMM": "month_short",
    "MM": "month",
    "M": "month_number",
    "dd": "day",
    "d": "day_number",
    "HH": "hour24",
    "hh": "hour12",
    "h": "hour12_no_pad",
    "mm": "minute",
    "ss": "second",
    "SSS": "millisecond",
    "EEE": "weekday_short",
    "EEEE": "weekday_long",
    "z": "time_zone_short",
    "zzzz": "time_zone_long",
}


@lru_cache(maxsize=32)
def resolve_locale(tag: str | None) -> Locale:
    """Parse a BCP 47 (``en-US``) or POSIX (``en_US``) locale tag."""
    if tag:
        try:
            return Locale.parse(tag.replace("-", "_"))
        except (UnknownLocaleError, ValueError, TypeError):
            warn(f"Unknown locale {tag!r}; falling back to {DEFAULT_LOCALE}")
    return Locale.parse(DEFAULT_LOCALE.replace("-", "_"))


@lru_cache(maxsize=64)
def resolve_time_zone(name: str | None) -> ZoneInfo:
    """Return the zone for an IANA name, falling back to UTC."""
    if name:
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            warn(f"Unknown time zone {name!r}; falling back to {DEFAULT_TIME_ZONE}")
    return ZoneInfo(DEFAULT_TIME_ZONE)


def tokenize(pattern: str, cache: PatternTokenCache | None = None) -> list[PatternToken]:
    """Split a pattern into literal and token runs.

    A single quote opens a literal that runs to the next unpaired quote
    (or the end of the pattern); ``''`` inside it is a quote character.
    Repeated token letters form one token. Anything else, including
    letters outside the token set, is a one-character literal.

    Parameters
    ----------
    pattern : str
        The pattern string.
    cache : PatternTokenCache, optional
        Cache consulted before tokenizing and updated after.

    Returns
    -------
    list[PatternToken]
        The token sequence.
    """
    if cache is not None:
        cached = cache.get(pattern)
        if cached is not None:
            return cached

    tokens: list[PatternToken] = []
    i = 0
    length = len(pattern)
    while i < length:
        char = pattern[i]
        if char == "'":
            literal = []
            i += 1
            while i < length:
                current = pattern[i]
                if current == "'":
                    if i + 1 < length and pattern[i + 1] == "'":
                        literal.append("'")
                        i += 2
                        continue
                    i += 1
                    break
                literal.append(current)
                i += 1
            if literal:
                tokens.append(PatternToken(TokenKind.LITERAL, "".join(literal)))
            continue
        if char in TOKEN_CHARS:
            start = i
            while i < length and pattern[i] == char:
                i += 1
            tokens.append(PatternToken(TokenKind.TOKEN, pattern[start:i]))
            continue
        tokens.append(PatternToken(TokenKind.LITERAL, char))
        i += 1

    if cache is not None:
        cache.put(pattern, tokens)
    return tokens


def normalize_tokens(
    tokens: list[PatternToken],
    *,
    date_only: bool = False,
    cache: PatternTokenCache | None = None,
) -> list[PatternToken]:
    """Adapt a token sequence to the value's data type.

    Calendar dates lose time-only tokens and any literal touching one.
    Date-times without a time-of-day token get the default time suffix.
    """
    if not tokens:
        return []
    if date_only:
        kept = []
        for i, token in enumerate(tokens):
            if token.is_time_only:
                continue
            if token.kind is TokenKind.LITERAL:
                prev_is_time = i > 0 and tokens[i - 1].is_time_only
                next_is_time = i + 1 < len(tokens) and tokens[i + 1].is_time_only
                if prev_is_time or next_is_time:
                    continue
            kept.append(token)
        return kept
    if any(token.is_time_only for token in tokens):
        return tokens
    return tokens + tokenize(DEFAULT_TIME_PATTERN, cache)


def token_value(token: str, parts: FormatParts, *, date_only: bool = False) -> str:
    """Render one token run against the parts; unsupported runs render empty."""
    if token == "H":
        return str(int(parts.hour24)) if parts.hour24 else ""
    if token == "a":
        return "" if date_only else parts.am_pm
    attr = _TOKEN_FIELDS.get(token)
    if attr is None:
        return ""
    return getattr(parts, attr) or ""


def apply(parts: FormatParts, tokens: list[PatternToken], *, date_only: bool = False) -> str:
    """Render a token sequence.

    A literal is emitted only when a later token produces output or output
    has already been produced. For calendar dates a pure separator literal
    with nothing after it is dropped. The result is trimmed with inner
    whitespace runs collapsed.
    """
    values = [
        token_value(token.value, parts, date_only=date_only)
        if token.kind is TokenKind.TOKEN
        else None
        for token in tokens
    ]
    # output_after[i]: some token strictly after i renders non-empty
    output_after = [False] * len(tokens)
    seen = False
    for i in range(len(tokens) - 1, -1, -1):
        output_after[i] = seen
        if values[i]:
            seen = True

    result: list[str] = []
    has_output = False
    for i, token in enumerate(tokens):
        if token.kind is TokenKind.LITERAL:
            future = output_after[i]
            if not (future or has_output):
                continue
            if not future and date_only and CONNECTOR_LITERAL_PATTERN.match(token.value):
                continue
            result.append(token.value)
            continue
        value = values[i]
        if value:
            result.append(value)
            has_output = True
    return _WHITESPACE_RUN_RE.sub(" ", "".join(result).strip())


def apply_pattern(
    parts: FormatParts | None,
    pattern: str | None,
    *,
    date_only: bool = False,
    cache: PatternTokenCache | None = None,
) -> str | None:
    """Tokenize ``pattern`` and render it without type normalization."""
    if not pattern or parts is None:
        return None
    tokens = tokenize(pattern, cache)
    if not tokens:
        return None
    return apply(parts, tokens, date_only=date_only)


def _parse_iso(text: str) -> datetime | None:
    candidate = text.strip()
    if candidate[-1:] in ("Z", "z"):
        candidate = candidate[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(candidate)
    except ValueError:
        return None


def to_datetime(value: Any, *, date_only: bool = False) -> datetime | None:
    """Coerce a value to an aware datetime.

    Naive values are read as UTC; numbers are epoch milliseconds; calendar
    date strings become UTC midnight.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        match = _DATE_ONLY_RE.match(value.strip()) if date_only else None
        if match:
            try:
                parsed = datetime(*(int(g) for g in match.groups()))
            except ValueError:
                return None
        else:
            parsed = _parse_iso(value)
            if parsed is None:
                return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def timestamp_of(value: Any) -> float | None:
    """Return the POSIX timestamp of a date-like value, or None if invalid."""
    parsed = to_datetime(value)
    return parsed.timestamp() if parsed is not None else None


def _calendar_parts(day: date, locale: Locale) -> FormatParts:
    year = f"{day.year:04d}"
    return FormatParts(
        year=year,
        year_short=year[-2:],
        month=f"{day.month:02d}",
        month_number=str(day.month),
        day=f"{day.day:02d}",
        day_number=str(day.day),
        hour24="00",
        hour12="12",
        hour12_no_pad="12",
        minute="00",
        second="00",
        millisecond="000",
        am_pm="",
        month_short=format_date(day, "LLL", locale=locale),
        month_long=format_date(day, "LLLL", locale=locale),
        weekday_short=format_date(day, "EEE", locale=locale),
        weekday_long=format_date(day, "EEEE", locale=locale),
        time_zone_short="",
        time_zone_long="",
    )


def build_parts(
    value: Any,
    *,
    date_only: bool = False,
    locale: str | None = DEFAULT_LOCALE,
    time_zone: str | None = DEFAULT_TIME_ZONE,
) -> FormatParts | None:
    """Resolve a value into locale-aware format parts.

    Parameters
    ----------
    value : Any
        datetime, date, ISO string or epoch milliseconds.
    date_only : bool
        Treat ``YYYY-MM-DD`` strings as calendar dates with no zone shift.
    locale : str, optional
        Locale tag for names and day periods.
    time_zone : str, optional
        IANA zone the instant is shown in.

    Returns
    -------
    FormatParts or None
        None for empty or unparseable input.
    """
    if value is None or value == "":
        return None
    loc = resolve_locale(locale)
    if date_only and isinstance(value, str):
        match = _DATE_ONLY_RE.match(value.strip())
        if match:
            try:
                day = date(*(int(g) for g in match.groups()))
            except ValueError:
                return None
            return _calendar_parts(day, loc)

    instant = to_datetime(value, date_only=date_only)
    if instant is None:
        return None
    tz = resolve_time_zone(time_zone)
    local = instant.astimezone(tz)
    hour12 = local.hour % 12 or 12
    year = f"{local.year:04d}"
    return FormatParts(
        year=year,
        year_short=year[-2:],
        month=f"{local.month:02d}",
        month_number=str(local.month),
        day=f"{local.day:02d}",
        day_number=str(local.day),
        hour24=f"{local.hour:02d}",
        hour12=f"{hour12:02d}",
        hour12_no_pad=str(hour12),
        minute=f"{local.minute:02d}",
        second=f"{local.second:02d}",
        millisecond=f"{local.microsecond // 1000:03d}",
        am_pm=format_time(local, "a", tzinfo=tz, locale=loc),
        month_short=format_date(local.date(), "LLL", locale=loc),
        month_long=format_date(local.date(), "LLLL", locale=loc),
        weekday_short=format_date(local.date(), "EEE", locale=loc),
        weekday_long=format_date(local.date(), "EEEE", locale=loc),
        time_zone_short=format_datetime(local, "z", tzinfo=tz, locale=loc),
        time_zone_long=format_datetime(local, "zzzz", tzinfo=tz, locale=loc),
    )


def format_with_locale(
    value: Any,
    *,
    date_only: bool = False,
    locale: str | None = DEFAULT_LOCALE,
    time_zone: str | None = DEFAULT_TIME_ZONE,
) -> str | None:
    """Format with the locale's short date (and short time) style."""
    if value is None or value == "":
        return None
    loc = resolve_locale(locale)
    instant = to_datetime(value, date_only=date_only)
    if instant is None:
        return None
    if date_only:
        return format_date(instant.astimezone(timezone.utc).date(), "short", locale=loc)
    return format_datetime(instant, "short", tzinfo=resolve_time_zone(time_zone), locale=loc)


def format_with_pattern(
    value: Any,
    *,
    pattern: str | None = None,
    date_only: bool = False,
    cache: PatternTokenCache | None = None,
    locale: str | None = DEFAULT_LOCALE,
    time_zone: str | None = DEFAULT_TIME_ZONE,
) -> str | None:
    """Format a date or date-time value with a pattern.

    Falls back to :func:`format_with_locale` when no pattern is set.

    Examples
    --------
    >>> format_with_pattern("2023-12-25T14:30:45.123Z", pattern="yyyy-MM-dd")
    '2023-12-25 2:30 PM'
    >>> format_with_pattern("2023-12-25", pattern="yyyy-MM-dd HH:mm:ss", date_only=True)
    '2023-12-25'
    """
    if not pattern:
        return format_with_locale(value, date_only=date_only, locale=locale, time_zone=time_zone)
    parts = build_parts(value, date_only=date_only, locale=locale, time_zone=time_zone)
    if parts is None:
        return None
    tokens = tokenize(pattern, cache)
    if not tokens:
        return None
    normalized = normalize_tokens(tokens, date_only=date_only, cache=cache)
    if not normalized:
        return None
    formatted = apply(parts, normalized, date_only=date_only)
    if not formatted:
        return None
    if date_only:
        return _TRAILING_SEPARATORS_RE.sub("", formatted).strip()
    return formatted


def try_format_date_or_datetime_string(value: Any, **options: Any) -> str | None:
    """Format an ISO-like string, detecting calendar dates by the absence of ``HH:MM``.

    Non-strings and strings that do not start with ``YYYY-MM-DD`` return None.
    """
    if not value or not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not _ISO_LIKE_RE.match(trimmed):
        return None
    options["date_only"] = not _HAS_TIME_RE.search(trimmed)
    return format_with_pattern(trimmed, **options)
