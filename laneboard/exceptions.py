"""laneboard exception hierarchy.

All laneboard-specific exceptions inherit from LaneBoardException, enabling
catch-all handling while supporting specific error types.

Configuration errors are fatal to the current render and surface as a single
board-level message. Backend errors are recoverable and are reported through
the notifier. Summary warnings and pattern edge cases never raise.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any


DEFAULT_ERROR_TITLE = "Error"
DEFAULT_ERROR_MESSAGE = "An unexpected error occurred."


class LaneBoardException(Exception):
    """Base exception for all laneboard errors."""

    def __init__(self, message: str, **context: Any) -> None:
        """Initialize laneboard exception.

        Parameters
        ----------
        message : str
            Human-readable error message.
        **context : Any
            Additional context (field, object_name, record_id, etc.).
        """
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        """Format exception with context."""
        if self.context:
            ctx = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx})"
        return self.message


class ConfigurationError(LaneBoardException):
    """Board configuration is unusable.

    Raised when the grouping field is missing or has an unsupported type,
    or when the parent configuration is incomplete. The board clears its
    lanes and filters and shows the message; there is no retry.
    """


class GroupingFieldMissingError(ConfigurationError):
    """Grouping field does not exist on the card object."""

    def __init__(self, field_name: str, object_name: str, **context: Any) -> None:
        """Initialize grouping field error.

        Parameters
        ----------
        field_name : str
            The configured grouping field.
        object_name : str
            The card object API name.
        **context : Any
            Additional context.
        """
        super().__init__(
            f"Grouping field specified ('{field_name}') is not a field on the "
            f"'{object_name}' object.",
            field=field_name,
            object_name=object_name,
            **context,
        )
        self.field_name = field_name
        self.object_name = object_name


class GroupingFieldTypeError(ConfigurationError):
    """Grouping field exists but is neither an enumeration nor a string."""

    def __init__(self, label: str, data_type: str, **context: Any) -> None:
        """Initialize grouping type error.

        Parameters
        ----------
        label : str
            The grouping field's display label.
        data_type : str
            The field's reported data type.
        **context : Any
            Additional context.
        """
        super().__init__(
            "Grouping Field API Name must reference a Picklist or String field. "
            f"{label} is configured as {data_type}.",
            label=label,
            data_type=data_type,
            **context,
        )
        self.label = label
        self.data_type = data_type


class MissingRelationshipError(ConfigurationError):
    """Parent object configured without a child relationship name."""

    def __init__(self, **context: Any) -> None:
        """Initialize missing relationship error."""
        super().__init__(
            "Child Relationship Name is required when Parent Object API Name is set.",
            **context,
        )


class BackendError(LaneBoardException):
    """A backend call failed.

    Recoverable: the board reports it through the notifier and keeps
    its last good state.
    """


class FetchError(BackendError):
    """Fetching records or metadata failed."""

    def __init__(self, message: str, mode: str | None = None, **context: Any) -> None:
        """Initialize fetch error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        mode : str, optional
            The data mode the fetch was issued for.
        **context : Any
            Additional context.
        """
        super().__init__(message, mode=mode, **context)
        self.mode = mode


class CommitError(BackendError):
    """Committing a record update failed."""

    def __init__(
        self,
        message: str,
        record_id: str | None = None,
        errors: list[Any] | None = None,
        **context: Any,
    ) -> None:
        """Initialize commit error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        record_id : str, optional
            The record whose update was rejected.
        errors : list, optional
            Raw error payloads reported by the backend.
        **context : Any
            Additional context.
        """
        super().__init__(message, record_id=record_id, **context)
        self.record_id = record_id
        self.errors = errors or []


@dataclass
class ParsedError:
    """Normalized error payload.

    Attributes
    ----------
    title : str
        Notification title.
    message : str
        Messages joined with newlines, or the default message.
    messages : list[str]
        The individual de-duplicated messages.
    """

    title: str = DEFAULT_ERROR_TITLE
    message: str = DEFAULT_ERROR_MESSAGE
    messages: list[str] = field(default_factory=list)


def _normalize(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _get(value: Any, key: str) -> Any:
    if isinstance(value, Mapping):
        return value.get(key)
    return getattr(value, key, None)


def _item_message(item: Any, *alternates: str) -> Any:
    if isinstance(item, (Mapping, LaneBoardException)) or hasattr(item, "message"):
        for key in ("message", *alternates):
            found = _get(item, key)
            if found:
                return found
        return None
    return item


def parse_error(error: Any) -> ParsedError:
    """Normalize an arbitrary error payload into readable messages.

    Field errors, output errors and page errors are preferred; the body
    message, the error's own message and its status text are the fallback.

    Parameters
    ----------
    error : Any
        A string, exception, or mapping with an optional ``body``.

    Returns
    -------
    ParsedError
        Title, combined message and the individual messages.
    """
    primary: list[str] = []
    fallback: list[str] = []
    seen: set[str] = set()

    def append(target: list[str], value: Any) -> None:
        normalized = _normalize(value)
        if not normalized or normalized in seen:
            return
        target.append(normalized)
        seen.add(normalized)

    def collect_output(output: Any) -> None:
        if not output:
            return
        field_errors = _get(output, "fieldErrors")
        if isinstance(field_errors, Mapping):
            for errors in field_errors.values():
                for item in errors or []:
                    append(primary, _item_message(item, "errorMessage"))
        for key in ("errors", "pageErrors"):
            items = _get(output, key)
            if isinstance(items, list):
                for item in items:
                    append(primary, _item_message(item))

    if isinstance(error, str):
        append(primary, error)

    body = None if isinstance(error, str) else _get(error, "body")
    if isinstance(body, list):
        for item in body:
            if item:
                append(primary, _item_message(item))
    elif body:
        collect_output(_get(body, "output"))
        page_errors = _get(body, "pageErrors")
        if isinstance(page_errors, list):
            for item in page_errors:
                append(primary, _get(item, "message"))
        append(fallback, _get(body, "message"))

    if not isinstance(error, str) and error is not None:
        if isinstance(error, BaseException) and not isinstance(error, LaneBoardException):
            append(fallback, _get(error, "message") or str(error))
        else:
            append(fallback, _get(error, "message"))
        if isinstance(error, CommitError):
            for item in error.errors:
                append(primary, _item_message(item))
        append(fallback, _get(error, "statusText"))

    messages = primary or fallback
    if not messages:
        return ParsedError(messages=[DEFAULT_ERROR_MESSAGE])
    return ParsedError(message="\n".join(messages), messages=messages)
