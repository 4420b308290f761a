"""Backend interfaces and the in-memory implementation.

A board talks to its backend only through these interfaces: fetching
records, committing a grouping change, reading object metadata and
notifying the user.
"""

# pylint: disable=unnecessary-ellipsis

from __future__ import annotations

import asyncio

from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any

from .exceptions import CommitError, FetchError
from .fields import extract_simple_field_name
from .log import debug
from .models import FieldValue, Notification, ObjectMetadata, Record, SortDirection


if TYPE_CHECKING:
    from .data_mode import FetchRequest


class RecordSource(ABC):
    """Fetches card records."""

    @abstractmethod
    async def fetch_related(self, request: FetchRequest) -> list[Record]:
        """Fetch the records related to ``request.parent_ids``.

        Parameters
        ----------
        request : FetchRequest
            Parent ids, relationship name, fields, sort and limit.

        Returns
        -------
        list[Record]
            The card records.
        """
        ...

    @abstractmethod
    async def fetch_parentless(self, request: FetchRequest) -> list[Record]:
        """Fetch card records without a parent scope."""
        ...


class RecordUpdater(ABC):
    """Commits record updates."""

    @abstractmethod
    async def commit_update(self, record_id: str, fields: Mapping[str, Any]) -> None:
        """Write field values to a record.

        Parameters
        ----------
        record_id : str
            The record to update.
        fields : Mapping[str, Any]
            Field name to new value; ``Id`` is included.

        Raises
        ------
        CommitError
            The update was rejected.
        """
        ...


class MetadataProvider(ABC):
    """Supplies object and field metadata."""

    @abstractmethod
    async def get_object_metadata(self, object_name: str) -> ObjectMetadata | None:
        """Return metadata for an object, or None if it is unknown."""
        ...


class Notifier(ABC):
    """Surfaces user-facing messages."""

    @abstractmethod
    def notify(self, title: str, message: str, variant: str = "info") -> None:
        """Show a message (``success``, ``info``, ``warning`` or ``error``)."""
        ...


class RecordingNotifier(Notifier):
    """Keeps every notification in order."""

    def __init__(self) -> None:
        self.notifications: list[Notification] = []

    def notify(self, title: str, message: str, variant: str = "info") -> None:
        self.notifications.append(Notification(title=title, message=message, variant=variant))

    @property
    def last(self) -> Notification | None:
        return self.notifications[-1] if self.notifications else None

    def clear(self) -> None:
        self.notifications.clear()


class MemoryBackend(RecordSource, RecordUpdater, MetadataProvider):
    """In-memory backend for tests and the command line.

    Thread-safe implementation using asyncio locks. Failures can be
    queued with :meth:`fail_next_commit` and :meth:`fail_next_fetch`.
    """

    def __init__(
        self,
        records: Iterable[Record] = (),
        metadata: Mapping[str, ObjectMetadata] | None = None,
    ) -> None:
        self._records: dict[str, Record] = {record.id: record for record in records}
        self._metadata: dict[str, ObjectMetadata] = dict(metadata or {})
        self._lock = asyncio.Lock()
        self._commit_errors: deque[BaseException] = deque()
        self._fetch_errors: deque[BaseException] = deque()
        self.fetch_requests: list[FetchRequest] = []
        self.commits: list[tuple[str, dict[str, Any]]] = []

    @property
    def records(self) -> list[Record]:
        return list(self._records.values())

    def add_record(self, record: Record) -> None:
        self._records[record.id] = record

    def set_metadata(self, metadata: ObjectMetadata) -> None:
        self._metadata[metadata.api_name] = metadata

    def fail_next_commit(self, error: BaseException | None = None) -> None:
        self._commit_errors.append(error or CommitError("Update rejected."))

    def fail_next_fetch(self, error: BaseException | None = None) -> None:
        self._fetch_errors.append(error or FetchError("Fetch failed."))

    def _select(self, request: FetchRequest, parent_ids: Iterable[str] | None) -> list[Record]:
        wanted = set(parent_ids) if parent_ids is not None else None
        selected = [
            record
            for record in self._records.values()
            if wanted is None or (record.parent is not None and record.parent.id in wanted)
        ]
        if request.sort_field:
            name = extract_simple_field_name(request.sort_field)

            def key(record: Record) -> tuple[bool, str]:
                value = record.fields.get(name) or record.fields.get(request.sort_field or "")
                raw = value.raw if value is not None else None
                return raw is None, "" if raw is None else str(raw).casefold()

            selected.sort(key=key, reverse=request.sort_direction is SortDirection.DESC)
        return selected[: request.limit]

    async def _fetch(self, request: FetchRequest, parent_ids: Iterable[str] | None) -> list[Record]:
        async with self._lock:
            self.fetch_requests.append(request)
            if self._fetch_errors:
                raise self._fetch_errors.popleft()
            records = self._select(request, parent_ids)
        debug("Memory backend fetch.", {"mode": request.mode, "records": len(records)})
        return records

    async def fetch_related(self, request: FetchRequest) -> list[Record]:
        return await self._fetch(request, request.parent_ids)

    async def fetch_parentless(self, request: FetchRequest) -> list[Record]:
        return await self._fetch(request, None)

    async def commit_update(self, record_id: str, fields: Mapping[str, Any]) -> None:
        async with self._lock:
            self.commits.append((record_id, dict(fields)))
            if self._commit_errors:
                raise self._commit_errors.popleft()
            record = self._records.get(record_id)
            if record is None:
                raise CommitError("Record not found.", record_id=record_id)
            for name, value in fields.items():
                if name == "Id":
                    continue
                key = name if name in record.fields else extract_simple_field_name(name)
                record = record.with_field(key, FieldValue(raw=value, display=None))
            self._records[record_id] = record

    async def get_object_metadata(self, object_name: str) -> ObjectMetadata | None:
        async with self._lock:
            return self._metadata.get(object_name)
