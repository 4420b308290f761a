"""Shared record builders for the test suite."""

from __future__ import annotations

from typing import Any

from laneboard.models import Record


def make_record(record_id: str, parent: str | None = None, **fields: Any) -> Record:
    """Build a record from simple field names and raw values."""
    data: dict[str, Any] = {"id": record_id, "fields": fields}
    if parent is not None:
        data["parent"] = {"id": parent, "name": f"Account {parent}"}
    return Record.model_validate(data)
