"""Pytest configuration and fixtures."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from laneboard.backend import MemoryBackend, RecordingNotifier
from laneboard.config import LaneBoardSettings, clear_settings
from laneboard.fields import FieldResolver
from laneboard.models import BoardConfig, ObjectMetadata, Record
from tests.factories import make_record


if TYPE_CHECKING:
    from collections.abc import Generator


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch: pytest.MonkeyPatch, tmp_path) -> Generator[None, None, None]:
    """Isolate every test from config files and cached settings."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.delenv("LANEBOARD_CONFIG_FILE", raising=False)
    clear_settings()
    yield
    clear_settings()


@pytest.fixture
def settings() -> LaneBoardSettings:
    """Settings with short timers so deferred work settles quickly."""
    return LaneBoardSettings(
        timing={
            "search_debounce_ms": 20,
            "drag_over_throttle_ms": 20,
            "parent_selection_debounce_ms": 20,
            "tick_ms": 0,
        },
    )


@pytest.fixture
def opportunity_metadata() -> ObjectMetadata:
    """Metadata for an opportunity-like card object."""
    return ObjectMetadata.model_validate(
        {
            "apiName": "Opportunity",
            "label": "Opportunity",
            "labelPlural": "Opportunities",
            "nameFields": ["Name"],
            "fields": {
                "Name": {"label": "Opportunity Name", "dataType": "String"},
                "StageName": {
                    "label": "Stage",
                    "dataType": "Picklist",
                    "picklistValues": [
                        {"value": "Prospecting"},
                        {"value": "Negotiation", "label": "Negotiation/Review"},
                        {"value": "Closed Won"},
                        {"value": "Retired", "active": False},
                    ],
                },
                "Amount": {"label": "Amount", "dataType": "Currency", "scale": 2},
                "Probability": {"label": "Probability (%)", "dataType": "Percent", "scale": 0},
                "CloseDate": {"label": "Close Date", "dataType": "Date"},
                "LastActivity": {"label": "Last Activity", "dataType": "DateTime"},
                "IsPriority": {"label": "Priority", "dataType": "Boolean"},
                "Quantity": {"label": "Quantity", "dataType": "Double", "scale": 1},
                "OwnerId": {
                    "label": "Owner ID",
                    "dataType": "Reference",
                    "relationshipName": "Owner",
                    "referenceLabel": "Owner",
                },
                "AccountId": {
                    "label": "Account ID",
                    "dataType": "Reference",
                    "relationshipName": "Account",
                },
                "CurrencyIsoCode": {"label": "Currency", "dataType": "Picklist"},
            },
        }
    )


@pytest.fixture
def resolver(opportunity_metadata: ObjectMetadata) -> FieldResolver:
    """A resolver over opportunity metadata with a fixed date pattern."""
    return FieldResolver("Opportunity", opportunity_metadata, pattern="yyyy-MM-dd")


@pytest.fixture
def opportunity_records() -> list[Record]:
    """Six opportunities spread over three stages and no stage."""
    return [
        make_record("006A", "001X", Name="Acme", StageName="Prospecting", Amount=1000, IsPriority=True),
        make_record("006B", "001X", Name="Globex", StageName="Prospecting", Amount=250.5, IsPriority=False),
        make_record("006C", "001Y", Name="Initech", StageName="Negotiation", Amount=4000, IsPriority=True),
        make_record("006D", "001Y", Name="Umbrella", StageName="Closed Won", Amount=None),
        make_record("006E", "001Y", Name="Hooli", StageName=None, Amount=75),
        make_record("006F", "001X", Name="Stark", StageName="Legacy Stage", Amount=10),
    ]


@pytest.fixture
def board_config() -> BoardConfig:
    """Parent-less opportunity board grouped by stage."""
    return BoardConfig(
        card_object="Opportunity",
        grouping_field="StageName",
        card_fields="Name,Amount",
        filter_fields="StageName,OwnerId",
        search_fields="Name",
    )


@pytest.fixture
def backend(
    opportunity_records: list[Record], opportunity_metadata: ObjectMetadata
) -> MemoryBackend:
    """In-memory backend preloaded with records and metadata."""
    return MemoryBackend(opportunity_records, {"Opportunity": opportunity_metadata})


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()
