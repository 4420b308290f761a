"""laneboard - lane (kanban) board view-model and state layer.

Groups backend records into lanes by a grouping field, formats card
fields and lane summaries, filters, searches and sorts cards, windows
long lanes and moves cards between lanes optimistically.
"""

from .backend import (
    MemoryBackend,
    MetadataProvider,
    Notifier,
    RecordingNotifier,
    RecordSource,
    RecordUpdater,
)
from .board import Board
from .config import LaneBoardSettings, clear_settings, get_settings, reload_settings
from .data_mode import DataMode, DataModeReason, DataModeResolver, DataModeType, FetchRequest
from .datetime_format import PatternTokenCache, format_with_pattern, try_format_date_or_datetime_string
from .exceptions import (
    BackendError,
    CommitError,
    ConfigurationError,
    FetchError,
    GroupingFieldMissingError,
    GroupingFieldTypeError,
    LaneBoardException,
    MissingRelationshipError,
    parse_error,
)
from .fields import FieldDataCache, FieldResolver
from .filters import FilterDefinition, FilterOption
from .lanes import BLANK_KEY, LaneBuildOptions, build_lanes, sort_records
from .models import (
    AggregationKind,
    BoardConfig,
    Card,
    CardDetail,
    EnumerationValue,
    FieldMetadata,
    FieldType,
    FieldValue,
    Lane,
    Notification,
    ObjectMetadata,
    ParentRef,
    Record,
    SortDirection,
    Summary,
    SummaryDefinition,
)
from .moves import MoveCoordinator, MoveOutcome, MoveRequest
from .summaries import summarize_lane
from .virtualization import VirtualList, Window, resolve_spacers, resolve_window


__version__ = "0.1.0"

__all__ = [
    "BLANK_KEY",
    "AggregationKind",
    "BackendError",
    "Board",
    "BoardConfig",
    "Card",
    "CardDetail",
    "CommitError",
    "ConfigurationError",
    "DataMode",
    "DataModeReason",
    "DataModeResolver",
    "DataModeType",
    "EnumerationValue",
    "FetchError",
    "FetchRequest",
    "FieldDataCache",
    "FieldMetadata",
    "FieldResolver",
    "FieldType",
    "FieldValue",
    "FilterDefinition",
    "FilterOption",
    "GroupingFieldMissingError",
    "GroupingFieldTypeError",
    "Lane",
    "LaneBoardException",
    "LaneBoardSettings",
    "LaneBuildOptions",
    "MemoryBackend",
    "MetadataProvider",
    "MissingRelationshipError",
    "MoveCoordinator",
    "MoveOutcome",
    "MoveRequest",
    "Notification",
    "Notifier",
    "ObjectMetadata",
    "ParentRef",
    "PatternTokenCache",
    "Record",
    "RecordSource",
    "RecordUpdater",
    "RecordingNotifier",
    "SortDirection",
    "Summary",
    "SummaryDefinition",
    "VirtualList",
    "Window",
    "__version__",
    "build_lanes",
    "clear_settings",
    "format_with_pattern",
    "get_settings",
    "parse_error",
    "reload_settings",
    "resolve_spacers",
    "resolve_window",
    "sort_records",
    "summarize_lane",
    "try_format_date_or_datetime_string",
]
