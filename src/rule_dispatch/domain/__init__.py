"""Domain models consumed by the dispatch pipeline."""

from .events import (
    EnrichedAssetEvent,
    EnrichedAssetEventType,
    EnrichedContentEvent,
    EnrichedContentEventType,
    EnrichedEvent,
    EnrichedSchemaEventBase,
    EnrichedUser,
    NamedId,
    RefToken,
    RefTokenType,
)

__all__ = [
    "EnrichedAssetEvent",
    "EnrichedAssetEventType",
    "EnrichedContentEvent",
    "EnrichedContentEventType",
    "EnrichedEvent",
    "EnrichedSchemaEventBase",
    "EnrichedUser",
    "NamedId",
    "RefToken",
    "RefTokenType",
]
