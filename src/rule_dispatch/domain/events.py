"""
Enriched event domain model.

Enriched events are produced upstream by the event pipeline and carry
denormalized, ready-to-format fields (actor display name, schema name,
file name) so that formatting never has to re-query upstream state.
The dispatch pipeline only reads them.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from rule_dispatch.utils.timezone import now_utc


class _ValueEnum(str, Enum):
    """String enum that prints as its bare value (``Created``)."""

    def __str__(self) -> str:
        return self.value


class RefTokenType(_ValueEnum):
    SUBJECT = "subject"
    CLIENT = "client"


class EnrichedContentEventType(_ValueEnum):
    CREATED = "Created"
    UPDATED = "Updated"
    DELETED = "Deleted"
    PUBLISHED = "Published"
    UNPUBLISHED = "Unpublished"
    STATUS_CHANGED = "StatusChanged"


class EnrichedAssetEventType(_ValueEnum):
    CREATED = "Created"
    UPDATED = "Updated"
    ANNOTATED = "Annotated"
    DELETED = "Deleted"


@dataclass(frozen=True)
class NamedId:
    """Identifier paired with its human-readable name."""

    id: str
    name: str

    def __str__(self) -> str:
        return f"{self.id},{self.name}"


@dataclass(frozen=True)
class RefToken:
    """Reference to the actor that caused an event (user or API client)."""

    type: RefTokenType
    identifier: str

    @property
    def is_client(self) -> bool:
        return self.type == RefTokenType.CLIENT

    @classmethod
    def parse(cls, value: str) -> "RefToken":
        """Parse ``"client:android"`` style tokens; bare ids are subjects."""
        prefix, sep, identifier = value.partition(":")
        if not sep:
            return cls(RefTokenType.SUBJECT, value)
        return cls(RefTokenType(prefix), identifier)

    def __str__(self) -> str:
        return f"{self.type.value}:{self.identifier}"


@dataclass(frozen=True)
class EnrichedUser:
    """Denormalized view of the user behind an event."""

    id: str
    email: Optional[str] = None
    display_name: Optional[str] = None


@dataclass(frozen=True)
class EnrichedEvent:
    """
    Base of all enriched events.

    Attributes:
        name: Event name used for routing, e.g. "BlogPostCreated"
        app_id: App the event belongs to
        timestamp: When the event happened (UTC)
        actor: Who caused the event
        user: Resolved user for subject actors, if available
    """

    name: str = ""
    app_id: Optional[NamedId] = None
    timestamp: datetime = field(default_factory=now_utc)
    actor: Optional[RefToken] = None
    user: Optional[EnrichedUser] = None


@dataclass(frozen=True)
class EnrichedSchemaEventBase(EnrichedEvent):
    schema_id: Optional[NamedId] = None


@dataclass(frozen=True)
class EnrichedContentEvent(EnrichedSchemaEventBase):
    """
    Content change event.

    ``data`` maps field names to partitions, e.g.
    ``{"title": {"iv": "Hello"}, "city": {"iv": ["<referenced-id>"]}}``.
    """

    type: EnrichedContentEventType = EnrichedContentEventType.CREATED
    id: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    data_old: Optional[Dict[str, Any]] = None
    status: Optional[str] = None
    version: int = 0


@dataclass(frozen=True)
class EnrichedAssetEvent(EnrichedEvent):
    """Asset change event."""

    type: EnrichedAssetEventType = EnrichedAssetEventType.CREATED
    id: str = ""
    file_name: Optional[str] = None
    file_size: int = 0
    mime_type: Optional[str] = None
    is_image: bool = False
    version: int = 0
