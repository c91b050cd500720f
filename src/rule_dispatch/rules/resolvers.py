"""
Value resolver chain.

A resolver is asked to resolve a dotted placeholder path for an event. It
either declines (``NO_MATCH``) or claims the path and hands back an
awaitable producing the text. Resolvers are tried in order and the first
one that claims a path wins; later resolvers are never consulted.

Synchronous resolvers return an already-completed awaitable so that the
formatter composes every resolution the same way.
"""

from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Protocol,
    Sequence,
)

from rule_dispatch.domain.events import (
    EnrichedAssetEvent,
    EnrichedContentEvent,
    EnrichedEvent,
    EnrichedSchemaEventBase,
)
from rule_dispatch.utils.logger import get_logger
from rule_dispatch.utils.timezone import to_iso

logger = get_logger(__name__)

ContentLoader = Callable[[str, str], Awaitable[Optional[Dict[str, Any]]]]


async def completed(value: Optional[str]) -> Optional[str]:
    """Wrap an already known value as an awaitable."""
    return value


@dataclass(frozen=True)
class Resolution:
    """
    Answer of a resolver.

    Attributes:
        matched: Whether the resolver claimed the path
        pending: Awaitable producing the text (None when not matched)
    """

    matched: bool
    pending: Optional[Awaitable[Optional[str]]] = None

    @classmethod
    def of(cls, value: Optional[str]) -> "Resolution":
        return cls(True, completed(value))

    @classmethod
    def deferred(cls, pending: Awaitable[Optional[str]]) -> "Resolution":
        return cls(True, pending)


NO_MATCH = Resolution(False)


class ValueResolver(Protocol):
    def try_resolve(self, event: EnrichedEvent, path: Sequence[str], value: Any) -> Resolution:
        """
        Try to resolve ``path`` for ``event``.

        Args:
            event: Event being formatted
            path: Remaining path segments
            value: Value reached so far, None at the root of the path
        """
        ...


class UrlGenerator(Protocol):
    def content_ui(self, app_id: Any, schema_id: Any, content_id: str) -> str: ...

    def asset_content(self, asset_id: str) -> str: ...


class ResolverChain:
    """Ordered list of resolvers where the first responder wins."""

    def __init__(self, resolvers: Iterable[ValueResolver] = ()):
        self.resolvers: List[ValueResolver] = list(resolvers)

    def add(self, resolver: ValueResolver) -> None:
        self.resolvers.append(resolver)

    def resolve(self, event: EnrichedEvent, path: Sequence[str], value: Any = None) -> Resolution:
        for resolver in self.resolvers:
            resolution = resolver.try_resolve(event, path, value)
            if resolution.matched:
                return resolution
        return NO_MATCH


# ---------------------------------------------------------------------------
# Predefined patterns
# ---------------------------------------------------------------------------


def _app_id(event: EnrichedEvent) -> Optional[str]:
    return event.app_id.id if event.app_id else None


def _app_name(event: EnrichedEvent) -> Optional[str]:
    return event.app_id.name if event.app_id else None


def _schema_id(event: EnrichedEvent) -> Optional[str]:
    if isinstance(event, EnrichedSchemaEventBase) and event.schema_id:
        return event.schema_id.id
    return None


def _schema_name(event: EnrichedEvent) -> Optional[str]:
    if isinstance(event, EnrichedSchemaEventBase) and event.schema_id:
        return event.schema_id.name
    return None


def _timestamp_date(event: EnrichedEvent) -> Optional[str]:
    return event.timestamp.strftime("%Y-%m-%d")


def _timestamp_datetime(event: EnrichedEvent) -> Optional[str]:
    return to_iso(event.timestamp)


def _user_id(event: EnrichedEvent) -> Optional[str]:
    if event.user:
        return event.user.id
    return event.actor.identifier if event.actor else None


def _user_name(event: EnrichedEvent) -> Optional[str]:
    if event.user:
        return event.user.display_name
    if event.actor and event.actor.is_client:
        return str(event.actor)
    return None


def _user_email(event: EnrichedEvent) -> Optional[str]:
    return event.user.email if event.user else None


def _content_action(event: EnrichedEvent) -> Optional[str]:
    if isinstance(event, EnrichedContentEvent):
        return str(event.type)
    return None


def _asset_file_name(event: EnrichedEvent) -> Optional[str]:
    if isinstance(event, EnrichedAssetEvent):
        return event.file_name
    return None


def _asset_file_type(event: EnrichedEvent) -> Optional[str]:
    if isinstance(event, EnrichedAssetEvent):
        return event.mime_type
    return None


def _asset_file_size(event: EnrichedEvent) -> Optional[str]:
    if isinstance(event, EnrichedAssetEvent):
        return str(event.file_size)
    return None


class PredefinedPatternResolver:
    """
    Resolves the fixed upper-case patterns such as ``USER_NAME`` or
    ``ASSET_FILENAME``. Only whole, single-segment paths are claimed.
    """

    def __init__(self, url_generator: Optional[UrlGenerator] = None):
        self.url_generator = url_generator
        self.patterns: Dict[str, Callable[[EnrichedEvent], Optional[str]]] = {
            "APP_ID": _app_id,
            "APP_NAME": _app_name,
            "SCHEMA_ID": _schema_id,
            "SCHEMA_NAME": _schema_name,
            "TIMESTAMP_DATE": _timestamp_date,
            "TIMESTAMP_DATETIME": _timestamp_datetime,
            "EVENT_NAME": lambda event: event.name or None,
            "USER_ID": _user_id,
            "USER_NAME": _user_name,
            "USER_EMAIL": _user_email,
            "CONTENT_ACTION": _content_action,
            "CONTENT_URL": self._content_url,
            "ASSET_FILENAME": _asset_file_name,
            "ASSET_FILETYPE": _asset_file_type,
            "ASSET_FILESIZE": _asset_file_size,
            "ASSET_CONTENT_URL": self._asset_content_url,
        }

    def try_resolve(self, event: EnrichedEvent, path: Sequence[str], value: Any) -> Resolution:
        if value is not None or len(path) != 1:
            return NO_MATCH

        pattern = self.patterns.get(path[0])
        if pattern is None:
            return NO_MATCH

        return Resolution.of(pattern(event))

    def _content_url(self, event: EnrichedEvent) -> Optional[str]:
        if self.url_generator and isinstance(event, EnrichedContentEvent):
            return self.url_generator.content_ui(event.app_id, event.schema_id, event.id)
        return None

    def _asset_content_url(self, event: EnrichedEvent) -> Optional[str]:
        if self.url_generator and isinstance(event, EnrichedAssetEvent):
            return self.url_generator.asset_content(event.id)
        return None


# ---------------------------------------------------------------------------
# Content references
# ---------------------------------------------------------------------------


class ContentReferenceResolver:
    """
    Turns a reference field (a list of content ids) into a readable label.

    Claims paths like ``CONTENT_DATA.city.iv.data.name`` once the walk has
    reached the list of ids and the next segment is ``data``. The first
    referenced content is loaded through ``loader`` and the rest of the
    path is walked inside it. Invariant partitions (``iv``) are unwrapped
    when the path stops at a field.
    """

    def __init__(self, loader: ContentLoader):
        self.loader = loader

    def try_resolve(self, event: EnrichedEvent, path: Sequence[str], value: Any) -> Resolution:
        if not isinstance(value, list) or not path or path[0] != "data":
            return NO_MATCH

        return Resolution.deferred(self._resolve_reference(event, list(path), value))

    async def _resolve_reference(
        self, event: EnrichedEvent, path: List[str], ids: List[Any]
    ) -> Optional[str]:
        if not ids:
            return None

        app_id = event.app_id.id if event.app_id else ""
        content_id = str(ids[0])

        content = await self.loader(app_id, content_id)
        if content is None:
            logger.debug(
                "Referenced content not found",
                operation="resolve_reference",
                context={"app_id": app_id, "content_id": content_id},
            )
            return None

        current: Any = content
        for segment in path:
            if not isinstance(current, dict):
                return None
            current = current.get(segment)

        if isinstance(current, dict) and "iv" in current:
            current = current["iv"]

        if current is None:
            return None
        return str(current)
