"""
Rule event formatter.

Formats expressions against enriched events. An expression is literal
text with ``${...}`` placeholders:

    Found in ${ASSET_FILENAME | Upper}.docx
    ${CONTENT_DATA.title.iv | Slugify ? untitled}
    ${Script(event.actor | string)}

A placeholder starting with ``Script(`` evaluates that script and uses the
result as is, without transforms or fallback. A whole expression of the
form ``Script(...)`` is evaluated as one script and a whole expression of
the form ``Template(...)`` is rendered through the template engine;
neither goes through the placeholder pipeline.

Placeholders are parsed before anything is resolved, so an unknown
transform fails the whole expression without side effects. Resolutions
then run concurrently and are stitched back in source order.
"""

import asyncio
import dataclasses
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from rule_dispatch.domain.events import EnrichedContentEvent, EnrichedEvent
from rule_dispatch.rules.engines import ScriptEngine, TemplateEngine, slugify
from rule_dispatch.rules.exceptions import UnknownTransformError
from rule_dispatch.rules.resolvers import ResolverChain
from rule_dispatch.utils.timezone import to_iso

# Rendered in place of a placeholder that resolves to nothing and has no fallback.
NULL_TEXT = "null"

SCRIPT_PREFIX = "Script("
TEMPLATE_PREFIX = "Template("


def _escape(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)[1:-1]


TRANSFORMS: Dict[str, Callable[[str], str]] = {
    "Upper": str.upper,
    "Lower": str.lower,
    "Trim": str.strip,
    "Slugify": slugify,
    "Escape": _escape,
}


@dataclass(frozen=True)
class Placeholder:
    """One parsed ``${...}`` region."""

    source: str
    path: str = ""
    transforms: Tuple[str, ...] = ()
    fallback: Optional[str] = None
    script: Optional[str] = None


Segment = Union[str, Placeholder]


@dataclass
class _Scanner:
    """Finds balanced closing characters, skipping quoted strings."""

    text: str
    quotes: bool = True
    _quote: Optional[str] = field(default=None, init=False)

    def find_closing(self, start: int, opening: str, closing: str) -> int:
        depth = 1
        index = start
        while index < len(self.text):
            ch = self.text[index]
            if self._quote:
                if ch == "\\":
                    index += 1
                elif ch == self._quote:
                    self._quote = None
            elif self.quotes and ch in "\"'`":
                self._quote = ch
            elif ch == opening:
                depth += 1
            elif ch == closing:
                depth -= 1
                if depth == 0:
                    return index
            index += 1
        return -1


def _unwrap_call(text: str, prefix: str) -> Optional[str]:
    """Return the argument of ``prefix...)`` if it spans all of ``text``."""
    stripped = text.strip()
    if not stripped.startswith(prefix):
        return None

    end = _Scanner(stripped).find_closing(len(prefix), "(", ")")
    if end != len(stripped) - 1:
        return None

    return stripped[len(prefix) : end]


def parse_expression(text: str) -> List[Segment]:
    """
    Split ``text`` into literal strings and parsed placeholders.

    An unterminated ``${`` is kept as literal text.

    Raises:
        UnknownTransformError: If a placeholder names an unknown transform
    """
    segments: List[Segment] = []
    position = 0

    while True:
        start = text.find("${", position)
        if start < 0:
            break

        body_start = start + 2
        is_script = text[body_start:].lstrip().startswith(SCRIPT_PREFIX)
        end = _Scanner(text, quotes=is_script).find_closing(body_start, "{", "}")
        if end < 0:
            break

        if start > position:
            segments.append(text[position:start])
        segments.append(_parse_placeholder(text[body_start:end]))
        position = end + 1

    if position < len(text):
        segments.append(text[position:])

    return segments


def _parse_placeholder(body: str) -> Placeholder:
    source = "${" + body + "}"

    stripped = body.strip()
    if stripped.startswith(SCRIPT_PREFIX):
        end = _Scanner(stripped).find_closing(len(SCRIPT_PREFIX), "(", ")")
        if end >= 0:
            # Script output is used verbatim; trailing transforms and fallbacks are ignored.
            return Placeholder(source=source, script=stripped[len(SCRIPT_PREFIX) : end])

    expression, has_fallback, fallback = body.partition("?")
    path, *names = expression.split("|")

    transforms = tuple(name.strip() for name in names if name.strip())
    for name in transforms:
        if name not in TRANSFORMS:
            raise UnknownTransformError(name, source)

    return Placeholder(
        source=source,
        path=path.strip(),
        transforms=transforms,
        fallback=fallback.strip() if has_fallback else None,
    )


def _camel_case(name: str) -> str:
    head, *tail = name.split("_")
    return head + "".join(part.title() for part in tail)


def _to_json_value(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        if type(value).__str__ is not object.__str__:
            return str(value)
        return {
            _camel_case(f.name): _to_json_value(getattr(value, f.name))
            for f in dataclasses.fields(value)
        }
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, dict):
        return {str(key): _to_json_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json_value(item) for item in value]
    return value


def _to_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, Enum):
        return str(value)
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, (dict, list)):
        return json.dumps(_to_json_value(value), ensure_ascii=False)
    return str(value)


class RuleEventFormatter:
    """
    Formats expressions and payloads for enriched events.

    Args:
        resolvers: Resolver chain consulted for placeholder paths
        script_engine: Engine for ``Script(...)`` blocks
        template_engine: Engine for full-document templates
    """

    def __init__(
        self,
        resolvers: Optional[ResolverChain] = None,
        script_engine: Optional[ScriptEngine] = None,
        template_engine: Optional[TemplateEngine] = None,
    ):
        self.resolvers = resolvers or ResolverChain()
        self.script_engine = script_engine or ScriptEngine()
        self.template_engine = template_engine or TemplateEngine()

    # ------------------------------------------------------------------ #
    # Payloads
    # ------------------------------------------------------------------ #

    def to_payload(self, event: EnrichedEvent) -> Dict[str, Any]:
        """Return a JSON-ready, camelCase view of ``event``."""
        payload = _to_json_value(event)
        payload["$type"] = type(event).__name__
        return payload

    def to_envelope(self, event: EnrichedEvent) -> str:
        """Return the default webhook body: event name, payload and timestamp."""
        envelope = {
            "type": event.name,
            "payload": self.to_payload(event),
            "timestamp": to_iso(event.timestamp),
        }
        return json.dumps(envelope, ensure_ascii=False, indent=2)

    # ------------------------------------------------------------------ #
    # Expressions
    # ------------------------------------------------------------------ #

    async def format_async(self, text: Optional[str], event: EnrichedEvent) -> Optional[str]:
        """
        Format ``text`` for ``event``.

        Raises:
            ResolutionError: If a transform is unknown or a script/template fails
        """
        if not text:
            return text

        script = _unwrap_call(text, SCRIPT_PREFIX)
        if script is not None:
            return self.script_engine.evaluate(script, self._script_context(event)) or ""

        template = _unwrap_call(text, TEMPLATE_PREFIX)
        if template is not None:
            return await self.render_template_async(template, event)

        segments = parse_expression(text)
        placeholders = [segment for segment in segments if isinstance(segment, Placeholder)]
        if not placeholders:
            return text

        values = await self._resolve_all(placeholders, event)
        resolved = iter(values)

        return "".join(
            next(resolved) if isinstance(segment, Placeholder) else segment
            for segment in segments
        )

    async def render_template_async(self, template: str, event: EnrichedEvent) -> str:
        """Render a whole template document for ``event``."""
        return self.template_engine.render(template, self._script_context(event))

    async def _resolve_all(
        self, placeholders: Sequence[Placeholder], event: EnrichedEvent
    ) -> List[str]:
        tasks = [
            asyncio.ensure_future(self._format_placeholder(placeholder, event))
            for placeholder in placeholders
        ]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

    async def _format_placeholder(self, placeholder: Placeholder, event: EnrichedEvent) -> str:
        if placeholder.script is not None:
            result = self.script_engine.evaluate(placeholder.script, self._script_context(event))
            return NULL_TEXT if result is None else result

        value = await self._resolve_path(placeholder.path, event)

        if value is not None:
            for name in placeholder.transforms:
                value = TRANSFORMS[name](value)

        if not value and placeholder.fallback is not None:
            return placeholder.fallback

        return NULL_TEXT if value is None else value

    async def _resolve_path(self, path: str, event: EnrichedEvent) -> Optional[str]:
        segments = path.split(".")

        resolution = self.resolvers.resolve(event, segments)
        if resolution.matched:
            return await resolution.pending

        root, rest = segments[0], segments[1:]
        if root == "CONTENT_DATA" and isinstance(event, EnrichedContentEvent):
            value: Any = event.data
        elif root.startswith("EVENT_") and len(root) > len("EVENT_"):
            name = root[len("EVENT_") :].lower()
            if name.startswith("_") or not hasattr(event, name):
                return None
            value = getattr(event, name)
        else:
            return None

        for index, segment in enumerate(rest):
            if isinstance(value, list):
                resolution = self.resolvers.resolve(event, rest[index:], value)
                if resolution.matched:
                    return await resolution.pending
                if not segment.isdigit() or int(segment) >= len(value):
                    return None
                value = value[int(segment)]
            elif isinstance(value, dict):
                if segment not in value:
                    return None
                value = value[segment]
            elif not segment.startswith("_") and hasattr(value, segment):
                value = getattr(value, segment)
            else:
                return None

        return _to_text(value)

    @staticmethod
    def _script_context(event: EnrichedEvent) -> Dict[str, Any]:
        return {"event": event}
