"""
Tests for the rule event formatter (rule_dispatch/rules/formatter.py)

Covers:
- Placeholder parsing (transforms, fallbacks, whitespace, unterminated regions)
- Transform pipeline and fallback semantics
- CONTENT_DATA / EVENT_ roots and content references
- Script(...) and Template(...) evaluation
- Default payload and envelope
"""

import asyncio
import json
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

from rule_dispatch.domain.events import (
    EnrichedAssetEvent,
    EnrichedContentEvent,
    EnrichedContentEventType,
    EnrichedUser,
    NamedId,
    RefToken,
)
from rule_dispatch.rules.exceptions import (
    ScriptEvaluationError,
    TemplateRenderError,
    UnknownTransformError,
)
from rule_dispatch.rules.formatter import Placeholder, RuleEventFormatter, parse_expression
from rule_dispatch.rules.resolvers import (
    NO_MATCH,
    ContentReferenceResolver,
    PredefinedPatternResolver,
    Resolution,
    ResolverChain,
)

APP_ID = NamedId("123", "my-app")
SCHEMA_ID = NamedId("456", "my-schema")
TIMESTAMP = datetime(2024, 3, 1, 12, 30, 0, tzinfo=timezone.utc)


def make_formatter(*extra_resolvers) -> RuleEventFormatter:
    chain = ResolverChain([PredefinedPatternResolver(), *extra_resolvers])
    return RuleEventFormatter(chain)


def format_text(formatter: RuleEventFormatter, text, event):
    return asyncio.run(formatter.format_async(text, event))


def asset_event(**overrides) -> EnrichedAssetEvent:
    values = dict(
        name="AssetCreated",
        app_id=APP_ID,
        timestamp=TIMESTAMP,
        id="asset-1",
        file_name="Donald Duck",
        file_size=1024,
        mime_type="image/png",
    )
    values.update(overrides)
    return EnrichedAssetEvent(**values)


def content_event(**overrides) -> EnrichedContentEvent:
    values = dict(
        name="BlogPostCreated",
        app_id=APP_ID,
        schema_id=SCHEMA_ID,
        timestamp=TIMESTAMP,
        actor=RefToken.parse("client:android"),
        type=EnrichedContentEventType.CREATED,
        id="content-1",
        data={
            "title": {"iv": "Hello World!"},
            "city": {"iv": ["city-1"]},
            "tags": {"iv": ["a", "b"]},
        },
        version=3,
    )
    values.update(overrides)
    return EnrichedContentEvent(**values)


class TestParseExpression:
    def test_literal_text_is_single_segment(self):
        assert parse_expression("plain text") == ["plain text"]

    def test_placeholder_with_transforms_and_fallback(self):
        segments = parse_expression("File: ${ASSET_FILENAME | Upper | Trim ? none}!")

        assert segments[0] == "File: "
        assert segments[1] == Placeholder(
            source="${ASSET_FILENAME | Upper | Trim ? none}",
            path="ASSET_FILENAME",
            transforms=("Upper", "Trim"),
            fallback="none",
        )
        assert segments[2] == "!"

    def test_unterminated_placeholder_stays_literal(self):
        assert parse_expression("Hello ${ASSET_FILENAME") == ["Hello ${ASSET_FILENAME"]

    def test_script_placeholder_keeps_braces_inside_quotes(self):
        segments = parse_expression('${Script("}" + event.name)} done')

        assert segments[0].script == '"}" + event.name'
        assert segments[1] == " done"

    def test_unknown_transform_raises(self):
        with pytest.raises(UnknownTransformError) as exc_info:
            parse_expression("${ASSET_FILENAME | Reverse}")

        assert exc_info.value.transform == "Reverse"


class TestPlaceholders:
    def test_transform_ignores_surrounding_whitespace(self):
        result = format_text(make_formatter(), "${ASSET_FILENAME| Upper  }", asset_event())
        assert result == "DONALD DUCK"

    def test_transforms_apply_in_order(self):
        event = asset_event(file_name='Donald"Duck')
        result = format_text(make_formatter(), "${ASSET_FILENAME | Escape | Upper}", event)
        assert result == 'DONALD\\"DUCK'

    def test_lower_trim_and_slugify(self):
        formatter = make_formatter()
        event = content_event(data={"title": {"iv": "  Crème Brûlée Recipe "}})

        assert format_text(formatter, "${CONTENT_DATA.title.iv | Trim | Lower}", event) == (
            "crème brûlée recipe"
        )
        assert format_text(formatter, "${CONTENT_DATA.title.iv | Slugify}", event) == (
            "creme-brulee-recipe"
        )

    def test_fallback_for_unknown_event_property(self):
        result = format_text(make_formatter(), "${EVENT_INVALID ? file}", asset_event())
        assert result == "file"

    def test_fallback_for_missing_value(self):
        result = format_text(make_formatter(), "${ASSET_FILENAME ? file}", asset_event(file_name=None))
        assert result == "file"

    def test_fallback_for_empty_value(self):
        result = format_text(make_formatter(), "${ASSET_FILENAME ? file}", asset_event(file_name=""))
        assert result == "file"

    def test_unresolved_without_fallback_renders_null(self):
        result = format_text(make_formatter(), "Mail: ${USER_EMAIL}", asset_event())
        assert result == "Mail: null"

    def test_transforms_skip_missing_values(self):
        result = format_text(make_formatter(), "${USER_EMAIL | Upper}", asset_event())
        assert result == "null"

    def test_placeholder_inside_json_like_text(self):
        result = format_text(make_formatter(), "{'Key':'${ASSET_FILENAME | Upper}'}", asset_event())
        assert result == "{'Key':'DONALD DUCK'}"

    def test_multiple_placeholders_keep_their_order(self):
        result = format_text(
            make_formatter(),
            "${APP_NAME}/${SCHEMA_NAME}/${CONTENT_ACTION}",
            content_event(),
        )
        assert result == "my-app/my-schema/Created"

    def test_text_without_placeholders_is_unchanged(self):
        formatter = make_formatter()
        assert format_text(formatter, "no placeholders here", asset_event()) == (
            "no placeholders here"
        )
        assert format_text(formatter, None, asset_event()) is None
        assert format_text(formatter, "", asset_event()) == ""

    def test_unknown_transform_fails_before_any_resolution(self):
        resolver = Mock()
        resolver.try_resolve.return_value = NO_MATCH
        formatter = RuleEventFormatter(ResolverChain([resolver]))

        with pytest.raises(UnknownTransformError):
            format_text(formatter, "${APP_NAME} ${ASSET_FILENAME | Nope}", asset_event())

        resolver.try_resolve.assert_not_called()

    def test_resolutions_run_concurrently_and_stitch_in_order(self):
        class SlowResolver:
            def try_resolve(self, event, path, value):
                if value is not None or path[0] not in ("SLOW", "FAST"):
                    return NO_MATCH
                delay = 0.05 if path[0] == "SLOW" else 0.0
                return Resolution.deferred(self._later(path[0].lower(), delay))

            async def _later(self, text, delay):
                await asyncio.sleep(delay)
                return text

        result = format_text(make_formatter(SlowResolver()), "${SLOW}-${FAST}", asset_event())
        assert result == "slow-fast"

    def test_cancelling_format_cancels_pending_resolutions(self):
        cancelled = []

        class HangingResolver:
            def try_resolve(self, event, path, value):
                if value is not None or path[0] != "HANG":
                    return NO_MATCH
                return Resolution.deferred(self._hang())

            async def _hang(self):
                try:
                    await asyncio.sleep(10)
                except asyncio.CancelledError:
                    cancelled.append(True)
                    raise
                return "late"

        formatter = make_formatter(HangingResolver())

        async def run():
            task = asyncio.ensure_future(
                formatter.format_async("${APP_NAME}-${HANG}", asset_event())
            )
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            return task

        task = asyncio.run(run())

        assert task.cancelled()
        assert cancelled == [True]

    def test_first_matching_resolver_wins(self):
        class Shadow:
            def try_resolve(self, event, path, value):
                if list(path) == ["APP_NAME"]:
                    return Resolution.of("shadowed")
                return NO_MATCH

        chain = ResolverChain([Shadow(), PredefinedPatternResolver()])
        result = format_text(RuleEventFormatter(chain), "${APP_NAME}", content_event())
        assert result == "shadowed"


class TestEventPaths:
    def test_content_data_path(self):
        result = format_text(make_formatter(), "${CONTENT_DATA.title.iv}", content_event())
        assert result == "Hello World!"

    def test_content_data_list_index(self):
        result = format_text(make_formatter(), "${CONTENT_DATA.tags.iv.1}", content_event())
        assert result == "b"

    def test_content_data_missing_field(self):
        result = format_text(make_formatter(), "${CONTENT_DATA.missing.iv ? none}", content_event())
        assert result == "none"

    def test_content_data_object_renders_as_json(self):
        result = format_text(make_formatter(), "${CONTENT_DATA.title}", content_event())
        assert json.loads(result) == {"iv": "Hello World!"}

    def test_content_data_on_asset_event(self):
        result = format_text(make_formatter(), "${CONTENT_DATA.title.iv}", asset_event())
        assert result == "null"

    def test_event_property_paths(self):
        formatter = make_formatter()
        event = content_event()

        assert format_text(formatter, "${EVENT_ACTOR}", event) == "client:android"
        assert format_text(formatter, "${EVENT_VERSION}", event) == "3"
        assert format_text(formatter, "${EVENT_ACTOR.identifier}", event) == "android"
        assert format_text(formatter, "${EVENT_TYPE}", event) == "Created"

    def test_private_attributes_are_not_reachable(self):
        result = format_text(make_formatter(), "${EVENT_ACTOR.__class__ ? hidden}", content_event())
        assert result == "hidden"

    def test_content_reference_is_loaded(self):
        async def loader(app_id, content_id):
            assert (app_id, content_id) == ("123", "city-1")
            return {"id": content_id, "data": {"name": {"iv": "Reference"}}}

        formatter = make_formatter(ContentReferenceResolver(loader))
        result = format_text(formatter, "${CONTENT_DATA.city.iv.data.name}", content_event())
        assert result == "Reference"

    def test_missing_content_reference_uses_fallback(self):
        async def loader(app_id, content_id):
            return None

        formatter = make_formatter(ContentReferenceResolver(loader))
        result = format_text(formatter, "${CONTENT_DATA.city.iv.data.name ? unknown}", content_event())
        assert result == "unknown"


class TestScripts:
    def test_whole_script_expression(self):
        result = format_text(make_formatter(), "Script(event.type)", content_event())
        assert result == "Created"

    def test_whole_script_with_surrounding_whitespace(self):
        result = format_text(make_formatter(), "  Script(event.type)  ", content_event())
        assert result == "Created"

    def test_whole_script_with_undefined_result_is_empty(self):
        result = format_text(make_formatter(), "Script(none)", content_event())
        assert result == ""

    def test_script_placeholder_inside_text(self):
        result = format_text(make_formatter(), "Type: ${ Script(event.type) }", content_event())
        assert result == "Type: Created"

    def test_script_placeholder_ignores_trailing_transforms_and_fallback(self):
        event = asset_event()
        formatter = make_formatter()

        assert format_text(formatter, "X ${Script(event.file_name) | Upper}", event) == (
            "X Donald Duck"
        )
        assert format_text(formatter, "X ${Script(event.file_name) ? fb}", event) == (
            "X Donald Duck"
        )

    def test_script_placeholder_without_result_ignores_fallback(self):
        result = format_text(make_formatter(), "[${Script(none) ? fb}]", content_event())
        assert result == "[null]"

    def test_script_json_escapes_quotes(self):
        event = content_event(actor=RefToken.parse('client:mobile"android'))
        result = format_text(
            make_formatter(),
            'Script({"actor": event.actor | string} | tojson)',
            event,
        )
        assert result == '{"actor": "client:mobile\\"android"}'
        assert json.loads(result) == {"actor": 'client:mobile"android'}

    def test_script_filters(self):
        formatter = make_formatter()
        event = content_event()

        assert format_text(formatter, "Script(event.data.title.iv | slugify)", event) == (
            "hello-world"
        )
        assert format_text(formatter, "Script(event.timestamp | format_date('%Y/%m/%d'))", event) == (
            "2024/03/01"
        )

    def test_broken_script_raises(self):
        with pytest.raises(ScriptEvaluationError):
            format_text(make_formatter(), "Script(event.)", content_event())

    def test_sandbox_blocks_private_access(self):
        with pytest.raises(ScriptEvaluationError):
            format_text(make_formatter(), "Script(event.__class__.__subclasses__())", content_event())


class TestTemplates:
    def test_whole_template_is_rendered(self):
        result = format_text(
            make_formatter(),
            'Template({"id": "{{ event.id }}", "user": "{{ event.user.email if event.user else \'-\' }}"})',
            content_event(user=EnrichedUser("u1", email="sebastian@example.com")),
        )
        assert json.loads(result) == {"id": "content-1", "user": "sebastian@example.com"}

    def test_render_template_async(self):
        formatter = make_formatter()
        result = asyncio.run(
            formatter.render_template_async("{% for t in event.data.tags.iv %}{{ t }};{% endfor %}", content_event())
        )
        assert result == "a;b;"

    def test_broken_template_raises(self):
        with pytest.raises(TemplateRenderError):
            format_text(make_formatter(), "Template({% if %})", content_event())


class TestPayload:
    def test_payload_uses_camel_case_and_type_tag(self):
        payload = make_formatter().to_payload(content_event())

        assert payload["$type"] == "EnrichedContentEvent"
        assert payload["id"] == "content-1"
        assert payload["appId"] == "123,my-app"
        assert payload["schemaId"] == "456,my-schema"
        assert payload["actor"] == "client:android"
        assert payload["type"] == "Created"
        assert payload["dataOld"] is None
        assert payload["timestamp"] == "2024-03-01T12:30:00Z"

    def test_envelope_contains_type_payload_and_timestamp(self):
        envelope = json.loads(make_formatter().to_envelope(asset_event()))

        assert envelope["type"] == "AssetCreated"
        assert envelope["timestamp"] == "2024-03-01T12:30:00Z"
        assert envelope["payload"]["fileName"] == "Donald Duck"
        assert envelope["payload"]["$type"] == "EnrichedAssetEvent"
