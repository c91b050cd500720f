"""
Tests for the webhook rule action (rule_dispatch/actions/webhook_action.py)
"""

import asyncio
import base64
import hashlib
import json
import time
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
import requests

from rule_dispatch.actions.webhook_action import (
    USER_AGENT,
    WebhookAction,
    WebhookActionHandler,
    WebhookJob,
    sign_payload,
)
from rule_dispatch.domain.events import (
    EnrichedContentEvent,
    EnrichedContentEventType,
    NamedId,
    RefToken,
)
from rule_dispatch.rules.exceptions import (
    ExecutionCancelledError,
    ExecutionTimeoutError,
    WebhookDeliveryError,
)
from rule_dispatch.rules.formatter import RuleEventFormatter
from rule_dispatch.rules.resolvers import PredefinedPatternResolver, ResolverChain
from rule_dispatch.rules.results import ExecutionStatus

SHARED_SECRET = "webhook-shared-secret"


class HttpStub:
    def __init__(self, responses=None, error=None, delay=0.0):
        self.responses = responses or []
        self.error = error
        self.delay = delay
        self.requests = []

    def post(self, url, headers=None, data=None, timeout=None):
        self.requests.append({"url": url, "headers": headers, "data": data, "timeout": timeout})
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        index = min(len(self.requests) - 1, len(self.responses) - 1)
        status_code = self.responses[index] if self.responses else 200
        text = "error" if status_code >= 400 else "ok"
        reason = "Internal Server Error" if status_code >= 400 else "OK"
        return SimpleNamespace(
            status_code=status_code,
            text=text,
            reason=reason,
            headers={"Content-Type": "text/plain"},
        )


def build_handler(http_stub, **kwargs) -> WebhookActionHandler:
    formatter = RuleEventFormatter(ResolverChain([PredefinedPatternResolver()]))
    return WebhookActionHandler(formatter, http_client=http_stub, **kwargs)


def make_event(**overrides) -> EnrichedContentEvent:
    values = dict(
        name="BlogPostCreated",
        app_id=NamedId("123", "my-app"),
        schema_id=NamedId("456", "blog-post"),
        timestamp=datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc),
        actor=RefToken.parse("client:android"),
        type=EnrichedContentEventType.CREATED,
        id="content-1",
        data={"title": {"iv": "Hello"}},
    )
    values.update(overrides)
    return EnrichedContentEvent(**values)


def create_job(handler, action, event=None):
    return asyncio.run(handler.create_job(event or make_event(), action))


def make_job(**overrides) -> WebhookJob:
    values = dict(
        request_url="https://example.com/hook",
        request_body='{"hello": "world"}',
        request_signature=sign_payload('{"hello": "world"}', SHARED_SECRET),
    )
    values.update(overrides)
    return WebhookJob(**values)


class TestSignature:
    def test_signature_is_base64_sha256_of_body_and_secret(self):
        expected = base64.b64encode(hashlib.sha256(b"bodysecret").digest()).decode()
        assert sign_payload("body", "secret") == expected

    def test_missing_secret_signs_body_only(self):
        expected = base64.b64encode(hashlib.sha256(b"body").digest()).decode()
        assert sign_payload("body", None) == expected


class TestCreateJob:
    def test_default_body_is_event_envelope(self):
        handler = build_handler(HttpStub())
        action = WebhookAction(url="https://example.com/${APP_NAME}", shared_secret=SHARED_SECRET)

        description, job = create_job(handler, action)

        body = json.loads(job.request_body)
        assert body["type"] == "BlogPostCreated"
        assert body["payload"]["id"] == "content-1"
        assert body["timestamp"] == "2024-03-01T12:00:00Z"
        assert job.request_url == "https://example.com/my-app"
        assert job.content_type == "application/json"
        assert job.request_signature == sign_payload(job.request_body, SHARED_SECRET)
        assert description == "Send event to webhook 'https://example.com/my-app'"

    def test_custom_payload(self):
        handler = build_handler(HttpStub())
        action = WebhookAction(
            url="https://example.com/hook",
            shared_secret=SHARED_SECRET,
            payload="title=${CONTENT_DATA.title.iv | Upper}",
            payload_type="text/plain",
        )

        _, job = create_job(handler, action)

        assert job.request_body == "title=HELLO"
        assert job.content_type == "text/plain"
        assert job.request_signature == sign_payload("title=HELLO", SHARED_SECRET)

    def test_job_never_contains_shared_secret(self):
        handler = build_handler(HttpStub())
        action = WebhookAction(url="https://example.com/hook", shared_secret=SHARED_SECRET)

        _, job = create_job(handler, action)

        assert SHARED_SECRET not in json.dumps(job.to_dict())

    def test_parse_action_ignores_unknown_keys(self):
        handler = build_handler(HttpStub())

        action = handler.parse_action({"url": "https://example.com", "extra": True})

        assert action == WebhookAction(url="https://example.com")

    def test_job_survives_serialization(self):
        handler = build_handler(HttpStub())
        job = make_job(content_type="text/plain")

        assert handler.parse_job(json.loads(json.dumps(job.to_dict()))) == job


class TestExecuteJob:
    def test_success(self):
        http_stub = HttpStub([200])
        handler = build_handler(http_stub)
        job = make_job()

        result = asyncio.run(handler.execute_job(job))

        assert result.status == ExecutionStatus.SUCCESS
        request = http_stub.requests[0]
        assert request["url"] == "https://example.com/hook"
        assert request["data"] == b'{"hello": "world"}'
        assert request["timeout"] == pytest.approx(1.8)
        assert request["headers"]["X-Signature"] == job.request_signature
        assert request["headers"]["User-Agent"] == USER_AGENT
        assert request["headers"]["Content-Type"] == "application/json"
        assert '{"hello": "world"}' in result.dump
        assert "200 OK" in result.dump
        assert "Elapsed: " in result.dump
        assert "Elapsed: 00:00:00.000000" not in result.dump
        assert SHARED_SECRET not in result.dump

    def test_non_success_status_fails(self):
        handler = build_handler(HttpStub([500]))

        result = asyncio.run(handler.execute_job(make_job()))

        assert result.status == ExecutionStatus.FAILED
        assert isinstance(result.error, WebhookDeliveryError)
        assert result.error.status_code == 500
        assert '{"hello": "world"}' in result.dump
        assert "500 Internal Server Error" in result.dump

    def test_http_timeout_fails_as_timeout(self):
        error = requests.Timeout("read timed out")
        handler = build_handler(HttpStub(error=error))

        result = asyncio.run(handler.execute_job(make_job()))

        assert result.is_failed
        assert result.is_timeout
        assert isinstance(result.error, ExecutionTimeoutError)
        assert result.error.__cause__ is error
        assert '{"hello": "world"}' in result.dump
        assert "read timed out" in result.dump
        assert "Timeout: True" in result.dump

    def test_connection_error_fails(self):
        handler = build_handler(HttpStub(error=requests.ConnectionError("refused")))

        result = asyncio.run(handler.execute_job(make_job()))

        assert result.is_failed
        assert not result.is_timeout
        assert "ConnectionError: refused" in result.dump
        assert '{"hello": "world"}' in result.dump

    def test_unexpected_error_fails_with_request_body(self):
        handler = build_handler(HttpStub(error=RuntimeError("broken session")))

        result = asyncio.run(handler.execute_job(make_job()))

        assert result.is_failed
        assert isinstance(result.error, RuntimeError)
        assert "RuntimeError: broken session" in result.dump
        assert '{"hello": "world"}' in result.dump

    def test_blank_url_is_ignored(self):
        http_stub = HttpStub()
        handler = build_handler(http_stub)

        result = asyncio.run(handler.execute_job(make_job(request_url="  ")))

        assert result.is_ignored
        assert http_stub.requests == []

    def test_null_url_is_ignored(self):
        http_stub = HttpStub()
        handler = build_handler(http_stub)

        job = handler.parse_job({"request_url": None, "request_body": "{}"})
        result = asyncio.run(handler.execute_job(job))

        assert job.request_url == ""
        assert result.is_ignored
        assert http_stub.requests == []

    def test_request_timeout_is_below_handler_bound(self):
        http_stub = HttpStub()
        handler = build_handler(http_stub, timeout_seconds=5.0)

        asyncio.run(handler.execute_job(make_job()))

        assert http_stub.requests[0]["timeout"] < handler.timeout_seconds
        assert http_stub.requests[0]["timeout"] == pytest.approx(4.5)

    def test_handler_timeout(self):
        handler = build_handler(HttpStub(delay=0.3), timeout_seconds=0.05)

        result = asyncio.run(handler.execute_job(make_job()))

        assert result.is_failed
        assert result.is_timeout
        assert '{"hello": "world"}' in result.dump
        assert "Timeout: True" in result.dump

    def test_cancelled_before_start(self):
        http_stub = HttpStub()
        handler = build_handler(http_stub)

        async def run():
            cancel_event = asyncio.Event()
            cancel_event.set()
            return await handler.execute_job(make_job(), cancel_event)

        result = asyncio.run(run())

        assert result.is_failed
        assert isinstance(result.error, ExecutionCancelledError)
        assert http_stub.requests == []

    def test_cancelled_while_running(self):
        handler = build_handler(HttpStub(delay=0.3), timeout_seconds=5.0)

        async def run():
            cancel_event = asyncio.Event()
            asyncio.get_running_loop().call_later(0.05, cancel_event.set)
            return await handler.execute_job(make_job(), cancel_event)

        result = asyncio.run(run())

        assert result.is_failed
        assert isinstance(result.error, ExecutionCancelledError)
        assert not result.is_timeout

    def test_failure_is_logged(self, caplog):
        handler = build_handler(HttpStub([503]))

        with caplog.at_level("INFO"):
            asyncio.run(handler.execute_job(make_job()))

        logged = [
            json.loads(record.getMessage())
            for record in caplog.records
            if record.name == "rule_dispatch.actions.webhook_action"
        ]
        assert logged[-1]["message"] == "Job execution failed"
        assert logged[-1]["context"] == {"action": "Webhook", "status": "Failed"}


@pytest.mark.parametrize("status_code", [200, 201, 204, 299])
def test_any_2xx_is_success(status_code):
    handler = build_handler(HttpStub([status_code]))
    assert asyncio.run(handler.execute_job(make_job())).is_success
