"""
Webhook rule action.

Posts the event (or a formatted payload) to an HTTP endpoint. The body is
signed with ``base64(sha256(body + shared_secret))`` and the signature is
sent in the ``X-Signature`` header so receivers can verify the sender.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import requests

from rule_dispatch.domain.events import EnrichedEvent
from rule_dispatch.rules.dump import build_dump
from rule_dispatch.rules.exceptions import ExecutionTimeoutError, WebhookDeliveryError
from rule_dispatch.rules.formatter import RuleEventFormatter
from rule_dispatch.rules.handlers import ActionModel, RuleActionHandler
from rule_dispatch.rules.results import ExecutionResult
from rule_dispatch.utils.logger import StructuredLogger, get_logger

DEFAULT_TIMEOUT_SECONDS = 2.0
USER_AGENT = "RuleDispatch Webhook"
JSON_CONTENT_TYPE = "application/json"

# Share of the handler bound given to the HTTP call, so requests gives up first.
REQUEST_TIMEOUT_FACTOR = 0.9


def sign_payload(body: str, shared_secret: Optional[str]) -> str:
    """Return the base64-encoded SHA-256 hash of ``body + shared_secret``."""
    digest = hashlib.sha256(f"{body}{shared_secret or ''}".encode("UTF-8")).digest()
    return base64.b64encode(digest).decode("UTF-8")


@dataclass(frozen=True)
class WebhookAction(ActionModel):
    """
    Webhook action configuration.

    Attributes:
        url: Target URL, may contain placeholders
        shared_secret: Secret mixed into the signature, never sent
        payload: Optional body expression; defaults to the event envelope
        payload_type: Content type of a custom payload
    """

    url: str = ""
    shared_secret: Optional[str] = None
    payload: Optional[str] = None
    payload_type: Optional[str] = None


@dataclass
class WebhookJob(ActionModel):
    request_url: str = ""
    request_body: str = ""
    request_signature: str = ""
    content_type: str = JSON_CONTENT_TYPE


class WebhookActionHandler(RuleActionHandler[WebhookAction, WebhookJob]):
    """
    Sends rule events to webhooks.

    Args:
        formatter: Formatter used for the URL and payload
        http_client: Optional requests-like session (useful for testing)
        timeout_seconds: Upper bound for one delivery
        logger: Optional structured logger instance
    """

    action_kind = "Webhook"
    action_type = WebhookAction
    job_type = WebhookJob

    def __init__(
        self,
        formatter: RuleEventFormatter,
        http_client: Optional[requests.Session] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        logger: Optional[StructuredLogger] = None,
    ) -> None:
        super().__init__(formatter, timeout_seconds, logger or get_logger(__name__))
        self.http_client = http_client or requests.Session()
        self.request_timeout = timeout_seconds * REQUEST_TIMEOUT_FACTOR

    async def _create_job(
        self, event: EnrichedEvent, action: WebhookAction
    ) -> Tuple[str, WebhookJob]:
        request_url = await self.format_async(action.url, event) or ""

        if action.payload:
            request_body = await self.format_async(action.payload, event) or ""
            content_type = action.payload_type or JSON_CONTENT_TYPE
        else:
            request_body = self.formatter.to_envelope(event)
            content_type = JSON_CONTENT_TYPE

        job = WebhookJob(
            request_url=request_url,
            request_body=request_body,
            request_signature=sign_payload(request_body, action.shared_secret),
            content_type=content_type,
        )
        return f"Send event to webhook '{request_url}'", job

    async def _execute_job(self, job: WebhookJob) -> ExecutionResult:
        if not (job.request_url or "").strip():
            return ExecutionResult.ignored()

        headers = self._build_headers(job)
        start_time = time.perf_counter()

        try:
            response = await asyncio.to_thread(
                self.http_client.post,
                job.request_url,
                data=job.request_body.encode("UTF-8"),
                headers=headers,
                timeout=self.request_timeout,
            )
        except requests.Timeout as exc:
            error = ExecutionTimeoutError(
                f"Webhook request timed out after {self.request_timeout}s"
            )
            error.__cause__ = exc
            return ExecutionResult.failed(
                error, self._failure_dump(job, exc, time.perf_counter() - start_time)
            )
        except requests.RequestException as exc:
            return ExecutionResult.failed(
                exc, self._failure_dump(job, exc, time.perf_counter() - start_time)
            )

        dump = build_dump(
            method="POST",
            target=job.request_url,
            request_headers=headers,
            request_body=job.request_body,
            response_status=response.status_code,
            response_reason=getattr(response, "reason", None),
            response_headers=getattr(response, "headers", None),
            response_body=response.text,
            elapsed_seconds=time.perf_counter() - start_time,
        )

        if not 200 <= response.status_code < 300:
            return ExecutionResult.failed(
                WebhookDeliveryError(response.status_code, getattr(response, "reason", "") or ""),
                dump,
            )

        return ExecutionResult.success(dump)

    def _failure_dump(
        self, job: WebhookJob, error: BaseException, elapsed_seconds: float
    ) -> str:
        return build_dump(
            method="POST",
            target=job.request_url,
            request_headers=self._build_headers(job),
            request_body=job.request_body,
            response_body=f"{type(error).__name__}: {error}",
            elapsed_seconds=elapsed_seconds,
            is_timeout=isinstance(error, (TimeoutError, requests.Timeout)),
        )

    @staticmethod
    def _build_headers(job: WebhookJob) -> Dict[str, Any]:
        return {
            "Content-Type": job.content_type,
            "User-Agent": USER_AGENT,
            "X-Signature": job.request_signature,
        }
