"""
Algolia search index rule action.

Mirrors content changes into an Algolia index. Created, updated and
published content is upserted with ``objectID`` set to the content id;
deleted and unpublished content is removed. Index clients are pooled per
(app id, api key, index name).
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, NamedTuple, Optional, Tuple

from algoliasearch.search_client import SearchClient

from rule_dispatch.domain.events import (
    EnrichedContentEvent,
    EnrichedContentEventType,
    EnrichedEvent,
)
from rule_dispatch.rules.dump import build_dump
from rule_dispatch.rules.formatter import RuleEventFormatter
from rule_dispatch.rules.handlers import IGNORE_DESCRIPTION, ActionModel, RuleActionHandler
from rule_dispatch.rules.pool import DEFAULT_MAX_SIZE, ClientPool
from rule_dispatch.rules.results import ExecutionResult
from rule_dispatch.utils.logger import StructuredLogger, get_logger, mask_secret

DEFAULT_TIMEOUT_SECONDS = 30.0

REMOVAL_EVENTS = (EnrichedContentEventType.DELETED, EnrichedContentEventType.UNPUBLISHED)


class IndexKey(NamedTuple):
    app_id: str
    api_key: str
    index_name: str


def create_algolia_index(key: IndexKey) -> Any:
    """Build an Algolia index client for ``key``."""
    client = SearchClient.create(key.app_id, key.api_key)
    return client.init_index(key.index_name)


@dataclass(frozen=True)
class AlgoliaAction(ActionModel):
    """
    Algolia action configuration.

    Attributes:
        app_id: Algolia application id
        api_key: Admin api key with write access to the index
        index_name: Target index, may contain placeholders
        document: Optional document expression; defaults to the event payload
    """

    app_id: str = ""
    api_key: str = ""
    index_name: str = ""
    document: Optional[str] = None


@dataclass
class AlgoliaJob(ActionModel):
    app_id: str = ""
    api_key: str = ""
    content_id: str = ""
    index_name: str = ""
    content: Optional[Dict[str, Any]] = None


class AlgoliaActionHandler(RuleActionHandler[AlgoliaAction, AlgoliaJob]):
    """
    Upserts and removes content entries in Algolia indices.

    Args:
        formatter: Formatter used for the index name and document
        index_factory: Builds an index client for an ``IndexKey``
        pool_max_size: Upper bound of pooled index clients
        timeout_seconds: Upper bound for one index operation
        logger: Optional structured logger instance
    """

    action_kind = "Algolia"
    action_type = AlgoliaAction
    job_type = AlgoliaJob

    def __init__(
        self,
        formatter: RuleEventFormatter,
        index_factory: Optional[Callable[[IndexKey], Any]] = None,
        pool_max_size: Optional[int] = DEFAULT_MAX_SIZE,
        timeout_seconds: Optional[float] = DEFAULT_TIMEOUT_SECONDS,
        logger: Optional[StructuredLogger] = None,
    ) -> None:
        super().__init__(formatter, timeout_seconds, logger or get_logger(__name__))
        self.pool: ClientPool[IndexKey, Any] = ClientPool(
            index_factory or create_algolia_index,
            max_size=pool_max_size,
            logger=self.logger,
        )

    async def _create_job(
        self, event: EnrichedEvent, action: AlgoliaAction
    ) -> Tuple[str, AlgoliaJob]:
        if not isinstance(event, EnrichedContentEvent):
            return IGNORE_DESCRIPTION, AlgoliaJob()

        index_name = await self.format_async(action.index_name, event) or ""

        job = AlgoliaJob(
            app_id=action.app_id,
            api_key=action.api_key,
            content_id=event.id,
            index_name=index_name,
        )

        if event.type in REMOVAL_EVENTS:
            return f"Delete entry from Algolia index: {index_name}", job

        job.content = await self._build_document(event, action)
        return f"Add entry to Algolia index: {index_name}", job

    async def _build_document(
        self, event: EnrichedContentEvent, action: AlgoliaAction
    ) -> Dict[str, Any]:
        if action.document:
            raw = await self.format_async(action.document, event) or ""
            try:
                content = json.loads(raw)
            except ValueError as e:
                content = {"error": f"Invalid JSON: {e}"}
            if not isinstance(content, dict):
                content = {"error": "Invalid JSON: document must be an object"}
        else:
            content = self.formatter.to_payload(event)

        content["objectID"] = event.id
        return content

    async def _execute_job(self, job: AlgoliaJob) -> ExecutionResult:
        if not (job.app_id or "").strip():
            return ExecutionResult.ignored()

        index = await self.pool.get_client(IndexKey(job.app_id, job.api_key, job.index_name))
        method = "PUT" if job.content is not None else "DELETE"
        self.logger.debug(
            "Updating Algolia index",
            operation="algolia_request",
            context={
                "app_id": job.app_id,
                "api_key": mask_secret(job.api_key),
                "index": job.index_name,
                "method": method,
            },
        )
        start_time = time.perf_counter()

        if job.content is not None:
            response = await asyncio.to_thread(
                index.partial_update_object, job.content, {"createIfNotExists": True}
            )
        else:
            response = await asyncio.to_thread(index.delete_object, job.content_id)

        dump = build_dump(
            method=method,
            target=self._target(job),
            request_body=self._request_body(job),
            response_body=self._response_text(response),
            elapsed_seconds=time.perf_counter() - start_time,
            secrets=(job.api_key,),
        )
        return ExecutionResult.success(dump)

    def _failure_dump(
        self, job: AlgoliaJob, error: BaseException, elapsed_seconds: float
    ) -> str:
        return build_dump(
            method="PUT" if job.content is not None else "DELETE",
            target=self._target(job),
            request_body=self._request_body(job),
            response_body=f"{type(error).__name__}: {error}",
            elapsed_seconds=elapsed_seconds,
            is_timeout=isinstance(error, TimeoutError),
            secrets=(job.api_key,),
        )

    @staticmethod
    def _target(job: AlgoliaJob) -> str:
        return f"{job.app_id}/{job.index_name}/{job.content_id}"

    @staticmethod
    def _request_body(job: AlgoliaJob) -> str:
        if job.content is None:
            return ""
        return json.dumps(job.content, ensure_ascii=False, indent=2, default=str)

    @staticmethod
    def _response_text(response: Any) -> str:
        raw = getattr(response, "raw_responses", None)
        if raw is not None:
            response = raw
        try:
            return json.dumps(response, ensure_ascii=False, indent=2, default=str)
        except (TypeError, ValueError):
            return str(response)
