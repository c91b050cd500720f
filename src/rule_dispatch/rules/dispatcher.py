"""
Rule action dispatcher.

Keeps a registry of action handlers keyed by action kind, turns
(event, rule) pairs into serializable ``RuleJob`` envelopes and executes
those envelopes through the matching handler.
"""

import asyncio
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests

from rule_dispatch.actions.algolia_action import AlgoliaActionHandler, IndexKey
from rule_dispatch.actions.webhook_action import WebhookActionHandler
from rule_dispatch.config.settings import Settings
from rule_dispatch.domain.events import EnrichedEvent
from rule_dispatch.rules.engines import ScriptEngine, TemplateEngine
from rule_dispatch.rules.exceptions import ActionHandlerNotFoundError
from rule_dispatch.rules.formatter import RuleEventFormatter
from rule_dispatch.rules.handlers import RuleActionHandler
from rule_dispatch.rules.jobs import DEFAULT_EXPIRY, RuleJob
from rule_dispatch.rules.resolvers import (
    ContentLoader,
    ContentReferenceResolver,
    PredefinedPatternResolver,
    ResolverChain,
    UrlGenerator,
)
from rule_dispatch.rules.results import ExecutionResult
from rule_dispatch.utils.logger import get_logger, log_operation
from rule_dispatch.utils.timezone import now_utc

logger = get_logger(__name__)

ParamsResolver = Callable[[Dict[str, Any]], Dict[str, Any]]


class RuleActionDispatcher:
    """
    Registry of action handlers.

    Rules are plain dicts as loaded by ``Settings.load_rules``:
    ``{"name": ..., "enabled": ..., "action": {"type": ..., "params": {...}}}``.

    Args:
        params_resolver: Applied to action params before parsing (e.g. secret lookup)
        job_expiry: Lifetime of created jobs
    """

    def __init__(
        self,
        params_resolver: Optional[ParamsResolver] = None,
        job_expiry: timedelta = DEFAULT_EXPIRY,
    ):
        self.handlers: Dict[str, RuleActionHandler] = {}
        self.params_resolver = params_resolver
        self.job_expiry = job_expiry

    def register_handler(self, handler: RuleActionHandler) -> None:
        """Register ``handler`` for its action kind, replacing any previous one."""
        if not handler.action_kind:
            raise ValueError(f"{type(handler).__name__} does not declare an action kind")

        self.handlers[handler.action_kind] = handler
        logger.debug(
            f"Registered action handler: {handler.action_kind}",
            operation="register_handler",
        )

    def get_handler(self, action_kind: str) -> RuleActionHandler:
        handler = self.handlers.get(action_kind)
        if handler is None:
            raise ActionHandlerNotFoundError(action_kind)
        return handler

    async def create_job(self, event: EnrichedEvent, rule: Dict[str, Any]) -> RuleJob:
        """
        Create the job for one rule.

        Raises:
            ActionHandlerNotFoundError: If no handler is registered for the kind
            ResolutionError: If an action field cannot be formatted
        """
        action = rule["action"]
        handler = self.get_handler(action["type"])

        params = dict(action.get("params") or {})
        if self.params_resolver is not None:
            params = self.params_resolver(params)

        description, job = await handler.create_job(event, handler.parse_action(params))

        created = now_utc()
        return RuleJob(
            action_kind=handler.action_kind,
            description=description,
            job_data=job.to_dict(),
            app_id=event.app_id.id if event.app_id else None,
            event_name=event.name,
            rule_name=rule.get("name", ""),
            created=created,
            expires=created + self.job_expiry,
        )

    @log_operation("create_jobs")
    async def create_jobs(
        self, event: EnrichedEvent, rules: Iterable[Dict[str, Any]]
    ) -> List[RuleJob]:
        """Create jobs for every enabled rule, in rule order."""
        enabled = [rule for rule in rules if rule.get("enabled", True)]
        return list(await asyncio.gather(*(self.create_job(event, rule) for rule in enabled)))

    async def execute_job(
        self, rule_job: RuleJob, cancel_event: Optional[asyncio.Event] = None
    ) -> ExecutionResult:
        """
        Execute a job envelope through its handler.

        Returns:
            ExecutionResult; unknown kinds fail and expired jobs are ignored
        """
        if rule_job.is_expired():
            logger.warning(
                "Skipping expired job",
                operation="execute_job",
                context={"job_id": rule_job.job_id, "rule": rule_job.rule_name},
            )
            return ExecutionResult.ignored()

        try:
            handler = self.get_handler(rule_job.action_kind)
        except ActionHandlerNotFoundError as e:
            logger.error(
                "No handler for job",
                operation="execute_job",
                context={"job_id": rule_job.job_id, "action": rule_job.action_kind},
                error=str(e),
            )
            return ExecutionResult.failed(e)

        return await handler.execute_job(handler.parse_job(rule_job.job_data), cancel_event)


def create_default_dispatcher(
    settings: Optional[Settings] = None,
    url_generator: Optional[UrlGenerator] = None,
    content_loader: Optional[ContentLoader] = None,
    http_client: Optional[requests.Session] = None,
    index_factory: Optional[Callable[[IndexKey], Any]] = None,
) -> RuleActionDispatcher:
    """Wire the formatter, both engines and the built-in handlers."""
    settings = settings or Settings()

    resolvers = ResolverChain([PredefinedPatternResolver(url_generator)])
    if content_loader is not None:
        resolvers.add(ContentReferenceResolver(content_loader))

    formatter = RuleEventFormatter(resolvers, ScriptEngine(), TemplateEngine())

    dispatcher = RuleActionDispatcher(
        params_resolver=settings.resolve_params,
        job_expiry=timedelta(days=settings.job_expiry_days),
    )
    dispatcher.register_handler(
        WebhookActionHandler(
            formatter,
            http_client=http_client,
            timeout_seconds=settings.webhook_timeout_seconds,
        )
    )
    dispatcher.register_handler(
        AlgoliaActionHandler(
            formatter,
            index_factory=index_factory,
            pool_max_size=settings.client_pool_max_size,
        )
    )

    for handler in dispatcher.handlers.values():
        settings.setup_redaction_filter(handler.logger.logger)

    return dispatcher
