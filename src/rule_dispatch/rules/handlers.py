"""
Rule action handler base.

A handler owns one action kind and splits its work into two phases:

1. ``create_job``: turns an event and a typed action configuration into a
   serializable job. Only formatting happens here, never the external
   call. Resolution errors propagate to the caller.
2. ``execute_job``: performs the single external interaction a job
   describes and converts every outcome into an ``ExecutionResult``.
   Nothing raised by the handler escapes this method; timeouts and
   cancellation become failed results as well.
"""

import asyncio
import time
from dataclasses import asdict, fields
from typing import (
    Any,
    Awaitable,
    Dict,
    Generic,
    Optional,
    Tuple,
    Type,
    TypeVar,
)

from rule_dispatch.domain.events import EnrichedEvent
from rule_dispatch.rules.exceptions import ExecutionCancelledError, ExecutionTimeoutError
from rule_dispatch.rules.formatter import RuleEventFormatter
from rule_dispatch.rules.results import ExecutionResult, ExecutionStatus
from rule_dispatch.utils.logger import StructuredLogger, get_logger

IGNORE_DESCRIPTION = "Ignore"


class ActionModel:
    """Mixin for action configurations and jobs that travel as plain dicts."""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        """Build from ``data``, dropping unknown keys. Null text fields take their default."""
        values = {}
        for f in fields(cls):
            if f.name not in data:
                continue
            value = data[f.name]
            if value is None and isinstance(f.default, str):
                value = f.default
            values[f.name] = value
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


TAction = TypeVar("TAction", bound=ActionModel)
TJob = TypeVar("TJob", bound=ActionModel)


class RuleActionHandler(Generic[TAction, TJob]):
    """
    Generic handler for one action kind.

    Subclasses set ``action_kind``, ``action_type`` and ``job_type`` and
    implement ``_create_job`` and ``_execute_job``. They may override
    ``_failure_dump`` to record more than the error text when execution
    times out or fails unexpectedly.

    Args:
        formatter: Formatter used to render action fields
        timeout_seconds: Upper bound for one execution (None for unbounded)
        logger: Optional structured logger instance
    """

    action_kind: str = ""
    action_type: Type[TAction]
    job_type: Type[TJob]

    def __init__(
        self,
        formatter: RuleEventFormatter,
        timeout_seconds: Optional[float] = None,
        logger: Optional[StructuredLogger] = None,
    ) -> None:
        self.formatter = formatter
        self.timeout_seconds = timeout_seconds
        self.logger = logger or get_logger(__name__)

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def parse_action(self, params: Dict[str, Any]) -> TAction:
        return self.action_type.from_dict(params)

    def parse_job(self, data: Dict[str, Any]) -> TJob:
        return self.job_type.from_dict(data)

    async def create_job(self, event: EnrichedEvent, action: TAction) -> Tuple[str, TJob]:
        """
        Create the job for ``event``.

        Returns:
            Tuple of (description, job). Unsupported events yield
            ("Ignore", empty job).

        Raises:
            ResolutionError: If an action field cannot be formatted
        """
        description, job = await self._create_job(event, action)

        self.logger.debug(
            "Job created",
            operation="create_job",
            context={
                "action": self.action_kind,
                "event": event.name,
                "description": description,
            },
        )
        return description, job

    async def execute_job(
        self, job: TJob, cancel_event: Optional[asyncio.Event] = None
    ) -> ExecutionResult:
        """
        Execute ``job`` once.

        Args:
            job: Job created by ``create_job``
            cancel_event: Cancellation signal; setting it fails the execution

        Returns:
            ExecutionResult, never raises for execution faults
        """
        start_time = time.perf_counter()

        try:
            if cancel_event is not None and cancel_event.is_set():
                raise ExecutionCancelledError(f"{self.action_kind} execution was cancelled")

            result = await self._run_bounded(self._execute_job(job), cancel_event)
        except Exception as e:
            elapsed = time.perf_counter() - start_time
            result = ExecutionResult.failed(e, self._failure_dump(job, e, elapsed))

        self._log_result(result, (time.perf_counter() - start_time) * 1000)
        return result

    # ------------------------------------------------------------------ #
    # Subclass hooks
    # ------------------------------------------------------------------ #

    async def _create_job(self, event: EnrichedEvent, action: TAction) -> Tuple[str, TJob]:
        raise NotImplementedError

    async def _execute_job(self, job: TJob) -> ExecutionResult:
        raise NotImplementedError

    def _failure_dump(self, job: TJob, error: BaseException, elapsed_seconds: float) -> str:
        return f"{type(error).__name__}: {error}"

    async def format_async(self, text: Optional[str], event: EnrichedEvent) -> Optional[str]:
        return await self.formatter.format_async(text, event)

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    async def _run_bounded(
        self,
        operation: Awaitable[ExecutionResult],
        cancel_event: Optional[asyncio.Event],
    ) -> ExecutionResult:
        """Await ``operation`` until it completes, times out or is cancelled."""
        task = asyncio.ensure_future(operation)
        waiters = {task}

        cancel_waiter = None
        if cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self.timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            if not task.done():
                task.cancel()

        if task in done:
            return task.result()

        await asyncio.wait({task})

        if cancel_event is not None and cancel_event.is_set():
            raise ExecutionCancelledError(f"{self.action_kind} execution was cancelled")
        raise ExecutionTimeoutError(
            f"{self.action_kind} execution timed out after {self.timeout_seconds}s"
        )

    def _log_result(self, result: ExecutionResult, duration_ms: float) -> None:
        context = {"action": self.action_kind, "status": result.status.value}

        if result.status == ExecutionStatus.FAILED:
            self.logger.error(
                "Job execution failed",
                operation="execute_job",
                context=context,
                error=str(result.error),
                duration_ms=duration_ms,
            )
        else:
            self.logger.info(
                "Job executed",
                operation="execute_job",
                context=context,
                duration_ms=duration_ms,
            )
