"""Rule Action Dispatch Module

The dispatcher lives in ``rule_dispatch.rules.dispatcher``; it depends on
``rule_dispatch.actions``, which in turn builds on this package.
"""

from .exceptions import (
    ActionHandlerNotFoundError,
    ExecutionCancelledError,
    ExecutionError,
    ExecutionTimeoutError,
    ResolutionError,
    RuleDispatchError,
    UnknownTransformError,
)
from .formatter import RuleEventFormatter
from .handlers import RuleActionHandler
from .jobs import RuleJob
from .results import ExecutionResult, ExecutionStatus

__all__ = [
    "ActionHandlerNotFoundError",
    "ExecutionCancelledError",
    "ExecutionError",
    "ExecutionTimeoutError",
    "ResolutionError",
    "RuleDispatchError",
    "UnknownTransformError",
    "RuleEventFormatter",
    "RuleActionHandler",
    "RuleJob",
    "ExecutionResult",
    "ExecutionStatus",
]
