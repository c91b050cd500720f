"""
Exception hierarchy for the rule dispatch pipeline.

Resolution errors are raised while a job is created and propagate to the
caller. Execution errors are never raised out of ``execute_job``; they are
carried as the cause of a failed ``ExecutionResult``.
"""


class RuleDispatchError(Exception):
    """Base exception for all rule dispatch errors."""

    pass


# ---------------------------------------------------------------------------
# Job creation
# ---------------------------------------------------------------------------


class ResolutionError(RuleDispatchError):
    """Raised when a format expression cannot be evaluated."""

    pass


class UnknownTransformError(ResolutionError):
    """Raised when a placeholder names a transform that does not exist."""

    def __init__(self, transform: str, expression: str):
        self.transform = transform
        self.expression = expression
        super().__init__(f"Unknown transform '{transform}' in '{expression}'")


class ScriptEvaluationError(ResolutionError):
    """Raised when the script engine fails to evaluate a script."""

    pass


class TemplateRenderError(ResolutionError):
    """Raised when the template engine fails to render a template."""

    pass


# ---------------------------------------------------------------------------
# Job execution (carried inside ExecutionResult, never raised to callers)
# ---------------------------------------------------------------------------


class ExecutionError(RuleDispatchError):
    """Base for faults that happen while a job is executed."""

    pass


class ExecutionTimeoutError(ExecutionError, TimeoutError):
    """The external call did not complete within the handler timeout."""

    pass


class ExecutionCancelledError(ExecutionError):
    """Execution was cancelled through the cancellation signal."""

    pass


class WebhookDeliveryError(ExecutionError):
    """The webhook endpoint answered with a non-success status code."""

    def __init__(self, status_code: int, reason: str = ""):
        self.status_code = status_code
        self.reason = reason
        super().__init__(f"Webhook responded with {status_code} {reason}".rstrip())


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class ActionHandlerNotFoundError(RuleDispatchError):
    """No handler is registered for the requested action kind."""

    def __init__(self, action_kind: str):
        self.action_kind = action_kind
        super().__init__(f"No handler registered for action '{action_kind}'")
