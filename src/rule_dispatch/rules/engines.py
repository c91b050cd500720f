"""
Script and template engines used by the formatter.

Both engines are backed by a sandboxed Jinja2 environment:

- ``ScriptEngine`` evaluates a single expression such as
  ``{"actor": event.actor | string} | tojson`` and returns its value as text.
- ``TemplateEngine`` renders a whole template document such as
  ``{"id": "{{ event.id }}", "title": "{{ event.data.title.iv }}"}``.

Compiled expressions and templates are cached by source text.
"""

import re
import unicodedata
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional

import jinja2
from jinja2.sandbox import SandboxedEnvironment

from rule_dispatch.rules.exceptions import ScriptEvaluationError, TemplateRenderError
from rule_dispatch.utils.logger import get_logger

logger = get_logger(__name__)

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def slugify(value: Any) -> str:
    """
    Lower-case ``value``, strip diacritics and join words with hyphens.

    Example:
        >>> slugify("Crème Brûlée Recipe")
        "creme-brulee-recipe"
    """
    text = unicodedata.normalize("NFKD", str(value))
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    return _NON_ALNUM.sub("-", text.lower()).strip("-")


def format_date(value: Any, fmt: str = "%Y-%m-%d") -> str:
    """Format a datetime (or ISO-8601 string) with ``strftime`` syntax."""
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return value.strftime(fmt)


def _build_environment() -> SandboxedEnvironment:
    environment = SandboxedEnvironment(autoescape=False)
    environment.filters["slugify"] = slugify
    environment.filters["format_date"] = format_date
    return environment


class ScriptEngine:
    """
    Evaluates single expressions against a context.

    The context normally exposes the event as ``event``.
    """

    def __init__(self, environment: Optional[SandboxedEnvironment] = None):
        self.environment = environment or _build_environment()
        self._compiled: Dict[str, Callable[..., Any]] = {}

    def evaluate(self, script: str, context: Mapping[str, Any]) -> Optional[str]:
        """
        Evaluate ``script`` and return its result as text.

        Returns:
            The result converted with ``str``, or None for an undefined result

        Raises:
            ScriptEvaluationError: If compilation or evaluation fails
        """
        try:
            expression = self._compiled.get(script)
            if expression is None:
                expression = self.environment.compile_expression(script)
                self._compiled[script] = expression

            result = expression(**context)
        except Exception as e:
            logger.error(
                "Script evaluation failed",
                operation="evaluate_script",
                context={"script": script},
                error=str(e),
            )
            raise ScriptEvaluationError(f"Failed to evaluate script '{script}': {e}") from e

        if result is None:
            return None
        return str(result)


class TemplateEngine:
    """Renders full template documents against a context."""

    def __init__(self, environment: Optional[SandboxedEnvironment] = None):
        self.environment = environment or _build_environment()
        self._templates: Dict[str, jinja2.Template] = {}

    def render(self, template: str, context: Mapping[str, Any]) -> str:
        """
        Render ``template`` with ``context``.

        Raises:
            TemplateRenderError: If the template cannot be compiled or rendered
        """
        try:
            compiled = self._templates.get(template)
            if compiled is None:
                compiled = self.environment.from_string(template)
                self._templates[template] = compiled

            return compiled.render(**context)
        except Exception as e:
            logger.error(
                "Template rendering failed",
                operation="render_template",
                error=str(e),
            )
            raise TemplateRenderError(f"Failed to render template: {e}") from e
