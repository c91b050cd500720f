"""
Tests for script and template engines (rule_dispatch/rules/engines.py)
"""

from datetime import datetime, timezone

import pytest

from rule_dispatch.rules.engines import ScriptEngine, TemplateEngine, format_date, slugify
from rule_dispatch.rules.exceptions import ScriptEvaluationError, TemplateRenderError


class TestSlugify:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("Hello World", "hello-world"),
            ("Crème Brûlée Recipe", "creme-brulee-recipe"),
            ("  --Already-slugged--  ", "already-slugged"),
            ("C# & .NET", "c-net"),
            (42, "42"),
        ],
    )
    def test_slugify(self, value, expected):
        assert slugify(value) == expected


class TestFormatDate:
    def test_datetime(self):
        value = datetime(2024, 3, 1, 8, 5, tzinfo=timezone.utc)
        assert format_date(value, "%d.%m.%Y %H:%M") == "01.03.2024 08:05"

    def test_iso_string(self):
        assert format_date("2024-03-01T08:05:00Z") == "2024-03-01"


class TestScriptEngine:
    def test_evaluates_expression(self):
        engine = ScriptEngine()
        assert engine.evaluate("value * 2", {"value": 21}) == "42"

    def test_undefined_result_is_none(self):
        engine = ScriptEngine()
        assert engine.evaluate("missing", {}) is None

    def test_compiled_expressions_are_cached(self):
        engine = ScriptEngine()

        engine.evaluate("a + b", {"a": 1, "b": 2})
        compiled = engine._compiled["a + b"]
        assert engine.evaluate("a + b", {"a": 3, "b": 4}) == "7"
        assert engine._compiled["a + b"] is compiled

    def test_syntax_error(self):
        with pytest.raises(ScriptEvaluationError):
            ScriptEngine().evaluate("a +", {"a": 1})

    def test_runtime_error_is_wrapped(self):
        with pytest.raises(ScriptEvaluationError) as exc_info:
            ScriptEngine().evaluate("1 / value", {"value": 0})

        assert isinstance(exc_info.value.__cause__, ZeroDivisionError)


class TestTemplateEngine:
    def test_renders_template(self):
        engine = TemplateEngine()
        result = engine.render("Hi {{ name | upper }}!", {"name": "donald"})
        assert result == "Hi DONALD!"

    def test_no_html_escaping(self):
        assert TemplateEngine().render("{{ value }}", {"value": "<b>&</b>"}) == "<b>&</b>"

    def test_custom_filters_are_available(self):
        assert TemplateEngine().render("{{ 'Hello World' | slugify }}", {}) == "hello-world"

    def test_syntax_error(self):
        with pytest.raises(TemplateRenderError):
            TemplateEngine().render("{% for %}", {})
