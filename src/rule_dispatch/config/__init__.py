"""Configuration loading"""

from .settings import RULES_SCHEMA, ConfigurationError, SecretRedactionFilter, Settings

__all__ = ["RULES_SCHEMA", "ConfigurationError", "SecretRedactionFilter", "Settings"]
