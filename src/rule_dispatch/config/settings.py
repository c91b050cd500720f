"""
Configuration loader for rule action dispatch

Reads runtime limits from the environment, loads rule definitions from
YAML, and resolves ``secret:<id>#<key>`` references from AWS Secrets
Manager (or a local JSON file for development) with caching and
exponential backoff.
"""

import json
import logging
import os
import time
from typing import Any, Dict, List, Optional

import boto3
import jsonschema
import yaml
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

SECRET_PREFIX = "secret:"  # nosec B105
DEFAULT_REGION = "ap-northeast-2"
DEFAULT_WEBHOOK_TIMEOUT_SECONDS = 2.0
DEFAULT_CLIENT_POOL_MAX_SIZE = 100
DEFAULT_JOB_EXPIRY_DAYS = 2

RULES_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["rules"],
    "properties": {
        "rules": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["name", "action"],
                "properties": {
                    "name": {"type": "string", "minLength": 1},
                    "enabled": {"type": "boolean"},
                    "action": {
                        "type": "object",
                        "required": ["type"],
                        "properties": {
                            "type": {"type": "string", "minLength": 1},
                            "params": {"type": "object"},
                        },
                        "additionalProperties": False,
                    },
                },
                "additionalProperties": False,
            },
        }
    },
}


class ConfigurationError(Exception):
    """Exception raised for configuration-related errors."""

    pass


class SecretRedactionFilter(logging.Filter):
    """
    Logging filter that redacts secret values from log records.
    Replaces secret substrings with ***REDACTED*** to prevent accidental leakage.
    """

    def __init__(self, secrets: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.redacted_values: set[str] = set()
        if secrets:
            self.add_secrets(secrets)

    def add_secrets(self, obj: Any, max_depth: int = 5) -> None:
        """Recursively collect secret values from nested structures."""
        if max_depth <= 0:
            return

        if isinstance(obj, dict):
            for value in obj.values():
                self.add_secrets(value, max_depth - 1)
        elif isinstance(obj, (list, tuple)):
            for item in obj:
                self.add_secrets(item, max_depth - 1)
        elif isinstance(obj, str) and len(obj) > 3:
            # Only redact strings with meaningful length
            self.redacted_values.add(obj)

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = self._redact_string(str(record.msg))
        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self._redact_string(str(v)) for k, v in record.args.items()}
            else:
                record.args = tuple(self._redact_string(str(arg)) for arg in record.args)
        return True

    def _redact_string(self, text: str) -> str:
        for secret in self.redacted_values:
            if secret in text:
                text = text.replace(secret, "***REDACTED***")
        return text


def _read_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got '{raw}'") from e
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got '{raw}'")
    return value


def _read_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got '{raw}'") from e
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got '{raw}'")
    return value


class Settings:
    """
    Runtime configuration for the dispatcher.

    Environment flags are read when the instance is created, so tests can
    patch the environment per instance.

    Args:
        region_name: AWS region for Secrets Manager (defaults to AWS_REGION)
    """

    def __init__(self, region_name: Optional[str] = None):
        self.region_name = region_name or os.getenv("AWS_REGION", DEFAULT_REGION)
        self.webhook_timeout_seconds = _read_float(
            "RULE_WEBHOOK_TIMEOUT_SECONDS", DEFAULT_WEBHOOK_TIMEOUT_SECONDS
        )
        self.client_pool_max_size = _read_int(
            "RULE_CLIENT_POOL_MAX_SIZE", DEFAULT_CLIENT_POOL_MAX_SIZE
        )
        self.job_expiry_days = _read_int("RULE_JOB_EXPIRY_DAYS", DEFAULT_JOB_EXPIRY_DAYS)
        self.use_local_secrets = os.getenv("USE_LOCAL_SECRETS_FILE", "false").lower() == "true"
        self.local_secrets_file = os.getenv("LOCAL_SECRETS_FILE_PATH", ".local/secrets.json")

        self.rules: List[Dict[str, Any]] = []
        self.secrets_client = None
        self.redaction_filter = SecretRedactionFilter()
        self._secrets_cache: Dict[str, Dict[str, Any]] = {}

    # ------------------------------------------------------------------ #
    # Rules
    # ------------------------------------------------------------------ #

    def load_rules(self, rules_config_path: str) -> List[Dict[str, Any]]:
        """
        Load rules from YAML configuration and validate against RULES_SCHEMA.

        Rules without an ``enabled`` flag are enabled and rules without
        ``params`` get an empty mapping.

        Raises:
            ConfigurationError: If the file is missing, not YAML, or invalid
        """
        try:
            with open(rules_config_path, "r", encoding="utf-8") as f:
                rules_config = yaml.safe_load(f)
        except FileNotFoundError as e:
            logger.error(f"Rules configuration file not found: {rules_config_path}")
            raise ConfigurationError(f"Rules file not found: {rules_config_path}") from e
        except yaml.YAMLError as e:
            logger.error(f"Invalid YAML in rules configuration: {e}")
            raise ConfigurationError(f"Invalid YAML in {rules_config_path}: {e}") from e

        if not rules_config:
            logger.warning(f"Empty rules configuration: {rules_config_path}")
            self.rules = []
            return self.rules

        try:
            jsonschema.validate(instance=rules_config, schema=RULES_SCHEMA)
        except jsonschema.ValidationError as e:
            logger.error(f"Rules configuration failed schema validation: {e.message}")
            raise ConfigurationError(f"Rules configuration validation failed: {e.message}") from e

        rules = []
        for rule in rules_config["rules"]:
            action = rule["action"]
            rules.append(
                {
                    "name": rule["name"],
                    "enabled": rule.get("enabled", True),
                    "action": {"type": action["type"], "params": action.get("params", {})},
                }
            )

        self.rules = rules
        logger.info(f"Successfully loaded {len(self.rules)} rules from {rules_config_path}")
        return self.rules

    # ------------------------------------------------------------------ #
    # Secrets
    # ------------------------------------------------------------------ #

    def resolve_secret(self, value: Any) -> Any:
        """
        Resolve a ``secret:<id>#<key>`` reference to its value.

        Any other value is returned unchanged.

        Raises:
            ConfigurationError: If the reference is malformed or cannot be loaded
        """
        if not isinstance(value, str) or not value.startswith(SECRET_PREFIX):
            return value

        secret_id, _, key = value[len(SECRET_PREFIX) :].partition("#")
        if not secret_id or not key:
            raise ConfigurationError(
                f"Secret reference must look like 'secret:<id>#<key>', got '{value}'"
            )

        secret = self._load_secret(secret_id)
        if key not in secret:
            raise ConfigurationError(
                f"Secret '{secret_id}' has no key '{key}'. Got: {sorted(secret.keys())}"
            )

        resolved = secret[key]
        self.redaction_filter.add_secrets(resolved)
        return resolved

    def resolve_params(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Return ``params`` with every secret reference resolved."""
        return {key: self.resolve_secret(value) for key, value in params.items()}

    def _load_secret(self, secret_id: str) -> Dict[str, Any]:
        if secret_id not in self._secrets_cache:
            if self.use_local_secrets:
                secrets = self._load_from_local_file(self.local_secrets_file)
                if secret_id not in secrets:
                    raise ConfigurationError(
                        f"Secret '{secret_id}' not found in {self.local_secrets_file}"
                    )
                self._secrets_cache[secret_id] = secrets[secret_id]
            else:
                self._secrets_cache[secret_id] = self._get_secret_value(secret_id)
        return self._secrets_cache[secret_id]

    def _get_secrets_client(self):
        """Lazy initialize Secrets Manager client."""
        if self.secrets_client is None:
            self.secrets_client = boto3.client("secretsmanager", region_name=self.region_name)
        return self.secrets_client

    def _get_secret_value(
        self, secret_id: str, max_retries: int = 3, base_wait: float = 1.0
    ) -> Dict[str, Any]:
        """
        Fetch secret from Secrets Manager with exponential backoff.

        Args:
            secret_id: Secret identifier in Secrets Manager
            max_retries: Maximum number of retry attempts
            base_wait: Base wait time in seconds for exponential backoff

        Returns:
            Parsed secret JSON as dictionary

        Raises:
            ConfigurationError: If secret cannot be retrieved after retries
        """
        client = self._get_secrets_client()

        for attempt in range(max_retries):
            try:
                response = client.get_secret_value(SecretId=secret_id)
                secret_string = response.get("SecretString")
                if not secret_string:
                    raise ConfigurationError(f"Secret {secret_id} has empty value")
                return json.loads(secret_string)
            except ClientError as e:
                error_code = e.response["Error"]["Code"]
                if error_code == "ResourceNotFoundException":
                    raise ConfigurationError(
                        f"Secret '{secret_id}' not found in Secrets Manager. "
                        f"Please verify the secret exists in region {self.region_name}"
                    ) from e
                elif error_code in ["AccessDeniedException", "UnauthorizedOperation"]:
                    raise ConfigurationError(
                        f"Access denied to secret '{secret_id}'. "
                        f"Verify the execution role has secretsmanager:GetSecretValue permission"
                    ) from e
                elif error_code == "DecryptionFailure":
                    raise ConfigurationError(
                        f"Failed to decrypt secret '{secret_id}'. Verify KMS key permissions"
                    ) from e
                elif attempt < max_retries - 1:
                    wait_time = base_wait * (2**attempt)
                    logger.warning(
                        f"Transient error fetching secret {secret_id}: {error_code}. "
                        f"Retrying in {wait_time}s (attempt {attempt + 1}/{max_retries})"
                    )
                    time.sleep(wait_time)
                else:
                    raise ConfigurationError(
                        f"Failed to retrieve secret '{secret_id}' after {max_retries} attempts: {error_code}"
                    ) from e
            except json.JSONDecodeError as e:
                raise ConfigurationError(
                    f"Secret '{secret_id}' contains invalid JSON: {str(e)}"
                ) from e

        raise ConfigurationError(
            f"Failed to retrieve secret '{secret_id}' - exhausted all retry attempts"
        )

    @staticmethod
    def _load_from_local_file(filepath: str) -> Dict[str, Any]:
        """
        Load secrets from local JSON file for development.

        Raises:
            ConfigurationError: If file cannot be read or contains invalid JSON
        """
        try:
            with open(filepath, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError as e:
            raise ConfigurationError(
                f"Local secrets file not found: {filepath}. "
                f"Use AWS Secrets Manager or provide USE_LOCAL_SECRETS_FILE=true and LOCAL_SECRETS_FILE_PATH"
            ) from e
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Local secrets file contains invalid JSON: {str(e)}") from e

    def setup_redaction_filter(self, logger_instance: logging.Logger) -> None:
        """Attach the redaction filter holding every resolved secret."""
        if self.redaction_filter not in logger_instance.filters:
            logger_instance.addFilter(self.redaction_filter)
