"""Configuration for mdkroki.

Settings come from the ``[preprocessor.kroki-preprocessor]`` table of
``book.toml`` when running under mdBook:

    [preprocessor.kroki-preprocessor]
    command = "mdkroki"
    endpoint = "http://localhost:8000"
    max_concurrency = 8

or from a YAML file for standalone rendering (``mdkroki render``):

    endpoint: http://localhost:8000
    timeout: 60
    fail_fast: false

``MDKROKI_ENDPOINT`` overrides the endpoint from either source.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

import yaml
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from mdkroki.errors import ConfigurationError

__all__ = [
    "CONFIG_ENV_VAR",
    "DEFAULT_CONFIG_FILENAME",
    "DEFAULT_ENDPOINT",
    "DEFAULT_MAX_CONCURRENCY",
    "DEFAULT_TIMEOUT",
    "ENDPOINT_ENV_VAR",
    "PREPROCESSOR_NAME",
    "KrokiConfig",
    "config_from_preprocessor_table",
    "load_config",
    "normalize_endpoint",
]

PREPROCESSOR_NAME = "kroki-preprocessor"
DEFAULT_ENDPOINT = "https://kroki.io/"
# Render request timeout (seconds)
DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_CONCURRENCY = 16
DEFAULT_CONFIG_FILENAME = "mdkroki.yaml"
CONFIG_ENV_VAR = "MDKROKI_CONFIG"
ENDPOINT_ENV_VAR = "MDKROKI_ENDPOINT"

LogLevel = Literal["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"]


def normalize_endpoint(url: str) -> str:
    """Ensure the endpoint URL ends with a single trailing slash."""
    return url if url.endswith("/") else url + "/"


class KrokiConfig(BaseModel):
    """Render service and run settings.

    Unknown keys are ignored so mdBook's own table keys (``command``,
    ``renderers``, ``before``, ``after``) pass validation.
    """

    model_config = ConfigDict(extra="ignore")

    endpoint: str = Field(
        default=DEFAULT_ENDPOINT,
        description="Kroki service URL diagrams are POSTed to",
    )
    timeout: float = Field(
        default=DEFAULT_TIMEOUT,
        ge=1.0,
        le=300.0,
        description="Request timeout in seconds",
    )
    max_concurrency: int = Field(
        default=DEFAULT_MAX_CONCURRENCY,
        ge=1,
        le=256,
        description="Maximum diagrams resolved at the same time",
    )
    fail_fast: bool = Field(
        default=True,
        description="Cancel outstanding diagrams on the first failure",
    )
    log_level: LogLevel = Field(
        default="WARNING",
        description="Minimum level of log lines written to stderr",
    )

    @field_validator("endpoint", mode="before")
    @classmethod
    def _check_endpoint(cls, value: Any) -> Any:
        if not isinstance(value, str):
            raise ValueError("endpoint must be a string")
        value = value.strip()
        if not value:
            raise ValueError("endpoint must not be empty")
        return normalize_endpoint(value)

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_log_level(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


def _apply_env_overrides(config: KrokiConfig) -> KrokiConfig:
    endpoint = os.getenv(ENDPOINT_ENV_VAR)
    if endpoint:
        logger.debug(f"Endpoint overridden by {ENDPOINT_ENV_VAR}")
        return config.model_copy(update={"endpoint": normalize_endpoint(endpoint.strip())})
    return config


def config_from_preprocessor_table(table: Mapping[str, Any] | None) -> KrokiConfig:
    """Build configuration from the preprocessor's ``book.toml`` table.

    Args:
        table: The ``[preprocessor.kroki-preprocessor]`` table, or None.

    Returns:
        Validated KrokiConfig

    Raises:
        ConfigurationError: If a setting is invalid.
    """
    try:
        config = KrokiConfig.model_validate(dict(table or {}))
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid [preprocessor.{PREPROCESSOR_NAME}] configuration: {e}"
        ) from e
    return _apply_env_overrides(config)


def _config_file(config_path: Path | str | None) -> Path | None:
    """Locate the YAML file to read, or None to use the built-in defaults."""
    if config_path is not None:
        path = Path(config_path)
    elif env_path := os.getenv(CONFIG_ENV_VAR):
        path = Path(env_path)
    else:
        path = Path(DEFAULT_CONFIG_FILENAME)
        return path if path.exists() else None

    if not path.exists():
        raise ConfigurationError(f"Config file not found: {path}")
    return path


def load_config(config_path: Path | str | None = None) -> KrokiConfig:
    """Load configuration for standalone rendering from a YAML file.

    Resolution order (when config_path is None):
    1. MDKROKI_CONFIG env var
    2. mdkroki.yaml in the working directory
    3. Built-in defaults

    Args:
        config_path: Path to config file (overrides resolution)

    Returns:
        Validated KrokiConfig

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid.
    """
    path = _config_file(config_path)
    if path is None:
        logger.debug("No config file found, using defaults")
        return _apply_env_overrides(KrokiConfig())

    try:
        with path.open(encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Error reading {path}: {e}") from e

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Invalid configuration in {path}: expected a mapping")

    try:
        config = KrokiConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration in {path}: {e}") from e

    logger.debug(f"Loaded config from {path}")
    return _apply_env_overrides(config)
