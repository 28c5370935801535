"""Process configuration using pydantic-settings.

Each process reads its configuration from environment variables through
one of the settings classes below. Required fields must be present for the
process to start; validation errors surface as ``pydantic.ValidationError``
from the ``get_*_settings`` factories.
"""

from pathlib import Path
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _validate_port(v: int) -> int:
    if not 1 <= v <= 65535:
        raise ValueError("port must be between 1 and 65535")
    return v


def _validate_http_url(v: str, name: str) -> str:
    if not v or not v.strip():
        raise ValueError(f"{name} cannot be empty")
    if not v.startswith(("http://", "https://")):
        raise ValueError(f"{name} must start with http:// or https://")
    return v.rstrip("/")


class BotSettings(BaseSettings):
    """Settings for a bot's inbound event receiver.

    Environment variables are read without a prefix (``PORT``, ``HOST``,
    ``LOG_LEVEL``, ``METRICS_ENABLED``) to match the conventions of the
    container platform the bots run on.
    """

    model_config = SettingsConfigDict(case_sensitive=False)

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    host: str = "0.0.0.0"
    port: int = 8080

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------
    log_level: str = "INFO"
    metrics_enabled: bool = True

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        return _validate_port(v)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalise and validate the log level name."""
        level = v.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {v}")
        return level


class TokenExchangeSettings(BaseSettings):
    """Settings for the Octo STS token exchange.

    All environment variables are prefixed with ``OCTOSTS_`` except for the
    identity token itself, whose variable name is configurable through
    ``OCTOSTS_IDENTITY_ENV_VAR`` (default ``WIP_TOKEN``).

    The identity presented to the exchange comes from exactly one source,
    selected by ``OCTOSTS_IDENTITY_SOURCE``:

    - ``metadata``: an identity token minted by the GCP metadata server for
      ``identity_audience``.
    - ``env``: a pre-minted token read from the configured environment
      variable.
    """

    model_config = SettingsConfigDict(
        env_prefix="OCTOSTS_",
        case_sensitive=False,
    )

    endpoint: str = "https://octo-sts.dev"
    revoke_url: str = "https://api.github.com/installation/token"

    identity_source: Literal["metadata", "env"] = "metadata"
    identity_audience: str = "octo-sts.dev"
    identity_env_var: str = "WIP_TOKEN"

    @field_validator("endpoint")
    @classmethod
    def validate_endpoint(cls, v: str) -> str:
        """Validate that the exchange endpoint is an http(s) URL."""
        return _validate_http_url(v, "endpoint")

    @field_validator("revoke_url")
    @classmethod
    def validate_revoke_url(cls, v: str) -> str:
        """Validate that the revocation URL is an http(s) URL."""
        return _validate_http_url(v, "revoke_url")


class PublishSettings(BaseSettings):
    """Settings for publishing events to the central ingress."""

    model_config = SettingsConfigDict(case_sensitive=False)

    gcp_project_id: str
    event_ingress_uri: str

    @field_validator("gcp_project_id")
    @classmethod
    def validate_project_id(cls, v: str) -> str:
        """Validate that the project id is not empty."""
        if not v or not v.strip():
            raise ValueError("gcp_project_id cannot be empty")
        return v

    @field_validator("event_ingress_uri")
    @classmethod
    def validate_ingress_uri(cls, v: str) -> str:
        """Validate that the ingress URI is an http(s) URL."""
        return _validate_http_url(v, "event_ingress_uri")


class RecorderSettings(BaseSettings):
    """Settings for the event recorder service."""

    model_config = SettingsConfigDict(case_sensitive=False)

    host: str = "0.0.0.0"
    port: int = 8080
    log_path: str

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        return _validate_port(v)

    @field_validator("log_path")
    @classmethod
    def validate_log_path(cls, v: str) -> str:
        """Validate that the log path is an absolute path."""
        if not Path(v).is_absolute():
            raise ValueError("log_path must be an absolute path")
        return v


def get_bot_settings() -> BotSettings:
    """Create and return BotSettings from the environment."""
    return BotSettings()


def get_token_exchange_settings() -> TokenExchangeSettings:
    """Create and return TokenExchangeSettings from the environment."""
    return TokenExchangeSettings()


def get_publish_settings() -> PublishSettings:
    """Create and return PublishSettings from the environment.

    Raises:
        pydantic.ValidationError: If GCP_PROJECT_ID or EVENT_INGRESS_URI
            are missing or invalid.
    """
    return PublishSettings()


def get_recorder_settings() -> RecorderSettings:
    """Create and return RecorderSettings from the environment.

    Raises:
        pydantic.ValidationError: If LOG_PATH is missing or not absolute.
    """
    return RecorderSettings()
