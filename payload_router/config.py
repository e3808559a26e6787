from pathlib import Path

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

DEFAULT_FIELD_NAME = "endpoint_id"
DEFAULT_ACTIVATION_PATH = "/webhooks"
DEFAULT_REDIRECT_STATUS = 302


class ConfigurationError(ValueError):
    """Raised when routing configuration cannot be turned into a handler."""


def validate_destination(url: str) -> str:
    """
    Check that a destination URL parses and can be forwarded to.
    :return: the URL, unchanged
    """
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, ValueError) as exc:
        raise ValueError(f"{url!r} is not a valid URL: {exc}") from exc

    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise ValueError(f"{url!r} is not an absolute http(s) URL")
    return url


class RouteRule(BaseModel):
    prefix: str
    upstream: str


class RoutingConfig(BaseModel):
    """
    Activation and routing table for the payload router.

    Accepts both the Python field names and the camelCase keys used in
    JSON config files. Empty values fall back to the defaults.
    Destinations must be absolute http(s) URLs; relative URLs are rejected.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    field_name: str = Field(DEFAULT_FIELD_NAME, alias="fieldName")
    mappings: dict[str, str] = Field(default_factory=dict, alias="redirectMappings")
    default_destination: str = Field("", alias="defaultRedirect")
    activation_path: str = Field(DEFAULT_ACTIVATION_PATH, alias="webhookPath")
    # Accepted for config compatibility, forwarding never issues redirects.
    redirect_status: int = Field(DEFAULT_REDIRECT_STATUS, alias="statusCode")

    @field_validator("field_name", mode="before")
    @classmethod
    def _default_field_name(cls, value):
        return value or DEFAULT_FIELD_NAME

    @field_validator("activation_path", mode="before")
    @classmethod
    def _default_activation_path(cls, value):
        return value or DEFAULT_ACTIVATION_PATH

    @field_validator("redirect_status", mode="before")
    @classmethod
    def _default_redirect_status(cls, value):
        return value or DEFAULT_REDIRECT_STATUS

    @field_validator("mappings", mode="before")
    @classmethod
    def _default_mappings(cls, value):
        return {} if value is None else value

    @field_validator("mappings")
    @classmethod
    def _validate_mappings(cls, value: dict[str, str]) -> dict[str, str]:
        for key, url in value.items():
            try:
                validate_destination(url)
            except ValueError as exc:
                raise ValueError(f"invalid redirect URL for '{key}': {exc}") from exc
        return value

    @field_validator("default_destination", mode="before")
    @classmethod
    def _validate_default(cls, value):
        if not value:
            return ""
        if not isinstance(value, str):
            return value
        try:
            return validate_destination(value)
        except ValueError as exc:
            raise ValueError(f"invalid default redirect URL: {exc}") from exc


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    routes: list[RouteRule] = Field(default_factory=list)
    payload_router: RoutingConfig = Field(default_factory=RoutingConfig, alias="payloadRouter")
    upstream_timeout: float | None = Field(20.0, alias="upstreamTimeout")


def load_routing_config(data) -> RoutingConfig:
    """Build a RoutingConfig from a plain mapping, or raise ConfigurationError."""
    try:
        return RoutingConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"invalid payload router configuration: {exc}") from exc


def load_settings(path: str | Path | None = None) -> Settings:
    """
    Load service settings from a JSON file.
    :return: defaults when no path is given
    """
    if not path:
        return Settings()

    try:
        raw = Path(path).read_text()
    except OSError as exc:
        raise ConfigurationError(f"cannot read config file {path}: {exc}") from exc

    try:
        return Settings.model_validate_json(raw)
    except ValidationError as exc:
        raise ConfigurationError(f"invalid config file {path}: {exc}") from exc
