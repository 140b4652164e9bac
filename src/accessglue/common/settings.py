"""Application configuration for the access glue service."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


def read_secret_value(value):
    """Return the content of ``value`` when it is an absolute path to an existing file.

    Secrets are commonly mounted as files (Docker/Kubernetes secrets); the
    environment variable then carries the path instead of the secret.
    """

    if isinstance(value, SecretStr):
        value = value.get_secret_value()
    if isinstance(value, str) and value.startswith("/"):
        path = Path(value)
        if path.is_file():
            return path.read_text(encoding="utf-8").strip()
    return value


def _split_csv(value):
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class GlueSettings(BaseSettings):
    """Runtime settings for the provisioning API and maintenance loop."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    api_token: SecretStr = env_field(..., "ACCESSGLUE_API_TOKEN")
    api_base_url: str = env_field("https://api.border0.com/api/v1", "ACCESSGLUE_API_BASE_URL")
    connector_ids: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        validation_alias="ACCESSGLUE_CONNECTOR_IDS",
    )
    ssh_username: str = env_field("coder", "ACCESSGLUE_SSH_USERNAME")
    global_policy_ids: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        validation_alias="ACCESSGLUE_GLOBAL_POLICY_IDS",
    )
    deployment_mode: str = env_field("docker", "ACCESSGLUE_DEPLOYMENT_MODE")
    label_prefix: str = env_field("border0.io", "ACCESSGLUE_LABEL_PREFIX")
    auto_provision: bool = env_field(False, "ACCESSGLUE_AUTO_PROVISION")
    maintenance_enabled: bool = env_field(True, "ACCESSGLUE_MAINTENANCE_ENABLED")
    http_timeout_seconds: float = env_field(30.0, "ACCESSGLUE_HTTP_TIMEOUT")
    host: str = env_field("0.0.0.0", "ACCESSGLUE_HOST")
    port: int = env_field(8000, "ACCESSGLUE_PORT")
    log_level: str = env_field("INFO", "ACCESSGLUE_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "ACCESSGLUE_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "ACCESSGLUE_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "ACCESSGLUE_OTEL_SAMPLER_RATIO")

    @field_validator("api_token", mode="before")
    @classmethod
    def _load_token_file(cls, value):
        return read_secret_value(value)

    @field_validator("connector_ids", mode="before")
    @classmethod
    def _split_connector_ids(cls, value):
        return _split_csv(read_secret_value(value))

    @field_validator("global_policy_ids", mode="before")
    @classmethod
    def _split_global_policy_ids(cls, value):
        return _split_csv(value)

    @field_validator("deployment_mode")
    @classmethod
    def _normalize_mode(cls, value: str) -> str:
        mode = value.strip().lower()
        if mode not in {"docker", "k8s"}:
            raise ValueError("deployment mode must be 'docker' or 'k8s'")
        return mode
