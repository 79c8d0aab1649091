"""Configuration utilities for the inference adapter."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import List, Literal, Optional, Union

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DIRECT_URL = "http://localhost:11434"
_LOCAL_HOST_MARKERS = ("localhost", "127.0.0.1")


class BackendMode(str, Enum):
    """Which remote API the adapter speaks to."""

    DIRECT = "direct"
    GATEWAY = "gateway"


@dataclass(frozen=True)
class BackendConfig:
    """Resolved connection parameters for the active backend."""

    base_url: str
    mode: BackendMode
    api_key: Optional[str] = None

    @property
    def is_direct(self) -> bool:
        return self.mode is BackendMode.DIRECT

    @property
    def is_gateway(self) -> bool:
        return self.mode is BackendMode.GATEWAY


class Settings(BaseSettings):
    """Runtime configuration loaded from environment variables."""

    direct_url: Optional[str] = Field(
        default=None,
        alias="OLLAMA_DIRECT_URL",
        description="Explicit endpoint of the inference engine's native API.",
    )
    gateway_url: Optional[str] = Field(
        default=None,
        alias="OPEN_WEBUI_URL",
        description="Endpoint of the OpenAI-compatible gateway.",
    )
    gateway_api_key: Optional[str] = Field(
        default=None,
        alias="OPEN_WEBUI_API_KEY",
        description="Bearer credential presented to the gateway.",
    )
    verbose: bool = Field(
        default=False,
        alias="OLLAMA_BRIDGE_VERBOSE",
        description="Emit debug logs regardless of the deployment environment.",
    )
    request_timeout: float = Field(
        default=120.0,
        gt=0,
        alias="OLLAMA_BRIDGE_REQUEST_TIMEOUT",
        description="Upper bound in seconds for a single completion request.",
    )
    artifact_store: Literal["rest", "cli"] = Field(
        default="rest",
        alias="OLLAMA_BRIDGE_ARTIFACT_STORE",
        description="How custom models are created: over HTTP or via the engine CLI.",
    )
    cli_binary: str = Field(
        default="ollama",
        alias="OLLAMA_BRIDGE_CLI_BINARY",
        description="Engine command-line tool used by the CLI artifact store.",
    )
    allowed_origins: Union[List[str], str] = Field(
        default_factory=lambda: ["*"],
        alias="OLLAMA_BRIDGE_ALLOWED_ORIGINS",
        description="Comma separated list of origins authorised for CORS.",
    )
    otlp_endpoint: Optional[str] = Field(
        default=None,
        alias="OTEL_EXPORTER_OTLP_ENDPOINT",
        description="OTLP/HTTP collector base URL; spans are not exported when unset.",
    )
    tracing_disabled: bool = Field(
        default=False,
        alias="OTEL_SDK_DISABLED",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: str | List[str]) -> List[str]:
        if isinstance(value, str):
            parts = [origin.strip() for origin in value.split(",")]
            origins = [origin for origin in parts if origin]
            return origins or ["*"]
        return value

    @field_validator("direct_url", "gateway_url", "gateway_api_key", "otlp_endpoint", mode="before")
    @classmethod
    def _blank_as_none(cls, value: Optional[str]) -> Optional[str]:
        if isinstance(value, str) and not value.strip():
            return None
        return value


def is_local_url(url: str) -> bool:
    """Return whether ``url`` points at the local host."""

    return any(marker in url for marker in _LOCAL_HOST_MARKERS)


def resolve_backend_config(settings: Settings) -> BackendConfig:
    """Decide between the direct engine API and the gateway.

    An explicit direct override always wins. Without one, a configured gateway
    endpoint wins over the local engine default. No network calls are made.
    """

    if settings.gateway_url is not None and settings.direct_url is None:
        return BackendConfig(
            base_url=settings.gateway_url.rstrip("/"),
            mode=BackendMode.GATEWAY,
            api_key=settings.gateway_api_key,
        )

    direct_url = settings.direct_url or DEFAULT_DIRECT_URL
    return BackendConfig(
        base_url=direct_url.rstrip("/"),
        mode=BackendMode.DIRECT,
        api_key=None,
    )


@lru_cache
def get_settings() -> Settings:
    """Return a cached instance of application settings."""

    return Settings()


@lru_cache
def get_backend_config() -> BackendConfig:
    """Return the process-wide backend configuration."""

    return resolve_backend_config(get_settings())
