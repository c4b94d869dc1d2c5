from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 8765
    debug: bool = False
    models_config_path: str = ""
    default_model: str | None = None
    credentials_path: str = "~/.augment/session.json"
    acp_access_token: str | None = None
    acp_endpoint_url: str | None = None
    agent_client_factory: str | None = None
    default_workspace_root: str = ""
    pool_size: int = 5
    request_timeout_seconds: float = 300.0
    shutdown_timeout_seconds: float = 30.0
    disconnect_poll_interval_seconds: float = 1.0
    retry_max_retries: int = 3
    retry_initial_delay_ms: int = 1000
    retry_max_delay_ms: int = 30000
    retry_backoff_multiplier: float = 2.0
    retry_jitter_factor: float = 0.1
    cors_allow_origins: str = "*"
    observability_tracing_enabled: bool = False
    observability_service_name: str = "acp-gateway"
    observability_otlp_endpoint: str | None = None
    observability_metrics_enabled: bool = True

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def has_override_credentials(self) -> bool:
        return bool(self.acp_access_token and self.acp_endpoint_url)

    @property
    def credentials_file(self) -> Path:
        return Path(self.credentials_path).expanduser()

    @property
    def workspace_root(self) -> str:
        if self.default_workspace_root.strip():
            return str(Path(self.default_workspace_root.strip()).expanduser())
        return str(Path.home())

    @property
    def cors_allow_origins_list(self) -> list[str]:
        values = _split_csv(self.cors_allow_origins)
        return values or ["*"]


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
