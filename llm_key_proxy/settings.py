from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com"
DEFAULT_OPENAI_BASE_URL = "https://api.openai.com"


class Settings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 8000
    providers_config_path: str = "providers.yaml"
    gemini_api_keys: str = ""
    openai_api_keys: str = ""
    base_url: str | None = None
    openai_base_url: str | None = None
    upstream_timeout_seconds: float = 120.0
    upstream_connect_timeout_seconds: float = 5.0
    upstream_read_timeout_seconds: float | None = None
    upstream_write_timeout_seconds: float | None = None
    upstream_pool_timeout_seconds: float = 5.0
    key_pool_reset_seconds: float = 60.0
    admin_api_keys: str = ""
    request_log_enabled: bool = True
    request_log_path: str = "logs/requests.jsonl"
    request_log_buffer_size: int = 200

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def gemini_api_keys_list(self) -> list[str]:
        return _split_csv(self.gemini_api_keys)

    @property
    def openai_api_keys_list(self) -> list[str]:
        return _split_csv(self.openai_api_keys)

    @property
    def admin_api_keys_list(self) -> list[str]:
        return _split_csv(self.admin_api_keys)

    @property
    def admin_enabled(self) -> bool:
        return bool(self.admin_api_keys_list)

    @property
    def gemini_base_url(self) -> str:
        return self.base_url or DEFAULT_GEMINI_BASE_URL

    @property
    def legacy_openai_base_url(self) -> str:
        return self.base_url or self.openai_base_url or DEFAULT_OPENAI_BASE_URL


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
