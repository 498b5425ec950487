from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 8080
    target_urls: str = ""
    target_api_keys: str = ""
    backends_config_path: str | None = None
    backend_timeout_seconds: float = 120.0
    backend_connect_timeout_seconds: float = 5.0
    backend_read_timeout_seconds: float = 300.0
    backend_write_timeout_seconds: float = 30.0
    backend_pool_timeout_seconds: float = 5.0
    model_refresh_interval_seconds: float = 60.0
    model_refresh_timeout_seconds: float = 10.0
    api_version_prefix: str = "/v1"
    keys_store_path: str = "data/apikeys.yaml"
    key_lock_max_attempts: int = 10
    key_lock_retry_delay_seconds: float = 0.1
    usage_data_dir: str = "data/analytics"
    usage_retention_days: int = 7
    usage_prune_interval_seconds: float = 3600.0
    usage_recent_max_keys: int = 4096
    usage_recent_window_size: int = 10000
    usage_queue_size: int = 8192
    proxy_auth_required: bool = True
    session_auth_required: bool = True
    jwt_secret: str | None = None
    jwt_algorithms: str = "HS256"
    jwt_verify_expiration: bool = False

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def target_urls_list(self) -> list[str]:
        return _split_csv(self.target_urls)

    @property
    def target_api_keys_list(self) -> list[str | None]:
        # Positional with target_urls, so empty items are kept as "no key".
        if not self.target_api_keys:
            return []
        return [item.strip() or None for item in self.target_api_keys.split(",")]

    @property
    def jwt_algorithms_list(self) -> list[str]:
        values = _split_csv(self.jwt_algorithms)
        return values or ["HS256"]

    @property
    def usage_retention_ms(self) -> int:
        return max(1, int(self.usage_retention_days)) * 24 * 60 * 60 * 1000


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
