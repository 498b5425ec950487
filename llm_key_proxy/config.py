from __future__ import annotations

from pathlib import Path
from urllib.parse import urlsplit

from pydantic import BaseModel, field_validator

from llm_key_proxy.settings import Settings
from llm_key_proxy.utils.persistence import YamlFileStore

DEFAULT_PATH_PREFIX = "/v1"


class BackendConfig(BaseModel):
    name: str | None = None
    url: str
    api_key: str | None = None
    enabled: bool = True

    @field_validator("url")
    @classmethod
    def _validate_url(cls, value: str) -> str:
        normalized = value.strip()
        parts = urlsplit(normalized)
        if parts.scheme not in {"http", "https"} or not parts.netloc:
            raise ValueError(f"Backend url must be an absolute http(s) URL: {value!r}")
        return normalized

    @field_validator("api_key")
    @classmethod
    def _normalize_api_key(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @property
    def base_url(self) -> str:
        parts = urlsplit(self.url)
        return f"{parts.scheme}://{parts.netloc}"

    @property
    def path_prefix(self) -> str:
        path = urlsplit(self.url).path.rstrip("/")
        return path or DEFAULT_PATH_PREFIX

    @property
    def label(self) -> str:
        return self.name or urlsplit(self.url).netloc


class BackendsConfig(BaseModel):
    backends: list[BackendConfig] = []

    def enabled_backends(self) -> list[BackendConfig]:
        return [backend for backend in self.backends if backend.enabled]


def load_backends_config(path: str | Path) -> BackendsConfig:
    store = YamlFileStore(path)
    if not store.exists():
        raise FileNotFoundError(f"Backends config file not found: {store.path}")
    document = store.load(default={})
    if not isinstance(document, dict):
        raise ValueError(f"Backends config '{store.path}' must be a mapping.")
    return BackendsConfig.model_validate(document)


def backends_from_settings(settings: Settings) -> BackendsConfig:
    if settings.backends_config_path:
        return load_backends_config(settings.backends_config_path)

    api_keys = settings.target_api_keys_list
    backends = [
        BackendConfig(
            url=url,
            api_key=api_keys[index] if index < len(api_keys) else None,
        )
        for index, url in enumerate(settings.target_urls_list)
    ]
    return BackendsConfig(backends=backends)
