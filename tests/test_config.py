from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from llm_key_proxy.config import BackendConfig, backends_from_settings, load_backends_config
from llm_key_proxy.runtime.model_registry import BackendTarget
from llm_key_proxy.settings import Settings
from tests.client_test_utils import save_yaml_file


def test_backend_url_splits_into_base_and_prefix() -> None:
    backend = BackendConfig(url="http://localhost:8000/openai/v1/")
    assert backend.base_url == "http://localhost:8000"
    assert backend.path_prefix == "/openai/v1"
    assert backend.label == "localhost:8000"


def test_backend_url_without_path_defaults_to_v1() -> None:
    target = BackendTarget.from_config(BackendConfig(url="https://llm.example", name="main"))
    assert target == BackendTarget(
        name="main", base_url="https://llm.example", path_prefix="/v1", api_key=None
    )
    assert target.models_url == "https://llm.example/v1/models"


def test_backend_url_must_be_absolute_http() -> None:
    with pytest.raises(ValidationError):
        BackendConfig(url="localhost:8000/v1")
    with pytest.raises(ValidationError):
        BackendConfig(url="ftp://files.example/v1")


def test_backends_from_settings_pairs_keys_positionally() -> None:
    settings = Settings(
        target_urls="http://a.test/v1, http://b.test/v1,http://c.test/v1",
        target_api_keys=" ,key-b",
    )
    backends = backends_from_settings(settings).enabled_backends()

    assert [backend.url for backend in backends] == [
        "http://a.test/v1",
        "http://b.test/v1",
        "http://c.test/v1",
    ]
    assert [backend.api_key for backend in backends] == [None, "key-b", None]


def test_backends_config_file_takes_precedence(tmp_path: Path) -> None:
    path = tmp_path / "backends.yaml"
    save_yaml_file(
        path,
        {
            "backends": [
                {"name": "local", "url": "http://127.0.0.1:11434/v1"},
                {"name": "off", "url": "http://off.test/v1", "enabled": False},
                {"name": "hosted", "url": "https://api.example/v1", "api_key": "  "},
            ]
        },
    )
    settings = Settings(target_urls="http://ignored.test/v1", backends_config_path=str(path))

    backends = backends_from_settings(settings).enabled_backends()
    assert [backend.label for backend in backends] == ["local", "hosted"]
    assert backends[1].api_key is None


def test_missing_backends_config_file_is_reported(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_backends_config(tmp_path / "missing.yaml")


def test_settings_lists_and_retention() -> None:
    settings = Settings(jwt_algorithms=" ", usage_retention_days=2)
    assert settings.jwt_algorithms_list == ["HS256"]
    assert settings.target_api_keys_list == []
    assert settings.usage_retention_ms == 2 * 24 * 60 * 60 * 1000
