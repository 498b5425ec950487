from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from llm_key_proxy.config import BackendConfig

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True, frozen=True)
class BackendTarget:
    name: str
    base_url: str
    path_prefix: str
    api_key: str | None = None

    @classmethod
    def from_config(cls, config: BackendConfig) -> BackendTarget:
        return cls(
            name=config.label,
            base_url=config.base_url,
            path_prefix=config.path_prefix,
            api_key=config.api_key,
        )

    @property
    def models_url(self) -> str:
        return f"{self.base_url}{self.path_prefix}/models"


@dataclass(slots=True, frozen=True)
class ModelEntry:
    model_id: str
    target: BackendTarget
    model: dict[str, Any]


@dataclass(slots=True)
class ModelRegistryStatus:
    enabled: bool
    interval_seconds: float
    backends: int
    last_refresh_epoch: float | None = None
    last_model_count: int = 0
    last_errors: dict[str, str] = field(default_factory=dict)


def model_key(model_id: str) -> str:
    return hashlib.md5(model_id.encode("utf-8")).hexdigest()


class ModelRegistry:
    """Model id -> backend mapping rebuilt from every backend on each cycle.

    Each refresh builds a complete new mapping and publishes it with a single
    assignment, so readers see either the previous or the new snapshot. A
    backend that fails during a cycle contributes no entries to it.
    """

    def __init__(
        self,
        *,
        backends: list[BackendTarget],
        client: httpx.AsyncClient,
        enabled: bool = True,
        interval_seconds: float = 60.0,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._backends = list(backends)
        self._client = client
        self._enabled = enabled
        self._interval_seconds = max(1.0, float(interval_seconds))
        self._timeout_seconds = max(0.1, float(timeout_seconds))
        self._entries: dict[str, ModelEntry] = {}
        self._task: asyncio.Task[None] | None = None
        self._status = ModelRegistryStatus(
            enabled=enabled,
            interval_seconds=self._interval_seconds,
            backends=len(self._backends),
        )

    @property
    def backends(self) -> list[BackendTarget]:
        return list(self._backends)

    @property
    def status(self) -> ModelRegistryStatus:
        return self._status

    def resolve(self, model_id: Any) -> BackendTarget | None:
        if not self._backends:
            return None
        entry = self._entries.get(model_key(str(model_id)))
        if entry is not None:
            return entry.target
        return self._backends[0]

    def snapshot(self) -> list[ModelEntry]:
        return list(self._entries.values())

    async def refresh(self) -> int:
        results = await asyncio.gather(
            *(self._fetch_models(target) for target in self._backends),
            return_exceptions=True,
        )
        entries: dict[str, ModelEntry] = {}
        errors: dict[str, str] = {}
        for target, result in zip(self._backends, results, strict=True):
            if isinstance(result, BaseException):
                message = str(result).strip() or result.__class__.__name__
                errors[target.name] = message
                logger.warning(
                    "model_refresh_backend_failed backend=%s url=%s error=%s",
                    target.name,
                    target.models_url,
                    message,
                )
                continue
            for model in result:
                model_id = str(model["id"])
                entries[model_key(model_id)] = ModelEntry(
                    model_id=model_id, target=target, model=model
                )
            logger.info(
                "model_refresh_backend_ok backend=%s models=[%s]",
                target.name,
                ", ".join(str(model["id"]) for model in result),
            )

        self._entries = entries
        self._status.last_refresh_epoch = time.time()
        self._status.last_model_count = len(entries)
        self._status.last_errors = errors
        return len(entries)

    async def start(self) -> None:
        if not self._enabled or self._task is not None:
            return
        self._task = asyncio.create_task(self._run(), name="model-registry-refresh")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval_seconds)
            try:
                await self.refresh()
            except Exception as exc:
                logger.warning("model_refresh_failed error=%s", str(exc))

    async def _fetch_models(self, target: BackendTarget) -> list[dict[str, Any]]:
        headers = {"Accept": "application/json"}
        if target.api_key:
            headers["Authorization"] = f"Bearer {target.api_key}"
        response = await self._client.get(
            target.models_url,
            headers=headers,
            timeout=self._timeout_seconds,
        )
        if response.status_code >= 400:
            raise RuntimeError(f"models endpoint returned {response.status_code}")

        body = response.json()
        if not isinstance(body, dict) or not isinstance(body.get("data"), list):
            raise RuntimeError("Invalid models response: missing 'data' list.")

        models: list[dict[str, Any]] = []
        for item in body["data"]:
            if isinstance(item, dict) and isinstance(item.get("id"), str):
                models.append(item)
        return models
