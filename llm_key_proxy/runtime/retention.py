from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

from llm_key_proxy.errors import StorageError
from llm_key_proxy.storage.key_store import KeyStore
from llm_key_proxy.storage.usage_log import UsageLog

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class RetentionPrunerStatus:
    enabled: bool
    interval_seconds: float
    retention_ms: int
    last_run_epoch: float | None = None
    last_pruned_keys: int = 0
    last_failed_keys: list[str] = field(default_factory=list)
    last_error: str | None = None


class RetentionPruner:
    """Periodically trims every live key's usage shard to the retention window.

    A shard that fails to prune is left as is and retried on the next cycle.
    """

    def __init__(
        self,
        *,
        key_store: KeyStore,
        usage_log: UsageLog,
        enabled: bool = True,
        interval_seconds: float = 3600.0,
        retention_ms: int | None = None,
    ) -> None:
        self._key_store = key_store
        self._usage_log = usage_log
        self._enabled = enabled
        self._interval_seconds = max(1.0, float(interval_seconds))
        self._retention_ms = int(retention_ms or usage_log.retention_ms)
        self._task: asyncio.Task[None] | None = None
        self._status = RetentionPrunerStatus(
            enabled=enabled,
            interval_seconds=self._interval_seconds,
            retention_ms=self._retention_ms,
        )

    @property
    def status(self) -> RetentionPrunerStatus:
        return self._status

    async def start(self) -> None:
        if not self._enabled or self._task is not None:
            return
        self._task = asyncio.create_task(self._run(), name="usage-retention-pruner")

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

    async def run_once(self) -> int:
        pruned = 0
        failed: list[str] = []
        for record in self._key_store.list():
            try:
                await asyncio.to_thread(
                    self._usage_log.prune, record.secret, self._retention_ms
                )
            except StorageError as exc:
                failed.append(record.id)
                logger.warning(
                    "usage_retention_prune_failed key_id=%s error=%s", record.id, exc
                )
                continue
            pruned += 1
        self._status.last_run_epoch = time.time()
        self._status.last_pruned_keys = pruned
        self._status.last_failed_keys = failed
        self._status.last_error = None
        return pruned

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval_seconds)
            try:
                await self.run_once()
            except Exception as exc:
                self._status.last_run_epoch = time.time()
                self._status.last_error = str(exc)
                logger.warning("usage_retention_cycle_failed error=%s", str(exc))
