from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from llm_key_proxy.storage.usage_log import UsageLog

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True, frozen=True)
class UsageSubmission:
    secret: str
    start_time: int
    end_time: int | None


class UsageRecorder:
    """Writes usage records off the request path, in submission order."""

    def __init__(
        self,
        *,
        usage_log: UsageLog,
        enabled: bool = True,
        queue_size: int = 8192,
    ) -> None:
        self._usage_log = usage_log
        self._enabled = enabled
        self._queue: asyncio.Queue[UsageSubmission | None] = asyncio.Queue(
            maxsize=max(1, queue_size)
        )
        self._worker_task: asyncio.Task[None] | None = None
        self._dropped_records = 0
        self._failed_records = 0
        self._recorded_total = 0

    @property
    def dropped_records(self) -> int:
        return self._dropped_records

    @property
    def failed_records(self) -> int:
        return self._failed_records

    @property
    def recorded_total(self) -> int:
        return self._recorded_total

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    @property
    def queue_capacity(self) -> int:
        return self._queue.maxsize

    async def start(self) -> None:
        if not self._enabled or self._worker_task is not None:
            return
        self._worker_task = asyncio.create_task(self._run(), name="usage-recorder")

    async def close(self) -> None:
        if self._worker_task is None:
            return
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            await self._queue.put(None)
        await self._worker_task
        self._worker_task = None

    def submit(self, secret: str, start_time: int, end_time: int | None) -> bool:
        if not self._enabled or self._worker_task is None:
            return False
        try:
            self._queue.put_nowait(UsageSubmission(secret, start_time, end_time))
        except asyncio.QueueFull:
            self._dropped_records += 1
            logger.warning(
                "usage_record_dropped queue_capacity=%d dropped_total=%d",
                self._queue.maxsize,
                self._dropped_records,
            )
            return False
        return True

    async def flush(self) -> None:
        if self._worker_task is None:
            return
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            if item is None:
                self._queue.task_done()
                break
            try:
                written = await asyncio.to_thread(
                    self._usage_log.record,
                    item.secret,
                    item.start_time,
                    item.end_time,
                )
                if written:
                    self._recorded_total += 1
                else:
                    self._failed_records += 1
            except Exception as exc:
                self._failed_records += 1
                logger.warning("usage_record_failed error=%s", str(exc))
            finally:
                self._queue.task_done()
