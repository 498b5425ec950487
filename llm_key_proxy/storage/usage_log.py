from __future__ import annotations

import hashlib
import logging
import threading
import weakref
from dataclasses import dataclass
from pathlib import Path

from llm_key_proxy.errors import StorageError
from llm_key_proxy.runtime.bounded_maps import BoundedDequeMap
from llm_key_proxy.utils.persistence import atomic_write_text
from llm_key_proxy.utils.time_utils import ONE_WEEK_MS, now_ms

logger = logging.getLogger("uvicorn.error")

CSV_HEADER = "startTime,endTime\n"
PENDING_MARKER = "null"


@dataclass(slots=True, frozen=True)
class UsageRecord:
    secret_hash: str
    start_time: int
    end_time: int | None

    def to_dict(self) -> dict[str, int | None]:
        return {"startTime": self.start_time, "endTime": self.end_time}

    def to_row(self) -> str:
        end = PENDING_MARKER if self.end_time is None else str(self.end_time)
        return f"{self.start_time},{end}\n"


def shard_key(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def _parse_row(secret_hash: str, line: str) -> UsageRecord | None:
    start_raw, sep, end_raw = line.strip().partition(",")
    if not sep:
        return None
    try:
        start = int(start_raw)
        end = None if end_raw.strip() == PENDING_MARKER else int(end_raw)
    except ValueError:
        return None
    return UsageRecord(secret_hash=secret_hash, start_time=start, end_time=end)


class _ShardLock:
    """Per-shard mutex; lives only while some caller holds a reference."""

    __slots__ = ("_lock", "__weakref__")

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def __enter__(self) -> _ShardLock:
        self._lock.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._lock.release()


class UsageLog:
    """Append-only usage intervals, one CSV shard per API secret.

    Appends are O(1) and serialised per shard, so unrelated secrets never
    contend. Queries scan the shard. ``prune`` is the only operation that
    removes rows; it rewrites the shard atomically. ``recent`` loads a
    bounded in-memory window per shard on first use; appends extend a
    window only once it is loaded.
    """

    def __init__(
        self,
        data_dir: str | Path,
        *,
        retention_ms: int = ONE_WEEK_MS,
        recent_max_keys: int = 4096,
        recent_window_size: int = 10000,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.retention_ms = max(1, int(retention_ms))
        self._recent: BoundedDequeMap[str, UsageRecord] = BoundedDequeMap(
            max_keys=recent_max_keys,
            window_size=recent_window_size,
        )
        self._cache_lock = threading.Lock()
        self._locks_guard = threading.Lock()
        self._shard_locks: weakref.WeakValueDictionary[str, _ShardLock] = (
            weakref.WeakValueDictionary()
        )

    def shard_path(self, secret: str) -> Path:
        return self._path_for(shard_key(secret))

    def record(self, secret: str, start_time: int, end_time: int | None) -> bool:
        key = shard_key(secret)
        path = self._path_for(key)
        usage = UsageRecord(
            secret_hash=key,
            start_time=int(start_time),
            end_time=None if end_time is None else int(end_time),
        )
        with self._shard_lock(key):
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                write_header = not path.exists() or path.stat().st_size == 0
                with path.open("a", encoding="utf-8") as handle:
                    if write_header:
                        handle.write(CSV_HEADER)
                    handle.write(usage.to_row())
            except OSError as exc:
                logger.warning("usage_record_failed shard=%s error=%s", key, exc)
                return False
            with self._cache_lock:
                if key in self._recent:
                    self._recent.append(key, usage)
        return True

    def query(
        self,
        secret: str,
        start_time: int | None = None,
        end_time: int | None = None,
    ) -> list[UsageRecord]:
        key = shard_key(secret)
        with self._shard_lock(key):
            records = self._read_shard(key, self._path_for(key))
        return [
            record
            for record in records
            if (start_time is None or record.start_time >= start_time)
            and (end_time is None or record.start_time <= end_time)
        ]

    def query_last_window(
        self,
        secret: str,
        window_ms: int = ONE_WEEK_MS,
        *,
        now: int | None = None,
    ) -> list[UsageRecord]:
        current = now_ms() if now is None else int(now)
        return self.query(secret, current - int(window_ms))

    def prune(
        self,
        secret: str,
        window_ms: int | None = None,
        *,
        now: int | None = None,
    ) -> int:
        key = shard_key(secret)
        path = self._path_for(key)
        current = now_ms() if now is None else int(now)
        cutoff = current - int(self.retention_ms if window_ms is None else window_ms)
        with self._shard_lock(key):
            if not path.exists():
                return 0
            records = self._read_shard(key, path)
            kept = [record for record in records if record.start_time >= cutoff]
            try:
                atomic_write_text(
                    path, CSV_HEADER + "".join(record.to_row() for record in kept)
                )
            except OSError as exc:
                logger.warning("usage_prune_failed shard=%s error=%s", key, exc)
                raise StorageError(f"Failed to prune usage shard {key}: {exc}") from exc
            with self._cache_lock:
                self._recent.replace(key, kept)
        logger.info(
            "usage_pruned shard=%s kept=%d removed=%d",
            key,
            len(kept),
            len(records) - len(kept),
        )
        return len(kept)

    def recent(self, secret: str, *, now: int | None = None) -> list[UsageRecord]:
        key = shard_key(secret)
        current = now_ms() if now is None else int(now)
        with self._shard_lock(key):
            self._ensure_recent_loaded(key, self._path_for(key))
            with self._cache_lock:
                cached = self._recent.get(key) or []
        cutoff = current - self.retention_ms
        return [record for record in cached if record.start_time >= cutoff]

    def forget(self, secret: str) -> None:
        """Drop the in-memory window for ``secret``; the shard is kept."""
        with self._cache_lock:
            self._recent.discard(shard_key(secret))

    def _path_for(self, key: str) -> Path:
        return self.data_dir / f"{key}.csv"

    def _shard_lock(self, key: str) -> _ShardLock:
        with self._locks_guard:
            lock = self._shard_locks.get(key)
            if lock is None:
                lock = _ShardLock()
                self._shard_locks[key] = lock
            return lock

    def _ensure_recent_loaded(self, key: str, path: Path) -> None:
        with self._cache_lock:
            if key in self._recent:
                return
        try:
            records = self._read_shard(key, path)
        except StorageError:
            records = []
        cutoff = now_ms() - self.retention_ms
        window = [record for record in records if record.start_time >= cutoff]
        with self._cache_lock:
            self._recent.replace(key, window)
        if window:
            logger.info("usage_window_loaded shard=%s records=%d", key, len(window))

    @staticmethod
    def _read_shard(key: str, path: Path) -> list[UsageRecord]:
        if not path.exists():
            return []
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("usage_read_failed shard=%s error=%s", key, exc)
            raise StorageError(f"Failed to read usage shard {key}: {exc}") from exc
        records: list[UsageRecord] = []
        for line in content.splitlines():
            if not line.strip() or line.startswith("startTime"):
                continue
            record = _parse_row(key, line)
            if record is not None:
                records.append(record)
        return records
