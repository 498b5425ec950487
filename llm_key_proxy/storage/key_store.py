from __future__ import annotations

import hashlib
import logging
import secrets
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import yaml

from llm_key_proxy.errors import (
    ConflictError,
    InvalidInputError,
    NotFoundError,
    StorageError,
)
from llm_key_proxy.utils.file_lock import FileLock
from llm_key_proxy.utils.persistence import YamlFileStore

logger = logging.getLogger("uvicorn.error")

SECRET_PREFIX = "sk-"


@dataclass(slots=True, frozen=True)
class KeyRecord:
    id: str
    owner_label: str
    secret: str
    created_at: str

    def to_dict(self) -> dict[str, str]:
        return {
            "id": self.id,
            "ownerLabel": self.owner_label,
            "secret": self.secret,
            "createdAt": self.created_at,
        }

    def to_document(self) -> dict[str, str]:
        return {
            "id": self.id,
            "owner_label": self.owner_label,
            "secret": self.secret,
            "created_at": self.created_at,
        }

    @classmethod
    def from_document(cls, raw: Any) -> KeyRecord | None:
        if not isinstance(raw, dict):
            return None
        values = [raw.get(name) for name in ("id", "owner_label", "secret", "created_at")]
        if not all(isinstance(value, str) and value for value in values):
            return None
        return cls(
            id=str(raw["id"]),
            owner_label=str(raw["owner_label"]),
            secret=str(raw["secret"]),
            created_at=str(raw["created_at"]),
        )


@dataclass(slots=True)
class _StoreState:
    records: list[KeyRecord] = field(default_factory=list)
    retired_secret_hashes: list[str] = field(default_factory=list)

    def to_document(self) -> dict[str, Any]:
        return {
            "keys": [record.to_document() for record in self.records],
            "retired_secret_hashes": list(self.retired_secret_hashes),
        }


class _KeyIndex:
    """Immutable lookup tables over one committed record list."""

    __slots__ = ("records", "by_id", "by_owner", "by_secret")

    def __init__(self, records: list[KeyRecord]) -> None:
        self.records = tuple(records)
        self.by_id = {record.id: record for record in self.records}
        self.by_owner = {record.owner_label: record for record in self.records}
        self.by_secret = {record.secret: record for record in self.records}


def hash_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


class KeyStore:
    """Durable owner-label -> API secret records.

    The YAML file is canonical. Mutations run under an in-process lock plus a
    cross-process ``FileLock``, re-read the file, and replace it atomically.
    Reads are answered from an in-memory index that is rebuilt on ``load()``
    and swapped in after every successful write.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        lock_max_attempts: int = 10,
        lock_retry_delay_seconds: float = 0.1,
    ) -> None:
        self.path = Path(path)
        self._file = YamlFileStore(self.path)
        self._file_lock = FileLock(
            self.path.with_name(f"{self.path.name}.lock"),
            max_attempts=lock_max_attempts,
            retry_delay_seconds=lock_retry_delay_seconds,
        )
        self._mutex = threading.Lock()
        self._index = _KeyIndex([])
        self.load()

    def load(self) -> None:
        state = self._read_state()
        self._index = _KeyIndex(state.records)

    def list(self) -> list[KeyRecord]:
        return list(self._index.records)

    def get_by_owner(self, owner_label: str) -> KeyRecord | None:
        return self._index.by_owner.get((owner_label or "").strip())

    def get_by_id(self, key_id: str) -> KeyRecord | None:
        return self._index.by_id.get(key_id)

    def validate(self, secret: str) -> KeyRecord | None:
        if not secret:
            return None
        return self._index.by_secret.get(secret)

    def create(self, owner_label: str) -> KeyRecord:
        label = (owner_label or "").strip()
        if not label:
            raise InvalidInputError("Owner label is required")

        with self._mutex, self._file_lock.hold():
            state = self._read_state()
            if any(record.owner_label == label for record in state.records):
                raise ConflictError("API key already exists for this owner")
            record = KeyRecord(
                id=self._new_id(state),
                owner_label=label,
                secret=self._new_secret(state),
                created_at=datetime.now(UTC).isoformat(),
            )
            state.records.append(record)
            self._write_state(state)
            self._index = _KeyIndex(state.records)

        logger.info("key_created id=%s owner=%s", record.id, record.owner_label)
        return record

    def delete(self, key_id: str) -> KeyRecord:
        with self._mutex, self._file_lock.hold():
            state = self._read_state()
            removed = next(
                (record for record in state.records if record.id == key_id), None
            )
            if removed is None:
                raise NotFoundError("API key not found")
            state.records = [record for record in state.records if record.id != key_id]
            state.retired_secret_hashes.append(hash_secret(removed.secret))
            self._write_state(state)
            self._index = _KeyIndex(state.records)

        logger.info("key_deleted id=%s owner=%s", removed.id, removed.owner_label)
        return removed

    def _read_state(self) -> _StoreState:
        try:
            payload = self._file.load(default={})
        except (OSError, yaml.YAMLError) as exc:
            logger.error("key_store_read_failed path=%s error=%s", self.path, exc)
            raise StorageError(f"Failed to read key store: {exc}") from exc
        if not isinstance(payload, dict):
            raise StorageError(f"Expected a mapping in key store '{self.path}'.")

        records: list[KeyRecord] = []
        for raw in payload.get("keys") or []:
            record = KeyRecord.from_document(raw)
            if record is None:
                logger.warning("key_store_record_skipped path=%s", self.path)
                continue
            records.append(record)
        retired = [
            str(item)
            for item in payload.get("retired_secret_hashes") or []
            if isinstance(item, str)
        ]
        return _StoreState(records=records, retired_secret_hashes=retired)

    def _write_state(self, state: _StoreState) -> None:
        try:
            self._file.write(state.to_document())
        except (OSError, yaml.YAMLError) as exc:
            logger.error("key_store_write_failed path=%s error=%s", self.path, exc)
            raise StorageError(f"Failed to write key store: {exc}") from exc

    @staticmethod
    def _new_id(state: _StoreState) -> str:
        taken = {record.id for record in state.records}
        while True:
            candidate = secrets.token_hex(32)
            if candidate not in taken:
                return candidate

    @staticmethod
    def _new_secret(state: _StoreState) -> str:
        used = {hash_secret(record.secret) for record in state.records}
        used.update(state.retired_secret_hashes)
        while True:
            candidate = f"{SECRET_PREFIX}{secrets.token_hex(32)}"
            if hash_secret(candidate) not in used:
                return candidate
