from __future__ import annotations

import contextlib
import os
from pathlib import Path
from typing import Any
from uuid import uuid4

import yaml


def atomic_write_text(path: str | Path, content: str) -> None:
    """Replace ``path`` with ``content`` so readers see either the old or new file."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    temp_path = target.with_name(f".{target.name}.{uuid4().hex}.tmp")
    try:
        with temp_path.open("w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        temp_path.replace(target)
    except BaseException:
        with contextlib.suppress(Exception):
            temp_path.unlink(missing_ok=True)
        raise


class YamlFileStore:
    """YAML document persisted with atomic replacement."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self, *, default: Any = None) -> Any:
        if not self.path.exists():
            return default
        with self.path.open("r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle)
        if payload is None:
            return default
        return payload

    def write(self, payload: Any, *, sort_keys: bool = False) -> None:
        atomic_write_text(
            self.path,
            yaml.safe_dump(payload, sort_keys=sort_keys, allow_unicode=True),
        )
