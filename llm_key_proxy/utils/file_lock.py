from __future__ import annotations

import contextlib
import logging
import os
import time
from collections.abc import Iterator
from pathlib import Path

from llm_key_proxy.errors import LockTimeoutError

logger = logging.getLogger("uvicorn.error")


class FileLock:
    """Cross-process mutex built on exclusive creation of a lock file.

    The holder writes its pid into the lock file and removes it on release.
    Acquisition makes a bounded number of attempts with a fixed delay and
    raises ``LockTimeoutError`` once they are exhausted.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        max_attempts: int = 10,
        retry_delay_seconds: float = 0.1,
    ) -> None:
        self.path = Path(path)
        self.max_attempts = max(1, int(max_attempts))
        self.retry_delay_seconds = max(0.0, float(retry_delay_seconds))

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for attempt in range(1, self.max_attempts + 1):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if attempt == self.max_attempts:
                    break
                time.sleep(self.retry_delay_seconds)
                continue
            try:
                os.write(fd, str(os.getpid()).encode("ascii"))
            except BaseException:
                self.path.unlink(missing_ok=True)
                raise
            finally:
                os.close(fd)
            return
        raise LockTimeoutError(
            f"Failed to acquire lock {self.path} after {self.max_attempts} attempts"
        )

    def release(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("file_lock_release_failed path=%s error=%s", self.path, exc)

    @contextlib.contextmanager
    def hold(self) -> Iterator[None]:
        self.acquire()
        try:
            yield
        finally:
            self.release()
