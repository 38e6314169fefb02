from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar

from plansync.models import ProgressIndex

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ProgressStoreError(RuntimeError):
    """Raised when the progress index cannot be read or written."""


class LockTimeout(ProgressStoreError):
    """Raised when the index lock could not be acquired within the retry budget."""


class SaveResult(str, Enum):
    OK = "ok"
    CONFLICT = "conflict"


class ProgressStore:
    """Durable, lock-guarded home of the progress index.

    Every write replaces the whole document. Callers that mutate the index
    must go through :meth:`with_lock` so the read-modify-write cycle is
    serialized against other processes sharing the same file.
    """

    def __init__(
        self,
        index_path: Path,
        *,
        lock_retries: int = 50,
        lock_backoff_seconds: float = 0.1,
        issues_count_as_done: bool = True,
    ) -> None:
        self.index_path = index_path.resolve()
        self.lock_path = self.index_path.with_name(self.index_path.name + ".lock")
        self.lock_retries = max(0, int(lock_retries))
        self.lock_backoff_seconds = max(0.0, float(lock_backoff_seconds))
        self.issues_count_as_done = issues_count_as_done
        self.index_path.parent.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    @contextmanager
    def _lock(self) -> Iterator[None]:
        attempts = 0
        while True:
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, f"{os.getpid()} {self._utcnow_iso()}".encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if attempts >= self.lock_retries:
                    logger.error(
                        "Gave up on index lock %s after %d retries", self.lock_path, attempts
                    )
                    raise LockTimeout(
                        f"Timed out waiting for progress lock {self.lock_path} "
                        f"after {attempts} retries."
                    ) from exc
                attempts += 1
                logger.debug("Index lock busy, retry %d/%d", attempts, self.lock_retries)
                time.sleep(self.lock_backoff_seconds)

        try:
            yield
        finally:
            try:
                self.lock_path.unlink()
            except FileNotFoundError:
                pass

    def lock_holder(self) -> str | None:
        try:
            return self.lock_path.read_text(encoding="utf-8").strip() or "unknown"
        except FileNotFoundError:
            return None

    def break_lock(self) -> bool:
        """Remove a sentinel left behind by a crashed holder."""
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            return False
        logger.warning("Removed progress lock %s", self.lock_path)
        return True

    def _read_payload(self) -> dict[str, Any] | None:
        if not self.index_path.exists():
            return None
        raw = self.index_path.read_text(encoding="utf-8")
        if not raw.strip():
            return None
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ProgressStoreError(
                f"Progress index {self.index_path} is not valid JSON."
            ) from exc
        if not isinstance(payload, dict):
            raise ProgressStoreError(f"Progress index {self.index_path} must be a JSON object.")
        return payload

    def _write(self, index: ProgressIndex, version: int) -> None:
        index.recompute(issues_count_as_done=self.issues_count_as_done)
        index.version = version
        index.touch()
        serialized = json.dumps(index.to_dict(), ensure_ascii=False, indent=2)
        fd, temp_name = tempfile.mkstemp(
            prefix=f".{self.index_path.name}-", dir=self.index_path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized + "\n")
            os.replace(temp_name, self.index_path)
        except BaseException:
            try:
                os.unlink(temp_name)
            except OSError:
                pass
            raise

    def load(self) -> ProgressIndex:
        payload = self._read_payload()
        if payload is None:
            return ProgressIndex()
        try:
            index = ProgressIndex.from_dict(payload)
        except (TypeError, ValueError) as exc:
            raise ProgressStoreError(
                f"Progress index {self.index_path} is malformed: {exc}"
            ) from exc
        index.recompute(issues_count_as_done=self.issues_count_as_done)
        return index

    def current_version(self) -> int:
        payload = self._read_payload()
        if payload is None:
            return 0
        try:
            return int(payload.get("version", 0))
        except (TypeError, ValueError):
            return 0

    def try_save(self, index: ProgressIndex, expected_version: int) -> SaveResult:
        with self._lock():
            current = self.current_version()
            if current != expected_version:
                logger.info(
                    "Rejected stale index write (expected version %d, found %d)",
                    expected_version,
                    current,
                )
                return SaveResult.CONFLICT
            self._write(index, current + 1)
            return SaveResult.OK

    def with_lock(self, fn: Callable[[ProgressIndex], T]) -> T:
        """Run ``fn`` against a freshly loaded index and persist it before unlocking."""
        with self._lock():
            index = self.load()
            result = fn(index)
            self._write(index, index.version + 1)
            return result
