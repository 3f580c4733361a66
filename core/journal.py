"""Rotating JSONL journal for one topic.

Lines are accepted through a bounded queue and written by a single worker task
in submission order. The worker owns the only open file handle, decides when
to roll over (file size or idle gap) and names every file after the local time
it was opened at, so the retention sweeper can date it later.
"""

from __future__ import annotations

import asyncio
import os
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, BinaryIO

import structlog

from core.backoff import Backoff, BackoffConfig
from core.contracts import RotationPolicy

JOURNAL_SUFFIX = ".jsonl"
FILENAME_TIME_FORMAT = "%Y-%m-%d_%H-%M-%S"
ROTATION_INDEX_MODULO = 100
DEFAULT_QUEUE_CAPACITY = 100

_TIMESTAMP_WIDTH = len("YYYY-MM-DD_HH-MM-SS")
_PATH_SEPARATORS = ("/", "\\")


class JournalError(RuntimeError):
    """Base error for the rotating journal."""


class JournalClosedError(JournalError):
    """Raised when submitting to a journal that is closed or has failed."""


class JournalWriteError(JournalError):
    """Raised when a line cannot be committed after repeated attempts."""


def sanitize_topic(topic: str) -> str:
    """Make a topic name safe to embed in a filename."""
    for separator in _PATH_SEPARATORS:
        topic = topic.replace(separator, "_")
    return topic


def journal_filename(created_at: datetime, topic: str, rotation_index: int) -> str:
    """Build ``YYYY-MM-DD_HH-MM-SS-<topic>-NN.jsonl``."""
    stamp = created_at.strftime(FILENAME_TIME_FORMAT)
    return f"{stamp}-{sanitize_topic(topic)}-{rotation_index:02d}{JOURNAL_SUFFIX}"


def parse_journal_timestamp(filename: str) -> datetime | None:
    """Recover the creation time embedded in a journal filename.

    Returns None for names that do not start with a valid timestamp.
    """
    if not filename.endswith(JOURNAL_SUFFIX):
        return None
    stamp = filename[:_TIMESTAMP_WIDTH]
    if filename[_TIMESTAMP_WIDTH : _TIMESTAMP_WIDTH + 1] != "-":
        return None
    try:
        return datetime.strptime(stamp, FILENAME_TIME_FORMAT)
    except ValueError:
        return None


@dataclass
class _OpenJournal:
    path: Path
    handle: BinaryIO
    bytes_written: int
    rotation_index: int
    last_write_at: float


class RotatingJournal:
    """Size- and idle-rotated JSONL writer fed by a bounded queue."""

    def __init__(
        self,
        topic: str,
        base_dir: str | Path,
        policy: RotationPolicy,
        *,
        queue_capacity: int = DEFAULT_QUEUE_CAPACITY,
        retry: BackoffConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
        monotonic: Callable[[], float] = time.monotonic,
        sleep_fn: Callable[[float], Awaitable[None]] | None = None,
        rand_fn: Callable[[], float] = random.random,
        logger: Any | None = None,
    ) -> None:
        self.topic = topic
        self.base_dir = Path(base_dir)
        self.policy = policy
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=queue_capacity)
        self._backoff = Backoff(config=retry or BackoffConfig(max_attempts=5), rand_fn=rand_fn)
        self._clock = clock
        self._monotonic = monotonic
        self._sleep = sleep_fn or asyncio.sleep
        self._log = logger or structlog.get_logger("core.journal").bind(topic=topic)

        self._current: _OpenJournal | None = None
        self._rotation_index = 0
        self._worker: asyncio.Task[None] | None = None
        self._failure: BaseException | None = None
        self._closed = False

    @property
    def rotation_index(self) -> int:
        return self._rotation_index

    @property
    def current_path(self) -> Path | None:
        return self._current.path if self._current is not None else None

    def start(self) -> asyncio.Task[None]:
        if self._closed:
            raise JournalClosedError(f"journal for '{self.topic}' is closed")
        if self._worker is None:
            self._worker = asyncio.create_task(
                self._run_worker(), name=f"journal:{self.topic}"
            )
        return self._worker

    async def submit(self, line: str) -> None:
        """Queue ``line`` for writing; waits while the queue is full."""
        if self._failure is not None:
            raise JournalClosedError(f"journal for '{self.topic}' failed") from self._failure
        if self._closed:
            raise JournalClosedError(f"journal for '{self.topic}' is closed")
        await self._queue.put(line)

    async def drain(self) -> None:
        """Wait until every accepted line has been committed."""
        if self._worker is None:
            raise JournalClosedError(f"journal for '{self.topic}' was never started")
        join = asyncio.ensure_future(self._queue.join())
        try:
            done, _ = await asyncio.wait(
                {join, self._worker}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if not join.done():
                join.cancel()
        if self._failure is not None:
            raise JournalClosedError(f"journal for '{self.topic}' failed") from self._failure
        if join not in done:
            raise JournalClosedError(f"journal for '{self.topic}' stopped with lines pending")

    async def close(self) -> None:
        self._closed = True
        if self._worker is not None:
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
        self._close_current(reason="shutdown")

    async def _run_worker(self) -> None:
        while True:
            line = await self._queue.get()
            try:
                await self._commit(line)
            except JournalWriteError as exc:
                self._failure = exc
                self._log.error("journal.fatal", error=str(exc), pending=self._queue.qsize())
                raise
            finally:
                self._queue.task_done()

    async def _commit(self, line: str) -> None:
        while True:
            try:
                self.write_line(line)
            except OSError as exc:
                self._drop_current()
                delay = self._backoff.next_delay()
                attempts = self._backoff.attempts
                if self._backoff.exhausted:
                    msg = (
                        f"giving up on journal for '{self.topic}' in {self.base_dir} "
                        f"after {attempts} attempts: {exc}"
                    )
                    raise JournalWriteError(msg) from exc
                self._log.warning(
                    "journal.write_retry",
                    attempt=attempts,
                    delay=round(delay, 3),
                    error=str(exc),
                )
                await self._sleep(delay)
            else:
                self._backoff.reset()
                return

    def write_line(self, line: str) -> None:
        """Write one line, rotating first when the policy requires it."""
        self.base_dir.mkdir(parents=True, exist_ok=True)

        now = self._monotonic()
        if self._current is not None:
            idle_s = now - self._current.last_write_at
            if idle_s > self.policy.idle_rotation_timeout.total_seconds():
                self._close_current(reason="idle")
                self._rotation_index = 0
                self._log.info("journal.idle_rotation", idle_s=round(idle_s, 3))

        if self._current is None:
            self._current = self._open(self._rotation_index)

        data = line.encode("utf-8") + b"\n"
        line_size = len(data)
        current = self._current
        if (
            current.bytes_written > 0
            and current.bytes_written + line_size >= self.policy.max_file_size_bytes
        ):
            self._close_current(reason="size")
            self._rotation_index = (self._rotation_index + 1) % ROTATION_INDEX_MODULO
            current = self._current = self._open(self._rotation_index)
            current.bytes_written = 0

        offset = current.handle.tell()
        try:
            current.handle.write(data)
        except OSError:
            self._drop_current()
            self._rewind(current.path, offset)
            raise
        try:
            current.handle.flush()
        except OSError as exc:
            self._log.error("journal.flush_failed", path=str(current.path), error=str(exc))
        current.bytes_written += line_size
        current.last_write_at = self._monotonic()

    def _open(self, rotation_index: int) -> _OpenJournal:
        path = self.base_dir / journal_filename(self._clock(), self.topic, rotation_index)
        handle = path.open("ab")
        existing = os.fstat(handle.fileno()).st_size
        self._log.info("journal.opened", path=str(path), index=rotation_index, size=existing)
        return _OpenJournal(
            path=path,
            handle=handle,
            bytes_written=existing,
            rotation_index=rotation_index,
            last_write_at=self._monotonic(),
        )

    def _close_current(self, *, reason: str) -> None:
        current = self._current
        if current is None:
            return
        self._current = None
        try:
            current.handle.close()
        except OSError as exc:
            self._log.error("journal.close_failed", path=str(current.path), error=str(exc))
            return
        self._log.info(
            "journal.closed", path=str(current.path), reason=reason, size=current.bytes_written
        )

    def _rewind(self, path: Path, size: int) -> None:
        """Cut a partially written line off the end of ``path``."""
        try:
            if path.stat().st_size > size:
                os.truncate(path, size)
        except OSError as exc:
            self._log.error("journal.rewind_failed", path=str(path), size=size, error=str(exc))

    def _drop_current(self) -> None:
        current = self._current
        self._current = None
        if current is None:
            return
        try:
            current.handle.close()
        except OSError:
            self._log.warning("journal.discard_failed", path=str(current.path))
