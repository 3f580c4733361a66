"""Retention sweeper for rotated journal files.

Deletes ``*.jsonl`` files whose filename timestamp is older than the
retention window. Files that cannot be dated are never touched.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog

from core.contracts import RetentionPolicy, SweepResult
from core.journal import JOURNAL_SUFFIX, parse_journal_timestamp

SWEEP_INTERVAL_S = 3600.0


class RetentionSweeper:
    """Periodic deletion of expired journal files.

    Attributes:
        base_dir: Directory holding the journal files
        policy: Retention window; a non-positive window disables the sweeper
        interval_s: Seconds between sweeps
    """

    def __init__(
        self,
        base_dir: str | Path,
        policy: RetentionPolicy,
        *,
        interval_s: float = SWEEP_INTERVAL_S,
        clock: Callable[[], datetime] = datetime.now,
        sleep_fn: Callable[[float], Awaitable[None]] | None = None,
        logger: Any | None = None,
    ) -> None:
        self.base_dir = Path(base_dir)
        self.policy = policy
        self.interval_s = interval_s
        self._clock = clock
        self._sleep = sleep_fn or asyncio.sleep
        self._log = logger or structlog.get_logger("core.retention")

    @property
    def enabled(self) -> bool:
        return self.policy.enabled

    async def run(self) -> None:
        """Sweep now and then once per interval until cancelled."""
        if not self.enabled:
            self._log.info("retention.disabled", base_dir=str(self.base_dir))
            return
        while True:
            try:
                self.sweep_once()
            except Exception as exc:
                self._log.error(
                    "retention.sweep_failed", base_dir=str(self.base_dir), error=str(exc)
                )
            await self._sleep(self.interval_s)

    def sweep_once(self) -> SweepResult:
        """Delete every expired journal file in ``base_dir``.

        Returns:
            Counts of deleted files, reclaimed bytes and failed deletions
        """
        if not self.enabled or not self.base_dir.is_dir():
            return SweepResult()

        cutoff = self._clock() - self.policy.retention_window
        deleted = 0
        reclaimed = 0
        failed = 0

        for path in sorted(self.base_dir.glob(f"*{JOURNAL_SUFFIX}")):
            if not path.is_file():
                continue
            created_at = parse_journal_timestamp(path.name)
            if created_at is None or created_at >= cutoff:
                continue

            try:
                size = path.stat().st_size
                path.unlink()
            except FileNotFoundError:
                # another pipeline sharing the directory got there first
                continue
            except OSError as exc:
                failed += 1
                self._log.warning("retention.delete_failed", path=str(path), error=str(exc))
                continue

            deleted += 1
            reclaimed += size
            self._log.info("retention.deleted", path=str(path), size=size)

        result = SweepResult(deleted=deleted, bytes_reclaimed=reclaimed, failed=failed)
        if deleted or failed:
            self._log.info(
                "retention.sweep_complete",
                base_dir=str(self.base_dir),
                deleted=deleted,
                reclaimed_mb=round(reclaimed / 1024 / 1024, 2),
                failed=failed,
            )
        return result
