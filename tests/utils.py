from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from core.bus import BusError
from core.config import Config
from core.contracts import BrokerEvent


class FakeBus:
    """In-memory broker connection scripted by the test."""

    def __init__(self, host: str = "localhost", port: int = 6379, client_id: str = "test") -> None:
        self.host = host
        self.port = port
        self.client_id = client_id
        self.connected = False
        self.closed = False
        self.subscriptions: list[str] = []
        self.fail_connect = False
        self.fail_subscribe = False
        self._events: asyncio.Queue[BrokerEvent | Exception | None] = asyncio.Queue()

    async def connect(self) -> None:
        if self.fail_connect:
            raise BusError("connection refused")
        self.connected = True

    async def subscribe(self, topic: str) -> None:
        if self.fail_subscribe:
            raise BusError("subscribe rejected")
        self.subscriptions.append(topic)
        self.push(BrokerEvent(kind="ack", topic=topic))

    async def poll(self) -> BrokerEvent | None:
        item = await self._events.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True

    def push(self, item: BrokerEvent | Exception | None) -> None:
        self._events.put_nowait(item)

    def push_message(self, topic: str, payload: bytes) -> None:
        self.push(BrokerEvent(kind="message", topic=topic, payload=payload))


class FakeClock:
    """Wall clock and monotonic clock that only move when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 1, 15, 10, 30, 45)
        self.elapsed = 0.0

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self.elapsed

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)
        self.elapsed += seconds


class DummyLog:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, dict[str, Any]]] = []

    def _record(self, level: str, event: str, **kwargs: Any) -> None:
        self.calls.append((level, event, kwargs))

    def debug(self, event: str, **kwargs: Any) -> None:
        self._record("debug", event, **kwargs)

    def info(self, event: str, **kwargs: Any) -> None:
        self._record("info", event, **kwargs)

    def warning(self, event: str, **kwargs: Any) -> None:
        self._record("warning", event, **kwargs)

    def error(self, event: str, **kwargs: Any) -> None:
        self._record("error", event, **kwargs)

    def events(self, level: str | None = None) -> list[str]:
        return [event for lvl, event, _ in self.calls if level is None or lvl == level]


async def no_sleep(_delay: float) -> None:
    await asyncio.sleep(0)


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout=timeout)


def journal_files(directory: Path) -> list[Path]:
    return sorted(directory.glob("*.jsonl"))


def read_records(path: Path) -> list[dict[str, Any]]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def build_test_config(log_dir: Path, topics: list[str], **overrides: Any) -> Config:
    cfg_dict: dict[str, Any] = {
        "log_dir": str(log_dir),
        "max_file_size_mb": 1,
        "topics": topics,
        "timeout_secs": 60,
        "log_retention_hours": 0,
        "host": "localhost",
        "port": 6379,
        "logging": {"level": "INFO", "console": False},
        "backoff": {"base_delay_s": 0.0, "max_delay_s": 0.0, "max_open_attempts": 3},
    }
    cfg_dict.update(overrides)
    return Config.model_validate(cfg_dict)
