"""Per-topic ingestion pipeline.

A ``TopicRecorder`` owns one broker connection, one rotating journal and one
retention sweeper. Nothing is shared with other topics' pipelines.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from enum import Enum
from typing import Any

import structlog

from apps.topic_recorder.normalizer import normalize_payload, parse_failed_line
from core.backoff import Backoff, BackoffConfig
from core.bus import Bus, BusProto
from core.config import Config
from core.contracts import BrokerEvent
from core.journal import RotatingJournal, sanitize_topic
from core.retention import RetentionSweeper

INBOUND_CAPACITY = 100

BusFactory = Callable[[str, int, str], BusProto]


class RecorderState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    SUBSCRIBED = "subscribed"
    STREAMING = "streaming"


class SubscribeError(RuntimeError):
    """Raised when the topic subscription cannot be established."""


class PipelineError(RuntimeError):
    """Raised when a running pipeline stops because a stage failed."""


def client_id_for(topic: str) -> str:
    return f"topic_recorder_{sanitize_topic(topic)}"


class TopicRecorder:
    def __init__(
        self,
        topic: str,
        bus: BusProto,
        journal: RotatingJournal,
        sweeper: RetentionSweeper | None = None,
        *,
        inbound_capacity: int = INBOUND_CAPACITY,
        poll_backoff: Backoff | None = None,
        logger: Any | None = None,
    ) -> None:
        self.topic = topic
        self.bus = bus
        self.journal = journal
        self.sweeper = sweeper
        self.state = RecorderState.DISCONNECTED
        self._inbound: asyncio.Queue[bytes] = asyncio.Queue(maxsize=inbound_capacity)
        self._poll_backoff = poll_backoff or Backoff()
        self._log = logger or structlog.get_logger("apps.topic_recorder").bind(topic=topic)
        self._tasks: set[asyncio.Task[None]] = set()

    @classmethod
    async def create(
        cls,
        topic: str,
        config: Config,
        *,
        bus_factory: BusFactory = Bus,
    ) -> TopicRecorder:
        """Build the pipeline for ``topic`` and connect it to the broker."""
        backoff = config.backoff
        journal = RotatingJournal(
            topic,
            config.log_dir,
            config.rotation_policy(),
            retry=BackoffConfig(
                base_delay_s=backoff.base_delay_s,
                max_delay_s=backoff.max_delay_s,
                max_attempts=backoff.max_open_attempts,
            ),
        )
        recorder = cls(
            topic,
            bus_factory(config.host, config.port, client_id_for(topic)),
            journal,
            RetentionSweeper(config.log_dir, config.retention_policy()),
            poll_backoff=Backoff(
                config=BackoffConfig(
                    base_delay_s=backoff.base_delay_s, max_delay_s=backoff.max_delay_s
                )
            ),
        )
        await recorder.connect()
        return recorder

    async def connect(self) -> None:
        await self.bus.connect()
        self.state = RecorderState.CONNECTED

    async def subscribe(self) -> None:
        if self.state is not RecorderState.CONNECTED:
            raise SubscribeError(f"cannot subscribe to '{self.topic}' while {self.state.value}")
        try:
            await self.bus.subscribe(self.topic)
        except Exception as exc:
            raise SubscribeError(f"subscribe to '{self.topic}' failed: {exc}") from exc
        self.state = RecorderState.SUBSCRIBED
        self._log.info("recorder.subscribed")

    async def run(self) -> None:
        """Stream the topic into the journal until cancelled or a stage fails.

        Raises:
            PipelineError: If the journal worker or another stage stops
        """
        if self.state is not RecorderState.SUBSCRIBED:
            raise RuntimeError(f"recorder for '{self.topic}' is {self.state.value}, not subscribed")
        self.state = RecorderState.STREAMING

        worker = self.journal.start()
        self._tasks = {
            worker,
            asyncio.create_task(self._poll_loop(), name=f"poll:{self.topic}"),
            asyncio.create_task(self._normalize_loop(), name=f"normalize:{self.topic}"),
        }
        if self.sweeper is not None and self.sweeper.enabled:
            self._tasks.add(
                asyncio.create_task(self.sweeper.run(), name=f"retention:{self.topic}")
            )

        try:
            done, _ = await asyncio.wait(self._tasks, return_when=asyncio.FIRST_COMPLETED)
            ordered = sorted(done, key=lambda task: task is not worker)
            cause = next(
                (
                    task.exception()
                    for task in ordered
                    if not task.cancelled() and task.exception() is not None
                ),
                None,
            )
            self._log.error("recorder.pipeline_failed", error=str(cause))
            raise PipelineError(f"pipeline for '{self.topic}' stopped: {cause}") from cause
        finally:
            await self.close()

    async def handle_event(self, event: BrokerEvent) -> None:
        if event.kind == "ack":
            self._log.info("recorder.ack", channel=event.topic)
        elif event.kind == "message":
            self._log.debug("recorder.message", size=len(event.payload))
            await self._inbound.put(event.payload)

    async def close(self) -> None:
        tasks = [task for task in self._tasks if not task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = set()
        await self.journal.close()
        await self.bus.close()
        self.state = RecorderState.DISCONNECTED

    async def _poll_loop(self) -> None:
        while True:
            try:
                event = await self.bus.poll()
            except Exception as exc:
                self._log.error(
                    "recorder.poll_error", error=str(exc), attempt=self._poll_backoff.attempts + 1
                )
                await self._poll_backoff.wait()
                continue
            self._poll_backoff.reset()
            if event is not None:
                await self.handle_event(event)

    async def _normalize_loop(self) -> None:
        while True:
            payload = await self._inbound.get()
            try:
                line = normalize_payload(payload)
            except Exception as exc:
                self._log.error("recorder.normalize_failed", error=str(exc), size=len(payload))
                line = parse_failed_line()
            try:
                await self.journal.submit(line)
            finally:
                self._inbound.task_done()
