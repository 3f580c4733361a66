"""Topic recorder daemon.

Starts one ingestion pipeline per configured topic and journals every message
into rotating JSONL files under ``log_dir``.
"""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

import structlog

from apps.topic_recorder.recorder import BusFactory, SubscribeError, TopicRecorder
from core.bus import Bus, BusError
from core.config import Config, load_config
from core.logging import setup_json_logging

logger = structlog.get_logger("apps.topic_recorder.main")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Broker topic to JSONL recorder")
    parser.add_argument(
        "--config-root",
        default=".",
        help="Directory containing config/ (defaults to current working directory)",
    )
    return parser


async def start_recorder(
    topic: str, config: Config, *, bus_factory: BusFactory = Bus
) -> TopicRecorder | None:
    """Connect and subscribe one topic; None if the pipeline cannot start."""
    try:
        recorder = await TopicRecorder.create(topic, config, bus_factory=bus_factory)
    except BusError as exc:
        logger.error("recorder.connect_failed", topic=topic, error=str(exc))
        return None

    try:
        await recorder.subscribe()
    except SubscribeError as exc:
        logger.error("recorder.subscribe_failed", topic=topic, error=str(exc))
        await recorder.close()
        return None
    return recorder


async def run_recorders(config: Config, *, bus_factory: BusFactory = Bus) -> int:
    """Run every topic pipeline until all of them stop or the task is cancelled.

    Returns:
        Number of pipelines that were started
    """
    recorders = []
    for topic in config.topics:
        recorder = await start_recorder(topic, config, bus_factory=bus_factory)
        if recorder is not None:
            recorders.append(recorder)

    if not recorders:
        logger.warning("recorder.none_started", topics=config.topics)
        return 0

    logger.info("recorder.started", topics=[recorder.topic for recorder in recorders])
    tasks = [
        asyncio.create_task(recorder.run(), name=f"recorder:{recorder.topic}")
        for recorder in recorders
    ]
    try:
        for task in asyncio.as_completed(tasks):
            try:
                await task
            except Exception as exc:
                logger.error("recorder.pipeline_stopped", error=str(exc))
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for recorder in recorders:
            await recorder.close()
    return len(recorders)


async def run(config_root: str) -> None:
    config = load_config(config_root)
    log_dir = config.logging.dir or Path(config.log_dir)
    setup_json_logging(str(log_dir), config.logging.level, console=config.logging.console)

    logger.info(
        "recorder.start",
        host=config.host,
        port=config.port,
        log_dir=str(config.log_dir),
        max_file_size_mb=config.max_file_size_mb,
        timeout_secs=config.timeout_secs,
        log_retention_hours=config.log_retention_hours,
    )
    await run_recorders(config)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        asyncio.run(run(args.config_root))
    except KeyboardInterrupt:
        logger.info("recorder.stop", reason="keyboard-interrupt")
    except FileNotFoundError as exc:
        parser.error(str(exc))
    return 0


if __name__ == "__main__":  # pragma: no cover - manual execution path
    raise SystemExit(main())
