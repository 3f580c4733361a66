from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Literal

EventKind = Literal["ack", "message", "other"]


@dataclass(frozen=True)
class RotationPolicy:
    """When the journal rolls over to a new file.

    Attributes:
        max_file_size_bytes: Size cap for a single journal file
        idle_rotation_timeout: Gap after which the next line starts a fresh
            session (new file, rotation index back to 0)
    """

    max_file_size_bytes: int
    idle_rotation_timeout: timedelta

    def __post_init__(self) -> None:
        if self.max_file_size_bytes <= 0:
            raise ValueError(f"max_file_size_bytes must be > 0, got {self.max_file_size_bytes}")
        if self.idle_rotation_timeout < timedelta(0):
            raise ValueError("idle_rotation_timeout must be >= 0")


@dataclass(frozen=True)
class RetentionPolicy:
    retention_window: timedelta = timedelta(0)

    @property
    def enabled(self) -> bool:
        return self.retention_window > timedelta(0)


@dataclass(frozen=True)
class BrokerEvent:
    kind: EventKind
    topic: str
    payload: bytes = b""


@dataclass(frozen=True)
class SweepResult:
    deleted: int = 0
    bytes_reclaimed: int = 0
    failed: int = 0
