from __future__ import annotations

from typing import Any, Protocol, cast

from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import NoBackoff
from redis.exceptions import RedisError

from core.contracts import BrokerEvent

_ACK_TYPES = frozenset({"subscribe", "psubscribe"})
_MESSAGE_TYPES = frozenset({"message", "pmessage"})


class BusError(RuntimeError):
    """Raised when the broker connection cannot complete an operation."""


class BusProto(Protocol):
    """Broker capability consumed by a topic pipeline.

    One instance serves exactly one pipeline; it is never shared between
    pipelines or tasks other than the pipeline's own poll loop.
    """

    async def connect(self) -> None:
        """Open the connection to the broker.

        Raises:
            BusError: If the broker is unreachable
        """
        ...

    async def subscribe(self, topic: str) -> None:
        """Subscribe to ``topic`` on this connection.

        Raises:
            BusError: If the subscription request fails
        """
        ...

    async def poll(self) -> BrokerEvent | None:
        """Wait for the next broker event.

        Returns:
            The next event, or None if nothing arrived within the poll timeout

        Raises:
            BusError: On connection or protocol errors
        """
        ...

    async def close(self) -> None: ...


class Bus:
    """Redis pub/sub connection owned by a single topic pipeline."""

    def __init__(
        self,
        host: str,
        port: int,
        client_id: str,
        *,
        poll_timeout_s: float = 1.0,
        connect_timeout_s: float = 5.0,
    ) -> None:
        self._host = host
        self._port = port
        self._client_id = client_id
        self._poll_timeout_s = poll_timeout_s
        self._connect_timeout_s = connect_timeout_s
        self._client: Redis | None = None
        self._pubsub: Any | None = None

    async def connect(self) -> None:
        if self._client is not None:
            return
        client = Redis(
            host=self._host,
            port=self._port,
            client_name=self._client_id,
            socket_connect_timeout=self._connect_timeout_s,
            retry=Retry(NoBackoff(), 0),
        )
        try:
            await client.ping()
        except (RedisError, OSError) as exc:
            await client.aclose()
            msg = f"cannot connect to broker {self._host}:{self._port}: {exc}"
            raise BusError(msg) from exc
        self._client = client
        self._pubsub = cast(Any, client.pubsub())

    async def subscribe(self, topic: str) -> None:
        pubsub = self._require_pubsub()
        try:
            await pubsub.subscribe(topic)
        except (RedisError, OSError) as exc:
            msg = f"subscribe to '{topic}' failed: {exc}"
            raise BusError(msg) from exc

    async def poll(self) -> BrokerEvent | None:
        pubsub = self._require_pubsub()
        try:
            message = await pubsub.get_message(
                ignore_subscribe_messages=False, timeout=self._poll_timeout_s
            )
        except (RedisError, OSError) as exc:
            raise BusError(f"poll failed: {exc}") from exc
        if message is None:
            return None
        return self.to_event(message)

    async def publish(self, topic: str, payload: bytes | str) -> None:
        if self._client is None:
            raise BusError("bus is not connected")
        try:
            await self._client.publish(topic, payload)
        except (RedisError, OSError) as exc:
            raise BusError(f"publish to '{topic}' failed: {exc}") from exc

    async def close(self) -> None:
        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def to_event(message: dict[str, Any]) -> BrokerEvent:
        """Map a raw redis pub/sub message onto a broker event."""
        kind = message.get("type")
        if isinstance(kind, bytes):
            kind = kind.decode("utf-8")
        channel = message.get("channel") or b""
        if isinstance(channel, bytes):
            topic = channel.decode("utf-8", errors="replace")
        else:
            topic = str(channel)

        if kind in _ACK_TYPES:
            return BrokerEvent(kind="ack", topic=topic)
        if kind in _MESSAGE_TYPES:
            data = message.get("data")
            if isinstance(data, str):
                data = data.encode("utf-8")
            elif not isinstance(data, bytes):
                data = str(data).encode("utf-8")
            return BrokerEvent(kind="message", topic=topic, payload=data)
        return BrokerEvent(kind="other", topic=topic)

    def _require_pubsub(self) -> Any:
        if self._pubsub is None:
            raise BusError("bus is not connected")
        return self._pubsub
