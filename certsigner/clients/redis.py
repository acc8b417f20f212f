"""
certsigner — Redis Client

Async Redis connection plus the stream operations the relay needs:
consumer-group reads, pending-entry reclaim, commits (XACK) and publishes
(XADD).

Stream entries are kept as bytes end to end (``decode_responses=False``) so
a consumed value can be forwarded without any re-encoding.
"""

from __future__ import annotations

from typing import Any

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError, ResponseError

from certsigner.config import ProducerConfig, RedisConfig
from certsigner.errors import BrokerNotConnectedError, PublishError
from certsigner.types import MessageEnvelope

logger = structlog.get_logger().bind(system="clients.redis")

VALUE_FIELD = "value"
KEY_FIELD = "key"


def _text(raw: bytes | str) -> str:
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return raw


def envelope_from_entry(
    stream: str,
    msg_id: bytes | str,
    fields: dict[Any, Any],
    delivery_count: int = 1,
) -> MessageEnvelope:
    """Split a raw stream entry into payload bytes and string headers."""
    value = b""
    headers: dict[str, str] = {}
    for raw_name, raw_value in fields.items():
        name = _text(raw_name)
        if name == VALUE_FIELD:
            value = raw_value if isinstance(raw_value, bytes) else str(raw_value).encode()
        elif name == KEY_FIELD:
            continue
        else:
            headers[name] = _text(raw_value)
    return MessageEnvelope(
        stream=stream,
        message_id=_text(msg_id),
        value=value,
        headers=headers,
        delivery_count=delivery_count,
    )


class RedisClient:
    """
    Async Redis connection holder.
    """

    def __init__(self, config: RedisConfig) -> None:
        self._config = config
        self._client: Redis | None = None

    async def connect(self) -> None:
        """Establish Redis connection."""
        self._client = Redis.from_url(
            self._config.full_url,
            decode_responses=False,
            socket_timeout=self._config.socket_timeout_s,
        )
        # Verify connectivity
        await self._client.ping()
        logger.info("redis_connected")

    async def close(self) -> None:
        """Close the connection."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("redis_disconnected")

    @property
    def client(self) -> Redis:
        if self._client is None:
            raise BrokerNotConnectedError("Redis client not connected. Call connect() first.")
        return self._client

    async def health_check(self) -> dict:
        """Check connectivity."""
        try:
            await self.client.ping()
            return {"status": "connected"}
        except RedisError as e:
            logger.error("redis_health_check_failed", error=str(e))
            return {"status": "disconnected", "error": str(e)}


class StreamBroker:
    """
    Topic-style publish/subscribe over Redis Streams.

    A topic is a stream key and a consumer group's committed position is
    whatever it has XACKed. Writing to a stream that does not exist yet
    creates it.
    """

    def __init__(self, redis: Redis, producer: ProducerConfig | None = None) -> None:
        self._redis = redis
        self._producer = producer or ProducerConfig()

    @property
    def raw(self) -> Redis:
        return self._redis

    # ─── Subscribe ────────────────────────────────────────────────

    async def ensure_group(self, stream: str, group: str) -> bool:
        """
        Create ``group`` on ``stream`` positioned at the oldest entry.

        Returns False if the group already existed. An existing group keeps
        its cursor; resetting it would redeliver every committed entry.
        """
        try:
            await self._redis.xgroup_create(stream, group, id="0", mkstream=True)
        except ResponseError as exc:
            if "BUSYGROUP" in str(exc):
                logger.info("xgroup_already_exists", stream=stream, group=group)
                return False
            raise
        logger.info("xgroup_created", stream=stream, group=group)
        return True

    async def read(
        self,
        stream: str,
        group: str,
        consumer: str,
        *,
        count: int,
        block_ms: int,
    ) -> list[MessageEnvelope]:
        """Fetch never-delivered entries for this consumer."""
        entries = await self._redis.xreadgroup(
            groupname=group,
            consumername=consumer,
            streams={stream: ">"},
            count=count,
            block=block_ms or None,
        )
        envelopes: list[MessageEnvelope] = []
        for _stream_name, messages in entries or []:
            for msg_id, fields in messages:
                # A trimmed entry still in the PEL comes back with no fields.
                if fields is None:
                    continue
                envelopes.append(envelope_from_entry(stream, msg_id, fields))
        return envelopes

    async def claim_stale(
        self,
        stream: str,
        group: str,
        consumer: str,
        *,
        min_idle_ms: int,
        count: int,
    ) -> list[MessageEnvelope]:
        """
        Take over entries delivered to any consumer but not committed within
        ``min_idle_ms``. Each returned envelope carries its delivery count,
        including this claim.
        """
        pending = await self._redis.xpending_range(
            stream, group, min="-", max="+", count=count, idle=min_idle_ms,
        )
        if not pending:
            return []

        delivered = {
            _text(entry["message_id"]): int(entry.get("times_delivered", 1))
            for entry in pending
        }
        claimed = await self._redis.xclaim(
            stream, group, consumer, min_idle_ms, list(delivered.keys()),
        )

        envelopes: list[MessageEnvelope] = []
        for msg_id, fields in claimed or []:
            key = _text(msg_id)
            if fields is None:
                # Entry was trimmed from the stream; nothing left to process.
                await self.ack(stream, group, key)
                logger.warning("claimed_entry_missing", stream=stream, msg_id=key)
                continue
            envelopes.append(
                envelope_from_entry(stream, key, fields, delivered.get(key, 1) + 1)
            )
        return envelopes

    async def ack(self, stream: str, group: str, msg_id: str) -> None:
        """Commit one entry for the group."""
        await self._redis.xack(stream, group, msg_id)

    # ─── Publish ──────────────────────────────────────────────────

    async def publish(
        self,
        topic: str,
        value: bytes,
        headers: dict[str, str] | None = None,
        key: bytes | None = None,
    ) -> str:
        """
        XADD one entry. ``value`` is written exactly as given.

        Raises PublishError if Redis rejects or cannot be reached.
        """
        fields: dict[str, Any] = {VALUE_FIELD: value}
        if key is not None:
            fields[KEY_FIELD] = key
        for name, header_value in (headers or {}).items():
            if name in (VALUE_FIELD, KEY_FIELD):
                continue
            fields[name] = header_value

        kwargs: dict[str, Any] = {}
        if self._producer.max_stream_length:
            kwargs["maxlen"] = self._producer.max_stream_length
            kwargs["approximate"] = True

        try:
            entry_id = await self._redis.xadd(topic, fields, **kwargs)
        except RedisError as exc:
            raise PublishError(topic, str(exc)) from exc
        return _text(entry_id)
