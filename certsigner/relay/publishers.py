"""
certsigner — Relay Publishers

AckPublisher       — normalised SUCCESS/FAILED event on ``certify_ack``
CertifiedPublisher — verbatim pass-through of a signed request on the
                     certified topic

Both await the XADD and retry with exponential backoff. A publish that
still fails is logged, counted under ``publish_failures``, and reported to
the caller as False so the source message is left uncommitted.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import structlog

from certsigner.config import ACK_TOPIC, ProducerConfig
from certsigner.errors import PublishError
from certsigner.types import (
    SOURCE_ID_HEADER,
    AckEvent,
    AckStatus,
    MessageEnvelope,
    RegistryStatus,
)

if TYPE_CHECKING:
    from certsigner.clients.redis import StreamBroker
    from certsigner.telemetry.metrics import MetricCollector

logger = structlog.get_logger().bind(system="relay.publishers")


class _RetryingPublisher:
    def __init__(
        self,
        broker: StreamBroker,
        producer: ProducerConfig,
        metrics: MetricCollector,
    ) -> None:
        self._broker = broker
        self._producer = producer
        self._metrics = metrics

    async def _publish(
        self,
        topic: str,
        value: bytes,
        headers: dict[str, str],
        log: Any,
    ) -> bool:
        attempts = self._producer.publish_retries + 1
        delay = self._producer.retry_backoff_s
        for attempt in range(1, attempts + 1):
            try:
                await self._broker.publish(topic, value, headers=headers)
                return True
            except PublishError as exc:
                log.warning(
                    "publish_attempt_failed",
                    topic=topic,
                    attempt=attempt,
                    attempts=attempts,
                    error=str(exc),
                )
                if attempt < attempts:
                    await asyncio.sleep(delay)
                    delay *= 2

        self._metrics.record("publish_failures", labels={"topic": topic})
        log.error("publish_failed", topic=topic, attempts=attempts)
        return False


class AckPublisher(_RetryingPublisher):
    """
    Emits the upload tracker's acknowledgement for one certify request.

    Only the two registry sentinels are mapped. Any other registry status
    produces no acknowledgement at all; the tracker keeps the row pending.
    """

    def __init__(
        self,
        broker: StreamBroker,
        producer: ProducerConfig,
        metrics: MetricCollector,
        *,
        enabled: bool,
    ) -> None:
        super().__init__(broker, producer, metrics)
        self._enabled = enabled

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def send(
        self,
        status: str,
        upload_id: str,
        row_id: str,
        error_msg: str = "",
        *,
        source_id: str = "",
    ) -> bool:
        """
        Publish the acknowledgement for ``status``.

        Returns False only when the publish itself failed; disabled
        acknowledgements and unmapped statuses count as handled.
        """
        if not self._enabled:
            return True

        log = logger.bind(upload_id=upload_id, row_id=row_id, registry_status=status)

        if status == RegistryStatus.SUCCESSFUL:
            event = AckEvent(
                upload_id=upload_id, row_id=row_id, status=AckStatus.SUCCESS, error_msg=""
            )
        elif status == RegistryStatus.UNSUCCESSFUL:
            event = AckEvent(
                upload_id=upload_id, row_id=row_id, status=AckStatus.FAILED, error_msg=error_msg
            )
        else:
            log.info("ack_skipped_unmapped_status")
            return True

        headers = {SOURCE_ID_HEADER: source_id} if source_id else {}
        published = await self._publish(ACK_TOPIC, event.to_bytes(), headers, log)
        if published:
            self._metrics.record("acks_published", labels={"status": event.status.value})
            log.info("ack_published", ack_status=event.status.value)
        return published


class CertifiedPublisher(_RetryingPublisher):
    """Forwards the consumed request bytes, untouched, to the certified topic."""

    def __init__(
        self,
        broker: StreamBroker,
        producer: ProducerConfig,
        metrics: MetricCollector,
        *,
        topic: str,
    ) -> None:
        super().__init__(broker, producer, metrics)
        self._topic = topic

    @property
    def topic(self) -> str:
        return self._topic

    async def forward(self, envelope: MessageEnvelope) -> bool:
        log = logger.bind(msg_id=envelope.message_id, upload_id=envelope.upload_id)
        published = await self._publish(
            self._topic,
            envelope.value,
            {SOURCE_ID_HEADER: envelope.message_id},
            log,
        )
        if published:
            self._metrics.record("certified_published")
            log.info("certified_published", topic=self._topic)
        return published
