"""
certsigner — Certify Worker

Standalone process that consumes certify requests from a Redis stream, has
each one signed and saved by the signing service, and publishes the
outcome back.

Streams:
  ``topics.certify``    (consumed, group ``certificate_signer``)
  ``topics.certified``  (produced on successful signing, verbatim payload)
  ``certify_ack``       (produced when acknowledgements are enabled)

Ordering:
  One fetch task keeps reading into a bounded queue while a single
  processing task handles messages strictly in stream order.

Delivery:
  A message is XACKed only once every publish it triggered succeeded. A
  failed publish is retried in place, with backoff, before the next message
  is taken, and the message is not signed again. Entries left pending by a
  crash or shutdown are reclaimed after ``consumer.claim_idle_ms`` and
  processed again, so downstream consumers must deduplicate on the
  ``sourceId`` header.

Usage:
    python -m certsigner
    python -m certsigner --config /etc/certsigner/config.yaml

Graceful shutdown:
    Handles SIGINT and SIGTERM. The in-flight message completes before exit;
    anything still queued stays pending and is reclaimed on the next run.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
from typing import TYPE_CHECKING

import structlog
from dotenv import load_dotenv
from redis.exceptions import RedisError

from certsigner.clients.redis import RedisClient, StreamBroker
from certsigner.clients.signer import SigningClient
from certsigner.config import RelayConfig, load_config
from certsigner.relay.handler import CertifyHandler
from certsigner.relay.publishers import AckPublisher, CertifiedPublisher
from certsigner.telemetry.logging import setup_logging
from certsigner.telemetry.metrics import MetricCollector

if TYPE_CHECKING:
    from certsigner.types import MessageEnvelope

logger = structlog.get_logger()

_IDLE_POLL_S = 0.5
_FETCH_ERROR_BACKOFF_S = 2.0


def build_handler(
    config: RelayConfig,
    broker: StreamBroker,
    signer: SigningClient,
    metrics: MetricCollector,
) -> CertifyHandler:
    """Wire the handler and its two publishers from configuration."""
    ack = AckPublisher(
        broker, config.broker, metrics, enabled=config.acknowledgement.enabled,
    )
    certified = CertifiedPublisher(
        broker, config.broker, metrics, topic=config.topics.certified,
    )
    return CertifyHandler(signer=signer, ack=ack, certified=certified, metrics=metrics)


class CertifyConsumer:
    """
    Consumer-group loop over the certify stream.

    ``run()`` returns once ``stop()`` has been called and the in-flight
    message is done.
    """

    def __init__(
        self,
        broker: StreamBroker,
        handler: CertifyHandler,
        config: RelayConfig,
        metrics: MetricCollector,
        consumer_name: str,
    ) -> None:
        self._broker = broker
        self._handler = handler
        self._stream = config.topics.certify
        self._consumer = config.consumer
        self._metrics = metrics
        self._name = consumer_name
        self._queue: asyncio.Queue[MessageEnvelope] = asyncio.Queue(
            maxsize=config.consumer.prefetch
        )
        # Queued or being handled, not yet committed.
        self._inflight: set[str] = set()
        self._shutdown = asyncio.Event()
        self._log = logger.bind(
            system="worker.consumer",
            stream=self._stream,
            group=self._consumer.group,
            consumer=self._name,
        )

    @property
    def name(self) -> str:
        return self._name

    async def start(self) -> None:
        """Ensure the consumer group exists, positioned at the oldest entry."""
        await self._broker.ensure_group(self._stream, self._consumer.group)

    def stop(self) -> None:
        self._shutdown.set()

    async def run(self) -> None:
        self._log.info("consumer_started")
        process_task = asyncio.create_task(self._process_loop())
        fetch_task = asyncio.create_task(self._fetch_loop())

        await self._shutdown.wait()
        self._log.info("consumer_draining", queued=self._queue.qsize())

        fetch_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await fetch_task
        await process_task
        self._log.info("consumer_stopped")

    # ─── Fetch ────────────────────────────────────────────────────

    async def _fetch_loop(self) -> None:
        loop = asyncio.get_running_loop()
        next_reclaim = loop.time()

        while not self._shutdown.is_set():
            try:
                if loop.time() >= next_reclaim:
                    next_reclaim = loop.time() + self._consumer.reclaim_interval_s
                    await self.reclaim()

                envelopes = await self._broker.read(
                    self._stream,
                    self._consumer.group,
                    self._name,
                    count=self._consumer.batch_size,
                    block_ms=self._consumer.block_ms,
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._log.error("fetch_error", error=str(exc), error_type=type(exc).__name__)
                await asyncio.sleep(_FETCH_ERROR_BACKOFF_S)
                continue

            for envelope in envelopes:
                await self._enqueue(envelope)

    async def _enqueue(self, envelope: MessageEnvelope) -> None:
        self._inflight.add(envelope.message_id)
        await self._queue.put(envelope)

    async def reclaim(self) -> int:
        """
        Take over stale pending entries and queue them again.

        Entries delivered more than ``max_deliveries`` times are committed
        without processing. Returns the number of entries queued.
        """
        try:
            stale = await self._broker.claim_stale(
                self._stream,
                self._consumer.group,
                self._name,
                min_idle_ms=self._consumer.claim_idle_ms,
                count=self._consumer.batch_size,
            )
        except RedisError as exc:
            self._log.warning("reclaim_error", error=str(exc))
            return 0

        queued = 0
        for envelope in stale:
            if envelope.message_id in self._inflight:
                continue
            if envelope.delivery_count > self._consumer.max_deliveries:
                self._log.error(
                    "message_dead_lettered",
                    msg_id=envelope.message_id,
                    deliveries=envelope.delivery_count,
                    upload_id=envelope.upload_id,
                    row_id=envelope.row_id,
                )
                self._metrics.record("messages_dead_lettered")
                self._handler.forget(envelope.message_id)
                await self._commit(envelope)
                continue
            self._log.info(
                "message_reclaimed",
                msg_id=envelope.message_id,
                deliveries=envelope.delivery_count,
            )
            await self._enqueue(envelope)
            queued += 1
        return queued

    # ─── Process ──────────────────────────────────────────────────

    async def _process_loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                envelope = await asyncio.wait_for(self._queue.get(), timeout=_IDLE_POLL_S)
            except TimeoutError:
                continue
            await self.process(envelope)

    async def process(self, envelope: MessageEnvelope) -> bool:
        """
        Handle one message and commit it once every publish succeeded.

        A failed publish is retried in place with backoff, so no later
        message is processed ahead of it. Only shutdown or a handler crash
        leaves the message uncommitted for reclaim.

        Never raises; returns whether the message was committed.
        """
        mlog = self._log.bind(msg_id=envelope.message_id)
        backoff = self._consumer.redrive_backoff_s
        try:
            while True:
                try:
                    report = await self._handler.handle(envelope)
                except Exception as exc:
                    mlog.exception("message_handler_crashed", error=str(exc))
                    self._metrics.record("handler_crashes")
                    return False

                if report.committable:
                    return await self._commit(envelope)

                if self._shutdown.is_set():
                    mlog.warning("message_left_uncommitted", outcome=report.outcome.value)
                    return False

                mlog.warning(
                    "message_redrive_scheduled",
                    outcome=report.outcome.value,
                    backoff_s=backoff,
                )
                self._metrics.record("message_redrives")
                await self._pause(backoff)
                backoff = min(backoff * 2, self._consumer.redrive_backoff_max_s)
        finally:
            self._inflight.discard(envelope.message_id)

    async def _pause(self, delay: float) -> None:
        """Sleep for ``delay`` seconds, returning early on shutdown."""
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._shutdown.wait(), timeout=delay)

    async def _commit(self, envelope: MessageEnvelope) -> bool:
        try:
            await self._broker.ack(self._stream, self._consumer.group, envelope.message_id)
        except RedisError as exc:
            self._log.error("commit_failed", msg_id=envelope.message_id, error=str(exc))
            return False
        self._metrics.record("messages_committed")
        return True


async def run_worker(config_path: str | None = None) -> None:
    """
    Main worker entry.

    1. Load config, configure logging.
    2. Connect Redis and build the signing client.
    3. Ensure the consumer group exists from the oldest offset.
    4. Consume until SIGINT/SIGTERM, then tear down.
    """
    config = load_config(config_path)
    setup_logging(config.logging, config.instance_id)
    log = logger.bind(worker="certsigner")
    log.info(
        "worker_configuring",
        certify_topic=config.topics.certify,
        certified_topic=config.topics.certified,
        acknowledgement_enabled=config.acknowledgement.enabled,
    )

    redis_client = RedisClient(config.redis)
    await redis_client.connect()

    signer = SigningClient(config.signer)
    metrics = MetricCollector(flush_interval_s=config.metrics.flush_interval_s)
    await metrics.start_writer()

    broker = StreamBroker(redis_client.client, config.broker)
    consumer = CertifyConsumer(
        broker=broker,
        handler=build_handler(config, broker, signer, metrics),
        config=config,
        metrics=metrics,
        consumer_name=f"{config.instance_id}-{os.getpid()}",
    )

    def _signal_handler() -> None:
        log.info("shutdown_signal_received")
        consumer.stop()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler.
            signal.signal(sig, lambda s, f: _signal_handler())

    try:
        await consumer.start()
        await consumer.run()
    finally:
        log.info("worker_draining")
        await metrics.stop()
        await signer.close()
        await redis_client.close()
        log.info("worker_shutdown_complete")


def main() -> None:
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Certificate signing relay worker")
    parser.add_argument(
        "--config",
        default=os.getenv("CERTSIGNER_CONFIG_PATH"),
        help="Path to YAML config file (default: CERTSIGNER_CONFIG_PATH env var)",
    )
    args = parser.parse_args()
    load_dotenv()
    asyncio.run(run_worker(args.config))


if __name__ == "__main__":
    main()
