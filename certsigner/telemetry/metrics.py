"""
certsigner — Metric Collection

Central counter collector. The handler, publishers and consumer report here.
Counters are accumulated in memory and flushed to the log as a single
``relay_metrics`` event, either on a timer or at shutdown.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import Counter
from typing import Any

import structlog

logger = structlog.get_logger().bind(system="telemetry.metrics")


def _series_key(metric: str, labels: dict[str, str] | None) -> str:
    if not labels:
        return metric
    rendered = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
    return f"{metric}{{{rendered}}}"


class MetricCollector:
    """
    Relay metric collection.

    Components call record() to bump a counter. Publish failures that are
    not retried further land here rather than being discarded.
    """

    def __init__(self, flush_interval_s: float = 60.0) -> None:
        self._flush_interval = flush_interval_s
        self._counters: Counter[str] = Counter()
        self._totals: Counter[str] = Counter()
        self._running = False
        self._task: asyncio.Task[None] | None = None

    def record(
        self,
        metric: str,
        value: int = 1,
        labels: dict[str, str] | None = None,
    ) -> None:
        """Record a counter increment."""
        key = _series_key(metric, labels)
        self._counters[key] += value
        self._totals[key] += value

    def snapshot(self) -> dict[str, int]:
        """Lifetime totals, including anything already flushed."""
        return dict(self._totals)

    def get(self, metric: str, labels: dict[str, str] | None = None) -> int:
        return self._totals.get(_series_key(metric, labels), 0)

    def flush(self) -> dict[str, Any]:
        """Log and reset the counters accumulated since the last flush."""
        if not self._counters:
            return {}

        batch = dict(self._counters)
        self._counters.clear()
        logger.info("relay_metrics", counters=batch)
        return batch

    async def start_writer(self) -> None:
        """Start the periodic flush task."""
        self._running = True
        self._task = asyncio.create_task(self._flush_loop())
        logger.info("metric_writer_started", interval_s=self._flush_interval)

    async def _flush_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._flush_interval)
            self.flush()

    async def stop(self) -> None:
        """Stop the writer and flush remaining counters."""
        self._running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        self.flush()
        logger.info("metric_writer_stopped")
