"""
Unit tests for MetricCollector.
"""

from __future__ import annotations

import asyncio

import pytest

from certsigner.telemetry.metrics import MetricCollector


class TestRecord:
    def test_counts_by_labels(self):
        metrics = MetricCollector()
        metrics.record("publish_failures", labels={"topic": "certify_ack"})
        metrics.record("publish_failures", labels={"topic": "certify_ack"})
        metrics.record("publish_failures", labels={"topic": "certified"})
        metrics.record("messages_received", 5)

        assert metrics.get("publish_failures", {"topic": "certify_ack"}) == 2
        assert metrics.get("publish_failures", {"topic": "certified"}) == 1
        assert metrics.get("messages_received") == 5
        assert metrics.get("never_recorded") == 0

    def test_flush_resets_window_not_totals(self):
        metrics = MetricCollector()
        metrics.record("messages_committed")
        assert metrics.flush() == {"messages_committed": 1}
        assert metrics.flush() == {}
        assert metrics.snapshot() == {"messages_committed": 1}

    def test_label_order_is_irrelevant(self):
        metrics = MetricCollector()
        metrics.record("m", labels={"b": "2", "a": "1"})
        assert metrics.get("m", {"a": "1", "b": "2"}) == 1


class TestWriter:
    @pytest.mark.asyncio
    async def test_periodic_flush_and_stop(self):
        metrics = MetricCollector(flush_interval_s=0.01)
        await metrics.start_writer()
        metrics.record("acks_published")
        await asyncio.sleep(0.05)
        assert metrics._counters == {}
        await metrics.stop()
        assert metrics._task is None
        assert metrics.snapshot() == {"acks_published": 1}
