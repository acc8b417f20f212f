"""
Unit tests for AckPublisher and CertifiedPublisher.

Covers sentinel mapping, the disabled no-op, verbatim forwarding and the
bounded publish retry.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import orjson
import pytest

from certsigner.config import ACK_TOPIC, ProducerConfig
from certsigner.errors import PublishError
from certsigner.relay.publishers import AckPublisher, CertifiedPublisher
from certsigner.telemetry.metrics import MetricCollector
from certsigner.types import MessageEnvelope


def _broker(side_effect=None) -> MagicMock:
    broker = MagicMock()
    broker.publish = AsyncMock(return_value="1-0", side_effect=side_effect)
    return broker


def _ack(broker: MagicMock, *, enabled: bool = True, retries: int = 0) -> AckPublisher:
    return AckPublisher(
        broker,
        ProducerConfig(publish_retries=retries, retry_backoff_s=0.01),
        MetricCollector(),
        enabled=enabled,
    )


class TestAckMapping:
    @pytest.mark.asyncio
    async def test_successful_maps_to_success(self):
        broker = _broker()
        assert await _ack(broker).send("SUCCESSFUL", "u", "r", "ignored")

        topic, value = broker.publish.await_args.args
        assert topic == ACK_TOPIC
        assert orjson.loads(value) == {
            "uploadId": "u", "rowId": "r", "status": "SUCCESS", "errorMsg": ""
        }

    @pytest.mark.asyncio
    async def test_unsuccessful_maps_to_failed(self):
        broker = _broker()
        assert await _ack(broker).send("UNSUCCESSFUL", "u", "r", "bad dose date")
        _, value = broker.publish.await_args.args
        assert orjson.loads(value)["status"] == "FAILED"
        assert orjson.loads(value)["errorMsg"] == "bad dose date"

    @pytest.mark.asyncio
    async def test_field_order_on_the_wire(self):
        broker = _broker()
        await _ack(broker).send("UNSUCCESSFUL", "u", "r", "e")
        _, value = broker.publish.await_args.args
        assert value == b'{"uploadId":"u","rowId":"r","status":"FAILED","errorMsg":"e"}'

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["", "PENDING", "successful", "SUCCESS"])
    async def test_other_statuses_publish_nothing(self, status):
        broker = _broker()
        assert await _ack(broker).send(status, "u", "r", "")
        broker.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_source_id_header(self):
        broker = _broker()
        await _ack(broker).send("SUCCESSFUL", "u", "r", source_id="9-1")
        assert broker.publish.await_args.kwargs["headers"] == {"sourceId": "9-1"}


class TestAckDisabled:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["SUCCESSFUL", "UNSUCCESSFUL", "OTHER"])
    async def test_noop(self, status):
        broker = _broker()
        publisher = _ack(broker, enabled=False)
        assert not publisher.enabled
        assert await publisher.send(status, "u", "r", "e")
        broker.publish.assert_not_awaited()


class TestRetry:
    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        broker = _broker(side_effect=[PublishError(ACK_TOPIC, "LOADING"), "2-0"])
        with patch("certsigner.relay.publishers.asyncio.sleep", new=AsyncMock()) as sleep:
            assert await _ack(broker, retries=2).send("SUCCESSFUL", "u", "r")
        assert broker.publish.await_count == 2
        sleep.assert_awaited_once_with(0.01)

    @pytest.mark.asyncio
    async def test_gives_up_and_counts_failure(self):
        broker = _broker(side_effect=PublishError(ACK_TOPIC, "Connection refused"))
        publisher = _ack(broker, retries=2)
        with patch("certsigner.relay.publishers.asyncio.sleep", new=AsyncMock()) as sleep:
            assert not await publisher.send("UNSUCCESSFUL", "u", "r", "x")

        assert broker.publish.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [0.01, 0.02]
        assert publisher._metrics.get("publish_failures", {"topic": ACK_TOPIC}) == 1


class TestCertifiedPublisher:
    @pytest.mark.asyncio
    async def test_forwards_value_without_key(self):
        broker = _broker()
        metrics = MetricCollector()
        publisher = CertifiedPublisher(
            broker, ProducerConfig(publish_retries=0), metrics, topic="certified"
        )
        value = b'{"b": 1, "a": [1,2 ,3]}'
        envelope = MessageEnvelope(stream="certify", message_id="5-0", value=value)

        assert await publisher.forward(envelope)

        call = broker.publish.await_args
        assert call.args == ("certified", value)
        assert "key" not in call.kwargs
        assert call.kwargs["headers"] == {"sourceId": "5-0"}
        assert metrics.get("certified_published") == 1
