"""
certsigner — Certify Handler

Per-message orchestration: parse the request, have it signed, decide the
outcome, and publish the acknowledgement and (on success) the certified
pass-through.

Malformed payloads are dropped here. Domain and transport failures of the
signing call become FAILED acknowledgements. None of these raise.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import orjson
import structlog

from certsigner.errors import SigningTransportError
from certsigner.types import (
    CertifyOutcome,
    CertifyResolution,
    HandleReport,
    MessageEnvelope,
    RegistryStatus,
)

if TYPE_CHECKING:
    from certsigner.clients.signer import SigningClient
    from certsigner.relay.publishers import AckPublisher, CertifiedPublisher
    from certsigner.telemetry.metrics import MetricCollector

logger = structlog.get_logger().bind(system="relay.handler")

SIGNING_ERROR_PREFIX = "error occurred while signing/saving of certificate - "


def resolve_signing_result(status: int, registry_status: str, errmsg: str) -> CertifyResolution:
    """Map a completed signing call onto exactly one outcome."""
    if status != 200:
        return CertifyResolution(
            outcome=CertifyOutcome.DOMAIN_FAILURE,
            registry_status=RegistryStatus.UNSUCCESSFUL.value,
            error_msg=f"{SIGNING_ERROR_PREFIX}{status}",
        )
    if registry_status == RegistryStatus.SUCCESSFUL:
        outcome = CertifyOutcome.SUCCESS
    elif registry_status == RegistryStatus.UNSUCCESSFUL:
        outcome = CertifyOutcome.DOMAIN_FAILURE
    else:
        outcome = CertifyOutcome.UNMAPPED_STATUS
    return CertifyResolution(outcome=outcome, registry_status=registry_status, error_msg=errmsg)


class _Progress:
    """Signing resolution and publishes done so far for one uncommitted message."""

    __slots__ = ("resolution", "acked", "forwarded")

    def __init__(self, resolution: CertifyResolution) -> None:
        self.resolution = resolution
        self.acked = False
        self.forwarded = False

    @property
    def complete(self) -> bool:
        return self.acked and (
            self.forwarded or self.resolution.outcome is not CertifyOutcome.SUCCESS
        )


class CertifyHandler:
    """
    Handles one certify delivery end-to-end.

    Returns a HandleReport; the consumer commits the message unless a
    publish failed. A message handed in again after a failed publish is not
    signed a second time: its resolution is kept until every publish has
    gone out, and only the missing publishes are retried.
    """

    def __init__(
        self,
        signer: SigningClient,
        ack: AckPublisher,
        certified: CertifiedPublisher,
        metrics: MetricCollector,
    ) -> None:
        self._signer = signer
        self._ack = ack
        self._certified = certified
        self._metrics = metrics
        # message id -> progress, only while a publish is outstanding
        self._progress: dict[str, _Progress] = {}

    def forget(self, message_id: str) -> None:
        """Drop the kept resolution of a message the consumer gave up on."""
        self._progress.pop(message_id, None)

    async def handle(self, envelope: MessageEnvelope) -> HandleReport:
        upload_id = envelope.upload_id
        row_id = envelope.row_id
        log = logger.bind(msg_id=envelope.message_id, upload_id=upload_id, row_id=row_id)

        progress = self._progress.get(envelope.message_id)
        if progress is None:
            log.info("certify_received", value=envelope.text, delivery=envelope.delivery_count)
            self._metrics.record("messages_received")

            try:
                request = orjson.loads(envelope.value)
            except orjson.JSONDecodeError as exc:
                log.error("payload_parse_error", error=str(exc))
                self._metrics.record("messages_dropped")
                return HandleReport(outcome=CertifyOutcome.DROPPED)

            progress = _Progress(await self._sign(request, log))
            self._metrics.record(
                "certify_outcome", labels={"outcome": progress.resolution.outcome.value}
            )
        else:
            log.info(
                "certify_redrive",
                outcome=progress.resolution.outcome.value,
                acked=progress.acked,
                forwarded=progress.forwarded,
            )

        resolution = progress.resolution
        if not progress.acked:
            progress.acked = await self._ack.send(
                resolution.registry_status,
                upload_id,
                row_id,
                resolution.error_msg,
                source_id=envelope.message_id,
            )
        # The certified event never overtakes its acknowledgement.
        if (
            progress.acked
            and not progress.forwarded
            and resolution.outcome is CertifyOutcome.SUCCESS
        ):
            progress.forwarded = await self._certified.forward(envelope)

        if progress.complete:
            self._progress.pop(envelope.message_id, None)
        else:
            self._progress[envelope.message_id] = progress

        report = HandleReport(
            outcome=resolution.outcome,
            certified_sent=progress.forwarded,
            publish_failed=not progress.complete,
        )
        if resolution.outcome is not CertifyOutcome.UNMAPPED_STATUS:
            report.ack_sent = progress.acked and self._ack.enabled

        log.info(
            "certify_handled",
            outcome=resolution.outcome.value,
            error=resolution.error_msg or None,
            publish_failed=report.publish_failed,
        )
        return report

    async def _sign(self, request: Any, log: Any) -> CertifyResolution:
        try:
            result = await self._signer.sign_and_save(request)
        except SigningTransportError as exc:
            log.error("signing_transport_error", error=str(exc))
            return CertifyResolution(
                outcome=CertifyOutcome.TRANSPORT_FAILURE,
                registry_status=RegistryStatus.UNSUCCESSFUL.value,
                error_msg=str(exc),
            )

        log.info("signing_completed", status_code=result.status)
        params = result.params
        return resolve_signing_result(
            result.status,
            params.status if params else "",
            params.errmsg if params else "",
        )
