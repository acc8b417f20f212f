"""
certsigner — Relay

Public API:
  CertifyHandler      — per-message parse / sign / publish orchestration
  AckPublisher        — certify_ack events, gated by configuration
  CertifiedPublisher  — verbatim forward to the certified topic
"""

from certsigner.relay.handler import CertifyHandler, resolve_signing_result
from certsigner.relay.publishers import AckPublisher, CertifiedPublisher

__all__ = [
    "AckPublisher",
    "CertifiedPublisher",
    "CertifyHandler",
    "resolve_signing_result",
]
