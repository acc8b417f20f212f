"""
certsigner -- Relay Error Hierarchy

Exceptions raised at the relay's two I/O boundaries: the signing service
and the broker.

Containment guide:
  SigningTransportError  -> FAILED acknowledgement, message not forwarded
  PublishError           -> retried by the publishers, then counted; the
                            source message stays uncommitted
  BrokerNotConnectedError -> programming error, propagates
"""

from __future__ import annotations


class RelayError(RuntimeError):
    """Base for all certificate relay errors."""


class SigningTransportError(RelayError):
    """
    The signing service could not be reached or did not answer in time.

    The message text is surfaced verbatim as the acknowledgement's errorMsg.
    """


class SigningResponseError(SigningTransportError):
    """
    The signing service answered 200 with a body that is not a signing
    result. Treated exactly like a transport failure.
    """


class PublishError(RelayError):
    """An XADD to an output stream failed."""

    def __init__(self, topic: str, message: str) -> None:
        super().__init__(f"publish to {topic!r} failed: {message}")
        self.topic = topic


class BrokerNotConnectedError(RelayError):
    """The Redis client was used before connect() or after close()."""
