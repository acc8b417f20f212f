"""
certsigner -- Relay Types

Data types that flow through one certify round-trip: the broker delivery,
the signing service's answer, the explicit outcome of dispatching it, and
the acknowledgement event sent to the upload tracker.

Every instance is built per message and discarded once published.
"""

from __future__ import annotations

import enum

import orjson
from pydantic import BaseModel, Field, field_validator

UPLOAD_ID_HEADER = "uploadId"
ROW_ID_HEADER = "rowId"
SOURCE_ID_HEADER = "sourceId"


class RelayBaseModel(BaseModel):
    model_config = {"populate_by_name": True, "from_attributes": True}


# --- Enums -------------------------------------------------------------------


class RegistryStatus(enum.StrEnum):
    """Domain status strings returned by the signing/registry service."""

    SUCCESSFUL = "SUCCESSFUL"
    UNSUCCESSFUL = "UNSUCCESSFUL"


class AckStatus(enum.StrEnum):
    """Outbound statuses understood by the upload tracker."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class CertifyOutcome(enum.StrEnum):
    SUCCESS = "success"
    DOMAIN_FAILURE = "domain_failure"
    TRANSPORT_FAILURE = "transport_failure"
    # The registry answered 200 with a status that is neither sentinel.
    # No acknowledgement is sent and nothing is forwarded.
    UNMAPPED_STATUS = "unmapped_status"
    # Malformed payload; never reached the signing service.
    DROPPED = "dropped"


# --- Broker ------------------------------------------------------------------


class MessageEnvelope(RelayBaseModel):
    """One delivery from the certify stream."""

    stream: str
    message_id: str
    value: bytes
    headers: dict[str, str] = Field(default_factory=dict)
    delivery_count: int = 1

    def header(self, name: str) -> str:
        return self.headers.get(name) or ""

    @property
    def upload_id(self) -> str:
        return self.header(UPLOAD_ID_HEADER)

    @property
    def row_id(self) -> str:
        return self.header(ROW_ID_HEADER)

    @property
    def text(self) -> str:
        return self.value.decode("utf-8", errors="replace")


# --- Signing service ---------------------------------------------------------


class SigningParams(RelayBaseModel):
    status: str = ""
    errmsg: str = ""

    @field_validator("status", "errmsg", mode="before")
    @classmethod
    def _null_as_empty(cls, v: object) -> object:
        return "" if v is None else v


class SigningResult(RelayBaseModel):
    """
    The signing service's answer.

    ``params`` is only populated for a 200; nothing is assumed about the body
    of any other status.
    """

    status: int
    params: SigningParams | None = None

    @property
    def ok(self) -> bool:
        return self.status == 200


class CertifyResolution(RelayBaseModel):
    """What the handler decided for one signing call."""

    outcome: CertifyOutcome
    registry_status: str
    error_msg: str = ""


# --- Outbound ----------------------------------------------------------------


class AckEvent(RelayBaseModel):
    upload_id: str = Field(default="", alias="uploadId")
    row_id: str = Field(default="", alias="rowId")
    status: AckStatus
    error_msg: str = Field(default="", alias="errorMsg")

    def to_bytes(self) -> bytes:
        return orjson.dumps(self.model_dump(mode="json", by_alias=True))


class HandleReport(RelayBaseModel):
    """Per-message result, used by the consumer to decide on commit."""

    outcome: CertifyOutcome
    ack_sent: bool = False
    certified_sent: bool = False
    publish_failed: bool = False

    @property
    def committable(self) -> bool:
        return not self.publish_failed
