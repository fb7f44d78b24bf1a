"""
Negotiation Message Schema — Pydantic models for message envelopes.

An envelope is a header plus an optional text payload. The header carries the
declared message type, the protocol model version, the issuer and the
correlation id of the message it answers. Wire encoding, signing and
transport belong to the MessageTransport collaborator; these models describe
content only.

Message kinds:
    DescriptionRequest   → DescriptionResponse
    ContractRequest      → ContractAgreement | ContractRejection
    ArtifactRequest      → ArtifactResponse | Rejection
    Notification         → MessageProcessedNotification
"""

from __future__ import annotations

import base64
import binascii
import enum
from datetime import datetime, timezone
from uuid import uuid4

from pydantic import BaseModel, Field


class MessageType(str, enum.Enum):
    """Message type tags understood by this connector."""

    DESCRIPTION_REQUEST = "ids:DescriptionRequestMessage"
    DESCRIPTION_RESPONSE = "ids:DescriptionResponseMessage"
    CONTRACT_REQUEST = "ids:ContractRequestMessage"
    CONTRACT_AGREEMENT = "ids:ContractAgreementMessage"
    CONTRACT_REJECTION = "ids:ContractRejectionMessage"
    ARTIFACT_REQUEST = "ids:ArtifactRequestMessage"
    ARTIFACT_RESPONSE = "ids:ArtifactResponseMessage"
    NOTIFICATION = "ids:NotificationMessage"
    MESSAGE_PROCESSED = "ids:MessageProcessedNotificationMessage"
    REJECTION = "ids:RejectionMessage"


class RejectionReason(str, enum.Enum):
    """Fixed rejection reasons sent to the remote peer."""

    BAD_PARAMETERS = "BAD_PARAMETERS"
    NOT_FOUND = "NOT_FOUND"
    NOT_AUTHORIZED = "NOT_AUTHORIZED"
    VERSION_NOT_SUPPORTED = "VERSION_NOT_SUPPORTED"
    MALFORMED_MESSAGE = "MALFORMED_MESSAGE"
    INTERNAL_RECIPIENT_ERROR = "INTERNAL_RECIPIENT_ERROR"


def new_message_id() -> str:
    return f"urn:uuid:{uuid4()}"


class MessageHeader(BaseModel):
    """Header of a negotiation message."""

    id: str = Field(default_factory=new_message_id)
    message_type: str = Field(description="Declared message type tag")
    model_version: str = Field(description="Protocol model version of the issuer")
    issuer_connector: str
    issued: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_message: str | None = Field(
        default=None, description="Id of the message this one answers"
    )
    recipient_connector: list[str] = Field(default_factory=list)
    security_token: str | None = None

    # Type-specific fields
    requested_element: str | None = None
    requested_artifact: str | None = None
    transfer_contract: str | None = None
    rejection_reason: RejectionReason | None = None
    rejection_text: str | None = None


class Envelope(BaseModel):
    """A header plus its payload."""

    header: MessageHeader
    payload: str | None = None

    @property
    def message_type(self) -> str:
        return self.header.message_type

    @property
    def is_rejection(self) -> bool:
        return self.header.message_type in (
            MessageType.REJECTION.value,
            MessageType.CONTRACT_REJECTION.value,
        )


def encode_data(data: bytes) -> str:
    """Artifact payloads travel base64-encoded."""
    return base64.b64encode(data).decode("ascii")


def decode_data(text: str) -> bytes:
    try:
        return base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise ValueError("Artifact payload is not valid base64") from exc
