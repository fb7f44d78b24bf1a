"""
Message Factory — consistent envelope construction.

Every outbound envelope carries the local connector as issuer, the configured
outbound model version and a fresh security token. Every response correlates
to the id of the message that triggered it and is addressed to its issuer.
"""

from __future__ import annotations

import json
from typing import Any

from dataspace_negotiation.config import ConnectorSettings
from dataspace_negotiation.integrations.collaborators import IdentityProvider
from dataspace_negotiation.messages.schema import (
    Envelope,
    MessageHeader,
    MessageType,
    RejectionReason,
    encode_data,
)
from dataspace_negotiation.policy.schema import ContractAgreement, ContractRequest


class MessageFactory:
    """Builds request and response envelopes for the local connector."""

    def __init__(self, settings: ConnectorSettings, identity: IdentityProvider) -> None:
        self.settings = settings
        self.identity = identity

    def header(
        self,
        message_type: MessageType,
        recipient: str | None = None,
        correlation: str | None = None,
        **fields: Any,
    ) -> MessageHeader:
        return MessageHeader(
            message_type=message_type.value,
            model_version=self.settings.outbound_model_version,
            issuer_connector=self.settings.connector_id,
            correlation_message=correlation,
            recipient_connector=[recipient] if recipient else [],
            security_token=self.identity.current_token(),
            **fields,
        )

    # ── Requests ────────────────────────────────────────────────

    def description_request(self, recipient: str, element: str | None = None) -> Envelope:
        return Envelope(
            header=self.header(
                MessageType.DESCRIPTION_REQUEST, recipient, requested_element=element
            )
        )

    def contract_request(self, recipient: str, request: ContractRequest) -> Envelope:
        return Envelope(
            header=self.header(MessageType.CONTRACT_REQUEST, recipient),
            payload=request.model_dump_json(),
        )

    def artifact_request(
        self,
        recipient: str,
        artifact_id: str,
        transfer_contract: str | None,
        correlation: str | None = None,
    ) -> Envelope:
        return Envelope(
            header=self.header(
                MessageType.ARTIFACT_REQUEST,
                recipient,
                correlation,
                requested_artifact=artifact_id,
                transfer_contract=transfer_contract,
            )
        )

    def notification(self, recipient: str, content: dict[str, Any]) -> Envelope:
        return Envelope(
            header=self.header(MessageType.NOTIFICATION, recipient),
            payload=json.dumps(content, sort_keys=True, default=str),
        )

    # ── Responses ───────────────────────────────────────────────

    def _reply(self, inbound: MessageHeader, message_type: MessageType, **fields: Any) -> MessageHeader:
        return self.header(
            message_type, inbound.issuer_connector, inbound.id, **fields
        )

    def description_response(self, inbound: MessageHeader, description: dict[str, Any]) -> Envelope:
        return Envelope(
            header=self._reply(inbound, MessageType.DESCRIPTION_RESPONSE),
            payload=json.dumps(description, sort_keys=True, default=str),
        )

    def contract_agreement(self, inbound: MessageHeader, agreement: ContractAgreement) -> Envelope:
        return Envelope(
            header=self._reply(
                inbound, MessageType.CONTRACT_AGREEMENT, transfer_contract=agreement.id
            ),
            payload=agreement.model_dump_json(),
        )

    def contract_rejection(self, inbound: MessageHeader, text: str) -> Envelope:
        return Envelope(
            header=self._reply(
                inbound,
                MessageType.CONTRACT_REJECTION,
                rejection_reason=RejectionReason.BAD_PARAMETERS,
                rejection_text=text,
            )
        )

    def artifact_response(self, inbound: MessageHeader, data: bytes) -> Envelope:
        return Envelope(
            header=self._reply(
                inbound,
                MessageType.ARTIFACT_RESPONSE,
                transfer_contract=inbound.transfer_contract,
            ),
            payload=encode_data(data),
        )

    def message_processed(self, inbound: MessageHeader) -> Envelope:
        return Envelope(
            header=self._reply(inbound, MessageType.MESSAGE_PROCESSED),
            payload="Message received.",
        )

    def rejection(
        self,
        inbound: MessageHeader | None,
        reason: RejectionReason,
        text: str,
    ) -> Envelope:
        """Error response; correlates to the inbound message when one was parsed."""
        if inbound is None:
            header = self.header(
                MessageType.REJECTION, rejection_reason=reason, rejection_text=text
            )
        else:
            header = self._reply(
                inbound, MessageType.REJECTION, rejection_reason=reason, rejection_text=text
            )
        return Envelope(header=header)
