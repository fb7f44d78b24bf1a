"""
Consumer Negotiation — the consumer side of the contract negotiation protocol.

A ConsumerSession drives one negotiation with one provider:

    IDLE → DESCRIBE_SENT → REQUEST_SENT → AGREEMENT_RECEIVED | REJECTION_RECEIVED
         → ARTIFACT_REQUESTED → DATA_RECEIVED

Describing is optional, a rejected negotiation may be retried, and an
agreement may be used for several fetches. Any other order raises
NegotiationStateError.

Every outbound message is written to the ledger's message log before it is
sent, so an agreement pushed back later by the provider can be correlated
with the request that caused it.
"""

from __future__ import annotations

import enum
import json
import logging
from datetime import datetime
from typing import Any
from uuid import uuid4

from pydantic import ValidationError

from dataspace_negotiation.config import ConnectorSettings
from dataspace_negotiation.integrations.collaborators import MessageTransport, ResourceCatalog
from dataspace_negotiation.ledger.service import AgreementLedger, LedgerPersistenceError
from dataspace_negotiation.messages.factory import MessageFactory
from dataspace_negotiation.messages.schema import Envelope, MessageType, decode_data
from dataspace_negotiation.negotiation.errors import (
    ContractContentError,
    ContractRejectedError,
    NegotiationError,
    NegotiationStateError,
    RemoteRejectionError,
)
from dataspace_negotiation.negotiation.responses import ResponseFactory
from dataspace_negotiation.policy.matcher import (
    validate_rule_assignee,
    validate_rule_assigner,
    validate_rule_content,
)
from dataspace_negotiation.policy.schema import ContractAgreement, ContractRequest, bind_parties

logger = logging.getLogger(__name__)


class ConsumerState(str, enum.Enum):
    """States of a consumer-side negotiation."""

    IDLE = "idle"
    DESCRIBE_SENT = "describe_sent"
    REQUEST_SENT = "request_sent"
    AGREEMENT_RECEIVED = "agreement_received"
    REJECTION_RECEIVED = "rejection_received"
    ARTIFACT_REQUESTED = "artifact_requested"
    DATA_RECEIVED = "data_received"


def _rejection(response: Envelope) -> RemoteRejectionError:
    header = response.header
    reason = header.rejection_reason.value if header.rejection_reason else None
    return RemoteRejectionError(reason, header.rejection_text)


class ConsumerNegotiation:
    """Consumer-side services shared by all sessions of one connector."""

    def __init__(
        self,
        settings: ConnectorSettings,
        catalog: ResourceCatalog,
        ledger: AgreementLedger,
        transport: MessageTransport,
        messages: MessageFactory,
        responses: ResponseFactory,
    ) -> None:
        self.settings = settings
        self.catalog = catalog
        self.ledger = ledger
        self.transport = transport
        self.messages = messages
        self.responses = responses

    def session(self, recipient: str, provider_id: str | None = None) -> ConsumerSession:
        """Start a negotiation with the connector reachable at ``recipient``."""
        return ConsumerSession(self, recipient, provider_id)

    def send(self, envelope: Envelope, recipient: str) -> Envelope:
        """Log an outbound message, then deliver it and return the response."""
        self.ledger.log_message(envelope, recipient)
        logger.debug("Sending %s %s to %s", envelope.message_type, envelope.header.id, recipient)
        return self.transport.send(envelope, recipient)

    def build_request(
        self, rules: list[Any], contract_end: datetime | None = None
    ) -> ContractRequest:
        """A contract request binding every rule to the local connector."""
        connector_id = self.settings.connector_id
        return ContractRequest(
            consumer=connector_id,
            rules=bind_parties(rules, assignee=connector_id),
            contract_end=contract_end,
        )

    def validate_agreement(
        self,
        response: Envelope,
        request: ContractRequest,
        request_message_id: str,
        provider: str,
    ) -> ContractAgreement:
        """
        Check a received agreement against the request it answers.

        Raises:
            ContractContentError: If the agreement is not the one asked for.
        """
        header = response.header
        if header.correlation_message != request_message_id:
            raise ContractContentError(
                f"Agreement correlates to {header.correlation_message}, expected {request_message_id}"
            )
        if not response.payload:
            raise ContractContentError("Contract agreement message carries no agreement")
        try:
            agreement = ContractAgreement.model_validate_json(response.payload)
        except ValidationError as exc:
            raise ContractContentError("Contract agreement payload is not an agreement") from exc

        if header.transfer_contract and header.transfer_contract != agreement.id:
            raise ContractContentError("Transfer contract does not name the enclosed agreement")
        if agreement.consumer != self.settings.connector_id:
            raise ContractContentError(f"Agreement consumer is {agreement.consumer!r}")
        if agreement.provider != provider:
            raise ContractContentError(f"Agreement provider is {agreement.provider!r}")

        validate_rule_content(request.rules, agreement.rules)
        validate_rule_assigner(agreement.rules, provider)
        validate_rule_assignee(agreement.rules, self.settings.connector_id)
        return agreement

    def handle_contract_agreement(self, envelope: Envelope) -> Envelope:
        """
        Accept an agreement pushed by a provider and request the agreed artifact.

        The agreement must correlate to a contract request in the outbound
        message log.
        """
        header = envelope.header
        sent = self.ledger.get_message(header.correlation_message) if header.correlation_message else None
        if sent is None or sent.message_type != MessageType.CONTRACT_REQUEST.value or not sent.payload:
            return self.responses.unknown_correlation(header)

        request = ContractRequest.model_validate_json(sent.payload)
        recipients = sent.header.recipient_connector
        provider = recipients[0] if recipients else header.issuer_connector
        try:
            agreement = self.validate_agreement(envelope, request, sent.header.id, provider)
            self.ledger.save_agreement(agreement)
        except ContractContentError as exc:
            return self.responses.contract_rejected(header, str(exc))
        except LedgerPersistenceError as exc:
            return self.responses.internal_error(header, exc)

        follow_up = self.messages.artifact_request(
            header.issuer_connector, request.targets[0], agreement.id, correlation=header.id
        )
        try:
            self.ledger.log_message(follow_up, header.issuer_connector)
        except LedgerPersistenceError as exc:
            return self.responses.internal_error(header, exc)
        logger.info("Agreement %s accepted, requesting %s", agreement.id, request.targets[0])
        return follow_up


class ConsumerSession:
    """
    One negotiation with one provider.

    Usage:
        session = core.session("https://provider.example.org/connector")
        session.describe()
        agreement_id = session.negotiate(offer.rules)
        data = session.fetch(artifact_id)
    """

    def __init__(
        self, negotiation: ConsumerNegotiation, recipient: str, provider_id: str | None = None
    ) -> None:
        self.negotiation = negotiation
        self.recipient = recipient
        self.provider_id = provider_id or recipient
        self.state = ConsumerState.IDLE
        self.history: list[ConsumerState] = []

        self.description_id: str | None = None
        self.request: ContractRequest | None = None
        self.agreement: ContractAgreement | None = None
        self.agreement_message_id: str | None = None
        self.local_artifact_id: str | None = None

    def _require(self, *states: ConsumerState) -> None:
        if self.state not in states:
            raise NegotiationStateError(
                f"Cannot proceed from {self.state.value}; "
                f"expected one of {', '.join(s.value for s in states)}"
            )

    def _move(self, state: ConsumerState) -> None:
        self.history.append(self.state)
        logger.info(
            "Consumer session with %s: %s → %s", self.recipient, self.state.value, state.value
        )
        self.state = state

    def describe(self, element: str | None = None) -> str:
        """
        Request metadata and store it in the local catalog.

        Returns:
            The local id the description was stored under.
        """
        self._require(ConsumerState.IDLE, ConsumerState.DESCRIBE_SENT)
        previous = self.state
        self._move(ConsumerState.DESCRIBE_SENT)
        messages = self.negotiation.messages

        try:
            response = self.negotiation.send(
                messages.description_request(self.recipient, element), self.recipient
            )
            if response.message_type != MessageType.DESCRIPTION_RESPONSE.value:
                if response.is_rejection:
                    raise _rejection(response)
                raise NegotiationError(f"Unexpected response {response.message_type}")
            try:
                description = json.loads(response.payload or "")
            except json.JSONDecodeError as exc:
                raise NegotiationError("Description response is not JSON") from exc
        except Exception:
            self._move(previous)
            raise

        local_id = str(uuid4())
        self.negotiation.catalog.store_description(local_id, description)
        self.description_id = local_id
        return local_id

    def negotiate(self, rules: list[Any], contract_end: datetime | None = None) -> str:
        """
        Propose rules to the provider and store the resulting agreement.

        Returns:
            The agreement id.

        Raises:
            ContractContentError: If the received agreement does not match the request.
            ContractRejectedError: If the provider rejected the request.
            RemoteRejectionError: If the provider answered with an error.
        """
        self._require(ConsumerState.IDLE, ConsumerState.DESCRIBE_SENT, ConsumerState.REJECTION_RECEIVED)
        negotiation = self.negotiation
        request = negotiation.build_request(rules, contract_end)
        envelope = negotiation.messages.contract_request(self.recipient, request)
        self.request = request
        self._move(ConsumerState.REQUEST_SENT)

        try:
            response = negotiation.send(envelope, self.recipient)
        except Exception:
            self._move(ConsumerState.REJECTION_RECEIVED)
            raise

        message_type = response.message_type
        if message_type == MessageType.CONTRACT_REJECTION.value:
            self._move(ConsumerState.REJECTION_RECEIVED)
            raise ContractRejectedError(response.header.rejection_text)
        if message_type == MessageType.REJECTION.value:
            self._move(ConsumerState.REJECTION_RECEIVED)
            raise _rejection(response)
        if message_type != MessageType.CONTRACT_AGREEMENT.value:
            self._move(ConsumerState.REJECTION_RECEIVED)
            raise ContractContentError(f"Unexpected response {message_type}")

        try:
            agreement = negotiation.validate_agreement(
                response, request, envelope.header.id, self.provider_id
            )
            negotiation.ledger.save_agreement(agreement)
        except (ContractContentError, LedgerPersistenceError):
            self._move(ConsumerState.REJECTION_RECEIVED)
            raise

        self.agreement = agreement
        self.agreement_message_id = response.header.id
        self._move(ConsumerState.AGREEMENT_RECEIVED)
        return agreement.id

    def fetch(self, artifact_id: str, local_artifact_id: str | None = None) -> bytes:
        """
        Request artifact data under the negotiated agreement.

        Returns:
            The artifact data, also stored in the local catalog.

        Raises:
            RemoteRejectionError: If the provider denied or failed the request.
            NegotiationStateError: If no agreement has been negotiated.
        """
        self._require(ConsumerState.AGREEMENT_RECEIVED, ConsumerState.DATA_RECEIVED)
        if self.agreement is None:
            raise NegotiationStateError("No agreement negotiated in this session")
        previous = self.state
        negotiation = self.negotiation
        envelope = negotiation.messages.artifact_request(
            self.recipient, artifact_id, self.agreement.id, correlation=self.agreement_message_id
        )
        self._move(ConsumerState.ARTIFACT_REQUESTED)

        try:
            response = negotiation.send(envelope, self.recipient)
            if response.message_type != MessageType.ARTIFACT_RESPONSE.value:
                if response.is_rejection:
                    raise _rejection(response)
                raise NegotiationError(f"Unexpected response {response.message_type}")
            try:
                data = decode_data(response.payload or "")
            except ValueError as exc:
                raise NegotiationError("Artifact response payload is unreadable") from exc
        except Exception:
            self._move(previous)
            raise

        local_id = local_artifact_id or str(uuid4())
        negotiation.catalog.store_artifact_data(local_id, data)
        self.local_artifact_id = local_id
        self._move(ConsumerState.DATA_RECEIVED)
        return data
