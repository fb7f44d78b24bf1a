"""
Negotiation Core — the single inbound entry point of a connector.

Wires the dispatcher, the provider and consumer handlers, the constraint
evaluator and the ledger together. ``handle`` takes a parsed envelope,
``handle_json`` a raw message; both always return a response, never raise.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from pydantic import ValidationError

from dataspace_negotiation.config import ConnectorSettings
from dataspace_negotiation.integrations.collaborators import (
    IdentityProvider,
    MessageTransport,
    PolicyInformationPoint,
    ResourceCatalog,
)
from dataspace_negotiation.ledger.service import AgreementLedger
from dataspace_negotiation.messages.dispatcher import (
    DispatchFailure,
    DispatchRejection,
    MessageDispatcher,
)
from dataspace_negotiation.messages.factory import MessageFactory
from dataspace_negotiation.messages.schema import Envelope, MessageType
from dataspace_negotiation.negotiation.consumer import ConsumerNegotiation, ConsumerSession
from dataspace_negotiation.negotiation.provider import ProviderNegotiation
from dataspace_negotiation.negotiation.responses import ResponseFactory
from dataspace_negotiation.policy.constraints import ConstraintEvaluator

logger = logging.getLogger(__name__)


class NegotiationCore:
    """
    A connector's negotiation engine.

    Usage:
        core = NegotiationCore(settings, catalog, ledger, transport, identity)
        response = core.handle(envelope)
        session = core.session(provider_url)
    """

    def __init__(
        self,
        settings: ConnectorSettings,
        catalog: ResourceCatalog,
        ledger: AgreementLedger,
        transport: MessageTransport,
        identity: IdentityProvider,
        pip: PolicyInformationPoint | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings
        self.ledger = ledger
        self.messages = MessageFactory(settings, identity)
        self.responses = ResponseFactory(self.messages)
        self.evaluator = ConstraintEvaluator(pip)

        self.provider = ProviderNegotiation(
            settings, catalog, ledger, self.evaluator, transport,
            self.messages, self.responses, clock=clock,
        )
        self.consumer = ConsumerNegotiation(
            settings, catalog, ledger, transport, self.messages, self.responses,
        )

        self.dispatcher = MessageDispatcher(settings)
        self.dispatcher.register(MessageType.DESCRIPTION_REQUEST, self.provider.handle_description_request)
        self.dispatcher.register(MessageType.CONTRACT_REQUEST, self.provider.handle_contract_request)
        self.dispatcher.register(MessageType.ARTIFACT_REQUEST, self.provider.handle_artifact_request)
        self.dispatcher.register(MessageType.NOTIFICATION, self.provider.handle_notification)
        self.dispatcher.register(MessageType.CONTRACT_AGREEMENT, self.consumer.handle_contract_agreement)

    @property
    def connector_id(self) -> str:
        return self.settings.connector_id

    def session(self, recipient: str, provider_id: str | None = None) -> ConsumerSession:
        """Start a consumer-side negotiation with a remote provider."""
        return self.consumer.session(recipient, provider_id)

    def handle(self, envelope: Envelope) -> Envelope:
        """Route an inbound envelope and return the response envelope."""
        header = envelope.header
        try:
            handler = self.dispatcher.route(envelope)
        except DispatchFailure as exc:
            if exc.rejection == DispatchRejection.VERSION_NOT_SUPPORTED:
                return self.responses.version_not_supported(header, exc.wire_text)
            return self.responses.unsupported_message_type(header, exc.wire_text)

        try:
            return handler(envelope)
        except Exception as exc:
            logger.exception("Unhandled error processing %s %s", header.message_type, header.id)
            return self.responses.internal_error(header, exc)

    def handle_json(self, raw: str | bytes) -> str:
        """Parse a raw message, handle it and return the serialized response."""
        try:
            envelope = Envelope.model_validate_json(raw)
        except ValidationError as exc:
            response = self.responses.malformed_message(None, exc)
        else:
            response = self.handle(envelope)
        return response.model_dump_json()
