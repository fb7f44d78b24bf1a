"""
Message Dispatcher — routes inbound envelopes to their handlers.

Routing looks only at the header: the protocol model version must be one the
connector accepts, and the declared message type must have a registered
handler. Payloads are never inspected here, and routing has no side effects.
"""

from __future__ import annotations

import enum
import logging
from typing import Callable

from dataspace_negotiation.config import ConnectorSettings
from dataspace_negotiation.messages.schema import Envelope, MessageType, RejectionReason

logger = logging.getLogger(__name__)

Handler = Callable[[Envelope], Envelope]


class DispatchRejection(str, enum.Enum):
    """Why an envelope could not be routed."""

    VERSION_NOT_SUPPORTED = "VERSION_NOT_SUPPORTED"
    UNSUPPORTED_TYPE = "UNSUPPORTED_TYPE"


# Wire reasons for routing failures; the wire enum has no unsupported-type entry
_WIRE_REASONS = {
    DispatchRejection.VERSION_NOT_SUPPORTED: (
        RejectionReason.VERSION_NOT_SUPPORTED,
        "Infomodel version not supported.",
    ),
    DispatchRejection.UNSUPPORTED_TYPE: (
        RejectionReason.MALFORMED_MESSAGE,
        "Unsupported message type.",
    ),
}


class DispatchFailure(Exception):
    """Raised when an envelope cannot be routed to a handler."""

    def __init__(self, rejection: DispatchRejection, message_type: str | None) -> None:
        super().__init__(f"{rejection.value}: {message_type}")
        self.rejection = rejection
        self.message_type = message_type

    @property
    def wire_reason(self) -> RejectionReason:
        return _WIRE_REASONS[self.rejection][0]

    @property
    def wire_text(self) -> str:
        return _WIRE_REASONS[self.rejection][1]


class MessageDispatcher:
    """
    Stateless router from message type to handler.

    Usage:
        dispatcher = MessageDispatcher(settings)
        dispatcher.register(MessageType.CONTRACT_REQUEST, provider.handle_contract_request)
        handler = dispatcher.route(envelope)
    """

    def __init__(self, settings: ConnectorSettings) -> None:
        self.settings = settings
        self._handlers: dict[str, Handler] = {}

    def register(self, message_type: MessageType, handler: Handler) -> None:
        """
        Register the handler for a message type.

        Raises:
            ValueError: If the type already has a handler.
        """
        if message_type.value in self._handlers:
            raise ValueError(f"Handler already registered for {message_type.value}")
        self._handlers[message_type.value] = handler

    @property
    def registered_types(self) -> list[str]:
        return sorted(self._handlers)

    def route(self, envelope: Envelope) -> Handler:
        """
        Select the handler for an envelope.

        Raises:
            DispatchFailure: If the model version or message type is not supported.
        """
        header = envelope.header
        if not self.settings.supports_model_version(header.model_version):
            logger.debug(
                "Rejecting %s: model version %s not in %s",
                header.id, header.model_version, self.settings.inbound_model_versions,
            )
            raise DispatchFailure(DispatchRejection.VERSION_NOT_SUPPORTED, header.message_type)

        handler = self._handlers.get(header.message_type)
        if handler is None:
            logger.debug("Rejecting %s: no handler for %s", header.id, header.message_type)
            raise DispatchFailure(DispatchRejection.UNSUPPORTED_TYPE, header.message_type)
        return handler

    def dispatch(self, envelope: Envelope) -> Envelope:
        """Route an envelope and return its handler's response."""
        return self.route(envelope)(envelope)
