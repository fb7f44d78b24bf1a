"""
Response Factory — one error envelope per failure kind.

Wire responses carry only the rejection reason and a short text. Everything a
developer needs to diagnose the failure is logged locally, at debug level for
peer mistakes and at warning level for local infrastructure failures.
"""

from __future__ import annotations

import logging

from dataspace_negotiation.messages.factory import MessageFactory
from dataspace_negotiation.messages.schema import Envelope, MessageHeader, RejectionReason

logger = logging.getLogger(__name__)


class ResponseFactory:
    """Builds rejection envelopes for inbound messages."""

    def __init__(self, messages: MessageFactory) -> None:
        self.messages = messages

    def _reject(
        self, inbound: MessageHeader | None, reason: RejectionReason, text: str
    ) -> Envelope:
        return self.messages.rejection(inbound, reason, text)

    # ── Protocol shape ─────────────────────────────────────────

    def malformed_message(self, inbound: MessageHeader | None, detail: object = None) -> Envelope:
        logger.debug("Malformed message %s: %s", _id(inbound), detail)
        return self._reject(inbound, RejectionReason.MALFORMED_MESSAGE, "Malformed message.")

    def unsupported_message_type(self, inbound: MessageHeader, text: str) -> Envelope:
        logger.debug("Unsupported message type %s on %s", inbound.message_type, inbound.id)
        return self._reject(inbound, RejectionReason.MALFORMED_MESSAGE, text)

    def version_not_supported(self, inbound: MessageHeader, text: str) -> Envelope:
        logger.debug("Unsupported model version %s on %s", inbound.model_version, inbound.id)
        return self._reject(inbound, RejectionReason.VERSION_NOT_SUPPORTED, text)

    def missing_payload(self, inbound: MessageHeader, text: str) -> Envelope:
        logger.debug("Missing payload on %s: %s", inbound.id, text)
        return self._reject(inbound, RejectionReason.BAD_PARAMETERS, text)

    def invalid_payload(self, inbound: MessageHeader, detail: object = None) -> Envelope:
        logger.debug("Unreadable payload on %s: %s", inbound.id, detail)
        return self._reject(
            inbound, RejectionReason.BAD_PARAMETERS, "Invalid contract request payload."
        )

    def invalid_rules(self, inbound: MessageHeader, detail: object = None) -> Envelope:
        logger.debug("Invalid rules on %s: %s", inbound.id, detail)
        return self._reject(
            inbound, RejectionReason.MALFORMED_MESSAGE, "Invalid rules in message payload."
        )

    def missing_rules(self, inbound: MessageHeader) -> Envelope:
        logger.debug("Contract request %s carries no rules", inbound.id)
        return self._reject(
            inbound, RejectionReason.BAD_PARAMETERS, "Missing rules in contract request."
        )

    def missing_targets(self, inbound: MessageHeader) -> Envelope:
        logger.debug("Contract request %s has rules without target", inbound.id)
        return self._reject(
            inbound,
            RejectionReason.BAD_PARAMETERS,
            "Missing targets in rules of contract request.",
        )

    def unknown_correlation(self, inbound: MessageHeader) -> Envelope:
        logger.debug("No outbound message %s to correlate %s", inbound.correlation_message, inbound.id)
        return self._reject(
            inbound, RejectionReason.BAD_PARAMETERS, "Unknown correlation message."
        )

    # ── Contract content ───────────────────────────────────────

    def not_found(self, inbound: MessageHeader, element: str | None) -> Envelope:
        logger.debug("Element %s requested by %s not found", element, inbound.issuer_connector)
        return self._reject(inbound, RejectionReason.NOT_FOUND, "Requested element not found.")

    def contract_rejected(self, inbound: MessageHeader, text: str) -> Envelope:
        logger.debug("Contract request %s rejected: %s", inbound.id, text)
        return self.messages.contract_rejection(inbound, text)

    def missing_artifact(self, inbound: MessageHeader) -> Envelope:
        logger.debug("Artifact request %s names no artifact", inbound.id)
        return self._reject(inbound, RejectionReason.BAD_PARAMETERS, "Missing requested artifact.")

    def invalid_transfer_contract(self, inbound: MessageHeader) -> Envelope:
        logger.debug(
            "Artifact request %s names unknown agreement %s", inbound.id, inbound.transfer_contract
        )
        return self._reject(
            inbound, RejectionReason.BAD_PARAMETERS, "Missing or invalid transfer contract."
        )

    def resource_mismatch(self, inbound: MessageHeader) -> Envelope:
        logger.debug(
            "Agreement %s does not govern %s", inbound.transfer_contract, inbound.requested_artifact
        )
        return self._reject(inbound, RejectionReason.BAD_PARAMETERS, "Affected resource mismatch.")

    def not_authorized(self, inbound: MessageHeader, detail: str) -> Envelope:
        logger.debug("Access denied for %s: %s", inbound.issuer_connector, detail)
        return self._reject(inbound, RejectionReason.NOT_AUTHORIZED, "Policy restriction detected.")

    # ── Infrastructure ─────────────────────────────────────────

    def internal_error(
        self, inbound: MessageHeader | None, detail: object, text: str = "Internal error."
    ) -> Envelope:
        logger.warning("Internal error handling %s: %s", _id(inbound), detail)
        return self._reject(inbound, RejectionReason.INTERNAL_RECIPIENT_ERROR, text)


def _id(inbound: MessageHeader | None) -> str:
    return inbound.id if inbound is not None else "<unparsed>"
