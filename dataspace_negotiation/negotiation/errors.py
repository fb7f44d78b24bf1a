"""
Negotiation errors.

Raised on the consumer side when a remote answer is unacceptable, and by the
rule matcher when received contract content does not fit what was asked for.
The provider never lets these escape to the peer; they are turned into
rejection envelopes by the ResponseFactory.
"""

from __future__ import annotations


class NegotiationError(Exception):
    """Base class for contract negotiation failures."""
    pass


class ContractContentError(NegotiationError):
    """Raised when received contract content does not match what was requested."""
    pass


class ContractRejectedError(NegotiationError):
    """Raised when the remote provider answers with a contract rejection."""

    def __init__(self, reason: str | None) -> None:
        super().__init__(f"Contract rejected by provider: {reason or 'no reason given'}")
        self.reason = reason


class RemoteRejectionError(NegotiationError):
    """Raised when the remote connector answers with an error response."""

    def __init__(self, reason: str | None, text: str | None) -> None:
        message = f"Remote rejection {reason}"
        if text:
            message = f"{message}: {text}"
        super().__init__(message)
        self.reason = reason
        self.text = text


class NegotiationStateError(NegotiationError):
    """Raised when a consumer session step is called out of order."""
    pass
