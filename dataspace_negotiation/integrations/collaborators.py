"""
Collaborator interfaces consumed by the negotiation core.

The core never talks to storage of catalog records, the network, or a token
service directly. It goes through these protocols, and every failure a
collaborator reports is one of the error classes below so the core can keep
infrastructure failures distinguishable from authorization failures.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from dataspace_negotiation.messages.schema import Envelope
    from dataspace_negotiation.policy.schema import ContractOffer, LeftOperand


class CollaboratorError(Exception):
    """Raised when an external collaborator fails or times out."""
    pass


class CatalogNotFoundError(CollaboratorError):
    """Raised when the catalog does not know the requested element."""

    def __init__(self, element_id: str) -> None:
        super().__init__(f"Element not found: {element_id}")
        self.element_id = element_id


class TransportError(CollaboratorError):
    """Raised when a message could not be delivered or no response arrived."""
    pass


class PipUnavailableError(CollaboratorError):
    """Raised when a policy information point cannot supply a fact."""
    pass


@runtime_checkable
class ResourceCatalog(Protocol):
    """Catalog of offered resources, artifacts and their contract offers."""

    def resolve(self, element_id: str) -> dict[str, Any]:
        """Describe one element; raise CatalogNotFoundError if unknown."""
        ...

    def self_description(self) -> dict[str, Any]:
        """Describe the full catalog."""
        ...

    def offers_for(self, artifact_id: str) -> list[ContractOffer]:
        """Contract offers governing an artifact (empty if none)."""
        ...

    def artifact_data(self, artifact_id: str) -> bytes:
        """Payload of an artifact; raise CatalogNotFoundError if unknown."""
        ...

    def store_description(self, local_id: str, description: dict[str, Any]) -> None:
        """Persist metadata received from a remote connector."""
        ...

    def store_artifact_data(self, local_id: str, data: bytes) -> None:
        """Persist artifact data received from a remote connector."""
        ...


@runtime_checkable
class MessageTransport(Protocol):
    """Delivers an envelope to a recipient and returns the response envelope."""

    def send(self, envelope: Envelope, recipient: str) -> Envelope:
        ...


@runtime_checkable
class IdentityProvider(Protocol):
    """Supplies the security token attached to outbound messages."""

    def current_token(self) -> str:
        ...


@runtime_checkable
class PolicyInformationPoint(Protocol):
    """External fact source consulted during constraint evaluation."""

    def fetch(
        self,
        endpoint: str,
        left_operand: LeftOperand,
        agreement_id: str,
        artifact_id: str,
    ) -> str:
        ...
