"""
In-memory resource catalog.

Holds offered resources with their artifacts and contract offers, and the
descriptions and data received from remote connectors. Used by tests and by
single-process deployments; a production catalog keeps these records in its
own store.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any

from dataspace_negotiation.integrations.collaborators import CatalogNotFoundError
from dataspace_negotiation.policy.schema import ContractOffer


@dataclass
class OfferedResource:
    """A resource with its artifacts and the offers governing them."""

    id: str
    title: str
    artifacts: dict[str, bytes] = field(default_factory=dict)
    offers: list[ContractOffer] = field(default_factory=list)

    def describe(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "artifacts": [
                {"id": artifact_id, "byte_size": len(data)}
                for artifact_id, data in self.artifacts.items()
            ],
            "contract_offers": [offer.model_dump(mode="json") for offer in self.offers],
        }


class InMemoryResourceCatalog:
    """Thread-safe dictionary-backed ResourceCatalog."""

    def __init__(self, catalog_id: str = "urn:catalog:local") -> None:
        self.catalog_id = catalog_id
        self.resources: dict[str, OfferedResource] = {}
        self.descriptions: dict[str, dict[str, Any]] = {}
        self.received_data: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def add_resource(
        self,
        resource_id: str,
        title: str,
        artifacts: dict[str, bytes],
        offers: list[ContractOffer],
    ) -> OfferedResource:
        resource = OfferedResource(
            id=resource_id,
            title=title,
            artifacts=dict(artifacts),
            offers=[o.model_copy(update={"resource_id": resource_id}) for o in offers],
        )
        with self._lock:
            self.resources[resource_id] = resource
        return resource

    # ── ResourceCatalog ────────────────────────────────────────

    def resolve(self, element_id: str) -> dict[str, Any]:
        with self._lock:
            resource = self.resources.get(element_id)
            if resource is not None:
                return resource.describe()
            for resource in self.resources.values():
                if element_id in resource.artifacts:
                    return {
                        "id": element_id,
                        "resource": resource.id,
                        "byte_size": len(resource.artifacts[element_id]),
                    }
        raise CatalogNotFoundError(element_id)

    def self_description(self) -> dict[str, Any]:
        with self._lock:
            return {
                "id": self.catalog_id,
                "resources": [r.describe() for r in self.resources.values()],
            }

    def offers_for(self, artifact_id: str) -> list[ContractOffer]:
        with self._lock:
            return [
                offer
                for resource in self.resources.values()
                if artifact_id in resource.artifacts
                for offer in resource.offers
            ]

    def artifact_data(self, artifact_id: str) -> bytes:
        with self._lock:
            for resource in self.resources.values():
                if artifact_id in resource.artifacts:
                    return resource.artifacts[artifact_id]
        raise CatalogNotFoundError(artifact_id)

    def store_description(self, local_id: str, description: dict[str, Any]) -> None:
        with self._lock:
            self.descriptions[local_id] = description

    def store_artifact_data(self, local_id: str, data: bytes) -> None:
        with self._lock:
            self.received_data[local_id] = data
