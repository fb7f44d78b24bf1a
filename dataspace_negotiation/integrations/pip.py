"""
HTTP policy information point client.

Asks an external service for one runtime fact (an access count or the
current time) on behalf of the constraint evaluator. Any failure to obtain
an answer is a PipUnavailableError, which the evaluator treats as a denial.
"""

from __future__ import annotations

import logging

import httpx

from dataspace_negotiation.integrations.collaborators import PipUnavailableError
from dataspace_negotiation.policy.schema import LeftOperand

logger = logging.getLogger(__name__)


class HttpPolicyInformationPoint:
    """GETs ``<endpoint>?leftOperand=...&agreement=...&artifact=...`` and returns the body."""

    def __init__(self, timeout: float = 5.0, transport: httpx.BaseTransport | None = None) -> None:
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.Client | None = None

    def _ensure_client(self) -> httpx.Client:
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(timeout=self.timeout, transport=self._transport)
        return self._client

    def close(self) -> None:
        if self._client and not self._client.is_closed:
            self._client.close()

    def fetch(
        self,
        endpoint: str,
        left_operand: LeftOperand,
        agreement_id: str,
        artifact_id: str,
    ) -> str:
        client = self._ensure_client()
        try:
            resp = client.get(
                endpoint,
                params={
                    "leftOperand": left_operand.value,
                    "agreement": agreement_id,
                    "artifact": artifact_id,
                },
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("PIP %s unavailable for %s: %s", endpoint, left_operand.value, exc)
            raise PipUnavailableError(f"PIP {endpoint} unavailable") from exc

        value = resp.text.strip()
        if not value:
            raise PipUnavailableError(f"PIP {endpoint} returned an empty answer")
        return value
