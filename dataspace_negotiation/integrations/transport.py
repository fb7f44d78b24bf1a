"""
Message transports.

- LocalTransport       — in-process delivery to registered connectors, used
                          for loopback deployments and end-to-end tests
- HttpMessageTransport — POSTs envelopes as JSON with httpx

Both raise TransportError for anything that prevents a response from
arriving, so callers never see httpx exceptions.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

import httpx
from pydantic import ValidationError

from dataspace_negotiation.integrations.collaborators import TransportError
from dataspace_negotiation.messages.schema import Envelope

logger = logging.getLogger(__name__)

RawHandler = Callable[[str], str]


class LocalTransport:
    """
    Delivers envelopes to in-process connectors.

    Envelopes are serialized on the way in and out, so receivers see exactly
    what they would see over the wire.

    Usage:
        transport = LocalTransport()
        transport.register(provider.connector_id, provider.handle_json)
    """

    def __init__(self) -> None:
        self._routes: dict[str, RawHandler] = {}
        self._lock = threading.Lock()
        self.delivered: list[tuple[str, Envelope]] = []

    def register(self, address: str, handler: RawHandler) -> None:
        with self._lock:
            self._routes[address] = handler

    def send(self, envelope: Envelope, recipient: str) -> Envelope:
        with self._lock:
            handler = self._routes.get(recipient)
            self.delivered.append((recipient, envelope))
        if handler is None:
            raise TransportError(f"No connector registered at {recipient}")
        raw = handler(envelope.model_dump_json())
        try:
            return Envelope.model_validate_json(raw)
        except ValidationError as exc:
            raise TransportError(f"Unreadable response from {recipient}") from exc


class HttpMessageTransport:
    """
    Sends envelopes to remote connectors over HTTP.

    Each envelope is POSTed as JSON to the recipient URL; the response body
    must be the response envelope.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.timeout = timeout
        self._headers = {"Content-Type": "application/json", **(headers or {})}
        self._transport = transport
        self._client: httpx.Client | None = None

    def _ensure_client(self) -> httpx.Client:
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
                headers=self._headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        if self._client and not self._client.is_closed:
            self._client.close()

    def send(self, envelope: Envelope, recipient: str) -> Envelope:
        client = self._ensure_client()
        try:
            resp = client.post(recipient, content=envelope.model_dump_json())
            resp.raise_for_status()
        except httpx.TimeoutException as exc:
            raise TransportError(f"Timed out sending {envelope.header.id} to {recipient}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Failed to send {envelope.header.id} to {recipient}: {exc}") from exc

        try:
            return Envelope.model_validate_json(resp.content)
        except ValidationError as exc:
            raise TransportError(f"Unreadable response from {recipient}") from exc
