"""Static identity provider."""

from __future__ import annotations


class StaticIdentityProvider:
    """Attaches a fixed security token to every outbound message."""

    def __init__(self, token: str = "anonymous") -> None:
        self.token = token

    def current_token(self) -> str:
        return self.token
