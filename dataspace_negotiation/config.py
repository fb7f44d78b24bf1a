"""Dataspace Negotiation — Connector configuration via environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class ConnectorSettings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # ── Identity ───────────────────────────────────────────────
    connector_id: str = "https://connector.example.org/connector"
    agreements_base_uri: str = "https://connector.example.org/api/agreements"

    # ── Protocol ───────────────────────────────────────────────
    outbound_model_version: str = "4.0.0"
    inbound_model_versions: list[str] = ["4.0.0"]

    # ── Usage Control ──────────────────────────────────────────
    policy_negotiation_enabled: bool = True
    contract_validity_days: int = 365

    # ── Agreement Ledger ───────────────────────────────────────
    database_url: str = "sqlite:///./negotiation.db"

    # ── Collaborators ──────────────────────────────────────────
    pip_timeout_seconds: float = 5.0
    transport_timeout_seconds: float = 30.0

    # ── Logging ────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"

    def supports_model_version(self, version: str | None) -> bool:
        return version is not None and version in self.inbound_model_versions


settings = ConnectorSettings()
