"""
Dataspace Negotiation — connector entrypoint.

Builds a NegotiationCore from configuration and serves it over standard
input and output: one JSON envelope per input line, one JSON response per
output line. Structured logs go to standard error.

Usage:
    python -m dataspace_negotiation.connector < requests.jsonl
"""

from __future__ import annotations

import logging
import sys
from typing import TextIO

import structlog

from dataspace_negotiation.config import ConnectorSettings, settings
from dataspace_negotiation.integrations.catalog import InMemoryResourceCatalog
from dataspace_negotiation.integrations.collaborators import (
    IdentityProvider,
    MessageTransport,
    PolicyInformationPoint,
    ResourceCatalog,
)
from dataspace_negotiation.integrations.identity import StaticIdentityProvider
from dataspace_negotiation.integrations.pip import HttpPolicyInformationPoint
from dataspace_negotiation.integrations.transport import HttpMessageTransport
from dataspace_negotiation.ledger.service import AgreementLedger
from dataspace_negotiation.negotiation.core import NegotiationCore

logger = logging.getLogger(__name__)


def configure_logging(config: ConnectorSettings = settings) -> None:
    """Configure structured logging."""
    logging.basicConfig(
        level=logging.getLevelName(config.log_level),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if config.log_format != "json"
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(config.log_level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def build_connector(
    config: ConnectorSettings = settings,
    catalog: ResourceCatalog | None = None,
    transport: MessageTransport | None = None,
    identity: IdentityProvider | None = None,
    pip: PolicyInformationPoint | None = None,
    ledger: AgreementLedger | None = None,
) -> NegotiationCore:
    """
    Assemble a connector, defaulting every collaborator to its reference implementation.

    The ledger schema is created if it does not exist.
    """
    if ledger is None:
        ledger = AgreementLedger(config.database_url)
    ledger.initialize()

    return NegotiationCore(
        settings=config,
        catalog=catalog if catalog is not None else InMemoryResourceCatalog(),
        ledger=ledger,
        transport=transport if transport is not None else HttpMessageTransport(
            timeout=config.transport_timeout_seconds
        ),
        identity=identity if identity is not None else StaticIdentityProvider(),
        pip=pip if pip is not None else HttpPolicyInformationPoint(
            timeout=config.pip_timeout_seconds
        ),
    )


def serve(core: NegotiationCore, source: TextIO, sink: TextIO) -> int:
    """Answer one envelope per non-empty input line. Returns the number handled."""
    handled = 0
    for line in source:
        if not line.strip():
            continue
        sink.write(core.handle_json(line) + "\n")
        sink.flush()
        handled += 1
    return handled


def main() -> None:
    """Connector main loop."""
    configure_logging()
    log = structlog.get_logger()

    log.info(
        "dataspace_negotiation.connector.starting",
        connector_id=settings.connector_id,
        model_version=settings.outbound_model_version,
        policy_negotiation=settings.policy_negotiation_enabled,
    )

    core = build_connector()
    log.info(
        "dataspace_negotiation.connector.ready",
        database_url=settings.database_url,
        message_types=core.dispatcher.registered_types,
    )

    try:
        handled = serve(core, sys.stdin, sys.stdout)
    except KeyboardInterrupt:
        log.info("dataspace_negotiation.connector.interrupted")
        return
    log.info("dataspace_negotiation.connector.stopped", messages_handled=handled)


if __name__ == "__main__":
    main()
