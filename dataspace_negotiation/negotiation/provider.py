"""
Provider Negotiation — the provider side of the contract negotiation protocol.

Implements the provider's message handlers:
1. DescriptionRequest — describe one catalog element or the whole catalog
2. ContractRequest    — validate, match against offers, persist an agreement
3. ArtifactRequest    — gate access on the agreed rules, deliver, count
4. Notification       — acknowledge

A contract request moves through
AWAITING_REQUEST → VALIDATING_OFFER → ACCEPTED | REJECTED, an artifact request
through AWAITING_ARTIFACT_REQUEST → GRANTED | DENIED. The state lives on a
NegotiationContext created per inbound message; nothing is shared between
requests except the ledger.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable
from uuid import uuid4

from pydantic import ValidationError

from dataspace_negotiation.config import ConnectorSettings
from dataspace_negotiation.integrations.collaborators import (
    CatalogNotFoundError,
    CollaboratorError,
    MessageTransport,
    ResourceCatalog,
)
from dataspace_negotiation.ledger.service import (
    AgreementLedger,
    LedgerPersistenceError,
    derive_dedup_key,
)
from dataspace_negotiation.messages.factory import MessageFactory
from dataspace_negotiation.messages.schema import Envelope
from dataspace_negotiation.negotiation.responses import ResponseFactory
from dataspace_negotiation.policy.constraints import (
    AccessDecision,
    ConstraintEvaluator,
    PolicyParseError,
    as_utc,
)
from dataspace_negotiation.policy.matcher import match
from dataspace_negotiation.policy.schema import (
    ContractAgreement,
    ContractOffer,
    ContractRequest,
    bind_parties,
)

logger = logging.getLogger(__name__)


class ProviderState(str, enum.Enum):
    """States of one provider-side exchange."""

    AWAITING_REQUEST = "awaiting_request"
    VALIDATING_OFFER = "validating_offer"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    AWAITING_ARTIFACT_REQUEST = "awaiting_artifact_request"
    GRANTED = "granted"
    DENIED = "denied"


@dataclass
class NegotiationContext:
    """Transient state of one inbound exchange. Never persisted."""

    message_id: str
    issuer: str
    target: str | None = None
    state: ProviderState = ProviderState.AWAITING_REQUEST
    history: list[ProviderState] = field(default_factory=list)

    def transition(self, state: ProviderState) -> None:
        self.history.append(self.state)
        logger.info(
            "Negotiation %s: %s → %s (issuer=%s target=%s)",
            self.message_id, self.state.value, state.value, self.issuer, self.target,
        )
        self.state = state


def _is_vocabulary_error(exc: ValidationError) -> bool:
    """Whether validation failed on an out-of-vocabulary enumeration value."""
    return any(error["type"] == "enum" for error in exc.errors())


class ProviderNegotiation:
    """
    Provider-side message handlers.

    Every handler takes the inbound envelope and returns the response
    envelope; failures never escape as exceptions, they are answered with a
    rejection built by the ResponseFactory.
    """

    def __init__(
        self,
        settings: ConnectorSettings,
        catalog: ResourceCatalog,
        ledger: AgreementLedger,
        evaluator: ConstraintEvaluator,
        transport: MessageTransport,
        messages: MessageFactory,
        responses: ResponseFactory,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings
        self.catalog = catalog
        self.ledger = ledger
        self.evaluator = evaluator
        self.transport = transport
        self.messages = messages
        self.responses = responses
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return as_utc(self._clock())

    # ── Description ─────────────────────────────────────────────

    def handle_description_request(self, envelope: Envelope) -> Envelope:
        header = envelope.header
        element = header.requested_element
        try:
            if element:
                description = self.catalog.resolve(element)
            else:
                description = self.catalog.self_description()
        except CatalogNotFoundError:
            return self.responses.not_found(header, element)
        except (CollaboratorError, TimeoutError) as exc:
            return self.responses.internal_error(header, exc)
        return self.messages.description_response(header, description)

    # ── Contract negotiation ────────────────────────────────────

    def handle_contract_request(self, envelope: Envelope) -> Envelope:
        """
        Validate a contract request and answer with an agreement or a rejection.

        Agreement creation is idempotent: replaying an identical request
        returns the agreement created the first time.
        """
        header = envelope.header
        issuer = header.issuer_connector
        context = NegotiationContext(message_id=header.id, issuer=issuer)
        context.transition(ProviderState.VALIDATING_OFFER)
        negotiate = self.settings.policy_negotiation_enabled

        if not envelope.payload or not envelope.payload.strip():
            context.transition(ProviderState.REJECTED)
            return self.responses.missing_payload(header, "Missing contract request.")

        try:
            request = ContractRequest.model_validate_json(envelope.payload)
        except ValidationError as exc:
            context.transition(ProviderState.REJECTED)
            if _is_vocabulary_error(exc):
                return self.responses.invalid_rules(header, exc)
            return self.responses.invalid_payload(header, exc)

        if not request.rules:
            context.transition(ProviderState.REJECTED)
            return self.responses.missing_rules(header)
        if any(rule.target is None for rule in request.rules):
            context.transition(ProviderState.REJECTED)
            return self.responses.missing_targets(header)

        try:
            self.evaluator.parse_rules(request.rules)
        except PolicyParseError as exc:
            context.transition(ProviderState.REJECTED)
            return self.responses.invalid_rules(header, exc)

        offers: dict[str, list[ContractOffer]] = {}
        for target in request.targets:
            context.target = target
            try:
                offers[target] = self.catalog.offers_for(target)
            except CatalogNotFoundError:
                offers[target] = []
            except (CollaboratorError, TimeoutError) as exc:
                context.transition(ProviderState.REJECTED)
                return self.responses.internal_error(header, exc)
            if not offers[target]:
                context.transition(ProviderState.REJECTED)
                return self.responses.not_found(header, target)

        if negotiate:
            reason = self.mismatch_reason(request, issuer, offers)
            if reason is not None:
                context.transition(ProviderState.REJECTED)
                return self.responses.contract_rejected(header, reason)

        now = self.now()
        end = as_utc(request.contract_end) if request.contract_end else (
            now + timedelta(days=self.settings.contract_validity_days)
        )
        if end <= now:
            context.transition(ProviderState.REJECTED)
            return self.responses.contract_rejected(header, "Requested contract end lies in the past.")

        rules = bind_parties(request.rules, assigner=self.settings.connector_id, assignee=issuer)
        agreement = ContractAgreement(
            id=f"{self.settings.agreements_base_uri.rstrip('/')}/{uuid4()}",
            provider=self.settings.connector_id,
            consumer=issuer,
            contract_date=now,
            contract_start=now,
            contract_end=end,
            rules=rules,
        )

        try:
            stored, created = self.ledger.create_agreement(
                agreement, derive_dedup_key(issuer, request.targets, rules)
            )
        except LedgerPersistenceError as exc:
            context.transition(ProviderState.REJECTED)
            return self.responses.internal_error(header, exc)

        context.transition(ProviderState.ACCEPTED)
        logger.info(
            "Contract agreement %s for %s (%s)",
            stored.id, issuer, "created" if created else "replayed",
        )
        return self.messages.contract_agreement(header, stored)

    def mismatch_reason(
        self,
        request: ContractRequest,
        issuer: str,
        offers: dict[str, list[ContractOffer]],
    ) -> str | None:
        """Human readable reason why the request does not fit the offers, or None."""
        if request.consumer is not None and request.consumer != issuer:
            return "Consumer does not match the message issuer."
        for rule in request.rules:
            if rule.assignee is not None and rule.assignee != issuer:
                return f"Invalid assignee on rule {rule.id or '<anonymous>'}."
        for target, candidates in offers.items():
            requested = request.rules_for(target)
            if not any(match(offer.rules_for(target), requested) for offer in candidates):
                return f"Rules do not match any contract offer for {target}."
        return None

    # ── Data delivery ───────────────────────────────────────────

    def handle_artifact_request(self, envelope: Envelope) -> Envelope:
        """
        Deliver an artifact if the named agreement allows one more access.

        The agreement lock is held from reading the access count until the
        count has been incremented, so concurrent requests cannot exceed the
        agreed number of accesses.
        """
        header = envelope.header
        artifact_id = header.requested_artifact
        context = NegotiationContext(
            message_id=header.id,
            issuer=header.issuer_connector,
            target=artifact_id,
            state=ProviderState.AWAITING_ARTIFACT_REQUEST,
        )

        if not artifact_id:
            return self.responses.missing_artifact(header)

        uri = header.transfer_contract
        agreement = self.ledger.get_agreement(uri) if uri else None
        if agreement is None:
            return self.responses.invalid_transfer_contract(header)
        if not self.ledger.governs(agreement.id, artifact_id):
            return self.responses.resource_mismatch(header)
        if agreement.consumer != header.issuer_connector:
            context.transition(ProviderState.DENIED)
            return self.responses.not_authorized(
                header, f"{header.issuer_connector} is not the consumer of {agreement.id}"
            )

        try:
            with self.ledger.access_guard(agreement.id, artifact_id) as slot:
                decision = self.evaluator.evaluate(
                    agreement, artifact_id, slot.count, now=self.now()
                )
                if not decision.is_allowed:
                    context.transition(ProviderState.DENIED)
                    return self.responses.not_authorized(header, decision.reason)
                data = self.catalog.artifact_data(artifact_id)
                slot.increment()
        except (PolicyParseError, CollaboratorError, TimeoutError, LedgerPersistenceError) as exc:
            return self.responses.internal_error(header, exc)

        context.transition(ProviderState.GRANTED)
        self._fulfil_duties(decision, agreement, artifact_id)
        return self.messages.artifact_response(header, data)

    def _fulfil_duties(
        self, decision: AccessDecision, agreement: ContractAgreement, artifact_id: str
    ) -> None:
        """Send NOTIFY duties and record LOG duties. Failures do not revoke delivery."""
        if decision.logging_required:
            logger.info(
                "Usage logged: agreement=%s artifact=%s consumer=%s",
                agreement.id, artifact_id, agreement.consumer,
            )
        for endpoint in decision.notify_endpoints:
            notification = self.messages.notification(endpoint, {
                "agreement": agreement.id,
                "artifact": artifact_id,
                "consumer": agreement.consumer,
                "accessed_at": self.now().isoformat(),
            })
            try:
                self.ledger.log_message(notification, endpoint)
                self.transport.send(notification, endpoint)
            except (CollaboratorError, LedgerPersistenceError) as exc:
                logger.warning(
                    "Usage notification to %s failed: agreement=%s artifact=%s error=%s",
                    endpoint, agreement.id, artifact_id, exc,
                )

    # ── Notifications ───────────────────────────────────────────

    def handle_notification(self, envelope: Envelope) -> Envelope:
        logger.info(
            "Notification %s received from %s", envelope.header.id, envelope.header.issuer_connector
        )
        return self.messages.message_processed(envelope.header)
