"""
Tests for the consumer side of the negotiation protocol.

Two connectors talk to each other over the in-process transport.

Validates:
- The describe → negotiate → fetch sequence end to end
- Session state ordering
- Provider rejections and remote errors surface as exceptions
- Received agreements are checked against the request
- Pushed agreements are correlated through the outbound message log
"""

from __future__ import annotations

import json

import pytest

from dataspace_negotiation.config import ConnectorSettings
from dataspace_negotiation.integrations.catalog import InMemoryResourceCatalog
from dataspace_negotiation.integrations.identity import StaticIdentityProvider
from dataspace_negotiation.integrations.transport import LocalTransport
from dataspace_negotiation.ledger.service import AgreementLedger
from dataspace_negotiation.messages.schema import Envelope, MessageType, RejectionReason
from dataspace_negotiation.negotiation.consumer import ConsumerState
from dataspace_negotiation.negotiation.core import NegotiationCore
from dataspace_negotiation.negotiation.errors import (
    ContractContentError,
    ContractRejectedError,
    NegotiationStateError,
    RemoteRejectionError,
)
from dataspace_negotiation.policy.schema import (
    Constraint,
    ContractOffer,
    ContractRequest,
    Permission,
)

PROVIDER = "https://provider.example.org/connector"
CONSUMER = "https://consumer.example.org/connector"
RESOURCE = "https://provider.example.org/resources/weather"
ARTIFACT = "https://provider.example.org/artifacts/weather"
DATA = b'{"temperature": 21.5}'


def count_rule(limit: str = "2") -> Permission:
    return Permission(
        target=ARTIFACT,
        constraints=[Constraint(left_operand="COUNT", operator="LTEQ", right_operand=limit)],
    )


def build_core(connector_id: str, transport: LocalTransport, catalog: InMemoryResourceCatalog) -> NegotiationCore:
    settings = ConnectorSettings(
        connector_id=connector_id,
        agreements_base_uri=f"{connector_id.rsplit('/', 1)[0]}/api/agreements",
        database_url="sqlite://",
    )
    ledger = AgreementLedger(settings.database_url)
    ledger.initialize()
    core = NegotiationCore(settings, catalog, ledger, transport, StaticIdentityProvider())
    transport.register(connector_id, core.handle_json)
    return core


class TestConsumerSession:
    """Test a full negotiation between two connectors."""

    def setup_method(self):
        self.transport = LocalTransport()
        self.provider_catalog = InMemoryResourceCatalog("urn:catalog:provider")
        self.provider_catalog.add_resource(
            RESOURCE, "Weather", {ARTIFACT: DATA}, [ContractOffer(rules=[count_rule()])]
        )
        self.consumer_catalog = InMemoryResourceCatalog("urn:catalog:consumer")
        self.provider = build_core(PROVIDER, self.transport, self.provider_catalog)
        self.consumer = build_core(CONSUMER, self.transport, self.consumer_catalog)
        self.session = self.consumer.session(PROVIDER)

    def test_describe_stores_metadata(self):
        local_id = self.session.describe(RESOURCE)
        assert self.session.state == ConsumerState.DESCRIBE_SENT
        assert self.consumer_catalog.descriptions[local_id]["id"] == RESOURCE

    def test_describe_unknown_element(self):
        with pytest.raises(RemoteRejectionError) as info:
            self.session.describe("https://provider.example.org/resources/none")
        assert info.value.reason == RejectionReason.NOT_FOUND.value
        assert self.session.state == ConsumerState.IDLE

    def test_full_exchange(self):
        self.session.describe()
        agreement_id = self.session.negotiate([count_rule()])
        assert self.session.state == ConsumerState.AGREEMENT_RECEIVED
        assert self.consumer.ledger.get_agreement(agreement_id) is not None
        assert self.provider.ledger.get_agreement(agreement_id) is not None

        data = self.session.fetch(ARTIFACT, local_artifact_id="weather-copy")
        assert data == DATA
        assert self.session.state == ConsumerState.DATA_RECEIVED
        assert self.consumer_catalog.received_data["weather-copy"] == DATA

    def test_agreement_binds_both_parties(self):
        self.session.negotiate([count_rule()])
        agreement = self.session.agreement
        assert agreement.provider == PROVIDER
        assert agreement.consumer == CONSUMER
        assert all(r.assignee == CONSUMER and r.assigner == PROVIDER for r in agreement.rules)

    def test_fetch_before_agreement(self):
        with pytest.raises(NegotiationStateError):
            self.session.fetch(ARTIFACT)

    def test_describe_after_negotiation_out_of_order(self):
        self.session.negotiate([count_rule()])
        with pytest.raises(NegotiationStateError):
            self.session.describe()

    def test_access_limit_enforced_remotely(self):
        self.session.negotiate([count_rule("2")])
        self.session.fetch(ARTIFACT)
        self.session.fetch(ARTIFACT)
        with pytest.raises(RemoteRejectionError) as info:
            self.session.fetch(ARTIFACT)
        assert info.value.reason == RejectionReason.NOT_AUTHORIZED.value
        assert self.session.state == ConsumerState.DATA_RECEIVED

    def test_rejected_negotiation_can_be_retried(self):
        with pytest.raises(ContractRejectedError) as info:
            self.session.negotiate([count_rule("100")])
        assert info.value.reason
        assert self.session.state == ConsumerState.REJECTION_RECEIVED
        assert self.consumer.ledger.count_agreements() == 0

        self.session.negotiate([count_rule()])
        assert self.session.state == ConsumerState.AGREEMENT_RECEIVED

    def test_remote_error_response(self):
        with pytest.raises(RemoteRejectionError) as info:
            self.session.negotiate([Permission(target="https://provider.example.org/artifacts/none")])
        assert info.value.reason == RejectionReason.NOT_FOUND.value

    def test_outbound_messages_logged(self):
        self.session.negotiate([count_rule()])
        request_envelopes = [
            envelope for recipient, envelope in self.transport.delivered
            if envelope.message_type == MessageType.CONTRACT_REQUEST.value
        ]
        assert len(request_envelopes) == 1
        logged = self.consumer.ledger.get_message(request_envelopes[0].header.id)
        assert logged is not None
        assert logged.header.recipient_connector == [PROVIDER]

    def test_tampered_agreement_rejected(self):
        def tampering_provider(raw: str) -> str:
            response = Envelope.model_validate_json(self.provider.handle_json(raw))
            if response.message_type == MessageType.CONTRACT_AGREEMENT.value:
                value = json.loads(response.payload)
                value["rules"][0]["constraints"][0]["right_operand"] = "1000"
                response = response.model_copy(update={"payload": json.dumps(value)})
            return response.model_dump_json()

        self.transport.register(PROVIDER, tampering_provider)
        with pytest.raises(ContractContentError):
            self.session.negotiate([count_rule()])
        assert self.session.state == ConsumerState.REJECTION_RECEIVED
        assert self.consumer.ledger.count_agreements() == 0

    def test_agreement_from_unexpected_provider_rejected(self):
        session = self.consumer.session(PROVIDER, provider_id="https://other.example.org/connector")
        with pytest.raises(ContractContentError):
            session.negotiate([count_rule()])

    def test_retargeted_agreement_rejected(self):
        def retargeting_provider(raw: str) -> str:
            response = Envelope.model_validate_json(self.provider.handle_json(raw))
            if response.message_type == MessageType.CONTRACT_AGREEMENT.value:
                value = json.loads(response.payload)
                value["rules"][0]["target"] = "https://provider.example.org/artifacts/traffic"
                response = response.model_copy(update={"payload": json.dumps(value)})
            return response.model_dump_json()

        self.transport.register(PROVIDER, retargeting_provider)
        with pytest.raises(ContractContentError):
            self.session.negotiate([count_rule()])
        assert self.session.state == ConsumerState.REJECTION_RECEIVED
        assert self.consumer.ledger.count_agreements() == 0

    def test_fetch_without_agreement_in_session(self):
        self.session.state = ConsumerState.AGREEMENT_RECEIVED
        with pytest.raises(NegotiationStateError):
            self.session.fetch(ARTIFACT)
        assert self.transport.delivered == []


class TestPushedAgreement:
    """Test agreements delivered to the consumer's inbound handler."""

    def setup_method(self):
        self.transport = LocalTransport()
        catalog = InMemoryResourceCatalog()
        catalog.add_resource(RESOURCE, "Weather", {ARTIFACT: DATA}, [ContractOffer(rules=[count_rule()])])
        self.provider = build_core(PROVIDER, self.transport, catalog)
        self.consumer = build_core(CONSUMER, self.transport, InMemoryResourceCatalog())

    def _negotiate_without_session(self) -> Envelope:
        request = self.consumer.consumer.build_request([count_rule()])
        envelope = self.consumer.messages.contract_request(PROVIDER, request)
        return self.consumer.consumer.send(envelope, PROVIDER)

    def test_pushed_agreement_triggers_artifact_request(self):
        agreement_message = self._negotiate_without_session()
        follow_up = self.consumer.handle(agreement_message)

        assert follow_up.message_type == MessageType.ARTIFACT_REQUEST.value
        assert follow_up.header.requested_artifact == ARTIFACT
        assert follow_up.header.transfer_contract == agreement_message.header.transfer_contract
        assert follow_up.header.correlation_message == agreement_message.header.id
        assert self.consumer.ledger.get_agreement(agreement_message.header.transfer_contract) is not None

        delivered = self.provider.handle(follow_up)
        assert delivered.message_type == MessageType.ARTIFACT_RESPONSE.value

    def test_unknown_correlation_rejected(self):
        agreement_message = self._negotiate_without_session()
        agreement_message.header.correlation_message = "urn:uuid:never-sent"
        response = self.consumer.handle(agreement_message)
        assert response.header.rejection_reason == RejectionReason.BAD_PARAMETERS
        assert self.consumer.ledger.count_agreements() == 0

    def test_mismatching_pushed_agreement_rejected(self):
        agreement_message = self._negotiate_without_session()
        value = json.loads(agreement_message.payload)
        value["rules"][0]["constraints"] = []
        tampered = agreement_message.model_copy(update={"payload": json.dumps(value)})
        response = self.consumer.handle(tampered)
        assert response.message_type == MessageType.CONTRACT_REJECTION.value

    def test_request_payload_logged(self):
        self._negotiate_without_session()
        requests = [
            envelope for _, envelope in self.transport.delivered
            if envelope.message_type == MessageType.CONTRACT_REQUEST.value
        ]
        logged = self.consumer.ledger.get_message(requests[0].header.id)
        assert ContractRequest.model_validate_json(logged.payload).consumer == CONSUMER
