"""
Tests for the provider side of the negotiation protocol.

Validates:
- Contract request validation and its rejection reasons
- Agreement creation, replay idempotence and party binding
- Artifact access gating: count limits, time windows, consumer identity
- Concurrent access never exceeds the agreed count
- Notification duties and infrastructure failures during delivery
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

from dataspace_negotiation.config import ConnectorSettings
from dataspace_negotiation.integrations.catalog import InMemoryResourceCatalog
from dataspace_negotiation.integrations.collaborators import CollaboratorError
from dataspace_negotiation.integrations.identity import StaticIdentityProvider
from dataspace_negotiation.integrations.transport import LocalTransport
from dataspace_negotiation.ledger.service import AgreementLedger
from dataspace_negotiation.messages.factory import MessageFactory
from dataspace_negotiation.messages.schema import (
    Envelope,
    MessageHeader,
    MessageType,
    RejectionReason,
    decode_data,
)
from dataspace_negotiation.policy.schema import (
    Action,
    Constraint,
    ContractAgreement,
    ContractOffer,
    ContractRequest,
    Duty,
    Permission,
    Prohibition,
    bind_parties,
)
from dataspace_negotiation.negotiation.core import NegotiationCore

PROVIDER = "https://provider.example.org/connector"
CONSUMER = "https://consumer.example.org/connector"
MALLORY = "https://mallory.example.org/connector"
AGREEMENTS = "https://provider.example.org/api/agreements"
RESOURCE = "https://provider.example.org/resources/weather"
ARTIFACT = "https://provider.example.org/artifacts/weather"
OTHER_ARTIFACT = "https://provider.example.org/artifacts/traffic"
NOTIFY_HOOK = "https://notify.example.org/hook"
DATA = b'{"temperature": 21.5}'
T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FailingCatalog(InMemoryResourceCatalog):
    def artifact_data(self, artifact_id: str) -> bytes:
        raise CollaboratorError("artifact store timed out")


def count_rule(limit: str = "3") -> Permission:
    return Permission(
        target=ARTIFACT,
        constraints=[Constraint(left_operand="COUNT", operator="LTEQ", right_operand=limit)],
    )


def interval_rule(start: datetime, end: datetime) -> Permission:
    return Permission(
        target=ARTIFACT,
        constraints=[
            Constraint(left_operand="POLICY_EVALUATION_TIME", operator="AFTER", right_operand=start.isoformat()),
            Constraint(left_operand="POLICY_EVALUATION_TIME", operator="BEFORE", right_operand=end.isoformat()),
        ],
    )


def notify_rule() -> Permission:
    return Permission(
        target=ARTIFACT,
        post_duties=[Duty(
            action=Action.NOTIFY,
            constraints=[Constraint(left_operand="ENDPOINT", operator="DEFINES_AS", right_operand=NOTIFY_HOOK)],
        )],
    )


class ProviderHarness:
    """A provider connector offering one artifact, plus a consumer-side message factory."""

    def __init__(
        self,
        rules,
        database_url: str = "sqlite://",
        catalog: InMemoryResourceCatalog | None = None,
        **overrides,
    ) -> None:
        self.settings = ConnectorSettings(
            connector_id=PROVIDER, agreements_base_uri=AGREEMENTS, database_url=database_url, **overrides,
        )
        self.catalog = catalog or InMemoryResourceCatalog()
        self.catalog.add_resource(
            RESOURCE, "Weather", {ARTIFACT: DATA, OTHER_ARTIFACT: b"traffic"}, [ContractOffer(rules=rules)],
        )
        self.ledger = AgreementLedger(database_url)
        self.ledger.initialize()
        self.transport = LocalTransport()
        self.clock = Clock(T0)
        self.core = NegotiationCore(
            self.settings, self.catalog, self.ledger, self.transport,
            StaticIdentityProvider(), clock=self.clock,
        )
        self.messages = {
            issuer: MessageFactory(ConnectorSettings(connector_id=issuer), StaticIdentityProvider())
            for issuer in (CONSUMER, MALLORY)
        }

    def contract_request(self, rules, issuer: str = CONSUMER, **fields) -> Envelope:
        request = ContractRequest(consumer=issuer, rules=bind_parties(rules, assignee=issuer), **fields)
        return self.messages[issuer].contract_request(PROVIDER, request)

    def raw_contract_request(self, payload: str | None) -> Envelope:
        envelope = self.messages[CONSUMER].contract_request(PROVIDER, ContractRequest())
        return envelope.model_copy(update={"payload": payload})

    def negotiate(self, rules, **fields) -> ContractAgreement:
        response = self.core.handle(self.contract_request(rules, **fields))
        assert response.message_type == MessageType.CONTRACT_AGREEMENT.value, response.header.rejection_text
        return ContractAgreement.model_validate_json(response.payload)

    def artifact_request(self, transfer_contract, artifact=ARTIFACT, issuer: str = CONSUMER) -> Envelope:
        return self.messages[issuer].artifact_request(PROVIDER, artifact, transfer_contract)


class TestContractRequest:
    """Test contract request validation."""

    def setup_method(self):
        self.harness = ProviderHarness([count_rule()])

    def _reason(self, response: Envelope) -> RejectionReason | None:
        return response.header.rejection_reason

    def test_missing_payload(self):
        response = self.harness.core.handle(self.harness.raw_contract_request(None))
        assert self._reason(response) == RejectionReason.BAD_PARAMETERS
        assert response.header.rejection_text == "Missing contract request."

    def test_unparsable_payload(self):
        response = self.harness.core.handle(self.harness.raw_contract_request("{not json"))
        assert self._reason(response) == RejectionReason.BAD_PARAMETERS

    def test_out_of_vocabulary_operand(self):
        payload = (
            '{"rules": [{"kind": "permission", "target": "%s", "constraints": '
            '[{"left_operand": "ABSOLUTE_SPATIAL_POSITION", "operator": "EQ", "right_operand": "x"}]}]}'
            % ARTIFACT
        )
        response = self.harness.core.handle(self.harness.raw_contract_request(payload))
        assert self._reason(response) == RejectionReason.MALFORMED_MESSAGE
        assert response.header.rejection_text == "Invalid rules in message payload."

    def test_no_rules(self):
        response = self.harness.core.handle(self.harness.raw_contract_request('{"rules": []}'))
        assert self._reason(response) == RejectionReason.BAD_PARAMETERS
        assert response.header.rejection_text == "Missing rules in contract request."

    def test_rule_without_target(self):
        response = self.harness.core.handle(self.harness.contract_request([Permission()]))
        assert self._reason(response) == RejectionReason.BAD_PARAMETERS
        assert response.header.rejection_text == "Missing targets in rules of contract request."

    def test_uncompilable_rule(self):
        bad = Permission(
            target=ARTIFACT,
            constraints=[Constraint(left_operand="COUNT", operator="AFTER", right_operand="3")],
        )
        response = self.harness.core.handle(self.harness.contract_request([bad]))
        assert self._reason(response) == RejectionReason.MALFORMED_MESSAGE
        assert self.harness.ledger.count_agreements() == 0

    def test_unknown_target(self):
        rule = count_rule().model_copy(update={"target": "https://provider.example.org/artifacts/none"})
        response = self.harness.core.handle(self.harness.contract_request([rule]))
        assert self._reason(response) == RejectionReason.NOT_FOUND

    def test_mismatching_rules_rejected(self):
        request = self.harness.contract_request([count_rule("10")])
        response = self.harness.core.handle(request)
        assert response.message_type == MessageType.CONTRACT_REJECTION.value
        assert response.header.rejection_reason == RejectionReason.BAD_PARAMETERS
        assert response.header.rejection_text
        assert response.header.correlation_message == request.header.id
        assert self.harness.ledger.count_agreements() == 0

    def test_foreign_assignee_rejected(self):
        rules = bind_parties([count_rule()], assignee=MALLORY)
        request = self.harness.messages[CONSUMER].contract_request(
            PROVIDER, ContractRequest(consumer=CONSUMER, rules=rules)
        )
        response = self.harness.core.handle(request)
        assert response.message_type == MessageType.CONTRACT_REJECTION.value
        assert self.harness.ledger.count_agreements() == 0

    def test_contract_end_in_past_rejected(self):
        response = self.harness.core.handle(
            self.harness.contract_request([count_rule()], contract_end=T0 - timedelta(days=1))
        )
        assert response.message_type == MessageType.CONTRACT_REJECTION.value

    def test_negotiation_disabled_accepts_terms_as_proposed(self):
        harness = ProviderHarness([count_rule()], policy_negotiation_enabled=False)
        agreement = harness.negotiate([count_rule("10")])
        assert agreement.rules[0].constraints[0].right_operand == "10"

    def test_negotiation_disabled_still_checks_vocabulary(self):
        harness = ProviderHarness([count_rule()], policy_negotiation_enabled=False)
        bad = Permission(target=ARTIFACT, action=Action.LOG)
        response = harness.core.handle(harness.contract_request([bad]))
        assert response.header.rejection_reason == RejectionReason.MALFORMED_MESSAGE


class TestAgreementCreation:
    """Test the agreements the provider creates."""

    def setup_method(self):
        self.harness = ProviderHarness([count_rule(), Prohibition(target=OTHER_ARTIFACT)])

    def test_agreement_response(self):
        request = self.harness.contract_request([Prohibition(target=OTHER_ARTIFACT), count_rule()])
        response = self.harness.core.handle(request)
        assert response.message_type == MessageType.CONTRACT_AGREEMENT.value
        assert response.header.correlation_message == request.header.id
        agreement = ContractAgreement.model_validate_json(response.payload)
        assert response.header.transfer_contract == agreement.id
        assert agreement.id.startswith(AGREEMENTS + "/")

    def test_parties_and_dates_bound(self):
        agreement = self.harness.negotiate([count_rule(), Prohibition(target=OTHER_ARTIFACT)])
        assert agreement.provider == PROVIDER
        assert agreement.consumer == CONSUMER
        assert all(r.assigner == PROVIDER and r.assignee == CONSUMER for r in agreement.rules)
        assert agreement.contract_start == T0
        assert agreement.contract_end == T0 + timedelta(days=self.harness.settings.contract_validity_days)

    def test_requested_contract_end_honoured(self):
        end = T0 + timedelta(days=7)
        agreement = self.harness.negotiate([count_rule(), Prohibition(target=OTHER_ARTIFACT)], contract_end=end)
        assert agreement.contract_end == end

    def test_agreement_governs_every_target(self):
        agreement = self.harness.negotiate([count_rule(), Prohibition(target=OTHER_ARTIFACT)])
        assert self.harness.ledger.governs(agreement.id, ARTIFACT)
        assert self.harness.ledger.governs(agreement.id, OTHER_ARTIFACT)

    def test_replayed_request_is_idempotent(self):
        request = self.harness.contract_request([count_rule(), Prohibition(target=OTHER_ARTIFACT)])
        first = self.harness.core.handle(request)
        second = self.harness.core.handle(request)
        assert first.header.transfer_contract == second.header.transfer_contract
        assert self.harness.ledger.count_agreements() == 1

    def test_same_terms_on_swapped_targets_create_new_agreement(self):
        weather_limited = [count_rule("1"), Permission(target=OTHER_ARTIFACT)]
        traffic_limited = [
            Permission(target=ARTIFACT),
            Permission(
                target=OTHER_ARTIFACT,
                constraints=[Constraint(left_operand="COUNT", operator="LTEQ", right_operand="1")],
            ),
        ]
        harness = ProviderHarness(weather_limited)
        harness.catalog.add_resource(
            RESOURCE, "Weather", {ARTIFACT: DATA, OTHER_ARTIFACT: b"traffic"},
            [ContractOffer(rules=weather_limited), ContractOffer(rules=traffic_limited)],
        )

        first = harness.negotiate(weather_limited)
        second = harness.negotiate(traffic_limited)

        assert second.id != first.id
        assert harness.ledger.count_agreements() == 2
        weather_terms = [r for r in second.rules if r.target == ARTIFACT]
        assert [r.constraints for r in weather_terms] == [[]]


class TestArtifactRequest:
    """Test access gating on artifact requests."""

    def setup_method(self):
        self.harness = ProviderHarness([count_rule()])
        self.agreement = self.harness.negotiate([count_rule()])

    def _request(self, **kwargs) -> Envelope:
        return self.harness.core.handle(self.harness.artifact_request(self.agreement.id, **kwargs))

    def test_n_times_usage(self):
        for _ in range(3):
            response = self._request()
            assert response.message_type == MessageType.ARTIFACT_RESPONSE.value
            assert decode_data(response.payload) == DATA
        denied = self._request()
        assert denied.header.rejection_reason == RejectionReason.NOT_AUTHORIZED
        assert self.harness.ledger.access_count(self.agreement.id, ARTIFACT) == 3

    def test_response_correlation(self):
        request = self.harness.artifact_request(self.agreement.id)
        response = self.harness.core.handle(request)
        assert response.header.correlation_message == request.header.id
        assert response.header.transfer_contract == self.agreement.id

    def test_missing_artifact(self):
        request = self.harness.artifact_request(self.agreement.id)
        request.header.requested_artifact = None
        response = self.harness.core.handle(request)
        assert response.header.rejection_reason == RejectionReason.BAD_PARAMETERS
        assert response.header.rejection_text == "Missing requested artifact."

    def test_missing_transfer_contract(self):
        response = self.harness.core.handle(self.harness.artifact_request(None))
        assert response.header.rejection_text == "Missing or invalid transfer contract."

    def test_unknown_transfer_contract(self):
        response = self.harness.core.handle(self.harness.artifact_request(AGREEMENTS + "/unknown"))
        assert response.header.rejection_reason == RejectionReason.BAD_PARAMETERS
        assert response.header.rejection_text == "Missing or invalid transfer contract."

    def test_artifact_not_governed(self):
        response = self._request(artifact=OTHER_ARTIFACT)
        assert response.header.rejection_reason == RejectionReason.BAD_PARAMETERS
        assert response.header.rejection_text == "Affected resource mismatch."

    def test_other_consumer_not_authorized(self):
        response = self._request(issuer=MALLORY)
        assert response.header.rejection_reason == RejectionReason.NOT_AUTHORIZED
        assert self.harness.ledger.access_count(self.agreement.id, ARTIFACT) == 0

    def test_expired_agreement(self):
        self.harness.clock.now = self.agreement.contract_end
        assert self._request().header.rejection_reason == RejectionReason.NOT_AUTHORIZED

    def test_payload_failure_leaves_counter_untouched(self):
        harness = ProviderHarness([count_rule()], catalog=FailingCatalog())
        agreement = harness.negotiate([count_rule()])
        response = harness.core.handle(harness.artifact_request(agreement.id))
        assert response.header.rejection_reason == RejectionReason.INTERNAL_RECIPIENT_ERROR
        assert harness.ledger.access_count(agreement.id, ARTIFACT) == 0


class TestUsageInterval:
    """Test delivery inside and outside an agreed time interval."""

    def test_half_open_interval(self):
        start = T0 + timedelta(days=1)
        end = T0 + timedelta(days=2)
        harness = ProviderHarness([interval_rule(start, end)])
        agreement = harness.negotiate([interval_rule(start, end)])

        def reason_at(moment: datetime) -> RejectionReason | None:
            harness.clock.now = moment
            return harness.core.handle(harness.artifact_request(agreement.id)).header.rejection_reason

        assert reason_at(start - timedelta(minutes=1)) == RejectionReason.NOT_AUTHORIZED
        assert reason_at(start) is None
        assert reason_at(end - timedelta(seconds=1)) is None
        assert reason_at(end) == RejectionReason.NOT_AUTHORIZED


class TestNotificationDuties:
    """Test NOTIFY duties after delivery."""

    def setup_method(self):
        self.harness = ProviderHarness([notify_rule()])
        self.agreement = self.harness.negotiate([notify_rule()])
        self.notified: list[Envelope] = []

    def _hook(self, raw: str) -> str:
        self.notified.append(Envelope.model_validate_json(raw))
        return Envelope(header=MessageHeader(
            message_type=MessageType.MESSAGE_PROCESSED.value,
            model_version="4.0.0",
            issuer_connector=NOTIFY_HOOK,
        )).model_dump_json()

    def test_endpoint_notified_after_delivery(self):
        self.harness.transport.register(NOTIFY_HOOK, self._hook)
        response = self.harness.core.handle(self.harness.artifact_request(self.agreement.id))
        assert response.message_type == MessageType.ARTIFACT_RESPONSE.value
        assert len(self.notified) == 1
        assert self.notified[0].message_type == MessageType.NOTIFICATION.value
        assert self.agreement.id in self.notified[0].payload

    def test_failed_notification_does_not_revoke_delivery(self):
        response = self.harness.core.handle(self.harness.artifact_request(self.agreement.id))
        assert response.message_type == MessageType.ARTIFACT_RESPONSE.value
        assert self.harness.ledger.access_count(self.agreement.id, ARTIFACT) == 1


class TestDescriptionAndNotification:
    """Test metadata requests and notifications."""

    def setup_method(self):
        self.harness = ProviderHarness([count_rule()])
        self.factory = self.harness.messages[CONSUMER]

    def test_describe_element(self):
        response = self.harness.core.handle(self.factory.description_request(PROVIDER, RESOURCE))
        assert response.message_type == MessageType.DESCRIPTION_RESPONSE.value
        assert RESOURCE in response.payload

    def test_describe_catalog(self):
        response = self.harness.core.handle(self.factory.description_request(PROVIDER))
        assert "urn:catalog:local" in response.payload

    def test_describe_unknown_element(self):
        response = self.harness.core.handle(
            self.factory.description_request(PROVIDER, "https://provider.example.org/resources/none")
        )
        assert response.header.rejection_reason == RejectionReason.NOT_FOUND

    def test_notification_acknowledged(self):
        notification = self.factory.notification(PROVIDER, {"event": "ping"})
        response = self.harness.core.handle(notification)
        assert response.message_type == MessageType.MESSAGE_PROCESSED.value
        assert response.header.correlation_message == notification.header.id


class TestConcurrentAccess:
    """Test that concurrent requests never exceed the agreed count."""

    def test_parallel_requests(self, tmp_path):
        harness = ProviderHarness([count_rule("5")], database_url=f"sqlite:///{tmp_path / 'provider.db'}")
        agreement = harness.negotiate([count_rule("5")])
        responses: list[Envelope] = []
        lock = threading.Lock()

        def request() -> None:
            response = harness.core.handle(harness.artifact_request(agreement.id))
            with lock:
                responses.append(response)

        threads = [threading.Thread(target=request) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        granted = [r for r in responses if r.message_type == MessageType.ARTIFACT_RESPONSE.value]
        denied = [r for r in responses if r.header.rejection_reason == RejectionReason.NOT_AUTHORIZED]
        assert len(granted) == 5
        assert len(denied) == 15
        assert harness.ledger.access_count(agreement.id, ARTIFACT) == 5

    def test_parallel_identical_requests_create_one_agreement(self, tmp_path):
        harness = ProviderHarness([count_rule()], database_url=f"sqlite:///{tmp_path / 'provider.db'}")
        request = harness.contract_request([count_rule()])
        contracts: list[str | None] = []
        lock = threading.Lock()

        def negotiate() -> None:
            response = harness.core.handle(request)
            with lock:
                contracts.append(response.header.transfer_contract)

        threads = [threading.Thread(target=negotiate) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(set(contracts)) == 1
        assert None not in contracts
        assert harness.ledger.count_agreements() == 1
