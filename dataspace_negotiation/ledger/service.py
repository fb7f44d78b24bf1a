"""
Agreement Ledger Service — exactly-once agreements and gated access counters.

This service provides the storage operations the negotiation core relies on:
- Create an agreement at most once per (consumer, artifacts, rule content)
- Fetch agreements by URI or by governed artifact
- Hold a per-agreement lock across read → evaluate → fetch → increment
- Log outbound messages so later responses can be correlated
- Verify that no stored agreement was altered after persistence

Every write happens in a single transaction. Failures are rolled back and
raised as LedgerPersistenceError, so callers never observe a partial record.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import create_engine, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from dataspace_negotiation.ledger.models import (
    AccessRecordDB,
    AgreementArtifactDB,
    AgreementDB,
    Base,
    SentMessageDB,
)
from dataspace_negotiation.messages.schema import Envelope
from dataspace_negotiation.policy.matcher import canonical_rules
from dataspace_negotiation.policy.schema import ContractAgreement

logger = logging.getLogger(__name__)


class LedgerPersistenceError(Exception):
    """Raised when the ledger cannot durably record a change."""
    pass


def derive_dedup_key(consumer: str, artifacts: list[str], rules: list[Any]) -> str:
    """SHA-256 over the consumer, the sorted artifact set and the targeted canonical rules."""
    canonical = json.dumps(
        {
            "consumer": consumer,
            "artifacts": sorted(set(artifacts)),
            "rules": canonical_rules(rules, with_targets=True),
        },
        sort_keys=True,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def compute_content_hash(value: dict[str, Any]) -> str:
    canonical = json.dumps(value, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class _KeyedLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


@dataclass
class AccessSlot:
    """
    Access state of one artifact, valid while its agreement lock is held.

    Obtained from ``AgreementLedger.access_guard``.
    """

    agreement_uri: str
    artifact_id: str
    count: int
    ledger: AgreementLedger

    def increment(self) -> int:
        self.count = self.ledger.increment_access(self.agreement_uri, self.artifact_id)
        return self.count


class AgreementLedger:
    """
    Durable store of confirmed agreements.

    Usage:
        ledger = AgreementLedger("sqlite:///./negotiation.db")
        ledger.initialize()

        key = derive_dedup_key(consumer, agreement.targets, agreement.rules)
        stored, created = ledger.create_agreement(agreement, key)

        with ledger.access_guard(stored.id, artifact_id) as slot:
            ...  # evaluate with slot.count, deliver, then
            slot.increment()
    """

    def __init__(self, database_url: str) -> None:
        """
        Initialize the ledger service.

        Args:
            database_url: SQLAlchemy connection string (sync driver).
        """
        engine_args: dict[str, Any] = {"echo": False}
        if database_url.startswith("sqlite"):
            engine_args["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                engine_args["poolclass"] = StaticPool
        self.engine = create_engine(database_url, **engine_args)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

        self._locks_guard = threading.Lock()
        self._creation_locks: dict[tuple[str, ...], _KeyedLock] = {}
        self._access_locks: dict[str, _KeyedLock] = {}

    def initialize(self) -> None:
        """Create the ledger tables if they do not exist."""
        Base.metadata.create_all(self.engine)

    # ── Agreements ──────────────────────────────────────────────

    def create_agreement(
        self, agreement: ContractAgreement, dedup_key: str
    ) -> tuple[ContractAgreement, bool]:
        """
        Persist a confirmed agreement exactly once.

        Creation is serialized per artifact set. If an agreement with the same
        dedup key exists, it is returned instead and nothing is written.

        Returns:
            Tuple of (stored agreement, created).

        Raises:
            LedgerPersistenceError: If the agreement cannot be stored.
        """
        artifacts = tuple(sorted(set(agreement.targets)))
        with self._held(self._creation_locks, artifacts):
            existing = self._get_by_dedup_key(dedup_key)
            if existing is not None:
                logger.info(
                    "Agreement replay detected: existing=%s consumer=%s",
                    existing.id, agreement.consumer,
                )
                return existing, False

            try:
                self._insert(agreement, dedup_key, confirmed=True)
            except IntegrityError as exc:
                existing = self._get_by_dedup_key(dedup_key)
                if existing is not None:
                    logger.info("Lost agreement creation race, returning %s", existing.id)
                    return existing, False
                raise LedgerPersistenceError(
                    f"Failed to store agreement {agreement.id}"
                ) from exc

        logger.info(
            "Agreement stored: uri=%s consumer=%s artifacts=%d",
            agreement.id, agreement.consumer, len(artifacts),
        )
        return agreement, True

    def save_agreement(self, agreement: ContractAgreement, confirmed: bool = True) -> ContractAgreement:
        """
        Store an agreement received from a remote provider.

        Receiving the same agreement URI twice is a no-op.

        Raises:
            LedgerPersistenceError: If the agreement cannot be stored.
        """
        existing = self.get_agreement(agreement.id)
        if existing is not None:
            return existing
        try:
            self._insert(agreement, None, confirmed=confirmed)
        except IntegrityError as exc:
            existing = self.get_agreement(agreement.id)
            if existing is not None:
                return existing
            raise LedgerPersistenceError(f"Failed to store agreement {agreement.id}") from exc
        logger.info("Remote agreement stored: uri=%s provider=%s", agreement.id, agreement.provider)
        return agreement

    def get_agreement(self, uri: str) -> ContractAgreement | None:
        """Retrieve a confirmed agreement by its URI."""
        row = self._get_row(uri)
        if row is None or not row.confirmed:
            return None
        return ContractAgreement.model_validate(row.value)

    def get_agreements_by_target(self, artifact_id: str) -> list[ContractAgreement]:
        """Retrieve every confirmed agreement governing an artifact."""
        with self.SessionLocal() as session:
            rows = session.execute(
                select(AgreementDB)
                .join(AgreementArtifactDB)
                .where(
                    AgreementArtifactDB.artifact_id == artifact_id,
                    AgreementDB.confirmed.is_(True),
                )
                .order_by(AgreementDB.created_at.asc())
            ).scalars().all()
            return [ContractAgreement.model_validate(row.value) for row in rows]

    def governs(self, uri: str, artifact_id: str) -> bool:
        """Whether the agreement is linked to the artifact."""
        with self.SessionLocal() as session:
            link = session.execute(
                select(AgreementArtifactDB.id)
                .join(AgreementDB)
                .where(AgreementDB.uri == uri, AgreementArtifactDB.artifact_id == artifact_id)
            ).first()
            return link is not None

    def list_agreements(self, limit: int = 100, offset: int = 0) -> list[AgreementDB]:
        """Retrieve stored agreement rows, newest first."""
        with self.SessionLocal() as session:
            return list(
                session.execute(
                    select(AgreementDB)
                    .order_by(AgreementDB.created_at.desc())
                    .limit(limit)
                    .offset(offset)
                ).scalars().all()
            )

    def count_agreements(self) -> int:
        """Return the total number of stored agreements."""
        with self.SessionLocal() as session:
            return session.execute(select(func.count()).select_from(AgreementDB)).scalar() or 0

    def verify_integrity(self) -> tuple[bool, int, str]:
        """
        Recompute the content hash of every stored agreement.

        Returns:
            Tuple of (is_valid, agreements_verified, message).
        """
        with self.SessionLocal() as session:
            rows = session.execute(
                select(AgreementDB).order_by(AgreementDB.created_at.asc())
            ).scalars().all()

            for i, row in enumerate(rows):
                expected = compute_content_hash(row.value)
                if row.content_hash != expected:
                    return (
                        False, i,
                        f"Hash mismatch for {row.uri}: "
                        f"stored={row.content_hash[:16]}... computed={expected[:16]}...",
                    )
                if row.value.get("id") != row.uri:
                    return False, i, f"Agreement URI mismatch for {row.uri}"

            return True, len(rows), f"Verified {len(rows)} agreements, integrity intact"

    # ── Access gating ───────────────────────────────────────────

    @contextmanager
    def access_guard(self, uri: str, artifact_id: str) -> Iterator[AccessSlot]:
        """
        Hold the agreement's access lock and expose the current access count.

        Everything between entering and leaving the block is serialized
        against other accesses under the same agreement.
        """
        with self._held(self._access_locks, uri):
            yield AccessSlot(
                agreement_uri=uri,
                artifact_id=artifact_id,
                count=self.access_count(uri, artifact_id),
                ledger=self,
            )

    def get_access_record(self, uri: str, artifact_id: str) -> AccessRecordDB | None:
        with self.SessionLocal() as session:
            return session.execute(
                select(AccessRecordDB).where(
                    AccessRecordDB.agreement_id == self._agreement_pk(uri),
                    AccessRecordDB.artifact_id == artifact_id,
                )
            ).scalar_one_or_none()

    def access_count(self, uri: str, artifact_id: str) -> int:
        record = self.get_access_record(uri, artifact_id)
        return record.count if record is not None else 0

    def increment_access(self, uri: str, artifact_id: str) -> int:
        """
        Add one access to the artifact's counter and return the new count.

        Raises:
            LedgerPersistenceError: If the counter cannot be updated.
        """
        now = datetime.now(timezone.utc)
        with self.SessionLocal() as session:
            try:
                result = session.execute(
                    update(AccessRecordDB)
                    .where(
                        AccessRecordDB.agreement_id == self._agreement_pk(uri),
                        AccessRecordDB.artifact_id == artifact_id,
                    )
                    .values(count=AccessRecordDB.count + 1, last_access=now)
                )
                if result.rowcount == 0:
                    agreement_pk = session.execute(
                        select(AgreementDB.id).where(AgreementDB.uri == uri)
                    ).scalar_one_or_none()
                    if agreement_pk is None:
                        raise LedgerPersistenceError(f"Unknown agreement {uri}")
                    session.add(AccessRecordDB(
                        agreement_id=agreement_pk, artifact_id=artifact_id, count=1, last_access=now,
                    ))
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                raise LedgerPersistenceError(
                    f"Failed to record access to {artifact_id} under {uri}"
                ) from exc

        count = self.access_count(uri, artifact_id)
        logger.debug("Access recorded: agreement=%s artifact=%s count=%d", uri, artifact_id, count)
        return count

    # ── Outbound message log ────────────────────────────────────

    def log_message(self, envelope: Envelope, recipient: str) -> None:
        """
        Record an outbound message.

        Raises:
            LedgerPersistenceError: If the message cannot be recorded.
        """
        with self.SessionLocal() as session:
            try:
                session.add(SentMessageDB(
                    id=envelope.header.id,
                    message_type=envelope.message_type,
                    recipient=recipient,
                    payload=envelope.model_dump_json(),
                    sent_at=datetime.now(timezone.utc),
                ))
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                raise LedgerPersistenceError(
                    f"Failed to log message {envelope.header.id}"
                ) from exc

    def get_message(self, message_id: str) -> Envelope | None:
        """Retrieve a logged outbound message by its id."""
        with self.SessionLocal() as session:
            row = session.get(SentMessageDB, message_id)
            if row is None or row.payload is None:
                return None
            return Envelope.model_validate_json(row.payload)

    # ── Internal ────────────────────────────────────────────────

    @contextmanager
    def _held(self, registry: dict[Any, _KeyedLock], key: Any) -> Iterator[None]:
        """Hold the lock for ``key``; the entry is dropped once nobody holds or waits on it."""
        with self._locks_guard:
            entry = registry.get(key)
            if entry is None:
                entry = registry[key] = _KeyedLock()
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del registry[key]

    @staticmethod
    def _agreement_pk(uri: str) -> Any:
        return select(AgreementDB.id).where(AgreementDB.uri == uri).scalar_subquery()

    def _get_row(self, uri: str) -> AgreementDB | None:
        with self.SessionLocal() as session:
            return session.execute(
                select(AgreementDB).where(AgreementDB.uri == uri)
            ).scalar_one_or_none()

    def _get_by_dedup_key(self, dedup_key: str) -> ContractAgreement | None:
        with self.SessionLocal() as session:
            row = session.execute(
                select(AgreementDB).where(AgreementDB.dedup_key == dedup_key)
            ).scalar_one_or_none()
            if row is None:
                return None
            return ContractAgreement.model_validate(row.value)

    def _insert(self, agreement: ContractAgreement, dedup_key: str | None, confirmed: bool) -> None:
        """Write the agreement, its artifact links and zeroed counters in one transaction."""
        value = agreement.model_dump(mode="json")
        row = AgreementDB(
            uri=agreement.id,
            dedup_key=dedup_key,
            provider=agreement.provider,
            consumer=agreement.consumer,
            value=value,
            content_hash=compute_content_hash(value),
            confirmed=confirmed,
            contract_start=agreement.contract_start,
            contract_end=agreement.contract_end,
            created_at=datetime.now(timezone.utc),
        )
        for artifact_id in sorted(set(agreement.targets)):
            row.artifacts.append(AgreementArtifactDB(artifact_id=artifact_id))
            row.access_records.append(AccessRecordDB(artifact_id=artifact_id, count=0))

        with self.SessionLocal() as session:
            try:
                session.add(row)
                session.commit()
            except IntegrityError:
                session.rollback()
                raise
            except SQLAlchemyError as exc:
                session.rollback()
                raise LedgerPersistenceError(
                    f"Failed to store agreement {agreement.id}"
                ) from exc
