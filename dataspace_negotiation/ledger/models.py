"""
Agreement Ledger — SQLAlchemy models for confirmed contracts and access state.

Tables:

1. agreements          — one row per confirmed agreement, rules frozen as JSON
2. agreement_artifacts — the artifacts each agreement governs
3. access_records      — per (agreement, artifact) access counter
4. sent_messages       — outbound message log used to resolve correlations

Agreement rows are written once. The stored ``content_hash`` is the SHA-256
of the canonical agreement JSON, so any later alteration of a row is
detectable by recomputing it. Access counters only ever grow.

Column types are portable (``Uuid``, ``JSON``) so the same schema runs on
SQLite and PostgreSQL.
"""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all ledger models."""
    pass


class AgreementDB(Base):
    """
    A confirmed contract agreement.

    ``value`` holds the full agreement JSON; the scalar columns duplicate the
    fields that are queried on. Rows are never updated: a renegotiation
    produces a new agreement with a new URI.
    """

    __tablename__ = "agreements"

    id = Column(Uuid, primary_key=True, default=uuid4)
    uri = Column(
        String(512), nullable=False, unique=True, index=True,
        comment="Globally unique agreement URI",
    )
    dedup_key = Column(
        String(64), nullable=True, unique=True,
        comment="SHA-256 of consumer, sorted artifacts and canonical rules",
    )
    provider = Column(String(512), nullable=False)
    consumer = Column(String(512), nullable=False)
    value = Column(JSON, nullable=False, comment="Agreement JSON")
    content_hash = Column(
        String(64), nullable=False,
        comment="SHA-256 of the canonical agreement JSON",
    )
    confirmed = Column(Boolean, nullable=False, default=True)
    contract_start = Column(DateTime(timezone=True), nullable=False)
    contract_end = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    artifacts = relationship(
        "AgreementArtifactDB",
        back_populates="agreement",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    access_records = relationship(
        "AccessRecordDB",
        back_populates="agreement",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_agreement_consumer", "consumer"),
    )

    @property
    def artifact_ids(self) -> list[str]:
        return [link.artifact_id for link in self.artifacts]

    def __repr__(self) -> str:
        return f"<Agreement uri={self.uri} consumer={self.consumer} hash={self.content_hash[:12]}...>"


class AgreementArtifactDB(Base):
    """Link between an agreement and one artifact it governs."""

    __tablename__ = "agreement_artifacts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    agreement_id = Column(Uuid, ForeignKey("agreements.id"), nullable=False)
    artifact_id = Column(String(512), nullable=False)

    agreement = relationship("AgreementDB", back_populates="artifacts")

    __table_args__ = (
        UniqueConstraint("agreement_id", "artifact_id", name="uq_agreement_artifact"),
        Index("ix_agreement_artifact_target", "artifact_id"),
    )


class AccessRecordDB(Base):
    """
    Access counter for one artifact under one agreement.

    Incremented only by the access-gating step, under a per-agreement lock,
    through ``UPDATE ... SET count = count + 1``.
    """

    __tablename__ = "access_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    agreement_id = Column(Uuid, ForeignKey("agreements.id"), nullable=False)
    artifact_id = Column(String(512), nullable=False)
    count = Column(Integer, nullable=False, default=0)
    last_access = Column(DateTime(timezone=True), nullable=True)

    agreement = relationship("AgreementDB", back_populates="access_records")

    __table_args__ = (
        UniqueConstraint("agreement_id", "artifact_id", name="uq_access_record"),
    )


class SentMessageDB(Base):
    """Outbound message log."""

    __tablename__ = "sent_messages"

    id = Column(String(512), primary_key=True, comment="Message id")
    message_type = Column(String(100), nullable=False, index=True)
    recipient = Column(String(512), nullable=False)
    payload = Column(Text, nullable=True, comment="Raw envelope JSON")
    sent_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
