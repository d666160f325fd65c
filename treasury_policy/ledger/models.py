"""
Policy Ledger — SQLAlchemy models for proposals, parameter versions and audit.

Three tables back the policy engine:

1. ``proposals`` — latest durable snapshot of each proposal, keyed by id and
   guarded by a monotonic revision
2. ``governance_parameter_versions`` — insert-only; a published version is
   never updated or deleted
3. ``audit_entries`` — append-only SHA-256 hash chain of every transition

Column types are portable (JSON rather than JSONB) so the same models run on
SQLite and PostgreSQL.
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    func,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all policy ledger models."""
    pass


class ProposalDB(Base):
    """
    Latest durable snapshot of a proposal.

    Summary columns are denormalized from ``document`` for querying; the
    document is the source of truth on restore.
    """

    __tablename__ = "proposals"

    id = Column(String(64), primary_key=True)
    project_id = Column(String(128), nullable=False, index=True)
    status = Column(
        String(16), nullable=False, index=True,
        comment="OPEN, EXECUTED, REJECTED or EXPIRED",
    )
    proposal_class = Column(String(16), nullable=False)
    parameters_version = Column(
        String(64), nullable=False,
        comment="Governance parameter version pinned at creation",
    )
    amount_minor = Column(BigInteger, nullable=False)
    currency = Column(String(8), nullable=False)
    revision = Column(
        Integer, nullable=False,
        comment="Monotonic; an older revision never overwrites a newer one",
    )
    document = Column(JSON, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    def __repr__(self) -> str:
        return f"<Proposal id={self.id} status={self.status} rev={self.revision}>"


class GovernanceParameterVersionDB(Base):
    """
    A published governance parameter set.

    This table is INSERT-ONLY. Versions are retained indefinitely so any
    historical proposal can be re-evaluated against the rules it was opened
    under.
    """

    __tablename__ = "governance_parameter_versions"

    version = Column(String(64), primary_key=True)
    document = Column(JSON, nullable=False)
    published_at = Column(DateTime(timezone=True), nullable=False, default=func.now())


class AuditEntryDB(Base):
    """
    A single entry in the policy audit trail.

    This table is APPEND-ONLY. Each entry stores the SHA-256 hash of
    (previous_hash || canonical_json(fields)), so any retroactive edit is
    detectable by replaying the chain.
    """

    __tablename__ = "audit_entries"

    id = Column(String(36), primary_key=True)
    sequence_number = Column(
        Integer, nullable=False, unique=True, index=True,
        comment="Monotonically increasing sequence number",
    )
    previous_hash = Column(String(64), nullable=False)
    entry_hash = Column(String(64), nullable=False, unique=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    entry_type = Column(String(50), nullable=False, index=True)
    proposal_id = Column(String(64), nullable=True)
    actor_id = Column(String(128), nullable=False)
    content = Column(JSON, nullable=False)

    __table_args__ = (
        Index("ix_audit_proposal_sequence", "proposal_id", "sequence_number"),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditEntry seq={self.sequence_number} "
            f"type={self.entry_type} hash={self.entry_hash[:12]}...>"
        )
