"""
Proposal Repository — Durable storage for proposal snapshots and parameter sets.

The engine hands the repository immutable snapshots from its outbox, always
outside any proposal lock. Saves are idempotent by revision: replaying an
already-stored snapshot, or an older one, is a no-op. That makes the
engine's retry-until-durable flush safe to repeat.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from treasury_policy.errors import ConfigurationError
from treasury_policy.governance.parameters import GovernanceParameterSet, parse_parameter_set
from treasury_policy.governance.schema import Proposal, ProposalStatus
from treasury_policy.ledger.models import Base, GovernanceParameterVersionDB, ProposalDB

logger = logging.getLogger(__name__)


class ProposalRepository(Protocol):
    """Storage the engine flushes proposal snapshots into."""

    def save(self, proposal: Proposal) -> bool:
        """Store a snapshot; returns False if a same-or-newer revision exists."""
        ...

    def get(self, proposal_id: str) -> Proposal | None: ...

    def list_open(self) -> list[Proposal]: ...


class InMemoryProposalRepository:
    """Process-local repository, for tests and embedded use."""

    def __init__(self) -> None:
        self._rows: dict[str, Proposal] = {}
        self._lock = threading.Lock()

    def save(self, proposal: Proposal) -> bool:
        with self._lock:
            current = self._rows.get(proposal.id)
            if current is not None and current.revision >= proposal.revision:
                return False
            self._rows[proposal.id] = proposal.snapshot()
            return True

    def get(self, proposal_id: str) -> Proposal | None:
        with self._lock:
            row = self._rows.get(proposal_id)
            return row.snapshot() if row is not None else None

    def list_open(self) -> list[Proposal]:
        with self._lock:
            return [
                p.snapshot() for p in self._rows.values()
                if p.status == ProposalStatus.OPEN
            ]

    def __len__(self) -> int:
        return len(self._rows)


class SqlProposalRepository:
    """
    SQLAlchemy-backed proposal repository.

    Usage:
        repo = SqlProposalRepository("sqlite:///treasury_policy.db")
        repo.initialize()
    """

    def __init__(self, database_url: str) -> None:
        self.engine = create_engine(database_url, echo=False)
        self.SessionLocal = sessionmaker(bind=self.engine)

    def initialize(self) -> None:
        Base.metadata.create_all(self.engine)

    def save(self, proposal: Proposal) -> bool:
        with self.SessionLocal() as session:
            row = session.get(ProposalDB, proposal.id)
            if row is not None and row.revision >= proposal.revision:
                logger.debug(
                    "Skipping stale proposal write: id=%s stored_rev=%d rev=%d",
                    proposal.id, row.revision, proposal.revision,
                )
                return False
            if row is None:
                row = ProposalDB(id=proposal.id)
                session.add(row)
            row.project_id = proposal.project_id
            row.status = proposal.status.value
            row.proposal_class = proposal.proposal_class.value
            row.parameters_version = proposal.parameters_version
            row.amount_minor = proposal.amount_minor
            row.currency = proposal.currency.value
            row.revision = proposal.revision
            row.document = proposal.document()
            row.updated_at = datetime.now(timezone.utc)
            session.commit()
        logger.debug("Proposal saved: id=%s rev=%d", proposal.id, proposal.revision)
        return True

    def get(self, proposal_id: str) -> Proposal | None:
        with self.SessionLocal() as session:
            row = session.get(ProposalDB, proposal_id)
            if row is None:
                return None
            return Proposal.model_validate(row.document)

    def list_open(self) -> list[Proposal]:
        with self.SessionLocal() as session:
            rows = session.execute(
                select(ProposalDB)
                .where(ProposalDB.status == ProposalStatus.OPEN.value)
                .order_by(ProposalDB.id)
            ).scalars().all()
            return [Proposal.model_validate(row.document) for row in rows]

    def list_by_project(self, project_id: str) -> list[Proposal]:
        with self.SessionLocal() as session:
            rows = session.execute(
                select(ProposalDB)
                .where(ProposalDB.project_id == project_id)
                .order_by(ProposalDB.id)
            ).scalars().all()
            return [Proposal.model_validate(row.document) for row in rows]


class SqlParameterVersionStore:
    """
    Insert-only storage for governance parameter versions.

    Re-saving an identical version is a no-op; saving different values
    under a stored version raises ConfigurationError.
    """

    def __init__(self, database_url: str) -> None:
        self.engine = create_engine(database_url, echo=False)
        self.SessionLocal = sessionmaker(bind=self.engine)

    def initialize(self) -> None:
        Base.metadata.create_all(self.engine)

    def save(self, params: GovernanceParameterSet) -> None:
        document = params.document()
        with self.SessionLocal() as session:
            existing = session.get(GovernanceParameterVersionDB, params.version)
            if existing is not None:
                if parse_parameter_set(existing.document) != params:
                    raise ConfigurationError(
                        f"Stored governance parameter version {params.version} "
                        "differs from the one being published"
                    )
                return
            session.add(GovernanceParameterVersionDB(
                version=params.version,
                document=document,
                published_at=datetime.now(timezone.utc),
            ))
            session.commit()
        logger.info("Governance parameter version %s stored", params.version)

    def load_all(self) -> list[GovernanceParameterSet]:
        with self.SessionLocal() as session:
            rows = session.execute(
                select(GovernanceParameterVersionDB)
                .order_by(GovernanceParameterVersionDB.published_at.asc())
            ).scalars().all()
            return [parse_parameter_set(row.document) for row in rows]
