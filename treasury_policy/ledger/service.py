"""
Audit Trail Service — Append-only, hash-chained record of policy decisions.

Every proposal transition the engine makes durable is also appended here:
openings, votes, threshold changes, terminal transitions, overrides and
parameter publications. The chain provides:

1. Tamper evidence — SHA-256 over (previous_hash || canonical_json(entry))
2. Append-only writes — there is no update or delete
3. Independent verification — verify_chain() replays every hash
"""

from __future__ import annotations

import enum
import hashlib
import json
import logging
import threading
from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from treasury_policy.finance.clock import Clock, SystemClock, as_utc
from treasury_policy.ledger.models import AuditEntryDB, Base

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64  # The "previous hash" for the first entry in the chain


class AuditEntryType(str, enum.Enum):
    """Kinds of audit entry."""

    GENESIS = "genesis"
    PROPOSAL_OPENED = "proposal_opened"
    VOTE_RECORDED = "vote_recorded"
    THRESHOLD_MET = "threshold_met"
    THRESHOLD_LOST = "threshold_lost"
    PROPOSAL_EXECUTED = "proposal_executed"
    PROPOSAL_REJECTED = "proposal_rejected"
    PROPOSAL_EXPIRED = "proposal_expired"
    OVERRIDE_EXECUTED = "override_executed"
    OVERRIDE_REJECTED = "override_rejected"
    PARAMETERS_PUBLISHED = "parameters_published"


class AuditIntegrityError(Exception):
    """Raised when the audit chain cannot be extended."""
    pass


class AuditTrail:
    """
    Hash-chained audit trail backed by SQLAlchemy.

    Usage:
        trail = AuditTrail("sqlite:///treasury_policy.db")
        trail.initialize()  # Create tables, seed genesis entry

        trail.append(
            AuditEntryType.VOTE_RECORDED,
            {"support": "FOR", "weight": 40},
            proposal_id="DISBURSEMENT-123456A0B1",
            actor_id="wallet-7",
        )
    """

    def __init__(self, database_url: str, clock: Clock | None = None) -> None:
        self.engine = create_engine(database_url, echo=False)
        self.SessionLocal = sessionmaker(bind=self.engine)
        self.clock = clock or SystemClock()
        self._lock = threading.Lock()

    def initialize(self) -> None:
        """Create the schema and seed the genesis entry if absent."""
        Base.metadata.create_all(self.engine)

        with self.SessionLocal() as session:
            existing = session.execute(
                select(AuditEntryDB).where(AuditEntryDB.sequence_number == 0)
            ).scalar_one_or_none()

            if existing is None:
                genesis = self._build_entry(
                    sequence_number=0,
                    previous_hash=GENESIS_HASH,
                    entry_type=AuditEntryType.GENESIS.value,
                    proposal_id=None,
                    actor_id="system",
                    content={"message": "Genesis of the treasury policy audit trail"},
                )
                session.add(genesis)
                session.commit()
                logger.info("Audit genesis created: hash=%s", genesis.entry_hash[:16])

    def append(
        self,
        entry_type: AuditEntryType | str,
        content: dict[str, Any],
        proposal_id: str | None = None,
        actor_id: str = "system",
    ) -> AuditEntryDB:
        """Append one entry. This is the only write operation."""
        entry_type = AuditEntryType(entry_type).value
        with self._lock, self.SessionLocal() as session:
            last_entry = session.execute(
                select(AuditEntryDB)
                .order_by(AuditEntryDB.sequence_number.desc())
                .limit(1)
            ).scalar_one_or_none()

            if last_entry is None:
                raise AuditIntegrityError(
                    "Cannot append: no genesis entry found. Call initialize() first."
                )

            entry = self._build_entry(
                sequence_number=last_entry.sequence_number + 1,
                previous_hash=last_entry.entry_hash,
                entry_type=entry_type,
                proposal_id=proposal_id,
                actor_id=actor_id,
                content=content,
            )
            session.add(entry)
            session.commit()
            session.refresh(entry)

        logger.debug(
            "Audit entry appended: seq=%d type=%s proposal=%s",
            entry.sequence_number, entry_type, proposal_id,
        )
        return entry

    def verify_chain(self) -> tuple[bool, int, str]:
        """
        Replay every hash from genesis forward.

        Returns:
            Tuple of (is_valid, entries_verified, message).
        """
        with self.SessionLocal() as session:
            entries = session.execute(
                select(AuditEntryDB).order_by(AuditEntryDB.sequence_number.asc())
            ).scalars().all()

            if not entries:
                return False, 0, "No entries found in audit trail"

            first = entries[0]
            if first.sequence_number != 0 or first.previous_hash != GENESIS_HASH:
                return False, 0, "Audit trail does not start at a genesis entry"

            for i, entry in enumerate(entries):
                expected_hash = self._compute_hash(
                    entry_id=entry.id,
                    sequence_number=entry.sequence_number,
                    previous_hash=entry.previous_hash,
                    timestamp=entry.timestamp,
                    entry_type=entry.entry_type,
                    proposal_id=entry.proposal_id,
                    actor_id=entry.actor_id,
                    content=entry.content,
                )
                if entry.entry_hash != expected_hash:
                    return (
                        False, i,
                        f"Hash mismatch at sequence {entry.sequence_number}: "
                        f"stored={entry.entry_hash[:16]}... "
                        f"computed={expected_hash[:16]}..."
                    )
                if i > 0 and entry.previous_hash != entries[i - 1].entry_hash:
                    return (
                        False, i,
                        f"Chain break at sequence {entry.sequence_number}: "
                        f"previous_hash does not match prior entry's hash"
                    )

            return True, len(entries), f"Chain verified: {len(entries)} entries, integrity intact"

    def entries_for(self, proposal_id: str) -> list[AuditEntryDB]:
        """Every entry for one proposal, oldest first."""
        with self.SessionLocal() as session:
            return list(
                session.execute(
                    select(AuditEntryDB)
                    .where(AuditEntryDB.proposal_id == proposal_id)
                    .order_by(AuditEntryDB.sequence_number.asc())
                ).scalars().all()
            )

    def get_latest_entries(self, limit: int = 50) -> list[AuditEntryDB]:
        with self.SessionLocal() as session:
            return list(
                session.execute(
                    select(AuditEntryDB)
                    .order_by(AuditEntryDB.sequence_number.desc())
                    .limit(limit)
                ).scalars().all()
            )

    def get_entry_count(self) -> int:
        with self.SessionLocal() as session:
            result = session.execute(select(func.count()).select_from(AuditEntryDB))
            return result.scalar() or 0

    # ── Internal ────────────────────────────────────────────────

    def _build_entry(
        self,
        sequence_number: int,
        previous_hash: str,
        entry_type: str,
        proposal_id: str | None,
        actor_id: str,
        content: dict[str, Any],
    ) -> AuditEntryDB:
        entry_id = str(uuid4())
        timestamp = as_utc(self.clock.now())
        entry_hash = self._compute_hash(
            entry_id=entry_id,
            sequence_number=sequence_number,
            previous_hash=previous_hash,
            timestamp=timestamp,
            entry_type=entry_type,
            proposal_id=proposal_id,
            actor_id=actor_id,
            content=content,
        )
        return AuditEntryDB(
            id=entry_id,
            sequence_number=sequence_number,
            previous_hash=previous_hash,
            entry_hash=entry_hash,
            timestamp=timestamp,
            entry_type=entry_type,
            proposal_id=proposal_id,
            actor_id=actor_id,
            content=content,
        )

    @staticmethod
    def _compute_hash(
        entry_id: str,
        sequence_number: int,
        previous_hash: str,
        timestamp: datetime,
        entry_type: str,
        proposal_id: str | None,
        actor_id: str,
        content: dict[str, Any],
    ) -> str:
        """
        Hash = SHA-256(previous_hash || canonical_json(entry_fields))

        Timestamps are normalized to aware UTC first; some backends return
        naive datetimes on read.
        """
        hashable = {
            "id": entry_id,
            "sequence_number": sequence_number,
            "previous_hash": previous_hash,
            "timestamp": as_utc(timestamp).isoformat(),
            "entry_type": entry_type,
            "proposal_id": proposal_id,
            "actor_id": actor_id,
            "content": content,
        }
        canonical = json.dumps(hashable, sort_keys=True, default=str)
        return hashlib.sha256((previous_hash + canonical).encode("utf-8")).hexdigest()
