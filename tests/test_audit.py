"""
Tests for the policy audit trail — hash chain and verification tool.

Validates:
- Genesis seeding and append-only chaining
- Tamper detection by verify_chain()
- Per-proposal history
- Engine transitions land in the chain in order
- The audit CLI exit status
"""

from __future__ import annotations

import random

import pytest
from sqlalchemy import update

from treasury_policy.finance.clock import ManualClock
from treasury_policy.finance.identifiers import IdentifierFactory
from treasury_policy.governance.engine import ProposalEngine
from treasury_policy.governance.evaluator import ApprovalPolicyEvaluator
from treasury_policy.governance.parameters import DEFAULT_GOVERNANCE_PARAMETERS, ParameterRegistry
from treasury_policy.ledger import audit as audit_cli
from treasury_policy.ledger.models import AuditEntryDB
from treasury_policy.ledger.service import GENESIS_HASH, AuditEntryType, AuditIntegrityError, AuditTrail

LIMITS = {"PROJECT_MANAGER": "10000", "FINANCE_REVIEWER": "10000", "TREASURER": "50000"}


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'audit.db'}"


@pytest.fixture
def trail(db_url):
    trail = AuditTrail(db_url, clock=ManualClock())
    trail.initialize()
    return trail


class TestAuditChain:

    def test_genesis(self, trail):
        entries = trail.get_latest_entries()
        assert len(entries) == 1
        assert entries[0].entry_type == AuditEntryType.GENESIS.value
        assert entries[0].previous_hash == GENESIS_HASH

    def test_initialize_is_idempotent(self, trail):
        trail.initialize()
        assert trail.get_entry_count() == 1

    def test_append_links_to_previous(self, trail):
        first = trail.append(AuditEntryType.PROPOSAL_OPENED, {"class": "STANDARD"}, "DISBURSEMENT-1")
        second = trail.append(AuditEntryType.VOTE_RECORDED, {"weight": 30}, "DISBURSEMENT-1", "a")
        assert second.previous_hash == first.entry_hash
        assert second.sequence_number == first.sequence_number + 1

    def test_verify_valid_chain(self, trail):
        for i in range(5):
            trail.append(AuditEntryType.VOTE_RECORDED, {"weight": i}, "DISBURSEMENT-1", f"w{i}")
        is_valid, count, message = trail.verify_chain()
        assert is_valid, message
        assert count == 6

    def test_tampered_content_detected(self, trail):
        trail.append(AuditEntryType.VOTE_RECORDED, {"weight": 30}, "DISBURSEMENT-1", "a")
        trail.append(AuditEntryType.VOTE_RECORDED, {"weight": 30}, "DISBURSEMENT-1", "b")
        with trail.SessionLocal() as session:
            session.execute(
                update(AuditEntryDB)
                .where(AuditEntryDB.sequence_number == 1)
                .values(content={"weight": 3000})
            )
            session.commit()
        is_valid, at, message = trail.verify_chain()
        assert not is_valid
        assert at == 1
        assert "Hash mismatch" in message

    def test_unknown_entry_type_refused(self, trail):
        with pytest.raises(ValueError):
            trail.append("vote_deleted", {})

    def test_append_without_genesis(self, db_url):
        trail = AuditTrail(db_url)
        trail.initialize()
        with trail.SessionLocal() as session:
            session.query(AuditEntryDB).delete()
            session.commit()
        with pytest.raises(AuditIntegrityError):
            trail.append(AuditEntryType.VOTE_RECORDED, {})

    def test_entries_for_proposal(self, trail):
        trail.append(AuditEntryType.PROPOSAL_OPENED, {}, "DISBURSEMENT-1")
        trail.append(AuditEntryType.PROPOSAL_OPENED, {}, "DISBURSEMENT-2")
        trail.append(AuditEntryType.VOTE_RECORDED, {}, "DISBURSEMENT-1", "a")
        history = trail.entries_for("DISBURSEMENT-1")
        assert [e.entry_type for e in history] == ["proposal_opened", "vote_recorded"]


class TestEngineAudit:

    def test_transitions_recorded_in_order(self, db_url):
        clock = ManualClock()
        trail = AuditTrail(db_url, clock=clock)
        trail.initialize()
        parameters = ParameterRegistry()
        parameters.publish(DEFAULT_GOVERNANCE_PARAMETERS)
        engine = ProposalEngine(
            ApprovalPolicyEvaluator(LIMITS),
            parameters,
            audit=trail,
            clock=clock,
            identifiers=IdentifierFactory(clock=clock, entropy=random.Random(7)),
        )
        proposal = engine.open_proposal(
            {"amount": "2500.00", "project_id": "p1", "actor_id": "pm-1", "role": "PROJECT_MANAGER"},
            voting_weights={"a": 30, "b": 30, "rest": 940},
        )
        engine.record_approval(proposal.id, "a", "TREASURER")
        engine.record_approval(proposal.id, "b", "FINANCE_REVIEWER")
        engine.override(proposal.id, "dao-1", "DAO_MULTISIG", "EXECUTED", "urgent payroll")

        history = trail.entries_for(proposal.id)
        assert [e.entry_type for e in history] == [
            "proposal_opened",
            "vote_recorded",
            "vote_recorded",
            "threshold_met",
            "override_executed",
        ]
        assert history[-1].actor_id == "dao-1"
        assert history[-1].content["resolution"] == "override"
        assert history[0].content["amount"] == "$2500.00"
        assert trail.verify_chain()[0]


class TestAuditTool:

    def test_valid_chain_exits_zero(self, trail, db_url):
        trail.append(AuditEntryType.PROPOSAL_OPENED, {}, "DISBURSEMENT-1")
        with pytest.raises(SystemExit) as exc:
            audit_cli.main(["--database-url", db_url, "--verbose"])
        assert exc.value.code == 0

    def test_proposal_history(self, trail, db_url):
        trail.append(AuditEntryType.PROPOSAL_OPENED, {}, "DISBURSEMENT-1")
        assert audit_cli.run_audit(db_url, proposal_id="DISBURSEMENT-1") is True

    def test_tampered_chain_exits_one(self, trail, db_url):
        trail.append(AuditEntryType.PROPOSAL_OPENED, {"amount": "$10.00"}, "DISBURSEMENT-1")
        with trail.SessionLocal() as session:
            session.execute(
                update(AuditEntryDB)
                .where(AuditEntryDB.sequence_number == 1)
                .values(actor_id="someone-else")
            )
            session.commit()
        with pytest.raises(SystemExit) as exc:
            audit_cli.main(["--database-url", db_url])
        assert exc.value.code == 1
