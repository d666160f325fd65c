"""
Tests for proposal and parameter-version storage.

Validates:
- Revision-guarded, idempotent snapshot writes
- Proposal documents round-trip through SQLite
- Insert-only parameter versions
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from treasury_policy.errors import ConfigurationError
from treasury_policy.finance.money import Currency
from treasury_policy.governance.parameters import (
    DEFAULT_GOVERNANCE_PARAMETERS,
    ParameterRegistry,
    ProposalClass,
    parse_parameter_set,
)
from treasury_policy.governance.roles import FinanceRole
from treasury_policy.governance.schema import (
    ApprovalRecord,
    Proposal,
    ProposalStatus,
    Resolution,
    VoteSupport,
)
from treasury_policy.ledger.repository import (
    InMemoryProposalRepository,
    SqlParameterVersionStore,
    SqlProposalRepository,
)

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def make_proposal(pid="DISBURSEMENT-260101ab12", project_id="p1", revision=1, **overrides):
    fields = dict(
        id=pid,
        project_id=project_id,
        proposer_id="pm-1",
        proposer_role=FinanceRole.PROJECT_MANAGER,
        proposal_class=ProposalClass.STANDARD,
        amount_minor=500_000,
        currency=Currency.USDC,
        parameters_version="1.0.0",
        voting_weights={"a": 60, "b": 40},
        opened_at=T0,
        voting_deadline=T0 + timedelta(days=7),
        revision=revision,
    )
    fields.update(overrides)
    return Proposal(**fields)


class TestInMemoryRepository:

    def setup_method(self):
        self.repo = InMemoryProposalRepository()

    def test_newer_revision_replaces(self):
        assert self.repo.save(make_proposal(revision=1))
        assert self.repo.save(make_proposal(revision=2, title="updated"))
        assert self.repo.get("DISBURSEMENT-260101ab12").title == "updated"

    def test_replay_and_stale_are_noops(self):
        self.repo.save(make_proposal(revision=2, title="current"))
        assert self.repo.save(make_proposal(revision=2, title="replay")) is False
        assert self.repo.save(make_proposal(revision=1, title="stale")) is False
        assert self.repo.get("DISBURSEMENT-260101ab12").title == "current"

    def test_get_returns_detached_copy(self):
        self.repo.save(make_proposal())
        copy = self.repo.get("DISBURSEMENT-260101ab12")
        copy.voting_weights["c"] = 1
        assert "c" not in self.repo.get("DISBURSEMENT-260101ab12").voting_weights

    def test_list_open(self):
        self.repo.save(make_proposal(pid="DISBURSEMENT-260101aaaa"))
        self.repo.save(make_proposal(
            pid="DISBURSEMENT-260101bbbb", status=ProposalStatus.EXPIRED,
        ))
        assert [p.id for p in self.repo.list_open()] == ["DISBURSEMENT-260101aaaa"]
        assert len(self.repo) == 2


class TestSqlProposalRepository:

    def _repo(self, tmp_path):
        repo = SqlProposalRepository(f"sqlite:///{tmp_path / 'policy.db'}")
        repo.initialize()
        return repo

    def test_round_trip(self, tmp_path):
        repo = self._repo(tmp_path)
        vote = ApprovalRecord(
            role=FinanceRole.TREASURER,
            actor_id="a",
            support=VoteSupport.FOR,
            weight=60,
            timestamp=T0 + timedelta(hours=1),
        )
        proposal = make_proposal(
            approvals=[vote],
            threshold_met_at=T0 + timedelta(hours=1),
            reference="INVOICE-42",
        )
        assert repo.save(proposal)
        loaded = repo.get(proposal.id)
        assert loaded == proposal
        assert loaded.amount == proposal.amount
        assert loaded.approvals[0].support == VoteSupport.FOR

    def test_unknown_is_none(self, tmp_path):
        assert self._repo(tmp_path).get("DISBURSEMENT-missing") is None

    def test_revision_guard(self, tmp_path):
        repo = self._repo(tmp_path)
        repo.save(make_proposal(revision=3, title="current"))
        assert repo.save(make_proposal(revision=3, title="replay")) is False
        assert repo.save(make_proposal(revision=2, title="stale")) is False
        assert repo.get("DISBURSEMENT-260101ab12").title == "current"

    def test_terminal_leaves_open_list(self, tmp_path):
        repo = self._repo(tmp_path)
        repo.save(make_proposal(revision=1))
        assert len(repo.list_open()) == 1
        repo.save(make_proposal(
            revision=2,
            status=ProposalStatus.EXECUTED,
            resolution=Resolution.VOTE,
            closed_at=T0 + timedelta(days=3),
        ))
        assert repo.list_open() == []
        assert repo.get("DISBURSEMENT-260101ab12").status == ProposalStatus.EXECUTED

    def test_list_by_project(self, tmp_path):
        repo = self._repo(tmp_path)
        repo.save(make_proposal(pid="DISBURSEMENT-260101aaaa", project_id="p1"))
        repo.save(make_proposal(pid="DISBURSEMENT-260101bbbb", project_id="p2"))
        repo.save(make_proposal(pid="DISBURSEMENT-260101cccc", project_id="p1"))
        assert [p.id for p in repo.list_by_project("p1")] == [
            "DISBURSEMENT-260101aaaa", "DISBURSEMENT-260101cccc",
        ]


class TestSqlParameterVersionStore:

    def _store(self, tmp_path):
        store = SqlParameterVersionStore(f"sqlite:///{tmp_path / 'policy.db'}")
        store.initialize()
        return store

    def test_save_and_load(self, tmp_path):
        store = self._store(tmp_path)
        store.save(DEFAULT_GOVERNANCE_PARAMETERS)
        assert store.load_all() == [DEFAULT_GOVERNANCE_PARAMETERS]

    def test_identical_resave_is_noop(self, tmp_path):
        store = self._store(tmp_path)
        store.save(DEFAULT_GOVERNANCE_PARAMETERS)
        store.save(parse_parameter_set(DEFAULT_GOVERNANCE_PARAMETERS.document()))
        assert len(store.load_all()) == 1

    def test_conflicting_resave_refused(self, tmp_path):
        store = self._store(tmp_path)
        store.save(DEFAULT_GOVERNANCE_PARAMETERS)
        doc = DEFAULT_GOVERNANCE_PARAMETERS.document()
        doc["standard"]["timelock_hours"] = 1
        with pytest.raises(ConfigurationError):
            store.save(parse_parameter_set(doc))
        assert store.load_all()[0].standard.timelock_hours == 48

    def test_registry_reloads_history(self, tmp_path):
        store = self._store(tmp_path)
        ParameterRegistry(store).publish(DEFAULT_GOVERNANCE_PARAMETERS)
        doc = DEFAULT_GOVERNANCE_PARAMETERS.document()
        doc["version"] = "1.1.0"
        ParameterRegistry(store).publish(parse_parameter_set(doc))

        reloaded = ParameterRegistry(self._store(tmp_path))
        assert set(reloaded.versions()) == {"1.0.0", "1.1.0"}
        assert reloaded.get("1.0.0") == DEFAULT_GOVERNANCE_PARAMETERS
