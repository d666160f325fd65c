"""
Tests for configuration loading and engine assembly.

Validates:
- Environment overrides with the TREASURY_POLICY_ prefix
- Approval limits flow from settings into the evaluator
- build_engine refuses to start on configuration defects
- Restart restores open proposals and keeps the audit chain intact
"""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from decimal import Decimal

import pytest

from treasury_policy.config import PolicySettings
from treasury_policy.errors import AmountExceedsRoleLimit, ConfigurationError, InsufficientPermission
from treasury_policy.finance.clock import ManualClock
from treasury_policy.governance.parameters import DEFAULT_GOVERNANCE_PARAMETERS
from treasury_policy.governance.roles import FinanceRole, role_registry
from treasury_policy.governance.schema import ProposalStatus
from treasury_policy.ledger.service import AuditEntryType
from treasury_policy.orchestrator import build_engine, load_role_registry, sweep_once

WEIGHTS = {"a": 30, "b": 30, "rest": 940}


def _config(tmp_path, **overrides):
    return PolicySettings(
        database_url=f"sqlite:///{tmp_path / 'policy.db'}",
        _env_file=None,
        **overrides,
    )


def _request(amount="5000"):
    return {"amount": amount, "project_id": "p1", "actor_id": "pm-1", "role": "PROJECT_MANAGER"}


class TestSettings:

    def test_defaults(self):
        config = PolicySettings(_env_file=None)
        assert config.role_limits[FinanceRole.TREASURER] == Decimal("50000")
        assert config.emergency_proposals_enabled is True

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("TREASURY_POLICY_TREASURER_APPROVAL_LIMIT_USD", "75000.50")
        monkeypatch.setenv("TREASURY_POLICY_EMERGENCY_PROPOSALS_ENABLED", "false")
        config = PolicySettings(_env_file=None)
        assert config.role_limits[FinanceRole.TREASURER] == Decimal("75000.50")
        assert config.emergency_proposals_enabled is False


class TestBuildEngine:

    def test_limits_from_settings(self, tmp_path):
        engine = build_engine(
            _config(tmp_path, project_manager_approval_limit_usd=Decimal("1000")),
            clock=ManualClock(),
        )
        proposal = engine.open_proposal(_request("1500"), voting_weights=WEIGHTS)
        with pytest.raises(AmountExceedsRoleLimit):
            engine.record_approval(proposal.id, "a", "PROJECT_MANAGER")

    def test_negative_limit_is_fatal(self, tmp_path):
        with pytest.raises(ConfigurationError):
            build_engine(_config(tmp_path, treasurer_approval_limit_usd=Decimal("-1")))

    def test_parameters_published_once(self, tmp_path):
        config = _config(tmp_path)
        first = build_engine(config, clock=ManualClock())
        second = build_engine(config, clock=ManualClock())
        published = [
            e for e in second.audit.get_latest_entries()
            if e.entry_type == AuditEntryType.PARAMETERS_PUBLISHED.value
        ]
        assert len(published) == 1
        assert published[0].content["version"] == first.parameters.latest.version

    def test_conflicting_parameters_are_fatal(self, tmp_path):
        build_engine(_config(tmp_path), clock=ManualClock())
        doc = DEFAULT_GOVERNANCE_PARAMETERS.document()
        doc["major"]["quorum_fraction"] = "0.2"
        path = tmp_path / "params.json"
        path.write_text(json.dumps(doc))
        with pytest.raises(ConfigurationError):
            build_engine(_config(tmp_path, governance_params_path=str(path)))

    def test_restart_restores_open_proposals(self, tmp_path):
        clock = ManualClock()
        config = _config(tmp_path)
        engine = build_engine(config, clock=clock)
        proposal = engine.open_proposal(_request(), voting_weights=WEIGHTS)
        engine.record_approval(proposal.id, "a", "TREASURER")

        restarted = build_engine(config, clock=clock)
        assert [p.id for p in restarted.list_open()] == [proposal.id]
        updated = restarted.record_approval(proposal.id, "b", "TREASURER")
        assert updated.threshold_met_at == clock.now()
        assert restarted.audit.verify_chain()[0]

    def test_emergency_disabled_by_config(self, tmp_path):
        engine = build_engine(_config(tmp_path, emergency_proposals_enabled=False))
        with pytest.raises(InsufficientPermission):
            engine.open_proposal({**_request(), "emergency": True}, voting_weights=WEIGHTS)


class TestRoleConfiguration:

    def test_default_table_when_unset(self):
        assert load_role_registry(None) is role_registry

    def test_missing_file_is_fatal(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_role_registry(str(tmp_path / "roles.json"))

    def test_incomplete_table_is_fatal(self, tmp_path):
        path = tmp_path / "roles.json"
        path.write_text(json.dumps({"finance": {"VENDOR": ["can_create_invoices"]}, "system": {}}))
        with pytest.raises(ConfigurationError):
            build_engine(_config(tmp_path, roles_config_path=str(path)))


class TestSweepLoop:

    def test_sweep_without_verification(self, tmp_path):
        clock = ManualClock()
        engine = build_engine(_config(tmp_path), clock=clock)
        proposal = engine.open_proposal(_request(), voting_weights=WEIGHTS)
        clock.advance(timedelta(days=8))

        finished, verification = asyncio.run(sweep_once(engine))
        assert [p.id for p in finished] == [proposal.id]
        assert finished[0].status == ProposalStatus.EXPIRED
        assert verification is None

    def test_sweep_with_verification(self, tmp_path):
        engine = build_engine(_config(tmp_path), clock=ManualClock())
        finished, verification = asyncio.run(sweep_once(engine, verify_chain=True))
        assert finished == []
        is_valid, entries, _ = verification
        assert is_valid
        assert entries == engine.audit.get_entry_count()

    def test_verification_cadence_must_be_positive(self):
        with pytest.raises(ValueError):
            PolicySettings(_env_file=None, chain_verify_every_sweeps=0)
