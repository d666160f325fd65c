"""Treasury Policy — Application configuration via environment variables."""

from __future__ import annotations

from decimal import Decimal

from pydantic import Field
from pydantic_settings import BaseSettings

from treasury_policy.governance.roles import FinanceRole


class PolicySettings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {
        "env_prefix": "TREASURY_POLICY_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    # ── Storage ────────────────────────────────────────────────
    database_url: str = "sqlite:///treasury_policy.db"

    # ── Approval matrix (USD) ──────────────────────────────────
    project_manager_approval_limit_usd: Decimal = Decimal("10000")
    finance_reviewer_approval_limit_usd: Decimal = Decimal("10000")
    treasurer_approval_limit_usd: Decimal = Decimal("50000")

    # ── Governance ─────────────────────────────────────────────
    governance_params_path: str | None = None  # JSON; built-in set when unset
    roles_config_path: str | None = None  # JSON; built-in role table when unset
    emergency_proposals_enabled: bool = True
    sweep_interval_seconds: float = 60.0
    chain_verify_every_sweeps: int = Field(default=60, ge=1)  # full audit re-verification cadence

    # ── Logging ────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"

    @property
    def role_limits(self) -> dict[FinanceRole, Decimal]:
        return {
            FinanceRole.PROJECT_MANAGER: self.project_manager_approval_limit_usd,
            FinanceRole.FINANCE_REVIEWER: self.finance_reviewer_approval_limit_usd,
            FinanceRole.TREASURER: self.treasurer_approval_limit_usd,
        }


settings = PolicySettings()
