"""
Governance Parameters — Versioned threshold sets for each proposal class.

A GovernanceParameterSet holds the quorum, approval, sponsorship and
timelock rules for the three proposal classes, plus the platform-wide voting
period, MAJOR classification threshold and proposal deposit. Sets are
frozen; a published version can never change. Every proposal pins the
version in force when it was opened and is evaluated against that version
for its whole life.

Default values follow the platform's published governance table:

    Class      Quorum  Approval  Sponsorship           Timelock
    STANDARD   4%      50%       1%, 2 wallets >=0.2%  48h
    MAJOR      10%     60%       2%, 3 wallets >=0.3%  72h
    EMERGENCY  2%      50%       2%, 5 wallets         12h
"""

from __future__ import annotations

import enum
import json
import logging
import threading
from decimal import Decimal
from pathlib import Path
from typing import Annotated, Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from treasury_policy.errors import ConfigurationError
from treasury_policy.finance.money import Currency, Money

logger = logging.getLogger(__name__)


class ProposalClass(str, enum.Enum):
    """Governance tier of a proposal."""

    STANDARD = "STANDARD"
    MAJOR = "MAJOR"
    EMERGENCY = "EMERGENCY"


UnitFraction = Annotated[Decimal, Field(ge=Decimal(0), le=Decimal(1))]


class SponsorshipRule(BaseModel):
    """Minimum distinct-wallet backing a proposal needs before it can pass."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    fraction: UnitFraction
    min_wallets: int = Field(ge=0)
    per_wallet_min_fraction: UnitFraction | None = None


class ClassParameters(BaseModel):
    """Thresholds for one proposal class."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    quorum_fraction: UnitFraction
    approval_fraction: UnitFraction
    sponsorship: SponsorshipRule
    timelock_hours: int = Field(ge=0)


class GovernanceParameterSet(BaseModel):
    """An immutable, versioned set of governance rules."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    version: str = Field(min_length=1)
    standard: ClassParameters
    major: ClassParameters
    emergency: ClassParameters
    voting_period_days: int = Field(gt=0)
    treasury_major_threshold_usd: Decimal = Field(gt=Decimal(0))
    proposal_deposit_usdc: Decimal = Field(ge=Decimal(0))

    @model_validator(mode="after")
    def _emergency_has_no_per_wallet_minimum(self) -> GovernanceParameterSet:
        if self.emergency.sponsorship.per_wallet_min_fraction is not None:
            raise ValueError("emergency sponsorship does not take a per-wallet minimum")
        return self

    def for_class(self, proposal_class: ProposalClass) -> ClassParameters:
        return {
            ProposalClass.STANDARD: self.standard,
            ProposalClass.MAJOR: self.major,
            ProposalClass.EMERGENCY: self.emergency,
        }[ProposalClass(proposal_class)]

    def major_threshold(self, currency: Currency | str = Currency.USD) -> Money:
        """The MAJOR boundary expressed in ``currency`` (USD and USDC are 1:1)."""
        return Money.from_decimal(self.treasury_major_threshold_usd, currency)

    @property
    def proposal_deposit(self) -> Money:
        return Money.from_decimal(self.proposal_deposit_usdc, Currency.USDC)

    def classify(
        self,
        amount: Money,
        emergency: bool = False,
        hint: ProposalClass | None = None,
    ) -> ProposalClass:
        """
        Determine a proposal's class.

        An emergency flag (or EMERGENCY hint) forces EMERGENCY. Otherwise an
        amount at or above the MAJOR threshold is MAJOR; a MAJOR hint may
        escalate a smaller amount but no hint can downgrade a MAJOR amount.
        """
        if emergency or hint == ProposalClass.EMERGENCY:
            return ProposalClass.EMERGENCY
        if amount >= self.major_threshold(amount.currency):
            return ProposalClass.MAJOR
        if hint == ProposalClass.MAJOR:
            return ProposalClass.MAJOR
        return ProposalClass.STANDARD

    def document(self) -> dict[str, Any]:
        """JSON-safe representation used for persistence and comparison."""
        return self.model_dump(mode="json")


DEFAULT_GOVERNANCE_PARAMETERS = GovernanceParameterSet(
    version="1.0.0",
    standard=ClassParameters(
        quorum_fraction=Decimal("0.04"),
        approval_fraction=Decimal("0.5"),
        sponsorship=SponsorshipRule(
            fraction=Decimal("0.01"),
            min_wallets=2,
            per_wallet_min_fraction=Decimal("0.002"),
        ),
        timelock_hours=48,
    ),
    major=ClassParameters(
        quorum_fraction=Decimal("0.10"),
        approval_fraction=Decimal("0.6"),
        sponsorship=SponsorshipRule(
            fraction=Decimal("0.02"),
            min_wallets=3,
            per_wallet_min_fraction=Decimal("0.003"),
        ),
        timelock_hours=72,
    ),
    emergency=ClassParameters(
        quorum_fraction=Decimal("0.02"),
        approval_fraction=Decimal("0.5"),
        sponsorship=SponsorshipRule(fraction=Decimal("0.02"), min_wallets=5),
        timelock_hours=12,
    ),
    voting_period_days=7,
    treasury_major_threshold_usd=Decimal("1000000"),
    proposal_deposit_usdc=Decimal("100"),
)


def parse_parameter_set(payload: Any) -> GovernanceParameterSet:
    """Validate a raw mapping; any defect is a fatal ConfigurationError."""
    try:
        return GovernanceParameterSet.model_validate(payload)
    except ValidationError as e:
        raise ConfigurationError(f"Malformed governance parameter set: {e}") from e


def load_parameter_set(path: str | Path) -> GovernanceParameterSet:
    """Load a parameter set from a JSON file."""
    try:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigurationError(f"Cannot read governance parameters at {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Governance parameters at {path} are not valid JSON: {e}") from e
    params = parse_parameter_set(payload)
    logger.info("Loaded governance parameters version %s from %s", params.version, path)
    return params


class ParameterStore(Protocol):
    """Durable, insert-only storage for published parameter versions."""

    def save(self, params: GovernanceParameterSet) -> None: ...

    def load_all(self) -> list[GovernanceParameterSet]: ...


class ParameterRegistry:
    """
    Every parameter version ever published, kept for audit replay.

    Publishing the same values twice under one version is a no-op;
    publishing different values under an existing version is refused.
    """

    def __init__(self, store: ParameterStore | None = None) -> None:
        self._store = store
        self._versions: dict[str, GovernanceParameterSet] = {}
        self._latest: str | None = None
        self._lock = threading.Lock()
        if store is not None:
            for params in store.load_all():
                self._versions[params.version] = params
                self._latest = params.version

    def publish(self, params: GovernanceParameterSet) -> bool:
        """Publish a version. Returns True if it was new."""
        with self._lock:
            existing = self._versions.get(params.version)
            if existing is not None:
                if existing != params:
                    raise ConfigurationError(
                        f"Governance parameter version {params.version} is already "
                        "published with different values; publish a new version instead"
                    )
                self._latest = params.version
                return False
            if self._store is not None:
                self._store.save(params)
            self._versions[params.version] = params
            self._latest = params.version
        logger.info("Published governance parameters version %s", params.version)
        return True

    def get(self, version: str) -> GovernanceParameterSet:
        try:
            return self._versions[version]
        except KeyError:
            raise ConfigurationError(f"Unknown governance parameter version: {version}") from None

    @property
    def latest(self) -> GovernanceParameterSet:
        if self._latest is None:
            raise ConfigurationError("No governance parameter set has been published")
        return self._versions[self._latest]

    def versions(self) -> list[str]:
        return list(self._versions)
