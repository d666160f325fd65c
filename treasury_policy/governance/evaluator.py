"""
Approval Policy Evaluator — Who may vote on a proposal, and when it may execute.

The evaluator is pure: it reads the immutable role registry, the configured
per-role dollar limits and a proposal's pinned parameter set, and returns
decisions. It never mutates a proposal and holds no locks; the engine calls
it while holding the proposal's lock.

Per-vote gates, in order:
    1. Capability  — role holds an approval tier, else InsufficientPermission
    2. Amount      — limit-bound tiers must cover the amount, else
                     AmountExceedsRoleLimit naming the tier to escalate to

Thresholds are compared as exact rationals: a quorum of exactly 4% passes a
4% bar.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from fractions import Fraction
from typing import Mapping

from treasury_policy.errors import (
    AmountExceedsRoleLimit,
    ConfigurationError,
    InsufficientPermission,
)
from treasury_policy.finance.money import Currency, Money
from treasury_policy.governance.parameters import ClassParameters, GovernanceParameterSet
from treasury_policy.governance.roles import (
    APPROVAL_CAPABILITIES,
    PROPOSAL_CAPABILITIES,
    Capability,
    FinanceRole,
    RolePermissionRegistry,
    coerce_finance_role,
    role_registry,
)
from treasury_policy.governance.schema import Proposal, VoteSupport

logger = logging.getLogger(__name__)


class Outcome(str, enum.Enum):
    """What the evaluator concludes about an open proposal at a moment."""

    PENDING = "pending"  # thresholds not met, voting still open
    TIMELOCKED = "timelocked"  # thresholds met, cool-down running
    EXECUTABLE = "executable"
    EXPIRE = "expire"  # deadline passed without quorum
    REJECT = "reject"  # deadline passed with quorum but no approval


@dataclass(frozen=True)
class ThresholdReport:
    """Tally of a proposal's votes against its class parameters."""

    total_weight: int
    cast_weight: int
    for_weight: int
    against_weight: int
    abstain_weight: int
    sponsors: tuple[str, ...]
    sponsor_weight: int
    quorum_met: bool
    approval_met: bool
    sponsorship_met: bool
    failures: tuple[str, ...] = field(default_factory=tuple)

    @property
    def passed(self) -> bool:
        return self.quorum_met and self.approval_met and self.sponsorship_met

    @property
    def quorum(self) -> Fraction:
        return Fraction(self.cast_weight, self.total_weight) if self.total_weight else Fraction(0)

    @property
    def approval(self) -> Fraction:
        decisive = self.for_weight + self.against_weight
        return Fraction(self.for_weight, decisive) if decisive else Fraction(0)


def _at_least(numerator: int, denominator: int, bar: Decimal) -> bool:
    if denominator <= 0:
        return False
    return Fraction(numerator, denominator) >= Fraction(bar)


class ApprovalPolicyEvaluator:
    """
    Applies the approval matrix and governance thresholds.

    ``role_limits`` maps each limit-bound finance role to its maximum
    approvable amount in USD. Roles holding ``can_approve_highest_value`` are
    unbounded. A limit-bound role without a configured limit is a fatal
    ConfigurationError: the engine will not guess a dollar figure.
    """

    def __init__(
        self,
        role_limits: Mapping[FinanceRole | str, Decimal | int | str],
        registry: RolePermissionRegistry | None = None,
    ) -> None:
        self.registry = registry or role_registry
        limits: dict[FinanceRole, Decimal] = {}
        for role, value in role_limits.items():
            try:
                role = FinanceRole(str(getattr(role, "value", role)).upper())
                limit = Decimal(str(value))
            except (ValueError, ArithmeticError) as e:
                raise ConfigurationError(f"Invalid approval limit {role}={value!r}") from e
            if not limit.is_finite() or limit < 0:
                raise ConfigurationError(f"Approval limit for {role.value} must be >= 0")
            limits[role] = limit

        for role in FinanceRole:
            tier = self.approval_capability(role)
            if tier is not None and tier != Capability.CAN_APPROVE_HIGHEST_VALUE and role not in limits:
                raise ConfigurationError(
                    f"Role {role.value} holds {tier.value} but has no approval limit configured"
                )
        self._limits = limits

    # ── Role gates ─────────────────────────────────────────────

    def approval_capability(self, role: FinanceRole | str) -> Capability | None:
        """Highest approval tier a role holds, or None."""
        perms = self.registry.permissions_for(role)
        for capability in reversed(APPROVAL_CAPABILITIES):
            if perms.has(capability):
                return capability
        return None

    def role_limit(self, role: FinanceRole | str, currency: Currency | str = Currency.USD) -> Money | None:
        """A role's approval ceiling in ``currency``; None means unbounded."""
        role = coerce_finance_role(role)
        if self.approval_capability(role) == Capability.CAN_APPROVE_HIGHEST_VALUE:
            return None
        limit = self._limits.get(role)
        if limit is None:
            return None
        return Money.from_decimal(limit, currency)

    def check_authority(self, role: FinanceRole | str, amount: Money) -> Capability:
        """
        Run the capability and amount-limit gates for one vote.

        Returns the approval tier the role exercised.
        """
        role = coerce_finance_role(role)
        capability = self.approval_capability(role)
        if capability is None:
            raise InsufficientPermission(
                f"Role {role.value} cannot approve financial proposals",
                role=role.value,
            )
        limit = self.role_limit(role, amount.currency)
        if limit is not None and amount.compare(limit) > 0:
            escalation = self.required_capability(amount)
            raise AmountExceedsRoleLimit(
                f"{amount} exceeds the {role.value} approval limit of {limit}; "
                f"requires {escalation.value}",
                role=role.value,
                limit=limit,
                amount=amount,
                escalation=escalation.value,
            )
        return capability

    def may_approve(self, role: FinanceRole | str, amount: Money) -> bool:
        try:
            self.check_authority(role, amount)
        except (InsufficientPermission, AmountExceedsRoleLimit):
            return False
        return True

    def required_capability(self, amount: Money) -> Capability:
        """Lowest approval tier whose holders can approve ``amount``."""
        for capability in APPROVAL_CAPABILITIES:
            for role in FinanceRole:
                if self.approval_capability(role) != capability:
                    continue
                limit = self.role_limit(role, amount.currency)
                if limit is None or amount.compare(limit) <= 0:
                    return capability
        return Capability.CAN_APPROVE_HIGHEST_VALUE

    def eligible_roles(self, amount: Money) -> list[FinanceRole]:
        """Finance roles whose approval would be accepted for ``amount``."""
        return [role for role in FinanceRole if self.may_approve(role, amount)]

    def check_proposer(self, role: FinanceRole | str) -> FinanceRole:
        role = coerce_finance_role(role)
        if not self.registry.any_capability(role, PROPOSAL_CAPABILITIES):
            raise InsufficientPermission(
                f"Role {role.value} cannot open financial proposals",
                role=role.value,
            )
        return role

    def require_override(self, role: FinanceRole | str) -> FinanceRole:
        role = coerce_finance_role(role)
        if not self.registry.has_capability(role, Capability.CAN_OVERRIDE_APPROVALS):
            raise InsufficientPermission(
                f"Role {role.value} cannot override approvals",
                role=role.value,
                capability=Capability.CAN_OVERRIDE_APPROVALS.value,
            )
        return role

    # ── Thresholds ─────────────────────────────────────────────

    def tally(self, proposal: Proposal, params: ClassParameters) -> ThresholdReport:
        """Compare a proposal's recorded votes against its class thresholds."""
        total = proposal.total_weight
        weights = {VoteSupport.FOR: 0, VoteSupport.AGAINST: 0, VoteSupport.ABSTAIN: 0}
        for vote in proposal.approvals:
            weights[vote.support] += vote.weight
        cast = sum(weights.values())

        rule = params.sponsorship
        sponsors = tuple(
            vote.actor_id
            for vote in proposal.approvals
            if vote.support == VoteSupport.FOR
            and vote.weight > 0
            and (
                rule.per_wallet_min_fraction is None
                or _at_least(vote.weight, total, rule.per_wallet_min_fraction)
            )
        )
        sponsor_weight = sum(
            v.weight for v in proposal.approvals if v.actor_id in sponsors
        )

        quorum_met = _at_least(cast, total, params.quorum_fraction)
        approval_met = _at_least(
            weights[VoteSupport.FOR],
            weights[VoteSupport.FOR] + weights[VoteSupport.AGAINST],
            params.approval_fraction,
        )
        sponsorship_met = len(sponsors) >= rule.min_wallets and _at_least(
            sponsor_weight, total, rule.fraction
        )

        failures = []
        if not quorum_met:
            failures.append("quorum not reached")
        if not approval_met:
            failures.append("approval threshold not reached")
        if not sponsorship_met:
            failures.append("sponsorship requirement not met")

        return ThresholdReport(
            total_weight=total,
            cast_weight=cast,
            for_weight=weights[VoteSupport.FOR],
            against_weight=weights[VoteSupport.AGAINST],
            abstain_weight=weights[VoteSupport.ABSTAIN],
            sponsors=sponsors,
            sponsor_weight=sponsor_weight,
            quorum_met=quorum_met,
            approval_met=approval_met,
            sponsorship_met=sponsorship_met,
            failures=tuple(failures),
        )

    def timelock_ends_at(self, proposal: Proposal, params: ClassParameters) -> datetime | None:
        if proposal.threshold_met_at is None:
            return None
        return proposal.threshold_met_at + timedelta(hours=params.timelock_hours)

    def evaluate(
        self,
        proposal: Proposal,
        params: GovernanceParameterSet,
        now: datetime,
    ) -> tuple[Outcome, ThresholdReport]:
        """
        Decide what should happen to an open proposal at ``now``.

        ``proposal.threshold_met_at`` must already reflect the current tally.
        A proposal whose thresholds held before the deadline stays open
        through its timelock even after the voting period ends.
        """
        class_params = params.for_class(proposal.proposal_class)
        report = self.tally(proposal, class_params)
        if report.passed and proposal.threshold_met_at is not None:
            ends = self.timelock_ends_at(proposal, class_params)
            if now >= ends:
                return Outcome.EXECUTABLE, report
            return Outcome.TIMELOCKED, report
        if now >= proposal.voting_deadline:
            if not report.quorum_met:
                return Outcome.EXPIRE, report
            return Outcome.REJECT, report
        return Outcome.PENDING, report
