"""
Proposal Schema — Pydantic models for proposals, votes and outbound events.

These models are the canonical shapes that flow through the policy engine:
inbound requests from the API layer, the proposal record the engine mutates
under its per-proposal lock, and the events handed to downstream
disbursement and notification collaborators.

Amounts are carried as integer minor units plus a currency so that a
proposal's JSON document round-trips exactly through storage.
"""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from treasury_policy.finance.money import Currency, Money
from treasury_policy.governance.parameters import ProposalClass
from treasury_policy.governance.roles import FinanceRole


# ════════════════════════════════════════════════════════════════
# Enumerations
# ════════════════════════════════════════════════════════════════


class ProposalStatus(str, enum.Enum):
    """Proposal lifecycle. Every state but OPEN is terminal."""

    OPEN = "OPEN"
    EXECUTED = "EXECUTED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self is not ProposalStatus.OPEN


class Resolution(str, enum.Enum):
    """How a terminal status was reached."""

    VOTE = "vote"  # thresholds and timelock satisfied
    VOTING_PERIOD = "voting_period"  # closed at the voting deadline
    OVERRIDE = "override"  # forced by an override-capable role


class VoteSupport(str, enum.Enum):
    FOR = "FOR"
    AGAINST = "AGAINST"
    ABSTAIN = "ABSTAIN"


# ════════════════════════════════════════════════════════════════
# Records
# ════════════════════════════════════════════════════════════════


class ApprovalRecord(BaseModel):
    """One vote on a proposal. Appended, never edited."""

    model_config = ConfigDict(frozen=True)

    role: FinanceRole
    actor_id: str
    support: VoteSupport
    weight: int = Field(ge=0)
    timestamp: datetime


class Proposal(BaseModel):
    """
    A financial action awaiting collective approval.

    The engine is the only writer. Every transition bumps ``revision`` so
    persisted copies can be ordered and stale writes refused.
    """

    id: str
    project_id: str
    proposer_id: str
    proposer_role: FinanceRole
    title: str = ""
    reference: str | None = None

    proposal_class: ProposalClass
    emergency: bool = False
    amount_minor: int
    currency: Currency

    parameters_version: str
    voting_weights: dict[str, int]
    approvals: list[ApprovalRecord] = Field(default_factory=list)

    status: ProposalStatus = ProposalStatus.OPEN
    resolution: Resolution | None = None
    close_reason: str | None = None

    opened_at: datetime
    voting_deadline: datetime
    threshold_met_at: datetime | None = None
    closed_at: datetime | None = None
    revision: int = 0

    @property
    def amount(self) -> Money:
        return Money(self.amount_minor, self.currency)

    @property
    def total_weight(self) -> int:
        return sum(self.voting_weights.values())

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def has_voted(self, actor_id: str) -> bool:
        return any(a.actor_id == actor_id for a in self.approvals)

    def snapshot(self) -> Proposal:
        """Detached deep copy safe to hand outside the engine's lock."""
        return self.model_copy(deep=True)

    def document(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


# ════════════════════════════════════════════════════════════════
# Inbound
# ════════════════════════════════════════════════════════════════


class ProposalRequest(BaseModel):
    """Request to open a proposal, from an already-authenticated actor."""

    amount: Decimal = Field(gt=Decimal(0))
    currency: Currency = Currency.USD
    class_hint: ProposalClass | None = None
    emergency: bool = False
    project_id: str = Field(min_length=1)
    actor_id: str = Field(min_length=1)
    role: str
    title: str = ""
    reference: str | None = None

    @field_validator("amount", mode="before")
    @classmethod
    def _refuse_float(cls, value: Any) -> Any:
        if isinstance(value, float):
            raise ValueError("amount must be a decimal string or integer, not a float")
        return value


class VoteSubmission(BaseModel):
    """A vote from an already-authenticated actor."""

    proposal_id: str
    actor_id: str = Field(min_length=1)
    role: str
    support: VoteSupport = VoteSupport.FOR


# ════════════════════════════════════════════════════════════════
# Outbound events
# ════════════════════════════════════════════════════════════════


class ProposalFinalized(BaseModel):
    """Emitted once when a proposal is EXECUTED."""

    model_config = ConfigDict(frozen=True)

    proposal_id: str
    project_id: str
    final_class: ProposalClass
    final_amount_minor: int
    currency: Currency
    approvals: list[ApprovalRecord]
    resolution: Resolution
    parameters_version: str
    executed_at: datetime

    @property
    def final_amount(self) -> Money:
        return Money(self.final_amount_minor, self.currency)


class ProposalClosed(BaseModel):
    """Emitted once when a proposal is REJECTED or EXPIRED."""

    model_config = ConfigDict(frozen=True)

    proposal_id: str
    project_id: str
    status: ProposalStatus
    resolution: Resolution
    reason: str
    closed_at: datetime


ProposalEvent = Union[ProposalFinalized, ProposalClosed]
EventSink = Callable[[ProposalEvent], None]
