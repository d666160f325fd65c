"""
Proposal Engine — Stateful lifecycle of financial proposals.

Proposal lifecycle:
    OPEN → (votes accumulate) → EXECUTED | REJECTED | EXPIRED

Every mutation of a proposal (vote append, threshold change, terminal
transition) happens under that proposal's own lock, so two concurrent votes
from one actor cannot both pass the duplicate gate and a proposal reaches a
terminal state at most once. The periodic sweep goes through the same locked
path as a manual execution.

Durability is retry-until-durable. Each transition places an immutable
snapshot on an outbox while the lock is held; after the lock is released the
outbox is flushed in order to the repository, then the audit trail, then the
event sink. A failed step leaves its item at the head of the outbox and is
retried on the next flush or sweep. No I/O happens under a proposal lock.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping

from treasury_policy.errors import (
    ConfigurationError,
    DuplicateApproval,
    InsufficientPermission,
    ProposalAlreadyTerminal,
    ProposalExpired,
    ProposalNotFound,
    ThresholdNotMet,
    TimelockNotElapsed,
)
from treasury_policy.finance.clock import Clock, SystemClock
from treasury_policy.finance.identifiers import (
    FinanceRefType,
    IdentifierFactory,
    format_finance_ref,
    parse_finance_ref,
)
from treasury_policy.finance.money import Money
from treasury_policy.governance.evaluator import ApprovalPolicyEvaluator, Outcome, ThresholdReport
from treasury_policy.governance.parameters import ParameterRegistry, ProposalClass
from treasury_policy.governance.roles import FinanceRole, coerce_finance_role
from treasury_policy.governance.schema import (
    ApprovalRecord,
    EventSink,
    Proposal,
    ProposalClosed,
    ProposalEvent,
    ProposalFinalized,
    ProposalRequest,
    ProposalStatus,
    Resolution,
    VoteSubmission,
    VoteSupport,
)
from treasury_policy.ledger.repository import InMemoryProposalRepository, ProposalRepository
from treasury_policy.ledger.service import AuditEntryType, AuditTrail

logger = logging.getLogger(__name__)

WeightSource = Callable[[str], Mapping[str, int]]

_TERMINAL_AUDIT_TYPES = {
    (ProposalStatus.EXECUTED, False): AuditEntryType.PROPOSAL_EXECUTED,
    (ProposalStatus.REJECTED, False): AuditEntryType.PROPOSAL_REJECTED,
    (ProposalStatus.EXPIRED, False): AuditEntryType.PROPOSAL_EXPIRED,
    (ProposalStatus.EXECUTED, True): AuditEntryType.OVERRIDE_EXECUTED,
    (ProposalStatus.REJECTED, True): AuditEntryType.OVERRIDE_REJECTED,
}


@dataclass
class _AuditRecord:
    entry_type: AuditEntryType
    content: dict[str, Any]
    actor_id: str = "system"


@dataclass
class _OutboxItem:
    """One transition awaiting durability. Progress flags make retries resumable."""

    snapshot: Proposal
    audit: list[_AuditRecord]
    event: ProposalEvent | None = None
    persisted: bool = False
    audited: int = 0
    delivered: bool = False


@dataclass
class _Transition:
    audit: list[_AuditRecord] = field(default_factory=list)
    event: ProposalEvent | None = None


class ProposalEngine:
    """
    Opens proposals, records votes and drives them to a terminal state.

    Usage:
        engine = ProposalEngine(evaluator, parameters, repository=repo, audit=trail)
        proposal = engine.open_proposal(request, voting_weights={"w1": 60, "w2": 40})
        engine.record_approval(proposal.id, "w1", "TREASURER")
        engine.sweep()  # periodically
    """

    def __init__(
        self,
        evaluator: ApprovalPolicyEvaluator,
        parameters: ParameterRegistry,
        repository: ProposalRepository | None = None,
        audit: AuditTrail | None = None,
        event_sink: EventSink | None = None,
        clock: Clock | None = None,
        identifiers: IdentifierFactory | None = None,
        weight_source: WeightSource | None = None,
        emergency_enabled: bool = True,
    ) -> None:
        self.evaluator = evaluator
        self.parameters = parameters
        self.repository = repository if repository is not None else InMemoryProposalRepository()
        self.audit = audit
        self.event_sink = event_sink
        self.clock = clock or SystemClock()
        self.identifiers = identifiers or IdentifierFactory(clock=self.clock)
        self.weight_source = weight_source
        self.emergency_enabled = emergency_enabled

        self._proposals: dict[str, Proposal] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._index_lock = threading.Lock()

        self._outbox: deque[_OutboxItem] = deque()
        self._outbox_lock = threading.Lock()
        self._flush_lock = threading.Lock()

    # ── Creation ───────────────────────────────────────────────

    def open_proposal(
        self,
        request: ProposalRequest | Mapping[str, Any],
        voting_weights: Mapping[str, int] | None = None,
    ) -> Proposal:
        """
        Open a proposal, pinning the current parameter set and weight snapshot.

        Raises:
            UnknownRole / InsufficientPermission: proposer may not open proposals
            MalformedReference: ``reference`` is not a valid finance reference
            ConfigurationError: no usable voting-weight snapshot
        """
        if not isinstance(request, ProposalRequest):
            request = ProposalRequest.model_validate(request)

        role = self.evaluator.check_proposer(request.role)
        emergency = request.emergency or request.class_hint == ProposalClass.EMERGENCY
        if emergency and not self.emergency_enabled:
            raise InsufficientPermission(
                "Emergency proposals are disabled", role=role.value
            )
        if request.reference is not None:
            parse_finance_ref(request.reference)

        amount = Money.from_decimal(request.amount, request.currency)
        params = self.parameters.latest
        proposal_class = params.classify(amount, emergency, request.class_hint)
        weights = self._weights_for(request.project_id, voting_weights)
        now = self.clock.now()

        proposal = Proposal(
            id=format_finance_ref(FinanceRefType.DISBURSEMENT, self.identifiers.suffix()),
            project_id=request.project_id,
            proposer_id=request.actor_id,
            proposer_role=role,
            title=request.title,
            reference=request.reference,
            proposal_class=proposal_class,
            emergency=emergency,
            amount_minor=amount.amount,
            currency=amount.currency,
            parameters_version=params.version,
            voting_weights=weights,
            opened_at=now,
            voting_deadline=now + timedelta(days=params.voting_period_days),
        )

        lock = threading.Lock()
        with self._index_lock:
            self._proposals[proposal.id] = proposal
            self._locks[proposal.id] = lock

        with lock:
            transition = _Transition()
            transition.audit.append(_AuditRecord(
                AuditEntryType.PROPOSAL_OPENED,
                {
                    "project_id": proposal.project_id,
                    "role": role.value,
                    "class": proposal_class.value,
                    "amount": amount.format(),
                    "parameters_version": params.version,
                    "total_weight": proposal.total_weight,
                    "reference": proposal.reference,
                },
                request.actor_id,
            ))
            snapshot = self._commit(proposal, transition)

        logger.info(
            "Proposal opened: id=%s project=%s class=%s amount=%s params=%s",
            proposal.id, proposal.project_id, proposal_class.value,
            amount.format(), params.version,
        )
        self.flush()
        return snapshot

    # ── Voting ─────────────────────────────────────────────────

    def cast_vote(self, submission: VoteSubmission | Mapping[str, Any]) -> Proposal:
        if not isinstance(submission, VoteSubmission):
            submission = VoteSubmission.model_validate(submission)
        return self.record_approval(
            submission.proposal_id,
            submission.actor_id,
            submission.role,
            submission.support,
        )

    def record_approval(
        self,
        proposal_id: str,
        actor_id: str,
        role: FinanceRole | str,
        support: VoteSupport | str = VoteSupport.FOR,
    ) -> Proposal:
        """
        Record one vote and re-evaluate thresholds.

        Gates run in order: terminal state, voting deadline, capability,
        amount limit, duplicate. A rejected vote leaves the proposal untouched.
        A vote after the deadline closes a proposal that is due to close, then
        raises ProposalExpired.
        """
        role = coerce_finance_role(role)
        support = VoteSupport(support)

        with self._lock_for(proposal_id):
            proposal = self._proposals[proposal_id]
            self._require_open(proposal)
            self.parameters.get(proposal.parameters_version)
            now = self.clock.now()
            deadline = proposal.voting_deadline
            expired = now >= deadline
            if expired:
                self._settle(proposal, now)
            else:
                snapshot = self._append_vote(proposal, actor_id, role, support, now)

        self.flush()
        if expired:
            raise ProposalExpired(
                f"Voting on {proposal_id} closed at {deadline.isoformat()}",
                proposal_id=proposal_id,
            )
        logger.info(
            "Vote recorded: proposal=%s actor=%s role=%s support=%s status=%s",
            proposal_id, actor_id, role.value, support.value, snapshot.status.value,
        )
        return snapshot

    # ── Execution ──────────────────────────────────────────────

    def execute(self, proposal_id: str, actor_id: str = "system") -> Proposal:
        """
        Execute a proposal whose thresholds hold and whose timelock has elapsed.

        Raises ThresholdNotMet or TimelockNotElapsed otherwise. A proposal
        whose voting period ended without meeting its thresholds is closed
        before ThresholdNotMet is raised.
        """
        closed: Proposal | None = None
        with self._lock_for(proposal_id):
            proposal = self._proposals[proposal_id]
            self._require_open(proposal)
            now = self.clock.now()
            params = self.parameters.get(proposal.parameters_version)
            outcome, report = self.evaluator.evaluate(proposal, params, now)

            if outcome in (Outcome.EXPIRE, Outcome.REJECT):
                closed = self._settle(proposal, now)
            elif not report.passed:
                raise ThresholdNotMet(
                    f"Proposal {proposal_id} has not met its thresholds: "
                    + ", ".join(report.failures),
                    proposal_id=proposal_id,
                )
            elif outcome == Outcome.TIMELOCKED:
                ends = self.evaluator.timelock_ends_at(
                    proposal, params.for_class(proposal.proposal_class)
                )
                raise TimelockNotElapsed(
                    f"Proposal {proposal_id} is timelocked until {ends.isoformat()}",
                    proposal_id=proposal_id,
                    ends_at=ends.isoformat(),
                )
            else:
                transition = _Transition()
                self._finalize(
                    proposal, ProposalStatus.EXECUTED, Resolution.VOTE, now,
                    "thresholds met and timelock elapsed", transition, actor_id=actor_id,
                )
                snapshot = self._commit(proposal, transition)

        self.flush()
        if closed is not None:
            raise ThresholdNotMet(
                f"Proposal {proposal_id} closed as {closed.status.value}: "
                + ", ".join(report.failures),
                proposal_id=proposal_id,
                status=closed.status.value,
            )
        return snapshot

    def override(
        self,
        proposal_id: str,
        actor_id: str,
        role: FinanceRole | str,
        outcome: ProposalStatus | str,
        reason: str = "",
    ) -> Proposal:
        """
        Force a proposal to EXECUTED or REJECTED, bypassing quorum and timelock.

        Requires ``can_override_approvals``. Recorded with
        ``resolution=override`` and a distinct audit entry type.
        """
        role = self.evaluator.require_override(role)
        outcome = ProposalStatus(outcome)
        if outcome not in (ProposalStatus.EXECUTED, ProposalStatus.REJECTED):
            raise ValueError(f"Override outcome must be EXECUTED or REJECTED, got {outcome.value}")

        with self._lock_for(proposal_id):
            proposal = self._proposals[proposal_id]
            self._require_open(proposal)
            now = self.clock.now()
            transition = _Transition()
            self._finalize(
                proposal, outcome, Resolution.OVERRIDE, now,
                reason or f"override by {role.value}", transition,
                actor_id=actor_id, override=True,
            )
            snapshot = self._commit(proposal, transition)

        logger.warning(
            "OVERRIDE %s: proposal=%s actor=%s role=%s reason=%s",
            outcome.value, proposal_id, actor_id, role.value, reason or "-",
        )
        self.flush()
        return snapshot

    def sweep(self) -> list[Proposal]:
        """
        Drive every open proposal forward in time.

        Executes proposals whose timelock has elapsed and closes those whose
        voting period ended without meeting thresholds. Also retries any
        pending outbox items. Returns snapshots of proposals that reached a
        terminal state during this sweep.
        """
        with self._index_lock:
            open_ids = [pid for pid, p in self._proposals.items() if not p.is_terminal]

        finished: list[Proposal] = []
        for proposal_id in open_ids:
            with self._lock_for(proposal_id):
                proposal = self._proposals[proposal_id]
                if proposal.is_terminal:
                    continue
                snapshot = self._settle(proposal, self.clock.now())
            if snapshot is not None and snapshot.is_terminal:
                finished.append(snapshot)

        if finished:
            logger.info("Sweep closed %d proposal(s)", len(finished))
        self.flush()
        return finished

    # ── Queries ────────────────────────────────────────────────

    def get(self, proposal_id: str) -> Proposal:
        with self._lock_for(proposal_id):
            return self._proposals[proposal_id].snapshot()

    def list_open(self) -> list[Proposal]:
        with self._index_lock:
            ids = [pid for pid, p in self._proposals.items() if not p.is_terminal]
        return [self.get(pid) for pid in ids]

    def report(self, proposal_id: str) -> ThresholdReport:
        """Current tally of a proposal against its pinned class thresholds."""
        proposal = self.get(proposal_id)
        params = self.parameters.get(proposal.parameters_version)
        return self.evaluator.tally(proposal, params.for_class(proposal.proposal_class))

    @property
    def pending_outbox(self) -> int:
        with self._outbox_lock:
            return len(self._outbox)

    # ── Durability ─────────────────────────────────────────────

    def flush(self) -> bool:
        """
        Drain the outbox in order: repository, audit trail, event sink.

        Returns True when the outbox is empty. On failure the head item keeps
        its progress and the remaining items wait for the next flush.
        """
        with self._flush_lock:
            while True:
                with self._outbox_lock:
                    if not self._outbox:
                        return True
                    item = self._outbox[0]
                try:
                    self._flush_item(item)
                except Exception:
                    logger.error(
                        "Durability write failed: proposal=%s rev=%d persisted=%s "
                        "audited=%d/%d delivered=%s; retry pending (%d queued)",
                        item.snapshot.id, item.snapshot.revision, item.persisted,
                        item.audited, len(item.audit), item.delivered,
                        self.pending_outbox, exc_info=True,
                    )
                    return False
                with self._outbox_lock:
                    self._outbox.popleft()

    def _flush_item(self, item: _OutboxItem) -> None:
        if not item.persisted:
            self.repository.save(item.snapshot)
            item.persisted = True
        if self.audit is not None:
            while item.audited < len(item.audit):
                record = item.audit[item.audited]
                self.audit.append(
                    record.entry_type,
                    record.content,
                    proposal_id=item.snapshot.id,
                    actor_id=record.actor_id,
                )
                item.audited += 1
        if not item.delivered:
            if item.event is not None and self.event_sink is not None:
                self.event_sink(item.event)
            item.delivered = True

    def restore(self) -> int:
        """
        Load open proposals from the repository after a restart.

        Every restored proposal's pinned parameter version must be known.
        """
        restored = 0
        for proposal in self.repository.list_open():
            self.parameters.get(proposal.parameters_version)
            with self._index_lock:
                if proposal.id in self._proposals:
                    continue
                self._proposals[proposal.id] = proposal
                self._locks[proposal.id] = threading.Lock()
            restored += 1
        logger.info("Restored %d open proposal(s) from repository", restored)
        return restored

    # ── Internal ────────────────────────────────────────────────

    def _lock_for(self, proposal_id: str) -> threading.Lock:
        with self._index_lock:
            lock = self._locks.get(proposal_id)
        if lock is not None:
            return lock

        stored = self.repository.get(proposal_id)
        if stored is None:
            raise ProposalNotFound(f"Unknown proposal: {proposal_id}", proposal_id=proposal_id)
        self.parameters.get(stored.parameters_version)
        with self._index_lock:
            self._proposals.setdefault(proposal_id, stored)
            return self._locks.setdefault(proposal_id, threading.Lock())

    def _weights_for(
        self, project_id: str, voting_weights: Mapping[str, int] | None
    ) -> dict[str, int]:
        if voting_weights is None:
            if self.weight_source is None:
                raise ConfigurationError(
                    f"No voting weights supplied for project {project_id} "
                    "and no weight source configured"
                )
            voting_weights = self.weight_source(project_id)

        weights: dict[str, int] = {}
        for actor, weight in voting_weights.items():
            if isinstance(weight, bool) or not isinstance(weight, int) or weight < 0:
                raise ConfigurationError(
                    f"Voting weight for {actor} must be a non-negative int, got {weight!r}"
                )
            weights[str(actor)] = weight
        if sum(weights.values()) <= 0:
            raise ConfigurationError(f"Project {project_id} has no eligible voting weight")
        return weights

    @staticmethod
    def _require_open(proposal: Proposal) -> None:
        if proposal.is_terminal:
            raise ProposalAlreadyTerminal(
                f"Proposal {proposal.id} is already {proposal.status.value}",
                proposal_id=proposal.id,
                status=proposal.status.value,
            )

    def _append_vote(
        self,
        proposal: Proposal,
        actor_id: str,
        role: FinanceRole,
        support: VoteSupport,
        now: datetime,
    ) -> Proposal:
        """Run the vote gates, append the record and advance. Lock held."""
        proposal_id = proposal.id
        capability = self.evaluator.check_authority(role, proposal.amount)
        if proposal.has_voted(actor_id):
            raise DuplicateApproval(
                f"{actor_id} has already voted on {proposal_id}",
                proposal_id=proposal_id,
                actor_id=actor_id,
            )

        weight = proposal.voting_weights.get(actor_id, 0)
        proposal.approvals.append(ApprovalRecord(
            role=role,
            actor_id=actor_id,
            support=support,
            weight=weight,
            timestamp=now,
        ))
        transition = _Transition()
        transition.audit.append(_AuditRecord(
            AuditEntryType.VOTE_RECORDED,
            {
                "role": role.value,
                "support": support.value,
                "weight": weight,
                "capability": capability.value,
            },
            actor_id,
        ))
        self._advance(proposal, now, transition)
        return self._commit(proposal, transition)

    def _settle(self, proposal: Proposal, now: datetime) -> Proposal | None:
        """Advance a proposal in time and commit if anything changed. Lock held."""
        transition = _Transition()
        self._advance(proposal, now, transition)
        if not transition.audit:
            return None
        return self._commit(proposal, transition)

    def _advance(self, proposal: Proposal, now: datetime, transition: _Transition) -> None:
        """Re-evaluate thresholds and apply any transition they imply. Lock held."""
        params = self.parameters.get(proposal.parameters_version)
        class_params = params.for_class(proposal.proposal_class)
        report = self.evaluator.tally(proposal, class_params)

        if report.passed and proposal.threshold_met_at is None:
            proposal.threshold_met_at = now
            transition.audit.append(_AuditRecord(
                AuditEntryType.THRESHOLD_MET,
                {
                    "cast_weight": report.cast_weight,
                    "for_weight": report.for_weight,
                    "total_weight": report.total_weight,
                    "timelock_ends_at": self.evaluator.timelock_ends_at(
                        proposal, class_params
                    ).isoformat(),
                },
            ))
            logger.info("Threshold met: proposal=%s", proposal.id)
        elif not report.passed and proposal.threshold_met_at is not None:
            proposal.threshold_met_at = None
            transition.audit.append(_AuditRecord(
                AuditEntryType.THRESHOLD_LOST,
                {"failures": list(report.failures)},
            ))
            logger.info("Threshold lost, timelock reset: proposal=%s", proposal.id)

        outcome, report = self.evaluator.evaluate(proposal, params, now)
        if outcome == Outcome.EXECUTABLE:
            self._finalize(
                proposal, ProposalStatus.EXECUTED, Resolution.VOTE, now,
                "thresholds met and timelock elapsed", transition,
            )
        elif outcome == Outcome.EXPIRE:
            self._finalize(
                proposal, ProposalStatus.EXPIRED, Resolution.VOTING_PERIOD, now,
                "voting period ended without quorum", transition,
            )
        elif outcome == Outcome.REJECT:
            self._finalize(
                proposal, ProposalStatus.REJECTED, Resolution.VOTING_PERIOD, now,
                "voting period ended: " + ", ".join(report.failures), transition,
            )

    def _finalize(
        self,
        proposal: Proposal,
        status: ProposalStatus,
        resolution: Resolution,
        now: datetime,
        reason: str,
        transition: _Transition,
        actor_id: str = "system",
        override: bool = False,
    ) -> None:
        proposal.status = status
        proposal.resolution = resolution
        proposal.close_reason = reason
        proposal.closed_at = now

        if status == ProposalStatus.EXECUTED:
            transition.event = ProposalFinalized(
                proposal_id=proposal.id,
                project_id=proposal.project_id,
                final_class=proposal.proposal_class,
                final_amount_minor=proposal.amount_minor,
                currency=proposal.currency,
                approvals=list(proposal.approvals),
                resolution=resolution,
                parameters_version=proposal.parameters_version,
                executed_at=now,
            )
        else:
            transition.event = ProposalClosed(
                proposal_id=proposal.id,
                project_id=proposal.project_id,
                status=status,
                resolution=resolution,
                reason=reason,
                closed_at=now,
            )

        transition.audit.append(_AuditRecord(
            _TERMINAL_AUDIT_TYPES[(status, override)],
            {
                "status": status.value,
                "resolution": resolution.value,
                "reason": reason,
                "class": proposal.proposal_class.value,
                "amount": proposal.amount.format(),
            },
            actor_id,
        ))
        logger.info(
            "Proposal %s: id=%s resolution=%s reason=%s",
            status.value, proposal.id, resolution.value, reason,
        )

    def _commit(self, proposal: Proposal, transition: _Transition) -> Proposal:
        """Bump the revision and queue a snapshot. Caller holds the proposal lock."""
        proposal.revision += 1
        snapshot = proposal.snapshot()
        with self._outbox_lock:
            self._outbox.append(_OutboxItem(
                snapshot=snapshot,
                audit=transition.audit,
                event=transition.event,
            ))
        return snapshot
