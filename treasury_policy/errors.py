"""
Policy Errors — Recoverable rejection kinds raised by the policy engine.

Every error the engine raises at request time derives from PolicyError and
carries a stable ``code`` so an API layer can translate it into a structured
rejection response. None of them leave the engine in a corrupted state.

DuplicateApproval and ProposalAlreadyTerminal are benign: they signal an
idempotent repeat, not an alarm.

ConfigurationError is not a PolicyError. It is
raised while the engine is being assembled and must stop startup.
"""

from __future__ import annotations

from typing import Any


class PolicyError(Exception):
    """Base class for recoverable policy rejections."""

    code: str = "policy_error"
    benign: bool = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_rejection(self) -> dict[str, Any]:
        """Structured rejection payload for the calling API layer."""
        return {
            "error": self.code,
            "message": self.message,
            "benign": self.benign,
            "details": {k: str(v) for k, v in self.details.items()},
        }


class CurrencyMismatch(PolicyError):
    """Arithmetic or comparison attempted across two currencies."""

    code = "currency_mismatch"


class UnknownRole(PolicyError):
    """A role name from an external payload is not in the closed role set."""

    code = "unknown_role"


class InsufficientPermission(PolicyError):
    """The acting role lacks the capability the action requires."""

    code = "insufficient_permission"


class AmountExceedsRoleLimit(PolicyError):
    """The amount is above the acting role's configured approval limit."""

    code = "amount_exceeds_role_limit"


class DuplicateApproval(PolicyError):
    """The actor has already voted on this proposal."""

    code = "duplicate_approval"
    benign = True


class TimelockNotElapsed(PolicyError):
    """Thresholds are met but the cool-down period is still running."""

    code = "timelock_not_elapsed"


class ThresholdNotMet(PolicyError):
    """Execution requested while quorum, approval or sponsorship is unmet."""

    code = "threshold_not_met"


class MalformedReference(PolicyError):
    """A financial reference identifier could not be generated or parsed."""

    code = "malformed_reference"


class ProposalExpired(PolicyError):
    """The voting period has elapsed; no further votes are accepted."""

    code = "proposal_expired"


class ProposalAlreadyTerminal(PolicyError):
    """The proposal has already been executed, rejected or expired."""

    code = "proposal_already_terminal"
    benign = True


class ProposalNotFound(PolicyError):
    """No proposal with the given id is known to the engine."""

    code = "proposal_not_found"


class ConfigurationError(Exception):
    """Fatal startup error: the engine refuses to run with undefined rules."""
    pass
