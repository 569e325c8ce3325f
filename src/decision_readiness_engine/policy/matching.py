"""Evidence matching primitives.

Shared by the policy evaluator and the jurisdiction rule evaluator so that
both speak the same pass / fail / partial / not_applicable vocabulary.

A required evidence type is:
- satisfied when at least one item of that type has an accepted status
- pending when no item is accepted but one is still under verification
- missing otherwise (absent, rejected or expired)
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import StrEnum

from decision_readiness_engine.core.types import (
    PENDING_VERIFICATION_STATUSES,
    CheckStatus,
    EvidenceReference,
    EvidenceVerificationStatus,
)

DEFAULT_ACCEPTED_STATUSES = frozenset({EvidenceVerificationStatus.VERIFIED})


class MatchMode(StrEnum):
    """How a set of required evidence types combines."""

    ALL = "all"
    ANY = "any"


@dataclass(frozen=True)
class EvidenceMatch:
    """Result of matching evidence against a set of required types.

    Attributes:
        status: Aggregate check status.
        matched_reference_ids: Reference IDs of accepted evidence, sorted.
        missing_types: Required types with no usable evidence, in rule order.
        pending_types: Required types whose evidence is still under verification.
    """

    status: CheckStatus
    matched_reference_ids: tuple[str, ...]
    missing_types: tuple[str, ...]
    pending_types: tuple[str, ...]


def index_by_type(evidence: Iterable[EvidenceReference]) -> dict[str, list[EvidenceReference]]:
    """Group evidence items by their normalized evidence type."""
    grouped: dict[str, list[EvidenceReference]] = {}
    for item in evidence:
        grouped.setdefault(item.evidence_type, []).append(item)
    return grouped


def match_evidence(
    required_types: Sequence[str],
    evidence_by_type: dict[str, list[EvidenceReference]],
    accepted_statuses: frozenset[EvidenceVerificationStatus] = DEFAULT_ACCEPTED_STATUSES,
    mode: MatchMode = MatchMode.ALL,
) -> EvidenceMatch:
    """Match indexed evidence against required types.

    Args:
        required_types: Required evidence types (upper case).
        evidence_by_type: Evidence grouped by type, from index_by_type().
        accepted_statuses: Verification statuses that satisfy a type.
        mode: Whether all or any of the required types must be satisfied.

    Returns:
        EvidenceMatch with the aggregate status and per-type breakdown.
    """
    if not required_types:
        return EvidenceMatch(CheckStatus.NOT_APPLICABLE, (), (), ())

    matched: set[str] = set()
    satisfied: list[str] = []
    pending: list[str] = []
    missing: list[str] = []

    for required_type in required_types:
        items = evidence_by_type.get(required_type.upper(), [])
        accepted = [item for item in items if item.verification_status in accepted_statuses]
        if accepted:
            satisfied.append(required_type)
            matched.update(item.reference_id for item in accepted)
        elif any(item.verification_status in PENDING_VERIFICATION_STATUSES for item in items):
            pending.append(required_type)
        else:
            missing.append(required_type)

    if mode is MatchMode.ANY:
        if satisfied:
            status = CheckStatus.PASS
            missing, pending = [], []
        elif pending:
            status = CheckStatus.PARTIAL
        else:
            status = CheckStatus.FAIL
    elif missing:
        status = CheckStatus.FAIL
    elif pending:
        status = CheckStatus.PARTIAL
    else:
        status = CheckStatus.PASS

    return EvidenceMatch(
        status=status,
        matched_reference_ids=tuple(sorted(matched)),
        missing_types=tuple(missing),
        pending_types=tuple(pending),
    )


@dataclass(frozen=True)
class StatusTally:
    """Counts of check statuses over a set of mandatory checks."""

    passed: int = 0
    failed: int = 0
    partial: int = 0
    not_applicable: int = 0

    @property
    def evaluable(self) -> int:
        """Checks that produced a definite or partial answer."""
        return self.passed + self.failed + self.partial


def tally(statuses: Iterable[CheckStatus]) -> StatusTally:
    """Count check statuses."""
    counts = {status: 0 for status in CheckStatus}
    for status in statuses:
        counts[status] += 1
    return StatusTally(
        passed=counts[CheckStatus.PASS],
        failed=counts[CheckStatus.FAIL],
        partial=counts[CheckStatus.PARTIAL],
        not_applicable=counts[CheckStatus.NOT_APPLICABLE],
    )
