"""Abstract interfaces (Protocol classes) for the decision readiness engine.

Defines the contracts between the service layer, the readiness aggregator
and the adapter layer using typing.Protocol. Services and evaluators depend
on these protocols, never on concrete adapters, so tests can substitute
mocks or in-memory fakes.

Repository protocols:
- IDecisionRepository
- IReadinessEvaluationRepository
- IJurisdictionAssignmentRepository

Read-side sources used by category evaluators (each opens its own session):
- IActiveDecisionSource
- IJurisdictionAssignmentSource

Collaborator protocols:
- EntitlementChecker
- AccountReadinessChecker
- IdentityVerificationReader
- WhitelistEligibilityChecker
- IntegrationHealthProbe
- ActorIdentityResolver

Readiness:
- ICategoryEvaluator
"""

import uuid
from collections.abc import Mapping
from datetime import datetime
from typing import Protocol

from decision_readiness_engine.core.models import ComplianceDecision, JurisdictionAssignment, ReadinessEvaluation
from decision_readiness_engine.core.types import (
    CategoryResult,
    DecisionQueryFilters,
    DecisionQuerySummary,
    OnboardingStep,
    ReadinessCategory,
    ReadinessRequest,
    TokenContext,
)


class IDecisionRepository(Protocol):
    """Repository contract for ComplianceDecision persistence."""

    async def get_by_id(self, decision_id: uuid.UUID) -> ComplianceDecision:
        """Retrieve a decision by ID.

        Args:
            decision_id: The decision UUID.

        Returns:
            The ComplianceDecision.

        Raises:
            NotFoundError: If no decision exists with the given ID.
        """
        ...

    async def find_claimed_decision(self, dedup_key: str, window_start: datetime) -> ComplianceDecision | None:
        """Return the decision holding a fresh claim on a dedup key.

        Args:
            dedup_key: The dedup key.
            window_start: Claims made before this instant are stale.

        Returns:
            The non-superseded decision holding a fresh claim, or None.
        """
        ...

    async def insert_idempotent(
        self,
        decision: ComplianceDecision,
        window_start: datetime,
    ) -> tuple[ComplianceDecision, bool]:
        """Insert a decision unless another one holds a fresh claim on its key.

        Args:
            decision: The new, unsaved decision carrying its dedup_key.
            window_start: Claims made before this instant are stale.

        Returns:
            Tuple of (decision, created). When created is False the returned
            decision is the existing claim holder and nothing was written.
        """
        ...

    async def insert_superseding(
        self,
        previous_decision_id: uuid.UUID,
        decision: ComplianceDecision,
        superseded_at: datetime,
    ) -> ComplianceDecision:
        """Insert a decision and flip its predecessor's supersession fields atomically.

        Args:
            previous_decision_id: The decision being superseded.
            decision: The new, unsaved decision with previous_decision_id set.
            superseded_at: Supersession timestamp.

        Returns:
            The persisted new decision.

        Raises:
            DecisionSupersededError: If the predecessor was superseded concurrently.
        """
        ...

    async def get_active(
        self,
        organization_id: str,
        step: OnboardingStep,
        now: datetime,
    ) -> ComplianceDecision | None:
        """Return the most recent non-superseded, unexpired decision.

        Args:
            organization_id: The organization.
            step: The onboarding step.
            now: Instant used for the expiry check.

        Returns:
            The active decision, or None.
        """
        ...

    async def query(
        self,
        filters: DecisionQueryFilters,
        now: datetime,
        page: int,
        page_size: int,
    ) -> tuple[list[ComplianceDecision], int]:
        """Return one page of filtered decisions, newest first, and the total count.

        Args:
            filters: AND-combined filters.
            now: Instant used for the expiry filter.
            page: 1-based page number.
            page_size: Records per page.

        Returns:
            Tuple of (decisions, total_count).
        """
        ...

    async def summarize(self, filters: DecisionQueryFilters, now: datetime) -> DecisionQuerySummary:
        """Aggregate the full filtered set, independent of pagination.

        Args:
            filters: AND-combined filters.
            now: Instant used for the expiry filter.

        Returns:
            DecisionQuerySummary over every matching decision.
        """
        ...

    async def list_requiring_review(self, before: datetime) -> list[ComplianceDecision]:
        """Return non-superseded decisions whose review is due on or before an instant.

        Args:
            before: Review due cutoff.

        Returns:
            Decisions ordered by next review date.
        """
        ...

    async def list_expired(self, now: datetime) -> list[ComplianceDecision]:
        """Return non-superseded decisions whose expiry has passed.

        Args:
            now: Current instant.

        Returns:
            Decisions ordered by expiry.
        """
        ...


class IReadinessEvaluationRepository(Protocol):
    """Repository contract for immutable ReadinessEvaluation records."""

    async def create(self, evaluation: ReadinessEvaluation) -> ReadinessEvaluation:
        """Persist a new readiness evaluation.

        Args:
            evaluation: The unsaved evaluation record.

        Returns:
            The persisted record.
        """
        ...

    async def get_by_id(self, evaluation_id: uuid.UUID) -> ReadinessEvaluation:
        """Retrieve an evaluation by ID.

        Raises:
            NotFoundError: If no evaluation exists with the given ID.
        """
        ...

    async def list_for_user(
        self,
        user_id: str,
        limit: int,
        from_date: datetime | None = None,
    ) -> list[ReadinessEvaluation]:
        """Return a user's evaluations, newest first.

        Args:
            user_id: The user.
            limit: Maximum number of records.
            from_date: Only evaluations at or after this instant.

        Returns:
            List of evaluations.
        """
        ...


class IJurisdictionAssignmentRepository(Protocol):
    """Repository contract for token jurisdiction assignments."""

    async def list_for_token(self, token_id: str, network: str) -> list[JurisdictionAssignment]:
        """Return assignments for a token, primary first then by code."""
        ...

    async def assign(
        self,
        token_id: str,
        network: str,
        jurisdiction_code: str,
        is_primary: bool,
        assigned_by: str,
        assigned_at: datetime,
        notes: str | None = None,
    ) -> JurisdictionAssignment:
        """Create or update an assignment.

        A primary assignment demotes any other primary assignment of the token.

        Returns:
            The persisted assignment.
        """
        ...

    async def remove(self, token_id: str, network: str, jurisdiction_code: str) -> None:
        """Delete an assignment.

        Raises:
            NotFoundError: If the assignment does not exist.
        """
        ...


class IActiveDecisionSource(Protocol):
    """Read-only access to active decisions for the compliance decision category."""

    async def get_active_decision(self, organization_id: str, step: OnboardingStep) -> ComplianceDecision | None:
        """Return the active decision for an organization and step, or None."""
        ...


class IJurisdictionAssignmentSource(Protocol):
    """Read-only access to jurisdiction codes assigned to a token."""

    async def get_jurisdiction_codes(self, token_id: str, network: str) -> list[str]:
        """Return assigned jurisdiction codes, primary first."""
        ...


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


class EntitlementChecker(Protocol):
    """Checks whether a user's plan entitles an operation."""

    async def check(self, user_id: str, operation: str) -> CategoryResult:
        """Evaluate entitlement.

        Args:
            user_id: The user.
            operation: The entitled operation (e.g., token_launch).

        Returns:
            CategoryResult for the entitlement category.

        Raises:
            UpstreamDegradedError: If the upstream cannot answer.
        """
        ...


class AccountReadinessChecker(Protocol):
    """Checks whether a user's account is provisioned and healthy."""

    async def check(self, user_id: str) -> CategoryResult:
        """Evaluate account readiness for a user."""
        ...


class IdentityVerificationReader(Protocol):
    """Reads KYC/AML verification status. Never performs verification."""

    async def get_status(self, user_id: str) -> CategoryResult:
        """Return the user's identity verification status as a category result."""
        ...


class WhitelistEligibilityChecker(Protocol):
    """Checks transfer eligibility of a token for a user."""

    async def check(self, user_id: str, token_context: TokenContext) -> CategoryResult:
        """Evaluate whitelist eligibility for a token."""
        ...


class IntegrationHealthProbe(Protocol):
    """Probes health of the integrations serving a network."""

    async def check(self, network: str) -> CategoryResult:
        """Evaluate integration health for a network."""
        ...


class ActorIdentityResolver(Protocol):
    """Resolves the calling actor from request context. The engine trusts the result."""

    def resolve(self, request_context: Mapping[str, str]) -> str:
        """Resolve the actor address.

        Args:
            request_context: Request metadata such as headers.

        Returns:
            The actor address.

        Raises:
            UnauthorizedActorError: If no actor can be resolved.
        """
        ...


class ICategoryEvaluator(Protocol):
    """Uniform contract implemented by every readiness category evaluator."""

    category: ReadinessCategory

    async def evaluate(self, request: ReadinessRequest) -> CategoryResult:
        """Evaluate one readiness category.

        Args:
            request: The readiness request.

        Returns:
            CategoryResult for this evaluator's category.
        """
        ...
