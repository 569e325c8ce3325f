"""SQLAlchemy repositories for the decision readiness engine.

Each repository implements the corresponding interface from
core/interfaces.py.

Repositories:
- DecisionRepository                 — ComplianceDecision create, supersede, queries
- ReadinessEvaluationRepository      — Append-only ReadinessEvaluation records
- JurisdictionAssignmentRepository   — Token jurisdiction assignments

Session-scoped sources (each call opens its own short-lived session so
concurrently running category evaluators never share one):
- SessionScopedDecisionSource
- SessionScopedAssignmentSource
"""

import uuid
from collections import Counter
from datetime import datetime
from typing import Any

from sqlalchemy import Select, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from decision_readiness_engine.core.models import (
    ComplianceDecision,
    DecisionIdempotencyKey,
    JurisdictionAssignment,
    ReadinessEvaluation,
)
from decision_readiness_engine.core.types import (
    Clock,
    DecisionOutcome,
    DecisionQueryFilters,
    DecisionQuerySummary,
    OnboardingStep,
)
from decision_readiness_engine.errors import DecisionSupersededError, NotFoundError
from decision_readiness_engine.observability import get_logger

logger = get_logger(__name__)

# Concurrent claimants retry this many times before giving up
_MAX_CLAIM_ATTEMPTS = 3

# Number of rejection reasons reported by a query summary
_TOP_REJECTION_REASONS = 5


class _ClaimLostError(Exception):
    """A stale claim was re-pointed by another instance first."""


class DecisionRepository:
    """Repository for ComplianceDecision persistence.

    Decisions are append-only. The only UPDATE ever issued against
    dre_decisions is the conditional supersession flip in
    insert_superseding().

    Args:
        session: The async database session.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, decision_id: uuid.UUID) -> ComplianceDecision:
        """Retrieve a decision by ID.

        Args:
            decision_id: The decision UUID.

        Returns:
            The ComplianceDecision.

        Raises:
            NotFoundError: If not found.
        """
        decision = await self._session.get(ComplianceDecision, decision_id)
        if decision is None:
            raise NotFoundError(resource="ComplianceDecision", resource_id=str(decision_id))
        return decision

    async def _get_claim(self, dedup_key: str) -> DecisionIdempotencyKey | None:
        result = await self._session.execute(
            select(DecisionIdempotencyKey)
            .where(DecisionIdempotencyKey.dedup_key == dedup_key)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _claim_holder(
        self,
        claim: DecisionIdempotencyKey | None,
        window_start: datetime,
    ) -> ComplianceDecision | None:
        if claim is None or claim.claimed_at < window_start:
            return None
        holder = await self._session.get(ComplianceDecision, claim.decision_id, populate_existing=True)
        if holder is None or holder.is_superseded:
            return None
        return holder

    async def find_claimed_decision(self, dedup_key: str, window_start: datetime) -> ComplianceDecision | None:
        """Return the decision holding a fresh claim on a dedup key.

        Args:
            dedup_key: The dedup key.
            window_start: Claims made before this instant are stale.

        Returns:
            The non-superseded claim holder, or None.
        """
        return await self._claim_holder(await self._get_claim(dedup_key), window_start)

    async def insert_idempotent(
        self,
        decision: ComplianceDecision,
        window_start: datetime,
    ) -> tuple[ComplianceDecision, bool]:
        """Insert a decision unless another one holds a fresh claim on its key.

        The claim row's primary key arbitrates between concurrent claimants on
        any number of instances: the loser's savepoint rolls back and it
        returns the winner's decision. A stale claim (outside the window or
        pointing at a superseded decision) is re-pointed with a
        compare-and-swap UPDATE.

        Args:
            decision: The new, unsaved decision carrying its dedup_key.
            window_start: Claims made before this instant are stale.

        Returns:
            Tuple of (decision, created).
        """
        dedup_key = decision.dedup_key
        for attempt in range(1, _MAX_CLAIM_ATTEMPTS + 1):
            claim = await self._get_claim(dedup_key)
            holder = await self._claim_holder(claim, window_start)
            if holder is not None:
                logger.info(
                    "Idempotent create returned existing decision",
                    decision_id=str(holder.id),
                    dedup_key=dedup_key,
                )
                return holder, False

            try:
                async with self._session.begin_nested():
                    self._session.add(decision)
                    await self._session.flush()
                    if claim is None:
                        self._session.add(
                            DecisionIdempotencyKey(
                                dedup_key=dedup_key,
                                decision_id=decision.id,
                                claimed_at=decision.decision_timestamp,
                            )
                        )
                        await self._session.flush()
                    else:
                        result = await self._session.execute(
                            update(DecisionIdempotencyKey)
                            .where(
                                DecisionIdempotencyKey.dedup_key == dedup_key,
                                DecisionIdempotencyKey.decision_id == claim.decision_id,
                            )
                            .values(decision_id=decision.id, claimed_at=decision.decision_timestamp)
                            .execution_options(synchronize_session=False)
                        )
                        if result.rowcount != 1:
                            raise _ClaimLostError
            except (IntegrityError, _ClaimLostError):
                logger.info(
                    "Dedup claim taken by a concurrent request, re-reading",
                    dedup_key=dedup_key,
                    attempt=attempt,
                )
                continue

            await self._session.refresh(decision)
            logger.info(
                "Decision created in DB",
                decision_id=str(decision.id),
                organization_id=decision.organization_id,
                step=decision.step,
            )
            return decision, True

        holder = await self._claim_holder(await self._get_claim(dedup_key), window_start)
        if holder is not None:
            return holder, False
        raise RuntimeError(f"Could not claim dedup key {dedup_key} after {_MAX_CLAIM_ATTEMPTS} attempts")

    async def insert_superseding(
        self,
        previous_decision_id: uuid.UUID,
        decision: ComplianceDecision,
        superseded_at: datetime,
    ) -> ComplianceDecision:
        """Insert a decision and flip its predecessor in one savepoint.

        The flip is conditional on the predecessor still being current, so two
        concurrent updates of the same decision cannot both succeed. The
        dedup claim for the new decision's key is pointed at it so that an
        identical create inside the window returns the update.

        Args:
            previous_decision_id: The decision being superseded.
            decision: The new, unsaved decision.
            superseded_at: Supersession timestamp.

        Returns:
            The persisted new decision.

        Raises:
            DecisionSupersededError: If the predecessor is no longer current.
        """
        async with self._session.begin_nested():
            self._session.add(decision)
            await self._session.flush()

            result = await self._session.execute(
                update(ComplianceDecision)
                .where(
                    ComplianceDecision.id == previous_decision_id,
                    ComplianceDecision.is_superseded.is_(False),
                )
                .values(
                    is_superseded=True,
                    superseded_by_decision_id=decision.id,
                    superseded_at=superseded_at,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                current = await self._session.get(ComplianceDecision, previous_decision_id, populate_existing=True)
                raise DecisionSupersededError(
                    decision_id=previous_decision_id,
                    superseded_by=current.superseded_by_decision_id if current else None,
                )

            await self._repoint_claim(decision)

        previous = await self._session.get(ComplianceDecision, previous_decision_id)
        if previous is not None:
            await self._session.refresh(previous)
        await self._session.refresh(decision)
        logger.info(
            "Decision superseded in DB",
            previous_decision_id=str(previous_decision_id),
            decision_id=str(decision.id),
        )
        return decision

    async def _repoint_claim(self, decision: ComplianceDecision) -> None:
        result = await self._session.execute(
            update(DecisionIdempotencyKey)
            .where(DecisionIdempotencyKey.dedup_key == decision.dedup_key)
            .values(decision_id=decision.id, claimed_at=decision.decision_timestamp)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self._session.add(
                DecisionIdempotencyKey(
                    dedup_key=decision.dedup_key,
                    decision_id=decision.id,
                    claimed_at=decision.decision_timestamp,
                )
            )
            await self._session.flush()

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
        stmt = (
            select(ComplianceDecision)
            .where(
                ComplianceDecision.organization_id == organization_id,
                ComplianceDecision.step == step.value,
                ComplianceDecision.is_superseded.is_(False),
                (ComplianceDecision.expires_at.is_(None)) | (ComplianceDecision.expires_at > now),
            )
            .order_by(ComplianceDecision.decision_timestamp.desc(), ComplianceDecision.id)
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    def _apply_filters(stmt: Select[Any], filters: DecisionQueryFilters, now: datetime) -> Select[Any]:
        if filters.organization_id is not None:
            stmt = stmt.where(ComplianceDecision.organization_id == filters.organization_id)
        if filters.onboarding_session_id is not None:
            stmt = stmt.where(ComplianceDecision.onboarding_session_id == filters.onboarding_session_id)
        if filters.step is not None:
            stmt = stmt.where(ComplianceDecision.step == filters.step.value)
        if filters.outcome is not None:
            stmt = stmt.where(ComplianceDecision.outcome == filters.outcome.value)
        if filters.decision_maker is not None:
            stmt = stmt.where(ComplianceDecision.decision_maker == filters.decision_maker)
        if filters.from_date is not None:
            stmt = stmt.where(ComplianceDecision.decision_timestamp >= filters.from_date)
        if filters.to_date is not None:
            stmt = stmt.where(ComplianceDecision.decision_timestamp <= filters.to_date)
        if not filters.include_superseded:
            stmt = stmt.where(ComplianceDecision.is_superseded.is_(False))
        if not filters.include_expired:
            stmt = stmt.where(
                (ComplianceDecision.expires_at.is_(None)) | (ComplianceDecision.expires_at > now)
            )
        return stmt

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
        count_stmt = self._apply_filters(select(func.count(ComplianceDecision.id)), filters, now)
        total = (await self._session.execute(count_stmt)).scalar_one()

        stmt = (
            self._apply_filters(select(ComplianceDecision), filters, now)
            .order_by(ComplianceDecision.decision_timestamp.desc(), ComplianceDecision.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all()), total

    async def summarize(self, filters: DecisionQueryFilters, now: datetime) -> DecisionQuerySummary:
        """Aggregate the full filtered set, independent of pagination.

        The mean gap between consecutive sorted timestamps telescopes to
        (latest - earliest) / (count - 1), so only min, max and count are read.

        Args:
            filters: AND-combined filters.
            now: Instant used for the expiry filter.

        Returns:
            DecisionQuerySummary over every matching decision.
        """
        counts_stmt = self._apply_filters(
            select(ComplianceDecision.outcome, func.count(ComplianceDecision.id)),
            filters,
            now,
        ).group_by(ComplianceDecision.outcome)
        outcome_counts = {outcome.value: 0 for outcome in DecisionOutcome}
        for outcome, count in (await self._session.execute(counts_stmt)).all():
            outcome_counts[outcome] = count
        total = sum(outcome_counts.values())

        average_hours: float | None = None
        if total > 1:
            span_stmt = self._apply_filters(
                select(
                    func.min(ComplianceDecision.decision_timestamp),
                    func.max(ComplianceDecision.decision_timestamp),
                ),
                filters,
                now,
            )
            earliest, latest = (await self._session.execute(span_stmt)).one()
            average_hours = round((latest - earliest).total_seconds() / 3600 / (total - 1), 4)

        rejected_stmt = self._apply_filters(
            select(ComplianceDecision.evaluation_snapshot).where(
                ComplianceDecision.outcome == DecisionOutcome.REJECTED.value
            ),
            filters,
            now,
        )
        reasons: Counter[str] = Counter()
        for snapshot in (await self._session.execute(rejected_stmt)).scalars():
            for rule_result in (snapshot or {}).get("rule_results", []):
                if not rule_result.get("passed", True):
                    reasons[rule_result.get("message", "")] += 1
        top_reasons = [
            message
            for message, _ in sorted(reasons.items(), key=lambda item: (-item[1], item[0]))[:_TOP_REJECTION_REASONS]
        ]

        return DecisionQuerySummary(
            total=total,
            outcome_counts=outcome_counts,
            average_decision_time_hours=average_hours,
            top_rejection_reasons=top_reasons,
        )

    async def list_requiring_review(self, before: datetime) -> list[ComplianceDecision]:
        """Return non-superseded decisions whose review is due on or before an instant.

        Args:
            before: Review due cutoff.

        Returns:
            Decisions ordered by next review date.
        """
        stmt = (
            select(ComplianceDecision)
            .where(
                ComplianceDecision.requires_review.is_(True),
                ComplianceDecision.is_superseded.is_(False),
                ComplianceDecision.next_review_at.is_not(None),
                ComplianceDecision.next_review_at <= before,
            )
            .order_by(ComplianceDecision.next_review_at, ComplianceDecision.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_expired(self, now: datetime) -> list[ComplianceDecision]:
        """Return non-superseded decisions whose expiry has passed.

        Args:
            now: Current instant.

        Returns:
            Decisions ordered by expiry.
        """
        stmt = (
            select(ComplianceDecision)
            .where(
                ComplianceDecision.is_superseded.is_(False),
                ComplianceDecision.expires_at.is_not(None),
                ComplianceDecision.expires_at <= now,
            )
            .order_by(ComplianceDecision.expires_at, ComplianceDecision.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class ReadinessEvaluationRepository:
    """Append-only repository for ReadinessEvaluation records.

    There are no update or delete methods: evaluations are immutable audit
    evidence.

    Args:
        session: The async database session.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, evaluation: ReadinessEvaluation) -> ReadinessEvaluation:
        """Persist a new readiness evaluation.

        Args:
            evaluation: The unsaved evaluation record.

        Returns:
            The persisted record.
        """
        self._session.add(evaluation)
        await self._session.flush()
        await self._session.refresh(evaluation)
        logger.info(
            "Readiness evaluation stored",
            evaluation_id=str(evaluation.id),
            user_id=evaluation.user_id,
            status=evaluation.status,
        )
        return evaluation

    async def get_by_id(self, evaluation_id: uuid.UUID) -> ReadinessEvaluation:
        """Retrieve an evaluation by ID.

        Raises:
            NotFoundError: If not found.
        """
        evaluation = await self._session.get(ReadinessEvaluation, evaluation_id)
        if evaluation is None:
            raise NotFoundError(resource="ReadinessEvaluation", resource_id=str(evaluation_id))
        return evaluation

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
        stmt = select(ReadinessEvaluation).where(ReadinessEvaluation.user_id == user_id)
        if from_date is not None:
            stmt = stmt.where(ReadinessEvaluation.evaluated_at >= from_date)
        stmt = stmt.order_by(ReadinessEvaluation.evaluated_at.desc(), ReadinessEvaluation.id).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class JurisdictionAssignmentRepository:
    """Repository for token jurisdiction assignments.

    Args:
        session: The async database session.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def list_for_token(self, token_id: str, network: str) -> list[JurisdictionAssignment]:
        """Return assignments for a token, primary first then by code."""
        stmt = (
            select(JurisdictionAssignment)
            .where(
                JurisdictionAssignment.token_id == token_id,
                JurisdictionAssignment.network == network,
            )
            .order_by(JurisdictionAssignment.is_primary.desc(), JurisdictionAssignment.jurisdiction_code)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def _get(self, token_id: str, network: str, jurisdiction_code: str) -> JurisdictionAssignment | None:
        stmt = select(JurisdictionAssignment).where(
            JurisdictionAssignment.token_id == token_id,
            JurisdictionAssignment.network == network,
            JurisdictionAssignment.jurisdiction_code == jurisdiction_code,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

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

        Args:
            token_id: Token identifier.
            network: Network.
            jurisdiction_code: Jurisdiction to assign.
            is_primary: Whether this becomes the primary jurisdiction.
            assigned_by: Actor making the assignment.
            assigned_at: Assignment timestamp.
            notes: Optional notes.

        Returns:
            The persisted assignment.
        """
        if is_primary:
            await self._session.execute(
                update(JurisdictionAssignment)
                .where(
                    JurisdictionAssignment.token_id == token_id,
                    JurisdictionAssignment.network == network,
                    JurisdictionAssignment.jurisdiction_code != jurisdiction_code,
                )
                .values(is_primary=False)
                .execution_options(synchronize_session="fetch")
            )

        assignment = await self._get(token_id, network, jurisdiction_code)
        if assignment is None:
            assignment = JurisdictionAssignment(
                token_id=token_id,
                network=network,
                jurisdiction_code=jurisdiction_code,
                is_primary=is_primary,
                assigned_by=assigned_by,
                assigned_at=assigned_at,
                notes=notes,
            )
            self._session.add(assignment)
        else:
            assignment.is_primary = is_primary
            assignment.assigned_by = assigned_by
            assignment.assigned_at = assigned_at
            assignment.notes = notes

        await self._session.flush()
        await self._session.refresh(assignment)
        logger.info(
            "Jurisdiction assigned",
            token_id=token_id,
            network=network,
            jurisdiction_code=jurisdiction_code,
            is_primary=is_primary,
        )
        return assignment

    async def remove(self, token_id: str, network: str, jurisdiction_code: str) -> None:
        """Delete an assignment.

        Raises:
            NotFoundError: If the assignment does not exist.
        """
        assignment = await self._get(token_id, network, jurisdiction_code)
        if assignment is None:
            raise NotFoundError(
                resource="JurisdictionAssignment",
                resource_id=f"{token_id}/{network}/{jurisdiction_code}",
            )
        await self._session.delete(assignment)
        await self._session.flush()
        logger.info(
            "Jurisdiction assignment removed",
            token_id=token_id,
            network=network,
            jurisdiction_code=jurisdiction_code,
        )


# ---------------------------------------------------------------------------
# Session-scoped read sources for concurrently running category evaluators
# ---------------------------------------------------------------------------


class SessionScopedDecisionSource:
    """IActiveDecisionSource opening a dedicated session per lookup.

    Args:
        session_factory: Factory for new sessions.
        clock: Returns the current instant for the expiry check.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], clock: Clock) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def get_active_decision(self, organization_id: str, step: OnboardingStep) -> ComplianceDecision | None:
        async with self._session_factory() as session:
            return await DecisionRepository(session).get_active(organization_id, step, self._clock())


class SessionScopedAssignmentSource:
    """IJurisdictionAssignmentSource opening a dedicated session per lookup.

    Args:
        session_factory: Factory for new sessions.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_jurisdiction_codes(self, token_id: str, network: str) -> list[str]:
        async with self._session_factory() as session:
            assignments = await JurisdictionAssignmentRepository(session).list_for_token(token_id, network)
            return [assignment.jurisdiction_code for assignment in assignments]
