"""Tests for DecisionService against an in-memory SQLite database.

Covers idempotent create, supersession, active lookup, expiry, review
scheduling, authorization and query summaries.
"""

from collections.abc import Callable
from datetime import timedelta
from typing import Any
from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from conftest import FakeClock
from decision_readiness_engine.adapters.repositories import DecisionRepository
from decision_readiness_engine.core.models import ComplianceDecision, DecisionIdempotencyKey
from decision_readiness_engine.core.services import (
    AuthorizationPolicy,
    DecisionRequest,
    DecisionService,
    compute_dedup_key,
)
from decision_readiness_engine.core.types import (
    DecisionOutcome,
    DecisionQueryFilters,
    EvidenceReference,
    EvidenceVerificationStatus,
    OnboardingStep,
)
from decision_readiness_engine.errors import (
    DecisionSupersededError,
    NotFoundError,
    UnauthorizedActorError,
    ValidationError,
)
from decision_readiness_engine.policy.evaluator import PolicyEvaluator

EvidenceFactory = Callable[..., EvidenceReference]

ACTOR = "0xcompliance-officer"


def _make_service(
    session: AsyncSession,
    evaluator: PolicyEvaluator,
    clock: FakeClock,
    authorization: AuthorizationPolicy | None = None,
    repository: Any | None = None,
) -> DecisionService:
    """Construct a DecisionService over a real repository."""
    return DecisionService(
        repository=repository or DecisionRepository(session),
        evaluator=evaluator,
        authorization=authorization,
        idempotency_window=timedelta(hours=1),
        clock=clock,
    )


def _kyc_request(make_evidence: EvidenceFactory, organization_id: str = "org-1", **kwargs: Any) -> DecisionRequest:
    return DecisionRequest(
        organization_id=organization_id,
        step=OnboardingStep.KYC_KYB_VERIFICATION,
        evidence=(make_evidence("KYC_REPORT"),),
        **kwargs,
    )


async def _count_decisions(session: AsyncSession) -> int:
    return (await session.execute(select(func.count(ComplianceDecision.id)))).scalar_one()


# ---------------------------------------------------------------------------
# Dedup key
# ---------------------------------------------------------------------------


class TestComputeDedupKey:
    def test_evidence_order_does_not_matter(self, make_evidence: EvidenceFactory) -> None:
        a, b = make_evidence("KYC_REPORT"), make_evidence("AML_REPORT")

        assert compute_dedup_key("org-1", OnboardingStep.AML_SCREENING, "1.0.0", [a, b]) == compute_dedup_key(
            "org-1", OnboardingStep.AML_SCREENING, "1.0.0", [b, a]
        )

    def test_policy_version_changes_the_key(self, make_evidence: EvidenceFactory) -> None:
        evidence = [make_evidence("KYC_REPORT")]

        assert compute_dedup_key("org-1", OnboardingStep.AML_SCREENING, "1.0.0", evidence) != compute_dedup_key(
            "org-1", OnboardingStep.AML_SCREENING, "1.1.0", evidence
        )

    def test_verification_status_changes_the_key(self, make_evidence: EvidenceFactory) -> None:
        verified = [make_evidence("KYC_REPORT")]
        pending = [make_evidence("KYC_REPORT", status=EvidenceVerificationStatus.IN_REVIEW)]

        assert compute_dedup_key("org-1", OnboardingStep.AML_SCREENING, "1.0.0", verified) != compute_dedup_key(
            "org-1", OnboardingStep.AML_SCREENING, "1.0.0", pending
        )


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


class TestCreateDecision:
    async def test_create_persists_evaluated_decision(
        self,
        session: AsyncSession,
        policy_evaluator: PolicyEvaluator,
        clock: FakeClock,
        make_evidence: EvidenceFactory,
    ) -> None:
        service = _make_service(session, policy_evaluator, clock)

        result = await service.create_decision(_kyc_request(make_evidence, correlation_id="corr-1"), actor=ACTOR)

        decision = result.decision
        assert result.created is True
        assert decision.outcome == DecisionOutcome.APPROVED.value
        assert decision.decision_maker == ACTOR
        assert decision.policy_version == "1.0.0"
        assert decision.policy_rule_ids == ["KYC_DOC_001"]
        assert decision.decision_timestamp == clock.now
        assert decision.expires_at == clock.now + timedelta(days=365)
        assert decision.is_superseded is False
        assert decision.correlation_id == "corr-1"
        assert decision.evaluation_snapshot["rule_results"][0]["passed"] is True
        assert decision.evidence_references[0]["evidence_type"] == "KYC_REPORT"

    async def test_identical_request_within_window_returns_existing(
        self,
        session: AsyncSession,
        policy_evaluator: PolicyEvaluator,
        clock: FakeClock,
        make_evidence: EvidenceFactory,
    ) -> None:
        service = _make_service(session, policy_evaluator, clock)
        first = await service.create_decision(_kyc_request(make_evidence), actor=ACTOR)

        clock.advance(minutes=59)
        evaluations_before = policy_evaluator.metrics.total_evaluations
        second = await service.create_decision(_kyc_request(make_evidence), actor=ACTOR)

        assert second.created is False
        assert second.decision.id == first.decision.id
        assert policy_evaluator.metrics.total_evaluations == evaluations_before
        assert await _count_decisions(session) == 1

    async def test_identical_request_after_window_creates_new_decision(
        self,
        session: AsyncSession,
        policy_evaluator: PolicyEvaluator,
        clock: FakeClock,
        make_evidence: EvidenceFactory,
    ) -> None:
        service = _make_service(session, policy_evaluator, clock)
        first = await service.create_decision(_kyc_request(make_evidence), actor=ACTOR)

        clock.advance(minutes=61)
        second = await service.create_decision(_kyc_request(make_evidence), actor=ACTOR)
        clock.advance(minutes=5)
        third = await service.create_decision(_kyc_request(make_evidence), actor=ACTOR)

        assert second.created is True
        assert second.decision.id != first.decision.id
        assert third.created is False
        assert third.decision.id == second.decision.id

    async def test_different_evidence_creates_new_decision(
        self,
        session: AsyncSession,
        policy_evaluator: PolicyEvaluator,
        clock: FakeClock,
        make_evidence: EvidenceFactory,
    ) -> None:
        service = _make_service(session, policy_evaluator, clock)
        first = await service.create_decision(_kyc_request(make_evidence), actor=ACTOR)

        other = DecisionRequest(
            organization_id="org-1",
            step=OnboardingStep.KYC_KYB_VERIFICATION,
            evidence=(make_evidence("KYC_REPORT", reference_id="kyc-2"),),
        )
        second = await service.create_decision(other, actor=ACTOR)

        assert second.created is True
        assert second.decision.id != first.decision.id

    async def test_lookup_race_returns_claim_holder(
        self,
        session: AsyncSession,
        policy_evaluator: PolicyEvaluator,
        clock: FakeClock,
        make_evidence: EvidenceFactory,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        repository = DecisionRepository(session)
        service = _make_service(session, policy_evaluator, clock, repository=repository)
        first = await service.create_decision(_kyc_request(make_evidence), actor=ACTOR)

        async def _missed_lookup(dedup_key: str, window_start: Any) -> None:
            return None

        monkeypatch.setattr(repository, "find_claimed_decision", _missed_lookup)
        second = await service.create_decision(_kyc_request(make_evidence), actor=ACTOR)

        assert second.created is False
        assert second.decision.id == first.decision.id
        assert await _count_decisions(session) == 1

    async def test_concurrent_claim_insert_loses_to_winner(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        policy_evaluator: PolicyEvaluator,
        clock: FakeClock,
        make_evidence: EvidenceFactory,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        async with session_factory() as winner_session:
            winner = await _make_service(winner_session, policy_evaluator, clock).create_decision(
                _kyc_request(make_evidence), actor=ACTOR
            )
            await winner_session.commit()

        async with session_factory() as loser_session:
            repository = DecisionRepository(loser_session)
            original_get_claim = repository._get_claim
            calls = {"count": 0}

            async def _stale_then_real(dedup_key: str) -> DecisionIdempotencyKey | None:
                calls["count"] += 1
                if calls["count"] <= 2:
                    return None
                return await original_get_claim(dedup_key)

            monkeypatch.setattr(repository, "_get_claim", _stale_then_real)
            service = _make_service(loser_session, policy_evaluator, clock, repository=repository)

            result = await service.create_decision(_kyc_request(make_evidence), actor=ACTOR)
            await loser_session.commit()

            assert result.created is False
            assert result.decision.id == winner.decision.id
            assert await _count_decisions(loser_session) == 1

    async def test_unauthorized_actor_is_rejected_before_evaluation(
        self,
        session: AsyncSession,
        clock: FakeClock,
        make_evidence: EvidenceFactory,
    ) -> None:
        evaluator = MagicMock(spec=PolicyEvaluator)
        service = _make_service(
            session,
            evaluator,
            clock,
            authorization=AuthorizationPolicy(frozenset({"0xadmin"})),
        )

        with pytest.raises(UnauthorizedActorError):
            await service.create_decision(_kyc_request(make_evidence), actor="0xintruder")
        with pytest.raises(UnauthorizedActorError):
            await service.create_decision(_kyc_request(make_evidence), actor="  ")

        evaluator.evaluate.assert_not_called()

    async def test_allowed_actor_may_decide(
        self,
        session: AsyncSession,
        policy_evaluator: PolicyEvaluator,
        clock: FakeClock,
        make_evidence: EvidenceFactory,
    ) -> None:
        service = _make_service(
            session,
            policy_evaluator,
            clock,
            authorization=AuthorizationPolicy(frozenset({"0xadmin"})),
        )

        result = await service.create_decision(_kyc_request(make_evidence), actor="0xadmin")

        assert result.decision.decision_maker == "0xadmin"

    async def test_too_much_evidence_is_rejected(
        self,
        session: AsyncSession,
        policy_evaluator: PolicyEvaluator,
        clock: FakeClock,
        make_evidence: EvidenceFactory,
    ) -> None:
        service = _make_service(session, policy_evaluator, clock)
        request = DecisionRequest(
            organization_id="org-1",
            step=OnboardingStep.KYC_KYB_VERIFICATION,
            evidence=tuple(make_evidence("KYC_REPORT", reference_id=f"kyc-{i}") for i in range(51)),
        )

        with pytest.raises(ValidationError):
            await service.create_decision(request, actor=ACTOR)

    async def test_blank_organization_is_rejected(
        self,
        session: AsyncSession,
        policy_evaluator: PolicyEvaluator,
        clock: FakeClock,
        make_evidence: EvidenceFactory,
    ) -> None:
        service = _make_service(session, policy_evaluator, clock)

        with pytest.raises(ValidationError) as exc_info:
            await service.create_decision(_kyc_request(make_evidence, organization_id=" "), actor=ACTOR)
        assert exc_info.value.field == "organization_id"

    async def test_review_is_scheduled_from_step_defaults(
        self,
        session: AsyncSession,
        policy_evaluator: PolicyEvaluator,
        clock: FakeClock,
        make_evidence: EvidenceFactory,
    ) -> None:
        service = _make_service(session, policy_evaluator, clock)

        result = await service.create_decision(
            _kyc_request(make_evidence, requires_review=True, expiration_days=30),
            actor=ACTOR,
        )

        assert result.decision.review_interval_days == 90
        assert result.decision.next_review_at == clock.now + timedelta(days=90)
        assert result.decision.expires_at == clock.now + timedelta(days=30)


# ---------------------------------------------------------------------------
# Update (supersession)
# ---------------------------------------------------------------------------


class TestUpdateDecision:
    async def test_update_supersedes_previous_decision(
        self,
        session: AsyncSession,
        policy_evaluator: PolicyEvaluator,
        clock: FakeClock,
        make_evidence: EvidenceFactory,
    ) -> None:
        service = _make_service(session, policy_evaluator, clock)
        rejected = await service.create_decision(
            DecisionRequest(organization_id="org-1", step=OnboardingStep.KYC_KYB_VERIFICATION),
            actor=ACTOR,
        )
        assert rejected.decision.outcome == DecisionOutcome.REJECTED.value

        clock.advance(hours=2)
        updated = await service.update_decision(rejected.decision.id, _kyc_request(make_evidence), actor=ACTOR)

        old = await service.get_decision(rejected.decision.id)
        new = updated.decision
        assert new.outcome == DecisionOutcome.APPROVED.value
        assert new.previous_decision_id == old.id
        assert old.superseded_by_decision_id == new.id
        assert old.superseded_at == clock.now
        assert [old.is_superseded, new.is_superseded].count(False) == 1
        assert (await service.get_active_decision("org-1", OnboardingStep.KYC_KYB_VERIFICATION)).id == new.id

    async def test_updating_superseded_decision_is_rejected(
        self,
        session: AsyncSession,
        policy_evaluator: PolicyEvaluator,
        clock: FakeClock,
        make_evidence: EvidenceFactory,
    ) -> None:
        service = _make_service(session, policy_evaluator, clock)
        original = await service.create_decision(_kyc_request(make_evidence), actor=ACTOR)
        successor = await service.update_decision(original.decision.id, _kyc_request(make_evidence), actor=ACTOR)

        with pytest.raises(DecisionSupersededError) as exc_info:
            await service.update_decision(original.decision.id, _kyc_request(make_evidence), actor=ACTOR)
        assert exc_info.value.superseded_by == successor.decision.id

    async def test_concurrent_flip_loses_atomically(
        self,
        session: AsyncSession,
        policy_evaluator: PolicyEvaluator,
        clock: FakeClock,
        make_evidence: EvidenceFactory,
    ) -> None:
        repository = DecisionRepository(session)
        service = _make_service(session, policy_evaluator, clock, repository=repository)
        original = await service.create_decision(_kyc_request(make_evidence), actor=ACTOR)
        await service.update_decision(original.decision.id, _kyc_request(make_evidence), actor=ACTOR)
        before = await _count_decisions(session)

        late = ComplianceDecision(
            organization_id="org-1",
            step=OnboardingStep.KYC_KYB_VERIFICATION.value,
            outcome=DecisionOutcome.APPROVED.value,
            policy_rule_ids=["KYC_DOC_001"],
            decision_maker=ACTOR,
            decision_timestamp=clock.now,
            evidence_references=[],
            reason="late writer",
            policy_version="1.0.0",
            dedup_key="f" * 64,
            evaluation_snapshot={},
            decision_metadata={},
        )
        with pytest.raises(DecisionSupersededError):
            await repository.insert_superseding(original.decision.id, late, superseded_at=clock.now)

        assert await _count_decisions(session) == before

    async def test_update_of_unknown_decision_is_not_found(
        self,
        session: AsyncSession,
        policy_evaluator: PolicyEvaluator,
        clock: FakeClock,
        make_evidence: EvidenceFactory,
    ) -> None:
        import uuid

        service = _make_service(session, policy_evaluator, clock)

        with pytest.raises(NotFoundError):
            await service.update_decision(uuid.uuid4(), _kyc_request(make_evidence), actor=ACTOR)

    async def test_update_must_keep_organization(
        self,
        session: AsyncSession,
        policy_evaluator: PolicyEvaluator,
        clock: FakeClock,
        make_evidence: EvidenceFactory,
    ) -> None:
        service = _make_service(session, policy_evaluator, clock)
        original = await service.create_decision(_kyc_request(make_evidence), actor=ACTOR)

        with pytest.raises(ValidationError):
            await service.update_decision(
                original.decision.id,
                _kyc_request(make_evidence, organization_id="org-2"),
                actor=ACTOR,
            )

    async def test_create_matching_update_returns_update(
        self,
        session: AsyncSession,
        policy_evaluator: PolicyEvaluator,
        clock: FakeClock,
        make_evidence: EvidenceFactory,
    ) -> None:
        service = _make_service(session, policy_evaluator, clock)
        original = await service.create_decision(
            DecisionRequest(organization_id="org-1", step=OnboardingStep.KYC_KYB_VERIFICATION),
            actor=ACTOR,
        )
        updated = await service.update_decision(original.decision.id, _kyc_request(make_evidence), actor=ACTOR)

        replay = await service.create_decision(_kyc_request(make_evidence), actor=ACTOR)

        assert replay.created is False
        assert replay.decision.id == updated.decision.id


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


class TestDecisionReads:
    async def test_expired_decision_is_not_active(
        self,
        session: AsyncSession,
        policy_evaluator: PolicyEvaluator,
        clock: FakeClock,
        make_evidence: EvidenceFactory,
    ) -> None:
        service = _make_service(session, policy_evaluator, clock)
        created = await service.create_decision(_kyc_request(make_evidence, expiration_days=1), actor=ACTOR)

        clock.advance(days=2)

        assert await service.get_active_decision("org-1", OnboardingStep.KYC_KYB_VERIFICATION) is None
        expired = await service.list_expired_decisions()
        assert [decision.id for decision in expired] == [created.decision.id]

    async def test_review_due_queue(
        self,
        session: AsyncSession,
        policy_evaluator: PolicyEvaluator,
        clock: FakeClock,
        make_evidence: EvidenceFactory,
    ) -> None:
        service = _make_service(session, policy_evaluator, clock)
        reviewed = await service.create_decision(_kyc_request(make_evidence, requires_review=True), actor=ACTOR)
        await service.create_decision(_kyc_request(make_evidence, organization_id="org-2"), actor=ACTOR)

        assert await service.list_decisions_requiring_review() == []
        due = await service.list_decisions_requiring_review(before=clock.now + timedelta(days=91))
        assert [decision.id for decision in due] == [reviewed.decision.id]

    async def test_get_unknown_decision_is_not_found(
        self,
        session: AsyncSession,
        policy_evaluator: PolicyEvaluator,
        clock: FakeClock,
    ) -> None:
        import uuid

        service = _make_service(session, policy_evaluator, clock)

        with pytest.raises(NotFoundError):
            await service.get_decision(uuid.uuid4())


class TestQueryDecisions:
    async def _seed(self, service: DecisionService, clock: FakeClock, make_evidence: EvidenceFactory) -> None:
        await service.create_decision(_kyc_request(make_evidence, organization_id="org-1"), actor=ACTOR)
        clock.advance(hours=1)
        await service.create_decision(
            DecisionRequest(organization_id="org-1", step=OnboardingStep.AML_SCREENING),
            actor=ACTOR,
        )
        clock.advance(hours=2)
        await service.create_decision(
            DecisionRequest(organization_id="org-2", step=OnboardingStep.KYC_KYB_VERIFICATION),
            actor="0xsecond-officer",
        )

    async def test_summary_covers_filtered_set(
        self,
        session: AsyncSession,
        policy_evaluator: PolicyEvaluator,
        clock: FakeClock,
        make_evidence: EvidenceFactory,
    ) -> None:
        service = _make_service(session, policy_evaluator, clock)
        await self._seed(service, clock, make_evidence)

        result = await service.query_decisions(DecisionQueryFilters(), page=1, page_size=1)

        assert result.total_count == 3
        assert len(result.decisions) == 1
        assert result.decisions[0].organization_id == "org-2"
        assert result.summary.total == 3
        assert result.summary.outcome_counts == {
            "approved": 1,
            "rejected": 2,
            "requires_manual_review": 0,
            "conditional_approval": 0,
        }
        assert result.summary.average_decision_time_hours == 1.5
        assert result.summary.top_rejection_reasons == [
            "AML screening failed or flagged concerns. Missing required evidence: AML_REPORT",
            "Incomplete or invalid KYC documentation. Missing required evidence: KYC_REPORT",
        ]

    async def test_filters_combine_with_and(
        self,
        session: AsyncSession,
        policy_evaluator: PolicyEvaluator,
        clock: FakeClock,
        make_evidence: EvidenceFactory,
    ) -> None:
        service = _make_service(session, policy_evaluator, clock)
        await self._seed(service, clock, make_evidence)

        result = await service.query_decisions(
            DecisionQueryFilters(organization_id="org-1", outcome=DecisionOutcome.REJECTED)
        )

        assert [decision.step for decision in result.decisions] == [OnboardingStep.AML_SCREENING.value]
        assert result.summary.total == 1
        assert result.summary.average_decision_time_hours is None

    async def test_superseded_excluded_unless_requested(
        self,
        session: AsyncSession,
        policy_evaluator: PolicyEvaluator,
        clock: FakeClock,
        make_evidence: EvidenceFactory,
    ) -> None:
        service = _make_service(session, policy_evaluator, clock)
        original = await service.create_decision(_kyc_request(make_evidence), actor=ACTOR)
        await service.update_decision(original.decision.id, _kyc_request(make_evidence), actor=ACTOR)

        default = await service.query_decisions(DecisionQueryFilters(organization_id="org-1"))
        everything = await service.query_decisions(
            DecisionQueryFilters(organization_id="org-1", include_superseded=True)
        )

        assert default.total_count == 1
        assert everything.total_count == 2

    async def test_page_size_is_capped(
        self,
        session: AsyncSession,
        policy_evaluator: PolicyEvaluator,
        clock: FakeClock,
    ) -> None:
        service = _make_service(session, policy_evaluator, clock)

        result = await service.query_decisions(DecisionQueryFilters(), page=1, page_size=500)

        assert result.page_size == 100

    async def test_invalid_pagination_is_rejected(
        self,
        session: AsyncSession,
        policy_evaluator: PolicyEvaluator,
        clock: FakeClock,
    ) -> None:
        service = _make_service(session, policy_evaluator, clock)

        with pytest.raises(ValidationError):
            await service.query_decisions(DecisionQueryFilters(), page=0)

    async def test_inverted_date_range_is_rejected(
        self,
        session: AsyncSession,
        policy_evaluator: PolicyEvaluator,
        clock: FakeClock,
    ) -> None:
        service = _make_service(session, policy_evaluator, clock)

        with pytest.raises(ValidationError):
            await service.query_decisions(
                DecisionQueryFilters(from_date=clock.now, to_date=clock.now - timedelta(days=1))
            )

    @pytest.mark.parametrize(
        ("naive_bound", "field"),
        [("from_date", "from_date"), ("to_date", "to_date")],
    )
    async def test_naive_date_bound_is_rejected(
        self,
        session: AsyncSession,
        policy_evaluator: PolicyEvaluator,
        clock: FakeClock,
        naive_bound: str,
        field: str,
    ) -> None:
        service = _make_service(session, policy_evaluator, clock)
        bounds = {"from_date": clock.now - timedelta(days=1), "to_date": clock.now}
        bounds[naive_bound] = bounds[naive_bound].replace(tzinfo=None)

        with pytest.raises(ValidationError) as exc_info:
            await service.query_decisions(DecisionQueryFilters(**bounds))
        assert exc_info.value.field == field

    async def test_naive_review_cutoff_is_rejected(
        self,
        session: AsyncSession,
        policy_evaluator: PolicyEvaluator,
        clock: FakeClock,
    ) -> None:
        service = _make_service(session, policy_evaluator, clock)

        with pytest.raises(ValidationError) as exc_info:
            await service.list_decisions_requiring_review(clock.now.replace(tzinfo=None))
        assert exc_info.value.field == "before"
