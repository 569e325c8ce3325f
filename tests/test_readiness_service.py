"""Tests for ReadinessService persistence, ownership and history."""

import uuid

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import (
    FailingEvaluator,
    FakeClock,
    StaticEvaluator,
    all_passing_evaluators,
    make_category_result,
)
from decision_readiness_engine.adapters.repositories import ReadinessEvaluationRepository
from decision_readiness_engine.core.services import ReadinessService, compute_evaluation_hash
from decision_readiness_engine.core.types import ReadinessCategory, ReadinessContext
from decision_readiness_engine.errors import NotFoundError, ValidationError
from decision_readiness_engine.readiness.aggregator import ReadinessAggregator


def _service(session: AsyncSession, clock: FakeClock, *overrides: StaticEvaluator | FailingEvaluator) -> ReadinessService:
    evaluators = all_passing_evaluators()
    for override in overrides:
        evaluators[override.category] = override
    aggregator = ReadinessAggregator(list(evaluators.values()), clock=clock)
    return ReadinessService(aggregator, ReadinessEvaluationRepository(session))


class TestEvaluateReadiness:
    async def test_evaluation_is_persisted(self, session: AsyncSession, clock: FakeClock) -> None:
        service = _service(session, clock)

        evaluation = await service.evaluate_readiness(
            "0xissuer",
            "ERC20",
            "base-mainnet",
            context=ReadinessContext(token_id="token-1"),
            correlation_id="corr-1",
        )

        assert evaluation.id is not None
        assert evaluation.status == "ready"
        assert evaluation.can_proceed is True
        assert evaluation.organization_id == "0xissuer"
        assert evaluation.evaluated_at == clock.now
        assert evaluation.correlation_id == "corr-1"
        assert list(evaluation.category_results) == [category.value for category in ReadinessCategory]
        assert evaluation.request_snapshot["context"]["token_id"] == "token-1"
        assert len(evaluation.data_hash) == 64

    async def test_data_hash_covers_the_verdict(self, session: AsyncSession, clock: FakeClock) -> None:
        service = _service(session, clock)

        evaluation = await service.evaluate_readiness("0xissuer", "ERC20", "base-mainnet")

        expected = compute_evaluation_hash(
            {
                "request": evaluation.request_snapshot,
                "status": evaluation.status,
                "can_proceed": evaluation.can_proceed,
                "category_results": evaluation.category_results,
                "remediation_tasks": evaluation.remediation_tasks,
                "policy_version": evaluation.policy_version,
                "evaluated_at": evaluation.evaluated_at.isoformat(),
            }
        )
        assert evaluation.data_hash == expected

    async def test_degraded_sources_are_recorded(self, session: AsyncSession, clock: FakeClock) -> None:
        service = _service(session, clock, FailingEvaluator(ReadinessCategory.INTEGRATION))

        evaluation = await service.evaluate_readiness("0xissuer", "ERC20", "base-mainnet")

        assert evaluation.is_degraded is True
        assert evaluation.degraded_sources == ["integration"]
        assert evaluation.remediation_tasks[0]["category"] == "integration"

    async def test_blocked_evaluation_is_persisted(self, session: AsyncSession, clock: FakeClock) -> None:
        failing = StaticEvaluator(make_category_result(ReadinessCategory.ENTITLEMENT, passed=False))
        service = _service(session, clock, failing)

        evaluation = await service.evaluate_readiness("0xissuer", "ERC20", "base-mainnet")

        assert evaluation.status == "blocked"
        assert evaluation.can_proceed is False

    @pytest.mark.parametrize(
        ("user_id", "token_type", "network", "field"),
        [
            ("", "ERC20", "base-mainnet", "user_id"),
            ("0xissuer", " ", "base-mainnet", "token_type"),
            ("0xissuer", "ERC20", "", "network"),
        ],
    )
    async def test_blank_fields_are_rejected(
        self,
        session: AsyncSession,
        clock: FakeClock,
        user_id: str,
        token_type: str,
        network: str,
        field: str,
    ) -> None:
        service = _service(session, clock)

        with pytest.raises(ValidationError) as exc_info:
            await service.evaluate_readiness(user_id, token_type, network)
        assert exc_info.value.field == field


class TestEvaluationAccess:
    async def test_owner_can_read_evaluation(self, session: AsyncSession, clock: FakeClock) -> None:
        service = _service(session, clock)
        evaluation = await service.evaluate_readiness("0xissuer", "ERC20", "base-mainnet")

        fetched = await service.get_evaluation(evaluation.id, "0xissuer")

        assert fetched.id == evaluation.id

    async def test_other_user_gets_not_found(self, session: AsyncSession, clock: FakeClock) -> None:
        service = _service(session, clock)
        evaluation = await service.evaluate_readiness("0xissuer", "ERC20", "base-mainnet")

        with pytest.raises(NotFoundError):
            await service.get_evaluation(evaluation.id, "0xintruder")
        with pytest.raises(NotFoundError):
            await service.get_evaluation(uuid.uuid4(), "0xissuer")

    async def test_history_is_newest_first_and_clamped(self, session: AsyncSession, clock: FakeClock) -> None:
        service = _service(session, clock)
        for _ in range(3):
            await service.evaluate_readiness("0xissuer", "ERC20", "base-mainnet")
            clock.advance(minutes=5)
        await service.evaluate_readiness("0xother", "ERC20", "base-mainnet")

        history = await service.get_history("0xissuer", limit=500)
        single = await service.get_history("0xissuer", limit=0)

        assert len(history) == 3
        assert history[0].evaluated_at > history[-1].evaluated_at
        assert len(single) == 1

    async def test_history_from_date(self, session: AsyncSession, clock: FakeClock) -> None:
        service = _service(session, clock)
        await service.evaluate_readiness("0xissuer", "ERC20", "base-mainnet")
        cutoff = clock.advance(hours=1)
        await service.evaluate_readiness("0xissuer", "ERC20", "base-mainnet")

        history = await service.get_history("0xissuer", from_date=cutoff)

        assert [e.evaluated_at for e in history] == [cutoff]

    async def test_naive_from_date_is_rejected(self, session: AsyncSession, clock: FakeClock) -> None:
        service = _service(session, clock)

        with pytest.raises(ValidationError) as exc_info:
            await service.get_history("0xissuer", from_date=clock.now.replace(tzinfo=None))
        assert exc_info.value.field == "from_date"
