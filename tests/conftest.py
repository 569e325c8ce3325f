"""Test fixtures for the decision readiness engine.

Provides:
- clock: A controllable UTC clock
- engine / session_factory / session: In-memory SQLite (aiosqlite) with the full schema
- catalog / policy_evaluator: The packaged rule catalog and an evaluator over it
- jurisdiction_registry: The packaged jurisdiction rule sets
- make_evidence: Factory for EvidenceReference values
- make_category_result: Factory for CategoryResult values
- StaticEvaluator / SlowEvaluator / FailingEvaluator: In-memory category evaluators
"""

import asyncio
from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import decision_readiness_engine
from decision_readiness_engine.core import models  # noqa: F401
from decision_readiness_engine.core.types import (
    CategoryResult,
    EvidenceReference,
    EvidenceVerificationStatus,
    ReadinessCategory,
    ReadinessRequest,
    Severity,
)
from decision_readiness_engine.database import Base, enable_sqlite_savepoints
from decision_readiness_engine.errors import UpstreamDegradedError
from decision_readiness_engine.policy.catalog import RuleCatalog, load_snapshot
from decision_readiness_engine.policy.evaluator import PolicyEvaluator
from decision_readiness_engine.readiness.jurisdiction import JurisdictionRuleRegistry, load_jurisdiction_rules

PACKAGE_DIR = Path(decision_readiness_engine.__file__).parent
CATALOG_PATH = PACKAGE_DIR / "policy" / "rules" / "catalog_v1.yaml"
JURISDICTIONS_PATH = PACKAGE_DIR / "readiness" / "rules" / "jurisdictions.yaml"

START = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture()
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory SQLite engine with the schema created.

    StaticPool keeps the single in-memory connection alive across sessions.
    """
    db_engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    enable_sqlite_savepoints(db_engine)
    async with db_engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture()
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture()
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as db_session:
        yield db_session
        await db_session.rollback()


# ---------------------------------------------------------------------------
# Policy and jurisdiction configuration
# ---------------------------------------------------------------------------


@pytest.fixture()
def catalog() -> RuleCatalog:
    return RuleCatalog(load_snapshot(CATALOG_PATH))


@pytest.fixture()
def policy_evaluator(catalog: RuleCatalog) -> PolicyEvaluator:
    return PolicyEvaluator(catalog)


@pytest.fixture()
def jurisdiction_registry() -> JurisdictionRuleRegistry:
    return load_jurisdiction_rules(JURISDICTIONS_PATH)


# ---------------------------------------------------------------------------
# Value factories
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_evidence() -> Callable[..., EvidenceReference]:
    """Factory for evidence references with a data hash by default."""

    def _make(
        evidence_type: str,
        reference_id: str | None = None,
        status: EvidenceVerificationStatus = EvidenceVerificationStatus.VERIFIED,
        data_hash: str | None = "sha256:0f1e2d",
    ) -> EvidenceReference:
        return EvidenceReference(
            evidence_type=evidence_type,
            reference_id=reference_id or f"ref-{evidence_type.lower()}",
            verification_status=status,
            data_hash=data_hash,
        )

    return _make


def make_category_result(
    category: ReadinessCategory,
    passed: bool = True,
    severity: Severity | None = None,
    requires_review: bool = False,
    message: str | None = None,
    **kwargs: Any,
) -> CategoryResult:
    """Build a CategoryResult with a default message."""
    return CategoryResult(
        category=category,
        passed=passed,
        message=message or f"{category.value} {'passed' if passed else 'failed'}",
        severity=severity,
        requires_review=requires_review,
        **kwargs,
    )


@pytest.fixture()
def readiness_request() -> ReadinessRequest:
    return ReadinessRequest(user_id="0xissuer", token_type="ERC20", network="base-mainnet")


# ---------------------------------------------------------------------------
# In-memory category evaluators
# ---------------------------------------------------------------------------


class StaticEvaluator:
    """Returns a fixed result and records the requests it saw."""

    def __init__(self, result: CategoryResult) -> None:
        self.category = result.category
        self._result = result
        self.calls: list[ReadinessRequest] = []

    async def evaluate(self, request: ReadinessRequest) -> CategoryResult:
        self.calls.append(request)
        return self._result


class SlowEvaluator:
    """Never answers within any reasonable timeout."""

    def __init__(self, category: ReadinessCategory, delay_seconds: float = 10.0) -> None:
        self.category = category
        self._delay_seconds = delay_seconds

    async def evaluate(self, request: ReadinessRequest) -> CategoryResult:
        await asyncio.sleep(self._delay_seconds)
        return make_category_result(self.category)


class FailingEvaluator:
    """Raises the given exception, UpstreamDegradedError by default."""

    def __init__(self, category: ReadinessCategory, exc: Exception | None = None) -> None:
        self.category = category
        self._exc = exc or UpstreamDegradedError(source=category.value, message=f"{category.value} unavailable")

    async def evaluate(self, request: ReadinessRequest) -> CategoryResult:
        raise self._exc


def all_passing_evaluators() -> dict[ReadinessCategory, StaticEvaluator]:
    return {category: StaticEvaluator(make_category_result(category)) for category in ReadinessCategory}
