"""Core business logic services for the decision readiness engine.

Four service classes:
- DecisionService: Decision lifecycle. Idempotent create, supersession,
  active lookup, filtered queries, review and expiry queues
- ReadinessService: Token launch readiness evaluation, persisted as
  immutable evidence, with per-user history
- JurisdictionService: Jurisdiction rule sets and token assignments
- PolicyService: Read-only rule catalog views and evaluation metrics

All services are async-first. They accept injected repositories, evaluators
and a clock through their constructors and contain no framework code.
"""

import hashlib
import json
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from decision_readiness_engine.core.interfaces import (
    IDecisionRepository,
    IJurisdictionAssignmentRepository,
    IReadinessEvaluationRepository,
)
from decision_readiness_engine.core.models import ComplianceDecision, JurisdictionAssignment, ReadinessEvaluation
from decision_readiness_engine.core.types import (
    Clock,
    DecisionQueryFilters,
    DecisionQuerySummary,
    EvidenceReference,
    OnboardingStep,
    ReadinessContext,
    ReadinessRequest,
    ReadinessVerdict,
    utc_now,
)
from decision_readiness_engine.errors import (
    DecisionSupersededError,
    NotFoundError,
    UnauthorizedActorError,
    ValidationError,
)
from decision_readiness_engine.observability import get_logger
from decision_readiness_engine.policy.catalog import CatalogSnapshot, PolicyRule, StepDefaults
from decision_readiness_engine.policy.evaluator import PolicyEvaluationResult, PolicyEvaluator
from decision_readiness_engine.readiness.aggregator import ReadinessAggregator
from decision_readiness_engine.readiness.jurisdiction import (
    JurisdictionEvaluation,
    JurisdictionRuleRegistry,
    JurisdictionRuleSet,
    evaluate_jurisdictions,
)

logger = get_logger(__name__)

# Evidence items accepted per decision request
MAX_EVIDENCE_PER_DECISION = 50

# Largest page a decision query may request
MAX_PAGE_SIZE = 100

# Hard cap on readiness history queries
MAX_HISTORY_LIMIT = 100


# ---------------------------------------------------------------------------
# Decision lifecycle
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuthorizationPolicy:
    """Who may record compliance decisions.

    Attributes:
        allowed_actors: Actors allowed to decide. Empty allows any resolved actor.
    """

    allowed_actors: frozenset[str] = frozenset()

    def ensure_can_decide(self, actor: str | None) -> str:
        """Validate an actor before any evaluation work.

        Args:
            actor: Resolved actor address.

        Returns:
            The normalized actor address.

        Raises:
            UnauthorizedActorError: If the actor is missing or not allowed.
        """
        normalized = (actor or "").strip()
        if not normalized:
            raise UnauthorizedActorError("Actor identity could not be resolved")
        if self.allowed_actors and normalized not in self.allowed_actors:
            raise UnauthorizedActorError(f"Actor '{normalized}' is not permitted to record compliance decisions")
        return normalized


@dataclass(frozen=True)
class DecisionRequest:
    """Input for creating or updating a decision.

    Attributes:
        organization_id: Organization the decision applies to.
        step: Onboarding step to evaluate.
        evidence: Evidence references.
        onboarding_session_id: Optional onboarding session.
        expiration_days: Decision lifetime. Defaults to the step's catalog default.
        requires_review: Whether to schedule periodic review.
        review_interval_days: Review interval. Defaults to the step's catalog default.
        correlation_id: Caller correlation identifier.
        metadata: Free-form metadata stored with the decision.
    """

    organization_id: str
    step: OnboardingStep
    evidence: tuple[EvidenceReference, ...] = ()
    onboarding_session_id: str | None = None
    expiration_days: int | None = None
    requires_review: bool = False
    review_interval_days: int | None = None
    correlation_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DecisionResult:
    """A decision plus whether this call created it.

    Attributes:
        decision: The decision. Its evaluation_snapshot carries the rule-by-rule result.
        created: False when an identical request inside the window was replayed.
    """

    decision: ComplianceDecision
    created: bool


@dataclass(frozen=True)
class DecisionQueryResult:
    decisions: list[ComplianceDecision]
    total_count: int
    page: int
    page_size: int
    summary: DecisionQuerySummary


def _require_aware(value: datetime | None, field_name: str) -> None:
    if value is not None and value.tzinfo is None:
        raise ValidationError(f"{field_name} must include a timezone offset", field=field_name)


def compute_dedup_key(
    organization_id: str,
    step: OnboardingStep,
    policy_version: str,
    evidence: Sequence[EvidenceReference],
) -> str:
    """Compute the idempotency key of a create request.

    Evidence order does not matter: items are canonicalized and sorted.

    Args:
        organization_id: Organization.
        step: Onboarding step.
        policy_version: Active catalog version.
        evidence: Evidence references.

    Returns:
        Hex SHA-256 digest.
    """
    canonical_evidence = sorted({item.canonical() for item in evidence})
    payload = json.dumps(
        [organization_id, step.value, policy_version, canonical_evidence],
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class DecisionService:
    """Decision lifecycle manager.

    Decisions are immutable: create inserts, update inserts a successor and
    flips the predecessor's supersession fields in the same transaction.
    Expiry is computed at read time.

    Args:
        repository: Decision repository.
        evaluator: Policy evaluator bound to the rule catalog.
        authorization: Who may record decisions.
        idempotency_window: Window in which identical creates are replayed.
        clock: Returns the current instant.
    """

    def __init__(
        self,
        repository: IDecisionRepository,
        evaluator: PolicyEvaluator,
        authorization: AuthorizationPolicy | None = None,
        idempotency_window: timedelta = timedelta(hours=1),
        clock: Clock = utc_now,
    ) -> None:
        self._repository = repository
        self._evaluator = evaluator
        self._authorization = authorization or AuthorizationPolicy()
        self._idempotency_window = idempotency_window
        self._clock = clock

    async def create_decision(self, request: DecisionRequest, actor: str | None) -> DecisionResult:
        """Create a decision, or return the identical one made inside the window.

        Args:
            request: The decision request.
            actor: Resolved actor address.

        Returns:
            DecisionResult with created=False when an existing decision was returned.

        Raises:
            UnauthorizedActorError: If the actor is missing or not allowed.
            ValidationError: If the request is invalid.
            UnknownStepError: If the step has no rules.
            EvidenceValidationError: If mandatory evidence lacks a data hash.
        """
        decision_maker = self._authorization.ensure_can_decide(actor)
        self._validate_request(request)

        snapshot = self._evaluator.catalog.active
        now = self._clock()
        window_start = now - self._idempotency_window
        dedup_key = compute_dedup_key(request.organization_id, request.step, snapshot.version, request.evidence)

        existing = await self._repository.find_claimed_decision(dedup_key, window_start)
        if existing is not None:
            logger.info(
                "Returning existing decision for identical request",
                decision_id=str(existing.id),
                organization_id=request.organization_id,
                step=request.step.value,
            )
            return DecisionResult(decision=existing, created=False)

        evaluation = self._evaluator.evaluate(request.step, request.evidence, at=now, snapshot=snapshot)
        decision = self._build_decision(request, evaluation, snapshot, decision_maker, now, dedup_key)
        stored, created = await self._repository.insert_idempotent(decision, window_start)

        logger.info(
            "Decision created" if created else "Concurrent identical decision returned",
            decision_id=str(stored.id),
            organization_id=request.organization_id,
            step=request.step.value,
            outcome=stored.outcome,
            policy_version=stored.policy_version,
        )
        return DecisionResult(decision=stored, created=created)

    async def update_decision(
        self,
        previous_decision_id: uuid.UUID,
        request: DecisionRequest,
        actor: str | None,
    ) -> DecisionResult:
        """Supersede a current decision with a freshly evaluated one.

        Chained updates are allowed only from the current head: updating a
        decision that was already superseded is rejected.

        Args:
            previous_decision_id: The decision to supersede.
            request: The new decision request, same organization and step.
            actor: Resolved actor address.

        Returns:
            DecisionResult for the new decision.

        Raises:
            UnauthorizedActorError: If the actor is missing or not allowed.
            NotFoundError: If the previous decision does not exist.
            DecisionSupersededError: If the previous decision was already superseded.
            ValidationError: If the request targets another organization or step.
        """
        decision_maker = self._authorization.ensure_can_decide(actor)
        self._validate_request(request)

        previous = await self._repository.get_by_id(previous_decision_id)
        if previous.is_superseded:
            raise DecisionSupersededError(decision_id=previous.id, superseded_by=previous.superseded_by_decision_id)
        if previous.organization_id != request.organization_id or previous.step != request.step.value:
            raise ValidationError(
                "An update must keep the organization and step of the decision it supersedes",
                field="organization_id" if previous.organization_id != request.organization_id else "step",
            )

        snapshot = self._evaluator.catalog.active
        now = self._clock()
        dedup_key = compute_dedup_key(request.organization_id, request.step, snapshot.version, request.evidence)
        evaluation = self._evaluator.evaluate(request.step, request.evidence, at=now, snapshot=snapshot)
        decision = self._build_decision(request, evaluation, snapshot, decision_maker, now, dedup_key)
        decision.previous_decision_id = previous.id

        stored = await self._repository.insert_superseding(previous.id, decision, superseded_at=now)
        logger.info(
            "Decision superseded",
            previous_decision_id=str(previous.id),
            decision_id=str(stored.id),
            outcome=stored.outcome,
        )
        return DecisionResult(decision=stored, created=True)

    async def get_decision(self, decision_id: uuid.UUID) -> ComplianceDecision:
        """Return a decision by ID.

        Raises:
            NotFoundError: If the decision does not exist.
        """
        return await self._repository.get_by_id(decision_id)

    async def get_active_decision(self, organization_id: str, step: OnboardingStep) -> ComplianceDecision | None:
        """Return the most recent non-superseded, unexpired decision, or None."""
        return await self._repository.get_active(organization_id, step, self._clock())

    async def query_decisions(
        self,
        filters: DecisionQueryFilters,
        page: int = 1,
        page_size: int = 50,
    ) -> DecisionQueryResult:
        """Query decisions with a summary over the whole filtered set.

        Args:
            filters: AND-combined filters.
            page: 1-based page number.
            page_size: Records per page, capped at 100.

        Returns:
            DecisionQueryResult.

        Raises:
            ValidationError: If pagination or the date range is invalid.
        """
        if page < 1:
            raise ValidationError("page must be at least 1", field="page")
        if page_size < 1:
            raise ValidationError("page_size must be at least 1", field="page_size")
        _require_aware(filters.from_date, "from_date")
        _require_aware(filters.to_date, "to_date")
        if filters.from_date and filters.to_date and filters.from_date > filters.to_date:
            raise ValidationError("from_date must not be after to_date", field="from_date")
        page_size = min(page_size, MAX_PAGE_SIZE)

        now = self._clock()
        decisions, total = await self._repository.query(filters, now, page, page_size)
        summary = await self._repository.summarize(filters, now)
        return DecisionQueryResult(
            decisions=decisions,
            total_count=total,
            page=page,
            page_size=page_size,
            summary=summary,
        )

    async def list_decisions_requiring_review(self, before: datetime | None = None) -> list[ComplianceDecision]:
        """Return decisions whose review is due on or before `before` (default now)."""
        _require_aware(before, "before")
        return await self._repository.list_requiring_review(before or self._clock())

    async def list_expired_decisions(self) -> list[ComplianceDecision]:
        """Return non-superseded decisions whose expiry has passed."""
        return await self._repository.list_expired(self._clock())

    @staticmethod
    def _validate_request(request: DecisionRequest) -> None:
        if not request.organization_id or not request.organization_id.strip():
            raise ValidationError("organization_id is required", field="organization_id")
        if len(request.evidence) > MAX_EVIDENCE_PER_DECISION:
            raise ValidationError(
                f"At most {MAX_EVIDENCE_PER_DECISION} evidence items are accepted per decision",
                field="evidence",
            )
        if request.expiration_days is not None and request.expiration_days < 1:
            raise ValidationError("expiration_days must be positive", field="expiration_days")
        if request.review_interval_days is not None and request.review_interval_days < 1:
            raise ValidationError("review_interval_days must be positive", field="review_interval_days")

    @staticmethod
    def _build_decision(
        request: DecisionRequest,
        evaluation: PolicyEvaluationResult,
        snapshot: CatalogSnapshot,
        decision_maker: str,
        now: datetime,
        dedup_key: str,
    ) -> ComplianceDecision:
        defaults = snapshot.defaults_for(request.step)
        expiration_days = request.expiration_days or defaults.expiration_days
        review_interval_days = None
        next_review_at = None
        if request.requires_review:
            review_interval_days = request.review_interval_days or defaults.review_interval_days
            next_review_at = now + timedelta(days=review_interval_days)

        evidence_snapshot = [
            item.model_dump(mode="json")
            for item in sorted(request.evidence, key=lambda item: item.canonical())
        ]
        return ComplianceDecision(
            id=uuid.uuid4(),
            organization_id=request.organization_id,
            onboarding_session_id=request.onboarding_session_id,
            step=request.step.value,
            outcome=evaluation.outcome.value,
            policy_rule_ids=evaluation.policy_rule_ids,
            decision_maker=decision_maker,
            decision_timestamp=now,
            evidence_references=evidence_snapshot,
            reason=evaluation.reason,
            policy_version=evaluation.policy_version,
            expires_at=now + timedelta(days=expiration_days),
            requires_review=request.requires_review,
            review_interval_days=review_interval_days,
            next_review_at=next_review_at,
            is_superseded=False,
            correlation_id=request.correlation_id,
            dedup_key=dedup_key,
            evaluation_snapshot=evaluation.to_snapshot(),
            decision_metadata=dict(request.metadata),
        )


# ---------------------------------------------------------------------------
# Readiness
# ---------------------------------------------------------------------------


def compute_evaluation_hash(content: dict[str, Any]) -> str:
    """SHA-256 over the canonical JSON form of an evaluation."""
    canonical = json.dumps(content, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class ReadinessService:
    """Evaluates token launch readiness and stores every evaluation.

    The caller's identity is trusted as given: the API layer always passes
    the resolved actor as user_id.

    Args:
        aggregator: Readiness aggregator.
        repository: Readiness evaluation repository.
        history_limit: Maximum history records returned, at most 100.
    """

    def __init__(
        self,
        aggregator: ReadinessAggregator,
        repository: IReadinessEvaluationRepository,
        history_limit: int = MAX_HISTORY_LIMIT,
    ) -> None:
        self._aggregator = aggregator
        self._repository = repository
        self._history_limit = min(history_limit, MAX_HISTORY_LIMIT)

    async def evaluate_readiness(
        self,
        user_id: str,
        token_type: str,
        network: str,
        context: ReadinessContext | None = None,
        correlation_id: str | None = None,
    ) -> ReadinessEvaluation:
        """Evaluate readiness and persist the immutable evidence record.

        Args:
            user_id: The caller.
            token_type: Token standard being launched.
            network: Target network.
            context: Typed readiness context.
            correlation_id: Caller correlation identifier.

        Returns:
            The stored ReadinessEvaluation.

        Raises:
            ValidationError: If a required field is blank.
        """
        for name, value in (("user_id", user_id), ("token_type", token_type), ("network", network)):
            if not value or not value.strip():
                raise ValidationError(f"{name} is required", field=name)

        request = ReadinessRequest(
            user_id=user_id,
            token_type=token_type,
            network=network,
            context=context or ReadinessContext(),
            correlation_id=correlation_id,
        )
        verdict = await self._aggregator.evaluate(request)
        record = self._to_record(request, verdict)
        return await self._repository.create(record)

    async def get_evaluation(self, evaluation_id: uuid.UUID, user_id: str) -> ReadinessEvaluation:
        """Return one of the caller's evaluations.

        Raises:
            NotFoundError: If the evaluation does not exist or belongs to someone else.
        """
        evaluation = await self._repository.get_by_id(evaluation_id)
        if evaluation.user_id != user_id:
            raise NotFoundError(resource="ReadinessEvaluation", resource_id=str(evaluation_id))
        return evaluation

    async def get_history(
        self,
        user_id: str,
        limit: int = 50,
        from_date: datetime | None = None,
    ) -> list[ReadinessEvaluation]:
        """Return the caller's evaluations, newest first.

        Args:
            user_id: The caller.
            limit: Requested maximum, clamped to 1..history cap.
            from_date: Only evaluations at or after this instant.

        Returns:
            List of evaluations.
        """
        _require_aware(from_date, "from_date")
        bounded = max(1, min(limit, self._history_limit))
        return await self._repository.list_for_user(user_id, bounded, from_date)

    @staticmethod
    def _to_record(request: ReadinessRequest, verdict: ReadinessVerdict) -> ReadinessEvaluation:
        category_results = {category.value: result.to_dict() for category, result in verdict.category_results.items()}
        remediation_tasks = [task.to_dict() for task in verdict.remediation_tasks]
        request_snapshot = {
            "user_id": request.user_id,
            "token_type": request.token_type,
            "network": request.network,
            "context": request.context.model_dump(mode="json"),
        }
        data_hash = compute_evaluation_hash(
            {
                "request": request_snapshot,
                "status": verdict.status.value,
                "can_proceed": verdict.can_proceed,
                "category_results": category_results,
                "remediation_tasks": remediation_tasks,
                "policy_version": verdict.policy_version,
                "evaluated_at": verdict.evaluated_at.isoformat(),
            }
        )
        return ReadinessEvaluation(
            id=uuid.uuid4(),
            user_id=request.user_id,
            organization_id=request.organization_id,
            token_type=request.token_type,
            network=request.network,
            status=verdict.status.value,
            can_proceed=verdict.can_proceed,
            summary=verdict.summary,
            category_results=category_results,
            remediation_tasks=remediation_tasks,
            policy_version=verdict.policy_version,
            evaluated_at=verdict.evaluated_at,
            evaluation_time_ms=verdict.evaluation_time_ms,
            is_degraded=verdict.is_degraded,
            degraded_sources=list(verdict.degraded_sources),
            request_snapshot=request_snapshot,
            correlation_id=request.correlation_id,
            data_hash=data_hash,
        )


# ---------------------------------------------------------------------------
# Jurisdictions
# ---------------------------------------------------------------------------


class JurisdictionService:
    """Jurisdiction rule sets and token assignments.

    Args:
        repository: Jurisdiction assignment repository.
        registry: Jurisdiction rule sets.
        clock: Returns the current instant.
    """

    def __init__(
        self,
        repository: IJurisdictionAssignmentRepository,
        registry: JurisdictionRuleRegistry,
        clock: Clock = utc_now,
    ) -> None:
        self._repository = repository
        self._registry = registry
        self._clock = clock

    def list_rule_sets(self, active_only: bool = False) -> list[JurisdictionRuleSet]:
        return self._registry.list_rule_sets(active_only=active_only)

    def get_rule_set(self, code: str) -> JurisdictionRuleSet:
        """Return a rule set by code.

        Raises:
            NotFoundError: If the code is unknown.
        """
        return self._registry.get(code)

    async def assign(
        self,
        token_id: str,
        network: str,
        jurisdiction_code: str,
        actor: str,
        is_primary: bool = False,
        notes: str | None = None,
    ) -> JurisdictionAssignment:
        """Assign a jurisdiction to a token.

        Raises:
            ValidationError: If token_id or network is blank.
            NotFoundError: If the jurisdiction has no rule set.
        """
        if not token_id.strip() or not network.strip():
            raise ValidationError("token_id and network are required", field="token_id")
        rule_set = self._registry.get(jurisdiction_code)
        return await self._repository.assign(
            token_id=token_id,
            network=network,
            jurisdiction_code=rule_set.code,
            is_primary=is_primary,
            assigned_by=actor,
            assigned_at=self._clock(),
            notes=notes,
        )

    async def list_assignments(self, token_id: str, network: str) -> list[JurisdictionAssignment]:
        return await self._repository.list_for_token(token_id, network)

    async def remove(self, token_id: str, network: str, jurisdiction_code: str) -> None:
        """Remove an assignment.

        Raises:
            NotFoundError: If the assignment does not exist.
        """
        await self._repository.remove(token_id, network, jurisdiction_code.upper())

    async def evaluate_token(
        self,
        token_id: str,
        network: str,
        context: ReadinessContext | None = None,
    ) -> JurisdictionEvaluation:
        """Evaluate a token's jurisdictions without running a full readiness check."""
        assignments = await self._repository.list_for_token(token_id, network)
        return evaluate_jurisdictions(
            self._registry,
            [assignment.jurisdiction_code for assignment in assignments],
            context or ReadinessContext(token_id=token_id),
        )


# ---------------------------------------------------------------------------
# Policy catalog
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PolicyConfiguration:
    """Read-only view of the active rule catalog.

    Attributes:
        version: Active catalog version.
        description: Catalog description.
        content_hash: SHA-256 of the active snapshot content.
        published_versions: Every published version, in publish order.
        defaults: Catalog-wide decision lifetime defaults.
        step_defaults: Effective lifetimes per step that has rules.
        rules_by_step: All rules per step, in configuration order.
    """

    version: str
    description: str
    content_hash: str
    published_versions: list[str]
    defaults: StepDefaults
    step_defaults: dict[OnboardingStep, StepDefaults]
    rules_by_step: dict[OnboardingStep, tuple[PolicyRule, ...]]


class PolicyService:
    """Read access to the rule catalog and evaluation metrics.

    Args:
        evaluator: The shared policy evaluator, which owns the catalog and metrics.
        clock: Returns the current instant, used for effective-date filtering.
    """

    def __init__(self, evaluator: PolicyEvaluator, clock: Clock = utc_now) -> None:
        self._evaluator = evaluator
        self._clock = clock

    def list_rules(self, step: OnboardingStep) -> tuple[PolicyRule, ...]:
        """Return the rules currently applicable to a step.

        Raises:
            UnknownStepError: If the step has no applicable rules.
        """
        return self._evaluator.catalog.active.rules_for_step(step, self._clock())

    def get_rule(self, rule_id: str) -> PolicyRule:
        """Return a rule of the active catalog by ID.

        Raises:
            NotFoundError: If the rule is not in the active catalog.
        """
        return self._evaluator.catalog.active.get_rule(rule_id)

    def get_configuration(self) -> PolicyConfiguration:
        catalog = self._evaluator.catalog
        snapshot = catalog.active
        steps = [step for step in OnboardingStep if step in snapshot.steps]
        return PolicyConfiguration(
            version=snapshot.version,
            description=snapshot.description,
            content_hash=snapshot.content_hash,
            published_versions=catalog.versions,
            defaults=snapshot.defaults,
            step_defaults={step: snapshot.defaults_for(step) for step in steps},
            rules_by_step={step: tuple(rule for rule in snapshot.rules if rule.step == step) for step in steps},
        )

    def get_metrics(self) -> dict[str, Any]:
        """Return the in-process evaluation counters since startup."""
        return self._evaluator.metrics.snapshot()
