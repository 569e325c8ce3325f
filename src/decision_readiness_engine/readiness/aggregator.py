"""Readiness aggregator: concurrent category fan-out, merge and remediation.

Each enabled category evaluator runs as its own task under a per-category
timeout. A category that times out, raises UpstreamDegradedError or fails
unexpectedly is folded in as a degraded result with its configured timeout
severity, so one unhealthy upstream never aborts or stalls the evaluation.

Merge, in priority order:
1. Any mandatory category failing with CRITICAL severity: BLOCKED.
2. Any non-degraded failure that requires review, or any non-degraded
   mandatory failure: NEEDS_REVIEW.
3. Any other failure, degraded results included: WARNING (can proceed).
4. No failures: READY.

Merge and remediation ordering are pure functions of the category results:
tasks sort by severity descending, estimated hours ascending, then category
declaration order.
"""

import asyncio
import dataclasses
import time
from collections.abc import Mapping, Sequence
from typing import Any

from decision_readiness_engine.core.interfaces import ICategoryEvaluator
from decision_readiness_engine.core.types import (
    CategoryResult,
    Clock,
    ReadinessCategory,
    ReadinessRequest,
    ReadinessStatus,
    ReadinessVerdict,
    RemediationTask,
    Severity,
    utc_now,
)
from decision_readiness_engine.errors import UpstreamDegradedError
from decision_readiness_engine.observability import get_logger
from decision_readiness_engine.readiness.policy import (
    DEFAULT_CATEGORY_POLICIES,
    DEGRADED_ACTIONS,
    DEGRADED_ESTIMATED_HOURS,
    DEGRADED_OWNER_HINT,
    READINESS_POLICY_VERSION,
    REMEDIATION_DEPENDENCIES,
    SUMMARY_BLOCKED,
    SUMMARY_NEEDS_REVIEW,
    SUMMARY_READY,
    SUMMARY_WARNING,
    CategoryPolicy,
)

logger = get_logger(__name__)

_CATEGORY_ORDER = {category: index for index, category in enumerate(ReadinessCategory)}


class ReadinessAggregator:
    """Orchestrates category evaluators into one readiness verdict.

    Args:
        evaluators: Enabled category evaluators, at most one per category.
        timeout_seconds: Per-category timeout.
        max_concurrency: Maximum evaluators running at once. Defaults to all.
        policies: Category policy table.
        dependencies: Remediation dependency edges.
        policy_version: Readiness policy version recorded on results.
        clock: Returns the current instant.
    """

    def __init__(
        self,
        evaluators: Sequence[ICategoryEvaluator],
        timeout_seconds: float = 5.0,
        max_concurrency: int | None = None,
        policies: Mapping[ReadinessCategory, CategoryPolicy] = DEFAULT_CATEGORY_POLICIES,
        dependencies: Mapping[ReadinessCategory, tuple[ReadinessCategory, ...]] = REMEDIATION_DEPENDENCIES,
        policy_version: str = READINESS_POLICY_VERSION,
        clock: Clock = utc_now,
    ) -> None:
        categories = [evaluator.category for evaluator in evaluators]
        if len(set(categories)) != len(categories):
            raise ValueError(f"Duplicate category evaluators: {categories}")
        missing = [category for category in categories if category not in policies]
        if missing:
            raise ValueError(f"No category policy for: {missing}")

        self._evaluators = list(evaluators)
        self._timeout_seconds = timeout_seconds
        self._max_concurrency = max_concurrency or max(len(self._evaluators), 1)
        self._policies = policies
        self._dependencies = dependencies
        self._policy_version = policy_version
        self._clock = clock

    @property
    def policy_version(self) -> str:
        return self._policy_version

    async def evaluate(self, request: ReadinessRequest) -> ReadinessVerdict:
        """Evaluate every enabled category and merge the results.

        Args:
            request: The readiness request for the caller's own identity.

        Returns:
            ReadinessVerdict with status, category results and ordered remediation.
        """
        evaluated_at = self._clock()
        started = time.perf_counter()
        semaphore = asyncio.Semaphore(self._max_concurrency)

        gathered = await asyncio.gather(
            *(self._run_category(evaluator, request, semaphore) for evaluator in self._evaluators)
        )
        results = {result.category: result for result in gathered}
        ordered = {category: results[category] for category in ReadinessCategory if category in results}

        status, can_proceed, summary = self.merge(ordered)
        tasks = self.build_remediation(ordered)
        degraded_sources = [category.value for category, result in ordered.items() if result.is_degraded]
        elapsed_ms = (time.perf_counter() - started) * 1000

        logger.info(
            "Readiness evaluation completed",
            user_id=request.user_id,
            token_type=request.token_type,
            network=request.network,
            status=status.value,
            can_proceed=can_proceed,
            remediation_tasks=len(tasks),
            degraded_sources=degraded_sources,
            elapsed_ms=round(elapsed_ms, 3),
        )
        return ReadinessVerdict(
            status=status,
            can_proceed=can_proceed,
            summary=summary,
            category_results=ordered,
            remediation_tasks=tasks,
            policy_version=self._policy_version,
            evaluated_at=evaluated_at,
            evaluation_time_ms=round(elapsed_ms, 3),
            degraded_sources=degraded_sources,
        )

    async def _run_category(
        self,
        evaluator: ICategoryEvaluator,
        request: ReadinessRequest,
        semaphore: asyncio.Semaphore,
    ) -> CategoryResult:
        category = evaluator.category
        async with semaphore:
            try:
                result = await asyncio.wait_for(evaluator.evaluate(request), timeout=self._timeout_seconds)
            except TimeoutError:
                logger.warning(
                    "Readiness category timed out",
                    category=category.value,
                    timeout_seconds=self._timeout_seconds,
                )
                return self._degraded(category, f"timed out after {self._timeout_seconds:g}s")
            except UpstreamDegradedError as exc:
                logger.warning(
                    "Readiness category upstream degraded",
                    category=category.value,
                    source=exc.source,
                    error=exc.message,
                )
                return self._degraded(category, exc.message)
            except Exception:
                logger.exception("Readiness category failed unexpectedly", category=category.value)
                return self._degraded(category, "evaluation failed")

        if result.category != category:
            logger.warning(
                "Category evaluator returned a foreign category",
                expected=category.value,
                returned=result.category.value,
            )
            return dataclasses.replace(result, category=category)
        return result

    def _degraded(self, category: ReadinessCategory, reason: str) -> CategoryResult:
        return CategoryResult(
            category=category,
            passed=False,
            message=f"{category.value} status unknown: {reason}",
            reason_codes=(f"{category.value.upper()}_UNAVAILABLE",),
            severity=self._policies[category].timeout_severity,
            is_degraded=True,
        )

    def severity_of(self, result: CategoryResult) -> Severity:
        """Effective failure severity of a result."""
        return result.severity or self._policies[result.category].failure_severity

    def merge(self, results: Mapping[ReadinessCategory, CategoryResult]) -> tuple[ReadinessStatus, bool, str]:
        """Merge category results into (status, can_proceed, summary).

        Args:
            results: Category results.

        Returns:
            Tuple of status, can_proceed and summary text.
        """
        failing = [result for result in results.values() if not result.passed]

        critical = [
            result
            for result in failing
            if self._policies[result.category].mandatory and self.severity_of(result) is Severity.CRITICAL
        ]
        if critical:
            return ReadinessStatus.BLOCKED, False, SUMMARY_BLOCKED.format(count=len(critical))

        needs_review = [
            result
            for result in failing
            if not result.is_degraded
            and (result.requires_review or self._policies[result.category].mandatory)
        ]
        if needs_review:
            return ReadinessStatus.NEEDS_REVIEW, False, SUMMARY_NEEDS_REVIEW

        if failing:
            return ReadinessStatus.WARNING, True, SUMMARY_WARNING
        return ReadinessStatus.READY, True, SUMMARY_READY

    def build_remediation(self, results: Mapping[ReadinessCategory, CategoryResult]) -> list[RemediationTask]:
        """Build ordered remediation tasks for every failing category.

        Args:
            results: Category results.

        Returns:
            Tasks sorted by severity descending, hours ascending, then category order.
        """
        failing = {category: result for category, result in results.items() if not result.passed}
        tasks = [self._task_for(result, failing) for result in failing.values()]
        return sorted(
            tasks,
            key=lambda task: (-task.severity.rank, task.estimated_resolution_hours, _CATEGORY_ORDER[task.category]),
        )

    def _task_for(
        self,
        result: CategoryResult,
        failing: Mapping[ReadinessCategory, CategoryResult],
    ) -> RemediationTask:
        policy = self._policies[result.category]
        depends_on = tuple(
            sorted(
                (dep for dep in self._dependencies.get(result.category, ()) if dep in failing),
                key=_CATEGORY_ORDER.__getitem__,
            )
        )

        if result.is_degraded:
            owner_hint = DEGRADED_OWNER_HINT
            actions: tuple[str, ...] = DEGRADED_ACTIONS
            hours = DEGRADED_ESTIMATED_HOURS
        else:
            owner_hint = _text(result.details.get("owner_hint")) or policy.owner_hint
            actions = _actions(result.details.get("remediation_actions")) or policy.default_actions
            hours = _hours(result.details.get("estimated_hours"), policy.estimated_hours)

        return RemediationTask(
            key=result.category.value,
            category=result.category,
            error_code=result.reason_codes[0] if result.reason_codes else policy.error_code,
            description=result.message,
            severity=self.severity_of(result),
            owner_hint=owner_hint,
            actions=actions,
            estimated_resolution_hours=hours,
            depends_on=tuple(dep.value for dep in depends_on),
        )


def _text(value: Any) -> str | None:
    return value.strip() if isinstance(value, str) and value.strip() else None


def _actions(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list | tuple):
        return ()
    return tuple(dict.fromkeys(str(item) for item in value if str(item).strip()))


def _hours(value: Any, default: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int | float) or value < 0:
        return default
    return int(value)
