"""Policy evaluator: scores evidence against the active rule catalog.

Evaluation is a pure function of (catalog snapshot, step, evidence, instant):
it performs no I/O and returns identical results for identical inputs, so
callers may repeat it freely.

Outcome derivation, in priority order:
1. Any mandatory rule fails: REJECTED, or CONDITIONAL_APPROVAL when every
   failing mandatory rule allows a conditional pass.
2. Any mandatory rule has evidence still under verification:
   REQUIRES_MANUAL_REVIEW.
3. Any optional rule is unmet: CONDITIONAL_APPROVAL.
4. Otherwise: APPROVED.
"""

import time
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from decision_readiness_engine.core.types import (
    CheckStatus,
    DecisionOutcome,
    EvidenceReference,
    OnboardingStep,
    Severity,
)
from decision_readiness_engine.errors import EvidenceValidationError
from decision_readiness_engine.observability import get_logger
from decision_readiness_engine.policy.catalog import CatalogSnapshot, PolicyRule, RuleCatalog
from decision_readiness_engine.policy.matching import MatchMode, index_by_type, match_evidence

logger = get_logger(__name__)

_NO_ESTIMATE = "Contact compliance team for estimate"


@dataclass(frozen=True)
class RuleEvaluationResult:
    """Result of evaluating one rule.

    Attributes:
        rule_id: Rule identifier.
        rule_name: Human-readable rule name.
        passed: Whether the rule is satisfied.
        status: pass | fail | partial.
        message: Pass or failure message.
        severity: The rule's severity.
        is_mandatory: Whether the rule is mandatory.
        matched_reference_ids: Evidence references that satisfied the rule.
        missing_evidence_types: Required types with no usable evidence.
        pending_evidence_types: Required types still under verification.
    """

    rule_id: str
    rule_name: str
    passed: bool
    status: CheckStatus
    message: str
    severity: Severity
    is_mandatory: bool
    matched_reference_ids: tuple[str, ...] = ()
    missing_evidence_types: tuple[str, ...] = ()
    pending_evidence_types: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "passed": self.passed,
            "status": self.status.value,
            "message": self.message,
            "severity": self.severity.value,
            "is_mandatory": self.is_mandatory,
            "matched_reference_ids": list(self.matched_reference_ids),
            "missing_evidence_types": list(self.missing_evidence_types),
            "pending_evidence_types": list(self.pending_evidence_types),
        }


@dataclass(frozen=True)
class PolicyEvaluationResult:
    """Aggregate result of evaluating a step.

    Attributes:
        step: Onboarding step evaluated.
        policy_version: Catalog version applied.
        outcome: Derived decision outcome.
        reason: Human-readable reason for the outcome.
        rule_results: Per-rule results in catalog order.
        required_actions: Deduplicated remediation actions of unmet rules.
        estimated_resolution: Human-readable effort estimate, None when nothing is unmet.
    """

    step: OnboardingStep
    policy_version: str
    outcome: DecisionOutcome
    reason: str
    rule_results: tuple[RuleEvaluationResult, ...]
    required_actions: tuple[str, ...] = ()
    estimated_resolution: str | None = None

    @property
    def policy_rule_ids(self) -> list[str]:
        return [result.rule_id for result in self.rule_results]

    @property
    def failure_messages(self) -> list[str]:
        """Messages of every unmet rule, in catalog order."""
        return [result.message for result in self.rule_results if not result.passed]

    def to_snapshot(self) -> dict[str, Any]:
        """Serialize for the decision's evaluation snapshot."""
        return {
            "step": self.step.value,
            "policy_version": self.policy_version,
            "outcome": self.outcome.value,
            "reason": self.reason,
            "rule_results": [result.to_dict() for result in self.rule_results],
            "required_actions": list(self.required_actions),
            "estimated_resolution": self.estimated_resolution,
        }


@dataclass
class PolicyEvaluationMetrics:
    """In-process counters for policy evaluations."""

    total_evaluations: int = 0
    outcome_counts: Counter[str] = field(default_factory=Counter)
    rule_failure_counts: Counter[str] = field(default_factory=Counter)
    total_evaluation_ms: float = 0.0

    def record(self, result: PolicyEvaluationResult, elapsed_ms: float) -> None:
        self.total_evaluations += 1
        self.outcome_counts[result.outcome.value] += 1
        self.total_evaluation_ms += elapsed_ms
        for rule_result in result.rule_results:
            if not rule_result.passed:
                self.rule_failure_counts[rule_result.rule_id] += 1

    def snapshot(self) -> dict[str, Any]:
        average = self.total_evaluation_ms / self.total_evaluations if self.total_evaluations else 0.0
        return {
            "total_evaluations": self.total_evaluations,
            "approved": self.outcome_counts[DecisionOutcome.APPROVED.value],
            "rejected": self.outcome_counts[DecisionOutcome.REJECTED.value],
            "conditional_approval": self.outcome_counts[DecisionOutcome.CONDITIONAL_APPROVAL.value],
            "requires_manual_review": self.outcome_counts[DecisionOutcome.REQUIRES_MANUAL_REVIEW.value],
            "average_evaluation_ms": round(average, 3),
            "rule_failure_counts": dict(self.rule_failure_counts),
        }


def format_resolution_estimate(hours: int) -> str:
    """Render a remediation effort estimate.

    Args:
        hours: Estimated hours.

    Returns:
        "N hours" below a day, "N days" below a week, "N weeks" otherwise.
    """
    if hours <= 0:
        return _NO_ESTIMATE
    if hours < 24:
        return f"{hours} hours"
    if hours < 168:
        return f"{hours // 24} days"
    return f"{hours // 168} weeks"


class PolicyEvaluator:
    """Evaluates evidence for a step against the active catalog snapshot.

    Args:
        catalog: The rule catalog. Its active snapshot is read once per call.
        metrics: Optional metrics collector.
    """

    def __init__(self, catalog: RuleCatalog, metrics: PolicyEvaluationMetrics | None = None) -> None:
        self._catalog = catalog
        self.metrics = metrics or PolicyEvaluationMetrics()

    @property
    def catalog(self) -> RuleCatalog:
        return self._catalog

    def evaluate(
        self,
        step: OnboardingStep,
        evidence: Sequence[EvidenceReference],
        at: datetime | None = None,
        snapshot: CatalogSnapshot | None = None,
    ) -> PolicyEvaluationResult:
        """Evaluate evidence for a step.

        Args:
            step: The onboarding step.
            evidence: Evidence references. Unknown types are ignored for matching.
            at: Instant used to select effective rules. Defaults to now.
            snapshot: Catalog snapshot to use. Defaults to the active one.

        Returns:
            PolicyEvaluationResult with outcome, rule results and required actions.

        Raises:
            UnknownStepError: If the step has no applicable rules.
            EvidenceValidationError: If evidence for a mandatory rule lacks a data hash.
        """
        started = time.perf_counter()
        catalog_snapshot = snapshot or self._catalog.active
        rules = catalog_snapshot.rules_for_step(step, at or datetime.now(UTC))

        self._validate_evidence(rules, evidence)

        evidence_by_type = index_by_type(evidence)
        rule_results = tuple(self._evaluate_rule(rule, evidence_by_type) for rule in rules)
        result = self._derive_outcome(step, catalog_snapshot.version, rules, rule_results)

        elapsed_ms = (time.perf_counter() - started) * 1000
        self.metrics.record(result, elapsed_ms)
        logger.info(
            "Policy evaluation completed",
            step=step.value,
            policy_version=catalog_snapshot.version,
            outcome=result.outcome.value,
            rules_evaluated=len(rule_results),
            rules_unmet=len(result.failure_messages),
            elapsed_ms=round(elapsed_ms, 3),
        )
        return result

    @staticmethod
    def _validate_evidence(rules: Sequence[PolicyRule], evidence: Sequence[EvidenceReference]) -> None:
        mandatory_types = {
            evidence_type
            for rule in rules
            if rule.is_mandatory
            for evidence_type in rule.required_evidence_types
        }
        unhashed = sorted(
            item.reference_id
            for item in evidence
            if item.evidence_type in mandatory_types and item.data_hash is None
        )
        if unhashed:
            raise EvidenceValidationError(
                f"Evidence for mandatory rules must include data_hash: {', '.join(unhashed)}",
                reference_ids=unhashed,
            )

    @staticmethod
    def _evaluate_rule(
        rule: PolicyRule,
        evidence_by_type: dict[str, list[EvidenceReference]],
    ) -> RuleEvaluationResult:
        match = match_evidence(
            rule.required_evidence_types,
            evidence_by_type,
            accepted_statuses=rule.accepted_statuses,
            mode=rule.match_mode,
        )
        separator = " or " if rule.match_mode is MatchMode.ANY else ", "

        if match.status in (CheckStatus.PASS, CheckStatus.NOT_APPLICABLE):
            message = rule.pass_message
        elif match.status is CheckStatus.PARTIAL:
            message = f"{rule.fail_message}. Evidence pending verification: {separator.join(match.pending_types)}"
        else:
            message = f"{rule.fail_message}. Missing required evidence: {separator.join(match.missing_types)}"

        passed = match.status in (CheckStatus.PASS, CheckStatus.NOT_APPLICABLE)
        return RuleEvaluationResult(
            rule_id=rule.rule_id,
            rule_name=rule.name,
            passed=passed,
            status=CheckStatus.PASS if passed else match.status,
            message=message,
            severity=rule.severity,
            is_mandatory=rule.is_mandatory,
            matched_reference_ids=match.matched_reference_ids,
            missing_evidence_types=match.missing_types,
            pending_evidence_types=match.pending_types,
        )

    @staticmethod
    def _derive_outcome(
        step: OnboardingStep,
        policy_version: str,
        rules: Sequence[PolicyRule],
        rule_results: tuple[RuleEvaluationResult, ...],
    ) -> PolicyEvaluationResult:
        paired = list(zip(rules, rule_results, strict=True))
        hard_failures = [(r, res) for r, res in paired if r.is_mandatory and res.status is CheckStatus.FAIL]
        pending = [(r, res) for r, res in paired if r.is_mandatory and res.status is CheckStatus.PARTIAL]
        optional_unmet = [(r, res) for r, res in paired if not r.is_mandatory and not res.passed]
        unmet = [(r, res) for r, res in paired if not res.passed]

        if hard_failures:
            names = ", ".join(res.rule_name for _, res in hard_failures)
            if all(rule.allow_conditional for rule, _ in hard_failures):
                outcome = DecisionOutcome.CONDITIONAL_APPROVAL
                reason = f"Conditionally approved with {len(unmet)} outstanding item(s): {names}"
            else:
                outcome = DecisionOutcome.REJECTED
                reason = f"Failed required compliance checks: {names}"
        elif pending:
            outcome = DecisionOutcome.REQUIRES_MANUAL_REVIEW
            names = ", ".join(res.rule_name for _, res in pending)
            reason = f"Manual review required: evidence pending verification for {names}"
        elif optional_unmet:
            outcome = DecisionOutcome.CONDITIONAL_APPROVAL
            names = ", ".join(res.rule_name for _, res in optional_unmet)
            reason = f"Conditionally approved with {len(optional_unmet)} outstanding item(s): {names}"
        else:
            outcome = DecisionOutcome.APPROVED
            reason = f"All compliance requirements met for {step.value}"

        required_actions: list[str] = []
        for rule, _ in unmet:
            for action in rule.remediation_actions:
                if action not in required_actions:
                    required_actions.append(action)

        estimated_resolution = None
        if unmet:
            hours = max((rule.estimated_remediation_hours or 0) for rule, _ in unmet)
            estimated_resolution = format_resolution_estimate(hours)

        return PolicyEvaluationResult(
            step=step,
            policy_version=policy_version,
            outcome=outcome,
            reason=reason,
            rule_results=rule_results,
            required_actions=tuple(required_actions),
            estimated_resolution=estimated_resolution,
        )
