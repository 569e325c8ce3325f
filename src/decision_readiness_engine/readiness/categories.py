"""Readiness category evaluators.

Each evaluator implements ICategoryEvaluator for one category. Most wrap a
collaborator interface and stamp the result with their own category; the
compliance decision evaluator derives its result from the latest active
decision. Evaluators never catch upstream failures: the aggregator isolates
them per category and folds them in as degraded results.
"""

import dataclasses

from decision_readiness_engine.core.interfaces import (
    AccountReadinessChecker,
    EntitlementChecker,
    IActiveDecisionSource,
    IdentityVerificationReader,
    IntegrationHealthProbe,
    WhitelistEligibilityChecker,
)
from decision_readiness_engine.core.models import ComplianceDecision
from decision_readiness_engine.core.types import (
    CategoryResult,
    DecisionOutcome,
    OnboardingStep,
    ReadinessCategory,
    ReadinessRequest,
    Severity,
    TokenContext,
)


def _stamp(result: CategoryResult, category: ReadinessCategory) -> CategoryResult:
    if result.category == category:
        return result
    return dataclasses.replace(result, category=category)


class EntitlementCategoryEvaluator:
    """Checks the user's plan entitles the requested operation."""

    category = ReadinessCategory.ENTITLEMENT

    def __init__(self, checker: EntitlementChecker) -> None:
        self._checker = checker

    async def evaluate(self, request: ReadinessRequest) -> CategoryResult:
        result = await self._checker.check(request.user_id, request.context.operation)
        return _stamp(result, self.category)


class AccountReadinessCategoryEvaluator:
    """Checks the user's account is provisioned and healthy."""

    category = ReadinessCategory.ACCOUNT_STATE

    def __init__(self, checker: AccountReadinessChecker) -> None:
        self._checker = checker

    async def evaluate(self, request: ReadinessRequest) -> CategoryResult:
        return _stamp(await self._checker.check(request.user_id), self.category)


class IdentityVerificationCategoryEvaluator:
    """Reads KYC/AML verification status. Advisory by policy."""

    category = ReadinessCategory.KYC_AML

    def __init__(self, reader: IdentityVerificationReader) -> None:
        self._reader = reader

    async def evaluate(self, request: ReadinessRequest) -> CategoryResult:
        return _stamp(await self._reader.get_status(request.user_id), self.category)


class TransferEligibilityCategoryEvaluator:
    """Checks whitelist-based transfer eligibility for the token."""

    category = ReadinessCategory.WHITELIST

    def __init__(self, checker: WhitelistEligibilityChecker) -> None:
        self._checker = checker

    async def evaluate(self, request: ReadinessRequest) -> CategoryResult:
        token_context = TokenContext(
            token_type=request.token_type,
            network=request.network,
            token_id=request.context.token_id,
        )
        return _stamp(await self._checker.check(request.user_id, token_context), self.category)


class IntegrationHealthCategoryEvaluator:
    """Probes the integrations serving the target network."""

    category = ReadinessCategory.INTEGRATION

    def __init__(self, probe: IntegrationHealthProbe) -> None:
        self._probe = probe

    async def evaluate(self, request: ReadinessRequest) -> CategoryResult:
        return _stamp(await self._probe.check(request.network), self.category)


class ComplianceDecisionCategoryEvaluator:
    """Backs the compliance category with the latest active decision.

    Outcome mapping:
    - no active decision: failed, CRITICAL
    - approved: passed
    - conditional_approval: passed, conditions reported in the message
    - requires_manual_review: failed, review required
    - rejected: failed, CRITICAL, with the decision's required actions

    Args:
        source: Read-only source of active decisions.
        step: Onboarding step whose decision gates token launch.
    """

    category = ReadinessCategory.COMPLIANCE_DECISION

    def __init__(
        self,
        source: IActiveDecisionSource,
        step: OnboardingStep = OnboardingStep.TOKEN_ISSUANCE_AUTHORIZATION,
    ) -> None:
        self._source = source
        self._step = step

    async def evaluate(self, request: ReadinessRequest) -> CategoryResult:
        decision = await self._source.get_active_decision(request.organization_id, self._step)
        if decision is None:
            return CategoryResult(
                category=self.category,
                passed=False,
                message=f"No active compliance decision for step {self._step.value}",
                reason_codes=("COMPLIANCE_DECISION_MISSING",),
                severity=Severity.CRITICAL,
                details={"step": self._step.value},
            )
        return self._from_decision(decision)

    def _from_decision(self, decision: ComplianceDecision) -> CategoryResult:
        details = {
            "decision_id": str(decision.id),
            "step": decision.step,
            "outcome": decision.outcome,
            "policy_version": decision.policy_version,
            "expires_at": decision.expires_at.isoformat() if decision.expires_at else None,
        }
        evidence_refs = (str(decision.id),)
        outcome = DecisionOutcome(decision.outcome)

        if outcome is DecisionOutcome.APPROVED:
            return CategoryResult(
                category=self.category,
                passed=True,
                message="Compliance decision approved",
                evidence_refs=evidence_refs,
                details=details,
            )
        if outcome is DecisionOutcome.CONDITIONAL_APPROVAL:
            return CategoryResult(
                category=self.category,
                passed=True,
                message=f"Compliance decision conditionally approved: {decision.reason}",
                reason_codes=("COMPLIANCE_CONDITIONAL_APPROVAL",),
                evidence_refs=evidence_refs,
                details=details,
            )

        required_actions = list((decision.evaluation_snapshot or {}).get("required_actions", []))
        if required_actions:
            details["remediation_actions"] = required_actions

        if outcome is DecisionOutcome.REQUIRES_MANUAL_REVIEW:
            return CategoryResult(
                category=self.category,
                passed=False,
                message=f"Compliance decision requires manual review: {decision.reason}",
                reason_codes=("COMPLIANCE_REVIEW_REQUIRED",),
                evidence_refs=evidence_refs,
                details=details,
                severity=Severity.HIGH,
                requires_review=True,
            )
        return CategoryResult(
            category=self.category,
            passed=False,
            message=f"Compliance decision rejected: {decision.reason}",
            reason_codes=("COMPLIANCE_DECISION_REJECTED",),
            evidence_refs=evidence_refs,
            details=details,
            severity=Severity.CRITICAL,
        )
