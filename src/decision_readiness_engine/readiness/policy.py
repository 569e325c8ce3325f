"""Readiness category policy table.

Everything the aggregator needs to know about a category that is policy
rather than evaluation lives here: whether the category is mandatory, how
severe a failure and a timeout are, who owns the fix, default actions and
effort, and which other categories must be fixed first.

Timeout classification: a timed-out or failed category is degraded. It
blocks launch only when its timeout severity is CRITICAL and the category is
mandatory; otherwise it downgrades the verdict to WARNING at most.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType

from decision_readiness_engine.core.types import ReadinessCategory, Severity

READINESS_POLICY_VERSION = "2026.02.16.1"

DEGRADED_OWNER_HINT = "Technical Support"
DEGRADED_ACTIONS = (
    "Retry the readiness evaluation",
    "Contact support if the upstream service remains unavailable",
)
DEGRADED_ESTIMATED_HOURS = 1


@dataclass(frozen=True)
class CategoryPolicy:
    """Policy for one readiness category.

    Attributes:
        category: The category.
        mandatory: Whether a failure can block or hold launch.
        failure_severity: Severity of a failure when the evaluator sets none.
        timeout_severity: Severity of a degraded (timed-out or failed) result.
        owner_hint: Who is expected to resolve a failure.
        default_actions: Actions used when the evaluator supplies none.
        estimated_hours: Effort used when the evaluator supplies none.
        error_code: Error code used when the evaluator supplies no reason code.
    """

    category: ReadinessCategory
    mandatory: bool
    failure_severity: Severity
    timeout_severity: Severity
    owner_hint: str
    default_actions: tuple[str, ...]
    estimated_hours: int
    error_code: str


DEFAULT_CATEGORY_POLICIES: Mapping[ReadinessCategory, CategoryPolicy] = MappingProxyType(
    {
        ReadinessCategory.ENTITLEMENT: CategoryPolicy(
            category=ReadinessCategory.ENTITLEMENT,
            mandatory=True,
            failure_severity=Severity.CRITICAL,
            timeout_severity=Severity.MEDIUM,
            owner_hint="Account Owner",
            default_actions=(
                "Upgrade to a subscription tier that includes token deployment",
                "Review current plan limits and usage",
                "Contact sales for enterprise options",
            ),
            estimated_hours=1,
            error_code="ENTITLEMENT_LIMIT_EXCEEDED",
        ),
        ReadinessCategory.ACCOUNT_STATE: CategoryPolicy(
            category=ReadinessCategory.ACCOUNT_STATE,
            mandatory=True,
            failure_severity=Severity.CRITICAL,
            timeout_severity=Severity.CRITICAL,
            owner_hint="User",
            default_actions=(
                "Complete account setup",
                "Wait for account initialization to finish",
                "Contact support if the account remains unavailable",
            ),
            estimated_hours=1,
            error_code="ACCOUNT_NOT_READY",
        ),
        ReadinessCategory.COMPLIANCE_DECISION: CategoryPolicy(
            category=ReadinessCategory.COMPLIANCE_DECISION,
            mandatory=True,
            failure_severity=Severity.CRITICAL,
            timeout_severity=Severity.CRITICAL,
            owner_hint="Compliance Team",
            default_actions=(
                "Submit evidence for the token issuance authorization step",
                "Address the outstanding compliance decision actions",
            ),
            estimated_hours=48,
            error_code="COMPLIANCE_DECISION_MISSING",
        ),
        ReadinessCategory.KYC_AML: CategoryPolicy(
            category=ReadinessCategory.KYC_AML,
            mandatory=False,
            failure_severity=Severity.MEDIUM,
            timeout_severity=Severity.LOW,
            owner_hint="Compliance Team",
            default_actions=(
                "Complete KYC verification",
                "Submit required identity documents",
                "Wait for verification approval",
            ),
            estimated_hours=24,
            error_code="KYC_REQUIRED",
        ),
        ReadinessCategory.JURISDICTION: CategoryPolicy(
            category=ReadinessCategory.JURISDICTION,
            mandatory=True,
            failure_severity=Severity.HIGH,
            timeout_severity=Severity.MEDIUM,
            owner_hint="Compliance Team",
            default_actions=(
                "Assign the token's target jurisdictions",
                "Resolve the failing jurisdiction requirements",
            ),
            estimated_hours=24,
            error_code="JURISDICTION_NON_COMPLIANT",
        ),
        ReadinessCategory.WHITELIST: CategoryPolicy(
            category=ReadinessCategory.WHITELIST,
            mandatory=False,
            failure_severity=Severity.MEDIUM,
            timeout_severity=Severity.LOW,
            owner_hint="Token Issuer",
            default_actions=(
                "Configure the token whitelist",
                "Add initial holder addresses to the whitelist",
            ),
            estimated_hours=4,
            error_code="WHITELIST_NOT_ELIGIBLE",
        ),
        ReadinessCategory.INTEGRATION: CategoryPolicy(
            category=ReadinessCategory.INTEGRATION,
            mandatory=False,
            failure_severity=Severity.LOW,
            timeout_severity=Severity.LOW,
            owner_hint="Technical Support",
            default_actions=(
                "Check the network status page",
                "Retry once the network integration is healthy",
            ),
            estimated_hours=1,
            error_code="INTEGRATION_UNHEALTHY",
        ),
    }
)

# Category -> categories whose fix is a documented prerequisite
REMEDIATION_DEPENDENCIES: Mapping[ReadinessCategory, tuple[ReadinessCategory, ...]] = MappingProxyType(
    {
        ReadinessCategory.JURISDICTION: (ReadinessCategory.ENTITLEMENT,),
        ReadinessCategory.KYC_AML: (ReadinessCategory.ACCOUNT_STATE,),
        ReadinessCategory.COMPLIANCE_DECISION: (ReadinessCategory.KYC_AML,),
        ReadinessCategory.WHITELIST: (ReadinessCategory.KYC_AML, ReadinessCategory.JURISDICTION),
    }
)

SUMMARY_READY = "All requirements met. Token launch can proceed."
SUMMARY_BLOCKED = "Token launch blocked by {count} critical issue(s). Review remediation tasks."
SUMMARY_WARNING = "Token launch can proceed with advisory warnings. Review recommendations."
SUMMARY_NEEDS_REVIEW = "Manual compliance review required before token launch."
