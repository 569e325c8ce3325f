"""Domain value objects shared across the engine.

Enumerations for onboarding steps, outcomes, severities and readiness
categories, plus the typed evidence and readiness context objects that are
validated once at ingress and passed downstream unchanged.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class OnboardingStep(StrEnum):
    """Controlled lifecycle step that selects the applicable policy rules."""

    ORGANIZATION_IDENTITY_VERIFICATION = "organization_identity_verification"
    BUSINESS_REGISTRATION_VERIFICATION = "business_registration_verification"
    BENEFICIAL_OWNERSHIP_VERIFICATION = "beneficial_ownership_verification"
    KYC_KYB_VERIFICATION = "kyc_kyb_verification"
    AML_SCREENING = "aml_screening"
    JURISDICTIONAL_COMPLIANCE = "jurisdictional_compliance"
    TOKEN_ISSUANCE_AUTHORIZATION = "token_issuance_authorization"
    WALLET_CUSTODY_VERIFICATION = "wallet_custody_verification"
    TERMS_ACCEPTANCE = "terms_acceptance"
    FINAL_APPROVAL = "final_approval"


class DecisionOutcome(StrEnum):
    APPROVED = "approved"
    REJECTED = "rejected"
    REQUIRES_MANUAL_REVIEW = "requires_manual_review"
    CONDITIONAL_APPROVAL = "conditional_approval"


class EvidenceVerificationStatus(StrEnum):
    SUBMITTED = "submitted"
    IN_REVIEW = "in_review"
    VERIFIED = "verified"
    REJECTED = "rejected"
    EXPIRED = "expired"


# Statuses that mean verification has not concluded yet
PENDING_VERIFICATION_STATUSES = frozenset(
    {EvidenceVerificationStatus.SUBMITTED, EvidenceVerificationStatus.IN_REVIEW}
)


class Severity(StrEnum):
    """Severity shared by policy rules and remediation tasks."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"

    @property
    def rank(self) -> int:
        """Numeric rank where a larger value is more severe."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.INFO: 0,
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class CheckStatus(StrEnum):
    """Per-rule and per-requirement check vocabulary."""

    PASS = "pass"
    FAIL = "fail"
    PARTIAL = "partial"
    NOT_APPLICABLE = "not_applicable"


class ReadinessCategory(StrEnum):
    """Independent dimension of token launch readiness.

    Declaration order is the final, deterministic tie-break when ordering
    remediation tasks.
    """

    ENTITLEMENT = "entitlement"
    ACCOUNT_STATE = "account_state"
    COMPLIANCE_DECISION = "compliance_decision"
    KYC_AML = "kyc_aml"
    JURISDICTION = "jurisdiction"
    WHITELIST = "whitelist"
    INTEGRATION = "integration"


class ReadinessStatus(StrEnum):
    READY = "ready"
    BLOCKED = "blocked"
    WARNING = "warning"
    NEEDS_REVIEW = "needs_review"


class JurisdictionComplianceStatus(StrEnum):
    COMPLIANT = "compliant"
    PARTIALLY_COMPLIANT = "partially_compliant"
    NON_COMPLIANT = "non_compliant"
    UNKNOWN = "unknown"


class EvidenceReference(BaseModel):
    """Reference to a verification artifact supplied as evidence.

    Evidence types are normalized to upper case so that rule matching is
    case-insensitive. Unknown types are accepted and kept for the audit
    snapshot; they simply match no rule.

    Attributes:
        evidence_type: Artifact type (e.g., KYC_REPORT).
        reference_id: Identifier of the artifact in its source system.
        verification_status: Verification state reported by the source.
        data_hash: Integrity digest of the underlying artifact.
        collected_at: When the artifact was collected, if known.
    """

    model_config = ConfigDict(frozen=True)

    evidence_type: str = Field(min_length=1, max_length=100)
    reference_id: str = Field(min_length=1, max_length=255)
    verification_status: EvidenceVerificationStatus
    data_hash: str | None = Field(default=None, max_length=256)
    collected_at: datetime | None = None

    @field_validator("evidence_type")
    @classmethod
    def _normalize_type(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("data_hash")
    @classmethod
    def _blank_hash_is_missing(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()

    def canonical(self) -> tuple[str, str, str, str]:
        """Return the identity tuple used for dedup keys and sorting."""
        return (
            self.evidence_type,
            self.reference_id,
            self.verification_status.value,
            self.data_hash or "",
        )


class ReadinessContext(BaseModel):
    """Typed context for a readiness request.

    Attributes:
        organization_id: Organization whose compliance decision backs the
            compliance category. Defaults to the user id when omitted.
        token_id: Token (asset) identifier used to resolve jurisdictions.
        operation: Entitled operation being requested.
        evidence: Evidence the caller holds for jurisdiction checks.
        aml_provider: Configured AML screening provider, if any.
        issuer_profile_complete: Whether the issuer profile is complete.
            None means the profile has not been assessed yet.
    """

    model_config = ConfigDict(frozen=True)

    organization_id: str | None = Field(default=None, max_length=255)
    token_id: str | None = Field(default=None, max_length=255)
    operation: str = Field(default="token_launch", min_length=1, max_length=100)
    evidence: tuple[EvidenceReference, ...] = ()
    aml_provider: str | None = Field(default=None, max_length=100)
    issuer_profile_complete: bool | None = None


@dataclass(frozen=True)
class CategoryResult:
    """Outcome of one readiness category.

    Attributes:
        category: The category evaluated.
        passed: Whether the category is satisfied.
        message: Human-readable explanation.
        reason_codes: Machine-readable codes explaining a failure.
        evidence_refs: References to supporting evidence.
        details: Extra structured detail from the evaluator.
        severity: Failure severity chosen by the evaluator. None means the
            category's configured failure severity applies.
        requires_review: Whether a human must review before proceeding.
        is_degraded: Whether the upstream failed or timed out.
    """

    category: ReadinessCategory
    passed: bool
    message: str
    reason_codes: tuple[str, ...] = ()
    evidence_refs: tuple[str, ...] = ()
    details: dict[str, Any] = field(default_factory=dict)
    severity: Severity | None = None
    requires_review: bool = False
    is_degraded: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the evaluation snapshot and API responses."""
        return {
            "category": self.category.value,
            "passed": self.passed,
            "message": self.message,
            "reason_codes": list(self.reason_codes),
            "evidence_refs": list(self.evidence_refs),
            "details": dict(self.details),
            "severity": self.severity.value if self.severity else None,
            "requires_review": self.requires_review,
            "is_degraded": self.is_degraded,
        }


@dataclass(frozen=True)
class RemediationTask:
    """A single ordered remediation step for a failing category.

    Attributes:
        key: Stable task key, referenced by other tasks' depends_on.
        category: Category the task resolves.
        error_code: Primary reason code of the failure.
        description: What is wrong.
        severity: Task severity.
        owner_hint: Who is expected to act.
        actions: Ordered action steps.
        estimated_resolution_hours: Expected effort in hours.
        depends_on: Keys of tasks that must be resolved first.
    """

    key: str
    category: ReadinessCategory
    error_code: str
    description: str
    severity: Severity
    owner_hint: str
    actions: tuple[str, ...]
    estimated_resolution_hours: int
    depends_on: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "category": self.category.value,
            "error_code": self.error_code,
            "description": self.description,
            "severity": self.severity.value,
            "owner_hint": self.owner_hint,
            "actions": list(self.actions),
            "estimated_resolution_hours": self.estimated_resolution_hours,
            "depends_on": list(self.depends_on),
        }


@dataclass(frozen=True)
class ReadinessRequest:
    """A readiness evaluation request for the caller's own identity."""

    user_id: str
    token_type: str
    network: str
    context: ReadinessContext = field(default_factory=ReadinessContext)
    correlation_id: str | None = None

    @property
    def organization_id(self) -> str:
        return self.context.organization_id or self.user_id


@dataclass
class ReadinessVerdict:
    """Merged readiness result before it is persisted.

    Attributes:
        status: Overall readiness status.
        can_proceed: Whether token launch may proceed.
        summary: Human-readable summary.
        category_results: Result per category, in category declaration order.
        remediation_tasks: Ordered remediation tasks.
        policy_version: Readiness policy version applied.
        evaluated_at: When the evaluation started.
        evaluation_time_ms: Wall time spent evaluating.
        degraded_sources: Categories whose upstream failed or timed out.
    """

    status: ReadinessStatus
    can_proceed: bool
    summary: str
    category_results: dict[ReadinessCategory, CategoryResult]
    remediation_tasks: list[RemediationTask]
    policy_version: str
    evaluated_at: datetime
    evaluation_time_ms: float
    degraded_sources: list[str] = field(default_factory=list)

    @property
    def is_degraded(self) -> bool:
        return bool(self.degraded_sources)


@dataclass(frozen=True)
class TokenContext:
    """Token being launched, as seen by transfer eligibility checks."""

    token_type: str
    network: str
    token_id: str | None = None


@dataclass(frozen=True)
class DecisionQueryFilters:
    """AND-combined filters for decision queries.

    Superseded and expired decisions are excluded unless explicitly included.
    """

    organization_id: str | None = None
    onboarding_session_id: str | None = None
    step: OnboardingStep | None = None
    outcome: DecisionOutcome | None = None
    decision_maker: str | None = None
    from_date: datetime | None = None
    to_date: datetime | None = None
    include_superseded: bool = False
    include_expired: bool = False


@dataclass(frozen=True)
class DecisionQuerySummary:
    """Aggregates over the full filtered set of a decision query.

    Attributes:
        total: Number of decisions matching the filters.
        outcome_counts: Count per outcome value, every outcome present.
        average_decision_time_hours: Mean gap between consecutive decisions,
            None with fewer than two decisions.
        top_rejection_reasons: Most frequent rule failure messages among
            rejected decisions, most frequent first.
    """

    total: int
    outcome_counts: dict[str, int]
    average_decision_time_hours: float | None
    top_rejection_reasons: list[str]


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current time as a UTC-aware datetime."""
    return datetime.now(UTC)
