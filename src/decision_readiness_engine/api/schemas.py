"""Pydantic request and response schemas for the decision readiness API.

All API inputs and outputs use Pydantic models. Response models read ORM
rows directly (from_attributes) so routes stay thin.

Resources:
- ComplianceDecision — create, supersede, lookup and query
- ReadinessEvaluation — evaluate, lookup and history
- Jurisdiction — rule sets, token assignments and ad-hoc evaluation
- Policy — active rule catalog, configuration and evaluation metrics
"""

import uuid
from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from decision_readiness_engine.core.services import PolicyConfiguration
from decision_readiness_engine.core.types import EvidenceReference, OnboardingStep, ReadinessContext
from decision_readiness_engine.policy.catalog import PolicyRule, StepDefaults
from decision_readiness_engine.readiness.jurisdiction import (
    AttributeCheck,
    EvidenceCheck,
    JurisdictionEvaluation,
    JurisdictionRuleSet,
)


# ---------------------------------------------------------------------------
# ComplianceDecision schemas
# ---------------------------------------------------------------------------


class DecisionCreateRequest(BaseModel):
    """Request body for creating a decision, or superseding one."""

    organization_id: str = Field(
        description="Organization the decision applies to",
        min_length=1,
        max_length=255,
    )
    step: OnboardingStep = Field(description="Onboarding step to evaluate")
    evidence: list[EvidenceReference] = Field(
        default_factory=list,
        description="Evidence references. At most 50 items.",
    )
    onboarding_session_id: str | None = Field(
        default=None,
        max_length=255,
        description="Optional onboarding session identifier",
    )
    expiration_days: int | None = Field(
        default=None,
        ge=1,
        description="Decision lifetime in days. Defaults to the step's catalog default.",
    )
    requires_review: bool = Field(default=False, description="Schedule periodic review of this decision")
    review_interval_days: int | None = Field(
        default=None,
        ge=1,
        description="Review interval in days. Defaults to the step's catalog default.",
    )
    correlation_id: str | None = Field(default=None, max_length=255, description="Caller correlation ID")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Free-form metadata stored with the decision")


class DecisionResponse(BaseModel):
    """Response schema for a compliance decision."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: uuid.UUID = Field(description="Decision UUID")
    organization_id: str = Field(description="Organization the decision applies to")
    onboarding_session_id: str | None = Field(description="Onboarding session identifier")
    step: str = Field(description="Onboarding step evaluated")
    outcome: str = Field(description="approved | rejected | requires_manual_review | conditional_approval")
    policy_rule_ids: list[str] = Field(description="Rule IDs evaluated")
    decision_maker: str = Field(description="Actor that recorded the decision")
    decision_timestamp: datetime = Field(description="When the decision was made (UTC)")
    evidence_references: list[dict[str, Any]] = Field(description="Evidence snapshot as submitted")
    reason: str = Field(description="Human-readable reason for the outcome")
    policy_version: str = Field(description="Rule catalog version applied")
    expires_at: datetime | None = Field(description="Decision is inactive from this instant on")
    requires_review: bool = Field(description="Whether periodic review is scheduled")
    review_interval_days: int | None = Field(description="Review interval in days")
    next_review_at: datetime | None = Field(description="Next scheduled review (UTC)")
    is_superseded: bool = Field(description="Whether a newer decision replaced this one")
    previous_decision_id: uuid.UUID | None = Field(description="Decision this one replaced")
    superseded_by_decision_id: uuid.UUID | None = Field(description="Decision that replaced this one")
    superseded_at: datetime | None = Field(description="When this decision was superseded")
    correlation_id: str | None = Field(description="Caller correlation ID")
    evaluation_snapshot: dict[str, Any] = Field(description="Rule-by-rule results and required actions")
    metadata: dict[str, Any] = Field(
        validation_alias="decision_metadata",
        description="Free-form caller metadata",
    )


class DecisionCreateResponse(BaseModel):
    """Response for create and supersede calls."""

    decision: DecisionResponse = Field(description="The resulting decision")
    created: bool = Field(description="False when an identical request inside the window was replayed")


class DecisionSummaryResponse(BaseModel):
    total: int = Field(description="Decisions matching the filters")
    outcome_counts: dict[str, int] = Field(description="Count per outcome")
    average_decision_time_hours: float | None = Field(description="Mean gap between consecutive decisions")
    top_rejection_reasons: list[str] = Field(description="Most frequent rejection reasons")


class DecisionQueryResponse(BaseModel):
    """Paginated decision query response."""

    decisions: list[DecisionResponse] = Field(description="Decisions on this page, newest first")
    total_count: int = Field(description="Decisions matching the filters")
    page: int = Field(description="1-based page number")
    page_size: int = Field(description="Page size applied")
    summary: DecisionSummaryResponse = Field(description="Aggregates over the full filtered set")


class DecisionListResponse(BaseModel):
    decisions: list[DecisionResponse] = Field(description="Matching decisions")
    count: int = Field(description="Number of decisions returned")


# ---------------------------------------------------------------------------
# ReadinessEvaluation schemas
# ---------------------------------------------------------------------------


class ReadinessEvaluateRequest(BaseModel):
    """Request body for a readiness evaluation of the caller's own identity."""

    token_type: str = Field(description="Token standard being launched", min_length=1, max_length=50)
    network: str = Field(description="Target network", min_length=1, max_length=100)
    context: ReadinessContext = Field(
        default_factory=ReadinessContext,
        description="Organization, token, evidence and profile attributes for the checks",
    )
    correlation_id: str | None = Field(default=None, max_length=255, description="Caller correlation ID")


class ReadinessEvaluationResponse(BaseModel):
    """Stored readiness evaluation."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID = Field(description="Evaluation UUID")
    user_id: str = Field(description="Caller the evaluation was made for")
    organization_id: str = Field(description="Organization whose decision backed the compliance category")
    token_type: str = Field(description="Token standard")
    network: str = Field(description="Target network")
    status: str = Field(description="ready | blocked | warning | needs_review")
    can_proceed: bool = Field(description="Whether token launch may proceed")
    summary: str = Field(description="Human-readable summary")
    category_results: dict[str, Any] = Field(description="Result per category")
    remediation_tasks: list[dict[str, Any]] = Field(description="Ordered remediation tasks")
    policy_version: str = Field(description="Readiness policy version applied")
    evaluated_at: datetime = Field(description="Evaluation timestamp (UTC)")
    evaluation_time_ms: float = Field(description="Wall time spent evaluating")
    is_degraded: bool = Field(description="Whether any upstream failed or timed out")
    degraded_sources: list[str] = Field(description="Categories whose upstream failed or timed out")
    correlation_id: str | None = Field(description="Caller correlation ID")
    data_hash: str = Field(description="SHA-256 over the canonical evaluation content")


class ReadinessHistoryResponse(BaseModel):
    evaluations: list[ReadinessEvaluationResponse] = Field(description="Evaluations, newest first")
    count: int = Field(description="Number of evaluations returned")


# ---------------------------------------------------------------------------
# Jurisdiction schemas
# ---------------------------------------------------------------------------


class JurisdictionRequirementResponse(BaseModel):
    code: str = Field(description="Requirement code")
    category: str = Field(description="Requirement category")
    description: str = Field(description="What the requirement demands")
    is_mandatory: bool = Field(description="Whether the requirement counts toward compliance")
    severity: str = Field(description="Failure severity")
    regulatory_reference: str = Field(description="Regulatory citation")
    remediation_guidance: str = Field(description="How to resolve a failure")
    check_kind: str = Field(description="evidence | attribute | manual")


class JurisdictionRuleSetResponse(BaseModel):
    """A jurisdiction rule set and its requirements."""

    code: str = Field(description="Jurisdiction code")
    name: str = Field(description="Jurisdiction name")
    regulatory_framework: str = Field(description="Regulatory framework")
    priority: int = Field(description="Listing priority, highest first")
    is_active: bool = Field(description="Inactive rule sets are treated as missing")
    version: str = Field(description="Rule set version")
    requirements: list[JurisdictionRequirementResponse] = Field(description="Requirements in order")

    @classmethod
    def from_rule_set(cls, rule_set: JurisdictionRuleSet) -> "JurisdictionRuleSetResponse":
        return cls(
            code=rule_set.code,
            name=rule_set.name,
            regulatory_framework=rule_set.regulatory_framework,
            priority=rule_set.priority,
            is_active=rule_set.is_active,
            version=rule_set.version,
            requirements=[
                JurisdictionRequirementResponse(
                    code=requirement.code,
                    category=requirement.category,
                    description=requirement.description,
                    is_mandatory=requirement.is_mandatory,
                    severity=requirement.severity.value,
                    regulatory_reference=requirement.regulatory_reference,
                    remediation_guidance=requirement.remediation_guidance,
                    check_kind=(
                        "evidence"
                        if isinstance(requirement.check, EvidenceCheck)
                        else "attribute"
                        if isinstance(requirement.check, AttributeCheck)
                        else "manual"
                    ),
                )
                for requirement in rule_set.requirements
            ],
        )


class JurisdictionAssignRequest(BaseModel):
    """Request body for assigning a jurisdiction to a token."""

    token_id: str = Field(description="Token identifier", min_length=1, max_length=255)
    network: str = Field(description="Network", min_length=1, max_length=100)
    jurisdiction_code: str = Field(description="Jurisdiction code with a rule set", min_length=1, max_length=20)
    is_primary: bool = Field(default=False, description="Make this the token's primary jurisdiction")
    notes: str | None = Field(default=None, description="Optional notes")


class JurisdictionAssignmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID = Field(description="Assignment UUID")
    token_id: str = Field(description="Token identifier")
    network: str = Field(description="Network")
    jurisdiction_code: str = Field(description="Jurisdiction code")
    is_primary: bool = Field(description="Whether this is the primary jurisdiction")
    assigned_by: str = Field(description="Actor that made the assignment")
    assigned_at: datetime = Field(description="Assignment timestamp (UTC)")
    notes: str | None = Field(description="Notes")


class JurisdictionEvaluationResponse(BaseModel):
    """Jurisdiction compliance of a token."""

    status: str = Field(description="compliant | partially_compliant | non_compliant | unknown")
    jurisdictions: list[str] = Field(description="Jurisdictions evaluated")
    rationale: list[str] = Field(description="Why the status was reached")
    requirements: list[dict[str, Any]] = Field(description="Per-requirement results")

    @classmethod
    def from_evaluation(cls, evaluation: JurisdictionEvaluation) -> "JurisdictionEvaluationResponse":
        return cls(
            status=evaluation.status.value,
            jurisdictions=list(evaluation.jurisdictions),
            rationale=list(evaluation.rationale),
            requirements=[result.to_dict() for result in evaluation.results],
        )


class JurisdictionEvaluateRequest(BaseModel):
    """Request body for evaluating a token's jurisdictions without a full readiness check."""

    token_id: str = Field(description="Token identifier", min_length=1, max_length=255)
    network: str = Field(description="Network", min_length=1, max_length=100)
    context: ReadinessContext | None = Field(
        default=None,
        description="Evidence and profile attributes. token_id is taken from the request.",
    )


# ---------------------------------------------------------------------------
# Policy catalog schemas
# ---------------------------------------------------------------------------


class PolicyRuleResponse(BaseModel):
    """A policy rule of the active catalog."""

    rule_id: str = Field(description="Stable rule identifier")
    name: str = Field(description="Rule name")
    step: str = Field(description="Onboarding step the rule applies to")
    category: str = Field(description="Rule grouping, e.g. KYC or AML")
    description: str = Field(description="What the rule requires")
    severity: str = Field(description="Failure severity")
    is_mandatory: bool = Field(description="Whether failing the rule blocks approval")
    required_evidence_types: list[str] = Field(description="Evidence types the rule looks for")
    match_mode: str = Field(description="all | any of the required types")
    accepted_statuses: list[str] = Field(description="Verification statuses that satisfy a required type")
    allow_conditional: bool = Field(description="Whether a failure yields conditional approval")
    remediation_actions: list[str] = Field(description="Actions that resolve a failure")
    estimated_remediation_hours: int | None = Field(description="Expected effort to resolve a failure")
    regulatory_frameworks: list[str] = Field(description="Frameworks the rule derives from")
    is_active: bool = Field(description="Inactive rules are skipped")
    effective_from: date | None = Field(description="First day the rule applies")
    effective_to: date | None = Field(description="Last day the rule applies")

    @classmethod
    def from_rule(cls, rule: PolicyRule) -> "PolicyRuleResponse":
        return cls(
            rule_id=rule.rule_id,
            name=rule.name,
            step=rule.step.value,
            category=rule.category,
            description=rule.description,
            severity=rule.severity.value,
            is_mandatory=rule.is_mandatory,
            required_evidence_types=list(rule.required_evidence_types),
            match_mode=rule.match_mode.value,
            accepted_statuses=sorted(status.value for status in rule.accepted_statuses),
            allow_conditional=rule.allow_conditional,
            remediation_actions=list(rule.remediation_actions),
            estimated_remediation_hours=rule.estimated_remediation_hours,
            regulatory_frameworks=list(rule.regulatory_frameworks),
            is_active=rule.is_active,
            effective_from=rule.effective_from,
            effective_to=rule.effective_to,
        )


class StepDefaultsResponse(BaseModel):
    expiration_days: int = Field(description="Decision lifetime in days")
    review_interval_days: int = Field(description="Review interval in days")


class PolicyConfigurationResponse(BaseModel):
    """The active rule catalog with its defaults."""

    version: str = Field(description="Active catalog version")
    description: str = Field(description="Catalog description")
    content_hash: str = Field(description="SHA-256 of the active catalog content")
    published_versions: list[str] = Field(description="Every published catalog version")
    defaults: StepDefaultsResponse = Field(description="Catalog-wide decision lifetimes")
    step_defaults: dict[str, StepDefaultsResponse] = Field(description="Effective lifetimes per step")
    rules_by_step: dict[str, list[PolicyRuleResponse]] = Field(description="Rules per step, in order")

    @classmethod
    def from_configuration(cls, configuration: PolicyConfiguration) -> "PolicyConfigurationResponse":
        def _defaults(defaults: StepDefaults) -> StepDefaultsResponse:
            return StepDefaultsResponse(
                expiration_days=defaults.expiration_days,
                review_interval_days=defaults.review_interval_days,
            )

        return cls(
            version=configuration.version,
            description=configuration.description,
            content_hash=configuration.content_hash,
            published_versions=configuration.published_versions,
            defaults=_defaults(configuration.defaults),
            step_defaults={step.value: _defaults(defaults) for step, defaults in configuration.step_defaults.items()},
            rules_by_step={
                step.value: [PolicyRuleResponse.from_rule(rule) for rule in rules]
                for step, rules in configuration.rules_by_step.items()
            },
        )


class PolicyMetricsResponse(BaseModel):
    """Policy evaluation counters since the process started."""

    total_evaluations: int = Field(description="Evaluations performed")
    approved: int = Field(description="Approved outcomes")
    rejected: int = Field(description="Rejected outcomes")
    conditional_approval: int = Field(description="Conditionally approved outcomes")
    requires_manual_review: int = Field(description="Outcomes requiring manual review")
    average_evaluation_ms: float = Field(description="Mean evaluation time in milliseconds")
    rule_failure_counts: dict[str, int] = Field(description="Failures per rule ID")
