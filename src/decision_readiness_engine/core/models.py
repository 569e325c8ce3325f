"""SQLAlchemy ORM models for the decision readiness engine.

All models use the `dre_` table prefix.

Models:
- ComplianceDecision      — Immutable decision record; only the supersession
                            fields are ever written after insert
- DecisionIdempotencyKey  — Unique claim on a dedup key, guarding create races
                            across service instances
- ReadinessEvaluation     — Immutable readiness evaluation evidence record
- JurisdictionAssignment  — Mutable mapping of a token+network to jurisdictions

Column types are portable (JSON, Uuid, TZDateTime) so the same schema runs
on PostgreSQL in production and SQLite in tests.
"""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from decision_readiness_engine.database import Base, TZDateTime

JSONType = JSON().with_variant(JSONB(), "postgresql")


class ComplianceDecision(Base):
    """Immutable compliance decision for an organization at one onboarding step.

    A decision is never mutated after creation except to flip `is_superseded`
    and set `superseded_by_decision_id` / `superseded_at` when an update
    replaces it. Expiry is computed at read time from `expires_at`; no field
    changes when a decision expires.

    Attributes:
        organization_id: Organization the decision applies to.
        onboarding_session_id: Optional onboarding session grouping decisions.
        step: Onboarding step evaluated.
        outcome: approved | rejected | requires_manual_review | conditional_approval.
        policy_rule_ids: Rule IDs evaluated for this decision.
        decision_maker: Resolved actor identity that requested the decision.
        decision_timestamp: When the decision was made.
        evidence_references: Evidence snapshot, including unmatched types.
        reason: Human-readable reason for the outcome.
        policy_version: Rule catalog version applied.
        expires_at: When the decision stops being active.
        requires_review: Whether a periodic review is scheduled.
        review_interval_days: Review interval in days, when reviews are scheduled.
        next_review_at: Next scheduled review date.
        is_superseded: Whether a newer decision replaced this one.
        previous_decision_id: Decision this one replaced.
        superseded_by_decision_id: Decision that replaced this one.
        superseded_at: When this decision was superseded.
        correlation_id: Caller-supplied correlation identifier.
        dedup_key: SHA-256 over organization, step, policy version and evidence.
        evaluation_snapshot: Rule-by-rule results and required actions.
        decision_metadata: Free-form caller metadata.
    """

    __tablename__ = "dre_decisions"
    __table_args__ = (
        Index("ix_dre_decisions_org_step", "organization_id", "step", "is_superseded"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
        comment="Organization the decision applies to",
    )
    onboarding_session_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
        comment="Optional onboarding session identifier",
    )
    step: Mapped[str] = mapped_column(String(60), nullable=False, comment="OnboardingStep value")
    outcome: Mapped[str] = mapped_column(
        String(40),
        nullable=False,
        index=True,
        comment="approved | rejected | requires_manual_review | conditional_approval",
    )
    policy_rule_ids: Mapped[list[str]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
        comment="Rule IDs evaluated for this decision",
    )
    decision_maker: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
        comment="Resolved actor identity",
    )
    decision_timestamp: Mapped[datetime] = mapped_column(
        TZDateTime,
        nullable=False,
        index=True,
        comment="When the decision was made",
    )
    evidence_references: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
        comment="Evidence snapshot as submitted, sorted canonically",
    )
    reason: Mapped[str] = mapped_column(Text, nullable=False, comment="Reason for the outcome")
    policy_version: Mapped[str] = mapped_column(String(50), nullable=False, comment="Rule catalog version")
    expires_at: Mapped[datetime | None] = mapped_column(
        TZDateTime,
        nullable=True,
        index=True,
        comment="Decision is inactive from this instant on",
    )
    requires_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    review_interval_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    next_review_at: Mapped[datetime | None] = mapped_column(
        TZDateTime,
        nullable=True,
        index=True,
        comment="decision_timestamp + review_interval_days when reviews are scheduled",
    )
    is_superseded: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Set once, together with superseded_by_decision_id",
    )
    previous_decision_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("dre_decisions.id"),
        nullable=True,
        comment="Back-reference to the decision this one replaced",
    )
    superseded_by_decision_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        nullable=True,
        comment="Forward-reference to the replacing decision",
    )
    superseded_at: Mapped[datetime | None] = mapped_column(TZDateTime, nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    dedup_key: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
        comment="SHA-256 over organization, step, policy version and canonical evidence",
    )
    evaluation_snapshot: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
        comment="Rule results, required actions and estimated resolution",
    )
    decision_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONType,
        nullable=False,
        default=dict,
    )


class DecisionIdempotencyKey(Base):
    """Claim on a dedup key.

    The primary key on `dedup_key` makes the insert the arbiter between
    concurrent identical create requests on any number of instances. A claim
    older than the idempotency window is re-pointed at a fresh decision.

    Attributes:
        dedup_key: The claimed dedup key.
        decision_id: Decision currently holding the claim.
        claimed_at: When the claim was made or last re-pointed.
    """

    __tablename__ = "dre_decision_idempotency_keys"

    dedup_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    decision_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("dre_decisions.id"),
        nullable=False,
    )
    claimed_at: Mapped[datetime] = mapped_column(TZDateTime, nullable=False)


class ReadinessEvaluation(Base):
    """Immutable readiness evaluation evidence record.

    Attributes:
        user_id: User the evaluation was requested for.
        organization_id: Organization whose decisions were consulted.
        token_type: Token standard being launched.
        network: Target network.
        status: ready | blocked | warning | needs_review.
        can_proceed: Whether token launch may proceed.
        summary: Human-readable summary.
        category_results: Result per category.
        remediation_tasks: Ordered remediation tasks.
        policy_version: Readiness policy version applied.
        evaluated_at: When the evaluation ran.
        evaluation_time_ms: Wall time spent evaluating.
        is_degraded: Whether any category upstream failed or timed out.
        degraded_sources: Degraded categories.
        request_snapshot: The request as evaluated.
        correlation_id: Caller-supplied correlation identifier.
        data_hash: SHA-256 over the canonical evaluation content.
    """

    __tablename__ = "dre_readiness_evaluations"
    __table_args__ = (Index("ix_dre_readiness_user_evaluated", "user_id", "evaluated_at"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    organization_id: Mapped[str] = mapped_column(String(255), nullable=False)
    token_type: Mapped[str] = mapped_column(String(50), nullable=False)
    network: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    can_proceed: Mapped[bool] = mapped_column(Boolean, nullable=False)
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    category_results: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    remediation_tasks: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    policy_version: Mapped[str] = mapped_column(String(50), nullable=False)
    evaluated_at: Mapped[datetime] = mapped_column(TZDateTime, nullable=False)
    evaluation_time_ms: Mapped[float] = mapped_column(Float, nullable=False)
    is_degraded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    degraded_sources: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    request_snapshot: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    correlation_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    data_hash: Mapped[str] = mapped_column(String(64), nullable=False)


class JurisdictionAssignment(Base):
    """Assignment of a jurisdiction rule set to a token on a network.

    Attributes:
        token_id: Token (asset) identifier.
        network: Network the token is deployed on.
        jurisdiction_code: Assigned jurisdiction (e.g., EU, GLOBAL).
        is_primary: Whether this is the token's primary jurisdiction.
        assigned_by: Actor that made the assignment.
        assigned_at: When the assignment was made.
        notes: Optional notes.
    """

    __tablename__ = "dre_jurisdiction_assignments"
    __table_args__ = (
        UniqueConstraint("token_id", "network", "jurisdiction_code", name="uq_dre_jurisdiction_assignment"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    token_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    network: Mapped[str] = mapped_column(String(100), nullable=False)
    jurisdiction_code: Mapped[str] = mapped_column(String(20), nullable=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    assigned_by: Mapped[str] = mapped_column(String(255), nullable=False)
    assigned_at: Mapped[datetime] = mapped_column(TZDateTime, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
