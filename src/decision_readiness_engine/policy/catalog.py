"""Rule catalog: immutable, versioned snapshots of onboarding policy rules.

A CatalogSnapshot is loaded from YAML configuration and never changes after
construction. The RuleCatalog holds every published snapshot keyed by
version plus a pointer to the active one. Publishing a version that already
exists is rejected, so a rule is never patched in place: a change ships as
a new snapshot under a new version.

Readers take a reference to the active snapshot once per request; publish
and activate swap references, so request-time lookups need no locking.
"""

import hashlib
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from pathlib import Path
from types import MappingProxyType
from typing import Any

import yaml

from decision_readiness_engine.core.types import EvidenceVerificationStatus, OnboardingStep, Severity
from decision_readiness_engine.errors import NotFoundError, UnknownStepError, ValidationError
from decision_readiness_engine.observability import get_logger
from decision_readiness_engine.policy.matching import DEFAULT_ACCEPTED_STATUSES, MatchMode

logger = get_logger(__name__)


class CatalogConfigError(ValueError):
    """Raised when a catalog file is malformed."""


@dataclass(frozen=True)
class PolicyRule:
    """A single published policy rule.

    Attributes:
        rule_id: Unique, stable rule identifier.
        name: Human-readable rule name.
        step: Onboarding step the rule applies to.
        category: Rule grouping (e.g., KYC, AML).
        description: What the rule requires.
        severity: Severity of a failure.
        is_mandatory: Whether failing the rule blocks approval.
        required_evidence_types: Evidence types the rule looks for.
        match_mode: Whether all or any of the required types must be satisfied.
        accepted_statuses: Verification statuses that satisfy a required type.
        allow_conditional: Whether a mandatory failure yields conditional approval.
        pass_message: Message when the rule passes.
        fail_message: Message when the rule fails.
        remediation_actions: Ordered actions that resolve a failure.
        estimated_remediation_hours: Expected effort to resolve a failure.
        regulatory_frameworks: Frameworks the rule derives from.
        is_active: Inactive rules are skipped.
        effective_from: First day the rule applies, inclusive.
        effective_to: Last day the rule applies, inclusive.
    """

    rule_id: str
    name: str
    step: OnboardingStep
    category: str
    description: str
    severity: Severity
    is_mandatory: bool
    required_evidence_types: tuple[str, ...]
    pass_message: str
    fail_message: str
    remediation_actions: tuple[str, ...] = ()
    estimated_remediation_hours: int | None = None
    match_mode: MatchMode = MatchMode.ALL
    accepted_statuses: frozenset[EvidenceVerificationStatus] = DEFAULT_ACCEPTED_STATUSES
    allow_conditional: bool = False
    regulatory_frameworks: tuple[str, ...] = ()
    is_active: bool = True
    effective_from: date | None = None
    effective_to: date | None = None

    def applies_at(self, at: datetime) -> bool:
        """Return whether the rule is active and effective at an instant."""
        if not self.is_active:
            return False
        day = at.astimezone(UTC).date()
        if self.effective_from is not None and day < self.effective_from:
            return False
        if self.effective_to is not None and day > self.effective_to:
            return False
        return True


@dataclass(frozen=True)
class StepDefaults:
    """Default decision lifetimes for a step."""

    expiration_days: int
    review_interval_days: int


@dataclass(frozen=True)
class CatalogSnapshot:
    """Immutable catalog version.

    Attributes:
        version: Policy version string recorded on every decision.
        description: Human-readable description of this version.
        rules: All rules, in configuration order.
        defaults: Catalog-wide decision lifetime defaults.
        step_defaults: Per-step overrides of the defaults.
        content_hash: SHA-256 of the canonical snapshot content.
    """

    version: str
    description: str
    rules: tuple[PolicyRule, ...]
    defaults: StepDefaults
    step_defaults: Mapping[OnboardingStep, StepDefaults] = field(
        default_factory=lambda: MappingProxyType({})
    )
    content_hash: str = ""

    def rules_for_step(self, step: OnboardingStep, at: datetime | None = None) -> tuple[PolicyRule, ...]:
        """Return the rules applicable to a step.

        Args:
            step: The onboarding step.
            at: Instant used for effective-date filtering. Defaults to now.

        Returns:
            Applicable rules in configuration order.

        Raises:
            UnknownStepError: If no active rule exists for the step.
        """
        moment = at or datetime.now(UTC)
        rules = tuple(rule for rule in self.rules if rule.step == step and rule.applies_at(moment))
        if not rules:
            raise UnknownStepError(str(step))
        return rules

    def defaults_for(self, step: OnboardingStep) -> StepDefaults:
        return self.step_defaults.get(step, self.defaults)

    def get_rule(self, rule_id: str) -> PolicyRule:
        """Return a rule by ID.

        Raises:
            NotFoundError: If the rule is not in this snapshot.
        """
        for rule in self.rules:
            if rule.rule_id == rule_id:
                return rule
        raise NotFoundError(resource="PolicyRule", resource_id=rule_id)

    @property
    def steps(self) -> frozenset[OnboardingStep]:
        return frozenset(rule.step for rule in self.rules)


class RuleCatalog:
    """Registry of published catalog snapshots with one active version.

    Args:
        initial: Optional snapshot published and activated at construction.
    """

    def __init__(self, initial: CatalogSnapshot | None = None) -> None:
        self._snapshots: Mapping[str, CatalogSnapshot] = MappingProxyType({})
        self._active_version: str | None = None
        if initial is not None:
            self.publish(initial, activate=True)

    @property
    def active(self) -> CatalogSnapshot:
        """The snapshot used for new evaluations.

        Raises:
            RuntimeError: If nothing has been published yet.
        """
        if self._active_version is None:
            raise RuntimeError("Rule catalog is empty. Publish a snapshot before evaluating.")
        return self._snapshots[self._active_version]

    @property
    def versions(self) -> list[str]:
        return list(self._snapshots)

    def get(self, version: str) -> CatalogSnapshot:
        """Return a published snapshot by version.

        Raises:
            NotFoundError: If the version was never published.
        """
        snapshot = self._snapshots.get(version)
        if snapshot is None:
            raise NotFoundError(resource="CatalogVersion", resource_id=version)
        return snapshot

    def publish(self, snapshot: CatalogSnapshot, activate: bool = True) -> CatalogSnapshot:
        """Publish a new catalog version.

        Args:
            snapshot: The snapshot to publish.
            activate: Make it the active version immediately.

        Returns:
            The published snapshot.

        Raises:
            ValidationError: If the version was already published.
        """
        if snapshot.version in self._snapshots:
            raise ValidationError(
                f"Catalog version '{snapshot.version}' is already published; publish a new version instead",
                field="version",
            )
        self._snapshots = MappingProxyType({**self._snapshots, snapshot.version: snapshot})
        logger.info(
            "Rule catalog version published",
            version=snapshot.version,
            rule_count=len(snapshot.rules),
            content_hash=snapshot.content_hash,
        )
        if activate:
            self.activate(snapshot.version)
        return snapshot

    def activate(self, version: str) -> None:
        """Switch the active version to an already published one."""
        self.get(version)
        self._active_version = version
        logger.info("Rule catalog version activated", version=version)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def _compute_hash(raw: dict[str, Any]) -> str:
    canonical = json.dumps(raw, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _parse_defaults(raw: Mapping[str, Any], fallback: StepDefaults | None = None) -> StepDefaults:
    expiration = raw.get("expiration_days", fallback.expiration_days if fallback else None)
    review = raw.get("review_interval_days", fallback.review_interval_days if fallback else None)
    if expiration is None or review is None:
        raise CatalogConfigError("defaults must define expiration_days and review_interval_days")
    if int(expiration) < 1 or int(review) < 1:
        raise CatalogConfigError("expiration_days and review_interval_days must be positive")
    return StepDefaults(expiration_days=int(expiration), review_interval_days=int(review))


def _parse_date(value: Any) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def _parse_rule(raw: Mapping[str, Any]) -> PolicyRule:
    try:
        rule_id = str(raw["rule_id"])
        required = tuple(str(item).upper() for item in raw["required_evidence_types"])
        accepted = raw.get("accepted_statuses")
        hours = raw.get("estimated_remediation_hours")
        return PolicyRule(
            rule_id=rule_id,
            name=str(raw["name"]),
            step=OnboardingStep(raw["step"]),
            category=str(raw.get("category", "GENERAL")),
            description=str(raw.get("description", "")),
            severity=Severity(raw.get("severity", Severity.HIGH)),
            is_mandatory=bool(raw.get("mandatory", True)),
            required_evidence_types=required,
            pass_message=str(raw["pass_message"]),
            fail_message=str(raw["fail_message"]),
            remediation_actions=tuple(str(action) for action in raw.get("remediation_actions", [])),
            estimated_remediation_hours=int(hours) if hours is not None else None,
            match_mode=MatchMode(raw.get("match", MatchMode.ALL)),
            accepted_statuses=(
                frozenset(EvidenceVerificationStatus(status) for status in accepted)
                if accepted
                else DEFAULT_ACCEPTED_STATUSES
            ),
            allow_conditional=bool(raw.get("allow_conditional", False)),
            regulatory_frameworks=tuple(str(item) for item in raw.get("regulatory_frameworks", [])),
            is_active=bool(raw.get("is_active", True)),
            effective_from=_parse_date(raw.get("effective_from")),
            effective_to=_parse_date(raw.get("effective_to")),
        )
    except KeyError as exc:
        raise CatalogConfigError(f"Rule {raw.get('rule_id', '?')} is missing field {exc.args[0]}") from exc
    except ValueError as exc:
        raise CatalogConfigError(f"Rule {raw.get('rule_id', '?')} is invalid: {exc}") from exc


def parse_snapshot(raw: Mapping[str, Any]) -> CatalogSnapshot:
    """Build a CatalogSnapshot from parsed configuration.

    Args:
        raw: Mapping with version, defaults, optional steps overrides and rules.

    Returns:
        The immutable snapshot.

    Raises:
        CatalogConfigError: If the configuration is malformed or rule IDs repeat.
    """
    if not raw.get("version"):
        raise CatalogConfigError("Catalog configuration must define a version")

    defaults = _parse_defaults(raw.get("defaults") or {})
    step_defaults: dict[OnboardingStep, StepDefaults] = {}
    for step_name, overrides in (raw.get("steps") or {}).items():
        try:
            step = OnboardingStep(step_name)
        except ValueError as exc:
            raise CatalogConfigError(f"Unknown step in catalog defaults: {step_name}") from exc
        step_defaults[step] = _parse_defaults(overrides or {}, fallback=defaults)

    rules = tuple(_parse_rule(item) for item in raw.get("rules") or [])
    seen: set[str] = set()
    for rule in rules:
        if rule.rule_id in seen:
            raise CatalogConfigError(f"Duplicate rule_id in catalog: {rule.rule_id}")
        seen.add(rule.rule_id)

    return CatalogSnapshot(
        version=str(raw["version"]),
        description=str(raw.get("description", "")),
        rules=rules,
        defaults=defaults,
        step_defaults=MappingProxyType(step_defaults),
        content_hash=_compute_hash(dict(raw)),
    )


def load_snapshot(path: Path) -> CatalogSnapshot:
    """Load a catalog snapshot from a YAML file.

    Args:
        path: YAML file path.

    Returns:
        The parsed snapshot.

    Raises:
        CatalogConfigError: If the file does not hold a mapping or is malformed.
    """
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise CatalogConfigError(f"Catalog file {path} does not contain a mapping")
    snapshot = parse_snapshot(raw)
    logger.info(
        "Rule catalog snapshot loaded",
        path=str(path),
        version=snapshot.version,
        rule_count=len(snapshot.rules),
    )
    return snapshot
