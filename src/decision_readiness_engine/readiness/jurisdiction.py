"""Jurisdiction rule sets and the jurisdiction readiness category.

A token's jurisdiction assignments select rule sets; each rule set's
requirements are checked against the typed readiness context using the same
evidence matching primitives and check vocabulary as the policy evaluator.
A token without assignments is evaluated against the GLOBAL baseline.

Aggregation over mandatory requirements (not-applicable checks excluded):
- UNKNOWN when nothing is evaluable
- COMPLIANT when every evaluable check passes
- NON_COMPLIANT when every evaluable check fails
- PARTIALLY_COMPLIANT otherwise
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from types import MappingProxyType
from typing import Any

import yaml

from decision_readiness_engine.core.interfaces import IJurisdictionAssignmentSource
from decision_readiness_engine.core.types import (
    CategoryResult,
    CheckStatus,
    EvidenceVerificationStatus,
    JurisdictionComplianceStatus,
    ReadinessCategory,
    ReadinessContext,
    ReadinessRequest,
    Severity,
)
from decision_readiness_engine.errors import NotFoundError
from decision_readiness_engine.observability import get_logger
from decision_readiness_engine.policy.matching import (
    DEFAULT_ACCEPTED_STATUSES,
    MatchMode,
    index_by_type,
    match_evidence,
    tally,
)

logger = get_logger(__name__)

GLOBAL_JURISDICTION = "GLOBAL"

# Failing requirement codes quoted in the rationale
_RATIONALE_CODE_LIMIT = 3


class JurisdictionConfigError(ValueError):
    """Raised when a jurisdiction rule file is malformed."""


class ProfileAttribute(StrEnum):
    """Token compliance attributes a requirement can check."""

    AML_PROVIDER_CONFIGURED = "aml_provider_configured"
    ISSUER_PROFILE_COMPLETE = "issuer_profile_complete"


@dataclass(frozen=True)
class EvidenceCheck:
    """Requirement satisfied by evidence of the given types."""

    evidence_types: tuple[str, ...]
    accepted_statuses: frozenset[EvidenceVerificationStatus] = DEFAULT_ACCEPTED_STATUSES
    mode: MatchMode = MatchMode.ALL


@dataclass(frozen=True)
class AttributeCheck:
    """Requirement satisfied by a token compliance attribute.

    True passes, False fails, None (not assessed) is partial.
    """

    attribute: ProfileAttribute


@dataclass(frozen=True)
class ManualCheck:
    """Requirement that needs human review and is never evaluated automatically."""

    note: str = "Manual review required"


RequirementCheck = EvidenceCheck | AttributeCheck | ManualCheck


@dataclass(frozen=True)
class JurisdictionRequirement:
    code: str
    category: str
    description: str
    is_mandatory: bool
    severity: Severity
    regulatory_reference: str
    remediation_guidance: str
    check: RequirementCheck


@dataclass(frozen=True)
class JurisdictionRuleSet:
    """Requirements applicable in one jurisdiction.

    Attributes:
        code: Jurisdiction code (e.g., EU, GLOBAL).
        name: Human-readable jurisdiction name.
        regulatory_framework: Framework the requirements derive from.
        priority: Higher priority rule sets are listed first.
        requirements: Requirements in configuration order.
        is_active: Inactive rule sets are treated as missing.
        version: Rule set version.
        notes: Optional notes.
    """

    code: str
    name: str
    regulatory_framework: str
    priority: int
    requirements: tuple[JurisdictionRequirement, ...]
    is_active: bool = True
    version: str = "1.0"
    notes: str = ""


@dataclass(frozen=True)
class RequirementResult:
    jurisdiction_code: str
    requirement_code: str
    status: CheckStatus
    is_mandatory: bool
    message: str
    remediation_guidance: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "jurisdiction_code": self.jurisdiction_code,
            "requirement_code": self.requirement_code,
            "status": self.status.value,
            "is_mandatory": self.is_mandatory,
            "message": self.message,
        }


@dataclass(frozen=True)
class JurisdictionEvaluation:
    """Aggregate result over a token's jurisdictions."""

    status: JurisdictionComplianceStatus
    jurisdictions: tuple[str, ...]
    results: tuple[RequirementResult, ...]
    rationale: tuple[str, ...] = field(default_factory=tuple)


class JurisdictionRuleRegistry:
    """Read-only registry of jurisdiction rule sets keyed by code."""

    def __init__(self, rule_sets: Sequence[JurisdictionRuleSet]) -> None:
        self._rule_sets: Mapping[str, JurisdictionRuleSet] = MappingProxyType(
            {rule_set.code.upper(): rule_set for rule_set in rule_sets}
        )

    def get(self, code: str) -> JurisdictionRuleSet:
        """Return a rule set by jurisdiction code.

        Raises:
            NotFoundError: If no rule set exists for the code.
        """
        rule_set = self._rule_sets.get(code.upper())
        if rule_set is None:
            raise NotFoundError(resource="JurisdictionRuleSet", resource_id=code)
        return rule_set

    def find_active(self, code: str) -> JurisdictionRuleSet | None:
        rule_set = self._rule_sets.get(code.upper())
        return rule_set if rule_set is not None and rule_set.is_active else None

    def list_rule_sets(self, active_only: bool = False) -> list[JurisdictionRuleSet]:
        """Return rule sets ordered by priority descending, then code."""
        rule_sets = [r for r in self._rule_sets.values() if r.is_active or not active_only]
        return sorted(rule_sets, key=lambda r: (-r.priority, r.code))


def _check_requirement(
    requirement: JurisdictionRequirement,
    context: ReadinessContext,
    evidence_by_type: dict[str, list[Any]],
) -> tuple[CheckStatus, str]:
    check = requirement.check
    if isinstance(check, ManualCheck):
        return CheckStatus.NOT_APPLICABLE, check.note

    if isinstance(check, EvidenceCheck):
        match = match_evidence(check.evidence_types, evidence_by_type, check.accepted_statuses, check.mode)
        if match.status is CheckStatus.PASS:
            return match.status, f"{requirement.description}: evidence verified"
        if match.status is CheckStatus.PARTIAL:
            return match.status, f"{requirement.description}: evidence pending verification"
        return match.status, f"{requirement.description}: missing evidence {', '.join(match.missing_types)}"

    value = _attribute_value(check.attribute, context)
    if value is None:
        return CheckStatus.PARTIAL, f"{requirement.description}: not yet assessed"
    if value:
        return CheckStatus.PASS, f"{requirement.description}: satisfied"
    return CheckStatus.FAIL, f"{requirement.description}: not satisfied"


def _attribute_value(attribute: ProfileAttribute, context: ReadinessContext) -> bool | None:
    if attribute is ProfileAttribute.AML_PROVIDER_CONFIGURED:
        return bool(context.aml_provider)
    return context.issuer_profile_complete


def evaluate_jurisdictions(
    registry: JurisdictionRuleRegistry,
    jurisdiction_codes: Sequence[str],
    context: ReadinessContext,
) -> JurisdictionEvaluation:
    """Evaluate a token's jurisdictions against the typed context.

    Args:
        registry: Jurisdiction rule sets.
        jurisdiction_codes: Assigned codes. Empty means the GLOBAL baseline.
        context: Typed readiness context carrying evidence and attributes.

    Returns:
        JurisdictionEvaluation with aggregate status and rationale.
    """
    codes = tuple(code.upper() for code in jurisdiction_codes) or (GLOBAL_JURISDICTION,)
    evidence_by_type = index_by_type(context.evidence)
    rationale: list[str] = []
    results: list[RequirementResult] = []

    for code in codes:
        rule_set = registry.find_active(code)
        if rule_set is None:
            rationale.append(f"No active rule set found for jurisdiction {code}")
            continue
        for requirement in rule_set.requirements:
            status, message = _check_requirement(requirement, context, evidence_by_type)
            results.append(
                RequirementResult(
                    jurisdiction_code=code,
                    requirement_code=requirement.code,
                    status=status,
                    is_mandatory=requirement.is_mandatory,
                    message=message,
                    remediation_guidance=requirement.remediation_guidance,
                )
            )

    mandatory = [result for result in results if result.is_mandatory]
    counts = tally(result.status for result in mandatory)
    if counts.evaluable == 0:
        status = JurisdictionComplianceStatus.UNKNOWN
        rationale.append("No evaluable mandatory requirements found")
    elif counts.passed == counts.evaluable:
        status = JurisdictionComplianceStatus.COMPLIANT
        rationale.append(f"All {counts.evaluable} evaluable mandatory requirements passed")
    elif counts.failed == counts.evaluable:
        status = JurisdictionComplianceStatus.NON_COMPLIANT
        rationale.append(f"Failed all {counts.evaluable} evaluable mandatory requirements")
    else:
        status = JurisdictionComplianceStatus.PARTIALLY_COMPLIANT
        rationale.append(f"Passed {counts.passed} of {counts.evaluable} evaluable mandatory requirements")

    failing = [r.requirement_code for r in mandatory if r.status in (CheckStatus.FAIL, CheckStatus.PARTIAL)]
    if failing:
        quoted = ", ".join(failing[:_RATIONALE_CODE_LIMIT])
        more = len(failing) - _RATIONALE_CODE_LIMIT
        rationale.append(f"Unmet requirements: {quoted}" + (f" and {more} more" if more > 0 else ""))
    if counts.not_applicable:
        rationale.append(f"{counts.not_applicable} mandatory requirement(s) need manual review")

    return JurisdictionEvaluation(
        status=status,
        jurisdictions=codes,
        results=tuple(results),
        rationale=tuple(rationale),
    )


class JurisdictionCategoryEvaluator:
    """Jurisdiction readiness category.

    Args:
        registry: Jurisdiction rule sets.
        assignments: Source of the token's assigned jurisdiction codes.
    """

    category = ReadinessCategory.JURISDICTION

    def __init__(self, registry: JurisdictionRuleRegistry, assignments: IJurisdictionAssignmentSource) -> None:
        self._registry = registry
        self._assignments = assignments

    async def evaluate(self, request: ReadinessRequest) -> CategoryResult:
        codes: list[str] = []
        if request.context.token_id:
            codes = await self._assignments.get_jurisdiction_codes(request.context.token_id, request.network)

        evaluation = evaluate_jurisdictions(self._registry, codes, request.context)
        unmet = [
            result
            for result in evaluation.results
            if result.is_mandatory and result.status in (CheckStatus.FAIL, CheckStatus.PARTIAL)
        ]
        details: dict[str, Any] = {
            "compliance_status": evaluation.status.value,
            "jurisdictions": list(evaluation.jurisdictions),
            "rationale": list(evaluation.rationale),
            "requirements": [result.to_dict() for result in evaluation.results],
        }
        guidance = list(dict.fromkeys(result.remediation_guidance for result in unmet))
        if guidance:
            details["remediation_actions"] = guidance

        message = "; ".join(evaluation.rationale)
        if evaluation.status is JurisdictionComplianceStatus.COMPLIANT:
            return CategoryResult(category=self.category, passed=True, message=message, details=details)
        if evaluation.status is JurisdictionComplianceStatus.NON_COMPLIANT:
            return CategoryResult(
                category=self.category,
                passed=False,
                message=message,
                reason_codes=("JURISDICTION_NON_COMPLIANT",),
                details=details,
                severity=Severity.CRITICAL,
            )
        if evaluation.status is JurisdictionComplianceStatus.PARTIALLY_COMPLIANT:
            return CategoryResult(
                category=self.category,
                passed=False,
                message=message,
                reason_codes=("JURISDICTION_PARTIALLY_COMPLIANT",),
                details=details,
                severity=Severity.HIGH,
                requires_review=True,
            )
        return CategoryResult(
            category=self.category,
            passed=False,
            message=message,
            reason_codes=("JURISDICTION_UNKNOWN",),
            details=details,
            severity=Severity.MEDIUM,
            requires_review=True,
        )


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def _parse_check(raw: Mapping[str, Any]) -> RequirementCheck:
    kind = raw.get("kind", "manual")
    if kind == "manual":
        return ManualCheck(note=str(raw.get("note", "Manual review required")))
    if kind == "evidence":
        accepted = raw.get("accepted_statuses")
        return EvidenceCheck(
            evidence_types=tuple(str(item).upper() for item in raw["evidence_types"]),
            accepted_statuses=(
                frozenset(EvidenceVerificationStatus(s) for s in accepted) if accepted else DEFAULT_ACCEPTED_STATUSES
            ),
            mode=MatchMode(raw.get("match", MatchMode.ALL)),
        )
    if kind == "attribute":
        return AttributeCheck(attribute=ProfileAttribute(raw["attribute"]))
    raise JurisdictionConfigError(f"Unknown requirement check kind: {kind}")


def _parse_rule_set(raw: Mapping[str, Any]) -> JurisdictionRuleSet:
    try:
        requirements = tuple(
            JurisdictionRequirement(
                code=str(item["code"]),
                category=str(item.get("category", "")),
                description=str(item["description"]),
                is_mandatory=bool(item.get("mandatory", True)),
                severity=Severity(item.get("severity", Severity.HIGH)),
                regulatory_reference=str(item.get("regulatory_reference", "")),
                remediation_guidance=str(item.get("remediation_guidance", "")),
                check=_parse_check(item.get("check") or {}),
            )
            for item in raw.get("requirements") or []
        )
        return JurisdictionRuleSet(
            code=str(raw["code"]).upper(),
            name=str(raw["name"]),
            regulatory_framework=str(raw.get("regulatory_framework", "")),
            priority=int(raw.get("priority", 0)),
            requirements=requirements,
            is_active=bool(raw.get("is_active", True)),
            version=str(raw.get("version", "1.0")),
            notes=str(raw.get("notes", "")),
        )
    except KeyError as exc:
        raise JurisdictionConfigError(f"Rule set {raw.get('code', '?')} is missing field {exc.args[0]}") from exc
    except ValueError as exc:
        raise JurisdictionConfigError(f"Rule set {raw.get('code', '?')} is invalid: {exc}") from exc


def load_jurisdiction_rules(path: Path) -> JurisdictionRuleRegistry:
    """Load jurisdiction rule sets from a YAML file.

    Args:
        path: YAML file path with a top-level rule_sets list.

    Returns:
        The registry.

    Raises:
        JurisdictionConfigError: If the file is malformed.
    """
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise JurisdictionConfigError(f"Jurisdiction rule file {path} does not contain a mapping")
    rule_sets = [_parse_rule_set(item) for item in raw.get("rule_sets") or []]
    logger.info(
        "Jurisdiction rule sets loaded",
        path=str(path),
        codes=[rule_set.code for rule_set in rule_sets],
    )
    return JurisdictionRuleRegistry(rule_sets)
