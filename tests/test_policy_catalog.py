"""Tests for the rule catalog: loading, versioning and rule selection."""

from datetime import UTC, date, datetime
from typing import Any

import pytest

from conftest import CATALOG_PATH
from decision_readiness_engine.core.types import EvidenceVerificationStatus, OnboardingStep, Severity
from decision_readiness_engine.errors import NotFoundError, UnknownStepError, ValidationError
from decision_readiness_engine.policy.catalog import (
    CatalogConfigError,
    RuleCatalog,
    load_snapshot,
    parse_snapshot,
)
from decision_readiness_engine.policy.matching import MatchMode


def _raw_catalog(version: str = "2.0.0", **rule_overrides: Any) -> dict[str, Any]:
    rule = {
        "rule_id": "KYC_DOC_001",
        "name": "KYC Documentation Complete",
        "step": "kyc_kyb_verification",
        "severity": "high",
        "mandatory": True,
        "required_evidence_types": ["kyc_report"],
        "pass_message": "KYC documentation complete and verified",
        "fail_message": "Incomplete or invalid KYC documentation",
        "remediation_actions": ["Complete KYC verification process"],
        "estimated_remediation_hours": 48,
    }
    rule.update(rule_overrides)
    return {
        "version": version,
        "defaults": {"expiration_days": 365, "review_interval_days": 180},
        "rules": [rule],
    }


class TestLoadSnapshot:
    def test_packaged_catalog_loads(self) -> None:
        snapshot = load_snapshot(CATALOG_PATH)

        assert snapshot.version == "1.0.0"
        assert snapshot.steps == frozenset(OnboardingStep)
        assert len(snapshot.content_hash) == 64

    def test_rule_fields_are_parsed(self) -> None:
        snapshot = load_snapshot(CATALOG_PATH)

        custody = snapshot.get_rule("CUSTODY_001")
        assert custody.match_mode is MatchMode.ANY
        assert custody.required_evidence_types == ("CUSTODY_AGREEMENT", "WALLET_CONTROL_PROOF")

        terms = snapshot.get_rule("TERMS_ACCEPT_001")
        assert terms.accepted_statuses == frozenset(
            {EvidenceVerificationStatus.VERIFIED, EvidenceVerificationStatus.SUBMITTED}
        )

        aml = snapshot.get_rule("AML_SCREEN_001")
        assert aml.severity is Severity.CRITICAL
        assert aml.is_mandatory is True

    def test_step_defaults_override_catalog_defaults(self) -> None:
        snapshot = load_snapshot(CATALOG_PATH)

        aml = snapshot.defaults_for(OnboardingStep.AML_SCREENING)
        assert (aml.expiration_days, aml.review_interval_days) == (180, 90)

        kyc = snapshot.defaults_for(OnboardingStep.KYC_KYB_VERIFICATION)
        assert (kyc.expiration_days, kyc.review_interval_days) == (365, 90)

        final = snapshot.defaults_for(OnboardingStep.FINAL_APPROVAL)
        assert (final.expiration_days, final.review_interval_days) == (365, 180)

    def test_evidence_types_are_upper_cased(self) -> None:
        snapshot = parse_snapshot(_raw_catalog())

        assert snapshot.get_rule("KYC_DOC_001").required_evidence_types == ("KYC_REPORT",)

    def test_duplicate_rule_ids_are_rejected(self) -> None:
        raw = _raw_catalog()
        raw["rules"].append(dict(raw["rules"][0]))

        with pytest.raises(CatalogConfigError, match="Duplicate rule_id"):
            parse_snapshot(raw)

    def test_missing_version_is_rejected(self) -> None:
        raw = _raw_catalog()
        raw["version"] = ""

        with pytest.raises(CatalogConfigError):
            parse_snapshot(raw)

    def test_missing_rule_field_is_reported(self) -> None:
        raw = _raw_catalog()
        del raw["rules"][0]["fail_message"]

        with pytest.raises(CatalogConfigError, match="fail_message"):
            parse_snapshot(raw)

    def test_unknown_step_in_rule_is_rejected(self) -> None:
        with pytest.raises(CatalogConfigError):
            parse_snapshot(_raw_catalog(step="launch_party"))

    def test_get_rule_unknown_raises_not_found(self) -> None:
        snapshot = parse_snapshot(_raw_catalog())

        with pytest.raises(NotFoundError):
            snapshot.get_rule("NOPE_001")


class TestRulesForStep:
    def test_step_without_rules_raises_unknown_step(self) -> None:
        snapshot = parse_snapshot(_raw_catalog())

        with pytest.raises(UnknownStepError):
            snapshot.rules_for_step(OnboardingStep.AML_SCREENING)

    def test_inactive_rules_are_skipped(self) -> None:
        snapshot = parse_snapshot(_raw_catalog(is_active=False))

        with pytest.raises(UnknownStepError):
            snapshot.rules_for_step(OnboardingStep.KYC_KYB_VERIFICATION)

    def test_effective_dates_are_inclusive(self) -> None:
        snapshot = parse_snapshot(_raw_catalog(effective_from="2026-01-01", effective_to=date(2026, 6, 30)))
        step = OnboardingStep.KYC_KYB_VERIFICATION

        assert snapshot.rules_for_step(step, datetime(2026, 1, 1, 0, 0, tzinfo=UTC))
        assert snapshot.rules_for_step(step, datetime(2026, 6, 30, 23, 59, tzinfo=UTC))
        with pytest.raises(UnknownStepError):
            snapshot.rules_for_step(step, datetime(2025, 12, 31, 23, 59, tzinfo=UTC))
        with pytest.raises(UnknownStepError):
            snapshot.rules_for_step(step, datetime(2026, 7, 1, 0, 0, tzinfo=UTC))

    def test_rules_keep_configuration_order(self) -> None:
        snapshot = load_snapshot(CATALOG_PATH)

        rules = snapshot.rules_for_step(OnboardingStep.BENEFICIAL_OWNERSHIP_VERIFICATION)

        assert [rule.rule_id for rule in rules] == ["BEN_OWN_001", "BEN_OWN_STRUCT_001"]


class TestRuleCatalog:
    def test_empty_catalog_has_no_active_snapshot(self) -> None:
        with pytest.raises(RuntimeError):
            _ = RuleCatalog().active

    def test_publish_activates_new_version(self) -> None:
        catalog = RuleCatalog(parse_snapshot(_raw_catalog("1.0.0")))

        catalog.publish(parse_snapshot(_raw_catalog("1.1.0")))

        assert catalog.active.version == "1.1.0"
        assert catalog.versions == ["1.0.0", "1.1.0"]

    def test_publish_without_activation_keeps_active_version(self) -> None:
        catalog = RuleCatalog(parse_snapshot(_raw_catalog("1.0.0")))

        catalog.publish(parse_snapshot(_raw_catalog("1.1.0")), activate=False)

        assert catalog.active.version == "1.0.0"
        assert catalog.get("1.1.0").version == "1.1.0"

    def test_republishing_a_version_is_rejected(self) -> None:
        catalog = RuleCatalog(parse_snapshot(_raw_catalog("1.0.0")))

        with pytest.raises(ValidationError, match="already published"):
            catalog.publish(parse_snapshot(_raw_catalog("1.0.0", name="Patched")))
        assert catalog.active.get_rule("KYC_DOC_001").name == "KYC Documentation Complete"

    def test_activate_rolls_back_to_earlier_version(self) -> None:
        catalog = RuleCatalog(parse_snapshot(_raw_catalog("1.0.0")))
        catalog.publish(parse_snapshot(_raw_catalog("1.1.0")))

        catalog.activate("1.0.0")

        assert catalog.active.version == "1.0.0"

    def test_activate_unknown_version_raises_not_found(self) -> None:
        catalog = RuleCatalog(parse_snapshot(_raw_catalog("1.0.0")))

        with pytest.raises(NotFoundError):
            catalog.activate("9.9.9")
