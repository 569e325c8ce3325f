"""Policy rules for onboarding decisions.

Modules:
- catalog: Immutable, versioned rule catalog snapshots loaded from YAML
- matching: Evidence matching primitives shared with jurisdiction checks
- evaluator: Pure policy evaluation producing outcome, rule results and actions
"""
