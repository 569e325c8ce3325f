"""Token launch readiness evaluation.

Modules:
- policy: Category policy table and remediation dependency edges
- categories: Category evaluators wrapping the collaborator interfaces
- jurisdiction: Jurisdiction rule sets and the jurisdiction category evaluator
- aggregator: Concurrent fan-out, merge and remediation synthesis
"""
