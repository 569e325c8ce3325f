"""Decision and readiness evaluation engine.

Evaluates evidence against versioned policy rules to produce immutable,
idempotent compliance decisions, and aggregates independent readiness
categories into a single token launch verdict with ordered remediation.
"""

__version__ = "0.1.0"
