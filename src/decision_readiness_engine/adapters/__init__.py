"""Adapters: external integrations for the decision readiness engine.

Contains:
- repositories.py     — SQLAlchemy repositories and session-scoped read sources
- upstream.py         — httpx clients for the readiness collaborators
- actor_identity.py   — Header-based actor identity resolver
"""

__all__: list[str] = []
