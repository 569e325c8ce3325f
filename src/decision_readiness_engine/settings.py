"""Service settings for the decision readiness engine.

All settings use the DECISION_ENGINE_ environment prefix and cover:
- Primary database connection
- Logging
- Decision idempotency and authorization
- Rule catalog and jurisdiction rule files
- Readiness fan-out timeouts
- Upstream collaborator endpoints
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_PACKAGE_DIR = Path(__file__).parent


class Settings(BaseSettings):
    """Settings for the decision readiness engine.

    Environment variable prefix: DECISION_ENGINE_
    """

    service_name: str = "decision-readiness-engine"

    # -------------------------------------------------------------------------
    # Database
    # -------------------------------------------------------------------------

    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/decision_engine",
        description="SQLAlchemy async database URL for decisions, readiness evaluations "
        "and jurisdiction assignments.",
    )
    database_echo: bool = Field(
        default=False,
        description="Echo SQL statements to the log. Development only.",
    )
    database_pool_size: int = Field(
        default=10,
        description="Connection pool size. Ignored for SQLite URLs.",
    )
    database_create_schema: bool = Field(
        default=True,
        description="Create missing tables at startup.",
    )

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------

    log_level: str = Field(default="INFO", description="Root log level.")
    log_json: bool = Field(
        default=True,
        description="Render logs as JSON lines. Disable for a console renderer in development.",
    )

    # -------------------------------------------------------------------------
    # Decisions
    # -------------------------------------------------------------------------

    idempotency_window_minutes: int = Field(
        default=60,
        ge=1,
        description="Window in which an identical create request returns the existing decision.",
    )
    decision_admin_actors: list[str] = Field(
        default_factory=list,
        description="Actors allowed to create and update decisions. "
        "Empty means any resolved actor may decide.",
    )
    rule_catalog_path: Path = Field(
        default=_PACKAGE_DIR / "policy" / "rules" / "catalog_v1.yaml",
        description="YAML file holding the initial rule catalog snapshot.",
    )

    # -------------------------------------------------------------------------
    # Readiness
    # -------------------------------------------------------------------------

    readiness_category_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Per-category timeout. A category exceeding it is folded in as degraded.",
    )
    readiness_max_concurrency: int = Field(
        default=7,
        ge=1,
        description="Maximum number of category evaluators running at once per request.",
    )
    readiness_decision_step: str = Field(
        default="token_issuance_authorization",
        description="Onboarding step whose active decision backs the compliance decision category.",
    )
    readiness_history_limit: int = Field(
        default=100,
        ge=1,
        le=100,
        description="Maximum evaluations returned by a history query.",
    )
    jurisdiction_rules_path: Path = Field(
        default=_PACKAGE_DIR / "readiness" / "rules" / "jurisdictions.yaml",
        description="YAML file holding jurisdiction rule sets.",
    )

    # -------------------------------------------------------------------------
    # Upstream collaborators
    # -------------------------------------------------------------------------

    entitlement_url: str = Field(
        default="http://localhost:8101",
        description="Base URL of the entitlement service.",
    )
    account_url: str = Field(
        default="http://localhost:8102",
        description="Base URL of the account readiness service.",
    )
    identity_url: str = Field(
        default="http://localhost:8103",
        description="Base URL of the identity verification status service.",
    )
    whitelist_url: str = Field(
        default="http://localhost:8104",
        description="Base URL of the whitelist eligibility service.",
    )
    integration_health_url: str = Field(
        default="http://localhost:8105",
        description="Base URL of the network integration health service.",
    )
    upstream_timeout_seconds: float = Field(
        default=3.0,
        gt=0,
        description="HTTP timeout for upstream collaborator calls.",
    )

    model_config = SettingsConfigDict(env_prefix="DECISION_ENGINE_")
