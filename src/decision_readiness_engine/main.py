"""Decision readiness engine service entry point.

Initializes the FastAPI application with:
- Primary database for decisions, readiness evaluations and jurisdiction assignments
- Rule catalog and policy evaluator loaded from the packaged YAML catalog
- Jurisdiction rule sets loaded from the packaged YAML rules
- Shared httpx client for the readiness collaborators
- Readiness aggregator wired with every category evaluator
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from decision_readiness_engine import __version__
from decision_readiness_engine.adapters.actor_identity import HeaderActorIdentityResolver
from decision_readiness_engine.adapters.repositories import SessionScopedAssignmentSource, SessionScopedDecisionSource
from decision_readiness_engine.adapters.upstream import (
    HttpAccountReadinessChecker,
    HttpEntitlementChecker,
    HttpIdentityVerificationReader,
    HttpIntegrationHealthProbe,
    HttpWhitelistEligibilityChecker,
)
from decision_readiness_engine.api.router import register_exception_handlers, router
from decision_readiness_engine.core.services import AuthorizationPolicy
from decision_readiness_engine.core.types import OnboardingStep, utc_now
from decision_readiness_engine.database import close_database, create_schema, get_session_factory, init_database
from decision_readiness_engine.observability import configure_logging, get_logger
from decision_readiness_engine.policy.catalog import RuleCatalog, load_snapshot
from decision_readiness_engine.policy.evaluator import PolicyEvaluator
from decision_readiness_engine.readiness.aggregator import ReadinessAggregator
from decision_readiness_engine.readiness.categories import (
    AccountReadinessCategoryEvaluator,
    ComplianceDecisionCategoryEvaluator,
    EntitlementCategoryEvaluator,
    IdentityVerificationCategoryEvaluator,
    IntegrationHealthCategoryEvaluator,
    TransferEligibilityCategoryEvaluator,
)
from decision_readiness_engine.readiness.jurisdiction import JurisdictionCategoryEvaluator, load_jurisdiction_rules
from decision_readiness_engine.settings import Settings

logger = get_logger(__name__)


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Service settings. Read from the environment when omitted.

    Returns:
        The configured application.
    """
    app_settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Manage application startup and shutdown lifecycle.

        Args:
            app: The FastAPI application instance.

        Yields:
            None
        """
        configure_logging(app_settings.log_level, json_logs=app_settings.log_json)

        # Startup: primary database
        logger.info("Initializing primary database", service=app_settings.service_name)
        init_database(
            app_settings.database_url,
            echo=app_settings.database_echo,
            pool_size=app_settings.database_pool_size,
        )
        if app_settings.database_create_schema:
            await create_schema()

        # Startup: rule catalog and jurisdiction rules
        catalog = RuleCatalog(load_snapshot(app_settings.rule_catalog_path))
        jurisdiction_registry = load_jurisdiction_rules(app_settings.jurisdiction_rules_path)

        # Startup: readiness collaborators
        http_client = httpx.AsyncClient(timeout=app_settings.upstream_timeout_seconds)
        timeout = app_settings.upstream_timeout_seconds
        session_factory = get_session_factory()
        clock = utc_now
        aggregator = ReadinessAggregator(
            evaluators=[
                EntitlementCategoryEvaluator(
                    HttpEntitlementChecker(app_settings.entitlement_url, timeout, http_client)
                ),
                AccountReadinessCategoryEvaluator(
                    HttpAccountReadinessChecker(app_settings.account_url, timeout, http_client)
                ),
                ComplianceDecisionCategoryEvaluator(
                    SessionScopedDecisionSource(session_factory, clock),
                    step=OnboardingStep(app_settings.readiness_decision_step),
                ),
                IdentityVerificationCategoryEvaluator(
                    HttpIdentityVerificationReader(app_settings.identity_url, timeout, http_client)
                ),
                JurisdictionCategoryEvaluator(jurisdiction_registry, SessionScopedAssignmentSource(session_factory)),
                TransferEligibilityCategoryEvaluator(
                    HttpWhitelistEligibilityChecker(app_settings.whitelist_url, timeout, http_client)
                ),
                IntegrationHealthCategoryEvaluator(
                    HttpIntegrationHealthProbe(app_settings.integration_health_url, timeout, http_client)
                ),
            ],
            timeout_seconds=app_settings.readiness_category_timeout_seconds,
            max_concurrency=app_settings.readiness_max_concurrency,
            clock=clock,
        )

        # Store shared objects on app state for dependency injection
        app.state.settings = app_settings
        app.state.clock = clock
        app.state.rule_catalog = catalog
        app.state.policy_evaluator = PolicyEvaluator(catalog)
        app.state.authorization = AuthorizationPolicy(frozenset(app_settings.decision_admin_actors))
        app.state.actor_resolver = HeaderActorIdentityResolver()
        app.state.jurisdiction_registry = jurisdiction_registry
        app.state.readiness_aggregator = aggregator
        app.state.http_client = http_client

        logger.info(
            "Decision readiness engine startup complete",
            catalog_version=catalog.active.version,
            readiness_policy_version=aggregator.policy_version,
        )

        yield

        # Shutdown
        logger.info("Shutting down decision readiness engine")
        await http_client.aclose()
        await close_database()
        logger.info("Decision readiness engine shutdown complete")

    app = FastAPI(
        title="Decision Readiness Engine",
        version=__version__,
        lifespan=lifespan,
    )
    register_exception_handlers(app)
    app.include_router(router, prefix="/api/v1")

    @app.get("/health", tags=["health"])
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": app_settings.service_name}

    return app


app: FastAPI = create_app()
