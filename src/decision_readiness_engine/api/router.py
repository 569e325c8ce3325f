"""API router for the decision readiness engine.

All endpoints are registered here and included in main.py under the /api/v1
prefix. Routes are thin: all business logic lives in the service layer.
Shared, process-wide objects (rule catalog, evaluator, aggregator, jurisdiction
registry, actor resolver, clock) live on app.state and are set up in the
lifespan handler.

Endpoints:
- POST        /decisions                          — Create decision (idempotent within the window)
- POST        /decisions/{id}/supersede           — Supersede a current decision
- GET         /decisions/active                   — Active decision for organization + step
- GET         /decisions                          — Query decisions with summary
- GET         /decisions/review-due               — Decisions due for review
- GET         /decisions/expired                  — Expired, non-superseded decisions
- GET         /decisions/{id}                     — Get decision by ID
- POST        /readiness/evaluations              — Evaluate readiness for the caller
- GET         /readiness/evaluations/{id}         — Get one of the caller's evaluations
- GET         /readiness/history                  — Caller's evaluation history
- GET         /jurisdictions/rules                — List jurisdiction rule sets
- GET         /jurisdictions/rules/{code}         — Get a rule set
- POST/GET/DELETE /jurisdictions/assignments      — Manage token jurisdiction assignments
- POST        /jurisdictions/evaluations          — Evaluate a token's jurisdictions
- GET         /policy/rules/{step}                — Rules applied to an onboarding step
- GET         /policy/rule-definitions/{id}       — Get a policy rule
- GET         /policy/configuration               — Active catalog, versions and defaults
- GET         /policy/metrics                     — Policy evaluation counters
"""

import uuid
from datetime import timedelta
from typing import Annotated

from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import AwareDatetime
from sqlalchemy.ext.asyncio import AsyncSession

from decision_readiness_engine.adapters.repositories import (
    DecisionRepository,
    JurisdictionAssignmentRepository,
    ReadinessEvaluationRepository,
)
from decision_readiness_engine.api.schemas import (
    DecisionCreateRequest,
    DecisionCreateResponse,
    DecisionListResponse,
    DecisionQueryResponse,
    DecisionResponse,
    DecisionSummaryResponse,
    JurisdictionAssignmentResponse,
    JurisdictionAssignRequest,
    JurisdictionEvaluateRequest,
    JurisdictionEvaluationResponse,
    JurisdictionRuleSetResponse,
    PolicyConfigurationResponse,
    PolicyMetricsResponse,
    PolicyRuleResponse,
    ReadinessEvaluateRequest,
    ReadinessEvaluationResponse,
    ReadinessHistoryResponse,
)
from decision_readiness_engine.core.services import (
    DecisionRequest,
    DecisionResult,
    DecisionService,
    JurisdictionService,
    PolicyService,
    ReadinessService,
)
from decision_readiness_engine.core.types import DecisionOutcome, DecisionQueryFilters, OnboardingStep
from decision_readiness_engine.database import get_db_session
from decision_readiness_engine.errors import EngineError, InternalError, NotFoundError
from decision_readiness_engine.observability import get_logger

logger = get_logger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Dependency factories: wire repositories, services, and shared state together
# ---------------------------------------------------------------------------


def get_actor(request: Request) -> str:
    """Resolve the calling actor from request headers.

    Raises:
        UnauthorizedActorError: If no actor identity is present.
    """
    return request.app.state.actor_resolver.resolve(request.headers)


def get_decision_service(
    request: Request,
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> DecisionService:
    """Construct DecisionService with a request-scoped repository.

    Args:
        request: Incoming request, used to reach app.state.
        session: Primary DB session.

    Returns:
        Fully wired DecisionService instance.
    """
    state = request.app.state
    return DecisionService(
        repository=DecisionRepository(session),
        evaluator=state.policy_evaluator,
        authorization=state.authorization,
        idempotency_window=timedelta(minutes=state.settings.idempotency_window_minutes),
        clock=state.clock,
    )


def get_readiness_service(
    request: Request,
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> ReadinessService:
    """Construct ReadinessService with the shared aggregator.

    Args:
        request: Incoming request, used to reach app.state.
        session: Primary DB session.

    Returns:
        Fully wired ReadinessService instance.
    """
    state = request.app.state
    return ReadinessService(
        aggregator=state.readiness_aggregator,
        repository=ReadinessEvaluationRepository(session),
        history_limit=state.settings.readiness_history_limit,
    )


def get_jurisdiction_service(
    request: Request,
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> JurisdictionService:
    state = request.app.state
    return JurisdictionService(
        repository=JurisdictionAssignmentRepository(session),
        registry=state.jurisdiction_registry,
        clock=state.clock,
    )


def get_policy_service(request: Request) -> PolicyService:
    state = request.app.state
    return PolicyService(evaluator=state.policy_evaluator, clock=state.clock)


def _to_create_response(result: DecisionResult, response: Response) -> DecisionCreateResponse:
    if not result.created:
        response.status_code = 200
    return DecisionCreateResponse(
        decision=DecisionResponse.model_validate(result.decision),
        created=result.created,
    )


def _to_decision_request(body: DecisionCreateRequest) -> DecisionRequest:
    return DecisionRequest(
        organization_id=body.organization_id,
        step=body.step,
        evidence=tuple(body.evidence),
        onboarding_session_id=body.onboarding_session_id,
        expiration_days=body.expiration_days,
        requires_review=body.requires_review,
        review_interval_days=body.review_interval_days,
        correlation_id=body.correlation_id,
        metadata=body.metadata,
    )


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


@router.post("/decisions", response_model=DecisionCreateResponse, status_code=201)
async def create_decision(
    body: DecisionCreateRequest,
    response: Response,
    actor: Annotated[str, Depends(get_actor)],
    service: Annotated[DecisionService, Depends(get_decision_service)],
) -> DecisionCreateResponse:
    """Evaluate evidence and record a compliance decision.

    An identical request (same organization, step, policy version and
    evidence) inside the idempotency window returns the existing decision
    with status 200 and created=false.

    Args:
        body: Decision request body.
        response: Outgoing response, status adjusted on replay.
        actor: Resolved caller.
        service: Injected DecisionService.

    Returns:
        The decision and whether it was created.
    """
    logger.info("POST /decisions", organization_id=body.organization_id, step=body.step.value)
    result = await service.create_decision(_to_decision_request(body), actor=actor)
    return _to_create_response(result, response)


@router.post("/decisions/{decision_id}/supersede", response_model=DecisionCreateResponse, status_code=201)
async def supersede_decision(
    decision_id: uuid.UUID,
    body: DecisionCreateRequest,
    response: Response,
    actor: Annotated[str, Depends(get_actor)],
    service: Annotated[DecisionService, Depends(get_decision_service)],
) -> DecisionCreateResponse:
    """Re-evaluate and supersede a current decision.

    Args:
        decision_id: The decision being superseded.
        body: New decision request body, same organization and step.
        response: Outgoing response.
        actor: Resolved caller.
        service: Injected DecisionService.

    Returns:
        The new decision.
    """
    logger.info("POST /decisions/{id}/supersede", previous_decision_id=str(decision_id))
    result = await service.update_decision(decision_id, _to_decision_request(body), actor=actor)
    return _to_create_response(result, response)


@router.get("/decisions/active", response_model=DecisionResponse)
async def get_active_decision(
    service: Annotated[DecisionService, Depends(get_decision_service)],
    organization_id: str = Query(description="Organization ID", min_length=1),
    step: OnboardingStep = Query(description="Onboarding step"),
) -> DecisionResponse:
    """Get the active decision for an organization and step.

    Returns 404 when no non-superseded, unexpired decision exists.
    """
    decision = await service.get_active_decision(organization_id, step)
    if decision is None:
        raise NotFoundError(resource="ActiveDecision", resource_id=f"{organization_id}/{step.value}")
    return DecisionResponse.model_validate(decision)


@router.get("/decisions", response_model=DecisionQueryResponse)
async def query_decisions(
    service: Annotated[DecisionService, Depends(get_decision_service)],
    organization_id: str | None = Query(default=None, description="Filter by organization"),
    onboarding_session_id: str | None = Query(default=None, description="Filter by onboarding session"),
    step: OnboardingStep | None = Query(default=None, description="Filter by onboarding step"),
    outcome: DecisionOutcome | None = Query(default=None, description="Filter by outcome"),
    decision_maker: str | None = Query(default=None, description="Filter by decision maker"),
    from_date: AwareDatetime | None = Query(default=None, description="Decisions made at or after (UTC)"),
    to_date: AwareDatetime | None = Query(default=None, description="Decisions made at or before (UTC)"),
    include_superseded: bool = Query(default=False, description="Include superseded decisions"),
    include_expired: bool = Query(default=False, description="Include expired decisions"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=100),
) -> DecisionQueryResponse:
    """Query decisions with AND-combined filters.

    Args:
        service: Injected DecisionService.
        organization_id: Optional organization filter.
        onboarding_session_id: Optional onboarding session filter.
        step: Optional step filter.
        outcome: Optional outcome filter.
        decision_maker: Optional decision maker filter.
        from_date: Optional lower bound on decision timestamp.
        to_date: Optional upper bound on decision timestamp.
        include_superseded: Include superseded decisions.
        include_expired: Include expired decisions.
        page: Page number.
        page_size: Records per page.

    Returns:
        One page of decisions plus a summary over the full filtered set.
    """
    filters = DecisionQueryFilters(
        organization_id=organization_id,
        onboarding_session_id=onboarding_session_id,
        step=step,
        outcome=outcome,
        decision_maker=decision_maker,
        from_date=from_date,
        to_date=to_date,
        include_superseded=include_superseded,
        include_expired=include_expired,
    )
    result = await service.query_decisions(filters, page=page, page_size=page_size)
    return DecisionQueryResponse(
        decisions=[DecisionResponse.model_validate(decision) for decision in result.decisions],
        total_count=result.total_count,
        page=result.page,
        page_size=result.page_size,
        summary=DecisionSummaryResponse(
            total=result.summary.total,
            outcome_counts=result.summary.outcome_counts,
            average_decision_time_hours=result.summary.average_decision_time_hours,
            top_rejection_reasons=result.summary.top_rejection_reasons,
        ),
    )


@router.get("/decisions/review-due", response_model=DecisionListResponse)
async def list_decisions_requiring_review(
    service: Annotated[DecisionService, Depends(get_decision_service)],
    before: AwareDatetime | None = Query(default=None, description="Review due on or before (UTC). Defaults to now."),
) -> DecisionListResponse:
    decisions = await service.list_decisions_requiring_review(before)
    return DecisionListResponse(
        decisions=[DecisionResponse.model_validate(decision) for decision in decisions],
        count=len(decisions),
    )


@router.get("/decisions/expired", response_model=DecisionListResponse)
async def list_expired_decisions(
    service: Annotated[DecisionService, Depends(get_decision_service)],
) -> DecisionListResponse:
    decisions = await service.list_expired_decisions()
    return DecisionListResponse(
        decisions=[DecisionResponse.model_validate(decision) for decision in decisions],
        count=len(decisions),
    )


@router.get("/decisions/{decision_id}", response_model=DecisionResponse)
async def get_decision(
    decision_id: uuid.UUID,
    service: Annotated[DecisionService, Depends(get_decision_service)],
) -> DecisionResponse:
    """Get a decision by ID, superseded or not."""
    return DecisionResponse.model_validate(await service.get_decision(decision_id))


# ---------------------------------------------------------------------------
# Readiness
# ---------------------------------------------------------------------------


@router.post("/readiness/evaluations", response_model=ReadinessEvaluationResponse, status_code=201)
async def evaluate_readiness(
    body: ReadinessEvaluateRequest,
    actor: Annotated[str, Depends(get_actor)],
    service: Annotated[ReadinessService, Depends(get_readiness_service)],
) -> ReadinessEvaluationResponse:
    """Evaluate token launch readiness for the calling actor.

    The evaluation is always made for the resolved caller; there is no way
    to evaluate on behalf of another user.

    Args:
        body: Readiness request body.
        actor: Resolved caller.
        service: Injected ReadinessService.

    Returns:
        The stored evaluation.
    """
    logger.info("POST /readiness/evaluations", token_type=body.token_type, network=body.network)
    evaluation = await service.evaluate_readiness(
        user_id=actor,
        token_type=body.token_type,
        network=body.network,
        context=body.context,
        correlation_id=body.correlation_id,
    )
    return ReadinessEvaluationResponse.model_validate(evaluation)


@router.get("/readiness/evaluations/{evaluation_id}", response_model=ReadinessEvaluationResponse)
async def get_readiness_evaluation(
    evaluation_id: uuid.UUID,
    actor: Annotated[str, Depends(get_actor)],
    service: Annotated[ReadinessService, Depends(get_readiness_service)],
) -> ReadinessEvaluationResponse:
    """Get one of the caller's readiness evaluations. Other users' evaluations are 404."""
    return ReadinessEvaluationResponse.model_validate(await service.get_evaluation(evaluation_id, actor))


@router.get("/readiness/history", response_model=ReadinessHistoryResponse)
async def get_readiness_history(
    actor: Annotated[str, Depends(get_actor)],
    service: Annotated[ReadinessService, Depends(get_readiness_service)],
    limit: int = Query(default=50, ge=1, le=100),
    from_date: AwareDatetime | None = Query(default=None, description="Evaluations at or after (UTC)"),
) -> ReadinessHistoryResponse:
    evaluations = await service.get_history(actor, limit=limit, from_date=from_date)
    return ReadinessHistoryResponse(
        evaluations=[ReadinessEvaluationResponse.model_validate(evaluation) for evaluation in evaluations],
        count=len(evaluations),
    )


# ---------------------------------------------------------------------------
# Jurisdictions
# ---------------------------------------------------------------------------


@router.get("/jurisdictions/rules", response_model=list[JurisdictionRuleSetResponse])
async def list_jurisdiction_rules(
    service: Annotated[JurisdictionService, Depends(get_jurisdiction_service)],
    active_only: bool = Query(default=False, description="Only return active rule sets"),
) -> list[JurisdictionRuleSetResponse]:
    return [JurisdictionRuleSetResponse.from_rule_set(rule_set) for rule_set in service.list_rule_sets(active_only)]


@router.get("/jurisdictions/rules/{code}", response_model=JurisdictionRuleSetResponse)
async def get_jurisdiction_rule_set(
    code: str,
    service: Annotated[JurisdictionService, Depends(get_jurisdiction_service)],
) -> JurisdictionRuleSetResponse:
    return JurisdictionRuleSetResponse.from_rule_set(service.get_rule_set(code))


@router.post("/jurisdictions/assignments", response_model=JurisdictionAssignmentResponse, status_code=201)
async def assign_jurisdiction(
    body: JurisdictionAssignRequest,
    actor: Annotated[str, Depends(get_actor)],
    service: Annotated[JurisdictionService, Depends(get_jurisdiction_service)],
) -> JurisdictionAssignmentResponse:
    """Assign a jurisdiction to a token, creating or updating the assignment.

    Args:
        body: Assignment request body.
        actor: Resolved caller, recorded as assigned_by.
        service: Injected JurisdictionService.

    Returns:
        The stored assignment.
    """
    logger.info(
        "POST /jurisdictions/assignments",
        token_id=body.token_id,
        network=body.network,
        jurisdiction_code=body.jurisdiction_code,
    )
    assignment = await service.assign(
        token_id=body.token_id,
        network=body.network,
        jurisdiction_code=body.jurisdiction_code,
        actor=actor,
        is_primary=body.is_primary,
        notes=body.notes,
    )
    return JurisdictionAssignmentResponse.model_validate(assignment)


@router.get("/jurisdictions/assignments", response_model=list[JurisdictionAssignmentResponse])
async def list_jurisdiction_assignments(
    service: Annotated[JurisdictionService, Depends(get_jurisdiction_service)],
    token_id: str = Query(min_length=1, description="Token identifier"),
    network: str = Query(min_length=1, description="Network"),
) -> list[JurisdictionAssignmentResponse]:
    assignments = await service.list_assignments(token_id, network)
    return [JurisdictionAssignmentResponse.model_validate(assignment) for assignment in assignments]


@router.delete("/jurisdictions/assignments", status_code=204)
async def remove_jurisdiction_assignment(
    actor: Annotated[str, Depends(get_actor)],
    service: Annotated[JurisdictionService, Depends(get_jurisdiction_service)],
    token_id: str = Query(min_length=1, description="Token identifier"),
    network: str = Query(min_length=1, description="Network"),
    jurisdiction_code: str = Query(min_length=1, description="Jurisdiction code"),
) -> Response:
    logger.info(
        "DELETE /jurisdictions/assignments",
        token_id=token_id,
        network=network,
        jurisdiction_code=jurisdiction_code,
        actor=actor,
    )
    await service.remove(token_id, network, jurisdiction_code)
    return Response(status_code=204)


@router.post("/jurisdictions/evaluations", response_model=JurisdictionEvaluationResponse)
async def evaluate_token_jurisdictions(
    body: JurisdictionEvaluateRequest,
    service: Annotated[JurisdictionService, Depends(get_jurisdiction_service)],
) -> JurisdictionEvaluationResponse:
    """Evaluate a token's assigned jurisdictions without a full readiness check."""
    context = body.context.model_copy(update={"token_id": body.token_id}) if body.context else None
    evaluation = await service.evaluate_token(body.token_id, body.network, context)
    return JurisdictionEvaluationResponse.from_evaluation(evaluation)


# ---------------------------------------------------------------------------
# Policy catalog
# ---------------------------------------------------------------------------


@router.get("/policy/rules/{step}", response_model=list[PolicyRuleResponse])
async def list_policy_rules(
    step: OnboardingStep,
    service: Annotated[PolicyService, Depends(get_policy_service)],
) -> list[PolicyRuleResponse]:
    """List the rules currently applied to an onboarding step, in evaluation order."""
    return [PolicyRuleResponse.from_rule(rule) for rule in service.list_rules(step)]


@router.get("/policy/rule-definitions/{rule_id}", response_model=PolicyRuleResponse)
async def get_policy_rule(
    rule_id: str,
    service: Annotated[PolicyService, Depends(get_policy_service)],
) -> PolicyRuleResponse:
    return PolicyRuleResponse.from_rule(service.get_rule(rule_id))


@router.get("/policy/configuration", response_model=PolicyConfigurationResponse)
async def get_policy_configuration(
    service: Annotated[PolicyService, Depends(get_policy_service)],
) -> PolicyConfigurationResponse:
    """Get the active catalog version, published versions, lifetime defaults and rules per step."""
    return PolicyConfigurationResponse.from_configuration(service.get_configuration())


@router.get("/policy/metrics", response_model=PolicyMetricsResponse)
async def get_policy_metrics(
    service: Annotated[PolicyService, Depends(get_policy_service)],
) -> PolicyMetricsResponse:
    """Get policy evaluation counters accumulated since this process started."""
    return PolicyMetricsResponse(**service.get_metrics())


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def register_exception_handlers(app: FastAPI) -> None:
    """Map engine errors to JSON responses.

    EngineError subclasses use their own status code and body. Anything else
    is logged and returned as a generic 500 so internals never leak.

    Args:
        app: The FastAPI application.
    """

    async def _engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("Engine error", path=request.url.path, error_code=exc.error_code, error=exc.message)
        else:
            logger.info("Request rejected", path=request.url.path, error_code=exc.error_code, error=exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error", path=request.url.path)
        error = InternalError()
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    app.add_exception_handler(EngineError, _engine_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _unhandled_error_handler)
