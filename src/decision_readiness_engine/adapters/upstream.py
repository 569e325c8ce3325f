"""HTTP clients for the readiness collaborators.

Each collaborator answers a GET with a JSON body shaped like:

    {
        "passed": true,
        "message": "...",
        "reason_codes": ["..."],
        "evidence_refs": ["..."],
        "details": {...},
        "severity": "high",
        "requires_review": false
    }

Only `passed` is required. Timeouts, connection errors, non-2xx responses
and malformed bodies raise UpstreamDegradedError; the readiness aggregator
turns that into a degraded category result, so nothing here retries.

A shared httpx.AsyncClient may be injected (the application lifespan owns
one for connection reuse). Without one, each call opens a short-lived client.
"""

from typing import Any

import httpx

from decision_readiness_engine.core.types import CategoryResult, ReadinessCategory, Severity, TokenContext
from decision_readiness_engine.errors import UpstreamDegradedError
from decision_readiness_engine.observability import get_logger

logger = get_logger(__name__)

_DEFAULT_TIMEOUT_SECONDS = 3.0


class _UpstreamClient:
    """GET-and-parse client shared by every collaborator adapter.

    Args:
        base_url: Collaborator base URL.
        category: Readiness category the collaborator answers for.
        timeout_seconds: Request timeout.
        client: Optional shared httpx client.
    """

    def __init__(
        self,
        base_url: str,
        category: ReadinessCategory,
        timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._category = category
        self._timeout_seconds = timeout_seconds
        self._client = client

    @property
    def source(self) -> str:
        return self._category.value

    async def _fetch(self, path: str, params: dict[str, str] | None = None) -> CategoryResult:
        url = f"{self._base_url}{path}"
        try:
            if self._client is not None:
                response = await self._client.get(url, params=params, timeout=self._timeout_seconds)
            else:
                async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
                    response = await client.get(url, params=params)
        except httpx.TimeoutException:
            logger.warning("Upstream call timed out", source=self.source, url=url)
            raise UpstreamDegradedError(
                source=self.source,
                message=f"{self.source} service timed out after {self._timeout_seconds}s",
            )
        except httpx.RequestError as exc:
            logger.error("Upstream request failed", source=self.source, url=url, error=str(exc))
            raise UpstreamDegradedError(source=self.source, message=f"{self.source} service unavailable") from exc

        if not response.is_success:
            logger.error(
                "Upstream returned unexpected status",
                source=self.source,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise UpstreamDegradedError(
                source=self.source,
                message=f"{self.source} service returned status {response.status_code}",
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise UpstreamDegradedError(source=self.source, message=f"{self.source} returned invalid JSON") from exc
        return self._parse(body)

    def _parse(self, body: Any) -> CategoryResult:
        if not isinstance(body, dict) or not isinstance(body.get("passed"), bool):
            raise UpstreamDegradedError(
                source=self.source,
                message=f"{self.source} response is missing a boolean 'passed' field",
            )
        severity = body.get("severity")
        try:
            parsed_severity = Severity(severity) if severity else None
        except ValueError:
            logger.warning("Ignoring unknown severity from upstream", source=self.source, severity=severity)
            parsed_severity = None

        details = body.get("details")
        return CategoryResult(
            category=self._category,
            passed=body["passed"],
            message=str(body.get("message") or ("Passed" if body["passed"] else "Failed")),
            reason_codes=tuple(str(code) for code in body.get("reason_codes") or []),
            evidence_refs=tuple(str(ref) for ref in body.get("evidence_refs") or []),
            details=dict(details) if isinstance(details, dict) else {},
            severity=parsed_severity,
            requires_review=bool(body.get("requires_review", False)),
        )


class HttpEntitlementChecker(_UpstreamClient):
    """EntitlementChecker backed by the entitlement service."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(base_url, ReadinessCategory.ENTITLEMENT, timeout_seconds, client)

    async def check(self, user_id: str, operation: str) -> CategoryResult:
        return await self._fetch(f"/v1/entitlements/{user_id}", params={"operation": operation})


class HttpAccountReadinessChecker(_UpstreamClient):
    """AccountReadinessChecker backed by the account service."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(base_url, ReadinessCategory.ACCOUNT_STATE, timeout_seconds, client)

    async def check(self, user_id: str) -> CategoryResult:
        return await self._fetch(f"/v1/accounts/{user_id}/readiness")


class HttpIdentityVerificationReader(_UpstreamClient):
    """IdentityVerificationReader backed by the identity verification service."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(base_url, ReadinessCategory.KYC_AML, timeout_seconds, client)

    async def get_status(self, user_id: str) -> CategoryResult:
        return await self._fetch(f"/v1/identity/{user_id}/status")


class HttpWhitelistEligibilityChecker(_UpstreamClient):
    """WhitelistEligibilityChecker backed by the whitelist service."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(base_url, ReadinessCategory.WHITELIST, timeout_seconds, client)

    async def check(self, user_id: str, token_context: TokenContext) -> CategoryResult:
        params = {"token_type": token_context.token_type, "network": token_context.network}
        if token_context.token_id:
            params["token_id"] = token_context.token_id
        return await self._fetch(f"/v1/whitelist/{user_id}/eligibility", params=params)


class HttpIntegrationHealthProbe(_UpstreamClient):
    """IntegrationHealthProbe backed by the network integration health service."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(base_url, ReadinessCategory.INTEGRATION, timeout_seconds, client)

    async def check(self, network: str) -> CategoryResult:
        return await self._fetch(f"/v1/networks/{network}/health")
