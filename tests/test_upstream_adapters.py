"""Tests for the HTTP collaborator adapters and the actor identity resolver.

HTTP calls are served by httpx.MockTransport; no network access is needed.
"""

from collections.abc import Callable

import httpx
import pytest

from decision_readiness_engine.adapters.actor_identity import HeaderActorIdentityResolver
from decision_readiness_engine.adapters.upstream import (
    HttpAccountReadinessChecker,
    HttpEntitlementChecker,
    HttpIdentityVerificationReader,
    HttpIntegrationHealthProbe,
    HttpWhitelistEligibilityChecker,
)
from decision_readiness_engine.core.types import ReadinessCategory, Severity, TokenContext
from decision_readiness_engine.errors import UnauthorizedActorError, UpstreamDegradedError

BASE_URL = "http://collaborator.test/"

Handler = Callable[[httpx.Request], httpx.Response]


def _client(handler: Handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _recording(body: dict, status_code: int = 200) -> tuple[Handler, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(status_code, json=body)

    return handler, seen


class TestHttpAdapters:
    async def test_entitlement_success_is_parsed(self) -> None:
        handler, seen = _recording(
            {
                "passed": False,
                "message": "Token deployment limit reached",
                "reason_codes": ["ENTITLEMENT_LIMIT_EXCEEDED"],
                "details": {"estimated_hours": 2},
                "severity": "critical",
            }
        )
        async with _client(handler) as client:
            checker = HttpEntitlementChecker(BASE_URL, client=client)

            result = await checker.check("0xissuer", "token_launch")

        assert seen[0].url.path == "/v1/entitlements/0xissuer"
        assert seen[0].url.params["operation"] == "token_launch"
        assert result.category is ReadinessCategory.ENTITLEMENT
        assert result.passed is False
        assert result.message == "Token deployment limit reached"
        assert result.reason_codes == ("ENTITLEMENT_LIMIT_EXCEEDED",)
        assert result.details == {"estimated_hours": 2}
        assert result.severity is Severity.CRITICAL

    async def test_minimal_body_uses_defaults(self) -> None:
        handler, seen = _recording({"passed": True})
        async with _client(handler) as client:
            result = await HttpAccountReadinessChecker(BASE_URL, client=client).check("0xissuer")

        assert seen[0].url.path == "/v1/accounts/0xissuer/readiness"
        assert result.message == "Passed"
        assert result.severity is None
        assert result.requires_review is False

    async def test_unknown_severity_is_ignored(self) -> None:
        handler, _ = _recording({"passed": False, "severity": "apocalyptic", "requires_review": True})
        async with _client(handler) as client:
            result = await HttpIdentityVerificationReader(BASE_URL, client=client).get_status("0xissuer")

        assert result.category is ReadinessCategory.KYC_AML
        assert result.message == "Failed"
        assert result.severity is None
        assert result.requires_review is True

    async def test_whitelist_sends_token_context(self) -> None:
        handler, seen = _recording({"passed": True})
        async with _client(handler) as client:
            checker = HttpWhitelistEligibilityChecker(BASE_URL, client=client)

            await checker.check("0xissuer", TokenContext(token_type="ERC20", network="base-mainnet", token_id="t-1"))
            await checker.check("0xissuer", TokenContext(token_type="ERC20", network="base-mainnet"))

        assert seen[0].url.path == "/v1/whitelist/0xissuer/eligibility"
        assert dict(seen[0].url.params) == {"token_type": "ERC20", "network": "base-mainnet", "token_id": "t-1"}
        assert "token_id" not in seen[1].url.params

    async def test_integration_probe_path(self) -> None:
        handler, seen = _recording({"passed": True})
        async with _client(handler) as client:
            await HttpIntegrationHealthProbe(BASE_URL, client=client).check("base-mainnet")

        assert seen[0].url.path == "/v1/networks/base-mainnet/health"

    async def test_non_success_status_is_degraded(self) -> None:
        handler, _ = _recording({"error": "down"}, status_code=503)
        async with _client(handler) as client:
            with pytest.raises(UpstreamDegradedError) as exc_info:
                await HttpEntitlementChecker(BASE_URL, client=client).check("0xissuer", "token_launch")

        assert exc_info.value.source == "entitlement"
        assert exc_info.value.message == "entitlement service returned status 503"

    async def test_timeout_is_degraded(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        async with _client(handler) as client:
            with pytest.raises(UpstreamDegradedError) as exc_info:
                await HttpIntegrationHealthProbe(BASE_URL, timeout_seconds=0.5, client=client).check("base-mainnet")

        assert exc_info.value.message == "integration service timed out after 0.5s"

    async def test_connection_error_is_degraded(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(UpstreamDegradedError) as exc_info:
                await HttpAccountReadinessChecker(BASE_URL, client=client).check("0xissuer")

        assert exc_info.value.message == "account_state service unavailable"
        assert "connection refused" not in exc_info.value.message

    async def test_missing_passed_field_is_degraded(self) -> None:
        handler, _ = _recording({"message": "ok"})
        async with _client(handler) as client:
            with pytest.raises(UpstreamDegradedError, match="'passed'"):
                await HttpAccountReadinessChecker(BASE_URL, client=client).check("0xissuer")

    async def test_invalid_json_is_degraded(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>maintenance</html>")

        async with _client(handler) as client:
            with pytest.raises(UpstreamDegradedError, match="invalid JSON"):
                await HttpAccountReadinessChecker(BASE_URL, client=client).check("0xissuer")


class TestHeaderActorIdentityResolver:
    def test_header_is_matched_case_insensitively(self) -> None:
        resolver = HeaderActorIdentityResolver()

        assert resolver.resolve({"X-Actor-Address": " 0xofficer "}) == "0xofficer"

    def test_custom_header(self) -> None:
        resolver = HeaderActorIdentityResolver(header="X-Forwarded-User")

        assert resolver.resolve({"x-forwarded-user": "alice"}) == "alice"

    @pytest.mark.parametrize("headers", [{}, {"x-actor-address": "   "}, {"x-other": "0xofficer"}])
    def test_missing_or_blank_header_is_unauthorized(self, headers: dict[str, str]) -> None:
        with pytest.raises(UnauthorizedActorError):
            HeaderActorIdentityResolver().resolve(headers)
