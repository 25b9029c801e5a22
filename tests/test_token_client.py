"""Tests for the CA service-token client and the caller-token verifier."""

import asyncio
import json

import httpx
import pytest

from prefetch_engine.errors import AuthError, AuthUnavailable
from prefetch_engine.services.auth import TokenVerifier, parse_permissions
from prefetch_engine.services.token_client import TokenClient

CA_URL = "http://ca.test"


def _client(clock, **kwargs) -> TokenClient:
    return TokenClient(CA_URL, "timeline-prefetch", "secret", max_retries=2, clock=clock, **kwargs)


def _token_body(clock, token="tok-1", lifetime_s=3600):
    return {"success": True, "token": token, "expiresAt": int((clock() + lifetime_s) * 1000)}


# ═══════════════ SERVICE TOKENS ═══════════════


class TestTokenClient:
    @pytest.mark.asyncio
    async def test_issue_request_shape(self, httpx_mock, clock):
        httpx_mock.add_response(url=f"{CA_URL}/api/tokens/service", json=_token_body(clock))
        client = _client(clock)

        token = await client.get_service_token("timeline", ["read"])

        assert token == "tok-1"
        request = httpx_mock.get_request()
        assert request.headers["X-Service-Id"] == "timeline-prefetch"
        assert request.headers["X-Service-Key"] == "secret"
        body = json.loads(request.content)
        assert body["targetService"] == "timeline"
        assert body["permissions"] == {"read": True}
        assert body["expirySeconds"] == 3600

    @pytest.mark.asyncio
    async def test_token_cached_until_safety_margin(self, httpx_mock, clock):
        httpx_mock.add_response(json=_token_body(clock, "tok-1"))
        client = _client(clock)

        assert await client.get_service_token("timeline", ["read"]) == "tok-1"
        clock.advance(3000)  # 600s left, outside the 300s margin
        assert await client.get_service_token("timeline", ["read"]) == "tok-1"
        assert len(httpx_mock.get_requests()) == 1

        httpx_mock.add_response(json=_token_body(clock, "tok-2"))
        clock.advance(400)  # 200s left, inside the margin
        assert await client.get_service_token("timeline", ["read"]) == "tok-2"

    @pytest.mark.asyncio
    async def test_permission_order_shares_cache_entry(self, httpx_mock, clock):
        httpx_mock.add_response(json=_token_body(clock))
        client = _client(clock)
        await client.get_service_token("timeline", ["write", "read"])
        await client.get_service_token("timeline", ["read", "write"])
        assert len(httpx_mock.get_requests()) == 1

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_request(self, httpx_mock, clock):
        httpx_mock.add_response(json=_token_body(clock))
        client = _client(clock)

        tokens = await asyncio.gather(*[
            client.get_service_token("timeline", ["read"]) for _ in range(10)
        ])

        assert set(tokens) == {"tok-1"}
        assert len(httpx_mock.get_requests()) == 1

    @pytest.mark.asyncio
    async def test_retries_server_errors(self, httpx_mock, clock):
        httpx_mock.add_response(status_code=503)
        httpx_mock.add_response(json=_token_body(clock))
        client = _client(clock)
        assert await client.get_service_token("timeline", ["read"]) == "tok-1"
        assert len(httpx_mock.get_requests()) == 2

    @pytest.mark.asyncio
    async def test_unreachable_ca_raises(self, httpx_mock, clock):
        for _ in range(3):
            httpx_mock.add_exception(httpx.ConnectError("refused"))
        client = _client(clock)
        with pytest.raises(AuthUnavailable):
            await client.get_service_token("timeline", ["read"])

    @pytest.mark.asyncio
    async def test_refused_request_not_retried(self, httpx_mock, clock):
        httpx_mock.add_response(status_code=401, json={"success": False})
        client = _client(clock)
        with pytest.raises(AuthUnavailable):
            await client.get_service_token("timeline", ["read"])
        assert len(httpx_mock.get_requests()) == 1

    @pytest.mark.asyncio
    async def test_token_inside_margin_rejected(self, httpx_mock, clock):
        httpx_mock.add_response(json=_token_body(clock, lifetime_s=60))
        client = _client(clock)
        with pytest.raises(AuthUnavailable):
            await client.get_service_token("timeline", ["read"])

    @pytest.mark.asyncio
    async def test_invalidate_forces_reissue(self, httpx_mock, clock):
        httpx_mock.add_response(json=_token_body(clock, "tok-1"))
        httpx_mock.add_response(json=_token_body(clock, "tok-2"))
        client = _client(clock)

        assert await client.get_service_token("timeline", ["read"]) == "tok-1"
        client.invalidate("timeline", ["read"])
        assert await client.get_service_token("timeline", ["read"]) == "tok-2"

    @pytest.mark.asyncio
    async def test_token_object_id_accepted(self, httpx_mock, clock):
        body = _token_body(clock)
        body["token"] = {"id": "tok-obj", "permissions": {"read": True}}
        httpx_mock.add_response(json=body)
        client = _client(clock)
        assert await client.get_service_token("timeline", ["read"]) == "tok-obj"


# ═══════════════ CALLER TOKENS ═══════════════


class TestTokenVerifier:
    def test_parse_permissions(self):
        assert parse_permissions({"read": True, "write": False}) == {"read"}
        assert parse_permissions(["read", "delete"]) == {"read", "delete"}
        assert parse_permissions(None) == frozenset()

    @pytest.mark.asyncio
    async def test_valid_token(self, httpx_mock):
        httpx_mock.add_response(
            url=f"{CA_URL}/api/tokens/validate",
            json={"valid": True, "permissions": {"read": True, "write": True}},
        )
        verifier = TokenVerifier(CA_URL)
        assert await verifier.verify("caller") == {"read", "write"}
        assert json.loads(httpx_mock.get_request().content)["token"] == "caller"

    @pytest.mark.asyncio
    async def test_result_cached(self, httpx_mock):
        httpx_mock.add_response(json={"valid": True, "permissions": ["read"]})
        verifier = TokenVerifier(CA_URL)
        await verifier.verify("caller")
        await verifier.verify("caller")
        assert len(httpx_mock.get_requests()) == 1

    @pytest.mark.asyncio
    async def test_invalid_token(self, httpx_mock):
        httpx_mock.add_response(status_code=401, json={"valid": False})
        verifier = TokenVerifier(CA_URL)
        with pytest.raises(AuthError):
            await verifier.verify("bogus")

    @pytest.mark.asyncio
    async def test_ca_down(self, httpx_mock):
        httpx_mock.add_exception(httpx.ConnectError("refused"))
        verifier = TokenVerifier(CA_URL)
        with pytest.raises(AuthUnavailable):
            await verifier.verify("caller")
