"""Tests for the authentication gate and its route-group wiring."""
import hashlib
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from fastapi import APIRouter, Depends

from apigate.app import create_app
from apigate.api.routes import require_scope
from apigate.service.auth import (
    API_KEY_PREFIX,
    ApiKeyRecord,
    ApiKeyVerifier,
    AuthFailure,
    AuthGate,
    HttpApiKeyStore,
    HttpIdentityProvider,
    IdentityVerificationError,
    Principal,
    extract_bearer,
    hash_api_key,
    require_role,
    require_scopes,
)
from apigate.service.context import RequestContext
from apigate.service.errors import AppError, ErrorKind

from conftest import READ_KEY, REVOKED_KEY


class TestExtractBearer:
    @pytest.mark.parametrize(
        "header",
        [None, "", "Bearer", "Bearer ", "Basic abc", "bearer abc", "Bearer undefined", "Bearer null"],
    )
    def test_rejects_missing_or_malformed(self, header):
        assert extract_bearer(header) is None

    def test_extracts_token(self):
        assert extract_bearer("Bearer abc.def") == "abc.def"


class TestAuthGate:
    async def test_success_returns_principal(self, identity_provider, user):
        gate = AuthGate(identity_provider)
        assert await gate.authenticate("Bearer user-token") == user

    async def test_missing_header_does_not_call_provider(self, identity_provider):
        gate = AuthGate(identity_provider)
        result = await gate.authenticate(None)
        assert isinstance(result, AuthFailure)
        assert result.error.kind == ErrorKind.UNAUTHENTICATED
        assert identity_provider.calls == 0

    async def test_verification_failure_logs_reason_at_warning(self, identity_provider):
        gate = AuthGate(identity_provider)
        with patch("apigate.service.auth.logger") as mock_logger:
            result = await gate.authenticate("Bearer expired")
        assert isinstance(result, AuthFailure)
        assert result.error.message == "Invalid or expired token"
        call_args = mock_logger.warning.call_args
        assert call_args[0][0] == "auth_failed"
        assert call_args[1]["reason"] == "invalid or expired token"

    async def test_provider_crash_is_unauthenticated(self):
        provider = AsyncMock()
        provider.verify.side_effect = RuntimeError("socket closed")
        result = await AuthGate(provider).authenticate("Bearer t")
        assert isinstance(result, AuthFailure)
        assert result.error.kind == ErrorKind.UNAUTHENTICATED

    async def test_optional_never_fails(self, identity_provider, user):
        gate = AuthGate(identity_provider)
        assert await gate.optional_authenticate(None) is None
        assert await gate.optional_authenticate("Bearer bogus") is None
        assert await gate.optional_authenticate("Bearer user-token") == user

    async def test_resolve_verifies_once_per_request(self, identity_provider, user):
        gate = AuthGate(identity_provider)
        ctx = RequestContext(correlation_id="cid", method="GET", path="/x")
        assert await gate.resolve(ctx, "Bearer user-token") == user
        assert await gate.resolve(ctx, "Bearer user-token") == user
        assert await gate.optional_authenticate("Bearer user-token", context=ctx) == user
        assert identity_provider.calls == 1

    async def test_expected_hint_in_missing_header_message(self, identity_provider):
        gate = AuthGate(identity_provider, expected=f"Bearer {API_KEY_PREFIX}XXXXX")
        result = await gate.authenticate(None)
        assert result.error.message == (
            "Missing or malformed Authorization header. Expected: Bearer bmn_live_XXXXX"
        )


class TestRequireRole:
    def test_admin_passes(self, admin):
        assert require_role(admin, "admin", "super_admin") is admin

    def test_wrong_role_forbidden(self, user):
        with pytest.raises(AppError) as info:
            require_role(user, "admin", "super_admin")
        assert info.value.kind == ErrorKind.FORBIDDEN
        assert info.value.message == "Admin access required"

    def test_super_admin_only(self, admin):
        with pytest.raises(AppError) as info:
            require_role(admin, "super_admin", message="Super admin access required")
        assert info.value.kind == ErrorKind.FORBIDDEN
        assert info.value.message == "Super admin access required"

    def test_missing_principal_is_rejected_not_passed(self):
        with patch("apigate.service.auth.logger") as mock_logger:
            with pytest.raises(AppError) as info:
                require_role(None, "admin")
        assert info.value.kind == ErrorKind.FORBIDDEN
        assert mock_logger.error.call_args[0][0] == "role_check_without_principal"


class TestHttpIdentityProvider:
    def _provider(self, handler):
        transport = httpx.MockTransport(handler)
        client = httpx.AsyncClient(base_url="https://id.example", transport=transport)
        return HttpIdentityProvider("https://id.example", "service-key", client=client)

    async def test_verify_maps_user_payload(self):
        def handler(request):
            assert request.url.path == "/auth/v1/user"
            assert request.headers["apikey"] == "service-key"
            assert request.headers["authorization"] == "Bearer tok"
            return httpx.Response(
                200,
                json={"id": "u9", "email": "u9@example.com", "app_metadata": {"role": "admin"}},
            )

        provider = self._provider(handler)
        principal = await provider.verify("tok")
        assert principal == Principal(id="u9", role="admin", email="u9@example.com")
        await provider.close()

    async def test_rejected_token_raises(self):
        provider = self._provider(lambda request: httpx.Response(401, json={"msg": "bad jwt"}))
        with pytest.raises(IdentityVerificationError):
            await provider.verify("tok")
        await provider.close()

    async def test_transport_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        provider = self._provider(handler)
        with pytest.raises(IdentityVerificationError):
            await provider.verify("tok")
        await provider.close()


class TestApiKeyVerifier:
    async def test_valid_key_carries_scopes_and_owner_tier(self, api_key_store):
        verifier = ApiKeyVerifier(api_key_store)
        principal = await verifier.verify(READ_KEY)
        assert principal.id == "owner-1"
        assert principal.tier == "pro"
        assert principal.scopes == ("brands:read",)
        assert principal.api_key_id == "key-1"
        assert api_key_store.lookups == [hash_api_key(READ_KEY)]

        await verifier.close()
        assert api_key_store.touched == ["key-1"]
        assert api_key_store.closed

    def test_lookup_is_by_sha256_digest(self):
        digest = hash_api_key("bmn_live_abc")
        assert digest == hashlib.sha256(b"bmn_live_abc").hexdigest()
        assert "bmn_live_abc" not in digest

    @pytest.mark.parametrize(
        "token, message",
        [
            ("sk_live_abc", "Invalid API key format. Keys must start with bmn_live_"),
            ("bmn_live_unknown", "Invalid API key"),
            (REVOKED_KEY, "This API key has been revoked"),
        ],
    )
    async def test_rejections_are_unauthenticated_with_reason(self, api_key_store, token, message):
        gate = AuthGate(ApiKeyVerifier(api_key_store))
        result = await gate.authenticate(f"Bearer {token}")
        assert isinstance(result, AuthFailure)
        assert result.error.kind == ErrorKind.UNAUTHENTICATED
        assert result.error.message == message
        assert api_key_store.touched == []

    async def test_touch_failure_is_logged_not_raised(self, api_key_store):
        async def broken_touch(key_id):
            raise ConnectionError("rest api down")

        api_key_store.touch = broken_touch
        verifier = ApiKeyVerifier(api_key_store)
        with patch("apigate.service.auth.logger") as mock_logger:
            principal = await verifier.verify(READ_KEY)
            await verifier.close()
        assert principal.api_key_id == "key-1"
        call_args = mock_logger.warning.call_args
        assert call_args[0][0] == "api_key_touch_failed"
        assert call_args[1]["api_key_id"] == "key-1"


class TestRequireScopes:
    def test_granted_scope_passes(self):
        principal = Principal(id="o1", scopes=("brands:read", "products:read"))
        assert require_scopes(principal, ["brands:read"]) is principal

    def test_missing_scope_names_it(self):
        principal = Principal(id="o1", scopes=("brands:read",), api_key_id="k1")
        with patch("apigate.service.auth.logger") as mock_logger:
            with pytest.raises(AppError) as info:
                require_scopes(principal, ["brands:read", "mockups:generate"])
        assert info.value.kind == ErrorKind.FORBIDDEN
        assert info.value.message == (
            "Insufficient scope. This endpoint requires the 'mockups:generate' scope."
        )
        assert mock_logger.warning.call_args[0][0] == "api_key_scope_insufficient"


class TestHttpApiKeyStore:
    def _store(self, handler):
        transport = httpx.MockTransport(handler)
        client = httpx.AsyncClient(base_url="https://id.example", transport=transport)
        return HttpApiKeyStore("https://id.example", "service-key", client=client)

    async def test_find_queries_by_hash(self):
        def handler(request):
            assert request.url.path == "/rest/v1/api_keys"
            assert request.url.params["key_hash"] == "eq.abc123"
            assert request.headers["apikey"] == "service-key"
            return httpx.Response(
                200,
                json=[{"id": "k1", "user_id": "u1", "scopes": ["brands:read"], "revoked_at": None}],
            )

        store = self._store(handler)
        assert await store.find("abc123") == ApiKeyRecord(id="k1", user_id="u1", scopes=("brands:read",))
        await store.close()

    async def test_revoked_and_missing(self):
        rows = {
            "eq.revoked": [{"id": "k2", "user_id": "u1", "scopes": [], "revoked_at": "2024-01-01T00:00:00Z"}],
            "eq.missing": [],
        }
        store = self._store(lambda request: httpx.Response(200, json=rows[request.url.params["key_hash"]]))
        assert (await store.find("revoked")).revoked
        assert await store.find("missing") is None
        await store.close()

    async def test_touch_patches_last_used(self):
        seen = []

        def handler(request):
            seen.append((request.method, request.url.params["id"], request.content))
            return httpx.Response(204)

        store = self._store(handler)
        await store.touch("k1")
        assert seen[0][0] == "PATCH"
        assert seen[0][1] == "eq.k1"
        assert b"last_used_at" in seen[0][2]
        await store.close()

    async def test_unreachable_lookup_raises_verification_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        store = self._store(handler)
        with pytest.raises(IdentityVerificationError):
            await store.find("abc")
        await store.close()


def _gated_routers(handler_calls):
    brands = APIRouter()

    @brands.get("/")
    async def list_brands():
        handler_calls.append("brands")
        return {"items": []}

    public = APIRouter()

    @public.get("/brands", dependencies=[Depends(require_scope("brands:read"))])
    async def public_brands():
        handler_calls.append("public_brands")
        return {"items": []}

    @public.post("/mockups", dependencies=[Depends(require_scope("mockups:generate"))])
    async def public_mockups():
        handler_calls.append("public_mockups")
        return {"queued": True}

    system = APIRouter()

    @system.get("/flags")
    async def flags():
        handler_calls.append("flags")
        return {"flags": {}}

    return [("brands", brands), ("public", public), ("system", system)]


class TestRouteGates:
    @pytest.fixture
    def handler_calls(self):
        return []

    @pytest.fixture
    def client(self, runtime, handler_calls):
        from fastapi.testclient import TestClient

        app = create_app(runtime, route_groups=_gated_routers(handler_calls))
        with TestClient(app, raise_server_exceptions=False) as test_client:
            yield test_client

    @pytest.mark.parametrize("header", [None, "Token abc", "Bearer", "Bearer undefined"])
    def test_missing_or_malformed_is_unauthorized_without_handler(self, client, handler_calls, header):
        headers = {"Authorization": header} if header is not None else {}
        resp = client.get("/api/v1/brands/", headers=headers)
        assert resp.status_code == 401
        body = resp.json()
        assert body["success"] is False
        assert body["error"]["code"] == "UNAUTHORIZED"
        assert body["error"]["correlationId"] == resp.headers["X-Request-ID"]
        assert handler_calls == []

    def test_valid_token_reaches_handler(self, client, handler_calls):
        resp = client.get("/api/v1/brands/", headers={"Authorization": "Bearer user-token"})
        assert resp.status_code == 200
        assert handler_calls == ["brands"]

    def test_admin_group_forbids_regular_user(self, client):
        resp = client.get("/api/v1/admin/status", headers={"Authorization": "Bearer user-token"})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "FORBIDDEN"

    def test_admin_group_allows_admin(self, client):
        resp = client.get("/api/v1/admin/status", headers={"Authorization": "Bearer admin-token"})
        assert resp.status_code == 200
        assert resp.json()["state"] == "ready"

    def test_optional_auth_anonymous_and_authenticated(self, client, user):
        anon = client.get("/api/v1/auth/session", headers={"Authorization": "Bearer bogus"})
        assert anon.status_code == 200
        assert anon.json() == {"authenticated": False, "principal": None}

        known = client.get("/api/v1/auth/session", headers={"Authorization": "Bearer user-token"})
        assert known.json()["principal"]["id"] == user.id

    def test_me_returns_principal(self, client, user):
        resp = client.get("/api/v1/account/me", headers={"Authorization": "Bearer user-token"})
        assert resp.status_code == 200
        assert resp.json()["id"] == user.id

    def test_each_request_verifies_the_token_once(self, client, identity_provider):
        client.get("/api/v1/account/me", headers={"Authorization": "Bearer user-token"})
        assert identity_provider.calls == 1

    def test_system_group_requires_super_admin(self, client, handler_calls):
        for token in ("user-token", "admin-token"):
            resp = client.get("/api/v1/system/flags", headers={"Authorization": f"Bearer {token}"})
            assert resp.status_code == 403
            assert resp.json()["error"]["message"] == "Super admin access required"
        assert handler_calls == []

        resp = client.get("/api/v1/system/flags", headers={"Authorization": "Bearer root-token"})
        assert resp.status_code == 200
        assert handler_calls == ["flags"]

    def test_api_key_with_scope_reaches_handler(self, client, handler_calls):
        resp = client.get("/api/v1/public/brands", headers={"Authorization": f"Bearer {READ_KEY}"})
        assert resp.status_code == 200
        assert handler_calls == ["public_brands"]

    def test_api_key_without_scope_is_forbidden(self, client, handler_calls):
        resp = client.post("/api/v1/public/mockups", headers={"Authorization": f"Bearer {READ_KEY}"})
        assert resp.status_code == 403
        assert resp.json()["error"]["message"] == (
            "Insufficient scope. This endpoint requires the 'mockups:generate' scope."
        )
        assert handler_calls == []

    @pytest.mark.parametrize(
        "header, message",
        [
            (None, "Missing or malformed Authorization header. Expected: Bearer bmn_live_XXXXX"),
            ("Bearer user-token", "Invalid API key format. Keys must start with bmn_live_"),
            ("Bearer bmn_live_unknown", "Invalid API key"),
            (f"Bearer {REVOKED_KEY}", "This API key has been revoked"),
        ],
    )
    def test_api_key_rejections(self, client, handler_calls, header, message):
        headers = {"Authorization": header} if header is not None else {}
        resp = client.get("/api/v1/public/brands", headers=headers)
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "UNAUTHORIZED"
        assert resp.json()["error"]["message"] == message
        assert handler_calls == []


def test_api_key_last_used_is_recorded(runtime, api_key_store):
    from fastapi.testclient import TestClient

    app = create_app(runtime, route_groups=_gated_routers([]))
    with TestClient(app, raise_server_exceptions=False) as test_client:
        resp = test_client.get("/api/v1/public/brands", headers={"Authorization": f"Bearer {READ_KEY}"})
        assert resp.status_code == 200
    # pending updates are awaited during shutdown
    assert api_key_store.touched == ["key-1"]
    assert api_key_store.closed
