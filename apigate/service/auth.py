from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional, Protocol, Sequence, Set, Tuple, Union

import httpx

from apigate.logging import get_logger
from apigate.service.errors import AppError

if TYPE_CHECKING:
    from apigate.service.context import RequestContext

logger = get_logger(__name__)

SUPER_ADMIN_ROLE = "super_admin"
ADMIN_ROLES = ("admin", SUPER_ADMIN_ROLE)

API_KEY_PREFIX = "bmn_live_"
API_KEY_SCOPES = ("brands:read", "brands:write", "products:read", "mockups:generate", "analytics:read")

# Header values produced by clients that serialised an unset token
_NULLISH_TOKENS = {"undefined", "null"}


@dataclass(frozen=True)
class Principal:
    """Authenticated identity attached to a request.

    ``api_key_id`` and ``scopes`` are only set for API-key callers.
    """

    id: str
    role: str = "user"
    email: Optional[str] = None
    tier: str = "free"
    scopes: Tuple[str, ...] = ()
    api_key_id: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


@dataclass(frozen=True)
class AuthFailure:
    """Why authentication failed. ``reason`` is for logs only, never for clients."""

    reason: str
    error: AppError


class IdentityVerificationError(Exception):
    """Token rejected by, or not verifiable against, the identity provider.

    ``client_message`` replaces the generic 401 message when the cause is
    safe to disclose (malformed or revoked API keys).
    """

    def __init__(self, reason: str, *, client_message: Optional[str] = None) -> None:
        super().__init__(reason)
        self.client_message = client_message


class TokenVerifier(Protocol):
    async def verify(self, token: str) -> Principal:
        ...


class IdentityProvider(TokenVerifier, Protocol):
    async def ping(self) -> None:
        ...

    async def close(self) -> None:
        ...


class HttpIdentityProvider:
    """Verify bearer tokens by asking the provider's user endpoint."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def verify(self, token: str) -> Principal:
        try:
            resp = await self._client.get(
                "/auth/v1/user",
                headers={"apikey": self._api_key, "Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            raise IdentityVerificationError(f"provider unreachable: {exc}") from exc
        if resp.status_code in (401, 403):
            raise IdentityVerificationError("invalid or expired token")
        if resp.status_code >= 400:
            raise IdentityVerificationError(f"provider error: HTTP {resp.status_code}")
        try:
            payload = resp.json()
        except ValueError as exc:
            raise IdentityVerificationError("provider returned invalid JSON") from exc
        return principal_from_claims(payload)

    async def ping(self) -> None:
        resp = await self._client.get("/auth/v1/health", headers={"apikey": self._api_key})
        resp.raise_for_status()

    async def close(self) -> None:
        await self._client.aclose()


def principal_from_claims(payload: Any) -> Principal:
    if not isinstance(payload, dict) or not payload.get("id"):
        raise IdentityVerificationError("user not found for token")
    app_meta = payload.get("app_metadata") or {}
    return Principal(
        id=str(payload["id"]),
        role=str(app_meta.get("role") or "user"),
        email=payload.get("email"),
        tier=str(app_meta.get("subscription_tier") or "free"),
        claims=payload,
    )


# -- API keys ----------------------------------------------------------------------


def hash_api_key(plain_key: str) -> str:
    """API keys are stored and looked up by their SHA-256 hex digest only."""
    return hashlib.sha256(plain_key.encode("utf-8")).hexdigest()


def is_api_key(token: Optional[str]) -> bool:
    return bool(token) and token.startswith(API_KEY_PREFIX)


@dataclass(frozen=True)
class ApiKeyRecord:
    id: str
    user_id: str
    scopes: Tuple[str, ...] = ()
    revoked: bool = False


class ApiKeyStore(Protocol):
    async def find(self, key_hash: str) -> Optional[ApiKeyRecord]:
        ...

    async def profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        ...

    async def touch(self, key_id: str) -> None:
        ...

    async def close(self) -> None:
        ...


class HttpApiKeyStore:
    """API key lookups through the provider's REST interface."""

    def __init__(
        self,
        base_url: str,
        service_key: str,
        *,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._headers = {"apikey": service_key, "Authorization": f"Bearer {service_key}"}
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def _select(self, table: str, params: Dict[str, str]) -> Optional[Dict[str, Any]]:
        try:
            resp = await self._client.get(f"/rest/v1/{table}", params=params, headers=self._headers)
            resp.raise_for_status()
            rows = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise IdentityVerificationError(f"{table} lookup failed: {exc}") from exc
        if not isinstance(rows, list) or not rows:
            return None
        return rows[0]

    async def find(self, key_hash: str) -> Optional[ApiKeyRecord]:
        row = await self._select(
            "api_keys", {"select": "id,user_id,scopes,revoked_at", "key_hash": f"eq.{key_hash}"}
        )
        if row is None:
            return None
        return ApiKeyRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            scopes=tuple(row.get("scopes") or ()),
            revoked=bool(row.get("revoked_at")),
        )

    async def profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self._select(
            "profiles", {"select": "id,role,subscription_tier", "id": f"eq.{user_id}"}
        )

    async def touch(self, key_id: str) -> None:
        resp = await self._client.patch(
            "/rest/v1/api_keys",
            params={"id": f"eq.{key_id}"},
            json={"last_used_at": datetime.now(timezone.utc).isoformat()},
            headers=self._headers,
        )
        resp.raise_for_status()

    async def close(self) -> None:
        await self._client.aclose()


class ApiKeyVerifier:
    """Verify ``bmn_live_`` API keys by hash; revoked keys are rejected."""

    def __init__(self, store: ApiKeyStore) -> None:
        self.store = store
        self._pending: Set[asyncio.Task] = set()

    async def verify(self, token: str) -> Principal:
        if not is_api_key(token):
            raise IdentityVerificationError(
                "api key format",
                client_message=f"Invalid API key format. Keys must start with {API_KEY_PREFIX}",
            )
        record = await self.store.find(hash_api_key(token))
        if record is None:
            raise IdentityVerificationError("api key not found", client_message="Invalid API key")
        if record.revoked:
            logger.warning("api_key_revoked_used", api_key_id=record.id)
            raise IdentityVerificationError(
                "api key revoked", client_message="This API key has been revoked"
            )

        profile = await self._profile(record.user_id)
        self._schedule_touch(record.id)
        return Principal(
            id=record.user_id,
            role=str(profile.get("role") or "user"),
            tier=str(profile.get("subscription_tier") or "free"),
            scopes=record.scopes,
            api_key_id=record.id,
        )

    async def _profile(self, user_id: str) -> Dict[str, Any]:
        # A missing profile still authenticates the key owner with defaults
        try:
            return await self.store.profile(user_id) or {}
        except IdentityVerificationError as exc:
            logger.warning("api_key_profile_unavailable", user_id=user_id, error=str(exc))
            return {}

    def _schedule_touch(self, key_id: str) -> None:
        task = asyncio.get_running_loop().create_task(self._touch(key_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _touch(self, key_id: str) -> None:
        try:
            await self.store.touch(key_id)
        except Exception as exc:
            logger.warning("api_key_touch_failed", api_key_id=key_id, error=str(exc))

    async def close(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending)
        await self.store.close()


# -- gates -------------------------------------------------------------------------


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    """Return the bearer token, or None when the header is absent or malformed."""
    if not authorization or not authorization.startswith("Bearer "):
        return None
    token = authorization[len("Bearer "):].strip()
    if not token or token in _NULLISH_TOKENS:
        return None
    return token


class AuthGate:
    """Authentication and role checks in front of protected route groups."""

    def __init__(self, provider: TokenVerifier, *, expected: str = "Bearer <token>") -> None:
        self.provider = provider
        self.expected = expected

    async def authenticate(self, authorization: Optional[str]) -> Union[Principal, AuthFailure]:
        token = extract_bearer(authorization)
        if token is None:
            return AuthFailure(
                reason="missing_or_malformed_header",
                error=AppError.unauthenticated(
                    f"Missing or malformed Authorization header. Expected: {self.expected}"
                ),
            )
        try:
            return await self.provider.verify(token)
        except IdentityVerificationError as exc:
            logger.warning("auth_failed", reason=str(exc))
            return AuthFailure(
                reason=str(exc),
                error=AppError.unauthenticated(exc.client_message or "Invalid or expired token"),
            )
        except Exception as exc:
            logger.warning("auth_failed", reason="unexpected_error", error_type=type(exc).__name__, error=str(exc))
            return AuthFailure(
                reason="unexpected_error", error=AppError.unauthenticated("Authentication failed")
            )

    async def resolve(
        self, context: "RequestContext", authorization: Optional[str]
    ) -> Union[Principal, AuthFailure]:
        """Authenticate at most once per request; later gates reuse the outcome."""
        if context.auth_result is None:
            context.auth_result = await self.authenticate(authorization)
        return context.auth_result

    async def optional_authenticate(
        self, authorization: Optional[str], context: Optional["RequestContext"] = None
    ) -> Optional[Principal]:
        """Never fails: any problem yields an anonymous request."""
        if authorization is None:
            return None
        if context is not None:
            result = await self.resolve(context, authorization)
        else:
            result = await self.authenticate(authorization)
        return result if isinstance(result, Principal) else None


def require_role(
    principal: Optional[Principal], *roles: str, message: Optional[str] = None
) -> Principal:
    """Raise ``forbidden`` unless the principal holds one of ``roles``.

    A missing principal means the role check was wired without the
    authentication gate in front of it.
    """
    if principal is None:
        logger.error("role_check_without_principal", roles=list(roles))
        raise AppError.forbidden("Access denied")
    if principal.role not in roles:
        logger.warning("role_check_failed", principal_id=principal.id, role=principal.role, required=list(roles))
        if message is None and set(roles) <= set(ADMIN_ROLES):
            message = "Admin access required"
        raise AppError.forbidden(message)
    return principal


def require_scopes(principal: Principal, scopes: Sequence[str]) -> Principal:
    """Raise ``forbidden`` unless the API key grants every scope in ``scopes``."""
    missing = [scope for scope in scopes if scope not in principal.scopes]
    if missing:
        logger.warning(
            "api_key_scope_insufficient",
            api_key_id=principal.api_key_id,
            required_scopes=list(scopes),
            available_scopes=list(principal.scopes),
        )
        raise AppError.forbidden(
            f"Insufficient scope. This endpoint requires the '{missing[0]}' scope."
        )
    return principal
