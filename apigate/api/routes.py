from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse

from apigate.api.schemas import HealthResponse, PrincipalResponse, SessionResponse
from apigate.logging import get_logger
from apigate.service.auth import (
    ADMIN_ROLES,
    SUPER_ADMIN_ROLE,
    AuthFailure,
    Principal,
    require_role,
    require_scopes,
)
from apigate.service.context import get_request_context
from apigate.service.errors import AppError

if TYPE_CHECKING:
    from apigate.service.runtime import Runtime

logger = get_logger(__name__)


def get_runtime(request: Request) -> "Runtime":
    return request.app.state.runtime


# -- gates ---------------------------------------------------------------------------


async def require_auth(
    request: Request, authorization: Optional[str] = Header(None)
) -> Principal:
    """Authenticate the bearer token and attach the principal to the request."""
    runtime = get_runtime(request)
    context = get_request_context(request)
    result = await runtime.auth.resolve(context, authorization)
    if isinstance(result, AuthFailure):
        raise result.error
    context.set_principal(result)
    return result


async def require_admin(principal: Principal = Depends(require_auth)) -> Principal:
    return require_role(principal, *ADMIN_ROLES)


async def require_super_admin(principal: Principal = Depends(require_auth)) -> Principal:
    return require_role(principal, SUPER_ADMIN_ROLE, message="Super admin access required")


async def optional_auth(
    request: Request, authorization: Optional[str] = Header(None)
) -> Optional[Principal]:
    """Attach the principal when the token verifies; never fails the request."""
    runtime = get_runtime(request)
    context = get_request_context(request)
    principal = await runtime.auth.optional_authenticate(authorization, context=context)
    context.set_principal(principal)
    return principal


async def require_api_key(
    request: Request, authorization: Optional[str] = Header(None)
) -> Principal:
    """Authenticate a ``bmn_live_`` API key sent as a bearer token."""
    runtime = get_runtime(request)
    result = await runtime.api_key_auth.authenticate(authorization)
    if isinstance(result, AuthFailure):
        raise result.error
    get_request_context(request).set_principal(result)
    return result


def require_scope(*scopes: str) -> Callable[..., Any]:
    """Dependency requiring an API key that grants every one of ``scopes``."""

    async def enforce(principal: Principal = Depends(require_api_key)) -> Principal:
        return require_scopes(principal, scopes)

    enforce.__name__ = f"require_scope_{'_'.join(s.replace(':', '_') for s in scopes)}"
    return enforce


def rate_limited(*policy_names: str) -> Callable[..., Any]:
    """Dependency enforcing the named policies; every one must allow."""

    async def enforce(request: Request) -> None:
        runtime = get_runtime(request)
        policies = [runtime.policy(name) for name in policy_names]
        denied = await runtime.rate_limiter.check_all(policies, get_request_context(request))
        if denied is not None:
            raise denied.error

    enforce.__name__ = f"rate_limit_{'_'.join(policy_names)}"
    return enforce


# Per-endpoint guard for expensive operations inside authenticated groups
generation_limit = rate_limited("generation")


# -- route groups ------------------------------------------------------------------------


class GateLevel(str, Enum):
    NONE = "none"
    PUBLIC_RATE_LIMITED = "public_rate_limited"
    AUTHENTICATED = "authenticated"
    API_KEY = "api_key"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


@dataclass(frozen=True)
class RouteGroup:
    """Declared access requirements for every route under ``prefix``."""

    prefix: str
    gate: GateLevel
    policies: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.gate == GateLevel.PUBLIC_RATE_LIMITED and not self.policies:
            raise ValueError(f"route group {self.prefix!r} needs at least one policy")

    def dependencies(self) -> List[Any]:
        deps: List[Any] = []
        if self.gate == GateLevel.AUTHENTICATED:
            deps.append(Depends(require_auth))
        elif self.gate == GateLevel.ADMIN:
            deps.append(Depends(require_admin))
        elif self.gate == GateLevel.SUPER_ADMIN:
            deps.append(Depends(require_super_admin))
        elif self.gate == GateLevel.API_KEY:
            deps.append(Depends(require_api_key))
        # After auth so identity-keyed policies see the principal
        if self.policies:
            deps.append(Depends(rate_limited(*self.policies)))
        return deps


ROUTE_GROUPS: Dict[str, RouteGroup] = {
    "auth": RouteGroup("/auth", GateLevel.PUBLIC_RATE_LIMITED, ("auth",)),
    "webhooks": RouteGroup("/webhooks", GateLevel.PUBLIC_RATE_LIMITED, ("webhook",)),
    "account": RouteGroup("/account", GateLevel.AUTHENTICATED),
    "brands": RouteGroup("/brands", GateLevel.AUTHENTICATED),
    "wizard": RouteGroup("/wizard", GateLevel.AUTHENTICATED),
    "products": RouteGroup("/products", GateLevel.AUTHENTICATED),
    "billing": RouteGroup("/billing", GateLevel.AUTHENTICATED),
    "chat": RouteGroup("/chat", GateLevel.AUTHENTICATED),
    "admin": RouteGroup("/admin", GateLevel.ADMIN),
    "system": RouteGroup("/system", GateLevel.SUPER_ADMIN),
    "public": RouteGroup("/public", GateLevel.API_KEY),
}


def mount_route_group(app: FastAPI, group: RouteGroup | str, router: APIRouter) -> None:
    """Include ``router`` under the API prefix with the group's gates applied."""
    if isinstance(group, str):
        group = ROUTE_GROUPS[group]
    prefix = app.state.runtime.settings.api_prefix + group.prefix
    app.include_router(router, prefix=prefix, dependencies=group.dependencies())
    logger.debug("route_group_mounted", prefix=prefix, gate=group.gate.value, policies=list(group.policies))


# -- built-in routes -----------------------------------------------------------------------

health_router = APIRouter()


@health_router.api_route("/health", methods=["GET", "HEAD"], response_model=HealthResponse)
@health_router.api_route(
    "/healthz", methods=["GET", "HEAD"], response_model=HealthResponse, include_in_schema=False
)
async def health(request: Request) -> JSONResponse:
    """Aggregate dependency health; 503 only when a critical dependency is down."""
    runtime = get_runtime(request)
    report = await runtime.health.check()
    return JSONResponse(status_code=runtime.health.http_status(report), content=report)


def _principal_body(principal: Principal) -> PrincipalResponse:
    return PrincipalResponse(id=principal.id, role=principal.role, email=principal.email, tier=principal.tier)


session_router = APIRouter()


@session_router.get("/session", response_model=SessionResponse)
async def session(principal: Optional[Principal] = Depends(optional_auth)) -> SessionResponse:
    if principal is None:
        return SessionResponse(authenticated=False)
    return SessionResponse(authenticated=True, principal=_principal_body(principal))


account_router = APIRouter()


@account_router.get("/me", response_model=PrincipalResponse)
async def me(principal: Principal = Depends(require_auth)) -> PrincipalResponse:
    return _principal_body(principal)


admin_router = APIRouter()


@admin_router.get("/status")
async def admin_status(request: Request) -> Dict[str, Any]:
    runtime = get_runtime(request)
    return {
        "state": runtime.lifecycle.state.value,
        "in_flight": runtime.lifecycle.in_flight,
        "subsystems": sorted(runtime.subsystems),
        "policies": {
            name: {"window_seconds": p.window_seconds, "max_requests": p.max_requests}
            for name, p in runtime.policies.items()
        },
    }


not_found_router = APIRouter()


@not_found_router.api_route(
    "/{path:path}",
    methods=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"],
    include_in_schema=False,
)
async def not_found(request: Request) -> None:
    raise AppError.not_found(request.method, request.url.path)
