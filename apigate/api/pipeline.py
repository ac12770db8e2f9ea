from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, Tuple

from fastapi import HTTPException
from starlette.datastructures import Headers, MutableHeaders
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from apigate.api.error_handling import handle_exception
from apigate.logging import get_logger, set_correlation_id
from apigate.service.auth import Principal, extract_bearer, is_api_key
from apigate.service.context import RequestContext
from apigate.service.errors import AppError, ErrorKind
from apigate.service.rate_limit import most_restrictive

if TYPE_CHECKING:
    from apigate.service.runtime import Runtime

logger = get_logger(__name__)

HEALTH_PATHS = frozenset({"/health", "/health/", "/healthz"})

CORS_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
CORS_ALLOW_HEADERS = ["Content-Type", "Authorization", "X-Request-ID"]
CORS_EXPOSE_HEADERS = [
    "X-Request-ID",
    "X-RateLimit-Limit",
    "X-RateLimit-Remaining",
    "X-RateLimit-Reset",
    "Retry-After",
]

_SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=(), payment=()",
    "Cross-Origin-Opener-Policy": "same-origin",
}
_CSP = "default-src 'self'; frame-ancestors 'none'; base-uri 'self'; form-action 'self'"
_HSTS = "max-age=63072000; includeSubDomains"


class StageScope(str, Enum):
    GLOBAL = "global"
    ROUTE_GROUP = "route_group"


def _always(flow: "_Flow") -> bool:
    return True


def _not_health(flow: "_Flow") -> bool:
    return flow.path not in HEALTH_PATHS


@dataclass(frozen=True)
class Stage:
    """One named step of the request pipeline.

    ``applies`` decides per request whether a global stage runs. Route-group
    stages are declared here for completeness and applied by the routers.
    """

    name: str
    scope: StageScope = StageScope.GLOBAL
    applies: Callable[["_Flow"], bool] = _always


# Fixed order. Security and origin decisions come before any byte of the body
# is read; the context exists before rate limiting and auth so every denial
# carries a correlation id. A bearer token is resolved once before the general
# limit so it counts per user and tier; route gates still enforce it.
PIPELINE_STAGES: Tuple[Stage, ...] = (
    Stage("context"),
    Stage("security_headers"),
    Stage("drain_gate"),
    Stage("origin_check"),
    Stage("body_limit"),
    Stage("identify", applies=_not_health),
    Stage("general_rate_limit", applies=_not_health),
    Stage("route_gate", scope=StageScope.ROUTE_GROUP),
    Stage("dispatch"),
)


@dataclass
class _Flow:
    scope: Scope
    receive: Receive
    send: Send
    path: str
    headers: Headers
    context: Optional[RequestContext] = None
    origin: Optional[str] = None
    admitted: bool = False
    rejected_draining: bool = False
    preflight: bool = False
    response_started: bool = False
    status_code: Optional[int] = None


class RequestPipeline:
    """ASGI middleware that applies ``PIPELINE_STAGES`` in order.

    Any exception from a stage or the application goes to the terminal
    ``handle_exception``; one ``request_completed`` record is logged per
    request.
    """

    def __init__(
        self,
        app: ASGIApp,
        runtime: "Runtime",
        stages: Tuple[Stage, ...] = PIPELINE_STAGES,
    ) -> None:
        self.app = app
        self.runtime = runtime
        self.settings = runtime.settings
        self.stages = tuple(stages)
        self._handlers: Dict[str, Callable[[_Flow], Any]] = {
            "context": self._establish_context,
            "security_headers": self._wrap_send,
            "drain_gate": self._admit,
            "origin_check": self._check_origin,
            "body_limit": self._limit_body,
            "identify": self._identify,
            "general_rate_limit": self._general_rate_limit,
            "dispatch": self._dispatch,
        }
        unknown = [s.name for s in self.stages if s.scope == StageScope.GLOBAL and s.name not in self._handlers]
        if unknown:
            raise ValueError(f"unknown pipeline stages: {unknown}")
        self.cors = CORSMiddleware(
            app=app,
            allow_origins=self.settings.allowed_origins(),
            allow_credentials=True,
            allow_methods=CORS_METHODS,
            allow_headers=CORS_ALLOW_HEADERS,
            expose_headers=CORS_EXPOSE_HEADERS,
            max_age=3600,
        )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        flow = _Flow(
            scope=scope,
            receive=receive,
            send=send,
            path=scope.get("path", ""),
            headers=Headers(scope=scope),
        )
        try:
            for stage in self.stages:
                if stage.scope != StageScope.GLOBAL or not stage.applies(flow):
                    continue
                response = await self._handlers[stage.name](flow)
                if response is not None:
                    await response(scope, flow.receive, flow.send)
                    break
        except Exception as exc:
            if flow.response_started:
                logger.error(
                    "error_after_response_started",
                    error_type=type(exc).__name__,
                    error=str(exc),
                    path=flow.path,
                )
                raise
            request = Request(scope, flow.receive)
            response = handle_exception(request, exc)
            await response(scope, flow.receive, flow.send)
        finally:
            if flow.admitted:
                self.runtime.lifecycle.request_finished()
            self._log_completed(flow)

    # -- stages ------------------------------------------------------------------

    async def _establish_context(self, flow: _Flow) -> None:
        correlation_id = set_correlation_id(flow.headers.get("x-request-id"))
        flow.context = RequestContext(
            correlation_id=correlation_id,
            method=flow.scope.get("method", "GET"),
            path=flow.path,
            client_ip=self._client_ip(flow),
        )
        flow.scope.setdefault("state", {})["context"] = flow.context

    async def _wrap_send(self, flow: _Flow) -> None:
        downstream = flow.send

        async def send_with_headers(message: Message) -> None:
            if message["type"] == "http.response.start":
                flow.response_started = True
                flow.status_code = message["status"]
                self._decorate(flow, MutableHeaders(scope=message))
            await downstream(message)

        flow.send = send_with_headers

    async def _admit(self, flow: _Flow) -> None:
        if not self.runtime.lifecycle.request_started():
            flow.rejected_draining = True
            raise AppError.upstream_unavailable("Server is shutting down")
        flow.admitted = True

    async def _check_origin(self, flow: _Flow) -> Optional[Response]:
        origin = flow.headers.get("origin")
        if origin is None:
            return None
        if not self.cors.is_allowed_origin(origin=origin):
            raise AppError(ErrorKind.ORIGIN_REJECTED, "Origin not allowed by CORS policy")
        flow.origin = origin
        if flow.scope["method"] == "OPTIONS" and "access-control-request-method" in flow.headers:
            flow.preflight = True
            return self.cors.preflight_response(request_headers=flow.headers)
        return None

    async def _limit_body(self, flow: _Flow) -> None:
        limit = self.settings.max_body_bytes
        declared = flow.headers.get("content-length")
        if declared is not None:
            try:
                declared_size = int(declared)
            except ValueError:
                raise AppError.validation(
                    [{"field": "content-length", "message": "must be an integer"}],
                    "Invalid Content-Length header",
                ) from None
            if declared_size > limit:
                raise AppError(ErrorKind.PAYLOAD_TOO_LARGE, details={"limit": limit})

        upstream = flow.receive
        received = 0

        async def bounded_receive() -> Message:
            nonlocal received
            message = await upstream()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > limit:
                    # Raised inside body parsing, which re-raises HTTP exceptions untouched
                    raise HTTPException(status_code=413, detail=ErrorKind.PAYLOAD_TOO_LARGE.default_message)
            return message

        flow.receive = bounded_receive

    async def _identify(self, flow: _Flow) -> None:
        authorization = flow.headers.get("authorization")
        token = extract_bearer(authorization)
        # API keys are only verified by the API-key gate of their route group
        if token is None or is_api_key(token):
            return
        result = await self.runtime.auth.resolve(flow.context, authorization)
        if isinstance(result, Principal):
            flow.context.set_principal(result)

    async def _general_rate_limit(self, flow: _Flow) -> None:
        denied = await self.runtime.rate_limiter.check_all(
            [self.runtime.policy("general")], flow.context
        )
        if denied is not None:
            raise denied.error

    async def _dispatch(self, flow: _Flow) -> None:
        await self.app(flow.scope, flow.receive, flow.send)

    # -- helpers -------------------------------------------------------------------

    def _client_ip(self, flow: _Flow) -> Optional[str]:
        if self.settings.trust_proxy:
            forwarded = flow.headers.get("x-forwarded-for")
            if forwarded:
                return forwarded.split(",")[0].strip()
        client = flow.scope.get("client")
        return client[0] if client else None

    def _decorate(self, flow: _Flow, headers: MutableHeaders) -> None:
        for name, value in _SECURITY_HEADERS.items():
            headers.setdefault(name, value)
        if not self.settings.is_development:
            headers.setdefault("Content-Security-Policy", _CSP)
        if flow.scope.get("scheme") == "https" or self.settings.is_production:
            headers.setdefault("Strict-Transport-Security", _HSTS)
        if self.settings.api_prefix and flow.path.startswith(self.settings.api_prefix):
            headers.setdefault("Cache-Control", "no-store")
        if flow.context is not None:
            headers["X-Request-ID"] = flow.context.correlation_id
            decision = most_restrictive(flow.context.rate_limits)
            if decision is not None:
                for name, value in decision.headers().items():
                    headers.setdefault(name, value)
        if flow.origin is not None and not flow.preflight:
            headers.update(self.cors.simple_headers)
            headers["Access-Control-Allow-Origin"] = flow.origin
            headers.add_vary_header("Origin")
        if flow.rejected_draining:
            headers["Connection"] = "close"

    def _log_completed(self, flow: _Flow) -> None:
        status = flow.status_code
        if flow.path in HEALTH_PATHS and status is not None and status < 500:
            return
        context = flow.context
        fields: Dict[str, Any] = {
            "method": flow.scope.get("method"),
            "path": flow.path,
            "status_code": status,
            "latency_ms": context.elapsed_ms() if context else None,
            "principal_id": context.principal_id if context else None,
            "client_ip": context.client_ip if context else None,
        }
        if context is not None:
            fields["correlation_id"] = context.correlation_id
        if self.settings.log_request_headers:
            fields["headers"] = dict(flow.headers)
        if status is None:
            logger.warning("request_aborted", **fields)
        elif status >= 500:
            logger.error("request_completed", **fields)
        elif status >= 400:
            logger.warning("request_completed", **fields)
        else:
            logger.info("request_completed", **fields)
