from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, List, Optional, Union

from starlette.requests import HTTPConnection

if TYPE_CHECKING:
    from apigate.service.auth import AuthFailure, Principal
    from apigate.service.rate_limit import RateLimitDecision


@dataclass
class RequestContext:
    """Per-request state created when a request enters the pipeline.

    Everything except ``principal`` and the collected rate-limit decisions is
    fixed at creation. ``principal`` is written at most once, by the auth gate.
    ``auth_result`` caches the single authentication attempt made per request.
    """

    correlation_id: str
    method: str
    path: str
    client_ip: Optional[str] = None
    started_at: float = field(default_factory=time.perf_counter)
    rate_limits: List["RateLimitDecision"] = field(default_factory=list)
    auth_result: Optional[Union["Principal", "AuthFailure"]] = field(default=None, repr=False)
    _principal: Optional["Principal"] = field(default=None, repr=False)
    _principal_resolved: bool = field(default=False, repr=False)

    @property
    def principal(self) -> Optional["Principal"]:
        return self._principal

    @property
    def principal_id(self) -> Optional[str]:
        return self._principal.id if self._principal else None

    @property
    def principal_resolved(self) -> bool:
        return self._principal_resolved

    def set_principal(self, principal: Optional["Principal"]) -> None:
        if self._principal_resolved:
            if principal is not None and self._principal is not None and principal.id == self._principal.id:
                return
            raise RuntimeError("request principal is already set")
        self._principal = principal
        self._principal_resolved = True

    def elapsed_ms(self) -> float:
        return round((time.perf_counter() - self.started_at) * 1000, 2)


def get_request_context(conn: HTTPConnection) -> RequestContext:
    """Return the context the pipeline attached to this request."""
    context = getattr(conn.state, "context", None)
    if context is None:
        raise RuntimeError("request context missing; is RequestPipeline installed?")
    return context
