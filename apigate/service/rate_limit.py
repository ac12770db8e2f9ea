from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable, Dict, Mapping, Optional, Protocol, Sequence, Tuple

from apigate.logging import get_logger
from apigate.service.context import RequestContext
from apigate.service.errors import AppError, ErrorKind
from apigate.storage.redis_cache import CounterStoreUnavailable

if TYPE_CHECKING:
    from apigate.service.auth import Principal

logger = get_logger(__name__)

# Requests per window by subscription tier for identity-keyed policies
DEFAULT_TIER = "free"
TIER_LIMITS: Dict[str, int] = {"free": 100, "starter": 300, "pro": 1000, "agency": 3000}


class KeyStrategy(str, Enum):
    """How the counter key is derived from a request."""

    IDENTITY_OR_ORIGIN = "identity_or_origin"
    ORIGIN = "origin"


class StoreFailureMode(str, Enum):
    """What a policy does when the counter store is unreachable."""

    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    window_seconds: int
    max_requests: int
    key_by: KeyStrategy = KeyStrategy.IDENTITY_OR_ORIGIN
    message: str = "Too many requests. Please slow down."
    on_store_failure: StoreFailureMode = StoreFailureMode.FAIL_OPEN
    version: int = 1
    tier_limits: Optional[Mapping[str, int]] = field(default=None, hash=False)
    exempt_roles: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.window_seconds <= 0:
            raise ValueError(f"policy {self.name!r}: window_seconds must be positive")
        if self.max_requests <= 0:
            raise ValueError(f"policy {self.name!r}: max_requests must be positive")
        if self.tier_limits is not None:
            if self.key_by != KeyStrategy.IDENTITY_OR_ORIGIN:
                raise ValueError(f"policy {self.name!r}: tier limits need an identity-keyed policy")
            if any(limit <= 0 for limit in self.tier_limits.values()):
                raise ValueError(f"policy {self.name!r}: tier limits must be positive")

    def limit_for(self, principal: Optional["Principal"]) -> Optional[int]:
        """Requests allowed per window for ``principal``; None means exempt.

        Anonymous requests get ``max_requests``. An unknown tier counts as
        the default tier.
        """
        if principal is None:
            return self.max_requests
        if principal.role in self.exempt_roles:
            return None
        if not self.tier_limits:
            return self.max_requests
        fallback = self.tier_limits.get(DEFAULT_TIER, self.max_requests)
        return self.tier_limits.get(principal.tier, fallback)


GENERAL_POLICY = RateLimitPolicy(
    name="general",
    window_seconds=15 * 60,
    max_requests=TIER_LIMITS[DEFAULT_TIER],
    on_store_failure=StoreFailureMode.FAIL_OPEN,
    tier_limits=TIER_LIMITS,
    exempt_roles=("super_admin",),
)
GENERATION_POLICY = RateLimitPolicy(
    name="generation",
    window_seconds=60,
    max_requests=5,
    message="Generation rate limit exceeded. Please wait before generating again.",
    on_store_failure=StoreFailureMode.FAIL_CLOSED,
)
AUTH_POLICY = RateLimitPolicy(
    name="auth",
    window_seconds=15 * 60,
    max_requests=10,
    key_by=KeyStrategy.ORIGIN,
    message="Too many authentication attempts. Please try again in 15 minutes.",
    on_store_failure=StoreFailureMode.FAIL_CLOSED,
)
WEBHOOK_POLICY = RateLimitPolicy(
    name="webhook",
    window_seconds=60,
    max_requests=200,
    key_by=KeyStrategy.ORIGIN,
    message="Webhook rate limit exceeded.",
    on_store_failure=StoreFailureMode.FAIL_OPEN,
)

DEFAULT_POLICIES: Dict[str, RateLimitPolicy] = {
    p.name: p for p in (GENERAL_POLICY, GENERATION_POLICY, AUTH_POLICY, WEBHOOK_POLICY)
}


class CounterStore(Protocol):
    async def incr(self, key: str, window_seconds: int) -> Tuple[int, int]:
        ...

    async def ping(self) -> None:
        ...

    async def close(self) -> None:
        ...


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one policy check; ``error`` is set only when denied.

    ``exempt`` decisions were never counted and produce no headers.
    """

    policy: RateLimitPolicy
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int
    error: Optional[AppError] = None
    degraded: bool = False
    exempt: bool = False

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }
        if not self.allowed and self.error is not None and self.error.kind == ErrorKind.RATE_LIMITED:
            headers["Retry-After"] = str(max(1, self.reset_seconds))
        return headers


def most_restrictive(decisions: Sequence[RateLimitDecision]) -> Optional[RateLimitDecision]:
    """Pick the decision whose headers the client should see."""
    counted = [d for d in decisions if not (d.degraded or d.exempt)]
    if not counted:
        return None
    denied = [d for d in counted if not d.allowed]
    if denied:
        return max(denied, key=lambda d: d.reset_seconds)
    return min(counted, key=lambda d: (d.remaining, -d.reset_seconds))


def derive_key(policy: RateLimitPolicy, context: RequestContext) -> str:
    """Identity when authenticated and the policy allows it, else network origin."""
    if policy.key_by == KeyStrategy.IDENTITY_OR_ORIGIN and context.principal_id:
        return f"user:{context.principal_id}"
    return f"ip:{context.client_ip or 'unknown'}"


class RateLimiter:
    """Fixed-window limiter over a shared counter store."""

    def __init__(
        self,
        store: CounterStore,
        *,
        prefix: str = "apigate:rl:",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.prefix = prefix
        self._clock = clock

    def counter_key(self, policy: RateLimitPolicy, derived_key: str, window_id: int) -> str:
        return f"{self.prefix}{policy.name}:v{policy.version}:{derived_key}:{window_id}"

    async def check(self, policy: RateLimitPolicy, context: RequestContext) -> RateLimitDecision:
        now = self._clock()
        window_id = int(now // policy.window_seconds)
        reset_seconds = max(1, math.ceil((window_id + 1) * policy.window_seconds - now))
        limit = policy.limit_for(context.principal)
        if limit is None:
            return RateLimitDecision(
                policy=policy,
                allowed=True,
                limit=0,
                remaining=0,
                reset_seconds=reset_seconds,
                exempt=True,
            )
        derived = derive_key(policy, context)
        key = self.counter_key(policy, derived, window_id)
        try:
            count, _ttl = await self.store.incr(key, policy.window_seconds)
        except CounterStoreUnavailable as exc:
            return self._store_failure(policy, limit, derived, exc)

        remaining = limit - count
        if count > limit:
            logger.warning(
                "rate_limit_exceeded",
                policy=policy.name,
                key=derived,
                count=count,
                limit=limit,
            )
            return RateLimitDecision(
                policy=policy,
                allowed=False,
                limit=limit,
                remaining=0,
                reset_seconds=reset_seconds,
                error=AppError.rate_limited(policy.message, retry_after=reset_seconds),
            )
        return RateLimitDecision(
            policy=policy,
            allowed=True,
            limit=limit,
            remaining=remaining,
            reset_seconds=reset_seconds,
        )

    def _store_failure(
        self, policy: RateLimitPolicy, limit: int, derived: str, exc: Exception
    ) -> RateLimitDecision:
        fail_open = policy.on_store_failure == StoreFailureMode.FAIL_OPEN
        logger.warning(
            "rate_limit_store_unavailable",
            policy=policy.name,
            key=derived,
            mode=policy.on_store_failure.value,
            error=str(exc),
        )
        return RateLimitDecision(
            policy=policy,
            allowed=fail_open,
            limit=limit,
            remaining=limit,
            reset_seconds=policy.window_seconds,
            error=None if fail_open else AppError.upstream_unavailable(
                "Rate limiting is temporarily unavailable. Please retry shortly."
            ),
            degraded=True,
        )

    async def check_all(
        self, policies: Sequence[RateLimitPolicy], context: RequestContext
    ) -> Optional[RateLimitDecision]:
        """Check every policy; all must allow.

        Returns the first denying decision, or None when every policy allowed.
        Each decision is recorded on the request context for response headers.
        """
        for policy in policies:
            decision = await self.check(policy, context)
            context.rate_limits.append(decision)
            if not decision.allowed:
                return decision
        return None
