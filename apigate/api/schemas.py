from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ErrorBody(BaseModel):
    """Error payload with a stable machine code."""

    model_config = ConfigDict(populate_by_name=True)

    code: str
    message: str
    correlation_id: Optional[str] = Field(None, alias="correlationId")
    details: Optional[Any] = None  # object, array, or absent
    stack: Optional[str] = None  # never present in production


class ErrorEnvelope(BaseModel):
    success: Literal[False] = False
    error: ErrorBody

    def to_content(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class DependencyHealth(BaseModel):
    status: Literal["up", "down", "not_configured"]
    latency_ms: Optional[float] = None
    error: Optional[str] = None


class HealthResponse(BaseModel):
    status: Literal["healthy", "degraded", "unhealthy"]
    checks: Dict[str, DependencyHealth]
    timestamp: str
    uptime_seconds: float
    version: str
    environment: str
    total_latency_ms: float


class PrincipalResponse(BaseModel):
    id: str
    role: str
    email: Optional[str] = None
    tier: str


class SessionResponse(BaseModel):
    authenticated: bool
    principal: Optional[PrincipalResponse] = None
