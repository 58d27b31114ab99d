from typing import Any, Dict, NamedTuple, Optional

from pydantic import BaseModel


class RequestLogMeta(BaseModel):
    model: Optional[str] = None
    mapped_provider: Optional[str] = None
    injected_provider: Optional[bool] = None
    upstream_url: Optional[str] = None
    upstream_status: Optional[int] = None


class InjectionResult(NamedTuple):
    body: Dict[str, Any]
    injected: bool
    provider: Optional[str] = None


class HealthResponse(BaseModel):
    ok: bool = True
    hasApiKey: bool
    modelProviderMappings: int
    allowFallbacks: bool
    bindHost: str
    port: int
