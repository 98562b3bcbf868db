"""Request and response models for the calsync HTTP API.

Every success body is ``{"data": T, "meta": {...}}`` and every error body is
``{"error": {"code", "message", "details"}}``. Request bodies accept the
camelCase keys the web client sends.
"""

from __future__ import annotations

from datetime import datetime
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


class ApiMeta(BaseModel):
    """Extensible metadata bag attached to every API response."""

    model_config = {"extra": "allow"}


T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict | None = None


class ErrorResponse(BaseModel):
    error: ErrorDetail


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class _CamelRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class SyncRequest(_CamelRequest):
    force_full_sync: bool = False
    time_min: datetime | None = None
    time_max: datetime | None = None


class SelectionUpdateRequest(_CamelRequest):
    selected_calendar_ids: list[str]


class OAuthStartRequest(_CamelRequest):
    redirect_uri: str | None = None
    return_url: str | None = None


class OAuthCallbackRequest(_CamelRequest):
    state: str = Field(min_length=1)
    code: str = Field(min_length=1)


class TokenExchangeRequest(_CamelRequest):
    """Fields are optional so missing ones map to ``invalid_request``."""

    code: str | None = None
    code_verifier: str | None = None
    redirect_uri: str | None = None


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class OAuthStartResponse(BaseModel):
    authorization_url: str
    state: str


class OAuthCallbackResponse(BaseModel):
    connected: bool = True
    return_url: str | None = None
    scope: str | None = None


class DisconnectResponse(BaseModel):
    disconnected: bool = True
    removed_events: int = 0
