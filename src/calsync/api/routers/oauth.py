"""Google Calendar OAuth endpoints (PKCE authorization-code flow).

- ``POST /api/google-calendar/oauth/start``     create state + verifier, return consent URL
- ``POST /api/google-calendar/oauth/callback``  consume state, exchange code, connect
- ``POST /api/google-calendar/oauth/token``     bare code exchange, provider payload returned

Pending sessions live in the process-local ``OAuthSessionStore`` owned by
the integration (10 minute TTL, one-time use).
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from calsync.api.deps import AuthContext, get_auth_context, get_service
from calsync.api.middleware import error_response
from calsync.api.models import (
    ApiResponse,
    OAuthCallbackRequest,
    OAuthCallbackResponse,
    OAuthStartRequest,
    OAuthStartResponse,
    TokenExchangeRequest,
)
from calsync.service import CalsyncService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/google-calendar/oauth", tags=["oauth"])


@router.post("/start", response_model=ApiResponse[OAuthStartResponse])
async def oauth_start(
    request: OAuthStartRequest,
    auth: AuthContext = Depends(get_auth_context),
    service: CalsyncService = Depends(get_service),
) -> ApiResponse[OAuthStartResponse]:
    """Begin the connect flow for the caller.

    The redirect URI falls back to ``calsync.google.redirect_uri``.
    """
    redirect_uri = request.redirect_uri or service.config.google.redirect_uri
    if not redirect_uri:
        raise ValueError("redirectUri is required (no default redirect URI configured)")
    start = service.integration.begin_authorization(
        auth.user_id, redirect_uri, return_url=request.return_url
    )
    return ApiResponse[OAuthStartResponse](
        data=OAuthStartResponse(authorization_url=start.authorization_url, state=start.state)
    )


@router.post("/callback", response_model=ApiResponse[OAuthCallbackResponse])
async def oauth_callback(
    request: OAuthCallbackRequest,
    service: CalsyncService = Depends(get_service),
) -> ApiResponse[OAuthCallbackResponse]:
    """Complete the connect flow.

    The state token identifies the user who started the flow, so this route
    needs no auth context.
    """
    result = await service.integration.complete_authorization(request.state, request.code)
    return ApiResponse[OAuthCallbackResponse](
        data=OAuthCallbackResponse(return_url=result.return_url, scope=result.scope)
    )


@router.post("/token")
async def oauth_token(
    request: TokenExchangeRequest,
    auth: AuthContext = Depends(get_auth_context),
    service: CalsyncService = Depends(get_service),
) -> JSONResponse:
    missing = [
        name
        for name, value in (
            ("code", request.code),
            ("codeVerifier", request.code_verifier),
            ("redirectUri", request.redirect_uri),
        )
        if not value
    ]
    if missing:
        return error_response(
            400,
            "invalid_request",
            f"Missing required field(s): {', '.join(missing)}",
            {"missing": missing},
        )

    payload = await service.integration.exchange_code(
        code=request.code or "",
        code_verifier=request.code_verifier or "",
        redirect_uri=request.redirect_uri or "",
    )
    logger.info("Bare authorization code exchange succeeded for user %s", auth.user_id)
    return JSONResponse(content=payload)
