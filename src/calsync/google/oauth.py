"""Google OAuth token endpoint clients and PKCE helpers.

``TokenRefresher`` runs the refresh-token grant for sync runs.
``AuthorizationCodeExchanger`` runs the authorization-code grant that
finishes the connect flow. Both POST form bodies to the same endpoint and
never log token values.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
from collections.abc import Callable, Sequence
from typing import Any
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from calsync.errors import AuthorizationCodeExchangeError, TokenRefreshError
from calsync.models import AccessTokenGrant, AuthorizationGrant, now_ms

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_OAUTH_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_CALENDAR_SCOPES: tuple[str, ...] = ("https://www.googleapis.com/auth/calendar.readonly",)

DEFAULT_EXPIRES_IN_SECONDS = 3600
CODE_VERIFIER_LENGTH = 64
_CODE_VERIFIER_CHARSET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~"


class OAuthClientCredentials(BaseModel):
    """OAuth client registration; the secret is absent for public PKCE clients."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: str | None = None

    @field_validator("client_id")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized

    @field_validator("client_secret")
    @classmethod
    def _normalize_secret(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS


def safe_google_error_message(response: httpx.Response) -> str:
    """Extract a short, single-line error message from a Google error response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        description = payload.get("error_description")
        if isinstance(description, str) and description.strip():
            return " ".join(description.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


def generate_state() -> str:
    """Generate a cryptographically random CSRF state token."""
    return secrets.token_urlsafe(32)


def generate_code_verifier(length: int = CODE_VERIFIER_LENGTH) -> str:
    if not 43 <= length <= 128:
        raise ValueError("PKCE code verifier length must be between 43 and 128")
    return "".join(secrets.choice(_CODE_VERIFIER_CHARSET) for _ in range(length))


def derive_code_challenge(verifier: str) -> str:
    """S256 challenge: base64url(sha256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def build_authorization_url(
    *,
    client_id: str,
    redirect_uri: str,
    state: str,
    code_challenge: str,
    scopes: Sequence[str] = GOOGLE_CALENDAR_SCOPES,
) -> str:
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(scopes),
        "state": state,
        "access_type": "offline",
        "include_granted_scopes": "true",
        "prompt": "consent",
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
    }
    return f"{GOOGLE_OAUTH_AUTHORIZE_URL}?{urlencode(params)}"


class _GoogleTokenEndpoint:
    def __init__(
        self,
        credentials: OAuthClientCredentials,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: httpx.Timeout | None = None,
        token_url: str = GOOGLE_OAUTH_TOKEN_URL,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._credentials = credentials
        self._token_url = token_url
        self._clock = clock
        self._owns_http_client = http_client is None
        self._http_client = (
            http_client
            if http_client is not None
            else httpx.AsyncClient(timeout=timeout or httpx.Timeout(30.0, connect=10.0))
        )

    def _client_form(self) -> dict[str, str]:
        form = {"client_id": self._credentials.client_id}
        if self._credentials.client_secret:
            form["client_secret"] = self._credentials.client_secret
        return form

    async def _post(self, form: dict[str, str]) -> httpx.Response:
        return await self._http_client.post(
            self._token_url,
            data={**self._client_form(), **form},
            headers={"Accept": "application/json"},
        )

    def _expires_at(self, payload: dict[str, Any]) -> int:
        return self._clock() + _coerce_expires_in_seconds(payload.get("expires_in")) * 1000

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()


class TokenRefresher(_GoogleTokenEndpoint):
    """Exchange a refresh token for a fresh access token.

    Failures raise ``TokenRefreshError``; a rejected refresh token needs a new
    authorization, so nothing here retries.
    """

    async def refresh(self, refresh_token: str) -> AccessTokenGrant:
        if not refresh_token or not refresh_token.strip():
            raise TokenRefreshError("Refresh token is empty; reconnect Google Calendar")

        try:
            response = await self._post(
                {"refresh_token": refresh_token.strip(), "grant_type": "refresh_token"}
            )
        except httpx.HTTPError as exc:
            raise TokenRefreshError(f"Google OAuth token refresh request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise TokenRefreshError(
                "Google OAuth token refresh failed "
                f"({response.status_code}): {safe_google_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise TokenRefreshError("Google OAuth token endpoint returned invalid JSON") from exc

        if not isinstance(payload, dict):
            raise TokenRefreshError("Google OAuth token endpoint returned an unexpected payload")

        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise TokenRefreshError(
                "Google OAuth token response is missing a non-empty access_token"
            )

        scope = payload.get("scope")
        token_type = payload.get("token_type")
        grant = AccessTokenGrant(
            access_token=access_token.strip(),
            expires_at=self._expires_at(payload),
            scope=scope if isinstance(scope, str) else None,
            token_type=token_type if isinstance(token_type, str) else None,
        )
        logger.debug("Refreshed Google access token (expires_at=%d)", grant.expires_at)
        return grant


class AuthorizationCodeExchanger(_GoogleTokenEndpoint):
    """Run the PKCE authorization-code grant."""

    async def exchange(
        self,
        *,
        code: str,
        code_verifier: str,
        redirect_uri: str,
    ) -> AuthorizationGrant:
        try:
            response = await self._post(
                {
                    "code": code,
                    "code_verifier": code_verifier,
                    "redirect_uri": redirect_uri,
                    "grant_type": "authorization_code",
                    "access_type": "offline",
                }
            )
        except httpx.HTTPError as exc:
            raise AuthorizationCodeExchangeError(
                status_code=502,
                payload={"error": "token_exchange_failed"},
                message=f"Google OAuth token exchange request failed: {exc}",
            ) from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.status_code < 200 or response.status_code >= 300:
            error_payload = (
                payload
                if isinstance(payload, dict)
                else {"error": "token_exchange_failed", "error_description": response.text}
            )
            raise AuthorizationCodeExchangeError(
                status_code=response.status_code or 500,
                payload=error_payload,
                message=(
                    "Google OAuth token exchange failed "
                    f"({response.status_code}): {safe_google_error_message(response)}"
                ),
            )

        if not isinstance(payload, dict):
            raise AuthorizationCodeExchangeError(
                status_code=502,
                payload={"error": "invalid_response"},
                message="Google OAuth token endpoint returned a non-JSON response",
            )

        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise AuthorizationCodeExchangeError(
                status_code=502,
                payload={"error": "invalid_response"},
                message="Google OAuth token response is missing access_token",
            )

        refresh_token = payload.get("refresh_token")
        if not isinstance(refresh_token, str) or not refresh_token:
            refresh_token = None
        scope = payload.get("scope")
        token_type = payload.get("token_type")
        return AuthorizationGrant(
            access_token=access_token.strip(),
            expires_at=self._expires_at(payload),
            refresh_token=refresh_token,
            scope=scope if isinstance(scope, str) else None,
            token_type=token_type if isinstance(token_type, str) else None,
            raw=payload,
        )
