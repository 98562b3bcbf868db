"""Connect, disconnect and calendar-selection flows for one user's integration.

The connect flow is a PKCE authorization-code grant:

1. ``begin_authorization`` creates a CSRF state token and a code verifier,
   remembers them in the ``OAuthSessionStore`` and returns the consent URL.
2. ``complete_authorization`` consumes the state (one-time use, 10 minute
   TTL), exchanges the code and stores the tokens with a reset cursor set.

Token values are never logged.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field

from calsync.errors import (
    CalendarListMissingError,
    IntegrationNotFoundError,
    OAuthStateError,
    ReauthRequiredError,
)
from calsync.google.oauth import (
    GOOGLE_CALENDAR_SCOPES,
    AuthorizationCodeExchanger,
    build_authorization_url,
    derive_code_challenge,
    generate_code_verifier,
    generate_state,
)
from calsync.models import (
    AuthorizationGrant,
    CalendarListEntry,
    IntegrationPatch,
    IntegrationRecord,
    IntegrationStatus,
    SyncStatus,
    now_ms,
)
from calsync.selection import apply_calendar_selection, narrow_sync_tokens, normalize_selected_ids
from calsync.stores.base import SyncStore
from calsync.sync import SyncOrchestrator

logger = logging.getLogger(__name__)

OAUTH_SESSION_TTL_SECONDS = 600


@dataclass
class OAuthSession:
    state: str
    code_verifier: str
    redirect_uri: str
    user_id: str
    return_url: str | None = None
    expires_at: float = 0.0


@dataclass(frozen=True)
class AuthorizationStart:
    authorization_url: str
    state: str


@dataclass(frozen=True)
class AuthorizationResult:
    user_id: str
    return_url: str | None
    scope: str | None


class OAuthSessionStore:
    """Process-local, one-time-use store of pending OAuth sessions.

    Entries are keyed by state token and expire after ``ttl_seconds``. The
    store is per process; run a single worker or share state externally.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = OAUTH_SESSION_TTL_SECONDS,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._monotonic = monotonic
        self._sessions: dict[str, OAuthSession] = {}

    def put(self, session: OAuthSession) -> None:
        session.expires_at = self._monotonic() + self._ttl_seconds
        self._sessions[session.state] = session
        self._evict_expired()

    def consume(self, state: str) -> OAuthSession | None:
        """Pop the session for ``state``; ``None`` when unknown or expired."""
        self._evict_expired()
        session = self._sessions.pop(state, None)
        if session is None or self._monotonic() >= session.expires_at:
            return None
        return session

    def _evict_expired(self) -> None:
        now = self._monotonic()
        expired = [state for state, session in self._sessions.items() if now >= session.expires_at]
        for state in expired:
            del self._sessions[state]

    def clear(self) -> None:
        """Drop every pending session. Used in tests."""
        self._sessions.clear()

    def __len__(self) -> int:
        return len(self._sessions)


@dataclass
class GoogleCalendarIntegration:
    """User-facing integration operations layered over a ``SyncOrchestrator``."""

    orchestrator: SyncOrchestrator
    exchanger: AuthorizationCodeExchanger
    client_id: str
    sessions: OAuthSessionStore = field(default_factory=OAuthSessionStore)
    scopes: Sequence[str] = GOOGLE_CALENDAR_SCOPES
    clock: Callable[[], int] = now_ms

    @property
    def store(self) -> SyncStore:
        return self.orchestrator.store

    # ------------------------------------------------------------------
    # Connect
    # ------------------------------------------------------------------

    def begin_authorization(
        self,
        user_id: str,
        redirect_uri: str,
        *,
        return_url: str | None = None,
    ) -> AuthorizationStart:
        state = generate_state()
        verifier = generate_code_verifier()
        self.sessions.put(
            OAuthSession(
                state=state,
                code_verifier=verifier,
                redirect_uri=redirect_uri,
                user_id=user_id,
                return_url=return_url,
            )
        )
        url = build_authorization_url(
            client_id=self.client_id,
            redirect_uri=redirect_uri,
            state=state,
            code_challenge=derive_code_challenge(verifier),
            scopes=self.scopes,
        )
        logger.info("Google Calendar authorization started (state=%s...)", state[:8])
        return AuthorizationStart(authorization_url=url, state=state)

    async def complete_authorization(self, state: str, code: str) -> AuthorizationResult:
        session = self.sessions.consume(state)
        if session is None:
            raise OAuthStateError("OAuth state is invalid or expired; restart the connect flow")

        grant = await self.exchanger.exchange(
            code=code,
            code_verifier=session.code_verifier,
            redirect_uri=session.redirect_uri,
        )
        await self.connect(session.user_id, grant)
        return AuthorizationResult(
            user_id=session.user_id, return_url=session.return_url, scope=grant.scope
        )

    async def connect(self, user_id: str, grant: AuthorizationGrant) -> None:
        """Store a fresh grant and reset every sync cursor.

        Google omits the refresh token on some re-consents; the stored one is
        kept in that case. Without either the user has to reconnect.
        """
        await self.store.ensure_integration(user_id)
        existing = await self.store.load_integration(user_id)
        refresh_token = grant.refresh_token or (existing.refresh_token if existing else None)
        if not refresh_token:
            raise ReauthRequiredError(
                "Google did not return a refresh token; revoke access and reconnect"
            )

        now = self.clock()
        await self.store.update_integration(
            user_id,
            IntegrationPatch(
                access_token=grant.access_token,
                refresh_token=refresh_token,
                token_type=grant.token_type or "Bearer",
                scope=grant.scope or " ".join(self.scopes),
                expires_at=grant.expires_at,
                sync_tokens=None,
                calendar_list=None,
                last_synced_at=None,
                last_sync_status=SyncStatus.IDLE,
                last_sync_error=None,
                updated_at=now,
            ),
        )
        logger.info("Google Calendar connected for user %s", user_id)

    async def exchange_code(self, *, code: str, code_verifier: str, redirect_uri: str) -> dict:
        """Bare code exchange; returns the provider's token payload unchanged."""
        grant = await self.exchanger.exchange(
            code=code, code_verifier=code_verifier, redirect_uri=redirect_uri
        )
        return grant.raw

    # ------------------------------------------------------------------
    # Disconnect and status
    # ------------------------------------------------------------------

    async def disconnect(self, user_id: str) -> int:
        """Purge every stored event, then delete the integration."""
        removed = await self.store.remove_all_events(user_id)
        await self.store.delete_integration(user_id)
        logger.info("Google Calendar disconnected for user %s (removed=%d)", user_id, removed)
        return removed

    async def status(self, user_id: str) -> IntegrationStatus:
        return IntegrationStatus.from_record(await self.store.load_integration(user_id))

    # ------------------------------------------------------------------
    # Calendar list and selection
    # ------------------------------------------------------------------

    async def _load_connected(self, user_id: str) -> IntegrationRecord:
        await self.store.ensure_integration(user_id)
        integration = await self.store.load_integration(user_id)
        if integration is None:
            raise IntegrationNotFoundError("Google Calendar integration was not found")
        if not integration.refresh_token:
            raise ReauthRequiredError("Google Calendar is not connected")
        return integration

    async def refresh_calendar_list(self, user_id: str) -> list[CalendarListEntry]:
        """Fetch the provider's calendar list, keep selections and persist it."""
        integration = await self._load_connected(user_id)
        access_token, _ = await self.orchestrator.ensure_access_token(user_id, integration)
        calendar_list = await self.orchestrator.fetch_calendar_list(integration, access_token)
        await self.store.update_integration(
            user_id, IntegrationPatch(calendar_list=calendar_list, updated_at=self.clock())
        )
        return calendar_list

    async def update_selection(
        self, user_id: str, selected_calendar_ids: Iterable[str]
    ) -> list[CalendarListEntry]:
        """Apply an explicit selection and purge events of deselected calendars."""
        selected_ids = normalize_selected_ids(list(selected_calendar_ids)) or []
        integration = await self._load_connected(user_id)
        if not integration.calendar_list:
            raise CalendarListMissingError(
                "No calendar list stored yet; load the calendar list first"
            )

        calendar_list, deselected = apply_calendar_selection(
            integration.calendar_list, selected_ids
        )
        selected_now = [entry.id for entry in calendar_list if entry.selected]
        await self.store.update_integration(
            user_id,
            IntegrationPatch(
                calendar_list=calendar_list,
                sync_tokens=narrow_sync_tokens(integration.sync_tokens, selected_now),
                updated_at=self.clock(),
            ),
        )
        for calendar_id in deselected:
            removed = await self.store.remove_calendar_events(user_id, calendar_id)
            logger.info("Purged %d events of deselected calendar %s", removed, calendar_id)
        return calendar_list
