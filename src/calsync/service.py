"""Assemble the sync components from a ``CalsyncConfig``.

``build_service`` is shared by the API lifespan and the CLI. It owns one
``httpx.AsyncClient`` for every Google endpoint, the store backend and,
for the postgres backend, the asyncpg pool.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from calsync.config import CalsyncConfig, ConfigError
from calsync.db import Database
from calsync.events import EventsView
from calsync.google.calendar_api import GoogleCalendarApi
from calsync.google.oauth import (
    AuthorizationCodeExchanger,
    OAuthClientCredentials,
    TokenRefresher,
)
from calsync.integration import GoogleCalendarIntegration
from calsync.mapping import EventMapper
from calsync.scheduler import AutoSyncScheduler
from calsync.stores import InMemorySyncStore, RestDocumentSyncStore, ServerSyncStore, SyncStore
from calsync.sync import SyncOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class CalsyncService:
    config: CalsyncConfig
    http_client: httpx.AsyncClient
    store: SyncStore
    orchestrator: SyncOrchestrator
    integration: GoogleCalendarIntegration
    events: EventsView
    scheduler: AutoSyncScheduler
    database: Database | None = None
    owns_http_client: bool = True

    async def aclose(self) -> None:
        await self.scheduler.shutdown()
        await self.store.close()
        if self.database is not None:
            await self.database.close()
        if self.owns_http_client:
            await self.http_client.aclose()
        logger.info("calsync service closed")


async def _build_store(
    config: CalsyncConfig, http_client: httpx.AsyncClient
) -> tuple[SyncStore, Database | None]:
    store_config = config.store
    if store_config.backend == "postgres":
        if store_config.database_url:
            database = Database.from_url(store_config.database_url)
        else:
            database = Database.from_env()
        pool = await database.connect()
        return ServerSyncStore(pool), database
    if store_config.backend == "rest":
        if not store_config.rest_token or not store_config.rest_project_id:
            raise ConfigError("REST store requires rest_project_id and rest_token")
        return (
            RestDocumentSyncStore(
                store_config.rest_token,
                store_config.rest_project_id,
                http_client=http_client,
            ),
            None,
        )
    logger.warning("Using the in-memory store; integration state is lost on exit")
    return InMemorySyncStore(), None


async def build_service(
    config: CalsyncConfig,
    *,
    http_client: httpx.AsyncClient | None = None,
    store: SyncStore | None = None,
) -> CalsyncService:
    """Create every component; ``store`` overrides the configured backend."""
    if not config.google.client_id:
        raise ConfigError(
            "calsync.google.client_id is required (or set GOOGLE_CALENDAR_CLIENT_ID)"
        )

    owns_http_client = http_client is None
    client = http_client or httpx.AsyncClient(timeout=config.http.timeout())
    database: Database | None = None
    if store is None:
        store, database = await _build_store(config, client)

    credentials = OAuthClientCredentials(
        client_id=config.google.client_id, client_secret=config.google.client_secret
    )
    orchestrator = SyncOrchestrator(
        store,
        TokenRefresher(credentials, http_client=client),
        GoogleCalendarApi(http_client=client),
        EventMapper(
            default_time_zone=config.time_zone,
            fiscal_year_start_month=config.fiscal_year_start_month,
        ),
        settings=config.sync.settings(),
    )
    integration = GoogleCalendarIntegration(
        orchestrator=orchestrator,
        exchanger=AuthorizationCodeExchanger(credentials, http_client=client),
        client_id=credentials.client_id,
        scopes=config.google.scopes,
    )
    scheduler = AutoSyncScheduler(
        orchestrator, interval_seconds=config.sync.auto_sync_interval_seconds
    )
    logger.info("calsync service ready (store=%s)", config.store.backend)
    return CalsyncService(
        config=config,
        http_client=client,
        store=store,
        orchestrator=orchestrator,
        integration=integration,
        events=EventsView(store),
        scheduler=scheduler,
        database=database,
        owns_http_client=owns_http_client,
    )
