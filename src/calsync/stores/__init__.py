"""Storage backends for integration and event documents."""

from calsync.stores.base import MAX_EVENTS_PER_BATCH, SyncStore
from calsync.stores.memory import InMemorySyncStore
from calsync.stores.postgres import ServerSyncStore, SessionSyncStore
from calsync.stores.rest import RestDocumentSyncStore

__all__ = [
    "MAX_EVENTS_PER_BATCH",
    "InMemorySyncStore",
    "RestDocumentSyncStore",
    "ServerSyncStore",
    "SessionSyncStore",
    "SyncStore",
]
