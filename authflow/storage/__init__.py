"""Storage module for AuthFlow.

Provides SQL persistence for sessions, pending requests and consumed
message IDs.
"""

from authflow.storage.database import (
    DEFAULT_DB_PATH,
    ENV_DATABASE_URL,
    Database,
    create_database_engine,
    get_database_url,
)
from authflow.storage.models import (
    Base,
    ConsumedMessageRecord,
    PendingRequestRecord,
    SessionRecord,
)
from authflow.storage.stores import SQLPendingRequestStore, SQLReplayGuard, SQLSessionStore

__all__ = [
    # Database management
    "Database",
    "create_database_engine",
    "get_database_url",
    # Constants
    "DEFAULT_DB_PATH",
    "ENV_DATABASE_URL",
    # Models
    "Base",
    "ConsumedMessageRecord",
    "PendingRequestRecord",
    "SessionRecord",
    # Stores
    "SQLPendingRequestStore",
    "SQLReplayGuard",
    "SQLSessionStore",
]
