"""Persistence components: job table and send audit trail."""

from lyra_notify.persistence.base import PersistenceAdapter
from lyra_notify.persistence.database import get_connection
from lyra_notify.persistence.sqlite_store import SQLitePersistence

__all__ = [
    "PersistenceAdapter",
    "SQLitePersistence",
    "get_connection",
]
