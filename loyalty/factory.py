from typing import Optional

from .config import Settings, get_settings
from .notifier import LoggingNotifier, Notifier
from .service import LedgerService
from .sql_store import SqlLedgerStore
from .store import InMemoryLedgerStore, LedgerStore


def build_store(settings: Settings) -> LedgerStore:
    if settings.database_url:
        store = SqlLedgerStore.from_url(settings.database_url, timeout=settings.store_timeout_seconds)
        store.create_schema()
        return store
    return InMemoryLedgerStore(timeout=settings.store_timeout_seconds)


def build_service(settings: Optional[Settings] = None, notifier: Optional[Notifier] = None) -> LedgerService:
    settings = settings or get_settings()
    return LedgerService.from_settings(settings, build_store(settings), notifier or LoggingNotifier())
