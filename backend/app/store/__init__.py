"""
Durable state for the alert engine.

    from backend.app.store import get_store

    store = get_store()   # SqlAlertStore or InMemoryAlertStore per STORE_BACKEND
"""

from __future__ import annotations

import logging
from typing import Optional

from backend.app.core.config import settings
from backend.app.store.base import AlertStore
from backend.app.store.memory import InMemoryAlertStore

logger = logging.getLogger(__name__)

_store: Optional[AlertStore] = None


def build_store(backend: Optional[str] = None) -> AlertStore:
    backend = (backend or settings.STORE_BACKEND).lower()
    if backend == "memory":
        return InMemoryAlertStore()
    if backend == "sql":
        from backend.app.store.sql import SqlAlertStore
        return SqlAlertStore()
    raise ValueError(f"Unknown STORE_BACKEND '{backend}' (expected sql | memory)")


def get_store() -> AlertStore:
    """Process-wide store, created on first use."""
    global _store
    if _store is None:
        _store = build_store()
        logger.info("Alert store initialised: %s", type(_store).__name__)
    return _store


def set_store(store: Optional[AlertStore]) -> None:
    """Replace the process-wide store (tests, app startup)."""
    global _store
    _store = store


__all__ = ["AlertStore", "InMemoryAlertStore", "build_store", "get_store", "set_store"]
