from __future__ import annotations

from fanout.core.config import Settings
from fanout.core.errors import ConfigError
from fanout.persistence.base import DeliveryStore
from fanout.persistence.db import build_engine
from fanout.persistence.memory import MemoryDeliveryStore
from fanout.persistence.sql import SqlDeliveryStore


def get_store(settings: Settings) -> DeliveryStore:
    # Keep backend selection centralized so the API and the worker always agree.
    backend = (settings.store_backend or "memory").strip().lower()
    if backend == "memory":
        return MemoryDeliveryStore()
    if backend == "sql":
        return SqlDeliveryStore(build_engine(settings))
    raise ConfigError(f"Unsupported store backend: {settings.store_backend}")
