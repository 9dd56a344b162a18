"""Durable state stores for submission records and the finalized log."""

from opsledger.stores.base import StateStore
from opsledger.stores.inmemory import InMemoryStateStore
from opsledger.stores.redis_store import RedisStateStore

__all__ = ["StateStore", "InMemoryStateStore", "RedisStateStore"]
