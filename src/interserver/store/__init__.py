"""Registry persistence: JSON store plus the write scheduler."""

from interserver.store.json_store import JsonGroupStore
from interserver.store.scheduler import PersistScheduler

__all__ = ["JsonGroupStore", "PersistScheduler"]
