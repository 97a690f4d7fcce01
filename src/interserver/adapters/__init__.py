"""Platform adapters."""

from interserver.adapters.base import AdapterBase

__all__ = ["AdapterBase"]
