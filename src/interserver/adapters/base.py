"""Base adapter: a bus target with a start/stop lifecycle."""

from __future__ import annotations

from abc import ABC, abstractmethod


class AdapterBase(ABC):
    """Thin base for platform adapters. Default accept_event/push_event ignore everything."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Adapter identifier, also used as the bus source (e.g. 'discord')."""
        ...

    def accept_event(self, source: str, evt: object) -> bool:
        return False

    def push_event(self, source: str, evt: object) -> None:
        pass

    @abstractmethod
    async def start(self) -> None:
        """Connect and register platform handlers."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Disconnect and release resources."""
        ...
