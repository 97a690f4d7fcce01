"""Relay core: registry, correspondence, resolver, dispatcher, bus."""

from interserver.gateway.announcer import Announcer
from interserver.gateway.bus import Bus
from interserver.gateway.correspondence import Correspondence, CorrespondenceTable
from interserver.gateway.dispatcher import RelayDispatcher, RelaySettings, RelayState, decide
from interserver.gateway.registry import ChannelRef, Group, GroupRegistry, GroupSummary
from interserver.gateway.resolver import DeliveryHandle, DeliveryResolver

__all__ = [
    "Announcer",
    "Bus",
    "ChannelRef",
    "Correspondence",
    "CorrespondenceTable",
    "DeliveryHandle",
    "DeliveryResolver",
    "Group",
    "GroupRegistry",
    "GroupSummary",
    "RelayDispatcher",
    "RelaySettings",
    "RelayState",
    "decide",
]
