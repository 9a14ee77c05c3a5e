"""
Peer-to-peer layer: swarm boundary, loopback swarm and pointer protocol.
"""

from .swarm import Swarm, SwarmHandle, SwarmFile, MutableItem, LookupResult
from .loopback import LoopbackSwarm, SwarmNetwork
from .pointer import PointerProtocol, MessageRecord

__all__ = [
    "Swarm",
    "SwarmHandle",
    "SwarmFile",
    "MutableItem",
    "LookupResult",
    "LoopbackSwarm",
    "SwarmNetwork",
    "PointerProtocol",
    "MessageRecord",
]
