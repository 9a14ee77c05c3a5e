"""
Kademlia DHT (Distributed Hash Table)

Stores BEP44 mutable and immutable items for pointer lookups.
"""

from .kademlia import (
    KademliaDHT,
    KademliaRoutingTable,
    KBucket,
    DHTNode,
    DHTItem,
    xor_distance,
    id_to_bucket_index,
    mutable_target,
    immutable_target,
    K,
    B
)

__all__ = [
    "KademliaDHT",
    "KademliaRoutingTable",
    "KBucket",
    "DHTNode",
    "DHTItem",
    "xor_distance",
    "id_to_bucket_index",
    "mutable_target",
    "immutable_target",
    "K",
    "B"
]
