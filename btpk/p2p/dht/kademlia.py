"""
Kademlia DHT (Distributed Hash Table) holding BEP44 items.

Stores mutable (signed, sequence-numbered) and immutable items keyed by
160-bit targets and keeps a Kademlia routing table of known nodes, which
decides how many contacts a put reaches.

Key Features:
- 160-bit ID space, XOR distance metric for routing
- K-buckets (20 peers per bucket, 160 buckets total)
- Mutable items: target = SHA-1(public key || salt), verified on store
- Immutable items: target = SHA-1(bencoded value)
- Sequence rules: lower sequence rejected, equal sequence only as a refresh
"""

import hashlib
import time
from typing import List, Dict, Optional, Tuple
from dataclasses import dataclass, field
import logging

from fastbencode import bencode

from btpk.core.errors import Conflict, InvalidArgument, SignatureMismatch
from btpk.core.record_codec import encode_signature_data, verify

logger = logging.getLogger(__name__)


# Kademlia constants
K = 20  # Bucket size (k closest nodes)
B = 160  # ID space bits

MAX_VALUE_SIZE = 1000  # BEP44 limit on the bencoded value


def xor_distance(id1: str, id2: str) -> int:
    """
    Calculate XOR distance between two 160-bit IDs (hex strings).

    XOR metric properties:
    - d(x,x) = 0
    - d(x,y) = d(y,x)
    - d(x,y) + d(y,z) >= d(x,z)
    """
    int1 = int(id1[:40], 16)
    int2 = int(id2[:40], 16)
    return int1 ^ int2


def id_to_bucket_index(peer_id: str, target_id: str) -> int:
    """Bucket index = floor(log2(distance)), 0 for identical IDs."""
    distance = xor_distance(peer_id, target_id)
    if distance == 0:
        return 0
    return distance.bit_length() - 1


def mutable_target(public_key: bytes, salt: Optional[bytes] = None) -> str:
    """Lookup target of a mutable item."""
    return hashlib.sha1(public_key + (salt or b"")).hexdigest()


def immutable_target(value: Dict[bytes, bytes]) -> str:
    """Lookup target of an immutable item."""
    return hashlib.sha1(bencode(value)).hexdigest()


@dataclass
class DHTNode:
    """Represents a node in the DHT."""

    peer_id: str
    address: str  # IP:port
    last_seen: float = field(default_factory=time.time)

    def is_alive(self, timeout: int = 900) -> bool:
        """Check if node responded recently (default: 15 minutes)."""
        return (time.time() - self.last_seen) < timeout

    def touch(self):
        self.last_seen = time.time()


@dataclass
class DHTItem:
    """Item stored under a target."""

    target: str
    value: Dict[bytes, bytes]
    sequence: Optional[int] = None  # None for immutable items
    signature: Optional[bytes] = None
    public_key: Optional[bytes] = None
    salt: Optional[bytes] = None
    stored_at: float = field(default_factory=time.time)

    @property
    def mutable(self) -> bool:
        return self.public_key is not None


class KBucket:
    """
    K-bucket: Stores up to K nodes at a specific distance range.

    Least-recently-seen eviction: new nodes go to the tail, seen nodes
    move to the tail, dead head nodes are evicted first when full.
    """

    def __init__(self, max_size: int = K):
        self.max_size = max_size
        self.nodes: List[DHTNode] = []

    def add_node(self, node: DHTNode) -> bool:
        """
        Add node to bucket (LRU eviction policy).

        Returns:
            True if added/updated, False if bucket full
        """
        for i, existing in enumerate(self.nodes):
            if existing.peer_id == node.peer_id:
                self.nodes.pop(i)
                self.nodes.append(existing)
                existing.touch()
                return True

        if len(self.nodes) < self.max_size:
            self.nodes.append(node)
            return True

        for i, existing in enumerate(self.nodes):
            if not existing.is_alive():
                self.nodes.pop(i)
                self.nodes.append(node)
                logger.debug(f"Evicted dead node: {existing.peer_id[:16]}...")
                return True

        return False

    def get_nodes(self) -> List[DHTNode]:
        """Nodes in bucket, most recent first."""
        return list(reversed(self.nodes))

    def size(self) -> int:
        return len(self.nodes)


class KademliaRoutingTable:
    """
    Kademlia routing table with 160 k-buckets.

    Each bucket i contains nodes at distance [2^i, 2^(i+1) - 1] from us.
    """

    def __init__(self, node_id: str):
        self.node_id = node_id
        self.buckets: List[KBucket] = [KBucket() for _ in range(B)]

    def add_node(self, node: DHTNode) -> bool:
        """Add node to its k-bucket; never adds ourselves."""
        if node.peer_id == self.node_id:
            return False

        bucket_index = id_to_bucket_index(node.peer_id, self.node_id)
        return self.buckets[bucket_index].add_node(node)

    def find_closest_nodes(self, target_id: str, count: int = K) -> List[DHTNode]:
        """Up to count known nodes, sorted by XOR distance to target."""
        all_nodes = []
        for bucket in self.buckets:
            all_nodes.extend(bucket.get_nodes())

        all_nodes.sort(key=lambda n: xor_distance(n.peer_id, target_id))
        return all_nodes[:count]

    def get_stats(self) -> Dict:
        total_nodes = sum(bucket.size() for bucket in self.buckets)
        non_empty_buckets = sum(1 for bucket in self.buckets if bucket.size() > 0)

        return {
            "total_nodes": total_nodes,
            "non_empty_buckets": non_empty_buckets,
            "buckets": B,
            "max_nodes_per_bucket": K
        }


class KademliaDHT:
    """
    In-process Kademlia DHT for BEP44 items.

    Every stored item lives in this instance's storage; the routing table
    decides the replication set a put is counted against.
    """

    def __init__(self, node_id: str, node_address: str = "127.0.0.1:6881"):
        """
        Initialize Kademlia DHT.

        Args:
            node_id: Our node's 160-bit ID (hex)
            node_address: Our node's address (IP:port)
        """
        self.node_id = node_id
        self.node_address = node_address
        self.routing_table = KademliaRoutingTable(node_id)
        self.storage: Dict[str, DHTItem] = {}

        logger.info(f"Initialized Kademlia DHT for node: {node_id[:16]}...")

    def bootstrap(self, bootstrap_nodes: List[Tuple[str, str]]):
        """
        Seed the routing table with initial nodes.

        Args:
            bootstrap_nodes: List of (peer_id, address) tuples
        """
        for peer_id, address in bootstrap_nodes:
            self.routing_table.add_node(DHTNode(peer_id=peer_id, address=address))
        logger.info(f"Bootstrapped DHT with {len(bootstrap_nodes)} nodes")

    def put_mutable(
        self,
        public_key: bytes,
        value: Dict[bytes, bytes],
        sequence: int,
        signature: bytes,
        salt: Optional[bytes] = None
    ) -> Tuple[str, int]:
        """
        Store a signed mutable item.

        Returns:
            (target, number of nodes holding the item)

        Raises:
            SignatureMismatch: if the signature does not verify
            Conflict: if the sequence regresses, or repeats with a new signature
        """
        self._check_size(value)
        message = encode_signature_data(sequence, value, salt)
        if not verify(signature, message, public_key):
            raise SignatureMismatch(f"invalid signature for {public_key.hex()[:16]}...")

        target = mutable_target(public_key, salt)
        existing = self.storage.get(target)
        if existing is not None:
            if sequence < existing.sequence:
                raise Conflict(
                    f"sequence {sequence} is less than current {existing.sequence} "
                    f"for {target[:16]}..."
                )
            if sequence == existing.sequence and signature != existing.signature:
                raise Conflict(f"sequence {sequence} already used with another value for {target[:16]}...")

        self.storage[target] = DHTItem(
            target=target,
            value=dict(value),
            sequence=sequence,
            signature=bytes(signature),
            public_key=bytes(public_key),
            salt=salt
        )
        return target, self._replicate(target)

    def put_immutable(self, value: Dict[bytes, bytes]) -> Tuple[str, int]:
        """Store an immutable item under the hash of its encoding."""
        self._check_size(value)
        target = immutable_target(value)
        self.storage[target] = DHTItem(target=target, value=dict(value))
        return target, self._replicate(target)

    def get(self, target: str) -> Optional[DHTItem]:
        """Item stored under target, or None."""
        return self.storage.get(target)

    def find_node(self, target_id: str) -> List[DHTNode]:
        """K closest known nodes to target."""
        return self.routing_table.find_closest_nodes(target_id, count=K)

    def _replicate(self, target: str) -> int:
        closest = self.find_node(target)
        for node in closest:
            logger.debug(f"Stored {target[:16]}... at {node.address}")
        return len(closest) + 1  # plus ourselves

    def _check_size(self, value: Dict[bytes, bytes]):
        size = len(bencode(value))
        if size > MAX_VALUE_SIZE:
            raise InvalidArgument(f"value is {size} bytes, limit is {MAX_VALUE_SIZE}")

    def get_stats(self) -> Dict:
        rt_stats = self.routing_table.get_stats()
        return {
            **rt_stats,
            "local_storage_keys": len(self.storage),
            "node_id": self.node_id[:16] + "..."
        }
