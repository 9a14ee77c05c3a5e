"""
Loopback swarm.

In-process Swarm implementation: every LoopbackSwarm attached to the same
SwarmNetwork shares one Kademlia DHT and one registry of seeded bundles.
Joining a bundle copies its bytes from a current seeder, so two stores
in one process can publish to and load from each other without sockets.
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from btpk.core.content_addressing import ContentAddressingEngine, DescriptorOptions, list_files
from btpk.core.errors import NotFound
from btpk.core.record_codec import PutReceipt
from .dht.kademlia import DHTNode, KademliaDHT
from .swarm import LookupResult, MutableItem, Swarm, SwarmFile, SwarmHandle

logger = logging.getLogger(__name__)


POLL_INTERVAL = 0.01  # Seconds between seeder checks while leeching


@dataclass
class SeededBundle:
    """Bytes of one bundle as offered by its seeders."""

    infohash: str
    options: DescriptorOptions
    files: Dict[str, bytes] = field(default_factory=dict)
    seeders: Set[str] = field(default_factory=set)


class SwarmNetwork:
    """
    Shared state of one loopback network.

    Every attached peer is a contact in the DHT's routing table, so a put
    reaches as many nodes as there are peers close to its target.
    """

    def __init__(self, dht: Optional[KademliaDHT] = None, bootstrap_nodes: Optional[List[Tuple[str, str]]] = None):
        self.dht = dht or KademliaDHT(node_id=secrets.token_hex(20))
        self.bundles: Dict[str, SeededBundle] = {}
        if bootstrap_nodes:
            self.dht.bootstrap(bootstrap_nodes)

    def attach(self, peer_id: str) -> bool:
        """Register a peer as a DHT contact (refreshes it when known)."""
        return self.dht.routing_table.add_node(DHTNode(peer_id=peer_id, address=f"loopback:{peer_id[:8]}"))

    def available(self, infohash: str) -> Optional[SeededBundle]:
        bundle = self.bundles.get(infohash)
        if bundle and bundle.seeders:
            return bundle
        return None

    def get_stats(self) -> Dict:
        seeded = sum(1 for bundle in self.bundles.values() if bundle.seeders)
        return {**self.dht.get_stats(), "bundles": len(self.bundles), "seeded_bundles": seeded}


class LoopbackSwarm(Swarm):
    """Swarm endpoint for one peer of a SwarmNetwork."""

    def __init__(
        self,
        network: Optional[SwarmNetwork] = None,
        peer_id: Optional[str] = None,
        engine: Optional[ContentAddressingEngine] = None
    ):
        """
        Initialize loopback swarm peer.

        Args:
            network: Network to attach to (a private one when omitted)
            peer_id: Our peer ID (random when omitted)
            engine: Content hashing engine
        """
        self.network = network or SwarmNetwork()
        self.peer_id = peer_id or secrets.token_hex(20)
        self.engine = engine or ContentAddressingEngine()
        self.active: Dict[str, SwarmHandle] = {}

        self.stats = {
            "joins": 0,
            "seeds": 0,
            "leaves": 0,
            "lookups": 0,
            "puts": 0
        }

        self.network.attach(self.peer_id)

    async def seed(self, folder: Path, descriptor: Optional[DescriptorOptions] = None) -> SwarmHandle:
        folder = Path(folder)
        options = descriptor or DescriptorOptions()
        described = await asyncio.to_thread(self.engine.describe_directory, folder, options)
        files = await asyncio.to_thread(self._read_folder, folder)

        bundle = self.network.bundles.setdefault(
            described.infohash,
            SeededBundle(infohash=described.infohash, options=options, files=files)
        )
        bundle.seeders.add(self.peer_id)
        self.stats["seeds"] += 1

        handle = self._handle(described.infohash, options.name, folder, described.files)
        logger.debug(f"Seeding {described.infohash[:16]}... from {folder}")
        return handle

    async def join_by_hash(
        self,
        infohash: str,
        folder: Path,
        descriptor: Optional[DescriptorOptions] = None
    ) -> SwarmHandle:
        folder = Path(folder)
        self.stats["joins"] += 1

        bundle = self.network.available(infohash)
        while bundle is None:
            await asyncio.sleep(POLL_INTERVAL)
            bundle = self.network.available(infohash)

        await asyncio.to_thread(self._write_folder, folder, bundle.files)
        described = await asyncio.to_thread(self.engine.describe_directory, folder, bundle.options)
        if described.infohash == infohash:
            bundle.seeders.add(self.peer_id)

        logger.debug(f"Joined {infohash[:16]}... into {folder}")
        return self._handle(described.infohash, bundle.options.name, folder, described.files)

    async def leave(self, handle: SwarmHandle) -> None:
        self.active.pop(handle.infohash, None)
        bundle = self.network.bundles.get(handle.infohash)
        if bundle is not None:
            bundle.seeders.discard(self.peer_id)
        self.stats["leaves"] += 1

    async def lookup(self, target: str) -> LookupResult:
        self.stats["lookups"] += 1
        self.network.attach(self.peer_id)
        item = self.network.dht.get(target)
        if item is None:
            raise NotFound(f"could not resolve {target[:16]}...")

        return LookupResult(
            value=dict(item.value),
            responder_id=self.network.dht.node_id,
            sequence=item.sequence,
            signature=item.signature,
            public_key=item.public_key,
            salt=item.salt
        )

    async def put(self, item: MutableItem) -> PutReceipt:
        self.stats["puts"] += 1
        self.network.attach(self.peer_id)
        target, contacts = self.network.dht.put_mutable(
            item.public_key, item.value, item.sequence, item.signature, item.salt
        )
        return PutReceipt(receipt_id=target, contact_count=contacts)

    async def put_immutable(self, value: Dict[bytes, bytes]) -> PutReceipt:
        self.stats["puts"] += 1
        self.network.attach(self.peer_id)
        target, contacts = self.network.dht.put_immutable(value)
        return PutReceipt(receipt_id=target, contact_count=contacts)

    # Internal methods

    def _handle(self, infohash: str, name: str, folder: Path, files) -> SwarmHandle:
        handle = SwarmHandle(
            infohash=infohash,
            name=name,
            folder=folder,
            files=[SwarmFile(path=rel, length=length, folder=folder) for rel, length in files],
            done=True
        )
        self.active[infohash] = handle
        return handle

    @staticmethod
    def _read_folder(folder: Path) -> Dict[str, bytes]:
        return {p.relative_to(folder).as_posix(): p.read_bytes() for p in list_files(folder)}

    @staticmethod
    def _write_folder(folder: Path, files: Dict[str, bytes]):
        for rel, data in files.items():
            path = folder / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            if not path.exists() or path.read_bytes() != data:
                path.write_bytes(data)
