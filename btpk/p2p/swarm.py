"""
Swarm collaborator interface.

The swarm owns peer discovery, piece transfer and the DHT. The core only
sees this uniformly asynchronous boundary.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from btpk.core.content_addressing import DescriptorOptions
from btpk.core.record_codec import PutReceipt


@dataclass
class SwarmFile:
    """One file of a joined bundle."""

    path: str  # Relative posix path inside the bundle
    length: int
    folder: Path

    @property
    def url_path(self) -> str:
        return "/" + self.path

    async def read_bytes(self) -> bytes:
        return await asyncio.to_thread((self.folder / self.path).read_bytes)


@dataclass
class SwarmHandle:
    """Live swarm membership for one bundle."""

    infohash: str
    name: str
    folder: Path
    files: List[SwarmFile] = field(default_factory=list)
    done: bool = False


@dataclass
class MutableItem:
    """Signed mutable DHT item as put on the wire."""

    public_key: bytes
    value: Dict[bytes, bytes]
    sequence: int
    signature: bytes
    salt: Optional[bytes] = None


@dataclass
class LookupResult:
    """Item returned by a DHT lookup."""

    value: Dict[bytes, bytes]
    responder_id: str
    sequence: Optional[int] = None
    signature: Optional[bytes] = None
    public_key: Optional[bytes] = None
    salt: Optional[bytes] = None


class Swarm(ABC):
    """Asynchronous swarm + DHT boundary used by the pointer store."""

    @abstractmethod
    async def join_by_hash(
        self,
        infohash: str,
        folder: Path,
        descriptor: Optional[DescriptorOptions] = None
    ) -> SwarmHandle:
        """Leech (or resume) the bundle with this infohash into folder."""

    @abstractmethod
    async def seed(self, folder: Path, descriptor: Optional[DescriptorOptions] = None) -> SwarmHandle:
        """Seed the bundle held in folder."""

    @abstractmethod
    async def leave(self, handle: SwarmHandle) -> None:
        """End swarm membership; never deletes files."""

    @abstractmethod
    async def lookup(self, target: str) -> LookupResult:
        """DHT get by 40-hex target; raises NotFound on a miss."""

    @abstractmethod
    async def put(self, item: MutableItem) -> PutReceipt:
        """DHT put of a signed mutable item."""

    @abstractmethod
    async def put_immutable(self, value: Dict[bytes, bytes]) -> PutReceipt:
        """DHT put of an immutable item."""
