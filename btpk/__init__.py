"""
btpk - mutable pointers over a BitTorrent swarm

Publish a bundle of files, bind it to a public-key address with a signed,
sequence-numbered record in the DHT, and let any peer resolve the address
to the current bundle later.

Quick Start:
    >>> from btpk import ByAddress, ByTitle, ContentLifecycle, LoopbackSwarm, StoreConfig
    >>>
    >>> store = ContentLifecycle(StoreConfig(folder="./my_store"), LoopbackSwarm())
    >>>
    >>> # Publish under an identity derived from the node seed
    >>> result = await store.publish(ByTitle("alice"), "index.html", b"<h1>hi</h1>")
    >>> print(result.link, result.sequence)
    >>>
    >>> # Any peer on the same swarm can load it by address
    >>> page = await store.load(ByAddress(result.id), "/index.html")

Features:
    - BEP44-style signed mutable records (Ed25519, bencoded payload)
    - Content addressing by BitTorrent infohash
    - Durable SQLite index of authored and loaded content
    - Echo / unEcho to move content between identities
    - Keep-alive sweeps so published pointers never expire
"""

from btpk.config import StoreConfig
from btpk.core.content_addressing import DescriptorOptions
from btpk.core.errors import (
    PointerStoreError,
    InvalidArgument,
    NotFound,
    InvalidData,
    StaleRecord,
    IntegrityError,
    SignatureMismatch,
    Conflict,
    TimedOut,
    EmptyContent,
)
from btpk.core.identity import Identity, derive_identity
from btpk.core.record_codec import PointerRecord, canonicalize, sign, verify
from btpk.core.refs import ByAddress, ByInfohash, ByMessage, ByTitle, ContentRef, parse_ref
from btpk.core.states import ContentState
from btpk.p2p.loopback import LoopbackSwarm, SwarmNetwork
from btpk.p2p.pointer import PointerProtocol
from btpk.backends.blob_sink import NamedBlob
from btpk.storage.lifecycle import ContentLifecycle, ContentResult
from btpk.p2p.keepalive import KeepAlive

__version__ = "0.1.0"

__all__ = [
    "StoreConfig",
    "DescriptorOptions",
    "PointerStoreError",
    "InvalidArgument",
    "NotFound",
    "InvalidData",
    "StaleRecord",
    "IntegrityError",
    "SignatureMismatch",
    "Conflict",
    "TimedOut",
    "EmptyContent",
    "Identity",
    "derive_identity",
    "PointerRecord",
    "canonicalize",
    "sign",
    "verify",
    "ByAddress",
    "ByInfohash",
    "ByMessage",
    "ByTitle",
    "ContentRef",
    "parse_ref",
    "ContentState",
    "LoopbackSwarm",
    "SwarmNetwork",
    "PointerProtocol",
    "NamedBlob",
    "ContentLifecycle",
    "ContentResult",
    "KeepAlive",
]
