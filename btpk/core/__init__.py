"""
btpk Core Module

Protocol-level building blocks:
- Identities (Ed25519 keypairs derived from a root seed)
- Record codec (canonical bencoded payload, sign / verify)
- Content addressing (BitTorrent v1 infohash of a directory)
- Content references and the timeout combinator
"""

from btpk.core.content_addressing import ContentAddressingEngine, ContentDescriptor, DescriptorOptions
from btpk.core.identity import Identity, derive_identity, identity_from_secret
from btpk.core.record_codec import PointerRecord, PutReceipt, canonicalize, sign, verify
from btpk.core.refs import ByAddress, ByInfohash, ByMessage, ByTitle, ContentRef, ref_kind, parse_ref
from btpk.core.states import ContentState
from btpk.core.timeouts import with_timeout

__all__ = [
    "ContentAddressingEngine",
    "ContentDescriptor",
    "DescriptorOptions",
    "Identity",
    "derive_identity",
    "identity_from_secret",
    "PointerRecord",
    "PutReceipt",
    "canonicalize",
    "sign",
    "verify",
    "ByAddress",
    "ByInfohash",
    "ByMessage",
    "ByTitle",
    "ContentRef",
    "ref_kind",
    "parse_ref",
    "ContentState",
    "with_timeout",
]
