"""
Pointer record codec.

Builds the canonical signature payload of a mutable DHT item and signs /
verifies it with Ed25519. The payload is the bencoding of
{salt?, seq, v} with the outer dictionary delimiters stripped, where v
maps field names to bytes: "ih" holds the raw 20-byte infohash and every
other field holds UTF-8 text. Bencode sorts dictionary keys, so the
encoding is byte-for-byte identical for every verifier of the protocol.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, Optional, Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519
from fastbencode import bencode

from .errors import InvalidArgument

INFOHASH_PATTERN = re.compile(r"^[a-fA-F0-9]{40}$")
LINK_SCHEME = "magnet"
BTPK_PREFIX = "urn:btpk:"


def check_infohash(infohash: str) -> str:
    """Validate a 40-hex-char infohash and return it lowercased."""
    if not isinstance(infohash, str) or not INFOHASH_PATTERN.match(infohash):
        raise InvalidArgument(f"infohash must be 40 hex chars: {infohash!r}")
    return infohash.lower()


def pointer_link(address: str) -> str:
    """Render the stable link for an address."""
    return f"{LINK_SCHEME}:?xs={BTPK_PREFIX}{address}"


def encode_value(value_map: Dict[str, str]) -> Dict[bytes, bytes]:
    """
    Convert {ih, ...stuff} text fields to the binary value dictionary.

    Raises:
        InvalidArgument: if a field is not a string or ih is malformed
    """
    encoded = {}
    for name, text in value_map.items():
        if not isinstance(text, str):
            raise InvalidArgument(f"field {name!r} must be a string")
        if name == "ih":
            encoded[b"ih"] = bytes.fromhex(check_infohash(text))
        else:
            encoded[name.encode("utf-8")] = text.encode("utf-8")
    return encoded


def encode_signature_data(sequence: int, value: Dict[bytes, bytes], salt: Optional[bytes] = None) -> bytes:
    """Canonical bytes for an already-binary value dictionary."""
    if not isinstance(sequence, int) or isinstance(sequence, bool) or sequence < 0:
        raise InvalidArgument(f"sequence must be a non-negative integer: {sequence!r}")

    ref: Dict[bytes, Any] = {b"seq": sequence, b"v": value}
    if salt:
        ref[b"salt"] = bytes(salt)
    return bencode(ref)[1:-1]


def canonicalize(sequence: int, value_map: Dict[str, str], salt: Optional[bytes] = None) -> bytes:
    """Canonical signature payload for {seq, v, salt?}."""
    return encode_signature_data(sequence, encode_value(value_map), salt)


def sign(message: bytes, address: bytes, secret: bytes) -> bytes:
    """
    Sign message bytes with the secret belonging to address.

    Args:
        message: Canonical payload
        address: 32-byte public key
        secret: 64-byte secret (seed || public key) or the 32-byte seed

    Returns:
        64-byte Ed25519 signature
    """
    if not address or not secret:
        raise InvalidArgument("address and secret are both required")

    try:
        private_key = ed25519.Ed25519PrivateKey.from_private_bytes(bytes(secret[:32]))
    except ValueError as e:
        raise InvalidArgument(f"secret is not a valid Ed25519 key: {e}")

    public_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )
    if public_bytes != bytes(address):
        raise InvalidArgument("secret does not belong to address")

    return private_key.sign(message)


def verify(signature: bytes, message: bytes, address: bytes) -> bool:
    """Verify an Ed25519 signature; never raises."""
    try:
        public_key = ed25519.Ed25519PublicKey.from_public_bytes(address)
        public_key.verify(signature, message)
        return True
    except (InvalidSignature, ValueError, TypeError):
        return False


@dataclass
class PutReceipt:
    """Acknowledgement of a network put."""

    receipt_id: str  # DHT target the item was stored under (hex)
    contact_count: int  # Nodes that accepted the item


@dataclass
class PointerRecord:
    """Signed binding of an address to an infohash at a sequence number."""

    address: str
    infohash: str
    sequence: int
    signature: str  # 128 hex chars
    stuff: Dict[str, str] = field(default_factory=dict)
    salt: Optional[bytes] = None
    responder_id: Optional[str] = None
    receipt: Optional[PutReceipt] = None

    @property
    def link(self) -> str:
        return pointer_link(self.address)

    @property
    def value_map(self) -> Dict[str, str]:
        return {"ih": self.infohash, **self.stuff}

    def signature_data(self) -> bytes:
        return canonicalize(self.sequence, self.value_map, self.salt)

    def verify(self) -> bool:
        """Re-check the signature against this record's own fields."""
        try:
            message = self.signature_data()
            return verify(bytes.fromhex(self.signature), message, bytes.fromhex(self.address))
        except (InvalidArgument, ValueError):
            return False

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form for the local index."""
        return {
            "address": self.address,
            "infohash": self.infohash,
            "sequence": self.sequence,
            "signature": self.signature,
            "stuff": dict(self.stuff),
            "salt": self.salt,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PointerRecord":
        return cls(
            address=data["address"],
            infohash=data["infohash"],
            sequence=data["sequence"],
            signature=data["signature"],
            stuff=dict(data.get("stuff") or {}),
            salt=data.get("salt"),
        )
