"""
Publisher identities (Ed25519 keypairs).

An identity is either derived deterministically from the node's root seed
plus a title, or drawn at random for anonymous (echo) identities. Secrets
are never written to disk; only the root seed is, so any titled identity
can be re-derived on demand.
"""

import hashlib
import logging
import os
import re
import secrets
import string
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from .errors import InvalidArgument

logger = logging.getLogger(__name__)


ROOT_SEED_SIZE = 32
DEFAULT_NAMESPACE = b"btpk-identity"
ANONYMOUS_TITLE_LENGTH = 16

TITLE_PATTERN = re.compile(r"^[a-zA-Z0-9]{1,64}$")
ADDRESS_PATTERN = re.compile(r"^[a-f0-9]{64}$")

_TITLE_ALPHABET = string.ascii_letters + string.digits


@dataclass(frozen=True)
class Identity:
    """Publisher keypair: 32-byte address plus 64-byte secret (seed || address)."""

    address: str  # 64 lowercase hex chars
    secret: bytes = field(repr=False)
    seed_material: bytes = field(repr=False)
    title: Optional[str] = None

    @property
    def address_bytes(self) -> bytes:
        return bytes.fromhex(self.address)


def identity_from_seed(seed_material: bytes, title: Optional[str] = None) -> Identity:
    """Build the Ed25519 keypair for 32 bytes of seed material."""
    if len(seed_material) != 32:
        raise InvalidArgument(f"seed material must be 32 bytes, got {len(seed_material)}")

    private_key = ed25519.Ed25519PrivateKey.from_private_bytes(seed_material)
    public_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )

    return Identity(
        address=public_bytes.hex(),
        secret=seed_material + public_bytes,
        seed_material=seed_material,
        title=title
    )


def identity_from_secret(address: str, secret: bytes) -> Identity:
    """
    Rebuild an identity from a caller-held address and secret.

    Raises:
        InvalidArgument: if the secret does not belong to the address
    """
    check_address(address)
    if not isinstance(secret, (bytes, bytearray)) or len(secret) not in (32, 64):
        raise InvalidArgument("secret must be 32 or 64 bytes")

    identity = identity_from_seed(bytes(secret[:32]))
    if identity.address != address:
        raise InvalidArgument(f"secret does not match address {address[:16]}...")
    return identity


def derive_identity(
    root_seed: bytes,
    title: Optional[str] = None,
    namespace: bytes = DEFAULT_NAMESPACE
) -> Identity:
    """
    Derive a publisher identity.

    With a title, BLAKE2b keyed by the root seed (personalised with the
    namespace) hashes the title into 32 bytes of seed material, so the same
    (root_seed, title) always yields the same keypair. Without a title a
    random title is drawn, giving a fresh anonymous identity that can still
    be re-derived later from the returned title.

    Args:
        root_seed: Node root seed (up to 64 bytes)
        title: Alphanumeric title, 1-64 chars
        namespace: KDF personalisation (at most 16 bytes)

    Returns:
        Identity with address, secret and the title used
    """
    if not root_seed or len(root_seed) > 64:
        raise InvalidArgument("root seed must be 1-64 bytes")

    if title is None:
        title = "".join(secrets.choice(_TITLE_ALPHABET) for _ in range(ANONYMOUS_TITLE_LENGTH))
    elif not isinstance(title, str) or not TITLE_PATTERN.match(title):
        raise InvalidArgument(f"title must be 1-64 alphanumeric chars: {title!r}")

    seed_material = hashlib.blake2b(
        title.encode("utf-8"),
        digest_size=32,
        key=root_seed,
        person=namespace[:16]
    ).digest()

    return identity_from_seed(seed_material, title=title)


def check_address(address: str) -> str:
    """Validate a 64-hex-char address."""
    if not isinstance(address, str) or not ADDRESS_PATTERN.match(address):
        raise InvalidArgument(f"address must be 64 lowercase hex chars: {address!r}")
    return address


def load_or_create_root_seed(seed_path: Path) -> bytes:
    """Load the node root seed, generating and saving one on first use."""
    seed_path = Path(seed_path)

    if seed_path.exists():
        root_seed = seed_path.read_bytes()
        logger.info("Loaded existing root seed")
        return root_seed

    os.makedirs(seed_path.parent, exist_ok=True)
    root_seed = secrets.token_bytes(ROOT_SEED_SIZE)
    with open(seed_path, "wb") as f:
        f.write(root_seed)

    logger.info("Generated new root seed")
    return root_seed
