"""
Content references.

Every lifecycle operation takes exactly one of these variants; the
lifecycle matches on the variant type instead of probing which fields
happen to be set.
"""

import re
from dataclasses import dataclass, field
from typing import Optional, Union

from .errors import InvalidArgument
from .record_codec import BTPK_PREFIX, check_infohash
from .identity import check_address

KIND_INFOHASH = "infohash"
KIND_ADDRESS = "address"
KIND_MESSAGE = "message"

_LINK_PATTERN = re.compile(r"^[a-z]+:\?xs=" + re.escape(BTPK_PREFIX) + r"([a-f0-9]{64})$")


@dataclass(frozen=True)
class ByInfohash:
    """Immutable bundle addressed by content hash (None: new bundle on publish)."""

    infohash: Optional[str] = None

    def __post_init__(self):
        if self.infohash is not None:
            object.__setattr__(self, "infohash", check_infohash(self.infohash))


@dataclass(frozen=True)
class ByAddress:
    """Mutable pointer addressed by public key; secret needed for mutation."""

    address: Optional[str] = None  # None: fresh anonymous identity on publish
    secret: Optional[bytes] = field(default=None, repr=False)

    def __post_init__(self):
        if self.address is not None:
            check_address(self.address)


@dataclass(frozen=True)
class ByTitle:
    """Mutable pointer whose identity is derived from the node seed and a title."""

    title: str


@dataclass(frozen=True)
class ByMessage:
    """Immutable DHT item {ih} addressed by the SHA-1 of its encoding."""

    target: Optional[str] = None

    def __post_init__(self):
        if self.target is not None:
            object.__setattr__(self, "target", check_infohash(self.target))


ContentRef = Union[ByInfohash, ByAddress, ByTitle, ByMessage]


def ref_kind(ref: ContentRef) -> str:
    """Index kind used to store entries for this reference."""
    if isinstance(ref, ByInfohash):
        return KIND_INFOHASH
    if isinstance(ref, (ByAddress, ByTitle)):
        return KIND_ADDRESS
    if isinstance(ref, ByMessage):
        return KIND_MESSAGE
    raise InvalidArgument(f"unknown content reference: {ref!r}")


def parse_ref(text: str) -> ContentRef:
    """
    Parse an id string or pointer link.

    40 hex chars are an infohash, 64 hex chars an address, and a
    `<scheme>:?xs=urn:btpk:<address>` link an address.
    """
    if not isinstance(text, str):
        raise InvalidArgument(f"reference must be a string: {text!r}")

    match = _LINK_PATTERN.match(text)
    if match:
        return ByAddress(match.group(1))
    if len(text) == 64:
        return ByAddress(text)
    if len(text) == 40:
        return ByInfohash(text)

    raise InvalidArgument(f"not an infohash, address or pointer link: {text!r}")
