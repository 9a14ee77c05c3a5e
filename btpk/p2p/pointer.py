"""
Pointer Protocol

Publish, resolve and reaffirm signed pointer records in the DHT.

A pointer record binds an address (Ed25519 public key) to an infohash at
a sequence number. Publishing signs the canonical payload and puts it
under SHA-1(address || salt); resolving fetches it back and re-verifies
it before anything downstream trusts it; reaffirming re-puts a cached
record with its original signature so it does not expire.

Immutable message items ({ih} addressed by the SHA-1 of their encoding)
go through the same protocol for content that never changes.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Optional, Tuple

from btpk.core.errors import IntegrityError, InvalidArgument, InvalidData, SignatureMismatch, StaleRecord
from btpk.core.identity import check_address
from btpk.core.record_codec import (
    INFOHASH_PATTERN,
    PointerRecord,
    PutReceipt,
    check_infohash,
    encode_signature_data,
    encode_value,
    sign,
    verify,
)
from .dht.kademlia import immutable_target, mutable_target
from .swarm import LookupResult, MutableItem, Swarm

logger = logging.getLogger(__name__)


@dataclass
class MessageRecord:
    """Immutable {ih, ...stuff} item and the target it lives under."""

    target: str
    infohash: str
    stuff: Dict[str, str] = field(default_factory=dict)
    responder_id: Optional[str] = None
    receipt: Optional[PutReceipt] = None

    @property
    def value_map(self) -> Dict[str, str]:
        return {"ih": self.infohash, **self.stuff}


def _split_value(value: Dict[bytes, bytes]) -> Tuple[str, Dict[str, str]]:
    """Decode a binary value dict into (infohash hex, stuff)."""
    raw_ih = value.get(b"ih")
    if not isinstance(raw_ih, bytes) or len(raw_ih) != 20:
        raise InvalidData("data is invalid: ih is not a 20-byte hash")

    infohash = raw_ih.hex()
    if not INFOHASH_PATTERN.match(infohash):
        raise InvalidData("data is invalid: malformed ih")

    stuff = {}
    for name, raw in value.items():
        if name == b"ih":
            continue
        try:
            stuff[name.decode("utf-8")] = raw.decode("utf-8")
        except (AttributeError, UnicodeDecodeError):
            raise InvalidData(f"data is invalid: field {name!r} is not UTF-8 text")

    return infohash, stuff


class PointerProtocol:
    """
    Pointer record operations against the swarm's DHT.

    Tracks the highest (sequence, signature) observed per address so a
    replayed older record is rejected on resolve.
    """

    def __init__(self, swarm: Swarm):
        """
        Initialize pointer protocol.

        Args:
            swarm: Swarm collaborator providing lookup/put
        """
        self.swarm = swarm
        self._observed: Dict[Tuple[str, bytes], Tuple[int, str]] = {}

    async def publish(
        self,
        address: str,
        secret: bytes,
        value_map: Dict[str, str],
        sequence: int,
        salt: Optional[bytes] = None
    ) -> PointerRecord:
        """
        Sign and put a pointer record.

        Args:
            address: 64-hex public key
            secret: Secret belonging to address
            value_map: {"ih": infohash, **stuff}, all strings
            sequence: Sequence number to sign
            salt: Optional salt

        Returns:
            PointerRecord with put receipt

        Raises:
            InvalidArgument: on any validation failure
        """
        record = self.sign_record(address, secret, value_map, sequence, salt)
        return await self.put_record(record)

    def sign_record(
        self,
        address: str,
        secret: bytes,
        value_map: Dict[str, str],
        sequence: int,
        salt: Optional[bytes] = None
    ) -> PointerRecord:
        """
        Build and sign a pointer record without touching the network.

        Raises:
            InvalidArgument: on any validation failure
        """
        if not address or not secret:
            raise InvalidArgument("must have address and secret")
        check_address(address)
        if "ih" not in value_map:
            raise InvalidArgument("must have infohash")

        infohash = check_infohash(value_map["ih"])
        value = encode_value(value_map)
        signature = sign(encode_signature_data(sequence, value, salt), bytes.fromhex(address), secret)

        return PointerRecord(
            address=address,
            infohash=infohash,
            sequence=sequence,
            signature=signature.hex(),
            stuff={k: v for k, v in value_map.items() if k != "ih"},
            salt=salt
        )

    async def put_record(self, record: PointerRecord) -> PointerRecord:
        """Put a freshly signed record and remember it as the newest seen."""
        receipt = await self.swarm.put(MutableItem(
            public_key=bytes.fromhex(record.address),
            value=encode_value(record.value_map),
            sequence=record.sequence,
            signature=bytes.fromhex(record.signature),
            salt=record.salt
        ))
        record = replace(record, receipt=receipt)
        self.observe(record)

        logger.info(
            f"Published {record.address[:16]}... -> {record.infohash[:16]}... "
            f"(seq={record.sequence}, contacts={receipt.contact_count})"
        )
        return record

    async def resolve(self, address: str, salt: Optional[bytes] = None) -> PointerRecord:
        """
        Resolve an address to its current pointer record.

        Raises:
            InvalidArgument: malformed address
            NotFound: nothing stored under the address
            InvalidData: malformed value
            SignatureMismatch: signature does not verify
            StaleRecord: older than a record already observed
        """
        check_address(address)
        address_bytes = bytes.fromhex(address)
        result = await self.swarm.lookup(mutable_target(address_bytes, salt))

        if result.public_key is not None and result.public_key != address_bytes:
            raise InvalidData(f"lookup for {address[:16]}... answered with another key")
        if not isinstance(result.sequence, int) or result.sequence < 0 or result.signature is None:
            raise InvalidData(f"lookup for {address[:16]}... returned an unsigned item")

        infohash, stuff = _split_value(result.value)

        message = encode_signature_data(result.sequence, result.value, salt)
        if not verify(result.signature, message, address_bytes):
            raise SignatureMismatch(f"record for {address[:16]}... does not match its signature")

        record = PointerRecord(
            address=address,
            infohash=infohash,
            sequence=result.sequence,
            signature=result.signature.hex(),
            stuff=stuff,
            salt=salt,
            responder_id=result.responder_id
        )
        self._check_fresh(record)
        self.observe(record)

        logger.debug(f"Resolved {address[:16]}... -> {infohash[:16]}... (seq={record.sequence})")
        return record

    async def reaffirm(self, record: PointerRecord) -> PointerRecord:
        """
        Re-put a cached record with its original sequence and signature.

        Raises:
            SignatureMismatch: the cached copy no longer verifies
        """
        if not record.verify():
            raise SignatureMismatch(
                f"cached record for {record.address[:16]}... does not match its signature"
            )

        receipt = await self.swarm.put(MutableItem(
            public_key=bytes.fromhex(record.address),
            value=encode_value(record.value_map),
            sequence=record.sequence,
            signature=bytes.fromhex(record.signature),
            salt=record.salt
        ))

        logger.debug(f"Reaffirmed {record.address[:16]}... (seq={record.sequence})")
        return replace(record, receipt=receipt)

    async def publish_message(self, infohash: str, stuff: Optional[Dict[str, str]] = None) -> MessageRecord:
        """Put an immutable {ih, ...stuff} item."""
        record = self.message_record(infohash, stuff)
        receipt = await self.swarm.put_immutable(encode_value(record.value_map))

        record = replace(record, target=receipt.receipt_id, receipt=receipt)
        logger.info(f"Published message {record.target[:16]}... -> {record.infohash[:16]}...")
        return record

    @staticmethod
    def message_record(infohash: str, stuff: Optional[Dict[str, str]] = None) -> MessageRecord:
        """Immutable item for {ih, ...stuff} with its target computed locally."""
        value = encode_value({"ih": infohash, **(stuff or {})})
        return MessageRecord(
            target=immutable_target(value),
            infohash=check_infohash(infohash),
            stuff=dict(stuff or {})
        )

    async def resolve_message(self, target: str) -> MessageRecord:
        """
        Fetch an immutable item and check it hashes to its target.

        Raises:
            IntegrityError: returned value does not hash to target
        """
        target = check_infohash(target)
        result: LookupResult = await self.swarm.lookup(target)

        if immutable_target(result.value) != target:
            raise IntegrityError(f"message {target[:16]}... does not match its hash")

        infohash, stuff = _split_value(result.value)
        return MessageRecord(target=target, infohash=infohash, stuff=stuff, responder_id=result.responder_id)

    async def reaffirm_message(self, record: MessageRecord) -> MessageRecord:
        """Re-put an authored immutable item after checking its target."""
        value = encode_value(record.value_map)
        if immutable_target(value) != record.target:
            raise IntegrityError(f"cached message {record.target[:16]}... does not match its hash")

        receipt = await self.swarm.put_immutable(value)
        return replace(record, receipt=receipt)

    def observe(self, record: PointerRecord):
        """Remember a record as the freshest seen for its address."""
        seen = self._observed.get(self._key(record))
        if seen is None or record.sequence >= seen[0]:
            self._observed[self._key(record)] = (record.sequence, record.signature)

    @staticmethod
    def _key(record: PointerRecord) -> Tuple[str, bytes]:
        return record.address, record.salt or b""

    def _check_fresh(self, record: PointerRecord):
        seen = self._observed.get(self._key(record))
        if seen is None:
            return
        sequence, signature = seen
        if record.sequence < sequence:
            raise StaleRecord(
                f"record for {record.address[:16]}... has sequence {record.sequence}, "
                f"already observed {sequence}"
            )
        if record.sequence == sequence and record.signature != signature:
            raise StaleRecord(
                f"record for {record.address[:16]}... reuses sequence {sequence} with another value"
            )
