"""
Tests for the canonical record payload and Ed25519 signatures.
"""

import pytest

from btpk.core.errors import InvalidArgument
from btpk.core.record_codec import (
    PointerRecord,
    canonicalize,
    check_infohash,
    encode_signature_data,
    encode_value,
    pointer_link,
    sign,
    verify,
)


IH_A = "aa" * 20


class TestCanonicalEncoding:
    """Byte-exact payloads."""

    def test_exact_bytes(self):
        payload = canonicalize(1, {"ih": IH_A})
        assert payload == b"3:seqi1e1:vd2:ih20:" + b"\xaa" * 20 + b"e"

    def test_salt_sorts_before_seq(self):
        payload = canonicalize(1, {"ih": IH_A}, salt=b"foobar")
        assert payload.startswith(b"4:salt6:foobar3:seqi1e1:vd")

    def test_stuff_is_utf8_and_sorted(self):
        payload = canonicalize(0, {"title": "héllo", "ih": IH_A, "a": "x"})

        assert payload == (
            b"3:seqi0e1:vd1:a1:x2:ih20:" + b"\xaa" * 20 + b"5:title6:h\xc3\xa9lloe"
        )

    def test_deterministic(self):
        first = canonicalize(7, {"ih": IH_A, "b": "2", "a": "1"})
        second = canonicalize(7, {"a": "1", "ih": IH_A, "b": "2"})
        assert first == second

    def test_uppercase_infohash_encodes_the_same(self):
        assert canonicalize(0, {"ih": IH_A.upper()}) == canonicalize(0, {"ih": IH_A})

    def test_ih_is_raw_binary(self):
        assert encode_value({"ih": IH_A}) == {b"ih": b"\xaa" * 20}

    @pytest.mark.parametrize("value_map", [
        {"ih": "xyz"},
        {"ih": "aa" * 19},
        {"ih": IH_A, "count": 3},
        {"ih": IH_A, "flag": None},
    ])
    def test_rejects_bad_values(self, value_map):
        with pytest.raises(InvalidArgument):
            canonicalize(0, value_map)

    @pytest.mark.parametrize("sequence", [-1, True, 1.5, "1"])
    def test_rejects_bad_sequences(self, sequence):
        with pytest.raises(InvalidArgument):
            encode_signature_data(sequence, {b"ih": b"\xaa" * 20})


class TestSignatures:
    """Signing, verification and tamper detection."""

    def test_sign_and_verify(self, alice):
        message = canonicalize(0, {"ih": IH_A})
        signature = sign(message, alice.address_bytes, alice.secret)

        assert len(signature) == 64
        assert verify(signature, message, alice.address_bytes)

    @pytest.mark.parametrize("tampered", [
        (0, {"ih": "ab" * 20, "name": "site"}),
        (0, {"ih": IH_A, "name": "sitf"}),
        (1, {"ih": IH_A, "name": "site"}),
        (0, {"ih": IH_A}),
    ])
    def test_tamper_detection(self, alice, tampered):
        signature = sign(canonicalize(0, {"ih": IH_A, "name": "site"}), alice.address_bytes, alice.secret)

        sequence, value_map = tampered
        assert not verify(signature, canonicalize(sequence, value_map), alice.address_bytes)

    def test_flipped_signature_bit(self, alice):
        message = canonicalize(0, {"ih": IH_A})
        signature = bytearray(sign(message, alice.address_bytes, alice.secret))
        signature[0] ^= 0x01

        assert not verify(bytes(signature), message, alice.address_bytes)

    def test_wrong_secret_rejected(self, root_seed, alice):
        from btpk.core.identity import derive_identity

        bob = derive_identity(root_seed, "bob")
        with pytest.raises(InvalidArgument):
            sign(b"payload", alice.address_bytes, bob.secret)

    def test_missing_secret_rejected(self, alice):
        with pytest.raises(InvalidArgument):
            sign(b"payload", alice.address_bytes, b"")

    def test_verify_never_raises(self):
        assert verify(b"short", b"message", b"not-a-key") is False
        assert verify(b"\x00" * 64, b"message", b"\x00" * 31) is False


class TestPointerRecord:
    def _record(self, identity, sequence=0, stuff=None):
        stuff = stuff or {}
        message = canonicalize(sequence, {"ih": IH_A, **stuff})
        return PointerRecord(
            address=identity.address,
            infohash=IH_A,
            sequence=sequence,
            signature=sign(message, identity.address_bytes, identity.secret).hex(),
            stuff=stuff
        )

    def test_verify(self, alice):
        record = self._record(alice, 3, {"name": "site"})
        assert record.verify()

    def test_verify_detects_local_corruption(self, alice):
        record = self._record(alice)
        record.infohash = "bb" * 20
        assert not record.verify()

    def test_dict_round_trip(self, alice):
        record = self._record(alice, 2, {"name": "site"})
        restored = PointerRecord.from_dict(record.to_dict())

        assert restored == record
        assert restored.verify()

    def test_link(self, alice):
        record = self._record(alice)
        assert record.link == f"magnet:?xs=urn:btpk:{alice.address}"
        assert pointer_link(alice.address) == record.link


def test_check_infohash_lowercases():
    assert check_infohash("AB" * 20) == "ab" * 20
