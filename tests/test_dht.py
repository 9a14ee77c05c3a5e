"""
Kademlia DHT tests: routing table plus BEP44 item storage rules.
"""

import hashlib
import time

import pytest
from fastbencode import bencode

from btpk.core.errors import Conflict, InvalidArgument, SignatureMismatch
from btpk.core.record_codec import encode_signature_data, encode_value, sign
from btpk.p2p.dht.kademlia import (
    K,
    DHTNode,
    KademliaDHT,
    KBucket,
    id_to_bucket_index,
    immutable_target,
    mutable_target,
    xor_distance,
)
from btpk.p2p.loopback import LoopbackSwarm, SwarmNetwork
from btpk.p2p.swarm import MutableItem


def node_id(label: str) -> str:
    return hashlib.sha1(label.encode()).hexdigest()


def signed(identity, sequence, infohash="aa" * 20, salt=None, **stuff):
    value = encode_value({"ih": infohash, **stuff})
    signature = sign(encode_signature_data(sequence, value, salt), identity.address_bytes, identity.secret)
    return value, signature


class TestDHTRouting:
    """Kademlia routing table and distance metric."""

    def test_xor_distance(self):
        id1, id2, id3 = node_id("peer1"), node_id("peer2"), node_id("peer3")

        assert xor_distance(id1, id1) == 0
        assert xor_distance(id1, id2) == xor_distance(id2, id1)
        assert xor_distance(id1, id2) > 0
        assert xor_distance(id1, id2) + xor_distance(id2, id3) >= xor_distance(id1, id3)

    def test_bucket_index(self):
        base = "00" * 20
        assert id_to_bucket_index(base, base) == 0
        assert id_to_bucket_index(base, "00" * 19 + "01") == 0
        assert id_to_bucket_index(base, "80" + "00" * 19) == 159

    def test_routing_table(self):
        dht = KademliaDHT(node_id=node_id("test_node"), node_address="127.0.0.1:7777")

        for i in range(50):
            dht.routing_table.add_node(DHTNode(peer_id=node_id(f"peer_{i}"), address=f"127.0.0.1:{8000 + i}"))

        stats = dht.routing_table.get_stats()
        assert stats["total_nodes"] <= 50
        assert stats["non_empty_buckets"] > 0

    def test_never_adds_itself(self):
        dht = KademliaDHT(node_id=node_id("self"))
        assert not dht.routing_table.add_node(DHTNode(peer_id=node_id("self"), address="127.0.0.1:1"))

    def test_closest_nodes_sorted(self):
        dht = KademliaDHT(node_id=node_id("test_node"))
        dht.bootstrap([(node_id(f"peer_{i}"), f"127.0.0.1:{9000 + i}") for i in range(30)])

        target = node_id("target")
        closest = dht.find_node(target)
        distances = [xor_distance(n.peer_id, target) for n in closest]

        assert len(closest) <= K
        assert distances == sorted(distances)

    def test_lookup_scalability(self):
        dht = KademliaDHT(node_id=node_id("test_node"))
        for i in range(1000):
            dht.routing_table.add_node(DHTNode(peer_id=node_id(f"peer_{i}"), address="127.0.0.1:8000"))

        start = time.time()
        closest = dht.routing_table.find_closest_nodes(node_id("lookup_target"), count=20)

        assert len(closest) > 0
        assert time.time() - start < 1.0

    def test_full_bucket_rejects_live_nodes(self):
        bucket = KBucket(max_size=2)
        assert bucket.add_node(DHTNode(peer_id=node_id("a"), address="x"))
        assert bucket.add_node(DHTNode(peer_id=node_id("b"), address="x"))
        assert not bucket.add_node(DHTNode(peer_id=node_id("c"), address="x"))

    def test_full_bucket_evicts_dead_node(self):
        bucket = KBucket(max_size=1)
        dead = DHTNode(peer_id=node_id("dead"), address="x", last_seen=0)
        bucket.add_node(dead)

        assert bucket.add_node(DHTNode(peer_id=node_id("new"), address="x"))
        assert [n.peer_id for n in bucket.get_nodes()] == [node_id("new")]


class TestMutableItems:
    """Signed mutable items and sequence rules."""

    def setup_method(self):
        self.dht = KademliaDHT(node_id=node_id("dht"))

    def test_put_and_get(self, alice):
        value, signature = signed(alice, 0)
        target, contacts = self.dht.put_mutable(alice.address_bytes, value, 0, signature)

        item = self.dht.get(target)
        assert target == mutable_target(alice.address_bytes)
        assert target == hashlib.sha1(alice.address_bytes).hexdigest()
        assert contacts == 1
        assert item.mutable
        assert item.value == value
        assert item.sequence == 0

    def test_contacts_count_replicas(self, alice):
        self.dht.bootstrap([(node_id(f"peer_{i}"), "127.0.0.1:1") for i in range(5)])
        value, signature = signed(alice, 0)

        _, contacts = self.dht.put_mutable(alice.address_bytes, value, 0, signature)
        assert contacts == 6

    def test_bad_signature_rejected(self, alice):
        value, signature = signed(alice, 0)
        with pytest.raises(SignatureMismatch):
            self.dht.put_mutable(alice.address_bytes, value, 1, signature)

    def test_higher_sequence_replaces(self, alice):
        value0, sig0 = signed(alice, 0)
        value1, sig1 = signed(alice, 1, infohash="bb" * 20)

        self.dht.put_mutable(alice.address_bytes, value0, 0, sig0)
        target, _ = self.dht.put_mutable(alice.address_bytes, value1, 1, sig1)

        assert self.dht.get(target).sequence == 1
        assert self.dht.get(target).value == value1

    def test_lower_sequence_conflicts(self, alice):
        value0, sig0 = signed(alice, 0)
        value1, sig1 = signed(alice, 1)
        self.dht.put_mutable(alice.address_bytes, value1, 1, sig1)

        with pytest.raises(Conflict):
            self.dht.put_mutable(alice.address_bytes, value0, 0, sig0)

    def test_same_sequence_refresh_accepted(self, alice):
        value, signature = signed(alice, 4)
        self.dht.put_mutable(alice.address_bytes, value, 4, signature)
        target, _ = self.dht.put_mutable(alice.address_bytes, value, 4, signature)

        assert self.dht.get(target).signature == signature

    def test_same_sequence_new_value_conflicts(self, alice):
        value_a, sig_a = signed(alice, 4)
        value_b, sig_b = signed(alice, 4, infohash="bb" * 20)
        self.dht.put_mutable(alice.address_bytes, value_a, 4, sig_a)

        with pytest.raises(Conflict):
            self.dht.put_mutable(alice.address_bytes, value_b, 4, sig_b)

    def test_salt_gives_separate_target(self, alice):
        plain, plain_sig = signed(alice, 0)
        salted, salted_sig = signed(alice, 0, salt=b"blog")

        plain_target, _ = self.dht.put_mutable(alice.address_bytes, plain, 0, plain_sig)
        salted_target, _ = self.dht.put_mutable(alice.address_bytes, salted, 0, salted_sig, salt=b"blog")

        assert plain_target != salted_target
        assert salted_target == hashlib.sha1(alice.address_bytes + b"blog").hexdigest()

    def test_oversized_value_rejected(self, alice):
        value, signature = signed(alice, 0, note="x" * 1000)
        with pytest.raises(InvalidArgument):
            self.dht.put_mutable(alice.address_bytes, value, 0, signature)


class TestImmutableItems:
    def setup_method(self):
        self.dht = KademliaDHT(node_id=node_id("dht"))

    def test_target_is_hash_of_encoding(self):
        value = encode_value({"ih": "cc" * 20})
        target, _ = self.dht.put_immutable(value)

        assert target == hashlib.sha1(bencode(value)).hexdigest()
        assert target == immutable_target(value)
        assert not self.dht.get(target).mutable

    def test_stats(self):
        self.dht.put_immutable(encode_value({"ih": "cc" * 20}))
        stats = self.dht.get_stats()

        assert stats["local_storage_keys"] == 1
        assert stats["buckets"] == 160


class TestLoopbackRouting:
    """Peers attached to one loopback network are DHT contacts."""

    def test_attached_peers_are_contacts(self):
        network = SwarmNetwork()
        peers = [LoopbackSwarm(network) for _ in range(3)]

        stats = network.get_stats()
        assert stats["total_nodes"] == 3
        assert {n.peer_id for n in network.dht.find_node(node_id("anything"))} == {p.peer_id for p in peers}

    @pytest.mark.asyncio
    async def test_put_reaches_every_peer(self, alice):
        network = SwarmNetwork()
        swarm = LoopbackSwarm(network)
        LoopbackSwarm(network)
        value, signature = signed(alice, 0)

        receipt = await swarm.put(MutableItem(
            public_key=alice.address_bytes,
            value=value,
            sequence=0,
            signature=signature
        ))

        assert receipt.contact_count == 3

    def test_attach_refreshes_known_peer(self):
        network = SwarmNetwork(bootstrap_nodes=[(node_id("boot"), "127.0.0.1:6881")])
        swarm = LoopbackSwarm(network)

        assert network.attach(swarm.peer_id)
        assert network.get_stats()["total_nodes"] == 2
