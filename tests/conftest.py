"""
Shared fixtures for btpk tests.
"""

import pytest

from btpk.config import StoreConfig
from btpk.core.identity import derive_identity
from btpk.p2p.loopback import LoopbackSwarm, SwarmNetwork
from btpk.storage.lifecycle import ContentLifecycle


ROOT_SEED = bytes(range(32))


@pytest.fixture
def root_seed():
    """Fixed root seed so derived addresses are stable across tests."""
    return ROOT_SEED


@pytest.fixture
def alice(root_seed):
    """Identity derived for the title 'alice'."""
    return derive_identity(root_seed, "alice")


@pytest.fixture
def network():
    """One shared loopback network (DHT + seeded bundles)."""
    return SwarmNetwork()


@pytest.fixture
def make_store(tmp_path, network):
    """Factory for stores attached to the shared network."""

    def factory(name="a", swarm=None, **overrides):
        overrides.setdefault("timeout", 5.0)
        overrides.setdefault("keepalive_delay", 0)
        config = StoreConfig(folder=tmp_path / name, **overrides)
        return ContentLifecycle(config, swarm or LoopbackSwarm(network))

    return factory
