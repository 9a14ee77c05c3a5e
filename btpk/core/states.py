"""Lifecycle states of a logical content id."""

from enum import Enum


class ContentState(Enum):
    """Where a logical id is in its load/publish/shred lifecycle."""
    ABSENT = "absent"
    RESOLVING = "resolving"  # Looking up the pointer record
    MATERIALIZING = "materializing"  # Joining the swarm / writing bytes
    ACTIVE = "active"
    PUBLISHING = "publishing"  # Mutating bytes and signing a new record
    DESTROYED = "destroyed"
