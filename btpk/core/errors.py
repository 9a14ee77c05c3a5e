"""
Error taxonomy for the pointer store.

Three families matter to callers:
- retryable: TimedOut, NotFound (network misses, slow peers)
- corruption: SignatureMismatch, IntegrityError, Conflict, InvalidData
- caller mistakes: InvalidArgument, EmptyContent
"""


class PointerStoreError(Exception):
    """Base class for every error raised by btpk."""

    retryable = False


class InvalidArgument(PointerStoreError, ValueError):
    """Malformed address, infohash, title, path or stuff values."""


class NotFound(PointerStoreError, LookupError):
    """Lookup miss on the network or missing durable entry."""

    retryable = True


class InvalidData(PointerStoreError):
    """Network returned data that is not well-formed."""


class StaleRecord(InvalidData):
    """Resolved record is older than one already observed for the address."""


class IntegrityError(PointerStoreError):
    """Content hash or record verification failed."""


class SignatureMismatch(IntegrityError):
    """Signature does not verify against the record it came with."""


class Conflict(IntegrityError):
    """Infohash changed unexpectedly (resume of authored content, sequence clash)."""


class TimedOut(PointerStoreError, TimeoutError):
    """Caller-supplied time budget was exceeded."""

    retryable = True


class EmptyContent(PointerStoreError):
    """Operation would leave a content entry with zero items."""
