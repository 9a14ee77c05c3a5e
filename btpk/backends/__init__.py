"""
Local backends for btpk.

Durable index (SQLite) and the filesystem blob sink.
"""

from .local_index import LocalIndex, ActiveHandle, ActiveHandleCache
from .blob_sink import BlobSink, FileBlobSink, NamedBlob

__all__ = ["LocalIndex", "ActiveHandle", "ActiveHandleCache", "BlobSink", "FileBlobSink", "NamedBlob"]
