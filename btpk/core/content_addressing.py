"""
Content addressing for bundle directories.

A bundle is identified by its infohash: the SHA-1 of the bencoded
BitTorrent v1 info dictionary built over the directory's exact byte
layout (relative file paths, lengths and SHA-1 piece hashes). The same
bytes under the same descriptor always hash the same; adding, removing
or changing one file changes the infohash.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Any

from fastbencode import bencode

from .errors import EmptyContent

logger = logging.getLogger(__name__)


MIN_PIECE_LENGTH = 16 * 1024  # 16KB
MAX_PIECE_LENGTH = 16 * 1024 * 1024  # 16MB
TARGET_PIECES = 1024
DEFAULT_BUNDLE_NAME = "bundle"


@dataclass
class DescriptorOptions:
    """Swarm descriptor configuration persisted per content entry."""

    name: str = DEFAULT_BUNDLE_NAME
    piece_length: Optional[int] = None  # Auto when None
    private: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "piece_length": self.piece_length, "private": self.private}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DescriptorOptions":
        if not data:
            return cls()
        return cls(
            name=data.get("name") or DEFAULT_BUNDLE_NAME,
            piece_length=data.get("piece_length"),
            private=bool(data.get("private", False)),
        )


@dataclass
class ContentDescriptor:
    """Result of hashing a bundle directory."""

    infohash: str
    name: str
    piece_length: int
    files: List[Tuple[str, int]] = field(default_factory=list)  # (relative posix path, length)

    @property
    def total_length(self) -> int:
        return sum(length for _, length in self.files)


def list_files(folder: Path) -> List[Path]:
    """All regular files under folder, sorted by relative posix path."""
    folder = Path(folder)
    if not folder.is_dir():
        return []
    files = [p for p in folder.rglob("*") if p.is_file()]
    files.sort(key=lambda p: p.relative_to(folder).as_posix())
    return files


def piece_length_for(total_length: int) -> int:
    """Pick a power-of-two piece length giving roughly TARGET_PIECES pieces."""
    piece_length = MIN_PIECE_LENGTH
    while total_length / piece_length > TARGET_PIECES and piece_length < MAX_PIECE_LENGTH:
        piece_length *= 2
    return piece_length


class ContentAddressingEngine:
    """
    Computes infohashes for bundle directories.

    Files are streamed in sorted path order as one contiguous byte stream,
    split into fixed-size pieces, and each piece hashed with SHA-1.
    """

    def __init__(self, read_chunk: int = 256 * 1024):
        """
        Initialize content addressing engine.

        Args:
            read_chunk: Bytes read from disk per call
        """
        self.read_chunk = read_chunk

    def describe_directory(
        self,
        folder: Path,
        options: Optional[DescriptorOptions] = None
    ) -> ContentDescriptor:
        """
        Hash a bundle directory.

        Args:
            folder: Bundle directory
            options: Descriptor configuration (name, piece length, private flag)

        Returns:
            ContentDescriptor with infohash and file list

        Raises:
            EmptyContent: if the directory holds no files
        """
        folder = Path(folder)
        options = options or DescriptorOptions()

        paths = list_files(folder)
        if not paths:
            raise EmptyContent(f"no files to describe in {folder}")

        files = [(p.relative_to(folder).as_posix(), p.stat().st_size) for p in paths]
        total_length = sum(length for _, length in files)
        piece_length = options.piece_length or piece_length_for(total_length)

        pieces = self._hash_pieces(paths, piece_length)

        info: Dict[bytes, Any] = {
            b"files": [
                {b"length": length, b"path": [part.encode("utf-8") for part in rel.split("/")]}
                for rel, length in files
            ],
            b"name": options.name.encode("utf-8"),
            b"piece length": piece_length,
            b"pieces": pieces,
        }
        if options.private:
            info[b"private"] = 1

        infohash = hashlib.sha1(bencode(info)).hexdigest()

        logger.debug(
            f"Described {folder.name}: {len(files)} files, {total_length} bytes, "
            f"infohash {infohash[:16]}..."
        )

        return ContentDescriptor(
            infohash=infohash,
            name=options.name,
            piece_length=piece_length,
            files=files
        )

    def _hash_pieces(self, paths: List[Path], piece_length: int) -> bytes:
        """SHA-1 of every piece across the concatenated file stream."""
        pieces = []
        piece = hashlib.sha1()
        filled = 0

        for path in paths:
            with open(path, "rb") as f:
                while True:
                    chunk = f.read(self.read_chunk)
                    if not chunk:
                        break
                    offset = 0
                    while offset < len(chunk):
                        take = min(piece_length - filled, len(chunk) - offset)
                        piece.update(chunk[offset:offset + take])
                        filled += take
                        offset += take
                        if filled == piece_length:
                            pieces.append(piece.digest())
                            piece = hashlib.sha1()
                            filled = 0

        if filled:
            pieces.append(piece.digest())

        return b"".join(pieces)
