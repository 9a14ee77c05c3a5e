"""
Blob sink: writes caller payloads into a content directory.

Payload parsing (multipart bodies, uploads) happens before this point; the
sink only receives byte streams and decides where they land inside the
bundle directory.
"""

import asyncio
import logging
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import AsyncIterable, Iterable, List, Union

from btpk.core.errors import InvalidArgument

logger = logging.getLogger(__name__)


@dataclass
class NamedBlob:
    """One named byte stream of a multi-blob payload."""

    name: str
    data: Union[bytes, str, Iterable[bytes], AsyncIterable[bytes]]


Payload = Union[bytes, str, Iterable[bytes], AsyncIterable[bytes], List[NamedBlob]]


def safe_relative(path: str) -> str:
    """
    Normalize a bundle path ("/a/b.txt" -> "a/b.txt").

    Raises:
        InvalidArgument: empty path or one escaping the bundle directory
    """
    if not isinstance(path, str):
        raise InvalidArgument(f"path must be a string: {path!r}")

    parts = [part for part in PurePosixPath(path.replace("\\", "/")).parts if part not in ("/", ".")]
    if any(part == ".." for part in parts):
        raise InvalidArgument(f"path escapes the bundle: {path!r}")
    return "/".join(parts)


class BlobSink(ABC):
    """Writes payloads into bundle directories."""

    @abstractmethod
    async def write(self, folder: Path, path: str, payload: Payload) -> List[str]:
        """
        Write payload under folder at path.

        Returns:
            Relative posix paths written
        """

    @abstractmethod
    async def remove(self, folder: Path, path: str) -> bool:
        """Remove the file or directory at path; True if something was removed."""


class FileBlobSink(BlobSink):
    """
    Local filesystem blob sink.

    A single stream is written to the file at `path`; a list of NamedBlob
    is written as files inside the directory `path`.
    """

    async def write(self, folder: Path, path: str, payload: Payload) -> List[str]:
        folder = Path(folder)
        base = safe_relative(path)

        if isinstance(payload, list) and all(isinstance(blob, NamedBlob) for blob in payload):
            if not payload:
                raise InvalidArgument("payload has no blobs")
            written = []
            for blob in payload:
                name = safe_relative(blob.name)
                if not name:
                    raise InvalidArgument(f"blob name is empty: {blob.name!r}")
                rel = f"{base}/{name}" if base else name
                await self._write_one(folder, rel, blob.data)
                written.append(rel)
            return written

        if not base:
            raise InvalidArgument("a single payload needs a file path, not '/'")
        await self._write_one(folder, base, payload)
        return [base]

    async def remove(self, folder: Path, path: str) -> bool:
        folder = Path(folder)
        rel = safe_relative(path)
        if not rel:
            raise InvalidArgument("cannot remove the bundle root as an item")

        target = folder / rel
        if target.is_dir():
            await asyncio.to_thread(shutil.rmtree, target)
        elif target.exists():
            await asyncio.to_thread(target.unlink)
        else:
            logger.warning(f"Item {rel} not found in {folder.name}")
            return False

        self._cleanup_empty_dirs(target.parent, folder)
        logger.debug(f"Removed {rel} from {folder.name}")
        return True

    async def _write_one(self, folder: Path, rel: str, data) -> None:
        file_path = folder / rel
        if file_path.is_dir():
            raise InvalidArgument(f"{rel} is a directory")
        file_path.parent.mkdir(parents=True, exist_ok=True)

        if isinstance(data, str):
            data = data.encode("utf-8")

        if isinstance(data, (bytes, bytearray, memoryview)):
            await asyncio.to_thread(file_path.write_bytes, bytes(data))
        elif hasattr(data, "__aiter__"):
            with open(file_path, "wb") as f:
                async for chunk in data:
                    f.write(chunk)
        elif hasattr(data, "__iter__"):
            with open(file_path, "wb") as f:
                for chunk in data:
                    f.write(chunk)
        else:
            raise InvalidArgument(f"unsupported payload type: {type(data).__name__}")

        logger.debug(f"Wrote {rel} into {folder.name}")

    def _cleanup_empty_dirs(self, directory: Path, stop: Path):
        """Remove empty parent directories up to the bundle root."""
        try:
            while directory != stop and directory.is_dir() and not any(directory.iterdir()):
                directory.rmdir()
                directory = directory.parent
        except OSError as e:
            logger.debug(f"Could not clean up {directory}: {e}")
