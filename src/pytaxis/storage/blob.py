"""Blob Store collaborator for large task inputs and outputs.

Tasks exchange large payloads by URI instead of inlining them into queue
messages. The Blob Store is an external collaborator; two reference
implementations are provided:

- InMemoryBlobStore: `mem://` URIs, for tests and single-process runs
- LocalBlobStore: `file://` URIs under a root directory

Blobs are scoped by a prefix (typically `<namespace>/<execution id>`) so an
Execution's artifacts can be listed and removed together.
"""

from __future__ import annotations

import asyncio
import io
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import BinaryIO
from urllib.parse import urlparse

from pytaxis.errors import StorageError
from pytaxis.models import new_id

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


def _read_all(data: bytes | BinaryIO) -> bytes:
    if isinstance(data, bytes | bytearray | memoryview):
        return bytes(data)
    chunks = []
    while True:
        chunk = data.read(CHUNK_SIZE)
        if not chunk:
            break
        chunks.append(chunk)
    return b"".join(chunks)


class BlobStore(ABC):
    """Abstract Blob Store.

    Implementations must be safe for concurrent use from many Workers.
    """

    scheme: str = ""

    @abstractmethod
    async def put(self, data: bytes | BinaryIO, prefix: str = "", name: str | None = None) -> str:
        """Store data and return its URI."""
        pass

    @abstractmethod
    async def get(self, uri: str) -> BinaryIO:
        """Open a stored blob for reading.

        Raises:
            StorageError: If the URI is unknown or belongs to another store
        """
        pass

    @abstractmethod
    async def exists(self, uri: str) -> bool:
        pass

    @abstractmethod
    async def delete(self, uri: str) -> bool:
        """Delete a blob; returns False if it did not exist."""
        pass

    def owns(self, uri: object) -> bool:
        return isinstance(uri, str) and uri.startswith(f"{self.scheme}://")

    def _check(self, uri: str) -> str:
        if not self.owns(uri):
            raise StorageError(f"URI {uri!r} does not belong to this {self.scheme}:// store")
        return uri[len(self.scheme) + 3 :]


class InMemoryBlobStore(BlobStore):
    """Blob Store keeping data in a dictionary."""

    scheme = "mem"

    def __init__(self):
        self._blobs: dict[str, bytes] = {}
        self._lock = asyncio.Lock()

    async def put(self, data: bytes | BinaryIO, prefix: str = "", name: str | None = None) -> str:
        key = "/".join(part for part in (prefix.strip("/"), name or new_id()) if part)
        payload = _read_all(data)
        async with self._lock:
            self._blobs[key] = payload
        return f"{self.scheme}://{key}"

    async def get(self, uri: str) -> BinaryIO:
        key = self._check(uri)
        async with self._lock:
            payload = self._blobs.get(key)
        if payload is None:
            raise StorageError(f"Blob not found: {uri}")
        return io.BytesIO(payload)

    async def exists(self, uri: str) -> bool:
        key = self._check(uri)
        async with self._lock:
            return key in self._blobs

    async def delete(self, uri: str) -> bool:
        key = self._check(uri)
        async with self._lock:
            return self._blobs.pop(key, None) is not None

    def __len__(self) -> int:
        return len(self._blobs)


class LocalBlobStore(BlobStore):
    """Blob Store writing files under a root directory.

    File I/O runs in the default executor so the event loop is not blocked.
    """

    scheme = "file"

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, uri: str) -> Path:
        parsed = urlparse(uri)
        if parsed.scheme != self.scheme:
            raise StorageError(f"URI {uri!r} does not belong to this file:// store")
        path = Path(parsed.path).resolve()
        if not path.is_relative_to(self.root):
            raise StorageError(f"URI {uri!r} is outside of {self.root}")
        return path

    async def put(self, data: bytes | BinaryIO, prefix: str = "", name: str | None = None) -> str:
        directory = self.root.joinpath(*[p for p in prefix.strip("/").split("/") if p])
        path = (directory / (name or new_id())).resolve()
        if not path.is_relative_to(self.root):
            raise StorageError(f"Blob path {path} is outside of {self.root}")
        payload = _read_all(data)

        def write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(payload)

        try:
            await asyncio.get_running_loop().run_in_executor(None, write)
        except OSError as e:
            raise StorageError(f"Failed to write blob {path}: {e}") from e
        logger.debug(f"Stored blob {path} ({len(payload)} bytes)")
        return path.as_uri()

    async def get(self, uri: str) -> BinaryIO:
        path = self._path(uri)
        try:
            payload = await asyncio.get_running_loop().run_in_executor(None, path.read_bytes)
        except FileNotFoundError:
            raise StorageError(f"Blob not found: {uri}") from None
        except OSError as e:
            raise StorageError(f"Failed to read blob {uri}: {e}") from e
        return io.BytesIO(payload)

    async def exists(self, uri: str) -> bool:
        return self._path(uri).is_file()

    async def delete(self, uri: str) -> bool:
        path = self._path(uri)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True
