"""
Payload store adapters for oversized webhook payloads.

Payloads too large for the dispatch queue are stored once and referenced
from the delivery descriptor. References are content addressed, so writing
the same bytes twice yields the same reference and is harmless.
"""

import asyncio
import hashlib
import os
import tempfile
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)

REF_PREFIX = "sha256:"


class PayloadStoreError(Exception):
    """Base exception for payload store failures. Always treated as transient."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.original_error = original_error


class PayloadNotFoundError(PayloadStoreError):
    """The reference does not resolve to a stored payload."""


def payload_ref_for(data: bytes) -> str:
    """Compute the content-addressed reference for ``data``."""
    return REF_PREFIX + hashlib.sha256(data).hexdigest()


def _digest_from_ref(ref: str) -> str:
    if not ref.startswith(REF_PREFIX):
        raise PayloadNotFoundError(f"Malformed payload reference: {ref!r}")
    digest = ref[len(REF_PREFIX):]
    if len(digest) != 64 or any(c not in "0123456789abcdef" for c in digest):
        raise PayloadNotFoundError(f"Malformed payload reference: {ref!r}")
    return digest


class PayloadStore(ABC):
    """put/get of opaque byte blobs by reference."""

    @abstractmethod
    async def put(self, data: bytes) -> str:
        """Store ``data`` and return its reference."""

    @abstractmethod
    async def get(self, ref: str) -> bytes:
        """Return the bytes stored under ``ref``."""

    async def get_stats(self) -> Dict[str, Any]:
        return {"backend": type(self).__name__}


class InMemoryPayloadStore(PayloadStore):
    """Process-local payload store, used for tests and single-process deployments."""

    def __init__(self) -> None:
        self._blobs: Dict[str, bytes] = {}

    async def put(self, data: bytes) -> str:
        ref = payload_ref_for(data)
        self._blobs[ref] = bytes(data)
        logger.debug("Payload stored", payload_ref=ref, size_bytes=len(data))
        return ref

    async def get(self, ref: str) -> bytes:
        try:
            return self._blobs[ref]
        except KeyError:
            raise PayloadNotFoundError(f"Payload not found: {ref}")

    def __len__(self) -> int:
        return len(self._blobs)

    async def get_stats(self) -> Dict[str, Any]:
        return {
            "backend": "memory",
            "payloads": len(self._blobs),
            "total_bytes": sum(len(b) for b in self._blobs.values()),
        }


class FilesystemPayloadStore(PayloadStore):
    """
    Payload store backed by a directory tree.

    Blobs live at ``<root>/<aa>/<digest>``. Writes go through a temporary
    file and an atomic rename so readers never see partial content.
    Blocking file I/O runs in the default executor.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path_for(self, digest: str) -> Path:
        return self.directory / digest[:2] / digest

    async def put(self, data: bytes) -> str:
        ref = payload_ref_for(data)
        path = self._path_for(_digest_from_ref(ref))
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._write_sync, path, bytes(data))
        except OSError as e:
            logger.error("Payload write failed", payload_ref=ref, error=str(e))
            raise PayloadStoreError(f"Failed to store payload {ref}: {e}", original_error=e)

        logger.debug("Payload stored", payload_ref=ref, size_bytes=len(data), path=str(path))
        return ref

    async def get(self, ref: str) -> bytes:
        path = self._path_for(_digest_from_ref(ref))
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, path.read_bytes)
        except FileNotFoundError:
            raise PayloadNotFoundError(f"Payload not found: {ref}")
        except OSError as e:
            raise PayloadStoreError(f"Failed to read payload {ref}: {e}", original_error=e)

    def _write_sync(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            # Same content by construction; refresh mtime so retention restarts.
            os.utime(path, None)
            return
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def purge_expired(self, retention_seconds: float, now: Optional[float] = None) -> int:
        """
        Delete payloads not written within ``retention_seconds``.

        This is the external lifecycle step of the retention contract: it
        must run with a retention at least as long as the retry window so
        that no in-flight delivery loses its payload.

        Returns:
            Number of payloads removed
        """
        cutoff = (now if now is not None else time.time()) - retention_seconds
        removed = 0
        for path in self.directory.glob("??/*"):
            if path.name.startswith(".tmp-") or not path.is_file():
                continue
            if path.stat().st_mtime < cutoff:
                path.unlink(missing_ok=True)
                removed += 1

        logger.info(
            "Expired payloads purged",
            directory=str(self.directory),
            removed_count=removed,
            retention_seconds=retention_seconds,
        )
        return removed

    def _count_payloads(self) -> int:
        return sum(
            1
            for p in self.directory.glob("??/*")
            if not p.name.startswith(".tmp-") and p.is_file()
        )

    async def get_stats(self) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        try:
            payloads = await loop.run_in_executor(None, self._count_payloads)
        except OSError as e:
            raise PayloadStoreError(f"Failed to scan {self.directory}: {e}", original_error=e)
        return {
            "backend": "filesystem",
            "directory": str(self.directory),
            "payloads": payloads,
        }
