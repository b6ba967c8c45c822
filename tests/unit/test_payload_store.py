"""
Unit tests for payload store adapters.
"""

import os
import time

import pytest

from webhook_brain.storage.payloads import (
    FilesystemPayloadStore,
    InMemoryPayloadStore,
    PayloadNotFoundError,
    payload_ref_for,
)


class TestInMemoryPayloadStore:
    """Test in-memory payload store."""

    @pytest.mark.asyncio
    async def test_put_get(self):
        """Test storing and resolving a payload."""
        store = InMemoryPayloadStore()
        data = os.urandom(2 * 1024 * 1024)

        ref = await store.put(data)

        assert ref.startswith("sha256:")
        assert await store.get(ref) == data

    @pytest.mark.asyncio
    async def test_same_bytes_same_reference(self):
        """Test that content addressing makes puts idempotent."""
        store = InMemoryPayloadStore()

        first = await store.put(b"payload")
        second = await store.put(b"payload")

        assert first == second == payload_ref_for(b"payload")
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_missing_reference(self):
        """Test resolving an unknown reference."""
        store = InMemoryPayloadStore()
        with pytest.raises(PayloadNotFoundError):
            await store.get(payload_ref_for(b"never stored"))


class TestFilesystemPayloadStore:
    """Test filesystem payload store."""

    @pytest.mark.asyncio
    async def test_put_get(self, tmp_path):
        """Test storing and resolving a payload on disk."""
        store = FilesystemPayloadStore(tmp_path)
        data = os.urandom(300 * 1024)

        ref = await store.put(data)

        assert await store.get(ref) == data
        digest = ref.split(":", 1)[1]
        assert (tmp_path / digest[:2] / digest).is_file()

    @pytest.mark.asyncio
    async def test_malformed_reference(self, tmp_path):
        """Test that a reference outside the store's scheme is rejected."""
        store = FilesystemPayloadStore(tmp_path)
        with pytest.raises(PayloadNotFoundError):
            await store.get("sha256:../../etc/passwd")
        with pytest.raises(PayloadNotFoundError):
            await store.get("blob-1")

    @pytest.mark.asyncio
    async def test_purge_respects_retention(self, tmp_path):
        """Test that only payloads older than the retention period are removed."""
        store = FilesystemPayloadStore(tmp_path)
        old_ref = await store.put(b"old payload")
        new_ref = await store.put(b"new payload")

        old_digest = old_ref.split(":", 1)[1]
        old_path = tmp_path / old_digest[:2] / old_digest
        three_days_ago = time.time() - 3 * 24 * 3600
        os.utime(old_path, (three_days_ago, three_days_ago))

        removed = store.purge_expired(retention_seconds=48 * 3600)

        assert removed == 1
        with pytest.raises(PayloadNotFoundError):
            await store.get(old_ref)
        assert await store.get(new_ref) == b"new payload"

    @pytest.mark.asyncio
    async def test_rewrite_refreshes_retention(self, tmp_path):
        """Test that putting existing content again restarts its retention clock."""
        store = FilesystemPayloadStore(tmp_path)
        ref = await store.put(b"shared payload")
        digest = ref.split(":", 1)[1]
        path = tmp_path / digest[:2] / digest
        three_days_ago = time.time() - 3 * 24 * 3600
        os.utime(path, (three_days_ago, three_days_ago))

        await store.put(b"shared payload")

        assert store.purge_expired(retention_seconds=48 * 3600) == 0
        assert await store.get(ref) == b"shared payload"

    @pytest.mark.asyncio
    async def test_stats_count_payloads(self, tmp_path):
        """Test that stats count stored payloads and ignore partial writes."""
        store = FilesystemPayloadStore(tmp_path)
        await store.put(b"one")
        await store.put(b"two")
        ref = await store.put(b"one")
        digest = ref.split(":", 1)[1]
        (tmp_path / digest[:2] / ".tmp-abc").write_bytes(b"partial")

        stats = await store.get_stats()

        assert stats["backend"] == "filesystem"
        assert stats["payloads"] == 2
