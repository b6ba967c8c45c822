"""
Unit tests for dead-letter sinks.
"""

import pytest

from webhook_brain.webhooks.deadletter import (
    DeadLetterReason,
    DeadLetterRecord,
    InMemoryDeadLetterSink,
    JsonlDeadLetterSink,
)


def make_record(delivery, reason=DeadLetterReason.PERMANENT_FAILURE, status_code=410):
    return DeadLetterRecord(
        delivery=delivery,
        reason=reason,
        status_code=status_code,
        dead_lettered_at=1_700_000_000.0,
    )


class TestDeadLetterRecord:
    """Test record serialization."""

    def test_dict_form(self, delivery_factory):
        """Test converting a record to and from its dictionary form."""
        record = make_record(delivery_factory(payload=b"\x00\xff"), DeadLetterReason.WINDOW_EXHAUSTED, None)

        data = record.to_dict()
        restored = DeadLetterRecord.from_dict(data)

        assert data["reason"] == "window_exhausted"
        assert restored == record
        assert restored.description == "window exhausted"


class TestInMemoryDeadLetterSink:
    """Test process-local sink."""

    @pytest.mark.asyncio
    async def test_put_list_pop(self, delivery_factory):
        """Test parking and removing records."""
        sink = InMemoryDeadLetterSink()
        first = make_record(delivery_factory(event_id="evt-1"))
        second = make_record(delivery_factory(event_id="evt-2"), DeadLetterReason.ATTEMPTS_EXHAUSTED, 503)

        await sink.put(first)
        await sink.put(second)

        assert [r.delivery_id for r in await sink.list()] == [first.delivery_id, second.delivery_id]
        assert len(await sink.list(limit=1)) == 1
        assert await sink.pop(first.delivery_id) == first
        assert await sink.pop(first.delivery_id) is None

        stats = await sink.get_stats()
        assert stats["parked"] == 1
        assert stats["by_reason"]["attempts_exhausted"] == 1


class TestJsonlDeadLetterSink:
    """Test JSON-lines file sink."""

    @pytest.mark.asyncio
    async def test_records_survive_reopen(self, tmp_path, delivery_factory):
        """Test that parked records are read back by a new sink instance."""
        path = tmp_path / "dead" / "letters.jsonl"
        record = make_record(delivery_factory(payload_ref="sha256:" + "a" * 64))

        await JsonlDeadLetterSink(path).put(record)
        records = await JsonlDeadLetterSink(path).list()

        assert records == [record]

    @pytest.mark.asyncio
    async def test_pop_rewrites_file(self, tmp_path, delivery_factory):
        """Test that popping removes exactly one record from the file."""
        sink = JsonlDeadLetterSink(tmp_path / "letters.jsonl")
        first = make_record(delivery_factory(event_id="evt-1"))
        second = make_record(delivery_factory(event_id="evt-2"))
        await sink.put(first)
        await sink.put(second)

        assert await sink.pop(first.delivery_id) == first
        assert await sink.pop("dlv_missing") is None
        assert await sink.list() == [second]

    @pytest.mark.asyncio
    async def test_unreadable_lines_skipped(self, tmp_path, delivery_factory):
        """Test that a corrupt line does not hide the rest of the file."""
        path = tmp_path / "letters.jsonl"
        sink = JsonlDeadLetterSink(path)
        record = make_record(delivery_factory())
        await sink.put(record)
        with open(path, "a", encoding="utf-8") as f:
            f.write("{not json\n")
            f.write('{"reason": "permanent_failure"}\n')

        assert await sink.list() == [record]
        stats = await sink.get_stats()
        assert stats["parked"] == 1

    @pytest.mark.asyncio
    async def test_missing_file_is_empty(self, tmp_path):
        """Test listing before anything was parked."""
        assert await JsonlDeadLetterSink(tmp_path / "none.jsonl").list() == []
