"""
Unit tests for event ingestion.
"""

import base64
import io
import json

import pytest

from webhook_brain.ingest import IngestError, IngestRecord, LineEventSource, parse_ingest_record

ORDER_CREATED = "core.orders.created.v1"


class TestIngestRecord:
    """Test ingestion record parsing."""

    def test_camel_case_record(self):
        """Test the wire form of an event record."""
        event = parse_ingest_record(
            {"eventType": ORDER_CREATED, "payload": '{"order": 1}', "eventId": "evt-1", "extra": True}
        )

        assert event.event_type == ORDER_CREATED
        assert event.payload == b'{"order": 1}'
        assert event.event_id == "evt-1"

    def test_base64_payload(self):
        """Test binary payloads carried as base64."""
        raw = bytes(range(256))
        event = parse_ingest_record(
            {
                "event_type": ORDER_CREATED,
                "event_id": "evt-1",
                "payload": base64.b64encode(raw).decode("ascii"),
                "payload_encoding": "base64",
            }
        )
        assert event.payload == raw

    def test_missing_event_id_rejected(self):
        """Test that two identical records without ids are not given one shared identity."""
        record = {"eventType": ORDER_CREATED, "payload": "{}"}

        for _ in range(2):
            with pytest.raises(IngestError, match="event_id"):
                parse_ingest_record(dict(record))

    def test_identical_records_with_ids_stay_distinct(self):
        """Test that identical bodies with their own ids remain separate events."""
        first = parse_ingest_record({"eventType": ORDER_CREATED, "payload": "{}", "eventId": "evt-1"})
        second = parse_ingest_record({"eventType": ORDER_CREATED, "payload": "{}", "eventId": "evt-2"})

        assert first.payload == second.payload
        assert first.event_id != second.event_id

    def test_derived_event_id_is_stable(self):
        """Test that, when enabled, records without an id get the same derived id every time."""
        first = parse_ingest_record({"eventType": ORDER_CREATED, "payload": "abc"}, derive_event_id=True)
        second = parse_ingest_record({"eventType": ORDER_CREATED, "payload": "abc"}, derive_event_id=True)
        other = parse_ingest_record({"eventType": ORDER_CREATED, "payload": "abd"}, derive_event_id=True)

        assert first.event_id.startswith("evt_")
        assert first.event_id == second.event_id
        assert first.event_id != other.event_id

    def test_event_type_is_stripped(self):
        """Test event type normalization."""
        assert IngestRecord(event_type="  core.x.v1 ").event_type == "core.x.v1"

    @pytest.mark.parametrize(
        "data",
        [
            {},
            {"eventType": "   "},
            {"eventType": ORDER_CREATED, "eventId": " "},
            {"eventType": ORDER_CREATED, "payloadEncoding": "gzip"},
            {"eventType": ORDER_CREATED, "payload": "***", "payloadEncoding": "base64"},
        ],
    )
    def test_invalid_records(self, data):
        """Test that invalid records raise IngestError."""
        with pytest.raises(IngestError):
            parse_ingest_record(data)


class TestLineEventSource:
    """Test the line-oriented transport."""

    @pytest.mark.asyncio
    async def test_reads_until_eof_skipping_bad_lines(self):
        """Test iteration over a stream with malformed lines."""
        stream = io.StringIO(
            "\n".join(
                [
                    json.dumps({"eventType": ORDER_CREATED, "payload": "a", "eventId": "evt-1"}),
                    "not json",
                    "[1, 2]",
                    "",
                    json.dumps({"payload": "missing type"}),
                    json.dumps({"eventType": ORDER_CREATED, "payload": "b", "eventId": "evt-2"}),
                ]
            )
            + "\n"
        )
        source = LineEventSource(stream)

        events = [event async for event in source]

        assert [e.event_id for e in events] == ["evt-1", "evt-2"]
        stats = source.get_stats()
        assert stats["events_parsed"] == 2
        assert stats["lines_rejected"] == 3

    @pytest.mark.asyncio
    async def test_stop_ends_iteration(self):
        """Test that stop() ends iteration before EOF."""
        lines = [json.dumps({"eventType": ORDER_CREATED, "eventId": f"evt-{i}"}) for i in range(5)]
        source = LineEventSource(io.StringIO("\n".join(lines) + "\n"))

        seen = []
        async for event in source:
            seen.append(event.event_id)
            await source.stop()

        assert seen == ["evt-0"]

    @pytest.mark.asyncio
    async def test_records_without_id(self):
        """Test that records without an id are skipped unless derivation is enabled."""
        text = "\n".join(json.dumps({"eventType": ORDER_CREATED, "payload": "{}"}) for _ in range(2)) + "\n"

        strict = LineEventSource(io.StringIO(text))
        assert [event async for event in strict] == []
        assert strict.get_stats()["lines_rejected"] == 2

        lenient = LineEventSource(io.StringIO(text), derive_event_ids=True)
        events = [event async for event in lenient]
        assert len(events) == 2
        assert events[0].event_id == events[1].event_id
