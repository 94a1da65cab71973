"""Tests for webhook data-event parsing and queue intake."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from lifedash.ingestion.base import PayloadStatus, QueuedPayload
from lifedash.ingestion.receiver import PayloadReceiver, parse_data_event, payload_content_hash
from lifedash.ingestion.store import InMemoryIngestionStore
from lifedash.ingestion.tests.conftest import TEST_TERRA_USER, terra_activity


def _activity_event(*items: dict, user: dict | None = None) -> dict:
    return {
        "type": "activity",
        "user": user if user is not None else {"user_id": TEST_TERRA_USER, "provider": "GARMIN"},
        "data": list(items),
    }


class TestParseDataEvent:
    def test_summary_id_used_as_payload_id(self) -> None:
        (ref,) = parse_data_event(_activity_event(terra_activity("act-9")))
        assert ref.external_user_id == TEST_TERRA_USER
        assert ref.payload_id == "act-9"
        assert ref.data_type == "activity"
        assert ref.status is PayloadStatus.QUEUED
        assert ref.start_time == datetime(2026, 2, 28, 7, tzinfo=timezone.utc)
        assert ref.end_time == datetime(2026, 2, 28, 7, 45, tzinfo=timezone.utc)

    def test_explicit_payload_id_wins(self) -> None:
        item = {"payload_id": "p-1", "id": "other", "start_time": "2026-02-28T07:00:00Z"}
        (ref,) = parse_data_event(_activity_event(item))
        assert ref.payload_id == "p-1"

    def test_camel_case_fallbacks(self) -> None:
        item = {"payloadId": "p-2", "userId": "terra-9", "startDate": "2026-02-28T07:00:00Z"}
        (ref,) = parse_data_event(_activity_event(item, user={}))
        assert ref.payload_id == "p-2"
        assert ref.external_user_id == "terra-9"
        assert ref.start_time is not None

    def test_missing_id_derives_stable_hash(self) -> None:
        item = {"sport": "running", "start_time": "2026-02-28T07:00:00Z"}
        (first,) = parse_data_event(_activity_event(item))
        (second,) = parse_data_event(_activity_event(dict(reversed(list(item.items())))))
        assert first.payload_id == payload_content_hash(item)
        assert first.payload_id == second.payload_id
        assert len(first.payload_id) == 64

    def test_item_without_user_is_dropped(self) -> None:
        refs = parse_data_event(_activity_event({"id": "p-1"}, user={}))
        assert refs == []

    def test_non_object_items_skipped(self) -> None:
        refs = parse_data_event(_activity_event("garbage", {"id": "p-1"}))
        assert [r.payload_id for r in refs] == ["p-1"]

    @pytest.mark.parametrize("event_type", ["daily", "sleep", "body", "nutrition", "weird"])
    def test_unsupported_types_yield_nothing(self, event_type: str) -> None:
        event = {"type": event_type, "user": {"user_id": TEST_TERRA_USER}, "data": [{"id": "x"}]}
        assert parse_data_event(event) == []

    def test_missing_data_list(self) -> None:
        assert parse_data_event({"type": "activity", "user": {"user_id": TEST_TERRA_USER}}) == []

    def test_millisecond_epoch_hints_dropped(self) -> None:
        items = [
            {"id": "p-1", "start_time": 1772262000000, "end_time": float("inf")},
            {"id": "p-2", "start_time": "2026-02-28T07:00:00Z"},
        ]
        refs = parse_data_event(_activity_event(*items))
        assert [r.payload_id for r in refs] == ["p-1", "p-2"]
        assert refs[0].start_time is None
        assert refs[0].end_time is None
        assert refs[1].start_time == datetime(2026, 2, 28, 7, tzinfo=timezone.utc)


class TestPayloadReceiver:
    @pytest.mark.asyncio
    async def test_receive_queues_reference(self, store: InMemoryIngestionStore) -> None:
        receiver = PayloadReceiver(store)
        ref = QueuedPayload(external_user_id=TEST_TERRA_USER, payload_id="p-1")

        assert await receiver.receive(ref) is True
        stored = await store.get_payload(TEST_TERRA_USER, "p-1")
        assert stored is not None
        assert stored.status is PayloadStatus.QUEUED
        assert stored.attempts == 0

    @pytest.mark.asyncio
    async def test_duplicate_is_silent_noop(self, store: InMemoryIngestionStore) -> None:
        receiver = PayloadReceiver(store)
        ref = QueuedPayload(external_user_id=TEST_TERRA_USER, payload_id="p-1")

        assert await receiver.receive(ref) is True
        assert await receiver.receive(ref) is False
        assert len(store.queue) == 1

    @pytest.mark.asyncio
    async def test_redelivery_does_not_reset_progress(self, store: InMemoryIngestionStore) -> None:
        receiver = PayloadReceiver(store)
        await receiver.receive(QueuedPayload(external_user_id=TEST_TERRA_USER, payload_id="p-1"))
        store.queue[(TEST_TERRA_USER, "p-1")].attempts = 3

        await receiver.receive(QueuedPayload(external_user_id=TEST_TERRA_USER, payload_id="p-1"))
        assert store.queue[(TEST_TERRA_USER, "p-1")].attempts == 3

    @pytest.mark.asyncio
    async def test_receive_event_counts_new_references(self, store: InMemoryIngestionStore) -> None:
        receiver = PayloadReceiver(store)
        event = _activity_event(terra_activity("act-1"), terra_activity("act-2"))

        assert await receiver.receive_event(event) == 2
        assert await receiver.receive_event(event) == 0
        assert set(store.queue) == {(TEST_TERRA_USER, "act-1"), (TEST_TERRA_USER, "act-2")}
