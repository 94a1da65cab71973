"""Tests for the sync orchestrator: claim, retry, dead-letter and batch accounting."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from lifedash.ingestion.base import (
    ActivityType,
    CommitOutcome,
    ConnectionRecord,
    PayloadStatus,
    QueuedPayload,
)
from lifedash.ingestion.errors import ConfigurationError, ProviderError, StoreError
from lifedash.ingestion.mapper import map_activity
from lifedash.ingestion.orchestrator import SyncOrchestrator
from lifedash.ingestion.provider import TerraClient
from lifedash.ingestion.store import InMemoryIngestionStore
from lifedash.ingestion.tests.conftest import (
    FIXED_NOW,
    TEST_LOCAL_USER,
    TEST_TERRA_USER,
    TerraStub,
    terra_activity,
)
from lifedash.ingestion.vocabulary import ActivityVocabulary


def _serve_activities(stub: TerraStub, failing: dict[str, int] | None = None) -> None:
    """Answer GET /activity with a Terra body for the requested payload id.

    ``failing`` maps payload ids to the HTTP status they should fail with.
    """
    failing = failing or {}

    def handler(request: httpx.Request) -> httpx.Response:
        payload_id = request.url.params["payload_id"]
        if payload_id in failing:
            return httpx.Response(failing[payload_id], json={"message": "upstream failure"})
        return httpx.Response(
            200,
            json={
                "status": "success",
                "user": {"user_id": request.url.params["user_id"]},
                "data": [terra_activity(payload_id)],
            },
        )

    stub.on("GET", "/v2/activity", handler)


async def _enqueue(store: InMemoryIngestionStore, *payload_ids: str, user: str = TEST_TERRA_USER) -> None:
    for i, payload_id in enumerate(payload_ids):
        await store.enqueue(
            QueuedPayload(
                external_user_id=user,
                payload_id=payload_id,
                enqueued_at=FIXED_NOW - timedelta(minutes=len(payload_ids) - i),
            )
        )


def _orchestrator(
    store: InMemoryIngestionStore,
    provider: TerraClient,
    vocabulary: ActivityVocabulary,
    **kwargs: object,
) -> SyncOrchestrator:
    return SyncOrchestrator(
        store,
        provider,
        vocabulary=vocabulary,
        worker_id="test-worker",
        clock=lambda: FIXED_NOW,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestRunBatch:
    @pytest.mark.asyncio
    async def test_end_to_end_activity(
        self,
        connected_store: InMemoryIngestionStore,
        terra_client: TerraClient,
        terra_stub: TerraStub,
        vocabulary: ActivityVocabulary,
    ) -> None:
        _serve_activities(terra_stub)
        await _enqueue(connected_store, "act-1")

        result = await _orchestrator(connected_store, terra_client, vocabulary).run_batch(
            caller=TEST_LOCAL_USER
        )

        assert (result.processed, result.errors, result.skipped) == (1, 0, 0)
        assert connected_store.queue == {}
        (activity,) = connected_store.activities
        assert activity.local_user_id == TEST_LOCAL_USER
        assert activity.provider == "garmin"
        assert activity.external_id == "act-1"
        assert activity.activity_type is ActivityType.RUNNING
        assert activity.distance_km == 8.25
        assert activity.raw_payload["status"] == "success"
        assert activity.raw_payload["data"][0]["metadata"]["summary_id"] == "act-1"

    @pytest.mark.asyncio
    async def test_empty_queue_makes_no_calls(
        self,
        connected_store: InMemoryIngestionStore,
        terra_client: TerraClient,
        terra_stub: TerraStub,
        vocabulary: ActivityVocabulary,
    ) -> None:
        result = await _orchestrator(connected_store, terra_client, vocabulary).run_batch()
        assert result.total == 0
        assert terra_stub.requests == []

    @pytest.mark.asyncio
    async def test_processes_oldest_first(
        self,
        connected_store: InMemoryIngestionStore,
        terra_client: TerraClient,
        terra_stub: TerraStub,
        vocabulary: ActivityVocabulary,
    ) -> None:
        _serve_activities(terra_stub)
        await _enqueue(connected_store, "act-old", "act-mid", "act-new")

        await _orchestrator(connected_store, terra_client, vocabulary).run_batch()

        fetched = [r.url.params["payload_id"] for r in terra_stub.requests_to("/v2/activity")]
        assert fetched == ["act-old", "act-mid", "act-new"]

    @pytest.mark.asyncio
    async def test_batch_limit(
        self,
        connected_store: InMemoryIngestionStore,
        terra_client: TerraClient,
        terra_stub: TerraStub,
        vocabulary: ActivityVocabulary,
    ) -> None:
        _serve_activities(terra_stub)
        await _enqueue(connected_store, "a", "b", "c")

        result = await _orchestrator(
            connected_store, terra_client, vocabulary, batch_limit=2
        ).run_batch()

        assert result.processed == 2
        assert list(connected_store.queue) == [(TEST_TERRA_USER, "c")]


# ---------------------------------------------------------------------------
# Per-item failures
# ---------------------------------------------------------------------------


class TestItemFailures:
    @pytest.mark.asyncio
    async def test_failing_item_does_not_abort_batch(
        self,
        connected_store: InMemoryIngestionStore,
        terra_client: TerraClient,
        terra_stub: TerraStub,
        vocabulary: ActivityVocabulary,
    ) -> None:
        _serve_activities(terra_stub, failing={"act-2": 500})
        await _enqueue(connected_store, "act-1", "act-2", "act-3")

        result = await _orchestrator(connected_store, terra_client, vocabulary).run_batch()

        assert (result.processed, result.errors) == (2, 1)
        assert result.total == 3
        assert {a.external_id for a in connected_store.activities} == {"act-1", "act-3"}
        remaining = connected_store.queue[(TEST_TERRA_USER, "act-2")]
        assert remaining.status is PayloadStatus.QUEUED
        assert remaining.attempts == 1
        assert "upstream failure" in remaining.last_error
        assert remaining.claimed_by is None

    @pytest.mark.asyncio
    async def test_identity_miss_is_retryable_error(
        self,
        store: InMemoryIngestionStore,
        terra_client: TerraClient,
        terra_stub: TerraStub,
        vocabulary: ActivityVocabulary,
    ) -> None:
        _serve_activities(terra_stub)
        await _enqueue(store, "act-1", user="terra-unknown")

        result = await _orchestrator(store, terra_client, vocabulary).run_batch()

        assert result.errors == 1
        assert terra_stub.requests == []
        stored = store.queue[("terra-unknown", "act-1")]
        assert stored.status is PayloadStatus.QUEUED
        assert stored.attempts == 1
        assert stored.last_error.startswith("IdentityNotFoundError")

    @pytest.mark.asyncio
    async def test_empty_provider_body_is_retryable_error(
        self,
        connected_store: InMemoryIngestionStore,
        terra_client: TerraClient,
        terra_stub: TerraStub,
        vocabulary: ActivityVocabulary,
    ) -> None:
        terra_stub.respond_json("GET", "/v2/activity", {"status": "success", "data": []})
        await _enqueue(connected_store, "act-1")

        result = await _orchestrator(connected_store, terra_client, vocabulary).run_batch()

        assert result.errors == 1
        assert connected_store.queue[(TEST_TERRA_USER, "act-1")].last_error.startswith("NoDataError")

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_item_error(
        self,
        connected_store: InMemoryIngestionStore,
        vocabulary: ActivityVocabulary,
    ) -> None:
        provider = MagicMock(spec=TerraClient)
        provider.provider_slug = "garmin"
        provider.fetch_activity = AsyncMock(side_effect=RuntimeError("boom"))
        await _enqueue(connected_store, "act-1")

        result = await _orchestrator(connected_store, provider, vocabulary).run_batch()

        assert result.errors == 1
        stored = connected_store.queue[(TEST_TERRA_USER, "act-1")]
        assert stored.attempts == 1
        assert stored.last_error == "RuntimeError: boom"

    @pytest.mark.asyncio
    async def test_queue_shrinks_only_on_success(
        self,
        connected_store: InMemoryIngestionStore,
        terra_client: TerraClient,
        terra_stub: TerraStub,
        vocabulary: ActivityVocabulary,
    ) -> None:
        _serve_activities(terra_stub, failing={"act-1": 503})
        await _enqueue(connected_store, "act-1")
        orchestrator = _orchestrator(connected_store, terra_client, vocabulary)

        await orchestrator.run_batch()
        assert (TEST_TERRA_USER, "act-1") in connected_store.queue

        _serve_activities(terra_stub)
        result = await orchestrator.run_batch()
        assert result.processed == 1
        assert connected_store.queue == {}


# ---------------------------------------------------------------------------
# Dead-letter
# ---------------------------------------------------------------------------


class TestDeadLetter:
    @pytest.mark.asyncio
    async def test_dead_letter_after_max_attempts(
        self,
        connected_store: InMemoryIngestionStore,
        terra_client: TerraClient,
        terra_stub: TerraStub,
        vocabulary: ActivityVocabulary,
    ) -> None:
        _serve_activities(terra_stub, failing={"act-1": 500})
        await _enqueue(connected_store, "act-1")
        orchestrator = _orchestrator(connected_store, terra_client, vocabulary, max_attempts=3)

        results = [await orchestrator.run_batch() for _ in range(3)]

        assert [r.dead_lettered for r in results] == [0, 0, 1]
        stored = connected_store.queue[(TEST_TERRA_USER, "act-1")]
        assert stored.status is PayloadStatus.DEAD_LETTER
        assert stored.attempts == 3

        # Excluded from later batches but never deleted
        fetches = len(terra_stub.requests_to("/v2/activity"))
        assert (await orchestrator.run_batch()).total == 0
        assert len(terra_stub.requests_to("/v2/activity")) == fetches
        assert (TEST_TERRA_USER, "act-1") in connected_store.queue

    @pytest.mark.asyncio
    async def test_gone_payload_dead_letters_immediately(
        self,
        connected_store: InMemoryIngestionStore,
        terra_client: TerraClient,
        terra_stub: TerraStub,
        vocabulary: ActivityVocabulary,
    ) -> None:
        _serve_activities(terra_stub, failing={"act-1": 410})
        await _enqueue(connected_store, "act-1")

        result = await _orchestrator(connected_store, terra_client, vocabulary).run_batch()

        assert (result.errors, result.dead_lettered) == (1, 1)
        stored = connected_store.queue[(TEST_TERRA_USER, "act-1")]
        assert stored.status is PayloadStatus.DEAD_LETTER
        assert stored.attempts == 1

    @pytest.mark.asyncio
    async def test_list_and_requeue_dead_letters(
        self,
        connected_store: InMemoryIngestionStore,
        terra_client: TerraClient,
        terra_stub: TerraStub,
        vocabulary: ActivityVocabulary,
    ) -> None:
        _serve_activities(terra_stub, failing={"act-1": 410})
        await _enqueue(connected_store, "act-1")
        orchestrator = _orchestrator(connected_store, terra_client, vocabulary)
        await orchestrator.run_batch()

        (dead,) = await orchestrator.list_dead_letters()
        assert dead.payload_id == "act-1"

        assert await orchestrator.requeue_dead_letter(TEST_TERRA_USER, "act-1") is True
        assert await orchestrator.requeue_dead_letter(TEST_TERRA_USER, "act-1") is False

        _serve_activities(terra_stub)
        assert (await orchestrator.run_batch()).processed == 1
        assert await orchestrator.list_dead_letters() == []


# ---------------------------------------------------------------------------
# Configuration errors
# ---------------------------------------------------------------------------


class TestConfigurationError:
    @pytest.mark.asyncio
    async def test_missing_key_aborts_before_claiming(
        self,
        connected_store: InMemoryIngestionStore,
        unconfigured_client: TerraClient,
        vocabulary: ActivityVocabulary,
    ) -> None:
        await _enqueue(connected_store, "act-1", "act-2")

        with pytest.raises(ConfigurationError):
            await _orchestrator(connected_store, unconfigured_client, vocabulary).run_batch()

        for payload in connected_store.queue.values():
            assert payload.status is PayloadStatus.QUEUED
            assert payload.attempts == 0
            assert payload.claimed_by is None

    @pytest.mark.asyncio
    async def test_configuration_error_mid_batch_unclaims(
        self,
        connected_store: InMemoryIngestionStore,
        vocabulary: ActivityVocabulary,
    ) -> None:
        provider = MagicMock(spec=TerraClient)
        provider.provider_slug = "garmin"
        provider.fetch_activity = AsyncMock(side_effect=ConfigurationError("key revoked"))
        await _enqueue(connected_store, "act-1", "act-2")

        with pytest.raises(ConfigurationError):
            await _orchestrator(connected_store, provider, vocabulary).run_batch()

        assert provider.fetch_activity.await_count == 1
        for payload in connected_store.queue.values():
            assert payload.status is PayloadStatus.QUEUED
            assert payload.attempts == 0
            assert payload.claimed_by is None

    @pytest.mark.asyncio
    async def test_unclaim_failure_does_not_mask_configuration_error(
        self, vocabulary: ActivityVocabulary
    ) -> None:
        store = _BrokenUnclaimStore()
        await store.save_connection(ConnectionRecord(TEST_TERRA_USER, TEST_LOCAL_USER, "garmin"))
        provider = MagicMock(spec=TerraClient)
        provider.provider_slug = "garmin"
        provider.fetch_activity = AsyncMock(side_effect=ConfigurationError("key revoked"))
        await _enqueue(store, "act-1")

        with pytest.raises(ConfigurationError, match="key revoked"):
            await _orchestrator(store, provider, vocabulary).run_batch()


# ---------------------------------------------------------------------------
# Claims and duplicates
# ---------------------------------------------------------------------------


class _RacingStore(InMemoryIngestionStore):
    """Another worker claims every item right after it is listed."""

    async def list_pending(self, *, now, lease_seconds, limit):
        pending = await super().list_pending(now=now, lease_seconds=lease_seconds, limit=limit)
        for payload in pending:
            await self.claim(
                payload.external_user_id,
                payload.payload_id,
                worker_id="other-worker",
                now=now,
                lease_seconds=lease_seconds,
            )
        return pending


class _FlakyDequeueStore(InMemoryIngestionStore):
    """Fails the first dequeue, after the activity was committed."""

    def __init__(self) -> None:
        super().__init__()
        self.dequeue_failures = 1

    async def dequeue(
        self, external_user_id: str, payload_id: str, *, worker_id: str | None = None
    ) -> bool:
        if self.dequeue_failures:
            self.dequeue_failures -= 1
            raise StoreError("connection reset during dequeue")
        return await super().dequeue(external_user_id, payload_id, worker_id=worker_id)


class _BrokenUnclaimStore(InMemoryIngestionStore):
    async def unclaim(self, payload: QueuedPayload) -> bool:
        raise StoreError("connection reset during unclaim")


def _take_over_during_fetch(
    store: InMemoryIngestionStore, result: Exception | dict
) -> AsyncMock:
    """fetch_activity that lets another worker take the claim over first."""

    async def fetch(external_user_id: str, payload_id: str, **kwargs: object) -> dict:
        await store.claim(
            external_user_id,
            payload_id,
            worker_id="other-worker",
            now=FIXED_NOW + timedelta(seconds=400),
            lease_seconds=300,
        )
        if isinstance(result, Exception):
            raise result
        return result

    return AsyncMock(side_effect=fetch)


class TestClaimsAndDuplicates:
    @pytest.mark.asyncio
    async def test_lost_claim_is_skipped(
        self,
        terra_client: TerraClient,
        terra_stub: TerraStub,
        vocabulary: ActivityVocabulary,
    ) -> None:
        store = _RacingStore()
        await _enqueue(store, "act-1")

        result = await _orchestrator(store, terra_client, vocabulary).run_batch()

        assert (result.processed, result.errors, result.skipped) == (0, 0, 1)
        assert terra_stub.requests == []
        assert store.queue[(TEST_TERRA_USER, "act-1")].claimed_by == "other-worker"

    @pytest.mark.asyncio
    async def test_live_claim_not_listed(
        self,
        connected_store: InMemoryIngestionStore,
        terra_client: TerraClient,
        terra_stub: TerraStub,
        vocabulary: ActivityVocabulary,
    ) -> None:
        await _enqueue(connected_store, "act-1")
        await connected_store.claim(
            TEST_TERRA_USER, "act-1", worker_id="other-worker", now=FIXED_NOW, lease_seconds=300
        )

        result = await _orchestrator(connected_store, terra_client, vocabulary).run_batch()

        assert result.total == 0
        assert terra_stub.requests == []

    @pytest.mark.asyncio
    async def test_expired_claim_is_taken_over(
        self,
        connected_store: InMemoryIngestionStore,
        terra_client: TerraClient,
        terra_stub: TerraStub,
        vocabulary: ActivityVocabulary,
    ) -> None:
        _serve_activities(terra_stub)
        await _enqueue(connected_store, "act-1")
        await connected_store.claim(
            TEST_TERRA_USER,
            "act-1",
            worker_id="crashed-worker",
            now=FIXED_NOW - timedelta(minutes=10),
            lease_seconds=300,
        )

        result = await _orchestrator(
            connected_store, terra_client, vocabulary, lease_seconds=300
        ).run_batch()

        assert result.processed == 1
        assert connected_store.queue == {}

    @pytest.mark.asyncio
    async def test_already_stored_activity_counts_as_processed(
        self,
        connected_store: InMemoryIngestionStore,
        terra_client: TerraClient,
        terra_stub: TerraStub,
        vocabulary: ActivityVocabulary,
    ) -> None:
        _serve_activities(terra_stub)
        existing = map_activity(
            terra_activity("act-1"),
            local_user_id=TEST_LOCAL_USER,
            provider="garmin",
            provider_user_id=TEST_TERRA_USER,
            payload_id="act-1",
            vocabulary=vocabulary,
        )
        assert await connected_store.insert_activity(existing) is CommitOutcome.CREATED
        await _enqueue(connected_store, "act-1")

        result = await _orchestrator(connected_store, terra_client, vocabulary).run_batch()

        assert (result.processed, result.duplicates, result.errors) == (1, 1, 0)
        assert len(connected_store.activities) == 1
        assert connected_store.queue == {}

    @pytest.mark.asyncio
    async def test_dequeue_failure_then_retry_does_not_duplicate(
        self,
        terra_client: TerraClient,
        terra_stub: TerraStub,
        vocabulary: ActivityVocabulary,
    ) -> None:
        store = _FlakyDequeueStore()
        await store.save_connection(
            ConnectionRecord(
                external_user_id=TEST_TERRA_USER,
                local_user_id=TEST_LOCAL_USER,
                provider="garmin",
            )
        )
        _serve_activities(terra_stub)
        await _enqueue(store, "act-1")
        orchestrator = _orchestrator(store, terra_client, vocabulary)

        first = await orchestrator.run_batch()
        assert first.errors == 1
        assert len(store.activities) == 1
        assert store.queue[(TEST_TERRA_USER, "act-1")].attempts == 1

        second = await orchestrator.run_batch()
        assert (second.processed, second.duplicates) == (1, 1)
        assert len(store.activities) == 1
        assert store.queue == {}


class TestLeaseTakeover:
    @pytest.mark.asyncio
    async def test_failure_after_takeover_leaves_new_owner_claim(
        self,
        connected_store: InMemoryIngestionStore,
        vocabulary: ActivityVocabulary,
    ) -> None:
        provider = MagicMock(spec=TerraClient)
        provider.provider_slug = "garmin"
        provider.fetch_activity = _take_over_during_fetch(
            connected_store, ProviderError("upstream failure", status_code=502)
        )
        await _enqueue(connected_store, "act-1")

        result = await _orchestrator(
            connected_store, provider, vocabulary, lease_seconds=300
        ).run_batch()

        assert result.errors == 1
        stored = connected_store.queue[(TEST_TERRA_USER, "act-1")]
        assert stored.status is PayloadStatus.CLAIMED
        assert stored.claimed_by == "other-worker"
        assert stored.attempts == 0
        assert stored.last_error is None

    @pytest.mark.asyncio
    async def test_success_after_takeover_does_not_dequeue(
        self,
        connected_store: InMemoryIngestionStore,
        vocabulary: ActivityVocabulary,
    ) -> None:
        provider = MagicMock(spec=TerraClient)
        provider.provider_slug = "garmin"
        provider.fetch_activity = _take_over_during_fetch(
            connected_store, {"status": "success", "data": [terra_activity("act-1")]}
        )
        await _enqueue(connected_store, "act-1")

        result = await _orchestrator(
            connected_store, provider, vocabulary, lease_seconds=300
        ).run_batch()

        assert result.processed == 1
        assert len(connected_store.activities) == 1
        assert connected_store.queue[(TEST_TERRA_USER, "act-1")].claimed_by == "other-worker"
