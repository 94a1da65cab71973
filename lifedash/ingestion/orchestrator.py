"""Batch sync of queued provider payloads into canonical activities.

One pass over the queue (``run_batch``) handles each reference on its own:

1. Claim it (compare-and-swap ``queued -> claimed`` with a lease)
2. Resolve the provider user to a local user
3. Fetch the full payload from the provider
4. Map it onto ``CanonicalActivity``
5. Commit the activity (duplicates by provider id count as committed)
6. Remove the reference from the queue

A failure in steps 2-6 returns the reference to the queue with one more
attempt recorded; after ``max_attempts`` (or a permanent provider error)
it is dead-lettered.  Only a missing API key aborts the whole batch.

Webhook deliveries and the manual "sync now" button both call
``run_batch``; the ``trigger`` argument is used for logging only.
"""

from __future__ import annotations

import logging
import uuid
from enum import Enum
from typing import Callable
from datetime import datetime

from lifedash.ingestion.base import (
    BatchResult,
    CommitOutcome,
    PayloadStatus,
    QueuedPayload,
    utc_now,
)
from lifedash.ingestion.errors import (
    ConfigurationError,
    IdentityNotFoundError,
    IngestionError,
)
from lifedash.ingestion.identity import IdentityMapper
from lifedash.ingestion.mapper import extract_activity, map_activity
from lifedash.ingestion.provider import TerraClient
from lifedash.ingestion.reconcile import Reconciler
from lifedash.ingestion.store import IngestionStore
from lifedash.ingestion.vocabulary import ActivityVocabulary

logger = logging.getLogger("lifedash.ingestion.orchestrator")

DEFAULT_MAX_ATTEMPTS = 10
DEFAULT_LEASE_SECONDS = 300
DEFAULT_BATCH_LIMIT = 500


class ItemOutcome(str, Enum):
    COMMITTED = "committed"
    DUPLICATE = "duplicate"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"
    SKIPPED = "skipped"


class SyncOrchestrator:
    """Drive queued references through the ingestion pipeline.

    Usage::

        orchestrator = SyncOrchestrator(store, TerraClient())
        result = await orchestrator.run_batch(caller="user-123", trigger="manual")
        logger.info("processed=%d errors=%d", result.processed, result.errors)
    """

    def __init__(
        self,
        store: IngestionStore,
        provider: TerraClient,
        *,
        vocabulary: ActivityVocabulary | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        batch_limit: int = DEFAULT_BATCH_LIMIT,
        worker_id: str | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            store:         Backing store for queue, connections and activities.
            provider:      Provider API client.
            vocabulary:    Activity vocabulary override (tests).
            max_attempts:  Failed attempts before a reference is dead-lettered.
            lease_seconds: Age after which another worker may take over a claim.
            batch_limit:   Maximum references looked at per pass.
            worker_id:     Claim owner; a random id per orchestrator by default.
            clock:         Returns the current UTC time.
        """
        self._store = store
        self._provider = provider
        self._identity = IdentityMapper(store)
        self._reconciler = Reconciler(store)
        self._vocabulary = vocabulary
        self._max_attempts = max_attempts
        self._lease_seconds = lease_seconds
        self._batch_limit = batch_limit
        self._worker_id = worker_id or f"sync-{uuid.uuid4().hex[:12]}"
        self._clock = clock

    @property
    def worker_id(self) -> str:
        return self._worker_id

    async def run_batch(self, caller: str = "system", trigger: str = "manual") -> BatchResult:
        """Process every eligible queued reference once, oldest first.

        Args:
            caller:  Identity that requested the run (user id or ``webhook``).
            trigger: ``manual`` or ``webhook``.

        Returns:
            Aggregate counters; per-item detail is only logged.

        Raises:
            ConfigurationError: Provider credentials missing.
            StoreError:         The queue could not be listed at all.
        """
        self._provider.ensure_configured()

        pending = await self._store.list_pending(
            now=self._clock(),
            lease_seconds=self._lease_seconds,
            limit=self._batch_limit,
        )
        result = BatchResult()

        if not pending:
            logger.debug("Sync %s (%s by %s): queue empty", self._worker_id, trigger, caller)
            return result

        logger.info(
            "Sync %s (%s by %s): %d queued payloads",
            self._worker_id,
            trigger,
            caller,
            len(pending),
        )

        for reference in pending:
            outcome = await self._process(reference)
            if outcome is ItemOutcome.COMMITTED:
                result.processed += 1
            elif outcome is ItemOutcome.DUPLICATE:
                result.processed += 1
                result.duplicates += 1
            elif outcome is ItemOutcome.SKIPPED:
                result.skipped += 1
            else:
                result.errors += 1
                if outcome is ItemOutcome.DEAD_LETTERED:
                    result.dead_lettered += 1

        logger.info(
            "Sync %s complete: processed=%d errors=%d skipped=%d duplicates=%d dead_lettered=%d",
            self._worker_id,
            result.processed,
            result.errors,
            result.skipped,
            result.duplicates,
            result.dead_lettered,
        )
        return result

    async def _process(self, reference: QueuedPayload) -> ItemOutcome:
        """Run one reference through the pipeline.  Never raises except for
        ConfigurationError."""
        try:
            claimed = await self._store.claim(
                reference.external_user_id,
                reference.payload_id,
                worker_id=self._worker_id,
                now=self._clock(),
                lease_seconds=self._lease_seconds,
            )
        except IngestionError as exc:
            logger.warning("Could not claim payload %s: %s", reference.payload_id, exc)
            return ItemOutcome.FAILED

        if claimed is None:
            logger.info("Payload %s claimed elsewhere, skipping", reference.payload_id)
            return ItemOutcome.SKIPPED

        try:
            outcome = await self._ingest(claimed)
        except ConfigurationError:
            try:
                await self._store.unclaim(claimed)
            except IngestionError as unclaim_exc:
                logger.error(
                    "Could not unclaim payload %s before aborting: %s",
                    claimed.payload_id,
                    unclaim_exc,
                )
            raise
        except IngestionError as exc:
            logger.warning(
                "Payload %s for provider user %s failed (attempt %d): %s",
                claimed.payload_id,
                claimed.external_user_id,
                claimed.attempts + 1,
                exc,
            )
            return await self._release(claimed, exc)
        except Exception as exc:
            logger.exception("Unexpected error processing payload %s", claimed.payload_id)
            return await self._release(claimed, exc)

        return outcome

    async def _ingest(self, claimed: QueuedPayload) -> ItemOutcome:
        local_user_id = await self._identity.resolve(claimed.external_user_id)
        if local_user_id is None:
            raise IdentityNotFoundError(
                f"No connection for provider user {claimed.external_user_id}"
            )

        body = await self._provider.fetch_activity(
            claimed.external_user_id,
            claimed.payload_id,
            start_hint=claimed.start_time,
            end_hint=claimed.end_time,
        )
        record = extract_activity(body, claimed.payload_id)
        activity = map_activity(
            record,
            local_user_id=local_user_id,
            provider=self._provider.provider_slug,
            provider_user_id=claimed.external_user_id,
            payload_id=claimed.payload_id,
            start_hint=claimed.start_time,
            raw_payload=body,
            now=self._clock(),
            vocabulary=self._vocabulary,
        )

        commit = await self._reconciler.commit(activity)
        # Not atomic with the commit: a failure here leaves the reference
        # queued and the retry is absorbed by the (provider, external_id) key.
        dequeued = await self._store.dequeue(
            claimed.external_user_id, claimed.payload_id, worker_id=self._worker_id
        )
        if not dequeued:
            logger.warning(
                "Lease on payload %s was taken over before dequeue; leaving it to the new owner",
                claimed.payload_id,
            )

        if commit is CommitOutcome.DUPLICATE:
            return ItemOutcome.DUPLICATE
        return ItemOutcome.COMMITTED

    async def _release(self, claimed: QueuedPayload, exc: Exception) -> ItemOutcome:
        permanent = isinstance(exc, IngestionError) and exc.permanent
        error = f"{type(exc).__name__}: {exc}"
        try:
            status = await self._store.release(
                claimed,
                error=error,
                max_attempts=self._max_attempts,
                permanent=permanent,
            )
        except IngestionError as release_exc:
            # The lease expires on its own; the next pass retries the item.
            logger.error(
                "Could not release payload %s after failure: %s",
                claimed.payload_id,
                release_exc,
            )
            return ItemOutcome.FAILED

        if status is None:
            logger.warning(
                "Lease on payload %s was taken over; failure not recorded: %s",
                claimed.payload_id,
                error,
            )
            return ItemOutcome.FAILED
        if status is PayloadStatus.DEAD_LETTER:
            logger.error(
                "Payload %s for provider user %s dead-lettered: %s",
                claimed.payload_id,
                claimed.external_user_id,
                error,
            )
            return ItemOutcome.DEAD_LETTERED
        return ItemOutcome.FAILED

    # ------------------------------------------------------------------
    # Dead-letter inspection
    # ------------------------------------------------------------------

    async def list_dead_letters(self, limit: int = 100) -> list[QueuedPayload]:
        return await self._store.list_dead_letters(limit)

    async def requeue_dead_letter(self, external_user_id: str, payload_id: str) -> bool:
        requeued = await self._store.requeue_dead_letter(external_user_id, payload_id)
        if requeued:
            logger.info("Requeued dead letter %s for provider user %s", payload_id, external_user_id)
        return requeued
