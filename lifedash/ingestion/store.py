"""Persistence interface for the ingestion pipeline.

Three durable collections back the pipeline:

    connections  — keyed by (local_user_id, provider); unique external_user_id
    queue        — keyed by (external_user_id, payload_id)
    activities   — owned by local_user_id; unique (provider, external_id)
                   whenever external_id is present

``PostgresIngestionStore`` (see ``postgres_store``) implements this against
Supabase.  ``InMemoryIngestionStore`` below has the same semantics and is
used by the test-suite and for local runs without a database.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timedelta

from lifedash.ingestion.base import (
    CanonicalActivity,
    CommitOutcome,
    ConnectionRecord,
    PayloadStatus,
    QueuedPayload,
)

logger = logging.getLogger("lifedash.ingestion.store")


class IngestionStore(ABC):
    """Abstract store used by every pipeline component."""

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_connection(self, local_user_id: str, provider: str) -> ConnectionRecord | None:
        """Return the connection for a local user + provider, if any."""

    @abstractmethod
    async def get_connection_by_external_id(self, external_user_id: str) -> ConnectionRecord | None:
        """Return the connection owning a provider user id, if any."""

    @abstractmethod
    async def save_connection(self, record: ConnectionRecord) -> ConnectionRecord:
        """Create or replace the single connection for (local_user_id, provider).

        Any other record holding the same ``external_user_id`` is replaced too.
        """

    @abstractmethod
    async def delete_connection(self, local_user_id: str, provider: str) -> ConnectionRecord | None:
        """Delete and return the connection, or None when there was none."""

    @abstractmethod
    async def delete_connection_by_external_id(self, external_user_id: str) -> ConnectionRecord | None:
        """Delete and return the connection owning a provider user id."""

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    @abstractmethod
    async def enqueue(self, payload: QueuedPayload) -> bool:
        """Insert a queued reference.  Returns False if the key already exists."""

    @abstractmethod
    async def get_payload(self, external_user_id: str, payload_id: str) -> QueuedPayload | None:
        """Return a queued reference in any state."""

    @abstractmethod
    async def list_pending(
        self, *, now: datetime, lease_seconds: int, limit: int
    ) -> list[QueuedPayload]:
        """Oldest-first references eligible for processing.

        Eligible means ``queued``, or ``claimed`` with a lease older than
        ``lease_seconds``.  Dead letters are never returned.
        """

    @abstractmethod
    async def claim(
        self,
        external_user_id: str,
        payload_id: str,
        *,
        worker_id: str,
        now: datetime,
        lease_seconds: int,
    ) -> QueuedPayload | None:
        """Atomically transition an eligible reference to ``claimed``.

        Returns the claimed reference, or None when another worker holds a
        live claim, the reference is dead-lettered, or it no longer exists.
        """

    @abstractmethod
    async def release(
        self,
        payload: QueuedPayload,
        *,
        error: str,
        max_attempts: int,
        permanent: bool = False,
    ) -> PayloadStatus | None:
        """Record a failed attempt and return the reference to the queue.

        Increments ``attempts``; moves the reference to ``dead_letter`` when
        ``permanent`` or when attempts reach ``max_attempts``.  Only applies
        while ``payload.claimed_by`` still holds the claim; returns ``None``
        and changes nothing once the lease was taken over.
        """

    @abstractmethod
    async def unclaim(self, payload: QueuedPayload) -> bool:
        """Return a claimed reference to ``queued`` without counting an attempt.

        Returns False when ``payload.claimed_by`` no longer holds the claim.
        """

    @abstractmethod
    async def dequeue(
        self, external_user_id: str, payload_id: str, *, worker_id: str | None = None
    ) -> bool:
        """Remove a reference after its activity was written.

        With ``worker_id`` the reference is only removed while that worker
        holds the claim.
        """

    @abstractmethod
    async def list_dead_letters(self, limit: int = 100) -> list[QueuedPayload]:
        """Dead-lettered references, oldest first."""

    @abstractmethod
    async def requeue_dead_letter(self, external_user_id: str, payload_id: str) -> bool:
        """Move a dead letter back to ``queued`` with a fresh attempt budget."""

    # ------------------------------------------------------------------
    # Activities
    # ------------------------------------------------------------------

    @abstractmethod
    async def insert_activity(self, activity: CanonicalActivity) -> CommitOutcome:
        """Insert a canonical activity.

        Returns ``DUPLICATE`` (and writes nothing) when an activity with the
        same (provider, external_id) already exists.
        """

    @abstractmethod
    async def list_activities(
        self,
        local_user_id: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[CanonicalActivity]:
        """A user's activities, newest first, optionally bounded by start time."""


def _lease_expired(payload: QueuedPayload, now: datetime, lease_seconds: int) -> bool:
    if payload.claimed_at is None:
        return True
    return payload.claimed_at <= now - timedelta(seconds=lease_seconds)


def _held_by(stored: QueuedPayload | None, worker_id: str | None) -> bool:
    return (
        stored is not None
        and worker_id is not None
        and stored.status is PayloadStatus.CLAIMED
        and stored.claimed_by == worker_id
    )


class InMemoryIngestionStore(IngestionStore):
    """Process-local store with the same semantics as the Postgres store.

    Every method completes without awaiting anything, so each operation is
    atomic with respect to other coroutines on the same event loop.
    """

    def __init__(self) -> None:
        self.connections: dict[tuple[str, str], ConnectionRecord] = {}
        self.queue: dict[tuple[str, str], QueuedPayload] = {}
        self.activities: list[CanonicalActivity] = []

    # -- connections ---------------------------------------------------

    async def get_connection(self, local_user_id: str, provider: str) -> ConnectionRecord | None:
        return self.connections.get((local_user_id, provider))

    async def get_connection_by_external_id(self, external_user_id: str) -> ConnectionRecord | None:
        for record in self.connections.values():
            if record.external_user_id == external_user_id:
                return record
        return None

    async def save_connection(self, record: ConnectionRecord) -> ConnectionRecord:
        stale = [
            key
            for key, existing in self.connections.items()
            if existing.external_user_id == record.external_user_id
        ]
        for key in stale:
            del self.connections[key]
        existing = self.connections.get((record.local_user_id, record.provider))
        if existing is not None:
            record = replace(record, created_at=existing.created_at)
        self.connections[(record.local_user_id, record.provider)] = record
        return record

    async def delete_connection(self, local_user_id: str, provider: str) -> ConnectionRecord | None:
        return self.connections.pop((local_user_id, provider), None)

    async def delete_connection_by_external_id(self, external_user_id: str) -> ConnectionRecord | None:
        record = await self.get_connection_by_external_id(external_user_id)
        if record is None:
            return None
        return self.connections.pop((record.local_user_id, record.provider), None)

    # -- queue ---------------------------------------------------------

    async def enqueue(self, payload: QueuedPayload) -> bool:
        if payload.key in self.queue:
            return False
        self.queue[payload.key] = replace(payload)
        return True

    async def get_payload(self, external_user_id: str, payload_id: str) -> QueuedPayload | None:
        payload = self.queue.get((external_user_id, payload_id))
        return replace(payload) if payload is not None else None

    async def list_pending(
        self, *, now: datetime, lease_seconds: int, limit: int
    ) -> list[QueuedPayload]:
        eligible = [
            replace(p)
            for p in self.queue.values()
            if p.status is PayloadStatus.QUEUED
            or (p.status is PayloadStatus.CLAIMED and _lease_expired(p, now, lease_seconds))
        ]
        eligible.sort(key=lambda p: p.enqueued_at)
        return eligible[:limit]

    async def claim(
        self,
        external_user_id: str,
        payload_id: str,
        *,
        worker_id: str,
        now: datetime,
        lease_seconds: int,
    ) -> QueuedPayload | None:
        payload = self.queue.get((external_user_id, payload_id))
        if payload is None or payload.status is PayloadStatus.DEAD_LETTER:
            return None
        if payload.status is PayloadStatus.CLAIMED and not _lease_expired(payload, now, lease_seconds):
            return None
        payload.status = PayloadStatus.CLAIMED
        payload.claimed_by = worker_id
        payload.claimed_at = now
        return replace(payload)

    async def release(
        self,
        payload: QueuedPayload,
        *,
        error: str,
        max_attempts: int,
        permanent: bool = False,
    ) -> PayloadStatus | None:
        stored = self.queue.get(payload.key)
        if not _held_by(stored, payload.claimed_by):
            return None
        stored.attempts += 1
        stored.last_error = error
        stored.claimed_by = None
        stored.claimed_at = None
        if permanent or stored.attempts >= max_attempts:
            stored.status = PayloadStatus.DEAD_LETTER
        else:
            stored.status = PayloadStatus.QUEUED
        return stored.status

    async def unclaim(self, payload: QueuedPayload) -> bool:
        stored = self.queue.get(payload.key)
        if not _held_by(stored, payload.claimed_by):
            return False
        stored.status = PayloadStatus.QUEUED
        stored.claimed_by = None
        stored.claimed_at = None
        return True

    async def dequeue(
        self, external_user_id: str, payload_id: str, *, worker_id: str | None = None
    ) -> bool:
        key = (external_user_id, payload_id)
        if worker_id is not None and not _held_by(self.queue.get(key), worker_id):
            return False
        return self.queue.pop(key, None) is not None

    async def list_dead_letters(self, limit: int = 100) -> list[QueuedPayload]:
        dead = [replace(p) for p in self.queue.values() if p.status is PayloadStatus.DEAD_LETTER]
        dead.sort(key=lambda p: p.enqueued_at)
        return dead[:limit]

    async def requeue_dead_letter(self, external_user_id: str, payload_id: str) -> bool:
        stored = self.queue.get((external_user_id, payload_id))
        if stored is None or stored.status is not PayloadStatus.DEAD_LETTER:
            return False
        stored.status = PayloadStatus.QUEUED
        stored.attempts = 0
        return True

    # -- activities ----------------------------------------------------

    async def insert_activity(self, activity: CanonicalActivity) -> CommitOutcome:
        if activity.external_id is not None:
            for existing in self.activities:
                if (
                    existing.provider == activity.provider
                    and existing.external_id == activity.external_id
                ):
                    return CommitOutcome.DUPLICATE
        self.activities.append(replace(activity))
        return CommitOutcome.CREATED

    async def list_activities(
        self,
        local_user_id: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[CanonicalActivity]:
        rows = [
            a
            for a in self.activities
            if a.local_user_id == local_user_id
            and (start is None or a.start_time >= start)
            and (end is None or a.start_time <= end)
        ]
        return sorted(rows, key=lambda a: a.start_time, reverse=True)
