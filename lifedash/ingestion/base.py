"""Canonical data models for the Terra/Garmin ingestion pipeline.

These dataclasses are the single currency passed between the receiver,
identity mapper, schema mapper, reconciler and the stores.  The database
rows in ``terra_users``, ``terra_data_payloads`` and ``garmin_activities``
are built from (and read back into) exactly these types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Vocabularies
# ---------------------------------------------------------------------------


class ActivityType(str, Enum):
    """Canonical activity vocabulary shared with the rest of the app."""

    RUNNING = "corrida"
    WALKING = "caminhada"
    CYCLING = "ciclismo"
    SWIMMING = "natacao"
    STRENGTH = "musculacao"
    YOGA = "yoga"
    PILATES = "pilates"
    HIKING = "trilha"
    OTHER = "outro"


class PayloadStatus(str, Enum):
    """Lifecycle of a queued payload reference.

    ``queued -> claimed -> (removed)`` on success,
    ``claimed -> queued`` on a transient error,
    ``claimed -> dead_letter`` once retries are exhausted.
    """

    QUEUED = "queued"
    CLAIMED = "claimed"
    DEAD_LETTER = "dead_letter"


class CommitOutcome(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------


@dataclass
class ConnectionRecord:
    """Live link between a local user and the wearable provider.

    Attributes:
        external_user_id: Provider-issued user id (Terra ``user.user_id``).
        local_user_id:    Our user id (Terra ``reference_id``).
        provider:         Lower-case provider slug, e.g. ``garmin``.
        granted_scopes:   Permission strings granted during authorization.
        state:            Provider-reported connection state.
        created_at:       When the link was first recorded.
    """

    external_user_id: str
    local_user_id: str
    provider: str
    granted_scopes: frozenset[str] = frozenset()
    state: str = "connected"
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class ConnectResult:
    """Outcome of ``ConnectionManager.connect``."""

    already_connected: bool
    auth_url: str | None = None
    connection: ConnectionRecord | None = None


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------


@dataclass
class QueuedPayload:
    """Notification that provider data exists, not the data itself.

    Uniquely identified by ``(external_user_id, payload_id)``.
    """

    external_user_id: str
    payload_id: str
    data_type: str = "activity"
    start_time: datetime | None = None
    end_time: datetime | None = None
    enqueued_at: datetime = field(default_factory=utc_now)
    status: PayloadStatus = PayloadStatus.QUEUED
    attempts: int = 0
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    last_error: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.external_user_id, self.payload_id)


# ---------------------------------------------------------------------------
# Canonical activity
# ---------------------------------------------------------------------------


@dataclass
class CanonicalActivity:
    """Normalized representation of one activity session.

    Attributes:
        local_user_id:     Owning local user.
        provider:          Provider slug.
        provider_user_id:  Provider's user id, kept for audit.
        payload_id:        Queue reference this record was built from.
        activity_type:     Canonical vocabulary value, never the raw string.
        start_time:        Always set; see ``start_time_source``.
        start_time_source: ``payload``, ``hint`` or ``processing_time``.
        external_id:       Provider activity id, the natural dedup key.
        distance_km:       Derived from metres, 2 dp.
        pace_min_per_km:   Derived from duration and distance.
        raw_payload:       Verbatim provider response.
    """

    local_user_id: str
    provider: str
    provider_user_id: str
    payload_id: str
    activity_type: ActivityType
    start_time: datetime
    start_time_source: str = "payload"
    external_id: str | None = None
    end_time: datetime | None = None
    duration_seconds: int | None = None
    distance_km: float | None = None
    calories: int | None = None
    steps: int | None = None
    avg_heart_rate: int | None = None
    max_heart_rate: int | None = None
    elevation_gain_m: float | None = None
    elevation_loss_m: float | None = None
    pace_min_per_km: float | None = None
    raw_payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Batch result
# ---------------------------------------------------------------------------


@dataclass
class BatchResult:
    """Aggregate counters for one ``run_batch`` pass.

    ``processed + errors + skipped`` equals the number of references the
    batch looked at.  ``duplicates`` is a subset of ``processed`` and
    ``dead_lettered`` a subset of ``errors``.
    """

    processed: int = 0
    errors: int = 0
    skipped: int = 0
    duplicates: int = 0
    dead_lettered: int = 0

    @property
    def total(self) -> int:
        return self.processed + self.errors + self.skipped
