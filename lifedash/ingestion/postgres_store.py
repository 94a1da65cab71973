"""Supabase/Postgres implementation of ``IngestionStore``.

Table layout (see ``supabase/migrations``):
    terra_users          — connections (user_id = Terra id, reference_id = local id)
    terra_data_payloads  — queued payload references
    garmin_activities    — canonical activity records

Claims, releases and activity inserts are single conditional statements,
so concurrent batch runs cannot both own the same reference and a repeated
insert of one provider activity is ignored by the partial unique index.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncGenerator

import asyncpg

from lifedash.ingestion.base import (
    ActivityType,
    CanonicalActivity,
    CommitOutcome,
    ConnectionRecord,
    PayloadStatus,
    QueuedPayload,
)
from lifedash.ingestion.errors import StoreError
from lifedash.ingestion.store import IngestionStore
from lifedash.services.supabase import execute, fetch, fetchrow

logger = logging.getLogger("lifedash.ingestion.postgres_store")

_CONNECTION_COLUMNS = (
    "user_id, reference_id::text AS reference_id, provider, granted_scopes, state, created_at"
)

_ACTIVITY_COLUMNS = (
    "user_id::text AS user_id, terra_user_id, terra_payload_id, provider, external_id, "
    "activity_type, start_time, start_time_source, end_time, duration_sec, distance_km, "
    "calories, steps, avg_hr, max_hr, elevation_gain_m, elevation_loss_m, "
    "pace_min_per_km, raw, created_at"
)


@asynccontextmanager
async def _translate_errors(operation: str) -> AsyncGenerator[None, None]:
    """Turn driver and pool failures into StoreError."""
    try:
        yield
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, RuntimeError) as exc:
        logger.error("Store operation %s failed: %s", operation, exc)
        raise StoreError(f"{operation} failed: {exc}") from exc


def _opt_float(value: Any) -> float | None:
    return float(value) if value is not None else None


def _connection_from_row(row: asyncpg.Record) -> ConnectionRecord:
    return ConnectionRecord(
        external_user_id=row["user_id"],
        local_user_id=row["reference_id"],
        provider=row["provider"],
        granted_scopes=frozenset(row["granted_scopes"] or ()),
        state=row["state"],
        created_at=row["created_at"],
    )


def _payload_from_row(row: asyncpg.Record) -> QueuedPayload:
    return QueuedPayload(
        external_user_id=row["user_id"],
        payload_id=row["payload_id"],
        data_type=row["data_type"],
        start_time=row["start_time"],
        end_time=row["end_time"],
        enqueued_at=row["created_at"],
        status=PayloadStatus(row["status"]),
        attempts=row["attempts"],
        claimed_by=row["claimed_by"],
        claimed_at=row["claimed_at"],
        last_error=row["last_error"],
    )


def _activity_from_row(row: asyncpg.Record) -> CanonicalActivity:
    raw = row["raw"]
    if isinstance(raw, str):
        raw = json.loads(raw)
    try:
        activity_type = ActivityType(row["activity_type"])
    except ValueError:
        activity_type = ActivityType.OTHER
    return CanonicalActivity(
        local_user_id=row["user_id"],
        provider=row["provider"],
        provider_user_id=row["terra_user_id"],
        payload_id=row["terra_payload_id"],
        activity_type=activity_type,
        start_time=row["start_time"],
        start_time_source=row["start_time_source"],
        external_id=row["external_id"],
        end_time=row["end_time"],
        duration_seconds=row["duration_sec"],
        distance_km=_opt_float(row["distance_km"]),
        calories=row["calories"],
        steps=row["steps"],
        avg_heart_rate=row["avg_hr"],
        max_heart_rate=row["max_hr"],
        elevation_gain_m=_opt_float(row["elevation_gain_m"]),
        elevation_loss_m=_opt_float(row["elevation_loss_m"]),
        pace_min_per_km=_opt_float(row["pace_min_per_km"]),
        raw_payload=raw or {},
        created_at=row["created_at"],
    )


class PostgresIngestionStore(IngestionStore):
    """asyncpg-backed store.  Requires ``init_pool()`` to have run."""

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def get_connection(self, local_user_id: str, provider: str) -> ConnectionRecord | None:
        async with _translate_errors("get_connection"):
            row = await fetchrow(
                f"SELECT {_CONNECTION_COLUMNS} FROM terra_users "
                "WHERE reference_id = $1::uuid AND provider = $2",
                local_user_id,
                provider,
                user_id=local_user_id,
            )
        return _connection_from_row(row) if row else None

    async def get_connection_by_external_id(self, external_user_id: str) -> ConnectionRecord | None:
        async with _translate_errors("get_connection_by_external_id"):
            row = await fetchrow(
                f"SELECT {_CONNECTION_COLUMNS} FROM terra_users WHERE user_id = $1",
                external_user_id,
            )
        return _connection_from_row(row) if row else None

    async def save_connection(self, record: ConnectionRecord) -> ConnectionRecord:
        async with _translate_errors("save_connection"):
            row = await fetchrow(
                f"""
                WITH removed AS (
                    DELETE FROM terra_users
                    WHERE user_id = $1
                       OR (reference_id = $2::uuid AND provider = $3)
                    RETURNING created_at
                )
                INSERT INTO terra_users
                    (user_id, reference_id, provider, granted_scopes, state, created_at)
                VALUES (
                    $1, $2::uuid, $3, $4, $5,
                    COALESCE((SELECT MIN(created_at) FROM removed), $6)
                )
                RETURNING {_CONNECTION_COLUMNS}
                """,
                record.external_user_id,
                record.local_user_id,
                record.provider,
                sorted(record.granted_scopes),
                record.state,
                record.created_at,
            )
        return _connection_from_row(row)

    async def delete_connection(self, local_user_id: str, provider: str) -> ConnectionRecord | None:
        async with _translate_errors("delete_connection"):
            row = await fetchrow(
                f"DELETE FROM terra_users WHERE reference_id = $1::uuid AND provider = $2 "
                f"RETURNING {_CONNECTION_COLUMNS}",
                local_user_id,
                provider,
            )
        return _connection_from_row(row) if row else None

    async def delete_connection_by_external_id(self, external_user_id: str) -> ConnectionRecord | None:
        async with _translate_errors("delete_connection_by_external_id"):
            row = await fetchrow(
                f"DELETE FROM terra_users WHERE user_id = $1 RETURNING {_CONNECTION_COLUMNS}",
                external_user_id,
            )
        return _connection_from_row(row) if row else None

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    async def enqueue(self, payload: QueuedPayload) -> bool:
        async with _translate_errors("enqueue"):
            row = await fetchrow(
                """
                INSERT INTO terra_data_payloads
                    (user_id, payload_id, data_type, start_time, end_time, created_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (user_id, payload_id) DO NOTHING
                RETURNING payload_id
                """,
                payload.external_user_id,
                payload.payload_id,
                payload.data_type,
                payload.start_time,
                payload.end_time,
                payload.enqueued_at,
            )
        return row is not None

    async def get_payload(self, external_user_id: str, payload_id: str) -> QueuedPayload | None:
        async with _translate_errors("get_payload"):
            row = await fetchrow(
                "SELECT * FROM terra_data_payloads WHERE user_id = $1 AND payload_id = $2",
                external_user_id,
                payload_id,
            )
        return _payload_from_row(row) if row else None

    async def list_pending(
        self, *, now: datetime, lease_seconds: int, limit: int
    ) -> list[QueuedPayload]:
        async with _translate_errors("list_pending"):
            rows = await fetch(
                """
                SELECT * FROM terra_data_payloads
                WHERE status = 'queued'
                   OR (status = 'claimed' AND claimed_at <= $1)
                ORDER BY created_at ASC
                LIMIT $2
                """,
                now - timedelta(seconds=lease_seconds),
                limit,
            )
        return [_payload_from_row(r) for r in rows]

    async def claim(
        self,
        external_user_id: str,
        payload_id: str,
        *,
        worker_id: str,
        now: datetime,
        lease_seconds: int,
    ) -> QueuedPayload | None:
        async with _translate_errors("claim"):
            row = await fetchrow(
                """
                UPDATE terra_data_payloads
                SET status = 'claimed', claimed_by = $3, claimed_at = $4
                WHERE user_id = $1 AND payload_id = $2
                  AND (status = 'queued' OR (status = 'claimed' AND claimed_at <= $5))
                RETURNING *
                """,
                external_user_id,
                payload_id,
                worker_id,
                now,
                now - timedelta(seconds=lease_seconds),
            )
        return _payload_from_row(row) if row else None

    async def release(
        self,
        payload: QueuedPayload,
        *,
        error: str,
        max_attempts: int,
        permanent: bool = False,
    ) -> PayloadStatus | None:
        async with _translate_errors("release"):
            row = await fetchrow(
                """
                UPDATE terra_data_payloads
                SET attempts = attempts + 1,
                    last_error = $3,
                    claimed_by = NULL,
                    claimed_at = NULL,
                    status = CASE
                        WHEN $4 OR attempts + 1 >= $5 THEN 'dead_letter'
                        ELSE 'queued'
                    END
                WHERE user_id = $1 AND payload_id = $2
                  AND status = 'claimed' AND claimed_by = $6
                RETURNING status
                """,
                payload.external_user_id,
                payload.payload_id,
                error[:2000],
                permanent,
                max_attempts,
                payload.claimed_by,
            )
        return PayloadStatus(row["status"]) if row else None

    async def unclaim(self, payload: QueuedPayload) -> bool:
        async with _translate_errors("unclaim"):
            status = await execute(
                """
                UPDATE terra_data_payloads
                SET status = 'queued', claimed_by = NULL, claimed_at = NULL
                WHERE user_id = $1 AND payload_id = $2
                  AND status = 'claimed' AND claimed_by = $3
                """,
                payload.external_user_id,
                payload.payload_id,
                payload.claimed_by,
            )
        return status != "UPDATE 0"

    async def dequeue(
        self, external_user_id: str, payload_id: str, *, worker_id: str | None = None
    ) -> bool:
        query = "DELETE FROM terra_data_payloads WHERE user_id = $1 AND payload_id = $2"
        params: list[Any] = [external_user_id, payload_id]
        if worker_id is not None:
            query += " AND status = 'claimed' AND claimed_by = $3"
            params.append(worker_id)
        async with _translate_errors("dequeue"):
            status = await execute(query, *params)
        return status != "DELETE 0"

    async def list_dead_letters(self, limit: int = 100) -> list[QueuedPayload]:
        async with _translate_errors("list_dead_letters"):
            rows = await fetch(
                "SELECT * FROM terra_data_payloads WHERE status = 'dead_letter' "
                "ORDER BY created_at ASC LIMIT $1",
                limit,
            )
        return [_payload_from_row(r) for r in rows]

    async def requeue_dead_letter(self, external_user_id: str, payload_id: str) -> bool:
        async with _translate_errors("requeue_dead_letter"):
            status = await execute(
                """
                UPDATE terra_data_payloads
                SET status = 'queued', attempts = 0
                WHERE user_id = $1 AND payload_id = $2 AND status = 'dead_letter'
                """,
                external_user_id,
                payload_id,
            )
        return status != "UPDATE 0"

    # ------------------------------------------------------------------
    # Activities
    # ------------------------------------------------------------------

    async def insert_activity(self, activity: CanonicalActivity) -> CommitOutcome:
        async with _translate_errors("insert_activity"):
            row = await fetchrow(
                """
                INSERT INTO garmin_activities (
                    user_id, terra_user_id, terra_payload_id, provider, external_id,
                    activity_type, start_time, start_time_source, end_time, duration_sec,
                    distance_km, calories, steps, avg_hr, max_hr,
                    elevation_gain_m, elevation_loss_m, pace_min_per_km, raw, created_at
                )
                VALUES (
                    $1::uuid, $2, $3, $4, $5, $6, $7, $8, $9, $10,
                    $11, $12, $13, $14, $15, $16, $17, $18, $19::jsonb, $20
                )
                ON CONFLICT (provider, external_id) WHERE external_id IS NOT NULL
                DO NOTHING
                RETURNING id
                """,
                activity.local_user_id,
                activity.provider_user_id,
                activity.payload_id,
                activity.provider,
                activity.external_id,
                activity.activity_type.value,
                activity.start_time,
                activity.start_time_source,
                activity.end_time,
                activity.duration_seconds,
                activity.distance_km,
                activity.calories,
                activity.steps,
                activity.avg_heart_rate,
                activity.max_heart_rate,
                activity.elevation_gain_m,
                activity.elevation_loss_m,
                activity.pace_min_per_km,
                json.dumps(activity.raw_payload, default=str),
                activity.created_at,
            )
        return CommitOutcome.CREATED if row is not None else CommitOutcome.DUPLICATE

    async def list_activities(
        self,
        local_user_id: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[CanonicalActivity]:
        conditions = ["user_id = $1::uuid"]
        params: list[Any] = [local_user_id]
        if start is not None:
            params.append(start)
            conditions.append(f"start_time >= ${len(params)}")
        if end is not None:
            params.append(end)
            conditions.append(f"start_time <= ${len(params)}")

        async with _translate_errors("list_activities"):
            rows = await fetch(
                f"SELECT {_ACTIVITY_COLUMNS} FROM garmin_activities "
                f"WHERE {' AND '.join(conditions)} ORDER BY start_time DESC",
                *params,
                user_id=local_user_id,
            )
        return [_activity_from_row(r) for r in rows]
