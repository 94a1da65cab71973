"""Pydantic schemas for the Terra connection, sync and activity endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import Field, field_validator

from lifedash.ingestion.base import CanonicalActivity, ConnectionRecord
from lifedash.models.base import LifedashBase


# ---------- Connection ----------

class ConnectRequest(LifedashBase):
    origin: str = Field(min_length=1, max_length=2048)

    @field_validator("origin")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class ConnectionRead(LifedashBase):
    provider: str
    provider_user_id: str
    granted_scopes: list[str] = Field(default_factory=list)
    state: str
    created_at: datetime

    @classmethod
    def from_record(cls, record: ConnectionRecord) -> "ConnectionRead":
        return cls(
            provider=record.provider,
            provider_user_id=record.external_user_id,
            granted_scopes=sorted(record.granted_scopes),
            state=record.state,
            created_at=record.created_at,
        )


class ConnectResponse(LifedashBase):
    success: bool = True
    already_connected: bool
    auth_url: str | None = None
    connection: ConnectionRead | None = None


class DisconnectResponse(LifedashBase):
    success: bool = True


# ---------- Sync ----------

class SyncResponse(LifedashBase):
    processed: int
    errors: int


# ---------- Activities ----------

class GarminActivityRead(LifedashBase):
    payload_id: str
    external_id: str | None = None
    provider: str
    activity_type: str
    start_time: datetime
    start_time_source: str
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
    created_at: datetime

    @classmethod
    def from_activity(cls, activity: CanonicalActivity) -> "GarminActivityRead":
        return cls(
            payload_id=activity.payload_id,
            external_id=activity.external_id,
            provider=activity.provider,
            activity_type=activity.activity_type.value,
            start_time=activity.start_time,
            start_time_source=activity.start_time_source,
            end_time=activity.end_time,
            duration_seconds=activity.duration_seconds,
            distance_km=activity.distance_km,
            calories=activity.calories,
            steps=activity.steps,
            avg_heart_rate=activity.avg_heart_rate,
            max_heart_rate=activity.max_heart_rate,
            elevation_gain_m=activity.elevation_gain_m,
            elevation_loss_m=activity.elevation_loss_m,
            pace_min_per_km=activity.pace_min_per_km,
            created_at=activity.created_at,
        )


# ---------- Webhooks ----------

class WebhookAck(LifedashBase):
    success: bool = True
    message: str


class ProviderErrorBody(LifedashBase):
    error: str
    status: int | None = None
    details: Any = None
