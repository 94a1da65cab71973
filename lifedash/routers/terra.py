"""Terra (Garmin) connection, manual sync and activity endpoints."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import JSONResponse

from lifedash.dependencies import (
    ConnectionManagerDep,
    CurrentUser,
    IngestionStoreDep,
    SyncOrchestratorDep,
)
from lifedash.ingestion.errors import ConfigurationError, ProviderError, StoreError
from lifedash.models.base import ErrorDetail
from lifedash.models.terra import (
    ConnectionRead,
    ConnectRequest,
    ConnectResponse,
    DisconnectResponse,
    GarminActivityRead,
    ProviderErrorBody,
    SyncResponse,
)

router = APIRouter(prefix="/terra", tags=["terra"])
logger = logging.getLogger("lifedash.terra")

_PROVIDER_RESPONSES: dict[int | str, dict[str, Any]] = {
    502: {"model": ProviderErrorBody},
    503: {"model": ErrorDetail},
}


def _provider_failure(exc: ProviderError) -> JSONResponse:
    logger.warning("Terra request failed (status=%s): %s", exc.status_code, exc.message)
    return JSONResponse(status_code=502, content=exc.to_dict())


# ---------- Connection ----------

@router.post("/connect", response_model=ConnectResponse, responses=_PROVIDER_RESPONSES)
async def connect(user: CurrentUser, body: ConnectRequest, manager: ConnectionManagerDep) -> Any:
    """Return the Terra widget URL, or the existing connection if already linked."""
    try:
        result = await manager.connect(user.user_id, body.origin)
    except ConfigurationError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    except ProviderError as exc:
        return _provider_failure(exc)
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc))

    return ConnectResponse(
        already_connected=result.already_connected,
        auth_url=result.auth_url,
        connection=ConnectionRead.from_record(result.connection) if result.connection else None,
    )


@router.get("/connection", response_model=ConnectionRead | None)
async def get_connection(user: CurrentUser, manager: ConnectionManagerDep) -> Any:
    try:
        record = await manager.get_connection(user.user_id)
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return ConnectionRead.from_record(record) if record else None


@router.delete("/connection", response_model=DisconnectResponse, responses=_PROVIDER_RESPONSES)
async def disconnect(user: CurrentUser, manager: ConnectionManagerDep) -> Any:
    """Revoke the Terra grant and forget the connection.  Idempotent."""
    try:
        await manager.disconnect(user.user_id)
    except ConfigurationError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    except ProviderError as exc:
        return _provider_failure(exc)
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return DisconnectResponse()


# ---------- Sync ----------

@router.post("/sync", response_model=SyncResponse, responses={503: {"model": ErrorDetail}})
async def sync_now(user: CurrentUser, orchestrator: SyncOrchestratorDep) -> Any:
    """Process the queue now.  Item failures are reported as ``errors``, not as an HTTP error."""
    try:
        result = await orchestrator.run_batch(caller=user.user_id, trigger="manual")
    except ConfigurationError as exc:
        logger.error("Manual sync by %s aborted: %s", user.user_id, exc)
        raise HTTPException(status_code=503, detail=str(exc))
    except StoreError as exc:
        logger.error("Manual sync by %s could not read the queue: %s", user.user_id, exc)
        raise HTTPException(status_code=503, detail="Ingestion store unavailable")
    return SyncResponse(processed=result.processed, errors=result.errors)


# ---------- Activities ----------

@router.get("/activities", response_model=list[GarminActivityRead])
async def list_activities(
    user: CurrentUser,
    store: IngestionStoreDep,
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
) -> Any:
    if start and end and start > end:
        raise HTTPException(status_code=400, detail="start must be before end")
    try:
        activities = await store.list_activities(user.user_id, start=start, end=end)
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return [GarminActivityRead.from_activity(a) for a in activities]
