"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, HTTPException, Request

from lifedash.config import Settings, get_settings
from lifedash.ingestion.connections import ConnectionManager
from lifedash.ingestion.orchestrator import SyncOrchestrator
from lifedash.ingestion.postgres_store import PostgresIngestionStore
from lifedash.ingestion.provider import TerraClient
from lifedash.ingestion.store import IngestionStore


@dataclass(frozen=True)
class AuthContext:
    """Authenticated user context extracted from the Supabase access token."""

    user_id: str  # Supabase auth.users id (token "sub")
    email: str | None = None
    role: str | None = None
    session_id: str | None = None


async def get_current_user(request: Request) -> AuthContext:
    """Extract the authenticated user from the request state.

    The Supabase auth middleware sets ``request.state.auth`` before routes run.
    """
    auth: AuthContext | None = getattr(request.state, "auth", None)
    if auth is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return auth


def get_ingestion_store() -> IngestionStore:
    return PostgresIngestionStore()


def get_terra_client(settings: Annotated[Settings, Depends(get_settings)]) -> TerraClient:
    return TerraClient(settings)


def get_connection_manager(
    store: Annotated[IngestionStore, Depends(get_ingestion_store)],
    client: Annotated[TerraClient, Depends(get_terra_client)],
) -> ConnectionManager:
    return ConnectionManager(store, client)


def get_sync_orchestrator(
    store: Annotated[IngestionStore, Depends(get_ingestion_store)],
    client: Annotated[TerraClient, Depends(get_terra_client)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> SyncOrchestrator:
    return SyncOrchestrator(
        store,
        client,
        max_attempts=settings.ingestion_max_attempts,
        lease_seconds=settings.ingestion_claim_lease_seconds,
        batch_limit=settings.ingestion_batch_limit,
    )


# Annotated shortcuts for route signatures
CurrentUser = Annotated[AuthContext, Depends(get_current_user)]
AppSettings = Annotated[Settings, Depends(get_settings)]
IngestionStoreDep = Annotated[IngestionStore, Depends(get_ingestion_store)]
TerraClientDep = Annotated[TerraClient, Depends(get_terra_client)]
ConnectionManagerDep = Annotated[ConnectionManager, Depends(get_connection_manager)]
SyncOrchestratorDep = Annotated[SyncOrchestrator, Depends(get_sync_orchestrator)]
