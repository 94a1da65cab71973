"""LifeDash wearable ingestion pipeline.

Provider webhooks only record that data exists; a sync pass later fetches,
maps and stores each queued payload as a canonical activity.

Core modules:
    base           — Canonical data models and queue states
    errors         — Error hierarchy shared by every stage
    vocabulary     — Load/validate/hot-reload activity_types.yaml
    mapper         — Provider record → CanonicalActivity
    provider       — Terra REST client (auth URL, deauth, payload fetch)
    store          — IngestionStore ABC and in-memory implementation
    postgres_store — asyncpg-backed store over the Supabase schema
    receiver       — Webhook notification intake
    connections    — Connect/disconnect and auth lifecycle webhooks
    identity       — Provider user id → local user id
    reconcile      — Idempotent commit of canonical activities
    orchestrator   — Claim, fetch, map, commit, dequeue
"""

from lifedash.ingestion.base import (
    ActivityType,
    BatchResult,
    CanonicalActivity,
    CommitOutcome,
    ConnectionRecord,
    ConnectResult,
    PayloadStatus,
    QueuedPayload,
)
from lifedash.ingestion.connections import ConnectionManager
from lifedash.ingestion.errors import (
    ConfigurationError,
    IdentityNotFoundError,
    IngestionError,
    NoDataError,
    ProviderError,
    StoreError,
)
from lifedash.ingestion.orchestrator import SyncOrchestrator
from lifedash.ingestion.provider import TerraClient
from lifedash.ingestion.receiver import PayloadReceiver
from lifedash.ingestion.store import IngestionStore, InMemoryIngestionStore
from lifedash.ingestion.vocabulary import ActivityVocabulary, get_activity_vocabulary

__all__ = [
    "ActivityType",
    "ActivityVocabulary",
    "BatchResult",
    "CanonicalActivity",
    "CommitOutcome",
    "ConfigurationError",
    "ConnectionManager",
    "ConnectionRecord",
    "ConnectResult",
    "IdentityNotFoundError",
    "IngestionError",
    "IngestionStore",
    "InMemoryIngestionStore",
    "NoDataError",
    "PayloadReceiver",
    "PayloadStatus",
    "ProviderError",
    "QueuedPayload",
    "StoreError",
    "SyncOrchestrator",
    "TerraClient",
    "get_activity_vocabulary",
]
