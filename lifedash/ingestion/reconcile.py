"""Write mapped activities into the canonical activity store."""

from __future__ import annotations

import logging

from lifedash.ingestion.base import CanonicalActivity, CommitOutcome
from lifedash.ingestion.store import IngestionStore

logger = logging.getLogger("lifedash.ingestion.reconcile")


class Reconciler:
    """Commit canonical activity drafts.

    Either the full record is written or nothing is.  A draft whose
    (provider, external_id) already exists is reported as ``DUPLICATE``,
    which callers treat as success: the activity is durably stored.
    Store failures propagate as ``StoreError``.
    """

    def __init__(self, store: IngestionStore) -> None:
        self._store = store

    async def commit(self, activity: CanonicalActivity) -> CommitOutcome:
        outcome = await self._store.insert_activity(activity)
        if outcome is CommitOutcome.DUPLICATE:
            logger.info(
                "Activity %s/%s already stored, ignoring duplicate from payload %s",
                activity.provider,
                activity.external_id,
                activity.payload_id,
            )
        else:
            logger.info(
                "Stored %s activity for user %s (payload %s)",
                activity.activity_type.value,
                activity.local_user_id,
                activity.payload_id,
            )
        return outcome
