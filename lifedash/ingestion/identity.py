"""Resolve provider user ids to local user ids."""

from __future__ import annotations

import logging

from lifedash.ingestion.store import IngestionStore

logger = logging.getLogger("lifedash.ingestion.identity")


class IdentityMapper:
    """Look up the Connection Record owning an external user id.

    A miss is an expected condition (payload arriving after a disconnect,
    unknown provider user) and is reported as ``None``, never raised.
    """

    def __init__(self, store: IngestionStore) -> None:
        self._store = store

    async def resolve(self, external_user_id: str) -> str | None:
        record = await self._store.get_connection_by_external_id(external_user_id)
        if record is None:
            logger.info("No connection for provider user %s", external_user_id)
            return None
        return record.local_user_id
