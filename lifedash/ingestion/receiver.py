"""Intake of provider data notifications.

The receiver only records that data exists.  It never fetches or maps the
payload, so the provider's webhook call returns quickly and a redelivered
notification is a silent no-op.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any

from lifedash.ingestion.base import QueuedPayload, utc_now
from lifedash.ingestion.mapper import parse_datetime
from lifedash.ingestion.store import IngestionStore

logger = logging.getLogger("lifedash.ingestion.receiver")

#: Data types the sync pipeline knows how to process.
SUPPORTED_DATA_TYPES: frozenset[str] = frozenset({"activity"})

#: Data webhook types the provider sends; unsupported ones are acknowledged only.
DATA_EVENT_TYPES: frozenset[str] = frozenset(
    {"activity", "body", "daily", "sleep", "nutrition", "menstruation", "athlete"}
)

_PAYLOAD_ID_PATHS = (
    "payload_id",
    "payloadId",
    "id",
    "uuid",
    "metadata.summary_id",
    "metadata.id",
    "meta.id",
)
_START_PATHS = ("start_time", "startDate", "start", "metadata.start_time")
_END_PATHS = ("end_time", "endDate", "end", "metadata.end_time")


def _pluck(record: Any, path: str) -> Any:
    node = record
    for part in path.split("."):
        if not isinstance(node, dict):
            return None
        node = node.get(part)
    return node


def _first(record: Any, paths: tuple[str, ...]) -> Any:
    for path in paths:
        value = _pluck(record, path)
        if value not in (None, ""):
            return value
    return None


def payload_content_hash(item: Any) -> str:
    """SHA-256 of the canonicalized JSON of a data item.

    Used as the payload id when the provider sent none, so a redelivered
    notification maps to the same queue key.
    """
    canonical = json.dumps(item, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def parse_data_event(event: dict) -> list[QueuedPayload]:
    """Turn a provider data webhook into queue references.

    Items without a resolvable provider user id are dropped with a warning.
    Unsupported data types yield nothing.
    """
    data_type = str(event.get("type", "")).lower()
    if data_type not in SUPPORTED_DATA_TYPES:
        logger.info("Ignoring %r data notification (not processed by the pipeline)", data_type)
        return []

    event_user = event.get("user") if isinstance(event.get("user"), dict) else {}
    received_at = utc_now()
    references: list[QueuedPayload] = []

    for item in event.get("data") or []:
        if not isinstance(item, dict):
            logger.warning("Skipping non-object %s data item: %r", data_type, item)
            continue

        external_user_id = event_user.get("user_id") or item.get("user_id") or item.get("userId")
        if not external_user_id:
            logger.warning("Skipping %s data item without a provider user id", data_type)
            continue

        payload_id = _first(item, _PAYLOAD_ID_PATHS)
        if payload_id is None:
            payload_id = payload_content_hash(item)
            logger.debug("Derived payload id %s from item content", payload_id)

        references.append(
            QueuedPayload(
                external_user_id=str(external_user_id),
                payload_id=str(payload_id),
                data_type=data_type,
                start_time=parse_datetime(_first(item, _START_PATHS)),
                end_time=parse_datetime(_first(item, _END_PATHS)),
                enqueued_at=received_at,
            )
        )

    return references


class PayloadReceiver:
    """Durably record queued payload references."""

    def __init__(self, store: IngestionStore) -> None:
        self._store = store

    async def receive(self, notification: QueuedPayload) -> bool:
        """Insert one reference.

        Returns True when newly queued, False when it was already known.
        Both outcomes mean the notification was accepted.
        """
        created = await self._store.enqueue(notification)
        if created:
            logger.info(
                "Queued %s payload %s for provider user %s",
                notification.data_type,
                notification.payload_id,
                notification.external_user_id,
            )
        else:
            logger.debug(
                "Payload %s for provider user %s already queued",
                notification.payload_id,
                notification.external_user_id,
            )
        return created

    async def receive_event(self, event: dict) -> int:
        """Queue every reference in a data webhook.  Returns how many were new."""
        queued = 0
        for reference in parse_data_event(event):
            if await self.receive(reference):
                queued += 1
        return queued
