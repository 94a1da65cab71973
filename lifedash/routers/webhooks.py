"""Terra webhook handler.

Terra posts connection lifecycle events (``auth``, ``deauth``,
``access_revoked``, ``user_reauth``) and data notifications (``activity``,
``daily``, ``sleep`` ...) to a single URL.  Data notifications are only
queued here; the sync pass fetches and stores them afterwards, so a 200
means "received", never "ingested".
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging

from fastapi import APIRouter, BackgroundTasks, Header, HTTPException, Request

from lifedash.config import get_settings
from lifedash.dependencies import ConnectionManagerDep, IngestionStoreDep, SyncOrchestratorDep
from lifedash.ingestion.errors import IngestionError
from lifedash.ingestion.orchestrator import SyncOrchestrator
from lifedash.ingestion.receiver import DATA_EVENT_TYPES, PayloadReceiver
from lifedash.models.terra import WebhookAck

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger("lifedash.webhooks")

#: Deliveries older than this are rejected as replays.
SIGNATURE_TOLERANCE_SECONDS = 300


def _verify_terra_signature(
    payload: bytes,
    signature_header: str,
    secret: str,
    now: float | None = None,
) -> bool:
    """Verify the ``terra-signature`` header.

    The header looks like ``t=1700000000,v1=<hex>`` where the hex digest is
    an HMAC-SHA256 of ``{t}.{body}`` using the signing secret.  Several
    ``v1`` entries may be present during secret rotation.
    """
    import time

    timestamp = ""
    signatures: list[str] = []
    for part in signature_header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)

    if not timestamp or not signatures:
        return False

    try:
        age = (now if now is not None else time.time()) - int(timestamp)
    except ValueError:
        return False
    if abs(age) > SIGNATURE_TOLERANCE_SECONDS:
        return False

    to_sign = f"{timestamp}.{payload.decode()}".encode()
    expected = hmac.new(secret.encode(), to_sign, hashlib.sha256).hexdigest()
    return any(hmac.compare_digest(expected, sig) for sig in signatures)


async def _run_sync_in_background(orchestrator: SyncOrchestrator) -> None:
    try:
        await orchestrator.run_batch(caller="webhook", trigger="webhook")
    except IngestionError as exc:
        # Items stay queued; the next webhook or manual sync picks them up.
        logger.error("Webhook-triggered sync aborted: %s", exc)


@router.post("/terra", response_model=WebhookAck)
async def terra_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    manager: ConnectionManagerDep,
    store: IngestionStoreDep,
    orchestrator: SyncOrchestratorDep,
    terra_signature: str | None = Header(default=None, alias="terra-signature"),
) -> WebhookAck:
    """Handle Terra webhook events.

    Currently handles:
    - ``auth``: records the new connection
    - ``deauth`` / ``access_revoked``: removes the connection
    - ``user_reauth``: moves the connection to the new Terra user id
    - ``activity``: queues the payload reference and starts a sync pass
    - other data types: acknowledged and ignored
    """
    settings = get_settings()
    body = await request.body()

    if settings.terra_signing_secret:
        if not terra_signature or not _verify_terra_signature(
            body, terra_signature, settings.terra_signing_secret
        ):
            logger.warning("Rejected Terra webhook with invalid signature")
            raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        event = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Malformed JSON body")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Webhook body must be a JSON object")

    event_type = str(event.get("type", "")).lower()
    logger.info("Terra webhook received: type=%s", event_type)

    try:
        if event_type == "auth":
            try:
                await manager.handle_auth_event(event)
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=str(exc))
            return WebhookAck(message="Auth processed")

        if event_type in ("deauth", "access_revoked"):
            await manager.handle_deauth_event(event)
            return WebhookAck(message="Deauth processed")

        if event_type == "user_reauth":
            await manager.handle_reauth_event(event)
            return WebhookAck(message="Reauth processed")

        if event_type in DATA_EVENT_TYPES:
            queued = await PayloadReceiver(store).receive_event(event)
            if queued:
                background_tasks.add_task(_run_sync_in_background, orchestrator)
            return WebhookAck(message="Data webhook processed")
    except IngestionError as exc:
        # A 5xx makes Terra redeliver; the queue insert is idempotent.
        logger.error("Failed to handle Terra %s webhook: %s", event_type, exc)
        raise HTTPException(status_code=500, detail="Webhook could not be recorded")

    logger.debug("Ignoring unhandled Terra event type: %s", event_type)
    return WebhookAck(message="Webhook received but not processed")
