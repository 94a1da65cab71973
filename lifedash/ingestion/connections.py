"""Link and unlink local users with the wearable provider.

``connect`` only hands out an authorization URL; the Connection Record is
created when the provider confirms the grant through its ``auth`` webhook
(``handle_auth_event``).  ``disconnect`` revokes the grant and removes the
record, and is a no-op success when nothing is connected.
"""

from __future__ import annotations

import logging

from lifedash.ingestion.base import ConnectionRecord, ConnectResult, utc_now
from lifedash.ingestion.provider import TerraClient
from lifedash.ingestion.store import IngestionStore

logger = logging.getLogger("lifedash.ingestion.connections")


def parse_scopes(raw: object) -> frozenset[str]:
    """Provider scopes arrive as ``"a,b"`` strings or lists."""
    if not raw:
        return frozenset()
    if isinstance(raw, str):
        parts = raw.replace(" ", ",").split(",")
    elif isinstance(raw, (list, tuple, set, frozenset)):
        parts = [str(p) for p in raw]
    else:
        return frozenset()
    return frozenset(p.strip() for p in parts if p.strip())


class ConnectionManager:
    """Own the lifecycle of Connection Records for one provider."""

    def __init__(self, store: IngestionStore, provider: TerraClient) -> None:
        self._store = store
        self._provider = provider

    @property
    def provider_slug(self) -> str:
        return self._provider.provider_slug

    async def get_connection(self, local_user_id: str) -> ConnectionRecord | None:
        return await self._store.get_connection(local_user_id, self.provider_slug)

    async def connect(self, local_user_id: str, return_origin: str) -> ConnectResult:
        """Start linking ``local_user_id`` with the provider.

        Args:
            local_user_id: Authenticated caller, verified by the router.
            return_origin: Origin the provider redirects back to.

        Returns:
            ``already_connected`` with the existing record, or the
            authorization URL to open.

        Raises:
            ConfigurationError: API key missing.
            ProviderError:      Provider unreachable or rejected the request.
        """
        existing = await self.get_connection(local_user_id)
        if existing is not None:
            logger.info("User %s already connected to %s", local_user_id, self.provider_slug)
            return ConnectResult(already_connected=True, connection=existing)

        auth_url = await self._provider.generate_auth_url(local_user_id, return_origin)
        return ConnectResult(already_connected=False, auth_url=auth_url)

    async def disconnect(self, local_user_id: str) -> bool:
        """Revoke the grant and delete the record.

        Returns True if a connection was removed, False if there was none.
        The provider is asked to revoke first so a failure leaves the record
        in place for a manual retry.
        """
        existing = await self.get_connection(local_user_id)
        if existing is None:
            logger.info("Disconnect for user %s: nothing connected", local_user_id)
            return False

        await self._provider.deauthenticate(existing.external_user_id)
        await self._store.delete_connection(local_user_id, self.provider_slug)
        logger.info(
            "Disconnected user %s from %s (provider user %s)",
            local_user_id,
            self.provider_slug,
            existing.external_user_id,
        )
        return True

    # ------------------------------------------------------------------
    # Provider notifications
    # ------------------------------------------------------------------

    async def handle_auth_event(self, event: dict) -> ConnectionRecord | None:
        """Record a completed authorization from an ``auth`` webhook.

        Returns the saved record, or None when the provider reported a
        failed authorization.

        Raises:
            ValueError: The event lacks the user block or its ids.
        """
        user = event.get("user")
        if not isinstance(user, dict) or not user.get("user_id"):
            raise ValueError("auth event is missing user data")

        reference_id = user.get("reference_id") or event.get("reference_id")
        if not reference_id:
            raise ValueError("auth event is missing reference_id")

        status = str(event.get("status") or "success").lower()
        if status not in ("success", "connected"):
            logger.warning(
                "Authorization for user %s ended with status %r; not connecting",
                reference_id,
                status,
            )
            return None

        record = ConnectionRecord(
            external_user_id=str(user["user_id"]),
            local_user_id=str(reference_id),
            provider=str(user.get("provider") or self._provider.provider).lower(),
            granted_scopes=parse_scopes(user.get("scopes")),
            state="connected",
            created_at=utc_now(),
        )
        saved = await self._store.save_connection(record)
        logger.info(
            "Connected user %s to %s as provider user %s",
            saved.local_user_id,
            saved.provider,
            saved.external_user_id,
        )
        return saved

    async def handle_deauth_event(self, event: dict) -> ConnectionRecord | None:
        """Drop the record after a ``deauth`` / ``access_revoked`` webhook."""
        user = event.get("user") if isinstance(event.get("user"), dict) else {}
        external_user_id = user.get("user_id")
        if not external_user_id:
            logger.warning("%s event without user id ignored", event.get("type"))
            return None
        removed = await self._store.delete_connection_by_external_id(str(external_user_id))
        if removed is None:
            logger.info("No connection to remove for provider user %s", external_user_id)
        else:
            logger.info("Provider revoked access for user %s", removed.local_user_id)
        return removed

    async def handle_reauth_event(self, event: dict) -> ConnectionRecord | None:
        """Swap the provider user id after a ``user_reauth`` webhook."""
        old_user = event.get("old_user") if isinstance(event.get("old_user"), dict) else {}
        new_user = event.get("new_user") if isinstance(event.get("new_user"), dict) else {}
        if not new_user.get("user_id"):
            logger.warning("user_reauth event without new user id ignored")
            return None

        old_user_id = str(old_user["user_id"]) if old_user.get("user_id") else None
        existing = (
            await self._store.get_connection_by_external_id(old_user_id) if old_user_id else None
        )
        reference_id = (
            new_user.get("reference_id")
            or old_user.get("reference_id")
            or (existing.local_user_id if existing else None)
        )
        if not reference_id:
            logger.warning(
                "user_reauth event for provider user %s has no local owner; ignored",
                new_user["user_id"],
            )
            return None

        saved = await self.handle_auth_event(
            {
                "type": "auth",
                "status": "success",
                "user": {**new_user, "reference_id": reference_id},
            }
        )
        if old_user_id and old_user_id != saved.external_user_id:
            await self._store.delete_connection_by_external_id(old_user_id)
        return saved
