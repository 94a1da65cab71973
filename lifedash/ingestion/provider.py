"""Terra API client (Garmin via the Terra aggregator).

Every call carries the ``dev-id`` and ``x-api-key`` headers.  A missing API
key is a configuration error, raised before any network traffic.

API base: https://api.tryterra.co/v2

Endpoints used:
    POST   /auth/authenticateUser      — authorization URL for a new link
    DELETE /auth/deauthenticateUser    — revoke a user's grant
    GET    /activity                   — full activity payload for a user
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import httpx

from lifedash.config import Settings, get_settings
from lifedash.ingestion.errors import ConfigurationError, ProviderError

logger = logging.getLogger("lifedash.ingestion.provider")

_TERRA_API_BASE = "https://api.tryterra.co/v2"

#: Statuses that prove the payload will never be served again.
PERMANENT_STATUS_CODES: frozenset[int] = frozenset({410})


class TerraClient:
    """Thin async wrapper over the three Terra endpoints the pipeline needs."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        api_key: str | None = None,
        dev_id: str | None = None,
        base_url: str | None = None,
        provider: str | None = None,
        timeout_seconds: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the client.

        Explicit arguments win over ``settings``; ``settings`` defaults to
        the cached application settings.

        Args:
            http_client: Optional pre-configured httpx client (for testing).
        """
        if settings is None and api_key is None:
            settings = get_settings()

        def pick(explicit: Any, attr: str, default: Any) -> Any:
            if explicit is not None:
                return explicit
            return getattr(settings, attr) if settings is not None else default

        self._api_key: str = pick(api_key, "terra_api_key", "")
        self._dev_id: str = pick(dev_id, "terra_dev_id", "")
        self._base_url: str = pick(base_url, "terra_api_base", _TERRA_API_BASE).rstrip("/")
        self.provider: str = pick(provider, "terra_provider", "GARMIN").upper()
        self._timeout: float = pick(timeout_seconds, "terra_request_timeout_seconds", 15.0)
        self._http_client = http_client

    @property
    def provider_slug(self) -> str:
        return self.provider.lower()

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    def ensure_configured(self) -> None:
        """Raise ConfigurationError unless an API key is available."""
        if not self._api_key:
            raise ConfigurationError(
                "Terra API key is not configured. Set TERRA_API_KEY (and TERRA_DEV_ID)."
            )

    def _headers(self) -> dict[str, str]:
        return {
            "dev-id": self._dev_id,
            "x-api-key": self._api_key,
            "Accept": "application/json",
        }

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def generate_auth_url(self, reference_id: str, return_origin: str) -> str:
        """Request an authorization URL that links ``reference_id`` on success.

        Args:
            reference_id:  Local user id; echoed back in the ``auth`` webhook.
            return_origin: Origin the provider redirects to afterwards.

        Returns:
            The URL the caller should open.
        """
        origin = return_origin.rstrip("/")
        body = await self._request(
            "POST",
            "/auth/authenticateUser",
            params={"resource": self.provider},
            json={
                "reference_id": reference_id,
                "auth_success_redirect_url": f"{origin}/garmin?terra=success",
                "auth_failure_redirect_url": f"{origin}/garmin?terra=error",
            },
        )
        auth_url = body.get("auth_url") or body.get("url")
        if not auth_url:
            raise ProviderError(
                "Provider response did not include an authorization URL",
                details=body,
            )
        logger.info("Generated Terra auth URL for user %s", reference_id)
        return str(auth_url)

    async def deauthenticate(self, external_user_id: str) -> None:
        """Revoke the provider grant.  An unknown user counts as revoked."""
        try:
            await self._request(
                "DELETE",
                "/auth/deauthenticateUser",
                params={"user_id": external_user_id},
            )
        except ProviderError as exc:
            if exc.status_code in (404, 410):
                logger.info("Terra user %s already deauthenticated", external_user_id)
                return
            raise

    async def fetch_activity(
        self,
        external_user_id: str,
        payload_id: str,
        start_hint: datetime | None = None,
        end_hint: datetime | None = None,
    ) -> dict:
        """Fetch the full activity payload referenced by ``payload_id``.

        The start/end hints narrow the provider query window when present.

        Returns:
            The decoded JSON body.

        Raises:
            ProviderError: On non-2xx responses, transport errors or timeouts.
        """
        params: dict[str, Any] = {
            "user_id": external_user_id,
            "payload_id": payload_id,
            "to_webhook": "false",
            "with_samples": "false",
        }
        if start_hint is not None:
            params["start_date"] = start_hint.isoformat()
        if end_hint is not None:
            params["end_date"] = end_hint.isoformat()
        return await self._request("GET", "/activity", params=params)

    # ------------------------------------------------------------------
    # Private HTTP helper
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict:
        self.ensure_configured()
        url = f"{self._base_url}{path}"

        try:
            if self._http_client:
                response = await self._http_client.request(
                    method, url, headers=self._headers(), timeout=self._timeout, **kwargs
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.request(
                        method, url, headers=self._headers(), **kwargs
                    )
        except httpx.TimeoutException as exc:
            logger.warning("Terra API timeout: %s %s", method, url)
            raise ProviderError(f"Terra API timed out after {self._timeout}s") from exc
        except httpx.HTTPError as exc:
            logger.warning("Terra API unreachable: %s %s: %s", method, url, exc)
            raise ProviderError(f"Terra API unreachable: {exc}") from exc

        if response.status_code >= 400:
            details = _decode(response)
            message = (
                details.get("message") if isinstance(details, dict) else None
            ) or f"Terra API returned {response.status_code}"
            logger.error("Terra API error: %s %s -> %d", method, url, response.status_code)
            raise ProviderError(
                message,
                status_code=response.status_code,
                details=details,
                permanent=response.status_code in PERMANENT_STATUS_CODES,
            )

        body = _decode(response)
        if not isinstance(body, dict):
            return {}
        return body


def _decode(response: httpx.Response) -> Any:
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError:
        return response.text
