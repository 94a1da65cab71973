"""Exception hierarchy for the wearable ingestion pipeline.

Only ``ConfigurationError`` is allowed to escape ``SyncOrchestrator.run_batch``;
every other subclass is converted into a per-item error by the orchestrator.
"""

from __future__ import annotations

from typing import Any


class IngestionError(Exception):
    """Base class for all pipeline errors."""

    #: Permanent errors send the queued reference straight to dead-letter.
    permanent: bool = False


class ConfigurationError(IngestionError):
    """Provider credentials are missing; nothing can be fetched."""


class ProviderError(IngestionError):
    """The provider API answered with a non-2xx status or could not be reached.

    Attributes:
        status_code: HTTP status returned by the provider, if any.
        details:     Decoded error body (dict or text) for diagnostics.
        permanent:   True when the provider positively reported the data gone.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: Any = None,
        permanent: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details
        self.permanent = permanent

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.message,
            "status": self.status_code,
            "details": self.details,
        }


class NoDataError(IngestionError):
    """The provider answered successfully but the body held no activity."""


class IdentityNotFoundError(IngestionError):
    """No connection maps the provider user id to a local user."""


class StoreError(IngestionError):
    """The backing store rejected or could not complete an operation."""
