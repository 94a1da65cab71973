"""Shared fixtures and mock Terra responses for ingestion pipeline tests."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Callable

import httpx
import pytest
import pytest_asyncio

from lifedash.ingestion.base import ConnectionRecord
from lifedash.ingestion.provider import TerraClient
from lifedash.ingestion.store import InMemoryIngestionStore
from lifedash.ingestion.vocabulary import ActivityVocabulary, load_activity_vocabulary

TEST_LOCAL_USER = "6f1c1f5e-2d3b-4a7e-9c51-0b8d3f2a7e10"
TEST_TERRA_USER = "terra-user-1"
FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def terra_activity(summary_id: str = "act-1", **overrides: object) -> dict:
    """A realistic Terra activity record (nested v2 schema)."""
    record = {
        "metadata": {
            "summary_id": summary_id,
            "name": "Morning Run",
            "type": 8,
            "start_time": "2026-02-28T07:00:00+00:00",
            "end_time": "2026-02-28T07:45:00+00:00",
        },
        "active_durations_data": {"activity_seconds": 2700},
        "distance_data": {
            "summary": {
                "distance_meters": 8250.0,
                "steps": 7420,
                "elevation": {"gain_actual_meters": 42.36, "loss_actual_meters": 40.04},
            }
        },
        "calories_data": {"total_burned_calories": 612.4, "net_activity_calories": 540},
        "heart_rate_data": {"summary": {"avg_hr_bpm": 151.6, "max_hr_bpm": 178}},
        "sport": "running",
    }
    record.update(overrides)
    return record


# ---------------------------------------------------------------------------
# Store / vocabulary
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> InMemoryIngestionStore:
    return InMemoryIngestionStore()


@pytest_asyncio.fixture
async def connected_store(store: InMemoryIngestionStore) -> InMemoryIngestionStore:
    """Store with TEST_TERRA_USER linked to TEST_LOCAL_USER."""
    await store.save_connection(
        ConnectionRecord(
            external_user_id=TEST_TERRA_USER,
            local_user_id=TEST_LOCAL_USER,
            provider="garmin",
            granted_scopes=frozenset({"activity", "daily"}),
        )
    )
    return store


@pytest.fixture
def vocabulary() -> ActivityVocabulary:
    """Load the bundled activity vocabulary."""
    return load_activity_vocabulary()


# ---------------------------------------------------------------------------
# Terra HTTP mocks
# ---------------------------------------------------------------------------


class TerraStub:
    """Records requests and answers them with a per-path handler."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.handlers: dict[tuple[str, str], Callable[[httpx.Request], httpx.Response]] = {}

    def on(self, method: str, path: str, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.handlers[(method, path)] = handler

    def respond_json(self, method: str, path: str, body: object, status_code: int = 200) -> None:
        self.on(method, path, lambda request: httpx.Response(status_code, json=body))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.handlers.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"message": "no stub for path"})
        return handler(request)

    def requests_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    @staticmethod
    def json_body(request: httpx.Request) -> dict:
        return json.loads(request.content)


@pytest.fixture
def terra_stub() -> TerraStub:
    return TerraStub()


@pytest_asyncio.fixture
async def terra_client(terra_stub: TerraStub):
    """TerraClient talking to ``terra_stub`` through httpx.MockTransport."""
    async with httpx.AsyncClient(transport=httpx.MockTransport(terra_stub)) as http_client:
        yield TerraClient(
            api_key="test-key",
            dev_id="test-dev",
            base_url="https://terra.test/v2",
            provider="GARMIN",
            timeout_seconds=5.0,
            http_client=http_client,
        )


@pytest.fixture
def unconfigured_client() -> TerraClient:
    return TerraClient(api_key="", dev_id="", base_url="https://terra.test/v2")
