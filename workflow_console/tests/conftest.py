import asyncio
import sys
from pathlib import Path
from typing import List

import httpx
import pytest
import pytest_asyncio

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from workflow_console.client import JobApiClient
from workflow_console.fake_server import FakeJobStore, create_app
from workflow_console.models import LogEntry
from workflow_console.persistence import ConsoleState, MemoryStore

TEST_BASE_URL = "http://testserver"


def make_entries(*seqs: int, stream: str = "stdout") -> List[LogEntry]:
    return [
        LogEntry(seq=seq, timestamp="2025-01-01T00:00:00+00:00", stream=stream, text=f"line {seq}")
        for seq in seqs
    ]


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays and only yields."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture()
def recording_sleep():
    return RecordingSleep()


@pytest.fixture()
def memory_store():
    return MemoryStore()


@pytest.fixture()
def console_state(memory_store):
    return ConsoleState(memory_store)


@pytest.fixture()
def job_store():
    return FakeJobStore()


@pytest_asyncio.fixture
async def api(job_store):
    app = create_app(store=job_store)
    http_client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url=TEST_BASE_URL)
    client = JobApiClient(TEST_BASE_URL, http_client=http_client)
    try:
        yield client
    finally:
        await http_client.aclose()
