# tests/conftest.py
import asyncio
import os
import threading
import time

import pytest

# Keep tests offline: no Sentry export, no .env surprises
os.environ["SENTRY_DSN"] = ""

from fastapi.testclient import TestClient  # noqa: E402

from instrument import add_span_listener, remove_span_listener  # noqa: E402
from main import app  # noqa: E402
from processor import Simulation  # noqa: E402


class InstantSimulation(Simulation):
    """No delays and a fixed outcome."""

    def __init__(self, ratio=0.3, thumbnail=True, level="medium"):
        super().__init__(optimize_delay_ms=(0, 0), thumbnail_delay_ms=(0, 0))
        self.ratio = ratio
        self.thumbnail = thumbnail
        self.level = level
        self.sleeps = []

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        await asyncio.sleep(0)

    def optimization_level(self):
        return self.level

    def reduction_ratio(self):
        return self.ratio

    def thumbnail_created(self):
        return self.thumbnail


class GatedSimulation(InstantSimulation):
    """Blocks every simulated step until the test opens the gate.

    A threading.Event is used because TestClient runs the app's event loop
    in a separate thread.
    """

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.gate = threading.Event()

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        while not self.gate.is_set():
            await asyncio.sleep(0.005)


@pytest.fixture
def instant():
    return InstantSimulation()


@pytest.fixture
def client():
    with TestClient(app) as c:
        app.state.simulation = InstantSimulation()
        app.state.images_only = True
        yield c


@pytest.fixture
def gated(client):
    sim = GatedSimulation()
    app.state.simulation = sim
    yield sim
    # Open before the client fixture drains the scheduler
    sim.gate.set()


@pytest.fixture
def spans():
    recorded = []
    add_span_listener(recorded.append)
    yield recorded
    remove_span_listener(recorded.append)


@pytest.fixture
def wait_for_status():
    def _wait(client, job_id, statuses, timeout=5.0):
        deadline = time.monotonic() + timeout
        seen = []
        while True:
            body = client.get(f"/api/status/{job_id}").json()
            if not seen or seen[-1] != body["status"]:
                seen.append(body["status"])
            if body["status"] in statuses:
                return body, seen
            if time.monotonic() > deadline:
                raise AssertionError(f"job {job_id} stuck in {body['status']}; seen {seen}")
            time.sleep(0.01)

    return _wait
