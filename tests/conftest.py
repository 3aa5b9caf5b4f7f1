"""
Pytest configuration and fixtures for Rivel Backend tests.
"""

import io
import time

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from rivel_backend.configuration import load_settings
from rivel_backend.main import create_app


class FakeClock:
    """Controllable millisecond clock for store, cache and limiter tests."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeGenerator:
    """Stands in for the Hugging Face generation Space."""

    def __init__(self):
        self.calls = []
        self.fail_with = None

    async def __call__(self, request):
        self.calls.append(request)
        if self.fail_with is not None:
            raise self.fail_with
        return {
            "endpoint_used": "/generate",
            "meta": {"seed": request.seed, "steps": request.steps},
            "image_url": "https://example.test/out.png",
        }


class FakeDetector:
    """Stands in for the detector Space."""

    def __init__(self):
        self.calls = 0
        self.fail_with = None

    async def __call__(self, *, image_bytes, mime):
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        return {"space": "test/detector", "result": {"label": "real", "score": 0.91, "bytes": len(image_bytes)}}


def make_image_bytes(size=(64, 48), fmt="PNG", color=(200, 30, 30)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format=fmt)
    return buffer.getvalue()


def wait_for_status(client, job_id, statuses, timeout=5.0):
    """Poll a generation job until it reaches one of the given statuses."""
    deadline = time.monotonic() + timeout
    body = None
    while time.monotonic() < deadline:
        body = client.get(f"/api/generate/{job_id}").json()
        if body.get("status") in statuses:
            return body
        time.sleep(0.02)
    raise AssertionError(f"job {job_id} never reached {statuses}; last response: {body}")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return load_settings(
        {
            "jobs": {"poll_interval_ms": 10},
            "rate_limit": {"max_requests": 10_000},
            "server": {"upload_limit_bytes": 1024 * 1024},
        }
    )


@pytest.fixture
def fake_generator():
    return FakeGenerator()


@pytest.fixture
def fake_detector():
    return FakeDetector()


@pytest.fixture
def app(settings, fake_generator, fake_detector):
    return create_app(settings, generate=fake_generator, detect=fake_detector)


@pytest.fixture
def client(app):
    """Create a test client; entering it runs the lifespan and starts the worker."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def png_bytes():
    return make_image_bytes()
