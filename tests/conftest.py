"""Shared pytest fixtures for the webmonitor test suite."""

import threading
import time

import pytest

from webmonitor.aggregation_store import AggregationStore
from webmonitor.config import ServerConfig
from webmonitor.models import now_ms
from webmonitor.server import create_app

CHROME_STACK = (
    "TypeError: Cannot read properties of undefined\n"
    "    at renderOrder (https://shop.example.com/assets/app-3f9a1c2b.js:120:17)\n"
    "    at OrderList (https://shop.example.com/assets/app-3f9a1c2b.js:88:5)\n"
    "    at https://shop.example.com/node_modules/react-dom/index.js:1:1\n"
)


class RecordingTransport:
    """Transport double that records payloads and can be told to fail."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.payloads: list[dict] = []
        self.attempts = 0
        self._lock = threading.Lock()

    def send(self, payload: dict) -> bool:
        with self._lock:
            self.attempts += 1
            if self.fail:
                return False
            self.payloads.append(payload)
            return True

    @property
    def delivered_events(self) -> list[dict]:
        with self._lock:
            return [e for p in self.payloads for e in p["events"]]


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll *predicate* until it is truthy or *timeout* elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def make_error(message="Order 12345678 not found", kind="TypeError",
               url="https://shop.example.com/orders", stack=CHROME_STACK, **extra):
    event = {
        "type": kind,
        "message": message,
        "url": url,
        "timestamp": now_ms(),
        "breadcrumbs": [],
    }
    if stack is not None:
        event["stack"] = stack
    event.update(extra)
    return event


def make_performance(url="https://shop.example.com/", **metrics):
    return {
        "metrics": metrics or {"fcp": 812.5, "lcp": 1630.0},
        "url": url,
        "timestamp": now_ms(),
    }


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    return AggregationStore(str(tmp_path / "webmonitor.db"))


@pytest.fixture
def app(tmp_path):
    """Create a Flask test app backed by a temporary database."""
    config = ServerConfig(overrides={"storage": {"db_path": str(tmp_path / "app.db")}})
    application = create_app(config)
    application.config["TESTING"] = True
    return application


@pytest.fixture
def client(app):
    """Create a Flask test client."""
    return app.test_client()
