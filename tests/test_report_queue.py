"""Tests for the client report queue: batching, throttling, durability, teardown."""

import threading

import pytest

from webmonitor.config import ServerConfig
from webmonitor.models import ErrorEvent
from webmonitor.offline_store import MemoryOfflineStore, OfflineRecord
from webmonitor.report_queue import QueueState, ReportQueue
from webmonitor.server import create_app
from webmonitor.signals import ManualConnectivitySignal, ManualUnloadSignal

from conftest import make_error, wait_for


class FakeBeacon:
    def __init__(self, accept: bool = True, limit: int | None = None):
        self.accept = accept
        self.limit = limit
        self.payloads = []
        self.drained = False

    def send(self, payload):
        if not self.accept or (self.limit is not None and len(self.payloads) >= self.limit):
            return False
        self.payloads.append(payload)
        return True

    def drain(self, timeout=5.0):
        self.drained = True
        return True


class FlaskClientTransport:
    """Posts reports through a Flask test client instead of the network."""

    def __init__(self, client):
        self.client = client
        self.statuses = []
        self._lock = threading.Lock()

    def send(self, payload):
        resp = self.client.post("/report", json=payload)
        with self._lock:
            self.statuses.append(resp.status_code)
        return resp.status_code == 200


def _messages(events):
    return [e["message"] for e in events]


@pytest.fixture
def offline():
    return MemoryOfflineStore(max_records=20)


@pytest.fixture
def make_queue(transport, offline):
    """Build a started queue; every queue is shut down after the test."""
    queues = []

    def factory(**kwargs):
        kwargs.setdefault("batch_size", 10)
        kwargs.setdefault("report_interval", 60.0)
        kwargs.setdefault("min_send_interval", 0.0)
        kwargs.setdefault("tick_interval", 0.01)
        q = ReportQueue("shop", kwargs.pop("transport", transport),
                        kwargs.pop("offline_store", offline), **kwargs)
        q.start()
        queues.append(q)
        return q

    yield factory
    for q in queues:
        q.shutdown(timeout=2.0)


class TestBatching:
    def test_flush_when_batch_is_full(self, make_queue, transport):
        q = make_queue(batch_size=3)
        for i in range(3):
            q.push(make_error(f"e{i}"))

        assert wait_for(lambda: len(transport.payloads) == 1)
        payload = transport.payloads[0]
        assert payload["projectId"] == "shop"
        assert _messages(payload["events"]) == ["e0", "e1", "e2"]
        assert q.pending_count == 0

    def test_below_batch_size_waits(self, make_queue, transport):
        q = make_queue(batch_size=3)
        q.push(make_error("e0"))
        q.push(make_error("e1"))
        assert not wait_for(lambda: transport.payloads, timeout=0.2)
        assert q.pending_count == 2
        assert q.state == QueueState.ACCUMULATING

    def test_timer_flushes_partial_batch(self, make_queue, transport):
        q = make_queue(batch_size=5, report_interval=0.2)
        for i in range(4):
            q.push(make_error(f"e{i}"))

        assert wait_for(lambda: len(transport.payloads) == 1)
        assert _messages(transport.delivered_events) == ["e0", "e1", "e2", "e3"]
        assert q.metrics.snapshot()["flush_triggers"].get("timer") == 1

    def test_manual_flush(self, make_queue, transport):
        q = make_queue()
        q.push(make_error("only"))
        q.flush()
        assert wait_for(lambda: len(transport.payloads) == 1)
        assert q.join(timeout=2.0)
        assert q.state == QueueState.DELIVERED

    def test_flush_with_nothing_pending_sends_nothing(self, make_queue, transport):
        q = make_queue()
        q.flush()
        q.join(timeout=1.0)
        assert transport.attempts == 0

    def test_accepts_model_events(self, make_queue, transport):
        q = make_queue()
        q.push(ErrorEvent(kind="Error", message="model", url="https://a/", timestamp=1))
        q.flush()
        assert wait_for(lambda: len(transport.payloads) == 1)
        assert transport.delivered_events[0]["type"] == "Error"


class TestThrottle:
    def test_triggers_inside_cooldown_are_coalesced(self, make_queue, transport, clock):
        """Two triggers inside the cooldown yield one later send with both batches."""
        q = make_queue(min_send_interval=1.0, time_func=clock)

        q.push(make_error("first"))
        q.flush()
        assert wait_for(lambda: len(transport.payloads) == 1)
        q.join(timeout=2.0)

        clock.advance(0.2)
        q.push(make_error("second"))
        q.flush()
        clock.advance(0.2)
        q.push(make_error("third"))
        q.flush()

        assert not wait_for(lambda: len(transport.payloads) > 1, timeout=0.2)
        assert q.state == QueueState.FLUSH_TRIGGERED
        assert q.pending_count == 2

        clock.advance(1.0)
        assert wait_for(lambda: len(transport.payloads) == 2)
        assert _messages(transport.payloads[1]["events"]) == ["second", "third"]
        assert q.metrics.snapshot()["flush_triggers"].get("deferred") == 1

    def test_no_event_lost_under_rapid_triggers(self, make_queue, transport, clock):
        q = make_queue(batch_size=2, min_send_interval=5.0, time_func=clock)
        for i in range(11):
            q.push(make_error(f"e{i}"))
        q.flush()

        def drained():
            clock.advance(5.0)
            return len(transport.delivered_events) == 11

        assert wait_for(drained)
        assert _messages(transport.delivered_events) == [f"e{i}" for i in range(11)]

    def test_backlog_sent_in_capped_batches(self, make_queue, transport, clock):
        """A burst far larger than one batch drains over several cooldown slots."""
        q = make_queue(batch_size=10, min_send_interval=5.0, time_func=clock)
        for i in range(120):
            q.push(make_error(f"e{i}"))

        assert q.pending_count == 110

        def drained():
            clock.advance(5.0)
            return len(transport.delivered_events) == 120

        assert wait_for(drained)
        assert all(len(p["events"]) <= 10 for p in transport.payloads)
        assert len(transport.payloads) == 12
        assert _messages(transport.delivered_events) == [f"e{i}" for i in range(120)]
        assert q.pending_count == 0

    def test_backlog_accepted_by_server_batch_limit(self, make_queue, clock, tmp_path):
        app = create_app(ServerConfig(overrides={
            "storage": {"db_path": str(tmp_path / "burst.db")},
            "ingestion": {"max_events_per_batch": 30},
        }))
        app.config["TESTING"] = True
        flask_transport = FlaskClientTransport(app.test_client())

        q = make_queue(transport=flask_transport, batch_size=10, max_replay_events=20,
                       min_send_interval=5.0, time_func=clock)
        for _ in range(150):
            q.push(make_error())

        def drained():
            clock.advance(5.0)
            return len(flask_transport.statuses) == 15 and q.join(timeout=0)

        assert wait_for(drained)
        assert set(flask_transport.statuses) == {200}

        groups = app.test_client().get("/api/groups?projectId=shop").get_json()["groups"]
        assert [g["count"] for g in groups] == [150]


class TestDurability:
    def test_failed_batch_replayed_once(self, make_queue, transport, offline):
        q = make_queue(batch_size=2)
        transport.fail = True
        q.push(make_error("a"))
        q.push(make_error("b"))

        assert wait_for(lambda: len(offline) == 1)
        assert q.join(timeout=2.0)
        assert q.state == QueueState.FAILED

        transport.fail = False
        q.push(make_error("c"))
        q.push(make_error("d"))

        assert wait_for(lambda: len(transport.payloads) == 1)
        q.join(timeout=2.0)
        assert _messages(transport.delivered_events) == ["a", "b", "c", "d"]
        assert len(offline) == 0

        snapshot = q.metrics.snapshot()
        assert snapshot["batches_failed"] == 1
        assert snapshot["replayed_records"] == 1

        q.flush()
        q.join(timeout=1.0)
        assert _messages(transport.delivered_events) == ["a", "b", "c", "d"]

    def test_records_from_previous_session_replayed_on_start(
        self, make_queue, transport, offline
    ):
        offline.append(OfflineRecord(project_id="shop", events=[make_error("old")]))
        offline.append(OfflineRecord(project_id="blog", events=[make_error("other")]))

        q = make_queue()
        q.push(make_error("new"))
        q.flush()

        assert wait_for(lambda: len(transport.payloads) == 1)
        q.join(timeout=2.0)
        assert _messages(transport.delivered_events) == ["old", "new"]
        assert [r.project_id for r in offline.read_all()] == ["blog"]

    def test_replay_capped_per_send(self, make_queue, transport, offline):
        for i in range(5):
            offline.append(OfflineRecord(project_id="shop", events=[make_error(f"r{i}")]))

        q = make_queue(max_replay_events=2)
        q.flush()
        assert wait_for(lambda: len(transport.payloads) == 1)
        q.join(timeout=2.0)
        assert _messages(transport.delivered_events) == ["r0", "r1"]

        q.flush()
        q.join(timeout=2.0)
        q.flush()
        assert wait_for(lambda: len(transport.delivered_events) == 5)
        assert len(offline) == 0

    def test_replay_limited_by_event_count(self, make_queue, transport, offline):
        for r in range(5):
            offline.append(OfflineRecord(
                project_id="shop", events=[make_error(f"r{r}-{i}") for i in range(10)]
            ))

        q = make_queue(max_replay_events=20)
        for i in range(3):
            q.push(make_error(f"new{i}"))
        q.flush()
        assert wait_for(lambda: len(transport.payloads) == 1)
        q.join(timeout=2.0)

        q.flush()
        q.join(timeout=2.0)
        q.flush()
        q.join(timeout=2.0)

        assert [len(p["events"]) for p in transport.payloads] == [23, 20, 10]
        assert _messages(transport.payloads[0]["events"])[-3:] == ["new0", "new1", "new2"]
        assert len(transport.delivered_events) == 53
        assert len(offline) == 0

    def test_oversized_record_still_replayed_alone(self, make_queue, transport, offline):
        offline.append(OfflineRecord(
            project_id="shop", events=[make_error(f"big{i}") for i in range(8)]
        ))
        offline.append(OfflineRecord(project_id="shop", events=[make_error("small")]))

        q = make_queue(max_replay_events=5)
        q.flush()
        assert wait_for(lambda: len(transport.payloads) == 1)
        q.join(timeout=2.0)
        assert len(transport.payloads[0]["events"]) == 8

        q.flush()
        q.join(timeout=2.0)
        assert _messages(transport.delivered_events)[-1] == "small"
        assert len(offline) == 0

    def test_transport_exception_treated_as_failure(self, make_queue, offline):
        class Exploding:
            def send(self, payload):
                raise ConnectionError("boom")

        q = make_queue(transport=Exploding())
        q.push(make_error("x"))
        q.flush()
        assert wait_for(lambda: len(offline) == 1)


class TestConnectivity:
    def test_offline_batches_go_to_store(self, make_queue, transport, offline):
        connectivity = ManualConnectivitySignal(online=False)
        q = make_queue(connectivity=connectivity)
        q.push(make_error("offline-1"))
        q.flush()

        assert wait_for(lambda: len(offline) == 1)
        assert transport.attempts == 0

    def test_online_edge_arms_replay(self, make_queue, transport, offline):
        connectivity = ManualConnectivitySignal(online=False)
        q = make_queue(connectivity=connectivity)
        q.push(make_error("queued"))
        q.flush()
        assert wait_for(lambda: len(offline) == 1)
        q.join(timeout=2.0)

        connectivity.set_online(True)
        q.flush()

        assert wait_for(lambda: len(transport.payloads) == 1)
        q.join(timeout=2.0)
        assert _messages(transport.delivered_events) == ["queued"]
        assert len(offline) == 0


class TestTeardown:
    def test_unload_uses_beacon(self, make_queue, offline):
        beacon = FakeBeacon()
        unload = ManualUnloadSignal()
        q = make_queue(beacon=beacon, unload_signal=unload)
        q.push(make_error("a"))
        q.push(make_error("b"))

        unload.fire()

        assert len(beacon.payloads) == 1
        assert _messages(beacon.payloads[0]["events"]) == ["a", "b"]
        assert len(offline) == 0
        assert q.metrics.snapshot()["beacon_sends"] == 1

    def test_large_backlog_beaconed_in_chunks(self, make_queue, transport, clock, offline):
        beacon = FakeBeacon()
        unload = ManualUnloadSignal()
        q = make_queue(batch_size=4, min_send_interval=60.0, time_func=clock,
                       beacon=beacon, unload_signal=unload)
        for i in range(14):
            q.push(make_error(f"e{i}"))
        assert wait_for(lambda: len(transport.payloads) == 1)

        unload.fire()

        assert [len(p["events"]) for p in beacon.payloads] == [4, 4, 2]
        beaconed = [e for p in beacon.payloads for e in p["events"]]
        assert _messages(beaconed) == [f"e{i}" for i in range(4, 14)]
        assert q.metrics.snapshot()["beacon_sends"] == 3
        assert len(offline) == 0

    def test_rejected_beacon_chunks_stored_in_batch_sized_records(
        self, make_queue, transport, clock, offline
    ):
        beacon = FakeBeacon(limit=1)
        unload = ManualUnloadSignal()
        q = make_queue(batch_size=4, min_send_interval=60.0, time_func=clock,
                       beacon=beacon, unload_signal=unload)
        for i in range(14):
            q.push(make_error(f"e{i}"))
        assert wait_for(lambda: len(transport.payloads) == 1)

        unload.fire()

        assert len(beacon.payloads) == 1
        records = offline.read_all()
        assert [len(r.events) for r in records] == [4, 2]
        assert _messages(records[0].events + records[1].events) == [
            f"e{i}" for i in range(8, 14)
        ]

    def test_shutdown_waits_for_beacon(self, make_queue):
        beacon = FakeBeacon()
        q = make_queue(beacon=beacon)
        q.push(make_error("a"))
        q.shutdown(timeout=2.0)

        assert beacon.drained is True
        assert len(beacon.payloads) == 1

    def test_unload_without_beacon_writes_offline(self, make_queue, offline):
        unload = ManualUnloadSignal()
        q = make_queue(unload_signal=unload)
        q.push(make_error("a"))

        unload.fire()

        records = offline.read_all()
        assert len(records) == 1
        assert _messages(records[0].events) == ["a"]

    def test_rejected_beacon_falls_back_to_store(self, make_queue, offline):
        unload = ManualUnloadSignal()
        q = make_queue(beacon=FakeBeacon(accept=False), unload_signal=unload)
        q.push(make_error("a"))

        unload.fire()
        assert len(offline) == 1

    def test_beacon_skipped_while_offline(self, make_queue, offline):
        beacon = FakeBeacon()
        unload = ManualUnloadSignal()
        q = make_queue(beacon=beacon, unload_signal=unload,
                       connectivity=ManualConnectivitySignal(online=False))
        q.push(make_error("a"))

        unload.fire()
        assert beacon.payloads == []
        assert len(offline) == 1

    def test_push_after_teardown_is_persisted(self, make_queue, transport, offline):
        q = make_queue()
        q.shutdown(timeout=2.0)
        q.push(make_error("late"))

        assert transport.attempts == 0
        assert _messages(offline.read_all()[0].events) == ["late"]

    def test_teardown_is_idempotent(self, make_queue, offline):
        unload = ManualUnloadSignal()
        q = make_queue(unload_signal=unload)
        q.push(make_error("a"))
        unload.fire()
        unload.fire()
        q.shutdown(timeout=2.0)
        assert len(offline) == 1
