"""Report queue: batches, throttles and reliably delivers telemetry events.

Lifecycle of a batch::

    IDLE -> ACCUMULATING -> FLUSH_TRIGGERED -> SENDING -> DELIVERED | FAILED

A flush is triggered when the pending count reaches ``batch_size``, when
``report_interval`` has elapsed since the last flush, by an explicit
``flush()`` call, or by teardown.  Sends never start more often than once
per ``min_send_interval``; triggers inside that cooldown are coalesced into
one deferred send performed by the timer thread.

A send carries at most ``batch_size`` fresh events plus at most
``max_replay_events`` replayed ones; any backlog beyond that stays pending
and goes out in the following cooldown slots.  Offline records never hold
more than ``batch_size`` events.

Network I/O happens on a dedicated sender thread so ``push()`` never waits
on the network.  Failed or offline batches go to the offline store and are
replayed, oldest first, piggybacked onto a later regular flush.  At every
instant the pending batch, the batches handed to the sender and the offline
records together hold every accepted but unconfirmed event (up to the
offline store's record limit).  Nothing here raises into producer code.
"""

import enum
import logging
import queue
import threading
import time
from dataclasses import dataclass

from webmonitor.metrics import ReporterMetrics
from webmonitor.models import build_payload, event_to_dict
from webmonitor.offline_store import OfflineRecord
from webmonitor.signals import AlwaysOnline, NullUnloadSignal

logger = logging.getLogger(__name__)


class QueueState(enum.Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    FLUSH_TRIGGERED = "flush_triggered"
    SENDING = "sending"
    DELIVERED = "delivered"
    FAILED = "failed"


@dataclass(frozen=True)
class _Delivery:
    events: list
    replay: bool
    reason: str


class ReportQueue:
    """Client-side transport queue for one page/process instance."""

    def __init__(
        self,
        project_id: str,
        transport,
        offline_store,
        batch_size: int = 10,
        report_interval: float = 5.0,
        min_send_interval: float = 1.0,
        max_replay_events: int = 50,
        beacon=None,
        unload_signal=None,
        connectivity=None,
        metrics: ReporterMetrics | None = None,
        time_func=None,
        tick_interval: float | None = None,
    ):
        self._project_id = project_id
        self._transport = transport
        self._store = offline_store
        self._batch_size = batch_size
        self._report_interval = report_interval
        self._min_send_interval = min_send_interval
        self._max_replay_events = max_replay_events
        self._beacon = beacon
        self._unload_signal = unload_signal or NullUnloadSignal()
        self._connectivity = connectivity or AlwaysOnline()
        self._metrics = metrics or ReporterMetrics()
        self._time = time_func or time.monotonic
        self._tick_interval = (
            tick_interval if tick_interval is not None else min(0.25, report_interval)
        )

        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._pending: list[dict] = []
        self._state = QueueState.IDLE
        self._last_flush = self._time()
        self._last_send: float | None = None
        self._deferred = False
        self._replay_armed = False
        self._inflight = 0
        self._started = False
        self._torn_down = False

        self._sends: queue.Queue = queue.Queue()
        self._stop_timer = threading.Event()
        self._timer_thread: threading.Thread | None = None
        self._sender_thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the timer and sender threads and hook host signals."""
        with self._lock:
            if self._started:
                return
            self._started = True

        if self._connectivity.is_online() and self._has_offline_records():
            with self._lock:
                self._replay_armed = True

        self._connectivity.subscribe(self._on_online)
        self._unload_signal.subscribe(self._on_unload)

        self._sender_thread = threading.Thread(
            target=self._send_loop, name="report-sender", daemon=True
        )
        self._timer_thread = threading.Thread(
            target=self._timer_loop, name="report-timer", daemon=True
        )
        self._sender_thread.start()
        self._timer_thread.start()

    def shutdown(self, timeout: float = 5.0) -> None:
        """Tear down and wait for already handed-off sends to finish."""
        self._teardown("shutdown")
        if self._sender_thread is not None:
            self._sender_thread.join(timeout=timeout)
        if self._timer_thread is not None:
            self._timer_thread.join(timeout=timeout)
        if self._beacon is not None and not self._beacon.drain(timeout=timeout):
            logger.warning("Beacon sends still running after %.1fs", timeout)

    # ------------------------------------------------------------------
    # Producer API
    # ------------------------------------------------------------------

    def push(self, event) -> None:
        """Accept one event (model or wire dict) for delivery."""
        entry = event if isinstance(event, dict) else event_to_dict(event)

        with self._lock:
            if self._torn_down:
                late = True
            else:
                late = False
                self._pending.append(entry)
                if self._state not in (QueueState.FLUSH_TRIGGERED, QueueState.SENDING):
                    self._state = QueueState.ACCUMULATING
                full = len(self._pending) >= self._batch_size

        if late:
            logger.debug("Event pushed after teardown, writing to offline store")
            self._persist([entry])
            return

        if full:
            self._trigger("size")

    def flush(self) -> None:
        """Close the pending batch now (subject to throttling)."""
        self._trigger("manual")

    def tick(self) -> None:
        """Run one timer step: interval flush or a deferred coalesced send."""
        now = self._time()
        with self._lock:
            if self._torn_down:
                return

            deferred_due = self._deferred and self._cooldown_elapsed(now)
            timer_due = now - self._last_flush >= self._report_interval
            if not (deferred_due or timer_due):
                return

            if timer_due:
                self._last_flush = now
            delivery = self._take_locked("deferred" if deferred_due else "timer", now)

        if delivery is not None:
            self._dispatch(delivery)

    def join(self, timeout: float | None = None) -> bool:
        """Block until every handed-off send has completed."""
        with self._idle:
            return self._idle.wait_for(lambda: self._inflight == 0, timeout)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> QueueState:
        with self._lock:
            return self._state

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def metrics(self) -> ReporterMetrics:
        return self._metrics

    # ------------------------------------------------------------------
    # Flush machinery
    # ------------------------------------------------------------------

    def _trigger(self, reason: str) -> None:
        now = self._time()
        with self._lock:
            if self._torn_down:
                return
            delivery = self._take_locked(reason, now)
        if delivery is not None:
            self._dispatch(delivery)

    def _cooldown_elapsed(self, now: float) -> bool:
        return self._last_send is None or now - self._last_send >= self._min_send_interval

    def _take_locked(self, reason: str, now: float) -> _Delivery | None:
        """Close the pending batch if a send may start now. Caller holds the lock."""
        replay = (
            self._replay_armed
            and self._connectivity.is_online()
            and self._has_offline_records()
        )
        if not self._pending and not replay:
            return None

        if not self._cooldown_elapsed(now):
            self._deferred = True
            self._state = QueueState.FLUSH_TRIGGERED
            return None

        batch = self._pending[: self._batch_size]
        self._pending = self._pending[self._batch_size:]
        if replay:
            self._replay_armed = False
        # Leftovers go out in the next cooldown slot.
        self._deferred = bool(self._pending)
        self._last_send = now
        self._last_flush = now
        self._inflight += 1
        self._state = QueueState.FLUSH_TRIGGERED
        self._metrics.record_trigger(reason)
        return _Delivery(events=batch, replay=replay, reason=reason)

    def _dispatch(self, delivery: _Delivery) -> None:
        self._sends.put(delivery)

    def _send_loop(self) -> None:
        while True:
            delivery = self._sends.get()
            if delivery is None:
                return
            try:
                self._deliver(delivery)
            except Exception:
                logger.exception("Unexpected error delivering %s batch", delivery.reason)
                self._persist(delivery.events)
            finally:
                with self._idle:
                    self._inflight -= 1
                    if self._inflight == 0:
                        self._idle.notify_all()

    def _deliver(self, delivery: _Delivery) -> None:
        if not self._connectivity.is_online():
            logger.info("Offline, storing batch of %d event(s)", len(delivery.events))
            self._persist(delivery.events)
            self._set_state(QueueState.FAILED)
            return

        records: list[OfflineRecord] = []
        remaining = 0
        if delivery.replay:
            own = [r for r in self._read_offline() if r.project_id == self._project_id]
            records = self._select_replay(own)
            remaining = len(own) - len(records)

        events = [e for record in records for e in record.events] + delivery.events
        if not events:
            self._set_state(QueueState.IDLE)
            return

        self._set_state(QueueState.SENDING)
        start = time.monotonic()
        try:
            ok = self._transport.send(build_payload(self._project_id, events))
        except Exception as exc:
            logger.warning("Transport raised while sending: %s", exc)
            ok = False
        elapsed_ms = (time.monotonic() - start) * 1000

        if ok:
            if records:
                self._remove_offline([r.id for r in records])
            self._metrics.record_sent(len(events), len(records), elapsed_ms)
            logger.info(
                "Delivered %d event(s) (%d replayed record(s), trigger=%s)",
                len(events),
                len(records),
                delivery.reason,
            )
            with self._lock:
                if remaining:
                    self._replay_armed = True
                self._settle_locked(QueueState.DELIVERED)
            return

        self._metrics.record_failed()
        self._persist(delivery.events)
        logger.warning(
            "Delivery of %d event(s) failed, batch kept offline", len(delivery.events)
        )
        with self._lock:
            self._replay_armed = True
            self._settle_locked(QueueState.FAILED)

    def _settle_locked(self, outcome: QueueState) -> None:
        if self._pending:
            self._state = QueueState.ACCUMULATING
        else:
            self._state = outcome

    def _set_state(self, state: QueueState) -> None:
        with self._lock:
            self._state = state

    def _timer_loop(self) -> None:
        while not self._stop_timer.wait(self._tick_interval):
            try:
                self.tick()
            except Exception:
                logger.exception("Report timer tick failed")

    # ------------------------------------------------------------------
    # Host signals
    # ------------------------------------------------------------------

    def _on_online(self) -> None:
        logger.info("Connectivity restored, offline replay armed")
        with self._lock:
            self._replay_armed = True

    def _on_unload(self) -> None:
        self._teardown("unload")

    def _teardown(self, reason: str) -> None:
        """Cancel timers and save the pending batch; in-flight sends continue."""
        with self._lock:
            if self._torn_down:
                return
            self._torn_down = True
            self._deferred = False
            batch, self._pending = self._pending, []

        self._stop_timer.set()

        chunks = self._chunk(batch)
        beaconed = 0
        if self._beacon is not None and self._connectivity.is_online():
            for chunk in chunks:
                if not self._beacon.send(build_payload(self._project_id, chunk)):
                    break
                self._metrics.record_beacon()
                beaconed += 1
        if beaconed:
            logger.info(
                "Teardown (%s): beaconed %d event(s)",
                reason,
                sum(len(chunk) for chunk in chunks[:beaconed]),
            )

        leftover = [e for chunk in chunks[beaconed:] for e in chunk]
        if leftover:
            self._persist(leftover)
            logger.info(
                "Teardown (%s): stored %d event(s) offline", reason, len(leftover)
            )

        self._sends.put(None)

    # ------------------------------------------------------------------
    # Offline store access; failures are logged, never raised
    # ------------------------------------------------------------------

    def _chunk(self, events: list) -> list[list]:
        size = self._batch_size
        return [events[i:i + size] for i in range(0, len(events), size)]

    def _select_replay(self, records: list[OfflineRecord]) -> list[OfflineRecord]:
        """Oldest records whose events fit ``max_replay_events``; never empty."""
        selected: list[OfflineRecord] = []
        total = 0
        for record in records:
            if selected and total + len(record.events) > self._max_replay_events:
                break
            selected.append(record)
            total += len(record.events)
        return selected

    def _persist(self, events: list) -> None:
        """Store *events* as records of at most ``batch_size`` events each."""
        for chunk in self._chunk(events):
            try:
                self._store.append(OfflineRecord(project_id=self._project_id, events=chunk))
                self._metrics.record_offline_write()
            except (OSError, ValueError, TypeError) as exc:
                logger.error("Could not store %d event(s) offline: %s", len(chunk), exc)

    def _read_offline(self) -> list[OfflineRecord]:
        try:
            return self._store.read_all()
        except (OSError, ValueError) as exc:
            logger.error("Could not read offline store: %s", exc)
            return []

    def _remove_offline(self, ids: list[str]) -> None:
        try:
            self._store.remove(ids)
        except (OSError, ValueError) as exc:
            logger.error("Could not prune %d delivered record(s): %s", len(ids), exc)

    def _has_offline_records(self) -> bool:
        return any(r.project_id == self._project_id for r in self._read_offline())
