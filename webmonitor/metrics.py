"""Metrics: thread-safe counters for the report queue and ingestion."""

import threading
import time
from collections import defaultdict


class ReporterMetrics:
    """Collects counters about report queue delivery."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._batches_sent = 0
        self._batches_failed = 0
        self._events_delivered = 0
        self._offline_writes = 0
        self._replayed_records = 0
        self._beacon_sends = 0
        self._send_time_total_ms = 0.0
        self._flush_triggers: dict = defaultdict(int)
        self._start_time = time.monotonic()

    def record_trigger(self, reason: str) -> None:
        with self._lock:
            self._flush_triggers[reason] += 1

    def record_sent(self, events: int, replayed_records: int, send_time_ms: float) -> None:
        """Record a confirmed delivery.

        Args:
            events: Number of events in the delivered payload.
            replayed_records: Offline records included and now removed.
            send_time_ms: Time the HTTP round trip took, in milliseconds.
        """
        with self._lock:
            self._batches_sent += 1
            self._events_delivered += events
            self._replayed_records += replayed_records
            self._send_time_total_ms += send_time_ms

    def record_failed(self) -> None:
        with self._lock:
            self._batches_failed += 1

    def record_offline_write(self) -> None:
        with self._lock:
            self._offline_writes += 1

    def record_beacon(self) -> None:
        with self._lock:
            self._beacon_sends += 1

    def snapshot(self) -> dict:
        """Return a point-in-time copy of all counters."""
        with self._lock:
            return {
                "batches_sent": self._batches_sent,
                "batches_failed": self._batches_failed,
                "events_delivered": self._events_delivered,
                "offline_writes": self._offline_writes,
                "replayed_records": self._replayed_records,
                "beacon_sends": self._beacon_sends,
                "avg_send_time_ms": (
                    self._send_time_total_ms / self._batches_sent
                    if self._batches_sent
                    else 0.0
                ),
                "flush_triggers": dict(self._flush_triggers),
                "uptime_seconds": time.monotonic() - self._start_time,
            }


class ValidationStats:
    """Counts accepted and dropped events per reason on the ingestion side."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._batches = 0
        self._rejected_batches = 0
        self._valid = 0
        self._dropped = 0
        self._drop_reasons: dict = defaultdict(int)

    def record_batch(self) -> None:
        with self._lock:
            self._batches += 1

    def record_rejected_batch(self) -> None:
        with self._lock:
            self._rejected_batches += 1

    def record_valid(self) -> None:
        with self._lock:
            self._valid += 1

    def record_dropped(self, reason: str) -> None:
        with self._lock:
            self._dropped += 1
            self._drop_reasons[reason] += 1

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "batches": self._batches,
                "rejected_batches": self._rejected_batches,
                "valid_events": self._valid,
                "dropped_events": self._dropped,
                "drop_reasons": dict(self._drop_reasons),
            }
