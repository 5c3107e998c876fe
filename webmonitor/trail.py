"""Behavior trail: bounded ring buffer of recent breadcrumbs."""

import collections
import threading

from webmonitor.models import Breadcrumb

DEFAULT_CAPACITY = 20


class BehaviorTrail:
    """Thread-safe FIFO of breadcrumbs backed by a bounded deque."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError("Trail capacity must be at least 1")
        self._crumbs: collections.deque = collections.deque(maxlen=capacity)
        self._lock = threading.Lock()

    def append(self, crumb: Breadcrumb) -> None:
        """Add a breadcrumb, evicting the oldest one when full."""
        with self._lock:
            self._crumbs.append(crumb)

    def snapshot(self) -> tuple:
        """Return a copy of the trail, oldest first."""
        with self._lock:
            return tuple(self._crumbs)

    def clear(self) -> None:
        with self._lock:
            self._crumbs.clear()

    @property
    def capacity(self) -> int:
        return self._crumbs.maxlen

    def __len__(self) -> int:
        return len(self._crumbs)
