"""HTTP transports for report payloads."""

import logging
import threading
import time

import requests

logger = logging.getLogger(__name__)


class HttpTransport:
    """Posts report payloads as JSON and reports whether the server accepted them."""

    def __init__(self, report_url: str, timeout: float = 5.0, session=None):
        self._report_url = report_url
        self._timeout = timeout
        self._session = session or requests.Session()

    def send(self, payload: dict) -> bool:
        """POST *payload*. Returns True only for a 2xx response."""
        try:
            response = self._session.post(
                self._report_url, json=payload, timeout=self._timeout
            )
        except requests.RequestException as exc:
            logger.warning("Report to %s failed: %s", self._report_url, exc)
            return False

        if not 200 <= response.status_code < 300:
            logger.warning(
                "Report to %s rejected with HTTP %d", self._report_url, response.status_code
            )
            return False
        return True

    def close(self):
        self._session.close()


class BeaconTransport:
    """Fire-and-forget delivery for teardown.

    ``send`` hands the payload to a worker thread and returns immediately;
    the HTTP outcome is never observed.  It returns False only when the
    payload could not be handed off at all.  Workers are non-daemon so the
    interpreter waits for them (each bounded by ``timeout``) before exiting,
    and ``drain`` lets the owner wait for them explicitly.
    """

    def __init__(self, report_url: str, timeout: float = 2.0, session=None):
        self._report_url = report_url
        self._timeout = timeout
        self._session = session or requests.Session()
        self._lock = threading.Lock()
        self._threads: list[threading.Thread] = []

    def send(self, payload: dict) -> bool:
        thread = threading.Thread(target=self._post, args=(payload,), name="beacon")
        try:
            thread.start()
        except RuntimeError as exc:
            logger.debug("Beacon could not start: %s", exc)
            return False
        with self._lock:
            self._threads = [t for t in self._threads if t.is_alive()]
            self._threads.append(thread)
        return True

    def drain(self, timeout: float = 5.0) -> bool:
        """Wait up to *timeout* seconds for started beacons; True if all finished."""
        deadline = time.monotonic() + timeout
        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
        return not any(thread.is_alive() for thread in threads)

    def _post(self, payload: dict):
        try:
            self._session.post(self._report_url, json=payload, timeout=self._timeout)
        except requests.RequestException as exc:
            logger.debug("Beacon to %s dropped: %s", self._report_url, exc)
