"""Host capabilities the report queue depends on: teardown and connectivity."""

import atexit
import logging
import signal
import socket
import threading
from typing import Callable, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class UnloadSignal(Protocol):
    def subscribe(self, callback: Callable[[], None]) -> None: ...


@runtime_checkable
class ConnectivitySignal(Protocol):
    def is_online(self) -> bool: ...

    def subscribe(self, callback: Callable[[], None]) -> None: ...


class NullUnloadSignal:
    """Never fires."""

    def subscribe(self, callback):
        pass


class ManualUnloadSignal:
    """Fires its subscribers when ``fire()`` is called."""

    def __init__(self):
        self._callbacks: list = []

    def subscribe(self, callback):
        self._callbacks.append(callback)

    def fire(self):
        for callback in list(self._callbacks):
            callback()


class ProcessExitSignal(ManualUnloadSignal):
    """Fires once on SIGINT/SIGTERM or interpreter exit.

    Must be installed from the main thread.
    """

    def __init__(self, shutdown_event: threading.Event | None = None):
        super().__init__()
        self._shutdown = shutdown_event
        self._fired = False
        self._lock = threading.Lock()

    def install(self):
        signal.signal(signal.SIGINT, self._handle_signal)
        signal.signal(signal.SIGTERM, self._handle_signal)
        atexit.register(self.fire)

    def _handle_signal(self, signum, frame):
        logger.info("Received signal %d, tearing down", signum)
        self.fire()
        if self._shutdown is not None:
            self._shutdown.set()

    def fire(self):
        with self._lock:
            if self._fired:
                return
            self._fired = True
        super().fire()


class AlwaysOnline:
    """Connectivity signal for hosts without a reachability notion."""

    def is_online(self) -> bool:
        return True

    def subscribe(self, callback):
        pass


class ManualConnectivitySignal:
    """Connectivity toggled by hand; ``set_online(True)`` after offline is an edge."""

    def __init__(self, online: bool = True):
        self._online = online
        self._callbacks: list = []

    def is_online(self) -> bool:
        return self._online

    def subscribe(self, callback):
        self._callbacks.append(callback)

    def set_online(self, online: bool):
        was_online = self._online
        self._online = online
        if online and not was_online:
            for callback in list(self._callbacks):
                callback()


class ProbeConnectivitySignal:
    """Periodically connects to a TCP endpoint and notifies on offline→online edges.

    If a plain TCP connect succeeds, the
    collector is reachable. Logs state transitions only.
    """

    def __init__(
        self,
        host: str,
        port: int,
        shutdown_event: threading.Event,
        interval: float = 10.0,
    ):
        self._host = host
        self._port = port
        self._shutdown = shutdown_event
        self._interval = interval
        self._online = threading.Event()
        self._online.set()
        self._callbacks: list = []
        self._thread: threading.Thread | None = None

    def is_online(self) -> bool:
        return self._online.is_set()

    def subscribe(self, callback):
        self._callbacks.append(callback)

    def start(self):
        self._thread = threading.Thread(target=self._monitor_loop, daemon=True)
        self._thread.start()

    def stop(self):
        self._shutdown.set()
        if self._thread:
            self._thread.join(timeout=5)

    def _monitor_loop(self):
        while not self._shutdown.is_set():
            reachable = self._reachable()
            was_online = self._online.is_set()

            if reachable and not was_online:
                logger.info("Collector %s:%d is reachable again", self._host, self._port)
                self._online.set()
                for callback in list(self._callbacks):
                    callback()
            elif not reachable and was_online:
                logger.warning("Collector %s:%d is unreachable", self._host, self._port)
                self._online.clear()

            self._shutdown.wait(self._interval)

    def _reachable(self) -> bool:
        try:
            with socket.create_connection((self._host, self._port), timeout=2.0):
                return True
        except OSError:
            return False
