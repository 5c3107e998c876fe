"""Client facade: breadcrumb trail, sampling and filtering in front of the report queue."""

import logging
import random
import re
import traceback
from typing import Callable, Optional

from webmonitor.config import ClientConfig
from webmonitor.models import Breadcrumb, ErrorEvent, PerformanceEvent, now_ms
from webmonitor.offline_store import FileOfflineStore
from webmonitor.report_queue import ReportQueue
from webmonitor.trail import BehaviorTrail
from webmonitor.transport import BeaconTransport, HttpTransport

logger = logging.getLogger(__name__)


class Monitor:
    """Wires a BehaviorTrail and a ReportQueue for one page/process.

    Error events get a snapshot of the trail at capture time.  Events pass
    through sampling, ``ignore_errors`` patterns and the ``before_send`` hook
    before they reach the queue.  None of the capture methods raise.
    """

    def __init__(
        self,
        config: ClientConfig,
        transport=None,
        offline_store=None,
        beacon=None,
        unload_signal=None,
        connectivity=None,
        ignore_errors: Optional[list] = None,
        before_send: Optional[Callable] = None,
        rng: Optional[random.Random] = None,
        page_url: str = "",
        time_func=None,
    ):
        self._config = config
        self._page_url = page_url
        self._rng = rng or random.Random()
        self._ignore = [re.compile(p) if isinstance(p, str) else p for p in ignore_errors or []]
        self._before_send = before_send
        self._trail = BehaviorTrail(config.max_breadcrumbs)

        self._owned_transport = None
        if transport is None:
            transport = HttpTransport(config.report_url, timeout=config.request_timeout)
            self._owned_transport = transport
        if offline_store is None:
            offline_store = FileOfflineStore(
                config.offline_path, max_records=config.offline_max_records
            )
        if beacon is None and config.use_beacon:
            beacon = BeaconTransport(config.report_url)

        self._queue = ReportQueue(
            project_id=config.project_id,
            transport=transport,
            offline_store=offline_store,
            batch_size=config.batch_size,
            report_interval=config.report_interval,
            min_send_interval=config.min_send_interval,
            max_replay_events=config.max_replay_events,
            beacon=beacon,
            unload_signal=unload_signal,
            connectivity=connectivity,
            time_func=time_func,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self._queue.start()
        logger.info(
            "Monitor started for project %s (batch_size=%d, interval=%.1fs)",
            self._config.project_id,
            self._config.batch_size,
            self._config.report_interval,
        )

    def flush(self) -> None:
        self._queue.flush()

    def shutdown(self, timeout: float = 5.0) -> None:
        self._queue.shutdown(timeout=timeout)
        if self._owned_transport is not None:
            self._owned_transport.close()
        logger.info("Monitor metrics: %s", self._queue.metrics.snapshot())

    @property
    def queue(self) -> ReportQueue:
        return self._queue

    @property
    def trail(self) -> BehaviorTrail:
        return self._trail

    # ------------------------------------------------------------------
    # Capture API
    # ------------------------------------------------------------------

    def add_breadcrumb(
        self, kind: str, message: str, category: str = "", data: Optional[dict] = None
    ) -> None:
        self._trail.append(
            Breadcrumb(kind=kind, message=message, category=category, data=data)
        )

    def capture_error(
        self,
        kind: str,
        message: str,
        stack: Optional[str] = None,
        filename: Optional[str] = None,
        lineno: Optional[int] = None,
        colno: Optional[int] = None,
        url: Optional[str] = None,
    ) -> None:
        event = ErrorEvent(
            kind=kind,
            message=message or "",
            url=url if url is not None else self._page_url,
            timestamp=now_ms(),
            stack=stack,
            filename=filename,
            lineno=lineno,
            colno=colno,
            breadcrumbs=self._trail.snapshot(),
        )
        self._report(event)

    def capture_exception(self, exc: BaseException, url: Optional[str] = None) -> None:
        """Report a Python exception; its traceback becomes the stack text."""
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        frames = traceback.extract_tb(exc.__traceback__)
        last = frames[-1] if frames else None
        self.capture_error(
            kind=type(exc).__name__,
            message=str(exc),
            stack=stack,
            filename=last.filename if last else None,
            lineno=last.lineno if last else None,
            url=url,
        )

    def capture_message(self, message: str, level: str = "info") -> None:
        self.capture_error(kind="error", message=f"[{level}] {message}")

    def report_performance(self, metrics: dict, url: Optional[str] = None) -> None:
        event = PerformanceEvent(
            metrics=metrics,
            url=url if url is not None else self._page_url,
            timestamp=now_ms(),
        )
        self._report(event)

    # ------------------------------------------------------------------
    # Filtering
    # ------------------------------------------------------------------

    def _report(self, event) -> None:
        if self._rng.random() >= self._config.sample_rate:
            return

        if isinstance(event, ErrorEvent) and self._is_ignored(event):
            logger.debug("Ignoring error matching ignore_errors: %s", event.message)
            return

        if self._before_send is not None:
            try:
                event = self._before_send(event)
            except Exception:
                logger.exception("before_send hook raised, dropping event")
                return
            if event is None or event is False:
                return

        self._queue.push(event)

    def _is_ignored(self, event: ErrorEvent) -> bool:
        return any(pattern.search(event.message) for pattern in self._ignore)
