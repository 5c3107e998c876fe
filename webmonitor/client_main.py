"""Demo client: emits sample errors and metrics through a Monitor."""

import logging
import os
import random
import threading
from urllib.parse import urlparse

from webmonitor.config import load_client_config
from webmonitor.monitor import Monitor
from webmonitor.signals import ProbeConnectivitySignal, ProcessExitSignal

logger = logging.getLogger(__name__)

SAMPLE_PAGES = [
    "https://shop.example.com/",
    "https://shop.example.com/cart",
    "https://shop.example.com/checkout",
    "https://shop.example.com/orders",
]
SAMPLE_ERRORS = [
    ("TypeError", "Cannot read properties of undefined (reading 'id')"),
    ("TypeError", "Order {n} not found"),
    ("ReferenceError", "cartTotal is not defined"),
    ("Error", "Request to /api/orders?id={n} failed with 500"),
    ("SyntaxError", "Unexpected token < in JSON at position 0"),
]
SAMPLE_STACK = (
    "TypeError: sample\n"
    "    at renderOrder (https://shop.example.com/assets/app-3f9a1c2b.js:120:17)\n"
    "    at OrderList (https://shop.example.com/assets/app-3f9a1c2b.js:88:5)\n"
    "    at commitRoot (https://shop.example.com/node_modules/react-dom/index.js:1:1)\n"
)
SAMPLE_CRUMBS = [
    ("click", "ui", "Click on button.checkout"),
    ("route", "navigation", "Navigate to /cart"),
    ("fetch", "http", "GET /api/orders"),
    ("console", "warn", "Slow render detected"),
]


def generate_sample_events(monitor: Monitor, events_per_second: int, run_time: int,
                           shutdown: threading.Event):
    """Emit random breadcrumbs, errors and metrics for *run_time* seconds."""
    for _ in range(run_time):
        if shutdown.is_set():
            break

        for _ in range(events_per_second):
            page = random.choice(SAMPLE_PAGES)
            kind, category, message = random.choice(SAMPLE_CRUMBS)
            monitor.add_breadcrumb(kind, message, category=category)

            if random.random() < 0.7:
                error_kind, template = random.choice(SAMPLE_ERRORS)
                monitor.capture_error(
                    error_kind,
                    template.format(n=random.randint(10000, 99999999)),
                    stack=SAMPLE_STACK,
                    url=page,
                )
            else:
                monitor.report_performance(
                    {
                        "fcp": random.uniform(200, 2500),
                        "lcp": random.uniform(800, 5000),
                        "ttfb": random.uniform(20, 600),
                    },
                    url=page,
                )

        shutdown.wait(timeout=1.0)


def main():
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    config = load_client_config()
    shutdown_event = threading.Event()
    unload = ProcessExitSignal(shutdown_event)
    unload.install()

    connectivity = None
    if config.probe_interval > 0:
        target = urlparse(config.report_url)
        connectivity = ProbeConnectivitySignal(
            target.hostname or "localhost",
            target.port or (443 if target.scheme == "https" else 80),
            shutdown_event,
            interval=config.probe_interval,
        )
        connectivity.start()

    monitor = Monitor(
        config,
        unload_signal=unload,
        connectivity=connectivity,
        page_url=SAMPLE_PAGES[0],
    )
    monitor.start()
    logger.info(
        "Emitting %d event(s)/s for %ds to %s",
        config.events_per_second,
        config.run_time,
        config.report_url,
    )

    try:
        generate_sample_events(
            monitor, config.events_per_second, config.run_time, shutdown_event
        )
    finally:
        monitor.shutdown()


if __name__ == "__main__":
    main()
