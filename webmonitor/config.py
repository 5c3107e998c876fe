"""Configuration: frozen client dataclass from env/CLI, YAML-backed server config."""

import argparse
import copy
import logging
import os
from dataclasses import dataclass

import yaml

logger = logging.getLogger(__name__)


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class ClientConfig:
    report_url: str = "http://localhost:5000/report"
    project_id: str = "demo-project"
    batch_size: int = 10
    report_interval: float = 5.0
    min_send_interval: float = 1.0
    request_timeout: float = 5.0
    offline_path: str = "./data/offline_queue.json"
    offline_max_records: int = 20
    max_replay_events: int = 50
    max_breadcrumbs: int = 20
    sample_rate: float = 1.0
    use_beacon: bool = True
    probe_interval: float = 0.0
    events_per_second: int = 5
    run_time: int = 30

    def __post_init__(self):
        if not self.project_id:
            raise ValueError("project_id is required")
        if not self.report_url:
            raise ValueError("report_url is required")
        if not 0.0 <= self.sample_rate <= 1.0:
            raise ValueError("sample_rate must be between 0 and 1")
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")


def load_client_config(argv=None) -> ClientConfig:
    """Build ClientConfig from environment variables, then override with CLI args.

    Pass argv for testability; when None, argparse reads sys.argv.
    """
    env = {
        "report_url": os.environ.get("REPORT_URL", ClientConfig.report_url),
        "project_id": os.environ.get("PROJECT_ID", ClientConfig.project_id),
        "batch_size": int(os.environ.get("BATCH_SIZE", ClientConfig.batch_size)),
        "report_interval": float(
            os.environ.get("REPORT_INTERVAL", ClientConfig.report_interval)
        ),
        "min_send_interval": float(
            os.environ.get("MIN_SEND_INTERVAL", ClientConfig.min_send_interval)
        ),
        "request_timeout": float(
            os.environ.get("REQUEST_TIMEOUT", ClientConfig.request_timeout)
        ),
        "offline_path": os.environ.get("OFFLINE_PATH", ClientConfig.offline_path),
        "offline_max_records": int(
            os.environ.get("OFFLINE_MAX_RECORDS", ClientConfig.offline_max_records)
        ),
        "max_replay_events": int(
            os.environ.get("MAX_REPLAY_EVENTS", ClientConfig.max_replay_events)
        ),
        "max_breadcrumbs": int(
            os.environ.get("MAX_BREADCRUMBS", ClientConfig.max_breadcrumbs)
        ),
        "sample_rate": float(os.environ.get("SAMPLE_RATE", ClientConfig.sample_rate)),
        "use_beacon": _parse_bool(os.environ.get("USE_BEACON", "true")),
        "probe_interval": float(
            os.environ.get("PROBE_INTERVAL", ClientConfig.probe_interval)
        ),
        "events_per_second": int(
            os.environ.get("EVENTS_PER_SECOND", ClientConfig.events_per_second)
        ),
        "run_time": int(os.environ.get("RUN_TIME", ClientConfig.run_time)),
    }

    # CLI flags override env vars
    parser = argparse.ArgumentParser(description="Telemetry report client")
    parser.add_argument("--report-url", type=str, default=None)
    parser.add_argument("--project-id", type=str, default=None)
    parser.add_argument("--batch-size", type=int, default=None)
    parser.add_argument("--report-interval", type=float, default=None)
    parser.add_argument("--min-send-interval", type=float, default=None)
    parser.add_argument("--offline-path", type=str, default=None)
    parser.add_argument("--sample-rate", type=float, default=None)
    parser.add_argument("--probe-interval", type=float, default=None)
    parser.add_argument("--events-per-second", type=int, default=None)
    parser.add_argument("--run-time", type=int, default=None)
    parser.add_argument("--no-beacon", action="store_true", default=False)

    args = parser.parse_args(argv)

    overrides = {
        key: value
        for key, value in vars(args).items()
        if key != "no_beacon" and value is not None
    }
    env.update(overrides)
    if args.no_beacon:
        env["use_beacon"] = False

    return ClientConfig(**env)


class ServerConfig:
    """Server configuration loaded from YAML and merged with defaults."""

    DEFAULTS = {
        "server": {
            "host": "0.0.0.0",
            "port": 5000,
            "debug": False,
        },
        "storage": {
            "db_path": "./data/webmonitor.db",
            "busy_timeout_seconds": 5.0,
        },
        "ingestion": {
            "request_timeout_seconds": 10.0,
            "max_event_age_days": 30,
            "max_clock_skew_seconds": 600,
            "max_events_per_batch": 1000,
        },
        "logging": {
            "level": "INFO",
        },
    }

    def __init__(self, config_path=None, overrides=None):
        self._config = copy.deepcopy(self.DEFAULTS)

        if config_path is not None:
            try:
                with open(config_path, "r") as f:
                    user_config = yaml.safe_load(f)

                if user_config and isinstance(user_config, dict):
                    self._config = self._deep_merge(self._config, user_config)
            except FileNotFoundError:
                logger.info("Config file %s not found, using defaults", config_path)
            except yaml.YAMLError as exc:
                logger.warning("Invalid YAML in %s, using defaults: %s", config_path, exc)

        if overrides:
            self._config = self._deep_merge(self._config, overrides)

    @classmethod
    def from_env(cls) -> "ServerConfig":
        """Load from ``CONFIG_PATH`` (default ``config.yaml``)."""
        return cls(os.environ.get("CONFIG_PATH", "config.yaml"))

    @staticmethod
    def _deep_merge(base, override):
        """Recursively merge override dict into base dict."""
        result = copy.deepcopy(base)
        for key, value in override.items():
            if (
                key in result
                and isinstance(result[key], dict)
                and isinstance(value, dict)
            ):
                result[key] = ServerConfig._deep_merge(result[key], value)
            else:
                result[key] = copy.deepcopy(value)
        return result

    def get(self, key, default=None):
        return self._config.get(key, default)

    def __getitem__(self, key):
        return self._config[key]

    def __contains__(self, key):
        return key in self._config
