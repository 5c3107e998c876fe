"""Ingestion service: Flask app accepting report batches and serving error groups."""

import logging
import time

from flask import Flask, jsonify, request

from webmonitor.aggregation_store import AggregationStore, StoreError
from webmonitor.config import ServerConfig
from webmonitor.fingerprint import generate_fingerprint
from webmonitor.models import ErrorEvent, event_from_dict
from webmonitor.validator import PROJECT_ID_PATTERN, BatchValidationError, ReportValidator

logger = logging.getLogger(__name__)


class IngestionTimeout(Exception):
    """Processing a batch took longer than the configured bound."""


class Ingestor:
    """Validates a batch and applies it to the store in one transaction."""

    def __init__(self, store: AggregationStore, validator: ReportValidator,
                 timeout_seconds: float = 10.0, time_func=None):
        self._store = store
        self._validator = validator
        self._timeout = timeout_seconds
        self._time_func = time_func or time.monotonic

    def ingest(self, body) -> dict:
        """Apply a report body; returns counts.

        Raises BatchValidationError for a bad envelope, IngestionTimeout when
        the deadline passes (nothing is committed), StoreError on storage
        failure.
        """
        project_id, events = self._validator.validate_batch(body)
        deadline = self._time_func() + self._timeout

        accepted = dropped = new_groups = 0
        with self._store.transaction() as tx:
            for raw in events:
                if self._time_func() > deadline:
                    raise IngestionTimeout(
                        f"batch of {len(events)} events exceeded {self._timeout}s"
                    )

                is_valid, errors = self._validator.validate_event(raw)
                if not is_valid:
                    dropped += 1
                    logger.debug("Dropping invalid event for %s: %s", project_id, errors)
                    continue

                event = event_from_dict(raw)
                if isinstance(event, ErrorEvent):
                    result = tx.upsert(project_id, generate_fingerprint(event), event)
                    if result.is_new_group:
                        new_groups += 1
                else:
                    tx.insert_performance(project_id, event)
                accepted += 1

        return {"accepted": accepted, "dropped": dropped, "new_groups": new_groups}


def create_app(config=None, store=None, validator=None):
    """Flask application factory."""
    app = Flask(__name__)

    if config is None:
        config = ServerConfig.from_env()

    ingestion_cfg = config["ingestion"]
    if store is None:
        store = AggregationStore(
            config["storage"]["db_path"],
            busy_timeout=config["storage"]["busy_timeout_seconds"],
        )
    if validator is None:
        validator = ReportValidator(
            max_event_age_days=ingestion_cfg["max_event_age_days"],
            max_clock_skew_seconds=ingestion_cfg["max_clock_skew_seconds"],
            max_events_per_batch=ingestion_cfg["max_events_per_batch"],
        )
    ingestor = Ingestor(store, validator, ingestion_cfg["request_timeout_seconds"])

    # Store components on app for access in tests
    app.config["components"] = {
        "config": config,
        "store": store,
        "validator": validator,
        "ingestor": ingestor,
    }

    # --- Routes ---

    @app.route("/health")
    def health():
        return jsonify({"status": "healthy"})

    @app.route("/report", methods=["POST"])
    def report():
        body = request.get_json(force=True, silent=True)

        try:
            counts = ingestor.ingest(body)
        except BatchValidationError as exc:
            logger.info("Rejected report batch: %s", exc)
            return jsonify({"status": "invalid", "errors": exc.errors}), 400
        except IngestionTimeout as exc:
            logger.warning("Report batch timed out, rolled back: %s", exc)
            return jsonify({"status": "timeout"}), 503
        except StoreError as exc:
            logger.error("Report batch failed in storage: %s", exc)
            return jsonify({"status": "error"}), 500

        return jsonify({
            "status": "accepted",
            "accepted": counts["accepted"],
            "dropped": counts["dropped"],
            "newGroups": counts["new_groups"],
        }), 200

    @app.route("/api/groups")
    def list_groups():
        project_id = request.args.get("projectId", "")
        if not PROJECT_ID_PATTERN.match(project_id):
            return jsonify({"error": "projectId is required"}), 400
        page = request.args.get("page", 1, type=int)
        page_size = min(request.args.get("pageSize", 20, type=int), 100)
        return jsonify(store.list_groups(project_id, page=page, page_size=page_size))

    @app.route("/api/groups/<fingerprint>")
    def get_group(fingerprint):
        project_id = request.args.get("projectId", "")
        if not PROJECT_ID_PATTERN.match(project_id):
            return jsonify({"error": "projectId is required"}), 400
        group = store.get_group(project_id, fingerprint)
        if group is None:
            return jsonify({"error": "not found"}), 404
        return jsonify(group)

    @app.route("/api/validation-stats")
    def validation_stats():
        return jsonify(validator.stats.snapshot())

    return app
