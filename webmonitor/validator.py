"""Report validation: batch envelope checks and per-event JSON schema checks."""

import json
import os
import re
import time

import jsonschema

from webmonitor.metrics import ValidationStats
from webmonitor.models import is_error_payload, is_performance_payload

DEFAULT_SCHEMA_PATH = os.path.join(os.path.dirname(__file__), "schemas", "event_schema.json")

PROJECT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

MS_PER_DAY = 24 * 60 * 60 * 1000


class BatchValidationError(Exception):
    """The report envelope is unusable; the whole request is rejected."""

    def __init__(self, errors: list[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


class ReportValidator:
    """Validates report batches and the events inside them.

    A bad envelope raises BatchValidationError.  A bad individual event is
    only counted and reported back as invalid so the caller can skip it.
    """

    def __init__(
        self,
        schema_path: str = DEFAULT_SCHEMA_PATH,
        max_event_age_days: float = 30,
        max_clock_skew_seconds: float = 600,
        max_events_per_batch: int = 1000,
        stats: ValidationStats | None = None,
        time_func=None,
    ):
        with open(schema_path, "r") as f:
            schema = json.load(f)

        defs = schema["$defs"]
        self._error_validator = jsonschema.Draft202012Validator(
            {**defs["error_event"], "$defs": defs}
        )
        self._performance_validator = jsonschema.Draft202012Validator(
            {**defs["performance_event"], "$defs": defs}
        )
        self._max_age_ms = max_event_age_days * MS_PER_DAY
        self._max_skew_ms = max_clock_skew_seconds * 1000
        self._max_events = max_events_per_batch
        self._stats = stats or ValidationStats()
        self._time_func = time_func or time.time

    @property
    def stats(self) -> ValidationStats:
        return self._stats

    def validate_batch(self, body) -> tuple[str, list]:
        """Check the envelope and return ``(project_id, events)``."""
        self._stats.record_batch()
        errors = []

        if not isinstance(body, dict):
            errors.append("body must be a JSON object")
        else:
            project_id = body.get("projectId")
            if not project_id:
                errors.append("projectId is required")
            elif not isinstance(project_id, str) or not PROJECT_ID_PATTERN.match(project_id):
                errors.append("projectId is malformed")

            events = body.get("events")
            if not isinstance(events, list):
                errors.append("events must be an array")
            elif len(events) > self._max_events:
                errors.append(f"events exceeds {self._max_events} entries")

        if errors:
            self._stats.record_rejected_batch()
            raise BatchValidationError(errors)

        return body["projectId"], body["events"]

    def validate_event(self, raw) -> tuple[bool, list[str]]:
        """Validate a single event.

        Returns:
            tuple: (is_valid: bool, errors: list[str])
        """
        if is_error_payload(raw):
            validator = self._error_validator
        elif is_performance_payload(raw):
            validator = self._performance_validator
        else:
            self._stats.record_dropped("unknown_kind")
            return False, ["event is neither an error nor a performance event"]

        errors = list(validator.iter_errors(raw))
        if errors:
            self._stats.record_dropped(errors[0].validator)
            return False, [error.message for error in errors]

        now_ms = self._time_func() * 1000
        timestamp = raw["timestamp"]
        if timestamp < now_ms - self._max_age_ms or timestamp > now_ms + self._max_skew_ms:
            self._stats.record_dropped("timestamp_range")
            return False, [f"timestamp {timestamp} outside accepted range"]

        self._stats.record_valid()
        return True, []
