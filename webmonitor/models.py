"""Telemetry event models: breadcrumbs, error events, performance events."""

import copy
import time
from dataclasses import dataclass, field
from typing import Optional, Union


def now_ms() -> int:
    """Current wall-clock time as a millisecond epoch integer."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Breadcrumb:
    kind: str
    message: str
    category: str = ""
    data: Optional[dict] = None
    timestamp: int = field(default_factory=now_ms)

    def __post_init__(self):
        if self.data is not None:
            object.__setattr__(self, "data", copy.deepcopy(self.data))

    def to_dict(self) -> dict:
        out = {
            "type": self.kind,
            "category": self.category,
            "message": self.message,
            "timestamp": self.timestamp,
        }
        if self.data is not None:
            out["data"] = copy.deepcopy(self.data)
        return out

    @classmethod
    def from_dict(cls, raw: dict) -> "Breadcrumb":
        return cls(
            kind=raw.get("type", ""),
            message=raw.get("message", ""),
            category=raw.get("category", ""),
            data=raw.get("data"),
            timestamp=raw.get("timestamp", 0),
        )


@dataclass(frozen=True)
class ErrorEvent:
    kind: str
    message: str
    url: str
    timestamp: int = field(default_factory=now_ms)
    stack: Optional[str] = None
    filename: Optional[str] = None
    lineno: Optional[int] = None
    colno: Optional[int] = None
    breadcrumbs: tuple = ()

    def to_dict(self) -> dict:
        out = {
            "type": self.kind,
            "message": self.message,
            "url": self.url,
            "timestamp": self.timestamp,
            "breadcrumbs": [crumb.to_dict() for crumb in self.breadcrumbs],
        }
        for key in ("stack", "filename", "lineno", "colno"):
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        return out

    @classmethod
    def from_dict(cls, raw: dict) -> "ErrorEvent":
        return cls(
            kind=raw["type"],
            message=raw.get("message") or "",
            url=raw["url"],
            timestamp=raw["timestamp"],
            stack=raw.get("stack"),
            filename=raw.get("filename"),
            lineno=raw.get("lineno"),
            colno=raw.get("colno"),
            breadcrumbs=tuple(
                Breadcrumb.from_dict(crumb) for crumb in raw.get("breadcrumbs") or []
            ),
        )


@dataclass(frozen=True)
class PerformanceEvent:
    metrics: dict
    url: str
    timestamp: int = field(default_factory=now_ms)

    def __post_init__(self):
        object.__setattr__(self, "metrics", dict(self.metrics))

    def to_dict(self) -> dict:
        return {
            "metrics": dict(self.metrics),
            "url": self.url,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, raw: dict) -> "PerformanceEvent":
        return cls(metrics=raw["metrics"], url=raw["url"], timestamp=raw["timestamp"])


RawEvent = Union[ErrorEvent, PerformanceEvent]


def event_to_dict(event: RawEvent) -> dict:
    """Convert an event model to its JSON wire shape."""
    return event.to_dict()


def event_from_dict(raw: dict) -> RawEvent:
    """Build an event model from its wire shape.

    Objects carrying ``type`` are error events; objects carrying ``metrics``
    without ``type`` are performance events.
    """
    if "type" in raw:
        return ErrorEvent.from_dict(raw)
    if "metrics" in raw:
        return PerformanceEvent.from_dict(raw)
    raise ValueError("Event is neither an error nor a performance event")


def is_error_payload(raw: dict) -> bool:
    return isinstance(raw, dict) and "type" in raw


def is_performance_payload(raw: dict) -> bool:
    return isinstance(raw, dict) and "metrics" in raw and "type" not in raw


def build_payload(project_id: str, events: list[dict]) -> dict:
    """Wrap serialized events in the ``/report`` request body."""
    return {"projectId": project_id, "events": events}
