"""Error fingerprinting: message normalization, stack signatures, grouping.

An error report carries volatile free text (ids, emails, hashed bundle
names, timestamps).  The fingerprint is derived from a normalized shape of
the report so that the same bug reported from many sessions converges to a
single identity while distinct bugs stay apart:

    sha256("kind::normalized_message::stack_signature::origin_file")[:16]

Nothing in this module raises for odd input; empty messages normalize to
``""`` and stackless errors get the ``"unknown"`` signature.
"""

import hashlib
import re
from dataclasses import dataclass
from typing import Optional

from webmonitor.models import ErrorEvent

FINGERPRINT_LENGTH = 16
UNKNOWN_SIGNATURE = "unknown"
MAX_SIGNATURE_FRAMES = 3

# Applied in order: specific shapes before general ones.
_SUBSTITUTIONS = [
    (
        re.compile(
            r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}",
            re.IGNORECASE,
        ),
        "<uuid>",
    ),
    (re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}"), "<email>"),
    (re.compile(r"\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b"), "<ip>"),
    (
        re.compile(r"([a-zA-Z0-9_-]+)-[a-f0-9]{6,}(\.[a-z]+)", re.IGNORECASE),
        r"\1-<hash>\2",
    ),
    (re.compile(r"\b1[0-9]{12}\b"), "<timestamp>"),
    (re.compile(r"\b\d{4,}\b"), "<id>"),
    (re.compile(r"([?&][a-zA-Z_]+)=[^&\s]+"), r"\1=<value>"),
    (re.compile(r'"[^"]{50,}"'), '"<data>"'),
    (re.compile(r"'[^']{50,}'"), "'<data>'"),
]

# "    at fn (file:line:col)" / "    at file:line:col"
_AT_FRAME = re.compile(r"^\s*at\s+(?:(.+?)\s+\()?(.+?):(\d+):(\d+)\)?$")
# "fn@file:line:col" / "@file:line:col"
_AT_SIGN_FRAME = re.compile(r"^\s*(.*?)@(.+?):(\d+):(\d+)$")

_VENDOR_MARKERS = ("node_modules", "webpack")
_HASH_DASH = re.compile(r"-[a-f0-9]{6,}\.", re.IGNORECASE)
_HASH_DOT = re.compile(r"\.[a-f0-9]{6,}\.", re.IGNORECASE)


@dataclass(frozen=True)
class StackFrame:
    function: Optional[str]
    file: str
    line: int
    column: int


@dataclass(frozen=True)
class FingerprintResult:
    fingerprint: str
    normalized_message: str
    stack_signature: str


def _substitute(message: str) -> str:
    for pattern, replacement in _SUBSTITUTIONS:
        message = pattern.sub(replacement, message)
    return message.strip()


def normalize_message(message: Optional[str]) -> str:
    """Replace dynamic fragments of an error message with placeholders.

    A replacement can expose a new match for an earlier pattern (a collapsed
    quoted literal may leave a longer quoted span around it), so passes
    repeat until the text is stable.  Every change folds original characters
    into a placeholder that later passes keep or absorb, which bounds the loop.
    """
    if not message:
        return ""

    normalized = message
    while True:
        nxt = _substitute(normalized)
        if nxt == normalized:
            return normalized
        normalized = nxt


def parse_stack_line(line: str) -> Optional[StackFrame]:
    """Parse one stack line in either supported notation, or return None."""
    match = _AT_FRAME.match(line)
    if match is None:
        match = _AT_SIGN_FRAME.match(line)
    if match is None:
        return None

    function, file, lineno, colno = match.groups()
    return StackFrame(
        function=function or None,
        file=file,
        line=int(lineno),
        column=int(colno),
    )


def parse_stack(stack: Optional[str]) -> list[StackFrame]:
    if not stack:
        return []
    frames = []
    for line in stack.splitlines():
        frame = parse_stack_line(line)
        if frame is not None:
            frames.append(frame)
    return frames


def normalize_filename(filename: str) -> str:
    """Drop query string and content hash, keep the final path segment."""
    normalized = filename.split("?", 1)[0]
    normalized = _HASH_DASH.sub(".", normalized)
    normalized = _HASH_DOT.sub(".", normalized)
    return normalized.rsplit("/", 1)[-1] or normalized


def _is_relevant(frame: StackFrame) -> bool:
    if any(marker in frame.file for marker in _VENDOR_MARKERS):
        return False
    if frame.file.startswith("native") or "<anonymous>" in frame.file:
        return False
    return True


def extract_stack_signature(stack: Optional[str]) -> str:
    """Build ``fn@file > fn@file > fn@file`` from the top in-app frames."""
    frames = [frame for frame in parse_stack(stack) if _is_relevant(frame)]

    parts = []
    for frame in frames[:MAX_SIGNATURE_FRAMES]:
        func = frame.function or "anonymous"
        parts.append(f"{func}@{normalize_filename(frame.file)}")

    return " > ".join(parts) or UNKNOWN_SIGNATURE


def generate_fingerprint(event: ErrorEvent) -> FingerprintResult:
    normalized = normalize_message(event.message)
    signature = extract_stack_signature(event.stack)
    origin = normalize_filename(event.filename) if event.filename else ""

    material = "::".join([event.kind or "", normalized, signature, origin])
    digest = hashlib.sha256(material.encode("utf-8")).hexdigest()

    return FingerprintResult(
        fingerprint=digest[:FINGERPRINT_LENGTH],
        normalized_message=normalized,
        stack_signature=signature,
    )


def _token_similarity(first: str, second: str) -> float:
    """Jaccard similarity of whitespace-separated lowercase tokens."""
    if first == second:
        return 1.0
    if not first or not second:
        return 0.0

    tokens_a = set(first.lower().split())
    tokens_b = set(second.lower().split())
    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


def calculate_similarity(first: ErrorEvent, second: ErrorEvent) -> float:
    """Advisory 0..1 similarity score; grouping never depends on it.

    Weights: kind 0.3, normalized message 0.4, stack signature 0.3.  The
    stack term only counts when both events carry a stack.
    """
    score = 0.0
    weight = 0.0

    if first.kind == second.kind:
        score += 0.3
    weight += 0.3

    score += 0.4 * _token_similarity(
        normalize_message(first.message), normalize_message(second.message)
    )
    weight += 0.4

    if first.stack and second.stack:
        score += 0.3 * _token_similarity(
            extract_stack_signature(first.stack),
            extract_stack_signature(second.stack),
        )
        weight += 0.3

    return score / weight


def group_errors(events: list[ErrorEvent]) -> list[dict]:
    """Group events in memory by fingerprint, largest group first."""
    groups: dict[str, dict] = {}

    for event in events:
        result = generate_fingerprint(event)
        group = groups.get(result.fingerprint)
        if group is None:
            groups[result.fingerprint] = {
                "fingerprint": result.fingerprint,
                "type": event.kind,
                "message": event.message,
                "normalized_message": result.normalized_message,
                "count": 1,
                "first_seen": event.timestamp,
                "last_seen": event.timestamp,
                "affected_urls": [event.url],
            }
            continue

        group["count"] += 1
        group["first_seen"] = min(group["first_seen"], event.timestamp)
        group["last_seen"] = max(group["last_seen"], event.timestamp)
        if event.url not in group["affected_urls"]:
            group["affected_urls"].append(event.url)

    return sorted(groups.values(), key=lambda g: g["count"], reverse=True)
