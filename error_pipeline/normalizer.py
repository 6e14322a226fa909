"""Turns raw capture payloads into canonical ErrorEvents.

The normalizer holds only immutable configuration, so one instance can be
shared by every capture point and called from any thread.
"""

import hashlib
import json
import math
import re
import time
from typing import Mapping

from error_pipeline.config import PipelineConfig
from error_pipeline.errors import MalformedCaptureError
from error_pipeline.models import ErrorEvent, Severity, Source, new_id

FATAL_BY_DEFAULT = frozenset({Source.NATIVE_EXCEPTION, Source.NATIVE_SIGNAL})

# Variable parts of messages, stripped before hashing
_MESSAGE_RULES: list[tuple[re.Pattern, str]] = [
    (re.compile(r"\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}[\.\d]*Z?"), "<TS>"),
    (re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE), "<UUID>"),
    (re.compile(r"0x[0-9a-f]+", re.IGNORECASE), "<ADDR>"),
    (re.compile(r"\"[^\"]*\"|'[^']*'"), "<STR>"),
    (re.compile(r"\b\d+(\.\d+)?\b"), "<N>"),
]

_FRAME_RULES: list[tuple[re.Pattern, str]] = [
    (re.compile(r"0x[0-9a-f]+", re.IGNORECASE), "<ADDR>"),
    (re.compile(r"\s+"), " "),
]


def normalize_message(message: str) -> str:
    """Reduce a message to its shape so repeated failures hash alike."""
    result = message.strip()
    for pattern, replacement in _MESSAGE_RULES:
        result = pattern.sub(replacement, result)
    return result


def split_frames(stack) -> list[str]:
    """Accept a stack as text or a list of frames; drop blank lines."""
    if stack is None or stack == "":
        return []
    if isinstance(stack, str):
        lines = stack.splitlines()
    elif isinstance(stack, (list, tuple)):
        lines = [str(frame) for frame in stack]
    else:
        raise MalformedCaptureError(
            f"stack must be text or a list of frames, got {type(stack).__name__}"
        )
    return [line.strip() for line in lines if line.strip()]


def compute_fingerprint(source: Source, message: str, frames: list[str], top_n: int = 5) -> str:
    """Stable grouping key from (source, message shape, top-N frames)."""
    normalized_frames = []
    for frame in frames[:top_n]:
        for pattern, replacement in _FRAME_RULES:
            frame = pattern.sub(replacement, frame)
        normalized_frames.append(frame)
    raw = "\n".join([source.value, normalize_message(message), *normalized_frames])
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()


def _context_size(context: dict) -> int:
    return len(json.dumps(context, sort_keys=True, separators=(",", ":")).encode("utf-8"))


def _scalar(value):
    if isinstance(value, (str, bool, int, float)):
        return value
    if value is None:
        return ""
    return str(value)


class EventNormalizer:
    """Builds ErrorEvents from raw payloads: ``{source, message, stack, severity, context, ...}``."""

    def __init__(self, config: PipelineConfig, session_id: str, time_func=None):
        self._config = config
        self._session_id = session_id
        self._time_func = time_func or time.time

    @property
    def session_id(self) -> str:
        return self._session_id

    def normalize(self, raw: Mapping) -> ErrorEvent:
        if not isinstance(raw, Mapping):
            raise MalformedCaptureError(f"payload must be a mapping, got {type(raw).__name__}")

        source = self._parse_source(raw.get("source"))
        frames = split_frames(raw.get("stack_trace") or raw.get("stack"))
        message = str(raw.get("message") or "").strip()
        if not message and not frames:
            raise MalformedCaptureError("payload has neither message nor stack trace")
        if not message:
            message = frames[0]
        message = message[: self._config.max_message_length]

        frames = frames[: self._config.max_stack_frames]
        severity = self._parse_severity(raw.get("severity"), source)
        occurred_at = self._parse_timestamp(raw.get("occurred_at"))

        return ErrorEvent(
            id=str(raw.get("id") or new_id()),
            source=source,
            fingerprint=compute_fingerprint(
                source, message, frames, self._config.fingerprint_frames
            ),
            message=message,
            stack_trace="\n".join(frames),
            severity=severity,
            context=self.truncate_context(raw.get("context") or {}),
            occurred_at=occurred_at,
            session_id=str(raw.get("session_id") or self._session_id),
            error_type=str(raw.get("error_type") or ""),
        )

    def truncate_context(self, context: Mapping) -> dict:
        """Keep context under the byte budget, dropping lowest-priority keys first.

        Priority keys keep their configured order; every other key ranks
        below them in sorted order, so the drop order is deterministic.
        """
        if not isinstance(context, Mapping):
            raise MalformedCaptureError("context must be a mapping")
        result = {str(k): _scalar(v) for k, v in context.items()}
        if _context_size(result) <= self._config.max_context_bytes:
            return result

        priority = [k for k in self._config.context_priority if k in result]
        others = sorted(k for k in result if k not in priority)
        drop_order = list(reversed(priority + others))
        for key in drop_order:
            del result[key]
            if _context_size(result) <= self._config.max_context_bytes:
                break
        return result

    @staticmethod
    def _parse_source(value) -> Source:
        if isinstance(value, Source):
            return value
        if value is None:
            raise MalformedCaptureError("payload has no source tag")
        try:
            return Source(str(value))
        except ValueError:
            raise MalformedCaptureError(f"unknown source {value!r}") from None

    @staticmethod
    def _parse_severity(value, source: Source) -> Severity:
        if isinstance(value, Severity):
            return value
        if value is None:
            return Severity.FATAL if source in FATAL_BY_DEFAULT else Severity.RECOVERABLE
        try:
            return Severity(str(value).lower())
        except ValueError:
            raise MalformedCaptureError(f"unknown severity {value!r}") from None

    def _parse_timestamp(self, value) -> float:
        if value is None:
            return self._time_func()
        # bool is an int subclass
        if isinstance(value, bool):
            raise MalformedCaptureError(f"occurred_at must be epoch seconds, got {value!r}")
        try:
            timestamp = float(value)
        except (TypeError, ValueError):
            raise MalformedCaptureError(f"occurred_at must be epoch seconds, got {value!r}") from None
        if not math.isfinite(timestamp):
            raise MalformedCaptureError(f"occurred_at is not finite: {value!r}")
        return timestamp
