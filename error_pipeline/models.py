"""Pipeline records: captured events, aggregate reports, queue entries and alerts."""

import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional


class Source(Enum):
    SCRIPT_GLOBAL = "scripting-runtime-global"
    SCRIPT_BOUNDARY = "scripting-runtime-boundary"
    REJECTED_ASYNC = "rejected-async-operation"
    BRIDGE_CALL = "bridge-call"
    NATIVE_EXCEPTION = "native-uncaught-exception"
    NATIVE_SIGNAL = "native-signal"


class Severity(Enum):
    FATAL = "fatal"
    RECOVERABLE = "recoverable"


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class ErrorEvent:
    """A captured failure. Immutable once created."""

    id: str
    source: Source
    fingerprint: str
    message: str
    stack_trace: str
    severity: Severity
    context: dict
    occurred_at: float
    session_id: str
    error_type: str = ""

    @property
    def fatal(self) -> bool:
        return self.severity is Severity.FATAL

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source": self.source.value,
            "fingerprint": self.fingerprint,
            "message": self.message,
            "stackTrace": self.stack_trace,
            "severity": self.severity.value,
            "context": dict(self.context),
            "occurredAt": self.occurred_at,
            "sessionId": self.session_id,
            "errorType": self.error_type,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ErrorEvent":
        return cls(
            id=data["id"],
            source=Source(data["source"]),
            fingerprint=data["fingerprint"],
            message=data.get("message", ""),
            stack_trace=data.get("stackTrace", ""),
            severity=Severity(data["severity"]),
            context=dict(data.get("context") or {}),
            occurred_at=float(data["occurredAt"]),
            session_id=data.get("sessionId", ""),
            error_type=data.get("errorType", ""),
        )


@dataclass
class AggregateRecord:
    """Open aggregation bucket for one fingerprint inside one window."""

    fingerprint: str
    sample_event: ErrorEvent
    window_start: float
    count: int = 1
    first_seen_at: float = 0.0
    last_seen_at: float = 0.0

    def __post_init__(self):
        if not self.first_seen_at:
            self.first_seen_at = self.sample_event.occurred_at
        if not self.last_seen_at:
            self.last_seen_at = self.sample_event.occurred_at

    def add(self, event: ErrorEvent):
        self.count += 1
        self.last_seen_at = max(self.last_seen_at, event.occurred_at)

    def to_report(self) -> "Report":
        return Report(
            fingerprint=self.fingerprint,
            count=self.count,
            first_seen_at=self.first_seen_at,
            last_seen_at=self.last_seen_at,
            sample_event=self.sample_event,
        )


@dataclass(frozen=True)
class Report:
    """A closed aggregate (or a single fatal event) on its way to the collector."""

    fingerprint: str
    count: int
    first_seen_at: float
    last_seen_at: float
    sample_event: ErrorEvent
    # set by the rate governor when a fatal report is admitted past the global cap
    displace_non_fatal: bool = False

    @property
    def fatal(self) -> bool:
        return self.sample_event.fatal

    @classmethod
    def from_event(cls, event: ErrorEvent) -> "Report":
        return cls(
            fingerprint=event.fingerprint,
            count=1,
            first_seen_at=event.occurred_at,
            last_seen_at=event.occurred_at,
            sample_event=event,
        )

    def merged(self, other: "Report") -> "Report":
        """Fold a suppressed carry-over into this report, keeping the earliest sample."""
        earliest = other if other.first_seen_at < self.first_seen_at else self
        return replace(
            self,
            count=self.count + other.count,
            first_seen_at=min(self.first_seen_at, other.first_seen_at),
            last_seen_at=max(self.last_seen_at, other.last_seen_at),
            sample_event=earliest.sample_event,
        )

    def to_dict(self) -> dict:
        return {
            "fingerprint": self.fingerprint,
            "count": self.count,
            "firstSeenAt": self.first_seen_at,
            "lastSeenAt": self.last_seen_at,
            "sampleEvent": self.sample_event.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Report":
        return cls(
            fingerprint=data["fingerprint"],
            count=int(data["count"]),
            first_seen_at=float(data["firstSeenAt"]),
            last_seen_at=float(data["lastSeenAt"]),
            sample_event=ErrorEvent.from_dict(data["sampleEvent"]),
        )


@dataclass(frozen=True)
class QueueEntry:
    """Durable unit owned by the queue: a report plus delivery metadata."""

    id: str
    report: Report
    enqueued_at: float
    seq: int
    attempts: int = 0
    next_retry_at: float = 0.0
    last_error: str = ""

    @property
    def fatal(self) -> bool:
        return self.report.fatal

    @property
    def fingerprint(self) -> str:
        return self.report.fingerprint

    def to_wire(self) -> dict:
        """Collector representation: the report plus the entry id used for acknowledgment."""
        payload = self.report.to_dict()
        payload["id"] = self.id
        return payload

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "seq": self.seq,
            "enqueuedAt": self.enqueued_at,
            "attempts": self.attempts,
            "nextRetryAt": self.next_retry_at,
            "lastError": self.last_error,
            "report": self.report.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "QueueEntry":
        return cls(
            id=data["id"],
            report=Report.from_dict(data["report"]),
            enqueued_at=float(data["enqueuedAt"]),
            seq=int(data["seq"]),
            attempts=int(data.get("attempts", 0)),
            next_retry_at=float(data.get("nextRetryAt", 0.0)),
            last_error=data.get("lastError", ""),
        )


@dataclass(frozen=True)
class ThresholdConfig:
    """``count``: occurrences per period; ``session_ratio``: fraction of session starts."""

    kind: str = "count"
    value: float = 50.0
    period: float = 3600.0


@dataclass
class AlertState:
    threshold: ThresholdConfig
    window_count: int = 0
    last_alerted_at: Optional[float] = None
    # (observed_at, count) pairs inside the evaluation period
    observations: list = field(default_factory=list)
    sessions: set = field(default_factory=set)


@dataclass(frozen=True)
class AlertIntent:
    fingerprint: str
    rate: float
    threshold: float
    sample_event: Optional[ErrorEvent]
    kind: str = "count"
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "fingerprint": self.fingerprint,
            "rate": self.rate,
            "threshold": self.threshold,
            "kind": self.kind,
            "sampleEvent": self.sample_event.to_dict() if self.sample_event else None,
            "createdAt": self.created_at,
        }
