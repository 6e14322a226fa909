import pytest

from error_pipeline.config import PipelineConfig
from error_pipeline.models import ErrorEvent, Report, Severity, Source, new_id
from error_pipeline.normalizer import compute_fingerprint

START = 1_700_000_000.0


class FakeClock:
    def __init__(self, start: float = START):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config(tmp_path):
    return PipelineConfig(queue_dir=str(tmp_path / "queue"))


@pytest.fixture
def make_event():
    """Factory for ErrorEvents; the fingerprint follows source and message."""

    def _make(
        message="TypeError: x is undefined",
        source=Source.SCRIPT_GLOBAL,
        severity=Severity.RECOVERABLE,
        occurred_at=START,
        session_id="session-1",
        stack=("at render (app.js:10:5)",),
    ):
        return ErrorEvent(
            id=new_id(),
            source=source,
            fingerprint=compute_fingerprint(source, message, list(stack)),
            message=message,
            stack_trace="\n".join(stack),
            severity=severity,
            context={"platform": "ios"},
            occurred_at=occurred_at,
            session_id=session_id,
        )

    return _make


@pytest.fixture
def make_report(make_event):
    def _make(message="TypeError: x is undefined", count=1, severity=Severity.RECOVERABLE,
              occurred_at=START):
        event = make_event(message=message, severity=severity, occurred_at=occurred_at)
        return Report(
            fingerprint=event.fingerprint,
            count=count,
            first_seen_at=occurred_at,
            last_seen_at=occurred_at,
            sample_event=event,
        )

    return _make
