"""Tests for the event normalizer."""

import json
import threading

import pytest

from error_pipeline.config import PipelineConfig
from error_pipeline.errors import MalformedCaptureError
from error_pipeline.models import Severity, Source
from error_pipeline.normalizer import (
    EventNormalizer,
    compute_fingerprint,
    normalize_message,
    split_frames,
)


@pytest.fixture
def normalizer(clock):
    return EventNormalizer(PipelineConfig(), session_id="session-1", time_func=clock)


class TestNormalize:
    def test_builds_event(self, normalizer, clock):
        event = normalizer.normalize({
            "source": "bridge-call",
            "message": "CameraModule.capture failed",
            "stack_trace": "at capture (native)\nat takePhoto (app.js:3:1)",
            "context": {"platform": "android", "build": 412},
        })
        assert event.source is Source.BRIDGE_CALL
        assert event.severity is Severity.RECOVERABLE
        assert event.message == "CameraModule.capture failed"
        assert event.stack_trace.splitlines() == ["at capture (native)", "at takePhoto (app.js:3:1)"]
        assert event.context == {"platform": "android", "build": 412}
        assert event.occurred_at == clock.now
        assert event.session_id == "session-1"
        assert len(event.id) == 32

    def test_accepts_enum_source_and_frame_list(self, normalizer):
        event = normalizer.normalize({
            "source": Source.REJECTED_ASYNC,
            "message": "promise rejected",
            "stack": ["at a (x.js:1:1)", "", "at b (x.js:2:2)"],
        })
        assert event.source is Source.REJECTED_ASYNC
        assert event.stack_trace == "at a (x.js:1:1)\nat b (x.js:2:2)"

    def test_native_sources_default_to_fatal(self, normalizer):
        for source in ("native-signal", "native-uncaught-exception"):
            event = normalizer.normalize({"source": source, "message": "crash"})
            assert event.severity is Severity.FATAL

    def test_explicit_severity_wins(self, normalizer):
        event = normalizer.normalize(
            {"source": "native-signal", "message": "SIGPIPE", "severity": "recoverable"}
        )
        assert event.severity is Severity.RECOVERABLE

    def test_message_falls_back_to_first_frame(self, normalizer):
        event = normalizer.normalize({"source": "native-signal", "stack": "frame0\nframe1"})
        assert event.message == "frame0"

    def test_missing_stack_is_allowed(self, normalizer):
        event = normalizer.normalize({"source": "bridge-call", "message": "only text"})
        assert event.stack_trace == ""

    def test_stack_truncated_to_frame_limit(self, clock):
        normalizer = EventNormalizer(PipelineConfig(max_stack_frames=3), "s", clock)
        event = normalizer.normalize(
            {"source": "scripting-runtime-global", "message": "x", "stack": [f"f{i}" for i in range(10)]}
        )
        assert event.stack_trace.splitlines() == ["f0", "f1", "f2"]

    def test_preserves_supplied_timestamp_and_session(self, normalizer):
        event = normalizer.normalize({
            "source": "native-signal",
            "message": "crash",
            "occurred_at": 123.5,
            "session_id": "previous-run",
        })
        assert event.occurred_at == 123.5
        assert event.session_id == "previous-run"


class TestMalformed:
    @pytest.mark.parametrize("raw", [
        {"message": "no source"},
        {"source": "scripting-runtime-global"},
        {"source": "scripting-runtime-global", "message": "   ", "stack": []},
        {"source": "martian", "message": "x"},
        {"source": "bridge-call", "message": "x", "severity": "catastrophic"},
        {"source": "bridge-call", "message": "boom", "occurred_at": "yesterday"},
        {"source": "bridge-call", "message": "boom", "occurred_at": True},
        {"source": "bridge-call", "message": "boom", "occurred_at": float("nan")},
        {"source": "bridge-call", "message": "boom", "occurred_at": float("inf")},
        {"source": "bridge-call", "message": "boom", "occurred_at": {"ts": 1}},
        {"source": "bridge-call", "message": "boom", "stack": 5},
        {"source": "bridge-call", "message": "boom", "stack": {"frame": "a"}},
        {"source": "bridge-call", "message": "boom", "context": 5},
        {"source": "bridge-call", "message": "boom", "context": "platform=ios"},
        "not a mapping",
    ])
    def test_rejected(self, normalizer, raw):
        with pytest.raises(MalformedCaptureError):
            normalizer.normalize(raw)

    def test_numeric_string_timestamp_accepted(self, normalizer):
        event = normalizer.normalize(
            {"source": "bridge-call", "message": "boom", "occurred_at": "1700000000.5"}
        )
        assert event.occurred_at == 1700000000.5


class TestContextTruncation:
    def test_under_budget_untouched(self, normalizer):
        ctx = {"platform": "ios", "user_id": "u1"}
        assert normalizer.truncate_context(ctx) == ctx

    def test_drops_non_priority_keys_first(self, clock):
        cfg = PipelineConfig(max_context_bytes=120, context_priority=("platform", "app_version"))
        normalizer = EventNormalizer(cfg, "s", clock)
        ctx = {
            "platform": "android",
            "app_version": "4.2.0",
            "tag_a": "x" * 40,
            "tag_b": "y" * 40,
        }
        result = normalizer.truncate_context(ctx)
        assert result["platform"] == "android"
        assert result["app_version"] == "4.2.0"
        assert "tag_b" not in result
        assert len(json.dumps(result, sort_keys=True, separators=(",", ":"))) <= 120

    def test_drops_lowest_priority_key_last_resort(self, clock):
        cfg = PipelineConfig(max_context_bytes=30, context_priority=("platform", "app_version"))
        normalizer = EventNormalizer(cfg, "s", clock)
        result = normalizer.truncate_context({"platform": "android", "app_version": "4.2.0-beta"})
        assert result == {"platform": "android"}

    def test_deterministic(self, clock):
        cfg = PipelineConfig(max_context_bytes=60)
        normalizer = EventNormalizer(cfg, "s", clock)
        ctx = {f"k{i}": "v" * 10 for i in range(10)}
        assert normalizer.truncate_context(ctx) == normalizer.truncate_context(dict(reversed(list(ctx.items()))))

    def test_non_scalar_values_stringified(self, normalizer):
        result = normalizer.truncate_context({"tags": ["a", "b"], "missing": None})
        assert result == {"tags": "['a', 'b']", "missing": ""}


class TestFingerprint:
    def test_ignores_variable_parts_of_message(self):
        a = compute_fingerprint(Source.SCRIPT_GLOBAL, "Request 1234 failed at 2024-01-15T10:30:00Z", ["f"])
        b = compute_fingerprint(Source.SCRIPT_GLOBAL, "Request 98 failed at 2025-06-01T00:00:01Z", ["f"])
        assert a == b

    def test_depends_on_source(self):
        a = compute_fingerprint(Source.SCRIPT_GLOBAL, "boom", ["f"])
        b = compute_fingerprint(Source.BRIDGE_CALL, "boom", ["f"])
        assert a != b

    def test_only_top_frames_count(self):
        a = compute_fingerprint(Source.SCRIPT_GLOBAL, "boom", ["f1", "f2", "deep-a"], top_n=2)
        b = compute_fingerprint(Source.SCRIPT_GLOBAL, "boom", ["f1", "f2", "deep-b"], top_n=2)
        c = compute_fingerprint(Source.SCRIPT_GLOBAL, "boom", ["f1", "other"], top_n=2)
        assert a == b
        assert a != c

    def test_memory_addresses_ignored_in_frames(self):
        a = compute_fingerprint(Source.NATIVE_SIGNAL, "SIGSEGV", ["libapp.so 0x7f3a2c10 render"])
        b = compute_fingerprint(Source.NATIVE_SIGNAL, "SIGSEGV", ["libapp.so 0x55aa0000 render"])
        assert a == b

    def test_independent_of_time_session_and_context(self, clock):
        raw = {"source": "scripting-runtime-global", "message": "boom", "stack": ["f"]}
        first = EventNormalizer(PipelineConfig(), "s1", clock).normalize(
            {**raw, "context": {"user_id": "a"}}
        )
        clock.advance(3600)
        second = EventNormalizer(PipelineConfig(), "s2", clock).normalize(
            {**raw, "context": {"user_id": "b"}}
        )
        assert first.fingerprint == second.fingerprint

    def test_normalize_message_shapes(self):
        assert normalize_message("id 42 at 0xdeadbeef said 'hi'") == "id <N> at <ADDR> said <STR>"

    def test_split_frames_handles_empty(self):
        assert split_frames(None) == []
        assert split_frames("") == []
        assert split_frames([]) == []

    def test_split_frames_rejects_non_sequences(self):
        with pytest.raises(MalformedCaptureError):
            split_frames(5)


class TestConcurrency:
    def test_shared_normalizer_across_threads(self, normalizer):
        results = []
        errors = []

        def worker(n):
            for i in range(100):
                try:
                    results.append(normalizer.normalize(
                        {"source": "scripting-runtime-global", "message": f"thread {n} item {i}"}
                    ))
                except Exception as e:
                    errors.append(e)

        threads = [threading.Thread(target=worker, args=(t,)) for t in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(results) == 500
        assert len({e.fingerprint for e in results}) == 1
        assert len({e.id for e in results}) == 500
