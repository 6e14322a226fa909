"""Reference collector: a Flask app that accepts report batches.

Each report is validated on its own, so one bad report never sinks the
rest of the batch; the response carries a status per report id.
"""

import threading
from collections import defaultdict

import jsonschema
from flask import Flask, jsonify, request

from error_pipeline.alerting import AlertEvaluator, LoggingAlertHandler
from error_pipeline.models import ErrorEvent, ThresholdConfig
from error_pipeline.transport import ACCEPTED, REJECTED

_EVENT_SCHEMA = {
    "type": "object",
    "required": ["id", "source", "fingerprint", "severity", "occurredAt"],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "source": {
            "enum": [
                "scripting-runtime-global",
                "scripting-runtime-boundary",
                "rejected-async-operation",
                "bridge-call",
                "native-uncaught-exception",
                "native-signal",
            ]
        },
        "fingerprint": {"type": "string", "minLength": 1},
        "message": {"type": "string"},
        "stackTrace": {"type": "string"},
        "severity": {"enum": ["fatal", "recoverable"]},
        "context": {
            "type": "object",
            "additionalProperties": {"type": ["string", "number", "boolean"]},
        },
        "occurredAt": {"type": "number"},
        "sessionId": {"type": "string"},
        "errorType": {"type": "string"},
    },
}

REPORT_SCHEMA = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["id", "fingerprint", "count", "firstSeenAt", "lastSeenAt", "sampleEvent"],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "fingerprint": {"type": "string", "minLength": 1},
        "count": {"type": "integer", "minimum": 1},
        "firstSeenAt": {"type": "number"},
        "lastSeenAt": {"type": "number"},
        "sampleEvent": _EVENT_SCHEMA,
    },
}


class ReportStore:
    """Accepted reports, idempotent by report id."""

    def __init__(self):
        self._reports: dict[str, dict] = {}
        self._totals: dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    def add(self, report: dict) -> bool:
        """Store a report; returns False if the id was already accepted."""
        with self._lock:
            if report["id"] in self._reports:
                return False
            self._reports[report["id"]] = report
            self._totals[report["fingerprint"]] += report["count"]
            return True

    def fingerprints(self) -> dict[str, int]:
        with self._lock:
            return dict(self._totals)

    @property
    def report_count(self) -> int:
        with self._lock:
            return len(self._reports)


def create_app(store: ReportStore | None = None, evaluator: AlertEvaluator | None = None):
    """Flask application factory."""
    app = Flask(__name__)
    store = store or ReportStore()
    if evaluator is None:
        evaluator = AlertEvaluator(ThresholdConfig())
        evaluator.add_handler(LoggingAlertHandler())
    validator = jsonschema.Draft202012Validator(REPORT_SCHEMA)

    app.config["components"] = {"store": store, "evaluator": evaluator}

    @app.route("/health")
    def health():
        return jsonify({"status": "healthy", "reports": store.report_count})

    @app.route("/v1/reports", methods=["POST"])
    def ingest_reports():
        body = request.get_json(silent=True)
        if not isinstance(body, dict) or not isinstance(body.get("reports"), list):
            return jsonify({"error": "body must be an object with a 'reports' list"}), 400

        results = []
        for report in body["reports"]:
            report_id = report.get("id") if isinstance(report, dict) else None
            errors = [e.message for e in validator.iter_errors(report)]
            if errors:
                results.append({"id": report_id, "status": REJECTED, "errors": errors})
                continue
            if store.add(report):
                event = ErrorEvent.from_dict(report["sampleEvent"])
                evaluator.record_session_start(event.session_id)
                window = max(report["lastSeenAt"] - report["firstSeenAt"], 1.0)
                evaluator.observe(report["fingerprint"], report["count"], window, event)
            results.append({"id": report_id, "status": ACCEPTED})

        return jsonify({"results": results})

    @app.route("/v1/fingerprints")
    def fingerprints():
        return jsonify(store.fingerprints())

    return app
