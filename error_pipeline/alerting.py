"""Turns aggregate counts into at most one alert per cooldown."""

import logging
import threading
import time
from typing import Protocol, runtime_checkable

import httpx

from error_pipeline.models import AlertIntent, AlertState, ErrorEvent, ThresholdConfig

logger = logging.getLogger(__name__)


@runtime_checkable
class AlertHandler(Protocol):
    def handle(self, intent: AlertIntent) -> None: ...


class LoggingAlertHandler:
    def handle(self, intent: AlertIntent) -> None:
        message = intent.sample_event.message if intent.sample_event else ""
        logger.warning(
            "[ALERT] fingerprint=%s rate=%.2f threshold=%.2f (%s) %s",
            intent.fingerprint[:12], intent.rate, intent.threshold, intent.kind, message,
        )


class WebhookAlertHandler:
    """POSTs the intent as JSON. Delivery failures are logged, never retried."""

    def __init__(self, url: str, timeout: float = 5.0, client: httpx.Client | None = None):
        self._url = url
        self._client = client or httpx.Client(timeout=timeout)

    def handle(self, intent: AlertIntent) -> None:
        try:
            response = self._client.post(self._url, json=intent.to_dict())
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Alert webhook delivery failed for %s: %s", intent.fingerprint[:12], exc)


class AlertEvaluator:
    """Per-fingerprint threshold check over a sliding evaluation period.

    ``count`` thresholds compare occurrences inside the period (e.g. 50
    per hour); ``session_ratio`` thresholds compare the share of recorded
    session starts that hit the fingerprint (e.g. 0.05).
    """

    def __init__(
        self,
        default_threshold: ThresholdConfig | None = None,
        thresholds: dict | None = None,
        cooldown_seconds: float = 1800.0,
        time_func=None,
    ):
        self._default = default_threshold or ThresholdConfig()
        self._thresholds: dict[str, ThresholdConfig] = dict(thresholds or {})
        self._cooldown_seconds = cooldown_seconds
        self._time_func = time_func or time.time
        self._states: dict[str, AlertState] = {}
        self._session_starts: set[str] = set()
        self._handlers: list = []
        self._active_alerts: list[AlertIntent] = []
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config, time_func=None) -> "AlertEvaluator":
        default = ThresholdConfig(
            kind=config.alert_kind, value=config.alert_threshold, period=config.alert_period
        )
        overrides = {
            fingerprint: ThresholdConfig(
                kind=spec.get("kind", default.kind),
                value=float(spec.get("value", default.value)),
                period=float(spec.get("period_seconds", default.period)),
            )
            for fingerprint, spec in config.alert_thresholds.items()
        }
        evaluator = cls(default, overrides, config.alert_cooldown, time_func)
        evaluator.add_handler(LoggingAlertHandler())
        if config.alert_webhook_url:
            evaluator.add_handler(WebhookAlertHandler(config.alert_webhook_url))
        return evaluator

    def add_handler(self, handler):
        self._handlers.append(handler)

    def record_session_start(self, session_id: str):
        with self._lock:
            self._session_starts.add(session_id)

    def _state(self, fingerprint: str) -> AlertState:
        state = self._states.get(fingerprint)
        if state is None:
            threshold = self._thresholds.get(fingerprint, self._default)
            state = AlertState(threshold=threshold)
            self._states[fingerprint] = state
        return state

    def observe(
        self,
        fingerprint: str,
        count: int,
        window_duration: float,
        sample_event: ErrorEvent | None = None,
    ) -> AlertIntent | None:
        now = self._time_func()
        with self._lock:
            state = self._state(fingerprint)
            threshold = state.threshold

            cutoff = now - threshold.period
            state.observations = [(t, c) for t, c in state.observations if t >= cutoff]
            if not state.observations:
                state.sessions.clear()
            state.observations.append((now, count))
            state.window_count = sum(c for _, c in state.observations)
            if sample_event is not None and sample_event.session_id:
                state.sessions.add(sample_event.session_id)

            if threshold.kind == "session_ratio":
                if not self._session_starts:
                    return None
                rate = len(state.sessions) / len(self._session_starts)
            else:
                # occurrences per period; a report spanning longer than the period is scaled down
                span = max(threshold.period, window_duration)
                rate = state.window_count * threshold.period / span

            if rate < threshold.value:
                return None
            if (
                state.last_alerted_at is not None
                and now - state.last_alerted_at < self._cooldown_seconds
            ):
                return None

            state.last_alerted_at = now
            intent = AlertIntent(
                fingerprint=fingerprint,
                rate=rate,
                threshold=threshold.value,
                sample_event=sample_event,
                kind=threshold.kind,
                created_at=now,
            )
            self._active_alerts.append(intent)

        for handler in self._handlers:
            try:
                handler.handle(intent)
            except Exception:
                logger.exception("Alert handler %r failed", handler)
        return intent

    def state(self, fingerprint: str) -> AlertState | None:
        with self._lock:
            return self._states.get(fingerprint)

    def get_active_alerts(self) -> list[AlertIntent]:
        with self._lock:
            return list(self._active_alerts)

    def clear_alerts(self):
        with self._lock:
            self._active_alerts.clear()
