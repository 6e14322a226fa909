"""Pipeline configuration: a frozen dataclass loaded from YAML and environment variables."""

import logging
import os
from dataclasses import dataclass, field, fields

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_PRIORITY = (
    "platform",
    "app_version",
    "os_version",
    "user_id",
    "device",
)


@dataclass(frozen=True)
class PipelineConfig:
    # normalizer
    max_stack_frames: int = 50
    max_context_bytes: int = 4096
    max_message_length: int = 2048
    fingerprint_frames: int = 5
    context_priority: tuple = DEFAULT_CONTEXT_PRIORITY

    # aggregation
    aggregation_window: float = 60.0
    max_aggregate_count: int = 1000
    sweep_interval: float = 1.0
    handoff_capacity: int = 10000
    fatal_flush_timeout: float = 2.0

    # rate limits
    global_rate_cap: int = 120
    global_rate_window: float = 60.0
    fingerprint_rate_cap: int = 30
    fingerprint_rate_window: float = 3600.0

    # durable queue
    queue_dir: str = "./error-queue"
    queue_capacity: int = 2000
    max_attempts: int = 8

    # uploader
    collector_url: str = "http://localhost:8080/v1/reports"
    request_timeout: float = 10.0
    batch_size: int = 50
    upload_interval: float = 15.0
    max_batches_per_run: int = 20
    backoff_base: float = 2.0
    backoff_cap: float = 300.0

    # alerting
    alert_kind: str = "count"
    alert_threshold: float = 50.0
    alert_period: float = 3600.0
    alert_cooldown: float = 1800.0
    alert_thresholds: dict = field(default_factory=dict)
    alert_webhook_url: str = ""

    metrics_interval: float = 0.0


# YAML section -> {yaml key: PipelineConfig field}
_SECTIONS = {
    "normalizer": {
        "max_stack_frames": "max_stack_frames",
        "max_context_bytes": "max_context_bytes",
        "max_message_length": "max_message_length",
        "fingerprint_frames": "fingerprint_frames",
        "context_priority": "context_priority",
    },
    "aggregation": {
        "window_seconds": "aggregation_window",
        "max_count": "max_aggregate_count",
        "sweep_interval": "sweep_interval",
        "handoff_capacity": "handoff_capacity",
        "fatal_flush_timeout": "fatal_flush_timeout",
    },
    "rate_limits": {
        "global_per_window": "global_rate_cap",
        "global_window_seconds": "global_rate_window",
        "fingerprint_per_window": "fingerprint_rate_cap",
        "fingerprint_window_seconds": "fingerprint_rate_window",
    },
    "queue": {
        "directory": "queue_dir",
        "capacity": "queue_capacity",
        "max_attempts": "max_attempts",
    },
    "uploader": {
        "collector_url": "collector_url",
        "request_timeout": "request_timeout",
        "batch_size": "batch_size",
        "interval_seconds": "upload_interval",
        "max_batches_per_run": "max_batches_per_run",
        "backoff_base": "backoff_base",
        "backoff_cap": "backoff_cap",
    },
    "alerting": {
        "kind": "alert_kind",
        "threshold": "alert_threshold",
        "period_seconds": "alert_period",
        "cooldown_seconds": "alert_cooldown",
        "thresholds": "alert_thresholds",
        "webhook_url": "alert_webhook_url",
    },
    "metrics": {
        "interval_seconds": "metrics_interval",
    },
}

# env var -> (field, converter)
_ENV_OVERRIDES = {
    "ERROR_PIPELINE_QUEUE_DIR": ("queue_dir", str),
    "COLLECTOR_URL": ("collector_url", str),
    "UPLOAD_INTERVAL": ("upload_interval", float),
    "BATCH_SIZE": ("batch_size", int),
    "MAX_ATTEMPTS": ("max_attempts", int),
    "ALERT_WEBHOOK_URL": ("alert_webhook_url", str),
}


def _coerce(name: str, value):
    """Convert a YAML/env value to the type of the dataclass default."""
    default = PipelineConfig.__dataclass_fields__[name].default
    if name == "context_priority":
        return tuple(str(v) for v in value)
    if name == "alert_thresholds":
        return dict(value or {})
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return str(value)


def _read_yaml(config_path: str) -> dict:
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        logger.info("Config file %s not found, using defaults", config_path)
        return {}
    except yaml.YAMLError as exc:
        logger.warning("Invalid YAML in %s, using defaults: %s", config_path, exc)
        return {}
    return data if isinstance(data, dict) else {}


def load_config(config_path: str | None = None, environ=None) -> PipelineConfig:
    """Build PipelineConfig from defaults <- YAML file <- env vars (highest priority)."""
    if environ is None:
        environ = os.environ

    kwargs: dict = {}
    if config_path is not None:
        data = _read_yaml(config_path)
        for section, mapping in _SECTIONS.items():
            values = data.get(section) or {}
            if not isinstance(values, dict):
                logger.warning("Config section %r is not a mapping, ignoring", section)
                continue
            for key, value in values.items():
                name = mapping.get(key)
                if name is None:
                    logger.debug("Ignoring unknown config key %s.%s", section, key)
                    continue
                kwargs[name] = _coerce(name, value)

    for var, (name, convert) in _ENV_OVERRIDES.items():
        if var in environ:
            kwargs[name] = convert(environ[var])

    return PipelineConfig(**kwargs)


def config_to_dict(config: PipelineConfig) -> dict:
    """Flat dict view, used by the CLI ``stats`` command."""
    return {f.name: getattr(config, f.name) for f in fields(config)}
