"""Prometheus metrics helpers."""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

_REGISTRY = CollectorRegistry()

REQUEST_LATENCY = Histogram(
    "smarthome_api_request_duration_seconds",
    "Time spent processing API requests",
    ["method", "path", "status"],
    registry=_REGISTRY,
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10],
)
REQUEST_COUNT = Counter(
    "smarthome_api_requests_total",
    "HTTP requests processed by the API",
    ["method", "path", "status"],
    registry=_REGISTRY,
)
AI_REQUEST_DURATION = Histogram(
    "smarthome_ai_request_duration_seconds",
    "Time spent waiting for the text-generation API",
    ["result"],
    registry=_REGISTRY,
    buckets=[0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60],
)
AI_COMMANDS = Counter(
    "smarthome_ai_commands_total",
    "Natural-language commands interpreted",
    ["result"],
    registry=_REGISTRY,
)
COMPRESSION_RESULTS = Counter(
    "smarthome_compression_results_total",
    "Prompt compression outcomes",
    ["strategy", "result"],
    registry=_REGISTRY,
)
TOKENS_SAVED = Counter(
    "smarthome_compression_tokens_saved_total",
    "Estimated prompt tokens saved by compression",
    registry=_REGISTRY,
)
DEVICE_UPDATES = Counter(
    "smarthome_device_updates_total",
    "Device status updates applied",
    ["trigger", "result"],
    registry=_REGISTRY,
)
SCENE_APPLICATIONS = Counter(
    "smarthome_scene_applications_total",
    "Scene applications",
    ["result"],
    registry=_REGISTRY,
)
ACTIVITY_LOG_FAILURES = Counter(
    "smarthome_activity_log_failures_total",
    "Activity log writes that failed and were skipped",
    registry=_REGISTRY,
)


def get_registry() -> CollectorRegistry:
    """Return the registry holding the panel metrics."""

    return _REGISTRY


def latest_metrics() -> bytes:
    """Render the latest metrics payload for scraping."""

    return generate_latest(_REGISTRY)


def observe_request(method: str, path: str, status: int, duration_seconds: float) -> None:
    """Record API request metrics."""

    status_str = str(status)
    REQUEST_COUNT.labels(method=method, path=path, status=status_str).inc()
    REQUEST_LATENCY.labels(method=method, path=path, status=status_str).observe(duration_seconds)


def observe_ai_request(result: str, duration_seconds: float) -> None:
    """Record how long a text-generation call took."""

    AI_REQUEST_DURATION.labels(result=result).observe(duration_seconds)


def record_ai_command(result: str) -> None:
    """Record the outcome of interpreting a command."""

    AI_COMMANDS.labels(result=result).inc()


def record_compression(strategy: str, result: str, tokens_saved: int = 0) -> None:
    """Record a compression attempt and the tokens it saved."""

    COMPRESSION_RESULTS.labels(strategy=strategy, result=result).inc()
    if tokens_saved > 0:
        TOKENS_SAVED.inc(tokens_saved)


def record_device_update(trigger: str, result: str) -> None:
    """Record a device status update."""

    DEVICE_UPDATES.labels(trigger=trigger, result=result).inc()


def record_scene_application(result: str) -> None:
    """Record a scene application outcome."""

    SCENE_APPLICATIONS.labels(result=result).inc()


def record_activity_log_failure() -> None:
    """Record a skipped activity log write."""

    ACTIVITY_LOG_FAILURES.inc()


METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST
