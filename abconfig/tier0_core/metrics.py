"""
abconfig.tier0_core.metrics
─────────────────────────────
Counters with standard naming and labels for bucketing outcomes and
applied commands. Exported via the Prometheus client registry.

Minimal stack: prometheus-client
Configure via: ABCONFIG_METRICS_ENABLED=true|false
               ABCONFIG_METRICS_PORT (default: 8001)
"""
from __future__ import annotations

from typing import Any, Callable

from prometheus_client import Counter, start_http_server

from abconfig.tier0_core.config import get_settings

# Standard labels applied to every metric
_DEFAULT_LABELS = ["service", "env"]

_metrics: dict[str, Counter] = {}


def _default_label_values() -> list[str]:
    settings = get_settings()
    return [settings.app_name, settings.environment]


class _NoopCounter:
    def inc(self, amount: float = 1) -> None:
        pass


def counter(name: str, description: str, labels: list[str] | None = None) -> Callable:
    """
    Create (or retrieve) a counter with standard labels.

    Usage:
        selections_total = counter("abconfig_selections_total", "Selections", ["scope"])
        selections_total(scope="request").inc()
    """
    if name not in _metrics:
        _metrics[name] = Counter(name, description, _DEFAULT_LABELS + (labels or []))
    c = _metrics[name]

    def _counter(**extra_labels: str) -> Any:
        if not get_settings().metrics_enabled:
            return _NoopCounter()
        values = dict(zip(_DEFAULT_LABELS, _default_label_values()))
        return c.labels(**values, **extra_labels)

    return _counter


def start_metrics_server(port: int | None = None) -> None:
    """
    Start the Prometheus HTTP metrics server on a dedicated port.
    Call once at application startup.
    """
    start_http_server(port or get_settings().metrics_port)


selections_total = counter(
    "abconfig_selections_total",
    "Experiment bucketing outcomes by scope",
    ["scope", "experiment", "outcome"],
)

commands_total = counter(
    "abconfig_commands_total",
    "Commands applied or rejected by verb",
    ["verb", "outcome"],
)


__all__ = ["counter", "start_metrics_server", "selections_total", "commands_total"]
