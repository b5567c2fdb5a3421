"""Observer interface and the default in-process observability provider.

Components never reach for a global logger or metrics registry: an
:class:`Observer` is passed into the :class:`~tollgate.client.ApiClient`
and :class:`~tollgate.auth.TokenProvider` constructors, and its lifetime is
owned by the caller.

Three implementations ship with the package:

* :class:`ObservabilityProvider` -- keeps the most recent metric samples
  and log entries in bounded buffers, summarises them, renders Prometheus
  text exposition via :mod:`prometheus_client`, and echoes log lines to an
  :class:`~tollgate.output.OutputManager`.
* :class:`NullObserver` -- discards everything; the default.
* :class:`CompositeObserver` -- fans events out to several observers.

Observers receive duration/outcome events but never influence control
flow: an observer that raises must not change the result of the call that
triggered it.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Optional

from prometheus_client import CollectorRegistry, Summary, generate_latest

from tollgate.output import OutputManager

LOG_LEVELS = ("debug", "info", "warning", "error")


@dataclass(frozen=True)
class MetricSample:
    """One recorded metric value."""

    name: str
    value: float
    timestamp: float
    labels: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class LogEntry:
    """One recorded log line."""

    level: str
    message: str
    timestamp: float
    context: dict[str, Any] = field(default_factory=dict)


class Observer(ABC):
    """Sink for metrics and structured log lines.

    Subclasses implement :meth:`record_metric` and :meth:`log`; the level
    helpers delegate to :meth:`log`.
    """

    @abstractmethod
    def record_metric(
        self, name: str, value: float, labels: Optional[dict[str, str]] = None
    ) -> None:
        """Record a single metric sample.

        Args:
            name: Metric name, e.g. ``"api_request_duration_ms"``.
            value: The observed value.
            labels: Low-cardinality label set.
        """
        ...

    @abstractmethod
    def log(self, level: str, message: str, context: Optional[dict[str, Any]] = None) -> None:
        """Record a log line at *level* with structured *context*."""
        ...

    def debug(self, message: str, context: Optional[dict[str, Any]] = None) -> None:
        self.log("debug", message, context)

    def info(self, message: str, context: Optional[dict[str, Any]] = None) -> None:
        self.log("info", message, context)

    def warning(self, message: str, context: Optional[dict[str, Any]] = None) -> None:
        self.log("warning", message, context)

    def error(self, message: str, context: Optional[dict[str, Any]] = None) -> None:
        self.log("error", message, context)


class NullObserver(Observer):
    """Observer that drops every event."""

    def record_metric(
        self, name: str, value: float, labels: Optional[dict[str, str]] = None
    ) -> None:
        return None

    def log(self, level: str, message: str, context: Optional[dict[str, Any]] = None) -> None:
        return None


class ObservabilityProvider(Observer):
    """In-process metrics and log recorder.

    Keeps the last ``max_metrics`` samples and ``max_logs`` log entries,
    mirrors every metric into a private Prometheus registry (one labelled
    :class:`~prometheus_client.Summary` per metric name), and echoes log
    lines to *output*.

    Args:
        output: Where log lines are printed. Defaults to a quiet-by-default
            stderr :class:`~tollgate.output.OutputManager`.
        max_metrics: Size of the metric sample buffer.
        max_logs: Size of the log entry buffer.
        registry: Prometheus registry to register summaries in. A fresh
            :class:`~prometheus_client.CollectorRegistry` is created when
            omitted so that several providers can coexist in one process.

    Example::

        observer = ObservabilityProvider(OutputManager(verbose=True))
        async with ApiClient.from_config(config, observer=observer) as api:
            await api.get("/widgets/42")
        print(observer.export_prometheus())
    """

    def __init__(
        self,
        output: Optional[OutputManager] = None,
        max_metrics: int = 1000,
        max_logs: int = 1000,
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        self._output = output if output is not None else OutputManager()
        self._metrics: deque[MetricSample] = deque(maxlen=max_metrics)
        self._logs: deque[LogEntry] = deque(maxlen=max_logs)
        self._registry = registry if registry is not None else CollectorRegistry()
        self._summaries: dict[str, tuple[Summary, tuple[str, ...]]] = {}

    @property
    def registry(self) -> CollectorRegistry:
        """The Prometheus registry metrics are mirrored into."""
        return self._registry

    # ------------------------------------------------------------------ #
    # Observer interface
    # ------------------------------------------------------------------ #

    def record_metric(
        self, name: str, value: float, labels: Optional[dict[str, str]] = None
    ) -> None:
        labels = {key: str(val) for key, val in (labels or {}).items()}
        self._metrics.append(
            MetricSample(name=name, value=float(value), timestamp=time.time(), labels=labels)
        )
        self._observe_prometheus(name, float(value), labels)
        self._output.debug(f"[metric] {name}={value}", labels)

    def log(self, level: str, message: str, context: Optional[dict[str, Any]] = None) -> None:
        if level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level '{level}'. Expected one of {LOG_LEVELS}")
        entry = LogEntry(
            level=level, message=message, timestamp=time.time(), context=dict(context or {})
        )
        self._logs.append(entry)
        self._output.emit(level, message, entry.context)

    # ------------------------------------------------------------------ #
    # Inspection
    # ------------------------------------------------------------------ #

    def metrics_summary(self) -> dict[str, dict[str, float]]:
        """Aggregate buffered samples per metric name.

        Returns:
            A mapping of metric name to ``count``, ``total``, ``avg``,
            ``min`` and ``max`` over the samples still in the buffer.
        """
        summary: dict[str, dict[str, float]] = {}
        for sample in self._metrics:
            stats = summary.get(sample.name)
            if stats is None:
                stats = {"count": 0, "total": 0.0, "avg": 0.0, "min": sample.value, "max": sample.value}
                summary[sample.name] = stats
            stats["count"] += 1
            stats["total"] += sample.value
            stats["min"] = min(stats["min"], sample.value)
            stats["max"] = max(stats["max"], sample.value)
            stats["avg"] = stats["total"] / stats["count"]
        return summary

    def recent_metrics(self, name: Optional[str] = None) -> list[MetricSample]:
        """Return buffered samples, optionally only those named *name*."""
        if name is None:
            return list(self._metrics)
        return [sample for sample in self._metrics if sample.name == name]

    def recent_logs(self, count: int = 100, level: Optional[str] = None) -> list[LogEntry]:
        """Return the last *count* log entries, optionally filtered by *level*."""
        logs = [entry for entry in self._logs if level is None or entry.level == level]
        return logs[-count:] if count > 0 else []

    def clear(self) -> None:
        """Drop all buffered samples and log entries.

        The Prometheus registry is cumulative and is left untouched.
        """
        self._metrics.clear()
        self._logs.clear()

    def export_prometheus(self) -> str:
        """Render every mirrored metric in Prometheus text exposition format."""
        return generate_latest(self._registry).decode("utf-8")

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    def _observe_prometheus(self, name: str, value: float, labels: dict[str, str]) -> None:
        # Label names are fixed by the first sample recorded under a name.
        entry = self._summaries.get(name)
        if entry is None:
            labelnames = tuple(sorted(labels))
            metric = Summary(
                name,
                f"tollgate metric {name}",
                labelnames=labelnames,
                registry=self._registry,
            )
            entry = (metric, labelnames)
            self._summaries[name] = entry

        metric, labelnames = entry
        if labelnames:
            metric.labels(**{key: labels.get(key, "") for key in labelnames}).observe(value)
        else:
            metric.observe(value)


class CompositeObserver(Observer):
    """Forwards every event to each wrapped observer in order.

    An observer that raises is skipped for that event; the remaining
    observers still receive it and the caller never sees the exception.
    """

    def __init__(self, observers: list[Observer]) -> None:
        self._observers = list(observers)

    def record_metric(
        self, name: str, value: float, labels: Optional[dict[str, str]] = None
    ) -> None:
        for observer in self._observers:
            try:
                observer.record_metric(name, value, labels)
            except Exception:
                pass  # Don't let observer errors cascade

    def log(self, level: str, message: str, context: Optional[dict[str, Any]] = None) -> None:
        for observer in self._observers:
            try:
                observer.log(level, message, context)
            except Exception:
                pass  # Don't let observer errors cascade


def shielded(observer: Optional[Observer]) -> Observer:
    """Return an observer whose failures can never reach the caller.

    ``None`` becomes a :class:`NullObserver`; anything else is wrapped in a
    single-member :class:`CompositeObserver`.
    """
    if observer is None:
        return NullObserver()
    if isinstance(observer, (NullObserver, CompositeObserver)):
        return observer
    return CompositeObserver([observer])
