"""Tests for observers and the in-process observability provider."""

from __future__ import annotations

from io import StringIO
from unittest.mock import MagicMock

import pytest
from prometheus_client import CollectorRegistry

from tollgate.observability import (
    CompositeObserver,
    NullObserver,
    ObservabilityProvider,
    Observer,
    shielded,
)
from tollgate.output import OutputFormat, OutputManager


def _make_provider(**kwargs) -> ObservabilityProvider:
    output = OutputManager(format=OutputFormat.PLAIN, quiet=True, stream=StringIO())
    return ObservabilityProvider(output, **kwargs)


class TestBuffers:
    def test_metric_buffer_is_bounded(self):
        provider = _make_provider(max_metrics=3)
        for value in range(5):
            provider.record_metric("api_request_duration_ms", value)

        assert [s.value for s in provider.recent_metrics()] == [2.0, 3.0, 4.0]

    def test_log_buffer_is_bounded(self):
        provider = _make_provider(max_logs=2)
        for index in range(4):
            provider.info(f"line {index}")

        assert [entry.message for entry in provider.recent_logs()] == ["line 2", "line 3"]

    def test_recent_logs_filters_by_level_and_count(self):
        provider = _make_provider()
        provider.info("a")
        provider.error("b")
        provider.error("c")
        provider.warning("d")

        assert [e.message for e in provider.recent_logs(level="error")] == ["b", "c"]
        assert [e.message for e in provider.recent_logs(count=2)] == ["c", "d"]
        assert provider.recent_logs(count=0) == []

    def test_recent_metrics_filters_by_name(self):
        provider = _make_provider()
        provider.record_metric("a", 1)
        provider.record_metric("b", 2)

        assert [s.name for s in provider.recent_metrics("b")] == ["b"]

    def test_labels_are_stringified(self):
        provider = _make_provider()
        provider.record_metric("api_errors_total", 1, {"status": 503})

        assert provider.recent_metrics()[0].labels == {"status": "503"}

    def test_unknown_level_is_rejected(self):
        with pytest.raises(ValueError):
            _make_provider().log("trace", "too chatty")

    def test_clear(self):
        provider = _make_provider()
        provider.record_metric("a", 1)
        provider.info("x")

        provider.clear()

        assert provider.recent_metrics() == []
        assert provider.recent_logs() == []


class TestSummary:
    def test_metrics_summary(self):
        provider = _make_provider()
        for value in (10, 20, 60):
            provider.record_metric("api_request_duration_ms", value, {"method": "GET"})

        stats = provider.metrics_summary()["api_request_duration_ms"]
        assert stats == {"count": 3, "total": 90.0, "avg": 30.0, "min": 10.0, "max": 60.0}

    def test_empty_summary(self):
        assert _make_provider().metrics_summary() == {}


class TestPrometheusExport:
    def test_export_renders_summaries(self):
        provider = _make_provider()
        provider.record_metric("api_request_duration_ms", 12.5, {"method": "GET", "path": "/widgets"})
        provider.record_metric("token_request_success_total", 1)

        text = provider.export_prometheus()

        assert 'api_request_duration_ms_count{method="GET",path="/widgets"} 1.0' in text
        assert 'api_request_duration_ms_sum{method="GET",path="/widgets"} 12.5' in text
        assert "token_request_success_total_count 1.0" in text

    def test_providers_do_not_share_registries(self):
        first = _make_provider()
        second = _make_provider()
        first.record_metric("a", 1)
        second.record_metric("a", 2)

        assert "a_sum 1.0" in first.export_prometheus()
        assert "a_sum 2.0" in second.export_prometheus()

    def test_custom_registry(self):
        registry = CollectorRegistry()
        provider = _make_provider(registry=registry)
        provider.record_metric("a", 1)

        assert provider.registry is registry
        assert registry.get_sample_value("a_count") == 1.0


class TestOutputEcho:
    def test_log_lines_are_echoed(self):
        stream = StringIO()
        provider = ObservabilityProvider(OutputManager(format=OutputFormat.PLAIN, stream=stream))

        provider.warning("Circuit breaker opened due to failures", {"failure_count": 5})

        assert "Circuit breaker opened due to failures failure_count=5" in stream.getvalue()


class TestComposition:
    def test_null_observer_discards(self):
        observer = NullObserver()
        observer.record_metric("a", 1)
        observer.error("nothing happens")

    def test_composite_fans_out(self):
        first = MagicMock(spec=Observer)
        second = MagicMock(spec=Observer)
        composite = CompositeObserver([first, second])

        composite.record_metric("a", 1, {"k": "v"})
        composite.log("info", "hello")

        first.record_metric.assert_called_once_with("a", 1, {"k": "v"})
        second.log.assert_called_once_with("info", "hello", None)

    def test_composite_swallows_observer_errors(self):
        broken = MagicMock(spec=Observer)
        broken.record_metric.side_effect = RuntimeError("sink down")
        broken.log.side_effect = RuntimeError("sink down")
        healthy = MagicMock(spec=Observer)
        composite = CompositeObserver([broken, healthy])

        composite.record_metric("a", 1)
        composite.error("still delivered")

        healthy.record_metric.assert_called_once()
        healthy.log.assert_called_once_with("error", "still delivered", None)

    def test_shielded(self):
        assert isinstance(shielded(None), NullObserver)
        provider = _make_provider()
        wrapped = shielded(provider)
        assert isinstance(wrapped, CompositeObserver)
        assert shielded(wrapped) is wrapped
