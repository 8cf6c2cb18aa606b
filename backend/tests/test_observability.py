"""Tests for metrics backends."""

from app.observability import MetricsCollector, PrometheusMetrics, _build_metrics_backend


class TestMetricsCollector:
    """Tests for the in-memory metrics collector."""

    def test_ingestion_histogram_is_cumulative(self):
        metrics = MetricsCollector(buckets_ms=[100, 1000])

        metrics.observe_ingestion("tabular", True, 4, 50)
        metrics.observe_ingestion("tabular", True, 2, 500)

        rendered = metrics.render_prometheus()
        labels = 'source_type="tabular",status="success"'
        assert f'document_ingestion_duration_ms_bucket{{{labels},le="100"}} 1' in rendered
        assert f'document_ingestion_duration_ms_bucket{{{labels},le="1000"}} 2' in rendered
        assert f'document_ingestion_duration_ms_bucket{{{labels},le="+Inf"}} 2' in rendered
        assert f"document_ingestion_duration_ms_count{{{labels}}} 2" in rendered
        assert 'document_fragments_total{source_type="tabular"} 6' in rendered

    def test_failed_ingestion_adds_no_fragments(self):
        metrics = MetricsCollector()

        metrics.observe_ingestion("structured", False, 0, 5)

        rendered = metrics.render_prometheus()
        assert 'document_ingestions_total{source_type="structured",status="error"} 1' in rendered
        assert 'document_fragments_total{source_type="structured"}' not in rendered


class TestPrometheusMetrics:
    """Tests for the prometheus_client backend."""

    def test_renders_reply_counter(self):
        metrics = PrometheusMetrics([50, 100])

        metrics.observe_assistant_reply("direct_answer")
        metrics.observe_assistant_reply("direct_answer")

        rendered = metrics.render_prometheus()
        assert 'assistant_replies_total{kind="direct_answer"} 2.0' in rendered

    def test_backend_selection(self):
        assert isinstance(_build_metrics_backend("prometheus"), PrometheusMetrics)
        assert isinstance(_build_metrics_backend("inmemory"), MetricsCollector)
