import pytest

from gallery_backend.core.metrics import MetricsRegistry, normalize_path


def test_normalize_path_collapses_ids():
    assert normalize_path("/v1/lifecycle/accounts/acct_alice/events") == "/v1/lifecycle/accounts/:id/events"
    assert normalize_path("/v1/lifecycle/deletions/42/warning-sent") == "/v1/lifecycle/deletions/:id/warning-sent"
    assert normalize_path("/v1/cron/subscription-grace") == "/v1/cron/subscription-grace"


def test_counter_export_and_value():
    registry = MetricsRegistry()
    counter = registry.counter("jobs_total", ["job"], "Jobs run.")
    counter.inc({"job": "sweep"})
    counter.inc({"job": "sweep"}, amount=2)

    text = registry.export_prometheus()

    assert "# HELP jobs_total Jobs run." in text
    assert "# TYPE jobs_total counter" in text
    assert 'jobs_total{job="sweep"} 3.0' in text
    assert counter.value({"job": "sweep"}) == 3
    assert counter.value({"job": "scan"}) == 0


def test_counter_rejects_negative_increment():
    with pytest.raises(ValueError):
        MetricsRegistry().counter("c").inc(amount=-1)


def test_registry_rejects_kind_mismatch():
    registry = MetricsRegistry()
    registry.gauge("backlog")
    with pytest.raises(ValueError):
        registry.counter("backlog")


def test_gauge_set_and_reset():
    registry = MetricsRegistry()
    gauge = registry.gauge("backlog")
    gauge.set(7)
    assert "backlog 7.0" in registry.export_prometheus()
    registry.reset()
    assert gauge.value() == 0
