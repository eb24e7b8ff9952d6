from __future__ import annotations

import pytest

from galaxycache.common.metrics import Counter, Gauge, Histogram, MetricsRegistry


def test_registry_renders_prometheus_text() -> None:
    registry = MetricsRegistry()
    hits = registry.register(Counter("test_hits_total", "Hits"))
    entries = registry.register(Gauge("test_entries", "Entries"))
    latency = registry.register(Histogram("test_latency_seconds", buckets=[0.1, 1.0], description="Latency"))

    hits.inc()
    hits.inc(2)
    entries.set(5)
    latency.observe(0.05)
    latency.observe(3.0)
    text = registry.render()

    assert "test_hits_total 3.0" in text
    assert "test_entries 5" in text
    assert 'test_latency_seconds_bucket{le="0.1"} 1' in text
    assert 'test_latency_seconds_bucket{le="1.0"} 1' in text
    assert 'test_latency_seconds_bucket{le="+Inf"} 2' in text
    assert "test_latency_seconds_count 2" in text


def test_register_returns_existing_metric_for_same_name() -> None:
    registry = MetricsRegistry()
    first = registry.register(Counter("dup_total"))
    second = registry.register(Counter("dup_total"))
    assert first is second
    assert registry.get("dup_total") is first


def test_counter_rejects_negative_increments() -> None:
    with pytest.raises(ValueError):
        Counter("neg_total").inc(-1)


def test_labelled_counter_renders_one_series_per_label_set() -> None:
    registry = MetricsRegistry()
    lookups = registry.register(Counter("lookups_total", "Lookups", labelnames=("kind", "result")))

    lookups.inc(kind="ARTIFACT", result="hit")
    lookups.inc(2, kind="ARTIFACT", result="hit")
    lookups.inc(kind="ROLE", result="miss")
    text = registry.render()

    assert lookups.value(kind="ARTIFACT", result="hit") == 3.0
    assert lookups.value(kind="ROLE", result="hit") == 0.0
    assert 'lookups_total{kind="ARTIFACT",result="hit"} 3.0' in text
    assert 'lookups_total{kind="ROLE",result="miss"} 1.0' in text


def test_labelled_metrics_require_their_declared_labels() -> None:
    counter = Counter("labelled_total", labelnames=("kind",))
    with pytest.raises(ValueError):
        counter.inc()
    with pytest.raises(ValueError):
        counter.inc(kind="ROLE", result="hit")
    gauge = Gauge("assets", labelnames=("repository",))
    gauge.set(4, repository="my-repo")
    assert gauge.value(repository="my-repo") == 4.0
