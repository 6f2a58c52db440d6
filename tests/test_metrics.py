# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Tests for metrics collection."""

from adventure_dm.metrics import (
    LatencyStats,
    MetricsCollector,
    MetricsTimer,
    disable_metrics_collector,
    get_metrics_collector,
    init_metrics_collector,
)


def test_latency_stats():
    """Test LatencyStats calculations."""
    stats = LatencyStats()

    stats.record(100.0)
    stats.record(200.0)
    stats.record(150.0)

    assert stats.count == 3
    assert stats.total == 450.0
    assert stats.min == 100.0
    assert stats.max == 200.0
    assert stats.avg == 150.0

    data = stats.to_dict()
    assert data == {"count": 3, "avg_ms": 150.0, "min_ms": 100.0, "max_ms": 200.0}


def test_latency_stats_empty():
    data = LatencyStats().to_dict(unit="")

    assert data == {"count": 0, "avg": 0.0, "min": 0.0, "max": 0.0}


def test_metrics_collector_requests():
    """Test request metrics recording."""
    collector = MetricsCollector()

    collector.record_request(200)
    collector.record_request(200)
    collector.record_request(404)
    collector.record_request(502)

    requests = collector.get_metrics()["requests"]
    assert requests["total"] == 4
    assert requests["success"] == 2
    assert requests["errors"] == 2
    assert requests["by_status_code"] == {200: 2, 404: 1, 502: 1}


def test_pipeline_metrics():
    collector = MetricsCollector()

    collector.record_pipeline_stage("validating", 12.0)
    collector.record_pipeline_stage("validating", 18.0)
    collector.record_pipeline_outcome("done")
    collector.record_pipeline_outcome("done")
    collector.record_pipeline_outcome("rejected")

    metrics = collector.get_metrics()
    assert metrics["latencies"]["pipeline_validating"]["avg_ms"] == 15.0
    assert metrics["pipeline"]["outcomes"] == {"done": 2, "rejected": 1}


def test_schema_conformance():
    collector = MetricsCollector()

    collector.record_structured_output("action_validation", parsed=True)
    collector.record_structured_output("action_validation", parsed=True)
    collector.record_structured_output("state_changes", parsed=True)
    collector.record_structured_output("state_changes", parsed=False)

    metrics = collector.get_metrics()
    conformance = metrics["schema_conformance"]
    assert conformance["total_parses"] == 4
    assert conformance["failed_parses"] == 1
    assert conformance["conformance_rate"] == 0.75
    assert conformance["malformed_by_schema"] == {"state_changes": 1}
    assert metrics["errors"]["by_type"] == {}


def test_schema_conformance_is_cleared_by_reset():
    collector = MetricsCollector()
    collector.record_structured_output("state_changes", parsed=False)

    collector.reset()

    conformance = collector.get_metrics()["schema_conformance"]
    assert conformance["total_parses"] == 0
    assert conformance["conformance_rate"] == 0.0


def test_streaming_metrics():
    collector = MetricsCollector()

    collector.record_stream_start()
    collector.record_stream_complete(chunk_count=10, duration_ms=500.0)
    collector.record_stream_start()
    collector.record_stream_failure()
    collector.record_stream_client_disconnect()

    streaming = collector.get_metrics()["streaming"]
    assert streaming["total_streams"] == 2
    assert streaming["completed_streams"] == 1
    assert streaming["failed_streams"] == 1
    assert streaming["client_disconnects"] == 1
    assert streaming["chunks_per_stream"]["avg"] == 10.0
    assert streaming["stream_duration"]["avg_ms"] == 500.0


def test_reset_clears_everything():
    collector = MetricsCollector()
    collector.record_request(200)
    collector.record_pipeline_outcome("error")
    collector.record_stream_start()

    collector.reset()

    metrics = collector.get_metrics()
    assert metrics["requests"]["total"] == 0
    assert metrics["pipeline"]["outcomes"] == {}
    assert metrics["streaming"]["total_streams"] == 0


def test_global_collector_lifecycle():
    disable_metrics_collector()
    assert get_metrics_collector() is None

    collector = init_metrics_collector()
    try:
        assert get_metrics_collector() is collector
        assert init_metrics_collector() is collector
    finally:
        disable_metrics_collector()

    assert get_metrics_collector() is None


def test_metrics_timer_records_latency():
    collector = init_metrics_collector()
    collector.reset()
    try:
        with MetricsTimer("action"):
            pass

        assert collector.get_metrics()["latencies"]["action"]["count"] == 1
    finally:
        disable_metrics_collector()


def test_metrics_timer_noop_when_disabled():
    disable_metrics_collector()

    with MetricsTimer("action"):
        pass

    assert get_metrics_collector() is None
