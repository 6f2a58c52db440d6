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
"""Optional metrics collection for observability.

Everything the service counts lives in one process-wide MetricsCollector:
HTTP status codes, error types, latencies per operation and per pipeline
stage, terminal pipeline stages, narrative stream statistics and how often
structured completions matched their schema. Without ENABLE_METRICS,
get_metrics_collector() returns None and every call site skips recording.
"""

import time
from typing import Dict, List, Optional
from dataclasses import dataclass
from threading import Lock
from collections import defaultdict


@dataclass
class LatencyStats:
    """Statistics for a generic numeric value (latency, counts, etc.)."""
    count: int = 0
    total: float = 0.0
    min: float = float('inf')
    max: float = 0.0

    @property
    def avg(self) -> float:
        """Calculate average value."""
        return self.total / self.count if self.count > 0 else 0.0

    def record(self, value: float) -> None:
        """Record a new sample.

        Args:
            value: The value to record (e.g., duration in ms, chunk count)
        """
        self.count += 1
        self.total += value
        self.min = min(self.min, value)
        self.max = max(self.max, value)

    def to_dict(self, unit: str = "ms") -> Dict[str, float]:
        """Convert to dictionary for serialization.

        Args:
            unit: Unit suffix for keys (e.g., "ms" for milliseconds, "" for dimensionless)

        Returns:
            Dictionary with count, avg, min, max with appropriate unit suffix
        """
        # Suffix keys with unit if provided (e.g., "avg_ms")
        suffix = f"_{unit}" if unit else ""
        avg_key = f"avg{suffix}"
        min_key = f"min{suffix}"
        max_key = f"max{suffix}"
        return {
            "count": self.count,
            avg_key: round(self.avg, 2),
            min_key: round(self.min, 2) if self.min != float('inf') else 0.0,
            max_key: round(self.max, 2)
        }


class MetricsCollector:
    """In-memory metrics collector with thread-safe operations.

    Collects:
    - HTTP request counts by status code
    - Operation latencies (pipeline stages, LLM calls, HTTP actions)
    - Error counts by type
    - Pipeline outcomes by terminal stage
    - Streaming metrics (chunk counts, stream durations, failures, client disconnects)
    """

    def __init__(self):
        """Initialize metrics collector."""
        self._lock = Lock()
        self._request_counts: Dict[int, int] = defaultdict(int)
        self._error_counts: Dict[str, int] = defaultdict(int)
        self._latencies: Dict[str, LatencyStats] = defaultdict(LatencyStats)
        self._start_time = time.time()

        # Streaming-specific metrics
        self._stream_counts = {
            "total": 0,
            "completed": 0,
            "client_disconnects": 0,
            "failed": 0
        }
        self._pipeline_outcomes: Dict[str, int] = defaultdict(int)
        # schema name -> [parsed, malformed]
        self._structured_outputs: Dict[str, List[int]] = defaultdict(lambda: [0, 0])
        self._stream_chunk_stats = LatencyStats()  # Track chunks per stream
        self._stream_duration_stats = LatencyStats()  # Track stream duration

    def record_request(self, status_code: int) -> None:
        """Record an HTTP request.

        Args:
            status_code: HTTP status code
        """
        with self._lock:
            self._request_counts[status_code] += 1

    def record_error(self, error_type: str) -> None:
        """Record an error by type.

        Args:
            error_type: Error type/category
        """
        with self._lock:
            self._error_counts[error_type] += 1

    def record_latency(self, operation: str, duration_ms: float) -> None:
        """Record operation latency.

        Args:
            operation: Operation name (e.g., "action", "llm_call", "pipeline_narrating")
            duration_ms: Duration in milliseconds
        """
        with self._lock:
            self._latencies[operation].record(duration_ms)

    def record_pipeline_stage(self, stage: str, duration_ms: float) -> None:
        """Record the latency of one pipeline stage.

        Args:
            stage: Stage name (e.g., "validating", "narrating")
            duration_ms: Duration in milliseconds
        """
        self.record_latency(f"pipeline_{stage}", duration_ms)

    def record_pipeline_outcome(self, terminal_stage: str) -> None:
        """Record how a pipeline run ended (done, rejected or error)."""
        with self._lock:
            self._pipeline_outcomes[terminal_stage] += 1

    def record_structured_output(self, schema: str, parsed: bool) -> None:
        """Record whether a structured completion matched its schema."""
        with self._lock:
            self._structured_outputs[schema][0 if parsed else 1] += 1

    def record_stream_start(self) -> None:
        """Record the opening of a narrative stream."""
        with self._lock:
            self._stream_counts["total"] += 1

    def record_stream_complete(self, chunk_count: int, duration_ms: float) -> None:
        """Record successful completion of a narrative stream.

        Args:
            chunk_count: Number of fragments streamed
            duration_ms: Total stream duration in milliseconds
        """
        with self._lock:
            self._stream_counts["completed"] += 1
            self._stream_chunk_stats.record(float(chunk_count))
            self._stream_duration_stats.record(duration_ms)

    def record_stream_failure(self) -> None:
        """Record a narrative stream that failed before its end sentinel."""
        with self._lock:
            self._stream_counts["failed"] += 1

    def record_stream_client_disconnect(self) -> None:
        """Record a client disconnect during SSE streaming."""
        with self._lock:
            self._stream_counts["client_disconnects"] += 1

    def get_metrics(self) -> Dict:
        """Get all collected metrics.

        Returns:
            Dictionary with all metrics
        """
        with self._lock:
            total_requests = sum(self._request_counts.values())
            success_requests = sum(
                count for status, count in self._request_counts.items()
                if 200 <= status < 400
            )
            error_requests = total_requests - success_requests

            uptime_seconds = time.time() - self._start_time

            parsed = sum(counts[0] for counts in self._structured_outputs.values())
            malformed = sum(counts[1] for counts in self._structured_outputs.values())
            total_parses = parsed + malformed

            return {
                "uptime_seconds": round(uptime_seconds, 2),
                "requests": {
                    "total": total_requests,
                    "success": success_requests,
                    "errors": error_requests,
                    "by_status_code": dict(self._request_counts)
                },
                "errors": {
                    "by_type": dict(self._error_counts)
                },
                "latencies": {
                    operation: stats.to_dict(unit="ms")
                    for operation, stats in self._latencies.items()
                },
                "pipeline": {
                    "outcomes": dict(self._pipeline_outcomes)
                },
                "schema_conformance": {
                    "total_parses": total_parses,
                    "successful_parses": parsed,
                    "failed_parses": malformed,
                    "conformance_rate": round(parsed / total_parses, 4) if total_parses else 0.0,
                    "malformed_by_schema": {
                        schema: counts[1]
                        for schema, counts in self._structured_outputs.items()
                        if counts[1]
                    },
                },
                "streaming": {
                    "total_streams": self._stream_counts["total"],
                    "completed_streams": self._stream_counts["completed"],
                    "failed_streams": self._stream_counts["failed"],
                    "client_disconnects": self._stream_counts["client_disconnects"],
                    "chunks_per_stream": self._stream_chunk_stats.to_dict(unit="") if self._stream_chunk_stats.count > 0 else {},
                    "stream_duration": self._stream_duration_stats.to_dict(unit="ms") if self._stream_duration_stats.count > 0 else {}
                }
            }

    def reset(self) -> None:
        """Reset all metrics. Useful for testing."""
        with self._lock:
            self._request_counts.clear()
            self._error_counts.clear()
            self._latencies.clear()
            self._pipeline_outcomes.clear()
            self._structured_outputs.clear()
            self._stream_counts = {
                "total": 0,
                "completed": 0,
                "client_disconnects": 0,
                "failed": 0
            }
            self._stream_chunk_stats = LatencyStats()
            self._stream_duration_stats = LatencyStats()
            self._start_time = time.time()


# Global metrics collector instance (singleton)
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> Optional[MetricsCollector]:
    """Get the global metrics collector instance.

    Returns:
        MetricsCollector instance if metrics are enabled, None otherwise
    """
    return _metrics_collector


def init_metrics_collector() -> MetricsCollector:
    """Initialize the global metrics collector."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector


def disable_metrics_collector() -> None:
    """Disable metrics collection by clearing the global instance."""
    global _metrics_collector
    _metrics_collector = None


class MetricsTimer:
    """Context manager for timing operations and recording metrics.

    Usage:
        with MetricsTimer("action"):
            # do work
            pass
    """

    def __init__(self, operation: str):
        self.operation = operation
        self.start_time = 0.0
        self.collector = get_metrics_collector()

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """End the timer and record metrics."""
        if self.collector:
            duration_ms = (time.time() - self.start_time) * 1000
            self.collector.record_latency(self.operation, duration_ms)
