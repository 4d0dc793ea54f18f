# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
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

"""Completion performance metrics.

Tracks request latency percentiles, success and failure counts with an error
breakdown, cache effectiveness and the streaming share of requests. Only the
most recent latency samples are kept.
"""

import io
import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional

from rich.console import Console
from rich.table import Table

logger = logging.getLogger(__name__)

MAX_LATENCY_SAMPLES = 1000


@dataclass(frozen=True)
class MetricsSummary:
    """Snapshot of the performance metrics. Latencies in milliseconds."""

    p50: float
    p90: float
    p95: float
    p99: float
    avg: float
    success_rate: float
    failure_rate: float
    error_types: Dict[str, int] = field(default_factory=dict)
    cache_hit_rate: float = 0.0
    cache_hit_count: int = 0
    cache_miss_count: int = 0
    total_requests: int = 0
    streaming_rate: float = 0.0
    non_streaming_rate: float = 0.0

    def as_dict(self) -> dict:
        return asdict(self)


def calculate_percentile(values: List[float], p: float) -> float:
    """Nearest-rank percentile; 0 for no samples."""
    if not values:
        return 0.0
    ordered = sorted(values)
    index = math.ceil(p / 100 * len(ordered)) - 1
    return ordered[max(0, min(index, len(ordered) - 1))]


class PerformanceMonitor:
    """Collects completion performance metrics."""

    def __init__(self, max_samples: int = MAX_LATENCY_SAMPLES):
        self.max_samples = max_samples
        self.reset()

    def reset(self) -> None:
        self._latencies: List[float] = []
        self._success_count = 0
        self._failure_count = 0
        self._error_types: Dict[str, int] = {}
        self._cache_hits = 0
        self._cache_misses = 0
        self._total_requests = 0
        self._streaming_requests = 0

    def record_latency(self, latency_ms: float, streaming: bool = False) -> None:
        self._latencies.append(latency_ms)
        self._total_requests += 1
        if streaming:
            self._streaming_requests += 1
        if len(self._latencies) > self.max_samples:
            self._latencies = self._latencies[-self.max_samples :]
        logger.debug(f"Recorded latency: {latency_ms:.1f}ms (streaming: {streaming})")

    def record_success(self) -> None:
        self._success_count += 1

    def record_failure(self, error_type: str) -> None:
        self._failure_count += 1
        self._error_types[error_type] = self._error_types.get(error_type, 0) + 1
        logger.debug(f"Recorded failure: {error_type}")

    def record_cache_hit(self) -> None:
        self._cache_hits += 1

    def record_cache_miss(self) -> None:
        self._cache_misses += 1

    def get_latency_percentile(self, p: float) -> float:
        return calculate_percentile(self._latencies, p)

    def get_average_latency(self) -> float:
        if not self._latencies:
            return 0.0
        return sum(self._latencies) / len(self._latencies)

    def get_success_rate(self) -> float:
        """Share of successful requests; 1.0 before any request."""
        total = self._success_count + self._failure_count
        if total == 0:
            return 1.0
        return self._success_count / total

    def get_cache_hit_rate(self) -> float:
        total = self._cache_hits + self._cache_misses
        if total == 0:
            return 0.0
        return self._cache_hits / total

    def get_summary(self) -> MetricsSummary:
        success_rate = self.get_success_rate()
        streaming_rate = (
            self._streaming_requests / self._total_requests if self._total_requests else 0.0
        )
        return MetricsSummary(
            p50=self.get_latency_percentile(50),
            p90=self.get_latency_percentile(90),
            p95=self.get_latency_percentile(95),
            p99=self.get_latency_percentile(99),
            avg=self.get_average_latency(),
            success_rate=success_rate,
            failure_rate=1.0 - success_rate,
            error_types=dict(self._error_types),
            cache_hit_rate=self.get_cache_hit_rate(),
            cache_hit_count=self._cache_hits,
            cache_miss_count=self._cache_misses,
            total_requests=self._total_requests,
            streaming_rate=streaming_rate,
            non_streaming_rate=1.0 - streaming_rate if self._total_requests else 0.0,
        )

    def format_summary(self, extra_rows: Optional[Dict[str, str]] = None) -> str:
        """Render the summary as a plain-text table.

        Args:
            extra_rows: Additional (label, value) rows appended to the table

        Returns:
            Table text without color codes
        """
        summary = self.get_summary()

        table = Table(title="Predicte Performance Metrics", show_header=True)
        table.add_column("Metric", style="cyan")
        table.add_column("Value", justify="right")

        latencies = {
            "P50": summary.p50,
            "P90": summary.p90,
            "P95": summary.p95,
            "P99": summary.p99,
            "Average": summary.avg,
        }
        for label, value in latencies.items():
            table.add_row(f"Latency {label} (ms)", f"{value:.1f}")
        table.add_row("Success rate", f"{summary.success_rate * 100:.1f}%")
        table.add_row("Cache hit rate", f"{summary.cache_hit_rate * 100:.1f}%")
        table.add_row("Cache hits / misses", f"{summary.cache_hit_count} / {summary.cache_miss_count}")
        table.add_row("Total requests", str(summary.total_requests))
        table.add_row("Streaming", f"{summary.streaming_rate * 100:.1f}%")
        table.add_row("Non-streaming", f"{summary.non_streaming_rate * 100:.1f}%")

        if summary.error_types:
            for error, count in sorted(summary.error_types.items()):
                table.add_row(f"Errors: {error}", str(count))
        else:
            table.add_row("Errors", "None")

        for label, value in (extra_rows or {}).items():
            table.add_row(label, value)

        console = Console(file=io.StringIO(), record=True, width=80, color_system=None)
        console.print(table)
        return console.export_text()
