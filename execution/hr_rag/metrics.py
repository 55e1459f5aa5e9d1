"""
Metrics Collection for the HR RAG Pipeline

Tracks query latency, cache effectiveness, corpus failures and ingestion
throughput. One collector is constructed per pipeline and passed to the
orchestrators that report into it.
"""

import time
import uuid
import logging
import threading
from dataclasses import dataclass, field
from collections import defaultdict
from typing import Optional
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)


@dataclass
class QueryMetrics:
    """Metrics for a single query."""
    query_id: str
    organization_id: str
    query_text: str
    start_time: float
    end_time: float = 0
    latency_ms: float = 0
    sources_count: int = 0
    cache_hit: bool = False
    failed_corpora: list[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class SystemMetrics:
    """Aggregated system metrics."""
    # Query metrics
    total_queries: int = 0
    successful_queries: int = 0
    failed_queries: int = 0

    # Latency tracking (in ms)
    total_latency_ms: float = 0
    min_latency_ms: float = float('inf')
    max_latency_ms: float = 0
    latencies: list = field(default_factory=list)

    # Cache metrics
    cache_hits: int = 0
    cache_misses: int = 0

    # Degraded retrieval
    corpus_failures: dict = field(default_factory=lambda: defaultdict(int))

    # Ingestion metrics
    documents_ingested: int = 0
    documents_failed: int = 0
    documents_with_warnings: int = 0
    chunks_created: int = 0
    total_ingestion_time_ms: float = 0
    stage_durations_ms: dict = field(default_factory=lambda: defaultdict(float))

    # Error tracking
    errors_by_type: dict = field(default_factory=lambda: defaultdict(int))

    # Per-organization tracking
    queries_by_organization: dict = field(default_factory=lambda: defaultdict(int))
    documents_by_organization: dict = field(default_factory=lambda: defaultdict(int))

    @property
    def avg_latency_ms(self) -> float:
        if self.total_queries == 0:
            return 0
        return self.total_latency_ms / self.total_queries

    def _percentile(self, fraction: float) -> float:
        if not self.latencies:
            return 0
        ordered = sorted(self.latencies)
        index = int(len(ordered) * fraction)
        return ordered[min(index, len(ordered) - 1)]

    @property
    def p95_latency_ms(self) -> float:
        return self._percentile(0.95)

    @property
    def p99_latency_ms(self) -> float:
        return self._percentile(0.99)

    @property
    def cache_hit_rate(self) -> float:
        total = self.cache_hits + self.cache_misses
        if total == 0:
            return 0
        return self.cache_hits / total

    @property
    def error_rate(self) -> float:
        if self.total_queries == 0:
            return 0
        return self.failed_queries / self.total_queries

    def to_dict(self) -> dict:
        """Convert to dictionary for display."""
        return {
            "queries": {
                "total": self.total_queries,
                "successful": self.successful_queries,
                "failed": self.failed_queries,
                "error_rate": f"{self.error_rate:.2%}",
            },
            "latency_ms": {
                "avg": round(self.avg_latency_ms, 2),
                "min": round(self.min_latency_ms, 2) if self.min_latency_ms != float('inf') else 0,
                "max": round(self.max_latency_ms, 2),
                "p95": round(self.p95_latency_ms, 2),
                "p99": round(self.p99_latency_ms, 2),
            },
            "cache": {
                "hits": self.cache_hits,
                "misses": self.cache_misses,
                "hit_rate": f"{self.cache_hit_rate:.2%}",
            },
            "corpus_failures": dict(self.corpus_failures),
            "ingestion": {
                "documents": self.documents_ingested,
                "failed": self.documents_failed,
                "with_warnings": self.documents_with_warnings,
                "chunks": self.chunks_created,
                "avg_time_ms": round(
                    self.total_ingestion_time_ms / max(self.documents_ingested, 1), 2
                ),
                "stage_ms": {k: round(v, 2) for k, v in self.stage_durations_ms.items()},
            },
            "errors": dict(self.errors_by_type),
        }


class MetricsCollector:
    """
    Collects and aggregates pipeline metrics.

    Usage:
        collector = MetricsCollector()

        with collector.track_query(organization_id, query_text) as tracker:
            response = orchestrator.query(request)
            tracker.set_results(len(response.sources), cache_hit=response.cached)

        metrics = collector.get_metrics()
    """

    def __init__(self, max_history: int = 1000):
        self.metrics = SystemMetrics()
        self._query_history: list[QueryMetrics] = []
        self._max_history = max_history
        self._start_time = datetime.now()
        self._lock = threading.Lock()

    def reset(self):
        """Reset all metrics."""
        with self._lock:
            self.metrics = SystemMetrics()
            self._query_history = []
            self._start_time = datetime.now()

    class QueryTracker:
        """Context manager for tracking query metrics."""

        def __init__(self, collector: 'MetricsCollector', organization_id: str, query_text: str):
            self.collector = collector
            self.query = QueryMetrics(
                query_id=f"q_{uuid.uuid4().hex[:12]}",
                organization_id=organization_id,
                query_text=query_text[:200],  # Truncate for storage
                start_time=time.time(),
            )

        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc_val, exc_tb):
            self.query.end_time = time.time()
            self.query.latency_ms = (self.query.end_time - self.query.start_time) * 1000

            if exc_type:
                self.query.error = str(exc_val)
                self.collector.record_error(exc_type.__name__)

            self.collector._record_query(self.query)
            return False  # Don't suppress exceptions

        def set_results(self, count: int, cache_hit: bool = False, failed_corpora: Optional[list] = None):
            """Set query result metadata."""
            self.query.sources_count = count
            self.query.cache_hit = cache_hit
            self.query.failed_corpora = list(failed_corpora or [])

        def set_error(self, error_type: str):
            """Mark a query that returned a degraded response instead of raising."""
            self.query.error = error_type
            self.collector.record_error(error_type)

    def track_query(self, organization_id: str, query_text: str) -> QueryTracker:
        return self.QueryTracker(self, organization_id, query_text)

    def _record_query(self, query: QueryMetrics):
        with self._lock:
            m = self.metrics
            m.total_queries += 1
            if query.error:
                m.failed_queries += 1
            else:
                m.successful_queries += 1

            m.total_latency_ms += query.latency_ms
            m.min_latency_ms = min(m.min_latency_ms, query.latency_ms)
            m.max_latency_ms = max(m.max_latency_ms, query.latency_ms)
            m.latencies.append(query.latency_ms)
            if len(m.latencies) > self._max_history:
                m.latencies = m.latencies[-self._max_history:]

            if query.cache_hit:
                m.cache_hits += 1
            else:
                m.cache_misses += 1

            for corpus in query.failed_corpora:
                m.corpus_failures[corpus] += 1

            m.queries_by_organization[query.organization_id] += 1

            self._query_history.append(query)
            if len(self._query_history) > self._max_history:
                self._query_history = self._query_history[-self._max_history:]

    def record_error(self, error_type: str):
        with self._lock:
            self.metrics.errors_by_type[error_type] += 1

    def record_ingestion(
        self,
        organization_id: str,
        document_id: str,
        status: str,
        chunks_count: int,
        duration_ms: float,
        stage_durations: Optional[dict] = None,
    ):
        """Record the outcome of one document pass through the pipeline."""
        with self._lock:
            m = self.metrics
            if status == "failed":
                m.documents_failed += 1
            else:
                m.documents_ingested += 1
                m.chunks_created += chunks_count
                m.total_ingestion_time_ms += duration_ms
                m.documents_by_organization[organization_id] += 1
                if status == "completed_with_warnings":
                    m.documents_with_warnings += 1
            for stage, ms in (stage_durations or {}).items():
                m.stage_durations_ms[stage] += ms
        logger.debug(f"Recorded ingestion of {document_id}: {status}, {chunks_count} chunks")

    def get_metrics(self) -> SystemMetrics:
        return self.metrics

    def get_metrics_dict(self) -> dict:
        with self._lock:
            return self.metrics.to_dict()

    def get_recent_queries(self, limit: int = 10) -> list[QueryMetrics]:
        """Get most recent queries."""
        return self._query_history[-limit:]

    def get_uptime(self) -> timedelta:
        return datetime.now() - self._start_time

    def get_organization_summary(self) -> dict:
        return {
            "queries_by_organization": dict(self.metrics.queries_by_organization),
            "documents_by_organization": dict(self.metrics.documents_by_organization),
        }


# CLI for testing
if __name__ == "__main__":
    import json
    import random

    collector = MetricsCollector()

    for i in range(20):
        org = f"org_{random.randint(1, 3)}"
        with collector.track_query(org, f"سؤال تجريبي {i}") as tracker:
            time.sleep(random.uniform(0.01, 0.05))
            tracker.set_results(
                count=random.randint(0, 5),
                cache_hit=random.random() > 0.7,
                failed_corpora=["labor_law"] if random.random() > 0.9 else [],
            )

    print(json.dumps(collector.get_metrics_dict(), indent=2, ensure_ascii=False))
    print(f"Uptime: {collector.get_uptime()}")
