"""
SIWA Metrics.

Provides Prometheus metrics for challenge issuance, verification outcomes,
replay attempts and rate limiting, alongside a simple in-memory stats dict.
"""

import time
import threading
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest


class SIWAMetrics:
    """
    Metrics collector for SIWA server operations.

    Example:
        >>> metrics = SIWAMetrics()
        >>> server = SIWAServer(config, metrics=metrics)
        >>> ...
        >>> metrics.get_stats()
        {'challenges_issued': 3, 'verifications_success': 2, ...}
        >>> metrics.get_prometheus_metrics()  # text exposition format
    """

    def __init__(
        self,
        namespace: str = "siwa",
        enable_prometheus: bool = True,
        registry: Optional[CollectorRegistry] = None,
    ):
        """
        Initialize metrics collector.

        Args:
            namespace: Metric name prefix.
            enable_prometheus: Whether to register Prometheus metrics.
            registry: Prometheus registry (a private one is created if None).
        """
        self._namespace = namespace
        self._lock = threading.Lock()
        self._counters: Dict[str, float] = {}
        self._durations: List[float] = []

        self._registry: Optional[CollectorRegistry] = None
        self._prom_metrics: Dict[str, Any] = {}
        if enable_prometheus:
            self._registry = registry or CollectorRegistry()
            self._setup_prometheus_metrics(self._registry)

    def _setup_prometheus_metrics(self, reg: CollectorRegistry) -> None:
        ns = self._namespace
        self._prom_metrics["challenges"] = Counter(
            f"{ns}_challenges_issued_total", "Total challenges issued", registry=reg
        )
        self._prom_metrics["verifications"] = Counter(
            f"{ns}_verifications_total",
            "Total signature verification attempts",
            ["status", "code"],
            registry=reg,
        )
        self._prom_metrics["verification_duration"] = Histogram(
            f"{ns}_verification_duration_seconds",
            "Signature verification latency in seconds",
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
            registry=reg,
        )
        self._prom_metrics["sessions"] = Counter(
            f"{ns}_sessions_total", "Session lifecycle events", ["event"], registry=reg
        )
        self._prom_metrics["replays_blocked"] = Counter(
            f"{ns}_replays_blocked_total",
            "Verifications rejected because the nonce was unknown or already used",
            registry=reg,
        )
        self._prom_metrics["rate_limited"] = Counter(
            f"{ns}_rate_limit_exceeded_total", "Challenges refused by the rate limiter", registry=reg
        )

    def _incr(self, key: str) -> None:
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + 1

    def record_challenge(self) -> None:
        """Record a challenge issuance."""
        self._incr("challenges_issued")
        if self._prom_metrics:
            self._prom_metrics["challenges"].inc()

    def record_verification(self, success: bool, code: Optional[str] = None) -> None:
        """Record a verification outcome, with the error code on failure."""
        status = "success" if success else "failure"
        self._incr(f"verifications_{status}")
        if code:
            self._incr(f"failures_{code}")
        if self._prom_metrics:
            self._prom_metrics["verifications"].labels(status=status, code=code or "").inc()

    def record_session(self, event: str) -> None:
        """Record a session event ("issued" or "revoked")."""
        self._incr(f"sessions_{event}")
        if self._prom_metrics:
            self._prom_metrics["sessions"].labels(event=event).inc()

    def record_replay_blocked(self) -> None:
        self._incr("replays_blocked")
        if self._prom_metrics:
            self._prom_metrics["replays_blocked"].inc()

    def record_rate_limit_exceeded(self) -> None:
        self._incr("rate_limits")
        if self._prom_metrics:
            self._prom_metrics["rate_limited"].inc()

    @contextmanager
    def verification_timer(self):
        """Context manager for timing verifications."""
        start = time.perf_counter()
        try:
            yield
        finally:
            duration = time.perf_counter() - start
            with self._lock:
                self._durations.append(duration)
            if self._prom_metrics:
                self._prom_metrics["verification_duration"].observe(duration)

    def get_stats(self) -> Dict[str, Any]:
        """Get current metrics as a dictionary."""
        with self._lock:
            stats: Dict[str, Any] = dict(self._counters)
            if self._durations:
                stats["verification_duration_avg"] = sum(self._durations) / len(self._durations)
                stats["verification_duration_count"] = len(self._durations)

        total = stats.get("verifications_success", 0) + stats.get("verifications_failure", 0)
        if total > 0:
            stats["verification_success_rate"] = stats.get("verifications_success", 0) / total
        return stats

    def get_prometheus_metrics(self) -> Optional[bytes]:
        """Get metrics in Prometheus text format."""
        if self._registry is None:
            return None
        return generate_latest(self._registry)
