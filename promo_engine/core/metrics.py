from __future__ import annotations

from typing import Any, Callable

from prometheus_client import Counter, Histogram, generate_latest
from prometheus_client.exposition import CONTENT_TYPE_LATEST

from promo_engine.core.config import settings


class _NoOpMetric:
    def labels(self, *args: Any, **kwargs: Any) -> "_NoOpMetric":
        return self

    def observe(self, *_: Any, **__: Any) -> None:
        return None

    def inc(self, *_: Any, **__: Any) -> None:
        return None


def _metric_or_noop(metric_factory: Callable[[], Any]) -> Any:
    if not settings.METRICS_ENABLED:
        return _NoOpMetric()
    return metric_factory()


EVALUATION_LATENCY = _metric_or_noop(
    lambda: Histogram(
        f"{settings.METRICS_NAMESPACE}_evaluation_duration_seconds",
        "Promotion evaluation latency in seconds.",
        ["outcome"],
        buckets=settings.METRICS_LATENCY_BUCKETS,
    )
)

PROMOTIONS_APPLIED = _metric_or_noop(
    lambda: Counter(
        f"{settings.METRICS_NAMESPACE}_promotions_applied_total",
        "Promotions applied to carts, partitioned by promotion type.",
        ["promotion_type"],
    )
)

INTEGRITY_FAILURES = _metric_or_noop(
    lambda: Counter(
        f"{settings.METRICS_NAMESPACE}_integrity_failures_total",
        "Integrity validation failures partitioned by check.",
        ["check"],
    )
)

CACHE_REQUESTS = _metric_or_noop(
    lambda: Counter(
        f"{settings.METRICS_NAMESPACE}_cache_requests_total",
        "Promotion cache lookups partitioned by section and result.",
        ["section", "result"],
    )
)

USAGE_COMMITS = _metric_or_noop(
    lambda: Counter(
        f"{settings.METRICS_NAMESPACE}_usage_commits_total",
        "Commit-time usage recordings partitioned by outcome.",
        ["outcome"],
    )
)


def record_evaluation(outcome: str, elapsed: float) -> None:
    EVALUATION_LATENCY.labels(outcome=outcome).observe(elapsed)


def record_applied(promotion_type: str) -> None:
    PROMOTIONS_APPLIED.labels(promotion_type=promotion_type).inc()


def record_integrity_failure(check: str) -> None:
    INTEGRITY_FAILURES.labels(check=check).inc()


def record_cache_request(section: str, hit: bool) -> None:
    CACHE_REQUESTS.labels(section=section, result="hit" if hit else "miss").inc()


def record_usage_commit(outcome: str) -> None:
    USAGE_COMMITS.labels(outcome=outcome).inc()


def export_metrics() -> tuple[bytes, str]:
    if not settings.METRICS_ENABLED:
        return b"", "text/plain; charset=utf-8"
    return generate_latest(), CONTENT_TYPE_LATEST
