"""Prometheus metric helpers and idempotency metrics."""
from __future__ import annotations

from typing import Iterable, Tuple

from prometheus_client import Counter


def _label_tuple(labels: Iterable[str] | None) -> Tuple[str, ...]:
    return tuple(labels) if labels else ()


def metric_counter(
    name: str,
    documentation: str,
    labels: Iterable[str] | None = None,
) -> Counter:
    return Counter(name, documentation, _label_tuple(labels))


# Core idempotency metrics (names kept stable)
IDEMP_HITS = metric_counter(
    "soundbite_idemp_hits_total",
    "Idempotency cache hits",
    ["method", "backend"],
)
IDEMP_MISSES = metric_counter(
    "soundbite_idemp_misses_total",
    "Idempotency cache misses",
    ["method", "backend"],
)
IDEMP_STORES = metric_counter(
    "soundbite_idemp_stores_total",
    "Responses persisted for replay",
    ["method", "backend"],
)
IDEMP_REJECTIONS = metric_counter(
    "soundbite_idemp_rejections_total",
    "Requests rejected by idempotency validation",
    ["reason"],
)
IDEMP_ERRORS = metric_counter(
    "soundbite_idemp_errors_total",
    "Errors during idempotency phases",
    ["phase"],
)
IDEMP_EVICTIONS = metric_counter(
    "soundbite_idemp_evictions_total",
    "Entries dropped from the in-memory idempotency cache",
    ["reason"],
)
IDEMP_BACKEND_ERRORS = metric_counter(
    "soundbite_idemp_backend_errors_total",
    "Networked cache operations that failed after retries",
    ["op"],
)
