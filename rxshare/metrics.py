"""Prometheus metrics for the sharing subsystem."""

from __future__ import annotations

from prometheus_client import REGISTRY, Counter, Histogram


def _get_or_create_metric(metric_cls, name: str, documentation: str, labelnames):
    existing = REGISTRY._names_to_collectors.get(name)
    if existing is not None:
        return existing
    return metric_cls(name, documentation, labelnames=labelnames)


GRANTS_ISSUED = _get_or_create_metric(
    Counter,
    "rxshare_grants_issued_total",
    "Share grants issued",
    ("origin",),
)
TOKEN_COLLISIONS = _get_or_create_metric(
    Counter,
    "rxshare_token_collisions_total",
    "Generated share tokens rejected because they already existed",
    (),
)
RESOLVE_OUTCOMES = _get_or_create_metric(
    Counter,
    "rxshare_resolve_total",
    "Token and owner reads by outcome",
    ("path", "outcome"),
)
LINK_OUTCOMES = _get_or_create_metric(
    Counter,
    "rxshare_link_total",
    "Link attempts by outcome",
    ("status",),
)
FEED_EVENTS = _get_or_create_metric(
    Counter,
    "rxshare_feed_events_total",
    "Change events published to the feed",
    ("kind",),
)
FEED_RESYNCS = _get_or_create_metric(
    Counter,
    "rxshare_feed_resyncs_total",
    "Subscribers whose buffer overflowed and must resync",
    (),
)
REQUEST_COUNTER = _get_or_create_metric(
    Counter,
    "rxshare_requests_total",
    "Total HTTP requests processed",
    ("method", "endpoint", "status"),
)
REQUEST_LATENCY = _get_or_create_metric(
    Histogram,
    "rxshare_request_latency_seconds",
    "Latency of HTTP requests",
    ("method", "endpoint"),
)


__all__ = [
    "FEED_EVENTS",
    "FEED_RESYNCS",
    "GRANTS_ISSUED",
    "LINK_OUTCOMES",
    "REQUEST_COUNTER",
    "REQUEST_LATENCY",
    "RESOLVE_OUTCOMES",
    "TOKEN_COLLISIONS",
]
