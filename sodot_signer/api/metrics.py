"""Prometheus metrics for the Sodot signer."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, generate_latest

# --- HTTP surface ---
REQUEST_COUNT = Counter(
    "sodot_signer_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

REQUEST_LATENCY = Histogram(
    "sodot_signer_request_latency_seconds",
    "Request latency in seconds",
    ["endpoint"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

RATE_LIMIT_REJECTIONS = Counter(
    "sodot_signer_rate_limit_rejections_total",
    "Total requests rejected by rate limiter",
)

ACTIVE_SESSIONS = Gauge(
    "sodot_signer_active_sessions",
    "Number of chain sessions currently held",
)

# --- Vertex calls ---
VERTEX_REQUESTS = Counter(
    "sodot_signer_vertex_requests_total",
    "Vertex calls by outcome",
    ["vertex", "operation", "status"],  # status: HTTP code, timeout, unreachable
)

VERTEX_LATENCY = Histogram(
    "sodot_signer_vertex_latency_seconds",
    "Vertex call latency in seconds",
    ["operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

VERTEX_RETRIES = Counter(
    "sodot_signer_vertex_retries_total",
    "Vertex calls retried after a transport failure",
    ["vertex", "operation"],
)

VERTEX_CIRCUIT_OPEN = Gauge(
    "sodot_signer_vertex_circuit_open",
    "Whether a vertex is tripped after repeated outages (1) or reachable (0)",
    ["vertex"],
)

# --- Protocol runs ---
PROTOCOL_RUNS = Counter(
    "sodot_signer_protocol_runs_total",
    "Keygen and signing runs by result",
    ["protocol", "curve", "result"],  # protocol: keygen, sign
)

PROTOCOL_DURATION = Histogram(
    "sodot_signer_protocol_duration_seconds",
    "End-to-end keygen/signing duration",
    ["protocol"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)


def metrics_response() -> bytes:
    """Generate Prometheus-compatible metrics text."""
    return generate_latest()
