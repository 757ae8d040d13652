from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

REQUESTS_TOTAL = Counter(
    "genserve_requests_total",
    "Request outcomes by endpoint.",
    ["endpoint", "result", "reason"],
)
TOKENS_GENERATED_TOTAL = Counter(
    "genserve_tokens_generated_total",
    "Generated output tokens by endpoint.",
    ["endpoint"],
)
CONTEXT_LENGTH_CLAMPS_TOTAL = Counter(
    "genserve_context_length_clamps_total",
    "Requests whose context_length was clamped to the configured default.",
)
DEGENERATE_REQUESTS_TOTAL = Counter(
    "genserve_degenerate_requests_total",
    "Requests admitted with no room left for generated tokens.",
)
ABORTS_TOTAL = Counter(
    "genserve_aborts_total",
    "Aborted generations.",
    ["reason"],
)

ONGOING_REQUESTS = Gauge(
    "genserve_ongoing_requests",
    "In-flight generations on this replica.",
)
AUTOSCALER_DESIRED_REPLICAS = Gauge(
    "genserve_autoscaler_desired_replicas",
    "Replica count recommended by the autoscaling controller.",
)
AUTOSCALER_AVERAGE_ONGOING = Gauge(
    "genserve_autoscaler_average_ongoing_requests",
    "Windowed average ongoing requests per replica.",
)

TTFT_SECONDS = Histogram(
    "genserve_ttft_seconds",
    "Time from admission to first engine output.",
    ["endpoint"],
)
REQUEST_DURATION_SECONDS = Histogram(
    "genserve_request_duration_seconds",
    "Time from admission to terminal state.",
    ["endpoint", "state"],
)


class Telemetry:
    def record_request_outcome(self, endpoint: str, result: str, reason: str) -> None:
        REQUESTS_TOTAL.labels(endpoint=endpoint, result=result, reason=reason).inc()

    def add_generated_tokens(self, endpoint: str, count: int) -> None:
        TOKENS_GENERATED_TOTAL.labels(endpoint=endpoint).inc(max(0, count))

    def record_context_length_clamp(self) -> None:
        CONTEXT_LENGTH_CLAMPS_TOTAL.inc()

    def record_degenerate_request(self) -> None:
        DEGENERATE_REQUESTS_TOTAL.inc()

    def record_abort(self, reason: str) -> None:
        ABORTS_TOTAL.labels(reason=reason).inc()

    def set_ongoing_requests(self, count: int) -> None:
        ONGOING_REQUESTS.set(max(0, count))

    def observe_ttft(self, endpoint: str, value: float) -> None:
        TTFT_SECONDS.labels(endpoint=endpoint).observe(max(0.0, value))

    def observe_request_duration(self, endpoint: str, state: str, value: float) -> None:
        REQUEST_DURATION_SECONDS.labels(endpoint=endpoint, state=state).observe(max(0.0, value))

    def set_autoscaler_state(self, desired_replicas: int, average_ongoing: float) -> None:
        AUTOSCALER_DESIRED_REPLICAS.set(desired_replicas)
        AUTOSCALER_AVERAGE_ONGOING.set(max(0.0, average_ongoing))

    @staticmethod
    def scrape() -> tuple[bytes, str]:
        return generate_latest(), CONTENT_TYPE_LATEST
