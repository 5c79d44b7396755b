# File: metrics.py

from prometheus_client import Counter, Gauge, Histogram

METRICS = {
    "poll_attempts": Counter(
        "harness_poll_attempts_total",
        "Fetch-and-check iterations performed by the readiness poller",
        ["predicate"],
    ),
    "fetch_errors": Counter(
        "harness_poll_fetch_errors_total",
        "Fetch errors tolerated inside the readiness poller",
    ),
    "convergence_seconds": Histogram(
        "harness_convergence_duration_seconds",
        "Time until a wait predicate was satisfied",
        ["phase"],
        buckets=(1, 5, 15, 30, 60, 120, 300, 600, 960),
    ),
    "cleanup_failures": Counter(
        "harness_cleanup_failures_total",
        "Cleanup actions that raised during unwind",
    ),
    "scenarios_total": Counter(
        "harness_scenarios_total",
        "Scenario runs by outcome",
        ["outcome"],
    ),
    "api_requests": Counter(
        "simulator_api_requests_total",
        "Total simulator REST API requests",
        ["method", "endpoint"],
    ),
    "provider_resources": Gauge(
        "simulator_provider_resources",
        "Live provider resources by kind",
        ["kind"],
    ),
}
