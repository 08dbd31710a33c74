"""Prometheus metrics for test execution."""

from prometheus_client import Counter, Histogram, Info, generate_latest
from starlette.responses import Response

# --- Metrics ---

APP_INFO = Info("promptforge", "Prompt Forge execution engine info")
APP_INFO.info({"version": "0.1.0", "name": "promptforge"})

TEST_RUNS = Counter(
    "promptforge_test_runs_total",
    "Terminal test case results written by the executor",
    ["status"],
)

TEST_RETRIES = Counter(
    "promptforge_test_retries_total",
    "Retries scheduled after a transient model invoker failure",
    ["kind"],
)

TEST_DURATION = Histogram(
    "promptforge_test_duration_seconds",
    "Wall-clock time of a completed test case run",
    buckets=[0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120],
)

BATCH_RUNS = Counter(
    "promptforge_batch_runs_total",
    "Batch executions by outcome",
    ["outcome"],
)


def metrics_response() -> Response:
    """Generate Prometheus /metrics response."""
    return Response(
        content=generate_latest(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
