"""Prometheus metrics for the gateway."""

from prometheus_client import Counter, Histogram, Info, generate_latest

# --- Metrics ---

APP_INFO = Info("promptgate", "Completion gateway info")
APP_INFO.info({"version": "1.0.0", "name": "promptgate"})

SUBMISSIONS = Counter(
    "promptgate_submissions_total",
    "Gateway submissions by backend and stop reason",
    ["backend", "stop_reason"],
)

SUBMISSION_FAILURES = Counter(
    "promptgate_submission_failures_total",
    "Submissions that raised to the caller",
    ["backend", "error"],
)

SUBMISSION_DURATION = Histogram(
    "promptgate_submission_duration_seconds",
    "End-to-end submission duration in seconds",
    ["backend"],
    buckets=[0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 300],
)

FALLBACK_SUBSTITUTIONS = Counter(
    "promptgate_fallback_substitutions_total",
    "Model substitutions performed by the fallback policy",
    ["backend", "from_model", "to_model"],
)

MALFORMED_FRAGMENTS = Counter(
    "promptgate_malformed_fragments_total",
    "Stream fragments skipped because they could not be parsed",
    ["backend"],
)


def metrics_payload() -> bytes:
    """Render all metrics in the Prometheus text exposition format."""
    return generate_latest()
