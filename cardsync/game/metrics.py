"""Prometheus metrics for the reconciliation pipeline."""
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

EVENTS_APPLIED = Counter(
    "cardsync_events_applied_total",
    "Events folded into a session view, by fold outcome",
    ["outcome"],
)

EVENTS_MALFORMED = Counter(
    "cardsync_events_malformed_total",
    "Raw events dropped as structurally invalid",
)

EVENTS_DUPLICATE = Counter(
    "cardsync_events_duplicate_total",
    "Events dropped as duplicates",
    ["stage"],  # "normalizer" or "engine"
)

CONFLICTS_REJECTED = Counter(
    "cardsync_conflicts_rejected_total",
    "Actions that lost the slot tie-break",
)

GAPS_OPENED = Counter(
    "cardsync_gaps_opened_total",
    "Sequence gaps wider than the reorder window",
)

FOLD_ERRORS = Counter(
    "cardsync_fold_errors_total",
    "Well-formed events that failed to fold",
)

CHECKPOINT_FAILURES = Counter(
    "cardsync_checkpoint_failures_total",
    "Checkpoint writes that failed or timed out",
)

CHECKPOINT_LATENCY = Histogram(
    "cardsync_checkpoint_latency_seconds",
    "Time spent writing a checkpoint",
)

ACTIVE_WORKERS = Gauge(
    "cardsync_active_workers",
    "Session workers currently registered with the supervisor",
)

DEGRADED_SESSIONS = Gauge(
    "cardsync_degraded_sessions",
    "Live sessions with an open gap or a fold fault",
)


def render_latest() -> tuple[bytes, str]:
    """Return the exposition payload and its content type."""
    return generate_latest(), CONTENT_TYPE_LATEST
