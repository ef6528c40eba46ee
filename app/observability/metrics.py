"""
Prometheus metrics for the reconciliation engine.
"""

from prometheus_client import Counter, Histogram


# ── Receipt Matching ─────────────────────────────────────────
match_candidates_scored_total = Counter(
    "match_candidates_scored_total",
    "Total transaction candidates scored against receipts",
)

matches_created_total = Counter(
    "matches_created_total",
    "Total matches written by the engine",
    ["status"],
)

# ── Duplicates ───────────────────────────────────────────────
duplicates_flagged_total = Counter(
    "duplicates_flagged_total",
    "Total focal records flagged as duplicates",
    ["record_type"],
)

duplicate_groups_created_total = Counter(
    "duplicate_groups_created_total",
    "Total duplicate groups created or extended",
    ["action"],
)

# ── Fraud ────────────────────────────────────────────────────
fraud_alerts_total = Counter(
    "fraud_alerts_total",
    "Total fraud alerts raised",
    ["alert_type"],
)

fraud_risk_scores = Histogram(
    "fraud_risk_scores",
    "Distribution of overall fraud risk per evaluation",
    ["record_type"],
    buckets=[0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0],
)

# ── Advanced Matching ────────────────────────────────────────
splits_created_total = Counter(
    "splits_created_total",
    "Total transaction splits persisted",
)

recurring_events_total = Counter(
    "recurring_events_total",
    "Recurring pattern matches and auto-detections",
    ["event"],
)

calendar_correlations_total = Counter(
    "calendar_correlations_total",
    "Total calendar correlations persisted",
    ["correlation_type"],
)

# ── Latency ──────────────────────────────────────────────────
detector_duration_seconds = Histogram(
    "detector_duration_seconds",
    "Time per detector invocation",
    ["detector"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5],
)
