"""Prometheus metrics shared by the pipeline components."""

from prometheus_client import Counter, Gauge, Histogram

EVENTS_TOTAL = Counter(
    "token_alert_events_total",
    "Total number of events evaluated",
    ["event_type"],
)

RULE_OUTCOMES = Counter(
    "token_alert_rule_outcomes_total",
    "Rule matches by outcome (fired, rate_limited, deduplicated, near_duplicate, error)",
    ["outcome"],
)

EVALUATION_LATENCY = Histogram(
    "token_alert_evaluation_latency_seconds",
    "Time spent evaluating all rules for one event",
    buckets=[0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
)

DELIVERY_TRANSITIONS = Counter(
    "token_alert_delivery_transitions_total",
    "Delivery record state transitions",
    ["channel_type", "status"],
)

DELIVERY_LATENCY = Histogram(
    "token_alert_delivery_latency_seconds",
    "Time from record creation to confirmed delivery",
    ["channel_type"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0],
)

BATCHES_TOTAL = Counter(
    "token_alert_batches_total",
    "Batches flushed by the batcher",
    ["alert_type"],
)

HUB_CONNECTIONS = Gauge(
    "token_alert_hub_connections",
    "Live broadcast hub connections",
    ["state"],
)

HUB_FRAMES_SENT = Counter(
    "token_alert_hub_frames_sent_total",
    "Frames written to hub connections",
    ["type"],
)
