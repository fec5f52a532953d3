from prometheus_client import Counter, Gauge

PUSH_EVENTS_APPLIED = Counter(
    "delivery_sync_push_events_applied_total",
    "Order-changed push events applied to a dashboard cache",
    ["view"]
)

PUSH_EVENTS_IGNORED = Counter(
    "delivery_sync_push_events_ignored_total",
    "Push events dropped before reaching a dashboard cache",
    ["view", "reason"]
)

ASSIGNMENT_OUTCOMES = Counter(
    "delivery_sync_assignment_outcomes_total",
    "Results of driver status transitions",
    ["outcome"]
)

ACTIVE_DASHBOARDS = Gauge(
    "delivery_sync_active_dashboards",
    "Dashboards currently mounted",
    ["view"]
)
