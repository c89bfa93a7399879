from prometheus_client import Counter, Histogram

MESSAGES_CONSUMED = Counter(
    "shipping_messages_consumed_total",
    "order.created messages consumed by the shipping service",
    ["status"],  # processed | retried | dlq | rewound
)

SHIPMENTS_CREATED = Counter(
    "shipments_created_total",
    "Outcome of order.created handling",
    ["result"],  # created | duplicate
)

TRANSITIONS = Counter(
    "shipment_transitions_total",
    "Shipment status changes",
    ["source", "status"],  # source: manual | scheduled
)

SCHEDULED_ACTIONS = Counter(
    "shipment_scheduled_actions_total",
    "Due scheduled transitions by resolution",
    ["result"],  # applied | discarded | skipped
)

SCHEDULER_LAG = Histogram(
    "shipment_scheduler_lag_seconds",
    "Delay between an action's due time and its application",
    buckets=[0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0],
)
