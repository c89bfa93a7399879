from prometheus_client import Counter, Gauge

ORDERS = Counter(
    "orders_total",
    "Order creation attempts by outcome",
    ["outcome"],  # confirmed | unavailable | upstream_unavailable | persistence_failed | invalid
)

COMPENSATIONS = Counter(
    "order_compensations_total",
    "Stock releases issued to undo partial reservations",
    ["result"],  # released | deferred
)

EVENTS_PUBLISHED = Counter(
    "order_events_published_total",
    "order.created publish attempts",
    ["path", "result"],  # path: inline | relay; result: published | failed
)

OUTBOX_PENDING = Gauge(
    "order_outbox_pending",
    "Outbox messages not yet acknowledged by the broker",
)
