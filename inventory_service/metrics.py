from prometheus_client import Counter

RESERVATIONS = Counter(
    "inventory_reservations_total",
    "Stock ledger operations by outcome",
    ["outcome"],  # reserved | replayed | insufficient | not_found | released | release_noop | release_before_reserve | restocked
)

AVAILABILITY_CHECKS = Counter(
    "inventory_availability_checks_total",
    "Availability checks by overall verdict",
    ["verdict"],  # available | unavailable
)
