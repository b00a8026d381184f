from prometheus_client import Counter, Gauge

ORDER_TRANSITIONS = Counter(
    "order_status_transitions_total",
    "Applied order status transitions",
    ["from_status", "to_status"],
)

ORDER_TRANSITIONS_REJECTED = Counter(
    "order_status_transitions_rejected_total",
    "Status transitions rejected by the state machine",
    ["reason"],  # not_allowed | concurrent_update
)

WEBHOOK_EVENTS = Counter(
    "payment_webhook_events_total",
    "Payment gateway webhook deliveries by outcome",
    ["outcome"],  # processed | already_processed | no_order_id | order_not_found | invalid_signature | invalid_payload
)

AUDIT_WRITE_FAILURES = Counter(
    "audit_write_failures_total",
    "Audit events that could not be persisted",
)

CIRCUIT_STATE = Gauge(
    "payment_gateway_circuit_state",
    "Payment gateway circuit breaker state (0=closed, 1=half_open, 2=open)",
)
