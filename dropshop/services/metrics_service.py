"""Domain counters exported on /metrics next to the HTTP metrics."""
from prometheus_client import Counter

inventory_reservations_total = Counter(
    'inventory_reservations_total',
    'Batch reservation attempts against the drop stock ledger',
    ['outcome'],
)

inventory_releases_total = Counter(
    'inventory_releases_total',
    'Reservation releases applied to the drop stock ledger',
    ['reason'],
)

orders_created_total = Counter(
    'orders_created_total',
    'Orders persisted, by creation flow',
    ['flow'],
)

stripe_webhook_events_total = Counter(
    'stripe_webhook_events_total',
    'Stripe webhook deliveries by event type and outcome',
    ['event_type', 'outcome'],
)

admin_alerts_total = Counter(
    'admin_alerts_total',
    'Admin alerts raised, by severity',
    ['severity'],
)
