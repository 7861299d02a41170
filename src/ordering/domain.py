"""Ordering bounded context: order fulfillment and payment reconciliation.

Turns a validated cart into a multi-vendor order and drives it through
inventory reservation, payment authorization, shipment, cancellation,
returns and refunds. Consistency across the inventory ledger, the payment
gateway and the notification channel is kept with compensating actions
rather than distributed transactions.
"""

import structlog
from protean.domain import Domain

ordering = Domain(name="ordering")

logger = structlog.get_logger(__name__)
