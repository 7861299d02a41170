"""Background sweep runner for the ordering domain.

Periodically runs the sweeps of the checkout saga:
- expired inventory reservations are released back to the stock pool
- payment authorizations left unconfirmed past the window are failed and
  their orders cancelled
- refunds of cancelled orders the gateway did not accept are retried

Usage:
    python src/server.py                 # Sweep every 60 seconds
    python src/server.py --interval 10   # Sweep every 10 seconds
    python src/server.py --once          # Run one sweep and exit
"""

import argparse
import asyncio

import structlog

logger = structlog.get_logger(__name__)


def _get_domain():
    from ordering.domain import ordering

    ordering.init()
    return ordering


def sweep(domain) -> dict:
    """Run every sweep once and return how many records each one handled."""
    from ordering.inventory.ledger import InventoryLedger
    from ordering.payment.coordinator import PaymentCoordinator

    with domain.domain_context():
        ledger = InventoryLedger()
        reservations = ledger.sweep_expired()
        coordinator = PaymentCoordinator(ledger=ledger)
        authorizations = coordinator.expire_stale_authorizations()
        refunds = coordinator.retry_pending_refunds()

    return {"reservations": reservations, "authorizations": authorizations, "refunds": refunds}


async def run(interval: float, once: bool = False):
    domain = _get_domain()
    while True:
        try:
            result = await asyncio.to_thread(sweep, domain)
            logger.info("Sweep finished", **result)
        except Exception as exc:
            logger.error("Sweep failed", error=str(exc))
        if once:
            return
        await asyncio.sleep(interval)


def main():
    from ordering.utils.logging import configure_logging

    parser = argparse.ArgumentParser(description="Ordering sweep runner")
    parser.add_argument(
        "--interval",
        type=float,
        default=60.0,
        help="Seconds between sweeps (default: 60)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single sweep and exit",
    )
    args = parser.parse_args()

    configure_logging()
    asyncio.run(run(args.interval, once=args.once))


if __name__ == "__main__":
    main()
