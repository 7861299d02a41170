"""Checkout saga: turns a validated cart into a pending order.

Flow:
    1. Read the validated cart (EmptyCartError when there is nothing in it)
    2. Snapshot price, vendor and weight of every product from the catalog
    3. Price the lines, coupon and shipping with the pricing engine
    4. Reserve stock line by line, all or nothing
    5. Consume the coupon (InvalidCouponError when another order used it up)
    6. Persist the Order in PENDING
    7. Clear the cart, notify the buyer

Steps 1-3 have no side effects. From step 4 on, any failure releases every
reservation and the coupon use taken for the order before the error
propagates, so a failed checkout never leaves stock held. Step 7 is best
effort: the order exists at that point and is not undone if it fails.
"""

from uuid import uuid4

import structlog
from protean.utils.globals import current_domain

from ordering.collaborators import get_cart_service, get_catalog, get_coupon_book, get_notifier
from ordering.collaborators.notifications import notify_quietly
from ordering.errors import EmptyCartError, UnknownProductError
from ordering.inventory.ledger import InventoryLedger
from ordering.money import to_decimal
from ordering.order.order import Order, generate_order_number
from ordering.pricing.engine import PricedLine, build_pricing_engine
from ordering.pricing.shipping import ShippingMethod, estimate_delivery
from ordering.settings import get_settings
from ordering.timeutils import utcnow
from ordering.utils.logging import add_context

logger = structlog.get_logger(__name__)


class CheckoutSaga:
    def __init__(
        self,
        cart_service=None,
        catalog=None,
        pricing=None,
        ledger=None,
        coupon_book=None,
        notifier=None,
        settings=None,
    ) -> None:
        self.settings = settings or get_settings()
        self.cart_service = cart_service or get_cart_service()
        self.catalog = catalog or get_catalog()
        self.coupon_book = coupon_book or get_coupon_book()
        self.pricing = pricing or build_pricing_engine(self.settings, coupon_book=self.coupon_book)
        self.ledger = ledger or InventoryLedger(self.settings)
        self.notifier = notifier or get_notifier()

    def place_order(
        self,
        buyer_id: str,
        shipping_address: dict,
        shipping_method: str = ShippingMethod.STANDARD.value,
        coupon_code: str | None = None,
    ) -> Order:
        """Place an order for everything in the buyer's cart.

        Raises:
            EmptyCartError: The cart has no lines.
            UnknownProductError: A cart line is not in the catalog.
            InvalidCouponError: The coupon cannot be applied.
            InsufficientStockError: A line could not be reserved.
        """
        buyer_id = str(buyer_id)
        cart = self.cart_service.get_validated_cart(buyer_id)
        if not cart:
            raise EmptyCartError("Cart is empty", {"buyer_id": buyer_id})

        lines = [self._price_line(cart_line) for cart_line in cart]
        now = utcnow()
        totals = self.pricing.compute_totals(
            lines,
            coupon_code=coupon_code,
            shipping_method=shipping_method,
            as_of=now,
        )

        order_id = str(uuid4())
        order_number = generate_order_number(now)
        add_context(order_number=order_number)

        reservations = []
        coupon_consumed = False
        try:
            for line in totals.lines:
                reservations.append(self.ledger.reserve(line.product_id, line.quantity, order_id))

            if totals.coupon is not None:
                self.coupon_book.consume(totals.coupon.code, order_number)
                coupon_consumed = True

            order = Order.place(
                order_id=order_id,
                order_number=order_number,
                buyer_id=buyer_id,
                totals=totals,
                shipping_address=shipping_address,
                estimated_delivery=estimate_delivery(totals.shipping_method, now),
            )
            current_domain.repository_for(Order).add(order)
        except Exception as exc:
            self._compensate(order_number, reservations, exc)
            if coupon_consumed:
                self.coupon_book.release(totals.coupon.code, order_number)
            raise

        self.cart_service.clear(buyer_id)

        logger.info(
            "Order placed",
            order_number=order_number,
            buyer_id=buyer_id,
            items=len(totals.lines),
            total_amount=str(totals.total),
            coupon_code=totals.coupon_code,
        )
        notify_quietly(
            self.notifier,
            buyer_id,
            "order_placed",
            {"order_number": order_number, "total_amount": str(totals.total), "currency": totals.currency},
        )
        return order

    def _price_line(self, cart_line) -> PricedLine:
        product = self.catalog.get_price_and_availability(cart_line.product_id)
        if product is None:
            raise UnknownProductError("Product not found", {"product_id": cart_line.product_id})
        return PricedLine(
            product_id=str(product.product_id),
            quantity=cart_line.quantity,
            unit_price=to_decimal(product.price),
            vendor_id=str(product.vendor_id),
            name=product.name,
            sku=product.sku,
            weight=product.weight,
            requires_shipping=product.requires_shipping,
        )

    def _compensate(self, order_number, reservations, exc) -> None:
        logger.warning(
            "Checkout failed, releasing reservations",
            order_number=order_number,
            reservations=len(reservations),
            error=str(exc),
        )
        for reservation_id in reservations:
            try:
                self.ledger.release(reservation_id, reason="checkout_failed")
            except Exception as release_error:
                logger.error(
                    "Could not release reservation during compensation",
                    anomaly="compensation_failure",
                    reservation_id=reservation_id,
                    error=str(release_error),
                )
