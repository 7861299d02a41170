from decimal import Decimal

import pytest
from protean.integrations.pytest import DomainFixture

ADDRESS = {
    "recipient_name": "Jane Doe",
    "street": "123 Main St",
    "city": "Springfield",
    "state": "IL",
    "postal_code": "62701",
    "country": "US",
}


@pytest.fixture(scope="session")
def ordering_bed():
    from ordering.domain import ordering
    from ordering.utils.db import drop_db, setup_db

    bed = DomainFixture(ordering)
    bed.setup()
    setup_db(ordering)
    yield bed
    drop_db(ordering)
    bed.teardown()


@pytest.fixture(autouse=True)
def _ctx(ordering_bed):
    with ordering_bed.domain_context():
        yield

        from protean import current_domain

        # Clear all databases
        for _, provider in current_domain.providers.items():
            provider._data_reset()

        # Drain event stores
        current_domain.event_store.store._data_reset()


# ---------------------------------------------------------------------------
# Configuration and adapters
# ---------------------------------------------------------------------------
@pytest.fixture()
def settings():
    """No tax and a flat 8.00 shipping rate keep expected totals readable."""
    from ordering.settings import Settings, set_settings

    settings = Settings(
        tax_rate=Decimal("0"),
        shipping_policy="flat",
        flat_shipping_rate=Decimal("8.00"),
        gateway_backoff_seconds=0.0,
    )
    set_settings(settings)
    return settings


@pytest.fixture()
def notifier():
    from ordering.collaborators import set_notifier
    from ordering.collaborators.notifications import RecordingNotifier

    notifier = RecordingNotifier()
    set_notifier(notifier)
    return notifier


@pytest.fixture()
def gateway(settings):
    from ordering.gateway import set_gateway
    from ordering.gateway.fake_adapter import FakeGateway

    gateway = FakeGateway(webhook_secret=settings.webhook_secret)
    set_gateway(gateway)
    return gateway


@pytest.fixture()
def catalog():
    from ordering.collaborators import set_catalog
    from ordering.collaborators.catalog import InMemoryCatalog, ProductSnapshot

    catalog = InMemoryCatalog()
    catalog.register(ProductSnapshot("prod-mug", Decimal("10.00"), "vendor-kitchen", name="Mug", sku="MUG-01"))
    catalog.register(ProductSnapshot("prod-lamp", Decimal("25.00"), "vendor-home", name="Lamp", sku="LAMP-01"))
    set_catalog(catalog)
    return catalog


@pytest.fixture()
def cart():
    from ordering.collaborators import set_cart_service
    from ordering.collaborators.cart import InMemoryCartService

    cart = InMemoryCartService()
    set_cart_service(cart)
    return cart


@pytest.fixture()
def coupons():
    from ordering.collaborators import set_coupon_book
    from ordering.pricing.coupons import Coupon, InMemoryCouponBook

    book = InMemoryCouponBook([Coupon(code="SAVE10", discount_type="percentage", value=Decimal("10"))])
    set_coupon_book(book)
    return book


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------
@pytest.fixture()
def ledger(settings):
    from ordering.inventory.ledger import InventoryLedger

    return InventoryLedger(settings)


@pytest.fixture()
def stocked(ledger):
    ledger.initialize("prod-mug", 10)
    ledger.initialize("prod-lamp", 5)
    return ledger


@pytest.fixture()
def coordinator(gateway, ledger, notifier, settings):
    from ordering.payment.coordinator import PaymentCoordinator

    return PaymentCoordinator(gateway=gateway, ledger=ledger, notifier=notifier, settings=settings, sleep=lambda _: None)


@pytest.fixture()
def saga(settings, catalog, cart, coupons, ledger, notifier):
    from ordering.checkout.saga import CheckoutSaga

    return CheckoutSaga(
        cart_service=cart,
        catalog=catalog,
        ledger=ledger,
        coupon_book=coupons,
        notifier=notifier,
        settings=settings,
    )


@pytest.fixture()
def returns(ledger, coordinator, notifier, settings):
    from ordering.returns.manager import ReturnManager

    return ReturnManager(ledger=ledger, coordinator=coordinator, notifier=notifier, settings=settings)


@pytest.fixture()
def lifecycle(ledger, coordinator, coupons, notifier, settings):
    from ordering.order.lifecycle import OrderLifecycle
    from ordering.pricing.engine import build_pricing_engine

    return OrderLifecycle(
        ledger=ledger,
        coordinator=coordinator,
        pricing=build_pricing_engine(settings, coupon_book=coupons),
        notifier=notifier,
        settings=settings,
    )


# ---------------------------------------------------------------------------
# Order builders
# ---------------------------------------------------------------------------
@pytest.fixture()
def shipping_address():
    return dict(ADDRESS)


@pytest.fixture()
def place_order(cart, saga, stocked, shipping_address):
    """Fill the buyer's cart and check it out. Defaults to 3 mugs and 1 lamp."""

    def _place(lines=(("prod-mug", 3), ("prod-lamp", 1)), buyer_id="buyer-001", coupon_code=None):
        for product_id, quantity in lines:
            cart.add(buyer_id, product_id, quantity)
        return saga.place_order(buyer_id, shipping_address, coupon_code=coupon_code)

    return _place


@pytest.fixture()
def confirm_payment(coordinator):
    """Deliver a payment-succeeded gateway event for the order's transaction."""
    from ordering.order.updates import load_order
    from ordering.payment.webhook import GatewayEvent

    def _confirm(order_number, event_id="evt_success_1"):
        transaction_id = load_order(order_number).payment.gateway_transaction_id
        return coordinator.handle_gateway_event(
            GatewayEvent(
                event_id=event_id,
                event_type="payment_intent.succeeded",
                gateway_transaction_id=transaction_id,
                order_number=order_number,
            )
        )

    return _confirm


@pytest.fixture()
def paid_order(place_order, coordinator, confirm_payment):
    """A confirmed order paid by card: 3 mugs at 10.00 and 1 lamp at 25.00, total 63.00."""
    from ordering.order.updates import load_order

    order = place_order()
    coordinator.authorize(order.order_number, "credit_card")
    confirm_payment(order.order_number)
    return load_order(order.order_number)


@pytest.fixture()
def delivered_order(paid_order):
    from ordering.order.fulfillment import DeliverOrder, MarkProcessing, ShipOrder
    from ordering.order.updates import load_order
    from protean import current_domain

    order_number = paid_order.order_number
    current_domain.process(MarkProcessing(order_number=order_number), asynchronous=False)
    current_domain.process(ShipOrder(order_number=order_number, carrier="UPS"), asynchronous=False)
    current_domain.process(DeliverOrder(order_number=order_number), asynchronous=False)
    return load_order(order_number)
