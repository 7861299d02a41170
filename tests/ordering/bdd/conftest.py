"""Shared BDD fixtures and step definitions for the Ordering domain."""

from datetime import timedelta
from decimal import Decimal

import pytest
from ordering.errors import OrderingError
from ordering.order.fulfillment import DeliverOrder, MarkProcessing, ShipOrder
from ordering.order.updates import load_order
from ordering.timeutils import utcnow
from protean import current_domain
from pytest_bdd import given, parsers, then


@pytest.fixture()
def context():
    """Scenario state: the current order number, outcomes and the last error."""
    return {"order_number": None, "outcomes": [], "error": None}


@pytest.fixture()
def attempt(context):
    """Run an operation, keeping an ordering error for a later Then step instead of failing."""

    def _attempt(operation):
        try:
            result = operation()
        except OrderingError as exc:
            context["error"] = exc
            return None
        context["error"] = None
        return result

    return _attempt


# ---------------------------------------------------------------------------
# Given steps
# ---------------------------------------------------------------------------
@given(parsers.cfparse('a pending order for {quantity:d} of "{product_id}"'))
def _(context, place_order, quantity, product_id):
    context["order_number"] = place_order(lines=[(product_id, quantity)]).order_number


@given(parsers.cfparse('a paid order for {quantity:d} of "{product_id}"'))
def _(context, place_order, coordinator, confirm_payment, quantity, product_id):
    order_number = place_order(lines=[(product_id, quantity)]).order_number
    coordinator.authorize(order_number, "credit_card")
    confirm_payment(order_number)
    context["order_number"] = order_number


@given("the buyer has started a card payment")
def _(context, coordinator):
    coordinator.authorize(context["order_number"], "credit_card")


@given(parsers.cfparse("the order was delivered {days:d} days ago"))
def _(context, days):
    order_number = context["order_number"]
    current_domain.process(MarkProcessing(order_number=order_number), asynchronous=False)
    current_domain.process(ShipOrder(order_number=order_number, carrier="UPS"), asynchronous=False)
    current_domain.process(
        DeliverOrder(order_number=order_number, delivered_at=utcnow() - timedelta(days=days)),
        asynchronous=False,
    )


# ---------------------------------------------------------------------------
# Then steps
# ---------------------------------------------------------------------------
@then(parsers.cfparse('the order is "{status}"'))
def _(context, status):
    assert load_order(context["order_number"]).status == status


@then(parsers.cfparse("the order total is {amount}"))
def _(context, amount):
    assert Decimal(str(load_order(context["order_number"]).total_amount)) == Decimal(amount)


@then(parsers.cfparse('"{product_id}" has {available:d} available and {reserved:d} reserved'))
def _(ledger, product_id, available, reserved):
    levels = ledger.stock_levels(product_id)
    assert (levels["available"], levels["reserved"]) == (available, reserved)


@then(parsers.cfparse('"{product_id}" has {committed:d} committed'))
def _(ledger, product_id, committed):
    assert ledger.stock_levels(product_id)["committed"] == committed


@then(parsers.cfparse('the request fails with "{code}"'))
def _(context, code):
    assert context["error"] is not None
    assert context["error"].code == code
