"""BDD tests for checkout pricing and stock reservation."""

from decimal import Decimal

from ordering.collaborators.catalog import ProductSnapshot
from ordering.order.order import Order
from ordering.order.updates import load_order
from protean import current_domain
from pytest_bdd import given, parsers, scenarios, then, when

scenarios("features/checkout_pricing.feature")


# ---------------------------------------------------------------------------
# Given steps
# ---------------------------------------------------------------------------
@given(parsers.cfparse('the catalog has "{product_id}" at {price} with {quantity:d} in stock'))
def _(catalog, ledger, product_id, price, quantity):
    catalog.register(ProductSnapshot(product_id, Decimal(price), "vendor-001", name=product_id))
    ledger.initialize(product_id, quantity)


@given(parsers.cfparse('"{buyer_id}" has {quantity:d} of "{product_id}" in the cart'))
def _(cart, buyer_id, quantity, product_id):
    cart.add(buyer_id, product_id, quantity)


# ---------------------------------------------------------------------------
# When steps
# ---------------------------------------------------------------------------
@when(parsers.cfparse('"{buyer_id}" checks out with coupon "{coupon_code}"'))
def _(context, attempt, saga, shipping_address, buyer_id, coupon_code):
    order = attempt(lambda: saga.place_order(buyer_id, shipping_address, coupon_code=coupon_code))
    if order is not None:
        context["order_number"] = order.order_number


@when(parsers.cfparse('"{buyer_id}" checks out'))
def _(context, attempt, saga, shipping_address, buyer_id):
    order = attempt(lambda: saga.place_order(buyer_id, shipping_address))
    if order is not None:
        context["order_number"] = order.order_number


# ---------------------------------------------------------------------------
# Then steps
# ---------------------------------------------------------------------------
@then(parsers.cfparse("the order subtotal is {amount}"))
def _(context, amount):
    assert Decimal(str(load_order(context["order_number"]).subtotal)) == Decimal(amount)


@then(parsers.cfparse("the order discount is {amount}"))
def _(context, amount):
    assert Decimal(str(load_order(context["order_number"]).discount)) == Decimal(amount)


@then(parsers.cfparse('"{buyer_id}" has {count:d} order'))
@then(parsers.cfparse('"{buyer_id}" has {count:d} orders'))
def _(buyer_id, count):
    assert len(current_domain.repository_for(Order).find_by_buyer(buyer_id)) == count
