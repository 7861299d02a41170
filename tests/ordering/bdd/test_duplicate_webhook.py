"""BDD tests for gateway webhook idempotency."""

from ordering.order.order import OrderStatus
from ordering.order.updates import load_order
from ordering.payment.webhook import GatewayEvent
from pytest_bdd import parsers, scenarios, then, when

scenarios("features/duplicate_webhook.feature")


# ---------------------------------------------------------------------------
# When steps
# ---------------------------------------------------------------------------
@when(parsers.cfparse('the gateway confirms the payment with event "{event_id}"'))
def _(context, confirm_payment, event_id):
    context["outcomes"].append(confirm_payment(context["order_number"], event_id=event_id))


@when(parsers.cfparse('the gateway reports the payment failed with event "{event_id}"'))
def _(context, coordinator, event_id):
    order = load_order(context["order_number"])
    event = GatewayEvent(
        event_id=event_id,
        event_type="payment_intent.payment_failed",
        gateway_transaction_id=order.payment.gateway_transaction_id,
        failure_reason="Insufficient funds",
    )
    context["outcomes"].append(coordinator.handle_gateway_event(event))


# ---------------------------------------------------------------------------
# Then steps
# ---------------------------------------------------------------------------
@then(parsers.cfparse('the callbacks were "{outcomes}"'))
def _(context, outcomes):
    assert ", ".join(outcome.value for outcome in context["outcomes"]) == outcomes


@then("the order was confirmed once")
def _(context):
    history = load_order(context["order_number"]).status_history
    assert [change.status for change in history].count(OrderStatus.CONFIRMED.value) == 1


@then(parsers.cfparse('the buyer was sent {count:d} "{event_type}" notification'))
def _(notifier, count, event_type):
    assert len(notifier.of_type(event_type)) == count
