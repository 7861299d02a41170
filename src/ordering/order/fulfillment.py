"""Order fulfillment: commands and handler.

Handles the fulfillment pipeline: processing, shipment, delivery and the
vendor's per-item preparation updates.
"""

from protean import handle
from protean.fields import DateTime, Identifier, String
from protean.utils.globals import current_domain

from ordering.collaborators import get_notifier
from ordering.collaborators.notifications import notify_quietly
from ordering.domain import ordering
from ordering.order.order import Order


@ordering.command(part_of="Order")
class MarkProcessing:
    """Signal that the vendor has started picking and packing."""

    order_number = String(required=True, max_length=50)


@ordering.command(part_of="Order")
class ShipOrder:
    order_number = String(required=True, max_length=50)
    carrier = String(max_length=100)
    tracking_number = String(max_length=255)  # Generated when omitted


@ordering.command(part_of="Order")
class DeliverOrder:
    """Record that the carrier has confirmed delivery to the buyer."""

    order_number = String(required=True, max_length=50)
    delivered_at = DateTime()


@ordering.command(part_of="Order")
class UpdateLineItemFulfillment:
    order_number = String(required=True, max_length=50)
    product_id = Identifier(required=True)
    status = String(required=True, max_length=50)
    vendor_id = Identifier()


@ordering.command_handler(part_of=Order)
class OrderFulfillmentHandler:
    @handle(MarkProcessing)
    def mark_processing(self, command):
        repo = current_domain.repository_for(Order)
        order = repo.find_by_order_number(command.order_number)
        order.mark_processing()
        repo.add(order)

    @handle(ShipOrder)
    def ship_order(self, command):
        repo = current_domain.repository_for(Order)
        order = repo.find_by_order_number(command.order_number)
        order.ship(tracking_number=command.tracking_number, carrier=command.carrier)
        repo.add(order)

        notify_quietly(
            get_notifier(),
            str(order.buyer_id),
            "order_shipped",
            {
                "order_number": order.order_number,
                "carrier": order.carrier,
                "tracking_number": order.tracking_number,
            },
        )
        return order.tracking_number

    @handle(DeliverOrder)
    def deliver_order(self, command):
        repo = current_domain.repository_for(Order)
        order = repo.find_by_order_number(command.order_number)
        order.deliver(delivered_at=command.delivered_at)
        repo.add(order)

        notify_quietly(
            get_notifier(),
            str(order.buyer_id),
            "order_delivered",
            {"order_number": order.order_number},
        )

    @handle(UpdateLineItemFulfillment)
    def update_line_item(self, command):
        repo = current_domain.repository_for(Order)
        order = repo.find_by_order_number(command.order_number)
        order.update_item_fulfillment(
            product_id=command.product_id,
            new_status=command.status,
            vendor_id=command.vendor_id,
        )
        repo.add(order)
