"""Stock administration: commands and handler."""

from protean import handle
from protean.fields import Identifier, Integer

from ordering.domain import ordering
from ordering.inventory.ledger import InventoryLedger
from ordering.inventory.stock import StockItem


@ordering.command(part_of="StockItem")
class InitializeStock:
    product_id = Identifier(required=True)
    quantity = Integer(required=True, min_value=0)


@ordering.command(part_of="StockItem")
class ReceiveStock:
    product_id = Identifier(required=True)
    quantity = Integer(required=True, min_value=1)


@ordering.command_handler(part_of=StockItem)
class StockManagementHandler:
    @handle(InitializeStock)
    def initialize_stock(self, command):
        stock = InventoryLedger().initialize(command.product_id, command.quantity)
        return str(stock.product_id)

    @handle(ReceiveStock)
    def receive_stock(self, command):
        stock = InventoryLedger().initialize(command.product_id, command.quantity)
        return stock.available
