"""Catalog service port and an in-memory adapter."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal


@dataclass(frozen=True)
class ProductSnapshot:
    """Price and availability of a product at the moment it is read."""

    product_id: str
    price: Decimal
    vendor_id: str
    name: str = ""
    sku: str = ""
    weight: Decimal | None = None
    requires_shipping: bool = True


class CatalogService(ABC):
    @abstractmethod
    def get_price_and_availability(self, product_id: str) -> ProductSnapshot | None:
        ...


class InMemoryCatalog(CatalogService):
    def __init__(self) -> None:
        self._products: dict[str, ProductSnapshot] = {}

    def register(self, snapshot: ProductSnapshot) -> None:
        self._products[snapshot.product_id] = snapshot

    def get_price_and_availability(self, product_id: str) -> ProductSnapshot | None:
        return self._products.get(product_id)
