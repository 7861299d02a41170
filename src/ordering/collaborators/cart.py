"""Cart service port and an in-memory adapter.

The cart is owned by another service; checkout only reads the validated
lines and clears the cart once the order exists.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class CartLine:
    product_id: str
    quantity: int
    variant: str | None = None


class CartService(ABC):
    @abstractmethod
    def get_validated_cart(self, user_id: str) -> list[CartLine]:
        """Return the buyer's cart lines after the cart service validated them."""
        ...

    @abstractmethod
    def clear(self, user_id: str) -> None:
        ...


class InMemoryCartService(CartService):
    def __init__(self) -> None:
        self._carts: dict[str, list[CartLine]] = {}

    def put(self, user_id: str, lines: list[CartLine]) -> None:
        self._carts[user_id] = list(lines)

    def add(self, user_id: str, product_id: str, quantity: int, variant: str | None = None) -> None:
        self._carts.setdefault(user_id, []).append(CartLine(product_id, quantity, variant))

    def get_validated_cart(self, user_id: str) -> list[CartLine]:
        return [line for line in self._carts.get(user_id, []) if line.quantity > 0]

    def clear(self, user_id: str) -> None:
        self._carts.pop(user_id, None)
