"""Collaborator registry: cart, catalog, coupons and notifications.

Provides singleton access to the external collaborators. In-memory adapters
are used by default; tests and deployments swap them with the ``set_*``
functions.
"""

from ordering.collaborators.cart import CartService, InMemoryCartService
from ordering.collaborators.catalog import CatalogService, InMemoryCatalog
from ordering.collaborators.notifications import Notifier, RecordingNotifier
from ordering.pricing.coupons import CouponBook, InMemoryCouponBook

_cart_service: CartService | None = None
_catalog: CatalogService | None = None
_coupon_book: CouponBook | None = None
_notifier: Notifier | None = None


def get_cart_service() -> CartService:
    global _cart_service
    if _cart_service is None:
        _cart_service = InMemoryCartService()
    return _cart_service


def set_cart_service(service: CartService) -> None:
    global _cart_service
    _cart_service = service


def get_catalog() -> CatalogService:
    global _catalog
    if _catalog is None:
        _catalog = InMemoryCatalog()
    return _catalog


def set_catalog(catalog: CatalogService) -> None:
    global _catalog
    _catalog = catalog


def get_coupon_book() -> CouponBook:
    global _coupon_book
    if _coupon_book is None:
        _coupon_book = InMemoryCouponBook()
    return _coupon_book


def set_coupon_book(book: CouponBook) -> None:
    global _coupon_book
    _coupon_book = book


def get_notifier() -> Notifier:
    global _notifier
    if _notifier is None:
        _notifier = RecordingNotifier()
    return _notifier


def set_notifier(notifier: Notifier) -> None:
    global _notifier
    _notifier = notifier


def reset_collaborators() -> None:
    """Reset all collaborator singletons (useful for testing)."""
    global _cart_service, _catalog, _coupon_book, _notifier
    _cart_service = None
    _catalog = None
    _coupon_book = None
    _notifier = None
