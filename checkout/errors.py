"""Checkout error taxonomy.

Every error carries a stable ``code`` (returned to clients as ``detail``) and
the HTTP status the API maps it to. Structured extras (available stock,
violations, warnings) travel with the exception so the caller can render a
precise message without a second lookup.
"""

from typing import Iterable, Optional


class CheckoutError(Exception):
    code = "CHECKOUT_ERROR"
    status_code = 400

    def __init__(self, message: Optional[str] = None, **extra):
        self.message = message or self.code
        self.extra = extra
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Body returned by the API for this error."""
        return {"detail": self.code, "message": self.message, **self.extra}


class NotFound(CheckoutError):
    code = "NOT_FOUND"
    status_code = 404


class PermissionDenied(CheckoutError):
    code = "FORBIDDEN"
    status_code = 403


class InsufficientStock(CheckoutError):
    """A conditional decrement did not match, or a line is not sellable.

    Attributes:
        product_id: Product of the first failing line.
        available_stock: Stock observed for that line.
        requested: Quantity that was requested.
        failures: Every failing line when raised from a batch.
    """

    code = "INSUFFICIENT_STOCK"
    status_code = 409

    def __init__(self, product_id: str, available_stock: int, requested: int, failures: Iterable = ()):
        self.product_id = product_id
        self.available_stock = available_stock
        self.requested = requested
        self.failures = list(failures)
        super().__init__(
            f"only {available_stock} left for product {product_id}, {requested} requested",
            product_id=product_id,
            available_stock=available_stock,
            requested=requested,
            failures=[f.to_dict() for f in self.failures],
        )


class InvalidTransition(CheckoutError):
    code = "INVALID_TRANSITION"
    status_code = 409


class AlreadyPaid(CheckoutError):
    code = "ALREADY_PAID"
    status_code = 409


class AlreadyCancelled(CheckoutError):
    code = "ALREADY_CANCELLED"
    status_code = 409


class IntentMismatch(CheckoutError):
    code = "INTENT_MISMATCH"
    status_code = 400


class EmptyCart(CheckoutError):
    code = "EMPTY_CART"
    status_code = 422

    def __init__(self, warnings: Iterable = ()):
        self.warnings = list(warnings)
        super().__init__("cart has no items that can be ordered", warnings=[w.to_dict() for w in self.warnings])


class CartItemsUnavailable(CheckoutError):
    """Pre-transaction failure listing every line that cannot be ordered."""

    code = "CART_ITEMS_UNAVAILABLE"
    status_code = 422

    def __init__(self, violations: Iterable):
        self.violations = list(violations)
        super().__init__(
            f"{len(self.violations)} cart item(s) unavailable",
            violations=[v.to_dict() for v in self.violations],
        )


class InvalidCheckout(CheckoutError):
    code = "VALIDATION_ERROR"
    status_code = 422


class PaymentProviderError(CheckoutError):
    code = "PAYMENT_PROVIDER_ERROR"
    status_code = 502


class InvalidSignature(CheckoutError):
    code = "INVALID_SIGNATURE"
    status_code = 400
