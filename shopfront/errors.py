"""Domain exceptions for shopfront.

Each error carries the HTTP status it is rendered with and a stable ``code``
clients can branch on. ``extra`` is merged into the response body.
"""

from typing import Any


class ShopError(Exception):
    """Base exception for all shopfront errors."""

    status_code = 400
    code = "error"

    def __init__(self, message: str, **extra: Any):
        self.message = message
        self.extra = extra
        super().__init__(message)


# --- validation ---


class ValidationFailed(ShopError):
    """Malformed or out-of-range input, rejected before any persistence."""

    status_code = 400
    code = "validation_failed"


# --- not found ---


class NotFound(ShopError):
    status_code = 404
    code = "not_found"


class ProductNotFound(NotFound):
    code = "product_not_found"

    def __init__(self, product_id: int):
        self.product_id = product_id
        super().__init__(f"Product {product_id} not found", product_id=product_id)


class ProductsNotFound(NotFound):
    """Raised when an order references products that do not exist."""

    code = "products_not_found"

    def __init__(self, missing: list[int]):
        self.missing = sorted(missing)
        ids = ", ".join(str(i) for i in self.missing)
        super().__init__(f"Products not found: {ids}", missing_product_ids=self.missing)


class OrderNotFound(NotFound):
    code = "order_not_found"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class CheckoutSessionNotFound(NotFound):
    code = "checkout_session_not_found"

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__("Checkout session not found or expired")


# --- authorization ---


class Forbidden(ShopError):
    status_code = 403
    code = "forbidden"


# --- conflict ---


class Conflict(ShopError):
    status_code = 409
    code = "conflict"


class IllegalTransition(Conflict):
    code = "illegal_transition"

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(
            f"Cannot change order status from {current} to {requested}",
            current_status=current,
            requested_status=requested,
        )


class OrderNotEditable(Conflict):
    code = "order_not_editable"

    def __init__(self, status: str):
        super().__init__(f"Only Pending orders can be modified (status is {status})")


class CancellationNotAllowed(Conflict):
    code = "cancellation_not_allowed"

    def __init__(self, reason: str):
        super().__init__(reason)


class InsufficientStock(Conflict):
    """Raised when at least one line asks for more than is available.

    ``shortages`` lists every offending line, not only the first one.
    """

    code = "insufficient_stock"

    def __init__(self, shortages: list[dict]):
        self.shortages = shortages
        details = "; ".join(
            f"product {s['product_id']}: available {s['available']}, requested {s['requested']}"
            for s in shortages
        )
        super().__init__(f"Insufficient stock for {details}", shortages=shortages)


class PaymentNotCompleted(Conflict):
    code = "payment_not_completed"


# --- persistence ---


class TransactionFailed(ShopError):
    status_code = 500
    code = "transaction_failed"


# --- payment collaborator ---


class PaymentError(ShopError):
    """Base class for classified payment provider failures."""

    status_code = 502
    code = "payment_error"


class PaymentDeclined(PaymentError):
    status_code = 402
    code = "payment_declined"


class PaymentRateLimited(PaymentError):
    status_code = 429
    code = "payment_rate_limited"


class PaymentRequestInvalid(PaymentError):
    status_code = 400
    code = "payment_request_invalid"


class PaymentAuthenticationFailed(PaymentError):
    status_code = 502
    code = "payment_authentication_failed"


class PaymentProviderUnavailable(PaymentError):
    status_code = 503
    code = "payment_provider_unavailable"
