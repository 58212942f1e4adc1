"""
Custom exceptions for the storefront checkout service.
"""
from typing import Optional


class StorefrontException(Exception):
    """Base exception for storefront operations"""
    pass


# Validation errors: the user has to correct the input

class ValidationError(StorefrontException):
    """Raised when validation fails"""
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class EmptyCartError(ValidationError):
    """Raised when checkout is attempted with no resolvable line items"""
    def __init__(self, message: str = "cannot checkout an empty cart"):
        super().__init__(message)


class AddressRequiredError(ValidationError):
    """Raised when the user has no stored address to ship to"""
    def __init__(self, message: str = "Add a delivery address before checking out"):
        super().__init__(message)


class LimitExceededError(ValidationError):
    """Raised when cart limits are exceeded"""
    pass


class OutOfStockError(ValidationError):
    """Raised when a size does not have enough stock"""
    def __init__(self, product_id: str, size: str, available: int):
        self.product_id = product_id
        self.size = size
        self.available = available
        super().__init__(f"Only {available} left in size {size} for product {product_id}")


# Missing records

class NotFoundError(StorefrontException):
    """Base class for missing records"""
    pass


class DocumentNotFoundError(NotFoundError):
    """Raised when a document store update targets a missing document"""
    def __init__(self, collection: str, doc_id: str):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(f"Document not found: {collection}/{doc_id}")


class ProductNotFoundError(NotFoundError):
    """Raised when a product does not exist"""
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class CartEntryNotFoundError(NotFoundError):
    """Raised when a cart entry does not exist"""
    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"Cart entry not found: {entry_id}")


class AddressNotFoundError(NotFoundError):
    """Raised when an address does not belong to the user"""
    def __init__(self, address_id: str):
        self.address_id = address_id
        super().__init__(f"Address not found: {address_id}")


class OrderNotFoundError(NotFoundError):
    """Raised when an order does not exist"""
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class CheckoutSessionNotFoundError(NotFoundError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Checkout session not found: {session_id}")


class PermissionDeniedError(StorefrontException):
    """Raised when a user touches a record they do not own"""
    pass


# Flow errors

class CheckoutStateError(StorefrontException):
    """Raised when a checkout transition is invoked out of order"""
    def __init__(self, message: str, state: Optional[str] = None):
        self.message = message
        self.state = state
        super().__init__(message)


class CheckoutInProgressError(StorefrontException):
    """Raised when a checkout action is already in flight for the session"""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"A checkout request is already in progress for session {session_id}")


class OrderStateError(StorefrontException):
    """Raised when an order is not in a state that allows the operation"""
    def __init__(self, order_id: str, status: str, message: Optional[str] = None):
        self.order_id = order_id
        self.status = status
        super().__init__(message or f"Order {order_id} cannot be changed in status '{status}'")


# Transient infrastructure errors (retryable)

class StoreUnavailableError(StorefrontException):
    """Raised when the document store or cache cannot be reached"""
    pass


class GatewayUnavailableError(StorefrontException):
    """Raised when the payment gateway times out or cannot be reached"""
    pass


# Payment outcomes

class PaymentGatewayError(StorefrontException):
    """Raised when the gateway definitively rejects a request"""
    def __init__(self, message: str, order_id: Optional[str] = None):
        self.message = message
        self.order_id = order_id
        super().__init__(message)


class PaymentCancelledError(StorefrontException):
    """Raised by a checkout UI when the user dismisses the gateway"""
    def __init__(self, message: str = "Payment cancelled by user"):
        self.message = message
        super().__init__(message)


class PaymentDeclinedError(StorefrontException):
    """Raised by a checkout UI when the gateway reports a failed payment"""
    def __init__(self, message: str = "Payment failed"):
        self.message = message
        super().__init__(message)


class PaymentStatusUncertainError(StorefrontException):
    """Raised when the payment outcome is unknown; the order stays pending"""
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(
            f"Payment status uncertain for order {order_id}, check order history"
        )
