"""Exceptions raised by the store and how they map onto HTTP."""

from typing import Any, Dict, Optional


class ShopError(Exception):
    """Base exception for all store errors."""

    status_code = 500
    code = "error"

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context: Dict[str, Any] = context
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "error": self.code, **self.context}


class ValidationError(ShopError):
    status_code = 400
    code = "validation_error"


class EmptyCartError(ValidationError):
    """Raised when a purchase is attempted without any line items."""

    code = "empty_cart"

    def __init__(self, owner_id: str):
        self.owner_id = owner_id
        super().__init__("Cart is empty. Cannot create an order.", owner_id=owner_id)


class InactiveProductError(ValidationError):
    """Raised when a line item points at a missing or soft-deleted product."""

    code = "inactive_product"

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(
            f"Product {product_id} is no longer active or was not found.",
            product_id=product_id,
        )


class NotFoundError(ShopError):
    status_code = 404
    code = "not_found"

    def __init__(self, entity: str, entity_id: Optional[str] = None):
        self.entity = entity
        self.entity_id = entity_id
        msg = f"{entity.capitalize()} not found."
        if entity_id:
            msg = f"{entity.capitalize()} not found: {entity_id}"
        super().__init__(msg, entity=entity, entity_id=entity_id)


class ConflictError(ShopError):
    status_code = 409
    code = "conflict"


class InsufficientStockError(ConflictError):
    """Raised when a product cannot cover the requested quantity."""

    code = "insufficient_stock"

    def __init__(self, product_id: str, requested: int, available: int):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Not enough stock for {product_id}. Requested: {requested}, Available: {available}",
            product_id=product_id,
            requested=requested,
            available=available,
        )


class StaleCartError(ConflictError):
    """Raised when a cart changed since the version the caller read."""

    code = "stale_cart"

    def __init__(self, cart_id: str, expected_version: int):
        self.cart_id = cart_id
        self.expected_version = expected_version
        super().__init__(
            f"Cart {cart_id} was modified concurrently (expected version {expected_version}).",
            cart_id=cart_id,
            expected_version=expected_version,
        )


class DuplicateError(ConflictError):
    code = "duplicate"

    def __init__(self, entity: str, field: str, value: str):
        self.entity = entity
        self.field = field
        self.value = value
        super().__init__(f"{entity.capitalize()} with {field} '{value}' already exists.", entity=entity, field=field)


class AuthError(ShopError):
    status_code = 401
    code = "unauthorized"

    def __init__(self, message: str = "Unauthorized: please log in"):
        super().__init__(message)


class ForbiddenError(AuthError):
    status_code = 403
    code = "forbidden"

    def __init__(self, message: str = "Forbidden: admin access required"):
        super().__init__(message)


class StorageError(ShopError):
    """Raised when the document store is unreachable or rejects a write."""

    status_code = 500
    code = "storage_error"

    def __init__(self, message: str, operation: Optional[str] = None):
        self.operation = operation
        super().__init__(message, operation=operation)
