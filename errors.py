from typing import Any, Optional


class ShopError(Exception):
    """Base for failures that are reported to the caller verbatim."""

    status_code = 400

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(ShopError):
    status_code = 400


class NotFoundError(ShopError):
    status_code = 404


class StockConflictError(ShopError):
    status_code = 400

    def __init__(self, product_name: str, available: int, requested: int):
        super().__init__(
            f"Insufficient stock for {product_name}. Available: {available}, Requested: {requested}",
            details={"product": product_name, "available": available, "requested": requested},
        )
        self.available = available
        self.requested = requested
