"""
Error taxonomy shared by every service.

Services raise these; the command tables turn them into tagged results and
the routers map the tag to an HTTP status.
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    INSUFFICIENT_AVAILABILITY = "insufficient_availability"
    INSUFFICIENT_QUANTITY = "insufficient_quantity"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    INVALID_TRANSITION = "invalid_transition"
    BROKER_UNAVAILABLE = "broker_unavailable"


HTTP_STATUS: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INSUFFICIENT_AVAILABILITY: 400,
    ErrorKind.INSUFFICIENT_QUANTITY: 409,
    ErrorKind.UPSTREAM_UNAVAILABLE: 503,
    ErrorKind.INVALID_TRANSITION: 400,
    ErrorKind.BROKER_UNAVAILABLE: 503,
}


class ServiceError(Exception):
    """Base class for errors that carry an error kind and optional details."""

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str, details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    @property
    def status_code(self) -> int:
        return HTTP_STATUS[self.kind]


class ValidationError(ServiceError):
    """Malformed or semantically invalid request."""

    kind = ErrorKind.VALIDATION


class NotFoundError(ServiceError):
    """Unknown id or tracking number."""

    kind = ErrorKind.NOT_FOUND


class InsufficientAvailabilityError(ServiceError):
    """One or more line items cannot be satisfied; details name each item."""

    kind = ErrorKind.INSUFFICIENT_AVAILABILITY


class InsufficientQuantityError(ServiceError):
    """Conditional decrement refused: current quantity is below the request."""

    kind = ErrorKind.INSUFFICIENT_QUANTITY

    def __init__(self, product_id: str, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient quantity for product {product_id}: "
            f"requested {requested}, available {available}",
            details=[
                {
                    "productId": product_id,
                    "requestedQuantity": requested,
                    "availableQuantity": available,
                }
            ],
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class UpstreamUnavailableError(ServiceError):
    """A dependent service did not answer in time or answered with a 5xx."""

    kind = ErrorKind.UPSTREAM_UNAVAILABLE


class InvalidTransitionError(ServiceError):
    """Shipment state machine refused the requested status."""

    kind = ErrorKind.INVALID_TRANSITION

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Cannot transition shipment from '{current}' to '{requested}'")
        self.current = current
        self.requested = requested


class BrokerUnavailableError(ServiceError):
    """Kafka did not acknowledge a publish; transient and safe to retry."""

    kind = ErrorKind.BROKER_UNAVAILABLE


class PoisonMessageError(Exception):
    """A message body that can never be handled, whatever the retry count."""
