"""
Inventory Service — error taxonomy

Storage and broker failures are wrapped with the step that raised them so
operators can tell which part of an intake or sweep went wrong.
"""


class InventoryError(Exception):
    """Base class for every error raised by the allocation engine."""


class ValidationError(InventoryError):
    """The request was rejected before anything was written."""


class NotFoundError(InventoryError):
    """The requested SKU does not exist."""


class StorageError(InventoryError):
    def __init__(self, step: str, cause: Exception | None = None):
        super().__init__(f"{step} failed: {cause}" if cause else f"{step} failed")
        self.step = step
        self.cause = cause


class ConcurrencyError(StorageError):
    """A conflicting write won the race; the step can be retried."""


class PublishError(InventoryError):
    def __init__(self, topic: str, cause: Exception | None = None):
        super().__init__(f"publish to {topic} failed: {cause}")
        self.topic = topic
        self.cause = cause


class FulfillmentError(InventoryError):
    """The intake committed but the fulfillment sweep that followed failed.

    ``result`` holds the committed ProductionEvent or Reservation.
    """

    def __init__(self, result, cause: Exception):
        super().__init__(f"fulfillment failed after commit: {cause}")
        self.result = result
        self.cause = cause
