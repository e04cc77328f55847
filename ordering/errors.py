"""Errors raised by the order lifecycle engine.

Every subclass of :class:`OrderError` carries the HTTP status and a
user-facing message; ``main.py`` turns them into JSON responses.
"""

from typing import List, Optional


class OrderError(Exception):
    status_code = 400
    code = "ORDER_ERROR"
    default_message = "The request could not be completed."

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthorized(OrderError):
    status_code = 403
    code = "UNAUTHORIZED"
    default_message = "You are not allowed to perform this action."


class OrderNotFound(OrderError):
    status_code = 404
    code = "ORDER_NOT_FOUND"
    default_message = "Order not found."


class InvalidOrder(OrderError):
    status_code = 400
    code = "INVALID_ORDER"
    default_message = "The order is not valid."


class InvalidProof(OrderError):
    status_code = 400
    code = "INVALID_PROOF"
    default_message = "The payment proof is not valid."


class InvalidTransition(OrderError):
    status_code = 409
    code = "INVALID_TRANSITION"
    default_message = "This action is not available for the order in its current status."


class Conflict(OrderError):
    status_code = 409
    code = "CONFLICT"
    default_message = "This order was already updated, please refresh."


class StoreClosed(OrderError):
    status_code = 409
    code = "STORE_CLOSED"
    default_message = "The store is currently closed. Please try again later."


class StorageError(OrderError):
    status_code = 503
    code = "STORAGE_ERROR"
    default_message = "Failed to upload image. Please try again."


class RecordError(OrderError):
    status_code = 500
    code = "RECORD_ERROR"
    default_message = "Failed to save the record. Please try again."


class DeliveryPartialFailure(Exception):
    """Some push deliveries failed. Logged, never escalated."""

    def __init__(self, failed_tokens: List[str], total: int):
        self.failed_tokens = list(failed_tokens)
        self.total = total
        super().__init__(f"{len(self.failed_tokens)} of {total} push deliveries failed")
