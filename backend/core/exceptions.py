"""
Domain errors raised by the ledger and order services.

Services raise these; API views translate them into
``{'error': code, 'message': ...}`` responses with ``http_status``.
"""
from rest_framework import status


class FulfillmentError(Exception):
    code = 'fulfillment_error'
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message=None, **details):
        self.message = message or self.__class__.__doc__ or self.code
        self.details = details
        super().__init__(self.message)

    def to_response_data(self):
        data = {'error': self.code, 'message': self.message}
        if self.details:
            data['details'] = self.details
        return data


class ValidationError(FulfillmentError):
    """Input rejected before any write"""
    code = 'validation_error'
    http_status = status.HTTP_400_BAD_REQUEST


class EmptyCart(ValidationError):
    """Cart is empty."""
    code = 'empty_cart'


class NotFoundError(FulfillmentError):
    code = 'not_found'
    http_status = status.HTTP_404_NOT_FOUND


class RecordNotFound(NotFoundError):
    """Stock record not found"""
    code = 'stock_record_not_found'


class OrderNotFound(NotFoundError):
    """Order not found"""
    code = 'order_not_found'


class LookupFailed(FulfillmentError):
    """Stock record lookup failed"""
    code = 'lookup_failed'
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE


class CreateFailed(FulfillmentError):
    """Failed to initialize product stock"""
    code = 'create_failed'
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE


class PersistenceFailed(FulfillmentError):
    """Write could not be committed"""
    code = 'persistence_failed'
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE


class OrderPersistFailed(PersistenceFailed):
    """Failed to create order"""
    code = 'order_persist_failed'


class LinePersistFailed(PersistenceFailed):
    """Failed to create order items"""
    code = 'line_persist_failed'


class ConcurrencyError(FulfillmentError):
    """Stock record changed concurrently; the single decrement is safe to retry"""
    code = 'concurrency_conflict'
    http_status = status.HTTP_409_CONFLICT


class InvalidTransition(FulfillmentError):
    """Status transition not allowed"""
    code = 'invalid_transition'
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, current, requested, message=None):
        self.current = current
        self.requested = requested
        super().__init__(
            message or f"Cannot move order from '{current}' to '{requested}'",
            current=current,
            requested=requested,
        )


class PartialFulfillmentError(FulfillmentError):
    """
    Order persisted but stock for some lines was not decremented.

    Carries the order and which lines are done, so the caller can resume
    instead of re-placing the whole order.
    """
    code = 'partial_fulfillment'
    http_status = status.HTTP_207_MULTI_STATUS

    def __init__(self, order, completed_line_ids, outstanding_line_ids, cause=None, line_results=None):
        self.order = order
        self.completed_line_ids = list(completed_line_ids)
        self.outstanding_line_ids = list(outstanding_line_ids)
        self.cause = cause
        self.line_results = list(line_results or [])
        super().__init__(
            f"Order {order.pk} placed, inventory partially reserved: "
            f"{len(self.outstanding_line_ids)} of "
            f"{len(self.completed_line_ids) + len(self.outstanding_line_ids)} lines outstanding",
            order_id=order.pk,
            completed_line_ids=self.completed_line_ids,
            outstanding_line_ids=self.outstanding_line_ids,
            cause=getattr(cause, 'code', None) or (type(cause).__name__ if cause else None),
        )
