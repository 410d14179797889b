"""Read side for orders: every call goes to the database, nothing is cached"""
from django.db.models import Q
from django.utils.dateparse import parse_date

from backend.core.exceptions import OrderNotFound, ValidationError
from .models import Order


def order_queryset():
    return Order.objects.prefetch_related('lines', 'lines__product', 'lines__color', 'lines__size')


def _parse_date(value, field):
    try:
        parsed = parse_date(str(value))
    except ValueError:
        parsed = None
    if parsed is None:
        raise ValidationError(f"{field} must be a date (YYYY-MM-DD)", **{field: str(value)})
    return parsed


def list_orders(status=None, buyer=None, fulfillment_status=None, date_from=None, date_to=None):
    """Orders newest first; ``status='processing'`` also matches orders with no status"""
    queryset = order_queryset()

    if status:
        if status not in dict(Order.STATUS_CHOICES):
            raise ValidationError(f"Unknown order status '{status}'")
        if status == Order.DEFAULT_STATUS:
            queryset = queryset.filter(Q(status=status) | Q(status__isnull=True))
        else:
            queryset = queryset.filter(status=status)
    if buyer:
        queryset = queryset.filter(buyer_id=buyer)
    if fulfillment_status:
        queryset = queryset.filter(fulfillment_status=fulfillment_status)
    if date_from:
        queryset = queryset.filter(created_at__date__gte=_parse_date(date_from, 'date_from'))
    if date_to:
        queryset = queryset.filter(created_at__date__lte=_parse_date(date_to, 'date_to'))

    return queryset.order_by('-created_at', '-id')


def get_order(order_id):
    try:
        return order_queryset().get(pk=order_id)
    except Order.DoesNotExist:
        raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)


def outstanding_orders():
    """Orders the dashboard must not show as fully reserved"""
    return Order.objects.exclude(fulfillment_status=Order.FULFILLMENT_RESERVED).order_by('created_at', 'id')
