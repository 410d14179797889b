"""
Order status machine, the only code that writes ``Order.status``.

    pending -> processing -> shipped -> completed
       |           |            |
       +-----------+------------+----> cancelled

Forward moves along the main sequence are allowed (skipping steps
included); any non-terminal state may be cancelled; ``completed`` and
``cancelled`` are terminal. An unset status reads as ``processing``.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from django.conf import settings
from django.db import transaction

from backend.core.exceptions import InvalidTransition, OrderNotFound, ValidationError
from backend.core.utils import create_audit_log
from .models import Order, OrderStatusLog

logger = logging.getLogger(__name__)

SEQUENCE = [Order.PENDING, Order.PROCESSING, Order.SHIPPED, Order.COMPLETED]
TERMINAL = {Order.COMPLETED, Order.CANCELLED}
VALID_STATUSES = {value for value, _ in Order.STATUS_CHOICES}


@dataclass(frozen=True)
class TransitionResult:
    order: Order
    old_status: Optional[str]
    new_status: str
    changed: bool
    restock_pending: bool = False


def effective(status):
    return status or Order.DEFAULT_STATUS


def allowed_transitions(status):
    """Statuses reachable from ``status`` in one step (excluding itself)"""
    current = effective(status)
    if current in TERMINAL:
        return []
    position = SEQUENCE.index(current)
    return SEQUENCE[position + 1:] + [Order.CANCELLED]


def can_transition(status, requested):
    current = effective(status)
    return requested == current or requested in allowed_transitions(current)


def _actor_label(actor):
    if actor is not None and getattr(actor, 'is_authenticated', False):
        return actor.get_username()
    return 'system'


def _log_noops():
    return getattr(settings, 'ORDERS', {}).get('LOG_NOOP_TRANSITIONS', True)


def _has_decremented_stock(order):
    return order.stock_movements.filter(movement_type='decrement', applied__lt=0).exists()


def transition(order_id, requested_status, actor=None, note=''):
    """
    Move an order to ``requested_status``.

    Requesting the current status is an accepted no-op. Anything the policy
    forbids raises ``InvalidTransition`` and leaves the order untouched.
    """
    if requested_status not in VALID_STATUSES:
        raise ValidationError(
            f"Unknown order status '{requested_status}'",
            allowed=sorted(VALID_STATUSES),
        )

    with transaction.atomic():
        try:
            order = Order.objects.select_for_update().get(pk=order_id)
        except Order.DoesNotExist:
            raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)

        old_status = order.status
        current = effective(old_status)
        if not can_transition(current, requested_status):
            logger.warning(f"Rejected status change of order {order_id}: {current} -> {requested_status}")
            raise InvalidTransition(current, requested_status)

        changed = requested_status != current or old_status is None
        if changed:
            Order.objects.filter(pk=order.pk).update(status=requested_status)
            order.status = requested_status

        if changed or _log_noops():
            OrderStatusLog.objects.create(
                order=order,
                old_status=old_status,
                new_status=requested_status,
                actor=actor if actor is not None and getattr(actor, 'is_authenticated', False) else None,
                actor_label=_actor_label(actor),
                note=note or '',
            )

    restock_pending = False
    if changed and requested_status == Order.CANCELLED and _has_decremented_stock(order):
        restock_pending = True
        logger.warning(
            f"Order {order_id} cancelled with stock still decremented; "
            f"restock it explicitly if the goods return to inventory"
        )

    if changed:
        logger.info(f"Order {order_id} status {current} -> {requested_status} by {_actor_label(actor)}")
        create_audit_log(
            user=actor,
            action='order_status',
            model_name='Order',
            object_id=str(order.pk),
            object_name=str(order),
            changes={'old_status': old_status, 'new_status': requested_status, 'note': note or ''},
        )

    return TransitionResult(
        order=order,
        old_status=old_status,
        new_status=requested_status,
        changed=changed,
        restock_pending=restock_pending,
    )


def status_history(order_id):
    """Status log of an order, oldest first"""
    if not Order.objects.filter(pk=order_id).exists():
        raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
    return list(OrderStatusLog.objects.filter(order_id=order_id).select_related('actor').order_by('created_at', 'id'))
