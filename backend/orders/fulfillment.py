"""
Fulfillment orchestrator: cart -> persisted order -> per-variant stock decrements.

The order and its lines commit first, in their own transaction. Stock is
then taken variant by variant, each decrement keyed by (order, stock record)
so that re-running fulfillment for the same order never takes stock twice.
Lines that share a variant are decremented together under one key.
"""
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import List, Optional

from backend.core.exceptions import (
    FulfillmentError, OrderNotFound, PartialFulfillmentError, ValidationError,
)
from backend.core.utils import create_audit_log
from backend.inventory import ledger, resolver
from backend.inventory.models import StockMovement
from . import builder
from .models import Order

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LineResult:
    """Stock outcome for one variant of an order (one or more lines)"""
    line_ids: List[int]
    product_id: int
    color_id: Optional[int]
    size_id: Optional[int]
    stock_record_id: int
    requested: int
    decremented: int
    available: int
    replayed: bool = False

    @property
    def shortfall(self):
        return self.requested - self.decremented

    def to_dict(self):
        return {
            'line_ids': self.line_ids,
            'product_id': self.product_id,
            'color_id': self.color_id,
            'size_id': self.size_id,
            'stock_record_id': self.stock_record_id,
            'requested': self.requested,
            'decremented': self.decremented,
            'shortfall': self.shortfall,
            'available': self.available,
            'replayed': self.replayed,
        }


@dataclass
class FulfillmentResult:
    order: Order
    lines: list
    line_results: List[LineResult] = field(default_factory=list)
    fully_reserved: bool = True

    @property
    def total_shortfall(self):
        return sum(result.shortfall for result in self.line_results)


def _group_by_variant(lines):
    groups = OrderedDict()
    for line in lines:
        groups.setdefault(line.variant_key, []).append(line)
    return groups


def _set_fulfillment_status(order, value):
    Order.objects.filter(pk=order.pk).update(fulfillment_status=value)
    order.fulfillment_status = value


def _reserve_stock(order, lines, actor=None):
    """
    Decrement stock for every variant of ``order``, in line order.

    Stops at the first failing variant; it and everything after it are
    reported as outstanding on the raised ``PartialFulfillmentError``.
    """
    groups = list(_group_by_variant(lines).items())
    line_results = []
    completed_line_ids = []

    for index, ((product_id, color_id, size_id), group) in enumerate(groups):
        quantity = sum(line.amount for line in group)
        try:
            record = resolver.resolve_stock_record(product_id, color_id, size_id)
            outcome = ledger.decrement(record.pk, order.pk, quantity, actor=actor)
        except FulfillmentError as e:
            outstanding_line_ids = [line.pk for _, rest in groups[index:] for line in rest]
            _set_fulfillment_status(order, Order.FULFILLMENT_PARTIAL)
            logger.error(
                f"Order {order.pk} partially fulfilled: product {product_id} "
                f"(color={color_id}, size={size_id}) failed with {e.code}: {e.message}; "
                f"{len(outstanding_line_ids)} line(s) outstanding"
            )
            create_audit_log(
                user=actor,
                action='order_partial',
                model_name='Order',
                object_id=str(order.pk),
                object_name=str(order),
                changes={
                    'completed_line_ids': completed_line_ids,
                    'outstanding_line_ids': outstanding_line_ids,
                    'cause': e.code,
                    'message': e.message,
                },
            )
            raise PartialFulfillmentError(
                order,
                completed_line_ids,
                outstanding_line_ids,
                cause=e,
                line_results=line_results,
            ) from e

        line_results.append(LineResult(
            line_ids=[line.pk for line in group],
            product_id=product_id,
            color_id=color_id,
            size_id=size_id,
            stock_record_id=record.pk,
            requested=quantity,
            decremented=outcome.decremented,
            available=outcome.available,
            replayed=outcome.replayed,
        ))
        completed_line_ids.extend(line.pk for line in group)

    _set_fulfillment_status(order, Order.FULFILLMENT_RESERVED)
    return FulfillmentResult(order=order, lines=list(lines), line_results=line_results, fully_reserved=True)


def place_order(buyer_id, cart, actor=None, **order_fields):
    """
    Place an order for ``cart`` and take its stock.

    Raises ``PartialFulfillmentError`` when the order was saved but some
    variants could not be decremented; ``resume_fulfillment`` finishes it.
    Shortfalls (not enough stock) are not failures and show up on the
    returned ``FulfillmentResult``.
    """
    order, lines = builder.create_order(buyer_id, cart, actor=actor, **order_fields)
    result = _reserve_stock(order, lines, actor=actor)
    if result.total_shortfall:
        logger.warning(f"Order {order.pk} placed with a stock shortfall of {result.total_shortfall} unit(s)")
    else:
        logger.info(f"Order {order.pk} placed and fully reserved")
    return result


def _get_order(order_id):
    try:
        return Order.objects.get(pk=order_id)
    except Order.DoesNotExist:
        raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)


def resume_fulfillment(order_id, actor=None):
    """Re-run stock reservation for an order; completed variants replay without effect"""
    order = _get_order(order_id)
    if order.effective_status == Order.CANCELLED:
        raise ValidationError("Cancelled orders cannot be fulfilled", order_id=order.pk)

    lines = list(order.lines.all())
    logger.info(f"Resuming fulfillment of order {order.pk} ({len(lines)} line(s))")
    return _reserve_stock(order, lines, actor=actor)


def restock_cancelled_order(order_id, actor=None):
    """
    Return the stock a cancelled order actually took.

    Each decrement is reversed by the amount it applied, keyed per
    (order, stock record) so repeating the call restores nothing twice.
    Returns the ledger results of the increments.
    """
    order = _get_order(order_id)
    if order.effective_status != Order.CANCELLED:
        raise ValidationError(
            "Only cancelled orders can be restocked",
            order_id=order.pk, status=order.effective_status,
        )

    decrements = (
        StockMovement.objects.filter(order=order, movement_type=StockMovement.DECREMENT, applied__lt=0)
        .order_by('id')
    )
    results = []
    for movement in decrements:
        results.append(ledger.increment(
            movement.stock_record_id,
            -movement.applied,
            actor=actor,
            note=f"Restock of cancelled order #{order.pk}",
            order_id=order.pk,
            idempotency_key=ledger.restock_key(order.pk, movement.stock_record_id),
        ))

    restored = [result for result in results if not result.replayed]
    if restored:
        logger.info(f"Restocked {sum(r.applied for r in restored)} unit(s) for cancelled order {order.pk}")
        create_audit_log(
            user=actor,
            action='order_restock',
            model_name='Order',
            object_id=str(order.pk),
            object_name=str(order),
            changes={
                'movements': [r.movement_id for r in restored],
                'units': sum(r.applied for r in restored),
            },
        )
    return results


def reconcile_fulfillment_status(order):
    """
    Recompute ``fulfillment_status`` from the movement log.

    An order is reserved once every one of its variants has its keyed
    decrement recorded. Returns the (possibly unchanged) status.
    """
    keys = set(
        StockMovement.objects.filter(order=order, movement_type=StockMovement.DECREMENT)
        .values_list('idempotency_key', flat=True)
    )
    variants = _group_by_variant(order.lines.all())
    done = 0
    for product_id, color_id, size_id in variants:
        record = resolver.find_stock_record(product_id, color_id, size_id)
        if record is not None and ledger.decrement_key(order.pk, record.pk) in keys:
            done += 1

    if variants and done == len(variants):
        value = Order.FULFILLMENT_RESERVED
    elif done:
        value = Order.FULFILLMENT_PARTIAL
    else:
        value = order.fulfillment_status

    if value != order.fulfillment_status:
        logger.info(f"Order {order.pk} fulfillment status {order.fulfillment_status} -> {value} from movement log")
        _set_fulfillment_status(order, value)
    return value
