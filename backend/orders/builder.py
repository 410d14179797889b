"""
Order aggregate builder: validates a cart and persists the order with its lines.

The order row and all of its lines are written in one transaction, so
readers either see the complete order or nothing.
"""
import logging
import math
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

from django.conf import settings
from django.db import DatabaseError, transaction

from backend.catalog.models import Product, ProductColor, ProductSize
from backend.core.exceptions import (
    EmptyCart, LinePersistFailed, OrderPersistFailed, ValidationError,
)
from backend.core.utils import create_audit_log
from .models import Order, OrderLine

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal('0.01')


def _to_decimal(value, field):
    if value is None:
        return None
    try:
        number = Decimal(str(value))
        if not number.is_finite():
            raise InvalidOperation(value)
        return number.quantize(TWO_PLACES)
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number", **{field: str(value)})


def _optional_id(value, field):
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an id", **{field: str(value)})


def _optional_int(value, field):
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{field} must be a non-negative integer", **{field: value})
    return value


@dataclass(frozen=True)
class CartLine:
    """One cart entry: a product variant and how many of it"""
    product_id: int
    quantity: int
    color_id: Optional[int] = None
    size_id: Optional[int] = None
    unit_price: Optional[Decimal] = None

    def __post_init__(self):
        if self.product_id in (None, ''):
            raise ValidationError("Every cart line needs a product_id")
        for field in ('product_id', 'color_id', 'size_id'):
            object.__setattr__(self, field, _optional_id(getattr(self, field), field))
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int) or self.quantity <= 0:
            raise ValidationError(
                "Quantity must be a positive integer",
                product_id=self.product_id, quantity=self.quantity,
            )
        if self.unit_price is not None:
            price = _to_decimal(self.unit_price, 'unit_price')
            if price < 0:
                raise ValidationError("unit_price cannot be negative", product_id=self.product_id)
            object.__setattr__(self, 'unit_price', price)

    @classmethod
    def from_dict(cls, data):
        """Accepts the cart payload shape (``id`` or ``product_id``, ``price`` or ``unit_price``)"""
        return cls(
            product_id=data.get('product_id', data.get('id')),
            quantity=data.get('quantity'),
            color_id=data.get('color_id'),
            size_id=data.get('size_id'),
            unit_price=data.get('unit_price', data.get('price')),
        )

    @property
    def line_total(self):
        if self.unit_price is None:
            return None
        return self.unit_price * self.quantity


def coerce_cart(cart):
    """Turn a list of dicts and/or ``CartLine`` objects into ``CartLine`` objects"""
    if not cart:
        raise EmptyCart("Cart is empty.")
    return [line if isinstance(line, CartLine) else CartLine.from_dict(line) for line in cart]


def points_earned_for(total_amount):
    """Points granted for an order total, as configured under ``POINTS``"""
    rate = Decimal(str(settings.POINTS.get('EARN_PERCENTAGE', '0.05')))
    return int(math.floor(total_amount * rate))


def points_to_amount(points):
    """Currency value of spent points, as configured under ``POINTS``"""
    per_unit = int(settings.POINTS.get('POINTS_PER_UNIT', 100))
    return (Decimal(points) / Decimal(per_unit)).quantize(TWO_PLACES)


def compute_totals(lines, total_amount=None, discounted_amount=None, points_earned=None, points_spent=None):
    """
    Resolve the persisted money and points fields.

    A caller-supplied total wins; otherwise it is the sum of priced lines
    minus the discount, floored at zero. Spent points stand in for the
    discount when none is given. Points are only earned on orders that
    did not spend any.
    """
    spent = _optional_int(points_spent, 'points_spent')
    if discounted_amount is None and spent:
        discounted_amount = points_to_amount(spent)
    discount = _to_decimal(discounted_amount, 'discounted_amount')
    if discount is not None and discount < 0:
        raise ValidationError("discounted_amount cannot be negative")

    if total_amount is not None:
        total = _to_decimal(total_amount, 'total_amount')
        if total < 0:
            raise ValidationError("total_amount cannot be negative", total_amount=str(total))
    else:
        subtotal = sum((line.line_total or Decimal('0.00') for line in lines), Decimal('0.00'))
        total = max(Decimal('0.00'), subtotal - (discount or Decimal('0.00')))

    earned = _optional_int(points_earned, 'points_earned')
    if earned is None:
        earned = 0 if spent else points_earned_for(total)

    return total, discount, earned, spent


def _check_catalog_refs(lines):
    product_ids = {line.product_id for line in lines}
    known = set(Product.objects.filter(pk__in=product_ids).values_list('pk', flat=True))
    missing = sorted(product_ids - known)
    if missing:
        raise ValidationError("Unknown product(s) in cart", product_ids=missing)

    color_ids = {line.color_id for line in lines if line.color_id is not None}
    size_ids = {line.size_id for line in lines if line.size_id is not None}
    colors = dict(ProductColor.objects.filter(pk__in=color_ids).values_list('pk', 'product_id'))
    sizes = dict(ProductSize.objects.filter(pk__in=size_ids).values_list('pk', 'product_id'))
    for line in lines:
        if line.color_id is not None and colors.get(line.color_id) != line.product_id:
            raise ValidationError("Color does not belong to product", product_id=line.product_id, color_id=line.color_id)
        if line.size_id is not None and sizes.get(line.size_id) != line.product_id:
            raise ValidationError("Size does not belong to product", product_id=line.product_id, size_id=line.size_id)


def create_order(buyer_id, lines, shipping_address=None, total_amount=None, discount_type=None,
                 discounted_amount=None, points_earned=None, points_spent=None, actor=None):
    """
    Persist an order and its lines.

    Returns ``(order, order_lines)``. Nothing is written when validation
    fails, and a failed line insert rolls the order back with it.
    """
    if buyer_id in (None, ''):
        raise ValidationError("buyer_id is required")
    cart = coerce_cart(lines)
    _check_catalog_refs(cart)
    total, discount, earned, spent = compute_totals(
        cart, total_amount, discounted_amount, points_earned, points_spent,
    )

    with transaction.atomic():
        try:
            order = Order.objects.create(
                buyer_id=str(buyer_id),
                shipping_address=shipping_address,
                total_amount=total,
                discount_type=discount_type,
                discounted_amount=discount,
                points_earned=earned,
                points_spent=spent,
            )
        except DatabaseError as e:
            logger.error(f"Failed to create order for buyer {buyer_id}: {e}")
            raise OrderPersistFailed(f"Failed to create order: {e}") from e

        try:
            order_lines = [
                OrderLine.objects.create(
                    order=order,
                    product_id=line.product_id,
                    amount=line.quantity,
                    color_id=line.color_id,
                    size_id=line.size_id,
                    unit_price=line.unit_price,
                )
                for line in cart
            ]
        except DatabaseError as e:
            logger.error(f"Failed to create order items for buyer {buyer_id}: {e}")
            raise LinePersistFailed(f"Failed to create order items: {e}") from e

    logger.info(f"Created order {order.pk} for buyer {buyer_id} with {len(order_lines)} line(s), total {total}")
    create_audit_log(
        user=actor,
        action='order_create',
        model_name='Order',
        object_id=str(order.pk),
        object_name=str(order),
        changes={
            'buyer_id': order.buyer_id,
            'total_amount': str(total),
            'points_earned': earned,
            'points_spent': spent,
            'lines': len(order_lines),
        },
    )
    return order, order_lines
