"""
Stock ledger: the only writer of ``StockRecord.available``.

Every change is one database transaction that
  1. locks the stock row (``SELECT ... FOR UPDATE``),
  2. writes the new count with a compare-and-swap
     ``UPDATE ... WHERE id = :id AND available = :seen``,
  3. appends the matching ``StockMovement`` row.

Either all three commit or none do. Order decrements carry an idempotency
key of ``order:<order_id>:stock:<stock_record_id>`` backed by a unique
index, so replaying a decrement after a timeout returns the first result
instead of taking stock twice.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from django.conf import settings
from django.db import DatabaseError, IntegrityError, OperationalError, transaction
from django.db.models import Sum
from django.utils import timezone

from backend.core.exceptions import (
    ConcurrencyError, PersistenceFailed, RecordNotFound, ValidationError,
)
from backend.core.utils import create_audit_log
from .models import StockMovement, StockRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerResult:
    """Outcome of one ledger write (or of a replayed one)"""
    stock_record_id: int
    movement_id: int
    movement_type: str
    requested: int
    applied: int
    available: int
    order_id: Optional[int] = None
    replayed: bool = False

    @property
    def decremented(self) -> int:
        return -self.applied if self.applied < 0 else 0

    @property
    def shortfall(self) -> int:
        """Requested units that were not taken because stock ran out"""
        if self.movement_type != StockMovement.DECREMENT:
            return 0
        return self.requested - self.decremented


class _LostRace(Exception):
    """Conditional update matched no row; the stored count moved under us"""


def decrement_key(order_id, stock_record_id):
    return f"order:{order_id}:stock:{stock_record_id}"


def restock_key(order_id, stock_record_id):
    return f"restock:{order_id}:stock:{stock_record_id}"


LOCK_CONFLICT_MARKERS = ('locked', 'busy', 'deadlock', 'could not serialize')


def _is_lock_conflict(error):
    """Lock waits that timed out or were broken, as opposed to real write failures"""
    message = str(error).lower()
    return any(marker in message for marker in LOCK_CONFLICT_MARKERS)


def _cas_max_attempts():
    return int(getattr(settings, 'INVENTORY_LEDGER', {}).get('CAS_MAX_ATTEMPTS', 3))


def _positive_int(value, field):
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{field} must be a positive integer", **{field: value})
    return value


def _conditional_update(stock_record_id, seen, new_value):
    """Write ``new_value`` only if the stored count still equals ``seen``"""
    return StockRecord.objects.filter(pk=stock_record_id, available=seen).update(
        available=new_value,
        updated_at=timezone.now(),
    )


def _current_available(stock_record_id):
    return StockRecord.objects.values_list('available', flat=True).get(pk=stock_record_id)


def _replay(movement):
    return movement, _current_available(movement.stock_record_id), True


def _apply(stock_record_id, movement_type, amount, compute, order_id=None,
           idempotency_key=None, actor=None, note=''):
    """
    Apply one movement to a stock record.

    ``compute(current)`` returns the new available count. Returns
    ``(movement, available_after, replayed)``.
    """
    attempts = _cas_max_attempts()
    for attempt in range(1, attempts + 1):
        try:
            with transaction.atomic():
                if idempotency_key:
                    existing = StockMovement.objects.filter(idempotency_key=idempotency_key).first()
                    if existing is not None:
                        return _replay(existing)

                try:
                    record = (
                        StockRecord.objects.select_for_update()
                        .only('id', 'available')
                        .get(pk=stock_record_id)
                    )
                except StockRecord.DoesNotExist:
                    raise RecordNotFound(
                        f"Stock record {stock_record_id} not found",
                        stock_record_id=stock_record_id,
                    )

                seen = record.available
                new_value = compute(seen)
                if _conditional_update(stock_record_id, seen, new_value) != 1:
                    raise _LostRace()

                movement = StockMovement.objects.create(
                    stock_record_id=stock_record_id,
                    movement_type=movement_type,
                    amount=amount,
                    applied=new_value - seen,
                    order_id=order_id,
                    idempotency_key=idempotency_key,
                    actor=actor,
                    note=note,
                )
                return movement, new_value, False
        except _LostRace:
            logger.warning(
                f"Stock record {stock_record_id} changed during {movement_type} "
                f"(attempt {attempt}/{attempts}), retrying"
            )
            continue
        except IntegrityError as e:
            # A concurrent retry of the same keyed movement committed first
            if idempotency_key:
                existing = StockMovement.objects.filter(idempotency_key=idempotency_key).first()
                if existing is not None:
                    return _replay(existing)
            raise PersistenceFailed(
                f"Could not record {movement_type} on stock record {stock_record_id}: {e}",
                stock_record_id=stock_record_id,
            ) from e
        except OperationalError as e:
            if not _is_lock_conflict(e):
                raise PersistenceFailed(
                    f"Could not record {movement_type} on stock record {stock_record_id}: {e}",
                    stock_record_id=stock_record_id,
                ) from e
            logger.warning(
                f"Stock record {stock_record_id} was locked during {movement_type} "
                f"(attempt {attempt}/{attempts}), retrying: {e}"
            )
            continue
        except DatabaseError as e:
            raise PersistenceFailed(
                f"Could not record {movement_type} on stock record {stock_record_id}: {e}",
                stock_record_id=stock_record_id,
            ) from e

    raise ConcurrencyError(
        f"Stock record {stock_record_id} kept changing or stayed locked; gave up after {attempts} attempts",
        stock_record_id=stock_record_id,
    )


def _to_result(movement, available, replayed):
    return LedgerResult(
        stock_record_id=movement.stock_record_id,
        movement_id=movement.pk,
        movement_type=movement.movement_type,
        requested=movement.amount,
        applied=movement.applied,
        available=available,
        order_id=movement.order_id,
        replayed=replayed,
    )


def decrement(stock_record_id, order_id, quantity, actor=None):
    """
    Take ``quantity`` units for an order, clamping the count at zero.

    A shortfall (requested more than available) is not an error; it shows
    up as ``LedgerResult.shortfall``.
    """
    _positive_int(quantity, 'quantity')
    if order_id is None:
        raise ValidationError("Decrements must reference the order they belong to")

    movement, available, replayed = _apply(
        stock_record_id,
        StockMovement.DECREMENT,
        quantity,
        lambda current: max(0, current - quantity),
        order_id=order_id,
        idempotency_key=decrement_key(order_id, stock_record_id),
        actor=actor,
    )
    result = _to_result(movement, available, replayed)

    if replayed:
        logger.info(f"Decrement for order {order_id} on stock record {stock_record_id} already recorded; replayed")
        return result

    logger.info(
        f"Decremented stock record {stock_record_id} by {result.decremented} "
        f"(requested {quantity}) for order {order_id}; available now {available}"
    )
    if result.shortfall:
        logger.warning(f"Stock shortfall of {result.shortfall} on stock record {stock_record_id} for order {order_id}")

    create_audit_log(
        user=actor,
        action='stock_sale',
        model_name='StockRecord',
        object_id=str(stock_record_id),
        object_reference=f"Order #{order_id}",
        changes={
            'movement_id': movement.pk,
            'requested': quantity,
            'decremented': result.decremented,
            'shortfall': result.shortfall,
            'available': available,
        },
    )
    return result


def increment(stock_record_id, quantity, actor=None, note='', order_id=None, idempotency_key=None):
    """Add ``quantity`` units to a stock record (restock)"""
    _positive_int(quantity, 'quantity')

    movement, available, replayed = _apply(
        stock_record_id,
        StockMovement.INCREMENT,
        quantity,
        lambda current: current + quantity,
        order_id=order_id,
        idempotency_key=idempotency_key,
        actor=actor,
        note=note,
    )
    result = _to_result(movement, available, replayed)
    if replayed:
        return result

    logger.info(f"Restocked stock record {stock_record_id} with {quantity}; available now {available}")
    create_audit_log(
        user=actor,
        action='stock_purchase',
        model_name='StockRecord',
        object_id=str(stock_record_id),
        object_reference=f"Order #{order_id}" if order_id else None,
        changes={'movement_id': movement.pk, 'quantity': quantity, 'available': available, 'note': note},
    )
    return result


def adjust(stock_record_id, delta, actor=None, note=''):
    """
    Manual correction by a signed ``delta``.

    Negative corrections clamp at zero like decrements do; ``applied`` on
    the result shows what actually changed.
    """
    if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
        raise ValidationError("delta must be a non-zero integer", delta=delta)

    movement, available, _ = _apply(
        stock_record_id,
        StockMovement.ADJUSTMENT,
        abs(delta),
        lambda current: max(0, current + delta),
        actor=actor,
        note=note,
    )
    logger.info(f"Adjusted stock record {stock_record_id} by {movement.applied} (requested {delta}); available now {available}")
    create_audit_log(
        user=actor,
        action='stock_adjust',
        model_name='StockRecord',
        object_id=str(stock_record_id),
        changes={'movement_id': movement.pk, 'requested': delta, 'applied': movement.applied, 'available': available, 'note': note},
    )
    return _to_result(movement, available, False)


def movement_total(stock_record_id):
    """Sum of signed applied amounts ever recorded against a stock record"""
    total = StockMovement.objects.filter(stock_record_id=stock_record_id).aggregate(total=Sum('applied'))['total']
    return total or 0


def verify_record(record):
    """True when the movement log accounts for the record's available count"""
    return movement_total(record.pk) == record.available


def find_discrepancies(queryset=None):
    """Yield ``(record, movement_total)`` for every record whose log does not add up"""
    queryset = queryset if queryset is not None else StockRecord.objects.all()
    totals = dict(
        StockMovement.objects.filter(stock_record__in=queryset)
        .values('stock_record_id')
        .annotate(total=Sum('applied'))
        .values_list('stock_record_id', 'total')
    )
    for record in queryset.order_by('id'):
        total = totals.get(record.pk, 0) or 0
        if total != record.available:
            yield record, total
