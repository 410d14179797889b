"""Maps a cart line (product + optional color + optional size) to its stock record"""
import logging

from django.core.exceptions import ObjectDoesNotExist
from django.core.exceptions import ValidationError as ModelValidationError
from django.db import DatabaseError, IntegrityError, transaction

from backend.catalog.models import Product
from backend.core.exceptions import CreateFailed, LookupFailed, ValidationError
from backend.core.utils import create_audit_log
from . import ledger
from .models import StockRecord

logger = logging.getLogger(__name__)


def _variant_filter(product_id, color_id, size_id):
    # None means "no variant axis": match NULL explicitly, never any value
    lookup = {'product_id': product_id}
    if color_id is None:
        lookup['color__isnull'] = True
    else:
        lookup['color_id'] = color_id
    if size_id is None:
        lookup['size__isnull'] = True
    else:
        lookup['size_id'] = size_id
    return lookup


def _check_product_id(product_id):
    if product_id is None or (isinstance(product_id, str) and not product_id.strip()):
        raise ValidationError("product_id is required")


def _as_id(value, field):
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an id", **{field: str(value)})


def find_stock_record(product_id, color_id=None, size_id=None):
    """Exact-match lookup; returns None when the variant has no record yet"""
    _check_product_id(product_id)
    product_id = _as_id(product_id, 'product_id')
    color_id = _as_id(color_id, 'color_id')
    size_id = _as_id(size_id, 'size_id')
    try:
        return StockRecord.objects.filter(**_variant_filter(product_id, color_id, size_id)).first()
    except DatabaseError as e:
        raise LookupFailed(
            f"Stock lookup failed for product {product_id}: {e}",
            product_id=product_id, color_id=color_id, size_id=size_id,
        ) from e


def resolve_stock_record(product_id, color_id=None, size_id=None):
    """
    Return the stock record for exactly (product, color, size).

    A variant combination seen for the first time gets a record at zero.
    Two buyers provisioning the same combination at once both end up with
    the single row the unique constraint lets through.
    """
    record = find_stock_record(product_id, color_id, size_id)
    if record is not None:
        return record

    product_id = _as_id(product_id, 'product_id')
    color_id = _as_id(color_id, 'color_id')
    size_id = _as_id(size_id, 'size_id')
    # FK checks are deferred to commit, so reject unknown products here
    if not Product.objects.filter(pk=product_id).exists():
        raise ValidationError(f"Unknown product {product_id}", product_id=product_id)

    try:
        with transaction.atomic():
            record = StockRecord.objects.create(
                product_id=product_id,
                color_id=color_id,
                size_id=size_id,
                available=0,
            )
    except (ObjectDoesNotExist, ModelValidationError) as e:
        raise ValidationError(
            f"Invalid variant for product {product_id}: {e}",
            product_id=product_id, color_id=color_id, size_id=size_id,
        ) from e
    except IntegrityError:
        record = find_stock_record(product_id, color_id, size_id)
        if record is None:
            raise CreateFailed(
                f"Failed to initialize product stock for product {product_id}",
                product_id=product_id, color_id=color_id, size_id=size_id,
            )
        return record
    except DatabaseError as e:
        raise CreateFailed(
            f"Failed to initialize product stock for product {product_id}: {e}",
            product_id=product_id, color_id=color_id, size_id=size_id,
        ) from e

    logger.info(f"Provisioned stock record {record.pk} at 0 for product {product_id} (color={color_id}, size={size_id})")
    return record


def provision_stock_record(product_id, color_id=None, size_id=None, opening_count=0, actor=None):
    """
    Eager provisioning from catalog management.

    The opening count goes through the ledger as an increment so the
    movement log still accounts for every unit.
    """
    if isinstance(opening_count, bool) or not isinstance(opening_count, int) or opening_count < 0:
        raise ValidationError("opening_count must be a non-negative integer", opening_count=opening_count)

    record = resolve_stock_record(product_id, color_id, size_id)
    create_audit_log(
        user=actor,
        action='stock_provision',
        model_name='StockRecord',
        object_id=str(record.pk),
        changes={'product_id': product_id, 'color_id': color_id, 'size_id': size_id, 'opening_count': opening_count},
    )
    if opening_count:
        ledger.increment(record.pk, opening_count, actor=actor, note='Opening stock')
        record.refresh_from_db()
    return record
