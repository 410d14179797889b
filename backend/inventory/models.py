from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q
from backend.catalog.models import Product, ProductColor, ProductSize


class AppendOnlyModel(models.Model):
    """Rows are written once and never updated or deleted"""

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError(f"{self.__class__.__name__} rows are append-only")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError(f"{self.__class__.__name__} rows cannot be deleted")

    class Meta:
        abstract = True


class StockRecord(models.Model):
    """Available count for one product variant (product + color + size)"""
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name='stock_records')
    color = models.ForeignKey(ProductColor, on_delete=models.PROTECT, related_name='stock_records', null=True, blank=True)
    size = models.ForeignKey(ProductSize, on_delete=models.PROTECT, related_name='stock_records', null=True, blank=True)
    available = models.IntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        parts = [self.product.name]
        if self.color_id:
            parts.append(self.color.name)
        if self.size_id:
            parts.append(self.size.name)
        return f"{' / '.join(parts)}: {self.available}"

    @property
    def variant_key(self):
        return (self.product_id, self.color_id, self.size_id)

    def clean(self):
        if self.available is None or self.available < 0:
            raise ValidationError({'available': 'Available count cannot be negative'})
        if self.color_id and self.color.product_id != self.product_id:
            raise ValidationError({'color': 'Color belongs to a different product'})
        if self.size_id and self.size.product_id != self.product_id:
            raise ValidationError({'size': 'Size belongs to a different product'})

    def save(self, *args, **kwargs):
        self.clean()
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError("Stock records are never deleted")

    class Meta:
        db_table = 'product_stock'
        # One constraint per NULL pattern so a missing color/size axis
        # is treated as a value of its own
        constraints = [
            models.UniqueConstraint(
                fields=['product', 'color', 'size'],
                condition=Q(color__isnull=False, size__isnull=False),
                name='uniq_stock_product_color_size',
            ),
            models.UniqueConstraint(
                fields=['product', 'color'],
                condition=Q(color__isnull=False, size__isnull=True),
                name='uniq_stock_product_color',
            ),
            models.UniqueConstraint(
                fields=['product', 'size'],
                condition=Q(color__isnull=True, size__isnull=False),
                name='uniq_stock_product_size',
            ),
            models.UniqueConstraint(
                fields=['product'],
                condition=Q(color__isnull=True, size__isnull=True),
                name='uniq_stock_product',
            ),
            models.CheckConstraint(condition=Q(available__gte=0), name='stock_available_non_negative'),
        ]
        indexes = [
            models.Index(fields=['product', 'color', 'size'], name='idx_stock_variant'),
        ]


class StockMovement(AppendOnlyModel):
    """Immutable ledger entry recording one change to a stock record"""
    DECREMENT = 'decrement'
    INCREMENT = 'increment'
    ADJUSTMENT = 'adjustment'

    MOVEMENT_TYPE_CHOICES = [
        (DECREMENT, 'Decrement (Sale)'),
        (INCREMENT, 'Increment (Restock)'),
        (ADJUSTMENT, 'Adjustment'),
    ]

    stock_record = models.ForeignKey(StockRecord, on_delete=models.PROTECT, related_name='movements')
    movement_type = models.CharField(max_length=20, choices=MOVEMENT_TYPE_CHOICES)
    amount = models.PositiveIntegerField(help_text='Requested magnitude of the movement')
    applied = models.IntegerField(help_text='Signed change actually applied to the available count')
    order = models.ForeignKey('orders.Order', on_delete=models.PROTECT, related_name='stock_movements', null=True, blank=True)
    idempotency_key = models.CharField(max_length=100, unique=True, null=True, blank=True)
    actor = models.ForeignKey('core.User', on_delete=models.SET_NULL, null=True, blank=True, related_name='stock_movements')
    note = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    @property
    def shortfall(self):
        """Requested units that could not be taken because stock ran out"""
        if self.movement_type != self.DECREMENT:
            return 0
        return self.amount + self.applied

    def __str__(self):
        return f"{self.movement_type} {self.amount} on stock #{self.stock_record_id}"

    class Meta:
        db_table = 'product_stock_logs'
        ordering = ['created_at', 'id']
        indexes = [
            models.Index(fields=['stock_record', 'created_at'], name='idx_movement_stock_created'),
            models.Index(fields=['order'], name='idx_movement_order'),
        ]
