from decimal import Decimal
from django.db import models
from django.db.models import Q
from backend.catalog.models import Product, ProductColor, ProductSize
from backend.core.models import User
from backend.inventory.models import AppendOnlyModel


class Order(models.Model):
    """Customer orders. Financial record: never deleted."""
    PENDING = 'pending'
    PROCESSING = 'processing'
    SHIPPED = 'shipped'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'

    STATUS_CHOICES = [
        (PENDING, 'Pending'),
        (PROCESSING, 'Processing'),
        (SHIPPED, 'Shipped'),
        (COMPLETED, 'Completed'),
        (CANCELLED, 'Cancelled'),
    ]

    # Orders created before status tracking have no status
    DEFAULT_STATUS = PROCESSING

    FULFILLMENT_PENDING = 'pending'
    FULFILLMENT_RESERVED = 'reserved'
    FULFILLMENT_PARTIAL = 'partial'

    FULFILLMENT_STATUS_CHOICES = [
        (FULFILLMENT_PENDING, 'Inventory Not Yet Reserved'),
        (FULFILLMENT_RESERVED, 'Inventory Reserved'),
        (FULFILLMENT_PARTIAL, 'Inventory Partially Reserved'),
    ]

    buyer_id = models.CharField(max_length=64, db_index=True, help_text='User id from the external auth service')
    shipping_address = models.TextField(null=True, blank=True)
    total_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    discount_type = models.CharField(max_length=50, null=True, blank=True)
    discounted_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    points_earned = models.IntegerField(null=True, blank=True)
    points_spent = models.IntegerField(null=True, blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, null=True, blank=True)
    fulfillment_status = models.CharField(max_length=20, choices=FULFILLMENT_STATUS_CHOICES, default=FULFILLMENT_PENDING, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    @classmethod
    def from_db(cls, db, field_names, values):
        instance = super().from_db(db, field_names, values)
        instance._loaded_buyer_id = instance.__dict__.get('buyer_id')
        return instance

    @property
    def effective_status(self):
        return self.status or self.DEFAULT_STATUS

    @property
    def is_fully_reserved(self):
        return self.fulfillment_status == self.FULFILLMENT_RESERVED

    def __str__(self):
        return f"Order #{self.pk}"

    def save(self, *args, **kwargs):
        loaded_buyer_id = getattr(self, '_loaded_buyer_id', None)
        if not self._state.adding and loaded_buyer_id is not None and loaded_buyer_id != self.buyer_id:
            raise ValueError("Order buyer cannot be changed")
        super().save(*args, **kwargs)
        self._loaded_buyer_id = self.buyer_id

    def delete(self, *args, **kwargs):
        raise ValueError("Orders are financial records and cannot be deleted")

    class Meta:
        db_table = 'orders'
        ordering = ['-created_at', '-id']
        constraints = [
            models.CheckConstraint(condition=Q(total_amount__gte=0), name='order_total_non_negative'),
        ]
        indexes = [
            models.Index(fields=['status'], name='idx_order_status'),
            models.Index(fields=['-created_at'], name='idx_order_created'),
        ]


class OrderLine(models.Model):
    """Order items. Immutable after creation."""
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name='lines')
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name='order_lines')
    amount = models.PositiveIntegerField(help_text='Requested quantity')
    color = models.ForeignKey(ProductColor, on_delete=models.PROTECT, related_name='order_lines', null=True, blank=True)
    size = models.ForeignKey(ProductSize, on_delete=models.PROTECT, related_name='order_lines', null=True, blank=True)
    unit_price = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    @property
    def variant_key(self):
        return (self.product_id, self.color_id, self.size_id)

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError("Order lines cannot be changed after creation")
        super().save(*args, **kwargs)

    class Meta:
        db_table = 'order_items'
        ordering = ['id']
        constraints = [
            models.CheckConstraint(condition=Q(amount__gt=0), name='order_item_amount_positive'),
        ]


class OrderStatusLog(AppendOnlyModel):
    """Status history of an order, written only by the status machine"""
    order = models.ForeignKey(Order, on_delete=models.PROTECT, related_name='status_logs')
    old_status = models.CharField(max_length=20, choices=Order.STATUS_CHOICES, null=True, blank=True)
    new_status = models.CharField(max_length=20, choices=Order.STATUS_CHOICES)
    actor = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='order_status_changes')
    actor_label = models.CharField(max_length=150, default='system')
    note = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"Order #{self.order_id}: {self.old_status or '-'} -> {self.new_status}"

    class Meta:
        db_table = 'order_status_logs'
        ordering = ['created_at', 'id']
