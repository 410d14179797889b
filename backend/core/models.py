from django.contrib.auth.models import AbstractUser
from django.db import models


class User(AbstractUser):
    """Operator account; the actor recorded on status changes and ledger writes"""
    phone = models.CharField(max_length=20, blank=True, null=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'users'


class AuditLog(models.Model):
    """Audit log for critical operations"""
    ACTION_CHOICES = [
        ('create', 'Create'),
        ('update', 'Update'),
        ('view', 'View'),
        ('order_create', 'Order Created'),
        ('order_status', 'Order Status Changed'),
        ('order_partial', 'Order Partially Fulfilled'),
        ('order_restock', 'Cancelled Order Restocked'),
        ('stock_provision', 'Stock Record Provisioned'),
        ('stock_adjust', 'Stock Adjustment'),
        ('stock_purchase', 'Stock Added (Restock)'),
        ('stock_sale', 'Stock Removed (Sale)'),
    ]

    user = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, related_name='audit_logs')
    action = models.CharField(max_length=50, choices=ACTION_CHOICES)
    model_name = models.CharField(max_length=100)
    object_id = models.CharField(max_length=100)
    object_name = models.CharField(max_length=255, blank=True, null=True, help_text="Human-readable name of the object (e.g., product name, order number)")
    object_reference = models.CharField(max_length=255, blank=True, null=True, help_text="Reference identifier (e.g., order id the stock movement belongs to)")
    changes = models.JSONField(default=dict, blank=True)
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'audit_logs'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['-created_at'], name='audit_logs_created_0b4f2e_idx'),
            models.Index(fields=['action'], name='audit_logs_action_5c9d1a_idx'),
            models.Index(fields=['model_name'], name='audit_logs_model_n_7e2b3c_idx'),
            models.Index(fields=['object_reference'], name='audit_logs_object__9a4f6d_idx'),
        ]
