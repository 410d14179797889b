from django.contrib import admin
from .models import Order, OrderLine, OrderStatusLog


class OrderLineInline(admin.TabularInline):
    model = OrderLine
    extra = 0
    can_delete = False
    readonly_fields = ['product', 'color', 'size', 'amount', 'unit_price', 'created_at']

    def has_add_permission(self, request, obj=None):
        return False


class OrderStatusLogInline(admin.TabularInline):
    model = OrderStatusLog
    extra = 0
    can_delete = False
    readonly_fields = ['old_status', 'new_status', 'actor', 'actor_label', 'note', 'created_at']

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    """Orders are read-only here; status changes go through the order API"""
    list_display = ['id', 'buyer_id', 'total_amount', 'status', 'fulfillment_status', 'points_earned', 'created_at']
    list_filter = ['status', 'fulfillment_status', 'created_at']
    search_fields = ['buyer_id', 'shipping_address']
    ordering = ['-created_at']
    readonly_fields = ['buyer_id', 'shipping_address', 'total_amount', 'discount_type', 'discounted_amount',
                       'points_earned', 'points_spent', 'status', 'fulfillment_status', 'created_at', 'updated_at']
    inlines = [OrderLineInline, OrderStatusLogInline]

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(OrderStatusLog)
class OrderStatusLogAdmin(admin.ModelAdmin):
    list_display = ['order', 'old_status', 'new_status', 'actor_label', 'created_at']
    list_filter = ['new_status', 'created_at']
    search_fields = ['order__id', 'actor_label', 'note']
    ordering = ['-created_at']

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
