from django.contrib import admin
from .models import StockRecord, StockMovement


class StockMovementInline(admin.TabularInline):
    model = StockMovement
    extra = 0
    can_delete = False
    readonly_fields = ['movement_type', 'amount', 'applied', 'order', 'idempotency_key', 'actor', 'note', 'created_at']

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(StockRecord)
class StockRecordAdmin(admin.ModelAdmin):
    """Counts are changed only through the stock API so every change is logged"""
    list_display = ['product', 'color', 'size', 'available', 'updated_at']
    list_filter = ['updated_at']
    search_fields = ['product__name', 'product__sku']
    ordering = ['product', 'color', 'size']
    readonly_fields = ['product', 'color', 'size', 'available', 'created_at', 'updated_at']
    inlines = [StockMovementInline]

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(StockMovement)
class StockMovementAdmin(admin.ModelAdmin):
    list_display = ['stock_record', 'movement_type', 'amount', 'applied', 'order', 'actor', 'created_at']
    list_filter = ['movement_type', 'created_at']
    search_fields = ['stock_record__product__name', 'idempotency_key', 'note']
    ordering = ['-created_at']

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
