from rest_framework import serializers
from .models import Order, OrderLine, OrderStatusLog


class OrderLineSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source='product.name', read_only=True)
    product_sku = serializers.CharField(source='product.sku', read_only=True)
    color_name = serializers.CharField(source='color.name', read_only=True, default=None)
    size_name = serializers.CharField(source='size.name', read_only=True, default=None)
    quantity = serializers.IntegerField(source='amount', read_only=True)

    class Meta:
        model = OrderLine
        fields = ['id', 'product', 'product_name', 'product_sku', 'color', 'color_name', 'size', 'size_name',
                  'quantity', 'unit_price', 'created_at']
        read_only_fields = fields


class OrderSerializer(serializers.ModelSerializer):
    lines = OrderLineSerializer(many=True, read_only=True)
    status = serializers.CharField(source='effective_status', read_only=True)
    stored_status = serializers.CharField(source='status', read_only=True)
    fully_reserved = serializers.BooleanField(source='is_fully_reserved', read_only=True)

    class Meta:
        model = Order
        fields = ['id', 'buyer_id', 'shipping_address', 'total_amount', 'discount_type', 'discounted_amount',
                  'points_earned', 'points_spent', 'status', 'stored_status', 'fulfillment_status',
                  'fully_reserved', 'created_at', 'updated_at', 'lines']
        read_only_fields = fields


class OrderStatusLogSerializer(serializers.ModelSerializer):
    class Meta:
        model = OrderStatusLog
        fields = ['id', 'order', 'old_status', 'new_status', 'actor', 'actor_label', 'note', 'created_at']
        read_only_fields = fields


class CartLineInputSerializer(serializers.Serializer):
    """Cart line as sent by the storefront"""
    product_id = serializers.IntegerField()
    quantity = serializers.IntegerField(min_value=1)
    color_id = serializers.IntegerField(required=False, allow_null=True)
    size_id = serializers.IntegerField(required=False, allow_null=True)
    unit_price = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, allow_null=True, min_value=0)


class PlaceOrderSerializer(serializers.Serializer):
    buyer_id = serializers.CharField(max_length=64)
    items = CartLineInputSerializer(many=True, allow_empty=True)
    shipping_address = serializers.CharField(required=False, allow_null=True, allow_blank=True)
    total_amount = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, allow_null=True)
    discount_type = serializers.CharField(max_length=50, required=False, allow_null=True, allow_blank=True)
    discounted_amount = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, allow_null=True)
    points_earned = serializers.IntegerField(required=False, allow_null=True, min_value=0)
    points_spent = serializers.IntegerField(required=False, allow_null=True, min_value=0)


class StatusChangeSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=Order.STATUS_CHOICES)
    note = serializers.CharField(required=False, allow_blank=True, default='')
