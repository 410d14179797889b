from rest_framework import serializers
from .models import StockRecord, StockMovement


class StockRecordSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source='product.name', read_only=True)
    product_sku = serializers.CharField(source='product.sku', read_only=True)
    color_name = serializers.CharField(source='color.name', read_only=True, default=None)
    size_name = serializers.CharField(source='size.name', read_only=True, default=None)

    class Meta:
        model = StockRecord
        fields = ['id', 'product', 'product_name', 'product_sku', 'color', 'color_name', 'size', 'size_name',
                  'available', 'created_at', 'updated_at']
        read_only_fields = fields


class StockMovementSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source='stock_record.product.name', read_only=True)
    actor_username = serializers.CharField(source='actor.username', read_only=True, default=None)
    shortfall = serializers.IntegerField(read_only=True)

    class Meta:
        model = StockMovement
        fields = ['id', 'stock_record', 'product_name', 'movement_type', 'amount', 'applied', 'shortfall',
                  'order', 'idempotency_key', 'actor', 'actor_username', 'note', 'created_at']
        read_only_fields = fields


class ProvisionSerializer(serializers.Serializer):
    product_id = serializers.IntegerField()
    color_id = serializers.IntegerField(required=False, allow_null=True)
    size_id = serializers.IntegerField(required=False, allow_null=True)
    opening_count = serializers.IntegerField(required=False, default=0, min_value=0)


class IncrementSerializer(serializers.Serializer):
    quantity = serializers.IntegerField(min_value=1)
    note = serializers.CharField(required=False, allow_blank=True, default='')


class AdjustSerializer(serializers.Serializer):
    delta = serializers.IntegerField()
    note = serializers.CharField(required=False, allow_blank=True, default='')

    def validate_delta(self, value):
        if value == 0:
            raise serializers.ValidationError('Delta cannot be zero')
        return value
