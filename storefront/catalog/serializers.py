from decimal import Decimal

from rest_framework import serializers

from .models import Product


class ProductSerializer(serializers.ModelSerializer):
    price = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=Decimal('0.01'))
    stock_quantity = serializers.IntegerField(min_value=0)
    in_stock = serializers.SerializerMethodField()

    class Meta:
        model = Product
        fields = ['id', 'name', 'description', 'price', 'stock_quantity', 'category',
                  'image_url', 'in_stock', 'created_at', 'updated_at']
        read_only_fields = ['id', 'created_at', 'updated_at']

    def get_in_stock(self, obj):
        return obj.stock_quantity > 0

    def validate_name(self, value):
        value = value.strip()
        if not value:
            raise serializers.ValidationError('Product name is required')
        return value

    def validate_category(self, value):
        value = value.strip()
        if not value:
            raise serializers.ValidationError('Category is required')
        return value


class LowStockProductSerializer(serializers.ModelSerializer):
    """Row of the low-stock alerts page"""
    status = serializers.SerializerMethodField()

    class Meta:
        model = Product
        fields = ['id', 'name', 'category', 'price', 'stock_quantity', 'status', 'updated_at']

    def get_status(self, obj):
        return 'out_of_stock' if obj.stock_quantity == 0 else 'low_stock'
