from django.core.exceptions import ObjectDoesNotExist
from rest_framework import serializers

from storefront.catalog.serializers import ProductSerializer
from .models import Cart, CartItem, Order, OrderItem

PLACEHOLDER_PRODUCT_NAME = 'Product no longer available'


def product_for_line(line):
    """Live product of a cart/order line, or a placeholder once it is deleted"""
    try:
        product = line.product
    except ObjectDoesNotExist:
        product = None

    if product is None:
        return {
            'id': line.product_id,
            'name': PLACEHOLDER_PRODUCT_NAME,
            'description': '',
            'price': str(line.price),
            'stock_quantity': 0,
            'category': '',
            'image_url': '',
            'in_stock': False,
            'available': False,
        }
    data = dict(ProductSerializer(product).data)
    data['available'] = True
    return data


class CartItemSerializer(serializers.ModelSerializer):
    product = serializers.SerializerMethodField()
    line_total = serializers.DecimalField(max_digits=12, decimal_places=2, read_only=True)

    class Meta:
        model = CartItem
        fields = ['id', 'product_id', 'product', 'quantity', 'price', 'line_total']

    def get_product(self, obj):
        return product_for_line(obj)


class CartSerializer(serializers.ModelSerializer):
    items = CartItemSerializer(many=True, read_only=True)
    item_count = serializers.SerializerMethodField()

    class Meta:
        model = Cart
        fields = ['id', 'items', 'item_count', 'total', 'created_at', 'updated_at']

    def get_item_count(self, obj):
        return sum(item.quantity for item in obj.items.all())


class CartAddSerializer(serializers.Serializer):
    product_id = serializers.IntegerField()
    quantity = serializers.IntegerField(min_value=1, default=1)


class CartItemUpdateSerializer(serializers.Serializer):
    # Zero or negative removes the line
    quantity = serializers.IntegerField()


class OrderItemSerializer(serializers.ModelSerializer):
    product = serializers.SerializerMethodField()
    line_total = serializers.DecimalField(max_digits=12, decimal_places=2, read_only=True)

    class Meta:
        model = OrderItem
        fields = ['id', 'product_id', 'product', 'quantity', 'price', 'line_total']

    def get_product(self, obj):
        return product_for_line(obj)


class OrderSerializer(serializers.ModelSerializer):
    items = OrderItemSerializer(many=True, read_only=True)
    user_id = serializers.IntegerField(read_only=True)
    user_email = serializers.SerializerMethodField()
    status_display = serializers.CharField(source='get_status_display', read_only=True)

    class Meta:
        model = Order
        fields = ['id', 'order_number', 'user_id', 'user_email', 'items', 'total',
                  'status', 'status_display', 'created_at', 'updated_at']

    def get_user_email(self, obj):
        return obj.user.email if obj.user else None


class OrderStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=Order.STATUS_CHOICES)
