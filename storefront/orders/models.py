from decimal import Decimal

from django.conf import settings
from django.core.validators import MinValueValidator
from django.db import models

from storefront.catalog.models import Product


class Cart(models.Model):
    """One cart per account, created on first read"""
    user = models.OneToOneField(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='cart')
    total = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"Cart of {self.user}"

    def recalculate_total(self):
        """Sum of captured line prices times quantities"""
        self.total = sum(
            (item.line_total for item in self.items.all()),
            Decimal('0.00'),
        )
        self.save(update_fields=['total', 'updated_at'])
        return self.total

    class Meta:
        db_table = 'carts'


class CartItem(models.Model):
    """Cart line; price is captured when the line is added"""
    cart = models.ForeignKey(Cart, on_delete=models.CASCADE, related_name='items')
    # No database constraint: a deleted product leaves the line behind
    product = models.ForeignKey(
        Product, on_delete=models.DO_NOTHING, db_constraint=False,
        null=True, blank=True, related_name='+',
    )
    quantity = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    price = models.DecimalField(max_digits=10, decimal_places=2)
    created_at = models.DateTimeField(auto_now_add=True)

    @property
    def line_total(self):
        return self.price * self.quantity

    def __str__(self):
        return f"{self.quantity} x product {self.product_id}"

    class Meta:
        db_table = 'cart_items'
        ordering = ['created_at', 'id']


class Order(models.Model):
    """Immutable snapshot of a cart at checkout"""
    STATUS_PENDING = 'pending'
    STATUS_PROCESSING = 'processing'
    STATUS_SHIPPED = 'shipped'
    STATUS_DELIVERED = 'delivered'
    STATUS_CANCELLED = 'cancelled'

    STATUS_CHOICES = [
        (STATUS_PENDING, 'Pending'),
        (STATUS_PROCESSING, 'Processing'),
        (STATUS_SHIPPED, 'Shipped'),
        (STATUS_DELIVERED, 'Delivered'),
        (STATUS_CANCELLED, 'Cancelled'),
    ]

    order_number = models.CharField(max_length=50, unique=True)
    # Orders outlive the account that placed them
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name='orders'
    )
    total = models.DecimalField(max_digits=12, decimal_places=2)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_PENDING, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.order_number} ({self.status})"

    class Meta:
        db_table = 'orders'
        ordering = ['-created_at']


class OrderItem(models.Model):
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name='items')
    product = models.ForeignKey(
        Product, on_delete=models.DO_NOTHING, db_constraint=False,
        null=True, blank=True, related_name='+',
    )
    quantity = models.PositiveIntegerField()
    price = models.DecimalField(max_digits=10, decimal_places=2)

    @property
    def line_total(self):
        return self.price * self.quantity

    def __str__(self):
        return f"{self.order.order_number} - {self.quantity} x product {self.product_id}"

    class Meta:
        db_table = 'order_items'
        ordering = ['id']
