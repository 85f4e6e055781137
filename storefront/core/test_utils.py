"""
Test utilities and factories for creating test data
"""
import random
import string
import uuid
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.utils import timezone
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import RefreshToken

from storefront.catalog.models import Product
from storefront.core.models import Profile
from storefront.core.roles import session_for
from storefront.orders.models import Cart, CartItem, Order, OrderItem

User = get_user_model()


class TestDataFactory:
    """Factory class for creating test data"""

    @staticmethod
    def random_string(length=10):
        """Generate a random string"""
        return ''.join(random.choices(string.ascii_lowercase + string.digits, k=length))

    @staticmethod
    def create_user(email=None, password='testpass123', role=Profile.ROLE_USER, is_admin=False,
                    display_name=None, with_profile=True):
        """Create a test account with a profile in the given role"""
        if not email:
            email = f'user_{TestDataFactory.random_string(6)}@test.com'
        user = User.objects.create_user(
            username=email,
            email=email,
            password=password,
            display_name=display_name or email.split('@')[0],
        )
        if with_profile:
            Profile.objects.create(user=user, role=role, is_admin=is_admin)
        return user

    @staticmethod
    def create_manager(email=None, is_admin=False):
        """Create a manager, optionally flagged as the admin manager"""
        return TestDataFactory.create_user(email=email, role=Profile.ROLE_MANAGER, is_admin=is_admin)

    @staticmethod
    def session(user):
        """Session snapshot for a user as the API would build it"""
        user.refresh_from_db()
        return session_for(user, Profile.objects.filter(user=user).first())

    @staticmethod
    def create_product(name=None, price=None, stock_quantity=10, category='Electronics', description=None):
        """Create a test product"""
        if not name:
            name = f'Product_{TestDataFactory.random_string(6)}'
        if price is None:
            price = Decimal('25.00')
        return Product.objects.create(
            name=name,
            description=description or f'Test product {name}',
            price=price,
            stock_quantity=stock_quantity,
            category=category,
        )

    @staticmethod
    def create_cart_with_items(user, lines):
        """Create (or refill) a cart; `lines` is a list of (product, quantity)"""
        cart, _ = Cart.objects.get_or_create(user=user)
        for product, quantity in lines:
            CartItem.objects.create(cart=cart, product=product, quantity=quantity, price=product.price)
        cart.recalculate_total()
        return cart

    @staticmethod
    def create_order(user, lines, status=Order.STATUS_PENDING):
        """Create an order directly, without touching stock"""
        order_number = f"ORD-{timezone.now().strftime('%Y%m%d')}-{str(uuid.uuid4())[:8].upper()}"
        while Order.objects.filter(order_number=order_number).exists():
            order_number = f"ORD-{timezone.now().strftime('%Y%m%d')}-{str(uuid.uuid4())[:8].upper()}"
        total = sum((product.price * quantity for product, quantity in lines), Decimal('0.00'))
        order = Order.objects.create(order_number=order_number, user=user, total=total, status=status)
        for product, quantity in lines:
            OrderItem.objects.create(order=order, product=product, quantity=quantity, price=product.price)
        return order


class AuthenticatedAPIClient(APIClient):
    """APIClient with authentication helper"""

    def authenticate_user(self, user):
        """Authenticate the client with a user"""
        refresh = RefreshToken.for_user(user)
        self.credentials(HTTP_AUTHORIZATION=f'Bearer {refresh.access_token}')
        return self

    def logout(self):
        """Remove authentication"""
        self.credentials()
