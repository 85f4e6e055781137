"""
Test suite for cart and orders
Tests: Cart Lines & Totals, Order Placement, Stock Safety, Order Visibility, Order Status
"""
from decimal import Decimal
from unittest import mock

from django.db import OperationalError
from django.test import TestCase
from rest_framework import status

from storefront.catalog.models import Product
from storefront.core import services as core_services
from storefront.core.exceptions import (
    InsufficientStockError, NotFoundError, PermissionDeniedError, ValidationFailure,
)
from storefront.core.models import AuditLog
from storefront.core.roles import ANONYMOUS
from storefront.core.test_utils import TestDataFactory, AuthenticatedAPIClient
from storefront.orders import services
from storefront.orders.models import Cart, CartItem, Order


class CartTests(TestCase):
    """Cart mutations keep total == sum(captured price * quantity)"""

    def setUp(self):
        self.user = TestDataFactory.create_user()
        self.session = TestDataFactory.session(self.user)
        self.product = TestDataFactory.create_product(price=Decimal('25.00'), stock_quantity=10)

    def test_cart_created_on_first_read(self):
        self.assertFalse(Cart.objects.filter(user=self.user).exists())
        cart = services.get_cart(self.session)
        self.assertEqual(cart.total, Decimal('0.00'))
        self.assertEqual(services.get_cart(self.session).pk, cart.pk)

    def test_anonymous_cannot_use_cart(self):
        with self.assertRaises(PermissionDeniedError) as ctx:
            services.add_to_cart(ANONYMOUS, self.product.pk, 1)
        self.assertEqual(ctx.exception.message, 'Please sign in to add items to your cart')

    def test_add_merges_lines_and_totals(self):
        services.add_to_cart(self.session, self.product.pk, 2)
        cart = services.add_to_cart(self.session, self.product.pk, 1)
        self.assertEqual(cart.items.count(), 1)
        self.assertEqual(cart.items.get().quantity, 3)
        self.assertEqual(cart.total, Decimal('75.00'))

    def test_captured_price_is_not_resynced(self):
        services.add_to_cart(self.session, self.product.pk, 2)
        Product.objects.filter(pk=self.product.pk).update(price=Decimal('99.00'))
        cart = services.add_to_cart(self.session, self.product.pk, 1)
        self.assertEqual(cart.items.get().price, Decimal('25.00'))
        self.assertEqual(cart.total, Decimal('75.00'))

    def test_add_beyond_stock_rejected(self):
        services.add_to_cart(self.session, self.product.pk, 8)
        with self.assertRaises(InsufficientStockError):
            services.add_to_cart(self.session, self.product.pk, 3)
        cart = services.get_cart(self.session)
        self.assertEqual(cart.items.get().quantity, 8)
        self.assertEqual(cart.total, Decimal('200.00'))

    def test_add_unknown_product(self):
        with self.assertRaises(NotFoundError):
            services.add_to_cart(self.session, 999999, 1)

    def test_update_to_zero_removes_line(self):
        cart = services.add_to_cart(self.session, self.product.pk, 2)
        item = cart.items.get()
        cart = services.update_cart_item(self.session, item.pk, 0)
        self.assertFalse(CartItem.objects.filter(pk=item.pk).exists())
        self.assertEqual(cart.total, Decimal('0.00'))

    def test_update_beyond_stock_leaves_cart_unchanged(self):
        cart = services.add_to_cart(self.session, self.product.pk, 2)
        item = cart.items.get()
        with self.assertRaises(InsufficientStockError):
            services.update_cart_item(self.session, item.pk, 11)
        item.refresh_from_db()
        cart.refresh_from_db()
        self.assertEqual(item.quantity, 2)
        self.assertEqual(cart.total, Decimal('50.00'))

    def test_update_quantity(self):
        cart = services.add_to_cart(self.session, self.product.pk, 2)
        cart = services.update_cart_item(self.session, cart.items.get().pk, 5)
        self.assertEqual(cart.total, Decimal('125.00'))

    def test_update_unknown_item(self):
        with self.assertRaises(NotFoundError):
            services.update_cart_item(self.session, 999999, 1)

    def test_remove_and_clear(self):
        other = TestDataFactory.create_product(price=Decimal('10.00'), stock_quantity=5)
        services.add_to_cart(self.session, self.product.pk, 1)
        cart = services.add_to_cart(self.session, other.pk, 2)
        self.assertEqual(cart.total, Decimal('45.00'))

        line = cart.items.get(product=other)
        cart = services.remove_from_cart(self.session, line.pk)
        self.assertEqual(cart.total, Decimal('25.00'))

        cart = services.clear_cart(self.session)
        self.assertEqual(cart.items.count(), 0)
        self.assertEqual(cart.total, Decimal('0.00'))
        self.assertTrue(AuditLog.objects.filter(action='cart_clear').exists())

    def test_cart_lines_are_private(self):
        cart = services.add_to_cart(self.session, self.product.pk, 1)
        stranger = TestDataFactory.create_user()
        with self.assertRaises(NotFoundError):
            services.remove_from_cart(TestDataFactory.session(stranger), cart.items.get().pk)


class OrderPlacementTests(TestCase):
    """create_order verifies, snapshots, decrements and clears in one transaction"""

    def setUp(self):
        self.user = TestDataFactory.create_user()
        self.session = TestDataFactory.session(self.user)
        self.product = TestDataFactory.create_product(name='Smart Watch', price=Decimal('20.00'), stock_quantity=10)

    def test_successful_order(self):
        other = TestDataFactory.create_product(price=Decimal('5.00'), stock_quantity=4)
        cart = TestDataFactory.create_cart_with_items(self.user, [(self.product, 3), (other, 4)])
        cart_total = cart.total

        order = services.create_order(self.session)

        self.assertEqual(order.status, Order.STATUS_PENDING)
        self.assertEqual(order.total, cart_total)
        self.assertEqual(order.user, self.user)
        self.assertRegex(order.order_number, r'^ORD-\d{8}-[0-9A-F]{8}$')
        self.assertEqual(
            sorted((i.product_id, i.quantity, i.price) for i in order.items.all()),
            sorted([(self.product.pk, 3, Decimal('20.00')), (other.pk, 4, Decimal('5.00'))]),
        )

        self.product.refresh_from_db()
        other.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 7)
        self.assertEqual(other.stock_quantity, 0)

        cart.refresh_from_db()
        self.assertEqual(cart.items.count(), 0)
        self.assertEqual(cart.total, Decimal('0.00'))

        self.assertTrue(AuditLog.objects.filter(action='order_create', object_reference=order.order_number).exists())
        self.assertEqual(AuditLog.objects.filter(action='stock_sale').count(), 2)

    def test_insufficient_stock_writes_nothing(self):
        cart = TestDataFactory.create_cart_with_items(self.user, [(self.product, 3)])
        Product.objects.filter(pk=self.product.pk).update(stock_quantity=2)

        with self.assertRaises(InsufficientStockError) as ctx:
            services.create_order(self.session)
        self.assertEqual(ctx.exception.message, 'Not enough Smart Watch in stock')

        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 2)
        self.assertFalse(Order.objects.exists())
        self.assertEqual(cart.items.count(), 1)

    def test_one_short_line_aborts_whole_order(self):
        other = TestDataFactory.create_product(stock_quantity=1)
        TestDataFactory.create_cart_with_items(self.user, [(self.product, 3), (other, 2)])

        with self.assertRaises(InsufficientStockError):
            services.create_order(self.session)

        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 10)
        self.assertFalse(Order.objects.exists())

    def test_empty_cart(self):
        with self.assertRaises(ValidationFailure) as ctx:
            services.create_order(self.session)
        self.assertEqual(ctx.exception.message, 'Your cart is empty')
        self.assertFalse(Order.objects.exists())

    def test_anonymous(self):
        with self.assertRaises(PermissionDeniedError) as ctx:
            services.create_order(ANONYMOUS)
        self.assertEqual(ctx.exception.message, 'Please sign in to place an order')

    def test_deleted_product_aborts_order(self):
        TestDataFactory.create_cart_with_items(self.user, [(self.product, 1)])
        self.product.delete()
        with self.assertRaises(NotFoundError) as ctx:
            services.create_order(self.session)
        self.assertEqual(ctx.exception.message, 'Product no longer exists')
        self.assertFalse(Order.objects.exists())

    def test_second_checkout_cannot_oversell(self):
        rival = TestDataFactory.create_user()
        TestDataFactory.create_cart_with_items(self.user, [(self.product, 6)])
        rival_cart = TestDataFactory.create_cart_with_items(rival, [(self.product, 6)])

        services.create_order(self.session)
        with self.assertRaises(InsufficientStockError):
            services.create_order(TestDataFactory.session(rival))

        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 4)
        self.assertEqual(Order.objects.count(), 1)
        self.assertEqual(rival_cart.items.count(), 1)


class OrderAPITests(TestCase):
    """Cart and order endpoints"""

    def setUp(self):
        self.user = TestDataFactory.create_user()
        self.manager = TestDataFactory.create_manager()
        self.client = AuthenticatedAPIClient()
        self.product = TestDataFactory.create_product(name='Leather Backpack', price=Decimal('89.99'), stock_quantity=10)

    def test_end_to_end_checkout(self):
        self.client.authenticate_user(self.user)

        response = self.client.post('/api/v1/cart/items/', {'product_id': self.product.pk, 'quantity': 3}, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(Decimal(response.data['cart']['total']), Decimal('269.97'))

        response = self.client.post('/api/v1/orders/')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['message'], 'Order placed successfully')
        order = response.data['order']
        self.assertEqual(order['status'], 'pending')
        self.assertEqual(len(order['items']), 1)
        self.assertEqual(order['items'][0]['quantity'], 3)
        self.assertEqual(Decimal(order['total']), Decimal('269.97'))

        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 7)

        response = self.client.get('/api/v1/cart/')
        self.assertEqual(response.data['items'], [])
        self.assertEqual(Decimal(response.data['total']), Decimal('0.00'))

    def test_cart_item_patch_and_delete(self):
        self.client.authenticate_user(self.user)
        response = self.client.post('/api/v1/cart/items/', {'product_id': self.product.pk}, format='json')
        item_id = response.data['cart']['items'][0]['id']

        response = self.client.patch(f'/api/v1/cart/items/{item_id}/', {'quantity': 11}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['message'], 'Not enough stock available')

        response = self.client.patch(f'/api/v1/cart/items/{item_id}/', {'quantity': 0}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['cart']['items'], [])

        response = self.client.delete(f'/api/v1/cart/items/{item_id}/')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_empty_cart_reports_no_order(self):
        self.client.authenticate_user(self.user)
        response = self.client.post('/api/v1/orders/')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['message'], 'Your cart is empty')

    def test_cart_requires_authentication(self):
        response = self.client.get('/api/v1/cart/')
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_cart_database_failure_is_reported(self):
        self.client.authenticate_user(self.user)
        with mock.patch.object(Cart.objects, 'get_or_create', side_effect=OperationalError('database is locked')):
            response = self.client.get('/api/v1/cart/')
        self.assertEqual(response.status_code, status.HTTP_503_SERVICE_UNAVAILABLE)
        self.assertEqual(response.data['message'], 'Failed to load cart')

    def test_users_see_only_their_orders(self):
        other = TestDataFactory.create_user()
        mine = TestDataFactory.create_order(self.user, [(self.product, 1)])
        theirs = TestDataFactory.create_order(other, [(self.product, 2)])

        self.client.authenticate_user(self.user)
        response = self.client.get('/api/v1/orders/')
        self.assertEqual([o['id'] for o in response.data], [mine.pk])

        response = self.client.get(f'/api/v1/orders/{theirs.pk}/')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(response.data['message'], 'You do not have permission to view this order')

        self.client.authenticate_user(self.manager)
        response = self.client.get('/api/v1/orders/')
        self.assertEqual([o['id'] for o in response.data], [theirs.pk, mine.pk])

    def test_status_filter(self):
        TestDataFactory.create_order(self.user, [(self.product, 1)])
        shipped = TestDataFactory.create_order(self.user, [(self.product, 1)], status=Order.STATUS_SHIPPED)
        self.client.authenticate_user(self.manager)
        response = self.client.get('/api/v1/orders/', {'status': 'shipped'})
        self.assertEqual([o['id'] for o in response.data], [shipped.pk])

    def test_deleted_product_shows_placeholder(self):
        order = TestDataFactory.create_order(self.user, [(self.product, 2)])
        product_id = self.product.pk
        self.product.delete()

        self.client.authenticate_user(self.user)
        response = self.client.get(f'/api/v1/orders/{order.pk}/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        line = response.data['items'][0]
        self.assertEqual(line['product_id'], product_id)
        self.assertEqual(line['product']['name'], 'Product no longer available')
        self.assertFalse(line['product']['available'])
        self.assertEqual(line['quantity'], 2)

    def test_orders_survive_account_deletion(self):
        order = TestDataFactory.create_order(self.user, [(self.product, 1)])
        admin = TestDataFactory.create_manager(is_admin=True)
        core_services.delete_account(TestDataFactory.session(admin), self.user.pk)
        order.refresh_from_db()
        self.assertIsNone(order.user)


class OrderStatusTests(TestCase):

    def setUp(self):
        self.user = TestDataFactory.create_user()
        self.manager = TestDataFactory.create_manager()
        self.client = AuthenticatedAPIClient()
        product = TestDataFactory.create_product()
        self.order = TestDataFactory.create_order(self.user, [(product, 1)])

    def test_manager_sets_any_status(self):
        self.client.authenticate_user(self.manager)
        for new_status in ['delivered', 'pending', 'cancelled', 'processing']:
            response = self.client.patch(f'/api/v1/orders/{self.order.pk}/status/', {'status': new_status}, format='json')
            self.assertEqual(response.status_code, status.HTTP_200_OK)
            self.assertEqual(response.data['message'], f'Order status updated to {new_status}')
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, 'processing')
        self.assertEqual(AuditLog.objects.filter(action='order_status').count(), 4)

    def test_user_cannot_set_status(self):
        self.client.authenticate_user(self.user)
        response = self.client.patch(f'/api/v1/orders/{self.order.pk}/status/', {'status': 'shipped'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(response.data['message'], 'Only managers can update order status')
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, 'pending')

    def test_invalid_status(self):
        self.client.authenticate_user(self.manager)
        response = self.client.patch(f'/api/v1/orders/{self.order.pk}/status/', {'status': 'lost'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_unknown_order(self):
        with self.assertRaises(NotFoundError):
            services.update_order_status(TestDataFactory.session(self.manager), 999999, 'shipped')
