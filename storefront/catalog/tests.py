"""
Test suite for the catalog
Tests: Browsing & Filters, Manager-only CRUD, Low Stock Alerts, Caching, Seeding
"""
from decimal import Decimal
from io import StringIO

from django.core.cache import cache
from django.core.management import call_command
from django.test import TestCase, override_settings
from rest_framework import status

from storefront.catalog import services
from storefront.catalog.models import Product
from storefront.core.exceptions import PermissionDeniedError
from storefront.core.models import AuditLog, Setting
from storefront.core.test_utils import TestDataFactory, AuthenticatedAPIClient


class ProductBrowsingTests(TestCase):
    """Public product listing and filters"""

    def setUp(self):
        self.client = AuthenticatedAPIClient()
        self.headphones = TestDataFactory.create_product(
            name='Wireless Headphones', price=Decimal('199.99'), stock_quantity=45, category='Electronics',
        )
        self.mat = TestDataFactory.create_product(
            name='Yoga Mat', price=Decimal('29.99'), stock_quantity=0, category='Fitness',
        )
        self.bottle = TestDataFactory.create_product(
            name='Stainless Steel Water Bottle', price=Decimal('19.99'), stock_quantity=75, category='Fitness',
        )

    def test_list_is_public(self):
        response = self.client.get('/api/v1/products/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data), 3)

    def test_search_matches_all_words(self):
        response = self.client.get('/api/v1/products/', {'search': 'steel bottle'})
        self.assertEqual([p['name'] for p in response.data], ['Stainless Steel Water Bottle'])

    def test_filter_by_category(self):
        response = self.client.get('/api/v1/products/', {'category': 'fitness'})
        self.assertEqual({p['name'] for p in response.data}, {'Yoga Mat', 'Stainless Steel Water Bottle'})

    def test_filter_by_price_range(self):
        response = self.client.get('/api/v1/products/', {'min_price': '20', 'max_price': '100'})
        self.assertEqual([p['name'] for p in response.data], ['Yoga Mat'])

    def test_filter_in_stock(self):
        response = self.client.get('/api/v1/products/', {'in_stock': 'true'})
        self.assertNotIn('Yoga Mat', [p['name'] for p in response.data])

    def test_ordering_by_price(self):
        response = self.client.get('/api/v1/products/', {'ordering': 'price'})
        self.assertEqual([p['name'] for p in response.data],
                         ['Stainless Steel Water Bottle', 'Yoga Mat', 'Wireless Headphones'])

    def test_invalid_filter_value(self):
        response = self.client.get('/api/v1/products/', {'min_price': 'cheap'})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_detail(self):
        response = self.client.get(f'/api/v1/products/{self.headphones.pk}/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['name'], 'Wireless Headphones')
        self.assertTrue(response.data['in_stock'])

    def test_detail_not_found(self):
        response = self.client.get('/api/v1/products/999999/')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_categories(self):
        response = self.client.get('/api/v1/products/categories/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data, ['Electronics', 'Fitness'])


class ProductManagementTests(TestCase):
    """Only managers may add, update or delete products"""

    def setUp(self):
        self.manager = TestDataFactory.create_manager()
        self.member = TestDataFactory.create_user()
        self.client = AuthenticatedAPIClient()
        self.product = TestDataFactory.create_product(name='Coffee Maker', price=Decimal('129.99'))
        self.payload = {
            'name': 'Smart Watch',
            'description': 'Fitness tracker',
            'price': '249.99',
            'stock_quantity': 30,
            'category': 'Electronics',
        }

    def test_manager_adds_product(self):
        self.client.authenticate_user(self.manager)
        response = self.client.post('/api/v1/products/', self.payload, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['message'], 'Product added successfully')
        self.assertTrue(Product.objects.filter(name='Smart Watch').exists())
        self.assertTrue(AuditLog.objects.filter(action='create', model_name='Product').exists())

    def test_user_cannot_add_product(self):
        self.client.authenticate_user(self.member)
        response = self.client.post('/api/v1/products/', self.payload, format='json')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(response.data['message'], 'Only managers can add products')
        self.assertFalse(Product.objects.filter(name='Smart Watch').exists())

    def test_anonymous_cannot_add_product(self):
        response = self.client.post('/api/v1/products/', self.payload, format='json')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_price_must_be_positive(self):
        self.client.authenticate_user(self.manager)
        response = self.client.post('/api/v1/products/', dict(self.payload, price='0'), format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('price', response.data)

    def test_stock_cannot_be_negative(self):
        self.client.authenticate_user(self.manager)
        response = self.client.post('/api/v1/products/', dict(self.payload, stock_quantity=-1), format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('stock_quantity', response.data)

    def test_manager_updates_product(self):
        self.client.authenticate_user(self.manager)
        response = self.client.patch(f'/api/v1/products/{self.product.pk}/', {'stock_quantity': 3}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 3)
        log = AuditLog.objects.get(action='update', model_name='Product')
        self.assertEqual(log.changes['stock_quantity'], {'old': '10', 'new': '3'})

    def test_user_cannot_update_product(self):
        self.client.authenticate_user(self.member)
        response = self.client.patch(f'/api/v1/products/{self.product.pk}/', {'price': '1.00'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.product.refresh_from_db()
        self.assertEqual(self.product.price, Decimal('129.99'))

    def test_manager_deletes_product(self):
        self.client.authenticate_user(self.manager)
        response = self.client.delete(f'/api/v1/products/{self.product.pk}/')
        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)
        self.assertFalse(Product.objects.filter(pk=self.product.pk).exists())

    def test_user_cannot_delete_product(self):
        self.client.authenticate_user(self.member)
        response = self.client.delete(f'/api/v1/products/{self.product.pk}/')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertTrue(Product.objects.filter(pk=self.product.pk).exists())

    def test_service_guard(self):
        with self.assertRaises(PermissionDeniedError):
            services.add_product(TestDataFactory.session(self.member), self.payload)


class LowStockTests(TestCase):
    """Stock alerts"""

    def setUp(self):
        self.manager = TestDataFactory.create_manager()
        self.client = AuthenticatedAPIClient()
        TestDataFactory.create_product(name='Empty', stock_quantity=0)
        TestDataFactory.create_product(name='Few', stock_quantity=4)
        TestDataFactory.create_product(name='Edge', stock_quantity=10)
        TestDataFactory.create_product(name='Plenty', stock_quantity=50)

    def test_default_threshold_is_strictly_below_ten(self):
        products = services.get_low_stock_products(TestDataFactory.session(self.manager))
        self.assertEqual([p.name for p in products], ['Empty', 'Few'])

    def test_threshold_from_setting(self):
        Setting.objects.create(key='low_stock_threshold', value='5')
        self.client.authenticate_user(self.manager)
        response = self.client.get('/api/v1/products/low-stock/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['threshold'], 5)
        self.assertEqual([p['name'] for p in response.data['results']], ['Empty', 'Few'])
        self.assertEqual(response.data['results'][0]['status'], 'out_of_stock')

    def test_threshold_query_param(self):
        self.client.authenticate_user(self.manager)
        response = self.client.get('/api/v1/products/low-stock/', {'threshold': 11})
        self.assertEqual(response.data['count'], 3)

    def test_users_cannot_view_alerts(self):
        member = TestDataFactory.create_user()
        self.client.authenticate_user(member)
        response = self.client.get('/api/v1/products/low-stock/')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(response.data['message'], 'Only managers can view stock alerts')


@override_settings(CACHES={'default': {'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
                                       'LOCATION': 'catalog-tests'}})
class ProductCacheTests(TestCase):
    """Product list caching and invalidation"""

    def setUp(self):
        cache.clear()
        self.product = TestDataFactory.create_product(name='Portable Speaker', stock_quantity=50)

    def tearDown(self):
        cache.clear()

    def test_list_is_cached_until_product_changes(self):
        first = services.list_products()
        self.assertEqual(first[0]['stock_quantity'], 50)

        # Bypasses signals, so the cached list is served
        Product.objects.filter(pk=self.product.pk).update(stock_quantity=40)
        self.assertEqual(services.list_products()[0]['stock_quantity'], 50)

        with self.captureOnCommitCallbacks(execute=True):
            self.product.refresh_from_db()
            self.product.stock_quantity = 30
            self.product.save()
        self.assertEqual(services.list_products()[0]['stock_quantity'], 30)


class SeedProductsCommandTests(TestCase):

    def test_seed_is_idempotent(self):
        call_command('seed_products', stdout=StringIO())
        self.assertEqual(Product.objects.count(), 8)
        call_command('seed_products', stdout=StringIO())
        self.assertEqual(Product.objects.count(), 8)
        self.assertEqual(Product.objects.get(name='Yoga Mat').stock_quantity, 100)
