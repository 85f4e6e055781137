"""
Test suite for Reports module
Tests: Dashboard Summary, Sales Report, Access Control
"""
from decimal import Decimal

from django.test import TestCase
from rest_framework import status

from storefront.core.test_utils import TestDataFactory, AuthenticatedAPIClient
from storefront.orders.models import Order


class ReportsTests(TestCase):
    """Test report endpoints"""

    def setUp(self):
        self.manager = TestDataFactory.create_manager()
        self.user = TestDataFactory.create_user()
        self.client = AuthenticatedAPIClient()
        self.client.authenticate_user(self.manager)

        self.speaker = TestDataFactory.create_product(name='Portable Speaker', price=Decimal('10.00'), stock_quantity=5)
        self.mat = TestDataFactory.create_product(name='Yoga Mat', price=Decimal('20.00'), stock_quantity=50)
        TestDataFactory.create_order(self.user, [(self.speaker, 2), (self.mat, 1)])
        TestDataFactory.create_order(self.user, [(self.speaker, 1)], status=Order.STATUS_DELIVERED)
        TestDataFactory.create_order(self.user, [(self.mat, 3)], status=Order.STATUS_CANCELLED)

    def test_summary(self):
        response = self.client.get('/api/v1/reports/summary/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['orders']['total'], 3)
        self.assertEqual(response.data['orders']['by_status']['pending'], 1)
        self.assertEqual(response.data['orders']['by_status']['cancelled'], 1)
        self.assertEqual(response.data['orders']['by_status']['shipped'], 0)
        # 40 + 10; the cancelled order is not revenue
        self.assertEqual(response.data['revenue'], 50.0)
        self.assertEqual(response.data['products']['total'], 2)
        self.assertEqual(response.data['products']['low_stock'], 1)
        self.assertEqual(response.data['products']['inventory_value'], 1050.0)

    def test_sales(self):
        response = self.client.get('/api/v1/reports/sales/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['summary']['total_orders'], 2)
        self.assertEqual(response.data['summary']['total_sales'], 50.0)
        self.assertEqual(response.data['summary']['total_items_sold'], 4)
        self.assertEqual(len(response.data['daily_breakdown']), 1)
        top = response.data['top_products'][0]
        self.assertEqual(top['name'], 'Portable Speaker')
        self.assertEqual(top['quantity'], 3)
        self.assertEqual(top['revenue'], 30.0)

    def test_sales_with_date_range(self):
        response = self.client.get('/api/v1/reports/sales/?date_from=2000-01-01&date_to=2000-12-31')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['summary']['total_orders'], 0)
        self.assertEqual(response.data['top_products'], [])

    def test_sales_bad_date(self):
        response = self.client.get('/api/v1/reports/sales/?date_from=yesterday')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_reports_are_manager_only(self):
        self.client.authenticate_user(self.user)
        self.assertEqual(self.client.get('/api/v1/reports/summary/').status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(self.client.get('/api/v1/reports/sales/').status_code, status.HTTP_403_FORBIDDEN)

    def test_top_products_ranked_by_units_sold(self):
        response = self.client.get('/api/v1/reports/sales/', {'limit': 1})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data['top_products']), 1)
        self.assertEqual(response.data['top_products'][0]['product_id'], self.speaker.pk)

        response = self.client.get('/api/v1/reports/sales/')
        mat = response.data['top_products'][1]
        # The cancelled order's three mats are not counted
        self.assertEqual((mat['name'], mat['quantity'], mat['revenue']), ('Yoga Mat', 1, 20.0))

    def test_sales_rejects_non_positive_limit(self):
        for limit in ('-1', '0', 'ten'):
            response = self.client.get('/api/v1/reports/sales/', {'limit': limit})
            self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
