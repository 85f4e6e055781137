import logging
from datetime import datetime, timedelta
from decimal import Decimal

from django.db.models import Sum, Count, F, DecimalField, ExpressionWrapper
from django.db.models.functions import TruncDate
from django.utils import timezone
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from storefront.catalog.models import Product
from storefront.catalog.services import low_stock_threshold
from storefront.core.permissions import IsManager
from storefront.orders.models import Order, OrderItem

logger = logging.getLogger(__name__)

LINE_TOTAL = ExpressionWrapper(F('price') * F('quantity'), output_field=DecimalField(max_digits=14, decimal_places=2))


def parse_period(request, default_days=30):
    """(date_from, date_to) from the query string; the last 30 days by default"""
    date_from = request.query_params.get('date_from', None)
    date_to = request.query_params.get('date_to', None)

    if not date_from:
        date_from = (timezone.now() - timedelta(days=default_days)).date()
    else:
        date_from = datetime.strptime(date_from, '%Y-%m-%d').date()

    if not date_to:
        date_to = timezone.now().date()
    else:
        date_to = datetime.strptime(date_to, '%Y-%m-%d').date()

    return date_from, date_to


@api_view(['GET'])
@permission_classes([IsAuthenticated, IsManager])
def summary(request):
    """Dashboard figures: orders by status, revenue and stock health"""
    status_counts = {choice: 0 for choice, _ in Order.STATUS_CHOICES}
    for row in Order.objects.values('status').annotate(count=Count('id')):
        status_counts[row['status']] = row['count']

    revenue = Order.objects.exclude(status=Order.STATUS_CANCELLED).aggregate(
        total=Sum('total', output_field=DecimalField())
    )['total'] or Decimal('0.00')

    threshold = low_stock_threshold()
    inventory_value = Product.objects.aggregate(
        total=Sum(
            ExpressionWrapper(F('price') * F('stock_quantity'), output_field=DecimalField(max_digits=14, decimal_places=2))
        )
    )['total'] or Decimal('0.00')

    return Response({
        'orders': {
            'total': sum(status_counts.values()),
            'by_status': status_counts,
        },
        'revenue': float(revenue),
        'products': {
            'total': Product.objects.count(),
            'low_stock': Product.objects.filter(stock_quantity__lt=threshold).count(),
            'out_of_stock': Product.objects.filter(stock_quantity=0).count(),
            'low_stock_threshold': threshold,
            'inventory_value': float(inventory_value),
        },
    })


@api_view(['GET'])
@permission_classes([IsAuthenticated, IsManager])
def sales(request):
    """Revenue over a date range with a daily breakdown and the best sellers"""
    try:
        date_from, date_to = parse_period(request)
        limit = int(request.query_params.get('limit', 10))
        if limit < 1:
            raise ValueError('limit must be positive')
    except ValueError:
        return Response({'error': 'Validation failed', 'message': 'Use YYYY-MM-DD dates and a positive integer limit'},
                        status=status.HTTP_400_BAD_REQUEST)

    # Cancelled orders are not sales
    orders = Order.objects.filter(
        created_at__date__gte=date_from,
        created_at__date__lte=date_to,
    ).exclude(status=Order.STATUS_CANCELLED)

    total_sales = orders.aggregate(
        total=Sum('total', output_field=DecimalField())
    )['total'] or Decimal('0.00')
    total_orders = orders.count()

    items = OrderItem.objects.filter(order__in=orders)
    total_items_sold = items.aggregate(total=Sum('quantity'))['total'] or 0

    daily_sales = orders.annotate(
        date=TruncDate('created_at')
    ).values('date').annotate(
        total=Sum('total', output_field=DecimalField()),
        count=Count('id')
    ).order_by('date')

    top_products = items.values('product_id', 'product__name').annotate(
        quantity_sold=Sum('quantity'),
        revenue=Sum(LINE_TOTAL),
    ).order_by('-quantity_sold', 'product_id')[:limit]

    return Response({
        'period': {
            'from': date_from.isoformat(),
            'to': date_to.isoformat()
        },
        'summary': {
            'total_sales': float(total_sales),
            'total_orders': total_orders,
            'total_items_sold': total_items_sold,
            'avg_order_value': float(total_sales / total_orders) if total_orders else 0.0,
        },
        'daily_breakdown': [
            {'date': row['date'].isoformat(), 'total': float(row['total'] or 0), 'count': row['count']}
            for row in daily_sales
        ],
        'top_products': [
            {
                'product_id': row['product_id'],
                'name': row['product__name'] or 'Product no longer available',
                'quantity': row['quantity_sold'],
                'revenue': float(row['revenue'] or 0),
            }
            for row in top_products
        ],
    })
