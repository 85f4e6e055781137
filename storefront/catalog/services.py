"""
Catalog services.

Browsing is public. Every mutation and the low-stock report first check
that the acting session is a manager.
"""
import logging

from django.conf import settings
from django.db import transaction

from storefront.core import roles
from storefront.core.cache_utils import (
    cached_query, PRODUCTS_LIST_CACHE_TTL, PRODUCTS_LIST_PREFIX,
    CATEGORIES_CACHE_TTL, CATEGORIES_PREFIX,
)
from storefront.core.exceptions import NotFoundError, ValidationFailure, reports_remote_failure
from storefront.core.models import Setting
from storefront.core.utils import create_audit_log
from .filters import ProductFilter
from .models import Product
from .serializers import ProductSerializer

logger = logging.getLogger(__name__)

LOW_STOCK_SETTING_KEY = 'low_stock_threshold'

# Fields whose changes are recorded in the audit log
TRACKED_FIELDS = ('name', 'price', 'stock_quantity', 'category')


@reports_remote_failure('Failed to load products')
def list_products(params=None):
    """Serialized product list for the given query params (cached)"""
    params = {k: v for k, v in (params or {}).items() if v not in (None, '')}
    return _product_list(**params)


@cached_query(cache_ttl=PRODUCTS_LIST_CACHE_TTL, key_prefix=PRODUCTS_LIST_PREFIX)
def _product_list(**params):
    filterset = ProductFilter(params, queryset=Product.objects.all())
    if not filterset.is_valid():
        raise ValidationFailure(
            'Invalid filters',
            errors={field: list(errors) for field, errors in filterset.errors.items()},
        )
    return [dict(row) for row in ProductSerializer(filterset.qs, many=True).data]


@reports_remote_failure('Failed to load product')
def get_product(product_id):
    try:
        return Product.objects.get(pk=product_id)
    except Product.DoesNotExist:
        raise NotFoundError('Product not found')


@reports_remote_failure('Failed to load categories')
@cached_query(cache_ttl=CATEGORIES_CACHE_TTL, key_prefix=CATEGORIES_PREFIX)
def list_categories():
    return list(
        Product.objects.order_by('category').values_list('category', flat=True).distinct()
    )


@reports_remote_failure('Failed to add product')
def add_product(session, data, request=None) -> Product:
    roles.require_manager(session, 'Only managers can add products')
    product = Product.objects.create(**data)
    create_audit_log(
        request=request,
        user=session.user,
        action='create',
        model_name='Product',
        object_id=str(product.id),
        object_name=product.name,
        changes={'price': str(product.price), 'stock_quantity': product.stock_quantity},
    )
    logger.info(f"Product {product.id} '{product.name}' added by user {session.user_id}")
    return product


@reports_remote_failure('Failed to update product')
def update_product(session, product_id, updates, request=None) -> Product:
    roles.require_manager(session, 'Only managers can update products')
    with transaction.atomic():
        try:
            product = Product.objects.select_for_update().get(pk=product_id)
        except Product.DoesNotExist:
            raise NotFoundError('Product not found')

        old_data = {k: getattr(product, k) for k in TRACKED_FIELDS}
        for field, value in updates.items():
            setattr(product, field, value)
        product.save()

    changes = {
        k: {'old': str(old_data[k]), 'new': str(getattr(product, k))}
        for k in TRACKED_FIELDS if old_data[k] != getattr(product, k)
    }
    if changes:
        create_audit_log(
            request=request,
            user=session.user,
            action='update',
            model_name='Product',
            object_id=str(product.id),
            object_name=product.name,
            changes=changes,
        )
    return product


@reports_remote_failure('Failed to delete product')
def delete_product(session, product_id, request=None):
    """Delete a product; order and cart lines keep their snapshot"""
    roles.require_manager(session, 'Only managers can delete products')
    product = get_product(product_id)
    product_name = product.name
    product.delete()
    create_audit_log(
        request=request,
        user=session.user,
        action='delete',
        model_name='Product',
        object_id=str(product_id),
        object_name=product_name,
        changes={'name': product_name},
    )
    logger.info(f"Product {product_id} '{product_name}' deleted by user {session.user_id}")


def low_stock_threshold():
    """Threshold from the settings table, else from STOREFRONT config"""
    default = settings.STOREFRONT['LOW_STOCK_THRESHOLD']
    value = Setting.objects.filter(key=LOW_STOCK_SETTING_KEY).values_list('value', flat=True).first()
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring non-numeric {LOW_STOCK_SETTING_KEY} setting: {value!r}")
        return default


@reports_remote_failure('Failed to load stock alerts')
def get_low_stock_products(session, threshold=None):
    """Products with stock strictly below the threshold, emptiest first"""
    roles.require_manager(session, 'Only managers can view stock alerts')
    if threshold is None:
        threshold = low_stock_threshold()
    return list(Product.objects.filter(stock_quantity__lt=threshold).order_by('stock_quantity', 'name'))
