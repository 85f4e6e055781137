"""
Cart and order placement services.

Placing an order runs stock verification, order creation, stock decrement
and cart clearing inside one transaction. Product rows are locked in
primary-key order, and each decrement is guarded on the live stock, so two
concurrent checkouts can never oversell a product.
"""
import logging
import uuid
from collections import OrderedDict

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from storefront.catalog.models import Product
from storefront.core import roles
from storefront.core.cache_utils import invalidate_products_cache
from storefront.core.exceptions import (
    InsufficientStockError, NotFoundError, PermissionDeniedError,
    ValidationFailure, reports_remote_failure,
)
from storefront.core.utils import create_audit_log
from .models import Cart, CartItem, Order, OrderItem

logger = logging.getLogger(__name__)

ORDER_STATUSES = [choice[0] for choice in Order.STATUS_CHOICES]


def generate_order_number():
    order_number = f"ORD-{timezone.now().strftime('%Y%m%d')}-{str(uuid.uuid4())[:8].upper()}"
    while Order.objects.filter(order_number=order_number).exists():
        order_number = f"ORD-{timezone.now().strftime('%Y%m%d')}-{str(uuid.uuid4())[:8].upper()}"
    return order_number


# ==================== CART ====================

def _cart_for(session) -> Cart:
    cart, created = Cart.objects.get_or_create(user=session.user)
    if created:
        logger.info(f"Created cart {cart.pk} for user {session.user_id}")
    return cart


@reports_remote_failure('Failed to load cart')
def get_cart(session) -> Cart:
    """The caller's cart, created on first read"""
    roles.require_authenticated(session, 'Please sign in to view your cart')
    return _cart_for(session)


def _locked_cart(session):
    _cart_for(session)
    return Cart.objects.select_for_update().get(user=session.user)


@reports_remote_failure('Failed to add item to cart')
def add_to_cart(session, product_id, quantity=1, request=None) -> Cart:
    """Add `quantity` units, merging with an existing line for the product"""
    roles.require_authenticated(session, 'Please sign in to add items to your cart')
    if quantity < 1:
        raise ValidationFailure('Quantity must be at least 1')

    with transaction.atomic():
        cart = _locked_cart(session)
        try:
            product = Product.objects.get(pk=product_id)
        except Product.DoesNotExist:
            raise NotFoundError('Product not found')

        item = cart.items.filter(product_id=product.pk).first()
        new_quantity = quantity + (item.quantity if item else 0)
        if not product.has_stock(new_quantity):
            raise InsufficientStockError(product_id=product.pk, available=product.stock_quantity)

        if item:
            item.quantity = new_quantity
            item.save(update_fields=['quantity'])
        else:
            item = CartItem.objects.create(cart=cart, product=product, quantity=quantity, price=product.price)
        cart.recalculate_total()

    create_audit_log(
        request=request,
        user=session.user,
        action='cart_add',
        model_name='Cart',
        object_id=cart.pk,
        object_name=product.name,
        changes={'product_id': product.pk, 'quantity': quantity, 'line_quantity': new_quantity},
    )
    return cart


@reports_remote_failure('Failed to update cart')
def update_cart_item(session, item_id, quantity, request=None) -> Cart:
    """Set a line's quantity; zero or less removes the line"""
    roles.require_authenticated(session, 'Please sign in to update your cart')

    with transaction.atomic():
        cart = _locked_cart(session)
        item = cart.items.filter(pk=item_id).first()
        if item is None:
            raise NotFoundError('Item not found in cart')

        old_quantity = item.quantity
        if quantity <= 0:
            item.delete()
        else:
            product = Product.objects.filter(pk=item.product_id).first()
            if product is None:
                raise NotFoundError('Product no longer exists', product_id=item.product_id)
            if not product.has_stock(quantity):
                raise InsufficientStockError(product_id=product.pk, available=product.stock_quantity)
            item.quantity = quantity
            item.save(update_fields=['quantity'])
        cart.recalculate_total()

    create_audit_log(
        request=request,
        user=session.user,
        action='cart_update',
        model_name='Cart',
        object_id=cart.pk,
        changes={'item_id': item_id, 'quantity': {'old': old_quantity, 'new': max(quantity, 0)}},
    )
    return cart


@reports_remote_failure('Failed to remove item from cart')
def remove_from_cart(session, item_id, request=None) -> Cart:
    roles.require_authenticated(session, 'Please sign in to update your cart')

    with transaction.atomic():
        cart = _locked_cart(session)
        deleted, _ = cart.items.filter(pk=item_id).delete()
        if not deleted:
            raise NotFoundError('Item not found in cart')
        cart.recalculate_total()

    create_audit_log(
        request=request,
        user=session.user,
        action='cart_remove',
        model_name='Cart',
        object_id=cart.pk,
        changes={'item_id': item_id},
    )
    return cart


@reports_remote_failure('Failed to clear cart')
def clear_cart(session, request=None) -> Cart:
    roles.require_authenticated(session, 'Please sign in to update your cart')
    with transaction.atomic():
        cart = _locked_cart(session)
        cart.items.all().delete()
        cart.recalculate_total()

    create_audit_log(
        request=request,
        user=session.user,
        action='cart_clear',
        model_name='Cart',
        object_id=cart.pk,
    )
    return cart


# ==================== ORDERS ====================

@reports_remote_failure('Failed to place order')
def create_order(session, request=None) -> Order:
    """
    Turn the caller's cart into a pending order.

    Raises before writing anything when the caller is anonymous, the cart
    is empty, a product is gone or stock is short; the whole checkout is
    rolled back on any later failure.
    """
    roles.require_authenticated(session, 'Please sign in to place an order')

    with transaction.atomic():
        cart = _locked_cart(session)
        lines = list(cart.items.all())
        if not lines:
            raise ValidationFailure('Your cart is empty')

        # Quantity per product, in case a product shows up on several lines
        wanted = OrderedDict()
        for line in lines:
            wanted[line.product_id] = wanted.get(line.product_id, 0) + line.quantity

        locked = {
            p.pk: p
            for p in Product.objects.select_for_update().filter(
                pk__in=[pid for pid in wanted if pid is not None]
            ).order_by('pk')
        }

        # 1. Stock verification against the locked rows
        for product_id, quantity in wanted.items():
            product = locked.get(product_id)
            if product is None:
                raise NotFoundError('Product no longer exists', product_id=product_id)
            if not product.has_stock(quantity):
                raise InsufficientStockError(
                    f'Not enough {product.name} in stock',
                    product_id=product.pk,
                    available=product.stock_quantity,
                )

        # 2. Order with a snapshot of the cart lines
        total = cart.recalculate_total()
        order = Order.objects.create(
            order_number=generate_order_number(),
            user=session.user,
            total=total,
            status=Order.STATUS_PENDING,
        )
        OrderItem.objects.bulk_create([
            OrderItem(order=order, product_id=line.product_id, quantity=line.quantity, price=line.price)
            for line in lines
        ])

        # 3. Guarded decrement per product
        for product_id, quantity in wanted.items():
            updated = Product.objects.filter(pk=product_id, stock_quantity__gte=quantity).update(
                stock_quantity=F('stock_quantity') - quantity,
                updated_at=timezone.now(),
            )
            if not updated:
                raise InsufficientStockError(
                    f'Not enough {locked[product_id].name} in stock', product_id=product_id,
                )

        # 4. Clear the cart
        cart.items.all().delete()
        cart.recalculate_total()

        # Queryset updates skip post_save, so product caches are dropped here
        transaction.on_commit(invalidate_products_cache)

    create_audit_log(
        request=request,
        user=session.user,
        action='order_create',
        model_name='Order',
        object_id=order.pk,
        object_name=order.order_number,
        object_reference=order.order_number,
        changes={'total': str(order.total), 'items': len(lines)},
    )
    for product_id, quantity in wanted.items():
        create_audit_log(
            request=request,
            user=session.user,
            action='stock_sale',
            model_name='Product',
            object_id=product_id,
            object_name=locked[product_id].name,
            object_reference=order.order_number,
            changes={'quantity': -quantity},
        )
    logger.info(f"Order {order.order_number} placed by user {session.user_id}: total={order.total}, lines={len(lines)}")
    return order


@reports_remote_failure('Failed to load orders')
def list_orders(session, status=None):
    """Managers see every order, everyone else only their own; newest first"""
    roles.require_authenticated(session, 'Please sign in to view your orders')
    queryset = Order.objects.select_related('user').prefetch_related('items__product')
    if roles.resolve_role(session) != roles.MANAGER:
        queryset = queryset.filter(user=session.user)
    if status:
        if status not in ORDER_STATUSES:
            raise ValidationFailure(f'Invalid status: {status}', allowed_statuses=ORDER_STATUSES)
        queryset = queryset.filter(status=status)
    return list(queryset.order_by('-created_at', '-id'))


@reports_remote_failure('Failed to load order')
def get_order(session, order_id) -> Order:
    roles.require_authenticated(session, 'Please sign in to view your orders')
    try:
        order = Order.objects.select_related('user').prefetch_related('items__product').get(pk=order_id)
    except Order.DoesNotExist:
        raise NotFoundError('Order not found')
    if roles.resolve_role(session) != roles.MANAGER and order.user_id != session.user_id:
        raise PermissionDeniedError('You do not have permission to view this order')
    return order


@reports_remote_failure('Failed to update order status')
def update_order_status(session, order_id, status, request=None) -> Order:
    """Any of the five statuses may be set from any other"""
    roles.require_manager(session, 'Only managers can update order status')
    if status not in ORDER_STATUSES:
        raise ValidationFailure(f'Invalid status: {status}', allowed_statuses=ORDER_STATUSES)

    with transaction.atomic():
        try:
            order = Order.objects.select_for_update().get(pk=order_id)
        except Order.DoesNotExist:
            raise NotFoundError('Order not found')
        old_status = order.status
        if old_status != status:
            order.status = status
            order.save(update_fields=['status', 'updated_at'])

    if old_status != status:
        create_audit_log(
            request=request,
            user=session.user,
            action='order_status',
            model_name='Order',
            object_id=order.pk,
            object_name=order.order_number,
            object_reference=order.order_number,
            changes={'status': {'old': old_status, 'new': status}},
        )
        logger.info(f"Order {order.order_number} status {old_status} -> {status} by user {session.user_id}")
    return order
