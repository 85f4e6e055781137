import logging

from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from storefront.core import roles
from storefront.core.exceptions import StorefrontError, error_response
from storefront.core.services import session_from_request
from . import services
from .serializers import (
    CartSerializer, CartAddSerializer, CartItemUpdateSerializer,
    OrderSerializer, OrderStatusSerializer,
)

logger = logging.getLogger(__name__)


def cart_response(cart, message=None, status_code=status.HTTP_200_OK):
    data = CartSerializer(cart).data
    if message:
        data = {'message': message, 'cart': data}
    return Response(data, status=status_code)


# Cart views
@api_view(['GET', 'DELETE'])
@permission_classes([IsAuthenticated])
def cart_detail(request):
    """Get the current cart, or clear it"""
    session = session_from_request(request)
    try:
        if request.method == 'GET':
            return cart_response(services.get_cart(session))
        cart = services.clear_cart(session, request=request)
    except StorefrontError as e:
        return error_response(e)
    return cart_response(cart, 'Cart cleared')


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def cart_items(request):
    """Add a product to the cart"""
    serializer = CartAddSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    session = session_from_request(request)
    try:
        cart = services.add_to_cart(
            session,
            serializer.validated_data['product_id'],
            serializer.validated_data['quantity'],
            request=request,
        )
    except StorefrontError as e:
        return error_response(e)
    return cart_response(cart, 'Added to cart', status.HTTP_201_CREATED)


@api_view(['PATCH', 'DELETE'])
@permission_classes([IsAuthenticated])
def cart_item_detail(request, item_id):
    """Change a line's quantity (0 removes it) or remove it"""
    session = session_from_request(request)
    try:
        if request.method == 'DELETE':
            cart = services.remove_from_cart(session, item_id, request=request)
            return cart_response(cart, 'Item removed from cart')

        serializer = CartItemUpdateSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
        cart = services.update_cart_item(
            session, item_id, serializer.validated_data['quantity'], request=request
        )
    except StorefrontError as e:
        return error_response(e)
    return cart_response(cart, 'Cart updated successfully')


# Order views
@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
def order_list_create(request):
    """List orders (all for managers, own otherwise) or place an order from the cart"""
    session = session_from_request(request)
    if request.method == 'GET':
        try:
            orders = services.list_orders(session, status=request.query_params.get('status'))
        except StorefrontError as e:
            return error_response(e)
        return Response(OrderSerializer(orders, many=True).data)

    try:
        order = services.create_order(session, request=request)
    except StorefrontError as e:
        logger.info(f"No order created for user {session.user_id}: {e.message}")
        return error_response(e)
    return Response({
        'message': 'Order placed successfully',
        'order': OrderSerializer(order).data,
    }, status=status.HTTP_201_CREATED)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def order_detail(request, pk):
    session = session_from_request(request)
    try:
        order = services.get_order(session, pk)
    except StorefrontError as e:
        return error_response(e)
    return Response(OrderSerializer(order).data)


@api_view(['PATCH'])
@permission_classes([IsAuthenticated])
def order_status(request, pk):
    """Set an order's status (managers only)"""
    session = session_from_request(request)
    serializer = OrderStatusSerializer(data=request.data)
    try:
        if not serializer.is_valid():
            # Non-managers get the permission error, not the field errors
            roles.require_manager(session, 'Only managers can update order status')
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
        order = services.update_order_status(
            session, pk, serializer.validated_data['status'], request=request
        )
    except StorefrontError as e:
        return error_response(e)
    return Response({
        'message': f'Order status updated to {order.status}',
        'order': OrderSerializer(order).data,
    })
