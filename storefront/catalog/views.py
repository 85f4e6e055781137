import logging

from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response

from storefront.core import roles
from storefront.core.exceptions import StorefrontError, error_response
from storefront.core.services import session_from_request
from . import services
from .serializers import ProductSerializer, LowStockProductSerializer

logger = logging.getLogger(__name__)


# Product views
@api_view(['GET', 'POST'])
@permission_classes([AllowAny])
def product_list_create(request):
    """List products (public) or create a new product (managers)"""
    if request.method == 'GET':
        try:
            products = services.list_products(request.query_params.dict())
        except StorefrontError as e:
            return error_response(e)
        return Response(products)

    session = session_from_request(request)
    serializer = ProductSerializer(data=request.data)
    try:
        roles.require_manager(session, 'Only managers can add products')
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
        product = services.add_product(session, serializer.validated_data, request=request)
    except StorefrontError as e:
        return error_response(e)
    return Response({
        'message': 'Product added successfully',
        'product': ProductSerializer(product).data,
    }, status=status.HTTP_201_CREATED)


@api_view(['GET', 'PUT', 'PATCH', 'DELETE'])
@permission_classes([AllowAny])
def product_detail(request, pk):
    """Retrieve a product (public); update or delete it (managers)"""
    if request.method == 'GET':
        try:
            product = services.get_product(pk)
        except StorefrontError as e:
            return error_response(e)
        return Response(ProductSerializer(product).data)

    session = session_from_request(request)
    try:
        if request.method == 'DELETE':
            services.delete_product(session, pk, request=request)
            return Response(status=status.HTTP_204_NO_CONTENT)

        roles.require_manager(session, 'Only managers can update products')
        product = services.get_product(pk)
        serializer = ProductSerializer(product, data=request.data, partial=request.method == 'PATCH')
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
        product = services.update_product(session, pk, serializer.validated_data, request=request)
    except StorefrontError as e:
        return error_response(e)
    return Response({
        'message': 'Product updated successfully',
        'product': ProductSerializer(product).data,
    })


@api_view(['GET'])
@permission_classes([AllowAny])
def product_categories(request):
    """Distinct product categories"""
    return Response(services.list_categories())


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def low_stock_products(request):
    """Stock alerts; ?threshold= overrides the configured threshold"""
    session = session_from_request(request)
    threshold = request.query_params.get('threshold')
    if threshold is not None:
        try:
            threshold = int(threshold)
        except ValueError:
            return Response({'error': 'Validation failed', 'message': 'threshold must be an integer'},
                            status=status.HTTP_400_BAD_REQUEST)
    try:
        if threshold is None:
            products = services.get_low_stock_products(session)
            threshold = services.low_stock_threshold()
        else:
            products = services.get_low_stock_products(session, threshold)
    except StorefrontError as e:
        return error_response(e)

    return Response({
        'threshold': threshold,
        'count': len(products),
        'results': LowStockProductSerializer(products, many=True).data,
    })
