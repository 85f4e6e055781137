from django.urls import path
from .views import cart_detail, cart_items, cart_item_detail, order_list_create, order_detail, order_status

urlpatterns = [
    # Cart endpoints
    path('cart/', cart_detail, name='cart-detail'),
    path('cart/items/', cart_items, name='cart-items'),
    path('cart/items/<int:item_id>/', cart_item_detail, name='cart-item-detail'),

    # Order endpoints
    path('orders/', order_list_create, name='order-list-create'),
    path('orders/<int:pk>/', order_detail, name='order-detail'),
    path('orders/<int:pk>/status/', order_status, name='order-status'),
]
