from django.urls import path
from .views import product_list_create, product_detail, product_categories, low_stock_products

urlpatterns = [
    # Product endpoints
    path('products/', product_list_create, name='product-list-create'),
    path('products/low-stock/', low_stock_products, name='product-low-stock'),
    path('products/categories/', product_categories, name='product-categories'),
    path('products/<int:pk>/', product_detail, name='product-detail'),
]
