"""
URL configuration for the storefront project.

Every app mounts its routes under /api/v1/.
"""
from django.contrib import admin
from django.urls import path, include

admin.site.site_header = "Storefront Management Admin Panel"
admin.site.site_title = "Storefront Admin Portal"
admin.site.index_title = "Welcome to the Storefront Admin Portal"

urlpatterns = [
    path('admin/', admin.site.urls),
    path('api/v1/', include('storefront.core.urls')),
    path('api/v1/', include('storefront.catalog.urls')),
    path('api/v1/', include('storefront.orders.urls')),
    path('api/v1/', include('storefront.reports.urls')),
]
