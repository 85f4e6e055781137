from django.urls import path
from .views import (
    CustomTokenRefreshView, register, login, logout, user_me,
    user_list, user_detail, user_role, user_admin, user_admin_transfer,
    setting_list_create, setting_detail,
    audit_log_list,
)

urlpatterns = [
    # Auth endpoints
    path('auth/register/', register, name='register'),
    path('auth/login/', login, name='login'),
    path('auth/refresh/', CustomTokenRefreshView.as_view(), name='token_refresh'),
    path('auth/logout/', logout, name='logout'),
    path('auth/me/', user_me, name='user-me'),

    # User management endpoints
    path('users/', user_list, name='user-list'),
    path('users/<int:pk>/', user_detail, name='user-detail'),
    path('users/<int:pk>/role/', user_role, name='user-role'),
    path('users/<int:pk>/admin/', user_admin, name='user-admin'),
    path('users/<int:pk>/admin/transfer/', user_admin_transfer, name='user-admin-transfer'),

    # Setting endpoints
    path('settings/', setting_list_create, name='setting-list-create'),
    path('settings/<int:pk>/', setting_detail, name='setting-detail'),

    # AuditLog endpoints
    path('audit-logs/', audit_log_list, name='audit-log-list'),
]
