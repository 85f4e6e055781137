from django.contrib.auth.models import AbstractUser
from django.db import models


class User(AbstractUser):
    """Authenticated identity. Sign-up stores the email as the username."""
    display_name = models.CharField(max_length=150, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'users'


class Profile(models.Model):
    """Application-owned record holding the role and admin flag of a user"""
    ROLE_GENERAL = 'general'
    ROLE_USER = 'user'
    ROLE_MANAGER = 'manager'

    ROLE_CHOICES = [
        (ROLE_GENERAL, 'General'),
        (ROLE_USER, 'User'),
        (ROLE_MANAGER, 'Manager'),
    ]

    user = models.OneToOneField(User, on_delete=models.CASCADE, related_name='profile')
    role = models.CharField(max_length=20, choices=ROLE_CHOICES, default=ROLE_USER, db_index=True)
    # Only meaningful while role is manager
    is_admin = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.user.email or self.user.username} ({self.role})"

    @property
    def is_admin_manager(self):
        return self.role == self.ROLE_MANAGER and self.is_admin is True

    class Meta:
        db_table = 'profiles'


class Setting(models.Model):
    """System settings"""
    key = models.CharField(max_length=100, unique=True)
    value = models.TextField()
    description = models.TextField(blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.key

    class Meta:
        db_table = 'settings'


class AuditLog(models.Model):
    """Audit log for protected mutations"""
    ACTION_CHOICES = [
        ('create', 'Create'),
        ('update', 'Update'),
        ('delete', 'Delete'),
        ('sign_up', 'Sign Up'),
        ('role_change', 'Role Change'),
        ('admin_grant', 'Admin Granted'),
        ('admin_revoke', 'Admin Revoked'),
        ('admin_transfer', 'Admin Transferred'),
        ('account_delete', 'Account Deleted'),
        ('cart_add', 'Add to Cart'),
        ('cart_update', 'Cart Update'),
        ('cart_remove', 'Remove from Cart'),
        ('cart_clear', 'Cart Cleared'),
        ('order_create', 'Order Created'),
        ('order_status', 'Order Status Changed'),
        ('stock_sale', 'Stock Removed (Sale)'),
    ]

    user = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, related_name='audit_logs')
    action = models.CharField(max_length=50, choices=ACTION_CHOICES)
    model_name = models.CharField(max_length=100)
    object_id = models.CharField(max_length=100)
    object_name = models.CharField(max_length=255, blank=True, null=True, help_text="Human-readable name of the object (e.g., product name, order number)")
    object_reference = models.CharField(max_length=255, blank=True, null=True, help_text="Reference identifier (e.g., order number)")
    changes = models.JSONField(default=dict, blank=True)
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'audit_logs'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['-created_at'], name='idx_audit_created'),
            models.Index(fields=['action'], name='idx_audit_action'),
            models.Index(fields=['model_name'], name='idx_audit_model'),
        ]
